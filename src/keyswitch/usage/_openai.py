"""Usage checks against the OpenAI usage endpoint."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from keyswitch._context import Context
from keyswitch._errors import RemoteFailure
from keyswitch._models import DEFAULT_OPENAI_ENDPOINT, utcnow
from keyswitch.usage._client import UsageClient, UsageResult, number

if TYPE_CHECKING:
    from collections.abc import Callable

    import httpx

    from keyswitch._config import UsageOptions
    from keyswitch._models import ApiKey


class OpenAIUsageClient(UsageClient):
    """Reads ``GET {endpoint}/usage?date=YYYY-MM-DD``.

    ``total_usage`` becomes the used amount. The daily, weekly and monthly
    totals sum the ``daily_costs`` line items stamped within the last 1, 7
    and 30 days. The limit is the one stored on the key.

    :param clock: Returns the current UTC time.
    """

    def __init__(
        self,
        options: UsageOptions | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(options, transport=transport)
        self._clock = clock

    @property
    def name(self) -> str:
        return "openai"

    def fetch_usage(self, key: ApiKey, ctx: Context | None = None) -> UsageResult:
        ctx = ctx or Context.background()
        base = (key.endpoint.strip() or DEFAULT_OPENAI_ENDPOINT).rstrip("/")
        now = self._clock()
        payload = self._get_json(ctx, key, f"{base}/usage", {"date": now.strftime("%Y-%m-%d")})
        daily_costs = payload.get("daily_costs") or []
        if not isinstance(daily_costs, list):
            raise RemoteFailure("Usage response has malformed daily_costs", key=key.id, operation="fetch_usage")
        return UsageResult(
            used=number(payload, "total_usage", key.id),
            limit=key.quota_limit,
            daily_total=_sum_recent(daily_costs, now, 1, key.id),
            weekly_total=_sum_recent(daily_costs, now, 7, key.id),
            monthly_total=_sum_recent(daily_costs, now, 30, key.id),
            raw={"response": payload},
        )


def _sum_recent(daily_costs: list[Any], now: datetime, days: int, key_id: str) -> float:
    """Sum the line-item costs of the entries stamped within the last ``days`` days."""
    cutoff = now - timedelta(days=days)
    total = 0.0
    for entry in daily_costs:
        if not isinstance(entry, dict):
            raise RemoteFailure("Usage response has a malformed daily entry", key=key_id, operation="fetch_usage")
        stamp = datetime.fromtimestamp(number(entry, "timestamp", key_id), tz=timezone.utc)
        if stamp < cutoff:
            continue
        for item in entry.get("line_items") or []:
            if not isinstance(item, dict):
                raise RemoteFailure("Usage response has a malformed line item", key=key_id, operation="fetch_usage")
            total += number(item, "cost", key_id)
    return total
