"""Usage checks against a CRS relay's billing endpoint."""

from __future__ import annotations

from typing import TYPE_CHECKING

from keyswitch._context import Context
from keyswitch._errors import InvalidInput
from keyswitch.usage._client import UsageClient, UsageResult, number

if TYPE_CHECKING:
    from keyswitch._models import ApiKey


class CRSUsageClient(UsageClient):
    """Reads ``GET {endpoint}/v1/dashboard/billing/usage``.

    The relay reports its own daily, weekly and monthly totals; the limit is
    the one stored on the key.
    """

    @property
    def name(self) -> str:
        return "crs"

    def fetch_usage(self, key: ApiKey, ctx: Context | None = None) -> UsageResult:
        ctx = ctx or Context.background()
        base = key.endpoint.strip().rstrip("/")
        if not base:
            raise InvalidInput("CRS keys need a base URL for usage checks", key=key.id, operation="fetch_usage")
        payload = self._get_json(ctx, key, f"{base}/v1/dashboard/billing/usage")
        return UsageResult(
            used=number(payload, "total_usage", key.id),
            limit=key.quota_limit,
            daily_total=number(payload, "today_usage", key.id),
            weekly_total=number(payload, "week_usage", key.id),
            monthly_total=number(payload, "month_usage", key.id),
            raw={"response": payload},
        )
