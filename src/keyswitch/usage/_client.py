"""UsageClient abstract base class and the per-kind client registry."""

from __future__ import annotations

import abc
import dataclasses
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

import httpx

from keyswitch._config import UsageOptions
from keyswitch._context import Context, call_interruptibly
from keyswitch._errors import AuthenticationFailed, DeadlineExceeded, InvalidInput, NotFound, RemoteFailure

if TYPE_CHECKING:
    from types import TracebackType

    from keyswitch._models import ApiKey

log = logging.getLogger(__name__)

_OPERATION = "fetch_usage"


@dataclasses.dataclass(frozen=True)
class UsageResult:
    """Consumption reported by a provider for one key.

    :param used: Total consumption so far.
    :param limit: Quota limit the usage is measured against.
    :param daily_total: Consumption over the last day.
    :param weekly_total: Consumption over the last seven days.
    :param monthly_total: Consumption over the last thirty days.
    :param raw: The decoded provider response, for diagnostics.
    """

    used: float
    limit: float
    daily_total: float = 0.0
    weekly_total: float = 0.0
    monthly_total: float = 0.0
    raw: dict[str, Any] = dataclasses.field(default_factory=dict, compare=False, repr=False)


def number(payload: dict[str, Any], field: str, key_id: str) -> float:
    """Read a numeric field of a usage payload; a missing field counts as zero.

    :raises RemoteFailure: If the field holds something other than a number.
    """
    value = payload.get(field)
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RemoteFailure(f"Usage response has a non-numeric {field}: {value!r}", key=key_id, operation=_OPERATION)
    return float(value)


class UsageClient(abc.ABC):
    """Reads the current consumption of a key from its provider.

    One instance serves any number of keys of its kind and may be shared
    between threads. Failures carry the key id, never the secret.

    :param options: Timeout and error-body budget.
    :param transport: Optional httpx transport (e.g. ``httpx.MockTransport``).
    """

    def __init__(self, options: UsageOptions | None = None, *, transport: httpx.BaseTransport | None = None) -> None:
        self._options = options or UsageOptions()
        self._options.validate()
        self._http = httpx.Client(transport=transport, timeout=self._options.http_timeout)
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Key kind served by this client (e.g. ``'openai'``)."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    @abc.abstractmethod
    def fetch_usage(self, key: ApiKey, ctx: Context | None = None) -> UsageResult:
        """Query the provider for the usage of ``key``.

        :raises AuthenticationFailed: If the provider rejects the secret.
        :raises RemoteFailure: On any other failed or malformed response.
        :raises DeadlineExceeded: If the request times out.
        :raises Canceled: If ``ctx`` is canceled while the request is in flight.
        """

    def _get_json(
        self, ctx: Context, key: ApiKey, url: str, params: dict[str, str] | None = None
    ) -> dict[str, Any]:
        """GET ``url`` with the key as bearer token and decode a JSON object."""
        timeout = ctx.timeout_for(self._options.http_timeout)
        live: list[httpx.Response] = []

        def exchange() -> bytes:
            with self._http.stream(
                "GET", url, params=params, headers={"Authorization": f"Bearer {key.secret}"}, timeout=timeout
            ) as response:
                live.append(response)
                if not response.is_success:
                    self._raise_for_status(response, key)
                return response.read()

        def abort() -> None:
            for response in live:
                response.close()

        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(thread_name_prefix=f"keyswitch-usage-{self.name}")
            executor = self._executor
        try:
            body = call_interruptibly(executor, ctx, _OPERATION, key.id, exchange, abort=abort)
        except httpx.TimeoutException as exc:
            raise DeadlineExceeded("Usage request timed out", key=key.id, operation=_OPERATION) from exc
        except httpx.TransportError as exc:
            raise RemoteFailure(f"Usage request failed: {exc}", key=key.id, operation=_OPERATION) from exc

        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise RemoteFailure("Usage response is not valid JSON", key=key.id, operation=_OPERATION) from exc
        if not isinstance(payload, dict):
            raise RemoteFailure("Usage response is not a JSON object", key=key.id, operation=_OPERATION)
        log.debug("Fetched %s usage for key %s", self.name, key.id)
        return payload

    def _raise_for_status(self, response: httpx.Response, key: ApiKey) -> None:
        limit = self._options.error_body_limit
        collected = bytearray()
        for chunk in response.iter_bytes():
            collected.extend(chunk)
            if len(collected) >= limit:
                break
        body = bytes(collected[:limit]).decode("utf-8", errors="replace").strip()
        status = response.status_code
        if status in (401, 403):
            raise AuthenticationFailed(
                f"Usage request rejected with status {status}: {body}", key=key.id, operation=_OPERATION
            )
        if status == 404:
            raise NotFound("Usage endpoint not found", key=key.id, operation=_OPERATION)
        raise RemoteFailure("Usage request failed", key=key.id, operation=_OPERATION, status=status, body=body)

    def close(self) -> None:
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        self._http.close()

    def __enter__(self) -> UsageClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


# Maps key kinds to usage client classes.
_KINDS: dict[str, type[UsageClient]] = {}


def register_usage_client(kind: str, cls: type[UsageClient]) -> None:
    """Register a usage client class for a key kind."""
    _KINDS[kind.lower()] = cls


def _register_builtin_clients() -> None:
    from keyswitch.usage._crs import CRSUsageClient
    from keyswitch.usage._openai import OpenAIUsageClient

    _KINDS.setdefault("openai", OpenAIUsageClient)
    _KINDS.setdefault("crs", CRSUsageClient)


def open_usage_client(
    kind: str, options: UsageOptions | None = None, *, transport: httpx.BaseTransport | None = None
) -> UsageClient:
    """Instantiate the usage client registered for ``kind``.

    :raises InvalidInput: If no client handles that kind.
    """
    _register_builtin_clients()
    normalized = kind.strip().lower()
    if normalized not in _KINDS:
        raise InvalidInput(f"Usage checks are not supported for key type '{kind}'", operation=_OPERATION)
    return _KINDS[normalized](options, transport=transport)
