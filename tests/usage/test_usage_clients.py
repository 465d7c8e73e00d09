"""Usage client tests against in-process fakes of the provider usage endpoints."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from keyswitch._config import UsageOptions
from keyswitch._context import Context
from keyswitch._errors import (
    AuthenticationFailed,
    Canceled,
    DeadlineExceeded,
    InvalidInput,
    NotFound,
    RemoteFailure,
)
from keyswitch._models import ApiKey
from keyswitch.usage import CRSUsageClient, OpenAIUsageClient, open_usage_client, register_usage_client
from keyswitch.usage._client import _KINDS

if TYPE_CHECKING:
    from collections.abc import Iterator

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _stamp(days_ago: float) -> int:
    return int((NOW - timedelta(days=days_ago)).timestamp())


class FakeUsageAPI:
    """Serves canned usage payloads and records what was asked."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.payload: Any = {}
        self.respond_with: httpx.Response | None = None
        self.raise_exc: type[Exception] | None = None
        self.gate: threading.Event | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.gate is not None:
            self.gate.wait(5)
        if self.raise_exc is not None:
            raise self.raise_exc("boom", request=request)
        if self.respond_with is not None:
            return self.respond_with
        return httpx.Response(200, json=self.payload)


@pytest.fixture()
def api() -> FakeUsageAPI:
    return FakeUsageAPI()


@pytest.fixture()
def openai(api: FakeUsageAPI) -> Iterator[OpenAIUsageClient]:
    with OpenAIUsageClient(transport=httpx.MockTransport(api.handler), clock=lambda: NOW) as client:
        yield client


@pytest.fixture()
def crs(api: FakeUsageAPI) -> Iterator[CRSUsageClient]:
    with CRSUsageClient(transport=httpx.MockTransport(api.handler)) as client:
        yield client


def _key(**kwargs: Any) -> ApiKey:
    values: dict[str, Any] = {"id": "7", "name": "main", "secret": "sk-secret", "quota_limit": 50.0}
    values.update(kwargs)
    return ApiKey(**values)


# region: OpenAI


class TestOpenAI:
    def test_request_shape(self, openai: OpenAIUsageClient, api: FakeUsageAPI) -> None:
        openai.fetch_usage(_key(endpoint="https://api.fake/v1/"))
        (request,) = api.requests
        assert request.method == "GET"
        assert str(request.url) == "https://api.fake/v1/usage?date=2025-03-10"
        assert request.headers["Authorization"] == "Bearer sk-secret"

    def test_blank_endpoint_uses_default(self, openai: OpenAIUsageClient, api: FakeUsageAPI) -> None:
        openai.fetch_usage(_key(endpoint=""))
        assert api.requests[0].url.host == "api.openai.com"
        assert api.requests[0].url.path == "/v1/usage"

    def test_totals(self, openai: OpenAIUsageClient, api: FakeUsageAPI) -> None:
        api.payload = {
            "object": "list",
            "total_usage": 100,
            "daily_costs": [
                {"timestamp": _stamp(0.5), "line_items": [{"name": "gpt", "cost": 1}, {"name": "emb", "cost": 2}]},
                {"timestamp": _stamp(3), "line_items": [{"name": "gpt", "cost": 4}]},
                {"timestamp": _stamp(20), "line_items": [{"name": "gpt", "cost": 8}]},
                {"timestamp": _stamp(40), "line_items": [{"name": "gpt", "cost": 16}]},
            ],
        }
        usage = openai.fetch_usage(_key())
        assert usage.used == 100.0
        assert usage.limit == 50.0
        assert usage.daily_total == 3.0
        assert usage.weekly_total == 7.0
        assert usage.monthly_total == 15.0
        assert usage.raw["response"]["object"] == "list"

    def test_missing_fields_count_as_zero(self, openai: OpenAIUsageClient, api: FakeUsageAPI) -> None:
        api.payload = {"object": "list"}
        usage = openai.fetch_usage(_key())
        assert (usage.used, usage.daily_total, usage.monthly_total) == (0.0, 0.0, 0.0)

    def test_non_numeric_usage(self, openai: OpenAIUsageClient, api: FakeUsageAPI) -> None:
        api.payload = {"total_usage": "12.5"}
        with pytest.raises(RemoteFailure, match="total_usage"):
            openai.fetch_usage(_key())

    def test_malformed_daily_costs(self, openai: OpenAIUsageClient, api: FakeUsageAPI) -> None:
        api.payload = {"total_usage": 1, "daily_costs": {"today": 1}}
        with pytest.raises(RemoteFailure, match="daily_costs"):
            openai.fetch_usage(_key())


# endregion

# region: CRS


class TestCRS:
    def test_totals(self, crs: CRSUsageClient, api: FakeUsageAPI) -> None:
        api.payload = {"total_usage": 12.5, "today_usage": 1.5, "week_usage": 4, "month_usage": 10}
        usage = crs.fetch_usage(_key(kind="crs", endpoint="https://relay.fake/"))
        assert str(api.requests[0].url) == "https://relay.fake/v1/dashboard/billing/usage"
        assert api.requests[0].headers["Authorization"] == "Bearer sk-secret"
        assert (usage.used, usage.limit) == (12.5, 50.0)
        assert (usage.daily_total, usage.weekly_total, usage.monthly_total) == (1.5, 4.0, 10.0)

    def test_blank_endpoint(self, crs: CRSUsageClient, api: FakeUsageAPI) -> None:
        with pytest.raises(InvalidInput) as exc_info:
            crs.fetch_usage(_key(kind="crs", endpoint=" "))
        assert exc_info.value.key == "7"
        assert api.requests == []


# endregion

# region: failures


class TestFailures:
    def test_rejected_secret(self, openai: OpenAIUsageClient, api: FakeUsageAPI) -> None:
        api.respond_with = httpx.Response(401, json={"error": "invalid api key"})
        with pytest.raises(AuthenticationFailed) as exc_info:
            openai.fetch_usage(_key())
        assert exc_info.value.key == "7"
        assert exc_info.value.operation == "fetch_usage"
        assert "sk-secret" not in str(exc_info.value)

    def test_missing_endpoint(self, openai: OpenAIUsageClient, api: FakeUsageAPI) -> None:
        api.respond_with = httpx.Response(404)
        with pytest.raises(NotFound):
            openai.fetch_usage(_key())

    def test_error_body_is_bounded(self, api: FakeUsageAPI) -> None:
        api.respond_with = httpx.Response(502, content=b"x" * 10_000)
        with OpenAIUsageClient(
            UsageOptions(error_body_limit=8), transport=httpx.MockTransport(api.handler)
        ) as client, pytest.raises(RemoteFailure) as exc_info:
            client.fetch_usage(_key())
        assert exc_info.value.status == 502
        assert exc_info.value.body == "x" * 8

    def test_malformed_json(self, crs: CRSUsageClient, api: FakeUsageAPI) -> None:
        api.respond_with = httpx.Response(200, content=b"<html>")
        with pytest.raises(RemoteFailure, match="JSON"):
            crs.fetch_usage(_key(kind="crs", endpoint="https://relay.fake"))

    def test_non_object_json(self, crs: CRSUsageClient, api: FakeUsageAPI) -> None:
        api.payload = [1, 2]
        with pytest.raises(RemoteFailure, match="object"):
            crs.fetch_usage(_key(kind="crs", endpoint="https://relay.fake"))

    def test_transport_error(self, openai: OpenAIUsageClient, api: FakeUsageAPI) -> None:
        api.raise_exc = httpx.ConnectError
        with pytest.raises(RemoteFailure) as exc_info:
            openai.fetch_usage(_key())
        assert exc_info.value.status is None

    def test_timeout(self, openai: OpenAIUsageClient, api: FakeUsageAPI) -> None:
        api.raise_exc = httpx.ReadTimeout
        with pytest.raises(DeadlineExceeded):
            openai.fetch_usage(_key())

    def test_cancel_interrupts_a_blocked_request(self, openai: OpenAIUsageClient, api: FakeUsageAPI) -> None:
        api.gate = threading.Event()
        ctx = Context()
        timer = threading.Timer(0.1, ctx.cancel)
        started = time.monotonic()
        timer.start()
        try:
            with pytest.raises(Canceled):
                openai.fetch_usage(_key(), ctx)
        finally:
            timer.cancel()
            api.gate.set()
        assert time.monotonic() - started < 1.0

    def test_canceled_before_the_request(self, openai: OpenAIUsageClient, api: FakeUsageAPI) -> None:
        ctx = Context()
        ctx.cancel()
        with pytest.raises(Canceled):
            openai.fetch_usage(_key(), ctx)
        assert api.requests == []


# endregion

# region: registry


class TestRegistry:
    def test_builtin_kinds(self) -> None:
        with open_usage_client("OpenAI") as client:
            assert isinstance(client, OpenAIUsageClient)
        with open_usage_client("crs") as client:
            assert isinstance(client, CRSUsageClient)

    def test_unsupported_kind(self) -> None:
        with pytest.raises(InvalidInput, match="gemini"):
            open_usage_client("gemini")

    def test_register_custom(self) -> None:
        class Custom(CRSUsageClient):
            pass

        register_usage_client("Relay", Custom)
        try:
            with open_usage_client("relay") as client:
                assert isinstance(client, Custom)
        finally:
            _KINDS.pop("relay", None)

    def test_invalid_options(self) -> None:
        with pytest.raises(ValueError, match="max_workers"):
            CRSUsageClient(UsageOptions(max_workers=0))


# endregion
