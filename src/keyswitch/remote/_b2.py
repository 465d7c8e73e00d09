"""Backblaze B2 client for the native B2 HTTP API."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from keyswitch._context import Context
from keyswitch._errors import (
    AuthenticationFailed,
    DeadlineExceeded,
    InvalidInput,
    NotFound,
    RemoteFailure,
)
from keyswitch._models import utcnow
from keyswitch._profile import sanitize_object_key
from keyswitch.remote._client import RemoteClient, RemoteObject

if TYPE_CHECKING:
    from collections.abc import Callable

    from keyswitch._config import RemoteOptions
    from keyswitch._models import RemoteSettings

log = logging.getLogger(__name__)

_API_PREFIX = "/b2api/v2"
_LIST_PAGE_SIZE = 1000


class B2Client(RemoteClient):
    """Snapshot transfer against a Backblaze B2 bucket.

    The account authorization is cached until shortly before its assumed
    expiry; the resolved bucket id is cached in ``settings.bucket_id``.

    :param settings: Key id, application key and bucket name.
    :param options: Timeouts, authorize endpoint and error-body budget.
    :param transport: Optional httpx transport (e.g. ``httpx.MockTransport``).
    :param clock: Monotonic clock used for token expiry.
    """

    def __init__(
        self,
        settings: RemoteSettings,
        options: RemoteOptions | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(settings, options)
        self._http = httpx.Client(transport=transport, timeout=self._options.http_timeout)
        self._clock = clock
        self._lock = threading.Lock()
        self._account_id = ""
        self._auth_token = ""
        self._api_url = ""
        self._download_url = ""
        self._auth_expires_at = 0.0

    @property
    def name(self) -> str:
        return "b2"

    # region: transport helpers

    def _read_error_body(self, response: httpx.Response) -> str:
        limit = self._options.error_body_limit
        collected = bytearray()
        for chunk in response.iter_bytes():
            collected.extend(chunk)
            if len(collected) >= limit:
                break
        return bytes(collected[:limit]).decode("utf-8", errors="replace").strip()

    def _send(
        self,
        ctx: Context,
        operation: str,
        method: str,
        url: str,
        *,
        key: str | None = None,
        **kwargs: Any,
    ) -> bytes:
        """Issue one request and return the body of a 2xx response.

        The exchange runs on a worker thread. Cancelling ``ctx`` or reaching
        its deadline returns control at once and closes the live response.

        :raises NotFound: On 404.
        :raises RemoteFailure: On any other non-2xx status or transport error.
        :raises DeadlineExceeded: If the call times out.
        :raises Canceled: If ``ctx`` is canceled while the call is in flight.
        """
        timeout = ctx.timeout_for(self._options.http_timeout)
        live: list[httpx.Response] = []

        def exchange() -> bytes:
            with self._http.stream(method, url, timeout=timeout, **kwargs) as response:
                live.append(response)
                if not response.is_success:
                    body = self._read_error_body(response)
                    if response.status_code == 404:
                        raise NotFound(f"{operation} failed: not found", key=key, operation=operation)
                    raise RemoteFailure(
                        f"{operation} failed", key=key, operation=operation, status=response.status_code, body=body
                    )
                chunks = []
                for chunk in response.iter_bytes():
                    ctx.check(operation, key)
                    chunks.append(chunk)
            return b"".join(chunks)

        def abort() -> None:
            for response in live:
                response.close()

        try:
            return self._run(ctx, operation, key, exchange, abort=abort)
        except httpx.TimeoutException as exc:
            raise DeadlineExceeded(f"{operation} timed out", key=key, operation=operation) from exc
        except httpx.TransportError as exc:
            raise RemoteFailure(f"{operation} failed: {exc}", key=key, operation=operation) from exc

    @staticmethod
    def _decode(body: bytes, operation: str, key: str | None = None) -> dict[str, Any]:
        try:
            result = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise RemoteFailure(f"{operation} returned malformed JSON", key=key, operation=operation) from exc
        if not isinstance(result, dict):
            raise RemoteFailure(f"{operation} returned an unexpected payload", key=key, operation=operation)
        return result

    def _call(self, ctx: Context, operation: str, payload: dict[str, Any], *, key: str | None = None) -> dict[str, Any]:
        """POST a JSON payload to ``/b2api/v2/<operation>`` with the account token."""
        with self._lock:
            api_url, token = self._api_url, self._auth_token
        body = self._send(
            ctx,
            operation,
            "POST",
            f"{api_url}{_API_PREFIX}/{operation}",
            key=key,
            headers={"Authorization": token},
            json=payload,
        )
        return self._decode(body, operation, key)

    # endregion

    # region: session

    def _ensure_authorized(self, ctx: Context) -> None:
        with self._lock:
            if self._auth_token and self._auth_expires_at - self._clock() > self._options.refresh_margin:
                return
            try:
                body = self._send(
                    ctx,
                    "b2_authorize_account",
                    "GET",
                    self._options.authorize_url,
                    auth=(self._settings.key_id, self._settings.application_key),
                )
            except (NotFound, RemoteFailure) as exc:
                status = getattr(exc, "status", 404)
                if status is None:
                    raise
                raise AuthenticationFailed(
                    f"Authorization rejected with status {status}: {getattr(exc, 'body', '')}",
                    key=self._settings.key_id,
                    operation="b2_authorize_account",
                ) from exc
            result = self._decode(body, "b2_authorize_account")
            api_url = self._settings.api_url or str(result.get("apiUrl") or "")
            download_url = self._settings.download_url or str(result.get("downloadUrl") or "")
            account_id = str(result.get("accountId") or "")
            token = str(result.get("authorizationToken") or "")
            if not (account_id and token and api_url and download_url):
                raise AuthenticationFailed(
                    "Authorization response is incomplete", key=self._settings.key_id, operation="b2_authorize_account"
                )
            self._account_id = account_id
            self._auth_token = token
            self._api_url = api_url.rstrip("/")
            self._download_url = download_url.rstrip("/")
            self._auth_expires_at = self._clock() + self._options.token_lifetime
            log.debug("Authorized B2 account %s", account_id)

    def _ensure_bucket(self, ctx: Context) -> str:
        with self._lock:
            if self._settings.bucket_id:
                return self._settings.bucket_id
            account_id = self._account_id
        wanted = self._settings.bucket_name
        result = self._call(ctx, "b2_list_buckets", {"accountId": account_id, "bucketName": wanted}, key=wanted)
        for bucket in result.get("buckets") or []:
            if str(bucket.get("bucketName", "")).casefold() == wanted.casefold():
                with self._lock:
                    self._settings.bucket_id = str(bucket.get("bucketId", ""))
                    log.debug("Resolved bucket %s to %s", wanted, self._settings.bucket_id)
                    return self._settings.bucket_id
        raise NotFound(f"Bucket not found: {wanted}", key=wanted, operation="b2_list_buckets")

    def prepare(self, ctx: Context | None = None) -> None:
        ctx = ctx or Context.background()
        self._ensure_authorized(ctx)
        self._ensure_bucket(ctx)

    # endregion

    # region: object operations

    def _object_key(self, key: str) -> str:
        return sanitize_object_key(key, self._options.fallback_object_key)

    def upload(self, key: str, data: bytes, ctx: Context | None = None) -> None:
        if not data:
            raise InvalidInput("Upload payload is empty", key=key, operation="upload")
        ctx = ctx or Context.background()
        name = self._object_key(key)
        self.prepare(ctx)
        bucket_id = self._ensure_bucket(ctx)
        target = self._call(ctx, "b2_get_upload_url", {"bucketId": bucket_id}, key=name)
        upload_url = str(target.get("uploadUrl") or "")
        upload_token = str(target.get("authorizationToken") or "")
        if not upload_url or not upload_token:
            raise RemoteFailure("b2_get_upload_url response is incomplete", key=name, operation="b2_get_upload_url")

        self._send(
            ctx,
            "b2_upload_file",
            "POST",
            upload_url,
            key=name,
            headers={
                "Authorization": upload_token,
                "X-Bz-File-Name": quote(name, safe=""),
                "Content-Type": "application/json",
                "X-Bz-Content-Sha1": hashlib.sha1(data).hexdigest(),  # noqa: S324
            },
            content=data,
        )
        with self._lock:
            self._settings.last_sync_at = utcnow()
        log.debug("Uploaded %d bytes to %s", len(data), name)

    def download(self, key: str, ctx: Context | None = None) -> bytes:
        ctx = ctx or Context.background()
        name = self._object_key(key)
        self._ensure_authorized(ctx)
        with self._lock:
            url = f"{self._download_url}/file/{quote(self._settings.bucket_name, safe='')}/{name}"
            token = self._auth_token
        return self._send(ctx, "download", "GET", url, key=name, headers={"Authorization": token})

    def _find_file_id(self, ctx: Context, bucket_id: str, name: str) -> str | None:
        result = self._call(
            ctx,
            "b2_list_file_names",
            {"bucketId": bucket_id, "startFileName": name, "prefix": name, "maxFileCount": 10},
            key=name,
        )
        for entry in result.get("files") or []:
            if entry.get("fileName") == name:
                return str(entry.get("fileId", ""))
        return None

    def delete(self, key: str, ctx: Context | None = None) -> None:
        ctx = ctx or Context.background()
        name = self._object_key(key)
        self.prepare(ctx)
        bucket_id = self._ensure_bucket(ctx)
        file_id = self._find_file_id(ctx, bucket_id, name)
        if not file_id:
            log.debug("Nothing to delete at %s", name)
            return
        try:
            self._call(ctx, "b2_delete_file_version", {"fileName": name, "fileId": file_id}, key=name)
        except NotFound:
            log.debug("%s disappeared before it could be deleted", name)
            return
        log.debug("Deleted %s", name)

    def list_files(self, prefix: str = "", ctx: Context | None = None) -> list[RemoteObject]:
        ctx = ctx or Context.background()
        self.prepare(ctx)
        bucket_id = self._ensure_bucket(ctx)
        objects: list[RemoteObject] = []
        start: str | None = None
        while True:
            payload: dict[str, Any] = {"bucketId": bucket_id, "maxFileCount": _LIST_PAGE_SIZE}
            if prefix:
                payload["prefix"] = prefix
            if start:
                payload["startFileName"] = start
            result = self._call(ctx, "b2_list_file_names", payload, key=prefix or None)
            for entry in result.get("files") or []:
                uploaded = entry.get("uploadTimestamp")
                objects.append(
                    RemoteObject(
                        name=str(entry.get("fileName", "")),
                        size=int(entry.get("contentLength") or 0),
                        file_id=str(entry.get("fileId", "")),
                        modified_at=(
                            datetime.fromtimestamp(uploaded / 1000, tz=timezone.utc) if uploaded else None
                        ),
                    )
                )
            start = result.get("nextFileName")
            if not start:
                return objects

    # endregion

    def close(self) -> None:
        super().close()
        self._http.close()

