"""S3-compatible client using s3fs."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from keyswitch._context import Context
from keyswitch._errors import (
    AuthenticationFailed,
    DeadlineExceeded,
    InvalidInput,
    KeyswitchError,
    NotFound,
    RemoteFailure,
)
from keyswitch._models import utcnow
from keyswitch._profile import sanitize_object_key
from keyswitch.remote._client import RemoteClient, RemoteObject

if TYPE_CHECKING:
    from collections.abc import Iterator

    from keyswitch._config import RemoteOptions
    from keyswitch._models import RemoteSettings

log = logging.getLogger(__name__)


class S3Client(RemoteClient):
    """Snapshot transfer against an S3-compatible bucket.

    ``settings.api_url`` is used as the endpoint URL (e.g. for MinIO or the
    B2 S3 gateway); ``key_id``/``application_key`` are the access key pair.
    The bucket name doubles as the bucket id. Each s3fs call runs on a worker
    thread: cancelling the context or reaching its deadline returns control
    at once, while the abandoned call runs out in the background, bounded by
    ``http_timeout`` on the connect and read phases.

    :param client_options: Additional options passed to ``s3fs.S3FileSystem``.
    """

    def __init__(
        self,
        settings: RemoteSettings,
        options: RemoteOptions | None = None,
        *,
        region_name: str | None = None,
        client_options: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(settings, options)
        self._region_name = region_name
        self._client_options = client_options or {}
        self._fs_instance: Any = None

    @property
    def name(self) -> str:
        return "s3"

    # region: lazy filesystem

    @property
    def _fs(self) -> Any:
        if self._fs_instance is None:
            import s3fs  # type: ignore[import-untyped]

            opts: dict[str, Any] = dict(self._client_options)
            if self._settings.api_url:
                opts["endpoint_url"] = self._settings.api_url
            opts["key"] = self._settings.key_id
            opts["secret"] = self._settings.application_key
            if self._region_name is not None:
                client_kwargs: dict[str, Any] = opts.setdefault("client_kwargs", {})
                client_kwargs["region_name"] = self._region_name
            config_kwargs: dict[str, Any] = opts.setdefault("config_kwargs", {})
            config_kwargs.setdefault("connect_timeout", self._options.http_timeout)
            config_kwargs.setdefault("read_timeout", self._options.http_timeout)
            opts.setdefault("anon", False)
            self._fs_instance = s3fs.S3FileSystem(**opts)
        return self._fs_instance

    # endregion

    # region: error mapping

    @contextmanager
    def _errors(self, ctx: Context, operation: str, key: str | None = None) -> Iterator[None]:
        """Check the context around a call and map s3fs/botocore exceptions."""
        ctx.check(operation, key)
        try:
            yield
        except KeyswitchError:
            raise
        except FileNotFoundError:
            raise NotFound(f"{operation} failed: not found", key=key, operation=operation) from None
        except PermissionError as exc:
            raise AuthenticationFailed(f"{operation} failed: access denied", key=key, operation=operation) from exc
        except Exception as exc:
            raise self._classify_error(exc, operation, key) from exc
        ctx.check(operation, key)

    @staticmethod
    def _classify_error(exc: Exception, operation: str, key: str | None) -> KeyswitchError:
        """Classify an unknown exception into a keyswitch error type."""
        msg = str(exc).lower()
        if "404" in msg or "nosuchkey" in msg or "nosuchbucket" in msg or "not found" in msg:
            return NotFound(f"{operation} failed: not found", key=key, operation=operation)
        if any(kw in msg for kw in ("403", "accessdenied", "invalidaccesskeyid", "signaturedoesnotmatch")):
            return AuthenticationFailed(f"{operation} failed: {exc}", key=key, operation=operation)
        if "timeout" in msg or "timed out" in msg:
            return DeadlineExceeded(f"{operation} timed out", key=key, operation=operation)
        return RemoteFailure(f"{operation} failed: {exc}", key=key, operation=operation)

    def _path(self, name: str) -> str:
        return f"{self._settings.bucket_name}/{name}"

    def _object_key(self, key: str) -> str:
        return sanitize_object_key(key, self._options.fallback_object_key)

    # endregion

    def prepare(self, ctx: Context | None = None) -> None:
        ctx = ctx or Context.background()
        bucket = self._settings.bucket_name
        with self._errors(ctx, "prepare", bucket):
            fs = self._fs
            if not self._run(ctx, "prepare", bucket, lambda: fs.exists(bucket)):
                raise NotFound(f"Bucket not found: {bucket}", key=bucket, operation="prepare")
        self._settings.bucket_id = bucket

    def upload(self, key: str, data: bytes, ctx: Context | None = None) -> None:
        if not data:
            raise InvalidInput("Upload payload is empty", key=key, operation="upload")
        ctx = ctx or Context.background()
        name = self._object_key(key)
        self.prepare(ctx)
        path = self._path(name)
        with self._errors(ctx, "upload", name):
            fs = self._fs
            self._run(ctx, "upload", name, lambda: fs.pipe_file(path, data))
        self._settings.last_sync_at = utcnow()
        log.debug("Uploaded %d bytes to %s", len(data), name)

    def download(self, key: str, ctx: Context | None = None) -> bytes:
        ctx = ctx or Context.background()
        name = self._object_key(key)
        path = self._path(name)
        with self._errors(ctx, "download", name):
            fs = self._fs
            return bytes(self._run(ctx, "download", name, lambda: fs.cat_file(path)))

    def delete(self, key: str, ctx: Context | None = None) -> None:
        ctx = ctx or Context.background()
        name = self._object_key(key)
        self.prepare(ctx)
        path = self._path(name)

        def remove(fs: Any) -> bool:
            fs.invalidate_cache(path)
            if not fs.exists(path):
                return False
            fs.rm(path)
            return True

        try:
            with self._errors(ctx, "delete", name):
                fs = self._fs
                removed = self._run(ctx, "delete", name, lambda: remove(fs))
        except NotFound:
            log.debug("%s disappeared before it could be deleted", name)
            return
        if not removed:
            log.debug("Nothing to delete at %s", name)

    def list_files(self, prefix: str = "", ctx: Context | None = None) -> list[RemoteObject]:
        ctx = ctx or Context.background()
        bucket = self._settings.bucket_name

        def listing(fs: Any) -> list[dict[str, Any]]:
            fs.invalidate_cache(bucket)
            return list(fs.ls(bucket, detail=True))

        with self._errors(ctx, "list_files", prefix or None):
            fs = self._fs
            entries = self._run(ctx, "list_files", prefix or None, lambda: listing(fs))
        objects = []
        for info in entries:
            if info.get("type") != "file":
                continue
            name = str(info["name"])[len(bucket) + 1 :]
            if not name.startswith(prefix):
                continue
            modified = info.get("LastModified")
            if isinstance(modified, datetime) and modified.tzinfo is None:
                modified = modified.replace(tzinfo=timezone.utc)
            objects.append(
                RemoteObject(
                    name=name,
                    size=int(info.get("size", info.get("Size", 0)) or 0),
                    file_id=str(info.get("ETag", "")).strip('"'),
                    modified_at=modified if isinstance(modified, datetime) else None,
                )
            )
        return objects

    def close(self) -> None:
        super().close()
        if self._fs_instance is not None:
            self._fs_instance.clear_instance_cache()
            self._fs_instance = None
