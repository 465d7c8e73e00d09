"""RemoteClient abstract base class and the provider registry."""

from __future__ import annotations

import abc
import dataclasses
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

from keyswitch._config import RemoteOptions
from keyswitch._context import call_interruptibly
from keyswitch._errors import InvalidInput

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from types import TracebackType

    from keyswitch._context import Context
    from keyswitch._models import RemoteSettings

DEFAULT_PROVIDER = "b2"
_MAX_WORKERS = 4

T = TypeVar("T")


@dataclasses.dataclass(frozen=True)
class RemoteObject:
    """Metadata of one stored object.

    :param name: Object key inside the bucket.
    :param size: Size in bytes.
    :param file_id: Provider file/version id, if the provider has one.
    :param modified_at: Upload time, if reported.
    """

    name: str
    size: int
    file_id: str = ""
    modified_at: datetime | None = None


class RemoteClient(abc.ABC):
    """Minimal object-store client for snapshot sync.

    Construction validates credentials but never touches the network.
    Session state is cached per instance; ``settings.bucket_id`` and
    ``settings.last_sync_at`` are updated in place so callers can persist them.

    :param settings: Credentials and bucket name.
    :param options: Timeouts and endpoint tuning.
    :raises InvalidInput: If key id, secret or bucket name is blank.
    """

    def __init__(self, settings: RemoteSettings, options: RemoteOptions | None = None) -> None:
        if settings is None:
            raise InvalidInput("Remote settings are missing", operation="connect")
        if not settings.key_id.strip() or not settings.application_key.strip():
            raise InvalidInput("Remote key id and secret must not be blank", operation="connect")
        if not settings.bucket_name.strip():
            raise InvalidInput("Remote bucket name must not be blank", operation="connect")
        self._settings = settings
        self._options = options or RemoteOptions()
        self._options.validate()
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g. ``'b2'``, ``'s3'``)."""

    @property
    def settings(self) -> RemoteSettings:
        return self._settings

    def __repr__(self) -> str:
        return f"{type(self).__name__}(bucket={self._settings.bucket_name!r})"

    @abc.abstractmethod
    def prepare(self, ctx: Context | None = None) -> None:
        """Authorize and resolve the bucket. Idempotent.

        :raises AuthenticationFailed: If the credentials are rejected.
        :raises NotFound: If the bucket does not exist.
        """

    @abc.abstractmethod
    def upload(self, key: str, data: bytes, ctx: Context | None = None) -> None:
        """Store ``data`` under the sanitized ``key``, replacing any previous object.

        :raises InvalidInput: If ``data`` is empty.
        :raises RemoteFailure: If the store rejects the upload.
        """

    @abc.abstractmethod
    def download(self, key: str, ctx: Context | None = None) -> bytes:
        """Fetch the object stored under the sanitized ``key``.

        :raises NotFound: If no such object exists.
        """

    @abc.abstractmethod
    def delete(self, key: str, ctx: Context | None = None) -> None:
        """Delete the object under the sanitized ``key``; a missing object is a no-op."""

    @abc.abstractmethod
    def list_files(self, prefix: str = "", ctx: Context | None = None) -> list[RemoteObject]:
        """List objects whose name starts with ``prefix``."""

    def _run(
        self,
        ctx: Context,
        operation: str,
        key: str | None,
        fn: Callable[[], T],
        *,
        abort: Callable[[], None] | None = None,
    ) -> T:
        """Run one blocking network call so that cancellation or the deadline interrupts the wait."""
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=_MAX_WORKERS, thread_name_prefix=f"keyswitch-{self.name}"
                )
            executor = self._executor
        return call_interruptibly(executor, ctx, operation, key, fn, abort=abort)

    def close(self) -> None:
        """Release resources. Subclasses extend this and call ``super().close()``."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> RemoteClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


# Provider factory registry: maps provider names to client classes.
_PROVIDERS: dict[str, type[RemoteClient]] = {}


def register_provider(name: str, cls: type[RemoteClient]) -> None:
    """Register a client class for a provider name.

    :param name: Provider identifier as stored in ``RemoteSettings.provider``.
    :param cls: The client class to instantiate.
    """
    _PROVIDERS[name.lower()] = cls


def _register_builtin_providers() -> None:
    from keyswitch.remote._b2 import B2Client
    from keyswitch.remote._s3 import S3Client

    _PROVIDERS.setdefault("b2", B2Client)
    _PROVIDERS.setdefault("s3", S3Client)


def open_client(settings: RemoteSettings, options: RemoteOptions | None = None) -> RemoteClient:
    """Instantiate the client registered for ``settings.provider`` (``"b2"`` if blank).

    :raises InvalidInput: If the provider is unknown or the settings are incomplete.
    """
    _register_builtin_providers()
    provider = (settings.provider or DEFAULT_PROVIDER).strip().lower()
    if provider not in _PROVIDERS:
        raise InvalidInput(
            f"Unknown remote provider '{provider}'. Registered providers: {sorted(_PROVIDERS)}",
            operation="connect",
        )
    return _PROVIDERS[provider](settings, options)
