"""Snapshot sync workflow: push, pull and delete registry snapshots against a bucket."""

from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from keyswitch._config import SyncConfig
from keyswitch._context import Context
from keyswitch._errors import InvalidInput, StorageFailure
from keyswitch._models import RemoteSettings, utcnow
from keyswitch._profile import DEFAULT_PROFILE, normalize_profile, object_name, snapshot_path
from keyswitch._snapshot import Snapshot, save_snapshot_file
from keyswitch.remote._client import DEFAULT_PROVIDER, open_client

if TYPE_CHECKING:
    from collections.abc import Callable

    from keyswitch._config import RemoteOptions
    from keyswitch._manager import KeyManager
    from keyswitch._models import Registry
    from keyswitch.remote._client import RemoteClient

log = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class SyncResult:
    """Outcome of one sync operation.

    :param profile: Normalized profile the operation ran under.
    :param object_name: Remote object that was written, read or deleted.
    :param snapshot_path: Local snapshot copy for the profile.
    :param key_count: Number of keys in the transferred snapshot.
    """

    profile: str
    object_name: str
    snapshot_path: Path
    key_count: int = 0


class RemoteSync:
    """Snapshot sync between a :class:`KeyManager` and a remote bucket.

    Every operation works on a copy of the registry taken before any network
    call, so the manager lock is never held during I/O. Results are written
    back through ``replace_config`` followed by ``save``. Concurrent pushes
    from two machines to one profile race with last-write-wins semantics.

    :param manager: A loaded key manager.
    :param config: Timeouts and remote tuning.
    :param client_factory: Builds a remote client from settings; defaults to
        the provider registry.
    :param snapshot_dir: Directory for local snapshot copies. Defaults to
        ``snapshots`` next to the registry file.
    """

    def __init__(
        self,
        manager: KeyManager,
        config: SyncConfig | None = None,
        client_factory: Callable[[RemoteSettings, RemoteOptions], RemoteClient] = open_client,
        *,
        snapshot_dir: str | os.PathLike[str] | None = None,
    ) -> None:
        self._manager = manager
        self._config = config or SyncConfig()
        self._config.validate()
        self._client_factory = client_factory
        self._snapshot_dir = Path(snapshot_dir) if snapshot_dir is not None else None

    def __repr__(self) -> str:
        return f"RemoteSync(manager={self._manager!r})"

    # region: helpers

    def snapshot_path(self, profile: str) -> Path:
        """Local snapshot copy for ``profile``."""
        if self._snapshot_dir is not None:
            return self._snapshot_dir / f"{profile}.json"
        return snapshot_path(self._manager.config_path, profile, self._config.snapshot_dirname)

    def _enabled_settings(self, registry: Registry, operation: str) -> RemoteSettings:
        settings = registry.remote
        if settings is None or not settings.enabled:
            raise InvalidInput("Remote sync is not configured; run init first", operation=operation)
        settings.validate()
        return settings

    def _context(self, ctx: Context | None, timeout: float) -> Context:
        return ctx if ctx is not None else Context(timeout)

    def _commit(self, registry: Registry) -> None:
        self._manager.replace_config(registry)
        self._manager.save()

    # endregion

    def init(
        self,
        key_id: str,
        application_key: str,
        bucket_name: str,
        profile: str = DEFAULT_PROFILE,
        *,
        provider: str = DEFAULT_PROVIDER,
        api_url: str | None = None,
        ctx: Context | None = None,
    ) -> SyncResult:
        """Store credentials, verify them against the bucket and enable sync.

        Blank credentials or bucket fall back to the values already stored.

        :raises InvalidInput: If credentials or bucket are still blank.
        :raises AuthenticationFailed: If the credentials are rejected.
        :raises NotFound: If the bucket does not exist.
        """
        registry = self._manager.config()
        settings = registry.remote or RemoteSettings()
        registry.remote = settings

        key_id = key_id.strip() or settings.key_id.strip()
        application_key = application_key.strip() or settings.application_key.strip()
        bucket_name = bucket_name.strip() or settings.bucket_name.strip()
        if not key_id or not application_key:
            raise InvalidInput("Remote key id and application key are required", operation="init")
        if not bucket_name:
            raise InvalidInput("Remote bucket name is required", operation="init")

        if bucket_name != settings.bucket_name or provider != settings.provider:
            settings.bucket_id = ""
        settings.provider = provider
        settings.key_id = key_id
        settings.application_key = application_key
        settings.bucket_name = bucket_name
        if api_url is not None:
            settings.api_url = api_url
        name = normalize_profile(profile, DEFAULT_PROFILE)
        settings.object_key = name
        settings.enabled = True

        with self._client_factory(settings, self._config.remote) as client:
            client.prepare(self._context(ctx, self._config.prepare_timeout))

        self._commit(registry)
        log.debug("Initialized %s sync for bucket %s, profile %s", provider, bucket_name, name)
        return SyncResult(profile=name, object_name=object_name(name), snapshot_path=self.snapshot_path(name))

    def push(self, profile: str | None = None, ctx: Context | None = None) -> SyncResult:
        """Upload a snapshot of the current keys as ``<profile>.json``.

        A local copy is written to the snapshot directory first.

        :raises InvalidInput: If sync is not enabled.
        """
        registry = self._manager.config()
        settings = self._enabled_settings(registry, "push")
        name = normalize_profile(profile, settings.object_key)
        target = object_name(name)

        snapshot = Snapshot.build(registry)
        data = snapshot.marshal()
        local = self.snapshot_path(name)
        save_snapshot_file(local, snapshot)

        ctx = self._context(ctx, self._config.transfer_timeout)
        with self._client_factory(settings, self._config.remote) as client:
            client.prepare(ctx)
            client.upload(target, data, ctx)

        settings.object_key = name
        settings.enabled = True
        settings.last_sync_at = utcnow()
        self._commit(registry)
        log.debug("Pushed %d keys to %s", len(snapshot.keys), target)
        return SyncResult(profile=name, object_name=target, snapshot_path=local, key_count=len(snapshot.keys))

    def pull(self, profile: str | None = None, ctx: Context | None = None) -> SyncResult:
        """Replace the local keys and active key with the remote snapshot.

        :raises InvalidInput: If sync is not enabled.
        :raises NotFound: If the profile has no remote snapshot.
        :raises CorruptData: If the downloaded bytes are not a snapshot.
        """
        registry = self._manager.config()
        settings = self._enabled_settings(registry, "pull")
        name = normalize_profile(profile, settings.object_key)
        target = object_name(name)

        ctx = self._context(ctx, self._config.transfer_timeout)
        with self._client_factory(settings, self._config.remote) as client:
            client.prepare(ctx)
            data = client.download(target, ctx)

        snapshot = Snapshot.unmarshal(data)
        local = self.snapshot_path(name)
        save_snapshot_file(local, snapshot)

        registry.keys = list(snapshot.keys)
        registry.active_id = snapshot.active_id
        settings.object_key = name
        settings.enabled = True
        settings.last_sync_at = utcnow()
        self._commit(registry)
        log.debug("Pulled %d keys from %s", len(snapshot.keys), target)
        return SyncResult(profile=name, object_name=target, snapshot_path=local, key_count=len(snapshot.keys))

    def delete(self, profile: str | None = None, ctx: Context | None = None) -> SyncResult:
        """Delete the remote snapshot and its local copy.

        A missing remote object or local file is not an error. Deleting the
        configured profile disables sync.

        :raises InvalidInput: If sync is not enabled.
        :raises StorageFailure: If the local copy exists but cannot be removed.
        """
        registry = self._manager.config()
        settings = self._enabled_settings(registry, "delete")
        name = normalize_profile(profile, settings.object_key)
        target = object_name(name)

        ctx = self._context(ctx, self._config.transfer_timeout)
        with self._client_factory(settings, self._config.remote) as client:
            client.prepare(ctx)
            client.delete(target, ctx)

        local = self.snapshot_path(name)
        try:
            local.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageFailure(f"Cannot remove snapshot: {exc}", key=str(local), operation="delete") from exc

        if settings.object_key == name:
            settings.enabled = False
            settings.object_key = ""
            settings.last_sync_at = None
        self._commit(registry)
        log.debug("Deleted %s", target)
        return SyncResult(profile=name, object_name=target, snapshot_path=local)
