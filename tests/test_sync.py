"""Tests for the RemoteSync init/push/pull/delete workflow."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from keyswitch._config import RemoteOptions, SyncConfig
from keyswitch._context import Context
from keyswitch._errors import DeadlineExceeded, InvalidInput, NotFound
from keyswitch._manager import KeyManager
from keyswitch._models import ApiKey, RemoteSettings
from keyswitch._snapshot import Snapshot, load_snapshot_file
from keyswitch._sync import RemoteSync
from keyswitch.remote._client import RemoteClient, RemoteObject
from keyswitch.storage._file import FileStorage

if TYPE_CHECKING:
    from pathlib import Path


class FakeBucket:
    """Objects shared by every client created for one test."""

    def __init__(self, name: str = "keys") -> None:
        self.name = name
        self.objects: dict[str, bytes] = {}
        self.calls: list[str] = []
        self.clients: list[FakeClient] = []


class FakeClient(RemoteClient):
    def __init__(self, settings: RemoteSettings, options: RemoteOptions | None, bucket: FakeBucket) -> None:
        super().__init__(settings, options)
        self._bucket = bucket
        self.closed = False
        bucket.clients.append(self)

    @property
    def name(self) -> str:
        return "fake"

    def prepare(self, ctx: Context | None = None) -> None:
        (ctx or Context.background()).check("prepare")
        self._bucket.calls.append("prepare")
        if self._settings.bucket_name != self._bucket.name:
            raise NotFound("no bucket", key=self._settings.bucket_name, operation="prepare")
        self._settings.bucket_id = f"id-{self._bucket.name}"

    def upload(self, key: str, data: bytes, ctx: Context | None = None) -> None:
        (ctx or Context.background()).check("upload", key)
        self._bucket.calls.append(f"upload:{key}")
        self._bucket.objects[key] = data

    def download(self, key: str, ctx: Context | None = None) -> bytes:
        self._bucket.calls.append(f"download:{key}")
        if key not in self._bucket.objects:
            raise NotFound("missing", key=key, operation="download")
        return self._bucket.objects[key]

    def delete(self, key: str, ctx: Context | None = None) -> None:
        self._bucket.calls.append(f"delete:{key}")
        self._bucket.objects.pop(key, None)

    def list_files(self, prefix: str = "", ctx: Context | None = None) -> list[RemoteObject]:
        return [RemoteObject(name=k, size=len(v)) for k, v in self._bucket.objects.items() if k.startswith(prefix)]

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def bucket() -> FakeBucket:
    return FakeBucket()


@pytest.fixture()
def file_manager(tmp_path: Path) -> KeyManager:
    m = KeyManager(FileStorage(tmp_path / "config.json"))
    m.load()
    m.add_key(ApiKey(name="work", secret="sk-work"))
    m.add_key(ApiKey(name="home", secret="sk-home"))
    m.save()
    return m


def _sync(manager: KeyManager, bucket: FakeBucket, **kwargs: object) -> RemoteSync:
    return RemoteSync(manager, client_factory=lambda s, o: FakeClient(s, o, bucket), **kwargs)  # type: ignore[arg-type]


def _init(sync: RemoteSync, profile: str = "Laptop") -> None:
    sync.init("key-id", "app-key", "keys", profile)


# region: init


class TestInit:
    def test_enables_and_persists(self, file_manager: KeyManager, bucket: FakeBucket, tmp_path: Path) -> None:
        result = _sync(file_manager, bucket).init(" key-id ", "app-key", "keys", "Laptop")
        assert result.profile == "laptop"
        assert result.object_name == "laptop.json"
        assert result.snapshot_path == tmp_path / "snapshots" / "laptop.json"

        stored = json.loads((tmp_path / "config.json").read_text())["remote"]
        assert stored["enabled"] is True
        assert stored["provider"] == "b2"
        assert stored["key_id"] == "key-id"
        assert stored["bucket_id"] == "id-keys"
        assert stored["object_key"] == "laptop"
        assert stored["sync_token"]
        assert bucket.calls == ["prepare"]
        assert all(c.closed for c in bucket.clients)

    def test_blank_credentials_fall_back_to_stored(self, file_manager: KeyManager, bucket: FakeBucket) -> None:
        sync = _sync(file_manager, bucket)
        _init(sync)
        sync.init("", "", "", "other")
        remote = file_manager.config().remote
        assert remote is not None
        assert (remote.key_id, remote.application_key, remote.bucket_name) == ("key-id", "app-key", "keys")
        assert remote.object_key == "other"

    @pytest.mark.parametrize(("key_id", "secret", "bucket_name"), [("", "s", "b"), ("k", " ", "b"), ("k", "s", "")])
    def test_missing_values(
        self, file_manager: KeyManager, bucket: FakeBucket, key_id: str, secret: str, bucket_name: str
    ) -> None:
        with pytest.raises(InvalidInput):
            _sync(file_manager, bucket).init(key_id, secret, bucket_name)
        assert bucket.calls == []

    def test_unknown_bucket_leaves_registry_untouched(self, file_manager: KeyManager, bucket: FakeBucket) -> None:
        with pytest.raises(NotFound):
            _sync(file_manager, bucket).init("k", "s", "elsewhere")
        remote = file_manager.config().remote
        assert remote is not None
        assert not remote.enabled


# endregion

# region: push / pull / delete


class TestPush:
    def test_requires_init(self, file_manager: KeyManager, bucket: FakeBucket) -> None:
        with pytest.raises(InvalidInput):
            _sync(file_manager, bucket).push()

    def test_uploads_snapshot_and_local_copy(self, file_manager: KeyManager, bucket: FakeBucket) -> None:
        sync = _sync(file_manager, bucket)
        _init(sync)
        result = sync.push()

        assert result.object_name == "laptop.json"
        assert result.key_count == 2
        snap = Snapshot.unmarshal(bucket.objects["laptop.json"])
        assert [k.name for k in snap.keys] == ["work", "home"]
        assert snap.active_id == "1"
        assert load_snapshot_file(result.snapshot_path) == snap

        remote = file_manager.config().remote
        assert remote is not None
        assert remote.last_sync_at is not None

    def test_explicit_profile_becomes_current(self, file_manager: KeyManager, bucket: FakeBucket) -> None:
        sync = _sync(file_manager, bucket)
        _init(sync)
        sync.push("Office PC")
        assert "office-pc.json" in bucket.objects
        remote = file_manager.config().remote
        assert remote is not None
        assert remote.object_key == "office-pc"

    def test_expired_context(self, file_manager: KeyManager, bucket: FakeBucket) -> None:
        sync = _sync(file_manager, bucket)
        _init(sync)
        with pytest.raises(DeadlineExceeded):
            sync.push(ctx=Context(0))
        assert bucket.objects == {}

    def test_custom_snapshot_dir(self, file_manager: KeyManager, bucket: FakeBucket, tmp_path: Path) -> None:
        sync = _sync(file_manager, bucket, snapshot_dir=tmp_path / "copies")
        _init(sync)
        assert sync.push().snapshot_path == tmp_path / "copies" / "laptop.json"
        assert (tmp_path / "copies" / "laptop.json").exists()


class TestPull:
    def test_replaces_keys_and_active(self, file_manager: KeyManager, bucket: FakeBucket, tmp_path: Path) -> None:
        sync = _sync(file_manager, bucket)
        _init(sync)
        sync.push()

        other = KeyManager(FileStorage(tmp_path / "other" / "config.json"))
        other.load()
        other.add_key(ApiKey(name="stale", secret="x"))
        other_sync = _sync(other, bucket)
        other_sync.init("key-id", "app-key", "keys", "laptop")
        result = other_sync.pull()

        assert result.key_count == 2
        assert [k.name for k in other.list_keys(sort_by="name")] == ["home", "work"]
        assert other.active_key().name == "work"
        assert result.snapshot_path == tmp_path / "other" / "snapshots" / "laptop.json"
        reloaded = KeyManager(FileStorage(tmp_path / "other" / "config.json"))
        assert [k.name for k in reloaded.load().keys] == ["work", "home"]

    def test_missing_remote_object(self, file_manager: KeyManager, bucket: FakeBucket) -> None:
        sync = _sync(file_manager, bucket)
        _init(sync)
        with pytest.raises(NotFound):
            sync.pull("nobody")
        assert len(file_manager.list_keys()) == 2

    def test_next_id_stays_ahead(self, file_manager: KeyManager, bucket: FakeBucket) -> None:
        sync = _sync(file_manager, bucket)
        _init(sync)
        file_manager.add_key(ApiKey(name="extra", secret="e", id="40"))
        sync.push()
        file_manager.remove_key("40")
        sync.pull()
        assert int(file_manager.add_key(ApiKey(name="new", secret="n")).id) > 40


class TestDelete:
    def test_removes_remote_and_local_and_disables(self, file_manager: KeyManager, bucket: FakeBucket) -> None:
        sync = _sync(file_manager, bucket)
        _init(sync)
        pushed = sync.push()
        result = sync.delete()

        assert bucket.objects == {}
        assert not pushed.snapshot_path.exists()
        assert result.object_name == "laptop.json"
        remote = file_manager.config().remote
        assert remote is not None
        assert not remote.enabled
        assert remote.object_key == ""
        assert remote.last_sync_at is None

    def test_missing_object_is_fine(self, file_manager: KeyManager, bucket: FakeBucket) -> None:
        sync = _sync(file_manager, bucket)
        _init(sync)
        sync.delete()
        assert "delete:laptop.json" in bucket.calls

    def test_other_profile_keeps_sync_enabled(self, file_manager: KeyManager, bucket: FakeBucket) -> None:
        sync = _sync(file_manager, bucket)
        _init(sync)
        sync.push("spare")
        sync.init("key-id", "app-key", "keys", "laptop")
        sync.delete("spare")
        remote = file_manager.config().remote
        assert remote is not None
        assert remote.enabled
        assert remote.object_key == "laptop"

    def test_requires_init(self, file_manager: KeyManager, bucket: FakeBucket) -> None:
        with pytest.raises(InvalidInput):
            _sync(file_manager, bucket).delete()


# endregion


def test_invalid_config_is_rejected(file_manager: KeyManager) -> None:
    with pytest.raises(ValueError):
        RemoteSync(file_manager, SyncConfig(transfer_timeout=0))
