"""KeyManager — owns the in-memory registry, enforces its invariants and persists it."""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from keyswitch._errors import AlreadyExists, InvalidInput, NotFound, NotLoaded
from keyswitch._models import (
    DEFAULT_AUTH_METHOD,
    DEFAULT_OPENAI_ENDPOINT,
    DEFAULT_WIRE_PROTOCOL,
    SCHEMA_VERSION,
    ApiKey,
    KeyKind,
    QuotaPeriod,
    Registry,
    RemoteSettings,
    generate_sync_token,
    utcnow,
)
from keyswitch._rwlock import RWLock

if TYPE_CHECKING:
    import os
    from types import TracebackType

    from keyswitch._models import KeyPatch
    from keyswitch._storage import Storage

log = logging.getLogger(__name__)

SORT_NAME = "name"
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)
_PERIODS = frozenset(p.value for p in QuotaPeriod)


# region: normalization


def _is_numeric_id(value: str) -> bool:
    return value.isascii() and value.isdigit()


def apply_key_defaults(key: ApiKey) -> ApiKey:
    """Fill unset integration hints and the default endpoint of the primary provider."""
    changes: dict[str, object] = {}
    if not key.auth_method_hint:
        changes["auth_method_hint"] = DEFAULT_AUTH_METHOD
    if not key.wire_protocol_hint:
        changes["wire_protocol_hint"] = DEFAULT_WIRE_PROTOCOL
    if key.requires_upstream_auth is None:
        changes["requires_upstream_auth"] = True
    if not key.endpoint.strip() and key.kind.lower() == KeyKind.OPENAI.value:
        changes["endpoint"] = DEFAULT_OPENAI_ENDPOINT
    return dataclasses.replace(key, **changes) if changes else key


def _renumber_ids(registry: Registry) -> bool:
    """Reassign ids to 1-based positions if any id is not a decimal integer."""
    if all(_is_numeric_id(k.id) for k in registry.keys):
        return False
    mapping: dict[str, str] = {}
    renumbered = []
    for position, key in enumerate(registry.keys, start=1):
        new_id = str(position)
        mapping.setdefault(key.id, new_id)
        renumbered.append(dataclasses.replace(key, id=new_id))
    registry.keys = renumbered
    if registry.active_id in mapping:
        registry.active_id = mapping[registry.active_id]
    log.debug("Renumbered %d key ids", len(renumbered))
    return True


def _ensure_remote_settings(registry: Registry) -> bool:
    changed = False
    if registry.remote is None:
        registry.remote = RemoteSettings()
        changed = True
    if not registry.remote.sync_token:
        registry.remote.sync_token = generate_sync_token()
        changed = True
    return changed


def _ensure_next_id(registry: Registry) -> None:
    highest = max((int(k.id) for k in registry.keys if _is_numeric_id(k.id)), default=0)
    if registry.next_id <= highest:
        registry.next_id = highest + 1


def normalize_registry(registry: Registry) -> bool:
    """Bring a freshly read registry to a consistent shape, in place.

    :returns: ``True`` if anything that must be persisted was changed.
    """
    changed = False
    if not registry.schema_version:
        registry.schema_version = SCHEMA_VERSION
        changed = True
    if registry.keys is None:
        registry.keys = []
        changed = True
    changed = _renumber_ids(registry) or changed
    changed = _ensure_remote_settings(registry) or changed
    _ensure_next_id(registry)
    registry.keys = [apply_key_defaults(k) for k in registry.keys]
    return changed


def _reconcile_active(registry: Registry) -> None:
    """Recompute every ``active`` flag from a single ``active_id``.

    One flagged record wins; with several, the last one wins; with none, the
    first record becomes active.
    """
    flagged = [k.id for k in registry.keys if k.active]
    if flagged:
        registry.active_id = flagged[-1]
    elif registry.keys:
        registry.active_id = registry.keys[0].id
    else:
        registry.active_id = ""
    registry.keys = [
        k if k.active == (k.id == registry.active_id) else dataclasses.replace(k, active=k.id == registry.active_id)
        for k in registry.keys
    ]


# endregion


class KeyManager:
    """Concurrency-safe owner of the key registry.

    Mutations take the write lock for their whole duration, queries the read
    lock. Nothing is persisted until :meth:`save` is called.

    :param storage: Where the registry document lives.
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage
        self._lock = RWLock()
        self._registry: Registry | None = None

    @classmethod
    def default(cls, path: str | os.PathLike[str] | None = None) -> KeyManager:
        """Create a manager backed by a :class:`~keyswitch.storage.FileStorage`."""
        from keyswitch.storage._file import FileStorage

        return cls(FileStorage(path))

    def __repr__(self) -> str:
        return f"KeyManager(storage={self._storage.name!r}, loaded={self.loaded})"

    @property
    def loaded(self) -> bool:
        return self._registry is not None

    @property
    def config_path(self) -> str:
        """Path of the stored registry, for locating sibling files."""
        return self._storage.path

    # region: lifecycle

    def load(self) -> Registry:
        """Load and normalize the registry; later calls return the cached state.

        Normalization that changes data is persisted before returning.

        :raises StorageFailure: If the storage cannot be read or written.
        :raises CorruptData: If the stored document is malformed.
        """
        with self._lock.write():
            if self._registry is None:
                registry = self._storage.load()
                if normalize_registry(registry):
                    registry.last_updated_at = utcnow()
                    self._storage.save(registry)
                self._registry = registry
                log.debug("Loaded %d keys from %s", len(registry.keys), self._storage.path)
            return self._registry.copy()

    def save(self) -> None:
        """Stamp ``last_updated_at`` and persist the whole registry.

        :raises NotLoaded: If :meth:`load` was never called.
        """
        with self._lock.write():
            registry = self._require_loaded("save")
            registry.last_updated_at = utcnow()
            self._storage.save(registry)

    def close(self) -> None:
        """Drop the cached registry and close the storage."""
        with self._lock.write():
            self._registry = None
        self._storage.close()

    def __enter__(self) -> KeyManager:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # endregion

    # region: whole-registry access

    def config(self) -> Registry:
        """Return a copy of the registry that the caller may freely modify.

        :raises NotLoaded: If :meth:`load` was never called.
        """
        with self._lock.read():
            return self._require_loaded("config").copy()

    def replace_config(self, registry: Registry) -> None:
        """Swap in a whole new registry (import, restore, pull).

        The given object is copied, normalized and its active flags are
        recomputed. Normalization changes are persisted immediately.
        """
        incoming = registry.copy()
        with self._lock.write():
            changed = normalize_registry(incoming)
            _reconcile_active(incoming)
            incoming.last_updated_at = utcnow()
            self._registry = incoming
            if changed:
                self._storage.save(incoming)
        log.debug("Replaced registry with %d keys", len(incoming.keys))

    # endregion

    # region: mutations

    def add_key(self, draft: ApiKey) -> ApiKey:
        """Validate, complete and append a new key.

        The key becomes active if ``draft.active`` is set or no key is active yet.

        :raises InvalidInput: If name or secret is blank or quota fields are invalid.
        :raises AlreadyExists: If the name (case-insensitive) or id is taken.
        """
        if not draft.name.strip():
            raise InvalidInput("Key name must not be blank", operation="add_key")
        if not draft.secret.strip():
            raise InvalidInput("Key secret must not be blank", key=draft.name, operation="add_key")
        _validate_quota(draft, "add_key")

        with self._lock.write():
            registry = self._require_loaded("add_key")
            _ensure_next_id(registry)
            now = utcnow()
            key = apply_key_defaults(
                dataclasses.replace(
                    draft,
                    kind=draft.kind or KeyKind.OPENAI.value,
                    id=draft.id or str(registry.next_id),
                    created_at=draft.created_at or now,
                    last_checked_at=draft.last_checked_at or now,
                    last_used_at=draft.last_used_at or now,
                    active=False,
                )
            )
            for existing in registry.keys:
                if existing.name.casefold() == key.name.casefold():
                    raise AlreadyExists(f"Key name already exists: {key.name}", key=key.name, operation="add_key")
                if existing.id == key.id:
                    raise AlreadyExists(f"Key id already exists: {key.id}", key=key.id, operation="add_key")

            registry.keys.append(key)
            _ensure_next_id(registry)
            if draft.active or not registry.active_id:
                self._activate_locked(key.id, "add_key")
            log.debug("Added key %s (%s)", key.id, key.name)
            return self._find_locked(key.id, "add_key")

    def update_key(self, patch: KeyPatch) -> ApiKey:
        """Apply a sparse patch to an existing key.

        :raises NotFound: If ``patch.id`` is unknown.
        :raises AlreadyExists: If the new name belongs to another key.
        :raises InvalidInput: If quota fields are invalid.
        """
        with self._lock.write():
            registry = self._require_loaded("update_key")
            index = self._index_locked(patch.id, "update_key")
            existing = registry.keys[index]
            changes = patch.changes()
            merged = apply_key_defaults(dataclasses.replace(existing, **changes))
            _validate_quota(merged, "update_key", check_period="quota_period" in changes)
            for other in registry.keys:
                if other.id != merged.id and other.name.casefold() == merged.name.casefold():
                    raise AlreadyExists(
                        f"Key name already exists: {merged.name}", key=merged.name, operation="update_key"
                    )
            registry.keys[index] = merged
            if patch.active is True:
                self._activate_locked(merged.id, "update_key")
            return registry.keys[index]

    def remove_key(self, key_id: str) -> None:
        """Delete a key; if it was active, the first remaining key takes over.

        :raises NotFound: If ``key_id`` is unknown.
        """
        with self._lock.write():
            registry = self._require_loaded("remove_key")
            index = self._index_locked(key_id, "remove_key")
            del registry.keys[index]
            if registry.active_id == key_id:
                registry.active_id = ""
                if registry.keys:
                    self._activate_locked(registry.keys[0].id, "remove_key")
            log.debug("Removed key %s", key_id)

    def set_active_key(self, key_id: str) -> ApiKey:
        """Make ``key_id`` the only active key.

        :raises NotFound: If ``key_id`` is unknown.
        """
        with self._lock.write():
            self._require_loaded("set_active_key")
            self._activate_locked(key_id, "set_active_key")
            return self._find_locked(key_id, "set_active_key")

    def touch_key(self, key_id: str) -> ApiKey:
        """Record that a key was just used.

        :raises NotFound: If ``key_id`` is unknown.
        """
        with self._lock.write():
            registry = self._require_loaded("touch_key")
            index = self._index_locked(key_id, "touch_key")
            registry.keys[index] = dataclasses.replace(registry.keys[index], last_used_at=utcnow())
            return registry.keys[index]

    def update_usage(
        self,
        key_id: str,
        used: float,
        limit: float | None = None,
        checked_at: datetime | None = None,
    ) -> ApiKey:
        """Record the outcome of a remote usage check.

        :param used: Consumption reported by the provider.
        :param limit: New quota limit; ``None`` keeps the stored one.
        :param checked_at: When the usage was read; defaults to now.
        :raises NotFound: If ``key_id`` is unknown.
        :raises InvalidInput: If ``used`` or ``limit`` is negative.
        """
        if used < 0 or (limit is not None and limit < 0):
            raise InvalidInput("Quota limit and usage must not be negative", key=key_id, operation="update_usage")
        with self._lock.write():
            registry = self._require_loaded("update_usage")
            index = self._index_locked(key_id, "update_usage")
            current = registry.keys[index]
            registry.keys[index] = dataclasses.replace(
                current,
                quota_used=float(used),
                quota_limit=current.quota_limit if limit is None else float(limit),
                last_checked_at=checked_at or utcnow(),
            )
            log.debug("Recorded usage %.2f for key %s", used, key_id)
            return registry.keys[index]

    # endregion

    # region: queries

    def get_key(self, key_id: str) -> ApiKey:
        """:raises NotFound: If ``key_id`` is unknown."""
        with self._lock.read():
            self._require_loaded("get_key")
            return self._find_locked(key_id, "get_key")

    def get_key_by_name(self, name: str) -> ApiKey:
        """Look a key up by case-insensitive name.

        :raises NotFound: If no key has that name.
        """
        with self._lock.read():
            registry = self._require_loaded("get_key_by_name")
            wanted = name.casefold()
            for key in registry.keys:
                if key.name.casefold() == wanted:
                    return key
            raise NotFound(f"Key name not found: {name}", key=name, operation="get_key_by_name")

    def active_key(self) -> ApiKey:
        """:raises NotFound: If no key is active or ``active_id`` is stale."""
        with self._lock.read():
            registry = self._require_loaded("active_key")
            if not registry.active_id:
                raise NotFound("No active key", operation="active_key")
            return self._find_locked(registry.active_id, "active_key")

    def list_keys(self, sort_by: str = "") -> list[ApiKey]:
        """Return the keys as a new list.

        :param sort_by: ``"name"`` sorts case-insensitively by name; anything
            else puts the active key first, then oldest ``created_at`` first.
        """
        with self._lock.read():
            items = list(self._require_loaded("list_keys").keys)
        if sort_by == SORT_NAME:
            items.sort(key=lambda k: k.name.casefold())
        else:
            items.sort(key=lambda k: (not k.active, k.created_at or _EPOCH))
        return items

    # endregion

    # region: helpers (callers hold the lock)

    def _require_loaded(self, operation: str) -> Registry:
        if self._registry is None:
            raise NotLoaded("Registry has not been loaded", operation=operation)
        return self._registry

    def _index_locked(self, key_id: str, operation: str) -> int:
        assert self._registry is not None
        for index, key in enumerate(self._registry.keys):
            if key.id == key_id:
                return index
        raise NotFound(f"Key id not found: {key_id}", key=key_id, operation=operation)

    def _find_locked(self, key_id: str, operation: str) -> ApiKey:
        assert self._registry is not None
        return self._registry.keys[self._index_locked(key_id, operation)]

    def _activate_locked(self, key_id: str, operation: str) -> None:
        registry = self._require_loaded(operation)
        self._index_locked(key_id, operation)
        registry.keys = [
            k if k.active == (k.id == key_id) else dataclasses.replace(k, active=k.id == key_id)
            for k in registry.keys
        ]
        registry.active_id = key_id
        log.debug("Activated key %s", key_id)

    # endregion


def _validate_quota(key: ApiKey, operation: str, *, check_period: bool = True) -> None:
    if key.quota_limit < 0 or key.quota_used < 0:
        raise InvalidInput("Quota limit and usage must not be negative", key=key.name, operation=operation)
    if check_period and key.quota_period and key.quota_period.lower() not in _PERIODS:
        raise InvalidInput(f"Unknown quota period: {key.quota_period}", key=key.name, operation=operation)
