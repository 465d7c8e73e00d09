"""Registry data model — key records, the persisted registry document and sync settings.

JSON field names are part of the on-disk format and never change between
versions; Python attribute names are free to differ from them.
"""

from __future__ import annotations

import dataclasses
import enum
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Final

from keyswitch._errors import CorruptData, InvalidInput

SCHEMA_VERSION: Final = "1.0.0"
DEFAULT_OPENAI_ENDPOINT: Final = "https://api.openai.com/v1"
DEFAULT_AUTH_METHOD: Final = "apikey"
DEFAULT_WIRE_PROTOCOL: Final = "responses"


class KeyKind(str, enum.Enum):
    """Provider family of a key."""

    OPENAI = "openai"
    CRS = "crs"


class QuotaPeriod(str, enum.Enum):
    """Cadence at which quota usage resets."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    UNLIMITED = "unlimited"


class _Unset:
    """Marker for "leave this field unchanged" in a :class:`KeyPatch`."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Final = _Unset()


# region: timestamp codec

_FRACTION = re.compile(r"\.(\d{6})\d+")


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime; naive values are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_time(value: datetime | None) -> str | None:
    value = as_utc(value)
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def parse_time(value: object, field: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        # Nanosecond precision from other writers is truncated to microseconds.
        text = _FRACTION.sub(r".\1", value.strip())
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise CorruptData(f"Invalid timestamp for {field}: {value!r}", key=field) from None
    else:
        raise CorruptData(f"Invalid timestamp for {field}: {value!r}", key=field)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    if parsed.year <= 1:
        # Zero time written by older tooling means "never".
        return None
    return parsed


def as_text(value: object) -> str:
    if isinstance(value, enum.Enum):
        return str(value.value)
    return "" if value is None else str(value)


def _flag(value: object, field: str, default: bool | None = False) -> bool | None:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise CorruptData(f"Invalid boolean for {field}: {value!r}", key=field)
    return value


def _number(value: object, field: str) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise CorruptData(f"Invalid number for {field}: {value!r}", key=field) from None


# endregion


@dataclasses.dataclass(frozen=True)
class ApiKey:
    """One managed credential.

    :param id: Registry-assigned identifier (decimal string) unless supplied.
    :param name: Display name, unique case-insensitively.
    :param secret: The opaque credential.
    :param endpoint: Base URL of the provider, may be empty.
    :param kind: Provider family, see :class:`KeyKind`.
    :param tags: Ordered, de-duplicated labels.
    :param requires_upstream_auth: ``None`` means "not decided", defaults to ``True``.
    :param raw_config: Opaque text that overrides generated client configuration.
    :param quota_period: See :class:`QuotaPeriod`.
    :param quota_limit: Budget per period, ``0`` meaning unlimited.
    :param quota_used: Consumption in the current period.
    """

    name: str = ""
    secret: str = ""
    id: str = ""
    endpoint: str = ""
    kind: str = ""
    description: str = ""
    created_at: datetime | None = None
    last_checked_at: datetime | None = None
    last_used_at: datetime | None = None
    active: bool = False
    tags: tuple[str, ...] = ()
    provider_hint: str = ""
    auth_method_hint: str = ""
    wire_protocol_hint: str = ""
    env_var_hint: str = ""
    requires_upstream_auth: bool | None = None
    raw_config: str = ""
    quota_period: str = ""
    quota_limit: float = 0.0
    quota_used: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", as_text(self.kind))
        object.__setattr__(self, "quota_period", as_text(self.quota_period))
        object.__setattr__(self, "tags", normalize_tags(self.tags))
        for field in ("created_at", "last_checked_at", "last_used_at"):
            object.__setattr__(self, field, as_utc(getattr(self, field)))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "api_key": self.secret,
            "base_url": self.endpoint,
            "type": self.kind,
            "description": self.description,
            "created_at": format_time(self.created_at),
            "last_checked": format_time(self.last_checked_at),
            "last_used": format_time(self.last_used_at),
            "active": self.active,
            "tags": list(self.tags),
            "quota_type": self.quota_period,
            "quota_limit": self.quota_limit,
            "quota_used": self.quota_used,
        }
        optional = {
            "provider": self.provider_hint,
            "preferred_auth_method": self.auth_method_hint,
            "wire_api": self.wire_protocol_hint,
            "env_key": self.env_var_hint,
            "requires_openai_auth": self.requires_upstream_auth,
            "raw_config": self.raw_config,
        }
        data.update({k: v for k, v in optional.items() if v not in ("", None)})
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApiKey:
        if not isinstance(data, dict):
            raise CorruptData(f"Key entry must be an object, got {type(data).__name__}")
        tags = data.get("tags") or ()
        if isinstance(tags, str) or not isinstance(tags, (list, tuple)):
            raise CorruptData(f"Invalid tags: {tags!r}", key="tags")
        requires = data.get("requires_openai_auth")
        return cls(
            id=as_text(data.get("id")),
            name=as_text(data.get("name")),
            secret=as_text(data.get("api_key")),
            endpoint=as_text(data.get("base_url")),
            kind=as_text(data.get("type")),
            description=as_text(data.get("description")),
            created_at=parse_time(data.get("created_at"), "created_at"),
            last_checked_at=parse_time(data.get("last_checked"), "last_checked"),
            last_used_at=parse_time(data.get("last_used"), "last_used"),
            active=bool(_flag(data.get("active"), "active")),
            tags=tuple(as_text(t) for t in tags),
            provider_hint=as_text(data.get("provider")),
            auth_method_hint=as_text(data.get("preferred_auth_method")),
            wire_protocol_hint=as_text(data.get("wire_api")),
            env_var_hint=as_text(data.get("env_key")),
            requires_upstream_auth=_flag(requires, "requires_openai_auth", None),
            raw_config=as_text(data.get("raw_config")),
            quota_period=as_text(data.get("quota_type")),
            quota_limit=_number(data.get("quota_limit"), "quota_limit"),
            quota_used=_number(data.get("quota_used"), "quota_used"),
        )


def normalize_tags(tags: object) -> tuple[str, ...]:
    """Strip, drop blanks and de-duplicate while keeping first-seen order."""
    if isinstance(tags, str):
        tags = tags.split(",")
    seen: dict[str, None] = {}
    for tag in tags or ():  # type: ignore[union-attr]
        cleaned = str(tag).strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return tuple(seen)


def generate_sync_token() -> str:
    """Return 32 random bytes, base64url-encoded without padding."""
    return secrets.token_urlsafe(32)


@dataclasses.dataclass
class RemoteSettings:
    """Credentials and bookkeeping for off-box snapshot sync.

    :param provider: Object-store flavor (``"b2"`` or ``"s3"``).
    :param bucket_id: Resolved provider bucket id, cached after the first lookup.
    :param object_key: Profile the registry was last synced under.
    :param api_url: Override for the provider API base (the endpoint URL for ``"s3"``).
    :param download_url: Override for the provider download base.
    :param sync_token: Stable per-registry instance marker; not an encryption key.
    """

    provider: str = ""
    bucket_name: str = ""
    bucket_id: str = ""
    object_key: str = ""
    key_id: str = ""
    application_key: str = ""
    api_url: str = ""
    download_url: str = ""
    sync_token: str = ""
    enabled: bool = False
    last_sync_at: datetime | None = None

    def validate(self) -> None:
        """Check that enabled settings carry usable credentials.

        :raises InvalidInput: If enabled and key id, secret or bucket name is blank.
        """
        if not self.enabled:
            return
        missing = [
            name
            for name, value in (
                ("key_id", self.key_id),
                ("application_key", self.application_key),
                ("bucket_name", self.bucket_name),
            )
            if not value.strip()
        ]
        if missing:
            raise InvalidInput(f"Remote sync is enabled but {', '.join(missing)} is blank", operation="validate")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "provider": self.provider,
            "bucket_name": self.bucket_name,
            "bucket_id": self.bucket_id,
            "object_key": self.object_key,
            "key_id": self.key_id,
            "application_key": self.application_key,
            "sync_token": self.sync_token,
            "enabled": self.enabled,
        }
        if self.api_url:
            data["api_url"] = self.api_url
        if self.download_url:
            data["download_url"] = self.download_url
        if self.last_sync_at is not None:
            data["last_sync"] = format_time(self.last_sync_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteSettings:
        if not isinstance(data, dict):
            raise CorruptData("Remote settings must be an object", key="remote")
        return cls(
            provider=as_text(data.get("provider")),
            bucket_name=as_text(data.get("bucket_name")),
            bucket_id=as_text(data.get("bucket_id")),
            object_key=as_text(data.get("object_key")),
            key_id=as_text(data.get("key_id")),
            application_key=as_text(data.get("application_key")),
            api_url=as_text(data.get("api_url")),
            download_url=as_text(data.get("download_url")),
            sync_token=as_text(data.get("sync_token")),
            enabled=bool(_flag(data.get("enabled"), "enabled")),
            last_sync_at=parse_time(data.get("last_sync"), "last_sync"),
        )


@dataclasses.dataclass
class Registry:
    """The persisted registry document.

    ``keys`` is kept in creation order. ``next_id`` only ever grows so ids
    are never reused after deletion.
    """

    schema_version: str = ""
    active_id: str = ""
    keys: list[ApiKey] = dataclasses.field(default_factory=list)
    last_updated_at: datetime | None = None
    next_id: int = 0
    remote: RemoteSettings | None = None

    def copy(self) -> Registry:
        """Return a copy that shares no mutable state with ``self``."""
        remote = dataclasses.replace(self.remote) if self.remote is not None else None
        return dataclasses.replace(self, keys=list(self.keys), remote=remote)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.schema_version,
            "active_key_id": self.active_id,
            "keys": [k.to_dict() for k in self.keys],
            "last_updated": format_time(self.last_updated_at),
        }
        if self.next_id > 0:
            data["next_id"] = self.next_id
        if self.remote is not None:
            data["remote"] = self.remote.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Registry:
        """Construct from a parsed JSON/YAML/TOML mapping.

        :raises CorruptData: If the shape does not match the registry document.
        """
        if not isinstance(data, dict):
            raise CorruptData(f"Registry document must be an object, got {type(data).__name__}")
        raw_keys = data.get("keys") or []
        if not isinstance(raw_keys, list):
            raise CorruptData("Expected 'keys' to be a list", key="keys")
        raw_remote = data.get("remote")
        try:
            next_id = int(data.get("next_id") or 0)
        except (TypeError, ValueError):
            raise CorruptData(f"Invalid next_id: {data.get('next_id')!r}", key="next_id") from None
        return cls(
            schema_version=as_text(data.get("version")),
            active_id=as_text(data.get("active_key_id")),
            keys=[ApiKey.from_dict(k) for k in raw_keys],
            last_updated_at=parse_time(data.get("last_updated"), "last_updated"),
            next_id=next_id,
            remote=RemoteSettings.from_dict(raw_remote) if raw_remote else None,
        )


@dataclasses.dataclass(frozen=True)
class KeyPatch:
    """Sparse update for :meth:`KeyManager.update_key`.

    Fields left at :data:`UNSET` keep the stored value. ``name``, ``secret``,
    ``kind`` and the timestamps also keep the stored value when given blank.
    Every other field is replaced by whatever is given, so ``description=""``
    clears the description.
    """

    id: str
    name: str | _Unset = UNSET
    secret: str | _Unset = UNSET
    endpoint: str | _Unset = UNSET
    kind: str | _Unset = UNSET
    description: str | _Unset = UNSET
    created_at: datetime | None | _Unset = UNSET
    last_checked_at: datetime | None | _Unset = UNSET
    last_used_at: datetime | None | _Unset = UNSET
    active: bool | _Unset = UNSET
    tags: tuple[str, ...] | list[str] | _Unset = UNSET
    provider_hint: str | _Unset = UNSET
    auth_method_hint: str | _Unset = UNSET
    wire_protocol_hint: str | _Unset = UNSET
    env_var_hint: str | _Unset = UNSET
    requires_upstream_auth: bool | None | _Unset = UNSET
    raw_config: str | _Unset = UNSET
    quota_period: str | _Unset = UNSET
    quota_limit: float | _Unset = UNSET
    quota_used: float | _Unset = UNSET

    _KEEP_WHEN_BLANK = frozenset({"name", "secret", "kind", "created_at", "last_checked_at", "last_used_at"})

    def changes(self) -> dict[str, Any]:
        """Return the field values this patch actually replaces (``active`` excluded)."""
        result: dict[str, Any] = {}
        for field in dataclasses.fields(self):
            if field.name in ("id", "active"):
                continue
            value = getattr(self, field.name)
            if value is UNSET:
                continue
            blank = value is None or (isinstance(value, str) and not value.strip())
            if field.name in self._KEEP_WHEN_BLANK and blank:
                continue
            result[field.name] = value
        return result
