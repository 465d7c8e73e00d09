"""Snapshot — versioned, exportable copy of the registry keys for off-box storage."""

from __future__ import annotations

import dataclasses
import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

from keyswitch._errors import CorruptData, InvalidInput, NotFound, StorageFailure
from keyswitch._models import ApiKey, as_text, format_time, parse_time, utcnow
from keyswitch.storage._file import FILE_MODE, ensure_private_dir

if TYPE_CHECKING:
    from datetime import datetime

    from keyswitch._models import Registry

SNAPSHOT_SCHEMA_VERSION = "1.0"


@dataclasses.dataclass(frozen=True)
class Snapshot:
    """Immutable point-in-time copy of the keys and the active pointer.

    :param schema_version: Snapshot format version.
    :param generated_at: When the snapshot was built.
    :param active_id: Active key id at export time.
    :param keys: The exported records, in registry order.
    """

    schema_version: str
    generated_at: datetime | None
    active_id: str
    keys: tuple[ApiKey, ...] = ()

    @classmethod
    def build(cls, registry: Registry | None) -> Snapshot:
        """Capture ``registry``'s keys and active id, stamped with the current time."""
        if registry is None:
            return cls(schema_version=SNAPSHOT_SCHEMA_VERSION, generated_at=utcnow(), active_id="")
        return cls(
            schema_version=SNAPSHOT_SCHEMA_VERSION,
            generated_at=utcnow(),
            active_id=registry.active_id,
            keys=tuple(registry.keys),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "generated_at": format_time(self.generated_at),
            "active_key_id": self.active_id,
            "keys": [k.to_dict() for k in self.keys],
        }

    def marshal(self) -> bytes:
        """Encode as indented JSON so stored snapshots stay human-auditable."""
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")

    @classmethod
    def unmarshal(cls, data: bytes) -> Snapshot:
        """Decode a snapshot; a missing schema version defaults to the current one.

        :raises CorruptData: If ``data`` is empty or not a snapshot document.
        """
        if not data:
            raise CorruptData("Snapshot data is empty", operation="unmarshal")
        try:
            raw = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CorruptData(f"Snapshot is not valid JSON: {exc}", operation="unmarshal") from exc
        if not isinstance(raw, dict):
            raise CorruptData("Snapshot must be a JSON object", operation="unmarshal")
        raw_keys = raw.get("keys") or []
        if not isinstance(raw_keys, list):
            raise CorruptData("Expected 'keys' to be a list", key="keys", operation="unmarshal")
        return cls(
            schema_version=as_text(raw.get("schema_version")) or SNAPSHOT_SCHEMA_VERSION,
            generated_at=parse_time(raw.get("generated_at"), "generated_at"),
            active_id=as_text(raw.get("active_key_id")),
            keys=tuple(ApiKey.from_dict(k) for k in raw_keys),
        )


def save_snapshot_file(path: str | os.PathLike[str], snapshot: Snapshot) -> None:
    """Write ``snapshot`` to ``path`` with owner-only permission.

    A plain write: snapshot files are per-push copies, not the live registry.

    :raises StorageFailure: If the file or its directory cannot be written.
    """
    if snapshot is None:
        raise InvalidInput("Snapshot is missing", key=str(path), operation="save_snapshot")
    target = Path(path)
    data = snapshot.marshal()
    try:
        ensure_private_dir(target.parent)
        fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.chmod(target, FILE_MODE)
    except OSError as exc:
        raise StorageFailure(f"Cannot write snapshot: {exc}", key=str(target), operation="save_snapshot") from exc


def load_snapshot_file(path: str | os.PathLike[str]) -> Snapshot:
    """Read and decode a snapshot file.

    :raises NotFound: If the file does not exist.
    :raises StorageFailure: If the file cannot be read.
    :raises CorruptData: If the content is not a snapshot.
    """
    target = Path(path)
    try:
        data = target.read_bytes()
    except FileNotFoundError:
        raise NotFound(f"Snapshot not found: {target}", key=str(target), operation="load_snapshot") from None
    except OSError as exc:
        raise StorageFailure(f"Cannot read snapshot: {exc}", key=str(target), operation="load_snapshot") from exc
    return Snapshot.unmarshal(data)
