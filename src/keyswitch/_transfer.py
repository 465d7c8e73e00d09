"""Import/export of the registry document as JSON, YAML or TOML, and merge-on-import."""

from __future__ import annotations

import dataclasses
import json
import logging
import tomllib
from pathlib import PurePath
from typing import TYPE_CHECKING, Any

import tomli_w
import yaml

from keyswitch._errors import CorruptData, InvalidInput
from keyswitch._models import Registry

if TYPE_CHECKING:
    import os

log = logging.getLogger(__name__)

FORMATS = ("json", "yaml", "toml")

_ALIASES = {"json": "json", "yaml": "yaml", "yml": "yaml", "toml": "toml"}


def _resolve_format(fmt: str, operation: str) -> str:
    resolved = _ALIASES.get(fmt.strip().lower())
    if resolved is None:
        raise InvalidInput(f"Unsupported format: {fmt!r}. Supported formats: {list(FORMATS)}", operation=operation)
    return resolved


def infer_format(path: str | os.PathLike[str]) -> str:
    """Guess the format from a file extension; anything unknown is JSON."""
    suffix = PurePath(path).suffix.lower()
    if suffix in (".yaml", ".yml"):
        return "yaml"
    if suffix == ".toml":
        return "toml"
    return "json"


def _drop_none(value: Any) -> Any:
    # TOML has no null.
    if isinstance(value, dict):
        return {k: _drop_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_none(v) for v in value if v is not None]
    return value


def export_registry(registry: Registry, fmt: str = "json") -> bytes:
    """Serialize ``registry`` in the requested format.

    :param fmt: ``"json"``, ``"yaml"``/``"yml"`` or ``"toml"``.
    :raises InvalidInput: If the format is not supported.
    """
    resolved = _resolve_format(fmt, "export")
    document = registry.to_dict()
    if resolved == "yaml":
        return yaml.safe_dump(document, sort_keys=False, allow_unicode=True).encode("utf-8")
    if resolved == "toml":
        return tomli_w.dumps(_drop_none(document)).encode("utf-8")
    return json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")


def import_registry(data: bytes, fmt: str = "json") -> Registry:
    """Parse a registry document exported by :func:`export_registry` or written by hand.

    :raises InvalidInput: If the format is not supported.
    :raises CorruptData: If ``data`` cannot be parsed or has the wrong shape.
    """
    resolved = _resolve_format(fmt, "import")
    try:
        text = data.decode("utf-8")
        if resolved == "yaml":
            document = yaml.safe_load(text)
        elif resolved == "toml":
            document = tomllib.loads(text)
        else:
            document = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError, tomllib.TOMLDecodeError) as exc:
        raise CorruptData(f"Cannot parse {resolved} document: {exc}", operation="import") from exc
    if document is None:
        return Registry()
    return Registry.from_dict(document)


def merge_registries(base: Registry, incoming: Registry) -> Registry:
    """Fold ``incoming`` into a copy of ``base``.

    Each incoming record replaces the base record with the same id, else the
    one with the same case-insensitive name, else it is appended. A non-empty
    incoming ``active_id`` or ``schema_version`` wins; when the winning
    ``active_id`` names a merged record, the ``active`` flags are aligned to it.
    """
    result = base.copy()
    by_id = {k.id: i for i, k in enumerate(result.keys) if k.id}
    by_name = {k.name.casefold(): i for i, k in enumerate(result.keys) if k.name}

    for key in incoming.keys:
        index = by_id.get(key.id) if key.id else None
        if index is None and key.name:
            index = by_name.get(key.name.casefold())
        if index is None:
            result.keys.append(key)
            continue
        result.keys[index] = key

    if incoming.active_id:
        result.active_id = incoming.active_id
    if incoming.schema_version:
        result.schema_version = incoming.schema_version
    if any(k.id == result.active_id for k in result.keys):
        result.keys = [dataclasses.replace(k, active=k.id == result.active_id) for k in result.keys]
    log.debug("Merged %d incoming keys into %d base keys", len(incoming.keys), len(base.keys))
    return result
