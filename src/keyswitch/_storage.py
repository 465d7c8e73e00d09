"""Storage abstract base class — persistence contract for the registry document."""

from __future__ import annotations

import abc
import json
from typing import TYPE_CHECKING

from keyswitch._errors import CorruptData
from keyswitch._models import SCHEMA_VERSION, Registry

if TYPE_CHECKING:
    from types import TracebackType


def encode_registry(registry: Registry) -> bytes:
    """Serialize a registry document as indented UTF-8 JSON."""
    return json.dumps(registry.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")


def decode_registry(data: bytes, *, source: str | None = None) -> Registry:
    """Parse a registry document; blank input yields an empty registry.

    :raises CorruptData: If the bytes are not a valid registry document.
    """
    if not data.strip():
        return Registry(schema_version=SCHEMA_VERSION)
    try:
        raw = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CorruptData(f"Registry is not valid JSON: {exc}", key=source, operation="load") from exc
    return Registry.from_dict(raw)


class Storage(abc.ABC):
    """Abstract base class for registry persistence.

    Implementations hand out registries that share no state with what they
    keep, and map native exceptions to ``keyswitch`` errors.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Identifier of this storage type (e.g. ``'file'``, ``'memory'``)."""

    @abc.abstractmethod
    def load(self) -> Registry:
        """Read the registry document.

        :raises StorageFailure: If the underlying medium cannot be read.
        :raises CorruptData: If the stored bytes cannot be decoded.
        """

    @abc.abstractmethod
    def save(self, registry: Registry) -> None:
        """Persist the full registry document, replacing what was stored.

        :raises StorageFailure: If the underlying medium cannot be written.
        """

    @property
    @abc.abstractmethod
    def path(self) -> str:
        """Location of the stored document, used to derive sibling paths."""

    def close(self) -> None:  # noqa: B027
        """Release resources. Default is a no-op."""

    def __enter__(self) -> Storage:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
