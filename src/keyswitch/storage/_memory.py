"""In-memory storage for tests and throwaway registries."""

from __future__ import annotations

from keyswitch._models import SCHEMA_VERSION, Registry
from keyswitch._storage import Storage, decode_registry, encode_registry


class MemoryStorage(Storage):
    """Keeps the registry as encoded bytes.

    Every ``save`` and ``load`` goes through a full encode/decode cycle, so a
    caller's working copy can never alias the stored one.

    :param initial: Optional registry to start from.
    """

    def __init__(self, initial: Registry | None = None) -> None:
        self._data = encode_registry(initial if initial is not None else Registry(schema_version=SCHEMA_VERSION))
        self.load_count = 0
        self.save_count = 0

    @property
    def name(self) -> str:
        return "memory"

    @property
    def path(self) -> str:
        return "memory://config"

    def load(self) -> Registry:
        self.load_count += 1
        return decode_registry(self._data, source=self.path)

    def save(self, registry: Registry) -> None:
        self._data = encode_registry(registry)
        self.save_count += 1

    def raw(self) -> bytes:
        """Return the stored bytes exactly as the last ``save`` encoded them."""
        return self._data
