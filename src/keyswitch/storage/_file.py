"""File storage — durable, owner-only, atomically replaced JSON document."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from keyswitch._config import default_config_path
from keyswitch._errors import StorageFailure
from keyswitch._models import SCHEMA_VERSION, Registry, utcnow
from keyswitch._storage import Storage, decode_registry, encode_registry

log = logging.getLogger(__name__)

FILE_MODE = 0o600
DIR_MODE = 0o700


def ensure_private_dir(directory: Path) -> None:
    """Create ``directory`` with owner-only permission if it does not exist."""
    if directory.is_dir():
        return
    directory.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
    os.chmod(directory, DIR_MODE)


class FileStorage(Storage):
    """Registry stored as a single JSON file.

    A missing file is not an error: ``load`` writes and returns an empty
    registry. ``save`` goes through a sibling temp file and ``os.replace`` so
    readers never observe a half-written document.

    :param path: Location of the registry file. Defaults to
        ``~/.codex-manager/config.json``.
    """

    def __init__(self, path: str | os.PathLike[str] | None = None) -> None:
        self._path = Path(path) if path else default_config_path()

    @property
    def name(self) -> str:
        return "file"

    @property
    def path(self) -> str:
        return str(self._path)

    def load(self) -> Registry:
        try:
            data = self._path.read_bytes()
        except FileNotFoundError:
            log.debug("No registry at %s, creating an empty one", self._path)
            registry = Registry(schema_version=SCHEMA_VERSION, last_updated_at=utcnow())
            self.save(registry)
            return registry
        except OSError as exc:
            raise StorageFailure(f"Cannot read registry: {exc}", key=self.path, operation="load") from exc
        return decode_registry(data, source=self.path)

    def save(self, registry: Registry) -> None:
        data = encode_registry(registry)
        try:
            ensure_private_dir(self._path.parent)
            fd, tmp_path = tempfile.mkstemp(dir=str(self._path.parent), prefix=f".{self._path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.chmod(tmp_path, FILE_MODE)
                os.replace(tmp_path, self._path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
            os.chmod(self._path, FILE_MODE)
        except OSError as exc:
            raise StorageFailure(f"Cannot write registry: {exc}", key=self.path, operation="save") from exc
        log.debug("Saved registry with %d keys to %s", len(registry.keys), self._path)
