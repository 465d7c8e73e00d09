"""Storage implementations."""

from keyswitch.storage._file import FileStorage
from keyswitch.storage._memory import MemoryStorage

__all__ = ["FileStorage", "MemoryStorage"]
