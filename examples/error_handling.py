"""Error handling — catching NotFound, AlreadyExists, InvalidInput, etc.

Demonstrates the normalized error hierarchy and how to handle errors
programmatically using structured attributes.
"""

from __future__ import annotations

from keyswitch import (
    AlreadyExists,
    ApiKey,
    InvalidInput,
    KeyManager,
    KeyswitchError,
    NotFound,
    NotLoaded,
)
from keyswitch.storage import MemoryStorage

if __name__ == "__main__":
    manager = KeyManager(MemoryStorage())

    try:
        manager.list_keys()
    except NotLoaded as e:
        print(f"NotLoaded: operation={e.operation}")

    manager.load()
    manager.add_key(ApiKey(name="work", secret="sk-work"))

    try:
        manager.add_key(ApiKey(name="WORK", secret="sk-other"))
    except AlreadyExists as e:
        print(f"AlreadyExists: key={e.key}")

    try:
        manager.get_key("99")
    except NotFound as e:
        print(f"NotFound: key={e.key}, operation={e.operation}")

    try:
        manager.add_key(ApiKey(name="broken", secret=""))
    except InvalidInput as e:
        print(f"InvalidInput: {e}")

    # Catch-all for any keyswitch error
    try:
        manager.remove_key("nope")
    except KeyswitchError as e:
        print(f"Caught {type(e).__name__}: {e}")
