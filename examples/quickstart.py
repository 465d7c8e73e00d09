"""Quickstart — manage keys in a throwaway registry with keyswitch.

Demonstrates:
- Opening a KeyManager on a file registry
- Adding keys, switching the active key and saving
- Checking the remaining quota of a key
- Exporting the registry as YAML
"""

from __future__ import annotations

import tempfile
from pathlib import Path

from keyswitch import ApiKey, KeyManager, KeyPatch, export_registry, key_remaining

if __name__ == "__main__":
    with tempfile.TemporaryDirectory() as tmp:
        with KeyManager.default(Path(tmp) / "config.json") as manager:
            manager.load()

            # The first key becomes active automatically
            work = manager.add_key(ApiKey(name="work", secret="sk-work", quota_period="monthly", quota_limit=100))
            home = manager.add_key(ApiKey(name="home", secret="sk-home", kind="crs", endpoint="https://gw.example"))
            print(f"Active: {manager.active_key().name}")

            # Switch and record some usage
            manager.set_active_key(home.id)
            manager.update_key(KeyPatch(id=work.id, quota_used=42))
            manager.save()

            for key in manager.list_keys():
                marker = "*" if key.active else " "
                print(f"{marker} {key.id} {key.name:<6} remaining={key_remaining(key)}")

            print(export_registry(manager.config(), "yaml").decode())

    print("Done! Temp directory cleaned up automatically.")
