"""Tests for registry import/export and merge-on-import."""

from __future__ import annotations

import json
import tomllib
from datetime import datetime, timezone

import pytest
import yaml

from keyswitch._errors import CorruptData, InvalidInput
from keyswitch._manager import KeyManager
from keyswitch._models import ApiKey, Registry, RemoteSettings
from keyswitch._transfer import export_registry, import_registry, infer_format, merge_registries

WHEN = datetime(2025, 2, 3, 4, 5, 6, tzinfo=timezone.utc)


@pytest.fixture()
def registry() -> Registry:
    return Registry(
        schema_version="1.0.0",
        active_id="2",
        keys=[
            ApiKey(id="1", name="a", secret="sk-a", created_at=WHEN, tags=("x", "y")),
            ApiKey(id="2", name="b", secret="sk-b", active=True, requires_upstream_auth=False, quota_limit=9.5),
        ],
        last_updated_at=WHEN,
        next_id=3,
        remote=RemoteSettings(bucket_name="bucket", sync_token="tok"),
    )


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("out.json", "json"),
        ("out.YAML", "yaml"),
        ("dir/out.yml", "yaml"),
        ("out.toml", "toml"),
        ("out.txt", "json"),
        ("out", "json"),
    ],
)
def test_infer_format(path: str, expected: str) -> None:
    assert infer_format(path) == expected


class TestExport:
    def test_json(self, registry: Registry) -> None:
        data = json.loads(export_registry(registry, "json"))
        assert data["active_key_id"] == "2"
        assert data["keys"][0]["api_key"] == "sk-a"

    def test_yaml(self, registry: Registry) -> None:
        data = yaml.safe_load(export_registry(registry, "yaml"))
        assert data["version"] == "1.0.0"
        assert data["keys"][1]["requires_openai_auth"] is False

    def test_toml_drops_nulls(self, registry: Registry) -> None:
        data = tomllib.loads(export_registry(registry, "toml").decode())
        assert "last_checked" not in data["keys"][0]
        assert data["keys"][0]["created_at"] == "2025-02-03T04:05:06Z"

    def test_unknown_format(self, registry: Registry) -> None:
        with pytest.raises(InvalidInput, match="xml"):
            export_registry(registry, "xml")


class TestImport:
    @pytest.mark.parametrize("fmt", ["json", "yaml", "yml", "toml"])
    def test_round_trip(self, registry: Registry, fmt: str) -> None:
        assert import_registry(export_registry(registry, fmt), fmt) == registry

    def test_hand_written_yaml(self) -> None:
        text = b"""
version: 1.0.0
active_key_id: 1
keys:
  - id: 1
    name: work
    api_key: sk-work
    type: openai
    created_at: 2025-02-03T04:05:06Z
    tags: [a, b]
"""
        imported = import_registry(text, "yaml")
        assert imported.active_id == "1"
        assert imported.keys[0].id == "1"
        assert imported.keys[0].created_at == WHEN
        assert imported.keys[0].tags == ("a", "b")

    def test_empty_yaml(self) -> None:
        assert import_registry(b"", "yaml").keys == []

    @pytest.mark.parametrize(
        ("data", "fmt"),
        [(b"{nope", "json"), (b"keys: [", "yaml"), (b"keys = [", "toml"), (b'"just a string"', "json")],
    )
    def test_malformed(self, data: bytes, fmt: str) -> None:
        with pytest.raises(CorruptData):
            import_registry(data, fmt)

    def test_unknown_format(self) -> None:
        with pytest.raises(InvalidInput):
            import_registry(b"{}", "ini")


class TestMerge:
    def test_match_by_id_replaces(self) -> None:
        base = Registry(keys=[ApiKey(id="1", name="A")])
        incoming = Registry(keys=[ApiKey(id="1", name="A-renamed")])
        merged = merge_registries(base, incoming)
        assert [(k.id, k.name) for k in merged.keys] == [("1", "A-renamed")]

    def test_match_by_name_replaces(self) -> None:
        base = Registry(keys=[ApiKey(id="1", name="Work", secret="old")])
        incoming = Registry(keys=[ApiKey(id="", name="work", secret="new")])
        merged = merge_registries(base, incoming)
        assert len(merged.keys) == 1
        assert merged.keys[0].secret == "new"

    def test_unmatched_is_appended(self) -> None:
        base = Registry(keys=[ApiKey(id="1", name="a")])
        merged = merge_registries(base, Registry(keys=[ApiKey(id="7", name="b")]))
        assert [k.id for k in merged.keys] == ["1", "7"]

    def test_base_is_not_modified(self) -> None:
        base = Registry(keys=[ApiKey(id="1", name="a")])
        merge_registries(base, Registry(keys=[ApiKey(id="1", name="z"), ApiKey(id="2", name="b")]))
        assert [k.name for k in base.keys] == ["a"]

    def test_incoming_active_and_version_win(self) -> None:
        base = Registry(
            schema_version="0.9",
            active_id="1",
            keys=[ApiKey(id="1", name="a", active=True), ApiKey(id="2", name="b")],
        )
        merged = merge_registries(base, Registry(schema_version="1.0.0", active_id="2"))
        assert merged.active_id == "2"
        assert merged.schema_version == "1.0.0"
        assert [k.active for k in merged.keys] == [False, True]

    def test_blank_incoming_keeps_base_pointer(self) -> None:
        base = Registry(schema_version="1.0.0", active_id="1", keys=[ApiKey(id="1", name="a", active=True)])
        merged = merge_registries(base, Registry(keys=[ApiKey(id="5", name="b")]))
        assert merged.active_id == "1"
        assert merged.schema_version == "1.0.0"

    def test_merge_then_replace(self, manager: KeyManager) -> None:
        manager.add_key(ApiKey(name="A", secret="s1"))
        incoming = Registry(keys=[ApiKey(id="1", name="A-renamed", secret="s2"), ApiKey(id="", name="B", secret="s3")])
        manager.replace_config(merge_registries(manager.config(), incoming))
        keys = manager.list_keys(sort_by="name")
        assert [(k.id, k.name) for k in keys] == [("1", "A-renamed"), ("2", "B")]
        assert manager.active_key().id == "1"
