from pathlib import Path

import pytest
import yaml

from hostsync.agent.features import FeatureGate
from hostsync.datastore import DatastoreError, YamlDatastore


def test_edits_are_staged_until_applied(tmp_path: Path) -> None:
    store = YamlDatastore(tmp_path / "running.yaml")
    store.edit_batch({"ietf-system:system": {"hostname": "box"}})

    assert store.get_item("/ietf-system:system/hostname") is None

    store.apply_changes()
    assert store.get_item("/ietf-system:system/hostname") == "box"
    assert store.has_item("/ietf-system:system/hostname")


def test_discard_drops_pending_edits(tmp_path: Path) -> None:
    store = YamlDatastore(tmp_path / "running.yaml")
    store.edit_batch({"ietf-system:system": {"hostname": "box"}})
    store.discard_changes()
    store.apply_changes()

    assert not (tmp_path / "running.yaml").exists()


def test_merge_combines_keyed_lists_and_leaf_lists(tmp_path: Path) -> None:
    path = tmp_path / "running.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "ietf-system:system": {
                    "hostname": "old",
                    "dns-resolver": {
                        "search": ["a.example"],
                        "server": [{"name": "one", "udp-and-tcp": {"address": "192.0.2.1"}}],
                    },
                }
            }
        ),
        encoding="utf-8",
    )
    store = YamlDatastore(path)

    store.edit_batch(
        {
            "ietf-system:system": {
                "hostname": "new",
                "dns-resolver": {
                    "search": ["a.example", "b.example"],
                    "server": [
                        {"name": "one", "udp-and-tcp": {"port": "53"}},
                        {"name": "two", "udp-and-tcp": {"address": "192.0.2.2"}},
                    ],
                },
            }
        },
        "merge",
    )
    store.apply_changes()

    resolver = store.get_item("/ietf-system:system/dns-resolver")
    assert store.get_item("/ietf-system:system/hostname") == "new"
    assert resolver["search"] == ["a.example", "b.example"]
    assert resolver["server"] == [
        {"name": "one", "udp-and-tcp": {"address": "192.0.2.1", "port": "53"}},
        {"name": "two", "udp-and-tcp": {"address": "192.0.2.2"}},
    ]


def test_replace_overwrites_tree(tmp_path: Path) -> None:
    store = YamlDatastore(tmp_path / "startup.yaml")
    store.edit_batch({"ietf-system:system": {"hostname": "box", "location": "Lab"}})
    store.apply_changes()

    store.edit_batch({"ietf-system:system": {"hostname": "other"}}, "replace")
    store.apply_changes()

    assert store.tree() == {"ietf-system:system": {"hostname": "other"}}


def test_unsupported_operations_and_paths(tmp_path: Path) -> None:
    store = YamlDatastore(tmp_path / "running.yaml")

    with pytest.raises(DatastoreError):
        store.edit_batch({}, "remove")
    with pytest.raises(DatastoreError):
        store.get_item("/ietf-system:system/ntp/server[name='a']")


def test_non_mapping_document_is_an_error(tmp_path: Path) -> None:
    path = tmp_path / "running.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(DatastoreError):
        YamlDatastore(path).tree()


def test_feature_status_from_schema_manifest(tmp_path: Path) -> None:
    schema = tmp_path / "schema.yaml"
    schema.write_text(
        yaml.safe_dump({"modules": {"ietf-system": {"features": ["ntp", "timezone-name"]}}}),
        encoding="utf-8",
    )
    store = YamlDatastore(tmp_path / "running.yaml", schema_path=schema)

    features = FeatureGate.load(store, "ietf-system")

    assert features.enabled("ntp")
    assert features.enabled("timezone-name")
    assert not features.enabled("local-users")
    assert not features.enabled("not-a-feature")
    assert store.feature_status("other-module") == {}


def test_missing_schema_manifest_disables_everything(tmp_path: Path) -> None:
    store = YamlDatastore(tmp_path / "running.yaml", schema_path=tmp_path / "missing.yaml")

    assert store.feature_status("ietf-system") == {}
    assert not FeatureGate.load(store, "ietf-system").enabled("ntp")
