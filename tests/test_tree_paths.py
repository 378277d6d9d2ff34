import pytest

from hostsync.agent.events import ChangeEvent
from hostsync.agent.tree import classify, create_system, parse_identity, tree_to_data
from hostsync.enums import ChangeOperation, ConfigItem


def test_parse_identity_keeps_predicates() -> None:
    path = parse_identity("/ietf-system:system/authentication/user[name='alice']/authorized-key[name='a/b']/key-data")

    assert path.schema_path == "/ietf-system:system/authentication/user/authorized-key/key-data"
    assert path.key("user") == "alice"
    assert path.key("authorized-key") == "a/b"
    assert path.leaf == "key-data"
    assert path.relative_to(ConfigItem.AUTHORIZED_KEY) == "key-data"


def test_leaf_list_predicate() -> None:
    path = parse_identity("/ietf-system:system/dns-resolver/search[.='example.com']")

    assert path.segments[-1].predicate(".") == "example.com"
    assert classify(path) is ConfigItem.DNS_SEARCH
    assert path.relative_to(ConfigItem.DNS_SEARCH) == ""


@pytest.mark.parametrize(
    ("identity", "item"),
    [
        ("/ietf-system:system/hostname", ConfigItem.HOSTNAME),
        ("/ietf-system:system/clock/timezone-name", ConfigItem.TIMEZONE_NAME),
        ("/ietf-system:system/ntp/enabled", ConfigItem.NTP_ENABLED),
        ("/ietf-system:system/ntp/server[name='a']/udp/address", ConfigItem.NTP_SERVER),
        ("/ietf-system:system/dns-resolver/options/attempts", ConfigItem.DNS_ATTEMPTS),
        ("/ietf-system:system/authentication/user[name='bob']/password", ConfigItem.USER),
        ("/ietf-system:system/authentication/user[name='bob']/authorized-key[name='k']", ConfigItem.AUTHORIZED_KEY),
    ],
)
def test_classify_picks_longest_owner(identity: str, item: ConfigItem) -> None:
    assert classify(parse_identity(identity)) is item


@pytest.mark.parametrize(
    "identity",
    [
        "ietf-system:system/hostname",
        "/ietf-system:system/dns-resolver/server[name='x",
        "/ietf-system:system/ntp/server[name=x]",
    ],
)
def test_malformed_identity_is_rejected(identity: str) -> None:
    with pytest.raises(ValueError):
        parse_identity(identity)


def test_unknown_identity_has_no_owner() -> None:
    with pytest.raises(ValueError):
        classify(parse_identity("/ietf-system:system/radius/server[name='r']"))


def test_change_event_value_rules() -> None:
    with pytest.raises(ValueError):
        ChangeEvent("/ietf-system:system/hostname", ChangeOperation.CREATED, previous_value="old", new_value="new")
    with pytest.raises(ValueError):
        ChangeEvent("/ietf-system:system/hostname", ChangeOperation.DELETED, new_value="new")

    event = ChangeEvent("/ietf-system:system/hostname", ChangeOperation.MODIFIED, previous_value="a", new_value="b")
    assert event.item is ConfigItem.HOSTNAME


def test_tree_to_data_groups_list_entries() -> None:
    system = create_system()
    system.leaf("hostname", "box")
    resolver = system.container("dns-resolver")
    resolver.leaf_list("search", "a.example")
    resolver.leaf_list("search", "b.example")
    server = resolver.list_entry("server", name="one")
    server.container("udp-and-tcp").leaf("address", "192.0.2.1")

    assert tree_to_data(system) == {
        "ietf-system:system": {
            "hostname": "box",
            "dns-resolver": {
                "search": ["a.example", "b.example"],
                "server": [{"name": "one", "udp-and-tcp": {"address": "192.0.2.1"}}],
            },
        }
    }
    assert system.child("dns-resolver") is resolver
    assert system.child("ntp") is None


def test_list_entry_keys_may_use_any_name() -> None:
    auth = create_system().container("authentication")
    user = auth.list_entry("user", name="alice")
    key = user.list_entry("authorized-key", name="laptop", key_data="AAAA")

    assert user.name == "user"
    assert key.name == "authorized-key"
    assert auth.to_data() == {
        "user": [{"name": "alice", "authorized-key": [{"name": "laptop", "key-data": "AAAA"}]}]
    }


def test_leaf_nodes_take_no_children() -> None:
    system = create_system()
    hostname = system.leaf("hostname", "box")

    with pytest.raises(ValueError):
        hostname.leaf("nested", "x")
