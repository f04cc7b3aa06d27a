"""Client roster: per-entry validation, uniqueness, lookups"""

import pytest

from eldim.config.clients import ClientConfig, ClientRegistry, load_client_roster, validate_roster
from eldim.errors import ValidationError

PW_A = "a" * 32
PW_B = "b" * 64


@pytest.mark.parametrize(
    "entry",
    [
        {"name": "ip-only", "ipv4": ["10.0.0.1"]},
        {"name": "v6-only", "ipv6": ["2001:db8::1"]},
        {"name": "pw-only", "password": PW_A},
        {"name": "longest-pw", "password": "x" * 128},
        {"name": "everything", "ipv4": ["10.0.0.2"], "ipv6": ["2001:db8::2"], "password": PW_B},
    ],
)
def test_valid_client_entries(entry):
    ClientConfig(**entry).check()


@pytest.mark.parametrize(
    "entry,message",
    [
        ({"name": "", "password": PW_A}, "no name"),
        ({"name": "nothing"}, "at least one of"),
        ({"name": "short", "password": "x" * 31}, "shorter than 32"),
        ({"name": "long", "password": "x" * 129}, "longer than 128"),
        ({"name": "bad-ip", "ipv4": ["10.0.0.300"]}, "invalid IP Address"),
        ({"name": "v6-in-v4", "ipv4": ["2001:db8::1"]}, "non-IPv4"),
        ({"name": "v4-in-v6", "ipv6": ["10.0.0.1"]}, "non-IPv6"),
        ({"name": "mapped-in-v6", "ipv6": ["::ffff:10.0.0.1"]}, "non-IPv6"),
    ],
)
def test_invalid_client_entries(entry, message):
    with pytest.raises(ValidationError) as exc:
        ClientConfig(**entry).check()
    assert message in exc.value.message


def test_null_lists_in_yaml_are_empty():
    c = ClientConfig(name="x", ipv4=None, ipv6=None, password=PW_A)
    assert c.ipv4 == [] and c.ipv6 == []


def test_roster_must_not_be_empty():
    with pytest.raises(ValidationError, match="No clients"):
        validate_roster([])


def test_roster_reports_invalid_entry_with_index():
    with pytest.raises(ValidationError) as exc:
        validate_roster([ClientConfig(name="ok", password=PW_A), ClientConfig(name="bad")])
    assert "Client 'bad' (2) is invalid" in exc.value.message


def test_duplicate_names_rejected():
    with pytest.raises(ValidationError, match="unique name"):
        validate_roster([
            ClientConfig(name="same", password=PW_A),
            ClientConfig(name="same", password=PW_B),
        ])


def test_duplicate_passwords_rejected():
    with pytest.raises(ValidationError, match="Client 2 does not have a unique password"):
        validate_roster([
            ClientConfig(name="one", password=PW_A),
            ClientConfig(name="two", password=PW_A),
        ])


def test_overlapping_ips_rejected_in_canonical_form():
    with pytest.raises(ValidationError, match="reuses an IP Address"):
        validate_roster([
            ClientConfig(name="one", ipv6=["2001:db8::10"]),
            ClientConfig(name="two", ipv6=["2001:0db8:0000::0010"]),
        ])


def test_distinct_roster_passes():
    validate_roster([
        ClientConfig(name="one", ipv4=["10.0.0.1"], password=PW_A),
        ClientConfig(name="two", ipv4=["10.0.0.2"], password=PW_B),
        ClientConfig(name="three", ipv6=["2001:db8::3"]),
    ])


def test_load_roster_from_yaml(write_clients):
    path = write_clients([{"name": "web01", "ipv4": ["192.0.2.10"]}, {"name": "db01", "password": PW_A}])
    clients = load_client_roster(path)
    assert [c.name for c in clients] == ["web01", "db01"]


def test_load_roster_errors(tmp_path):
    with pytest.raises(ValidationError, match="Did not supply"):
        load_client_roster("")
    with pytest.raises(ValidationError, match="Failed to open clients file"):
        load_client_roster(str(tmp_path / "missing.yml"))
    broken = tmp_path / "broken.yml"
    broken.write_text("- name: [unclosed\n")
    with pytest.raises(ValidationError, match="Unable to decode"):
        load_client_roster(str(broken))
    mapping = tmp_path / "mapping.yml"
    mapping.write_text("name: web01\n")
    with pytest.raises(ValidationError, match="expected a list"):
        load_client_roster(str(mapping))


@pytest.fixture
def registry():
    return ClientRegistry([
        ClientConfig(name="web01", ipv4=["192.0.2.10"], ipv6=["2001:db8::10"]),
        ClientConfig(name="db01", password=PW_A),
        ClientConfig(name="mail01", ipv4=["192.0.2.20"], password=PW_B),
    ])


def test_registry_matches_by_ip(registry):
    assert registry.match("192.0.2.10", None).name == "web01"
    assert registry.match("2001:db8:0::10", None).name == "web01"
    # dual-stack listeners report IPv4 peers as mapped addresses
    assert registry.match("::ffff:192.0.2.10", None).name == "web01"


def test_registry_matches_by_password(registry):
    assert registry.match("203.0.113.7", PW_A).name == "db01"
    assert registry.match(None, PW_B).name == "mail01"


def test_registry_no_match(registry):
    assert registry.match("203.0.113.7", None) is None
    assert registry.match("203.0.113.7", "c" * 32) is None
    assert registry.match("testclient", "") is None


def test_password_wins_over_ip(registry):
    assert registry.match("192.0.2.10", PW_A).name == "db01"


def test_registry_refuses_invalid_roster():
    with pytest.raises(ValidationError):
        ClientRegistry([ClientConfig(name="a", password=PW_A), ClientConfig(name="b", password=PW_A)])


def test_registry_does_not_keep_raw_passwords(registry):
    assert all(PW_A not in repr(v) for v in vars(registry).values())
