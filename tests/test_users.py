import pytest

from tbridge.hostfile import inet_addr
from tbridge.users import (
    ACLEntry,
    AccessControlList,
    ResolutionError,
    UserDirectory,
    acl_filename,
)

HOSTS = {"node.example.com": inet_addr("10.1.2.3"), "other.example.com": inet_addr("10.9.9.9")}


def make_acl(hosts=None):
    table = dict(HOSTS if hosts is None else hosts)
    return AccessControlList(resolver=table.get), table


# ---- UserDirectory -------------------------------------------------------


def test_node_ids_start_at_1001_and_increase():
    users = UserDirectory()
    first = users.create_user("W1AW")
    second = users.create_user("K1ABC")
    assert first.node_id == 1001
    assert second.node_id == first.node_id + 1
    assert len(users) == 0


def test_add_and_find():
    users = UserDirectory()
    user = users.create_user("W1AW")
    user.address = inet_addr("10.0.0.1")
    users.add(user)
    assert users.find("W1AW") is user
    assert users.find_by_address(inet_addr("10.0.0.1")) is user
    assert users.find_by_node_id(user.node_id) is user
    assert users.find("K1ABC") is None


def test_add_duplicate_raises():
    users = UserDirectory()
    users.add(users.create_user("W1AW"))
    with pytest.raises(ValueError):
        users.add(users.create_user("W1AW"))


def test_delete_removes_from_both_indexes():
    users = UserDirectory()
    user = users.create_user("W1AW")
    user.address = inet_addr("10.0.0.1")
    users.add(user)
    users.delete(user)
    assert users.find("W1AW") is None
    assert users.find_by_address(inet_addr("10.0.0.1")) is None
    assert len(users) == 0


def test_delete_unknown_raises():
    users = UserDirectory()
    with pytest.raises(KeyError):
        users.delete(users.create_user("W1AW"))


def test_change_address_updates_index():
    users = UserDirectory()
    user = users.create_user("W1AW")
    user.address = inet_addr("10.0.0.1")
    users.add(user)
    users.change_address(user, inet_addr("10.0.0.2"))
    assert user.address == inet_addr("10.0.0.2")
    assert users.find_by_address(inet_addr("10.0.0.1")) is None
    assert users.find_by_address(inet_addr("10.0.0.2")) is user


def test_iteration_is_sorted_by_callsign_and_clear_empties():
    users = UserDirectory()
    for call in ("N0XYZ", "K1ABC", "W1AW"):
        users.add(users.create_user(call))
    assert [user.callsign for user in users] == ["K1ABC", "N0XYZ", "W1AW"]
    users.clear()
    assert list(users) == []


def test_find_by_node_id_missing():
    users = UserDirectory()
    users.add(users.create_user("W1AW"))
    assert users.find_by_node_id(1) is None


# ---- AccessControlList ---------------------------------------------------


def test_acl_filename():
    assert acl_filename("tbd") == "tbd.acl"


def test_add_strips_suffix_and_builds_call_plus():
    acl, _ = make_acl()
    stored = acl.add(ACLEntry(callsign="W1AW-L", call_plus="Joe"))
    assert stored.callsign == "W1AW"
    assert stored.call_plus == "W1AW-L Joe"
    assert acl.find("W1AW") is stored
    assert acl.find("W1AW-R") is stored


def test_call_plus_starting_with_dash_is_joined_directly():
    acl, _ = make_acl()
    stored = acl.add(ACLEntry(callsign="W1AW", call_plus="-R Club"))
    assert stored.call_plus == "W1AW-R Club"


def test_call_plus_defaults_to_callsign():
    acl, _ = make_acl()
    stored = acl.add(ACLEntry(callsign="W1AW-R"))
    assert stored.call_plus == "W1AW-R"


def test_add_resolves_hostname():
    acl, _ = make_acl()
    stored = acl.add(ACLEntry(callsign="W1AW", hostname="node.example.com"))
    assert stored.address == HOSTS["node.example.com"]
    assert acl.find_by_address(HOSTS["node.example.com"]) is stored


def test_add_unresolvable_raises():
    acl, _ = make_acl()
    with pytest.raises(ResolutionError) as info:
        acl.add(ACLEntry(callsign="W1AW", hostname="missing.example.com"))
    assert info.value.hostname == "missing.example.com"
    assert len(acl) == 0


def test_add_replaces_existing_rule():
    acl, _ = make_acl()
    acl.add(ACLEntry(callsign="W1AW", hostname="node.example.com"))
    acl.add(ACLEntry(callsign="W1AW-L", authorized=False))
    assert len(acl) == 1
    assert acl.find("W1AW").authorized is False
    assert acl.find_by_address(HOSTS["node.example.com"]) is None


def test_remove():
    acl, _ = make_acl()
    acl.add(ACLEntry(callsign="W1AW"))
    acl.remove("W1AW")
    assert acl.find("W1AW") is None
    with pytest.raises(KeyError):
        acl.remove("W1AW")


def test_refresh_picks_up_new_address():
    acl, table = make_acl()
    acl.add(ACLEntry(callsign="W1AW", hostname="node.example.com"))
    table["node.example.com"] = inet_addr("10.4.4.4")
    acl.refresh()
    assert acl.find("W1AW").address == inet_addr("10.4.4.4")
    assert acl.find_by_address(inet_addr("10.4.4.4")).callsign == "W1AW"


def test_save_format(tmp_path):
    acl, _ = make_acl()
    password = "password"
    acl.add(ACLEntry(callsign="W1AW-L", password=password, call_plus="Joe"))
    path = tmp_path / acl_filename("tbd")
    acl.save(path)
    assert path.read_text() == "allow\tW1AW\t-\tpassword\t-L Joe\n"


def test_save_load_round_trip(tmp_path):
    acl, _ = make_acl()
    password = "password"
    acl.add(ACLEntry(callsign="W1AW-L", password=password, call_plus="Joe"))
    acl.add(
        ACLEntry(
            callsign="K1ABC",
            hostname="node.example.com",
            call_plus="Jane Smith",
            authorized=False,
        )
    )
    path = tmp_path / "tbd.acl"
    acl.save(path)

    loaded, _ = make_acl()
    assert loaded.load(path) == 2
    original = {e.callsign: (e.call_plus, e.hostname, e.authorized, e.password) for e in acl}
    restored = {e.callsign: (e.call_plus, e.hostname, e.authorized, e.password) for e in loaded}
    assert restored == original
    assert all(not entry.refreshed for entry in loaded)


def test_load_skips_bad_lines(tmp_path):
    path = tmp_path / "tbd.acl"
    path.write_text(
        "# comment\n"
        "; another comment\n"
        "\n"
        "maybe W1AW - -\n"
        "allow\n"
        "allow K1ABC\n"
        "allow K1ABC -\n"
        "allow N0XYZ missing.example.com -\n"
        "deny W2XYZ - - Somewhere\n"
    )
    acl, _ = make_acl()
    assert acl.load(path) == 1
    assert [entry.callsign for entry in acl] == ["W2XYZ"]
    assert acl.find("W2XYZ").authorized is False
    assert acl.find("W2XYZ").call_plus == "W2XYZ Somewhere"


def test_load_drops_rules_missing_from_file(tmp_path):
    acl, _ = make_acl()
    acl.add(ACLEntry(callsign="OLD1"))
    path = tmp_path / "tbd.acl"
    path.write_text("allow NEW1\t-\t-\n")
    acl.load(path)
    assert acl.find("OLD1") is None
    assert acl.find("NEW1").callsign == "NEW1"


def test_load_missing_file_keeps_rules(tmp_path):
    acl, _ = make_acl()
    acl.add(ACLEntry(callsign="W1AW"))
    assert acl.load(tmp_path / "absent.acl") == 0
    assert acl.find("W1AW").callsign == "W1AW"