from datetime import datetime

import pytest

from tbridge.hostfile import inet_addr
from tbridge.protocol import (
    DirectoryConfig,
    DirectoryError,
    LoginRejected,
    ServerRequest,
    ServerStats,
    build_login_message,
    check_call_request,
    login_qth,
    login_status,
    parse_login_reply,
    station_list_request,
)


def make_config(**kwargs):
    password = "password"
    defaults = dict(
        conference_call="*TEST*",
        conference_pass=password,
        conference_qth="Somewhere",
        email="bridge@example.com",
        version="0.85",
    )
    defaults.update(kwargs)
    return DirectoryConfig(**defaults)


def test_request_labels():
    assert ServerRequest.LOGIN_AND_LIST.label == "Login&List"
    assert ServerRequest.NONE.label == "?"
    assert ServerRequest(6) is ServerRequest.CHECK_CALL


def test_server_stats_start_at_zero():
    stats = ServerStats()
    stats.requests += 1
    assert (stats.requests, stats.success, stats.failure) == (1, 0, 0)


@pytest.mark.parametrize(
    "kind,busy,expected",
    [
        (ServerRequest.LOGIN, False, "ONLINE"),
        (ServerRequest.LOGIN, True, "BUSY"),
        (ServerRequest.LOGIN_AND_LIST, False, "ONLINE"),
        (ServerRequest.LOGOUT, False, "OFF-V"),
        (ServerRequest.SHUTDOWN, True, "OFF-V"),
        (ServerRequest.CHECK_CALL, True, "BUSY"),
    ],
)
def test_login_status(kind, busy, expected):
    assert login_status(kind, busy) == expected


def test_login_qth_plain():
    assert login_qth(make_config()) == "Somewhere"


def test_login_qth_private():
    assert login_qth(make_config(private_conference=True)) == "Private conference"


def test_login_qth_connected_status_wins_when_enabled():
    config = make_config(show_status_in_info=True)
    assert login_qth(config, "In QSO", " (3)") == "In QSO"
    assert login_qth(make_config(), "In QSO") == "Somewhere"


def test_login_qth_empty_status_falls_back():
    config = make_config(show_status_in_info=True)
    assert login_qth(config, "") == "Somewhere"


def test_login_qth_appends_user_count():
    config = make_config(user_count_in_location=True)
    assert login_qth(config, None, " (3)") == "Somewhere (3)"


def test_login_qth_user_count_replaces_tail_when_too_long():
    config = make_config(conference_qth="Q" * 60, user_count_in_location=True)
    qth = login_qth(config, None, " (12)")
    assert len(qth) == config.max_qth_len
    assert qth.endswith(" (12)")
    assert set(qth[: -len(" (12)")]) == {"Q"}


def test_login_qth_truncated_below_limit():
    config = make_config(conference_qth="Q" * 60)
    qth = login_qth(config)
    assert len(qth) == config.max_qth_len - 1


def test_build_login_message_fields():
    config = make_config()
    message = build_login_message(config, "ONLINE", datetime(2024, 1, 5, 13, 0), "Home")
    assert message.startswith(b"l*TEST*\xac\xacpassword\r")
    fields = message[1:].split(b"\r")
    assert fields[1] == b"ONLINE0.85B(13: 5)"
    assert fields[2] == b"Home"
    assert fields[3] == b"bridge@example.com"
    assert fields[4] == b""


def test_build_login_message_ilink_and_irlp():
    config = make_config(ilink_server=True, echo_irlp_mode=True, email=None)
    message = build_login_message(config, "OFF-V", datetime(2024, 1, 5, 13, 0), "Home")
    assert message.startswith(b"l*TEST*\xac=")
    fields = message[1:].split(b"\r")
    assert fields[1].startswith(b"OFF-V0.85I(")
    assert fields[3] == b""


def test_build_login_message_accepts_timestamp():
    config = make_config()
    stamp = datetime(2024, 3, 1, 9, 30).timestamp()
    from_stamp = build_login_message(config, "BUSY", stamp, "Home")
    from_datetime = build_login_message(config, "BUSY", datetime(2024, 3, 1, 9, 30), "Home")
    assert from_stamp == from_datetime


def test_build_login_message_too_long():
    config = make_config(conference_qth="x")
    with pytest.raises(DirectoryError):
        build_login_message(config, "ONLINE", datetime(2024, 1, 5), "y" * 300)


def test_parse_login_reply_ok():
    assert parse_login_reply(b"OK") == "OK"
    assert parse_login_reply(b"OKextra") == "OK"


def test_parse_login_reply_rejected():
    with pytest.raises(LoginRejected):
        parse_login_reply(b"NO")


def test_parse_login_reply_other():
    with pytest.raises(DirectoryError) as info:
        parse_login_reply(b"XY")
    assert not isinstance(info.value, LoginRejected)


def test_parse_login_reply_short():
    with pytest.raises(DirectoryError):
        parse_login_reply(b"O")


def test_station_list_request_variants():
    assert station_list_request(make_config()) == b"s"
    assert station_list_request(make_config(ilink_server=True)) == b"S"
    assert station_list_request(make_config(dir_compression=True), "0") == b"F0\r"


def test_station_list_request_truncates_snapshot():
    request = station_list_request(make_config(dir_compression=True), "9" * 30)
    assert len(request) == 11
    assert request.startswith(b"F9")


def test_check_call_request_round_trip():
    address = inet_addr("10.1.2.3")
    request = check_call_request("N0CALL", address)
    assert request[:1] == b"v"
    callsign, ip_text, tail = request[1:].split(b"\r")
    assert callsign == b"N0CALL"
    assert inet_addr(ip_text.decode()) == address
    assert tail == b""


def test_check_call_request_truncated():
    request = check_call_request("C" * 100, inet_addr("10.1.2.3"))
    assert len(request) == 1 + 79
    assert set(request[1:]) == {ord("C")}