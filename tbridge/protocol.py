"""Messages exchanged with an EchoLink-style directory server.

Functions here build the requests a bridge sends and read the short
replies it gets back.  They do no I/O.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from .hostfile import inet_ntoa

logger = logging.getLogger(__name__)

DIRSERVER_PORT = 5200
LOGIN_BUFFER_SIZE = 256
STATION_REQUEST_SIZE = 12
CHECK_CALL_ARG_SIZE = 80
DEFAULT_MAX_QTH_LEN = 40

LOGIN_COMMAND = b"l"
CHECK_CALL_COMMAND = b"v"
FIELD_SEPARATOR = "\xac"
ILINK_SEPARATOR = "="
ENCODING = "latin-1"

STATUS_ONLINE = "ONLINE"
STATUS_BUSY = "BUSY"
STATUS_OFF = "OFF-V"
PRIVATE_QTH = "Private conference"

REPLY_OK = "OK"
REPLY_NO = "NO"


class ServerRequest(enum.IntEnum):
    """The kinds of request made of a directory server."""

    NONE = 0
    LOGIN = 1
    LOGOUT = 2
    LOGIN_AND_LIST = 3
    STATION_LIST = 4
    SHUTDOWN = 5
    CHECK_CALL = 6

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    ServerRequest.NONE: "?",
    ServerRequest.LOGIN: "Login",
    ServerRequest.LOGOUT: "Logout",
    ServerRequest.LOGIN_AND_LIST: "Login&List",
    ServerRequest.STATION_LIST: "StationList",
    ServerRequest.SHUTDOWN: "Shutdown",
    ServerRequest.CHECK_CALL: "CheckCall",
}


@dataclass
class ServerStats:
    """Request counters kept for one directory server."""

    requests: int = 0
    success: int = 0
    failure: int = 0


class DirectoryError(Exception):
    """A directory server request failed."""


class LoginRejected(DirectoryError):
    """The directory server refused the login."""


@dataclass
class DirectoryConfig:
    """Settings that shape the conversation with the directory servers."""

    conference_call: str = ""
    conference_pass: str = ""
    conference_qth: str = ""
    email: Optional[str] = None
    version: str = "0.85"
    servers: list[str] = field(default_factory=list)
    port: int = DIRSERVER_PORT
    bind_ip: Optional[str] = None
    private_conference: bool = False
    user_count_in_location: bool = False
    show_status_in_info: bool = False
    ilink_server: bool = False
    echo_irlp_mode: bool = False
    dir_compression: bool = False
    max_qth_len: int = DEFAULT_MAX_QTH_LEN
    inactive_timeout: float = 600
    include_all_hosts: bool = False
    write_host_file: bool = False
    qth_in_hosts_file: bool = False


def login_status(kind: ServerRequest, busy: bool) -> str:
    """Return the status word sent with a login or logout."""
    if kind in (ServerRequest.SHUTDOWN, ServerRequest.LOGOUT):
        return STATUS_OFF
    if kind not in (ServerRequest.LOGIN, ServerRequest.LOGIN_AND_LIST):
        logger.error("PullerLogin(): Unknown server request")
    return STATUS_BUSY if busy else STATUS_ONLINE


def login_qth(
    config: DirectoryConfig,
    connected_status: Optional[str] = None,
    user_count: Optional[str] = None,
) -> str:
    """Return the location text shown for the conference in the directory."""
    limit = config.max_qth_len
    qth = ""
    if config.show_status_in_info and connected_status:
        qth = connected_status[: limit - 1]

    if not qth:
        base = PRIVATE_QTH if config.private_conference else config.conference_qth
        qth = base[: limit - 1]
        if config.user_count_in_location:
            count = user_count or ""
            if len(qth) + len(count) <= limit:
                qth += count
            else:
                qth = qth[: max(0, limit - len(count))] + count
    return qth[:limit]


def build_login_message(
    config: DirectoryConfig,
    status: str,
    now: Union[datetime, float],
    qth: str,
) -> bytes:
    """Return the bytes of a login request, command byte included.

    Raises :class:`DirectoryError` when the message does not fit the
    login buffer.
    """
    when = now if isinstance(now, datetime) else datetime.fromtimestamp(now)
    separator = ILINK_SEPARATOR if config.ilink_server else FIELD_SEPARATOR
    mode = "I" if config.echo_irlp_mode else "B"
    text = (
        f"{config.conference_call}{FIELD_SEPARATOR}{separator}"
        f"{config.conference_pass}\r"
        f"{status}{config.version}{mode}({when.hour}:{when.day:2d})\r"
        f"{qth}\r{config.email or ''}\r"
    )
    payload = text.encode(ENCODING, errors="replace")
    if len(payload) >= LOGIN_BUFFER_SIZE:
        raise DirectoryError("PullerLogin(): Temp buffer too small !")
    return LOGIN_COMMAND + payload


def parse_login_reply(data: bytes) -> str:
    """Check the two byte reply to a login.

    Returns ``"OK"`` on success.  Raises :class:`LoginRejected` on ``"NO"``
    and :class:`DirectoryError` on anything else or a short reply.
    """
    if len(data) < 2:
        raise DirectoryError("server closed connection")
    reply = bytes(data[:2]).decode(ENCODING)
    if reply == REPLY_OK:
        return reply
    if reply == REPLY_NO:
        raise LoginRejected("login server rejected login attempt")
    raise DirectoryError(f'login error server returned "{reply}"')


def station_list_request(config: DirectoryConfig, snapshot_id: str = "0") -> bytes:
    """Return the request for a station list."""
    if config.dir_compression:
        request = f"F{snapshot_id}\r"[: STATION_REQUEST_SIZE - 1]
    elif config.ilink_server:
        request = "S"
    else:
        request = "s"
    return request.encode(ENCODING, errors="replace")


def check_call_request(callsign: str, address: int) -> bytes:
    """Return the request asking whether a callsign is logged in at an address."""
    arg = f"{callsign}\r{inet_ntoa(address)}\r"[: CHECK_CALL_ARG_SIZE - 1]
    return CHECK_CALL_COMMAND + arg.encode(ENCODING, errors="replace")