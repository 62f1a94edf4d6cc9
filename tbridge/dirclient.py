"""Client for the directory servers that list the stations of the network.

:class:`DirectoryClient` logs the conference in and out, downloads the
station list into a :class:`~tbridge.users.UserDirectory`, and asks whether
a callsign is logged in at an address.  A request that fails on one server
is retried on the servers listed after it.
"""

from __future__ import annotations

import logging
import socket
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

from .hostfile import HostCache, inet_addr, inet_ntoa
from .protocol import (
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
from .stationlist import (
    CleanOptions,
    CleanResult,
    ListMarkers,
    StationListError,
    StationListParser,
)
from .users import UserDirectory, UserInfo

logger = logging.getLogger(__name__)

# Seconds allowed for a connection or a reply from a directory server.
SERVER_REQ_TIMEOUT = 30.0
HOSTS_FILE = "hosts"
RECV_SIZE = 4096
AUTHORIZED_REPLY = b"1"

Resolver = Callable[[str], Optional[int]]


def apply_check_call(
    users: UserDirectory,
    callsign: str,
    address: int,
    reply: Union[bytes, str],
) -> Optional[UserInfo]:
    """Record the server's answer to a callsign check.

    A reply of ``1`` means the station is logged in at ``address``: it is
    added when unknown, and its address is updated when it has changed.
    Returns the station, or None when the server did not authorize it.
    """
    if isinstance(reply, str):
        reply = reply.encode("latin-1", errors="replace")
    if reply[:1] != AUTHORIZED_REPLY:
        logger.info(
            "CheckCallResp(): server returned %r for client %s.", reply[:1], callsign
        )
        return None

    user = users.find(callsign)
    if user is None:
        user = users.create_user(callsign)
        user.address = address
        user.active = True
        user.authorized = True
        users.add(user)
        logger.info("CheckCallResp(): added authorized client %s.", callsign)
    elif user.address != address:
        old = inet_ntoa(user.address) if user.address is not None else "?"
        logger.info(
            "%s's IP address changed from %s to %s.",
            user.callsign,
            old,
            inet_ntoa(address),
        )
        users.change_address(user, address)
        user.authorized = True
    return user


class DirectoryClient:
    """Makes requests of the configured directory servers."""

    def __init__(
        self,
        config: DirectoryConfig,
        users: Optional[UserDirectory] = None,
        resolver: Optional[Resolver] = None,
        event_hook: Any = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.config = config
        self.users = users if users is not None else UserDirectory()
        self.resolver: Resolver = resolver or HostCache().get_host_by_name
        self.event_hook = event_hook
        self.clock = clock or time.time
        self.timeout = SERVER_REQ_TIMEOUT
        self.hosts_file = Path(HOSTS_FILE)
        self.stats: list[ServerStats] = [ServerStats() for _ in config.servers]
        self.busy = False
        self.connected_status: Optional[str] = None
        self.user_count: Optional[str] = None
        self.snapshot_id = "0"
        self.our_node_id: Optional[int] = None
        self.active_entries = 0
        self.inactive_entries = 0
        self.running = True

    def _stats(self, index: int) -> ServerStats:
        while len(self.stats) <= index:
            self.stats.append(ServerStats())
        return self.stats[index]

    def request(self, kind: ServerRequest, server: int = 0, arg: Any = None) -> Any:
        """Perform a request, falling back to the servers after ``server``.

        Returns the login reply, the :class:`CleanResult` of a station list,
        or the station found by a callsign check.  Raises
        :class:`DirectoryError` when every server failed.
        """
        kind = ServerRequest(kind)
        if kind is ServerRequest.NONE:
            raise ValueError("no request given")
        servers = self.config.servers
        if not 0 <= server < len(servers):
            raise ValueError(f"no directory server {server}")

        last_error: Optional[Exception] = None
        for index in range(server, len(servers)):
            host = servers[index]
            if not host:
                break
            if index > server:
                logger.warning("Trying %s with backup server %s", kind.label, host)
            stats = self._stats(index)
            stats.requests += 1
            try:
                result = self._perform(kind, host, arg)
            except (OSError, DirectoryError, StationListError) as err:
                stats.failure += 1
                last_error = err
                if isinstance(err, LoginRejected):
                    logger.warning("login server %s rejected login attempt.", host)
                    self.running = False
                logger.error(
                    "ServerRequest %s failed with server %s: %s", kind.label, host, err
                )
                continue
            stats.success += 1
            return self._after_success(kind, index, result)

        if kind is ServerRequest.SHUTDOWN:
            logger.error("Couldn't Log out, exiting anyway.")
            self.running = False
        if isinstance(last_error, DirectoryError):
            raise last_error
        raise DirectoryError(f"{kind.label} failed: {last_error}") from last_error

    def _after_success(self, kind: ServerRequest, index: int, result: Any) -> Any:
        if kind is ServerRequest.LOGIN_AND_LIST:
            return self.request(ServerRequest.STATION_LIST, index)
        if kind is ServerRequest.SHUTDOWN:
            logger.info("Logged out, exiting.")
            self.running = False
        return result

    def validate_callsign(self, callsign: str, address: int) -> Optional[UserInfo]:
        """Ask the directory whether ``callsign`` is logged in at ``address``."""
        return self.request(ServerRequest.CHECK_CALL, 0, (callsign, address))

    def cleanup(self) -> None:
        """Forget every known station."""
        self.users.clear()

    def _connect(self, host: str) -> socket.socket:
        address = self.resolver(host)
        if address is None:
            # Some resolvers do not accept numeric addresses.
            address = inet_addr(host)
        if address is None:
            raise DirectoryError(f'Couldn\'t convert "{host}" to an IP address.')
        source = None
        if self.config.bind_ip is not None:
            if inet_addr(self.config.bind_ip) is None:
                raise DirectoryError(
                    f'failed to convert "{self.config.bind_ip}" to IP address.'
                )
            source = (self.config.bind_ip, 0)
        return socket.create_connection(
            (inet_ntoa(address), self.config.port),
            timeout=self.timeout,
            source_address=source,
        )

    def _perform(self, kind: ServerRequest, host: str, arg: Any) -> Any:
        with self._connect(host) as sock:
            if kind is ServerRequest.STATION_LIST:
                return self._station_list(sock)
            if kind is ServerRequest.CHECK_CALL:
                return self._check_call(sock, arg)
            return self._login(sock, kind)

    def _login(self, sock: socket.socket, kind: ServerRequest) -> str:
        status = login_status(kind, self.busy)
        qth = login_qth(self.config, self.connected_status, self.user_count)
        sock.sendall(build_login_message(self.config, status, self.clock(), qth))
        reply = b""
        while len(reply) < 2:
            chunk = sock.recv(2 - len(reply))
            if not chunk:
                break
            reply += chunk
        return parse_login_reply(reply)

    def _event_callback(self) -> Optional[Callable[[str], object]]:
        if self.event_hook is None:
            return None
        return getattr(self.event_hook, "fire", self.event_hook)

    def _station_list(self, sock: socket.socket) -> CleanResult:
        config = self.config
        options = CleanOptions(
            conference_call=config.conference_call,
            inactive_timeout=config.inactive_timeout,
            include_all_hosts=config.include_all_hosts,
            hosts_file=self.hosts_file if config.write_host_file else None,
            qth_in_hosts_file=config.qth_in_hosts_file,
            event_hook=self._event_callback(),
        )
        parser = StationListParser(
            self.users,
            ListMarkers(max_qth_len=config.max_qth_len),
            config.ilink_server,
            self.clock,
            options,
        )
        sock.sendall(station_list_request(config, self.snapshot_id))
        while True:
            data = sock.recv(RECV_SIZE)
            if not data:
                result = parser.finish()
                break
            if parser.feed(data):
                result = parser.finish()
                break

        self.snapshot_id = parser.snapshot_id
        if result.our_node_id is not None:
            self.our_node_id = result.our_node_id
        self.active_entries = result.active_entries
        self.inactive_entries = result.inactive_entries
        return result

    def _check_call(self, sock: socket.socket, arg: Any) -> Optional[UserInfo]:
        callsign, address = arg
        sock.sendall(check_call_request(callsign, address))
        reply = sock.recv(1)
        if not reply:
            raise DirectoryError("server closed connection")
        return apply_check_call(self.users, callsign, address, reply)