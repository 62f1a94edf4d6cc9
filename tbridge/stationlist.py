"""Parsing of the station list sent by a directory server.

A station list arrives plain or zlib-compressed, and as a full list or as
the changes since an earlier snapshot.  :class:`StationListParser` takes the
raw bytes as they arrive and updates a :class:`~tbridge.users.UserDirectory`.
:func:`clean_user_list` then drops stations that are no longer listed and can
write a hosts file of the active ones.
"""

from __future__ import annotations

import logging
import os
import re
import time
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .hostfile import INADDR_NONE, inet_addr, inet_ntoa
from .users import UserDirectory, UserInfo

logger = logging.getLogger(__name__)

HOST_FILE_HEADER = "#IP Adr\tCallsign\tNode number\tQth\n"
HOSTS_TEMP_SUFFIX = ".temp"
HOSTFILE_EVENT = "hostfile"
OFF_LINE = " (off line)"

# Size of the buffer that decompressed text is collected in.  A line that
# does not fit is an error.
ZBUF_SIZE = 1024
PREAMBLE_LEN = 4

_KEY = "91182092262753893"
_KEY_SPAN = 15
_SUBSTITUTE1 = "4325198076"
_SUBSTITUTE2 = "3719458602"

_INT_RE = re.compile(r"\s*([+-]?\d+)")

# Parser states: which field the next line holds.
_PREAMBLE = 0
_COUNT = 1
_CALLSIGN = 2
_QTH = 3
_NODE_ID = 4
_ADDRESS = 5
_DELETED = 6


class StationListError(Exception):
    """The station list could not be read."""


@dataclass(frozen=True)
class ListMarkers:
    """The markers and limits of the station list format.

    A plain list starts with ``start_of_data`` and its line feed.  A
    differential list starts with ``diff_data``.  ``end_of_data`` is a line
    of its own.  Anything else at the start is read as the little-endian
    length of a compressed list, which must be below ``max_list_size``.
    """

    start_of_data: str = "@@@"
    diff_data: str = "DDD"
    end_of_data: str = "+++"
    max_list_size: int = 1 << 20
    max_call_len: int = 10
    max_qth_len: int = 40


@dataclass
class CleanOptions:
    """Settings used when the user list is cleaned after a download."""

    conference_call: str = ""
    inactive_timeout: float = 600
    include_all_hosts: bool = False
    hosts_file: Optional[Path] = None
    qth_in_hosts_file: bool = False
    event_hook: Optional[Callable[[str], object]] = None


@dataclass
class CleanResult:
    """What :func:`clean_user_list` found."""

    active_entries: int = 0
    inactive_entries: int = 0
    deleted: int = 0
    our_node_id: Optional[int] = None


def descramble_ip(text: str) -> str:
    """Decode an IP address as scrambled by iLink directory servers."""
    chars = list(text)
    for index in range(max(0, len(chars) - 2)):
        key = _KEY[index % _KEY_SPAN]
        chars[index] = chr((ord(chars[index]) - ord(key)) % 256)

    for table, dot in ((_SUBSTITUTE1, "}"), (_SUBSTITUTE2, "=")):
        for index, char in enumerate(chars):
            if "0" <= char <= "9":
                chars[index] = table[ord(char) - ord("0")]
            elif char == dot:
                chars[index] = "."

    result = "".join(chars)
    if inet_addr(result) is None:
        logger.error('DeScrambleIP() failed: in "%s", out "%s"', text, result)
    return result


def right_trim(text: str) -> str:
    """Remove trailing blanks (spaces only)."""
    return text.rstrip(" ")


def _scan_int(text: str) -> Optional[int]:
    match = _INT_RE.match(text)
    return int(match.group(1)) if match else None


def _host_line(user: UserInfo, with_qth: bool) -> str:
    address = inet_ntoa(user.address if user.address is not None else INADDR_NONE)
    suffix = "" if user.active else OFF_LINE
    if with_qth:
        return f"{address}\t{user.callsign}\t# {user.node_id}\t{user.qth or ''}{suffix}\n"
    return f"{address}\t{user.callsign}\t# {user.node_id}{suffix}\n"


def _write_hosts_file(path: Path, lines: list[str]) -> bool:
    temp = path.with_name(path.name + HOSTS_TEMP_SUFFIX)
    try:
        with temp.open("w", encoding="latin-1", errors="replace") as handle:
            handle.write(HOST_FILE_HEADER)
            handle.writelines(lines)
        os.replace(temp, path)
    except OSError as err:
        logger.error("Unable to write hosts file %s: %s", path, err)
        return False
    return True


def clean_user_list(
    users: UserDirectory,
    differential: bool,
    now: float,
    options: Optional[CleanOptions] = None,
) -> CleanResult:
    """Drop stations no longer listed and count those that remain.

    After a full list, stations that were not refreshed are kept for
    ``inactive_timeout`` seconds as inactive before they are deleted.
    After a differential list, stations marked inactive are deleted once
    they have not been heard for that long.
    """
    options = options or CleanOptions()
    result = CleanResult()
    host_lines: list[str] = []

    for user in list(users):
        if user.callsign == options.conference_call:
            result.our_node_id = user.node_id

        listed = user.active if differential else user.refreshed
        delete = False
        if not listed:
            if now - user.last_heard > options.inactive_timeout:
                delete = True
            elif not differential:
                # Kept for a while so users who just logged in need no lookup.
                user.active = False

        if delete:
            users.delete(user)
            result.deleted += 1
            continue

        user.refreshed = False
        if user.active or options.include_all_hosts:
            result.active_entries += 1
            if user.authorized:
                host_lines.append(_host_line(user, options.qth_in_hosts_file))
        else:
            result.inactive_entries += 1

    if options.hosts_file is not None:
        if _write_hosts_file(Path(options.hosts_file), host_lines):
            if options.event_hook is not None:
                options.event_hook(HOSTFILE_EVENT)
    return result


class StationListParser:
    """Reads a station list from a directory server into a user directory."""

    def __init__(
        self,
        users: UserDirectory,
        markers: Optional[ListMarkers] = None,
        ilink_server: bool = False,
        clock: Optional[Callable[[], float]] = None,
        options: Optional[CleanOptions] = None,
    ) -> None:
        self.users = users
        self.markers = markers or ListMarkers()
        self.ilink_server = ilink_server
        self.clock = clock or time.time
        self.options = options or CleanOptions()

        self.snapshot_id = "0"
        self.differential = False
        self.compressed = False
        self.complete = False
        self.station_count = 0
        self.new_stations = 0
        self.deleted_stations = 0
        self.updated_stations = 0
        self.clean_result: Optional[CleanResult] = None

        self._state = _PREAMBLE
        self._ignore = False
        self._end_found = False
        self._preamble_read = False
        self._finished = False
        self._raw = bytearray()
        self._pending = bytearray()
        self._inflater: Optional["zlib._Decompress"] = None

        self._callsign = ""
        self._qth = ""
        self._busy = False
        self._node_id = 0

    # -- input -------------------------------------------------------------

    def feed(self, data: bytes) -> bool:
        """Process newly received bytes; returns True once the list is complete."""
        if self._finished:
            return self.complete
        self._raw += data

        if not self._preamble_read:
            if len(self._raw) < PREAMBLE_LEN:
                return False
            self._read_preamble()

        if self.compressed:
            self._feed_compressed()
        else:
            self._parse_lines(self._raw)
        return self.complete

    def finish(self) -> CleanResult:
        """Handle the end of the connection and return the cleaning result.

        Raises :class:`StationListError` when the list was not complete.
        """
        if not self._finished:
            if self._preamble_read and not self.compressed and self._raw:
                line = self._raw.decode("latin-1")
                self._raw.clear()
                self.parse_line(line)
            self._finished = True
        if not self.complete or self.clean_result is None:
            raise StationListError("connection closed before the end of the station list")
        return self.clean_result

    def _fail(self, message: str) -> None:
        self._finished = True
        logger.error("%s", message)
        raise StationListError(message)

    def _read_preamble(self) -> None:
        markers = self.markers
        start = markers.start_of_data.encode("latin-1")
        diff = markers.diff_data.encode("latin-1")
        if self._raw.startswith(start):
            consumed = len(start) + 1
            self._state = _COUNT
        elif self._raw.startswith(diff):
            consumed = len(diff)
            self._state = _COUNT
            self.differential = True
        else:
            length = int.from_bytes(self._raw[:PREAMBLE_LEN], "little")
            if length >= markers.max_list_size:
                head = bytes(self._raw[:PREAMBLE_LEN]).decode("latin-1")
                self._fail(f"Expected StartOfData got {head!r}")
            consumed = PREAMBLE_LEN
            self.compressed = True
            self._inflater = zlib.decompressobj()
        self._preamble_read = True
        del self._raw[:consumed]

    def _feed_compressed(self) -> None:
        inflater = self._inflater
        assert inflater is not None
        if self._raw:
            if not inflater.eof:
                try:
                    self._pending += inflater.decompress(bytes(self._raw))
                except zlib.error as err:
                    self._fail(f"inflate failed: {err}")
            self._raw.clear()

        self._parse_lines(self._pending)
        if self._finished:
            return

        if inflater.eof:
            if not self._pending:
                self._fail("compressed stream ended before the end of the station data")
            line = self._pending.decode("latin-1")
            self._pending.clear()
            self.parse_line(line)
            if not self.complete:
                self._fail("connection closed before the end of the station list")
        elif len(self._pending) >= ZBUF_SIZE - 1:
            self._fail("decompression buffer overflow")

    def _parse_lines(self, buffer: bytearray) -> None:
        while not self._finished:
            end = buffer.find(b"\n")
            if end < 0:
                break
            line = buffer[:end].decode("latin-1")
            del buffer[: end + 1]
            self.parse_line(line)

    # -- line parsing ------------------------------------------------------

    def parse_line(self, line: str) -> None:
        """Process one line of the station list, without its line feed."""
        empty_field = self.differential and line == "."
        state = self._state

        if line == self.markers.end_of_data:
            if self.differential:
                if self._end_found:
                    self._done(True)
                self._end_found = True
                state = _DELETED
                if self.station_count != 0:
                    logger.error(
                        "Deleted station marker found @ StationCount %d.",
                        self.station_count,
                    )
            else:
                self._done(False)
        elif self._ignore:
            if state == _ADDRESS:
                self._ignore = False
                state = _CALLSIGN
            else:
                state += 1
        elif state == _PREAMBLE:
            state = self._parse_marker(line)
        elif state == _COUNT:
            state = self._parse_count(line)
        elif state == _CALLSIGN:
            state = self._parse_callsign(line)
        elif state == _QTH:
            state = self._parse_qth(line, empty_field)
        elif state == _NODE_ID:
            state = self._parse_node_id(line, empty_field)
        elif state == _ADDRESS:
            state = self._parse_address(line, empty_field)
        else:
            self._parse_deleted(line)
        self._state = state

    def _done(self, differential: bool) -> None:
        self.clean_result = clean_user_list(
            self.users, differential, self.clock(), self.options
        )
        self.complete = True
        self._finished = True
        if differential:
            logger.debug(
                "Differential station list completed, %d added, %d deleted, %d updated.",
                self.new_stations,
                self.deleted_stations,
                self.updated_stations,
            )
        else:
            logger.debug(
                "Full station list downloaded successfully, %d stations listed.",
                self.new_stations,
            )

    def _parse_marker(self, line: str) -> int:
        if line.startswith(self.markers.start_of_data):
            return _COUNT
        if line.startswith(self.markers.diff_data):
            self.differential = True
            return _COUNT
        self._fail(f"Expected StartOfData got {line!r}")
        return _PREAMBLE

    def _parse_count(self, line: str) -> int:
        count = _scan_int(line)
        if count is not None:
            self.station_count = count
        if ":" in line:
            self.snapshot_id = line.split(":", 1)[1]
        return _CALLSIGN

    def _parse_callsign(self, line: str) -> int:
        if len(line) > self.markers.max_call_len:
            logger.error('Callsign "%s" is too long.', line)
            self._ignore = True
        else:
            self._callsign = line
        return _QTH

    def _parse_qth(self, line: str, empty_field: bool) -> int:
        if empty_field:
            self._qth = ""
            return _NODE_ID

        bracket = line.rfind("[")
        if bracket >= 0:
            text, status = line[:bracket], line[bracket + 1 :]
            if status.startswith("BUSY"):
                self._busy = True
            elif status.startswith("ON"):
                self._busy = False
            else:
                self._ignore = True
        else:
            text = line
            self._ignore = True

        if self._ignore:
            self._callsign = right_trim(self._callsign)
            text = right_trim(text)
            seen = self.new_stations + self.deleted_stations + self.updated_stations
            if not self._callsign and (logger.isEnabledFor(logging.DEBUG) or seen == 0):
                logger.error("Msg from EchoLink: %s", text)
            return _NODE_ID

        if len(text) > self.markers.max_qth_len:
            logger.error('Qth "%s" is too long.', text)
            self._ignore = True
        else:
            self._qth = text
        return _NODE_ID

    def _parse_node_id(self, line: str, empty_field: bool) -> int:
        if empty_field:
            self._node_id = 0
        else:
            node_id = _scan_int(line)
            if node_id is None:
                logger.error('Can\'t convert NodeID "%s".', line)
                self._ignore = True
            else:
                self._node_id = node_id
        return _ADDRESS

    def _parse_address(self, line: str, empty_field: bool) -> int:
        user = self.users.find(self._callsign)
        new_user = user is None
        if user is None:
            logger.debug('Adding new user "%s".', self._callsign)
            user = self.users.create_user(self._callsign)
            self.new_stations += 1
        else:
            logger.debug('Updating user "%s".', self._callsign)
            self.updated_stations += 1

        user.active = user.refreshed = True
        user.authorized = True
        user.last_heard = self.clock()
        if self._qth:
            user.busy = self._busy
            user.qth = self._qth

        if not empty_field:
            text = descramble_ip(line) if self.ilink_server else line
            address = inet_addr(text)
            if address is None:
                logger.error('Invalid IP address "%s" for %s', text, user.callsign)
            if new_user:
                user.address = address
            elif user.address != address:
                self.users.change_address(user, address)

        user.node_id = self._node_id
        if new_user:
            self.users.add(user)

        self.station_count -= 1
        if self.station_count == 0 and self.differential:
            return _DELETED
        return _CALLSIGN

    def _parse_deleted(self, line: str) -> None:
        user = self.users.find(line)
        if user is None:
            logger.error('Deleted user "%s" not found.', line)
            return
        user.active = False
        self.deleted_stations += 1