"""Directory of known stations and the access control list.

:class:`UserDirectory` holds the stations learned from the directory server.
Each one is indexed by callsign and by IP address.
:class:`AccessControlList` holds the allow/deny rules loaded from the
``<app>.acl`` file.
"""

from __future__ import annotations

import itertools
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional

from .hostfile import HostCache

logger = logging.getLogger(__name__)

ACL_FILENAME_EXT = "acl"
FIRST_NODE_ID = 1001
NO_HOST = "-"

Resolver = Callable[[str], Optional[int]]


def acl_filename(app_name: str) -> str:
    """Return the name of the access control list file for an application."""
    return f"{app_name}.{ACL_FILENAME_EXT}"


def _base_callsign(callsign: str) -> str:
    """Strip a ``-R`` / ``-L`` style suffix from a callsign."""
    return callsign.split("-", 1)[0]


@dataclass(eq=False)
class UserInfo:
    """A station that is, or recently was, listed by the directory server."""

    callsign: str
    node_id: int = 0
    address: Optional[int] = None
    last_heard: float = 0.0
    qth: Optional[str] = None
    authorized: bool = False
    active: bool = False
    busy: bool = False
    refreshed: bool = False
    muted: bool = False
    unmuted: bool = False
    chat_muted: bool = False
    chat_unmuted: bool = False


class UserDirectory:
    """Stations indexed by callsign and by IP address."""

    def __init__(self) -> None:
        self._by_call: dict[str, UserInfo] = {}
        self._by_address: dict[int, UserInfo] = {}
        self._node_ids = itertools.count(FIRST_NODE_ID)

    def create_user(self, callsign: str) -> UserInfo:
        """Make a new station with a fresh node id; it is not added."""
        return UserInfo(callsign=callsign, node_id=next(self._node_ids))

    def add(self, user: UserInfo) -> None:
        """Add a station to both indexes."""
        if user.callsign in self._by_call:
            raise ValueError(f"user {user.callsign!r} already exists")
        self._by_call[user.callsign] = user
        self._index_address(user)

    def _index_address(self, user: UserInfo) -> None:
        if user.address is not None:
            self._by_address.setdefault(user.address, user)

    def _unindex_address(self, user: UserInfo) -> None:
        if user.address is not None and self._by_address.get(user.address) is user:
            del self._by_address[user.address]

    def delete(self, user: UserInfo) -> None:
        """Remove a station from both indexes."""
        logger.debug('Deleting user "%s".', user.callsign)
        self._unindex_address(user)
        if self._by_call.get(user.callsign) is not user:
            raise KeyError(user.callsign)
        del self._by_call[user.callsign]

    def find(self, callsign: str) -> Optional[UserInfo]:
        return self._by_call.get(callsign)

    def find_by_address(self, address: int) -> Optional[UserInfo]:
        return self._by_address.get(address)

    def find_by_node_id(self, node_id: int) -> Optional[UserInfo]:
        return next((user for user in self if user.node_id == node_id), None)

    def change_address(self, user: UserInfo, address: Optional[int]) -> None:
        """Give a station a new address and keep the address index current."""
        self._unindex_address(user)
        user.address = address
        if self._by_call.get(user.callsign) is user:
            self._index_address(user)

    def clear(self) -> None:
        self._by_call.clear()
        self._by_address.clear()

    def __iter__(self) -> Iterator[UserInfo]:
        return iter([self._by_call[call] for call in sorted(self._by_call)])

    def __len__(self) -> int:
        return len(self._by_call)


class ResolutionError(Exception):
    """An ACL host name could not be resolved."""

    def __init__(self, hostname: str) -> None:
        super().__init__(f'unable to resolve hostname "{hostname}"')
        self.hostname = hostname


@dataclass(eq=False)
class ACLEntry:
    """One allow or deny rule.

    ``hostname`` and ``password`` are ``"-"`` when not checked.
    ``call_plus`` is the name/location text shown after the callsign.
    """

    callsign: str
    hostname: str = NO_HOST
    password: Optional[str] = NO_HOST
    call_plus: Optional[str] = None
    authorized: bool = True
    address: Optional[int] = None
    last_resolved: float = 0.0
    refreshed: bool = False

    @property
    def checks_host(self) -> bool:
        return not self.hostname.startswith(NO_HOST)


class AccessControlList:
    """Allow/deny rules indexed by base callsign and by resolved address."""

    def __init__(self, resolver: Optional[Resolver] = None) -> None:
        self.resolver: Resolver = resolver or HostCache().get_host_by_name
        self._by_call: dict[str, ACLEntry] = {}
        self._by_address: dict[int, ACLEntry] = {}

    def _index_address(self, entry: ACLEntry) -> None:
        if entry.checks_host and entry.address is not None:
            self._by_address.setdefault(entry.address, entry)

    def _unindex_address(self, entry: ACLEntry) -> None:
        if entry.address is not None and self._by_address.get(entry.address) is entry:
            del self._by_address[entry.address]

    def add(self, entry: ACLEntry) -> ACLEntry:
        """Store a rule, replacing any rule for the same base callsign.

        The host name is resolved first; :class:`ResolutionError` is raised
        when that fails.  Returns the stored rule.
        """
        address = None
        if entry.checks_host:
            address = self.resolver(entry.hostname)
            if address is None:
                raise ResolutionError(entry.hostname)

        base = _base_callsign(entry.callsign)
        old = self._by_call.get(base)
        if old is not None:
            self._discard(old)

        if entry.call_plus is not None:
            separator = "" if entry.call_plus.startswith("-") else " "
            call_plus = f"{entry.callsign}{separator}{entry.call_plus}"
        else:
            call_plus = entry.callsign

        stored = ACLEntry(
            callsign=base,
            hostname=entry.hostname,
            password=entry.password,
            call_plus=call_plus,
            authorized=entry.authorized,
            address=address,
            last_resolved=entry.last_resolved,
            refreshed=entry.refreshed,
        )
        self._by_call[base] = stored
        self._index_address(stored)
        return stored

    def _discard(self, entry: ACLEntry) -> None:
        self._unindex_address(entry)
        if self._by_call.get(entry.callsign) is entry:
            del self._by_call[entry.callsign]

    def remove(self, callsign: str) -> None:
        """Delete the rule for a callsign."""
        entry = self.find(callsign)
        if entry is None:
            raise KeyError(callsign)
        self._discard(entry)

    def find(self, callsign: str) -> Optional[ACLEntry]:
        return self._by_call.get(_base_callsign(callsign))

    def find_by_address(self, address: int) -> Optional[ACLEntry]:
        return self._by_address.get(address)

    def refresh(self) -> None:
        """Resolve every rule's host name again."""
        for entry in self:
            if not entry.checks_host:
                continue
            address = self.resolver(entry.hostname)
            if address is not None:
                self._unindex_address(entry)
                entry.address = address
                self._index_address(entry)

    def load(self, path: str | os.PathLike) -> int:
        """Load rules from a file and drop rules no longer listed in it.

        A missing file is not an error.  Returns the number of rules read.
        """
        path = Path(path)
        try:
            handle = path.open("r", encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return 0
        except OSError:
            logger.error("LoadACL(): Unable to open ACL file.")
            return 0

        accepted = 0
        with handle:
            for line_number, line in enumerate(handle, start=1):
                entry = self._parse_line(line, line_number)
                if entry is None:
                    continue
                try:
                    self.add(entry)
                except ResolutionError as err:
                    logger.warning(
                        'LoadACL(): Ignoring line %d, unable to resolve hostname "%s".',
                        line_number,
                        err.hostname,
                    )
                    continue
                accepted += 1

        for entry in list(self):
            if not entry.refreshed:
                self._discard(entry)
            entry.refreshed = False
        return accepted

    @staticmethod
    def _parse_line(line: str, line_number: int) -> Optional[ACLEntry]:
        fields = line.split(None, 4)
        if not fields or fields[0][0] in "#;":
            return None
        action = fields[0]
        if action not in ("allow", "deny"):
            logger.warning(
                'LoadACL(): Ignoring line %d, invalid action "%s".', line_number, action
            )
            return None
        for index, what in ((1, "callsign"), (2, "hostname"), (3, "password")):
            if len(fields) <= index:
                logger.warning(
                    "LoadACL(): Ignoring line %d, %s missing.", line_number, what
                )
                return None
        call_plus = fields[4].rstrip("\r\n") if len(fields) > 4 else None
        return ACLEntry(
            callsign=fields[1],
            hostname=fields[2],
            password=fields[3],
            call_plus=call_plus or None,
            authorized=action == "allow",
            refreshed=True,
        )

    def save(self, path: str | os.PathLike) -> None:
        """Write every rule to a file in the format :meth:`load` reads."""
        with Path(path).open("w", encoding="utf-8") as handle:
            for entry in self:
                handle.write(
                    "\t".join(
                        (
                            "allow" if entry.authorized else "deny",
                            entry.callsign,
                            entry.hostname,
                            entry.password if entry.password is not None else NO_HOST,
                            self._saved_call_plus(entry.call_plus),
                        )
                    )
                    + "\n"
                )

    @staticmethod
    def _saved_call_plus(call_plus: Optional[str]) -> str:
        if call_plus is None:
            return ""
        dash = call_plus.find("-")
        if dash >= 0:
            return call_plus[dash:]
        space = call_plus.find(" ")
        if space >= 0:
            return call_plus[space + 1 :]
        return ""

    def __iter__(self) -> Iterator[ACLEntry]:
        return iter([self._by_call[call] for call in sorted(self._by_call)])

    def __len__(self) -> int:
        return len(self._by_call)