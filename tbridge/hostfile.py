"""Cached host name resolution backed by a periodically refreshed hosts file.

Name lookups block, so a bridge serving live audio cannot afford them in its
main loop.  :class:`HostCache` keeps every resolved name in memory.  It also
refreshes them in a background worker that writes a hosts file, which is
loaded back into the cache on a later call to :meth:`HostCache.update`.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

HOST_FILENAME_EXT = "hosts"
TEMP_EXT = "temp"
INADDR_NONE = 0xFFFFFFFF

# Lookups slower than this are always logged.
SLOW_LOOKUP_MS = 1500
# The first refresh happens this many seconds after the cache is first used.
STARTUP_REFRESH_DELAY = 60

Resolver = Callable[[str], Optional[int]]


def _parse_part(text: str) -> Optional[int]:
    if not text:
        return None
    try:
        if text[:2].lower() == "0x":
            return int(text[2:], 16) if text[2:] else 0
        if len(text) > 1 and text[0] == "0":
            return int(text[1:], 8)
        if not text.isdigit():
            return None
        return int(text, 10)
    except ValueError:
        return None


def inet_addr(text: str) -> Optional[int]:
    """Convert a dotted IPv4 address to an integer.

    The classic short forms (``a``, ``a.b``, ``a.b.c``) and octal or hex
    parts are accepted.  Returns None when the text is not an address.  The
    all-ones address also gives None, because it is the error value.
    """
    parts = text.strip().split(".")
    if not 1 <= len(parts) <= 4:
        return None
    values = [_parse_part(part) for part in parts]
    if any(value is None for value in values):
        return None
    *leading, last = values
    if any(value > 0xFF for value in leading):
        return None
    if last >= 1 << (8 * (5 - len(values))):
        return None
    address = 0
    for shift, value in zip((24, 16, 8), leading):
        address |= value << shift
    address |= last
    if address == INADDR_NONE:
        return None
    return address


def inet_ntoa(value: int) -> str:
    """Format an integer IPv4 address in dotted decimal form."""
    return ".".join(str((value >> shift) & 0xFF) for shift in (24, 16, 8, 0))


def _system_resolver(hostname: str) -> Optional[int]:
    try:
        return inet_addr(socket.gethostbyname(hostname))
    except OSError:
        return None


def _format_lapse(seconds: float) -> str:
    seconds = max(0, int(seconds))
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    clock = f"{hours}:{minutes:02d}:{secs:02d}"
    if days:
        return f"{days} day{'s' if days != 1 else ''} {clock}"
    return clock


class HostCache:
    """A name-to-address cache that is refreshed in the background."""

    def __init__(
        self,
        temp_dir: str | os.PathLike = ".",
        app_name: str = "tbd",
        update_interval: int = 3600,
        load_on_start: bool = False,
        resolver: Optional[Resolver] = None,
        clock: Optional[Callable[[], float]] = None,
        on_refresh: Optional[Callable[[], None]] = None,
    ) -> None:
        self.temp_dir = Path(temp_dir)
        self.app_name = app_name
        self.update_interval = update_interval
        self.load_on_start = load_on_start
        self.resolver: Resolver = resolver or _system_resolver
        self.clock = clock or time.time
        self.on_refresh = on_refresh
        self.last_update = self.clock()
        self._entries: dict[str, int] = {}
        self._lock = threading.Lock()
        self._initialized = False
        self._update_requested = False
        self._worker: Optional[threading.Thread] = None

    @property
    def host_file(self) -> Path:
        return self.temp_dir / f"{self.app_name}.{HOST_FILENAME_EXT}"

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _initialize(self) -> None:
        self._initialized = True
        if self.load_on_start:
            self.load_host_file()
        # Delay the first refresh so the startup burst of lookups is complete.
        self.last_update = self.clock() - self.update_interval + STARTUP_REFRESH_DELAY

    def get_host_by_name(self, hostname: str) -> Optional[int]:
        """Return the address of a host, from the cache when possible."""
        if not self._initialized:
            self._initialize()

        numeric = inet_addr(hostname)
        if numeric is not None:
            return numeric

        self.update(False)

        with self._lock:
            cached = self._entries.get(hostname)
        if cached is not None:
            return cached

        start = time.monotonic()
        address = self.resolver(hostname)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        if elapsed_ms > SLOW_LOOKUP_MS or logger.isEnabledFor(logging.DEBUG):
            logger.warning(
                "It took %d milliseconds to %s %s.",
                elapsed_ms,
                "fail to resolve" if address is None else "resolve",
                hostname,
            )
        if address is not None:
            self.add_entry(hostname, address)
        return address

    def add_entry(self, hostname: str, address: int) -> None:
        """Insert a host or update the address of a known one."""
        with self._lock:
            previous = self._entries.get(hostname)
            self._entries[hostname] = address
        if previous is not None and previous != address and "rotate" not in hostname:
            logger.info(
                "Host %s IP address changed from %s to %s.",
                hostname,
                inet_ntoa(previous),
                inet_ntoa(address),
            )

    def load_host_file(self) -> int:
        """Load entries from the hosts file; returns how many were accepted."""
        self.last_update = self.clock()
        try:
            handle = self.host_file.open("r", encoding="utf-8", errors="replace")
        except OSError:
            return 0
        loaded = 0
        with handle:
            for line_number, line in enumerate(handle, start=1):
                fields = line.split()
                if not fields or fields[0].startswith("#"):
                    continue
                if len(fields) < 2:
                    logger.warning(
                        "Ignoring line %d in host file, missing hostname.", line_number
                    )
                    continue
                address = inet_addr(fields[0])
                if address is None:
                    logger.warning(
                        "Ignoring line %d in host file, invalid IP address.",
                        line_number,
                    )
                    continue
                self.add_entry(fields[1], address)
                loaded += 1
        return loaded

    def _write_host_file(self, hostnames: list[str]) -> Path:
        target = self.host_file
        temp = target.with_name(f"{target.name}.{TEMP_EXT}")
        with temp.open("w", encoding="utf-8") as handle:
            for hostname in hostnames:
                address = self.resolver(hostname)
                if address is not None:
                    handle.write(f"{inet_ntoa(address)}\t{hostname}\n")
        os.replace(temp, target)
        return target

    def create_host_file(self) -> Path:
        """Resolve every cached host afresh and write the hosts file."""
        with self._lock:
            hostnames = sorted(self._entries)
        return self._write_host_file(hostnames)

    def _refresh_worker(self, hostnames: list[str]) -> None:
        try:
            self._write_host_file(hostnames)
        except OSError as err:
            logger.error("Unable to write host file: %s", err)

    def update(self, forced: bool) -> Optional[threading.Thread]:
        """Load a finished refresh and start a new one when it is due.

        Returns the worker thread when a refresh was started.
        """
        if self._worker is not None and self._worker.is_alive():
            return None
        self._worker = None

        if self._update_requested:
            self._update_requested = False
            logger.debug("Host file updated, loading it")
            self.load_host_file()
            if self.on_refresh is not None:
                self.on_refresh()

        now = self.clock()
        due = forced or (
            self.update_interval != 0 and now - self.last_update > self.update_interval
        )
        with self._lock:
            hostnames = sorted(self._entries)
        if not hostnames or not due:
            return None

        self._update_requested = True
        self.last_update = now
        worker = threading.Thread(
            target=self._refresh_worker, args=(hostnames,), daemon=True
        )
        self._worker = worker
        worker.start()
        return worker

    def dump(self) -> list[str]:
        """Describe the cache contents as lines of text."""
        with self._lock:
            entries = sorted(self._entries.items())
        if not entries:
            return ["DNS cache is empty"]
        lines = [
            f"{_format_lapse(self.clock() - self.last_update)} "
            "since the DNS cache was last updated."
        ]
        lines.extend(f"{name}\t{inet_ntoa(address)}" for name, address in entries)
        return lines

    def clear(self) -> None:
        """Forget every cached host."""
        with self._lock:
            self._entries.clear()