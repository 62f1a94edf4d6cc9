"""Run an external script for each bridge event, one at a time.

Every event is a line of text.  Its words become the script's arguments.
Events wait in a queue and the script runs for one event at a time, in the
order the events were fired.
"""

from __future__ import annotations

import logging
import subprocess
import sys
from collections import deque
from typing import Callable, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

# Longest event line accepted; longer lines are cut.
MAX_EVENT_LEN = 1023
# The script name plus at most this many arguments less one are passed
# before the final argument.
MAX_ARGUMENTS = 10

CHAT_PREFIXES = ("chat ", "sent_chat ")


class ProcessHandle(Protocol):
    """What a runner returns: something that reports when it has exited."""

    def poll(self) -> Optional[int]: ...


Runner = Callable[[Sequence[str]], ProcessHandle]


def build_argv(script: str, command_tail: str) -> list[str]:
    """Split an event line into the argument vector for the script.

    Chat events keep all their text in the second argument.  Other events
    are split at runs of spaces.  Words that do not fit are dropped, but the
    last word is always passed.
    """
    if command_tail.startswith(CHAT_PREFIXES):
        kind, _, text = command_tail.partition(" ")
        return [script, kind, text.lstrip(" ")]

    argv = [script]
    pos = 0
    while (space := command_tail.find(" ", pos)) != -1:
        if len(argv) < MAX_ARGUMENTS:
            argv.append(command_tail[pos:space])
        end = space
        while end < len(command_tail) and command_tail[end] == " ":
            end += 1
        pos = end
    argv.append(command_tail[pos:])
    return argv


def _popen_runner(argv: Sequence[str]) -> ProcessHandle:
    return subprocess.Popen(list(argv))


class EventHook:
    """A queue of events, each handed in turn to an external script."""

    def __init__(self, script: Optional[str] = None, runner: Optional[Runner] = None) -> None:
        self.script = script
        self.runner: Runner = runner or _popen_runner
        self._queue: deque[str] = deque()
        self._process: Optional[ProcessHandle] = None

    def __len__(self) -> int:
        """Number of events waiting, including the one being run."""
        return len(self._queue)

    @property
    def running(self) -> bool:
        return self._process is not None

    def fire(self, event: str) -> bool:
        """Queue an event; returns False when no script is configured."""
        if self.script is None:
            return False
        self._queue.append(event[:MAX_EVENT_LEN])
        if len(self._queue) == 1:
            self._start_next()
        elif len(self._queue) > 2:
            logger.error("Queued event, %d events outstanding", len(self._queue))
        return True

    def _start_next(self) -> None:
        while self._queue and self._process is None:
            argv = build_argv(self.script or "", self._queue[0])
            # Flush our own buffered output before the child shares the streams.
            for stream in (sys.stdout, sys.stderr):
                try:
                    stream.flush()
                except (OSError, ValueError):
                    pass
            logger.debug("Starting event hook process")
            try:
                self._process = self.runner(argv)
            except OSError as err:
                logger.error("Unable to run event script %s: %s", self.script, err)
                self._queue.popleft()

    def poll(self) -> int:
        """Reap a finished script run and start the next queued event.

        Returns the number of events that completed during this call.
        """
        completed = 0
        while self._process is not None and self._process.poll() is not None:
            self._process = None
            if self._queue:
                self._queue.popleft()
            completed += 1
            self._start_next()
        return completed