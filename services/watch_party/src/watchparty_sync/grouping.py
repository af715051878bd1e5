"""Grouped views over an ordered party log.

Consecutive activity entries collapse into one group regardless of actor;
consecutive messages collapse only while the author stays the same.
"""

from __future__ import annotations

from typing import Iterable

from .models import LogEntry, LogGroup


def _fits(group: LogGroup, entry: LogEntry) -> bool:
    if entry.type != group.type:
        return False
    if entry.type == "activity":
        return True
    return entry.author_id == group.author


def _open_group(entry: LogEntry) -> LogGroup:
    author = entry.author_id if entry.type == "message" else None
    return LogGroup(type=entry.type, author=author, entries=[entry])


class LogGrouper:
    """Single-pass grouping that can be extended one entry at a time."""

    def __init__(self) -> None:
        self._groups: list[LogGroup] = []

    @property
    def groups(self) -> list[LogGroup]:
        return list(self._groups)

    def push(self, entry: LogEntry) -> LogGroup:
        """Add ``entry``, comparing only against the last open group.

        Returns:
            LogGroup: The group the entry landed in.
        """

        if self._groups and _fits(self._groups[-1], entry):
            self._groups[-1].entries.append(entry)
        else:
            self._groups.append(_open_group(entry))
        return self._groups[-1]

    def extend(self, entries: Iterable[LogEntry]) -> "LogGrouper":
        for entry in entries:
            self.push(entry)
        return self


def group_entries(entries: Iterable[LogEntry]) -> list[LogGroup]:
    """Group an ordered sequence of log entries."""

    return LogGrouper().extend(entries).groups
