"""Data models for process snapshots."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Iterator

ZOMBIE_STATUS = "zombie"


@dataclass(slots=True, frozen=True)
class ProcessEntry:
    """Immutable record of one process as seen in a snapshot."""

    pid: int
    ppid: int
    user: str  # '' when the platform cannot attribute the process
    args: tuple[str, ...] = ()
    status: str = ""  # 'running', 'sleeping', 'zombie', ... or '' if unknown
    create_time: float = 0.0  # epoch seconds, 0.0 when the lister cannot tell

    @property
    def command_line(self) -> str:
        """Arguments joined by spaces."""
        return " ".join(self.args)

    @property
    def is_zombie(self) -> bool:
        """Whether the process has exited but not been reaped."""
        return self.status == ZOMBIE_STATUS

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "pid": self.pid,
            "ppid": self.ppid,
            "user": self.user,
            "args": list(self.args),
        }
        if self.status:
            result["status"] = self.status
        if self.create_time:
            result["createTime"] = self.create_time
        return result


@dataclass(frozen=True)
class ProcessSnapshot:
    """Point-in-time read of a node's process table.

    The OS table is not transactional, so entries can be stale by the time
    anyone acts on them.
    """

    node: str
    entries: tuple[ProcessEntry, ...] = ()
    captured_at: float = field(default_factory=time.time)
    _by_pid: dict[int, ProcessEntry] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        """Index entries by pid, first occurrence wins."""
        for entry in self.entries:
            self._by_pid.setdefault(entry.pid, entry)

    def __iter__(self) -> Iterator[ProcessEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, pid: object) -> bool:
        return pid in self._by_pid

    @property
    def pids(self) -> set[int]:
        """All pids in the snapshot."""
        return set(self._by_pid)

    def get(self, pid: int) -> ProcessEntry | None:
        """Look up an entry by pid."""
        return self._by_pid.get(pid)

    def children_of(self, pid: int) -> list[ProcessEntry]:
        """Direct children of a pid."""
        return [e for e in self.entries if e.ppid == pid and e.pid != pid]

    def ancestors_of(self, pid: int) -> Iterator[int]:
        """Yield the ppid chain of a pid, stopping on cycles and unknown parents.

        The last yielded pid may be one that is not itself in the snapshot
        (an exited parent, or 0 for the OS root).
        """
        seen = {pid}
        current = self._by_pid.get(pid)
        while current is not None:
            parent = current.ppid
            if parent in seen:
                return
            seen.add(parent)
            yield parent
            current = self._by_pid.get(parent)

    def is_alive(self, entry: ProcessEntry) -> bool:
        """Whether the given process still runs.

        A pid that now carries a different start time or different arguments
        belongs to a new process.
        """
        current = self._by_pid.get(entry.pid)
        if current is None or current.is_zombie:
            return False
        if entry.create_time and current.create_time:
            if current.create_time != entry.create_time:
                return False
        if entry.args and current.args and current.args != entry.args:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "node": self.node,
            "capturedAt": self.captured_at,
            "processes": [e.to_dict() for e in self.entries],
        }
