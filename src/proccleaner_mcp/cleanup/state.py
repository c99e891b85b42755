"""Cleanup state, request/report types and errors.

State machine for one clean invocation:
IDLE → CHECKING_POLICY → SNAPSHOTTING → MATCHING → KILLING ⇄ VERIFYING → REPORTING → IDLE
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import ProcessEntry

DISABLED_MESSAGE = (
    "Process cleanup is globally turned off, "
    "contact your Jenkins administrator to turn it on."
)


class CleanState(str, Enum):
    """Clean executor state machine states."""

    IDLE = "idle"
    CHECKING_POLICY = "checking_policy"
    SNAPSHOTTING = "snapshotting"
    MATCHING = "matching"
    KILLING = "killing"
    VERIFYING = "verifying"
    REPORTING = "reporting"


class CleanPhase(str, Enum):
    """When a cleanup runs relative to the build."""

    PRE_BUILD = "pre_build"
    POST_BUILD = "post_build"
    MANUAL = "manual"


class CleanupError(Exception):
    """Invocation-level cleanup failure."""

    retryable: bool = False

    def __init__(self, message: str, node: str | None = None):
        super().__init__(message)
        self.node = node

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "error": str(self),
            "type": type(self).__name__,
            "retryable": self.retryable,
        }
        if self.node is not None:
            result["node"] = self.node
        return result


class SnapshotError(CleanupError):
    """The process table of a node could not be read."""


class ConcurrencyTimeout(CleanupError):
    """Another cleanup held the node for longer than the lock timeout."""

    retryable = True


def format_kill_line(entry: ProcessEntry) -> str:
    """Render the log line announcing a kill."""
    return (
        f"Killing Process PID = {entry.pid}, PPID = {entry.ppid}, "
        f"ARGS = {entry.command_line}"
    )


@dataclass(frozen=True)
class CleanRequest:
    """What to clean, built by the caller and never mutated afterwards."""

    node: str = "local"
    owner_user: str | None = None  # None: use the policy username
    root_pid: int | None = None
    strategy: str = "all"
    build_id: str | None = None
    phase: CleanPhase = CleanPhase.MANUAL

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "node": self.node,
            "strategy": self.strategy,
            "phase": self.phase.value,
        }
        if self.owner_user is not None:
            result["ownerUser"] = self.owner_user
        if self.root_pid is not None:
            result["rootPid"] = self.root_pid
        if self.build_id is not None:
            result["buildId"] = self.build_id
        return result


@dataclass(frozen=True)
class KillFailure:
    """A process that survived its kill attempt."""

    entry: ProcessEntry
    reason: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"process": self.entry.to_dict(), "reason": self.reason}


@dataclass
class CleanReport:
    """Outcome of one clean invocation."""

    node: str
    strategy: str
    attempted: list[ProcessEntry] = field(default_factory=list)
    killed: list[ProcessEntry] = field(default_factory=list)
    failures: list[KillFailure] = field(default_factory=list)
    disabled: bool = False
    skipped: bool = False
    interrupted: bool = False
    message: str = ""
    duration_ms: float = 0.0

    @classmethod
    def switched_off(cls, node: str, strategy: str) -> CleanReport:
        """Empty report for an administratively disabled cleanup."""
        return cls(node=node, strategy=strategy, disabled=True, message=DISABLED_MESSAGE)

    @property
    def success(self) -> bool:
        """Whether every attempted process is gone."""
        return not self.failures and not self.interrupted

    @property
    def killed_pids(self) -> set[int]:
        """PIDs confirmed dead."""
        return {e.pid for e in self.killed}

    @property
    def failed_pids(self) -> set[int]:
        """PIDs that survived."""
        return {f.entry.pid for f in self.failures}

    def to_lines(self) -> list[str]:
        """Render as human-readable log lines."""
        if self.disabled or self.skipped:
            return [self.message]

        lines = [format_kill_line(entry) for entry in self.killed]
        for failure in self.failures:
            lines.append(
                f"Failed to kill process PID = {failure.entry.pid}, "
                f"PPID = {failure.entry.ppid}: {failure.reason}"
            )

        status = "interrupted" if self.interrupted else "finished"
        lines.append(
            f"Process cleanup {status} on {self.node} ({self.strategy}): "
            f"{len(self.killed)} killed, {len(self.failures)} failed, "
            f"{len(self.attempted)} attempted"
        )
        return lines

    def to_summary(self) -> str:
        """Generate human-readable summary."""
        return "\n".join(self.to_lines())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "success": self.success,
            "node": self.node,
            "strategy": self.strategy,
            "attempted": [e.to_dict() for e in self.attempted],
            "killed": [e.to_dict() for e in self.killed],
            "failures": [f.to_dict() for f in self.failures],
            "durationMs": round(self.duration_ms, 2),
        }
        if self.disabled:
            result["disabled"] = True
        if self.skipped:
            result["skipped"] = True
        if self.interrupted:
            result["interrupted"] = True
        if self.message:
            result["message"] = self.message
        return result
