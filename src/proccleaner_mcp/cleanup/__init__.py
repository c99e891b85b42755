"""Process cleanup for build nodes.

Kills processes a build left behind, before and/or after the build runs:
- Process table snapshots via psutil or ps
- Selection by owning user, optionally limited to one process tree
- Kill-all or leaf-to-root recursive kill strategies with verification
- Per-node lock with state machine
- Global on/off switch and eligible account
"""

from .executor import CleanExecutor
from .manager import CleanManager, JobConfig
from .matcher import match_processes
from .models import ProcessEntry, ProcessSnapshot
from .node import LocalNode, Node
from .policy import CleanerConfig, GlobalPolicy, PolicySettings
from .snapshot import capture
from .state import (
    DISABLED_MESSAGE,
    CleanPhase,
    CleanReport,
    CleanRequest,
    CleanState,
    CleanupError,
    ConcurrencyTimeout,
    KillFailure,
    SnapshotError,
)
from .strategy import AllKiller, KillStrategy, RecursiveKiller, get_strategy, register_strategy

__all__ = [
    "ProcessEntry",
    "ProcessSnapshot",
    "capture",
    "Node",
    "LocalNode",
    "match_processes",
    "KillStrategy",
    "AllKiller",
    "RecursiveKiller",
    "get_strategy",
    "register_strategy",
    "GlobalPolicy",
    "PolicySettings",
    "CleanerConfig",
    "CleanExecutor",
    "CleanManager",
    "JobConfig",
    "CleanRequest",
    "CleanReport",
    "CleanPhase",
    "CleanState",
    "KillFailure",
    "CleanupError",
    "SnapshotError",
    "ConcurrencyTimeout",
    "DISABLED_MESSAGE",
]
