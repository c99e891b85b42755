"""Clean manager - singleton orchestrating cleanup across nodes and jobs.

Provides:
- Per-node executor management
- Job cleaner configuration (pre-build / post-build)
- Tracking of builds running on each node
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .executor import CleanExecutor
from .node import LOCAL_NODE, LocalNode, Node
from .policy import CleanerConfig, GlobalPolicy
from .state import CleanPhase, CleanReport, CleanRequest, CleanState, CleanupError
from .strategy import get_strategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobConfig:
    """Cleaner settings of one job definition."""

    name: str
    node: str = LOCAL_NODE
    pre_cleaner: str | None = None  # strategy name, None: no pre-build cleanup
    post_cleaner: str | None = None
    fail_on_error: bool = False

    def __post_init__(self) -> None:
        """Reject unknown strategy names early."""
        for cleaner in (self.pre_cleaner, self.post_cleaner):
            if cleaner is not None:
                get_strategy(cleaner)

    def cleaner_for(self, phase: CleanPhase) -> str | None:
        if phase == CleanPhase.PRE_BUILD:
            return self.pre_cleaner
        if phase == CleanPhase.POST_BUILD:
            return self.post_cleaner
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "node": self.node,
            "preCleaner": self.pre_cleaner,
            "postCleaner": self.post_cleaner,
            "failOnError": self.fail_on_error,
        }


class CleanManager:
    """Singleton manager for process cleanup.

    Usage:
        manager = CleanManager()
        report = await manager.clean(CleanRequest(strategy="recursive", root_pid=1234))
    """

    _instance: CleanManager | None = None

    def __new__(cls) -> CleanManager:
        """Singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        """Initialize manager (only once)."""
        if self._initialized:
            return
        self._policy = GlobalPolicy()
        self._config = CleanerConfig()
        self._nodes: dict[str, Node] = {LOCAL_NODE: LocalNode()}
        self._executors: dict[str, CleanExecutor] = {}
        self._jobs: dict[str, JobConfig] = {}
        # Job definitions have their own lock, independent of the node locks
        self._jobs_lock = threading.Lock()
        self._running_builds: dict[str, set[str]] = {}
        self._global_listeners: list[Callable[[str, CleanState], None]] = []
        self._initialized = True

    @property
    def policy(self) -> GlobalPolicy:
        return self._policy

    @property
    def config(self) -> CleanerConfig:
        return self._config

    def configure(
        self,
        policy: GlobalPolicy | None = None,
        config: CleanerConfig | None = None,
    ) -> None:
        """Replace policy and/or config.

        A clean already in flight keeps running with what it started with.
        """
        if policy is not None:
            self._policy = policy
        if config is not None:
            self._config = config
        for executor in self._executors.values():
            executor.reconfigure(self._policy, self._config)

    def register_node(self, node: Node) -> None:
        """Add or replace a node.

        A replaced node keeps its executor and so its lock; a clean in flight
        finishes on the old node object and queued cleans run on the new one.
        """
        self._nodes[node.name] = node
        executor = self._executors.get(node.name)
        if executor is not None:
            executor.replace_node(node)

    def get_node(self, name: str) -> Node:
        """Look up a node.

        Raises:
            ValueError: If no such node is registered
        """
        try:
            return self._nodes[name]
        except KeyError:
            raise ValueError(f"Unknown node: {name}") from None

    @property
    def nodes(self) -> list[str]:
        return sorted(self._nodes)

    def get_executor(self, node_name: str) -> CleanExecutor:
        """Get or create the executor of a node.

        Note: Not thread-safe; call it from the event loop.
        """
        if node_name not in self._executors:
            executor = CleanExecutor(self.get_node(node_name), self._policy, self._config)
            executor.on_state_change(
                lambda state: self._notify_listeners(node_name, state)
            )
            self._executors[node_name] = executor
        return self._executors[node_name]

    def _notify_listeners(self, node_name: str, state: CleanState) -> None:
        """Notify global state listeners."""
        for listener in self._global_listeners:
            try:
                listener(node_name, state)
            except Exception:
                logger.exception("Global clean listener error")

    def on_clean_state_change(self, listener: Callable[[str, CleanState], None]) -> None:
        """Register global state change listener.

        Listener receives (node_name, new_state).
        """
        self._global_listeners.append(listener)

    async def clean(self, request: CleanRequest) -> CleanReport:
        """Run a clean request on its node."""
        return await self.get_executor(request.node).clean(request)

    # ---- job definitions ----

    def save_job(self, job: JobConfig) -> None:
        """Store a job definition; never waits for a running cleanup."""
        with self._jobs_lock:
            self._jobs[job.name] = job
        logger.info(f"Saved job {job.name}: pre={job.pre_cleaner}, post={job.post_cleaner}")

    def get_job(self, name: str) -> JobConfig:
        """Look up a job definition.

        Raises:
            ValueError: If the job is unknown
        """
        with self._jobs_lock:
            job = self._jobs.get(name)
        if job is None:
            raise ValueError(f"Unknown job: {name}")
        return job

    def remove_job(self, name: str) -> bool:
        with self._jobs_lock:
            return self._jobs.pop(name, None) is not None

    # ---- running builds ----

    def build_started(self, node_name: str, build_id: str) -> None:
        self._running_builds.setdefault(node_name, set()).add(build_id)

    def build_finished(self, node_name: str, build_id: str) -> None:
        builds = self._running_builds.get(node_name)
        if builds is not None:
            builds.discard(build_id)
            if not builds:
                del self._running_builds[node_name]

    def running_builds(self, node_name: str) -> set[str]:
        return set(self._running_builds.get(node_name, ()))

    # ---- build lifecycle ----

    async def run_pre_build(
        self,
        job_name: str,
        build_id: str,
        root_pid: int | None = None,
        log: Callable[[str], None] | None = None,
    ) -> CleanReport | None:
        """Clean before a build starts."""
        return await self._run_phase(CleanPhase.PRE_BUILD, job_name, build_id, root_pid, log)

    async def run_post_build(
        self,
        job_name: str,
        build_id: str,
        root_pid: int | None = None,
        log: Callable[[str], None] | None = None,
    ) -> CleanReport | None:
        """Clean after a build finished."""
        return await self._run_phase(CleanPhase.POST_BUILD, job_name, build_id, root_pid, log)

    async def _run_phase(
        self,
        phase: CleanPhase,
        job_name: str,
        build_id: str,
        root_pid: int | None,
        log: Callable[[str], None] | None,
    ) -> CleanReport | None:
        """Run the cleaner a job configured for a phase.

        Cleanup errors are logged and do not fail the build unless the job
        sets fail_on_error.

        Returns:
            Clean report, or None if the job has no cleaner for the phase or
            the cleanup did not complete
        """
        emit = log or logger.info
        job = self.get_job(job_name)
        cleaner = job.cleaner_for(phase)
        if cleaner is None:
            return None

        others = self.running_builds(job.node) - {build_id}
        if others:
            report = CleanReport(
                node=job.node,
                strategy=cleaner,
                skipped=True,
                message=f"Skipping process cleanup, other builds are running on {job.node}",
            )
            emit(report.message)
            return report

        request = CleanRequest(
            node=job.node,
            root_pid=root_pid,
            strategy=cleaner,
            build_id=build_id,
            phase=phase,
        )

        try:
            report = await self.clean(request)
        except CleanupError as e:
            emit(f"Process cleanup did not complete: {e}")
            if job.fail_on_error:
                raise
            return None
        except asyncio.CancelledError:
            emit("Process cleanup did not complete: interrupted")
            raise

        for line in report.to_lines():
            emit(line)
        return report

    def to_dict(self) -> dict[str, Any]:
        """Get manager status as dictionary."""
        with self._jobs_lock:
            jobs = {name: job.to_dict() for name, job in self._jobs.items()}
        return {
            "policy": self._policy.to_dict(),
            "config": self._config.to_dict(),
            "nodes": {
                name: {
                    "state": (
                        self._executors[name].state.value
                        if name in self._executors
                        else CleanState.IDLE.value
                    ),
                    "runningBuilds": sorted(self.running_builds(name)),
                    "lastReport": (
                        self._executors[name].last_report.to_dict()
                        if name in self._executors and self._executors[name].last_report
                        else None
                    ),
                }
                for name in self.nodes
            },
            "jobs": jobs,
        }
