"""Clean executor - per-node state machine running one cleanup at a time.

State machine:
IDLE → CHECKING_POLICY → SNAPSHOTTING → MATCHING → KILLING → VERIFYING → REPORTING → IDLE
                                                      ↑__________|  (once per wave)

Only one clean runs per node; a second request waits for the node lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence

from .matcher import match_processes
from .models import ProcessEntry
from .node import Node
from .policy import CleanerConfig, GlobalPolicy
from .snapshot import capture
from .state import (
    DISABLED_MESSAGE,
    CleanReport,
    CleanRequest,
    CleanState,
    CleanupError,
    ConcurrencyTimeout,
    KillFailure,
)
from .strategy import get_strategy

logger = logging.getLogger(__name__)


class CleanExecutor:
    """Runs clean requests against one node.

    Serialized via asyncio.Lock: at most one clean is in flight per node.
    """

    def __init__(
        self,
        node: Node,
        policy: GlobalPolicy,
        config: CleanerConfig | None = None,
    ):
        """Initialize clean executor.

        Args:
            node: Node whose processes are cleaned
            policy: Global policy consulted before any node access
            config: Timing settings (defaults if not provided)
        """
        self._node = node
        self._policy = policy
        self._config = config or CleanerConfig()
        self._state = CleanState.IDLE
        self._lock = asyncio.Lock()
        self._last_report: CleanReport | None = None
        self._current_request: CleanRequest | None = None
        self._state_listeners: list[Callable[[CleanState], None]] = []

    @property
    def node(self) -> Node:
        """Node this executor cleans."""
        return self._node

    @property
    def state(self) -> CleanState:
        """Current executor state."""
        return self._state

    @property
    def last_report(self) -> CleanReport | None:
        """Report of the last finished or interrupted clean."""
        return self._last_report

    @property
    def current_request(self) -> CleanRequest | None:
        """Request being executed, if any."""
        return self._current_request

    @property
    def is_cleaning(self) -> bool:
        """Whether a clean is in flight."""
        return self._lock.locked()

    def reconfigure(
        self,
        policy: GlobalPolicy | None = None,
        config: CleanerConfig | None = None,
    ) -> None:
        """Swap policy and/or config for subsequent cleans."""
        if policy is not None:
            self._policy = policy
        if config is not None:
            self._config = config

    def replace_node(self, node: Node) -> None:
        """Point subsequent cleans at a new node object with the same name.

        A clean in flight keeps the node it started with.
        """
        if node.name != self._node.name:
            raise ValueError(f"Cannot replace node {self._node.name} with {node.name}")
        self._node = node

    def on_state_change(self, listener: Callable[[CleanState], None]) -> None:
        """Register state change listener."""
        self._state_listeners.append(listener)

    def _set_state(self, new_state: CleanState) -> None:
        """Update state and notify listeners."""
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.debug(f"Clean state on {self._node.name}: {old_state.value} -> {new_state.value}")
            for listener in self._state_listeners:
                try:
                    listener(new_state)
                except Exception:
                    logger.exception("State listener error")

    async def clean(self, request: CleanRequest) -> CleanReport:
        """Execute a clean request.

        Args:
            request: What to clean

        Returns:
            Clean report

        Raises:
            ConcurrencyTimeout: If the node stayed busy past the lock timeout
            SnapshotError: If the process table could not be read
            ValueError: If the request names an unknown strategy, or a
                recursive one without a root pid
            asyncio.CancelledError: If cancelled; last_report holds what was done
        """
        timeout = self._config.lock_timeout
        try:
            async with asyncio.timeout(timeout):
                await self._lock.acquire()
        except TimeoutError:
            raise ConcurrencyTimeout(
                f"Another process cleanup is running on {self._node.name} "
                f"(waited {timeout}s)",
                node=self._node.name,
            ) from None

        self._current_request = request
        try:
            return await self._run(request, self._node, self._policy, self._config)
        finally:
            self._current_request = None
            self._set_state(CleanState.IDLE)
            self._lock.release()

    async def _run(
        self,
        request: CleanRequest,
        node: Node,
        policy: GlobalPolicy,
        config: CleanerConfig,
    ) -> CleanReport:
        self._last_report = None
        strategy = get_strategy(request.strategy)
        if strategy.requires_root and request.root_pid is None:
            raise ValueError(f"The {strategy.name} strategy needs a root pid")

        start_time = time.perf_counter()

        self._set_state(CleanState.CHECKING_POLICY)
        settings = policy.snapshot()
        if settings.switched_off:
            logger.warning(DISABLED_MESSAGE)
            self._set_state(CleanState.REPORTING)
            report = CleanReport.switched_off(node.name, strategy.name)
            self._last_report = report
            return report

        owner_user = request.owner_user if request.owner_user is not None else settings.username

        self._set_state(CleanState.SNAPSHOTTING)
        snapshot = await capture(node, timeout=config.snapshot_timeout)

        self._set_state(CleanState.MATCHING)
        matched = match_processes(
            snapshot,
            owner_user,
            root_pid=request.root_pid,
            exclude_pids=node.protected_pids(),
        )
        logger.info(
            f"Matched {len(matched)} of {len(snapshot)} processes on {node.name} "
            f"(user={owner_user!r}, root_pid={request.root_pid})"
        )

        report = CleanReport(node=node.name, strategy=strategy.name)
        try:
            for wave in strategy.plan(matched, snapshot):
                self._set_state(CleanState.KILLING)
                send_errors = await strategy.issue(node, wave, config.max_parallel_kills)
                report.attempted.extend(wave)

                self._set_state(CleanState.VERIFYING)
                survivors = await self._verify(node, wave, config)
                for entry in wave:
                    if entry.pid in survivors:
                        reason = send_errors.get(entry.pid) or (
                            f"still alive after {config.verify_timeout}s"
                        )
                        report.failures.append(KillFailure(entry, reason))
                    else:
                        report.killed.append(entry)
        except (asyncio.CancelledError, CleanupError) as e:
            # Kills already sent stay visible in the partial report
            report.interrupted = True
            if isinstance(e, CleanupError):
                report.message = str(e)
            report.duration_ms = (time.perf_counter() - start_time) * 1000
            self._last_report = report
            logger.warning(
                f"Process cleanup on {node.name} interrupted after "
                f"{len(report.attempted)} attempted kills"
            )
            raise

        self._set_state(CleanState.REPORTING)
        report.duration_ms = (time.perf_counter() - start_time) * 1000
        self._last_report = report
        if report.failures:
            logger.warning(
                f"Process cleanup on {node.name}: {len(report.failures)} processes survived"
            )
        return report

    async def _verify(
        self, node: Node, wave: Sequence[ProcessEntry], config: CleanerConfig
    ) -> set[int]:
        """Poll the node until the wave is gone or the timeout passes.

        Returns:
            PIDs still alive at the end
        """
        pending = list(wave)
        deadline = time.monotonic() + config.verify_timeout

        while True:
            snapshot = await capture(node, timeout=config.snapshot_timeout)
            pending = [entry for entry in pending if snapshot.is_alive(entry)]
            if not pending or time.monotonic() >= deadline:
                return {entry.pid for entry in pending}
            await asyncio.sleep(config.poll_interval)
