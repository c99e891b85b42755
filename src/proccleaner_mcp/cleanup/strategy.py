"""Kill strategies.

A strategy decides the order in which matched processes are killed, as a
list of waves, and sends the kills of one wave. Sending is fire-and-forget:
whether a process actually died is checked by the executor between waves.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import ClassVar

from .models import ProcessEntry, ProcessSnapshot
from .node import Node
from .state import format_kill_line

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL_KILLS: int = 8


class KillStrategy(ABC):
    """Base class for kill strategies."""

    name: ClassVar[str]
    # Whether a request must name a root pid for this strategy
    requires_root: ClassVar[bool] = False

    @abstractmethod
    def plan(
        self, matched: Sequence[ProcessEntry], snapshot: ProcessSnapshot
    ) -> list[list[ProcessEntry]]:
        """Order matched processes into waves.

        All kills of a wave are sent and verified before the next wave starts.
        """

    async def issue(
        self,
        node: Node,
        wave: Sequence[ProcessEntry],
        max_parallel: int = DEFAULT_MAX_PARALLEL_KILLS,
    ) -> dict[int, str]:
        """Send kills for one wave.

        Args:
            node: Node owning the processes
            wave: Processes to kill, independent of each other
            max_parallel: Upper bound on kills in flight

        Returns:
            Send errors by pid; a process that is already gone is not an error
        """
        semaphore = asyncio.Semaphore(max(1, max_parallel))

        async def send(entry: ProcessEntry) -> tuple[int, str | None]:
            async with semaphore:
                logger.info(format_kill_line(entry))
                try:
                    await node.kill(entry)
                except ProcessLookupError:
                    return entry.pid, None
                except OSError as e:
                    logger.warning(f"Failed to kill PID {entry.pid}: {e}")
                    return entry.pid, str(e) or type(e).__name__
                return entry.pid, None

        results = await asyncio.gather(*(send(entry) for entry in wave))
        return {pid: error for pid, error in results if error is not None}

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


_STRATEGIES: dict[str, type[KillStrategy]] = {}


def register_strategy(cls: type[KillStrategy]) -> type[KillStrategy]:
    """Class decorator adding a strategy to the name registry."""
    _STRATEGIES[cls.name.lower()] = cls
    return cls


@register_strategy
class AllKiller(KillStrategy):
    """Kill every matched process; no ordering between them."""

    name = "all"

    def plan(
        self, matched: Sequence[ProcessEntry], snapshot: ProcessSnapshot
    ) -> list[list[ProcessEntry]]:
        return [list(matched)] if matched else []


@register_strategy
class RecursiveKiller(KillStrategy):
    """Kill a process tree leaf-to-root.

    Deepest descendants go first so a parent dying early cannot orphan
    children that were already selected.
    """

    name = "recursive"
    requires_root = True

    @staticmethod
    def depth(entry: ProcessEntry, matched_pids: set[int], snapshot: ProcessSnapshot) -> int:
        """Number of matched ancestors of an entry."""
        return sum(1 for pid in snapshot.ancestors_of(entry.pid) if pid in matched_pids)

    def plan(
        self, matched: Sequence[ProcessEntry], snapshot: ProcessSnapshot
    ) -> list[list[ProcessEntry]]:
        matched_pids = {e.pid for e in matched}
        levels: dict[int, list[ProcessEntry]] = {}
        for entry in matched:
            levels.setdefault(self.depth(entry, matched_pids, snapshot), []).append(entry)
        return [levels[d] for d in sorted(levels, reverse=True)]


def available_strategies() -> list[str]:
    """Names accepted by get_strategy."""
    return sorted(_STRATEGIES)


def get_strategy(strategy: str | KillStrategy) -> KillStrategy:
    """Resolve a strategy name (case-insensitive) or pass an instance through.

    Raises:
        ValueError: If the name is unknown
    """
    if isinstance(strategy, KillStrategy):
        return strategy
    try:
        return _STRATEGIES[strategy.lower()]()
    except KeyError:
        raise ValueError(
            f"Unknown kill strategy: {strategy} "
            f"(expected one of: {', '.join(available_strategies())})"
        ) from None
