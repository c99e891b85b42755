"""Nodes: where processes are listed and killed."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Protocol, runtime_checkable

import psutil

from .models import ProcessEntry
from .snapshot import list_processes_ps, list_processes_psutil

logger = logging.getLogger(__name__)

LOCAL_NODE = "local"


@runtime_checkable
class Node(Protocol):
    """Process lister and killer for one machine."""

    name: str

    async def list_processes(self) -> list[ProcessEntry]:
        """Return the current process table."""
        ...

    async def kill(self, entry: ProcessEntry) -> None:
        """Send a kill to the process a snapshot entry describes.

        A pid now held by a different process counts as already gone.

        Raises:
            ProcessLookupError: The process is already gone
            PermissionError: The caller may not signal the process
        """
        ...

    def protected_pids(self) -> set[int]:
        """PIDs that must never be killed (the cleaner and its ancestors)."""
        ...


class LocalNode:
    """The machine this process runs on."""

    def __init__(self, name: str = LOCAL_NODE, lister: str = "psutil"):
        """Initialize local node.

        Args:
            name: Node identifier
            lister: 'psutil' or 'ps'
        """
        if lister not in ("psutil", "ps"):
            raise ValueError(f"Unknown process lister: {lister}")
        self.name = name
        self.lister = lister

    def __repr__(self) -> str:
        return f"LocalNode(name={self.name!r}, lister={self.lister!r})"

    async def list_processes(self) -> list[ProcessEntry]:
        if self.lister == "ps":
            return await list_processes_ps()
        return await asyncio.to_thread(list_processes_psutil)

    async def kill(self, entry: ProcessEntry) -> None:
        await asyncio.to_thread(self._kill, entry)

    @staticmethod
    def _is_same_process(proc: psutil.Process, entry: ProcessEntry) -> bool:
        """Whether proc is still the process the entry was read from."""
        if entry.create_time:
            return proc.create_time() == entry.create_time
        if entry.args:
            cmdline = proc.cmdline() or [proc.name()]
            return " ".join(cmdline) == entry.command_line
        return True

    @classmethod
    def _kill(cls, entry: ProcessEntry) -> None:
        pid = entry.pid
        try:
            proc = psutil.Process(pid)
            if not cls._is_same_process(proc, entry):
                logger.info(f"PID {pid} was reused by another process, not killing it")
                raise ProcessLookupError(f"PID {pid} was reused")
            proc.kill()
        except psutil.NoSuchProcess as e:
            raise ProcessLookupError(f"No such process: {pid}") from e
        except psutil.AccessDenied as e:
            raise PermissionError(f"Access denied to process {pid}") from e

    def protected_pids(self) -> set[int]:
        pids = {os.getpid()}
        try:
            pids.update(p.pid for p in psutil.Process().parents())
        except psutil.Error as e:
            logger.warning(f"Cannot resolve ancestors of the cleaner process: {e}")
        return pids
