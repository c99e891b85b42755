"""Process table capture.

Two listers are provided: one built on psutil (the default, works on every
platform psutil supports) and one that shells out to ``ps`` the way the
build-server agents do on Unix hosts.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import psutil

from .models import ZOMBIE_STATUS, ProcessEntry, ProcessSnapshot
from .state import SnapshotError

if TYPE_CHECKING:
    from .node import Node

logger = logging.getLogger(__name__)

# Attributes fetched per process by the psutil lister
PSUTIL_ATTRS = ["pid", "ppid", "username", "cmdline", "name", "status", "create_time"]

PS_COMMAND: tuple[str, ...] = ("ps", "-e", "-o", "pid=,ppid=,user=,stat=,args=")

# First letter of ps STAT mapped to psutil status names
PS_STATES: dict[str, str] = {
    "R": psutil.STATUS_RUNNING,
    "S": psutil.STATUS_SLEEPING,
    "D": psutil.STATUS_DISK_SLEEP,
    "T": psutil.STATUS_STOPPED,
    "t": psutil.STATUS_TRACING_STOP,
    "Z": ZOMBIE_STATUS,
    "X": psutil.STATUS_DEAD,
    "I": psutil.STATUS_IDLE,
}


def list_processes_psutil() -> list[ProcessEntry]:
    """Read the local process table with psutil.

    Blocking; run it in a worker thread from async code. Processes that exit
    or deny access while being read are skipped.
    """
    entries: list[ProcessEntry] = []

    for proc in psutil.process_iter(attrs=PSUTIL_ATTRS):
        try:
            info = proc.info
            cmdline = info.get("cmdline") or []
            if not cmdline and info.get("name"):
                cmdline = [info["name"]]
            entries.append(
                ProcessEntry(
                    pid=info["pid"],
                    ppid=info.get("ppid") or 0,
                    user=info.get("username") or "",
                    args=tuple(cmdline),
                    status=info.get("status") or "",
                    create_time=info.get("create_time") or 0.0,
                )
            )
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    return entries


def parse_ps_output(output: str) -> list[ProcessEntry]:
    """Parse ``ps -o pid=,ppid=,user=,stat=,args=`` output.

    ps prints the command line as one space-joined string, so arguments are
    split on whitespace again and an argument that itself contains spaces
    comes back as several. Start times are not read; pid reuse is detected
    from the arguments alone.

    Args:
        output: ps stdout

    Returns:
        Parsed entries; malformed lines are skipped
    """
    entries: list[ProcessEntry] = []

    for line in output.splitlines():
        parts = line.split(None, 4)
        if len(parts) < 4:
            continue
        pid_str, ppid_str, user, stat = parts[:4]
        if not (pid_str.isdigit() and ppid_str.isdigit()):
            continue

        args = tuple(parts[4].split()) if len(parts) == 5 else ()
        entries.append(
            ProcessEntry(
                pid=int(pid_str),
                ppid=int(ppid_str),
                user="" if user == "?" else user,
                args=args,
                status=PS_STATES.get(stat[0], ""),
            )
        )

    return entries


async def list_processes_ps(timeout: float = 30.0) -> list[ProcessEntry]:
    """Read the process table by running ``ps``.

    Raises:
        SnapshotError: If ps is missing, fails or times out
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *PS_COMMAND,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise SnapshotError("ps is not available on this node") from e

    try:
        async with asyncio.timeout(timeout):
            stdout, stderr = await proc.communicate()
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise SnapshotError(f"ps did not finish within {timeout}s") from None

    if proc.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        raise SnapshotError(f"ps exited with {proc.returncode}: {message}")

    return parse_ps_output(stdout.decode("utf-8", errors="replace"))


async def capture(node: Node, timeout: float | None = None) -> ProcessSnapshot:
    """Take a snapshot of a node's process table.

    Args:
        node: Node to read
        timeout: Upper bound for the read in seconds

    Returns:
        Snapshot of the node

    Raises:
        SnapshotError: If the node is unreachable or the table unreadable
    """
    try:
        async with asyncio.timeout(timeout):
            entries = await node.list_processes()
    except SnapshotError as e:
        if e.node is None:
            e.node = node.name
        raise
    except TimeoutError as e:
        raise SnapshotError(
            f"Process listing on {node.name} timed out after {timeout}s", node=node.name
        ) from e
    except (OSError, psutil.Error) as e:
        raise SnapshotError(
            f"Cannot read process table on {node.name}: {e}", node=node.name
        ) from e

    logger.debug(f"Captured {len(entries)} processes on {node.name}")
    return ProcessSnapshot(node=node.name, entries=tuple(entries))
