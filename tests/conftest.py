"""Pytest fixtures for proccleaner-mcp tests."""

import asyncio
import os
import sys

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from proccleaner_mcp.cleanup.manager import CleanManager  # noqa: E402
from proccleaner_mcp.cleanup.models import ProcessEntry  # noqa: E402
from proccleaner_mcp.cleanup.policy import CleanerConfig  # noqa: E402


class FakeNode:
    """In-memory node with a scripted process table.

    Records every kill and listing in ``events`` so tests can check ordering.
    Setting ``release`` to an asyncio.Event makes every kill block on it after
    signalling ``kill_started``.
    """

    def __init__(
        self,
        entries,
        name="fake",
        unkillable=(),
        protected=(),
        kill_errors=None,
        list_error=None,
    ):
        self.name = name
        self.processes = {e.pid: e for e in entries}
        self.unkillable = set(unkillable)
        self.protected = set(protected)
        self.kill_errors = dict(kill_errors or {})
        self.list_error = list_error
        self.events = []
        self.kill_started = asyncio.Event()
        self.release = None

    @property
    def kills(self):
        return [pid for kind, pid in self.events if kind == "kill"]

    @property
    def list_calls(self):
        return sum(1 for kind, _ in self.events if kind == "list")

    async def list_processes(self):
        if self.list_error is not None:
            raise self.list_error
        self.events.append(("list", frozenset(self.processes)))
        return list(self.processes.values())

    async def kill(self, entry):
        pid = entry.pid
        self.events.append(("kill", pid))
        self.kill_started.set()
        if self.release is not None:
            await self.release.wait()
        if pid in self.kill_errors:
            raise self.kill_errors[pid]
        if pid not in self.processes:
            raise ProcessLookupError(pid)
        if pid in self.unkillable:
            return
        del self.processes[pid]

    def protected_pids(self):
        return set(self.protected)


@pytest.fixture
def fake_node():
    """Factory for FakeNode instances."""
    return FakeNode


@pytest.fixture
def alice_tree():
    """Process table with alice's build tree rooted at 100.

    1 (root) ── 100 (alice) ─┬─ 101 (alice)
                             └─ 102 (alice) ── 103 (alice)
    1 (root) ── 200 (bob)
    1 (root) ── 300 (alice, outside the tree)
    """
    return [
        ProcessEntry(pid=1, ppid=0, user="root", args=("/sbin/init",)),
        ProcessEntry(pid=100, ppid=1, user="alice", args=("/bin/sh", "build.sh")),
        ProcessEntry(pid=101, ppid=100, user="alice", args=("make", "-j4")),
        ProcessEntry(pid=102, ppid=100, user="alice", args=("java", "-cp", "target", "Sleeper", "Hello")),
        ProcessEntry(pid=103, ppid=102, user="alice", args=("sleep", "1000")),
        ProcessEntry(pid=200, ppid=1, user="bob", args=("vim",)),
        ProcessEntry(pid=300, ppid=1, user="alice", args=("tail", "-f", "log")),
    ]


@pytest.fixture
def fast_config():
    """Executor config with short verification and lock timeouts."""
    return CleanerConfig(verify_timeout=0.05, poll_interval=0.01, lock_timeout=2.0)


@pytest.fixture
def manager():
    """Fresh CleanManager singleton."""
    CleanManager._instance = None
    yield CleanManager()
    CleanManager._instance = None
