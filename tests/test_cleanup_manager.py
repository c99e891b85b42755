"""Tests for clean manager - singleton orchestrator."""

import asyncio
from unittest.mock import MagicMock

import pytest

from proccleaner_mcp.cleanup.executor import CleanExecutor
from proccleaner_mcp.cleanup.manager import CleanManager, JobConfig
from proccleaner_mcp.cleanup.models import ProcessEntry
from proccleaner_mcp.cleanup.node import LocalNode
from proccleaner_mcp.cleanup.policy import GlobalPolicy
from proccleaner_mcp.cleanup.state import CleanPhase, CleanRequest, CleanState, SnapshotError


@pytest.fixture
def setup(manager, fake_node, alice_tree, fast_config):
    """Manager with a fake node 'n1' and alice as eligible account."""
    node = fake_node(alice_tree, name="n1")
    manager.configure(policy=GlobalPolicy(username="alice"), config=fast_config)
    manager.register_node(node)
    return manager, node


class TestCleanManagerSingleton:
    """Tests for singleton pattern."""

    def test_singleton_returns_same_instance(self, manager):
        """Test that CleanManager returns same instance."""
        assert CleanManager() is manager

    def test_singleton_initialized_once(self, manager):
        """Test that singleton is only initialized once."""
        manager._jobs["test"] = MagicMock()

        assert "test" in CleanManager()._jobs

    def test_local_node_registered(self, manager):
        assert manager.nodes == ["local"]
        assert isinstance(manager.get_node("local"), LocalNode)


class TestCleanManagerNodes:
    """Tests for node and executor management."""

    def test_get_executor_creates_once(self, setup):
        manager, node = setup

        executor = manager.get_executor("n1")

        assert isinstance(executor, CleanExecutor)
        assert executor.node is node
        assert manager.get_executor("n1") is executor

    def test_unknown_node(self, manager):
        with pytest.raises(ValueError, match="Unknown node"):
            manager.get_node("nowhere")
        with pytest.raises(ValueError):
            manager.get_executor("nowhere")

    def test_register_keeps_executor(self, setup, fake_node):
        """Test a replaced node is served by the same executor."""
        manager, _ = setup
        old = manager.get_executor("n1")
        new = fake_node([], name="n1")

        manager.register_node(new)

        assert manager.get_executor("n1") is old
        assert old.node is new
        assert manager.get_node("n1") is new

    def test_configure_reaches_existing_executors(self, setup):
        manager, _ = setup
        executor = manager.get_executor("n1")
        policy = GlobalPolicy(switched_off=True)

        manager.configure(policy=policy)

        assert manager.policy is policy
        assert executor._policy is policy

    @pytest.mark.asyncio
    async def test_register_while_cleaning(self, setup, fake_node):
        """Test a node swapped mid-clean serves only the cleans queued after it."""
        manager, node = setup
        node.release = asyncio.Event()
        new = fake_node(
            [ProcessEntry(pid=500, ppid=1, user="alice", args=("sleep", "5"))], name="n1"
        )

        first = asyncio.create_task(manager.clean(CleanRequest(node="n1")))
        await node.kill_started.wait()
        manager.register_node(new)
        second = asyncio.create_task(manager.clean(CleanRequest(node="n1")))
        await asyncio.sleep(0.05)

        assert not second.done()
        assert new.events == []

        node.release.set()
        first_report = await first
        second_report = await second

        assert first_report.killed_pids == {100, 101, 102, 103, 300}
        assert second_report.killed_pids == {500}
        assert 500 not in node.kills

    @pytest.mark.asyncio
    async def test_global_listener(self, setup):
        """Test listeners get node name and state."""
        manager, _ = setup
        seen = []
        manager.on_clean_state_change(lambda name, state: seen.append((name, state)))

        await manager.clean(CleanRequest(node="n1"))

        assert seen[0] == ("n1", CleanState.CHECKING_POLICY)
        assert seen[-1] == ("n1", CleanState.IDLE)


class TestJobs:
    """Tests for job definitions."""

    def test_save_and_get(self, manager):
        job = JobConfig(name="app", pre_cleaner="all", post_cleaner="recursive")

        manager.save_job(job)

        assert manager.get_job("app") is job
        assert job.cleaner_for(CleanPhase.PRE_BUILD) == "all"
        assert job.cleaner_for(CleanPhase.POST_BUILD) == "recursive"
        assert job.cleaner_for(CleanPhase.MANUAL) is None

    def test_unknown_job(self, manager):
        with pytest.raises(ValueError, match="Unknown job"):
            manager.get_job("nope")

    def test_remove_job(self, manager):
        manager.save_job(JobConfig(name="app"))

        assert manager.remove_job("app")
        assert not manager.remove_job("app")

    def test_invalid_strategy_rejected(self):
        with pytest.raises(ValueError):
            JobConfig(name="app", pre_cleaner="gentle")

    @pytest.mark.asyncio
    async def test_save_job_during_clean(self, setup):
        """Test saving a job never waits for, or changes, a running clean."""
        manager, node = setup
        node.release = asyncio.Event()
        request = CleanRequest(node="n1", root_pid=100)

        task = asyncio.create_task(manager.clean(request))
        await node.kill_started.wait()

        manager.save_job(JobConfig(name="app", node="n1", post_cleaner="recursive"))

        assert manager.get_job("app").post_cleaner == "recursive"
        assert manager.get_executor("n1").current_request is request
        assert not task.done()

        node.release.set()
        report = await task
        assert report.killed_pids == {100, 101, 102, 103}


class TestBuildPhases:
    """Tests for pre-build and post-build cleanup."""

    @pytest.mark.asyncio
    async def test_consecutive_builds(self, setup, fake_node, alice_tree):
        """Test pre and post cleaners run for every build of a job."""
        manager, node = setup
        manager.save_job(
            JobConfig(name="app", node="n1", pre_cleaner="all", post_cleaner="recursive")
        )

        for build_id in ("app#1", "app#2"):
            node.processes = {e.pid: e for e in alice_tree}
            lines = []

            pre = await manager.run_pre_build("app", build_id, log=lines.append)
            manager.build_started("n1", build_id)
            node.processes = {e.pid: e for e in alice_tree}
            post = await manager.run_post_build("app", build_id, root_pid=100, log=lines.append)
            manager.build_finished("n1", build_id)

            assert pre.killed_pids == {100, 101, 102, 103, 300}
            assert post.strategy == "recursive"
            assert post.killed_pids == {100, 101, 102, 103}
            assert any(line.startswith("Killing Process PID = 103") for line in lines)

        assert manager.running_builds("n1") == set()

    @pytest.mark.asyncio
    async def test_no_cleaner_configured(self, setup):
        manager, node = setup
        manager.save_job(JobConfig(name="app", node="n1", post_cleaner="all"))

        assert await manager.run_pre_build("app", "app#1") is None
        assert node.events == []

    @pytest.mark.asyncio
    async def test_skipped_while_other_builds_run(self, setup):
        """Test cleanup is skipped when another build shares the node."""
        manager, node = setup
        manager.save_job(JobConfig(name="app", node="n1", pre_cleaner="all"))
        manager.build_started("n1", "other#7")
        lines = []

        report = await manager.run_pre_build("app", "app#1", log=lines.append)

        assert report.skipped
        assert lines == ["Skipping process cleanup, other builds are running on n1"]
        assert node.events == []

    @pytest.mark.asyncio
    async def test_disabled_message_logged(self, setup):
        manager, node = setup
        manager.policy.configure(enabled=False)
        manager.save_job(JobConfig(name="app", node="n1", pre_cleaner="all"))
        lines = []

        report = await manager.run_pre_build("app", "app#1", log=lines.append)

        assert report.disabled
        assert lines == [
            "Process cleanup is globally turned off, contact your Jenkins "
            "administrator to turn it on."
        ]

    @pytest.mark.asyncio
    async def test_error_logged_not_raised(self, manager, fake_node, fast_config):
        """Test cleanup errors do not fail the build by default."""
        manager.configure(policy=GlobalPolicy(username="alice"), config=fast_config)
        manager.register_node(fake_node([], name="n1", list_error=PermissionError("denied")))
        manager.save_job(JobConfig(name="app", node="n1", pre_cleaner="all"))
        lines = []

        report = await manager.run_pre_build("app", "app#1", log=lines.append)

        assert report is None
        assert len(lines) == 1
        assert lines[0].startswith("Process cleanup did not complete:")

    @pytest.mark.asyncio
    async def test_error_raised_with_fail_on_error(self, manager, fake_node, fast_config):
        manager.configure(policy=GlobalPolicy(username="alice"), config=fast_config)
        manager.register_node(fake_node([], name="n1", list_error=PermissionError("denied")))
        manager.save_job(
            JobConfig(name="app", node="n1", pre_cleaner="all", fail_on_error=True)
        )

        with pytest.raises(SnapshotError):
            await manager.run_pre_build("app", "app#1", log=lambda line: None)

    @pytest.mark.asyncio
    async def test_recursive_phase_without_root(self, setup):
        """Test a recursive cleaner with no root pid kills nothing and raises."""
        manager, node = setup
        manager.save_job(JobConfig(name="app", node="n1", post_cleaner="recursive"))

        with pytest.raises(ValueError, match="root pid"):
            await manager.run_post_build("app", "app#1", log=lambda line: None)

        assert node.events == []

    @pytest.mark.asyncio
    async def test_request_carries_build(self, setup):
        manager, node = setup
        node.release = asyncio.Event()
        manager.save_job(JobConfig(name="app", node="n1", post_cleaner="recursive"))

        task = asyncio.create_task(manager.run_post_build("app", "app#3", root_pid=100))
        await node.kill_started.wait()
        request = manager.get_executor("n1").current_request

        assert request.build_id == "app#3"
        assert request.phase == CleanPhase.POST_BUILD
        assert request.root_pid == 100

        node.release.set()
        await task


class TestStatus:
    """Tests for status serialization."""

    @pytest.mark.asyncio
    async def test_to_dict(self, setup):
        manager, _ = setup
        manager.save_job(JobConfig(name="app", node="n1", pre_cleaner="all"))
        manager.build_started("n1", "app#1")

        await manager.clean(CleanRequest(node="n1"))
        status = manager.to_dict()

        assert status["policy"] == {"switchedOff": False, "username": "alice"}
        assert status["nodes"]["n1"]["state"] == "idle"
        assert status["nodes"]["n1"]["runningBuilds"] == ["app#1"]
        assert status["nodes"]["n1"]["lastReport"]["success"] is True
        assert status["nodes"]["local"]["lastReport"] is None
        assert status["jobs"]["app"]["preCleaner"] == "all"
