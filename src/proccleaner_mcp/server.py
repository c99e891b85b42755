"""MCP Server for build process cleanup."""

from __future__ import annotations

import json
import logging

from mcp.server.fastmcp import Context, FastMCP
from pydantic import AnyUrl

from .cleanup import (
    CleanerConfig,
    CleanManager,
    CleanPhase,
    CleanRequest,
    CleanupError,
    GlobalPolicy,
    JobConfig,
    capture,
    match_processes,
)
from .cleanup.strategy import available_strategies

logger = logging.getLogger(__name__)


def get_manager() -> CleanManager:
    """Get the process-wide clean manager."""
    return CleanManager()


def create_server(
    policy: GlobalPolicy | None = None,
    config: CleanerConfig | None = None,
) -> FastMCP:
    """Create and configure the MCP server.

    Args:
        policy: Initial global policy (defaults: enabled, no username)
        config: Executor timing settings
    """
    mcp = FastMCP("proccleaner-mcp")
    manager = get_manager()
    manager.configure(policy=policy, config=config)

    async def notify_resource_changed(ctx: Context | None, uri: str) -> None:
        """Notify client that a cleanup:// resource has changed."""
        try:
            if ctx is not None and ctx.session:
                await ctx.session.send_resource_updated(AnyUrl(uri))
        except Exception:
            pass  # Notification failure shouldn't break the tool

    # ============== Cleanup Tools ==============

    @mcp.tool()
    async def clean_processes(
        ctx: Context,
        strategy: str = "all",
        root_pid: int | None = None,
        owner_user: str | None = None,
        node: str = "local",
    ) -> dict:
        """
        Kill leftover processes on a node.

        Only processes of the configured account (or owner_user) are touched.
        With root_pid, only that process and its descendants are killed.

        Args:
            strategy: 'all' kills every matching process, 'recursive' kills
                the tree leaf-to-root and needs root_pid
            root_pid: Root of the process tree to clean
            owner_user: Account whose processes are eligible (defaults to the
                policy username)
            node: Node to clean
        """
        try:
            request = CleanRequest(
                node=node,
                owner_user=owner_user,
                root_pid=root_pid,
                strategy=strategy,
            )
            report = await manager.clean(request)
            await notify_resource_changed(ctx, "cleanup://status")
            await notify_resource_changed(ctx, "cleanup://last-report")
            return {"success": True, "data": report.to_dict(), "log": report.to_lines()}
        except CleanupError as e:
            return {"success": False, "error": str(e), "details": e.to_dict()}
        except Exception as e:
            return {"success": False, "error": str(e)}

    @mcp.tool()
    async def preview_cleanup(
        root_pid: int | None = None,
        owner_user: str | None = None,
        node: str = "local",
    ) -> dict:
        """
        List the processes a cleanup would kill, without killing anything.

        Args:
            root_pid: Root of the process tree to consider
            owner_user: Account to match (defaults to the policy username)
            node: Node to inspect
        """
        try:
            target = manager.get_node(node)
            settings = manager.policy.snapshot()
            user = owner_user if owner_user is not None else settings.username
            snapshot = await capture(target, timeout=manager.config.snapshot_timeout)
            matched = match_processes(
                snapshot, user, root_pid=root_pid, exclude_pids=target.protected_pids()
            )
            return {
                "success": True,
                "data": {
                    "node": node,
                    "user": user,
                    "enabled": settings.enabled,
                    "processes": [e.to_dict() for e in matched],
                },
            }
        except Exception as e:
            return {"success": False, "error": str(e)}

    @mcp.tool()
    async def get_cleanup_policy() -> dict:
        """Get the global cleanup switch and eligible account."""
        return {"success": True, "data": manager.policy.to_dict()}

    @mcp.tool()
    async def set_cleanup_policy(
        ctx: Context,
        enabled: bool | None = None,
        username: str | None = None,
    ) -> dict:
        """
        Change the global cleanup policy (administrative).

        Args:
            enabled: Turn process cleanup on or off
            username: Account whose processes may be killed
        """
        try:
            settings = manager.policy.configure(enabled=enabled, username=username)
            await notify_resource_changed(ctx, "cleanup://policy")
            return {"success": True, "data": settings.to_dict()}
        except Exception as e:
            return {"success": False, "error": str(e)}

    @mcp.tool()
    async def configure_job(
        name: str,
        pre_cleaner: str | None = None,
        post_cleaner: str | None = None,
        node: str = "local",
        fail_on_error: bool = False,
    ) -> dict:
        """
        Define which cleaners run before and after a job's builds.

        Args:
            name: Job name
            pre_cleaner: Strategy to run before the build ('all', 'recursive')
            post_cleaner: Strategy to run after the build
            node: Node the job builds on
            fail_on_error: Surface cleanup errors instead of only logging them
        """
        try:
            job = JobConfig(
                name=name,
                node=node,
                pre_cleaner=pre_cleaner,
                post_cleaner=post_cleaner,
                fail_on_error=fail_on_error,
            )
            manager.get_node(node)
            manager.save_job(job)
            return {"success": True, "data": job.to_dict()}
        except Exception as e:
            return {"success": False, "error": str(e)}

    @mcp.tool()
    async def run_build_phase(
        job: str,
        phase: str,
        build_id: str,
        root_pid: int | None = None,
    ) -> dict:
        """
        Run a job's pre-build or post-build cleanup.

        Args:
            job: Job name (see configure_job)
            phase: 'pre_build' or 'post_build'
            build_id: Identifier of the build being cleaned
            root_pid: Root process of the build, for recursive cleaners
        """
        lines: list[str] = []
        try:
            clean_phase = CleanPhase(phase)
            if clean_phase == CleanPhase.PRE_BUILD:
                report = await manager.run_pre_build(job, build_id, root_pid, log=lines.append)
            elif clean_phase == CleanPhase.POST_BUILD:
                report = await manager.run_post_build(job, build_id, root_pid, log=lines.append)
            else:
                raise ValueError(f"Phase must be pre_build or post_build, got {phase}")
            return {
                "success": True,
                "data": report.to_dict() if report else None,
                "log": lines,
            }
        except Exception as e:
            return {"success": False, "error": str(e), "log": lines}

    @mcp.tool()
    async def get_cleanup_status(node: str | None = None) -> dict:
        """
        Get cleanup state, last report per node, jobs and policy.

        Args:
            node: Limit node details to this node
        """
        status = manager.to_dict()
        if node is not None:
            if node not in status["nodes"]:
                return {"success": False, "error": f"Unknown node: {node}"}
            status["nodes"] = {node: status["nodes"][node]}
        status["strategies"] = available_strategies()
        return {"success": True, "data": status}

    # ============== Resources ==============

    @mcp.resource("cleanup://policy", mime_type="application/json")
    async def policy_resource() -> str:
        """Global cleanup policy (JSON).

        Contains: switchedOff, username.
        """
        return json.dumps(manager.policy.to_dict(), indent=2)

    @mcp.resource("cleanup://status", mime_type="application/json")
    async def status_resource() -> str:
        """Cleanup state of every node, configured jobs and timing (JSON)."""
        return json.dumps(manager.to_dict(), indent=2)

    @mcp.resource("cleanup://last-report", mime_type="text/plain")
    async def last_report_resource() -> str:
        """Log lines of the last cleanup on the local node (plain text)."""
        report = manager.get_executor("local").last_report
        return report.to_summary() if report else "No cleanup has run yet."

    logger.info("Process cleanup MCP Server initialized")
    return mcp
