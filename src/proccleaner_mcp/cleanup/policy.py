"""Global cleanup policy and executor tuning.

The policy is read by every clean invocation and written only through the
administrative path. Writers swap an immutable PolicySettings under a lock;
readers take one reference, so they never see a switch from one write and a
username from another.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, replace
from typing import Any, Final

from .strategy import DEFAULT_MAX_PARALLEL_KILLS

logger = logging.getLogger(__name__)

ENV_SWITCHED_OFF: Final[str] = "PROC_CLEANER_SWITCHED_OFF"
ENV_USERNAME: Final[str] = "PROC_CLEANER_USERNAME"

# Kill verification: poll every 200ms, give up after 5s
DEFAULT_VERIFY_TIMEOUT: float = 5.0
DEFAULT_POLL_INTERVAL: float = 0.2
DEFAULT_LOCK_TIMEOUT: float = 300.0
DEFAULT_SNAPSHOT_TIMEOUT: float = 30.0

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True)
class PolicySettings:
    """One consistent view of the global policy."""

    switched_off: bool = False
    username: str = ""

    @property
    def enabled(self) -> bool:
        return not self.switched_off

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"switchedOff": self.switched_off, "username": self.username}


class GlobalPolicy:
    """Process-wide switch and eligible account for cleanup.

    Read-mostly with a single administrative writer.
    """

    def __init__(self, switched_off: bool = False, username: str = ""):
        self._write_lock = threading.Lock()
        self._settings = PolicySettings(
            switched_off=switched_off, username=self._check_username(username)
        )

    @staticmethod
    def _check_username(username: Any) -> str:
        if not isinstance(username, str):
            raise ValueError(f"Username must be a string, got {username!r}")
        return username

    @classmethod
    def from_env(cls) -> GlobalPolicy:
        """Build a policy from PROC_CLEANER_SWITCHED_OFF and PROC_CLEANER_USERNAME."""
        switched_off = os.environ.get(ENV_SWITCHED_OFF, "").strip().lower() in _TRUTHY
        username = os.environ.get(ENV_USERNAME, "")
        return cls(switched_off=switched_off, username=username)

    def snapshot(self) -> PolicySettings:
        """Current settings; a single atomic read."""
        return self._settings

    def is_enabled(self) -> bool:
        return self._settings.enabled

    def owner_user(self) -> str:
        return self._settings.username

    def configure(self, enabled: bool | None = None, username: str | None = None) -> PolicySettings:
        """Update the policy.

        Args:
            enabled: New switch state, None keeps the current one
            username: New eligible account, None keeps the current one

        Returns:
            The settings now in effect
        """
        with self._write_lock:
            changes: dict[str, Any] = {}
            if enabled is not None:
                changes["switched_off"] = not enabled
            if username is not None:
                changes["username"] = self._check_username(username)
            self._settings = replace(self._settings, **changes)
            settings = self._settings

        logger.info(
            f"Cleanup policy: {'disabled' if settings.switched_off else 'enabled'}, "
            f"username={settings.username!r}"
        )
        return settings

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self._settings.to_dict()


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    if raw.lower() == "none":
        return None
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"{name} must be a number; using {default}")
        return default
    if value < 0:
        logger.warning(f"{name} must not be negative; using {default}")
        return default
    return value


@dataclass(frozen=True)
class CleanerConfig:
    """Timing and parallelism of the clean executor."""

    verify_timeout: float = DEFAULT_VERIFY_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    lock_timeout: float | None = DEFAULT_LOCK_TIMEOUT  # None: wait forever
    snapshot_timeout: float | None = DEFAULT_SNAPSHOT_TIMEOUT
    max_parallel_kills: int = DEFAULT_MAX_PARALLEL_KILLS

    def __post_init__(self) -> None:
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.verify_timeout < 0:
            raise ValueError("verify_timeout must not be negative")
        if self.max_parallel_kills < 1:
            raise ValueError("max_parallel_kills must be at least 1")

    @classmethod
    def from_env(cls) -> CleanerConfig:
        """Build a config from PROC_CLEANER_* variables, ignoring invalid values."""
        parallel_raw = os.environ.get("PROC_CLEANER_MAX_PARALLEL_KILLS", "").strip()
        max_parallel = DEFAULT_MAX_PARALLEL_KILLS
        if parallel_raw:
            try:
                max_parallel = max(1, int(parallel_raw))
            except ValueError:
                logger.warning(
                    f"PROC_CLEANER_MAX_PARALLEL_KILLS must be an integer; "
                    f"using {DEFAULT_MAX_PARALLEL_KILLS}"
                )

        poll_interval = _env_float("PROC_CLEANER_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)
        return cls(
            verify_timeout=_env_float("PROC_CLEANER_VERIFY_TIMEOUT", DEFAULT_VERIFY_TIMEOUT)
            or 0.0,
            poll_interval=poll_interval or DEFAULT_POLL_INTERVAL,
            lock_timeout=_env_float("PROC_CLEANER_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT),
            snapshot_timeout=_env_float(
                "PROC_CLEANER_SNAPSHOT_TIMEOUT", DEFAULT_SNAPSHOT_TIMEOUT
            ),
            max_parallel_kills=max_parallel,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "verifyTimeout": self.verify_timeout,
            "pollInterval": self.poll_interval,
            "lockTimeout": self.lock_timeout,
            "snapshotTimeout": self.snapshot_timeout,
            "maxParallelKills": self.max_parallel_kills,
        }
