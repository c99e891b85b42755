"""Selection of the processes a cleanup is allowed to touch."""

from __future__ import annotations

from collections.abc import Iterable

from .models import ProcessEntry, ProcessSnapshot


def is_descendant(snapshot: ProcessSnapshot, pid: int, root_pid: int) -> bool:
    """Whether pid is root_pid itself or reaches it through ppid links.

    Cycles and parents missing from the snapshot end the walk without a match.
    """
    if pid == root_pid:
        return True
    return any(ancestor == root_pid for ancestor in snapshot.ancestors_of(pid))


def match_processes(
    snapshot: ProcessSnapshot,
    owner_user: str,
    root_pid: int | None = None,
    exclude_pids: Iterable[int] = (),
) -> list[ProcessEntry]:
    """Select the entries owned by a user, optionally within a process tree.

    Args:
        snapshot: Process table to filter
        owner_user: Only processes of this account match; '' matches nothing
        root_pid: Restrict to this pid and its descendants
        exclude_pids: Never match these (the cleaner process and its ancestors)

    Returns:
        Matching entries in snapshot order
    """
    if not owner_user:
        return []

    excluded = set(exclude_pids)
    matched: list[ProcessEntry] = []
    seen: set[int] = set()

    for entry in snapshot:
        if entry.pid in seen or entry.pid in excluded:
            continue
        if entry.user != owner_user:
            continue
        if root_pid is not None and not is_descendant(snapshot, entry.pid, root_pid):
            continue
        seen.add(entry.pid)
        matched.append(entry)

    return matched
