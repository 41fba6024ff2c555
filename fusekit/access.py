"""Permission checks for callers against file ownership and mode bits."""

from __future__ import annotations

import os
import pwd


def _group_ids(uid: int) -> tuple[int, ...]:
    """All group ids of the user with id ``uid``, or nothing if unknown."""
    try:
        entry = pwd.getpwuid(uid)
    except KeyError:
        return ()
    try:
        return tuple(os.getgrouplist(entry.pw_name, entry.pw_gid))
    except OSError:
        return ()


def has_access(caller_uid, caller_gid, file_uid, file_gid, perm, mask):
    """Tell whether a caller may access a file with mode ``perm`` for ``mask``.

    ``mask`` holds the requested rwx bits (4, 2, 1). Root may do anything.
    Besides the caller's primary group, the caller's supplementary groups
    are consulted when only the group bits would grant access.
    """
    if caller_uid == 0:
        return True
    mask &= 7
    if mask == 0:
        return True

    if caller_uid == file_uid and perm & (mask << 6):
        return True
    if caller_gid == file_gid and perm & (mask << 3):
        return True
    if perm & mask:
        return True

    # Avoid the group lookup if the group bits would not allow it anyway.
    if not perm & (mask << 3):
        return False

    return file_gid in _group_ids(caller_uid)