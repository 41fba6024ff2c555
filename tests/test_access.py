import os
import pwd

import pytest

from fusekit.access import has_access


def _identity():
    """A non-root user: its uid, primary gid, groups, and a gid not in them."""
    uid = os.getuid()
    if uid == 0:
        candidates = [e for e in pwd.getpwall() if e.pw_uid != 0]
        entry = candidates[0] if candidates else None
    else:
        try:
            entry = pwd.getpwuid(uid)
        except KeyError:
            entry = None
    if entry is None:
        uid, gid, groups = 4242, 4242, []
    else:
        uid, gid = entry.pw_uid, entry.pw_gid
        try:
            groups = os.getgrouplist(entry.pw_name, entry.pw_gid)
        except OSError:
            groups = []
    other_gid = next((g for g in groups if g != gid), 0)
    not_my_gid = next(i for i in range(1, 1000) if i not in groups and i != gid)
    return uid, gid, other_gid, not_my_gid


MY_UID, MY_GID, MY_OTHER_GID, NOT_MY_GID = _identity()

CASES = [
    (MY_UID, MY_GID, MY_UID, MY_GID, 0o100, 0o1, True),
    (MY_UID, MY_GID, MY_UID + 1, NOT_MY_GID, 0o001, 0o001, True),
    (MY_UID, MY_GID, MY_UID + 1, NOT_MY_GID, 0o000, 0o001, False),
    (MY_UID, MY_GID, MY_UID + 1, NOT_MY_GID, 0o007, 0o000, True),
    (MY_UID, MY_GID, MY_UID + 1, NOT_MY_GID, 0o020, 0o02, False),
    (MY_UID, MY_GID, MY_UID, MY_GID, 0o000, 0o1, False),
    (MY_UID, MY_GID, MY_UID, MY_GID, 0o200, 0o1, False),
    (0, MY_GID, MY_UID + 1, NOT_MY_GID, 0o700, 0o1, True),
]
if MY_OTHER_GID != 0:
    CASES.append((MY_UID, MY_GID, MY_UID + 1, MY_OTHER_GID, 0o020, 0o02, True))


@pytest.mark.parametrize("uid,gid,fuid,fgid,perm,mask,want", CASES)
def test_has_access(uid, gid, fuid, fgid, perm, mask, want):
    assert has_access(uid, gid, fuid, fgid, perm, mask) is want


def test_primary_group_grants_access():
    assert has_access(5000, 6000, 5001, 6000, 0o040, 0o4) is True


def test_mask_bits_above_seven_ignored():
    assert has_access(5000, 6000, 5000, 6000, 0o000, 0o10) is True


def test_unknown_user_gets_no_supplementary_groups():
    uid = next(u for u in range(3_000_000, 3_001_000) if not _exists(u))
    assert has_access(uid, 1, uid + 1, 2, 0o070, 0o7) is False


def _exists(uid):
    try:
        pwd.getpwuid(uid)
    except KeyError:
        return False
    return True