"""Directory creation with ownership and timestamps, and hardlink tracking."""

from __future__ import annotations

import errno
import os
import stat as statmod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from fstransfer.chtimes import chtimes

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class User:
    """Ownership identity applied to created entries."""

    uid: int = 0
    gid: int = 0
    sid: str = ""


Chowner = Callable[[Optional[User]], Optional[User]]


def _to_nanos(when: datetime) -> int:
    if when.tzinfo is None:
        when = when.astimezone()
    delta = when - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 10**9 + delta.microseconds * 1000


def utimes(path: str, when: Optional[datetime]) -> None:
    """Set both times of ``path`` to ``when``; do nothing when it is None."""
    if when is None:
        return
    chtimes(path, _to_nanos(when))


def chown(path: str, old: Optional[User], chowner: Optional[Chowner]) -> None:
    """Apply the owner that ``chowner`` picks for ``old`` to ``path``."""
    if chowner is None:
        return
    user = chowner(old)
    if user is not None:
        os.lchown(path, user.uid, user.gid)


def mkdir_all(
    path: str,
    perm: int = 0o755,
    chowner: Optional[Chowner] = None,
    when: Optional[datetime] = None,
) -> None:
    """Create ``path`` and any missing parents.

    Every directory created is chowned through ``chowner`` and given the time
    ``when``. Raises NotADirectoryError if ``path`` exists as a non-directory.
    """
    try:
        st = os.stat(path)
    except OSError:
        pass
    else:
        if statmod.S_ISDIR(st.st_mode):
            return
        raise NotADirectoryError(errno.ENOTDIR, os.strerror(errno.ENOTDIR), path)

    seps = (os.sep, os.altsep) if os.altsep else (os.sep,)
    end = len(path)
    while end > 0 and path[end - 1] in seps:
        end -= 1
    start = end
    while start > 0 and path[start - 1] not in seps:
        start -= 1
    if start > 1:
        mkdir_all(path[: start - 1], perm, chowner, when)

    if _is_dir_nofollow(path):
        return
    try:
        os.mkdir(path, perm)
    except OSError:
        if _is_dir_nofollow(path):
            return
        raise

    chown(path, None, chowner)
    utimes(path, when)


def _is_dir_nofollow(path: str) -> bool:
    try:
        return statmod.S_ISDIR(os.lstat(path).st_mode)
    except OSError:
        return False


def get_link_info(stat_result: os.stat_result) -> tuple[int, bool]:
    """Return the inode and whether the entry is a hard-linked non-directory."""
    is_dir = statmod.S_ISDIR(stat_result.st_mode)
    return stat_result.st_ino, (not is_dir and stat_result.st_nlink > 1)


def get_link_source(
    name: str, stat_result: os.stat_result, inodes: dict[int, str]
) -> Optional[str]:
    """Return an earlier path sharing this entry's inode, if any.

    The first hard-linked path seen for an inode is recorded in ``inodes`` so
    later links can point to it.
    """
    inode, hardlinked = get_link_info(stat_result)
    if not hardlinked:
        return None
    existing = inodes.get(inode)
    if existing is None:
        inodes[inode] = name
    return existing