"""Change detection between two sorted walks of a filesystem tree."""

from __future__ import annotations

import dataclasses
import enum
import os
import stat as statmod
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional

COMPARE_CHUNK_SIZE = 32 * 1024


class ChangeKind(enum.IntEnum):
    """The type of modification that a change is making."""

    ADD = 0
    MODIFY = 1
    DELETE = 2

    def __str__(self) -> str:
        return {
            ChangeKind.ADD: "add",
            ChangeKind.MODIFY: "modify",
            ChangeKind.DELETE: "delete",
        }.get(self, "unknown")


class DiffType(enum.Enum):
    """How deeply two entries with the same path are compared."""

    NONE = "none"
    METADATA = "metadata"
    CONTENT = "content"


@dataclass
class FileStat:
    """Metadata describing one entry of a tree.

    ``mode`` holds POSIX ``st_mode`` bits and ``mod_time`` is in nanoseconds.
    """

    path: str
    mode: int = statmod.S_IFREG | 0o644
    uid: int = 0
    gid: int = 0
    size: int = 0
    mod_time: int = 0
    linkname: str = ""
    devmajor: int = 0
    devminor: int = 0
    xattrs: dict[str, bytes] = field(default_factory=dict)

    def is_dir(self) -> bool:
        return statmod.S_ISDIR(self.mode)

    def is_symlink(self) -> bool:
        return statmod.S_ISLNK(self.mode)


@dataclass
class CurrentPath:
    """A path produced by a walker together with its metadata."""

    path: str
    stat: FileStat


Walker = Callable[[], Iterable[CurrentPath]]
ChangeFunc = Callable[[ChangeKind, str, Optional[FileStat]], None]
FilterFunc = Callable[[str, FileStat], bool]


def _components(path: str) -> list[str]:
    return path.replace("/", os.sep).split(os.sep)


def compare_path(p1: str, p2: str) -> int:
    """Order two paths component by component, so a separator sorts lowest."""
    c1, c2 = _components(p1), _components(p2)
    if c1 == c2:
        return 0
    return -1 if c1 < c2 else 1


def path_change(
    lower: Optional[CurrentPath], upper: Optional[CurrentPath]
) -> tuple[ChangeKind, str]:
    """Classify the pair of current walker heads into a change kind and path."""
    if lower is None:
        if upper is None:
            raise ValueError("cannot compare nil paths")
        return ChangeKind.ADD, upper.path
    if upper is None:
        return ChangeKind.DELETE, lower.path
    order = compare_path(lower.path, upper.path)
    if order < 0:
        return ChangeKind.DELETE, lower.path
    if order > 0:
        return ChangeKind.ADD, upper.path
    return ChangeKind.MODIFY, upper.path


def compare_stat(s1: FileStat, s2: FileStat) -> bool:
    """Whether two entries have equivalent ownership, mode, device and link."""
    return (
        s1.mode == s2.mode
        and s1.uid == s2.uid
        and s1.gid == s2.gid
        and s1.devmajor == s2.devmajor
        and s1.devminor == s2.devminor
        and s1.linkname == s2.linkname
    )


def compare_file_content(p1: str, p2: str) -> bool:
    """Whether two files hold exactly the same bytes."""
    with open(p1, "rb") as f1, open(p2, "rb") as f2:
        while True:
            b1 = f1.read(COMPARE_CHUNK_SIZE)
            b2 = f2.read(COMPARE_CHUNK_SIZE)
            if b1 != b2:
                return False
            if not b1:
                return True


def same_file(f1: CurrentPath, f2: CurrentPath, differ: DiffType) -> bool:
    """Whether two entries with the same path are to be treated as unchanged."""
    if differ is DiffType.NONE:
        return False
    if not f1.stat.is_dir():
        if f1.stat.size != f2.stat.size:
            return False
        if f1.stat.mod_time != f2.stat.mod_time:
            return False
    same = compare_stat(f1.stat, f2.stat)
    if not same or differ is DiffType.METADATA:
        return same
    return compare_file_content(f1.path, f2.path)


def empty_walker() -> Iterator[CurrentPath]:
    """A walker over an empty tree."""
    return iter(())


def _copy_stat(st: FileStat) -> FileStat:
    return dataclasses.replace(st, xattrs=dict(st.xattrs))


def double_walk_diff(
    change_fn: ChangeFunc,
    a: Walker,
    b: Walker,
    filter_fn: Optional[FilterFunc] = None,
    differ: DiffType = DiffType.CONTENT,
) -> None:
    """Walk two sorted trees side by side and report their differences.

    ``a`` is the lower (old) tree, ``b`` the upper (new) one. Entries under a
    deleted directory are not reported separately.
    """
    it1, it2 = iter(a()), iter(b())
    done1 = done2 = False
    f1: Optional[CurrentPath] = None
    f2: Optional[CurrentPath] = None
    rmdir = ""

    while not (done1 and done2):
        if f1 is None and not done1:
            f1 = next(it1, None)
            done1 = f1 is None
        if f2 is None and not done2:
            f2 = next(it2, None)
            done2 = f2 is None
        if f1 is None and f2 is None:
            continue

        f2copy: Optional[CurrentPath] = None
        if f2 is not None:
            stat_copy = _copy_stat(f2.stat)
            if filter_fn is not None:
                filter_fn(f2.path, stat_copy)
            f2copy = CurrentPath(f2.path, stat_copy)

        kind, path = path_change(f1, f2copy)
        reported: Optional[FileStat] = None
        if kind is ChangeKind.ADD:
            rmdir = ""
            reported = f2.stat
            f2 = None
        elif kind is ChangeKind.DELETE:
            if rmdir and f1.path.startswith(rmdir):
                f1 = None
                continue
            if not rmdir and f1.stat.is_dir():
                rmdir = f1.path + os.sep
            elif rmdir:
                rmdir = ""
            f1 = None
        else:
            same = same_file(f1, f2copy, differ)
            if f1.stat.is_dir() and not f2copy.stat.is_dir():
                rmdir = f1.path + os.sep
            elif rmdir:
                rmdir = ""
            reported = f2.stat
            f1 = None
            f2 = None
            if same:
                continue
        change_fn(kind, path, reported)