"""Copy files and trees between roots with ``cp -a`` semantics."""

from __future__ import annotations

import os
import posixpath
import shutil
import stat as statmod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from fstransfer.changes import ChangeFunc, ChangeKind, FileStat
from fstransfer.mkdir import Chowner, User, chown, get_link_source, mkdir_all, utimes
from fstransfer.paths import _join, resolve_wildcards, root_path, scoped_join
from fstransfer.patterns import MatchInfo, PatternMatcher

XAttrErrorHandler = Callable[[str, str, str, OSError], None]


def _raise_xattr_error(dst: str, src: str, key: str, error: OSError) -> None:
    raise error


def allow_xattr_errors(dst: str, src: str, key: str, error: OSError) -> None:
    """An xattr error handler that ignores every error."""
    return None


def with_chown(uid: int, gid: int) -> Chowner:
    """A chowner that gives every copied entry the owner ``uid``:``gid``."""

    def _chowner(_old: Optional[User]) -> User:
        return User(uid=uid, gid=gid)

    return _chowner


@dataclass
class CopyInfo:
    """Options controlling a copy.

    Entries must match at least one of ``include_patterns`` (when given) and
    none of ``exclude_patterns``.
    """

    chown: Optional[Chowner] = None
    utime: Optional[datetime] = None
    allow_wildcards: bool = False
    mode: Optional[int] = None
    xattr_error_handler: Optional[XAttrErrorHandler] = None
    copy_dir_contents: bool = False
    follow_links: bool = False
    include_patterns: list[str] = field(default_factory=list)
    exclude_patterns: list[str] = field(default_factory=list)
    change_func: Optional[ChangeFunc] = None


@dataclass
class _ParentDir:
    src_path: str
    dst_path: str
    copied: bool = False


def copy_file(source: str, target: str) -> None:
    """Copy the contents of regular file ``source`` into a new ``target``."""
    shutil.copyfile(source, target)


def copy_xattrs(dst: str, src: str, handler: XAttrErrorHandler) -> None:
    """Copy extended attributes of ``src`` to ``dst`` without following links.

    The first failure is passed to ``handler``, which may raise it.
    """
    if not hasattr(os, "listxattr"):
        return
    try:
        keys = os.listxattr(src, follow_symlinks=False)
    except OSError as exc:
        handler(dst, src, "", exc)
        return
    for key in keys:
        try:
            data = os.getxattr(src, key, follow_symlinks=False)
        except OSError as exc:
            handler(dst, src, key, exc)
            return
        try:
            os.setxattr(dst, key, data, follow_symlinks=False)
        except OSError as exc:
            handler(dst, src, key, exc)
            return


def copy_device(dst: str, stat_result: os.stat_result) -> None:
    """Recreate a device, fifo or socket at ``dst``; sockets become stubs."""
    mode = stat_result.st_mode
    rdev = 0
    if statmod.S_ISBLK(mode) or statmod.S_ISCHR(mode):
        rdev = stat_result.st_rdev
    os.mknod(dst, mode & ~statmod.S_IFSOCK, rdev)


def _copy_directory_only(
    src: str, dst: str, stat_result: os.stat_result, overwrite: bool
) -> bool:
    try:
        st = os.lstat(dst)
    except FileNotFoundError:
        os.mkdir(dst, statmod.S_IMODE(stat_result.st_mode))
        return True
    if not statmod.S_ISDIR(st.st_mode):
        raise NotADirectoryError(f"cannot copy to non-directory: {dst}")
    if overwrite:
        os.chmod(dst, statmod.S_IMODE(stat_result.st_mode))
    return False


def _ensure_empty_file_target(dst: str) -> None:
    try:
        st = os.lstat(dst)
    except FileNotFoundError:
        return
    if statmod.S_ISDIR(st.st_mode):
        raise IsADirectoryError(f"cannot replace to directory {dst} with file")
    os.remove(dst)


def _go_split(path: str) -> tuple[str, str]:
    index = path.rfind(os.sep)
    return path[: index + 1], path[index + 1:]


def _base(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip(os.sep)
    if not stripped:
        return os.sep
    return stripped.rsplit(os.sep, 1)[-1]


def _file_stat(rel_path: str, full_path: str, st: os.stat_result) -> FileStat:
    linkname = os.readlink(full_path) if statmod.S_ISLNK(st.st_mode) else ""
    major = minor = 0
    if statmod.S_ISBLK(st.st_mode) or statmod.S_ISCHR(st.st_mode):
        major, minor = os.major(st.st_rdev), os.minor(st.st_rdev)
    return FileStat(
        path=rel_path,
        mode=st.st_mode,
        uid=st.st_uid,
        gid=st.st_gid,
        size=st.st_size,
        mod_time=st.st_mtime_ns,
        linkname=linkname,
        devmajor=major,
        devminor=minor,
    )


def _matcher(patterns: list[str], label: str) -> Optional[PatternMatcher]:
    if not patterns:
        return None
    try:
        return PatternMatcher(patterns)
    except ValueError as exc:
        raise ValueError(f"invalid {label}: {patterns}") from exc


class _Copier:
    def __init__(self, root: str, info: CopyInfo) -> None:
        self.root = root
        self.chown = info.chown
        self.utime = info.utime
        self.mode = info.mode
        self.xattr_error_handler = info.xattr_error_handler or _raise_xattr_error
        self.include_matcher = _matcher(info.include_patterns, "includepatterns")
        self.exclude_matcher = _matcher(info.exclude_patterns, "excludepatterns")
        self.change_func = info.change_func
        self.inodes: dict[int, str] = {}
        self.parent_dirs: list[_ParentDir] = []

    def prepare_target_dir(
        self, src_followed: str, src: str, dest_path: str, copy_dir_contents: bool
    ) -> str:
        src_is_dir = statmod.S_ISDIR(os.lstat(src_followed).st_mode)
        try:
            dest_st: Optional[os.stat_result] = os.stat(dest_path)
        except FileNotFoundError:
            dest_st = None

        if (not copy_dir_contents and src_is_dir and dest_st is not None) or (
            not src_is_dir and dest_st is not None and statmod.S_ISDIR(dest_st.st_mode)
        ):
            dest_path = _join(dest_path, _base(src))

        target = os.path.dirname(dest_path)
        if copy_dir_contents and src_is_dir and dest_st is None:
            target = dest_path
        mkdir_all(target, 0o755, self.chown, self.utime)
        return dest_path

    def copy(
        self,
        src: str,
        components: str,
        target: str,
        overwrite: bool,
        parent_include: MatchInfo,
        parent_exclude: MatchInfo,
    ) -> None:
        st = os.lstat(src)
        try:
            target_st: Optional[os.stat_result] = os.lstat(target)
        except FileNotFoundError:
            target_st = None

        include = True
        include_info = MatchInfo()
        exclude_info = MatchInfo()
        if components:
            include, include_info = self._include(components, parent_include)
            excluded, exclude_info = self._exclude(components, parent_exclude)
            if excluded:
                include = False

        if include:
            self._create_parent_dirs(overwrite)

        mode = st.st_mode
        is_dir = statmod.S_ISDIR(mode)
        if not is_dir:
            if not include:
                return
            _ensure_empty_file_target(target)

        copy_info = include
        restore_timestamp = False
        notify = True

        if is_dir:
            created = self._copy_directory(
                src, components, target, st, overwrite, include, include_info, exclude_info
            )
            if not overwrite:
                copy_info = created
                restore_timestamp = not created
            notify = False
        elif statmod.S_ISREG(mode):
            link = get_link_source(target, st, self.inodes)
            if link:
                os.link(link, target)
            else:
                copy_file(src, target)
        elif statmod.S_ISLNK(mode):
            os.symlink(os.readlink(src), target)
        elif (
            statmod.S_ISBLK(mode)
            or statmod.S_ISCHR(mode)
            or statmod.S_ISFIFO(mode)
            or statmod.S_ISSOCK(mode)
        ):
            copy_device(target, st)

        if copy_info:
            self._copy_file_info(st, target)
            copy_xattrs(target, src, self.xattr_error_handler)
        elif restore_timestamp and target_st is not None:
            self._copy_file_timestamp(st, target)
        if notify:
            self._notify_change(target, st)

    def _notify_change(self, target: str, st: os.stat_result) -> None:
        if self.change_func is None:
            return
        relative = target[len(self.root):] if target.startswith(self.root) else target
        relative = posixpath.normpath(relative) if relative else "."
        self.change_func(ChangeKind.ADD, relative, _file_stat(relative, target, st))

    def _include(self, path: str, parent: MatchInfo) -> tuple[bool, MatchInfo]:
        if self.include_matcher is None:
            return True, MatchInfo()
        return self.include_matcher.matches_using_parent_results(path, parent)

    def _exclude(self, path: str, parent: MatchInfo) -> tuple[bool, MatchInfo]:
        if self.exclude_matcher is None:
            return False, MatchInfo()
        return self.exclude_matcher.matches_using_parent_results(path, parent)

    def _create_parent_dirs(self, overwrite: bool) -> None:
        """Create directories whose creation was delayed until a match below them."""
        for parent in self.parent_dirs:
            if parent.copied:
                continue
            st = os.stat(parent.src_path)
            if not statmod.S_ISDIR(st.st_mode):
                raise NotADirectoryError(f"{parent.src_path} is not a directory")
            if _copy_directory_only(parent.src_path, parent.dst_path, st, overwrite):
                self._copy_file_info(st, parent.dst_path)
                copy_xattrs(parent.dst_path, parent.src_path, self.xattr_error_handler)
            parent.copied = True

    def _copy_directory(
        self,
        src: str,
        components: str,
        dst: str,
        st: os.stat_result,
        overwrite: bool,
        include: bool,
        include_info: MatchInfo,
        exclude_info: MatchInfo,
    ) -> bool:
        if not statmod.S_ISDIR(st.st_mode):
            raise NotADirectoryError("source is not directory")
        created = False
        parent = _ParentDir(src, dst)
        if include:
            created = _copy_directory_only(src, dst, st, overwrite)
            if created or overwrite:
                self._notify_change(dst, st)
            parent.copied = True

        self.parent_dirs.append(parent)
        try:
            for name in sorted(os.listdir(src)):
                self.copy(
                    os.path.join(src, name),
                    os.path.join(components, name),
                    os.path.join(dst, name),
                    True,
                    include_info,
                    exclude_info,
                )
        finally:
            self.parent_dirs.pop()
        return created

    def _copy_file_info(self, st: os.stat_result, name: str) -> None:
        old = User(uid=st.st_uid, gid=st.st_gid)
        chown(name, old, self.chown or (lambda user: user))

        perm = statmod.S_IMODE(st.st_mode)
        if self.mode is not None:
            perm = (perm & ~0o777) | (self.mode & 0o777)
        if not statmod.S_ISLNK(st.st_mode):
            os.chmod(name, perm)
        self._copy_file_timestamp(st, name)

    def _copy_file_timestamp(self, st: os.stat_result, name: str) -> None:
        if self.utime is not None:
            utimes(name, self.utime)
            return
        times = (st.st_atime_ns, st.st_mtime_ns)
        if os.utime in os.supports_follow_symlinks:
            os.utime(name, ns=times, follow_symlinks=False)
        elif not statmod.S_ISLNK(st.st_mode):
            os.utime(name, ns=times)


def copy(
    src_root: str,
    src: str,
    dst_root: str,
    dst: str,
    info: Optional[CopyInfo] = None,
) -> None:
    """Copy ``src`` under ``src_root`` to ``dst`` under ``dst_root``.

    Both paths are resolved as if their root were ``/``. Raises
    FileNotFoundError when wildcards are allowed and nothing matches.
    """
    info = info if info is not None else CopyInfo()

    ensure_dst = dst
    head, tail = _go_split(dst)
    if tail and tail != ".":
        ensure_dst = head
    if ensure_dst:
        mkdir_all(scoped_join(dst_root, ensure_dst), 0o755, info.chown, info.utime)

    dest = scoped_join(dst_root, dst)
    copier = _Copier(dst_root, info)

    sources = [src]
    if info.allow_wildcards:
        sources = resolve_wildcards(src_root, src, info.follow_links)
        if not sources:
            raise FileNotFoundError(f"no matches found: {src}")

    for source in sources:
        followed = root_path(src_root, source, info.follow_links)
        target = copier.prepare_target_dir(followed, source, dest, info.copy_dir_contents)
        copier.copy(followed, "", target, False, MatchInfo(), MatchInfo())