"""Apply a stream of changes to a destination directory on disk."""

from __future__ import annotations

import dataclasses
import errno
import hashlib
import os
import shutil
import stat as statmod
import threading
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional, Protocol

from fstransfer.changes import ChangeKind, FileStat
from fstransfer.chtimes import chtimes


class Writer(Protocol):
    def write(self, data: bytes) -> int: ...

    def close(self) -> None: ...


WriteToFunc = Callable[[str, Writer], None]
NotifyFunc = Callable[[ChangeKind, str, Optional["HashedWriter"]], None]
ContentHasher = Callable[[FileStat], "hashlib._Hash"]
FilterFunc = Callable[[str, FileStat], bool]


def _sha256_hasher(_stat: FileStat) -> "hashlib._Hash":
    return hashlib.sha256()


@dataclass
class DiskWriterOptions:
    """Callbacks that drive a DiskWriter.

    Exactly one of ``sync_data_cb`` and ``async_data_cb`` must be given.
    """

    async_data_cb: Optional[WriteToFunc] = None
    sync_data_cb: Optional[WriteToFunc] = None
    notify_cb: Optional[NotifyFunc] = None
    content_hasher: ContentHasher = _sha256_hasher
    filter_fn: Optional[FilterFunc] = None


class HashedWriter:
    """A writer that also feeds a hash; handed to the notify callback."""

    def __init__(
        self,
        hasher: ContentHasher,
        stat: FileStat,
        writer: Optional[Writer] = None,
    ) -> None:
        self.stat = stat
        self._hash = hasher(stat)
        self._writer = writer
        self._digest = ""

    def write(self, data: bytes) -> int:
        if self._writer is not None:
            self._writer.write(data)
        self._hash.update(data)
        return len(data)

    def close(self) -> None:
        self._digest = f"sha256:{self._hash.hexdigest()}"
        if self._writer is not None:
            self._writer.close()

    def digest(self) -> str:
        """The digest computed at close time, or an empty string before."""
        return self._digest


class LazyFileWriter:
    """Opens an existing file for writing on the first write.

    A read-only file is made writable for the duration and its mode is
    restored on close.
    """

    def __init__(self, dest: str) -> None:
        self.dest = dest
        self._file: Optional[BinaryIO] = None
        self._file_mode: Optional[int] = None

    def _open(self) -> BinaryIO:
        try:
            fd = os.open(self.dest, os.O_WRONLY)
        except PermissionError:
            mode = statmod.S_IMODE(os.stat(self.dest).st_mode)
            self._file_mode = mode
            os.chmod(self.dest, mode | 0o222)
            fd = os.open(self.dest, os.O_WRONLY)
        return os.fdopen(fd, "wb")

    def write(self, data: bytes) -> int:
        if self._file is None:
            self._file = self._open()
        return self._file.write(data)

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
        if self._file_mode is not None:
            os.chmod(self.dest, self._file_mode)
            self._file_mode = None


def mkdev(major: int, minor: int) -> int:
    """Combine major and minor numbers into a device number."""
    return os.makedev(major, minor)


def rewrite_metadata(path: str, stat: FileStat) -> None:
    """Apply xattrs, ownership, permissions and modification time to ``path``."""
    if hasattr(os, "setxattr"):
        for key, value in stat.xattrs.items():
            try:
                os.setxattr(path, key, value, follow_symlinks=False)
            except OSError:
                pass
    if hasattr(os, "lchown"):
        os.lchown(path, stat.uid, stat.gid)
    if not stat.is_symlink():
        os.chmod(path, statmod.S_IMODE(stat.mode))
    chtimes(path, stat.mod_time)


def create_special_file(path: str, stat: FileStat) -> None:
    """Create a character device, block device or fifo described by ``stat``."""
    mode = stat.mode & 0o7777
    if statmod.S_ISCHR(stat.mode):
        mode |= statmod.S_IFCHR
    elif statmod.S_ISFIFO(stat.mode):
        mode |= statmod.S_IFIFO
    else:
        mode |= statmod.S_IFBLK
    os.mknod(path, mode, mkdev(stat.devmajor, stat.devminor))


def rename_file(src: str, dst: str) -> None:
    """Move ``src`` over ``dst``."""
    os.rename(src, dst)


_rand_state = 0
_rand_lock = threading.Lock()


def _reseed() -> int:
    return (time.time_ns() + os.getpid()) & 0xFFFFFFFF


def next_suffix() -> str:
    """A pseudo-random nine digit suffix for temporary names."""
    global _rand_state
    with _rand_lock:
        r = _rand_state or _reseed()
        r = (r * 1664525 + 1013904223) & 0xFFFFFFFF
        _rand_state = r
    return f"{r % 1_000_000_000:09d}"


def _remove_all(path: str) -> None:
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return
    if statmod.S_ISDIR(st.st_mode):
        shutil.rmtree(path)
    else:
        os.remove(path)


def _is_special(mode: int) -> bool:
    return statmod.S_ISCHR(mode) or statmod.S_ISBLK(mode) or statmod.S_ISFIFO(mode)


class DiskWriter:
    """Writes incoming changes below ``dest``.

    Any failure cancels the writer: further changes are refused.
    """

    def __init__(self, dest: str, options: DiskWriterOptions) -> None:
        if options.sync_data_cb is None and options.async_data_cb is None:
            raise ValueError("no data callback specified")
        if options.sync_data_cb is not None and options.async_data_cb is not None:
            raise ValueError("can't specify both sync and async data callbacks")
        self.dest = os.path.normpath(dest)
        self._opt = options
        self._dir_mod_times: dict[str, int] = {}
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._errors: list[BaseException] = []
        self._cancelled = threading.Event()

    def wait(self) -> None:
        """Wait for pending file data, then restore directory times."""
        for thread in list(self._threads):
            thread.join()
        self._threads.clear()
        if self._errors:
            raise self._errors[0]

        walk_errors: list[OSError] = []
        for root, _dirs, _files in os.walk(self.dest, onerror=walk_errors.append):
            if walk_errors:
                raise walk_errors[0]
            mtime = self._dir_mod_times.get(os.path.normpath(root))
            if mtime is not None:
                chtimes(root, mtime)
        if walk_errors:
            raise walk_errors[0]

    def handle_change(
        self, kind: ChangeKind, path: str, stat: Optional[FileStat]
    ) -> None:
        """Apply one change at slash-separated ``path`` relative to ``dest``."""
        if self._cancelled.is_set():
            raise RuntimeError("disk writer cancelled")
        try:
            self._handle(kind, path, stat)
        except BaseException:
            self._cancelled.set()
            raise

    def _handle(self, kind: ChangeKind, p: str, stat: Optional[FileStat]) -> None:
        dest_path = os.path.normpath(os.path.join(self.dest, p.replace("/", os.sep)))
        filter_fn = self._opt.filter_fn

        if kind is ChangeKind.DELETE:
            if filter_fn is not None and not filter_fn(p, FileStat(path=p)):
                return
            _remove_all(dest_path)
            if self._opt.notify_cb is not None:
                self._opt.notify_cb(kind, p, None)
            return

        if stat is None:
            raise ValueError(f"change without stat info: {p}")
        stat_copy = dataclasses.replace(stat, xattrs=dict(stat.xattrs))
        if filter_fn is not None and not filter_fn(p, stat_copy):
            return

        rename = True
        old_st: Optional[os.stat_result] = None
        try:
            old_st = os.lstat(dest_path)
        except FileNotFoundError as exc:
            if kind is not ChangeKind.ADD:
                raise FileNotFoundError(errno.ENOENT, "modify/rm", dest_path) from exc
            rename = False

        is_dir = stat.is_dir()
        old_is_dir = old_st is not None and statmod.S_ISDIR(old_st.st_mode)
        if old_st is not None and is_dir and old_is_dir:
            rewrite_metadata(dest_path, stat_copy)
            return

        new_path = dest_path
        if rename:
            new_path = os.path.join(os.path.dirname(dest_path), ".tmp." + next_suffix())

        is_regular = False
        perm = stat.mode & 0o7777
        if is_dir:
            try:
                os.mkdir(new_path, perm)
            except FileExistsError:
                self._handle(kind, p, stat)
                return
            self._dir_mod_times[dest_path] = stat_copy.mod_time
        elif _is_special(stat.mode):
            create_special_file(new_path, stat_copy)
        elif stat.is_symlink():
            os.symlink(stat_copy.linkname, new_path)
        elif stat_copy.linkname:
            os.link(os.path.join(self.dest, stat_copy.linkname), new_path)
        else:
            is_regular = True
            fd = os.open(new_path, os.O_CREAT | os.O_WRONLY, perm)
            with os.fdopen(fd, "wb") as file:
                if self._opt.sync_data_cb is not None:
                    self._process_change(ChangeKind.ADD, p, stat, file)

        rewrite_metadata(new_path, stat_copy)

        if rename:
            if old_is_dir != is_dir:
                _remove_all(dest_path)
            rename_file(new_path, dest_path)

        if is_regular:
            if self._opt.async_data_cb is not None:
                self._request_async_file_data(p, dest_path, stat, stat_copy)
        else:
            self._process_change(kind, p, stat, None)

    def _request_async_file_data(
        self, p: str, dest: str, stat: FileStat, stat_copy: FileStat
    ) -> None:
        def task() -> None:
            try:
                writer = LazyFileWriter(dest)
                try:
                    self._process_change(ChangeKind.ADD, p, stat, writer)
                finally:
                    writer.close()
                chtimes(dest, stat_copy.mod_time)
            except BaseException as exc:
                with self._lock:
                    self._errors.append(exc)
                self._cancelled.set()

        thread = threading.Thread(target=task, daemon=True)
        self._threads.append(thread)
        thread.start()

    def _process_change(
        self, kind: ChangeKind, p: str, stat: FileStat, writer: Optional[Writer]
    ) -> None:
        target: Optional[Writer] = writer
        hashed: Optional[HashedWriter] = None
        if self._opt.notify_cb is not None:
            hashed = HashedWriter(self._opt.content_hasher, stat, writer)
            target = hashed
        if writer is not None:
            fn = self._opt.sync_data_cb or self._opt.async_data_cb
            fn(p, target)
        elif hashed is not None:
            hashed.close()
        if hashed is not None:
            self._opt.notify_cb(kind, p, hashed)