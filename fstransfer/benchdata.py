"""Random directory trees for copy benchmarks."""

from __future__ import annotations

import contextlib
import functools
import math
import os
import random
import shutil
import stat as statmod
import tempfile
from typing import Iterator, Optional

DEFAULT_FILE_SIZE = 64 * 1024


def random_id() -> str:
    """Twenty hex digits drawn from a secure random source."""
    return os.urandom(10).hex()


def _file_size() -> int:
    try:
        return int(os.environ.get("BENCH_FILE_SIZE", ""))
    except ValueError:
        return DEFAULT_FILE_SIZE


@functools.lru_cache(maxsize=None)
def _random_bytes(size: int) -> bytes:
    return os.urandom(size)


def write_file(path: str) -> None:
    """Write the shared random buffer to ``path``.

    Its size comes from ``BENCH_FILE_SIZE`` and defaults to 64 KiB.
    """
    with open(path, "wb") as out:
        out.write(_random_bytes(_file_size()))


def fill_test_dir(root: str, items: int, n: int) -> None:
    """Fill ``root`` with about ``n`` files spread over nested directories.

    A level holding no more than ``items`` entries gets ``items`` files;
    a larger one is split into subdirectories of ``n // items`` entries.
    """
    if n <= items:
        for _ in range(items):
            write_file(os.path.join(root, random_id()))
        return
    sub = n // items
    while n > 0:
        path = os.path.join(root, random_id())
        os.makedirs(path, 0o700, exist_ok=True)
        sub = min(sub, n)
        fill_test_dir(path, items, sub)
        n -= sub


def create_test_dir(n: int, base_dir: Optional[str] = None) -> str:
    """Create a temporary tree of about ``n`` random files and return its path.

    ``base_dir`` defaults to ``BENCH_BASE_DIR``, then to the system temp dir.
    """
    if base_dir is None:
        base_dir = os.environ.get("BENCH_BASE_DIR") or None
    root = tempfile.mkdtemp(prefix="diffcopy", dir=base_dir)
    dirs = int(math.ceil(math.pow(n, 1.0 / 3.0)))
    try:
        fill_test_dir(root, dirs, n)
    except BaseException:
        shutil.rmtree(root, ignore_errors=True)
        raise
    return root


def _walk(path: str) -> Iterator[tuple[str, os.stat_result]]:
    st = os.lstat(path)
    yield path, st
    if statmod.S_ISDIR(st.st_mode):
        for name in sorted(os.listdir(path)):
            yield from _walk(os.path.join(path, name))


def mutate(root: str, n: int) -> None:
    """Randomly delete ``n`` files, add ``n`` new ones and rewrite ``n``.

    Raises ValueError when the tree holds no files to work on.
    """
    delete = add = modify = n
    while True:
        saw_file = False
        for path, st in _walk(root):
            if not statmod.S_ISDIR(st.st_mode):
                saw_file = True
                if random.randrange(3) == 0:
                    action = random.randrange(3)
                    if action == 0 and delete > 0:
                        delete -= 1
                        with contextlib.suppress(FileNotFoundError):
                            os.remove(path)
                    elif action == 1 and add > 0:
                        add -= 1
                        write_file(os.path.join(os.path.dirname(path), random_id()))
                    elif action == 2 and modify > 0:
                        modify -= 1
                        write_file(path)
            if delete + add + modify == 0:
                return
        if not saw_file:
            raise ValueError(f"no files to mutate under {root}")