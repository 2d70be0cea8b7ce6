"""Path resolution confined to a root directory, and wildcard expansion."""

from __future__ import annotations

import errno
import os
import re
import stat as statmod
from typing import Iterator

_MAX_SYMLINKS = 255
_WINDOWS = os.name == "nt"


def _clean(path: str) -> str:
    if not path:
        return "."
    cleaned = os.path.normpath(path)
    if os.sep == "/" and cleaned.startswith("//"):
        cleaned = cleaned[1:]
    return cleaned


def _join(*parts: str) -> str:
    """Join non-empty parts with the separator and clean the result."""
    present = [part for part in parts if part]
    if not present:
        return ""
    return _clean(os.sep.join(present))


def _split(path: str) -> list[str]:
    return [part for part in path.replace("/", os.sep).split(os.sep) if part]


def scoped_join(root: str, path: str) -> str:
    """Join ``path`` to ``root``, resolving symlinks as if ``root`` were ``/``.

    Neither ``..`` components nor symlink targets can lead outside ``root``.
    Components that do not exist are kept as they are.
    """
    pending = _split(_clean(os.sep + path))
    resolved: list[str] = []
    links = 0
    while pending:
        comp = pending.pop(0)
        if comp == ".":
            continue
        if comp == "..":
            if resolved:
                resolved.pop()
            continue
        candidate = os.path.join(root, *resolved, comp)
        try:
            st = os.lstat(candidate)
        except (FileNotFoundError, NotADirectoryError):
            resolved.append(comp)
            continue
        if statmod.S_ISLNK(st.st_mode):
            links += 1
            if links > _MAX_SYMLINKS:
                raise OSError(errno.ELOOP, "too many links", candidate)
            target = os.readlink(candidate)
            if os.path.isabs(target):
                resolved = []
            pending = _split(target) + pending
            continue
        resolved.append(comp)
    return os.path.join(root, *resolved) if resolved else root


def root_path(root: str, path: str, follow_links: bool) -> str:
    """Resolve ``path`` under ``root``; the last component is only followed on request."""
    path = _clean(os.sep + path)
    if path == os.sep:
        return root
    if follow_links:
        return scoped_join(root, path)
    head, tail = os.path.split(path)
    return os.path.join(scoped_join(root, head), tail)


def contains_wildcards(name: str) -> bool:
    """Whether ``name`` holds an unescaped ``*``, ``?`` or ``[``."""
    chars = iter(name)
    for ch in chars:
        if ch == "\\" and not _WINDOWS:
            next(chars, None)
        elif ch in "*?[":
            return True
    return False


def split_wildcards(path: str) -> tuple[str, str]:
    """Split ``path`` before the first component that holds a wildcard."""
    head: list[str] = []
    tail: list[str] = []
    found = False
    for part in _join(path).split(os.sep):
        if not found and contains_wildcards(part):
            found = True
        (tail if found else head).append(part or os.sep)
    return _join(*head), _join(*tail)


def rel(base: str, target: str) -> str:
    """Make ``target`` relative to ``base``."""
    if _WINDOWS:
        prefix = base + "\\"
        if target.startswith(prefix):
            return target[len(prefix):] or "."
    if os.path.isabs(base) != os.path.isabs(target):
        raise ValueError(f"can't make {target} relative to {base}")
    return os.path.relpath(target, base)


def _class_char(pattern: str, i: int) -> tuple[str, int]:
    if i >= len(pattern) or pattern[i] in "-]":
        raise ValueError("syntax error in pattern")
    if pattern[i] == "\\" and not _WINDOWS:
        i += 1
        if i >= len(pattern):
            raise ValueError("syntax error in pattern")
    return pattern[i], i + 1


def _translate_class(pattern: str, i: int) -> tuple[str, int]:
    negate = i < len(pattern) and pattern[i] == "^"
    if negate:
        i += 1
    items: list[str] = []
    while True:
        if i < len(pattern) and pattern[i] == "]" and items:
            i += 1
            break
        lo, i = _class_char(pattern, i)
        hi = lo
        if i < len(pattern) and pattern[i] == "-":
            hi, i = _class_char(pattern, i + 1)
        if lo > hi:
            raise ValueError("syntax error in pattern")
        items.append(re.escape(lo) if lo == hi else f"{re.escape(lo)}-{re.escape(hi)}")
    return "[" + ("^" if negate else "") + "".join(items) + "]", i


def _translate_glob(pattern: str) -> str:
    """Translate a shell-style glob into a regular expression body.

    Wildcards never match the path separator. Raises ValueError for a
    malformed pattern.
    """
    esc = re.escape(os.sep)
    out: list[str] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        i += 1
        if ch == "*":
            out.append(f"[^{esc}]*")
        elif ch == "?":
            out.append(f"[^{esc}]")
        elif ch == "\\" and not _WINDOWS:
            if i >= len(pattern):
                raise ValueError("syntax error in pattern")
            out.append(re.escape(pattern[i]))
            i += 1
        elif ch == "[":
            cls, i = _translate_class(pattern, i)
            out.append(cls)
        else:
            out.append(re.escape(ch))
    return "".join(out)


def _glob_match(pattern: str, name: str) -> bool:
    try:
        regex = _translate_glob(pattern)
    except ValueError:
        return False
    return re.fullmatch(regex, name) is not None


def _matching_paths(base: str, comp: str) -> Iterator[str]:
    """Walk ``base`` in lexical order and yield entries matching ``comp``.

    A matching directory is yielded without descending into it.
    """

    def visit(path: str, st: os.stat_result) -> Iterator[str]:
        relative = rel(base, path)
        if relative != ".":
            if _glob_match(comp, relative):
                yield path
                return
        if statmod.S_ISDIR(st.st_mode):
            for name in sorted(os.listdir(path)):
                child = os.path.join(path, name)
                yield from visit(child, os.lstat(child))

    yield from visit(base, os.lstat(base))


def resolve_wildcards(root: str, src: str, follow_links: bool) -> list[str]:
    """Expand wildcards in ``src`` against the tree under ``root``.

    Returns paths relative to ``root``; a ``src`` without wildcards is
    returned unchanged as the only element.
    """
    head, tail = split_wildcards(src)
    if not tail:
        return [head]
    base = root_path(root, head, follow_links)
    return [rel(root, match) for match in _matching_paths(base, tail)]