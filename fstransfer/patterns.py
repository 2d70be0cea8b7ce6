"""Include and exclude patterns in the style of ignore files."""

from __future__ import annotations

import enum
import os
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from fstransfer.paths import _translate_glob

_SHOULD_ESCAPE = ".+()|{}$"


class _Kind(enum.Enum):
    EXACT = "exact"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    REGEX = "regex"


@dataclass(frozen=True)
class MatchInfo:
    """Per-pattern results of matching a parent directory."""

    parent_matched: tuple[bool, ...] = ()


def _clean(path: str) -> str:
    cleaned = os.path.normpath(path)
    if os.sep == "/" and cleaned.startswith("//"):
        cleaned = cleaned[1:]
    return cleaned


class _Pattern:
    def __init__(self, cleaned: str, exclusion: bool) -> None:
        self.cleaned = cleaned
        self.exclusion = exclusion
        self.kind, self.regex = self._compile(cleaned)

    @staticmethod
    def _compile(pattern: str) -> tuple[_Kind, Optional[re.Pattern[str]]]:
        sep = os.sep
        esc = re.escape(sep)
        body: list[str] = []
        kind = _Kind.EXACT
        pos = 0
        for index, _ in enumerate(iter(lambda: pos < len(pattern), False)):
            ch = pattern[pos]
            pos += 1
            if ch == "*":
                if pos < len(pattern) and pattern[pos] == "*":
                    pos += 1
                    if pos < len(pattern) and pattern[pos] == sep:
                        pos += 1
                    if pos >= len(pattern):
                        if kind is _Kind.EXACT:
                            kind = _Kind.PREFIX
                        else:
                            body.append(".*")
                            kind = _Kind.REGEX
                    else:
                        body.append(f"(?:.*{esc})?")
                        kind = _Kind.REGEX
                    if index == 0:
                        kind = _Kind.SUFFIX
                else:
                    body.append(f"[^{esc}]*")
                    kind = _Kind.REGEX
            elif ch == "?":
                body.append(f"[^{esc}]")
                kind = _Kind.REGEX
            elif ch in _SHOULD_ESCAPE:
                body.append("\\" + ch)
            elif ch == "\\":
                if sep == "\\":
                    body.append(esc)
                elif pos < len(pattern):
                    body.append(re.escape(pattern[pos]))
                    pos += 1
                    kind = _Kind.REGEX
                else:
                    body.append("\\\\")
            elif ch in "[]":
                body.append(ch)
                kind = _Kind.REGEX
            else:
                body.append(ch)

        if kind is not _Kind.REGEX:
            return kind, None
        try:
            return kind, re.compile("".join(body) + f"(?:{esc}.*)?")
        except re.error as exc:
            raise ValueError(f"syntax error in pattern: {pattern}") from exc

    def match(self, path: str) -> bool:
        if self.kind is _Kind.EXACT:
            return path == self.cleaned
        if self.kind is _Kind.PREFIX:
            return path.startswith(self.cleaned[:-2])
        if self.kind is _Kind.SUFFIX:
            suffix = self.cleaned[2:]
            if path.endswith(suffix):
                return True
            return suffix[0] == os.sep and path == suffix[1:]
        return self.regex.fullmatch(path) is not None


class PatternMatcher:
    """Matches paths against an ordered list of patterns.

    A pattern starting with ``!`` re-includes what earlier patterns matched;
    the last pattern that matches decides.
    """

    def __init__(self, patterns: Iterable[str]) -> None:
        self._patterns: list[_Pattern] = []
        self.exclusions = False
        for raw in patterns:
            text = raw.strip()
            if not text:
                continue
            text = _clean(text)
            exclusion = text.startswith("!")
            if exclusion:
                if len(text) == 1:
                    raise ValueError('illegal exclusion pattern: "!"')
                text = text[1:]
                self.exclusions = True
            _translate_glob(text)
            self._patterns.append(_Pattern(text, exclusion))

    def __len__(self) -> int:
        return len(self._patterns)

    def matches_using_parent_results(
        self, path: str, parent_info: MatchInfo
    ) -> tuple[bool, MatchInfo]:
        """Match ``path``, reusing the results recorded for its parent directory.

        With an empty ``parent_info`` the parent directories of ``path`` are
        checked as well.
        """
        parent_matched = parent_info.parent_matched
        if parent_matched and len(parent_matched) != len(self._patterns):
            raise ValueError("wrong number of values in parentMatched")

        path = path.replace("/", os.sep)
        matched = False
        results: list[bool] = []
        for index, pattern in enumerate(self._patterns):
            match = parent_matched[index] if parent_matched else False
            if not match:
                if pattern.exclusion != matched:
                    results.append(False)
                    continue
                match = pattern.match(path)
                if not match and not parent_matched:
                    match = self._matches_parent(pattern, path)
            results.append(match)
            if match:
                matched = not pattern.exclusion
        return matched, MatchInfo(tuple(results))

    @staticmethod
    def _matches_parent(pattern: _Pattern, path: str) -> bool:
        parent = os.path.dirname(path)
        if parent in ("", "."):
            return False
        dirs = parent.split(os.sep)
        return any(
            pattern.match(os.sep.join(dirs[: count + 1])) for count in range(len(dirs))
        )