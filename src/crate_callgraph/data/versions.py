"""Cargo-style version requirements evaluated with ``semantic_version``."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from semantic_version import Version

_CLAUSE_RE = re.compile(
    r"""^(?P<op>\^|~|==|=|>=|<=|>|<)?\s*v?
    (?P<major>\d+|\*|x|X)
    (?:\.(?P<minor>\d+|\*|x|X))?
    (?:\.(?P<patch>\d+|\*|x|X))?
    (?:-(?P<pre>[0-9A-Za-z.-]+))?
    (?:\+[0-9A-Za-z.-]+)?$""",
    re.VERBOSE,
)
_WILDCARDS = {"*", "x", "X"}


def parse_version(text: str) -> Version:
    """Parse a published version, coercing non-strict forms such as ``1.0`` or ``01.2.3``."""

    try:
        return Version(text)
    except ValueError:
        return Version.coerce(text)


def _make(major: int, minor: int, patch: int, pre: str | None = None) -> Version:
    suffix = f"-{pre}" if pre else ""
    return Version(f"{major}.{minor}.{patch}{suffix}")


@dataclass(frozen=True, slots=True)
class Comparator:
    op: str
    version: Version

    def matches(self, candidate: Version) -> bool:
        if self.op == "==":
            return candidate == self.version
        if self.op == ">":
            return candidate > self.version
        if self.op == ">=":
            return candidate >= self.version
        if self.op == "<":
            return candidate < self.version
        return candidate <= self.version


def _expand(op: str, major: int, minor: Optional[int], patch: Optional[int], pre: str | None) -> List[Comparator]:
    lo_minor = minor or 0
    lo_patch = patch or 0
    lower = _make(major, lo_minor, lo_patch, pre)

    if op == "^":
        if major > 0 or minor is None:
            upper = _make(major + 1, 0, 0)
        elif minor > 0 or patch is None:
            upper = _make(0, minor + 1, 0)
        else:
            upper = _make(0, 0, patch + 1)
        return [Comparator(">=", lower), Comparator("<", upper)]
    if op == "~":
        upper = _make(major + 1, 0, 0) if minor is None else _make(major, minor + 1, 0)
        return [Comparator(">=", lower), Comparator("<", upper)]
    if op == "=":
        if minor is None:
            return [Comparator(">=", lower), Comparator("<", _make(major + 1, 0, 0))]
        if patch is None:
            return [Comparator(">=", lower), Comparator("<", _make(major, minor + 1, 0))]
        return [Comparator("==", lower)]
    if op == ">":
        if minor is None:
            return [Comparator(">=", _make(major + 1, 0, 0))]
        if patch is None:
            return [Comparator(">=", _make(major, minor + 1, 0))]
        return [Comparator(">", lower)]
    if op == ">=":
        return [Comparator(">=", lower)]
    if op == "<":
        return [Comparator("<", lower)]
    # "<="
    if minor is None:
        return [Comparator("<", _make(major + 1, 0, 0))]
    if patch is None:
        return [Comparator("<", _make(major, minor + 1, 0))]
    return [Comparator("<=", lower)]


class VersionReq:
    """A parsed requirement such as ``^1.2``, ``>=0.3, <0.5`` or ``1.*``."""

    def __init__(self, text: str) -> None:
        self.text = text.strip()
        self.comparators: List[Comparator] = []
        self.prerelease_anchors: set[tuple[int, int, int]] = set()
        self._parse()

    def __repr__(self) -> str:
        return f"VersionReq({self.text!r})"

    def __str__(self) -> str:
        return self.text

    def _parse(self) -> None:
        if not self.text or self.text in _WILDCARDS:
            return
        for raw in self.text.split(","):
            clause = raw.strip()
            if not clause or clause in _WILDCARDS:
                continue
            match = _CLAUSE_RE.match(clause)
            if not match:
                raise ValueError(f"Invalid version requirement: {self.text!r}")
            op = match.group("op") or "^"
            if op == "==":
                op = "="
            major_text, minor_text, patch_text = match.group("major", "minor", "patch")
            pre = match.group("pre")
            if major_text in _WILDCARDS:
                continue
            major = int(major_text)
            minor = None if minor_text is None or minor_text in _WILDCARDS else int(minor_text)
            patch = None if minor is None or patch_text is None or patch_text in _WILDCARDS else int(patch_text)
            if minor_text in _WILDCARDS or patch_text in _WILDCARDS:
                op = "="
            if pre:
                self.prerelease_anchors.add((major, minor or 0, patch or 0))
            self.comparators.extend(_expand(op, major, minor, patch, pre))

    def matches(self, candidate: Version, *, include_prerelease: bool = False) -> bool:
        if candidate.prerelease and not include_prerelease:
            anchor = (candidate.major, candidate.minor, candidate.patch)
            if anchor not in self.prerelease_anchors:
                return False
        return all(comparator.matches(candidate) for comparator in self.comparators)

    def select(self, candidates: Iterable[Version], *, include_prerelease: bool = False) -> Optional[Version]:
        """Return the highest candidate satisfying the requirement."""

        matching = [c for c in candidates if self.matches(c, include_prerelease=include_prerelease)]
        return max(matching) if matching else None


__all__ = ["Comparator", "VersionReq", "parse_version"]
