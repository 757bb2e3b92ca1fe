"""Three-component versions and dependency constraints.

Grammar (whitespace around the operator is tolerated):
    ""  | "*"   any version
    1.5.3       exact
    >=1.0.0     minimum
    ^2.1.0      same major, >= 2.1.0
    ~1.2.0      same major.minor, >= 1.2.0

Comparison is purely numeric on (major, minor, patch); pre-release or build
suffixes are not accepted.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from functools import total_ordering

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
_CONSTRAINT_RE = re.compile(r"^(>=|\^|~)?\s*(\S+)$")


@total_ordering
@dataclass(frozen=True)
class SemVer:
    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, text: str) -> "SemVer":
        if not isinstance(text, str):
            raise ValueError(f"version must be a string, got {text!r}")
        m = _VERSION_RE.match(text.strip())
        if not m:
            raise ValueError(
                f"invalid version '{text}' (expected MAJOR.MINOR.PATCH)"
            )
        return cls(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SemVer):
            return NotImplemented
        return self.as_tuple() < other.as_tuple()

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class VersionConstraint:
    op: str  # any|exact|min|caret|tilde
    version: SemVer | None = None
    raw: str = "*"

    @classmethod
    def parse(cls, text: str | None) -> "VersionConstraint":
        if text is None or not str(text).strip() or str(text).strip() == "*":
            return cls("any")
        raw = str(text).strip()
        m = _CONSTRAINT_RE.match(raw)
        if not m:
            raise ValueError(f"invalid version constraint '{raw}'")
        op = {None: "exact", ">=": "min", "^": "caret", "~": "tilde"}[
            m.group(1)
        ]
        return cls(op, SemVer.parse(m.group(2)), raw)

    def satisfied_by(self, actual: SemVer) -> bool:
        v = self.version
        if self.op == "any" or v is None:
            return True
        if self.op == "exact":
            return actual == v
        if self.op == "min":
            return actual >= v
        if self.op == "caret":
            return actual.major == v.major and actual >= v
        # tilde
        return (
            actual.major == v.major
            and actual.minor == v.minor
            and actual >= v
        )

    def __str__(self) -> str:
        return self.raw


def satisfies(version: str | SemVer, constraint: str | None) -> bool:
    """Convenience wrapper: ``satisfies("2.0.0", ">=1.0.0") -> True``."""
    actual = version if isinstance(version, SemVer) else SemVer.parse(version)
    return VersionConstraint.parse(constraint).satisfied_by(actual)


__all__ = ["SemVer", "VersionConstraint", "satisfies"]
