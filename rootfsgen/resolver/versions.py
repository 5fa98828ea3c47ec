"""Version parsing and constraint matching.

This module handles:
- Parsing MAJOR[.MINOR[.PATCH]][-PRERELEASE][+BUILD] versions
- Parsing constraints: "*", bare exact pins, "=", ">", ">=", "<", "<=",
  caret ("^1.2") and tilde ("~1.2") ranges, comma-separated for AND
- Splitting "name@constraint" requirement strings
- Picking the highest available version that satisfies a set of constraints

Versions that do not parse as semantic versions are opaque: they only match
"*" or an exact pin with the same text.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from rootfsgen.resolver.errors import InvalidConstraintError

VERSION_PATTERN = re.compile(
    r"^v?(?P<major>\d+)(?:\.(?P<minor>\d+))?(?:\.(?P<patch>\d+))?"
    r"(?:-(?P<pre>[0-9A-Za-z.\-]+))?(?:\+[0-9A-Za-z.\-]+)?$"
)
COMPARATOR_PATTERN = re.compile(r"^(?P<op>\^|~|>=|<=|>|<|==|=)?\s*(?P<version>.+)$")

ANY = "*"


@dataclass(frozen=True)
class Version:
    """A parsed semantic version.

    Attributes:
        major: Major component.
        minor: Minor component (0 when omitted).
        patch: Patch component (0 when omitted).
        pre: Prerelease identifiers.
        parts: Number of numeric components written (1-3).
    """

    major: int
    minor: int = 0
    patch: int = 0
    pre: tuple[str, ...] = ()
    parts: int = 3

    @classmethod
    def parse(cls, text: str) -> Version | None:
        """Parse a version string, returning None when it is not semantic."""
        match = VERSION_PATTERN.match(text.strip())
        if match is None:
            return None
        parts = 1 + (match["minor"] is not None) + (match["patch"] is not None)
        pre = tuple(match["pre"].split(".")) if match["pre"] else ()
        return cls(
            major=int(match["major"]),
            minor=int(match["minor"] or 0),
            patch=int(match["patch"] or 0),
            pre=pre,
            parts=parts,
        )

    @property
    def release(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def sort_key(self) -> tuple:
        """Ordering key; a prerelease sorts below its release."""
        pre_key = tuple(
            (0, int(ident), "") if ident.isdigit() else (1, 0, ident)
            for ident in self.pre
        )
        return (self.release, 0 if self.pre else 1, pre_key)


@dataclass(frozen=True)
class _Comparator:
    op: str
    version: Version

    def matches(self, version: Version) -> bool:
        left, right = version.sort_key(), self.version.sort_key()
        if self.op == "=":
            return left == right
        if self.op == ">":
            return left > right
        if self.op == ">=":
            return left >= right
        if self.op == "<":
            return left < right
        return left <= right


def _upper_bound(major: int, minor: int = 0, patch: int = 0) -> Version:
    # Upper bounds exclude prereleases of the bound itself
    return Version(major, minor, patch, pre=("0",))


def _expand(op: str, version: Version) -> list[_Comparator]:
    """Expand caret and tilde ranges into plain comparators."""
    if op == "^":
        if version.major > 0 or version.parts == 1:
            upper = _upper_bound(version.major + 1)
        elif version.minor > 0 or version.parts == 2:
            upper = _upper_bound(0, version.minor + 1)
        else:
            upper = _upper_bound(0, 0, version.patch + 1)
        return [_Comparator(">=", version), _Comparator("<", upper)]
    if op == "~":
        if version.parts == 1:
            upper = _upper_bound(version.major + 1)
        else:
            upper = _upper_bound(version.major, version.minor + 1)
        return [_Comparator(">=", version), _Comparator("<", upper)]
    if op == "==":
        op = "="
    return [_Comparator(op, version)]


class VersionConstraint:
    """A parsed version constraint.

    A bare version ("1.2.3") pins that exact version. "*" or an empty
    constraint accepts any version.
    """

    def __init__(self, text: str) -> None:
        self.text = text.strip() or ANY
        self._comparators: list[_Comparator] = []
        self._exact_text: str | None = None
        self._prerelease_bases: set[tuple[int, int, int]] = set()

        if self.text == ANY:
            return

        for raw in self.text.split(","):
            raw = raw.strip()
            match = COMPARATOR_PATTERN.match(raw)
            if not raw or match is None:
                raise InvalidConstraintError(self.text, f"empty comparator in '{raw}'")
            op = match["op"] or "="
            version = Version.parse(match["version"])
            if version is None:
                # Opaque versions can only be pinned exactly
                if op not in ("=", "==") or "," in self.text:
                    raise InvalidConstraintError(
                        self.text, f"'{match['version']}' is not a version"
                    )
                self._exact_text = match["version"].strip()
                continue
            if version.pre:
                self._prerelease_bases.add(version.release)
            self._comparators.extend(_expand(op, version))

    @property
    def is_any(self) -> bool:
        return self.text == ANY

    def matches(self, version: str) -> bool:
        """Return True when the version string satisfies this constraint."""
        if self.is_any:
            return True
        if self._exact_text is not None:
            return version == self._exact_text
        parsed = Version.parse(version)
        if parsed is None:
            return False
        if parsed.pre and parsed.release not in self._prerelease_bases:
            return False
        return all(c.matches(parsed) for c in self._comparators)

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"VersionConstraint({self.text!r})"


def parse_requirement(requirement: str) -> tuple[str, str]:
    """Split "name@constraint" into (name, constraint).

    Args:
        requirement: Requirement string; the constraint part is optional.

    Returns:
        Tuple of (name, constraint); constraint is "*" when omitted.
    """
    name, sep, constraint = requirement.strip().partition("@")
    if not sep or not constraint.strip():
        return name.strip(), ANY
    return name.strip(), constraint.strip()


def version_sort_key(version: str) -> tuple:
    """Sort key placing opaque versions below semantic ones."""
    parsed = Version.parse(version)
    if parsed is None:
        return (0, version)
    return (1, parsed.sort_key())


def sort_versions(versions: Iterable[str]) -> list[str]:
    """Return versions sorted ascending."""
    return sorted(set(versions), key=version_sort_key)


def select_version(
    available: Iterable[str],
    constraints: Iterable[str],
    hint: str | None = None,
) -> str | None:
    """Pick the best version satisfying every constraint.

    Args:
        available: Candidate versions.
        constraints: Constraint strings that must all match.
        hint: Preferred version, used when it satisfies every constraint.

    Returns:
        The hinted or highest satisfying version, or None if none matches.

    Raises:
        InvalidConstraintError: If a constraint cannot be parsed.
    """
    parsed = [VersionConstraint(c) for c in constraints]
    candidates = [v for v in sort_versions(available) if all(c.matches(v) for c in parsed)]
    if not candidates:
        return None
    if hint is not None and hint in candidates:
        return hint
    return candidates[-1]


def is_exact_pin(constraint: str) -> bool:
    """Return True for a bare semantic version such as "1.36.1"."""
    text = constraint.strip()
    return bool(text) and text[0].isdigit() and "," not in text and Version.parse(text) is not None


def satisfies(version: str, constraint: str) -> bool:
    """Return True when version satisfies constraint."""
    return VersionConstraint(constraint).matches(version)


__all__ = [
    "ANY",
    "Version",
    "VersionConstraint",
    "is_exact_pin",
    "parse_requirement",
    "satisfies",
    "select_version",
    "sort_versions",
    "version_sort_key",
]
