"""Compat ranges and upgrade ceilings.

A compat string is a comma separated union of terms. Each term is one of:

* a bare version ``1.2`` (caret semantics, same as ``^1.2``): at least the
  stated version and below the next increment of its leading nonzero
  component, so ``1.2`` is ``[1.2.0, 2.0.0)`` and ``0.2.3`` is ``[0.2.3, 0.3.0)``;
* ``~1.2.3``: tilde semantics, ``[1.2.3, 1.3.0)``;
* ``=1.2.3``: exactly one version;
* inequality terms understood by npm (``>=1.0.0 <1.5.0``) or ``*``.

Terms are translated into ``semantic_version.NpmSpec`` syntax, which does the
actual matching.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Tuple

import semantic_version
from semantic_version import Version

from versioning.models import UpgradeLevel

_NUMERIC_TERM = re.compile(r'^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?$')


def parse_version(text: str) -> Version:
    """Parse a published version string, accepting an optional ``v`` prefix.

    Raises:
        ValueError: If the string is not a valid semantic version.
    """
    s = str(text).strip()
    if s.startswith('v'):
        s = s[1:]
    return Version(s)


def _split_numeric(term: str) -> Optional[List[int]]:
    m = _NUMERIC_TERM.match(term)
    if not m:
        return None
    return [int(g) for g in m.groups() if g is not None]


def _caret_bounds(parts: List[int]) -> Tuple[Version, Version]:
    major, minor, patch = (parts + [0, 0])[:3]
    n = len(parts)
    lower = Version(major=major, minor=minor, patch=patch)
    if major != 0 or n == 1:
        upper = Version(major=major + 1, minor=0, patch=0)
    elif minor != 0 or n == 2:
        upper = Version(major=0, minor=minor + 1, patch=0)
    else:
        upper = Version(major=0, minor=0, patch=patch + 1)
    return lower, upper


def _tilde_bounds(parts: List[int]) -> Tuple[Version, Version]:
    major, minor, patch = (parts + [0, 0])[:3]
    n = len(parts)
    lower = Version(major=major, minor=minor, patch=patch)
    if n == 1:
        upper = Version(major=major + 1, minor=0, patch=0)
    elif n == 3 and major == 0 and minor == 0:
        upper = Version(major=0, minor=0, patch=patch + 1)
    else:
        upper = Version(major=major, minor=minor + 1, patch=0)
    return lower, upper


def _normalize_term(term: str) -> str:
    """Translate one compat term into NpmSpec syntax."""
    if term in ('*', 'x', 'X'):
        return '*'
    if term.startswith('=') and not term.startswith('=='):
        parts = _split_numeric(term[1:].strip())
        if parts is None:
            return term
        major, minor, patch = (parts + [0, 0])[:3]
        return f"={major}.{minor}.{patch}"
    if term.startswith('^'):
        parts = _split_numeric(term[1:].strip())
        if parts is None:
            return term
        lower, upper = _caret_bounds(parts)
        return f">={lower} <{upper}"
    if term.startswith('~'):
        parts = _split_numeric(term[1:].strip())
        if parts is None:
            return term
        lower, upper = _tilde_bounds(parts)
        return f">={lower} <{upper}"
    parts = _split_numeric(term)
    if parts is not None:
        lower, upper = _caret_bounds(parts)
        return f">={lower} <{upper}"
    return term


class VersionRange:
    """A parsed compat range.

    Instances compare and hash by their raw text so they can be used as
    dictionary keys in conflict reports.
    """

    def __init__(self, raw: str):
        self.raw = (raw or '').strip() or '*'
        terms = [t.strip() for t in self.raw.split(',') if t.strip()]
        normalized = [_normalize_term(t) for t in terms] or ['*']
        try:
            self._spec = semantic_version.NpmSpec(' || '.join(normalized))
        except ValueError as exc:
            raise ValueError(f"Invalid compat range '{self.raw}': {exc}") from exc
        self._exact: Optional[Version] = None
        if len(normalized) == 1 and normalized[0].startswith('=') and not normalized[0].startswith('=='):
            self._exact = Version(normalized[0][1:])

    @classmethod
    def exact(cls, version: Version) -> "VersionRange":
        """Range admitting only ``version``."""
        return cls(f"={version}")

    @classmethod
    def any(cls) -> "VersionRange":
        """Range admitting every version."""
        return cls('*')

    @property
    def exact_version(self) -> Optional[Version]:
        """The single admitted version for equality ranges, else None."""
        return self._exact

    @property
    def is_any(self) -> bool:
        return self.raw == '*'

    def contains(self, version: Version) -> bool:
        """True if ``version`` lies within the range."""
        if self._exact is not None:
            return version == self._exact
        return self._spec.match(version)

    def __contains__(self, version: Version) -> bool:
        return self.contains(version)

    def filter(self, versions: Iterable[Version]) -> List[Version]:
        """Return the members of ``versions`` admitted by the range, order kept."""
        return [v for v in versions if self.contains(v)]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VersionRange):
            return NotImplemented
        return self.raw == other.raw

    def __hash__(self) -> int:
        return hash(self.raw)

    def __str__(self) -> str:
        return self.raw

    def __repr__(self) -> str:
        return f"VersionRange({self.raw!r})"


def level_allows(candidate: Version, previous: Optional[Version], level: UpgradeLevel) -> bool:
    """Check ``candidate`` against the upgrade ceiling around ``previous``.

    FIXED keeps exactly the previous version, PATCH stays within the same
    minor series, MINOR within the same major series and MAJOR allows
    anything. Without a previous version every candidate is allowed.
    """
    if previous is None or level == UpgradeLevel.MAJOR:
        return True
    if level == UpgradeLevel.FIXED:
        return candidate == previous
    if candidate.major != previous.major:
        return False
    if level == UpgradeLevel.MINOR:
        return True
    return candidate.minor == previous.minor


def level_range(previous: Version, level: UpgradeLevel) -> VersionRange:
    """Describe the upgrade ceiling around ``previous`` as a range."""
    if level == UpgradeLevel.FIXED:
        return VersionRange.exact(previous)
    if level == UpgradeLevel.PATCH:
        upper = Version(major=previous.major, minor=previous.minor + 1, patch=0)
        return VersionRange(f">={previous.major}.{previous.minor}.0 <{upper}")
    if level == UpgradeLevel.MINOR:
        upper = Version(major=previous.major + 1, minor=0, patch=0)
        return VersionRange(f">={previous.major}.0.0 <{upper}")
    return VersionRange.any()
