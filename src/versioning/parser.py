"""Token parsing utilities for the command line front end.

Turns tokens such as ``Example@1.2``, ``Example=7876af07-...``,
``Example#main``, ``./path/to/Pkg`` or ``https://host/Pkg.git#v1`` into
``PackageSpec`` values. Nothing in the resolver or orchestrator depends on
this grammar.
"""

import os
from typing import List, Optional, Tuple

from .models import PackageMode, PackageSpec, UpgradeLevel


def tokenize_rightmost(s: str, sep: str) -> Tuple[str, Optional[str]]:
    """Return (head, tail or None) split on the rightmost ``sep``."""
    s = s.strip()
    if sep not in s:
        return s, None
    head, tail = s.rsplit(sep, 1)
    tail = tail.strip()
    return head.strip(), (tail if tail else None)


def _looks_like_url(token: str) -> bool:
    return "://" in token or token.startswith("git@")


def _looks_like_path(token: str) -> bool:
    if token.startswith((".", "/", "~")):
        return True
    return os.sep in token or os.path.isdir(token)


def parse_package_token(
    token: str,
    mode: PackageMode = PackageMode.PROJECT,
    level: UpgradeLevel = UpgradeLevel.MAJOR,
) -> PackageSpec:
    """Parse one CLI token into a PackageSpec.

    Raises:
        ValueError: If the token is empty.
    """
    token = token.strip()
    if not token:
        raise ValueError("Empty package token")

    body, rev = tokenize_rightmost(token, "#")

    if _looks_like_url(body):
        return PackageSpec(url=body, rev=rev, mode=mode, level=level)
    if _looks_like_path(body):
        return PackageSpec(path=os.path.expanduser(body), rev=rev, mode=mode, level=level)

    name, version = tokenize_rightmost(body, "@")
    name, uuid = tokenize_rightmost(name, "=")
    return PackageSpec(
        name=name or None,
        uuid=uuid,
        version=version,
        rev=rev,
        mode=mode,
        level=level,
    )


def parse_package_tokens(
    tokens: List[str],
    mode: PackageMode = PackageMode.PROJECT,
    level: UpgradeLevel = UpgradeLevel.MAJOR,
) -> List[PackageSpec]:
    """Parse every token of a command line, preserving order."""
    return [parse_package_token(t, mode=mode, level=level) for t in tokens if t and t.strip()]
