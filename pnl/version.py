"""Version classifier: maps a node's version string to a node kind."""

import re

from pnl.models import NodeKind

# Stable pNode releases, e.g. "0.806.30102".
_STABLE_RE = re.compile(r"0\.\d{3}\.\d{5}", re.ASCII)
# Development builds carrying a short git hash, e.g. "2.2.0-7c3f39e8".
_DEV_BUILD_RE = re.compile(r"\d+\.\d+\.\d+-[0-9a-f]{8}", re.ASCII)


def is_target_version(version: str | None) -> bool:
    """Return ``True`` if *version* carries a target-node signature.

    Both patterns must match the whole string. ``None`` and the empty
    string are never target versions.
    """
    if not version:
        return False
    return bool(_STABLE_RE.fullmatch(version) or _DEV_BUILD_RE.fullmatch(version))


def classify(version: str | None) -> NodeKind:
    """Return ``"target"`` or ``"generic"`` for *version*."""
    return "target" if is_target_version(version) else "generic"
