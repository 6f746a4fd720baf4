"""Version helpers for bitpiece.

This module provides functions to:
- Retrieve the installed package version
- Derive the peer id prefix from the version
- Generate local peer ids and the tracker user agent
"""

from __future__ import annotations

import importlib.metadata
import re
import secrets
from typing import Final

CLIENT_NAME: Final[str] = "bitpiece"
PEER_ID_LENGTH: Final[int] = 20


def get_version() -> str:
    """Get the installed package version.

    Falls back to ``bitpiece.__version__`` when the distribution metadata is
    unavailable (running from a source checkout).
    """
    try:
        return importlib.metadata.version(CLIENT_NAME)
    except importlib.metadata.PackageNotFoundError:
        from bitpiece import __version__

        return __version__


def parse_version(version: str) -> tuple[int, int, int]:
    """Parse a version string into major, minor, patch.

    Raises:
        ValueError: If version format is invalid

    """
    version_clean = re.split(r"[-+]", version)[0]

    parts = version_clean.split(".")
    if len(parts) < 2:
        msg = f"Invalid version format: {version} (expected MAJOR.MINOR.PATCH)"
        raise ValueError(msg)

    major = int(parts[0])
    minor = int(parts[1])
    patch = int(parts[2]) if len(parts) > 2 else 0
    return (major, minor, patch)


def get_peer_id_prefix(version: str | None = None) -> bytes:
    """Azureus-style peer id prefix, ``-BP{major:02d}{minor:02d}-``.

    Examples:
        Version 0.1.0 → -BP0100-
        Version 1.2.3 → -BP0102- (patch ignored)

    """
    if version is None:
        version = get_version()
    major, minor, _ = parse_version(version)
    return f"-BP{major:02d}{minor:02d}-".encode("ascii")


def generate_peer_id(version: str | None = None) -> bytes:
    """Generate a 20-byte peer id: version prefix plus random bytes."""
    prefix = get_peer_id_prefix(version)
    return prefix + secrets.token_bytes(PEER_ID_LENGTH - len(prefix))


def get_user_agent(version: str | None = None) -> str:
    """User-Agent header for tracker requests."""
    if version is None:
        version = get_version()
    return f"{CLIENT_NAME}/{version}"


def resolve_peer_id(configured: str | None = None) -> bytes:
    """Use the configured peer id when set, otherwise generate one."""
    if configured is not None:
        return configured.encode("utf-8")
    return generate_peer_id()
