"""
Version tags and the installed-version record.

This module implements:
- Release tag validation (strict vMAJOR.MINOR.PATCH and a looser safe form)
- Tag comparison
- InstalledVersionRecord: the single-line commit record of the state machine

The record is written ONLY after a workflow passed its health check; a
missing file means "not installed" or "install never completed".
"""

from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path

from anytlsctl.errors import InvalidArgumentError
from anytlsctl.logging import get_logger

logger = get_logger(__name__)

# Shape accepted from the redirect fallback
STRICT_TAG_PATTERN = re.compile(r"^v(?P<major>\d+)\.(?P<minor>\d+)\.(?P<patch>\d+)$")

# Shape accepted from the metadata endpoint; it ends up in a URL and a file
SAFE_TAG_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]{0,63}$")


def is_strict_tag(tag: str) -> bool:
    """Return True if *tag* looks like v1.2.3."""
    return STRICT_TAG_PATTERN.match(tag) is not None


def is_safe_tag(tag: str) -> bool:
    """Return True if *tag* is usable in a download URL and on disk."""
    return SAFE_TAG_PATTERN.match(tag) is not None


def version_number(tag: str) -> str:
    """Strip a single leading 'v' from a release tag ("v1.2.0" -> "1.2.0")."""
    return tag[1:] if tag.startswith("v") else tag


def parse_tag(tag: str) -> tuple[int, int, int]:
    """
    Parse a strict release tag into its numeric parts.

    Raises:
        InvalidArgumentError: If the tag is not of the form vMAJOR.MINOR.PATCH.
    """
    match = STRICT_TAG_PATTERN.match(tag)
    if not match:
        raise InvalidArgumentError(
            f"Invalid release tag: {tag!r}",
            details={"tag": tag, "format": "vMAJOR.MINOR.PATCH"},
        )
    return int(match.group("major")), int(match.group("minor")), int(match.group("patch"))


def compare_tags(t1: str, t2: str) -> int:
    """
    Compare two release tags.

    Strict tags compare numerically; anything else falls back to plain
    string equality, reporting 0 for equal and -1 otherwise.

    Returns:
        -1 if t1 < t2, 0 if t1 == t2, 1 if t1 > t2
    """
    if is_strict_tag(t1) and is_strict_tag(t2):
        p1, p2 = parse_tag(t1), parse_tag(t2)
        if p1 < p2:
            return -1
        if p1 > p2:
            return 1
        return 0
    return 0 if t1 == t2 else -1


class InstalledVersionRecord:
    """
    Reads and writes the InstalledVersion file.

    Attributes:
        path: Location of the record.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def read(self) -> str | None:
        """Return the recorded tag, or None when nothing is committed."""
        try:
            value = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return value or None

    def write(self, tag: str) -> None:
        """
        Commit *tag* as the installed version.

        The file is replaced whole so a reader never sees a partial tag.
        """
        if not is_safe_tag(tag):
            raise InvalidArgumentError(
                f"Refusing to record unsafe version tag: {tag!r}",
                details={"tag": tag},
            )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(f"{tag}\n")
            os.chmod(temp_name, 0o644)
            os.replace(temp_name, self.path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        logger.info(
            "Recorded installed version",
            extra={"path": str(self.path), "version": tag},
        )

    def clear(self) -> bool:
        """Remove the record. Returns True if a file was removed."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True
