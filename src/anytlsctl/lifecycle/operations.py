"""
Filesystem primitives for installing binaries.

This module implements the safe file operations the installer and rollback
manager are built from:
- Scoped scratch directories removed on every exit path
- Archive extraction
- Atomic file placement (temp file in the target directory + os.replace)
- Timestamped backups, listing and pruning

CRITICAL: the installed binary must never be observable half-written. The
pattern is:
1. Copy the new content into a fresh temp file next to the target
2. fsync and chmod the temp file
3. os.replace(temp, target), which is atomic on POSIX

Replacing by rename also works while the old binary is running: the running
process keeps the old inode.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import zipfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from anytlsctl.errors import ExtractError, FailedPreconditionError, InstallError
from anytlsctl.logging import get_logger

logger = get_logger(__name__)

BACKUP_MARKER = ".bak."


def ensure_directory(path: Path, *, parents: bool = True, mode: int = 0o755) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Raises:
        FailedPreconditionError: If directory cannot be created.
    """
    try:
        path.mkdir(parents=parents, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise FailedPreconditionError(
            f"Failed to create directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def safe_remove_directory(path: Path, *, ignore_errors: bool = True) -> bool:
    """
    Remove a directory and its contents.

    Returns:
        True if the directory was removed, False if it didn't exist.

    Raises:
        FailedPreconditionError: If removal fails and ignore_errors is False.
    """
    if not path.exists():
        return False

    try:
        shutil.rmtree(path, ignore_errors=ignore_errors)
        logger.debug("Removed directory", extra={"path": str(path)})
        return True
    except OSError as e:
        if not ignore_errors:
            raise FailedPreconditionError(
                f"Failed to remove directory: {path}",
                details={"path": str(path), "error": str(e)},
            ) from e
        return False


@contextmanager
def scratch_directory(prefix: str = "anytlsctl-") -> Iterator[Path]:
    """Yield a private temporary directory, removed however the block exits."""
    path = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def extract_archive(archive: Path, dest: Path) -> Path:
    """
    Extract a zip archive into *dest*.

    Raises:
        ExtractError: If the archive is unreadable or corrupt.
    """
    ensure_directory(dest)
    try:
        with zipfile.ZipFile(archive) as zf:
            bad_member = zf.testzip()
            if bad_member is not None:
                raise ExtractError(
                    f"Archive member failed CRC check: {bad_member}",
                    details={"archive": str(archive), "member": bad_member},
                )
            zf.extractall(dest)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, EOFError) as e:
        raise ExtractError(
            f"Failed to extract archive (it may be corrupt): {e}",
            details={"archive": str(archive), "error": str(e)},
        ) from e
    return dest


def atomic_install_file(source: Path, target: Path, *, mode: int = 0o755) -> None:
    """
    Place a copy of *source* at *target* atomically.

    Raises:
        InstallError: If the copy or the final rename fails. The target is
            left exactly as it was.
    """
    try:
        ensure_directory(target.parent)
        fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
    except (OSError, FailedPreconditionError) as e:
        raise InstallError(
            f"Cannot stage file next to {target}: {e}",
            details={"target": str(target), "error": str(e)},
        ) from e

    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as out, open(source, "rb") as src:
            shutil.copyfileobj(src, out)
            out.flush()
            os.fsync(out.fileno())
        os.chmod(temp_path, mode)
        os.replace(temp_path, target)
    except OSError as e:
        temp_path.unlink(missing_ok=True)
        raise InstallError(
            f"Failed to install {target}: {e}",
            details={"source": str(source), "target": str(target), "error": str(e)},
        ) from e

    logger.info(
        "Atomic install completed",
        extra={"source": str(source), "target": str(target)},
    )


def create_backup(target: Path) -> Path:
    """
    Copy *target* to a uniquely timestamped sibling path.

    Returns:
        Path of the backup, e.g. anytls-server.bak.20260101T120000Z.

    Raises:
        InstallError: If the copy fails.
    """
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
    backup = target.with_name(f"{target.name}{BACKUP_MARKER}{stamp}")
    counter = 1
    while backup.exists():
        backup = target.with_name(f"{target.name}{BACKUP_MARKER}{stamp}-{counter}")
        counter += 1

    try:
        shutil.copy2(target, backup)
    except OSError as e:
        backup.unlink(missing_ok=True)
        raise InstallError(
            f"Failed to back up {target}: {e}",
            details={"target": str(target), "backup": str(backup), "error": str(e)},
        ) from e

    logger.info("Backed up binary", extra={"target": str(target), "backup": str(backup)})
    return backup


def list_backups(target: Path) -> list[Path]:
    """Return backups of *target*, newest first."""
    if not target.parent.exists():
        return []

    prefix = f"{target.name}{BACKUP_MARKER}"
    backups = [
        entry
        for entry in target.parent.iterdir()
        if entry.is_file() and entry.name.startswith(prefix)
    ]
    backups.sort(key=lambda p: (p.stat().st_mtime, p.name), reverse=True)
    return backups


def prune_backups(target: Path, keep: int) -> list[Path]:
    """
    Delete all but the *keep* newest backups of *target*.

    Returns:
        The paths that were removed.
    """
    removed: list[Path] = []
    for stale in list_backups(target)[keep:]:
        try:
            stale.unlink()
            removed.append(stale)
        except OSError as e:
            logger.warning(
                f"Failed to remove old backup: {e}", extra={"path": str(stale)}
            )
    if removed:
        logger.info(
            "Pruned old backups",
            extra={"removed": [str(p) for p in removed], "kept": keep},
        )
    return removed
