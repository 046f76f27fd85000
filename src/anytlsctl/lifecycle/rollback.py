"""
Binary rollback.

Restores a backup produced by the AtomicInstaller. An empty or missing backup
path is reported explicitly as "no backup available"; callers must not claim
the deployment was restored in that case.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from anytlsctl.errors import InstallError
from anytlsctl.lifecycle.operations import atomic_install_file, list_backups
from anytlsctl.logging import get_logger

logger = get_logger(__name__)

NO_BACKUP_MESSAGE = "No backup available, cannot roll back"


@dataclass(frozen=True, slots=True)
class RollbackResult:
    """Outcome of a rollback attempt."""

    restored: bool
    message: str
    backup_path: str = ""


class RollbackManager:
    """
    Restores the installed binary from a backup.

    Attributes:
        target: Path of the installed binary.
    """

    def __init__(self, target: Path | str) -> None:
        self.target = Path(target)

    def available_backups(self) -> list[Path]:
        """Backups of the target binary, newest first."""
        return list_backups(self.target)

    def rollback(self, backup_path: str) -> RollbackResult:
        """
        Copy *backup_path* back over the target and make it executable.

        Never raises for a missing backup; a failed copy is reported as not
        restored with the underlying reason.
        """
        if not backup_path or not Path(backup_path).is_file():
            logger.warning(NO_BACKUP_MESSAGE, extra={"backup": backup_path or None})
            return RollbackResult(restored=False, message=NO_BACKUP_MESSAGE)

        try:
            atomic_install_file(Path(backup_path), self.target, mode=0o755)
        except InstallError as e:
            logger.error(
                f"Rollback failed: {e.message}",
                extra={"backup": backup_path, "target": str(self.target)},
            )
            return RollbackResult(
                restored=False,
                message=f"Rollback failed: {e.message}",
                backup_path=backup_path,
            )

        logger.warning(
            "Rolled back binary",
            extra={"backup": backup_path, "target": str(self.target)},
        )
        return RollbackResult(
            restored=True,
            message=f"Restored {self.target} from {backup_path}",
            backup_path=backup_path,
        )
