"""
Atomic binary installation.

AtomicInstaller.install_atomically() downloads, extracts and validates a
release, backs up the current binary and puts the new one in place. It is a
pure binary-replacement primitive: it never touches the Configuration Store
or the service definition, so fresh installs and upgrades share it.
"""

from __future__ import annotations

import os
import stat
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING

from anytlsctl.errors import ArtifactLayoutError
from anytlsctl.lifecycle.fetcher import ArtifactFetcher, detect_arch
from anytlsctl.lifecycle.operations import (
    atomic_install_file,
    create_backup,
    extract_archive,
    scratch_directory,
)
from anytlsctl.logging import get_logger

if TYPE_CHECKING:
    from anytlsctl.config import AppConfig

logger = get_logger(__name__)

BeforeReplaceHook = Callable[[], Awaitable[None]]


class AtomicInstaller:
    """
    Installs a release binary without ever exposing a partial file.

    Attributes:
        fetcher: Artifact fetcher used for downloads.
        target: Path of the installed binary.
        executable_name: Name of the executable inside the archive.
        arch: Release architecture; detected from the host when None.
    """

    def __init__(
        self,
        fetcher: ArtifactFetcher,
        target: Path | str,
        executable_name: str = "anytls-server",
        arch: str | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.target = Path(target)
        self.executable_name = executable_name
        self._arch = arch

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        fetcher: ArtifactFetcher | None = None,
        arch: str | None = None,
    ) -> AtomicInstaller:
        """Create an installer from application configuration."""
        return cls(
            fetcher=fetcher or ArtifactFetcher.from_config(config.release),
            target=config.paths.binary_path,
            executable_name=config.release.executable_name,
            arch=arch,
        )

    @property
    def arch(self) -> str:
        """Release architecture for this host."""
        if self._arch is None:
            self._arch = detect_arch()
        return self._arch

    def _locate_executable(self, extracted: Path) -> Path:
        candidate = extracted / self.executable_name
        if candidate.is_symlink() or not candidate.is_file():
            found = sorted(str(p.relative_to(extracted)) for p in extracted.rglob("*"))
            raise ArtifactLayoutError(
                f"Archive does not contain {self.executable_name}",
                details={"expected": self.executable_name, "found": found[:20]},
            )
        return candidate

    async def install_atomically(
        self,
        version: str,
        *,
        before_replace: BeforeReplaceHook | None = None,
    ) -> str:
        """
        Install *version* over the target path.

        Steps: fetch into a scratch directory, extract, require the
        executable, mark it runnable, back up the current binary, then
        replace the target atomically. The scratch directory is removed on
        every exit path.

        Args:
            version: Release tag to install.
            before_replace: Optional coroutine run after the artifact has
                been validated and before anything on disk changes (used to
                stop the service during a reinstall).

        Returns:
            The backup path, or "" when no binary existed before.

        Raises:
            DownloadError, ExtractError, ArtifactLayoutError: Nothing on disk
                was changed.
            InstallError: Backup or placement failed; the target is unchanged.
        """
        arch = self.arch

        with scratch_directory(prefix="anytlsctl-install-") as scratch:
            archive = await self.fetcher.fetch(version, arch, scratch)
            extracted = extract_archive(archive, scratch / "extracted")
            executable = self._locate_executable(extracted)

            mode = executable.stat().st_mode
            os.chmod(executable, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

            if before_replace is not None:
                await before_replace()

            backup = ""
            if self.target.exists():
                backup = str(create_backup(self.target))

            atomic_install_file(executable, self.target, mode=0o755)

        logger.info(
            f"Installed {version} ({arch})",
            extra={"target": str(self.target), "backup": backup or None},
        )
        return backup
