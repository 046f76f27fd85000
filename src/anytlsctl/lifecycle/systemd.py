"""
Service supervision.

ServiceController is the interface the orchestrator drives; one concrete
implementation exists per supervisor. SystemdServiceController renders the
unit file and wraps systemctl / journalctl.

The unit loads the Configuration Store file via EnvironmentFile= and
references ${ANYTLS_PORT} / ${ANYTLS_PASS} instead of embedding values, so
changing the port or credential never requires regenerating it. The restart
policy always includes a restart-storm breaker (StartLimitIntervalSec /
StartLimitBurst).
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from anytlsctl.errors import ServiceStartError, UnavailableError
from anytlsctl.lifecycle.store import CREDENTIAL_KEY, PORT_KEY, ServiceConfig
from anytlsctl.logging import get_logger

if TYPE_CHECKING:
    from anytlsctl.config import AppConfig, ServiceUnitConfig

logger = get_logger(__name__)


def render_unit(
    config: ServiceConfig,
    *,
    unit: ServiceUnitConfig,
    binary_path: Path,
    env_path: Path,
) -> str:
    """
    Render the systemd unit for the server.

    The output depends only on the arguments, so rendering the same inputs
    always gives byte-identical text. The values in *config* are not
    embedded; systemd reads them from *env_path* at start time.
    """
    working_dir = binary_path.parent
    return (
        "[Unit]\n"
        f"Description={unit.description}\n"
        "After=network-online.target\n"
        "Wants=network-online.target\n"
        f"StartLimitIntervalSec={unit.start_limit_interval_sec}\n"
        f"StartLimitBurst={unit.start_limit_burst}\n"
        "\n"
        "[Service]\n"
        "Type=simple\n"
        "User=root\n"
        f"WorkingDirectory={working_dir}\n"
        f"EnvironmentFile={env_path}\n"
        f"ExecStart={binary_path} -l {unit.listen_host}:${{{PORT_KEY}}}"
        f" -p ${{{CREDENTIAL_KEY}}}\n"
        "Restart=on-failure\n"
        f"RestartSec={unit.restart_sec}\n"
        f"LimitNOFILE={unit.limit_nofile}\n"
        "NoNewPrivileges=true\n"
        "PrivateTmp=true\n"
        "ProtectHome=true\n"
        "ProtectSystem=full\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )


class ServiceController(ABC):
    """
    Abstract interface over an OS service supervisor.

    Mutating calls raise on failure; stop/disable are tolerant of a unit that
    is already stopped or missing.
    """

    @abstractmethod
    async def write_definition(self, config: ServiceConfig) -> bool:
        """
        Write the service definition derived from *config*.

        Returns:
            True if the definition on disk changed.
        """

    @abstractmethod
    def has_definition(self) -> bool:
        """Return True if a service definition is installed."""

    @abstractmethod
    async def remove_definition(self) -> bool:
        """Delete the service definition. Returns True if one was removed."""

    @abstractmethod
    async def enable(self) -> None:
        """Enable the service at boot."""

    @abstractmethod
    async def disable(self) -> None:
        """Disable the service at boot."""

    @abstractmethod
    async def start(self) -> None:
        """
        Start the service.

        Raises:
            ServiceStartError: If the supervisor refuses.
        """

    @abstractmethod
    async def stop(self) -> None:
        """Stop the service."""

    @abstractmethod
    async def restart(self) -> None:
        """
        Restart the service.

        Raises:
            ServiceStartError: If the supervisor refuses.
        """

    @abstractmethod
    async def is_active(self) -> bool:
        """Return True if the service process is active."""

    @abstractmethod
    async def status(self) -> str:
        """Return human-readable diagnostic text."""

    @abstractmethod
    async def reset_failed(self) -> None:
        """Clear the supervisor's restart-failure counters."""

    async def logs(self, lines: int = 80) -> str:
        """Return recent log output, if the supervisor keeps any."""
        return ""


class SystemdServiceController(ServiceController):
    """
    ServiceController backed by systemd.

    Attributes:
        unit: Unit settings (name, restart policy, listen host).
        unit_dir: Directory holding the unit file.
        binary_path: Installed server binary.
        env_path: Configuration Store file referenced by the unit.
    """

    def __init__(
        self,
        unit: ServiceUnitConfig,
        unit_dir: Path | str,
        binary_path: Path | str,
        env_path: Path | str,
        systemctl_bin: str = "systemctl",
        journalctl_bin: str = "journalctl",
    ) -> None:
        self.unit = unit
        self.unit_dir = Path(unit_dir)
        self.binary_path = Path(binary_path)
        self.env_path = Path(env_path)
        self.systemctl_bin = systemctl_bin
        self.journalctl_bin = journalctl_bin

    @classmethod
    def from_config(cls, config: AppConfig) -> SystemdServiceController:
        """Create a controller from application configuration."""
        return cls(
            unit=config.service,
            unit_dir=config.paths.unit_dir,
            binary_path=config.paths.binary_path,
            env_path=config.paths.env_path,
        )

    @property
    def name(self) -> str:
        """systemd unit name."""
        return self.unit.name

    @property
    def unit_path(self) -> Path:
        """Full path of the unit file."""
        return self.unit_dir / self.unit.name

    async def _run(
        self,
        binary: str,
        *args: str,
        timeout: float | None = None,
    ) -> tuple[int, str, str]:
        """
        Run a supervisor command.

        Returns:
            Tuple of (return_code, stdout, stderr).

        Raises:
            UnavailableError: If the command is missing or times out.
        """
        timeout = timeout or self.unit.systemctl_timeout_seconds
        try:
            proc = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except FileNotFoundError as exc:
            raise UnavailableError(
                f"{binary} not available",
                details={"hint": "This host does not appear to use systemd"},
            ) from exc
        except TimeoutError as exc:
            raise UnavailableError(
                f"{binary} {' '.join(args)} timed out after {timeout}s",
                details={"args": list(args)},
            ) from exc

        return (
            proc.returncode or 0,
            stdout.decode(errors="replace") if stdout else "",
            stderr.decode(errors="replace") if stderr else "",
        )

    async def _systemctl(self, *args: str) -> tuple[int, str, str]:
        return await self._run(self.systemctl_bin, *args)

    async def _reload_daemon(self) -> None:
        returncode, stdout, stderr = await self._systemctl("daemon-reload")
        if returncode != 0:
            logger.warning(f"daemon-reload failed: {stderr.strip() or stdout.strip()}")

    async def write_definition(self, config: ServiceConfig) -> bool:
        content = render_unit(
            config,
            unit=self.unit,
            binary_path=self.binary_path,
            env_path=self.env_path,
        )
        try:
            if self.unit_path.read_text(encoding="utf-8") == content:
                logger.debug("Unit file unchanged", extra={"path": str(self.unit_path)})
                return False
        except FileNotFoundError:
            pass

        self.unit_dir.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{self.unit_path.name}.", dir=self.unit_dir
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.chmod(temp_name, 0o644)
            os.replace(temp_name, self.unit_path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

        logger.info("Wrote unit file", extra={"path": str(self.unit_path)})
        await self._reload_daemon()
        return True

    def has_definition(self) -> bool:
        return self.unit_path.is_file()

    async def remove_definition(self) -> bool:
        try:
            self.unit_path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Removed unit file", extra={"path": str(self.unit_path)})
        await self._reload_daemon()
        return True

    async def enable(self) -> None:
        returncode, stdout, stderr = await self._systemctl("enable", self.name)
        if returncode != 0:
            logger.warning(f"Failed to enable {self.name}: {stderr.strip() or stdout.strip()}")

    async def disable(self) -> None:
        returncode, stdout, stderr = await self._systemctl("disable", self.name)
        if returncode != 0:
            logger.warning(f"Failed to disable {self.name}: {stderr.strip() or stdout.strip()}")

    async def _start_like(self, action: str) -> None:
        logger.info(f"{action.capitalize()}ing service: {self.name}")
        returncode, stdout, stderr = await self._systemctl(action, self.name)
        if returncode != 0:
            message = stderr.strip() or stdout.strip() or "no output"
            logger.error(
                f"Service {action} failed: {message}",
                extra={"service": self.name, "returncode": returncode},
            )
            raise ServiceStartError(
                f"systemctl {action} {self.name} failed (exit {returncode}): {message}",
                details={"service": self.name, "returncode": returncode},
            )

    async def start(self) -> None:
        await self._start_like("start")

    async def restart(self) -> None:
        await self._start_like("restart")

    async def stop(self) -> None:
        logger.info(f"Stopping service: {self.name}")
        returncode, stdout, stderr = await self._systemctl("stop", self.name)
        if returncode != 0:
            logger.warning(f"Service stop failed: {stderr.strip() or stdout.strip()}")

    async def is_active(self) -> bool:
        returncode, stdout, _ = await self._systemctl("is-active", self.name)
        return returncode == 0 and stdout.strip() == "active"

    async def status(self) -> str:
        _, stdout, stderr = await self._systemctl("status", self.name, "--no-pager")
        return stdout or stderr

    async def reset_failed(self) -> None:
        returncode, stdout, stderr = await self._systemctl("reset-failed", self.name)
        if returncode != 0:
            logger.debug(f"reset-failed returned {returncode}: {stderr.strip() or stdout.strip()}")

    async def logs(self, lines: int = 80) -> str:
        try:
            _, stdout, stderr = await self._run(
                self.journalctl_bin, "-u", self.name, "-n", str(lines), "--no-pager"
            )
        except UnavailableError as e:
            return f"(logs unavailable: {e.message})"
        return stdout or stderr
