"""
Lifecycle orchestration for the AnyTLS server.

This module implements the LifecycleOrchestrator, which sequences the
resolver, installer, configuration store, service controller and health
checker into named workflows and owns the rollback decision.

Workflow states:
- idle: Nothing started
- resolving_version: Asking the release source for the latest tag
- installing: Downloading and atomically placing the binary
- configuring_service: Writing the Configuration Store and unit file
- starting: (Re)starting the service
- health_checking: Waiting for "active + port listening"
- rolling_back: Restoring the previous binary after a post-swap failure
- committed: Healthy; InstalledVersion written
- up_to_date: Nothing to do
- rolled_back: Previous binary restored and healthy; workflow failed
- failed: Workflow failed (service left stopped if it could not be restored)

Only failures after the binary swap lead to rolling_back. Every earlier
failure is a plain abort that leaves persisted state as it was.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from anytlsctl.errors import (
    FailedPreconditionError,
    HealthCheckFailure,
    InstallError,
    InvalidArgumentError,
    LifecycleError,
)
from anytlsctl.lifecycle.health_check import HealthChecker, PortProbe
from anytlsctl.lifecycle.installer import AtomicInstaller
from anytlsctl.lifecycle.operations import (
    list_backups,
    prune_backups,
    safe_remove_directory,
)
from anytlsctl.lifecycle.resolver import VersionResolver
from anytlsctl.lifecycle.rollback import RollbackManager
from anytlsctl.lifecycle.store import ConfigStore, ServiceConfig
from anytlsctl.lifecycle.systemd import ServiceController, SystemdServiceController
from anytlsctl.lifecycle.version import InstalledVersionRecord, compare_tags
from anytlsctl.logging import get_logger

if TYPE_CHECKING:
    import httpx

    from anytlsctl.config import AppConfig

logger = get_logger(__name__)


class WorkflowState(str, Enum):
    """States a mutating workflow moves through."""

    IDLE = "idle"
    RESOLVING_VERSION = "resolving_version"
    INSTALLING = "installing"
    CONFIGURING_SERVICE = "configuring_service"
    STARTING = "starting"
    HEALTH_CHECKING = "health_checking"
    ROLLING_BACK = "rolling_back"
    COMMITTED = "committed"
    UP_TO_DATE = "up_to_date"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


# Valid state transitions
_VALID_TRANSITIONS: dict[WorkflowState, set[WorkflowState]] = {
    WorkflowState.IDLE: {
        WorkflowState.RESOLVING_VERSION,
        WorkflowState.CONFIGURING_SERVICE,
        WorkflowState.FAILED,
    },
    WorkflowState.RESOLVING_VERSION: {
        WorkflowState.INSTALLING,
        WorkflowState.UP_TO_DATE,
        WorkflowState.FAILED,
    },
    WorkflowState.INSTALLING: {
        WorkflowState.CONFIGURING_SERVICE,
        WorkflowState.STARTING,
        WorkflowState.FAILED,
    },
    WorkflowState.CONFIGURING_SERVICE: {
        WorkflowState.STARTING,
        WorkflowState.ROLLING_BACK,
        WorkflowState.FAILED,
    },
    WorkflowState.STARTING: {
        WorkflowState.HEALTH_CHECKING,
        WorkflowState.ROLLING_BACK,
        WorkflowState.FAILED,
    },
    WorkflowState.HEALTH_CHECKING: {
        WorkflowState.COMMITTED,
        WorkflowState.ROLLING_BACK,
        WorkflowState.FAILED,
    },
    WorkflowState.ROLLING_BACK: {WorkflowState.ROLLED_BACK, WorkflowState.FAILED},
    WorkflowState.COMMITTED: set(),
    WorkflowState.UP_TO_DATE: set(),
    WorkflowState.ROLLED_BACK: set(),
    WorkflowState.FAILED: set(),
}


class WorkflowStatus(str, Enum):
    """Operator-facing outcome of a workflow."""

    SUCCEEDED = "succeeded"
    UP_TO_DATE = "up_to_date"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkflowResult(BaseModel):
    """
    Outcome of one workflow invocation.

    Only SUCCEEDED and UP_TO_DATE count as success; ROLLED_BACK means the
    previous deployment is healthy again but the change did not take effect.
    """

    workflow: str = Field(..., description="Workflow name")
    status: WorkflowStatus = Field(..., description="Outcome")
    state: WorkflowState = Field(
        default=WorkflowState.IDLE, description="Final state machine state"
    )
    old_version: str | None = Field(default=None)
    new_version: str | None = Field(default=None)
    message: str = Field(default="")
    backup_path: str | None = Field(default=None)
    error_code: str | None = Field(default=None)
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """True when the operator can treat the workflow as successful."""
        return self.status in (WorkflowStatus.SUCCEEDED, WorkflowStatus.UP_TO_DATE)


class StatusReport(BaseModel):
    """Read-only snapshot of the deployment."""

    installed_version: str | None = None
    binary_present: bool = False
    definition_present: bool = False
    port: int | None = None
    mask_domain: str = ""
    active: bool = False
    port_listening: bool | None = None
    service_status: str = ""
    logs: str = ""


class LifecycleOrchestrator:
    """
    Runs the install / upgrade / repair / restart / stop / uninstall workflows.

    Callers are expected to hold the InstanceLock for every mutating
    workflow; the orchestrator itself is strictly sequential.

    Attributes:
        state: Current state of the running (or last) workflow.
        history: States visited by the running (or last) workflow.
    """

    def __init__(
        self,
        resolver: VersionResolver,
        installer: AtomicInstaller,
        rollback_manager: RollbackManager,
        store: ConfigStore,
        version_record: InstalledVersionRecord,
        controller: ServiceController,
        health_checker: HealthChecker,
        *,
        health_attempts: int = 5,
        health_interval: float = 1.0,
        backup_retention: int = 3,
    ) -> None:
        self.resolver = resolver
        self.installer = installer
        self.rollback_manager = rollback_manager
        self.store = store
        self.version_record = version_record
        self.controller = controller
        self.health_checker = health_checker
        self.health_attempts = health_attempts
        self.health_interval = health_interval
        self.backup_retention = backup_retention

        self._workflow = ""
        self._state = WorkflowState.IDLE
        self.history: list[WorkflowState] = []

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        controller: ServiceController | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        port_probe: PortProbe | None = None,
        arch: str | None = None,
    ) -> LifecycleOrchestrator:
        """Wire all components from application configuration."""
        from anytlsctl.lifecycle.fetcher import ArtifactFetcher

        controller = controller or SystemdServiceController.from_config(config)
        fetcher = ArtifactFetcher.from_config(config.release, transport=transport)
        return cls(
            resolver=VersionResolver.from_config(config.release, transport=transport),
            installer=AtomicInstaller.from_config(config, fetcher=fetcher, arch=arch),
            rollback_manager=RollbackManager(config.paths.binary_path),
            store=ConfigStore(config.paths.env_path),
            version_record=InstalledVersionRecord(config.paths.version_path),
            controller=controller,
            health_checker=HealthChecker(controller, port_probe=port_probe),
            health_attempts=config.health.attempts,
            health_interval=config.health.interval_seconds,
            backup_retention=config.backups.retention,
        )

    @property
    def state(self) -> WorkflowState:
        """Current state."""
        return self._state

    @property
    def binary_path(self) -> Path:
        """Installed binary path."""
        return self.installer.target

    def is_installed(self) -> bool:
        """True if a binary or a service definition is present."""
        return self.binary_path.exists() or self.controller.has_definition()

    # ------------------------------------------------------------------
    # State handling
    # ------------------------------------------------------------------

    def _begin(self, workflow: str) -> None:
        self._workflow = workflow
        self._state = WorkflowState.IDLE
        self.history = [WorkflowState.IDLE]
        logger.info(f"Starting workflow: {workflow}", extra={"workflow": workflow})

    def _transition_to(
        self,
        new_state: WorkflowState,
        *,
        target_version: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """
        Move to *new_state*.

        Raises:
            InvalidArgumentError: If the transition is not valid.
        """
        current = self._state
        if new_state not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidArgumentError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                    "valid_transitions": sorted(
                        s.value for s in _VALID_TRANSITIONS.get(current, set())
                    ),
                },
            )

        logger.info(
            f"State transition: {current.value} -> {new_state.value}",
            extra={
                "workflow": self._workflow,
                "old_state": current.value,
                "new_state": new_state.value,
                "target_version": target_version,
                "error_message": error_message,
            },
        )
        self._state = new_state
        self.history.append(new_state)

    def _fail(
        self,
        error: LifecycleError,
        *,
        old_version: str | None = None,
        new_version: str | None = None,
        message: str | None = None,
    ) -> WorkflowResult:
        """Abort without rollback."""
        self._transition_to(WorkflowState.FAILED, error_message=error.message)
        logger.error(
            f"Workflow {self._workflow} failed: {error.message}",
            extra={"error_code": error.error_code},
        )
        return WorkflowResult(
            workflow=self._workflow,
            status=WorkflowStatus.FAILED,
            state=self._state,
            old_version=old_version,
            new_version=new_version,
            message=message or error.message,
            error_code=error.error_code,
            details=error.details,
        )

    async def _stop_quietly(self) -> None:
        try:
            await self.controller.stop()
        except LifecycleError as e:
            logger.error(f"Failed to stop service: {e.message}")

    async def _start_quietly(self) -> None:
        try:
            await self.controller.start()
        except LifecycleError as e:
            logger.error(f"Failed to start service: {e.message}")

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _resolve(self) -> str:
        self._transition_to(WorkflowState.RESOLVING_VERSION)
        return await self.resolver.resolve_latest()

    async def _swap_binary(self, tag: str, *, stop_first: bool) -> str:
        """
        Run the INSTALLING step.

        With *stop_first* the service is stopped once the new artifact has
        been validated, right before the binary is replaced. Callers start
        it again if this step fails.
        """
        self._transition_to(WorkflowState.INSTALLING, target_version=tag)
        try:
            return await self.installer.install_atomically(
                tag, before_replace=self.controller.stop if stop_first else None
            )
        except OSError as e:
            raise InstallError(
                f"Filesystem error while installing {tag}: {e}",
                details={"error": str(e)},
            ) from e

    async def _start_and_verify(self, config: ServiceConfig) -> None:
        """Run the STARTING and HEALTH_CHECKING steps."""
        self._transition_to(WorkflowState.STARTING)
        await self.controller.restart()
        self._transition_to(WorkflowState.HEALTH_CHECKING)
        await self.health_checker.wait_until_healthy(
            config, attempts=self.health_attempts, interval=self.health_interval
        )

    async def _roll_back(
        self,
        failure: LifecycleError,
        *,
        backup: str,
        old_version: str | None,
        new_version: str,
        config_snapshot: str | None = None,
        restore_config: bool = False,
    ) -> WorkflowResult:
        """
        Restore the previous binary after a post-swap failure.

        Ends in ROLLED_BACK if the old binary comes back healthy, otherwise
        in FAILED with the service stopped.
        """
        self._transition_to(WorkflowState.ROLLING_BACK, error_message=failure.message)
        logger.warning(
            f"{self._workflow} failed after the binary swap ({failure.message}); rolling back",
            extra={"backup": backup or None, "error_code": failure.error_code},
        )

        base = WorkflowResult(
            workflow=self._workflow,
            status=WorkflowStatus.FAILED,
            old_version=old_version,
            new_version=new_version,
            backup_path=backup or None,
            error_code=failure.error_code,
            details=failure.details,
        )

        outcome = self.rollback_manager.rollback(backup)
        if restore_config:
            self.store.restore(config_snapshot)

        if not outcome.restored:
            await self._stop_quietly()
            self._transition_to(WorkflowState.FAILED, error_message=outcome.message)
            return base.model_copy(
                update={
                    "state": self._state,
                    "message": f"{failure.message}. {outcome.message}; service stopped.",
                }
            )

        try:
            restored_config = self.store.read()
            await self.controller.restart()
            await self.health_checker.wait_until_healthy(
                restored_config,
                attempts=self.health_attempts,
                interval=self.health_interval,
            )
        except LifecycleError as e:
            await self._stop_quietly()
            self._transition_to(WorkflowState.FAILED, error_message=e.message)
            return base.model_copy(
                update={
                    "state": self._state,
                    "message": (
                        f"{failure.message}. Binary restored but the service did not "
                        f"recover ({e.message}); service stopped."
                    ),
                }
            )

        self._transition_to(WorkflowState.ROLLED_BACK)
        return base.model_copy(
            update={
                "status": WorkflowStatus.ROLLED_BACK,
                "state": self._state,
                "message": (
                    f"{failure.message}. Rolled back to the previous binary "
                    f"({old_version or 'unknown version'}); {new_version} was not applied."
                ),
            }
        )

    def _commit(self, tag: str, backup: str, old_version: str | None) -> WorkflowResult:
        self.version_record.write(tag)
        prune_backups(self.binary_path, self.backup_retention)
        self._transition_to(WorkflowState.COMMITTED, target_version=tag)
        return WorkflowResult(
            workflow=self._workflow,
            status=WorkflowStatus.SUCCEEDED,
            state=self._state,
            old_version=old_version,
            new_version=tag,
            backup_path=backup or None,
            message=(
                f"Upgraded {old_version} -> {tag}"
                if old_version and old_version != tag
                else f"Installed {tag}"
            ),
        )

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def install(self, config: ServiceConfig) -> WorkflowResult:
        """
        Install (or reinstall) the latest release with *config*.

        On an existing deployment this is a full reinstall: the service is
        stopped right before the binary is replaced.
        """
        self._begin("install")
        old_version = self.version_record.read()
        reinstall = self.is_installed()

        try:
            tag = await self._resolve()
        except LifecycleError as e:
            return self._fail(
                e,
                old_version=old_version,
                message=f"{e.message}. Install aborted; nothing was changed.",
            )

        try:
            backup = await self._swap_binary(tag, stop_first=reinstall)
        except LifecycleError as e:
            if reinstall:
                await self._start_quietly()
            return self._fail(
                e,
                old_version=old_version,
                new_version=tag,
                message=f"{e.message}. Install aborted; the installed binary is unchanged.",
            )

        snapshot = self.store.snapshot()
        self._transition_to(WorkflowState.CONFIGURING_SERVICE)
        try:
            self.store.write(config)
            await self.controller.write_definition(config)
            await self.controller.enable()
            await self._start_and_verify(config)
        except (LifecycleError, OSError) as e:
            failure = e if isinstance(e, LifecycleError) else InstallError(
                f"Filesystem error while configuring the service: {e}"
            )
            return await self._roll_back(
                failure,
                backup=backup,
                old_version=old_version,
                new_version=tag,
                config_snapshot=snapshot,
                restore_config=True,
            )

        return self._commit(tag, backup, old_version)

    async def check_update(self) -> WorkflowResult:
        """Compare the installed version with the latest release (read-only)."""
        current = self.version_record.read()
        try:
            latest = await self.resolver.resolve_latest()
        except LifecycleError as e:
            return WorkflowResult(
                workflow="check-update",
                status=WorkflowStatus.FAILED,
                state=WorkflowState.FAILED,
                old_version=current,
                message=e.message,
                error_code=e.error_code,
            )

        up_to_date = current is not None and compare_tags(current, latest) == 0
        return WorkflowResult(
            workflow="check-update",
            status=WorkflowStatus.UP_TO_DATE if up_to_date else WorkflowStatus.SUCCEEDED,
            state=WorkflowState.UP_TO_DATE if up_to_date else WorkflowState.IDLE,
            old_version=current,
            new_version=latest,
            message=(
                f"Already at the latest version ({latest})"
                if up_to_date
                else f"Update available: {current or 'unknown'} -> {latest}"
            ),
            details={"update_available": not up_to_date},
        )

    async def upgrade(self, *, reinstall: bool = False) -> WorkflowResult:
        """
        Upgrade an existing deployment to the latest release.

        The live binary is swapped and the service restarted afterwards;
        with *reinstall* the service is stopped first. The Configuration
        Store is never modified.
        """
        self._begin("upgrade")
        if not (self.binary_path.exists() and self.controller.has_definition()):
            return self._fail(
                FailedPreconditionError(
                    "AnyTLS is not installed; run install first",
                    details={"binary": str(self.binary_path)},
                )
            )

        old_version = self.version_record.read()
        try:
            config = self.store.read()
        except LifecycleError as e:
            return self._fail(e, old_version=old_version)

        try:
            tag = await self._resolve()
        except LifecycleError as e:
            return self._fail(
                e,
                old_version=old_version,
                message=f"{e.message}. Upgrade aborted; nothing was changed.",
            )

        if old_version is not None and compare_tags(old_version, tag) == 0:
            self._transition_to(WorkflowState.UP_TO_DATE, target_version=tag)
            return WorkflowResult(
                workflow=self._workflow,
                status=WorkflowStatus.UP_TO_DATE,
                state=self._state,
                old_version=old_version,
                new_version=tag,
                message=f"Already at the latest version ({tag})",
            )

        try:
            backup = await self._swap_binary(tag, stop_first=reinstall)
        except LifecycleError as e:
            if reinstall:
                await self._start_quietly()
            return self._fail(
                e,
                old_version=old_version,
                new_version=tag,
                message=f"{e.message}. Upgrade aborted; the installed binary is unchanged.",
            )

        try:
            await self._start_and_verify(config)
        except LifecycleError as e:
            return await self._roll_back(
                e, backup=backup, old_version=old_version, new_version=tag
            )

        return self._commit(tag, backup, old_version)

    async def repair(self) -> WorkflowResult:
        """
        Rewrite the Configuration Store and unit from the stored settings,
        then restart and health-check. Nothing is downloaded.
        """
        self._begin("repair")
        if not self.binary_path.exists():
            return self._fail(
                FailedPreconditionError(
                    "No installed binary to repair; run install first",
                    details={"binary": str(self.binary_path)},
                )
            )

        version = self.version_record.read()
        try:
            config = self.store.read()
            self._transition_to(WorkflowState.CONFIGURING_SERVICE)
            self.store.write(config)
            await self.controller.write_definition(config)
            await self.controller.enable()
            await self._start_and_verify(config)
        except LifecycleError as e:
            return self._fail(e, old_version=version)

        self._transition_to(WorkflowState.COMMITTED)
        return WorkflowResult(
            workflow=self._workflow,
            status=WorkflowStatus.SUCCEEDED,
            state=self._state,
            old_version=version,
            new_version=version,
            message="Service definition and settings rewritten; service healthy",
        )

    async def restart(self) -> WorkflowResult:
        """Restart the service and report the health check."""
        try:
            config = self.store.read()
            await self.controller.restart()
            result = await self.health_checker.wait_until_healthy(
                config, attempts=self.health_attempts, interval=self.health_interval
            )
        except LifecycleError as e:
            return WorkflowResult(
                workflow="restart",
                status=WorkflowStatus.FAILED,
                state=WorkflowState.FAILED,
                message=e.message,
                error_code=e.error_code,
                details=e.details,
            )
        return WorkflowResult(
            workflow="restart",
            status=WorkflowStatus.SUCCEEDED,
            message=f"Service restarted. {result.message}",
        )

    async def stop(self) -> WorkflowResult:
        """Stop the service."""
        try:
            await self.controller.stop()
            still_active = await self.controller.is_active()
        except LifecycleError as e:
            return WorkflowResult(
                workflow="stop",
                status=WorkflowStatus.FAILED,
                message=e.message,
                error_code=e.error_code,
            )
        if still_active:
            return WorkflowResult(
                workflow="stop",
                status=WorkflowStatus.FAILED,
                message="Service is still active after stop",
            )
        return WorkflowResult(
            workflow="stop", status=WorkflowStatus.SUCCEEDED, message="Service stopped"
        )

    async def uninstall(self, *, confirmed: bool) -> WorkflowResult:
        """
        Remove the deployment: stop, disable, delete the unit, the
        Configuration Store, InstalledVersion, the binary and its backups,
        then reset the supervisor's failure counters. Irreversible.
        """
        if not confirmed:
            return WorkflowResult(
                workflow="uninstall",
                status=WorkflowStatus.CANCELLED,
                message="Uninstall not confirmed; nothing was changed",
            )

        version = self.version_record.read()
        try:
            await self.controller.stop()
            await self.controller.disable()
            await self.controller.remove_definition()
        except LifecycleError as e:
            return WorkflowResult(
                workflow="uninstall",
                status=WorkflowStatus.FAILED,
                old_version=version,
                message=e.message,
                error_code=e.error_code,
            )

        self.store.delete()
        self.version_record.clear()
        for backup in list_backups(self.binary_path):
            backup.unlink(missing_ok=True)
        self.binary_path.unlink(missing_ok=True)
        # Binary, settings, version record and backups share this directory
        safe_remove_directory(self.binary_path.parent)

        try:
            await self.controller.reset_failed()
        except LifecycleError as e:
            logger.warning(f"Could not reset failure counters: {e.message}")

        return WorkflowResult(
            workflow="uninstall",
            status=WorkflowStatus.SUCCEEDED,
            old_version=version,
            message="AnyTLS uninstalled and its configuration removed",
        )

    async def status(self, *, log_lines: int = 80) -> StatusReport:
        """Collect a read-only status report."""
        report = StatusReport(
            installed_version=self.version_record.read(),
            binary_present=self.binary_path.exists(),
            definition_present=self.controller.has_definition(),
        )
        try:
            config = self.store.read()
            report.port = config.port
            report.mask_domain = config.mask_domain
        except LifecycleError as e:
            logger.warning(f"Cannot read stored settings: {e.message}")
            config = None

        try:
            report.active = await self.controller.is_active()
            report.service_status = await self.controller.status()
        except LifecycleError as e:
            report.service_status = e.message

        if config is not None:
            try:
                report.port_listening = (
                    await self.health_checker.check_port_listening(config.port)
                ).passed
            except HealthCheckFailure as e:
                logger.warning(e.message)

        report.logs = await self.controller.logs(log_lines)
        return report
