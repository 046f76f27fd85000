"""
Health checks for the managed service.

The health check is composite and ordered; the first failure short-circuits:
1. The service controller reports the process active
2. The configured TCP port is in the LISTEN state

Both must pass for the service to count as healthy.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import psutil
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from anytlsctl.errors import HealthCheckFailure
from anytlsctl.lifecycle.store import ServiceConfig
from anytlsctl.lifecycle.systemd import ServiceController
from anytlsctl.logging import get_logger

logger = get_logger(__name__)

PortProbe = Callable[[int], bool]


class HealthCheckResult:
    """Result of a health check."""

    def __init__(
        self,
        name: str,
        passed: bool,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize the health check result.

        Args:
            name: Name of the health check.
            passed: Whether the check passed.
            message: Optional message describing the result.
            details: Optional additional details.
        """
        self.name = name
        self.passed = passed
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "passed": self.passed,
            "message": self.message,
            "details": self.details,
        }


def is_port_listening(port: int) -> bool:
    """
    Return True if any local TCP socket listens on *port*.

    Raises:
        HealthCheckFailure: If sockets cannot be inspected on this host.
    """
    try:
        connections = psutil.net_connections(kind="tcp")
    except psutil.AccessDenied as e:
        raise HealthCheckFailure(
            "port_inspection_unavailable",
            f"Cannot inspect listening sockets: {e}",
            details={"port": port},
        ) from e

    return any(
        conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port
        for conn in connections
    )


class HealthChecker:
    """
    Composite liveness check: process active AND port listening.

    Attributes:
        controller: Service controller to query for process state.
    """

    def __init__(
        self,
        controller: ServiceController,
        port_probe: PortProbe | None = None,
    ) -> None:
        """
        Initialize the health checker.

        Args:
            controller: Service controller to query.
            port_probe: Function answering "is this port listening?";
                defaults to a psutil socket scan.
        """
        self.controller = controller
        self._port_probe = port_probe or is_port_listening

    async def check_service_active(self) -> HealthCheckResult:
        """Check that the supervisor reports the process active."""
        active = await self.controller.is_active()
        return HealthCheckResult(
            name="service_active",
            passed=active,
            message="Service is active" if active else "Service is not running",
        )

    async def check_port_listening(self, port: int) -> HealthCheckResult:
        """Check that *port* is in the LISTEN state."""
        listening = self._port_probe(port)
        return HealthCheckResult(
            name="port_listening",
            passed=listening,
            message=(
                f"Port {port} is listening"
                if listening
                else f"No listener detected on port {port}"
            ),
            details={"port": port},
        )

    async def check(self, config: ServiceConfig) -> HealthCheckResult:
        """
        Run the ordered health checks.

        Returns:
            The passing result of the last check.

        Raises:
            HealthCheckFailure: Naming the first check that failed.
        """
        service = await self.check_service_active()
        if not service.passed:
            raise HealthCheckFailure("service_inactive", service.message or "")

        port = await self.check_port_listening(config.port)
        if not port.passed:
            raise HealthCheckFailure(
                "port_not_listening", port.message or "", details=port.details
            )

        logger.info("Health check passed", extra={"port": config.port})
        return HealthCheckResult(
            name="health",
            passed=True,
            message=f"Healthy (active, listening on {config.port})",
            details={"port": config.port},
        )

    async def wait_until_healthy(
        self,
        config: ServiceConfig,
        attempts: int = 5,
        interval: float = 1.0,
    ) -> HealthCheckResult:
        """
        Repeat check() until it passes or *attempts* are used up.

        Raises:
            HealthCheckFailure: From the last attempt.
        """

        def log_failure(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                f"Health check attempt {retry_state.attempt_number}/{attempts} "
                f"failed: {error}",
                extra={"reason": getattr(error, "reason", None)},
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(interval),
            retry=retry_if_exception_type(HealthCheckFailure),
            before_sleep=log_failure,
            reraise=True,
        )
        return await retrying(self.check, config)
