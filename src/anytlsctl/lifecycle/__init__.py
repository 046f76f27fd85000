"""
Lifecycle management for the AnyTLS server.

This package provides:
- Version resolution and the InstalledVersion record
- Artifact download, extraction and atomic installation
- Binary backups and rollback
- The Configuration Store and the systemd service controller
- Health checks and the host-wide instance lock
- The LifecycleOrchestrator that sequences them into workflows
"""

from anytlsctl.lifecycle.health_check import HealthChecker, HealthCheckResult
from anytlsctl.lifecycle.installer import AtomicInstaller
from anytlsctl.lifecycle.lock import InstanceLock
from anytlsctl.lifecycle.resolver import VersionResolver
from anytlsctl.lifecycle.rollback import RollbackManager, RollbackResult
from anytlsctl.lifecycle.state_machine import (
    LifecycleOrchestrator,
    StatusReport,
    WorkflowResult,
    WorkflowState,
    WorkflowStatus,
)
from anytlsctl.lifecycle.store import ConfigStore, ServiceConfig
from anytlsctl.lifecycle.systemd import ServiceController, SystemdServiceController
from anytlsctl.lifecycle.version import InstalledVersionRecord

__all__ = [
    "AtomicInstaller",
    "ConfigStore",
    "HealthCheckResult",
    "HealthChecker",
    "InstalledVersionRecord",
    "InstanceLock",
    "LifecycleOrchestrator",
    "RollbackManager",
    "RollbackResult",
    "ServiceConfig",
    "ServiceController",
    "StatusReport",
    "SystemdServiceController",
    "VersionResolver",
    "WorkflowResult",
    "WorkflowState",
    "WorkflowStatus",
]
