"""
Pytest configuration for the AnyTLS lifecycle manager tests.

Provides an in-memory ServiceController, a fake release server built on
httpx.MockTransport, and an AppConfig rooted in a temporary directory.
"""

from __future__ import annotations

import io
import json
import zipfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from anytlsctl.config import AppConfig
from anytlsctl.errors import ServiceStartError
from anytlsctl.lifecycle.state_machine import LifecycleOrchestrator
from anytlsctl.lifecycle.store import ServiceConfig
from anytlsctl.lifecycle.systemd import ServiceController

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]

BROKEN_BINARY = b"#!/bin/sh\n# broken build\n"


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# Fake service supervisor
# =============================================================================


class FakeServiceController(ServiceController):
    """
    In-memory ServiceController.

    restart()/start() make the service active unless a failure was queued
    with fail_next_start(). Every call is appended to `calls`.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.active = False
        self.enabled = False
        self.definition: ServiceConfig | None = None
        self.start_failures: list[str] = []

    def fail_next_start(self, message: str = "start refused") -> None:
        self.start_failures.append(message)

    async def write_definition(self, config: ServiceConfig) -> bool:
        self.calls.append("write_definition")
        changed = self.definition != config
        self.definition = config
        return changed

    def has_definition(self) -> bool:
        return self.definition is not None

    async def remove_definition(self) -> bool:
        self.calls.append("remove_definition")
        existed = self.definition is not None
        self.definition = None
        return existed

    async def enable(self) -> None:
        self.calls.append("enable")
        self.enabled = True

    async def disable(self) -> None:
        self.calls.append("disable")
        self.enabled = False

    async def _start(self, action: str) -> None:
        self.calls.append(action)
        if self.start_failures:
            self.active = False
            raise ServiceStartError(self.start_failures.pop(0))
        self.active = True

    async def start(self) -> None:
        await self._start("start")

    async def restart(self) -> None:
        await self._start("restart")

    async def stop(self) -> None:
        self.calls.append("stop")
        self.active = False

    async def is_active(self) -> bool:
        return self.active

    async def status(self) -> str:
        return "active (running)" if self.active else "inactive (dead)"

    async def reset_failed(self) -> None:
        self.calls.append("reset_failed")

    async def logs(self, lines: int = 80) -> str:
        return f"last {lines} lines"


# =============================================================================
# Fake release server
# =============================================================================


def make_release_zip(
    content: bytes = b"#!/bin/sh\necho anytls\n",
    executable_name: str = "anytls-server",
    extra: dict[str, bytes] | None = None,
) -> bytes:
    """Build a release archive in memory."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        if executable_name:
            zf.writestr(executable_name, content)
        for name, data in (extra or {}).items():
            zf.writestr(name, data)
    return buffer.getvalue()


class FakeReleaseServer:
    """
    Serves release metadata, the latest-release redirect and archives.

    Attributes:
        latest: Tag reported as latest (None makes both lookups fail).
        archives: Archive bytes keyed by tag.
        download_status: Status codes returned for downloads, consumed in
            order before the archive is served.
        requests: Every request URL seen.
    """

    def __init__(self, latest: str | None = "v1.2.0") -> None:
        self.latest = latest
        self.archives: dict[str, bytes] = {}
        self.download_status: list[int] = []
        self.metadata_status = 200
        self.requests: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        path = request.url.path

        if path.endswith("/releases/latest") and request.url.host == "api.github.com":
            if self.latest is None or self.metadata_status != 200:
                return httpx.Response(self.metadata_status if self.latest else 404)
            return httpx.Response(200, content=json.dumps({"tag_name": self.latest}))

        if path.endswith("/releases/latest"):
            if self.latest is None:
                return httpx.Response(404)
            return httpx.Response(
                302,
                headers={"Location": f"https://github.com/anytls/anytls-go/releases/tag/{self.latest}"},
            )

        if "/releases/tag/" in path:
            return httpx.Response(200, text="release page")

        if "/releases/download/" in path:
            if self.download_status:
                return httpx.Response(self.download_status.pop(0))
            tag = path.split("/releases/download/")[1].split("/")[0]
            if tag not in self.archives:
                return httpx.Response(404)
            return httpx.Response(200, content=self.archives[tag])

        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_controller() -> FakeServiceController:
    """In-memory service controller."""
    return FakeServiceController()


@pytest.fixture
def release_server() -> FakeReleaseServer:
    """Release server reporting v1.2.0 as latest."""
    server = FakeReleaseServer("v1.2.0")
    server.archives["v1.2.0"] = make_release_zip(b"#!/bin/sh\n# v1.2.0\n")
    return server


@pytest.fixture
def release_zip() -> Callable[..., bytes]:
    """Factory for in-memory release archives."""
    return make_release_zip


@pytest.fixture
def broken_release() -> bytes:
    """Archive whose binary never opens its port under make_orchestrator."""
    return make_release_zip(BROKEN_BINARY)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """AppConfig with every managed path under tmp_path and no waiting."""
    return AppConfig(
        paths={
            "config_dir": str(tmp_path / "AnyTLS"),
            "unit_dir": str(tmp_path / "systemd"),
            "lock_file": str(tmp_path / "lock" / "anytls_manager.lock"),
        },
        release={"retry_delay_seconds": 0, "download_retries": 1},
        health={"attempts": 2, "interval_seconds": 0},
    )


@pytest.fixture
def make_orchestrator(
    app_config: AppConfig,
    fake_controller: FakeServiceController,
    release_server: FakeReleaseServer,
) -> Callable[..., LifecycleOrchestrator]:
    """
    Build an orchestrator over the fakes.

    The default port probe reports "listening" while the service is active
    and the installed binary is not BROKEN_BINARY.
    """
    binary = app_config.paths.binary_path

    def default_probe(port: int) -> bool:
        return (
            fake_controller.active
            and binary.exists()
            and binary.read_bytes() != BROKEN_BINARY
        )

    def factory(**kwargs: Any) -> LifecycleOrchestrator:
        return LifecycleOrchestrator.from_config(
            app_config,
            controller=fake_controller,
            transport=release_server.transport,
            port_probe=kwargs.get("port_probe", default_probe),
            arch="amd64",
        )

    return factory
