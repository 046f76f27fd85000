"""
Release artifact download.

The download URL is built deterministically from the release tag and the CPU
architecture. Each attempt has a connect timeout and a total time ceiling;
transient failures are retried a bounded number of times with a fixed delay.
The archive is written to an unpredictable file inside a caller-supplied
directory.
"""

from __future__ import annotations

import asyncio
import os
import platform
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from anytlsctl.errors import DownloadError, FailedPreconditionError
from anytlsctl.lifecycle.version import version_number
from anytlsctl.logging import get_logger

if TYPE_CHECKING:
    from anytlsctl.config import ReleaseConfig

logger = get_logger(__name__)

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}

_CHUNK_SIZE = 64 * 1024


def detect_arch(machine: str | None = None) -> str:
    """
    Map the host CPU to a release architecture name.

    Args:
        machine: Override for platform.machine() (used by tests).

    Raises:
        FailedPreconditionError: If the architecture has no release build.
    """
    raw = (machine if machine is not None else platform.machine()).lower()
    arch = _ARCH_ALIASES.get(raw)
    if arch is None:
        raise FailedPreconditionError(
            f"Unsupported architecture: {raw} (only amd64/arm64 are released)",
            details={"machine": raw, "supported": sorted(set(_ARCH_ALIASES.values()))},
        )
    return arch


class _RetryableError(Exception):
    """An attempt failed in a way worth retrying."""


def _describe(error: BaseException | None) -> str:
    if error is None:
        return "unknown error"
    return str(error) or error.__class__.__name__


class ArtifactFetcher:
    """
    Downloads versioned release archives.

    Attributes:
        project: Project in owner/name form.
        web_base: Base URL for release downloads.
        asset_template: Archive name template.
        retries: Retries after the first attempt.
        retry_delay: Fixed delay between attempts, in seconds.
        connect_timeout: Connect timeout per attempt, in seconds.
        max_time: Total ceiling per attempt, in seconds.
    """

    def __init__(
        self,
        project: str,
        web_base: str = "https://github.com",
        asset_template: str = "anytls_{version_number}_linux_{arch}.zip",
        retries: int = 3,
        retry_delay: float = 1.0,
        connect_timeout: float = 6.0,
        max_time: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.project = project
        self.web_base = web_base.rstrip("/")
        self.asset_template = asset_template
        self.retries = retries
        self.retry_delay = retry_delay
        self.connect_timeout = connect_timeout
        self.max_time = max_time
        self._transport = transport

    @classmethod
    def from_config(
        cls,
        config: ReleaseConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ArtifactFetcher:
        """Create a fetcher from release configuration."""
        return cls(
            project=config.project,
            web_base=config.web_base,
            asset_template=config.asset_template,
            retries=config.download_retries,
            retry_delay=config.retry_delay_seconds,
            connect_timeout=config.connect_timeout_seconds,
            max_time=config.max_download_seconds,
            transport=transport,
        )

    def asset_name(self, version: str, arch: str) -> str:
        """Return the archive file name for *version* and *arch*."""
        return self.asset_template.format(
            version=version,
            version_number=version_number(version),
            arch=arch,
        )

    def download_url(self, version: str, arch: str) -> str:
        """Return the download URL for *version* and *arch*."""
        return (
            f"{self.web_base}/{self.project}/releases/download/"
            f"{version}/{self.asset_name(version, arch)}"
        )

    async def _attempt(self, url: str, dest: Path) -> None:
        timeout = httpx.Timeout(self.max_time, connect=self.connect_timeout)
        async with httpx.AsyncClient(
            timeout=timeout,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            async with client.stream("GET", url) as response:
                if response.status_code == 429 or response.status_code >= 500:
                    raise _RetryableError(f"HTTP {response.status_code}")
                if response.status_code >= 400:
                    raise DownloadError(
                        f"Download failed with HTTP {response.status_code}: {url}",
                        details={"url": url, "status_code": response.status_code},
                    )
                with open(dest, "wb") as f:
                    async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                        f.write(chunk)

    async def _attempt_with_timeout(self, url: str, dest: Path) -> None:
        await asyncio.wait_for(self._attempt(url, dest), timeout=self.max_time)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"Download attempt {retry_state.attempt_number}/{self.retries + 1} "
            f"failed: {_describe(error)}",
            extra={"url": retry_state.args[0] if retry_state.args else None},
        )

    async def fetch(self, version: str, arch: str, dest_dir: Path) -> Path:
        """
        Download the archive for *version* and *arch* into *dest_dir*.

        Args:
            version: Release tag.
            arch: Release architecture ("amd64" or "arm64").
            dest_dir: Private directory to write the archive into.

        Returns:
            Path of the downloaded archive.

        Raises:
            DownloadError: If every attempt failed or the server rejected
                the request outright.
        """
        url = self.download_url(version, arch)
        fd, name = tempfile.mkstemp(prefix="artifact-", suffix=".zip", dir=dest_dir)
        os.close(fd)
        dest = Path(name)

        attempts = self.retries + 1
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type(
                (_RetryableError, httpx.TransportError, TimeoutError)
            ),
            before_sleep=self._log_retry,
        )
        logger.info(
            "Downloading release artifact",
            extra={"url": url, "attempts": attempts},
        )
        try:
            await retrying(self._attempt_with_timeout, url, dest)
        except RetryError as e:
            dest.unlink(missing_ok=True)
            last_error = _describe(e.last_attempt.exception())
            raise DownloadError(
                f"Download failed after {attempts} attempts: {last_error}",
                details={"url": url, "attempts": attempts, "error": last_error},
            ) from e
        except DownloadError:
            dest.unlink(missing_ok=True)
            raise
        except httpx.HTTPError as e:
            dest.unlink(missing_ok=True)
            raise DownloadError(
                f"Download failed: {_describe(e)}",
                details={"url": url, "error": _describe(e)},
            ) from e

        logger.info(
            "Downloaded release artifact",
            extra={"url": url, "path": str(dest), "bytes": dest.stat().st_size},
        )
        return dest
