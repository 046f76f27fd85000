"""
Latest-release resolution.

The primary path asks the release-metadata API for the latest tag. If that
fails, or returns no usable tag, the fallback follows the "latest release"
web URL to its final redirect target and takes the last path segment, which
must be a strict vMAJOR.MINOR.PATCH tag.

Nothing is cached; every call is a fresh round trip with its own timeout.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from anytlsctl.errors import VersionResolutionError
from anytlsctl.lifecycle.version import is_safe_tag, is_strict_tag
from anytlsctl.logging import get_logger

if TYPE_CHECKING:
    from anytlsctl.config import ReleaseConfig

logger = get_logger(__name__)


class VersionResolver:
    """
    Resolves the latest release tag of a project.

    Attributes:
        project: Project in owner/name form.
        api_base: Base URL of the metadata API.
        web_base: Base URL of the web front end.
        api_timeout: Timeout for the metadata request, in seconds.
        fallback_timeout: Timeout for the redirect fallback, in seconds.
    """

    def __init__(
        self,
        project: str,
        api_base: str = "https://api.github.com",
        web_base: str = "https://github.com",
        api_timeout: float = 8.0,
        fallback_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the resolver.

        Args:
            project: Project in owner/name form.
            api_base: Base URL of the metadata API.
            web_base: Base URL of the web front end.
            api_timeout: Timeout for the metadata request.
            fallback_timeout: Timeout for the redirect fallback.
            transport: Optional httpx transport (used by tests).
        """
        self.project = project
        self.api_base = api_base.rstrip("/")
        self.web_base = web_base.rstrip("/")
        self.api_timeout = api_timeout
        self.fallback_timeout = fallback_timeout
        self._transport = transport

    @classmethod
    def from_config(
        cls,
        config: ReleaseConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> VersionResolver:
        """Create a resolver from release configuration."""
        return cls(
            project=config.project,
            api_base=config.api_base,
            web_base=config.web_base,
            api_timeout=config.api_timeout_seconds,
            fallback_timeout=config.fallback_timeout_seconds,
            transport=transport,
        )

    @property
    def metadata_url(self) -> str:
        """URL of the latest-release metadata document."""
        return f"{self.api_base}/repos/{self.project}/releases/latest"

    @property
    def latest_url(self) -> str:
        """Web URL that redirects to the latest release."""
        return f"{self.web_base}/{self.project}/releases/latest"

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout,
            transport=self._transport,
            follow_redirects=True,
            headers={"Accept": "application/vnd.github+json"},
        )

    async def _from_metadata(self) -> str | None:
        """Ask the metadata endpoint. Returns None on any failure."""
        try:
            async with self._client(self.api_timeout) as client:
                response = await client.get(self.metadata_url)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "Release metadata lookup failed",
                extra={"url": self.metadata_url, "error": str(e)},
            )
            return None

        tag = payload.get("tag_name") if isinstance(payload, dict) else None
        if not isinstance(tag, str) or not is_safe_tag(tag.strip()):
            logger.warning(
                "Release metadata carried no usable tag",
                extra={"url": self.metadata_url, "tag": tag},
            )
            return None
        return tag.strip()

    async def _from_redirect(self) -> str | None:
        """Follow the latest-release redirect. Returns None on any failure."""
        try:
            async with self._client(self.fallback_timeout) as client:
                response = await client.head(self.latest_url)
                final_url = response.url
        except httpx.HTTPError as e:
            logger.warning(
                "Latest-release redirect lookup failed",
                extra={"url": self.latest_url, "error": str(e)},
            )
            return None

        tag = final_url.path.rstrip("/").rsplit("/", 1)[-1]
        if not is_strict_tag(tag):
            logger.warning(
                "Redirect target does not end in a version tag",
                extra={"url": str(final_url), "candidate": tag},
            )
            return None
        return tag

    async def resolve_latest(self) -> str:
        """
        Resolve the latest release tag.

        Returns:
            The release tag, e.g. "v0.0.8".

        Raises:
            VersionResolutionError: If both the metadata lookup and the
                redirect fallback fail.
        """
        tag = await self._from_metadata()
        if tag is not None:
            logger.info("Resolved latest release", extra={"tag": tag, "source": "api"})
            return tag

        tag = await self._from_redirect()
        if tag is not None:
            logger.info(
                "Resolved latest release", extra={"tag": tag, "source": "redirect"}
            )
            return tag

        raise VersionResolutionError(
            f"Could not determine the latest release of {self.project} "
            "(metadata API and redirect fallback both failed)",
            details={
                "metadata_url": self.metadata_url,
                "fallback_url": self.latest_url,
            },
        )
