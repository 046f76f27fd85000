"""
Tests for release artifact download.

Tests cover:
- Architecture detection
- Asset name and URL construction
- Successful download into a private file
- Retry on transient failures, immediate failure on client errors
- Exhausted retries and non-transport httpx errors
"""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from anytlsctl.config import ReleaseConfig
from anytlsctl.errors import DownloadError, FailedPreconditionError
from anytlsctl.lifecycle.fetcher import ArtifactFetcher, detect_arch

# =============================================================================
# detect_arch Tests
# =============================================================================


class TestDetectArch:
    """Tests for detect_arch."""

    @pytest.mark.parametrize(
        ("machine", "expected"),
        [("x86_64", "amd64"), ("AMD64", "amd64"), ("aarch64", "arm64"), ("arm64", "arm64")],
    )
    def test_supported(self, machine: str, expected: str) -> None:
        """Known machine names map to release architectures."""
        assert detect_arch(machine) == expected

    def test_unsupported(self) -> None:
        """Other architectures fail before anything is mutated."""
        with pytest.raises(FailedPreconditionError) as exc_info:
            detect_arch("armv7l")

        assert exc_info.value.details["machine"] == "armv7l"


# =============================================================================
# ArtifactFetcher Tests
# =============================================================================


def _fetcher(handler, retries: int = 2) -> ArtifactFetcher:
    return ArtifactFetcher(
        "anytls/anytls-go",
        retries=retries,
        retry_delay=0,
        transport=httpx.MockTransport(handler),
    )


class TestArtifactNames:
    """Tests for asset naming."""

    def test_asset_name_strips_v(self) -> None:
        """The version number inside the asset name has no leading 'v'."""
        fetcher = ArtifactFetcher("anytls/anytls-go")

        assert fetcher.asset_name("v0.0.8", "amd64") == "anytls_0.0.8_linux_amd64.zip"

    def test_download_url(self) -> None:
        """The URL keeps the tag as-is in the path."""
        fetcher = ArtifactFetcher.from_config(ReleaseConfig())

        assert fetcher.download_url("v0.0.8", "arm64") == (
            "https://github.com/anytls/anytls-go/releases/download/"
            "v0.0.8/anytls_0.0.8_linux_arm64.zip"
        )

    def test_from_config_policy(self) -> None:
        """Retry policy comes from configuration."""
        fetcher = ArtifactFetcher.from_config(ReleaseConfig(download_retries=5))

        assert fetcher.retries == 5
        assert fetcher.connect_timeout == 6
        assert fetcher.max_time == 60


class TestFetch:
    """Tests for ArtifactFetcher.fetch."""

    @pytest.mark.asyncio
    async def test_fetch_success(self, tmp_path: Path) -> None:
        """The archive lands in a new file inside dest_dir."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"PK-archive")

        path = await _fetcher(handler).fetch("v1.2.0", "amd64", tmp_path)

        assert path.parent == tmp_path
        assert path.read_bytes() == b"PK-archive"
        assert path.name.startswith("artifact-")

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, tmp_path: Path) -> None:
        """5xx and 429 responses are retried."""
        responses = [503, 429, 200]

        def handler(request: httpx.Request) -> httpx.Response:
            status = responses.pop(0)
            return httpx.Response(status, content=b"data" if status == 200 else b"")

        path = await _fetcher(handler, retries=2).fetch("v1.2.0", "amd64", tmp_path)

        assert path.read_bytes() == b"data"
        assert responses == []

    @pytest.mark.asyncio
    async def test_retries_transport_errors(self, tmp_path: Path) -> None:
        """Connection failures are retried."""
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, content=b"ok")

        path = await _fetcher(handler).fetch("v1.2.0", "amd64", tmp_path)

        assert path.read_bytes() == b"ok"
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_client_error_fails_immediately(self, tmp_path: Path) -> None:
        """A 404 is not retried and leaves no file behind."""
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(404)

        with pytest.raises(DownloadError) as exc_info:
            await _fetcher(handler).fetch("v9.9.9", "amd64", tmp_path)

        assert calls["n"] == 1
        assert exc_info.value.details["status_code"] == 404
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, tmp_path: Path) -> None:
        """After retries+1 attempts the download fails."""
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(500)

        with pytest.raises(DownloadError) as exc_info:
            await _fetcher(handler, retries=3).fetch("v1.2.0", "amd64", tmp_path)

        assert calls["n"] == 4
        assert exc_info.value.details["attempts"] == 4
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_redirect_loop_is_a_download_error(self, tmp_path: Path) -> None:
        """Non-transport httpx errors surface as DownloadError, not retried."""
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(302, headers={"Location": str(request.url)})

        with pytest.raises(DownloadError) as exc_info:
            await _fetcher(handler).fetch("v1.2.0", "amd64", tmp_path)

        assert "redirect" in exc_info.value.message.lower()
        assert calls["n"] <= 21
        assert list(tmp_path.iterdir()) == []

