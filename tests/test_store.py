"""
Tests for the Configuration Store.

Tests cover:
- ServiceConfig validation
- build_service_config error mapping
- Write/read round trip, permissions and defaults
- Snapshot and restore
- Quoting of values for systemd EnvironmentFile=
"""

from __future__ import annotations

import stat
from pathlib import Path

import pytest

from anytlsctl.errors import InvalidArgumentError
from anytlsctl.lifecycle.store import (
    DEFAULT_CREDENTIAL,
    DEFAULT_PORT,
    ConfigStore,
    ServiceConfig,
    build_service_config,
    quote_env_value,
    sanitize_value,
    unquote_env_value,
)

# =============================================================================
# ServiceConfig Tests
# =============================================================================


class TestServiceConfig:
    """Tests for ServiceConfig validation."""

    def test_defaults(self) -> None:
        """Defaults are port 8443, credential 'password', no mask domain."""
        config = ServiceConfig()

        assert config.port == DEFAULT_PORT == 8443
        assert config.credential == DEFAULT_CREDENTIAL == "password"
        assert config.mask_domain == ""

    @pytest.mark.parametrize("port", [1, 443, 65535, "8443"])
    def test_valid_ports(self, port: int | str) -> None:
        """Ports in 1..65535 are accepted."""
        assert 1 <= build_service_config(port, "abc123").port <= 65535

    @pytest.mark.parametrize("port", [0, 65536, -1, "http"])
    def test_invalid_ports(self, port: int | str) -> None:
        """Out-of-range or non-numeric ports raise InvalidArgumentError."""
        with pytest.raises(InvalidArgumentError):
            build_service_config(port, "abc123")

    def test_empty_credential(self) -> None:
        """An empty credential is rejected."""
        with pytest.raises(InvalidArgumentError):
            build_service_config(8443, "")

    def test_credential_with_newline(self) -> None:
        """Newlines would break the KEY=VALUE file."""
        with pytest.raises(InvalidArgumentError) as exc_info:
            build_service_config(8443, "abc\nANYTLS_PORT=1")

        assert "control characters" in exc_info.value.message

    def test_mask_domain_with_space(self) -> None:
        """Whitespace in the mask domain is rejected."""
        with pytest.raises(InvalidArgumentError):
            build_service_config(8443, "abc123", "www.bing.com evil")

    def test_none_mask_domain_means_empty(self) -> None:
        """None becomes the empty mask domain."""
        assert build_service_config(8443, "abc123", None).mask_domain == ""

    def test_sanitize_value(self) -> None:
        """Control characters are stripped."""
        assert sanitize_value("a\r\nb\x00c") == "abc"


# =============================================================================
# ConfigStore Tests
# =============================================================================


class TestConfigStore:
    """Tests for ConfigStore."""

    def test_write_and_read(self, tmp_path: Path) -> None:
        """A written config reads back identically."""
        store = ConfigStore(tmp_path / "AnyTLS" / "anytls.env")
        config = ServiceConfig(port=8443, credential="abc123", mask_domain="www.bing.com")

        store.write(config)

        assert store.exists()
        assert store.read() == config
        assert store.path.read_text() == (
            'ANYTLS_PORT=8443\nANYTLS_PASS="abc123"\nANYTLS_SNI="www.bing.com"\n'
        )

    def test_owner_only_permissions(self, tmp_path: Path) -> None:
        """The file holding the credential is mode 0600."""
        store = ConfigStore(tmp_path / "anytls.env")
        store.write(ServiceConfig(credential="secret"))

        assert stat.S_IMODE(store.path.stat().st_mode) == 0o600

    def test_read_missing_file_defaults(self, tmp_path: Path) -> None:
        """No file reads as the defaults."""
        assert ConfigStore(tmp_path / "anytls.env").read() == ServiceConfig()

    def test_read_missing_keys_default(self, tmp_path: Path) -> None:
        """Missing or empty keys fall back individually."""
        path = tmp_path / "anytls.env"
        path.write_text("# comment\nANYTLS_PORT=\nANYTLS_PASS=xyz\n")

        config = ConfigStore(path).read()

        assert config.port == 8443
        assert config.credential == "xyz"
        assert config.mask_domain == ""

    def test_read_value_with_equals(self, tmp_path: Path) -> None:
        """Only the first '=' separates key and value."""
        path = tmp_path / "anytls.env"
        path.write_text("ANYTLS_PASS=a=b=c\n")

        assert ConfigStore(path).read().credential == "a=b=c"

    def test_read_invalid_port(self, tmp_path: Path) -> None:
        """A corrupt stored port raises InvalidArgumentError."""
        path = tmp_path / "anytls.env"
        path.write_text("ANYTLS_PORT=99999\n")

        with pytest.raises(InvalidArgumentError) as exc_info:
            ConfigStore(path).read()

        assert exc_info.value.details["path"] == str(path)

    def test_write_replaces_whole_file(self, tmp_path: Path) -> None:
        """Old keys do not survive a write."""
        store = ConfigStore(tmp_path / "anytls.env")
        store.write(ServiceConfig(port=1000, credential="a", mask_domain="x.com"))
        store.write(ServiceConfig(port=2000, credential="b"))

        assert store.read() == ServiceConfig(port=2000, credential="b")
        assert [p.name for p in tmp_path.iterdir()] == ["anytls.env"]

    def test_snapshot_and_restore(self, tmp_path: Path) -> None:
        """restore() puts back the exact previous content."""
        store = ConfigStore(tmp_path / "anytls.env")
        store.write(ServiceConfig(port=1000, credential="old"))
        snapshot = store.snapshot()

        store.write(ServiceConfig(port=2000, credential="new"))
        store.restore(snapshot)

        assert store.read() == ServiceConfig(port=1000, credential="old")

    def test_restore_none_removes_file(self, tmp_path: Path) -> None:
        """Restoring a missing snapshot deletes the file."""
        store = ConfigStore(tmp_path / "anytls.env")
        assert store.snapshot() is None
        store.write(ServiceConfig())

        store.restore(None)

        assert not store.exists()

    def test_delete(self, tmp_path: Path) -> None:
        """delete() reports whether a file was removed."""
        store = ConfigStore(tmp_path / "anytls.env")
        store.write(ServiceConfig())

        assert store.delete() is True
        assert store.delete() is False


# =============================================================================
# EnvironmentFile Quoting Tests
# =============================================================================


class TestEnvironmentFileQuoting:
    """Values must reach the service exactly as stored."""

    @pytest.mark.parametrize(
        ("credential", "line"),
        [
            ('ab"cd', 'ANYTLS_PASS="ab\\"cd"'),
            ("a\\b", 'ANYTLS_PASS="a\\\\b"'),
            (" lead", 'ANYTLS_PASS=" lead"'),
            ("trail ", 'ANYTLS_PASS="trail "'),
            ("it's", 'ANYTLS_PASS="it\'s"'),
            ("$HOME", 'ANYTLS_PASS="\\$HOME"'),
            ("a`b`", 'ANYTLS_PASS="a\\`b\\`"'),
            ("ends\\", 'ANYTLS_PASS="ends\\\\"'),
        ],
    )
    def test_special_characters_round_trip(
        self, tmp_path: Path, credential: str, line: str
    ) -> None:
        """Quotes, backslashes and edge whitespace are escaped, then restored."""
        store = ConfigStore(tmp_path / "anytls.env")
        config = build_service_config(8443, credential)

        store.write(config)

        assert line in store.path.read_text().splitlines()
        assert store.read().credential == credential

    def test_unquoted_values_are_trimmed(self, tmp_path: Path) -> None:
        """Hand-edited unquoted values lose edge whitespace, as under systemd."""
        path = tmp_path / "anytls.env"
        path.write_text("ANYTLS_PASS=  xyz  \n")

        assert ConfigStore(path).read().credential == "xyz"

    def test_single_quotes_are_literal(self) -> None:
        """Backslashes inside single quotes are kept."""
        assert unquote_env_value("'a\\b'") == "a\\b"

    def test_unknown_escape_keeps_backslash(self) -> None:
        """Only the characters systemd unescapes lose their backslash."""
        assert unquote_env_value('"a\\nb"') == "a\\nb"

    def test_quote_inverse(self) -> None:
        """unquote_env_value undoes quote_env_value."""
        value = 'p@ss "w\\rd" $x `y`'
        assert unquote_env_value(quote_env_value(value)) == value
