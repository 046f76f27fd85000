"""
Persisted connection settings.

ServiceConfig holds the operator's choices (port, credential, mask domain).
ConfigStore persists it as a flat KEY=VALUE file readable only by its owner,
which the systemd unit loads through EnvironmentFile=. Configuration is only
ever read back from this file, never from the unit.
"""

from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from anytlsctl.errors import InvalidArgumentError
from anytlsctl.logging import get_logger

logger = get_logger(__name__)

PORT_KEY = "ANYTLS_PORT"
CREDENTIAL_KEY = "ANYTLS_PASS"
MASK_DOMAIN_KEY = "ANYTLS_SNI"

DEFAULT_PORT = 8443
DEFAULT_CREDENTIAL = "password"

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def sanitize_value(value: str) -> str:
    """Strip newlines and other control characters from a persisted value."""
    return _CONTROL_CHARS.sub("", value)


# Characters systemd unescapes inside a double-quoted EnvironmentFile value
_ENV_ESCAPED = '"\\`$'


def quote_env_value(value: str) -> str:
    """Double-quote *value* the way systemd's EnvironmentFile= parser expects."""
    escaped = "".join(f"\\{ch}" if ch in _ENV_ESCAPED else ch for ch in value)
    return f'"{escaped}"'


def unquote_env_value(raw: str) -> str:
    """
    Inverse of quote_env_value().

    Unquoted values are whitespace-trimmed and single-quoted values taken
    literally, matching how systemd reads hand-edited files.
    """
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1]
    if not (len(value) >= 2 and value[0] == value[-1] == '"'):
        return value

    chars: list[str] = []
    inner = iter(value[1:-1])
    for ch in inner:
        if ch == "\\":
            nxt = next(inner, "")
            if nxt not in _ENV_ESCAPED:
                chars.append(ch)
            chars.append(nxt)
        else:
            chars.append(ch)
    return "".join(chars)


def _reject_control_chars(value: str, field: str) -> str:
    if _CONTROL_CHARS.search(value):
        raise ValueError(f"{field} must not contain newlines or control characters")
    return value


class ServiceConfig(BaseModel):
    """
    Connection parameters chosen by the operator.

    Attributes:
        port: TCP port the server listens on.
        credential: Shared secret clients authenticate with.
        mask_domain: Optional TLS server name used to disguise traffic.
    """

    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    credential: str = Field(default=DEFAULT_CREDENTIAL, min_length=1)
    mask_domain: str = Field(default="")

    @field_validator("credential")
    @classmethod
    def validate_credential(cls, v: str) -> str:
        """Reject control characters in the credential."""
        return _reject_control_chars(v, "credential")

    @field_validator("mask_domain")
    @classmethod
    def validate_mask_domain(cls, v: str) -> str:
        """Reject control characters and whitespace in the mask domain."""
        _reject_control_chars(v, "mask_domain")
        if any(ch.isspace() for ch in v):
            raise ValueError("mask_domain must not contain whitespace")
        return v


def build_service_config(
    port: int | str,
    credential: str,
    mask_domain: str | None = None,
) -> ServiceConfig:
    """
    Validate operator input into a ServiceConfig.

    Raises:
        InvalidArgumentError: If any field is out of range or malformed.
    """
    try:
        return ServiceConfig(
            port=port, credential=credential, mask_domain=mask_domain or ""
        )
    except ValidationError as e:
        raise InvalidArgumentError(
            f"Invalid connection settings: {e.errors()[0]['msg']}",
            details={"errors": [err["msg"] for err in e.errors()]},
        ) from e


class ConfigStore:
    """
    Reads and writes ServiceConfig at a fixed path.

    Attributes:
        path: Location of the KEY=VALUE file.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        """Return True if a config file has been written."""
        return self.path.is_file()

    def render(self, config: ServiceConfig) -> str:
        """Return the file content for *config*."""
        return (
            f"{PORT_KEY}={config.port}\n"
            f"{CREDENTIAL_KEY}={quote_env_value(sanitize_value(config.credential))}\n"
            f"{MASK_DOMAIN_KEY}={quote_env_value(sanitize_value(config.mask_domain))}\n"
        )

    def write(self, config: ServiceConfig) -> None:
        """
        Persist *config*, replacing the whole file.

        The temp file is created owner-only (0600) before any content is
        written, so the secret is never readable by others.
        """
        self.write_raw(self.render(config))
        logger.info(
            "Wrote connection settings",
            extra={"path": str(self.path), "port": config.port},
        )

    def write_raw(self, content: str) -> None:
        """Replace the file with *content* (used to restore a snapshot)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.chmod(temp_name, 0o600)
            os.replace(temp_name, self.path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def snapshot(self) -> str | None:
        """Return the current file content, or None if there is no file."""
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def restore(self, snapshot: str | None) -> None:
        """Put back a snapshot taken with snapshot(); None removes the file."""
        if snapshot is None:
            self.delete()
        else:
            self.write_raw(snapshot)

    def read(self) -> ServiceConfig:
        """
        Load the persisted config.

        Missing file or missing keys fall back to the defaults: port 8443,
        credential "password", empty mask domain.

        Raises:
            InvalidArgumentError: If a stored value is present but invalid.
        """
        values: dict[str, str] = {}
        content = self.snapshot()
        if content is not None:
            for line in content.splitlines():
                if not line or line.lstrip().startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                values[key.strip()] = unquote_env_value(value)

        port = values.get(PORT_KEY) or str(DEFAULT_PORT)
        credential = values.get(CREDENTIAL_KEY) or DEFAULT_CREDENTIAL
        mask_domain = values.get(MASK_DOMAIN_KEY, "")

        try:
            return ServiceConfig(
                port=port, credential=credential, mask_domain=mask_domain
            )
        except ValidationError as e:
            raise InvalidArgumentError(
                f"Stored connection settings in {self.path} are invalid: "
                f"{e.errors()[0]['msg']}",
                details={"path": str(self.path)},
            ) from e

    def delete(self) -> bool:
        """Remove the config file. Returns True if a file was removed."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True
