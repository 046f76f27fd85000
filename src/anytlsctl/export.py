"""
Client connection descriptors.

Renders the persisted ServiceConfig as text an operator can paste into a
client: an anytls:// URI, a Surge [Proxy] line and the fields for manual
entry. Formatting is pure; public IP discovery is the only network access.

Also holds the helpers the install command uses to fill in operator input:
a random credential and a seedable mask-domain choice.
"""

from __future__ import annotations

import ipaddress
import random
import secrets
import socket
import string
from dataclasses import dataclass
from urllib.parse import quote

import httpx

from anytlsctl.lifecycle.store import ServiceConfig
from anytlsctl.logging import get_logger

logger = get_logger(__name__)

IP_LOOKUP_URLS = ("https://api.ipify.org", "https://ifconfig.me")
IP_LOOKUP_TIMEOUT = 6.0
IP_PLACEHOLDER = "SERVER_IP"

COMMON_MASK_DOMAINS = (
    "learn.microsoft.com",
    "www.cloudflare.com",
    "developer.apple.com",
    "aws.amazon.com",
    "www.google.com",
    "www.wikipedia.org",
    "www.bing.com",
    "www.office.com",
    "www.github.com",
    "www.dropbox.com",
)

_CREDENTIAL_ALPHABET = string.ascii_letters + string.digits


def generate_credential(length: int = 32) -> str:
    """Return a random alphanumeric credential from the OS CSPRNG."""
    if length < 1:
        raise ValueError("length must be positive")
    return "".join(secrets.choice(_CREDENTIAL_ALPHABET) for _ in range(length))


def choose_mask_domain(rng: random.Random) -> str:
    """Pick one of COMMON_MASK_DOMAINS; deterministic for a seeded *rng*."""
    return rng.choice(COMMON_MASK_DOMAINS)


def _looks_like_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


async def get_public_ip(
    urls: tuple[str, ...] = IP_LOOKUP_URLS,
    *,
    timeout: float = IP_LOOKUP_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """
    Ask each lookup service in turn for this host's public address.

    Returns:
        The first valid IP address, or IP_PLACEHOLDER if none answered.
    """
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        for url in urls:
            try:
                response = await client.get(url)
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.debug(f"Public IP lookup failed: {e}", extra={"url": url})
                continue
            candidate = response.text.strip()
            if _looks_like_ip(candidate):
                return candidate
            logger.debug("Public IP lookup returned garbage", extra={"url": url})

    logger.warning("Could not determine public IP; using placeholder")
    return IP_PLACEHOLDER


def default_profile_name(hostname: str | None = None) -> str:
    """Profile name shown in clients: AnyTLS_<hostname>."""
    return f"AnyTLS_{hostname or socket.gethostname()}"


def _host_for_uri(host: str) -> str:
    try:
        if ipaddress.ip_address(host).version == 6:
            return f"[{host}]"
    except ValueError:
        pass
    return host


def build_uri(config: ServiceConfig, host: str, name: str) -> str:
    """Render the anytls:// URI (certificate verification disabled)."""
    uri = (
        f"anytls://{quote(config.credential, safe='')}@{_host_for_uri(host)}"
        f":{config.port}/?insecure=1"
    )
    if config.mask_domain:
        uri += f"&sni={quote(config.mask_domain, safe='')}"
    return f"{uri}#{quote(name, safe='')}"


def build_surge_line(config: ServiceConfig, host: str, name: str) -> str:
    """Render one Surge [Proxy] entry."""
    line = (
        f"{name} = anytls, {host}, {config.port}, "
        f"password={config.credential}, skip-cert-verify=true"
    )
    if config.mask_domain:
        line += f", sni={config.mask_domain}"
    return line


def manual_fields(config: ServiceConfig, host: str, name: str) -> list[tuple[str, str]]:
    """Field/value pairs for clients configured by hand."""
    return [
        ("Type", "AnyTLS"),
        ("Host", host),
        ("Port", str(config.port)),
        ("Password", config.credential),
        ("SNI", config.mask_domain or "(empty, or use Host)"),
        ("TLS verification", "disabled (insecure=1)"),
        ("Remark", name),
    ]


@dataclass(frozen=True)
class ConnectionExport:
    """All descriptors for one deployment."""

    uri: str
    surge_line: str
    fields: list[tuple[str, str]]

    def render(self) -> str:
        """Operator-facing text block."""
        lines = [
            "== AnyTLS URI ==",
            self.uri,
            "",
            "== Surge ==",
            "[Proxy]",
            self.surge_line,
            "",
            "== Manual entry ==",
        ]
        lines.extend(f"{key}: {value}" for key, value in self.fields)
        return "\n".join(lines) + "\n"


def build_export(config: ServiceConfig, host: str, name: str) -> ConnectionExport:
    """Render every descriptor for *config*."""
    return ConnectionExport(
        uri=build_uri(config, host, name),
        surge_line=build_surge_line(config, host, name),
        fields=manual_fields(config, host, name),
    )
