"""
AnyTLS lifecycle manager.

This package installs, upgrades, configures and supervises an AnyTLS proxy
server on a systemd host: it resolves the latest release, swaps the binary
atomically, writes the service definition, verifies health and rolls back
to the previous binary when a change does not come up healthy.
"""

__version__ = "0.1.0"
