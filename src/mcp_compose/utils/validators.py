"""
Validation utilities for MCP Compose.

Checks for server names, port mappings, resource strings and volume
mounts. Each validator returns True or raises ``ValidationError``.
"""

import re
from typing import Optional

from mcp_compose.core.exceptions import ValidationError

RESERVED_NAMES = ("all", "none", "api", "oauth", "ws", "static", "health")
VALID_PROTOCOLS = ("stdio", "http", "sse", "tcp")
VALID_CAPABILITIES = ("resources", "tools", "prompts", "sampling", "logging", "roots")

_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
_PORT_RE = re.compile(r"^\d+(-\d+)?$")
_MEMORY_RE = re.compile(r"^\d+[bkmgBKMG]?$")


def validate_server_name(name: str) -> bool:
    """
    Validate server name.

    The name becomes part of the canonical container name, so path
    separators, whitespace and other punctuation are rejected.

    Args:
        name: Server name to validate

    Returns:
        True if valid

    Raises:
        ValidationError: If name is invalid
    """
    if not name or not name.strip():
        raise ValidationError("Server name cannot be empty")

    if len(name) > 63:
        raise ValidationError(f"Server name '{name}' too long (max 63 characters)")

    if name.lower() in RESERVED_NAMES:
        raise ValidationError(f"'{name}' is a reserved name. Please choose a different name")

    if not _NAME_RE.match(name):
        raise ValidationError(
            f"Invalid server name '{name}': only letters, numbers, hyphens, "
            "underscores and dots are allowed"
        )

    return True


def _validate_port_part(part: str, mapping: str) -> None:
    if not _PORT_RE.match(part):
        raise ValidationError(f"Invalid port '{part}' in mapping '{mapping}'")
    bounds = [int(p) for p in part.split("-")]
    for port in bounds:
        if port < 1 or port > 65535:
            raise ValidationError(f"Port {port} out of range in mapping '{mapping}'")
    if len(bounds) == 2 and bounds[0] > bounds[1]:
        raise ValidationError(f"Invalid port range '{part}' in mapping '{mapping}'")


def validate_port_mapping(mapping: str) -> bool:
    """
    Validate a port mapping.

    Accepts ``container``, ``host:container`` and ``ip:host:container``,
    each port optionally a range and optionally suffixed ``/tcp`` or ``/udp``.

    Raises:
        ValidationError: If the mapping is malformed
    """
    if not mapping or not str(mapping).strip():
        raise ValidationError("Port mapping cannot be empty")

    value = str(mapping).strip()
    if "/" in value:
        value, proto = value.rsplit("/", 1)
        if proto not in ("tcp", "udp"):
            raise ValidationError(f"Invalid protocol '{proto}' in port mapping '{mapping}'")

    parts = value.split(":")
    if len(parts) > 3:
        raise ValidationError(f"Invalid port mapping '{mapping}'")
    if len(parts) == 3:
        parts = parts[1:]

    for part in parts:
        _validate_port_part(part, str(mapping))

    return True


def container_port(mapping: str) -> Optional[int]:
    """Container-side port of a mapping, or None for ranges."""
    value = str(mapping).split("/", 1)[0]
    last = value.split(":")[-1]
    if last.isdigit():
        return int(last)
    return None


def validate_memory(value: str) -> bool:
    """Validate a memory string such as ``512m`` or ``1g``."""
    if not _MEMORY_RE.match(str(value).strip()):
        raise ValidationError(f"Invalid memory value '{value}' (expected <number>[b|k|m|g])")
    return True


def validate_cpus(value: str) -> bool:
    """Validate a fractional CPU count."""
    try:
        cpus = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid cpus value '{value}'")
    if cpus <= 0:
        raise ValidationError(f"cpus must be positive, got '{value}'")
    return True


def validate_protocol(protocol: str) -> bool:
    if protocol not in VALID_PROTOCOLS:
        raise ValidationError(
            f"Invalid protocol '{protocol}' (expected one of {', '.join(VALID_PROTOCOLS)})"
        )
    return True


def validate_capability(capability: str) -> bool:
    if capability not in VALID_CAPABILITIES:
        raise ValidationError(f"Unknown capability '{capability}'")
    return True


def validate_volume(volume: str) -> bool:
    """Validate a ``source:target[:mode]`` volume mount."""
    parts = str(volume).split(":")
    if len(parts) < 2 or len(parts) > 3 or not parts[0] or not parts[1]:
        raise ValidationError(f"Invalid volume mount '{volume}' (expected source:target[:mode])")
    if not parts[1].startswith("/"):
        raise ValidationError(f"Volume target must be an absolute path in '{volume}'")
    if len(parts) == 3 and parts[2] not in ("ro", "rw", "z", "Z", "ro,z", "ro,Z", "rw,z", "rw,Z"):
        raise ValidationError(f"Invalid volume mode '{parts[2]}' in '{volume}'")
    return True
