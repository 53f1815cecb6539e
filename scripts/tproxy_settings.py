"""
Manager settings: table names, marks, route table id and tool paths.

These are the host-global names the manager owns. They are injected into the
compiler and the applier instead of living as module globals, so tests can
run with isolated names that never collide with a real installation.

Sources, lowest to highest precedence:
    built-in defaults -> YAML settings file -> environment -> CLI flags

Environment Variables:
    TPROXY_TABLE: nft table name (default: singbox_tproxy)
    TPROXY_FWMARK: interception mark (default: 0x1)
    TPROXY_SELF_MARK: mark sing-box puts on its own egress (default: 0xff)
    TPROXY_ROUTE_TABLE: policy routing table id (default: 100)
    TPROXY_STOP_TIMEOUT: seconds to wait for sing-box after SIGTERM (default: 10)
    SINGBOX_BIN: sing-box executable (default: /usr/bin/sing-box)
"""

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from tproxy_errors import InvalidSettings

DEFAULT_TABLE_NAME = "singbox_tproxy"
# Table names used by earlier releases; teardown removes them too
LEGACY_TABLE_NAMES: Tuple[str, ...] = ("singbox_auto", "sb_auto")

# Loopback, this-network, RFC1918, RFC6598 shared space, link-local,
# IETF protocol assignments, TEST-NETs, 6to4 relay, benchmarking,
# multicast and class E (includes limited broadcast). No overlaps.
DEFAULT_RESERVED_IPV4: Tuple[str, ...] = (
    "0.0.0.0/8",
    "10.0.0.0/8",
    "100.64.0.0/10",
    "127.0.0.0/8",
    "169.254.0.0/16",
    "172.16.0.0/12",
    "192.0.0.0/24",
    "192.0.2.0/24",
    "192.88.99.0/24",
    "192.168.0.0/16",
    "198.18.0.0/15",
    "198.51.100.0/24",
    "203.0.113.0/24",
    "224.0.0.0/4",
    "240.0.0.0/4",
)

DEFAULT_RESERVED_IPV6: Tuple[str, ...] = (
    "::/128",
    "::1/128",
    "::ffff:0:0/96",
    "64:ff9b::/96",
    "100::/64",
    "2001::/32",
    "2001:20::/28",
    "2001:db8::/32",
    "2002::/16",
    "fc00::/7",
    "fe80::/10",
    "ff00::/8",
)

# nft identifiers: letter first, then letters, digits, underscore
TABLE_NAME_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_]*$')
MAX_TABLE_NAME_LEN = 64

# 253-255 are the kernel's default/main/local tables
MAX_ROUTE_TABLE_ID = 252
MAX_MARK = 0xFFFFFFFF

ENV_OVERRIDES = {
    "TPROXY_TABLE": "table_name",
    "TPROXY_FWMARK": "fwmark",
    "TPROXY_SELF_MARK": "self_mark",
    "TPROXY_ROUTE_TABLE": "route_table_id",
    "TPROXY_STOP_TIMEOUT": "stop_timeout",
    "SINGBOX_BIN": "singbox_path",
}


def _parse_int(value: Any, name: str) -> int:
    """Accept ints and decimal/hex strings ("255", "0xff")"""
    if isinstance(value, bool):
        raise InvalidSettings(f"{name} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip(), 0)
    except ValueError:
        raise InvalidSettings(f"{name} must be an integer, got {value!r}")


@dataclass(frozen=True)
class ManagerSettings:
    """Constants owned by one manager installation"""
    table_name: str = DEFAULT_TABLE_NAME
    legacy_table_names: Tuple[str, ...] = LEGACY_TABLE_NAMES
    table_family: str = "inet"
    fwmark: int = 0x1
    self_mark: int = 0xff
    route_table_id: int = 100
    default_dns_port: int = 53
    tproxy_inbound_type: str = "tproxy"
    dns_inbound_tag: str = "dns-in"
    singbox_path: str = "/usr/bin/sing-box"
    reserved_ipv4: Tuple[str, ...] = DEFAULT_RESERVED_IPV4
    reserved_ipv6: Tuple[str, ...] = DEFAULT_RESERVED_IPV6
    kernel_tuning: bool = True
    stop_timeout: float = 10.0
    nft_bin: str = "nft"
    ip_bin: str = "ip"
    sysctl_bin: str = "sysctl"
    max_purge_rounds: int = 32

    def __post_init__(self):
        for name in (self.table_name,) + tuple(self.legacy_table_names):
            if not name or len(name) > MAX_TABLE_NAME_LEN or not TABLE_NAME_PATTERN.match(name):
                raise InvalidSettings(f"Invalid nft table name: {name!r}")
        if self.table_family not in ("inet",):
            raise InvalidSettings(f"Unsupported table family: {self.table_family!r}")
        for label, mark in (("fwmark", self.fwmark), ("self_mark", self.self_mark)):
            if not 0 < mark <= MAX_MARK:
                raise InvalidSettings(f"{label} must be a non-zero 32-bit value, got {mark}")
        if self.fwmark == self.self_mark:
            raise InvalidSettings(
                f"fwmark and self_mark must differ (both 0x{self.fwmark:x}); "
                "sharing them makes sing-box re-intercept its own connections"
            )
        if not 1 <= self.route_table_id <= MAX_ROUTE_TABLE_ID:
            raise InvalidSettings(
                f"route_table_id must be within 1..{MAX_ROUTE_TABLE_ID}, got {self.route_table_id}"
            )
        if not 1 <= self.default_dns_port <= 65535:
            raise InvalidSettings(f"default_dns_port out of range: {self.default_dns_port}")
        if self.stop_timeout <= 0:
            raise InvalidSettings(f"stop_timeout must be positive, got {self.stop_timeout}")
        if self.max_purge_rounds < 1:
            raise InvalidSettings("max_purge_rounds must be at least 1")

    @property
    def all_table_names(self) -> Tuple[str, ...]:
        """Current table name first, then legacy names, without duplicates"""
        names = [self.table_name]
        for name in self.legacy_table_names:
            if name not in names:
                names.append(name)
        return tuple(names)

    @classmethod
    def from_env(cls) -> "ManagerSettings":
        """Create settings from defaults plus environment variables"""
        return load_settings(None)


def _coerce(overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Convert raw YAML/env values to the field types"""
    result = dict(overrides)
    for key in ("fwmark", "self_mark", "route_table_id", "default_dns_port", "max_purge_rounds"):
        if key in result:
            result[key] = _parse_int(result[key], key)
    for key in ("legacy_table_names", "reserved_ipv4", "reserved_ipv6"):
        if key in result:
            value = result[key]
            if isinstance(value, str):
                value = [item.strip() for item in value.split(",") if item.strip()]
            if not isinstance(value, (list, tuple)):
                raise InvalidSettings(f"{key} must be a list")
            result[key] = tuple(str(item) for item in value)
    if "stop_timeout" in result:
        try:
            result["stop_timeout"] = float(result["stop_timeout"])
        except (TypeError, ValueError):
            raise InvalidSettings(f"stop_timeout must be a number, got {result['stop_timeout']!r}")
    if "kernel_tuning" in result and isinstance(result["kernel_tuning"], str):
        result["kernel_tuning"] = result["kernel_tuning"].lower() in ("1", "true", "yes", "on")
    return result


def load_yaml_overrides(path: Path) -> Dict[str, Any]:
    """Read a YAML settings file; unknown keys are rejected"""
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except OSError as e:
        raise InvalidSettings(f"Cannot read settings file {path}: {e}")
    except yaml.YAMLError as e:
        raise InvalidSettings(f"Malformed settings file {path}: {e}")

    if not isinstance(data, dict):
        raise InvalidSettings(f"Settings file {path} must contain a mapping")

    known = {f.name for f in fields(ManagerSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise InvalidSettings(f"Unknown settings in {path}: {', '.join(unknown)}")
    return data


def load_settings(path: Optional[Path], env: Optional[Mapping[str, str]] = None) -> ManagerSettings:
    """Build settings from an optional YAML file and the environment.

    Args:
        path: YAML settings file, or None for defaults only
        env: Environment mapping (defaults to os.environ)

    Returns:
        Validated ManagerSettings

    Raises:
        InvalidSettings: unreadable file, unknown key or inconsistent values
    """
    if env is None:
        env = os.environ

    overrides: Dict[str, Any] = {}
    if path is not None:
        overrides.update(load_yaml_overrides(path))

    for var, key in ENV_OVERRIDES.items():
        value = env.get(var, "").strip()
        if value:
            overrides[key] = value

    try:
        return ManagerSettings(**_coerce(overrides))
    except TypeError as e:
        raise InvalidSettings(f"Invalid settings: {e}")
