"""
Interception parameter resolution.

Derives the few scalars the ruleset needs from the CLI and the sing-box
configuration document:

    {
        "inbounds": [
            {"type": "tproxy", "tag": "tproxy-in", "listen_port": 7893},
            {"type": "direct", "tag": "dns-in", "listen_port": 1053}
        ],
        "route": {"default_mark": 255}
    }

Nothing here touches the host. A resolution failure means no firewall or
routing state is ever created for this run.
"""

import ipaddress
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from tproxy_errors import InvalidSettings, MissingParameter, NoInterceptInbound
from tproxy_settings import ManagerSettings

logger = logging.getLogger(__name__)

IPV6_ENABLE_VALUES = ("enable", "enabled", "on", "true", "yes", "1")
IPV6_DISABLE_VALUES = ("disable", "disabled", "off", "false", "no", "0")

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass(frozen=True)
class InterceptParams:
    """Resolved interception parameters, fixed for the whole run"""
    tproxy_port: int
    lan_cidr: str
    dns_port: int = 53
    dns_hijack: bool = False
    ipv6_enabled: bool = False
    masquerade: bool = False

    @property
    def lan_networks(self) -> Tuple[IPNetwork, ...]:
        return tuple(ipaddress.ip_network(c) for c in self.lan_cidr.split(","))

    @property
    def lan_ipv4(self) -> Tuple[str, ...]:
        return tuple(str(n) for n in self.lan_networks if n.version == 4)

    @property
    def lan_ipv6(self) -> Tuple[str, ...]:
        return tuple(str(n) for n in self.lan_networks if n.version == 6)


def parse_ipv6_mode(value: Optional[str]) -> bool:
    """Interpret the tri-state --ipv6 input; unspecified means disabled"""
    if value is None or not str(value).strip():
        return False
    normalized = str(value).strip().lower()
    if normalized in IPV6_ENABLE_VALUES:
        return True
    if normalized in IPV6_DISABLE_VALUES:
        return False
    raise MissingParameter(f"Invalid IPv6 mode {value!r}, expected 'enable' or 'disable'")


def normalize_lan(lan: Optional[str]) -> str:
    """Validate and canonicalize a comma-separated list of LAN CIDRs.

    Host bits are cleared, duplicates dropped, and the result sorted
    (IPv4 first) so equal inputs always compile to the same ruleset.

    Raises:
        MissingParameter: empty input or an unparsable CIDR
    """
    if lan is None or not str(lan).strip():
        raise MissingParameter("LAN CIDR is required (e.g. --lan 10.0.0.0/24)")

    networks: List[IPNetwork] = []
    for item in str(lan).split(","):
        item = item.strip()
        if not item:
            continue
        try:
            network = ipaddress.ip_network(item, strict=False)
        except ValueError as e:
            raise MissingParameter(f"Invalid LAN CIDR {item!r}: {e}")
        if network.prefixlen == 0:
            raise MissingParameter(f"LAN CIDR {item!r} would cover the whole address space")
        if network not in networks:
            networks.append(network)

    if not networks:
        raise MissingParameter("LAN CIDR is required (e.g. --lan 10.0.0.0/24)")

    networks.sort(key=lambda n: (n.version, int(n.network_address), n.prefixlen))
    return ",".join(str(n) for n in networks)


def _valid_port(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    if 1 <= value <= 65535:
        return value
    return None


def _load_config(config_bytes: bytes) -> Dict[str, Any]:
    try:
        document = json.loads(config_bytes)
    except (ValueError, UnicodeDecodeError) as e:
        raise NoInterceptInbound(f"Proxy config is not valid JSON: {e}")
    if not isinstance(document, dict):
        raise NoInterceptInbound("Proxy config must be a JSON object")
    return document


def _inbounds(document: Dict[str, Any]) -> List[Dict[str, Any]]:
    inbounds = document.get("inbounds") or []
    if not isinstance(inbounds, list):
        raise NoInterceptInbound("Proxy config 'inbounds' must be a list")
    return [inbound for inbound in inbounds if isinstance(inbound, dict)]


def find_tproxy_port(inbounds: List[Dict[str, Any]], inbound_type: str) -> int:
    """Return the listen port of the single transparent-proxy inbound"""
    matches = [inbound for inbound in inbounds if inbound.get("type") == inbound_type]
    if not matches:
        raise NoInterceptInbound(
            f"No '{inbound_type}' inbound in proxy config; refusing to redirect traffic nowhere"
        )
    if len(matches) > 1:
        tags = ", ".join(str(m.get("tag", "?")) for m in matches)
        raise NoInterceptInbound(f"Expected exactly one '{inbound_type}' inbound, found {len(matches)} ({tags})")

    port = _valid_port(matches[0].get("listen_port"))
    if port is None:
        raise NoInterceptInbound(
            f"'{inbound_type}' inbound has invalid listen_port {matches[0].get('listen_port')!r}"
        )
    return port


def find_dns_port(inbounds: List[Dict[str, Any]], dns_tag: str) -> Optional[int]:
    """Return the DNS inbound's listen port, or None when it is absent"""
    for inbound in inbounds:
        if inbound.get("tag") != dns_tag:
            continue
        port = _valid_port(inbound.get("listen_port"))
        if port is None:
            logger.warning(f"DNS inbound '{dns_tag}' has invalid listen_port "
                           f"{inbound.get('listen_port')!r}, ignoring it")
        return port
    return None


def check_self_mark(document: Dict[str, Any], settings: ManagerSettings) -> None:
    """Ensure sing-box's own egress mark cannot be re-intercepted"""
    route = document.get("route")
    raw = route.get("default_mark") if isinstance(route, dict) else None
    if raw is None:
        logger.warning(f"route.default_mark is not set in proxy config; set it to "
                       f"{settings.self_mark} so sing-box egress bypasses interception")
        return

    try:
        mark = int(str(raw), 0) if not isinstance(raw, int) else raw
    except ValueError:
        raise InvalidSettings(f"route.default_mark {raw!r} is not an integer")

    if mark == settings.fwmark:
        raise InvalidSettings(
            f"route.default_mark 0x{mark:x} equals the interception mark; this would loop traffic"
        )
    if mark != settings.self_mark:
        logger.warning(f"route.default_mark 0x{mark:x} differs from self_mark "
                       f"0x{settings.self_mark:x}; sing-box egress will not be exempted")


def resolve(cli_args: Any, config_bytes: bytes, settings: ManagerSettings) -> InterceptParams:
    """Resolve InterceptParams from CLI input and the proxy configuration.

    Args:
        cli_args: Object with ``lan``, ``ipv6`` and (optional) ``masquerade``
            attributes, typically an argparse.Namespace
        config_bytes: Raw sing-box configuration document
        settings: Manager settings (inbound type, DNS tag, marks)

    Returns:
        Immutable InterceptParams

    Raises:
        MissingParameter: LAN CIDR absent/invalid or IPv6-only with IPv6
            disabled, bad IPv6 mode
        NoInterceptInbound: no usable tproxy inbound
        InvalidSettings: proxy egress mark collides with the interception mark
    """
    lan_cidr = normalize_lan(getattr(cli_args, "lan", None))
    ipv6_enabled = parse_ipv6_mode(getattr(cli_args, "ipv6", None))
    masquerade = bool(getattr(cli_args, "masquerade", False))

    if not ipv6_enabled and all(ipaddress.ip_network(c).version == 6 for c in lan_cidr.split(",")):
        raise MissingParameter(f"LAN {lan_cidr} has no IPv4 network and IPv6 is disabled")

    document = _load_config(config_bytes)
    inbounds = _inbounds(document)
    tproxy_port = find_tproxy_port(inbounds, settings.tproxy_inbound_type)

    dns_port = find_dns_port(inbounds, settings.dns_inbound_tag)
    dns_hijack = dns_port is not None
    if not dns_hijack:
        logger.warning(f"No DNS inbound tagged '{settings.dns_inbound_tag}', DNS hijack disabled")
        dns_port = settings.default_dns_port

    check_self_mark(document, settings)

    return InterceptParams(
        tproxy_port=tproxy_port,
        lan_cidr=lan_cidr,
        dns_port=dns_port,
        dns_hijack=dns_hijack,
        ipv6_enabled=ipv6_enabled,
        masquerade=masquerade,
    )
