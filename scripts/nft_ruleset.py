"""
nftables ruleset compiler for TPROXY interception.

Pure transformation: InterceptParams + ManagerSettings -> RuleSet. No I/O,
no clock, no host lookups; equal inputs render byte-identical scripts.

Generated layout (IPv4 only, DNS inbound present):

    table inet singbox_tproxy {
        set reserved_ip4 { ... }
        chain prerouting {                      # LAN traffic entering the host
            type filter hook prerouting priority mangle; policy accept;
            meta nfproto ipv6 return
            udp dport 53 tproxy to :1053 meta mark set 0x1 accept
            tcp dport 53 tproxy to :1053 meta mark set 0x1 accept
            ip daddr @reserved_ip4 return
            ip daddr { 10.0.0.0/24 } return
            meta mark 0xff return
            meta l4proto { tcp, udp } tproxy to :7893 meta mark set 0x1 accept
        }
        chain output { ... }                    # host's own traffic
        chain postrouting { ... }               # only with masquerade
    }

Clause order inside each chain is a correctness contract: DNS hijack, then
reserved ranges, then the LAN, then the self-mark exemption, and only then
the mark-setting clause. In the output chain the self-mark exemption comes
first, because its DNS clause sets the interception mark too.
"""

from dataclasses import dataclass
from typing import List, Tuple

from tproxy_params import InterceptParams
from tproxy_settings import ManagerSettings

RESERVED_SET_V4 = "reserved_ip4"
RESERVED_SET_V6 = "reserved_ip6"
DNS_PORT = 53

INDENT = "    "


@dataclass(frozen=True)
class Chain:
    """A base chain and its ordered rules"""
    name: str
    type: str
    hook: str
    priority: str
    rules: Tuple[str, ...]
    policy: str = "accept"

    def render(self) -> List[str]:
        lines = [
            f"{INDENT}chain {self.name} {{",
            f"{INDENT * 2}type {self.type} hook {self.hook} priority {self.priority}; policy {self.policy};",
        ]
        lines.extend(f"{INDENT * 2}{rule}" for rule in self.rules)
        lines.append(f"{INDENT}}}")
        return lines


@dataclass(frozen=True)
class RuleSet:
    """Declarative description of everything loaded into nftables"""
    table_name: str
    family: str
    fw_mark: int
    self_mark: int
    route_table_id: int
    ipv6_enabled: bool
    reserved_v4: Tuple[str, ...]
    reserved_v6: Tuple[str, ...]
    chains: Tuple[Chain, ...]

    def chain(self, name: str) -> Chain:
        for chain in self.chains:
            if chain.name == name:
                return chain
        raise KeyError(name)

    def render(self) -> str:
        """Render the ruleset as a script for ``nft -f``"""
        lines = [f"table {self.family} {self.table_name} {{"]
        lines.extend(_render_set(RESERVED_SET_V4, "ipv4_addr", self.reserved_v4))
        if self.reserved_v6:
            lines.extend(_render_set(RESERVED_SET_V6, "ipv6_addr", self.reserved_v6))
        for chain in self.chains:
            lines.extend(chain.render())
        lines.append("}")
        return "\n".join(lines) + "\n"


def _render_set(name: str, addr_type: str, elements: Tuple[str, ...]) -> List[str]:
    return [
        f"{INDENT}set {name} {{",
        f"{INDENT * 2}type {addr_type}",
        f"{INDENT * 2}flags interval",
        f"{INDENT * 2}auto-merge",
        f"{INDENT * 2}elements = {{ {', '.join(elements)} }}",
        f"{INDENT}}}",
    ]


def _mark(value: int) -> str:
    return f"0x{value:x}"


def _anonymous_set(items: Tuple[str, ...]) -> str:
    return "{ " + ", ".join(items) + " }"


def _family_guard(params: InterceptParams) -> List[str]:
    # Without IPv6 policy routing, marked IPv6 packets would have nowhere to go
    if params.ipv6_enabled:
        return []
    return ["meta nfproto ipv6 return"]


def _dns_rules(params: InterceptParams, mark: str, redirect: bool) -> List[str]:
    if not params.dns_hijack:
        return []
    rules = []
    for proto in ("udp", "tcp"):
        if redirect:
            rules.append(f"{proto} dport {DNS_PORT} tproxy to :{params.dns_port} meta mark set {mark} accept")
        else:
            rules.append(f"{proto} dport {DNS_PORT} meta mark set {mark} accept")
    return rules


def _bypass_rules(params: InterceptParams) -> List[str]:
    """Reserved ranges first, then the LAN itself"""
    rules = [f"ip daddr @{RESERVED_SET_V4} return"]
    if params.ipv6_enabled:
        rules.append(f"ip6 daddr @{RESERVED_SET_V6} return")
    if params.lan_ipv4:
        rules.append(f"ip daddr {_anonymous_set(params.lan_ipv4)} return")
    if params.ipv6_enabled and params.lan_ipv6:
        rules.append(f"ip6 daddr {_anonymous_set(params.lan_ipv6)} return")
    return rules


def _masquerade_rules(params: InterceptParams) -> List[str]:
    rules = []
    if params.lan_ipv4:
        lan = _anonymous_set(params.lan_ipv4)
        rules.append(f"ip saddr {lan} ip daddr != {lan} masquerade")
    if params.ipv6_enabled and params.lan_ipv6:
        lan = _anonymous_set(params.lan_ipv6)
        rules.append(f"ip6 saddr {lan} ip6 daddr != {lan} masquerade")
    return rules


def compile_ruleset(params: InterceptParams, settings: ManagerSettings) -> RuleSet:
    """Compile interception parameters into a RuleSet.

    Total function: all validation happened during resolution.
    """
    mark = _mark(settings.fwmark)
    self_mark_return = f"meta mark {_mark(settings.self_mark)} return"

    prerouting = (
        _family_guard(params)
        + _dns_rules(params, mark, redirect=True)
        + _bypass_rules(params)
        + [self_mark_return]
        + [f"meta l4proto {{ tcp, udp }} tproxy to :{params.tproxy_port} meta mark set {mark} accept"]
    )

    output = (
        _family_guard(params)
        + [self_mark_return]
        + _dns_rules(params, mark, redirect=False)
        + _bypass_rules(params)
        + [f"meta l4proto {{ tcp, udp }} meta mark set {mark}"]
    )

    chains = [
        Chain(name="prerouting", type="filter", hook="prerouting", priority="mangle",
              rules=tuple(prerouting)),
        Chain(name="output", type="route", hook="output", priority="mangle",
              rules=tuple(output)),
    ]

    if params.masquerade:
        nat_rules = _masquerade_rules(params)
        if nat_rules:
            chains.append(Chain(name="postrouting", type="nat", hook="postrouting",
                                priority="srcnat", rules=tuple(nat_rules)))

    return RuleSet(
        table_name=settings.table_name,
        family=settings.table_family,
        fw_mark=settings.fwmark,
        self_mark=settings.self_mark,
        route_table_id=settings.route_table_id,
        ipv6_enabled=params.ipv6_enabled,
        reserved_v4=tuple(settings.reserved_ipv4),
        reserved_v6=tuple(settings.reserved_ipv6) if params.ipv6_enabled else (),
        chains=tuple(chains),
    )
