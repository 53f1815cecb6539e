"""
Unit tests for nft_ruleset.py - ruleset compilation.
"""

import pytest

from nft_ruleset import compile_ruleset
from tproxy_params import InterceptParams
from tproxy_settings import ManagerSettings


@pytest.fixture
def params() -> InterceptParams:
    return InterceptParams(tproxy_port=7893, lan_cidr="10.0.0.0/24", dns_port=1053, dns_hijack=True)


def _index(rules, fragment):
    for i, rule in enumerate(rules):
        if fragment in rule:
            return i
    raise AssertionError(f"no rule containing {fragment!r} in {rules}")


class TestCompileRuleset:
    """Tests for compile_ruleset()."""

    def test_typical_ipv4_ruleset(self, params):
        ruleset = compile_ruleset(params, ManagerSettings())
        script = ruleset.render()

        assert script.startswith("table inet singbox_tproxy {\n")
        assert script.endswith("}\n")
        assert "tproxy to :7893 meta mark set 0x1 accept" in script
        assert "udp dport 53 tproxy to :1053 meta mark set 0x1 accept" in script
        assert "tcp dport 53 tproxy to :1053 meta mark set 0x1 accept" in script
        assert "ip daddr { 10.0.0.0/24 } return" in script
        assert "meta mark 0xff return" in script
        assert "reserved_ip6" not in script
        assert "postrouting" not in script

        assert [c.name for c in ruleset.chains] == ["prerouting", "output"]
        assert ruleset.fw_mark == 0x1
        assert ruleset.route_table_id == 100

    def test_chain_hooks(self, params):
        ruleset = compile_ruleset(params, ManagerSettings())

        prerouting = ruleset.chain("prerouting")
        output = ruleset.chain("output")
        assert (prerouting.type, prerouting.hook, prerouting.priority) == ("filter", "prerouting", "mangle")
        assert (output.type, output.hook, output.priority) == ("route", "output", "mangle")

    def test_deterministic(self, params):
        first = compile_ruleset(params, ManagerSettings()).render()
        second = compile_ruleset(params, ManagerSettings()).render()
        assert first == second

    def test_prerouting_clause_order(self, params):
        rules = compile_ruleset(params, ManagerSettings()).chain("prerouting").rules

        dns = _index(rules, "dport 53")
        reserved = _index(rules, "@reserved_ip4")
        lan = _index(rules, "ip daddr { 10.0.0.0/24 }")
        self_mark = _index(rules, "meta mark 0xff return")
        intercept = _index(rules, "tproxy to :7893")

        assert dns < reserved < lan < self_mark < intercept
        assert intercept == len(rules) - 1

    def test_output_exempts_self_mark_first(self, params):
        rules = compile_ruleset(params, ManagerSettings()).chain("output").rules

        self_mark = _index(rules, "meta mark 0xff return")
        dns = _index(rules, "dport 53")
        mark = _index(rules, "meta l4proto { tcp, udp } meta mark set 0x1")

        assert self_mark < dns < mark
        # Nothing before the exemption may set the interception mark
        assert not any("mark set" in rule for rule in rules[:self_mark])

    def test_every_mark_setter_is_preceded_by_self_mark_exemption(self, params):
        ruleset = compile_ruleset(params, ManagerSettings())
        for chain in ruleset.chains:
            exemption = _index(chain.rules, "meta mark 0xff return")
            for i, rule in enumerate(chain.rules):
                if "meta mark set" in rule and "dport 53" not in rule:
                    assert i > exemption

    def test_output_never_redirects(self, params):
        rules = compile_ruleset(params, ManagerSettings()).chain("output").rules
        assert not any("tproxy to" in rule for rule in rules)

    def test_ipv4_only_guards_ipv6(self, params):
        ruleset = compile_ruleset(params, ManagerSettings())
        assert ruleset.chain("prerouting").rules[0] == "meta nfproto ipv6 return"
        assert ruleset.chain("output").rules[0] == "meta nfproto ipv6 return"
        assert ruleset.reserved_v6 == ()

    def test_ipv6_enabled(self):
        params = InterceptParams(tproxy_port=7893, lan_cidr="10.0.0.0/24,fd00::/64",
                                 dns_port=1053, dns_hijack=True, ipv6_enabled=True)
        ruleset = compile_ruleset(params, ManagerSettings())
        script = ruleset.render()

        assert "set reserved_ip6 {" in script
        assert "ip6 daddr @reserved_ip6 return" in script
        assert "ip6 daddr { fd00::/64 } return" in script
        assert "meta nfproto ipv6 return" not in script

    def test_no_dns_hijack(self):
        params = InterceptParams(tproxy_port=7893, lan_cidr="10.0.0.0/24")
        script = compile_ruleset(params, ManagerSettings()).render()
        assert "dport 53" not in script

    def test_masquerade_chain(self):
        params = InterceptParams(tproxy_port=7893, lan_cidr="10.0.0.0/24", masquerade=True)
        ruleset = compile_ruleset(params, ManagerSettings())

        postrouting = ruleset.chain("postrouting")
        assert (postrouting.type, postrouting.priority) == ("nat", "srcnat")
        assert postrouting.rules == ("ip saddr { 10.0.0.0/24 } ip daddr != { 10.0.0.0/24 } masquerade",)

    def test_reserved_set_rendering(self, params):
        script = compile_ruleset(params, ManagerSettings()).render()

        assert "    set reserved_ip4 {\n" in script
        assert "        flags interval\n" in script
        assert "10.0.0.0/8, 100.64.0.0/10, 127.0.0.0/8" in script

    def test_settings_are_injected(self, params, settings):
        ruleset = compile_ruleset(params, settings)
        assert ruleset.render().startswith("table inet tproxy_test {")
        assert ruleset.route_table_id == 201

    def test_custom_marks(self, params):
        settings = ManagerSettings(fwmark=0x10, self_mark=0x20)
        script = compile_ruleset(params, settings).render()

        assert "meta mark set 0x10" in script
        assert "meta mark 0x20 return" in script
        assert "0x1 " not in script
