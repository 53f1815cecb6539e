"""
Unit tests for rule_applier.py - apply/teardown against in-memory engines.
"""

import pytest

from conftest import FakeFirewall, FakeRoutes
from nft_ruleset import compile_ruleset
from rule_applier import RuleApplier
from tproxy_errors import ApplyError
from tproxy_params import InterceptParams


@pytest.fixture
def ruleset(settings):
    params = InterceptParams(tproxy_port=7893, lan_cidr="10.0.0.0/24", dns_port=1053, dns_hijack=True)
    return compile_ruleset(params, settings)


@pytest.fixture
def ruleset_v6(settings):
    params = InterceptParams(tproxy_port=7893, lan_cidr="10.0.0.0/24", ipv6_enabled=True)
    return compile_ruleset(params, settings)


class CountingApplier(RuleApplier):
    """Counts public teardown() calls"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.teardown_calls = 0

    def teardown(self) -> None:
        self.teardown_calls += 1
        super().teardown()


class TestApply:
    """Tests for RuleApplier.apply()."""

    def test_apply_installs_table_and_routing(self, settings, fake_firewall, fake_routes, ruleset):
        applier = RuleApplier(fake_firewall, fake_routes, settings)
        applier.apply(ruleset)

        assert fake_firewall.table_exists("inet", "tproxy_test")
        assert fake_firewall.loaded == [ruleset.render()]
        assert fake_routes.rule_exists(0x1, 201, 4)
        assert fake_routes.route_exists(201, 4)
        assert not fake_routes.rule_exists(0x1, 201, 6)

    def test_apply_ipv6_installs_both_families(self, settings, fake_firewall, fake_routes, ruleset_v6):
        RuleApplier(fake_firewall, fake_routes, settings).apply(ruleset_v6)

        for family in (4, 6):
            assert fake_routes.rule_exists(0x1, 201, family)
            assert fake_routes.route_exists(201, family)

    def test_apply_replaces_stale_state(self, settings, fake_firewall, fake_routes, ruleset):
        fake_firewall.tables.add(("inet", "tproxy_test"))
        fake_firewall.tables.add(("inet", "tproxy_test_old"))
        fake_routes.rules[(0x1, 201, 4)] = 3

        RuleApplier(fake_firewall, fake_routes, settings).apply(ruleset)

        assert fake_firewall.tables == {("inet", "tproxy_test")}
        assert fake_routes.rules[(0x1, 201, 4)] == 1

    def test_reapply_does_not_stack_rules(self, settings, fake_firewall, fake_routes, ruleset):
        applier = RuleApplier(fake_firewall, fake_routes, settings)
        applier.apply(ruleset)
        applier.apply(ruleset)

        assert fake_routes.rules == {(0x1, 201, 4): 1}

    def test_load_failure_rolls_back_once(self, settings, fake_routes, ruleset):
        firewall = FakeFirewall(fail_load=True)
        applier = CountingApplier(firewall, fake_routes, settings)

        with pytest.raises(ApplyError) as exc_info:
            applier.apply(ruleset)

        assert exc_info.value.exit_code == 3
        assert "syntax error" in str(exc_info.value)
        assert applier.teardown_calls == 1
        assert not firewall.tables
        assert fake_routes.empty
        assert "add_rule/4" not in fake_routes.calls

    def test_routing_failure_removes_loaded_table(self, settings, fake_firewall, ruleset_v6):
        routes = FakeRoutes(fail_on="add_rule/6")
        applier = CountingApplier(fake_firewall, routes, settings)

        with pytest.raises(ApplyError):
            applier.apply(ruleset_v6)

        assert applier.teardown_calls == 1
        assert not fake_firewall.tables
        assert routes.empty


class TestTeardown:
    """Tests for RuleApplier.teardown()."""

    def test_teardown_on_clean_host(self, settings, fake_firewall, fake_routes):
        RuleApplier(fake_firewall, fake_routes, settings).teardown()

        assert not fake_firewall.tables
        assert fake_routes.empty
        assert not any(call.startswith("delete_table") for call in fake_firewall.calls)

    @pytest.mark.parametrize("times", [1, 2, 5])
    def test_teardown_is_idempotent(self, settings, fake_firewall, fake_routes, ruleset_v6, times):
        applier = RuleApplier(fake_firewall, fake_routes, settings)
        applier.apply(ruleset_v6)

        for _ in range(times):
            applier.teardown()

        assert not fake_firewall.tables
        assert fake_routes.empty

    def test_teardown_removes_legacy_tables(self, settings, fake_firewall, fake_routes):
        fake_firewall.tables.add(("inet", "tproxy_test_old"))
        RuleApplier(fake_firewall, fake_routes, settings).teardown()
        assert not fake_firewall.tables

    def test_teardown_purges_duplicate_rules(self, settings, fake_firewall, fake_routes):
        fake_routes.rules[(0x1, 201, 4)] = 5
        fake_routes.rules[(0x1, 201, 6)] = 2

        RuleApplier(fake_firewall, fake_routes, settings).teardown()

        assert fake_routes.empty

    def test_purge_is_bounded(self, settings, fake_firewall):
        class StuckRoutes(FakeRoutes):
            def __init__(self):
                super().__init__()
                self.deletes = 0

            def rule_exists(self, mark, table_id, family):
                return True

            def delete_rule(self, mark, table_id, family):
                self.deletes += 1
                return True

        routes = StuckRoutes()
        RuleApplier(fake_firewall, routes, settings).teardown()

        assert routes.deletes == settings.max_purge_rounds * 2

    def test_teardown_survives_engine_errors(self, settings, fake_routes):
        class BrokenFirewall(FakeFirewall):
            def table_exists(self, family, name):
                raise OSError("nft: command not found")

        applier = RuleApplier(BrokenFirewall(), fake_routes, settings)
        applier.teardown()
