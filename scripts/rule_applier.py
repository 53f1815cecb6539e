"""
Rule applier: installs and removes the interception state on the host.

The applied state has no in-memory handle. It is the nft table plus the
fwmark policy rule and the local route in the dedicated table, and it is
found again purely by name (table name, mark, route table id). Teardown
therefore works after a crash that lost all process memory.

Collaborators are two narrow interfaces so the applier can be exercised
with fakes:

    FirewallEngine      load / table_exists / delete_table
    RoutePolicyEngine   add/delete/exists for the fwmark rule and local route
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterable, Tuple

from nft_ruleset import RuleSet
from tproxy_errors import ApplyError, TproxyError
from tproxy_settings import ManagerSettings

logger = logging.getLogger(__name__)

ADDRESS_FAMILIES: Tuple[int, ...] = (4, 6)


class FirewallEngine(ABC):
    """Declarative firewall (nftables) operations"""

    @abstractmethod
    def load(self, script: str) -> None:
        """Load a complete ruleset in one transaction; raise ApplyError on failure"""

    @abstractmethod
    def table_exists(self, family: str, name: str) -> bool:
        """Whether the named table is currently loaded"""

    @abstractmethod
    def delete_table(self, family: str, name: str) -> bool:
        """Delete the named table; return False if nothing was deleted"""


class RoutePolicyEngine(ABC):
    """Policy routing operations keyed by mark and table id"""

    @abstractmethod
    def add_rule(self, mark: int, table_id: int, family: int) -> None:
        """Add ``fwmark <mark> lookup <table_id>``; raise ApplyError on failure"""

    @abstractmethod
    def delete_rule(self, mark: int, table_id: int, family: int) -> bool:
        """Delete one matching rule; return False if none was deleted"""

    @abstractmethod
    def rule_exists(self, mark: int, table_id: int, family: int) -> bool:
        """Whether at least one matching rule is installed"""

    @abstractmethod
    def add_local_route(self, table_id: int, family: int) -> None:
        """Add ``local default dev lo`` to the table; raise ApplyError on failure"""

    @abstractmethod
    def delete_local_route(self, table_id: int, family: int) -> bool:
        """Delete the local default route; return False if none was deleted"""

    @abstractmethod
    def route_exists(self, table_id: int, family: int) -> bool:
        """Whether the local default route is present in the table"""


class RuleApplier:
    """Applies a RuleSet and its policy routing as one logical unit.

    ``apply`` always clears any stale state first and rolls back on failure;
    ``teardown`` is idempotent and never raises.
    """

    def __init__(self, firewall: FirewallEngine, routes: RoutePolicyEngine,
                 settings: ManagerSettings):
        self.firewall = firewall
        self.routes = routes
        self.settings = settings

    def apply(self, ruleset: RuleSet) -> None:
        """Install the ruleset and the matching policy routing entries.

        Raises:
            ApplyError: any step failed; everything installed so far has
                already been removed when this propagates
        """
        logger.info(f"Removing stale state before applying table {ruleset.table_name}")
        self._remove_all()

        families = (4, 6) if ruleset.ipv6_enabled else (4,)
        try:
            self.firewall.load(ruleset.render())
            logger.info(f"nftables table {ruleset.family} {ruleset.table_name} loaded")

            for family in families:
                self.routes.add_rule(ruleset.fw_mark, ruleset.route_table_id, family)
                self.routes.add_local_route(ruleset.route_table_id, family)
                logger.info(f"Policy routing (IPv{family}): fwmark 0x{ruleset.fw_mark:x} "
                            f"-> table {ruleset.route_table_id} -> local default dev lo")
        except ApplyError as e:
            logger.error(f"Apply failed, rolling back: {e}")
            self.teardown()
            raise

    def teardown(self) -> None:
        """Remove every trace of interception state, current and legacy.

        Safe on a clean host and safe to call any number of times.
        """
        logger.info("Removing interception rules and policy routing")
        self._remove_all()

    def _remove_all(self) -> None:
        self._remove_tables(self.settings.all_table_names)
        for family in ADDRESS_FAMILIES:
            self._remove_policy_routing(family)

    def _remove_tables(self, names: Iterable[str]) -> None:
        family = self.settings.table_family
        for name in names:
            try:
                if not self.firewall.table_exists(family, name):
                    continue
                if self.firewall.delete_table(family, name):
                    logger.info(f"Deleted nftables table {family} {name}")
            except (TproxyError, OSError) as e:
                logger.debug(f"Ignoring error deleting table {family} {name}: {e}")

    def _remove_policy_routing(self, family: int) -> None:
        mark = self.settings.fwmark
        table_id = self.settings.route_table_id

        # Earlier runs may have stacked duplicate rules; remove them all
        removed = self._purge(lambda: self.routes.rule_exists(mark, table_id, family),
                              lambda: self.routes.delete_rule(mark, table_id, family))
        if removed:
            logger.info(f"Deleted {removed} IPv{family} rule(s) fwmark 0x{mark:x} lookup {table_id}")

        removed = self._purge(lambda: self.routes.route_exists(table_id, family),
                              lambda: self.routes.delete_local_route(table_id, family))
        if removed:
            logger.info(f"Deleted IPv{family} local default route from table {table_id}")

    def _purge(self, exists, delete) -> int:
        """Delete while the resource still exists, bounded by max_purge_rounds"""
        removed = 0
        for _ in range(self.settings.max_purge_rounds):
            try:
                if not exists() or not delete():
                    break
            except (TproxyError, OSError) as e:
                logger.debug(f"Ignoring teardown error: {e}")
                break
            removed += 1
        return removed
