"""
Pytest configuration and fixtures for sing-box TPROXY manager tests.
"""

import json
import sys
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Optional, Set, Tuple

import pytest

# Add scripts directory to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

from rule_applier import FirewallEngine, RoutePolicyEngine  # noqa: E402
from tproxy_errors import ApplyError  # noqa: E402
from tproxy_settings import ManagerSettings  # noqa: E402


class FakeFirewall(FirewallEngine):
    """In-memory nftables: table names present plus a call log"""

    def __init__(self, fail_load: bool = False):
        self.tables: Set[Tuple[str, str]] = set()
        self.loaded: List[str] = []
        self.calls: List[str] = []
        self.fail_load = fail_load

    def load(self, script: str) -> None:
        self.calls.append("load")
        if self.fail_load:
            raise ApplyError("nftables load failed", command=["nft", "-f", "-"], stderr="syntax error")
        self.loaded.append(script)
        # "table inet NAME {"
        _, family, name, _ = script.splitlines()[0].split()
        self.tables.add((family, name))

    def table_exists(self, family: str, name: str) -> bool:
        return (family, name) in self.tables

    def delete_table(self, family: str, name: str) -> bool:
        self.calls.append(f"delete_table {name}")
        if (family, name) in self.tables:
            self.tables.remove((family, name))
            return True
        return False


class FakeRoutes(RoutePolicyEngine):
    """In-memory policy routing; rules may be stacked like the kernel allows"""

    def __init__(self, fail_on: Optional[str] = None):
        self.rules: Dict[Tuple[int, int, int], int] = {}
        self.local_routes: Set[Tuple[int, int]] = set()
        self.calls: List[str] = []
        self.fail_on = fail_on

    def _maybe_fail(self, op: str, family: int) -> None:
        if self.fail_on == f"{op}/{family}":
            raise ApplyError(f"Failed: {op} IPv{family}", stderr="RTNETLINK answers: Operation not permitted")

    def add_rule(self, mark: int, table_id: int, family: int) -> None:
        self.calls.append(f"add_rule/{family}")
        self._maybe_fail("add_rule", family)
        key = (mark, table_id, family)
        self.rules[key] = self.rules.get(key, 0) + 1

    def delete_rule(self, mark: int, table_id: int, family: int) -> bool:
        key = (mark, table_id, family)
        if not self.rules.get(key):
            return False
        self.rules[key] -= 1
        if not self.rules[key]:
            del self.rules[key]
        return True

    def rule_exists(self, mark: int, table_id: int, family: int) -> bool:
        return bool(self.rules.get((mark, table_id, family)))

    def add_local_route(self, table_id: int, family: int) -> None:
        self.calls.append(f"add_local_route/{family}")
        self._maybe_fail("add_local_route", family)
        self.local_routes.add((table_id, family))

    def delete_local_route(self, table_id: int, family: int) -> bool:
        if (table_id, family) in self.local_routes:
            self.local_routes.remove((table_id, family))
            return True
        return False

    def route_exists(self, table_id: int, family: int) -> bool:
        return (table_id, family) in self.local_routes

    @property
    def empty(self) -> bool:
        return not self.rules and not self.local_routes


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings() -> ManagerSettings:
    """Settings with names that cannot collide with a real installation."""
    return ManagerSettings(table_name="tproxy_test", legacy_table_names=("tproxy_test_old",),
                           route_table_id=201, stop_timeout=2.0, max_purge_rounds=8)


@pytest.fixture
def fake_firewall() -> FakeFirewall:
    return FakeFirewall()


@pytest.fixture
def fake_routes() -> FakeRoutes:
    return FakeRoutes()


@pytest.fixture
def sample_singbox_config() -> dict:
    """sing-box config with a TPROXY inbound, a DNS inbound and a self mark."""
    return {
        "log": {"level": "info"},
        "inbounds": [
            {"type": "tproxy", "tag": "tproxy-in", "listen": "::", "listen_port": 7893},
            {"type": "direct", "tag": "dns-in", "listen": "::", "listen_port": 1053},
        ],
        "outbounds": [{"type": "direct", "tag": "direct"}],
        "route": {"default_mark": 255, "auto_detect_interface": True},
    }


@pytest.fixture
def sample_config_bytes(sample_singbox_config) -> bytes:
    return json.dumps(sample_singbox_config).encode()


@pytest.fixture
def sample_config_file(temp_dir: Path, sample_singbox_config) -> Path:
    path = temp_dir / "config.json"
    path.write_text(json.dumps(sample_singbox_config, indent=2))
    return path
