"""nft / ip / sysctl 命令适配器

通过调用系统命令实现 rule_applier 中的 FirewallEngine 和 RoutePolicyEngine：

    nft -f -                                   # 一次事务加载整个规则集
    nft list table inet <name>                 # 按名称探测
    nft delete table inet <name>
    ip -4|-6 rule add fwmark <mark> lookup <table>
    ip -4|-6 route add local default dev lo table <table>
    sysctl -w net.ipv4.ip_forward=1

所有命令都不经过 shell；失败只通过返回值或 ApplyError 报告。
"""

import logging
import re
import subprocess
from typing import Dict, List, Optional, Tuple

from rule_applier import FirewallEngine, RoutePolicyEngine
from tproxy_errors import ApplyError

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 30

# "32765:	from all fwmark 0x1 lookup 100"
# "32765:	from all fwmark 0x1/0xff lookup 100"
RULE_LINE_PATTERN = re.compile(r'\bfwmark\s+(0x[0-9a-fA-F]+|\d+)(?:/(0x[0-9a-fA-F]+|\d+))?\s+lookup\s+(\S+)')

# 删除不存在的对象时各命令的提示
ABSENT_MARKERS = ("No such file or directory", "No such process", "does not exist", "Cannot find")


def run_command(cmd: List[str], input_text: Optional[str] = None,
                timeout: int = COMMAND_TIMEOUT) -> Tuple[bool, str, str]:
    """执行系统命令

    Args:
        cmd: 命令列表
        input_text: 写入 stdin 的内容
        timeout: 超时时间（秒）

    Returns:
        (success, stdout, stderr)，命令不存在或超时也只返回失败
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout
        )
        return result.returncode == 0, (result.stdout or "").strip(), (result.stderr or "").strip()
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out: {' '.join(cmd)}")
        return False, "", "timeout"
    except OSError as e:
        logger.debug(f"Command error: {' '.join(cmd)} - {e}")
        return False, "", str(e)


def _is_absent(stderr: str) -> bool:
    return any(marker in stderr for marker in ABSENT_MARKERS)


class NftEngine(FirewallEngine):
    """通过 nft 命令操作规则表"""

    def __init__(self, nft_bin: str = "nft"):
        self.nft_bin = nft_bin

    def load(self, script: str) -> None:
        cmd = [self.nft_bin, "-f", "-"]
        success, _, stderr = run_command(cmd, input_text=script)
        if not success:
            raise ApplyError("nftables load failed", command=cmd, stderr=stderr)

    def table_exists(self, family: str, name: str) -> bool:
        success, _, _ = run_command([self.nft_bin, "list", "table", family, name])
        return success

    def delete_table(self, family: str, name: str) -> bool:
        success, _, stderr = run_command([self.nft_bin, "delete", "table", family, name])
        if not success and not _is_absent(stderr):
            logger.debug(f"Table deletion note: {stderr}")
        return success


class IpRouteEngine(RoutePolicyEngine):
    """通过 ip 命令维护 fwmark 策略路由"""

    def __init__(self, ip_bin: str = "ip"):
        self.ip_bin = ip_bin

    def _ip(self, family: int, *args: str) -> List[str]:
        return [self.ip_bin, f"-{family}"] + list(args)

    def add_rule(self, mark: int, table_id: int, family: int) -> None:
        cmd = self._ip(family, "rule", "add", "fwmark", f"0x{mark:x}", "lookup", str(table_id))
        success, _, stderr = run_command(cmd)
        if not success:
            raise ApplyError(f"Failed to add IPv{family} policy rule", command=cmd, stderr=stderr)

    def delete_rule(self, mark: int, table_id: int, family: int) -> bool:
        cmd = self._ip(family, "rule", "del", "fwmark", f"0x{mark:x}", "lookup", str(table_id))
        success, _, stderr = run_command(cmd)
        if not success and not _is_absent(stderr):
            logger.debug(f"Rule deletion note: {stderr}")
        return success

    def rule_exists(self, mark: int, table_id: int, family: int) -> bool:
        # -N prints the table id even when rt_tables gives it a name
        success, stdout, _ = run_command(self._ip(family, "-N", "rule", "show"))
        if not success:
            return False
        return any(self._rule_matches(line, mark, table_id) for line in stdout.splitlines())

    @staticmethod
    def _rule_matches(line: str, mark: int, table_id: int) -> bool:
        match = RULE_LINE_PATTERN.search(line)
        if not match:
            return False
        rule_mark = int(match.group(1), 0)
        rule_mask = match.group(2)
        # 掩码为全 1 时与无掩码等价
        if rule_mask is not None and int(rule_mask, 0) != 0xFFFFFFFF:
            return False
        return rule_mark == mark and match.group(3) == str(table_id)

    def add_local_route(self, table_id: int, family: int) -> None:
        cmd = self._ip(family, "route", "add", "local", "default", "dev", "lo", "table", str(table_id))
        success, _, stderr = run_command(cmd)
        if not success:
            if "File exists" in stderr:
                logger.debug(f"IPv{family} local route in table {table_id} already exists")
                return
            raise ApplyError(f"Failed to add IPv{family} local route", command=cmd, stderr=stderr)

    def delete_local_route(self, table_id: int, family: int) -> bool:
        cmd = self._ip(family, "route", "del", "local", "default", "dev", "lo", "table", str(table_id))
        success, _, stderr = run_command(cmd)
        if not success and not _is_absent(stderr):
            logger.debug(f"Route deletion note: {stderr}")
        return success

    def route_exists(self, table_id: int, family: int) -> bool:
        success, stdout, _ = run_command(self._ip(family, "route", "show", "table", str(table_id)))
        if not success:
            return False
        for line in stdout.splitlines():
            parts = line.split()
            if parts[:2] == ["local", "default"] and "lo" in parts:
                return True
        return False


def kernel_sysctls(ipv6_enabled: bool) -> Dict[str, str]:
    """旁路由模式需要的内核参数

    - ip_forward: 作为网关转发局域网流量
    - rp_filter=0: TPROXY 回环投递的包会被反向路径过滤丢弃
    """
    values = {
        "net.ipv4.ip_forward": "1",
        "net.ipv4.conf.all.rp_filter": "0",
        "net.ipv4.conf.default.rp_filter": "0",
    }
    if ipv6_enabled:
        values["net.ipv6.conf.all.forwarding"] = "1"
    return values


class KernelTuner:
    """通过 sysctl -w 设置内核参数（尽力而为，不回滚）"""

    def __init__(self, sysctl_bin: str = "sysctl"):
        self.sysctl_bin = sysctl_bin

    def apply(self, values: Dict[str, str]) -> List[str]:
        """设置内核参数

        Returns:
            设置失败的参数名列表
        """
        failed = []
        for key, value in values.items():
            success, _, stderr = run_command([self.sysctl_bin, "-w", f"{key}={value}"])
            if success:
                logger.debug(f"sysctl {key}={value}")
            else:
                logger.warning(f"Failed to set {key}={value}: {stderr}")
                failed.append(key)
        return failed
