#!/usr/bin/env python3
"""
sing-box TPROXY Manager

Turns this host into a transparent interceptor for LAN and local traffic:
programs an nftables table plus fwmark policy routing, runs sing-box, and
removes every rule again when sing-box stops for any reason.

Lifecycle:
    Idle -> Applying -> Running -> Cleaning -> Terminated
                 \\-> ApplyFailed -> Terminated

Running ends on the first of {SIGINT/SIGTERM, sing-box exit}. Both sources
feed a single-slot queue; only the first event is acted on, a later one is
logged and ignored, so teardown happens exactly once.

Usage:
    sudo python3 tproxy_manager.py --lan 10.0.0.0/24 -c /etc/sing-box/config.json
    sudo python3 tproxy_manager.py --lan 10.0.0.0/24 --ipv6 enable --masquerade -c config.json
    python3 tproxy_manager.py --lan 10.0.0.0/24 -c config.json --print-rules
    sudo python3 tproxy_manager.py --cleanup

Exit codes:
    0 graceful stop, 1 usage, 2 bad parameters/config, 3 rule apply failed,
    4 sing-box failed to start, otherwise sing-box's own exit status
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from log_config import get_logger, setup_logging
from nft_ruleset import compile_ruleset
from proxy_supervisor import ProxySupervisor, TerminationCause, TerminationEvent
from rule_applier import RuleApplier
from system_engines import IpRouteEngine, KernelTuner, NftEngine, kernel_sysctls
from tproxy_errors import (
    EXIT_OK,
    EXIT_USAGE,
    ApplyError,
    MissingParameter,
    ProcessStartError,
    ResolutionError,
    exit_code_for_termination,
)
from tproxy_params import InterceptParams, resolve
from tproxy_settings import ManagerSettings, load_settings

logger = get_logger("tproxy-manager")

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class LifecycleState(Enum):
    """States of one manager run"""
    IDLE = "idle"
    APPLYING = "applying"
    RUNNING = "running"
    CLEANING = "cleaning"
    APPLY_FAILED = "apply-failed"
    TERMINATED = "terminated"


class LifecycleCoordinator:
    """
    Ties rule application, sing-box supervision and teardown together.

    Single-shot: ``run`` may be awaited once per instance.
    """

    def __init__(self, params: InterceptParams, settings: ManagerSettings,
                 applier: RuleApplier, supervisor: ProxySupervisor,
                 kernel: Optional[KernelTuner] = None,
                 handled_signals: Sequence[int] = HANDLED_SIGNALS):
        self.params = params
        self.settings = settings
        self.applier = applier
        self.supervisor = supervisor
        self.kernel = kernel
        self.handled_signals = tuple(handled_signals)

        self.state = LifecycleState.IDLE
        self.history: List[LifecycleState] = [LifecycleState.IDLE]
        self.termination: Optional[TerminationEvent] = None

        self._events: Optional[asyncio.Queue] = None
        self._cleaned_up = False

    def _transition(self, state: LifecycleState) -> None:
        logger.debug(f"State: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def notify_signal(self, signum: int) -> None:
        """Signal-listener producer (also usable directly to request a stop)"""
        self._offer(TerminationEvent(cause=TerminationCause.SIGNAL, signal_number=signum))

    def _offer(self, event: TerminationEvent) -> None:
        if self._events is None:
            logger.debug(f"Ignoring {event.description}: manager not started")
            return
        if self.termination is not None:
            logger.warning(f"Ignoring {event.description}: shutdown already in progress")
            return
        try:
            self._events.put_nowait(event)
            logger.info(f"Termination trigger: {event.description}")
        except asyncio.QueueFull:
            logger.warning(f"Ignoring {event.description}: shutdown already in progress")

    async def _watch_process(self) -> None:
        """Process-exit producer"""
        event = await self.supervisor.wait()
        self._offer(event)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self.handled_signals:
            loop.add_signal_handler(sig, self.notify_signal, sig)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self.handled_signals:
            loop.remove_signal_handler(sig)

    def _teardown_once(self) -> None:
        if self._cleaned_up:
            return
        self._cleaned_up = True
        self.applier.teardown()

    def _fail(self, error: Exception, exit_code: int) -> int:
        logger.error(str(error))
        self._transition(LifecycleState.APPLY_FAILED)
        self._transition(LifecycleState.TERMINATED)
        return exit_code

    async def run(self) -> int:
        """Run the whole lifecycle and return the process exit status"""
        if self.state != LifecycleState.IDLE:
            raise RuntimeError("LifecycleCoordinator.run() may only be called once")

        loop = asyncio.get_running_loop()
        self._events = asyncio.Queue(maxsize=1)
        # Installed before Applying so an early SIGTERM cannot kill us mid-apply
        self._install_signal_handlers(loop)
        try:
            return await self._run(loop)
        finally:
            self._remove_signal_handlers(loop)

    async def _run(self, loop: asyncio.AbstractEventLoop) -> int:
        self._transition(LifecycleState.APPLYING)
        ruleset = compile_ruleset(self.params, self.settings)

        if self.kernel is not None:
            self.kernel.apply(kernel_sysctls(self.params.ipv6_enabled))

        try:
            self.applier.apply(ruleset)
        except ApplyError as e:
            # apply() has already rolled back its partial state
            self._cleaned_up = True
            return self._fail(e, e.exit_code)

        # From here on the rules are installed; no exit path may leave them
        try:
            return await self._supervise(loop)
        finally:
            self._teardown_once()

    async def _supervise(self, loop: asyncio.AbstractEventLoop) -> int:
        try:
            await self.supervisor.start()
        except ProcessStartError as e:
            self._teardown_once()
            return self._fail(e, e.exit_code)

        self._transition(LifecycleState.RUNNING)
        logger.info(f"Proxy running. LAN: {self.params.lan_cidr}, "
                    f"IPv6: {'enable' if self.params.ipv6_enabled else 'disable'}, "
                    f"TPROXY: {self.params.tproxy_port}, "
                    f"DNS: {self.params.dns_port if self.params.dns_hijack else 'off'}")

        watcher = loop.create_task(self._watch_process())
        try:
            event = await self._events.get()
            self.termination = event
            self._transition(LifecycleState.CLEANING)
            if event.cause == TerminationCause.SIGNAL:
                await self.supervisor.stop()
        finally:
            try:
                if self.state != LifecycleState.CLEANING:
                    self._transition(LifecycleState.CLEANING)
                    await self.supervisor.stop()
            finally:
                self._teardown_once()
                if watcher.done() or not self.supervisor.is_alive():
                    await asyncio.gather(watcher, return_exceptions=True)
                else:
                    watcher.cancel()

        self._transition(LifecycleState.TERMINATED)

        if event.cause == TerminationCause.SIGNAL:
            logger.info("Stopped on request, network restored")
            return EXIT_OK

        exit_code = exit_code_for_termination(event.exit_status)
        if exit_code == EXIT_OK:
            logger.info("sing-box exited cleanly, network restored")
        else:
            logger.error(f"{event.description}, network restored")
        return exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run sing-box as a TPROXY transparent proxy and manage its nftables rules"
    )
    parser.add_argument("-c", "--config", help="sing-box configuration file")
    parser.add_argument("--lan", help="LAN CIDR(s), comma separated (e.g. 10.0.0.0/24)")
    parser.add_argument("--ipv6", default=None, help="IPv6 mode: enable or disable (default: disable)")
    parser.add_argument("--masquerade", action="store_true",
                        help="Masquerade forwarded LAN traffic (side-gateway mode)")
    parser.add_argument("--singbox", help="sing-box executable (default: /usr/bin/sing-box or $SINGBOX_BIN)")
    parser.add_argument("--settings", type=Path, help="YAML file overriding table name, marks, etc.")
    parser.add_argument("--cleanup", action="store_true",
                        help="Only remove rules left by a previous run, then exit")
    parser.add_argument("--print-rules", action="store_true",
                        help="Print the compiled nftables ruleset and exit without touching the host")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    return parser


def _read_config(path: Optional[str]) -> bytes:
    if not path:
        raise MissingParameter("sing-box config path is required (-c config.json)")
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise MissingParameter(f"Cannot read sing-box config {path}: {e}")


def _is_root() -> bool:
    return os.geteuid() == 0


def run(argv: Optional[Sequence[str]] = None,
        applier: Optional[RuleApplier] = None,
        supervisor: Optional[ProxySupervisor] = None,
        kernel: Optional[KernelTuner] = None,
        require_root: bool = True) -> int:
    """Parse arguments and run one manager invocation.

    Collaborators may be injected for tests; by default the real nft/ip/
    sysctl adapters and sing-box supervisor are built from the settings.
    """
    args = build_parser().parse_args(argv)

    if args.verbose:
        setup_logging(level=logging.DEBUG, force=True)

    try:
        settings = load_settings(args.settings)
        if args.singbox:
            settings = replace(settings, singbox_path=args.singbox)
    except ResolutionError as e:
        logger.error(str(e))
        return e.exit_code

    if applier is None:
        applier = RuleApplier(NftEngine(settings.nft_bin), IpRouteEngine(settings.ip_bin), settings)

    if args.cleanup:
        if require_root and not _is_root():
            logger.error("Root privileges are required to remove rules")
            return EXIT_USAGE
        applier.teardown()
        logger.info("Cleanup complete")
        return EXIT_OK

    try:
        params = resolve(args, _read_config(args.config), settings)
    except ResolutionError as e:
        logger.error(str(e))
        return e.exit_code

    if args.print_rules:
        print(compile_ruleset(params, settings).render(), end="")
        return EXIT_OK

    if require_root and not _is_root():
        logger.error("Root privileges are required (run with sudo)")
        return EXIT_USAGE

    if supervisor is None:
        supervisor = ProxySupervisor(settings.singbox_path, str(Path(args.config).resolve()),
                                     stop_timeout=settings.stop_timeout)
    if kernel is None and settings.kernel_tuning:
        kernel = KernelTuner(settings.sysctl_bin)

    coordinator = LifecycleCoordinator(params, settings, applier, supervisor, kernel)
    return asyncio.run(coordinator.run())


def main() -> int:
    return run(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(main())
