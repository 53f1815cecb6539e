"""
sing-box process supervisor.

Starts the proxy as a child with the manager's own stdout/stderr so its logs
appear inline, and yields a single TerminationEvent when it exits for any
reason. On Linux the child gets PR_SET_PDEATHSIG=SIGTERM, so a manager that
dies abruptly never leaves an unsupervised sing-box holding the TPROXY port.
"""

import asyncio
import ctypes
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from tproxy_errors import ProcessStartError

logger = logging.getLogger(__name__)

PR_SET_PDEATHSIG = 1
PR_GET_PDEATHSIG = 2
DEFAULT_RUN_ARGS = ("run", "-c")


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


class TerminationCause(Enum):
    """What ended the Running state"""
    SIGNAL = "signal"
    PROCESS_EXIT = "process-exit"


@dataclass(frozen=True)
class TerminationEvent:
    """First termination trigger observed by the coordinator"""
    cause: TerminationCause
    exit_status: Optional[int] = None
    signal_number: Optional[int] = None

    @property
    def description(self) -> str:
        if self.cause == TerminationCause.SIGNAL:
            return f"received {_signal_name(self.signal_number)}" if self.signal_number else "stop requested"
        if self.exit_status is not None and self.exit_status < 0:
            return f"sing-box killed by {_signal_name(-self.exit_status)}"
        return f"sing-box exited with status {self.exit_status}"


@dataclass
class ProxyProcess:
    """The one live proxy child"""
    executable_path: str
    config_path: str
    pid: int
    exit_status: Optional[int] = None


def _set_parent_death_signal() -> None:
    """Runs in the child between fork and exec"""
    # CDLL(None) resolves against the libc already mapped (glibc or musl)
    libc = ctypes.CDLL(None, use_errno=True)
    if libc.prctl(PR_SET_PDEATHSIG, int(signal.SIGTERM), 0, 0, 0) != 0:
        errno = ctypes.get_errno()
        raise OSError(errno, os.strerror(errno))


class ProxySupervisor:
    """Owns the sing-box child process for one manager run"""

    def __init__(self, executable_path: str, config_path: str,
                 run_args: Sequence[str] = DEFAULT_RUN_ARGS,
                 stop_timeout: float = 10.0):
        self.executable_path = executable_path
        self.config_path = config_path
        self.run_args = tuple(run_args)
        self.stop_timeout = stop_timeout
        self.process: Optional[ProxyProcess] = None
        self._proc: Optional[asyncio.subprocess.Process] = None

    @property
    def command(self) -> List[str]:
        return [self.executable_path, *self.run_args, self.config_path]

    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> ProxyProcess:
        """Start sing-box.

        Raises:
            ProcessStartError: a child is already running, or the executable
                is missing / not executable / failed to spawn
        """
        if self.is_alive():
            raise ProcessStartError(f"sing-box already running (PID: {self._proc.pid})")

        preexec_fn = _set_parent_death_signal if sys.platform.startswith("linux") else None
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=None,
                stderr=None,
                preexec_fn=preexec_fn,
            )
        except FileNotFoundError:
            raise ProcessStartError(f"sing-box executable not found: {self.executable_path}")
        except PermissionError:
            raise ProcessStartError(f"sing-box executable not runnable: {self.executable_path}")
        except (OSError, ValueError) as e:
            raise ProcessStartError(f"Failed to start sing-box: {e}")
        except subprocess.SubprocessError as e:
            # preexec_fn failed in the child
            raise ProcessStartError(f"Failed to prepare sing-box process: {e}")

        self.process = ProxyProcess(
            executable_path=self.executable_path,
            config_path=self.config_path,
            pid=self._proc.pid,
        )
        logger.info(f"sing-box started (PID: {self._proc.pid}): {' '.join(self.command)}")
        return self.process

    async def wait(self) -> TerminationEvent:
        """Block until the child exits, for whatever reason"""
        if self._proc is None:
            raise ProcessStartError("sing-box was never started")
        returncode = await self._proc.wait()
        if self.process is not None:
            self.process.exit_status = returncode
        return TerminationEvent(cause=TerminationCause.PROCESS_EXIT, exit_status=returncode)

    async def stop(self) -> Optional[int]:
        """Terminate the child: SIGTERM, then SIGKILL after stop_timeout.

        Returns:
            The child's return code, or None if it was never started
        """
        if self._proc is None:
            return None
        if self._proc.returncode is not None:
            return self._proc.returncode

        logger.info(f"Stopping sing-box (PID: {self._proc.pid})")
        try:
            self._proc.terminate()
        except ProcessLookupError:
            pass

        try:
            returncode = await asyncio.wait_for(self._proc.wait(), timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"sing-box did not exit within {self.stop_timeout}s, killing it")
            try:
                self._proc.kill()
            except ProcessLookupError:
                pass
            returncode = await self._proc.wait()

        if self.process is not None:
            self.process.exit_status = returncode
        logger.info(f"sing-box stopped (status: {returncode})")
        return returncode
