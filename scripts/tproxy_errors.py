"""
Error taxonomy and exit codes for the transparent proxy manager.

Every fatal outcome is a TproxyError subclass whose ``exit_code`` lets
scripts and monitoring tell the failure categories apart. A proxy crash is
not an exception: it is a normal termination event whose status is echoed
by ``exit_code_for_termination``.
"""

from typing import Optional

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_RESOLUTION_FAILED = 2
EXIT_APPLY_FAILED = 3
EXIT_START_FAILED = 4


class TproxyError(Exception):
    """Base class for fatal manager errors"""

    exit_code = EXIT_USAGE

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ResolutionError(TproxyError):
    """Interception parameters could not be determined; no rule was touched"""

    exit_code = EXIT_RESOLUTION_FAILED


class MissingParameter(ResolutionError):
    """A required input (LAN CIDR, config path) is absent or malformed"""
    pass


class NoInterceptInbound(ResolutionError):
    """The proxy config has no usable transparent-proxy inbound"""
    pass


class InvalidSettings(ResolutionError):
    """Manager settings are inconsistent (e.g. colliding marks)"""
    pass


class ApplyError(TproxyError):
    """A firewall or policy-routing command failed during apply"""

    exit_code = EXIT_APPLY_FAILED

    def __init__(self, message: str, command: Optional[list] = None, stderr: str = ""):
        self.command = command
        self.stderr = stderr
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)


class ProcessStartError(TproxyError):
    """The proxy executable is missing or could not be started"""

    exit_code = EXIT_START_FAILED


def exit_code_for_termination(returncode: Optional[int]) -> int:
    """Map a child's return code to the manager's exit status.

    Args:
        returncode: ``Popen.returncode`` style value; negative means the
            child was killed by that signal number

    Returns:
        0 for a clean exit, the child's code for a failure, ``128 + signum``
        for a signal death (shell convention)
    """
    if returncode is None or returncode == 0:
        return EXIT_OK
    if returncode < 0:
        return 128 + (-returncode)
    return returncode
