"""
Discovery Errors
================

Typed failures raised by the discovery engine.  Every error carries a
short ``kind`` string used for log lines and for picking the localized
status label in the tray application.
"""
from __future__ import annotations


class DiscoveryError(Exception):
    """Base class for all discovery failures.

    Parameters
    ----------
    message : str
        Human-readable description for logs.
    pid : int, optional
        Process id the failure relates to, when one was resolved.
    """

    kind = 'discovery_error'
    retryable = True

    def __init__(self, message: str = '', pid: int | None = None) -> None:
        super().__init__(message or self.kind)
        self.pid = pid


class ProcessNotFound(DiscoveryError):
    kind = 'process_not_found'


class TokenNotFound(DiscoveryError):
    kind = 'token_not_found'


class NoListeningPorts(DiscoveryError):
    kind = 'no_listening_ports'


class NoReachablePort(DiscoveryError):
    kind = 'no_reachable_port'


class NoDiagnosticTool(DiscoveryError):
    """None of the socket-listing utilities is installed.

    Retrying cannot change tool availability within the same run, so the
    orchestrator surfaces this one immediately.
    """

    kind = 'no_diagnostic_tool'
    retryable = False


class CommandExecutionFailed(DiscoveryError):
    """An OS command timed out, could not be started or exited with an error."""

    kind = 'command_failed'

    def __init__(self, message: str = '', pid: int | None = None, command: str = '') -> None:
        super().__init__(message, pid)
        self.command = command


class DiscoveryExhausted(DiscoveryError):
    """All attempts failed; ``kind`` mirrors the last attempt's error."""

    def __init__(self, last_error: DiscoveryError, attempts: int) -> None:
        super().__init__(f'discovery failed after {attempts} attempt(s): {last_error}', last_error.pid)
        self.last_error = last_error
        self.attempts = attempts
        self.kind = last_error.kind
