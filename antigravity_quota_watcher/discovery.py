"""
Port Discovery
==============

Finds the Antigravity language server's HTTPS port and CSRF token without
any configuration:

1. enumerate processes and pick the language server (``parsing``),
2. list the loopback ports that process listens on,
3. probe each port with an authenticated status request,
4. repeat the whole pipeline a few times if any stage fails.

Every call re-runs the pipeline; the port/token pair is only valid for
the lifetime of one language server process.
"""
from __future__ import annotations

import enum
import logging
import os
import subprocess
import time
import warnings
from dataclasses import dataclass
from typing import Callable, TypeVar

import requests
from urllib3.exceptions import InsecureRequestWarning

from .errors import (
    CommandExecutionFailed,
    DiscoveryError,
    DiscoveryExhausted,
    NoListeningPorts,
    NoReachablePort,
)
from .parsing import ExtractedCredential, ProcessCandidate, parse_listening_ports, resolve_process
from .platforms import Notify, PlatformStrategy, get_strategy

log = logging.getLogger(__name__)

# ── Configuration ──────────────────────────────────────────────
DISCOVERY_ATTEMPTS = 3
DISCOVERY_RETRY_DELAY = 2.0  # Seconds between attempts
COMMAND_TIMEOUT = 5  # Seconds per process/port listing command
PROBE_TIMEOUT = 2  # Seconds per port probe

SERVICE_PATH = '/exa.language_server_pb.LanguageServerService'
STATUS_PATH = f'{SERVICE_PATH}/GetUserStatus'
CLIENT_METADATA = {
    'ideName': 'antigravity',
    'extensionName': 'antigravity',
    'locale': 'en',
}
# ───────────────────────────────────────────────────────────────

R = TypeVar('R')


@dataclass(frozen=True)
class ProbeResult:
    port: int
    reachable: bool


@dataclass(frozen=True)
class DiscoveryOutcome:
    """Validated endpoint of the running language server.

    ``https_port`` answered the probe.  ``http_port`` is the
    ``--extension_server_port`` argument, which is never probed; it equals
    ``https_port`` when the argument was absent.
    """

    https_port: int
    http_port: int
    token: str
    pid: int
    confidence: str = 'high'


def service_headers(token: str) -> dict[str, str]:
    """Return the Connect protocol headers authenticating with *token*."""
    return {
        'Content-Type': 'application/json',
        'Connect-Protocol-Version': '1',
        'X-Codeium-Csrf-Token': token,
    }


# ── OS commands ────────────────────────────────────────────────


def run_command(command: str, timeout: float = COMMAND_TIMEOUT, pid: int | None = None) -> str:
    """Run a shell *command* and return its stdout.

    Exit status 1 without anything on stderr is how ``grep``, ``findstr``
    and ``lsof`` report "nothing matched", so it yields the (empty) output
    instead of an error.

    Raises
    ------
    CommandExecutionFailed
        The command timed out, could not be started, or failed with a
        message on stderr.
    """
    log.debug('Running: %s', command)
    try:
        result = subprocess.run(
            command, shell=True, capture_output=True, text=True, errors='replace', timeout=timeout,
            creationflags=getattr(subprocess, 'CREATE_NO_WINDOW', 0),
        )
    except subprocess.TimeoutExpired as e:
        raise CommandExecutionFailed(f'command timed out after {timeout}s', pid=pid, command=command) from e
    except OSError as e:
        raise CommandExecutionFailed(f'command could not be started: {e}', pid=pid, command=command) from e

    stderr = (result.stderr or '').strip()
    if result.returncode != 0 and (stderr or result.returncode != 1):
        raise CommandExecutionFailed(
            f'command exited with status {result.returncode}: {stderr[:200]}', pid=pid, command=command,
        )

    return result.stdout or ''


def list_listening_ports(strategy: PlatformStrategy, pid: int) -> list[int]:
    """Return the ascending, deduplicated loopback ports *pid* listens on."""
    output = run_command(strategy.get_port_list_command(pid), pid=pid)
    ports = parse_listening_ports(output, tool=strategy.grammar, pid=pid)
    log.debug('PID %d listening ports: %s', pid, ports)
    return ports


# ── Probing ────────────────────────────────────────────────────


def probe_port(port: int, token: str, timeout: float = PROBE_TIMEOUT) -> ProbeResult:
    """Send one authenticated status request to ``https://127.0.0.1:<port>``.

    The language server uses a self-signed certificate on loopback, so
    certificate verification is off for this request only.  Only HTTP 200
    counts as reachable; errors and timeouts are not retried here.
    """
    url = f'https://127.0.0.1:{port}{STATUS_PATH}'
    try:
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', InsecureRequestWarning)
            resp = requests.post(
                url, json={'metadata': CLIENT_METADATA}, headers=service_headers(token),
                timeout=timeout, verify=False,
            )
    except requests.RequestException as e:
        log.debug('Port %d probe failed: %s', port, e)
        return ProbeResult(port, False)

    log.debug('Port %d responded with HTTP %d', port, resp.status_code)
    return ProbeResult(port, resp.status_code == 200)


def find_reachable_port(ports: list[int], token: str) -> int | None:
    """Probe *ports* in ascending order and return the first that answers."""
    for port in sorted(ports):
        if probe_port(port, token).reachable:
            log.info('Working API port found: %d', port)
            return port

    return None


# ── Retry orchestration ───────────────────────────────────────


class DiscoveryState(enum.Enum):
    IDLE = 'idle'
    ATTEMPTING = 'attempting'
    SUCCESS = 'success'
    EXHAUSTED = 'exhausted'


class RetryOrchestrator:
    """Run a pipeline up to *attempts* times with a fixed *delay* in between.

    A failing attempt is abandoned as a whole; there is no per-stage
    retry.  No delay follows the final attempt.
    """

    def __init__(
        self, attempts: int = DISCOVERY_ATTEMPTS, delay: float = DISCOVERY_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if attempts < 1:
            raise ValueError(f'attempts must be at least 1, got {attempts}')
        self.attempts = attempts
        self.delay = delay
        self.sleep = sleep
        self.state = DiscoveryState.IDLE
        self.attempt = 0

    def run(self, pipeline: Callable[[], R]) -> R:
        """Return the first successful result of *pipeline*.

        Raises
        ------
        DiscoveryError
            Immediately, for errors that are not ``retryable``.
        DiscoveryExhausted
            After the last attempt failed; carries that attempt's error.
        """
        self.attempt = 0
        last_error: DiscoveryError | None = None

        while self.attempt < self.attempts:
            self.attempt += 1
            self.state = DiscoveryState.ATTEMPTING
            try:
                result = pipeline()
            except DiscoveryError as e:
                log.warning(
                    'Discovery attempt %d/%d failed at %s (pid=%s): %s',
                    self.attempt, self.attempts, e.kind, e.pid if e.pid is not None else '?', e,
                )
                if not e.retryable:
                    self.state = DiscoveryState.EXHAUSTED
                    raise
                last_error = e
                if self.attempt < self.attempts:
                    self.sleep(self.delay)
                continue

            self.state = DiscoveryState.SUCCESS
            return result

        self.state = DiscoveryState.EXHAUSTED
        assert last_error is not None
        raise DiscoveryExhausted(last_error, self.attempts)


# ── Facade ─────────────────────────────────────────────────────


class PortDiscovery:
    """Entry point turning "no known endpoint" into a validated :class:`DiscoveryOutcome`.

    Parameters
    ----------
    strategy : PlatformStrategy, optional
        Defaults to the strategy for the running OS.
    attempts, delay : optional
        Retry bound and seconds between attempts.
    caller_pid : int, optional
        Process id used to prefer a direct child among several candidates.
        Defaults to this process.
    notify : callable, optional
        Remediation side channel, passed to the default strategy.
    sleep : callable, optional
        Used between attempts (injectable for tests).
    """

    def __init__(
        self, strategy: PlatformStrategy | None = None, *, attempts: int = DISCOVERY_ATTEMPTS,
        delay: float = DISCOVERY_RETRY_DELAY, caller_pid: int | None = None,
        notify: Notify | None = None, sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.strategy = strategy or get_strategy(notify=notify)
        self.caller_pid = os.getpid() if caller_pid is None else caller_pid
        self.orchestrator = RetryOrchestrator(attempts, delay, sleep)

    def discover(self) -> DiscoveryOutcome:
        """Run the full discovery pipeline.

        Raises
        ------
        NoDiagnosticTool
            No socket-listing tool is installed (not retried).
        DiscoveryExhausted
            Every attempt failed; ``kind`` names the last failing stage.
        """
        self.strategy.ensure_diagnostic_tool()
        outcome = self.orchestrator.run(self._attempt)
        log.info(
            'Discovered language server PID %d: https_port=%d, http_port=%d, token=%s...',
            outcome.pid, outcome.https_port, outcome.http_port, outcome.token[:8],
        )
        return outcome

    def _attempt(self) -> DiscoveryOutcome:
        output = run_command(self.strategy.get_process_list_command())
        candidate, credential = resolve_process(output, self.caller_pid)
        log.debug(
            'Candidate PID %d (parent %d): extension_port=%s, token=%s...',
            candidate.pid, candidate.ppid, credential.port, credential.token[:8],
        )

        try:
            ports = list_listening_ports(self.strategy, candidate.pid)
        except CommandExecutionFailed:
            port = self._offset_fallback(candidate, credential)
            if port is None:
                raise
            return self._outcome(candidate, credential, port)

        if not ports:
            raise NoListeningPorts(f'PID {candidate.pid} is not listening on any loopback port', pid=candidate.pid)

        port = find_reachable_port(ports, credential.token)
        if port is None:
            raise NoReachablePort(f'none of the ports {ports} answered the status request', pid=candidate.pid)

        return self._outcome(candidate, credential, port)

    def _offset_fallback(self, candidate: ProcessCandidate, credential: ExtractedCredential) -> int | None:
        """Guess ``extension_server_port + offset`` when the socket table can't be read.

        The fixed offset was observed, never guaranteed, so the guess still
        has to pass the probe.
        """
        offset = self.strategy.fallback_port_offset
        if offset is None or credential.port is None:
            return None

        guess = credential.port + offset
        log.warning('Socket listing failed for PID %d; trying unverified port guess %d', candidate.pid, guess)
        if probe_port(guess, credential.token).reachable:
            return guess

        return None

    @staticmethod
    def _outcome(candidate: ProcessCandidate, credential: ExtractedCredential, https_port: int) -> DiscoveryOutcome:
        http_port = credential.port if credential.port is not None else https_port
        return DiscoveryOutcome(https_port=https_port, http_port=http_port, token=credential.token, pid=candidate.pid)


def discover(notify: Notify | None = None) -> DiscoveryOutcome:
    """Discover the language server endpoint for the current platform."""
    return PortDiscovery(notify=notify).discover()
