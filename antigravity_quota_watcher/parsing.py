"""
Command Output Parsing
======================

Pure functions that turn raw process-table and socket-table text into
typed records.  Nothing here touches the OS, so every grammar can be
tested against literal captured output.

Process lines have the shape ``PID PPID ARGS...`` (``ps -eo pid,ppid,args``
on Unix, an equivalent PowerShell projection on Windows).  Socket lines
come from whichever diagnostic tool the platform strategy selected.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from .errors import ProcessNotFound, TokenNotFound

log = logging.getLogger(__name__)

TOKEN_RE = re.compile(r'--csrf_token[=\s]+([a-f0-9\-]+)', re.IGNORECASE)
PORT_RE = re.compile(r'--extension_server_port[=\s]+(\d+)')
APP_DATA_DIR_RE = re.compile(r'--app_data_dir\s+antigravity\b', re.IGNORECASE)
APP_PATH_FRAGMENTS = ('/antigravity/', '\\antigravity\\')


@dataclass(frozen=True)
class ProcessCandidate:
    """One process-table entry that may belong to the language server."""

    pid: int
    ppid: int
    command_line: str


@dataclass(frozen=True)
class ExtractedCredential:
    """Port and CSRF token read from a candidate's command line.

    ``port`` is ``None`` when ``--extension_server_port`` is absent; the
    listening port then has to be found from the socket table.
    """

    port: int | None
    token: str


# ── Process candidates ────────────────────────────────────────


def extract_credential(command_line: str) -> ExtractedCredential | None:
    """Return the credential embedded in *command_line*, or None without a token."""
    token_match = TOKEN_RE.search(command_line)
    if not token_match:
        return None

    port_match = PORT_RE.search(command_line)
    port = int(port_match.group(1)) if port_match else None

    return ExtractedCredential(port=port, token=token_match.group(1))


def is_target_process(command_line: str) -> bool:
    """Return True if *command_line* belongs to the Antigravity application.

    A token argument alone is not enough: other tools share the
    ``--csrf_token`` flag name.  The process must also carry
    ``--app_data_dir antigravity`` or run from an ``antigravity`` directory.
    """
    if APP_DATA_DIR_RE.search(command_line):
        return True

    lower = command_line.lower()
    return any(fragment in lower for fragment in APP_PATH_FRAGMENTS)


def parse_process_line(line: str) -> ProcessCandidate | None:
    """Split a ``PID PPID ARGS...`` line, or return None if it doesn't parse."""
    parts = line.split()
    if len(parts) < 3:
        return None

    try:
        pid = int(parts[0])
        ppid = int(parts[1])
    except ValueError:
        return None

    return ProcessCandidate(pid=pid, ppid=ppid, command_line=' '.join(parts[2:]))


def parse_process_candidates(output: str) -> list[tuple[ProcessCandidate, ExtractedCredential]]:
    """Parse enumeration output into qualifying candidates, in OS order.

    Parameters
    ----------
    output : str
        Raw multi-line output of the process-list command.

    Returns
    -------
    list of (ProcessCandidate, ExtractedCredential)
        Only lines that carry a token *and* pass :func:`is_target_process`.
        Empty or whitespace-only output yields an empty list.
    """
    candidates = []
    for line in output.strip().splitlines():
        candidate = parse_process_line(line)
        if candidate is None:
            continue

        credential = extract_credential(candidate.command_line)
        if credential and is_target_process(candidate.command_line):
            candidates.append((candidate, credential))

    return candidates


def select_candidate(
    candidates: list[tuple[ProcessCandidate, ExtractedCredential]], caller_pid: int,
) -> tuple[ProcessCandidate, ExtractedCredential] | None:
    """Pick the direct child of *caller_pid* if there is one, else the first candidate."""
    if not candidates:
        return None

    for pair in candidates:
        if pair[0].ppid == caller_pid:
            return pair

    return candidates[0]


def resolve_process(output: str, caller_pid: int) -> tuple[ProcessCandidate, ExtractedCredential]:
    """Resolve the language server process from enumeration *output*.

    Raises
    ------
    TokenNotFound
        Antigravity processes were listed but none carried a CSRF token.
    ProcessNotFound
        No line belonged to the target application.
    """
    candidates = parse_process_candidates(output)
    if len(candidates) > 1:
        log.debug('Found %d candidate processes: %s', len(candidates), [c.pid for c, _ in candidates])

    selected = select_candidate(candidates, caller_pid)
    if selected is not None:
        return selected

    for line in output.strip().splitlines():
        candidate = parse_process_line(line)
        if candidate and is_target_process(candidate.command_line):
            raise TokenNotFound('language server process has no --csrf_token argument', pid=candidate.pid)

    raise ProcessNotFound('language server process not found')


# ── Listening ports ───────────────────────────────────────────
# One grammar per diagnostic tool, each capturing ``port`` and, where the
# tool prints it, the owning ``pid``.
#
#   lsof:     language_ 1234 user 10u IPv4 0x... 0t0 TCP 127.0.0.1:2873 (LISTEN)
#   ss:       LISTEN 0 128 127.0.0.1:2873 0.0.0.0:* users:(("language_server",pid=1234,fd=10))
#   netstat:  tcp 0 0 127.0.0.1:2873 0.0.0.0:* LISTEN 1234/language_server
#             (``-`` instead of ``1234/...`` for sockets of other users)
#   netstat (macOS -anv, older):  tcp4 0 0 127.0.0.1.2873 *.* LISTEN 131072 131072 1234 0 0x0100 0x00000106
#   netstat (macOS -anv, newer):  tcp4 0 0 127.0.0.1.2873 *.* LISTEN 0 0 131072 131072 language_server:1234 00002 ...
#   netstat (Windows -ano):  TCP 127.0.0.1:2873 0.0.0.0:0 LISTENING 1234

LOOPBACK = r'(?:127\.0\.0\.1|localhost)'

PORT_GRAMMARS: dict[str, re.Pattern[str]] = {
    'lsof': re.compile(
        rf'^\S+\s+(?P<pid>\d+)\s.*?\b{LOOPBACK}:(?P<port>\d+)\s+\(LISTEN\)',
    ),
    'ss': re.compile(
        rf'LISTEN\s+\d+\s+\d+\s+(?:{LOOPBACK}|\*):(?P<port>\d+)\s(?:.*\bpid=(?P<pid>\d+))?',
    ),
    'netstat': re.compile(
        rf'^tcp6?\s+\d+\s+\d+\s+{LOOPBACK}:(?P<port>\d+)\s+\S+\s+LISTEN(?=\s|$)(?:\s+(?:(?P<pid>\d+)/|-))?',
    ),
    'netstat_bsd': re.compile(
        rf'^tcp(?:4|46|6)?\s+\d+\s+\d+\s+{LOOPBACK}\.(?P<port>\d+)\s+\S+\s+LISTEN(?=\s|$)'
        r'(?:\s+\d+\s+\d+\s+(?P<legacy_pid>\d+)\s+\d+\s+0x[0-9a-fA-F]+|.*?\s\S+:(?P<pid>\d+)(?=\s|$))?',
    ),
    'netstat_windows': re.compile(
        rf'^\s*TCP\s+{LOOPBACK}:(?P<port>\d+)\s+\S+\s+LISTENING\s+(?P<pid>\d+)\s*$',
    ),
}


def _grammar_order(tool: str | None) -> list[str]:
    names = list(PORT_GRAMMARS)
    if tool in PORT_GRAMMARS:
        names.remove(tool)
        names.insert(0, tool)
    return names


def _owner(match: re.Match[str]) -> int | None:
    groups = match.groupdict()
    owner = groups.get('pid') or groups.get('legacy_pid')
    return int(owner) if owner else None


def parse_listening_ports(output: str, tool: str | None = None, pid: int | None = None) -> list[int]:
    """Extract loopback listening ports from diagnostic tool *output*.

    Parameters
    ----------
    output : str
        Raw output of the port-list command.
    tool : str, optional
        Grammar to try first (a key of ``PORT_GRAMMARS``).  All other
        grammars are still tried, since the fallback command chain may
        have produced another tool's output.
    pid : int, optional
        When given, only lines that name *pid* as their owner are kept.
        Lines with another owner, or with no owner the grammar can read,
        are skipped: ``grep <pid>`` also matches the digits inside ports
        and other pids.

    Returns
    -------
    list of int
        Deduplicated ports in ascending order; empty if nothing matched.
    """
    order = _grammar_order(tool)
    ports = set()

    for line in output.splitlines():
        for name in order:
            match = PORT_GRAMMARS[name].search(line)
            if not match:
                continue
            if pid is None or _owner(match) == pid:
                ports.add(int(match.group('port')))
            break

    return sorted(ports)
