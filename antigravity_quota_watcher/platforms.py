"""
Platform Strategies
===================

OS-specific commands for enumerating the language server process and
listing the sockets it owns.  The strategy also decides which
socket-listing tool is installed; that choice is made once per strategy
instance by :meth:`PlatformStrategy.ensure_diagnostic_tool` and kept for
the instance's lifetime.
"""
from __future__ import annotations

import logging
import shutil
import sys
from typing import Callable

from .errors import NoDiagnosticTool
from .i18n import T

log = logging.getLogger(__name__)

Notify = Callable[[str], None]


class PlatformStrategy:
    """Common interface of the Windows and Unix strategies.

    Parameters
    ----------
    platform : str
        A ``sys.platform`` value.
    notify : callable, optional
        Receives the localized remediation message when no diagnostic
        tool is installed.  This is the only user-visible action the
        discovery engine takes directly.
    """

    #: Socket-listing tools in order of preference.
    tools: tuple[str, ...] = ()
    #: ``tools`` entry -> grammar key in ``parsing.PORT_GRAMMARS``.
    grammars: dict[str, str] = {}
    #: Unverified HTTPS = HTTP + offset guess, used only when socket listing fails.
    fallback_port_offset: int | None = None
    process_name = ''
    remediation_key = 'port_tool_required'

    def __init__(self, platform: str = sys.platform, notify: Notify | None = None) -> None:
        self.platform = platform
        self.notify = notify
        self.tool: str | None = None

    def tool_exists(self, name: str) -> bool:
        return shutil.which(name) is not None

    def ensure_diagnostic_tool(self) -> str:
        """Select the first installed socket-listing tool.

        Returns
        -------
        str
            Name of the selected tool (cached after the first call).

        Raises
        ------
        NoDiagnosticTool
            None of ``tools`` exists.  ``notify`` is called with the
            localized list of tools to install before raising.
        """
        if self.tool:
            return self.tool

        available = [name for name in self.tools if self.tool_exists(name)]
        log.info('Port command check: available=[%s], using=%s', ', '.join(available) or 'none', available[0] if available else 'none')

        if not available:
            if self.notify:
                self.notify(T[self.remediation_key])
            raise NoDiagnosticTool(f'no port detection command available ({"/".join(self.tools)})')

        self.tool = available[0]
        return self.tool

    @property
    def grammar(self) -> str | None:
        """Port grammar matching the selected tool, if one was selected."""
        return self.grammars.get(self.tool) if self.tool else None

    def get_process_list_command(self, process_name: str | None = None) -> str:
        raise NotImplementedError

    def get_port_list_command(self, pid: int) -> str:
        raise NotImplementedError


class WindowsStrategy(PlatformStrategy):
    """Windows: PowerShell CIM query for processes, ``netstat -ano`` for sockets."""

    tools = ('netstat',)
    grammars = {'netstat': 'netstat_windows'}
    fallback_port_offset = 1
    process_name = 'language_server_windows_x64.exe'
    remediation_key = 'port_tool_required_windows'

    def get_process_list_command(self, process_name: str | None = None) -> str:
        name = process_name or self.process_name
        return (
            'powershell -NoProfile -Command "'
            f"Get-CimInstance Win32_Process | Where-Object {{ $_.Name -eq '{name}' }} | "
            "ForEach-Object { '{0} {1} {2}' -f $_.ProcessId, $_.ParentProcessId, $_.CommandLine }"
            '"'
        )

    def get_port_list_command(self, pid: int) -> str:
        return f'netstat -ano | findstr "LISTENING" | findstr "{pid}"'


class UnixStrategy(PlatformStrategy):
    """macOS and Linux: ``ps`` for processes, ``lsof``/``ss``/``netstat`` for sockets."""

    grammars = {'lsof': 'lsof', 'ss': 'ss', 'netstat': 'netstat'}

    def __init__(self, platform: str = sys.platform, notify: Notify | None = None) -> None:
        super().__init__(platform, notify)
        if platform == 'darwin':
            # No ss on macOS; its netstat prints dotted addresses and needs -v for pids
            self.tools = ('lsof', 'netstat')
            self.grammars = {'lsof': 'lsof', 'netstat': 'netstat_bsd'}
            self.process_name = 'language_server_macos'
            self.remediation_key = 'port_tool_required_darwin'
        else:
            self.tools = ('lsof', 'ss', 'netstat')
            self.process_name = 'language_server_linux'

    def get_process_list_command(self, process_name: str | None = None) -> str:
        # -ww: no width truncation, -e: all processes, -o: pid, ppid, full args
        name = process_name or self.process_name
        return f'ps -ww -eo pid,ppid,args | grep "{name}" | grep -v grep'

    def _tool_command(self, tool: str, pid: int) -> str:
        if tool == 'lsof':
            # -P no port names, -a AND the filters, -n no host names
            return f'lsof -Pan -p {pid} -i'
        if tool == 'ss':
            return f'ss -tlnp 2>/dev/null | grep "pid={pid},"'
        if self.platform == 'darwin':
            return f'netstat -anv -p tcp 2>/dev/null | grep LISTEN | grep {pid}'
        return f'netstat -tulpn 2>/dev/null | grep {pid}'

    def get_port_list_command(self, pid: int) -> str:
        if self.tool:
            return self._tool_command(self.tool, pid)

        # ensure_diagnostic_tool() wasn't called: first tool that prints anything wins
        chain = []
        for tool in self.tools:
            command = self._tool_command(tool, pid)
            if tool == 'lsof':
                command += ' 2>/dev/null'
            chain.append(command)
        return ' || '.join(chain)


def get_strategy(platform: str = sys.platform, notify: Notify | None = None) -> PlatformStrategy:
    """Return the strategy for *platform* (a ``sys.platform`` value)."""
    if platform.startswith('win'):
        return WindowsStrategy(platform, notify)
    return UnixStrategy(platform, notify)
