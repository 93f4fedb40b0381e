"""Tests for process-line and socket-line parsing."""

from __future__ import annotations

import pytest

from antigravity_quota_watcher.errors import ProcessNotFound, TokenNotFound
from antigravity_quota_watcher.parsing import (
    ExtractedCredential,
    ProcessCandidate,
    extract_credential,
    is_target_process,
    parse_listening_ports,
    parse_process_candidates,
    parse_process_line,
    resolve_process,
    select_candidate,
)

TOKEN = 'abcd1234-ef56-7890-abcd-ef1234567890'
SERVER = '/usr/share/antigravity/resources/bin/language_server_linux_x64'


def process_line(pid: int, ppid: int, args: str) -> str:
    return f'{pid:>7} {ppid:>7} {args}'


class TestExtractCredential:
    """Tests for extract_credential."""

    def test_port_and_token_with_space(self) -> None:
        cred = extract_credential(f'{SERVER} --extension_server_port 63462 --csrf_token {TOKEN}')

        assert cred == ExtractedCredential(port=63462, token=TOKEN)

    def test_port_and_token_with_equals(self) -> None:
        cred = extract_credential(f'{SERVER} --extension_server_port=63462 --csrf_token={TOKEN}')

        assert cred == ExtractedCredential(port=63462, token=TOKEN)

    def test_missing_port_is_still_a_credential(self) -> None:
        cred = extract_credential(f'{SERVER} --csrf_token {TOKEN}')

        assert cred == ExtractedCredential(port=None, token=TOKEN)

    def test_uppercase_hex_token(self) -> None:
        cred = extract_credential('server --csrf_token ABCDEF12-3456')

        assert cred is not None
        assert cred.token == 'ABCDEF12-3456'

    def test_missing_token_returns_none(self) -> None:
        assert extract_credential(f'{SERVER} --extension_server_port 63462') is None


class TestIsTargetProcess:
    """Tests for is_target_process."""

    @pytest.mark.parametrize('command_line', [
        'language_server --app_data_dir antigravity --csrf_token 12ab',
        'language_server --app_data_dir Antigravity --csrf_token 12ab',
        '/Applications/Antigravity/Contents/bin/language_server_macos --csrf_token 12ab',
        'C:\\Users\\me\\AppData\\Local\\Programs\\Antigravity\\bin\\language_server_windows_x64.exe',
    ])
    def test_recognized(self, command_line: str) -> None:
        assert is_target_process(command_line) is True

    @pytest.mark.parametrize('command_line', [
        'language_server --csrf_token 12ab',
        'language_server --app_data_dir antigravity_backup --csrf_token 12ab',
        '/opt/windsurf/language_server --app_data_dir windsurf --csrf_token 12ab',
    ])
    def test_not_recognized(self, command_line: str) -> None:
        assert is_target_process(command_line) is False


class TestParseProcessLine:
    """Tests for parse_process_line."""

    def test_rejoins_command_line_with_single_spaces(self) -> None:
        candidate = parse_process_line('  100    50   /bin/server   --flag    value')

        assert candidate == ProcessCandidate(pid=100, ppid=50, command_line='/bin/server --flag value')

    @pytest.mark.parametrize('line', ['', '100 50', 'PID PPID COMMAND', '100 abc /bin/server'])
    def test_unparsable_lines(self, line: str) -> None:
        assert parse_process_line(line) is None


class TestParseProcessCandidates:
    """Tests for parse_process_candidates."""

    def test_empty_and_whitespace_output(self) -> None:
        assert parse_process_candidates('') == []
        assert parse_process_candidates('   \n\t\n') == []

    def test_every_candidate_satisfies_both_predicates(self) -> None:
        output = '\n'.join([
            process_line(100, 1, f'{SERVER} --csrf_token {TOKEN}'),
            process_line(101, 1, f'/opt/other/server --csrf_token {TOKEN}'),
            process_line(102, 1, f'{SERVER} --extension_server_port 5000'),
            'garbage line',
            process_line(103, 1, f'language_server --app_data_dir antigravity --csrf_token {TOKEN}'),
        ])

        candidates = parse_process_candidates(output)

        assert len(candidates) <= len(output.splitlines())
        assert [c.pid for c, _ in candidates] == [100, 103]
        for candidate, credential in candidates:
            assert credential.token == TOKEN
            assert is_target_process(candidate.command_line)

    def test_keeps_enumeration_order(self) -> None:
        output = '\n'.join(process_line(pid, 1, f'{SERVER} --csrf_token {TOKEN}') for pid in (300, 100, 200))

        assert [c.pid for c, _ in parse_process_candidates(output)] == [300, 100, 200]


class TestSelectCandidate:
    """Tests for select_candidate."""

    def _pair(self, pid: int, ppid: int) -> tuple[ProcessCandidate, ExtractedCredential]:
        return ProcessCandidate(pid, ppid, SERVER), ExtractedCredential(None, TOKEN)

    def test_prefers_direct_child_regardless_of_order(self) -> None:
        child = self._pair(200, 42)
        other = self._pair(100, 1)

        assert select_candidate([other, child], caller_pid=42) is child
        assert select_candidate([child, other], caller_pid=42) is child

    def test_falls_back_to_first_candidate(self) -> None:
        first = self._pair(300, 7)
        second = self._pair(100, 8)

        assert select_candidate([first, second], caller_pid=42) is first

    def test_no_candidates(self) -> None:
        assert select_candidate([], caller_pid=42) is None


class TestResolveProcess:
    """Tests for resolve_process."""

    def test_resolves_candidate(self) -> None:
        output = process_line(100, 50, f'{SERVER} --extension_server_port 63462 --csrf_token {TOKEN}')

        candidate, credential = resolve_process(output, caller_pid=1)

        assert candidate.pid == 100
        assert credential == ExtractedCredential(port=63462, token=TOKEN)

    def test_target_without_token_raises_token_not_found(self) -> None:
        output = process_line(100, 50, f'{SERVER} --extension_server_port 63462')

        with pytest.raises(TokenNotFound) as exc_info:
            resolve_process(output, caller_pid=1)

        assert exc_info.value.pid == 100

    def test_no_target_raises_process_not_found(self) -> None:
        output = process_line(100, 50, f'/opt/other/server --csrf_token {TOKEN}')

        with pytest.raises(ProcessNotFound):
            resolve_process(output, caller_pid=1)

    def test_empty_output_raises_process_not_found(self) -> None:
        with pytest.raises(ProcessNotFound):
            resolve_process('', caller_pid=1)


LSOF_LINE = 'language_ 1234 user   10u  IPv4 0x1a2b3c4d5e6f      0t0  TCP 127.0.0.1:2873 (LISTEN)'
SS_LINE = 'LISTEN 0      128        127.0.0.1:2873       0.0.0.0:*    users:(("language_server",pid=1234,fd=10))'
NETSTAT_LINE = 'tcp        0      0 127.0.0.1:2873          0.0.0.0:*               LISTEN      1234/language_serve'
NETSTAT_BSD_LINE = (
    'tcp4       0      0  127.0.0.1.2873         *.*                    LISTEN      131072 131072   1234      0 0x0100 0x00000106'
)
NETSTAT_BSD_PROCESS_LINE = (
    'tcp4       0      0  127.0.0.1.2873         *.*                    LISTEN             0             0  131072  131072'
    '  language_server:1234  00002 00000000 0000000000a1b2c3 00000000 00000800      1      0 000001'
)
NETSTAT_WINDOWS_LINE = '  TCP    127.0.0.1:2873         0.0.0.0:0              LISTENING       1234'


class TestParseListeningPorts:
    """Tests for parse_listening_ports."""

    @pytest.mark.parametrize('line', [
        LSOF_LINE, SS_LINE, NETSTAT_LINE, NETSTAT_BSD_LINE, NETSTAT_BSD_PROCESS_LINE, NETSTAT_WINDOWS_LINE,
    ])
    def test_each_grammar_yields_same_port(self, line: str) -> None:
        assert parse_listening_ports(line) == [2873]
        assert parse_listening_ports(line, pid=1234) == [2873]

    @pytest.mark.parametrize('tool', ['lsof', 'ss', 'netstat', 'netstat_bsd', 'netstat_windows', None, 'unknown'])
    def test_tool_hint_does_not_change_result(self, tool: str | None) -> None:
        output = '\n'.join([LSOF_LINE, SS_LINE, NETSTAT_LINE])

        assert parse_listening_ports(output, tool=tool) == [2873]

    def test_localhost_alias(self) -> None:
        output = '\n'.join([
            'language_ 1234 user 10u IPv4 0x1 0t0 TCP localhost:4100 (LISTEN)',
            'tcp        0      0 localhost:4200          0.0.0.0:*               LISTEN      1234/language_serve',
        ])

        assert parse_listening_ports(output) == [4100, 4200]

    def test_ss_wildcard_address(self) -> None:
        line = 'LISTEN 0 128 *:5100 *:* users:(("language_server",pid=1234,fd=11))'

        assert parse_listening_ports(line) == [5100]

    def test_sorted_and_deduplicated(self) -> None:
        output = '\n'.join([
            LSOF_LINE.replace('2873', '63463'),
            LSOF_LINE.replace('2873', '63462'),
            LSOF_LINE.replace('2873', '63463'),
            NETSTAT_LINE.replace('2873', '63462'),
        ])

        assert parse_listening_ports(output) == [63462, 63463]

    def test_skips_lines_of_other_processes(self) -> None:
        output = '\n'.join([
            NETSTAT_WINDOWS_LINE,
            NETSTAT_WINDOWS_LINE.replace('2873', '3000').replace('1234', '12345'),
            SS_LINE.replace('2873', '4000').replace('pid=1234', 'pid=99'),
        ])

        assert parse_listening_ports(output, pid=1234) == [2873]

    def test_netstat_line_without_owner_is_skipped_for_pid(self) -> None:
        # grep 63 matches the port; '-' is printed for sockets of other users
        line = 'tcp        0      0 127.0.0.1:6379          0.0.0.0:*               LISTEN      -'

        assert parse_listening_ports(line, tool='netstat', pid=63) == []
        assert parse_listening_ports(line, tool='netstat') == [6379]

    def test_ss_line_without_owner_is_skipped_for_pid(self) -> None:
        line = 'LISTEN 0      128        127.0.0.1:1234       0.0.0.0:*'

        assert parse_listening_ports(line, tool='ss', pid=1234) == []

    @pytest.mark.parametrize('line', [NETSTAT_BSD_LINE, NETSTAT_BSD_PROCESS_LINE])
    def test_netstat_bsd_reads_owner_in_both_layouts(self, line: str) -> None:
        assert parse_listening_ports(line, tool='netstat_bsd', pid=1234) == [2873]
        assert parse_listening_ports(line, tool='netstat_bsd', pid=131072) == []
        assert parse_listening_ports(line, tool='netstat_bsd', pid=0) == []

    def test_netstat_bsd_without_pid_columns_is_skipped_for_pid(self) -> None:
        line = 'tcp4       0      0  127.0.0.1.2873         *.*                    LISTEN'

        assert parse_listening_ports(line, tool='netstat_bsd', pid=2873) == []
        assert parse_listening_ports(line, tool='netstat_bsd') == [2873]

    def test_skips_non_listening_and_unknown_lines(self) -> None:
        output = '\n'.join([
            'COMMAND     PID USER   FD   TYPE DEVICE SIZE/OFF NODE NAME',
            'language_ 1234 user 11u IPv4 0x2 0t0 TCP 127.0.0.1:2873->127.0.0.1:51000 (ESTABLISHED)',
            '  TCP    127.0.0.1:2873         127.0.0.1:51000        ESTABLISHED     1234',
            'tcp        0      0 0.0.0.0:22              0.0.0.0:*               LISTEN      1/sshd',
            'something entirely different',
            '',
        ])

        assert parse_listening_ports(output) == []

    def test_empty_output(self) -> None:
        assert parse_listening_ports('') == []
