"""Tests for subprocess line streaming."""

import asyncio
import sys

import pytest

from suboverlay.constants import SUBPROCESS_ENV_OVERRIDES
from suboverlay.exceptions import SubprocessLaunchError
from suboverlay.streams import iter_lines, pump_output, spawn, subprocess_env


def collect_lines(data: bytes, chunk_size: int = 64 * 1024):
    async def run_test():
        reader = asyncio.StreamReader()
        reader.feed_data(data)
        reader.feed_eof()
        return [line async for line in iter_lines(reader, chunk_size)]
    return asyncio.run(run_test())


class TestIterLines:
    """Tests for iter_lines."""

    def test_splits_on_all_line_endings(self):
        assert collect_lines(b'a\nb\r\nc\rd') == ['a', 'b', 'c', 'd']

    def test_crlf_split_across_chunks(self):
        assert collect_lines(b'ab\r\ncd', chunk_size=3) == ['ab', 'cd']

    def test_multibyte_character_split_across_chunks(self):
        assert collect_lines('héllo 字幕\n'.encode('utf-8'), chunk_size=1) == ['héllo 字幕']

    def test_invalid_utf8_is_replaced(self):
        assert collect_lines(b'bad \xff byte\n') == ['bad \ufffd byte']

    def test_progress_redraws_become_lines(self):
        data = b'[download]  10.0%\r[download]  20.0%\r[download] 100%\n'
        assert collect_lines(data) == ['[download]  10.0%', '[download]  20.0%', '[download] 100%']

    def test_empty_stream(self):
        assert collect_lines(b'') == []


def test_subprocess_env_forces_utf8():
    env = subprocess_env()
    for key, value in SUBPROCESS_ENV_OVERRIDES.items():
        assert env[key] == value


def test_spawn_missing_executable(tmp_path):
    with pytest.raises(SubprocessLaunchError):
        asyncio.run(spawn([str(tmp_path / 'does-not-exist')]))


@pytest.mark.skipif(sys.platform == 'win32', reason="uses a POSIX shell")
def test_pump_output_reads_both_streams():
    async def run_test():
        process = await spawn(['/bin/sh', '-c', 'echo out1; echo err1 >&2; echo out2'])
        seen = []

        async def on_line(stream, line):
            seen.append((stream, line))

        collected = []
        await pump_output(process, on_line, collected)
        await process.wait()
        return seen, collected

    seen, collected = asyncio.run(run_test())
    assert [line for stream, line in seen if stream == 'stdout'] == ['out1', 'out2']
    assert [line for stream, line in seen if stream == 'stderr'] == ['err1']
    assert sorted(collected) == ['err1', 'out1', 'out2']
