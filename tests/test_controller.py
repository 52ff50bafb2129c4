"""Tests for the AppController facade."""

import asyncio
import base64
import sys

import pytest

from suboverlay.controller import AppController
from suboverlay.exceptions import ConfigurationError, ToolNotConfiguredError


@pytest.fixture
def controller(config_store, cache_dirs):
    video_dir, subs_dir = cache_dirs
    return AppController(config_store, video_dir=video_dir, subs_dir=subs_dir, search_system=False)


class TestFiles:
    """Tests for the file helpers."""

    def test_read_text(self, controller, tmp_path):
        path = tmp_path / 'subs.ass'
        path.write_text('[Script Info]\nTitle: 字幕', encoding='utf-8')
        assert asyncio.run(controller.read_text(str(path))) == '[Script Info]\nTitle: 字幕'

    def test_read_binary_base64(self, controller, tmp_path):
        path = tmp_path / 'font.ttf'
        path.write_bytes(b'\x00\x01font')
        assert base64.b64decode(asyncio.run(controller.read_binary_base64(str(path)))) == b'\x00\x01font'

    def test_path_required(self, controller):
        with pytest.raises(ConfigurationError):
            asyncio.run(controller.read_text(''))

    def test_convert_requires_ffmpeg(self, controller, tmp_path):
        with pytest.raises(ToolNotConfiguredError):
            asyncio.run(controller.convert_to_ass(str(tmp_path / 'a.srt')))

    @pytest.mark.skipif(sys.platform == 'win32', reason="fake tools are POSIX shell scripts")
    def test_convert_to_ass(self, controller, write_tool, use_tool, tmp_path):
        ffmpeg = write_tool('ffmpeg', 'for last; do :; done\nprintf "[Script Info]" > "$last"\necho "converted" >&2\n')
        use_tool('', ffmpeg)
        source = tmp_path / 'a.srt'
        source.write_text('1\n00:00:01,000 --> 00:00:02,000\nhi\n')

        result = asyncio.run(controller.convert_to_ass(str(source)))

        assert result['outPath'] == str(tmp_path / 'a.ass')
        assert (tmp_path / 'a.ass').read_text() == '[Script Info]'
        assert 'converted' in result['err']


class TestCacheAndJobs:
    """Tests for cache listing and job event fan-out."""

    def test_list_cache(self, controller, tmp_path):
        source = tmp_path / 'clip.mp4'
        source.write_bytes(b'x')

        async def run_test():
            await controller.import_local(video_path=str(source), title='Clip')
            return await controller.list_cache()

        entries = asyncio.run(run_test())
        assert len(entries) == 1
        assert entries[0]['title'] == 'Clip'
        assert entries[0]['hasVideo'] is True

    @pytest.mark.skipif(sys.platform == 'win32', reason="fake tools are POSIX shell scripts")
    def test_listeners_receive_job_events(self, controller, write_tool, use_tool, cache_dirs):
        video_dir, _ = cache_dirs
        use_tool(write_tool('yt-dlp', f'''
printf 'audio' > "{video_dir}/Song_abc.m4a"
echo "[download] Destination: {video_dir}/Song_abc.m4a"
'''))
        received = []

        async def listener(event):
            received.append(event.to_payload())

        async def broken(event):
            raise RuntimeError("boom")

        controller.add_listener(broken)
        remove = controller.add_listener(listener)

        async def run_test():
            job_id = await controller.download_audio('https://example.com/a', audio_format='')
            await asyncio.wait_for(controller.download_manager.join(), timeout=20)
            remove()
            await controller.shutdown()
            return job_id

        job_id = asyncio.run(run_test())
        assert received[-1]['type'] == 'done'
        assert received[-1]['jobId'] == job_id
        assert received[-1]['mode'] == 'audio'
        assert received[-1]['entry']['mediaKind'] == 'audio'

    def test_cancel_unknown(self, controller):
        assert controller.cancel('job_1_1') is False

    def test_update_overlay(self, controller):
        asyncio.run(controller.update_overlay({'subContent': 'x'}))
        assert controller.overlay.state['subContent'] == 'x'
