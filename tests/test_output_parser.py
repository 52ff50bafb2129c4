"""Tests for parsing the fetch tool's output."""

import pytest

from suboverlay.output_parser import (
    OutputParser, make_bare_path_matcher, make_destination_matcher, match_extract_audio, match_merger,
    parse_meta_line, parse_progress
)


class TestParseProgress:
    """Tests for parse_progress."""

    def test_progress_line(self):
        info = parse_progress('[download]  42.5% of 10MiB at 1.2MiB/s ETA 00:05')
        assert info.percent == 42.5
        assert info.speed == '1.2MiB/s'
        assert info.eta == '00:05'

    def test_progress_with_approximate_size(self):
        info = parse_progress('[download]   3.0% of ~ 250.00MiB at  812.43KiB/s ETA 05:12 (frag 2/80)')
        assert info.percent == 3.0
        assert info.speed == '812.43KiB/s'
        assert info.eta == '05:12'

    @pytest.mark.parametrize('line', [
        '[download] Destination: /tmp/a.mp4',
        '[download] 100% of 10.00MiB in 00:00:02 at 4.5MiB/s',
        'random text',
    ])
    def test_non_progress_lines(self, line):
        assert parse_progress(line) is None


class TestMatchers:
    """Tests for the individual path heuristics."""

    def test_merger(self):
        assert match_merger('[Merger] Merging formats into "/c/Foo_abc.mp4"') == '/c/Foo_abc.mp4'
        assert match_merger('[Merger] something else') is None

    def test_extract_audio(self):
        assert match_extract_audio('[ExtractAudio] Destination: /c/Foo_abc.mp3') == '/c/Foo_abc.mp3'
        assert match_extract_audio('[ExtractAudio] Destination: /c/Foo_abc.mp4') is None

    def test_destination_skips_intermediate_streams(self):
        match = make_destination_matcher('video')
        assert match('[download] Destination: /c/Foo_abc.f137.mp4') is None
        assert match('[download] Destination: /c/Foo_abc.251.webm') is None
        assert match('[download] Destination: /c/Foo_abc.mp4') == '/c/Foo_abc.mp4'

    def test_destination_respects_mode(self):
        assert make_destination_matcher('audio')('[download] Destination: /c/a.mp4') is None
        assert make_destination_matcher('audio')('[download] Destination: /c/a.m4a') == '/c/a.m4a'
        assert make_destination_matcher('video')('[download] Destination: /c/a.m4a') is None

    def test_bare_path(self):
        match = make_bare_path_matcher('relative-cache')
        assert match('/c/Foo_abc.mp4') == '/c/Foo_abc.mp4'
        assert match('C:\\cache\\Foo.mp4') == 'C:\\cache\\Foo.mp4'
        assert match('relative-cache/Foo.mp4') == 'relative-cache/Foo.mp4'
        assert match('[info] Downloading webpage') is None


class TestOutputParser:
    """Tests for OutputParser."""

    def test_merger_beats_earlier_bare_path(self):
        parser = OutputParser('video', '/c')
        parser.feed('/c/Foo_abc.f137.mp4')
        parser.feed('[Merger] Merging formats into "/c/Foo_abc.mp4"')
        assert parser.output_path == '/c/Foo_abc.mp4'

    def test_first_match_is_locked(self):
        parser = OutputParser('video', '/c')
        parser.feed('[Merger] Merging formats into "/c/Foo_abc.mp4"')
        parser.feed('[download] Destination: /c/Other.mp4')
        parser.feed('/c/Third.mp4')
        parser.feed('[Merger] Merging formats into "/c/Later.mp4"')
        assert parser.output_path == '/c/Foo_abc.mp4'

    def test_extract_audio_beats_download_destination(self):
        parser = OutputParser('audio', '/c')
        parser.feed('[download] Destination: /c/Foo_abc.m4a')
        parser.feed('[ExtractAudio] Destination: /c/Foo_abc.mp3')
        assert parser.output_path == '/c/Foo_abc.mp3'

    def test_meta_lines_set_id_and_title_once(self):
        parser = OutputParser()
        assert parser.feed('__meta__id=abc123') is None
        parser.feed('__meta__title=Foo: Bar')
        parser.feed('__meta__id=other')
        assert parser.video_id == 'abc123'
        assert parser.title == 'Foo: Bar'
        assert parser.output_path == ''

    def test_feed_returns_progress(self):
        parser = OutputParser()
        info = parser.feed('[download]  42.5% of 10MiB at 1.2MiB/s ETA 00:05')
        assert info.percent == 42.5

    def test_records_last_error(self):
        parser = OutputParser()
        parser.feed('ERROR: [youtube] abc: Video unavailable')
        assert parser.last_error == '[youtube] abc: Video unavailable'

    def test_unrecognized_lines_are_ignored(self):
        parser = OutputParser()
        for line in ['', '   ', '[info] Downloading 1 format(s): 137+251', 'WARNING: something']:
            assert parser.feed(line) is None
        assert parser.output_path == ''


def test_parse_meta_line():
    assert parse_meta_line('__meta__title=a=b') == ('title', 'a=b')
    assert parse_meta_line('__meta__broken') is None
    assert parse_meta_line('title=a') is None
