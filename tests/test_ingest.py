"""Tests for moving and copying files into the cache."""

import asyncio
import base64

import pytest

from suboverlay.exceptions import NotAFileError
from suboverlay.ingest import CacheIngestor, IncomingFile


@pytest.fixture
def source_file(tmp_path):
    src_dir = tmp_path / 'downloads'
    src_dir.mkdir()
    path = src_dir / 'clip.mp4'
    path.write_bytes(b'video bytes')
    return path


class TestIngest:
    """Tests for CacheIngestor.ingest."""

    def test_copy_uses_title_and_id(self, tmp_path, source_file):
        target_dir = tmp_path / 'cache'
        result = asyncio.run(CacheIngestor().ingest(source_file, directory=target_dir, title='Foo', id='abc'))

        assert result.filename == 'Foo [abc].mp4'
        assert result.file_path.read_bytes() == b'video bytes'
        assert source_file.exists()

    def test_move_removes_source(self, tmp_path, source_file):
        result = asyncio.run(CacheIngestor().ingest(source_file, directory=tmp_path / 'cache', id='abc', move=True))

        assert result.filename == 'abc.mp4'
        assert not source_file.exists()

    def test_collision_appends_counter(self, tmp_path, source_file):
        """An existing file is never overwritten."""
        target_dir = tmp_path / 'cache'
        target_dir.mkdir()
        (target_dir / 'Foo [abc].mp4').write_bytes(b'old')
        (target_dir / 'Foo [abc] (2).mp4').write_bytes(b'older')

        result = asyncio.run(CacheIngestor().ingest(source_file, directory=target_dir, title='Foo', id='abc'))

        assert result.filename == 'Foo [abc] (3).mp4'
        assert (target_dir / 'Foo [abc].mp4').read_bytes() == b'old'
        assert (target_dir / 'Foo [abc] (2).mp4').read_bytes() == b'older'

    def test_concurrent_ingests_get_distinct_names(self, tmp_path, source_file):
        target_dir = tmp_path / 'cache'

        async def run_test():
            ingestor = CacheIngestor()
            return await asyncio.gather(*[
                ingestor.ingest(source_file, directory=target_dir, title='Foo', id='abc') for _ in range(3)
            ])

        names = sorted(r.filename for r in asyncio.run(run_test()))
        assert names == ['Foo [abc] (2).mp4', 'Foo [abc] (3).mp4', 'Foo [abc].mp4']

    def test_file_already_in_cache_is_kept_as_is(self, tmp_path):
        """A file the tool wrote into the cache is not renamed again."""
        target_dir = tmp_path / 'cache'
        target_dir.mkdir()
        path = target_dir / 'Tool Name_abc.mp4'
        path.write_bytes(b'x')

        result = asyncio.run(CacheIngestor().ingest(path, directory=target_dir, title='Other', id='abc', move=True))

        assert result.filename == 'Tool Name_abc.mp4'
        assert path.exists()

    def test_preserve_basename(self, tmp_path, source_file):
        result = asyncio.run(CacheIngestor().ingest(
            source_file, directory=tmp_path / 'cache', title='Foo', id='abc', preserve_basename=True))
        assert result.filename == 'clip.mp4'

    def test_default_ext_applies_to_extensionless_source(self, tmp_path):
        source = tmp_path / 'subtitle'
        source.write_text('[Script Info]')
        result = asyncio.run(CacheIngestor().ingest(
            source, directory=tmp_path / 'cache', id='abc', default_ext='ass'))
        assert result.filename == 'abc.ass'

    def test_fallback_name_without_title_or_id(self, tmp_path, source_file):
        result = asyncio.run(CacheIngestor().ingest(source_file, directory=tmp_path / 'cache', fallback_prefix='video'))
        assert result.filename.startswith('video_')
        assert result.filename.endswith('.mp4')

    def test_missing_source_raises(self, tmp_path):
        with pytest.raises(NotAFileError):
            asyncio.run(CacheIngestor().ingest(tmp_path / 'nope.mp4', directory=tmp_path / 'cache'))

    def test_directory_source_raises(self, tmp_path):
        folder = tmp_path / 'folder'
        folder.mkdir()
        with pytest.raises(NotAFileError):
            asyncio.run(CacheIngestor().ingest(folder, directory=tmp_path / 'cache'))


class TestIncomingFiles:
    """Tests for byte payload imports."""

    def test_from_payload_accepts_base64(self):
        incoming = IncomingFile.from_payload({'name': 'a.ass', 'data': base64.b64encode(b'hello').decode()})
        assert incoming == IncomingFile(name='a.ass', data=b'hello')

    def test_from_payload_accepts_raw_buffer(self):
        incoming = IncomingFile.from_payload({'name': 'a.mp4', 'buffer': bytearray(b'abc')})
        assert incoming.data == b'abc'

    def test_from_payload_without_data(self):
        assert IncomingFile.from_payload({'name': 'a.mp4'}) is None
        assert IncomingFile.from_payload('not a mapping') is None

    def test_from_payload_rejects_unsupported_data(self):
        with pytest.raises(TypeError):
            IncomingFile.from_payload({'name': 'a.mp4', 'data': 42})

    def test_persist_keeps_sent_name(self, tmp_path):
        target_dir = tmp_path / 'cache'
        incoming = IncomingFile(name='My: Subs.srt', data=b'1\n00:00:01,000 --> 00:00:02,000\nhi\n')

        result, base_name = asyncio.run(CacheIngestor().persist_incoming_file(
            incoming, directory=target_dir, id='abc', default_ext='.ass'))

        assert base_name == 'My Subs'
        assert result.filename == 'My Subs.srt'
        assert result.file_path.read_bytes() == incoming.data

    def test_persist_uses_default_ext_for_nameless_upload(self, tmp_path):
        result, base_name = asyncio.run(CacheIngestor().persist_incoming_file(
            IncomingFile(name='', data=b'x'), directory=tmp_path / 'cache', id='abc', default_ext='.ass'))
        assert base_name == ''
        assert result.filename == 'upload.ass'
