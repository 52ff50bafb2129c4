"""Pytest configuration and fixtures."""

import stat
from pathlib import Path

import pytest

from suboverlay.cache import CacheService
from suboverlay.config import ConfigStore
from suboverlay.entries import EntryStore
from suboverlay.ingest import CacheIngestor


@pytest.fixture
def config_store(tmp_path):
    """A config store backed by a fresh file in tmp_path."""
    return ConfigStore.open(tmp_path / 'config' / 'config.json')


@pytest.fixture
def cache_dirs(tmp_path):
    """Video and subtitle cache directories."""
    video_dir = tmp_path / 'video-cache'
    subs_dir = tmp_path / 'subs-cache'
    video_dir.mkdir()
    subs_dir.mkdir()
    return video_dir, subs_dir


@pytest.fixture
def entry_store(config_store, cache_dirs):
    return EntryStore(config_store, *cache_dirs)


@pytest.fixture
def cache_service(entry_store):
    return CacheService(CacheIngestor(), entry_store)


@pytest.fixture
def write_tool(tmp_path):
    """Writes an executable shell script standing in for an external tool."""
    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir()

    def write(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text('#!/bin/sh\n' + body.lstrip('\n'), encoding='utf-8')
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path
    return write


@pytest.fixture
def use_tool(config_store):
    """Points the configured yt-dlp (and optionally ffmpeg) path at a file."""
    def configure(yt_dlp_path, ffmpeg_path=''):
        config_store.set('bins', {'yt_dlp_path': str(yt_dlp_path), 'ffmpeg_path': str(ffmpeg_path)})
    return configure
