"""Tests for the overlay state server."""

import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from suboverlay.exceptions import ConfigurationError
from suboverlay.overlay_server import OverlayServer, normalize_fonts, parse_port


def run_with_client(server: OverlayServer, scenario):
    async def run_test():
        async with TestClient(TestServer(server.app)) as client:
            return await scenario(client)
    return asyncio.run(run_test())


class TestState:
    """Tests for the initial state and /state."""

    def test_initial_state_from_config(self, config_store):
        config_store.set('fonts', [
            {'name': 'Noto', 'data': 'AAAA'},
            {'name': 'Remote', 'url': 'https://example.com/f.woff2', 'extra': 1},
            {'name': 'Empty'},
        ])
        server = OverlayServer(config_store)

        assert server.state['subContent'] == ''
        assert server.state['fontBuffers'] == [
            {'name': 'Noto', 'data': 'AAAA'},
            {'name': 'Remote', 'url': 'https://example.com/f.woff2'},
        ]
        assert server.state['style']['port'] == 1976
        assert server.state['style']['maxWidth'] == 1920
        assert server.state['style']['wrapStyle'] == 2

    def test_get_state(self, config_store):
        server = OverlayServer(config_store)

        async def scenario(client):
            await server.update_state({'subContent': '[Script Info]'})
            resp = await client.get('/state')
            assert resp.status == 200
            return await resp.json()

        state = run_with_client(server, scenario)
        assert state['subContent'] == '[Script Info]'
        assert 'fontBuffers' in state

    def test_style_follows_config(self, config_store):
        server = OverlayServer(config_store)
        config_store.set('output', {'align': 'left'})
        assert server.state['style']['align'] == 'left'


class TestWebsocket:
    """Tests for /ws."""

    def test_state_sent_on_connect_and_on_update(self, config_store):
        server = OverlayServer(config_store)

        async def scenario(client):
            ws = await client.ws_connect('/ws')
            first = await ws.receive_json(timeout=5)
            await server.update_state({'subContent': 'abc'})
            second = await ws.receive_json(timeout=5)
            await ws.close()
            return first, second

        first, second = run_with_client(server, scenario)
        assert first['type'] == 'state'
        assert first['payload']['subContent'] == ''
        assert second['type'] == 'state'
        assert second['payload']['subContent'] == 'abc'

    def test_set_time_is_relayed_to_all_clients(self, config_store):
        server = OverlayServer(config_store)

        async def scenario(client):
            sender = await client.ws_connect('/ws')
            listener = await client.ws_connect('/ws')
            await sender.receive_json(timeout=5)
            await listener.receive_json(timeout=5)

            await sender.send_str('not json')
            await sender.send_json({'type': 'unknown'})
            await sender.send_json({'type': 'setTime', 'payload': {'t': 12.5}})

            relayed = await listener.receive_json(timeout=5)
            echoed = await sender.receive_json(timeout=5)
            await sender.close()
            await listener.close()
            return relayed, echoed

        relayed, echoed = run_with_client(server, scenario)
        assert relayed == {'type': 'setTime', 'payload': {'t': 12.5}}
        assert echoed == relayed


class TestLifecycle:
    """Tests for start/close."""

    @pytest.mark.parametrize('port', [-1, 65536, 'abc', 1.5, [80]])
    def test_invalid_port(self, config_store, port):
        server = OverlayServer(config_store)
        with pytest.raises(ConfigurationError):
            asyncio.run(server.start(port))

    def test_start_on_ephemeral_port_and_close(self, config_store):
        server = OverlayServer(config_store)

        async def run_test():
            port = await server.start(0)
            await server.close()
            await server.close()
            return port

        assert asyncio.run(run_test()) > 0
        assert server.runner is None

    def test_serves_video_cache(self, config_store, cache_dirs):
        video_dir, _ = cache_dirs
        (video_dir / 'clip.mp4').write_bytes(b'video')
        server = OverlayServer(config_store, video_dir=video_dir)

        async def scenario(client):
            resp = await client.get('/video-cache/clip.mp4')
            return resp.status, await resp.read()

        assert run_with_client(server, scenario) == (200, b'video')


def test_normalize_fonts_rejects_non_lists():
    assert normalize_fonts(None) == []
    assert normalize_fonts({'name': 'x'}) == []
    assert normalize_fonts(['not a font', {'url': ''}]) == []


def test_parse_port():
    assert parse_port('8080') == 8080
    assert parse_port(0) == 0
