"""
Serves the overlay state to renderer clients over HTTP and websockets.

Renderers fetch `/state` once, then keep a websocket open on `/ws` to receive
`{type: 'state'}` pushes and relayed `{type: 'setTime'}` playback clocks.
"""

import json
import logging
import weakref
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from aiohttp import WSMsgType, web

from .config import ConfigStore
from .exceptions import ConfigurationError


def normalize_fonts(fonts: Any) -> List[Dict[str, str]]:
    """Keeps the name/data/url string fields of each font record; drops records with neither data nor url."""
    if not isinstance(fonts, list):
        return []
    normalized = []
    for font in fonts:
        if not isinstance(font, dict):
            continue
        record = {key: font[key] for key in ('name', 'data', 'url') if isinstance(font.get(key), str) and font[key]}
        if record.get('data') or record.get('url'):
            normalized.append(record)
    return normalized


def parse_port(port: Any) -> int:
    """Coerces a port to an int in 0..65535 or raises ConfigurationError."""
    try:
        value = int(port)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid port value: {port}")
    if isinstance(port, float) and not port.is_integer():
        raise ConfigurationError(f"Invalid port value: {port}")
    if not 0 <= value <= 65535:
        raise ConfigurationError(f"Invalid port value: {port}")
    return value


class OverlayServer:
    """Holds the overlay state and pushes every change to connected renderers."""

    def __init__(self, config_store: ConfigStore, video_dir: Optional[Path] = None):
        """
        Initializes the OverlayServer.

        Args:
            config_store: Source of the initial fonts and style; style changes are followed.
            video_dir: Served under `/video-cache/` for in-overlay playback.
        """
        self.config_store = config_store
        self.video_dir = video_dir
        self.logger = logging.getLogger(__name__)
        self.state: Dict[str, Any] = {
            'subContent': '',
            'fontBuffers': normalize_fonts(config_store.get('fonts')),
            'style': config_store.get('output').model_dump(by_alias=True),
        }
        self.clients: 'weakref.WeakSet[web.WebSocketResponse]' = weakref.WeakSet()
        self.runner: Optional[web.AppRunner] = None
        self.port: Optional[int] = None
        self.app = self._build_app()
        self._unsubscribe: Optional[Callable[[], None]] = config_store.subscribe(self._on_config_change)

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/state', self.handle_state)
        app.router.add_get('/ws', self.handle_ws)
        if self.video_dir is not None:
            self.video_dir.mkdir(parents=True, exist_ok=True)
            app.router.add_static('/video-cache/', self.video_dir)
        return app

    async def handle_state(self, request: web.Request) -> web.Response:
        return web.json_response(self.state)

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.clients.add(ws)
        self.logger.debug(f"Overlay client connected ({len(self.clients)} total)")
        try:
            await ws.send_json({'type': 'state', 'payload': self.state})
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_message(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    self.logger.warning(f"Overlay websocket closed with error: {ws.exception()}")
        finally:
            self.clients.discard(ws)
            self.logger.debug(f"Overlay client disconnected ({len(self.clients)} total)")
        return ws

    async def _handle_message(self, data: str):
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            return
        if isinstance(message, dict) and message.get('type') == 'setTime':
            await self.broadcast({'type': 'setTime', 'payload': message.get('payload')})

    async def broadcast(self, message: Dict[str, Any]):
        """Sends `message` to every open client; a failing client is skipped."""
        data = json.dumps(message)
        for ws in list(self.clients):
            if ws.closed:
                continue
            try:
                await ws.send_str(data)
            except ConnectionError as e:
                self.logger.debug(f"Dropping overlay client: {e}")
                self.clients.discard(ws)

    async def update_state(self, patch: Dict[str, Any]):
        """Shallow-merges `patch` into the state and pushes the result."""
        self.state = {**self.state, **patch}
        if isinstance(patch.get('subContent'), str):
            self.logger.info(f"Overlay subtitle content updated ({len(patch['subContent'])} chars)")
        await self.broadcast({'type': 'state', 'payload': self.state})

    def _on_config_change(self, key: str, value: Any):
        if key == 'output':
            self.state = {**self.state, 'style': value.model_dump(by_alias=True)}
        elif key == 'fonts':
            self.state = {**self.state, 'fontBuffers': normalize_fonts(value)}

    async def start(self, port: Any = None, host: str = '127.0.0.1') -> int:
        """
        Starts listening. Defaults to the configured output port.

        Returns:
            The bound port (useful with port 0).

        Raises:
            ConfigurationError: If the port is invalid or cannot be bound.
        """
        port = parse_port(self.config_store.get('output').port if port is None else port)
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, host, port)
        try:
            await site.start()
        except OSError as e:
            await self.runner.cleanup()
            self.runner = None
            self.logger.error(f"Overlay server could not bind {host}:{port}: {e}")
            raise ConfigurationError(f"Overlay server could not listen on port {port}: {e}") from e

        addresses = self.runner.addresses
        self.port = addresses[0][1] if addresses else port
        self.logger.info(f"Overlay server listening on http://{host}:{self.port}")
        return self.port

    async def close(self):
        """Closes client sockets and stops the server. Safe to call twice."""
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        for ws in list(self.clients):
            await ws.close()
        self.clients.clear()
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
            self.logger.info("Overlay server stopped.")
