"""Loopback HTTP listener receiving OAuth redirects."""

import asyncio
import logging
import socket
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

import uvicorn
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import HTMLResponse

logger = logging.getLogger(__name__)

CallbackHandler = Callable[[Dict[str, str]], Awaitable[Any]]

_PAGE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{title} - {app_name}</title>
<style>
body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", sans-serif;
       display: flex; align-items: center; justify-content: center; height: 100vh; margin: 0; }}
.box {{ text-align: center; }}
</style>
</head>
<body>
<div class="box">
<h1>{title}</h1>
<p>{message}</p>
</div>
</body>
</html>
"""


def render_callback_page(failed: bool, app_name: str = "calsync-providers") -> str:
    if failed:
        return _PAGE.format(
            title="Authentication failed",
            app_name=app_name,
            message=f"You can close this window and try again from {app_name}.",
        )
    return _PAGE.format(
        title="Authentication complete",
        app_name=app_name,
        message=f"You can close this window and return to {app_name}.",
    )


def create_callback_app(
    callback_path: str,
    on_callback: CallbackHandler,
    on_hit: Optional[Callable[[], Awaitable[None]]] = None,
    app_name: str = "calsync-providers",
) -> FastAPI:
    """Build the listener app.

    The callback path answers with a confirmation page immediately; the
    query parameters are handed to ``on_callback`` after the response.
    Any other path is a 404.
    """
    app = FastAPI(title=f"{app_name} OAuth callback", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get(callback_path, response_class=HTMLResponse)
    async def oauth_callback(request: Request, background_tasks: BackgroundTasks):
        params = dict(request.query_params)
        background_tasks.add_task(on_callback, params)
        if on_hit is not None:
            background_tasks.add_task(on_hit)
        return HTMLResponse(render_callback_page('error' in params, app_name))

    return app


class LoopbackCallbackServer:
    """Single-use uvicorn listener bound to the first free loopback port."""

    def __init__(
        self,
        host: str,
        ports: Sequence[int],
        path: str,
        on_callback: CallbackHandler,
        stop_delay: float = 1.0,
        app_name: str = "calsync-providers",
    ):
        self.host = host
        self.app_name = app_name
        self.ports = list(ports)
        self.path = path
        self.stop_delay = stop_delay
        self._on_callback = on_callback
        self.port: Optional[int] = None
        self._socket: Optional[socket.socket] = None
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_handle: Optional[asyncio.TimerHandle] = None

    @property
    def redirect_uri(self) -> Optional[str]:
        if self.port is None:
            return None
        return f"http://{self.host}:{self.port}{self.path}"

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _bind(self) -> socket.socket:
        for port in self.ports:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                sock.bind((self.host, port))
            except OSError:
                sock.close()
                logger.debug(f"Callback port {port} in use")
                continue
            self.port = port
            return sock
        raise OSError(
            f"Could not find available port for OAuth callback ({self.ports[0]}-{self.ports[-1]})"
            if self.ports else "No callback ports configured"
        )

    async def start(self) -> str:
        """Bind a port and start serving.

        Returns:
            The redirect URI for the bound port

        Raises:
            OSError: If every port in the range is taken
        """
        await self.stop()
        self._socket = self._bind()
        app = create_callback_app(self.path, self._on_callback, self._schedule_stop, app_name=self.app_name)
        config = uvicorn.Config(app, log_level="warning", lifespan="off", access_log=False)
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[self._socket]))
        logger.info(f"OAuth callback listener on {self.redirect_uri}")
        return self.redirect_uri

    async def _schedule_stop(self) -> None:
        if self._server is None:
            return
        server = self._server
        self._stop_handle = asyncio.get_running_loop().call_later(
            self.stop_delay, setattr, server, 'should_exit', True
        )

    async def stop(self) -> None:
        if self._stop_handle is not None:
            self._stop_handle.cancel()
            self._stop_handle = None
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            try:
                await self._task
            except Exception as e:
                logger.warning(f"OAuth callback listener exited with error: {e}")
        if self._socket is not None:
            self._socket.close()
        self._server = None
        self._task = None
        self._socket = None
        self.port = None
