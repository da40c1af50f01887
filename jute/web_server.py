import asyncio
import errno
import json
import logging
from html import escape
from typing import Optional, Set, Tuple

from aiohttp import WSMsgType, web

from .errors import CellNotFoundError, KernelDisconnectError
from .kernel_session import KernelSessionManager
from .notebook import Notebook
from .notebook_store import NotebookState


class WebServer:
    """
    Web server component exposing a Notebook over HTTP, and pushing every change
    of its state to WebSocket clients.
    """

    def __init__(
        self,
        notebook: Notebook,
        kernel_manager: KernelSessionManager,
        host: str = "127.0.0.1",
        port: int = 8765,
        auto_select_port: bool = False,
        max_port_attempts: int = 10,
    ):
        """
        Initialize the web server.

        Args:
            notebook: The notebook served to clients
            kernel_manager: KernelSessionManager for listing kernels
            host: Host address to bind the server to
            port: Port number to bind the server to
            auto_select_port: If True, automatically try subsequent ports when the
                configured port is in use.
            max_port_attempts: Maximum number of ports to try when auto_select_port
                is enabled.
        """
        self.notebook = notebook
        self.kernel_manager = kernel_manager
        self.host = host
        self.port = port
        self.auto_select_port = auto_select_port
        self.max_port_attempts = max_port_attempts
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self.active_connections: Set[web.WebSocketResponse] = set()
        self.relay_queue: asyncio.Queue = asyncio.Queue()
        self.relay_task: Optional[asyncio.Task] = None
        self._unsubscribe = None
        self._logger = logging.getLogger("jute.web_server")

    def create_app(self) -> web.Application:
        """Build the aiohttp application with all routes."""
        app = web.Application()
        app.router.add_get("/", self._handle_index)
        app.router.add_get("/api/notebook", self._handle_notebook)
        app.router.add_post("/api/cells", self._handle_add_cell)
        app.router.add_post("/api/cells/{cell_id}/execute", self._handle_execute)
        app.router.add_post("/api/cells/{cell_id}/clear", self._handle_clear)
        app.router.add_post("/api/kernel/interrupt", self._handle_interrupt)
        app.router.add_get("/api/kernels", self._handle_kernels)
        app.router.add_get("/ws", self._handle_websocket)
        return app

    async def start(self) -> Tuple[bool, Optional[int]]:
        """
        Start the aiohttp web server.

        Returns:
            Tuple[bool, Optional[int]]: A tuple of (used_fallback_port, original_port).
                - used_fallback_port: True if a fallback port was used due to the
                  original port being in use.
                - original_port: The originally requested port if a fallback was used,
                  None otherwise.
        """
        try:
            self.app = self.create_app()
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()

            used_fallback, original_port = await self._try_bind_port()

            self.start_relay()
            self._logger.info(f"Web server started on http://{self.host}:{self.port}")
            return used_fallback, original_port

        except Exception as e:
            self._logger.error(f"Failed to start web server: {e}")
            await self.stop()
            raise

    async def _try_bind_port(self) -> Tuple[bool, Optional[int]]:
        """
        Attempt to bind to the configured port, with optional fallback.

        Raises:
            OSError: If binding fails and auto_select_port is disabled, or if
                all attempted ports are in use.
        """
        original_port = self.port

        for attempt in range(self.max_port_attempts):
            try:
                self.site = web.TCPSite(self.runner, self.host, self.port, reuse_address=True)
                await self.site.start()

                used_fallback = self.port != original_port
                return used_fallback, original_port if used_fallback else None

            except OSError as e:
                if e.errno != errno.EADDRINUSE:
                    raise

                if not self.auto_select_port:
                    self._logger.error(
                        f"Port {self.port} is already in use. "
                        "Set JUTE_WEB_SERVER_AUTO_SELECT_PORT=true to automatically try other ports."
                    )
                    raise

                self.port += 1
                self._logger.info(
                    f"Port {self.port - 1} in use, trying port {self.port} "
                    f"(attempt {attempt + 2}/{self.max_port_attempts})"
                )

        raise OSError(
            errno.EADDRINUSE,
            f"Could not find an available port after {self.max_port_attempts} attempts "
            f"(tried ports {original_port}-{self.port - 1})",
        )

    def start_relay(self):
        """Subscribe to the notebook store and start forwarding its states to clients."""
        if self._unsubscribe is None:
            self._unsubscribe = self.notebook.store.subscribe(self.relay_queue.put_nowait)
        if self.relay_task is None or self.relay_task.done():
            self.relay_task = asyncio.create_task(self._relay_loop())

    async def _relay_loop(self):
        """
        Broadcast every store state, in commit order.
        """
        try:
            while True:
                state = await self.relay_queue.get()
                await self.broadcast_state(state)
        except asyncio.CancelledError:
            self._logger.debug("State relay cancelled")
            raise

    async def stop(self):
        """
        Stop the web server and clean up resources.
        """
        self._logger.info("Stopping web server...")

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        if self.relay_task and not self.relay_task.done():
            self.relay_task.cancel()
            try:
                await self.relay_task
            except asyncio.CancelledError:
                pass
        self.relay_task = None

        active_websockets = [ws for ws in self.active_connections if not ws.closed]
        if active_websockets:
            self._logger.info(f"Closing {len(active_websockets)} active WebSocket connections.")
            await asyncio.gather(
                *(ws.close(code=1000, message=b"Server shutdown") for ws in active_websockets),
                return_exceptions=True,
            )
        self.active_connections.clear()

        if self.site:
            await self.site.stop()
            self.site = None

        if self.runner:
            await self.runner.cleanup()
            self.runner = None

        self.app = None
        self._logger.info("Web server stopped successfully.")

    async def _handle_index(self, request):
        """Serve a small page describing the available endpoints."""
        page = f"""<!DOCTYPE html>
<html>
<head>
    <title>Jute - {escape(self.notebook.filename)}</title>
</head>
<body>
    <h1>{escape(self.notebook.filename)}</h1>
    <p>Notebook state: <code>/api/notebook</code></p>
    <p>WebSocket endpoint: <code>/ws</code></p>
</body>
</html>
"""
        return web.Response(text=page, content_type="text/html")

    async def _handle_notebook(self, request):
        return web.json_response(self.notebook.state.to_dict())

    async def _handle_add_cell(self, request):
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"error": "Request body must be JSON"}, status=400)

        text = body.get("text", "") if isinstance(body, dict) else None
        if not isinstance(text, str):
            return web.json_response({"error": "'text' must be a string"}, status=400)

        cell_id = self.notebook.add_cell(text)
        return web.json_response({"cell_id": cell_id}, status=201)

    async def _handle_execute(self, request):
        cell_id = request.match_info["cell_id"]
        try:
            await self.notebook.execute(cell_id)
        except CellNotFoundError as e:
            return web.json_response({"error": str(e)}, status=404)

        cell = self.notebook.state.cells.get(cell_id)
        if cell is None:
            # Removed by a reload while running.
            return web.json_response({"error": f"Cell {cell_id} not found"}, status=404)
        output = cell.output.to_dict() if cell.output else None
        return web.json_response({"cell_id": cell_id, "output": output})

    async def _handle_clear(self, request):
        cell_id = request.match_info["cell_id"]
        if cell_id not in self.notebook.state.cells:
            return web.json_response({"error": f"Cell {cell_id} not found"}, status=404)
        self.notebook.clear_output(cell_id)
        return web.json_response({"cell_id": cell_id})

    async def _handle_interrupt(self, request):
        try:
            await self.notebook.interrupt()
        except KernelDisconnectError as e:
            return web.json_response({"error": str(e)}, status=409)
        return web.json_response({"status": "ok"})

    async def _handle_kernels(self, request):
        """
        List running kernel sessions and the kernelspecs that can be started.
        """
        try:
            sessions = self.kernel_manager.list_sessions()
            kernelspecs = self.kernel_manager.discover_kernelspecs()
        except Exception as e:
            self._logger.error(f"Error in kernels API: {e}")
            return web.json_response({"error": str(e)}, status=500)
        return web.json_response({"sessions": sessions, "kernelspecs": kernelspecs, "count": len(sessions)})

    async def _handle_websocket(self, request):
        """
        Handle WebSocket connections.

        The client first receives the current state, then one message per
        change. Incoming messages are only logged.
        """
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        try:
            self._logger.info("WebSocket client connected")
            await ws.send_str(json.dumps(self.notebook.state.to_dict()))
            self.active_connections.add(ws)

            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._logger.debug(f"Received message from WebSocket client: {msg.data}")
                elif msg.type == WSMsgType.ERROR:
                    self._logger.error(f"WebSocket error: {ws.exception()}")
                    break

        except Exception as e:
            self._logger.error(f"Error in WebSocket handler: {e}")
        finally:
            self.active_connections.discard(ws)
            self._logger.info("WebSocket client disconnected")

        return ws

    async def broadcast_state(self, state: NotebookState):
        """
        Send a state snapshot to all connected WebSocket clients.
        """
        if not self.active_connections:
            return

        message = json.dumps(state.to_dict())
        for ws in list(self.active_connections):
            if ws.closed:
                self.active_connections.discard(ws)
                continue
            try:
                await ws.send_str(message)
            except Exception as e:
                self._logger.warning(f"Failed to send state to WebSocket client: {e}")
                self.active_connections.discard(ws)
                if not ws.closed:
                    await ws.close()

    def get_connection_count(self) -> int:
        return len(self.active_connections)
