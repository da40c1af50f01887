"""
Unit tests for the WebServer class.
"""
import asyncio
import errno
from unittest.mock import AsyncMock, Mock, patch

import pytest
from aiohttp import test_utils

from conftest import FakeKernelManager, execute_result, stdout
from jute.notebook import Notebook
from jute.notebook_format import NotebookRoot
from jute.web_server import WebServer


def serve(server):
    return test_utils.TestClient(test_utils.TestServer(server.create_app()))


class TestWebServerLifecycle:
    """Test cases for starting and stopping the server."""

    def setup_method(self):
        """Set up test fixtures."""
        self.mock_notebook = Mock()
        self.mock_kernel_manager = Mock()
        self.web_server = WebServer(self.mock_notebook, self.mock_kernel_manager, host="127.0.0.1", port=8765)

    def test_web_server_init_defaults(self):
        """Test WebServer initialization with default values."""
        server = WebServer(self.mock_notebook, self.mock_kernel_manager)
        assert server.host == "127.0.0.1"
        assert server.port == 8765
        assert server.auto_select_port is False
        assert server.active_connections == set()
        assert server.get_connection_count() == 0

    @pytest.mark.asyncio
    async def test_start_success(self):
        """Test successful server startup."""
        with patch("jute.web_server.web") as mock_web:
            mock_app = Mock()
            mock_runner = AsyncMock()
            mock_site = AsyncMock()

            mock_web.Application.return_value = mock_app
            mock_web.AppRunner.return_value = mock_runner
            mock_web.TCPSite.return_value = mock_site

            result = await self.web_server.start()

            assert result == (False, None)
            assert self.web_server.app == mock_app
            assert self.web_server.site == mock_site
            assert mock_app.router.add_get.call_count == 4
            assert mock_app.router.add_post.call_count == 4
            mock_runner.setup.assert_called_once()
            mock_site.start.assert_called_once()
            self.mock_notebook.store.subscribe.assert_called_once()
            assert self.web_server.relay_task is not None

            await self.web_server.stop()

    @pytest.mark.asyncio
    async def test_start_port_in_use(self):
        """Test that a busy port fails the start when fallback is disabled."""
        with patch("jute.web_server.web") as mock_web:
            busy_site = AsyncMock()
            busy_site.start.side_effect = OSError(errno.EADDRINUSE, "Address already in use")
            mock_web.AppRunner.return_value = AsyncMock()
            mock_web.TCPSite.return_value = busy_site

            with pytest.raises(OSError):
                await self.web_server.start()

            assert mock_web.TCPSite.call_count == 1
            assert self.web_server.runner is None

    @pytest.mark.asyncio
    async def test_start_port_fallback(self):
        """Test that the next free port is used when fallback is enabled."""
        self.web_server.auto_select_port = True
        with patch("jute.web_server.web") as mock_web:
            busy_site = AsyncMock()
            busy_site.start.side_effect = OSError(errno.EADDRINUSE, "Address already in use")
            free_site = AsyncMock()
            mock_web.AppRunner.return_value = AsyncMock()
            mock_web.TCPSite.side_effect = [busy_site, free_site]

            result = await self.web_server.start()

            assert result == (True, 8765)
            assert self.web_server.port == 8766
            assert self.web_server.site == free_site

            await self.web_server.stop()

    @pytest.mark.asyncio
    async def test_start_failure_cleanup(self):
        """Test that start() cleans up on failure."""
        with patch("jute.web_server.web") as mock_web:
            mock_runner = AsyncMock()
            mock_runner.setup.side_effect = Exception("Setup failed")
            mock_web.AppRunner.return_value = mock_runner

            with patch.object(self.web_server, "stop", new_callable=AsyncMock) as mock_stop:
                with pytest.raises(Exception, match="Setup failed"):
                    await self.web_server.start()

                mock_stop.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_success(self):
        """Test successful server shutdown."""
        mock_ws1 = AsyncMock()
        mock_ws1.closed = False
        mock_ws2 = AsyncMock()
        mock_ws2.closed = True
        self.web_server.active_connections = {mock_ws1, mock_ws2}

        mock_site = AsyncMock()
        mock_runner = AsyncMock()
        unsubscribe = Mock()
        self.web_server.site = mock_site
        self.web_server.runner = mock_runner
        self.web_server._unsubscribe = unsubscribe

        await self.web_server.stop()

        mock_ws1.close.assert_called_once_with(code=1000, message=b"Server shutdown")
        mock_ws2.close.assert_not_called()
        unsubscribe.assert_called_once()
        assert self.web_server.active_connections == set()
        mock_site.stop.assert_called_once()
        mock_runner.cleanup.assert_called_once()
        assert self.web_server.site is None
        assert self.web_server.runner is None
        assert self.web_server.app is None

    @pytest.mark.asyncio
    async def test_stop_no_components(self):
        """Test stopping when no server components exist."""
        await self.web_server.stop()

    @pytest.mark.asyncio
    async def test_broadcast_drops_failed_connections(self):
        """Test that a client that fails to receive is disconnected."""
        good = AsyncMock()
        good.closed = False
        bad = AsyncMock()
        bad.closed = False
        bad.send_str.side_effect = ConnectionResetError("gone")
        self.web_server.active_connections = {good, bad}
        state = Mock()
        state.to_dict.return_value = {"cell_ids": []}

        await self.web_server.broadcast_state(state)

        good.send_str.assert_called_once_with('{"cell_ids": []}')
        bad.close.assert_called_once()
        assert self.web_server.active_connections == {good}


class TestWebServerRoutes:
    """Test cases for the HTTP and WebSocket endpoints."""

    async def make_server(self, notebook_file, scripts=None):
        path = notebook_file([{"id": "a", "cell_type": "code", "metadata": {}, "source": "1 + 1"}], name="demo.ipynb")
        kernel_manager = FakeKernelManager(scripts=scripts)
        notebook = Notebook(path, kernel_manager)
        await notebook.load_notebook()
        return WebServer(notebook, kernel_manager)

    @pytest.mark.asyncio
    async def test_index(self, notebook_file):
        server = await self.make_server(notebook_file)
        async with serve(server) as client:
            response = await client.get("/")
            assert response.status == 200
            assert "demo.ipynb" in await response.text()

    @pytest.mark.asyncio
    async def test_get_notebook(self, notebook_file):
        server = await self.make_server(notebook_file)
        async with serve(server) as client:
            response = await client.get("/api/notebook")
            body = await response.json()

        assert body["cell_ids"] == ["a"]
        assert body["cells"]["a"] == {"initial_text": "1 + 1", "output": None}
        assert body["is_loading"] is False

    @pytest.mark.asyncio
    async def test_add_cell(self, notebook_file):
        server = await self.make_server(notebook_file)
        async with serve(server) as client:
            response = await client.post("/api/cells", json={"text": "print('hi')"})
            assert response.status == 201
            cell_id = (await response.json())["cell_id"]

            for bad_body in ({"text": 3}, [1, 2]):
                response = await client.post("/api/cells", json=bad_body)
                assert response.status == 400
            response = await client.post("/api/cells", data="not json")
            assert response.status == 400

        assert server.notebook.state.cell_ids == ("a", cell_id)
        assert server.notebook.state.cells[cell_id].initial_text == "print('hi')"

    @pytest.mark.asyncio
    async def test_execute(self, notebook_file):
        server = await self.make_server(notebook_file, scripts={"1 + 1": [execute_result({"text/plain": "2"})]})
        async with serve(server) as client:
            response = await client.post("/api/cells/a/execute")
            body = await response.json()

        assert response.status == 200
        assert body["cell_id"] == "a"
        assert body["output"]["status"] == "success"
        assert body["output"]["output"] == "2"
        assert body["output"]["timings"]["finished_at"] is not None

    @pytest.mark.asyncio
    async def test_execute_unknown_cell(self, notebook_file):
        server = await self.make_server(notebook_file)
        async with serve(server) as client:
            response = await client.post("/api/cells/nope/execute")
            assert response.status == 404
            assert (await response.json())["error"] == "Cell nope not found"

        assert server.kernel_manager.start_calls == 0

    @pytest.mark.asyncio
    async def test_execute_cell_removed_by_reload(self, notebook_file):
        """Test that a cell dropped by a reload during its run maps to 404."""
        server = await self.make_server(notebook_file, scripts={"1 + 1": [stdout("2\n")]})
        notebook = server.notebook
        run_cell = notebook.execute

        async def execute_then_reload(cell_id):
            await run_cell(cell_id)
            notebook.store.load_notebook(NotebookRoot())

        notebook.execute = execute_then_reload
        async with serve(server) as client:
            response = await client.post("/api/cells/a/execute")
            assert response.status == 404
            assert (await response.json())["error"] == "Cell a not found"

    @pytest.mark.asyncio
    async def test_clear(self, notebook_file):
        server = await self.make_server(notebook_file, scripts={"1 + 1": [stdout("2\n")]})
        await server.notebook.execute("a")
        assert server.notebook.state.cells["a"].output is not None

        async with serve(server) as client:
            response = await client.post("/api/cells/a/clear")
            assert response.status == 200
            response = await client.post("/api/cells/nope/clear")
            assert response.status == 404

        assert server.notebook.state.cells["a"].output is None

    @pytest.mark.asyncio
    async def test_interrupt(self, notebook_file):
        server = await self.make_server(notebook_file)
        async with serve(server) as client:
            response = await client.post("/api/kernel/interrupt")
            assert response.status == 409

            kernel_id = await server.notebook.start()
            response = await client.post("/api/kernel/interrupt")
            assert response.status == 200

        assert server.kernel_manager.get_session(kernel_id).interrupt_count == 1

    @pytest.mark.asyncio
    async def test_kernels(self, notebook_file):
        server = await self.make_server(notebook_file)
        kernel_id = await server.notebook.start()
        async with serve(server) as client:
            response = await client.get("/api/kernels")
            body = await response.json()

        assert body["count"] == 1
        assert kernel_id in body["sessions"]
        assert [spec["name"] for spec in body["kernelspecs"]] == ["python3"]

    @pytest.mark.asyncio
    async def test_websocket_receives_snapshot_then_changes(self, notebook_file):
        server = await self.make_server(notebook_file)
        server.start_relay()
        try:
            async with serve(server) as client:
                ws = await client.ws_connect("/ws")
                snapshot = await ws.receive_json(timeout=1.0)
                assert snapshot["cell_ids"] == ["a"]

                cell_id = server.notebook.add_cell("x = 1")
                update = await ws.receive_json(timeout=1.0)
                assert update["cell_ids"] == ["a", cell_id]

                await ws.close()
                await asyncio.sleep(0)
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_websocket_receives_every_commit(self, notebook_file):
        """Test that back-to-back commits each reach the client."""
        server = await self.make_server(notebook_file)
        server.start_relay()
        try:
            async with serve(server) as client:
                ws = await client.ws_connect("/ws")
                await ws.receive_json(timeout=1.0)

                added = [server.notebook.add_cell(f"x = {n}") for n in range(3)]
                updates = [await ws.receive_json(timeout=1.0) for _ in added]

                assert [update["cell_ids"] for update in updates] == [
                    ["a", added[0]],
                    ["a", added[0], added[1]],
                    ["a", added[0], added[1], added[2]],
                ]
                await ws.close()
                await asyncio.sleep(0)
        finally:
            await server.stop()
