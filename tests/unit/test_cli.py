"""
Unit tests for the command line interface.
"""
import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest
from click.testing import CliRunner

from jute import cli
from jute.cli import main


class TestKernelsCommand:
    def test_lists_kernelspecs(self):
        specs = [{"name": "python3", "display_name": "Python 3 (ipykernel)", "argv": []}]
        with patch("jute.cli.KernelSessionManager") as mock_manager_class:
            mock_manager_class.return_value.discover_kernelspecs.return_value = specs
            result = CliRunner().invoke(main, ["kernels"])

        assert result.exit_code == 0
        assert "python3\tPython 3 (ipykernel)" in result.output

    def test_no_kernelspecs(self):
        with patch("jute.cli.KernelSessionManager") as mock_manager_class:
            mock_manager_class.return_value.discover_kernelspecs.return_value = []
            result = CliRunner().invoke(main, ["kernels"])

        assert result.exit_code == 1


class TestServeCommand:
    """Test cases for option and environment handling of `jute serve`."""

    def test_options_override_environment(self):
        with patch("jute.cli._serve", new_callable=Mock) as mock_serve, \
             patch("jute.cli.asyncio.run") as mock_run, \
             patch("jute.cli.configure_logging"):
            result = CliRunner().invoke(
                main,
                ["serve", "demo.ipynb", "--kernel", "ir", "--port", "9001"],
                env={"JUTE_KERNEL_NAME": "python3", "JUTE_WEB_SERVER_PORT": "9000", "JUTE_PYTHON_PATH": "/opt/py"},
            )

        assert result.exit_code == 0, result.output
        mock_run.assert_called_once()
        mock_serve.assert_called_once_with("demo.ipynb", "ir", "/opt/py", "127.0.0.1", 9001, False)

    def test_environment_defaults(self):
        with patch("jute.cli._serve", new_callable=Mock) as mock_serve, \
             patch("jute.cli.asyncio.run"), \
             patch("jute.cli.configure_logging") as mock_logging:
            result = CliRunner().invoke(
                main,
                ["serve", "demo.ipynb", "--debug"],
                env={"JUTE_WEB_SERVER_AUTO_SELECT_PORT": "true", "JUTE_LOG_FILE": "/tmp/jute.log"},
            )

        assert result.exit_code == 0, result.output
        mock_logging.assert_called_once_with("/tmp/jute.log", True)
        args = mock_serve.call_args[0]
        assert args[1] == "python3"
        assert args[5] is True

    def test_keyboard_interrupt_exits_cleanly(self):
        with patch("jute.cli._serve", new_callable=Mock), \
             patch("jute.cli.asyncio.run", side_effect=KeyboardInterrupt), \
             patch("jute.cli.configure_logging"):
            result = CliRunner().invoke(main, ["serve", "demo.ipynb"])

        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_serve_wires_components(self):
        """Test that _serve opens the notebook and tears everything down."""
        with patch("jute.cli.KernelSessionManager") as mock_manager_class, \
             patch("jute.cli.Notebook") as mock_notebook_class, \
             patch("jute.cli.WebServer") as mock_server_class:
            mock_manager = mock_manager_class.return_value
            mock_manager.shutdown_all_sessions = AsyncMock()
            mock_notebook = mock_notebook_class.return_value
            mock_notebook.filename = "demo.ipynb"
            mock_notebook.open = AsyncMock()
            mock_notebook.close = AsyncMock()
            mock_notebook.state.error = None
            mock_server = mock_server_class.return_value
            mock_server.start = AsyncMock(return_value=(False, None))
            mock_server.stop = AsyncMock()

            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(cli._serve("demo.ipynb", "python3", None, "127.0.0.1", 8765, False), 0.1)

        mock_notebook_class.assert_called_once_with(
            "demo.ipynb", mock_manager, kernel_name="python3", python_path=None
        )
        mock_server.start.assert_called_once()
        mock_notebook.open.assert_called_once()
        mock_server.stop.assert_called_once()
        mock_notebook.close.assert_called_once()
        mock_manager.shutdown_all_sessions.assert_called_once()
