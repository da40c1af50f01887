"""
Command line interface for Jute.
"""
import asyncio
import logging
import os
import sys
from typing import Optional

import click

from .core.config import (
    get_kernel_name,
    get_log_file,
    get_python_path,
    get_web_server_auto_select_port,
    get_web_server_host,
    get_web_server_port,
)
from .kernel_session import KernelSessionManager
from .notebook import Notebook
from .web_server import WebServer

_logger = logging.getLogger("jute.cli")


def configure_logging(log_file: Optional[str], debug: bool):
    logging.basicConfig(
        filename=log_file,
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
@click.version_option(package_name="jute")
def main():
    """Jute - run Jupyter notebooks against a live kernel."""


@main.command()
@click.argument("path", type=click.Path(dir_okay=False))
@click.option("--kernel", "kernel_name", default=None, help="Kernelspec to start (default: python3)")
@click.option("--host", default=None, help="Host to bind the web server to")
@click.option("--port", type=int, default=None, help="Port to bind the web server to")
@click.option("--auto-select-port", is_flag=True, help="Try later ports if the port is in use")
@click.option("--log-file", type=click.Path(dir_okay=False), default=None, help="Write logs to this file")
@click.option("--debug", is_flag=True, help="Enable debug logging")
def serve(path, kernel_name, host, port, auto_select_port, log_file, debug):
    """Open the notebook at PATH and serve it over HTTP."""
    env = os.environ
    configure_logging(log_file or get_log_file(env, _logger), debug)

    kernel_name = kernel_name or get_kernel_name(env, _logger)
    host = host or get_web_server_host(env, _logger)
    port = port or get_web_server_port(env, _logger)
    auto_select_port = auto_select_port or get_web_server_auto_select_port(env, _logger)

    try:
        asyncio.run(
            _serve(path, kernel_name, get_python_path(env, _logger), host, port, auto_select_port)
        )
    except KeyboardInterrupt:
        pass


async def _serve(path, kernel_name, python_path, host, port, auto_select_port):
    kernel_manager = KernelSessionManager()
    notebook = Notebook(path, kernel_manager, kernel_name=kernel_name, python_path=python_path)
    server = WebServer(notebook, kernel_manager, host=host, port=port, auto_select_port=auto_select_port)

    try:
        used_fallback, original_port = await server.start()
        if used_fallback:
            click.echo(f"Port {original_port} was in use.", err=True)
        click.echo(f"Serving {notebook.filename} on http://{server.host}:{server.port}")

        await notebook.open()
        if notebook.state.error:
            click.echo(f"Error: {notebook.state.error}", err=True)

        await asyncio.Event().wait()
    finally:
        await server.stop()
        await notebook.close()
        await kernel_manager.shutdown_all_sessions()


@main.command()
def kernels():
    """List the kernelspecs that can be started."""
    specs = KernelSessionManager().discover_kernelspecs()
    if not specs:
        click.echo("No Jupyter kernels found. Please install ipykernel.", err=True)
        sys.exit(1)
    for spec in specs:
        click.echo(f"{spec['name']}\t{spec['display_name']}")


if __name__ == "__main__":
    main()
