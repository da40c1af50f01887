"""
Pytest configuration and shared fixtures for Jute tests.
"""
import asyncio
import json

import pytest

from jute.kernel_session import RunCellEvent


class FakeSession:
    """Stands in for a KernelSession; replays a scripted event list per code string."""

    def __init__(self, kernel_id, scripts):
        self.kernel_id = kernel_id
        self.kernel_name = "python3"
        self.banner = "Fake kernel"
        self.scripts = scripts
        self.codes = []
        self.interrupt_count = 0
        self.is_shut_down = False

    async def run_cell(self, code):
        """
        Script items are yielded in order. An asyncio.Event pauses the run until
        it is set, and an exception fails the run at that point.
        """
        self.codes.append(code)
        for item in self.scripts.get(code, []):
            await asyncio.sleep(0)
            if isinstance(item, asyncio.Event):
                await item.wait()
            elif isinstance(item, BaseException):
                raise item
            else:
                yield item

    async def interrupt(self):
        self.interrupt_count += 1

    async def shutdown(self):
        self.is_shut_down = True


class FakeKernelManager:
    """Stands in for a KernelSessionManager without launching processes."""

    def __init__(self, scripts=None, start_delay=0.0, start_error=None):
        self.scripts = scripts if scripts is not None else {}
        self.start_delay = start_delay
        self.start_error = start_error
        self.start_calls = 0
        self.sessions = {}

    def discover_kernelspecs(self):
        return [{"name": "python3", "display_name": "Python 3 (ipykernel)", "argv": ["python", "-m", "ipykernel"]}]

    async def start_session(self, kernel_name=None, python_path=None):
        self.start_calls += 1
        await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error
        session = FakeSession(f"kernel-{self.start_calls}", self.scripts)
        self.sessions[session.kernel_id] = session
        return session

    def get_session(self, kernel_id):
        return self.sessions.get(kernel_id)

    async def shutdown_session(self, kernel_id):
        session = self.sessions.pop(kernel_id)
        await session.shutdown()

    def list_sessions(self):
        return {
            kernel_id: {"kernel_id": kernel_id, "kernel_name": session.kernel_name, "is_alive": True}
            for kernel_id, session in self.sessions.items()
        }


def stdout(text):
    return RunCellEvent("stdout", text)


def stderr(text):
    return RunCellEvent("stderr", text)


def error(ename, evalue):
    return RunCellEvent("error", {"ename": ename, "evalue": evalue, "traceback": []})


def execute_result(data):
    return RunCellEvent("execute_result", {"data": data, "metadata": {}, "execution_count": 1})


def display_data(data, display_id=None, metadata=None, update=False):
    content = {"data": data, "metadata": metadata or {}}
    if display_id is not None:
        content["transient"] = {"display_id": display_id}
    return RunCellEvent("update_display_data" if update else "display_data", content)


@pytest.fixture
def fake_manager():
    return FakeKernelManager()


@pytest.fixture
def notebook_file(tmp_path):
    """Write a notebook document and return its path."""

    def write(cells, name="test.ipynb"):
        path = tmp_path / name
        path.write_text(json.dumps({"nbformat": 4, "nbformat_minor": 5, "metadata": {}, "cells": cells}))
        return str(path)

    return write


def pytest_collection_modifyitems(config, items):
    """Skip tests that need a real kernel when none is installed."""
    for item in items:
        if item.get_closest_marker("requires_jupyter"):
            try:
                from jupyter_client.kernelspec import KernelSpecManager

                available = "python3" in KernelSpecManager().find_kernel_specs()
            except Exception:
                available = False
            if not available:
                item.add_marker(pytest.mark.skip(reason="python3 kernelspec not available"))


def pytest_report_header(config):
    """Add information about available dependencies to test report header."""
    deps = []

    for name in ("jupyter_client", "aiohttp", "pydantic", "click"):
        try:
            module = __import__(name)
            deps.append(f"{name}-{getattr(module, '__version__', '?')}")
        except ImportError:
            deps.append(f"{name}-MISSING")

    return f"dependencies: {', '.join(deps)}"
