import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from . import commands
from .errors import CellNotFoundError, JuteError, KernelDisconnectError
from .execution import CellExecution, EventHandler
from .kernel_session import KernelSessionManager
from .notebook_store import NotebookState, NotebookStore

UNKNOWN_LOAD_ERROR = "An unknown error occurred while loading the notebook."


@dataclass
class CellHandle:
    """Live handles for a rendered cell. `editor` must provide get_text()."""

    editor: Optional[Any] = None


class Notebook:
    """
    Centralized stateful object representing a notebook.

    The Notebook is responsible for communicating with a running Jupyter kernel
    and handling edits to the notebook. It also owns the NotebookStore that the
    UI subscribes to. All user actions go through methods on this class, which
    dispatch to the store.
    """

    def __init__(
        self,
        path: str,
        kernel_manager: KernelSessionManager,
        kernel_name: str = "python3",
        python_path: Optional[str] = None,
    ):
        """
        Args:
            path: Full path to the notebook file
            kernel_manager: Registry of running kernels shared with the backend
            kernel_name: Kernelspec to start for this notebook
            python_path: Optional interpreter override for 'python' kernelspecs
        """
        self.path = path
        self.filename = Path(path).name
        self.directory = str(Path(path).parent)
        self.kernel_manager = kernel_manager
        self.kernel_name = kernel_name
        self.python_path = python_path

        self.store = NotebookStore()
        self.refs: Dict[str, CellHandle] = {}

        self._kernel_start: Optional[asyncio.Future] = None
        self._load_task: Optional[asyncio.Task] = None
        self._logger = logging.getLogger("jute.notebook")

    @property
    def state(self) -> NotebookState:
        return self.store.state

    @property
    def kernel_id(self) -> Optional[str]:
        return self.state.kernel_id

    def open(self) -> asyncio.Task:
        """
        Begin starting the kernel and loading the document, without waiting.

        Returns:
            asyncio.Task: The document load, which never raises.
        """
        self._ensure_kernel_start()
        if self._load_task is None or self._load_task.done():
            self._load_task = asyncio.ensure_future(self.load_notebook())
        return self._load_task

    async def close(self):
        """Stop loading and shut down this notebook's kernel."""
        if self._load_task and not self._load_task.done():
            self._load_task.cancel()
            try:
                await self._load_task
            except asyncio.CancelledError:
                pass
        try:
            await self.stop_kernel()
        except JuteError as e:
            self._logger.warning(f"Error stopping kernel for {self.filename}: {e}")

    def _ensure_kernel_start(self) -> asyncio.Future:
        if self._kernel_start is None or _failed(self._kernel_start):
            self._kernel_start = asyncio.ensure_future(self._start_kernel())
            self._kernel_start.add_done_callback(self._log_kernel_start)
        return self._kernel_start

    async def _start_kernel(self) -> str:
        kernel_id = await commands.start_kernel(self.kernel_manager, self.kernel_name, self.python_path)
        self.store.set_kernel_id(kernel_id)
        return kernel_id

    def _log_kernel_start(self, future: asyncio.Future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self._logger.error(f"Kernel start for {self.filename} failed: {error}")

    async def start(self) -> str:
        """
        Start the kernel for this notebook, or join the start already in progress.

        Concurrent callers share one start request. After a failed start, the
        next call issues a new request.

        Returns:
            str: The kernel ID
        """
        return await asyncio.shield(self._ensure_kernel_start())

    async def _wait_for_kernel(self) -> str:
        if self.kernel_id:
            return self.kernel_id
        # Wait on the existing start, even a failed one; retrying is up to the caller.
        start = self._kernel_start or self._ensure_kernel_start()
        await asyncio.shield(start)
        if not self.kernel_id:
            raise KernelDisconnectError("Kernel was stopped before the cell could run")
        return self.kernel_id

    async def stop_kernel(self):
        """
        Shut down the kernel. The next start() starts a new one.

        A start still in progress is waited for, and the kernel it started is shut down.
        """
        start = self._kernel_start
        if start is not None and not start.done():
            await asyncio.wait([start])
        kernel_id = self.kernel_id
        self._kernel_start = None
        if kernel_id is None:
            return
        self.store.set_kernel_id(None)
        await commands.stop_kernel(self.kernel_manager, kernel_id)

    async def interrupt(self):
        """Interrupt the code currently running in the kernel."""
        session = self.kernel_manager.get_session(self.kernel_id) if self.kernel_id else None
        if session is None:
            raise KernelDisconnectError("No kernel is running for this notebook")
        await session.interrupt()

    async def load_notebook(self):
        """
        Load the document at `path` into the store.

        Failures are recorded as the notebook's error; existing cells are kept.
        """
        self.store.set_is_loading(True)
        try:
            notebook = await commands.get_notebook(self.path)
        except JuteError as e:
            self._logger.error(f"Failed to load notebook {self.path}: {e}")
            self.store.set_is_loading(False)
            self.store.set_error(str(e))
            return
        except Exception:
            self._logger.exception(f"Unexpected failure loading notebook {self.path}")
            self.store.set_is_loading(False)
            self.store.set_error(UNKNOWN_LOAD_ERROR)
            return

        self.store.load_notebook(notebook)
        if self.state.error is not None:
            self.store.set_error(None)
        self.refs = {cell.id: self.refs.get(cell.id) or CellHandle() for cell in notebook.cells}
        self._logger.info(f"Loaded {len(notebook.cells)} cells from {self.filename}")

    def add_cell(self, initial_text: str) -> str:
        """Append a new cell and return its ID."""
        cell_id = uuid.uuid4().hex
        while cell_id in self.state.cells:
            cell_id = uuid.uuid4().hex
        self.refs[cell_id] = CellHandle()
        self.store.add_cell(cell_id, initial_text)
        return cell_id

    def attach_editor(self, cell_id: str, editor: Any):
        """Use `editor.get_text()` as the source of a cell from now on."""
        if cell_id not in self.state.cells:
            raise CellNotFoundError(cell_id)
        self.refs.setdefault(cell_id, CellHandle()).editor = editor

    def clear_output(self, cell_id: str):
        """
        Remove a cell's output.

        A run still in flight for the cell keeps going but no longer writes to it.
        """
        self.store.set_output(cell_id, None)

    def get_source(self, cell_id: str) -> str:
        """
        Snapshot the current source of a cell.

        Raises:
            CellNotFoundError: If the cell does not exist.
        """
        cell = self.state.cells.get(cell_id)
        if cell is None:
            raise CellNotFoundError(cell_id)
        handle = self.refs.get(cell_id)
        if handle is not None and handle.editor is not None:
            return handle.editor.get_text()
        return cell.initial_text

    async def execute(self, cell_id: str):
        """
        Run a cell and record its output in the store.

        Returns after the run's final commit, whether it succeeded or failed.

        Raises:
            CellNotFoundError: If the cell does not exist. Nothing is run or recorded.
        """
        code = self.get_source(cell_id)

        async def request(on_event: EventHandler):
            kernel_id = await self._wait_for_kernel()
            await commands.run_cell(self.kernel_manager, kernel_id, code, on_event)

        await CellExecution(self.store, cell_id).run(request)


def _failed(future: asyncio.Future) -> bool:
    return future.done() and (future.cancelled() or future.exception() is not None)
