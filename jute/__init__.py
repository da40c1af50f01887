"""
Jute: a notebook session controller for Jupyter kernels.

A Notebook starts one kernel, loads a document into its store, and runs cells,
folding each run's kernel messages into the cell's output.
"""
from .display import display_data_to_html
from .errors import CellNotFoundError, JuteError, KernelConnectError, KernelDisconnectError, NotebookLoadError
from .kernel_session import KernelSession, KernelSessionManager, RunCellEvent
from .notebook import Notebook
from .notebook_store import NotebookOutput, NotebookState, NotebookStore

__version__ = "0.1.0"

__all__ = [
    "CellNotFoundError",
    "JuteError",
    "KernelConnectError",
    "KernelDisconnectError",
    "KernelSession",
    "KernelSessionManager",
    "Notebook",
    "NotebookLoadError",
    "NotebookOutput",
    "NotebookState",
    "NotebookStore",
    "RunCellEvent",
    "display_data_to_html",
]
