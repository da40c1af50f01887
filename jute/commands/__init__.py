"""
Backend operations used by a Notebook.

This package contains command handlers organized by functionality:
- kernel_mgmt.py: Starting and stopping kernels
- execution.py: Running code cells
- notebook_io.py: Reading notebook documents
"""
from .execution import run_cell
from .kernel_mgmt import start_kernel, stop_kernel
from .notebook_io import get_notebook

__all__ = ["get_notebook", "run_cell", "start_kernel", "stop_kernel"]
