"""
Error types raised by the Jute notebook backend.
"""


class JuteError(Exception):
    """Base class for failures with a human-readable message."""


class KernelConnectError(JuteError):
    """A kernel could not be found or started."""


class KernelDisconnectError(JuteError):
    """The kernel for a request is not running (unknown ID, died, or shut down)."""


class NotebookLoadError(JuteError):
    """A notebook document could not be read or parsed."""


class CellNotFoundError(JuteError, LookupError):
    """A cell ID has no source to execute."""

    def __init__(self, cell_id: str):
        super().__init__(f"Cell {cell_id} not found")
        self.cell_id = cell_id
