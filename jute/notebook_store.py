"""
Reactive state container for a notebook.

The store holds an immutable NotebookState snapshot. Every action builds a new
snapshot, swaps it in, and then notifies subscribers, so observers only ever
see complete states. Actions are meant to be called by the Notebook class only.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple

from .notebook_format import NotebookRoot

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class Timings:
    """Start and finish timestamps of a run, in milliseconds since the epoch."""

    started_at: int
    finished_at: Optional[int] = None


@dataclass(frozen=True)
class NotebookOutput:
    """Accumulated output of the most recent run of a cell."""

    status: str
    output: str
    timings: Timings
    displays: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "output": self.output,
            "timings": {
                "started_at": self.timings.started_at,
                "finished_at": self.timings.finished_at,
            },
            "displays": dict(self.displays),
        }


@dataclass(frozen=True)
class CellState:
    initial_text: str
    output: Optional[NotebookOutput] = None


@dataclass(frozen=True)
class NotebookState:
    """Snapshot of everything the UI renders for a notebook."""

    # Cell IDs in render order.
    cell_ids: Tuple[str, ...] = ()
    cells: Dict[str, CellState] = field(default_factory=dict)
    # True while the notebook is being loaded from disk.
    is_loading: bool = True
    kernel_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "cell_ids": list(self.cell_ids),
            "cells": {
                cell_id: {
                    "initial_text": cell.initial_text,
                    "output": cell.output.to_dict() if cell.output else None,
                }
                for cell_id, cell in self.cells.items()
            },
            "is_loading": self.is_loading,
            "kernel_id": self.kernel_id,
            "error": self.error,
        }


Listener = Callable[[NotebookState], None]


class NotebookStore:
    """
    Owns the NotebookState of one notebook and the set of subscribers to it.

    The ordered ID list and the cell map are only ever replaced together, which
    keeps them in agreement.
    """

    def __init__(self):
        self._state = NotebookState()
        self._listeners: List[Listener] = []
        # Run token that currently owns each cell's output.
        self._run_owners: Dict[str, int] = {}
        self._run_counter = 0
        self._logger = logging.getLogger("jute.notebook_store")

    @property
    def state(self) -> NotebookState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener called with the new state after every action.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, state: NotebookState):
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                self._logger.error(f"Store listener {listener!r} failed: {e}")

    def add_cell(self, cell_id: str, initial_text: str):
        if cell_id in self._state.cells:
            raise ValueError(f"Cell {cell_id} already exists")
        cells = dict(self._state.cells)
        cells[cell_id] = CellState(initial_text=initial_text)
        self._set(replace(self._state, cell_ids=self._state.cell_ids + (cell_id,), cells=cells))

    def begin_run(self, cell_id: str) -> int:
        """Claim a cell's output for a new run and return the run's token."""
        self._run_counter += 1
        self._run_owners[cell_id] = self._run_counter
        return self._run_counter

    def owns_output(self, cell_id: str, run_token: int) -> bool:
        return self._run_owners.get(cell_id) == run_token

    def set_output(self, cell_id: str, output: Optional[NotebookOutput], run_token: Optional[int] = None) -> bool:
        """
        Replace a cell's output.

        With a run token, the write is dropped unless that run still owns the
        cell. Without one (clearing), ownership is released so that an
        in-flight run can no longer write.

        Returns:
            bool: Whether the output was written.
        """
        if cell_id not in self._state.cells:
            self._logger.warning(f"Ignoring output for unknown cell {cell_id}")
            return False
        if run_token is None:
            self._run_owners.pop(cell_id, None)
        elif not self.owns_output(cell_id, run_token):
            self._logger.debug(f"Dropping output from stale run {run_token} of cell {cell_id}")
            return False
        cells = dict(self._state.cells)
        cells[cell_id] = replace(cells[cell_id], output=output)
        self._set(replace(self._state, cells=cells))
        return True

    def load_notebook(self, notebook: NotebookRoot):
        """Replace the cell list with the cells of a loaded document, in document order."""
        cell_ids = []
        cells = dict(self._state.cells)
        for cell in notebook.cells:
            cell_ids.append(cell.id)
            cells[cell.id] = CellState(initial_text=cell.text)
            self._run_owners.pop(cell.id, None)
        # Keep only cells that are still listed, so the ID list and map agree.
        cells = {cell_id: cells[cell_id] for cell_id in cell_ids}
        self._set(replace(self._state, cell_ids=tuple(cell_ids), cells=cells, is_loading=False))

    def set_error(self, error: Optional[str]):
        self._set(replace(self._state, error=error))

    def set_is_loading(self, is_loading: bool):
        self._set(replace(self._state, is_loading=is_loading))

    def set_kernel_id(self, kernel_id: Optional[str]):
        self._set(replace(self._state, kernel_id=kernel_id))
