"""
Folding of a cell run's event stream into the cell's output.
"""
import logging
import time
import uuid
from typing import Awaitable, Callable, Dict, Optional

from .display import display_data_to_html
from .kernel_session import RunCellEvent
from .notebook_store import STATUS_ERROR, STATUS_SUCCESS, NotebookOutput, NotebookStore, Timings

EventHandler = Callable[[RunCellEvent], None]
RunRequest = Callable[[EventHandler], Awaitable[None]]


def now_ms() -> int:
    return int(time.time() * 1000)


class CellExecution:
    """
    One run of one cell.

    The run claims the cell's output in the store when created. Its state is
    committed to the store after the start, after every event that changes it,
    and once more when the run finishes, whichever way it finishes. Commits are
    dropped by the store once the cell is cleared or executed again.
    """

    def __init__(self, store: NotebookStore, cell_id: str, clock: Callable[[], int] = now_ms):
        self.store = store
        self.cell_id = cell_id
        self.clock = clock
        self.run_token = store.begin_run(cell_id)

        self.status = STATUS_SUCCESS
        self.output = ""
        self.timings = Timings(started_at=clock())
        self.displays: Dict[str, str] = {}
        self._finished = False
        self._logger = logging.getLogger("jute.execution")

    def snapshot(self) -> NotebookOutput:
        return NotebookOutput(
            status=self.status,
            output=self.output,
            timings=self.timings,
            displays=dict(self.displays),
        )

    def commit(self):
        self.store.set_output(self.cell_id, self.snapshot(), self.run_token)

    async def run(self, request: RunRequest):
        """
        Commit the started state, then issue the run and fold its events until it completes.

        Never raises: a failed request is recorded in the output as an error.
        """
        self.commit()
        try:
            await request(self.handle_event)
        except Exception as e:
            self._logger.info(f"Run of cell {self.cell_id} failed: {e}")
            self.status = STATUS_ERROR
            self.output += str(e)
        finally:
            self.finish()

    def finish(self):
        if self._finished:
            return
        self._finished = True
        self.timings = Timings(
            started_at=self.timings.started_at,
            finished_at=max(self.clock(), self.timings.started_at),
        )
        self.commit()

    def handle_event(self, event: RunCellEvent):
        """Apply one event; malformed and unknown events are logged and skipped."""
        if self._finished:
            self._logger.warning(f"Ignoring {event.event} event after run of cell {self.cell_id} finished")
            return
        try:
            changed = self._fold(event)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            self._logger.warning(f"Skipping malformed {event.event} event for cell {self.cell_id}: {e}")
            return
        if changed:
            self.commit()

    def _fold(self, event: RunCellEvent) -> bool:
        kind = event.event
        data = event.data

        if kind in ("stdout", "stderr"):
            self.output += str(data)
            return True

        if kind == "error":
            text = f"{data['ename']}: {data['evalue']}\n"
            self.status = STATUS_ERROR
            self.output += text
            return True

        if kind == "execute_result":
            text = data["data"].get("text/plain")
            if text is None:
                self._logger.warning(f"Execute result for cell {self.cell_id} has no text/plain form")
                return False
            self.output += str(text)
            return True

        if kind == "display_data":
            display_id = _transient_display_id(data) or uuid.uuid4().hex
            return self._set_display(display_id, data)

        if kind == "update_display_data":
            display_id = _transient_display_id(data)
            if not display_id or display_id not in self.displays:
                self._logger.warning(f"Skipping display update for unknown display ID {display_id!r}")
                return False
            return self._set_display(display_id, data)

        self._logger.warning(f"Skipping unhandled {kind} event for cell {self.cell_id}")
        return False

    def _set_display(self, display_id: str, data: dict) -> bool:
        html = display_data_to_html(data["data"], data.get("metadata") or {})
        if html is None:
            self._logger.warning(f"Skipping unhandled display data with types {sorted(data['data'])}")
            return False
        self.displays = {**self.displays, display_id: html}
        return True


def _transient_display_id(data: dict) -> Optional[str]:
    transient = data.get("transient") or {}
    display_id = transient.get("display_id")
    return str(display_id) if display_id else None
