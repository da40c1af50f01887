import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from queue import Empty
from typing import Any, AsyncIterator, Dict, List, Optional

from jupyter_client import AsyncKernelManager
from jupyter_client.kernelspec import KernelSpecManager

from .errors import KernelDisconnectError

# IOPub message types that are never forwarded to a run's event stream.
_UNFORWARDED_MSG_TYPES = {"status", "execute_input"}

# Queued after the last event of a run.
_RUN_FINISHED = object()


@dataclass(frozen=True)
class RunCellEvent:
    """
    One event in the output stream of a cell run.

    `event` is 'stdout' or 'stderr' (data is the text), or the IOPub message
    type ('error', 'execute_result', 'display_data', 'update_display_data',
    'clear_output', ...) with the message content as data.
    """

    event: str
    data: Any

    def to_dict(self) -> dict:
        return {"event": self.event, "data": self.data}


def iopub_to_event(msg_type: str, content: dict) -> Optional[RunCellEvent]:
    """Translate an IOPub message into a run event, or None if it is not forwarded."""
    if msg_type in _UNFORWARDED_MSG_TYPES:
        return None
    if msg_type == "stream":
        return RunCellEvent(content.get("name", "stdout"), content.get("text", ""))
    return RunCellEvent(msg_type, content)


class KernelSession:
    """
    Represents a single, running Jupyter kernel and the cell runs in flight on it.
    """

    def __init__(self, kernel_name: str = None, python_path: str = None):
        """
        Initialize a new kernel session.

        Args:
            kernel_name: Optional kernelspec name to use (defaults to 'python3')
            python_path: Optional interpreter replacing a bare 'python' in the kernelspec argv
        """
        self.kernel_id: str = str(uuid.uuid4())
        self.km: Optional[AsyncKernelManager] = None
        self.client = None
        self.listener_task: Optional[asyncio.Task] = None
        self.monitor_task: Optional[asyncio.Task] = None
        self.kernel_name = kernel_name or "python3"
        self.python_path = python_path
        self.banner: str = ""
        self.created_at = datetime.now()
        self._logger = logging.getLogger(f"jute.kernel.{self.kernel_id[:8]}")

        # Maps the msg_id of each in-flight execute_request to its event queue
        self._runs: Dict[str, asyncio.Queue] = {}

        self.is_dead = False

    async def start(self):
        """
        Start the kernel and establish communication channels.
        """
        try:
            self.km = AsyncKernelManager(kernel_name=self.kernel_name)
            self._apply_python_path()
            await self.km.start_kernel()

            self.client = self.km.client()
            self.client.start_channels()

            await self.client.wait_for_ready(timeout=30)

            reply = await self.client.kernel_info(reply=True, timeout=10)
            self.banner = reply.get("content", {}).get("banner", "")

            self.listener_task = asyncio.create_task(self._listen_iopub())
            self.monitor_task = asyncio.create_task(self._monitor_process())
            self.is_dead = False

            self._logger.info(
                f"Kernel {self.kernel_id[:8]} (type: {self.kernel_name}) started successfully: {self.banner}"
            )

        except asyncio.CancelledError:
            self._logger.info(f"Start of kernel {self.kernel_id[:8]} cancelled")
            await self.shutdown()
            raise
        except Exception as e:
            self._logger.error(f"Failed to start kernel {self.kernel_id[:8]}: {e}")
            await self.shutdown()
            raise

    def _apply_python_path(self):
        if not self.python_path:
            return
        spec = self.km.kernel_spec
        if spec is not None and spec.argv and spec.argv[0] == "python":
            self._logger.debug(f"Launching kernel with {self.python_path} instead of 'python'")
            spec.argv[0] = self.python_path

    async def shutdown(self):
        """
        Safely shut down the kernel and clean up resources with timeouts.
        """
        self._logger.info(f"Shutting down kernel {self.kernel_id[:8]}")
        self._fail_runs(KernelDisconnectError(f"Kernel {self.kernel_id} was shut down"))

        if self.km:
            try:
                await asyncio.wait_for(self.km.shutdown_kernel(now=True), timeout=2.0)
                self._logger.info(f"Kernel {self.kernel_id[:8]} shut down successfully.")
            except asyncio.TimeoutError:
                self._logger.warning(f"Timeout shutting down kernel {self.kernel_id[:8]}. It may be orphaned.")
            except Exception as e:
                self._logger.error(f"Error during kernel shutdown for {self.kernel_id[:8]}: {e}")

        for task in (self.listener_task, self.monitor_task):
            if task and not task.done():
                task.cancel()
                try:
                    await asyncio.wait_for(task, timeout=1.0)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    pass
                except Exception as e:
                    self._logger.warning(f"Background task for {self.kernel_id[:8]} had an error on cleanup: {e}")

        if self.client:
            self.client.stop_channels()

        self.client = None
        self.km = None
        self.listener_task = None
        self.monitor_task = None

    async def interrupt(self):
        """
        Send an interrupt signal to the kernel.

        The run in flight ends through the kernel's own error and idle messages.
        """
        if not self.km:
            raise RuntimeError("Kernel manager is not available. Call start() first.")

        self._logger.info(f"Interrupting kernel {self.kernel_id[:8]}")
        await self.km.interrupt_kernel()

    async def run_cell(self, code: str) -> AsyncIterator[RunCellEvent]:
        """
        Execute code and yield its output events in the order the kernel emits them.

        The iterator ends when the kernel goes idle after the request.

        Raises:
            KernelDisconnectError: If the kernel is not running or dies during the run.
        """
        if self.is_dead or not self.client:
            raise KernelDisconnectError(f"Kernel {self.kernel_id} is not running")

        # No await between sending and registering, so the listener cannot miss replies.
        msg_id = self.client.execute(code, allow_stdin=False)
        queue: asyncio.Queue = asyncio.Queue()
        self._runs[msg_id] = queue
        self._logger.debug(f"Executing request {msg_id[:8]} on kernel {self.kernel_id[:8]}")

        try:
            while True:
                item = await queue.get()
                if item is _RUN_FINISHED:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self._runs.pop(msg_id, None)

    def _fail_runs(self, error: BaseException):
        for queue in self._runs.values():
            queue.put_nowait(error)

    def _route_message(self, message: dict):
        """Deliver one IOPub message to the run that requested it."""
        msg_type = message.get("msg_type") or message.get("header", {}).get("msg_type")
        parent_id = message.get("parent_header", {}).get("msg_id")
        queue = self._runs.get(parent_id)
        if queue is None:
            self._logger.debug(f"Dropping {msg_type} message without a matching run")
            return

        content = message.get("content", {})
        if msg_type == "status":
            if content.get("execution_state") == "idle":
                queue.put_nowait(_RUN_FINISHED)
            return

        event = iopub_to_event(msg_type, content)
        if event is not None:
            queue.put_nowait(event)
            self._logger.debug(f"Relayed {msg_type} from kernel {self.kernel_id[:8]}")

    async def _listen_iopub(self):
        """
        Listen to the IOPub channel and route kernel messages to runs.
        """
        if not self.client:
            return

        try:
            self._logger.info(f"Started IOPub listener for kernel {self.kernel_id[:8]}")

            while True:
                try:
                    message = await self.client.get_iopub_msg(timeout=1.0)
                except (Empty, asyncio.TimeoutError):
                    continue
                try:
                    self._route_message(message)
                except Exception as e:
                    self._logger.warning(f"Error routing IOPub message from kernel {self.kernel_id[:8]}: {e}")

        except asyncio.CancelledError:
            self._logger.info(f"IOPub listener cancelled for kernel {self.kernel_id[:8]}")
            raise
        except Exception as e:
            self._logger.error(f"IOPub listener failed for kernel {self.kernel_id[:8]}: {e}")
            self._fail_runs(KernelDisconnectError(f"Lost connection to kernel {self.kernel_id}: {e}"))
        finally:
            self._logger.info(f"IOPub listener stopped for kernel {self.kernel_id[:8]}")

    async def _monitor_process(self, interval: float = 2.0):
        """
        Periodically check if the kernel process is still alive.

        If the process dies unexpectedly, every run in flight fails.
        """
        try:
            while True:
                if self.km and not await self.km.is_alive():
                    self._logger.warning(f"Kernel {self.kernel_id[:8]} process died unexpectedly.")
                    self.is_dead = True
                    self._fail_runs(KernelDisconnectError(f"Kernel {self.kernel_id} died"))
                    break

                await asyncio.sleep(interval)

        except asyncio.CancelledError:
            pass


class KernelSessionManager:
    """
    Keeps track of the running KernelSession instances, keyed by kernel ID.
    """

    def __init__(self, kernel_spec_manager: Optional[KernelSpecManager] = None):
        self.sessions: Dict[str, KernelSession] = {}
        self.kernel_spec_manager = kernel_spec_manager
        self._logger = logging.getLogger("jute.kernel_manager")

    async def start_session(self, kernel_name: str = None, python_path: str = None) -> KernelSession:
        """
        Start a new kernel session and register it.

        Args:
            kernel_name: Optional kernelspec name to use (defaults to 'python3')
            python_path: Optional interpreter override for 'python' kernelspecs

        Returns:
            KernelSession: The newly started session
        """
        session = KernelSession(kernel_name, python_path)
        await session.start()
        self.sessions[session.kernel_id] = session
        self._logger.info(f"Started session {session.kernel_id[:8]} ({session.kernel_name})")
        return session

    def get_session(self, kernel_id: str) -> Optional[KernelSession]:
        return self.sessions.get(kernel_id)

    async def shutdown_session(self, kernel_id: str):
        """
        Shut down a specific kernel session.

        Raises:
            KernelDisconnectError: If no session has that ID.
        """
        session = self.sessions.pop(kernel_id, None)
        if session is None:
            raise KernelDisconnectError(f"Kernel {kernel_id} is not running")
        await session.shutdown()
        self._logger.info(f"Shut down session {kernel_id[:8]}")

    async def shutdown_all_sessions(self):
        """
        Shut down all active kernel sessions concurrently.
        """
        if not self.sessions:
            self._logger.info("No sessions to shutdown")
            return

        self._logger.info(f"Shutting down {len(self.sessions)} sessions")
        sessions = list(self.sessions.values())
        self.sessions.clear()
        results = await asyncio.gather(*(session.shutdown() for session in sessions), return_exceptions=True)
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                self._logger.error(f"Error shutting down session {session.kernel_id[:8]}: {result}")
        self._logger.info("All sessions shutdown complete")

    def list_sessions(self) -> Dict[str, Dict]:
        """
        Get information about all active sessions.
        """
        result = {}
        for kernel_id, session in self.sessions.items():
            result[kernel_id] = {
                "kernel_id": kernel_id,
                "kernel_name": session.kernel_name,
                "short_id": kernel_id[:8],
                "banner": session.banner,
                "created_at": session.created_at.isoformat(),
                "is_alive": not session.is_dead
                and session.listener_task is not None
                and not session.listener_task.done(),
            }
        return result

    def discover_kernelspecs(self) -> List[Dict[str, Any]]:
        """
        Discover all available kernel specifications on the system.

        Returns:
            List[Dict]: List of kernel specifications, each containing:
                - name: Internal kernel name
                - display_name: Human-readable name
                - argv: Command line arguments for starting the kernel
        """
        ksm = self.kernel_spec_manager or KernelSpecManager()
        kernelspecs = []
        for kernel_name in ksm.find_kernel_specs():
            try:
                spec = ksm.get_kernel_spec(kernel_name)
            except Exception as e:
                self._logger.warning(f"Failed to get spec for kernel {kernel_name}: {e}")
                continue
            kernelspecs.append({"name": kernel_name, "display_name": spec.display_name, "argv": spec.argv})

        self._logger.info(f"Discovered {len(kernelspecs)} kernel specifications")
        if not kernelspecs:
            self._logger.warning("No Jupyter kernel specifications found. Make sure ipykernel is installed.")

        return kernelspecs
