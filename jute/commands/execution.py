"""
Code execution commands.
"""
import logging
from typing import Callable

from ..errors import KernelDisconnectError
from ..kernel_session import KernelSessionManager, RunCellEvent

_logger = logging.getLogger("jute.commands")


async def run_cell(
    kernel_manager: KernelSessionManager,
    kernel_id: str,
    code: str,
    on_event: Callable[[RunCellEvent], None],
):
    """
    Run a code cell in a kernel, passing each output event to `on_event` in order.

    Returns once the kernel has finished the run.

    Raises:
        KernelDisconnectError: If the kernel is not running or dies during the run.
    """
    session = kernel_manager.get_session(kernel_id)
    if session is None:
        raise KernelDisconnectError(f"Kernel {kernel_id} is not running")

    count = 0
    async for event in session.run_cell(code):
        on_event(event)
        count += 1
    _logger.debug(f"Run on kernel {kernel_id[:8]} finished after {count} events")
