"""
Kernel management commands.

This module contains command implementation functions for:
- Kernel start
- Kernel stop
"""
import logging

from ..errors import KernelConnectError, KernelDisconnectError
from ..kernel_session import KernelSessionManager

_logger = logging.getLogger("jute.commands")


async def start_kernel(kernel_manager: KernelSessionManager, spec_name: str, python_path: str = None) -> str:
    """
    Start a new Jupyter kernel from the kernelspec with the given name.

    Args:
        kernel_manager: Registry the new session is added to
        spec_name: Kernelspec name, e.g. 'python3'
        python_path: Optional interpreter override for 'python' kernelspecs

    Returns:
        str: The ID of the started kernel

    Raises:
        KernelConnectError: If no such kernelspec exists or the kernel fails to start.
    """
    available = {spec["name"] for spec in kernel_manager.discover_kernelspecs()}
    if spec_name not in available:
        raise KernelConnectError(f"no kernel named {spec_name!r} found")

    try:
        session = await kernel_manager.start_session(spec_name, python_path)
    except Exception as e:
        raise KernelConnectError(f"failed to start kernel {spec_name!r}: {e}") from e

    _logger.info(f"Started new jute kernel {session.kernel_id[:8]}")
    return session.kernel_id


async def stop_kernel(kernel_manager: KernelSessionManager, kernel_id: str):
    """
    Stop a running kernel.

    Raises:
        KernelDisconnectError: If the kernel is not running.
    """
    _logger.info(f"Stopping jute kernel {kernel_id}")
    if kernel_manager.get_session(kernel_id) is None:
        raise KernelDisconnectError(f"Kernel {kernel_id} is not running")
    await kernel_manager.shutdown_session(kernel_id)
