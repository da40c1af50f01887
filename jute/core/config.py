"""
Configuration management utilities for Jute.

This module contains functions for retrieving configuration from environment
variables with appropriate defaults and error handling.
"""
import logging
from typing import Mapping, Optional

DEFAULT_KERNEL_NAME = "python3"
DEFAULT_WEB_SERVER_HOST = "127.0.0.1"
DEFAULT_WEB_SERVER_PORT = 8765

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def get_kernel_name(env: Mapping[str, str], logger: logging.Logger) -> str:
    """
    Get the kernelspec name used when a notebook starts its kernel.

    Args:
        env: Environment mapping, usually os.environ
        logger: Logger instance for error reporting

    Returns:
        str: The kernelspec name, defaults to 'python3' if not set or blank.
    """
    name = env.get("JUTE_KERNEL_NAME", DEFAULT_KERNEL_NAME).strip()
    if not name:
        logger.warning(f"Empty JUTE_KERNEL_NAME, using default '{DEFAULT_KERNEL_NAME}'")
        return DEFAULT_KERNEL_NAME
    return name


def get_python_path(env: Mapping[str, str], logger: logging.Logger) -> Optional[str]:
    """
    Get the interpreter that replaces a bare 'python' in kernelspec argv.

    Returns:
        Optional[str]: The interpreter path, or None to launch kernelspecs unchanged.
    """
    return env.get("JUTE_PYTHON_PATH") or None


def get_web_server_host(env: Mapping[str, str], logger: logging.Logger) -> str:
    """
    Get the web server host.

    Args:
        env: Environment mapping, usually os.environ
        logger: Logger instance for error reporting

    Returns:
        str: The host address for the web server, defaults to '127.0.0.1' if not set.
    """
    return env.get("JUTE_WEB_SERVER_HOST") or DEFAULT_WEB_SERVER_HOST


def get_web_server_port(env: Mapping[str, str], logger: logging.Logger) -> int:
    """
    Get the web server port.

    Args:
        env: Environment mapping, usually os.environ
        logger: Logger instance for error reporting

    Returns:
        int: The port number for the web server, defaults to 8765 if not set or invalid.
    """
    raw = env.get("JUTE_WEB_SERVER_PORT")
    if raw is None:
        return DEFAULT_WEB_SERVER_PORT
    try:
        port = int(raw)
    except ValueError as e:
        logger.warning(f"Error parsing JUTE_WEB_SERVER_PORT: {e}")
        return DEFAULT_WEB_SERVER_PORT
    if not 0 < port < 65536:
        logger.warning(f"JUTE_WEB_SERVER_PORT {port} out of range, using {DEFAULT_WEB_SERVER_PORT}")
        return DEFAULT_WEB_SERVER_PORT
    return port


def get_web_server_auto_select_port(env: Mapping[str, str], logger: logging.Logger) -> bool:
    """
    Get the auto_select_port setting.

    When enabled, the web server will automatically try subsequent ports if the
    configured port is already in use. This is disabled by default so the server
    never ends up on an unexpected port.

    Returns:
        bool: Whether to automatically select an available port, defaults to False.
    """
    raw = env.get("JUTE_WEB_SERVER_AUTO_SELECT_PORT", "").strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw not in _FALSE_VALUES:
        logger.warning(f"Unrecognized JUTE_WEB_SERVER_AUTO_SELECT_PORT value '{raw}', using false")
    return False


def get_log_file(env: Mapping[str, str], logger: logging.Logger) -> Optional[str]:
    """Get the log file path; None logs to stderr."""
    return env.get("JUTE_LOG_FILE") or None
