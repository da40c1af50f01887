"""
Notebook document commands.
"""
import asyncio
import logging
from pathlib import Path

from pydantic import ValidationError

from ..errors import NotebookLoadError
from ..notebook_format import NotebookRoot, parse_notebook

_logger = logging.getLogger("jute.commands")


async def get_notebook(path: str) -> NotebookRoot:
    """
    Get the contents of a Jupyter notebook on disk.

    Raises:
        NotebookLoadError: If the file cannot be read or is not a valid notebook.
    """
    _logger.info(f"Getting notebook at {path}")

    try:
        contents = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise NotebookLoadError(f"Could not read {path}: {e}") from e

    try:
        return parse_notebook(contents)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise NotebookLoadError(
            f"Invalid notebook {path}: {first['msg']}" + (f" at {location}" if location else "")
        ) from e
