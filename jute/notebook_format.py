"""
Document model for Jupyter notebook (.ipynb) files.

Based on the nbformat v4 schema. Unrecognized attributes are kept on every
model so that a document survives a load without losing data.
"""
import uuid
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

MultilineString = Union[str, List[str]]


def join_source(source: MultilineString) -> str:
    """Normalize a cell source, given as one block or as a list of lines, to one string."""
    if isinstance(source, str):
        return source
    return "\n".join(source)


class KernelSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    display_name: str


class LanguageInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    codemirror_mode: Optional[Union[str, Dict[str, Any]]] = None
    file_extension: Optional[str] = None
    mimetype: Optional[str] = None
    pygments_lexer: Optional[str] = None


class Author(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None


class NotebookMetadata(BaseModel):
    """Root-level metadata for the notebook."""

    model_config = ConfigDict(extra="allow")

    kernelspec: Optional[KernelSpec] = None
    language_info: Optional[LanguageInfo] = None
    orig_nbformat: Optional[int] = None
    title: Optional[str] = None
    authors: Optional[List[Author]] = None


class NotebookCell(BaseModel):
    """
    A raw, markdown or code cell.

    Documents older than nbformat 4.5 carry no cell IDs; those cells get a
    fresh random ID when parsed.
    """

    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    cell_type: Literal["code", "markdown", "raw"] = "code"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    source: MultilineString = ""
    # Code cells only.
    execution_count: Optional[int] = None
    outputs: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return join_source(self.source)


class NotebookRoot(BaseModel):
    """The root structure of a notebook file."""

    model_config = ConfigDict(extra="allow")

    metadata: NotebookMetadata = Field(default_factory=NotebookMetadata)
    nbformat: int = 4
    nbformat_minor: int = 5
    cells: List[NotebookCell] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_unique_cell_ids(self):
        seen = set()
        for cell in self.cells:
            if cell.id in seen:
                raise ValueError(f"duplicate cell id {cell.id!r}")
            seen.add(cell.id)
        return self


def parse_notebook(contents: Union[str, bytes]) -> NotebookRoot:
    """
    Parse the JSON text of a notebook.

    Raises:
        pydantic.ValidationError: If the text is not JSON or does not match the schema.
    """
    return NotebookRoot.model_validate_json(contents)
