"""
REWIND Environment Facade

The only way the core touches the outside world. A backend (local
process, container, remote sandbox) satisfies this capability set and
nothing else; the core never imports a concrete backend.

Mutating:   write_file, edit_file, execute_command
Read-only:  read_file, list_dir, glob, get_vcs_state
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field


class EnvironmentFacadeError(Exception):
    pass


class FileNotFoundInEnvironment(EnvironmentFacadeError):
    pass


class NotADirectoryInEnvironment(EnvironmentFacadeError):
    pass


class FileTooLarge(EnvironmentFacadeError):
    pass


class EditPatternNotFound(EnvironmentFacadeError):
    pass


class EditPatternAmbiguous(EnvironmentFacadeError):
    def __init__(self, message: str, occurrences: int):
        super().__init__(message)
        self.occurrences = occurrences


class CommandTimeout(EnvironmentFacadeError):
    pass


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class CommandResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


class ReadResult(BaseModel):
    path: str
    content: str
    size: int
    encoding: str = "utf-8"
    total_lines: int | None = None
    start_line: int | None = None
    end_line: int | None = None
    has_more: bool = False


class EditResult(BaseModel):
    path: str
    original_content: str
    new_content: str


class ListEntry(BaseModel):
    name: str
    is_directory: bool = False
    is_file: bool = False
    is_symlink: bool = False
    size: int | None = None
    modified: datetime | None = None


class VcsState(BaseModel):
    is_repo: bool = False
    commit_id: str | None = None
    branch: str | None = None
    modified_files: list[str] = Field(default_factory=list)
    staged_files: list[str] = Field(default_factory=list)
    untracked_files: list[str] = Field(default_factory=list)
    deleted_files: list[str] = Field(default_factory=list)

    @property
    def dirty(self) -> bool:
        return bool(
            self.modified_files or self.staged_files
            or self.untracked_files or self.deleted_files
        )


# ---------------------------------------------------------------------------
# Capability interface
# ---------------------------------------------------------------------------

@runtime_checkable
class Environment(Protocol):
    """Capability set every backend implements.

    `invocation_id` identifies the tool invocation on whose behalf the call
    is made; the checkpointing decorator stamps snapshots with it.
    """

    root: Path

    async def execute_command(
        self, invocation_id: str, command: str, cwd: str | None = None
    ) -> CommandResult: ...

    async def read_file(
        self,
        invocation_id: str,
        path: str,
        max_size: int | None = None,
        line_offset: int = 0,
        line_count: int | None = None,
        encoding: str = "utf-8",
    ) -> ReadResult: ...

    async def write_file(
        self, invocation_id: str, path: str, content: str, encoding: str = "utf-8"
    ) -> None: ...

    async def edit_file(
        self,
        invocation_id: str,
        path: str,
        search_text: str,
        replace_text: str,
        encoding: str = "utf-8",
    ) -> EditResult: ...

    async def list_dir(
        self, invocation_id: str, path: str, show_hidden: bool = False, details: bool = False
    ) -> list[ListEntry]: ...

    async def glob(
        self, invocation_id: str, pattern: str, cwd: str | None = None, include_hidden: bool = False
    ) -> list[str]: ...

    async def get_vcs_state(self) -> VcsState: ...
