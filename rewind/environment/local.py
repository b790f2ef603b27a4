"""
Local-process environment backend.

Runs commands with the host shell and touches files directly under a
root directory. Relative paths resolve against that root; absolute
paths are used as given.
"""

from __future__ import annotations

import asyncio
import base64
import re
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger

from rewind.environment import (
    CommandResult,
    CommandTimeout,
    EditPatternAmbiguous,
    EditPatternNotFound,
    EditResult,
    EnvironmentFacadeError,
    FileNotFoundInEnvironment,
    FileTooLarge,
    ListEntry,
    NotADirectoryInEnvironment,
    ReadResult,
    VcsState,
)

_LINE_BREAK = re.compile(r"\r?\n")


class LocalEnvironment:

    def __init__(
        self,
        root: Path,
        command_timeout: float = 120.0,
        max_read_size: int = 1_048_576,
    ):
        self.root = Path(root).resolve()
        self.command_timeout = command_timeout
        self.max_read_size = max_read_size

    def _resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        if candidate.is_absolute():
            return candidate
        return self.root / candidate

    # ------------------------------------------------------------------
    # Mutating
    # ------------------------------------------------------------------

    async def execute_command(
        self, invocation_id: str, command: str, cwd: str | None = None
    ) -> CommandResult:
        workdir = self._resolve(cwd) if cwd else self.root
        logger.debug(f"[LOCAL] {invocation_id} $ {command} (cwd={workdir})")

        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=workdir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandTimeout(f"Command timed out after {self.command_timeout}s: {command}")
        except asyncio.CancelledError:
            proc.kill()
            raise

        return CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )

    async def write_file(
        self, invocation_id: str, path: str, content: str, encoding: str = "utf-8"
    ) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "w", encoding=encoding, newline="") as f:
                f.write(content)
        except OSError as e:
            raise EnvironmentFacadeError(f"Failed to write file: {e}") from e

    async def edit_file(
        self,
        invocation_id: str,
        path: str,
        search_text: str,
        replace_text: str,
        encoding: str = "utf-8",
    ) -> EditResult:
        target = self._resolve(path)
        if not target.exists():
            raise FileNotFoundInEnvironment(f"File does not exist: {path}")
        if not target.is_file():
            raise EnvironmentFacadeError(f"Path exists but is not a file: {path}")

        with open(target, "r", encoding=encoding, newline="") as f:
            original = f.read()

        # Normalize line endings so CRLF files match LF search text
        normalized = original.replace("\r\n", "\n")
        search = search_text.replace("\r\n", "\n")
        replace = replace_text.replace("\r\n", "\n")

        occurrences = normalized.count(search) if search else 0
        if occurrences == 0:
            raise EditPatternNotFound(f"Search code not found in file: {path}")
        if occurrences > 1:
            raise EditPatternAmbiguous(
                f"Found {occurrences} instances of the search code. "
                "Please provide a more specific search code that matches exactly once.",
                occurrences=occurrences,
            )

        updated = normalized.replace(search, replace, 1)
        with open(target, "w", encoding=encoding, newline="") as f:
            f.write(updated)

        return EditResult(path=str(target), original_content=original, new_content=updated)

    # ------------------------------------------------------------------
    # Read-only
    # ------------------------------------------------------------------

    async def read_file(
        self,
        invocation_id: str,
        path: str,
        max_size: int | None = None,
        line_offset: int = 0,
        line_count: int | None = None,
        encoding: str = "utf-8",
    ) -> ReadResult:
        target = self._resolve(path)
        limit = max_size or self.max_read_size

        if not target.exists():
            raise FileNotFoundInEnvironment(f"File does not exist: {path}")
        if not target.is_file():
            raise EnvironmentFacadeError(f"Path exists but is not a file: {path}")

        size = target.stat().st_size
        if size > limit:
            raise FileTooLarge(f"File is too large ({size} bytes) to read. Max size: {limit} bytes")

        if encoding in ("base64", "binary"):
            data = target.read_bytes()
            return ReadResult(
                path=str(target),
                content=base64.b64encode(data).decode("ascii"),
                size=len(data),
                encoding="base64",
            )

        with open(target, "r", encoding=encoding, newline="") as f:
            text = f.read()

        lines = _LINE_BREAK.split(text) if text else []
        if text.endswith("\n"):
            # A terminating newline does not start another line
            lines.pop()
        start = max(0, line_offset)
        end = len(lines) if line_count is None else min(start + line_count, len(lines))
        numbered = [f"{start + i + 1:>6}\t{line}" for i, line in enumerate(lines[start:end])]

        return ReadResult(
            path=str(target),
            content="\n".join(numbered),
            size=size,
            encoding=encoding,
            total_lines=len(lines),
            start_line=start,
            end_line=end,
            has_more=end < len(lines),
        )

    async def list_dir(
        self, invocation_id: str, path: str, show_hidden: bool = False, details: bool = False
    ) -> list[ListEntry]:
        target = self._resolve(path)
        if not target.exists():
            raise FileNotFoundInEnvironment(f"Directory does not exist: {path}")
        if not target.is_dir():
            raise NotADirectoryInEnvironment(f"Path exists but is not a directory: {path}")

        entries = []
        for child in sorted(target.iterdir(), key=lambda p: p.name):
            if not show_hidden and child.name.startswith("."):
                continue
            entry = ListEntry(
                name=child.name,
                is_directory=child.is_dir(),
                is_file=child.is_file(),
                is_symlink=child.is_symlink(),
            )
            if details:
                try:
                    stat = child.stat()
                    entry.size = stat.st_size
                    entry.modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
                except OSError as e:
                    logger.debug(f"[LOCAL] Could not stat {child}: {e}")
            entries.append(entry)
        return entries

    async def glob(
        self, invocation_id: str, pattern: str, cwd: str | None = None, include_hidden: bool = False
    ) -> list[str]:
        base = self._resolve(cwd) if cwd else self.root
        matches = []
        for match in base.glob(pattern):
            relative = match.relative_to(base)
            if not include_hidden and any(part.startswith(".") for part in relative.parts):
                continue
            matches.append(relative.as_posix())
        return sorted(matches)

    async def get_vcs_state(self) -> VcsState:
        inside = await self._git("rev-parse", "--is-inside-work-tree")
        if inside is None or inside.strip() != "true":
            return VcsState(is_repo=False)

        commit = await self._git("rev-parse", "HEAD")
        branch = await self._git("branch", "--show-current")
        status = await self._git("status", "--porcelain") or ""

        state = VcsState(
            is_repo=True,
            commit_id=commit.strip() if commit else None,
            branch=(branch or "").strip() or None,
        )
        for line in status.splitlines():
            if len(line) < 4:
                continue
            x, y, name = line[0], line[1], line[3:]
            if " -> " in name:
                name = name.split(" -> ", 1)[1]
            if x == "?" and y == "?":
                state.untracked_files.append(name)
                continue
            if x == "D" or y == "D":
                state.deleted_files.append(name)
            if x in "MARC" and x != " ":
                state.staged_files.append(name)
            if y == "M":
                state.modified_files.append(name)
        return state

    async def _git(self, *args: str) -> str | None:
        """Run git in the root; None when git fails or is not installed."""
        try:
            proc = await asyncio.create_subprocess_exec(
                "git", *args,
                cwd=self.root,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return None
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.command_timeout)
        if proc.returncode != 0:
            return None
        return stdout.decode("utf-8", errors="replace")
