"""Scripted collaborators shared by the test suite."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List

from rewind.checkpoints import Snapshot, SnapshotMeta
from rewind.environment import (
    CommandResult,
    EditPatternAmbiguous,
    EditPatternNotFound,
    EditResult,
    FileNotFoundInEnvironment,
    ListEntry,
    ReadResult,
    VcsState,
)
from rewind.router import ModelDecision, ToolCall
from rewind.transcript import TextBlock


def tool_decision(tool_id: str, invocation_id: str, **args: Any) -> ModelDecision:
    return ModelDecision(tool_call=ToolCall(tool_id=tool_id, invocation_id=invocation_id, args=args))


def final_decision(text: str) -> ModelDecision:
    return ModelDecision(blocks=[TextBlock(text=text)])


@dataclass
class ScriptedModelClient:
    """Hands out decisions in order. An Exception in the script is raised instead."""

    script: List[Any] = field(default_factory=list)
    calls: List[dict[str, Any]] = field(default_factory=list)
    # Set to make the next call hang until cancelled
    hang: bool = False
    # Seconds each call sleeps before answering
    delay: float = 0.0

    async def next_action(self, query, transcript, tools) -> ModelDecision:
        self.calls.append({"query": query, "length": len(transcript), "tools": [t["function"]["name"] for t in tools]})
        if self.hang:
            await asyncio.Event().wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.script:
            return final_decision("done")
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


@dataclass
class FakeEnvironment:
    """In-memory facade. Every call is appended to `log` as "<method>:<invocation>"."""

    files: dict[str, str] = field(default_factory=dict)
    log: List[str] = field(default_factory=list)
    commands: List[str] = field(default_factory=list)
    command_results: List[CommandResult] = field(default_factory=list)
    commit_id: str | None = "host-sha"
    # When set, execute_command waits on it (lets tests cancel mid-tool)
    gate: asyncio.Event | None = None
    root: Path = Path("/fake")

    async def execute_command(self, invocation_id, command, cwd=None) -> CommandResult:
        self.log.append(f"execute_command:{invocation_id}")
        self.commands.append(command)
        if self.gate is not None:
            await self.gate.wait()
        if self.command_results:
            return self.command_results.pop(0)
        return CommandResult(stdout="ok\n")

    async def read_file(self, invocation_id, path, max_size=None, line_offset=0,
                        line_count=None, encoding="utf-8") -> ReadResult:
        self.log.append(f"read_file:{invocation_id}")
        if path not in self.files:
            raise FileNotFoundInEnvironment(f"File does not exist: {path}")
        content = self.files[path]
        return ReadResult(path=path, content=content, size=len(content), encoding=encoding)

    async def write_file(self, invocation_id, path, content, encoding="utf-8") -> None:
        self.log.append(f"write_file:{invocation_id}")
        self.files[path] = content

    async def edit_file(self, invocation_id, path, search_text, replace_text,
                        encoding="utf-8") -> EditResult:
        self.log.append(f"edit_file:{invocation_id}")
        if path not in self.files:
            raise FileNotFoundInEnvironment(f"File does not exist: {path}")
        original = self.files[path]
        count = original.count(search_text)
        if count == 0:
            raise EditPatternNotFound(f"Search code not found in file: {path}")
        if count > 1:
            raise EditPatternAmbiguous(f"Found {count} instances", occurrences=count)
        self.files[path] = original.replace(search_text, replace_text, 1)
        return EditResult(path=path, original_content=original, new_content=self.files[path])

    async def list_dir(self, invocation_id, path, show_hidden=False, details=False) -> list[ListEntry]:
        self.log.append(f"list_dir:{invocation_id}")
        return [ListEntry(name=name, is_file=True) for name in sorted(self.files)]

    async def glob(self, invocation_id, pattern, cwd=None, include_hidden=False) -> list[str]:
        self.log.append(f"glob:{invocation_id}")
        return sorted(self.files)

    async def get_vcs_state(self) -> VcsState:
        return VcsState(is_repo=self.commit_id is not None, commit_id=self.commit_id)


@dataclass
class RecordingCheckpointStore:
    """Checkpoint store that writes into the same log as FakeEnvironment."""

    log: List[str] = field(default_factory=list)
    inits: int = 0
    snapshots: List[SnapshotMeta] = field(default_factory=list)
    restores: List[str | None] = field(default_factory=list)
    fail_snapshot: Exception | None = None

    async def init(self, root, session_id, facade):
        self.inits += 1
        self.log.append("init")
        return Path(root) / ".rewind" / "shadow" / session_id

    async def snapshot(self, meta: SnapshotMeta, facade, root) -> Snapshot:
        if self.fail_snapshot is not None:
            raise self.fail_snapshot
        self.snapshots.append(meta)
        self.log.append(f"snapshot:{meta.reason}:{meta.invocation_id}")
        n = len(self.snapshots)
        return Snapshot(id=f"chk-{n}", bundle=f"bundle-{n}".encode())

    async def restore(self, session_id, facade, root, checkpoint_id=None) -> str:
        self.restores.append(checkpoint_id)
        self.log.append(f"restore:{checkpoint_id}")
        return f"commit-of-{checkpoint_id}"
