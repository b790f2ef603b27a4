"""
Checkpointing decorator for any Environment backend.

Snapshot-then-mutate: write_file, edit_file and execute_command each take
exactly one snapshot before they are delegated. Read-only calls pass
straight through.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from loguru import logger

from rewind.checkpoints import CheckpointError, CheckpointStore, Snapshot, SnapshotMeta
from rewind.environment import (
    CommandResult,
    EditResult,
    Environment,
    EnvironmentFacadeError,
    ListEntry,
    ReadResult,
    VcsState,
)
from rewind.event_bus import EventBus, EventType


class CheckpointingEnvironment:

    def __init__(
        self,
        inner: Environment,
        store: CheckpointStore,
        session_id: str,
        bus: EventBus,
    ):
        self.inner = inner
        self.store = store
        self.session_id = session_id
        self.bus = bus
        self._init_task: asyncio.Future | None = None

    @property
    def root(self) -> Path:
        return self.inner.root

    async def initialize(self) -> None:
        """Run store initialization once; concurrent callers share the same attempt."""
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(
                self.store.init(self.root, self.session_id, self.inner)
            )
        try:
            await asyncio.shield(self._init_task)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Let the next caller try again
            self._init_task = None
            raise

    async def _checkpoint(self, invocation_id: str, reason: str) -> Snapshot:
        await self.initialize()

        vcs = await self.inner.get_vcs_state()
        meta = SnapshotMeta(
            session_id=self.session_id,
            invocation_id=invocation_id,
            host_commit=vcs.commit_id or "unknown",
            reason=reason,
        )
        try:
            snapshot = await self.store.snapshot(meta, self.inner, self.root)
        except EnvironmentFacadeError as e:
            raise CheckpointError(f"Snapshot failed before {reason}: {e}") from e

        logger.debug(f"[CHECKPOINT] Ready {snapshot.id[:10]} before {reason} ({invocation_id})")
        self.bus.emit(
            EventType.CHECKPOINT_READY,
            self.session_id,
            {
                "session_id": self.session_id,
                "invocation_id": invocation_id,
                "host_commit": meta.host_commit,
                "checkpoint_id": snapshot.id,
                "bundle": snapshot.bundle,
            },
        )
        return snapshot

    async def restore(self, checkpoint_id: str | None = None) -> str:
        await self.initialize()
        return await self.store.restore(self.session_id, self.inner, self.root, checkpoint_id)

    # ------------------------------------------------------------------
    # Mutating
    # ------------------------------------------------------------------

    async def write_file(
        self, invocation_id: str, path: str, content: str, encoding: str = "utf-8"
    ) -> None:
        await self._checkpoint(invocation_id, "write_file")
        return await self.inner.write_file(invocation_id, path, content, encoding=encoding)

    async def edit_file(
        self,
        invocation_id: str,
        path: str,
        search_text: str,
        replace_text: str,
        encoding: str = "utf-8",
    ) -> EditResult:
        await self._checkpoint(invocation_id, "edit_file")
        return await self.inner.edit_file(
            invocation_id, path, search_text, replace_text, encoding=encoding
        )

    async def execute_command(
        self, invocation_id: str, command: str, cwd: str | None = None
    ) -> CommandResult:
        await self._checkpoint(invocation_id, "execute_command")
        return await self.inner.execute_command(invocation_id, command, cwd=cwd)

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
        return await self.inner.read_file(
            invocation_id,
            path,
            max_size=max_size,
            line_offset=line_offset,
            line_count=line_count,
            encoding=encoding,
        )

    async def list_dir(
        self, invocation_id: str, path: str, show_hidden: bool = False, details: bool = False
    ) -> list[ListEntry]:
        return await self.inner.list_dir(
            invocation_id, path, show_hidden=show_hidden, details=details
        )

    async def glob(
        self, invocation_id: str, pattern: str, cwd: str | None = None, include_hidden: bool = False
    ) -> list[str]:
        return await self.inner.glob(
            invocation_id, pattern, cwd=cwd, include_hidden=include_hidden
        )

    async def get_vcs_state(self) -> VcsState:
        return await self.inner.get_vcs_state()
