"""
REWIND Checkpoint Store

Snapshots the environment into a per-session "shadow" git repository that
shares the work tree but never the host's own .git directory. Each
snapshot is a commit (content-addressed by its sha) tagged with the
invocation that triggered it, plus a `git bundle` of the whole history so
the snapshot can travel to another machine.

Every git call goes through the Environment facade's execute_command, so
the same store drives a local process, a container or a remote sandbox.
"""

from __future__ import annotations

import base64
import shlex
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from loguru import logger
from pydantic import BaseModel, Field

from rewind.environment import (
    CommandResult,
    Environment,
    EnvironmentFacadeError,
    FileNotFoundInEnvironment,
)

_STORE_INVOCATION = "rewind-checkpoint"
_MAX_BUNDLE_SIZE = 512 * 1024 * 1024
_LATEST_REF = "refs/rewind/latest"


class CheckpointError(Exception):
    pass


class SnapshotMeta(BaseModel):
    session_id: str
    invocation_id: str
    host_commit: str = "unknown"
    reason: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Snapshot(BaseModel):
    id: str
    bundle: bytes


class CheckpointStore:
    """
    Shadow-git snapshot engine.

    Callers serialize snapshot() per session; the store itself keeps no
    in-memory state beyond its settings.
    """

    def __init__(self, shadow_dir: str = ".rewind/shadow", exclude: list[str] | None = None):
        self.shadow_dir = shadow_dir
        self.exclude = list(exclude or [])

    def shadow_path(self, root: Path, session_id: str) -> Path:
        return Path(root) / self.shadow_dir / session_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self, root: Path, session_id: str, facade: Environment) -> Path:
        """Prepare the shadow history. Safe to call any number of times."""
        shadow = self.shadow_path(root, session_id)

        await self._run(facade, root, f"git init --quiet --bare {shlex.quote(str(shadow))}")
        await self._git(facade, root, shadow, "config", "core.bare", "false")
        await self._git(facade, root, shadow, "config", "user.email", "rewind@localhost")
        await self._git(facade, root, shadow, "config", "user.name", "rewind")
        await self._git(facade, root, shadow, "config", "commit.gpgsign", "false")

        await self._write_excludes(facade, root, shadow)

        head = await self._git(
            facade, root, shadow, "rev-parse", "--quiet", "--verify", "HEAD", check=False
        )
        if head.exit_code != 0:
            await self._git(facade, root, shadow, "add", "-A", ".")
            await self._git(
                facade, root, shadow,
                "commit", "--quiet", "--allow-empty", "--no-verify", "-m", "rewind: initial state",
            )
            logger.info(f"[CHECKPOINT] Shadow history created for session {session_id}")
        else:
            logger.debug(f"[CHECKPOINT] Shadow history already present for session {session_id}")

        return shadow

    async def snapshot(self, meta: SnapshotMeta, facade: Environment, root: Path) -> Snapshot:
        """Commit the current work tree and return its sha plus a full bundle."""
        shadow = self.shadow_path(root, meta.session_id)
        message = f"{meta.timestamp.isoformat()}::{meta.model_dump_json()}"

        await self._git(facade, root, shadow, "add", "-A", ".")
        await self._git(
            facade, root, shadow,
            "commit", "--quiet", "--allow-empty", "--no-verify", "-m", message,
        )
        await self._git(facade, root, shadow, "tag", "-f", f"chkpt/{meta.invocation_id}")
        await self._git(facade, root, shadow, "update-ref", _LATEST_REF, "HEAD")
        sha = (await self._git(facade, root, shadow, "rev-parse", "HEAD")).stdout.strip()

        bundle = await self._bundle(facade, root, shadow)
        logger.debug(
            f"[CHECKPOINT] {sha[:10]} for {meta.invocation_id} "
            f"({meta.reason}, {len(bundle)} bytes)"
        )
        return Snapshot(id=sha, bundle=bundle)

    async def restore(
        self,
        session_id: str,
        facade: Environment,
        root: Path,
        checkpoint_id: str | None = None,
    ) -> str:
        """Reset the work tree to a snapshot (latest when no id). Returns the commit sha."""
        shadow = self.shadow_path(root, session_id)
        sha = await self._resolve(facade, root, shadow, checkpoint_id)

        await self._git(facade, root, shadow, "reset", "--quiet", "--hard", sha)
        await self._git(facade, root, shadow, "clean", "-f", "-d", "-q")

        logger.info(f"[CHECKPOINT] Restored session {session_id} to {sha[:10]}")
        return sha

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _resolve(
        self, facade: Environment, root: Path, shadow: Path, checkpoint_id: str | None
    ) -> str:
        if checkpoint_id is None:
            candidates = [_LATEST_REF, "HEAD"]
        else:
            candidates = [f"chkpt/{checkpoint_id}", checkpoint_id]

        for rev in candidates:
            result = await self._git(
                facade, root, shadow,
                "rev-parse", "--quiet", "--verify", f"{rev}^{{commit}}",
                check=False,
            )
            if result.exit_code == 0 and result.stdout.strip():
                return result.stdout.strip()

        raise CheckpointError(f"Unknown checkpoint: {checkpoint_id or 'latest'}")

    async def _bundle(self, facade: Environment, root: Path, shadow: Path) -> bytes:
        tmp = (await self._run(facade, root, "mktemp -d")).stdout.strip()
        target = f"{tmp}/snapshot.bundle"
        try:
            await self._git(facade, root, shadow, "bundle", "create", target, "--all")
            read = await facade.read_file(
                _STORE_INVOCATION, target, max_size=_MAX_BUNDLE_SIZE, encoding="base64"
            )
        except EnvironmentFacadeError as e:
            raise CheckpointError(f"Could not read snapshot bundle: {e}") from e
        finally:
            await self._run(facade, root, f"rm -rf {shlex.quote(tmp)}", check=False)
        return base64.b64decode(read.content)

    async def _write_excludes(self, facade: Environment, root: Path, shadow: Path) -> None:
        lines = []
        try:
            gitignore = await facade.read_file(
                _STORE_INVOCATION, str(Path(root) / ".gitignore"), encoding="base64"
            )
            lines.extend(base64.b64decode(gitignore.content).decode("utf-8", errors="replace").splitlines())
        except FileNotFoundInEnvironment:
            pass

        lines.append(".git/")
        lines.append(f"/{PurePosixPath(self.shadow_dir).parts[0]}/")
        lines.extend(self.exclude)

        try:
            await facade.write_file(
                _STORE_INVOCATION, str(shadow / "info" / "exclude"), "\n".join(lines) + "\n"
            )
        except EnvironmentFacadeError as e:
            raise CheckpointError(f"Could not write shadow exclude file: {e}") from e

    async def _git(
        self, facade: Environment, root: Path, shadow: Path, *args: str, check: bool = True
    ) -> CommandResult:
        prefix = [
            "git",
            f"--git-dir={shadow}",
            f"--work-tree={root}",
        ]
        command = " ".join(shlex.quote(part) for part in prefix + list(args))
        return await self._run(facade, root, command, check=check)

    async def _run(
        self, facade: Environment, root: Path, command: str, check: bool = True
    ) -> CommandResult:
        try:
            result = await facade.execute_command(_STORE_INVOCATION, command, cwd=str(root))
        except EnvironmentFacadeError as e:
            raise CheckpointError(f"Checkpoint command failed: {command}: {e}") from e

        if check and result.exit_code != 0:
            raise CheckpointError(
                f"Checkpoint command failed ({result.exit_code}): {command}\n{result.stderr.strip()}"
            )
        return result


__all__ = [
    "CheckpointError",
    "CheckpointStore",
    "Snapshot",
    "SnapshotMeta",
]
