"""Builtin tools: shell, file read/write/edit, directory listing, glob, grep."""

from __future__ import annotations

import base64
import re
from pathlib import PurePosixPath
from typing import Any

from loguru import logger

from rewind.environment import EnvironmentFacadeError
from rewind.tools import Tool, ToolCategory, ToolContext, ToolResult

GREP_DEFAULT_MAX_RESULTS = 100
_GREP_MAX_LINE = 500


async def bash(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
    result = await ctx.environment.execute_command(
        ctx.invocation_id, args["command"], cwd=args.get("cwd")
    )
    data = result.model_dump()
    if result.exit_code != 0:
        return ToolResult(
            ok=False,
            data=data,
            error=f"Command exited with code {result.exit_code}",
        )
    return ToolResult(ok=True, data=data)


async def file_read(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
    result = await ctx.environment.read_file(
        ctx.invocation_id,
        args["path"],
        line_offset=int(args.get("line_offset", 0)),
        line_count=args.get("line_count"),
    )
    return ToolResult(ok=True, data=result.model_dump(exclude={"encoding"}))


async def file_write(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
    content = args["content"]
    await ctx.environment.write_file(ctx.invocation_id, args["path"], content)
    return ToolResult(ok=True, data={"path": args["path"], "bytes_written": len(content.encode("utf-8"))})


async def file_edit(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
    result = await ctx.environment.edit_file(
        ctx.invocation_id, args["path"], args["search"], args["replace"]
    )
    return ToolResult(ok=True, data={"path": result.path, "edited": True})


async def ls(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
    entries = await ctx.environment.list_dir(
        ctx.invocation_id,
        args.get("path", "."),
        show_hidden=bool(args.get("show_hidden", False)),
        details=bool(args.get("details", False)),
    )
    return ToolResult(ok=True, data=[e.model_dump(mode="json", exclude_none=True) for e in entries])


async def glob(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
    paths = await ctx.environment.glob(ctx.invocation_id, args["pattern"], cwd=args.get("cwd"))
    return ToolResult(ok=True, data=paths)


async def grep(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
    """
    Search file contents with a regular expression.

    Built on glob + read_file so a search never goes through
    execute_command and never takes a checkpoint.
    """
    flags = re.IGNORECASE if args.get("ignore_case") else 0
    try:
        regex = re.compile(args["pattern"], flags)
    except re.error as e:
        return ToolResult(ok=False, error=f"Invalid pattern: {e}")

    path = args.get("path") or "."
    file_pattern = args.get("file_pattern") or "*"
    recursive = args.get("recursive", True)
    max_results = int(args.get("max_results") or GREP_DEFAULT_MAX_RESULTS)

    candidates = await ctx.environment.glob(
        ctx.invocation_id,
        f"**/{file_pattern}" if recursive else file_pattern,
        cwd=path,
    )

    results: list[dict[str, Any]] = []
    truncated = False
    for relative in candidates:
        file_path = str(PurePosixPath(path) / relative)
        try:
            read = await ctx.environment.read_file(ctx.invocation_id, file_path, encoding="base64")
        except EnvironmentFacadeError as e:
            # Directories, oversized files, files gone since the glob
            logger.debug(f"[TOOLS] grep skipping {file_path}: {e}")
            continue
        try:
            text = base64.b64decode(read.content).decode("utf-8")
        except UnicodeDecodeError:
            continue

        for number, line in enumerate(text.splitlines(), start=1):
            if not regex.search(line):
                continue
            if len(results) == max_results:
                truncated = True
                break
            results.append({"file": file_path, "line": number, "content": line[:_GREP_MAX_LINE]})
        if truncated:
            break

    return ToolResult(
        ok=True,
        data={
            "pattern": args["pattern"],
            "path": path,
            "results": results,
            "count": len(results),
            "has_more": truncated,
        },
    )


BUILTIN_TOOLS = [
    Tool(
        id="bash",
        description="Run a shell command in the repository root and return stdout, stderr and the exit code.",
        execute=bash,
        parameters={
            "command": {"type": "string"},
            "cwd": {"type": "string", "description": "Working directory, relative to the repository root."},
        },
        required=["command"],
        always_require_permission=True,
        categories=frozenset({ToolCategory.SHELL_EXECUTION}),
    ),
    Tool(
        id="file_read",
        description="Read a text file. Output is line-numbered; use line_offset and line_count to page through large files.",
        execute=file_read,
        parameters={
            "path": {"type": "string"},
            "line_offset": {"type": "integer"},
            "line_count": {"type": "integer"},
        },
        required=["path"],
        requires_permission=False,
        categories=frozenset({ToolCategory.READONLY}),
    ),
    Tool(
        id="file_write",
        description="Write complete content to a file (creates or overwrites).",
        execute=file_write,
        parameters={
            "path": {"type": "string"},
            "content": {"type": "string"},
        },
        required=["path", "content"],
        categories=frozenset({ToolCategory.FILE_OPERATION}),
    ),
    Tool(
        id="file_edit",
        description="Replace one exact occurrence of `search` with `replace`. Fails if the text is missing or appears more than once.",
        execute=file_edit,
        parameters={
            "path": {"type": "string"},
            "search": {"type": "string"},
            "replace": {"type": "string"},
        },
        required=["path", "search", "replace"],
        categories=frozenset({ToolCategory.FILE_OPERATION}),
    ),
    Tool(
        id="ls",
        description="List a directory.",
        execute=ls,
        parameters={
            "path": {"type": "string"},
            "show_hidden": {"type": "boolean"},
            "details": {"type": "boolean"},
        },
        requires_permission=False,
        categories=frozenset({ToolCategory.READONLY}),
    ),
    Tool(
        id="glob",
        description="Find files matching a glob pattern such as 'src/**/*.py'.",
        execute=glob,
        parameters={
            "pattern": {"type": "string"},
            "cwd": {"type": "string"},
        },
        required=["pattern"],
        requires_permission=False,
        categories=frozenset({ToolCategory.READONLY}),
    ),
    Tool(
        id="grep",
        description="Search file contents for a regular expression. Returns matching lines with file and line number.",
        execute=grep,
        parameters={
            "pattern": {"type": "string", "description": "Regular expression to search for."},
            "path": {"type": "string", "description": "Directory to search, relative to the repository root. Default: '.'"},
            "file_pattern": {"type": "string", "description": "Only search files whose name matches this glob, e.g. '*.py'."},
            "recursive": {"type": "boolean"},
            "ignore_case": {"type": "boolean"},
            "max_results": {"type": "integer"},
        },
        required=["pattern"],
        requires_permission=False,
        categories=frozenset({ToolCategory.READONLY}),
    ),
]
