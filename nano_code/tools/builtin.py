"""
内置工具实现 - 文件操作、Shell执行、搜索
"""
import asyncio
import difflib
import fnmatch
import os
import re
import signal
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field

from ..core.cancel import CANCELLED
from .base import Tool, ToolContext, ToolOutput, ToolRegistry
from .patch import apply_patch_text, parse_patch

DEFAULT_READ_LIMIT = 2000
MAX_LINE_LENGTH = 2000
MAX_METADATA_LENGTH = 30_000
DEFAULT_TIMEOUT_MS = 2 * 60 * 1000
MAX_MATCHES = 100
IGNORED_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache"}


def _resolve(ctx: ToolContext, path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(ctx.directory, path)


def _relative(ctx: ToolContext, path: str) -> str:
    return os.path.relpath(path, ctx.directory)


def _unified_diff(path: str, before: str, after: str) -> str:
    return "".join(difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=path,
        tofile=path,
    ))


def _walk(root: str):
    for current, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d not in IGNORED_DIRS]
        for name in files:
            yield os.path.join(current, name)


class ReadParams(BaseModel):
    file_path: str = Field(description="The path to the file to read")
    offset: int = Field(default=0, ge=0, description="Line offset to start reading from")
    limit: int = Field(default=DEFAULT_READ_LIMIT, gt=0, description="Maximum number of lines to read")


class ReadTool(Tool):
    """读取文件工具"""

    def __init__(self):
        super().__init__(
            name="read",
            description="Read contents of a file with optional offset and line limit",
            parameters=ReadParams,
        )

    async def execute(self, args: ReadParams, ctx: ToolContext) -> ToolOutput:
        path = _resolve(ctx, args.file_path)
        await ctx.ask("read", [_relative(ctx, path)], {"filepath": path}, ["*"])

        if not os.path.exists(path):
            raise FileNotFoundError(f"File not found: {path}")
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            lines = f.readlines()

        selected = lines[args.offset:args.offset + args.limit]
        numbered = "\n".join(
            f"{i + args.offset + 1:5d}| {line.rstrip()[:MAX_LINE_LENGTH]}"
            for i, line in enumerate(selected)
        )
        end = args.offset + len(selected)
        footer = f"\n\n(File has more lines. Use offset {end} to continue.)" if end < len(lines) else ""
        return ToolOutput(
            title=_relative(ctx, path),
            output=f"<file>\n{numbered}{footer}\n</file>",
            metadata={"lines": len(selected)},
        )


class WriteParams(BaseModel):
    file_path: str = Field(description="The path to the file to write")
    content: str = Field(description="The content to write to the file")


class WriteTool(Tool):
    """写入文件工具"""

    def __init__(self):
        super().__init__(
            name="write",
            description="Write content to a file, creating directories if needed",
            parameters=WriteParams,
        )

    async def execute(self, args: WriteParams, ctx: ToolContext) -> ToolOutput:
        path = _resolve(ctx, args.file_path)
        exists = os.path.exists(path)
        before = Path(path).read_text(encoding='utf-8') if exists else ""

        await ctx.ask(
            "edit",
            [_relative(ctx, path)],
            {"filepath": path, "diff": _unified_diff(path, before, args.content)},
            ["*"],
        )

        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(args.content)
        return ToolOutput(
            title=_relative(ctx, path),
            output="Wrote file successfully.",
            metadata={"filepath": path, "exists": exists},
        )


class EditParams(BaseModel):
    file_path: str = Field(description="The path to the file to modify")
    old_string: str = Field(description="The text to replace")
    new_string: str = Field(description="The text to replace it with")
    replace_all: bool = Field(default=False, description="Replace all occurrences of old_string")


class EditTool(Tool):
    """精确字符串替换工具"""

    def __init__(self):
        super().__init__(
            name="edit",
            description="Performs exact string replacements in files",
            parameters=EditParams,
        )

    async def execute(self, args: EditParams, ctx: ToolContext) -> ToolOutput:
        if args.old_string == args.new_string:
            raise ValueError("old_string and new_string must be different")
        path = _resolve(ctx, args.file_path)

        if args.old_string == "":
            before = Path(path).read_text(encoding='utf-8') if os.path.exists(path) else ""
            after = args.new_string
        else:
            if not os.path.exists(path):
                raise FileNotFoundError(f"File not found: {path}")
            before = Path(path).read_text(encoding='utf-8')
            count = before.count(args.old_string)
            if count == 0:
                raise ValueError("old_string not found in content")
            if count > 1 and not args.replace_all:
                raise ValueError(
                    "Found multiple matches for old_string. Provide more surrounding lines "
                    "to identify the correct match, or set replace_all."
                )
            after = before.replace(args.old_string, args.new_string, -1 if args.replace_all else 1)

        diff = _unified_diff(path, before, after)
        await ctx.ask("edit", [_relative(ctx, path)], {"filepath": path, "diff": diff}, ["*"])

        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(after)

        additions = sum(1 for l in diff.splitlines() if l.startswith("+") and not l.startswith("+++"))
        deletions = sum(1 for l in diff.splitlines() if l.startswith("-") and not l.startswith("---"))
        return ToolOutput(
            title=_relative(ctx, path),
            output="Edit applied successfully.",
            metadata={"diff": diff, "additions": additions, "deletions": deletions},
        )


class ApplyPatchParams(BaseModel):
    patch_text: str = Field(description="The full patch text, from *** Begin Patch to *** End Patch")


class ApplyPatchTool(Tool):
    """补丁工具 - 与 edit/write 互斥"""

    def __init__(self):
        super().__init__(
            name="apply_patch",
            description=(
                "Apply a patch to one or more files. The patch uses the format "
                "*** Begin Patch / *** Add File: / *** Update File: / *** Delete File: / *** End Patch"
            ),
            parameters=ApplyPatchParams,
        )

    async def execute(self, args: ApplyPatchParams, ctx: ToolContext) -> ToolOutput:
        hunks = parse_patch(args.patch_text)
        if not hunks:
            raise ValueError("patch rejected: empty patch")
        files = [_relative(ctx, _resolve(ctx, h.path)) for h in hunks]
        await ctx.ask("edit", files, {"files": files}, ["*"])

        summary = apply_patch_text(hunks, lambda p: _resolve(ctx, p))
        return ToolOutput(
            title=", ".join(files),
            output="Success. Updated the following files:\n" + "\n".join(summary),
            metadata={"files": files},
        )


def _kill_tree(proc) -> None:
    """杀死命令所在的整个进程组, 子进程可能仍持有输出管道"""
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


class BashParams(BaseModel):
    command: str = Field(description="The command to execute")
    timeout: Optional[int] = Field(default=None, ge=0, description="Optional timeout in milliseconds")
    workdir: Optional[str] = Field(default=None, description="The working directory to run the command in")
    description: str = Field(default="", description="Clear, concise description of what this command does")


class BashTool(Tool):
    """Shell命令工具"""

    def __init__(self):
        super().__init__(
            name="bash",
            description="Executes a shell command in the project directory and returns its output",
            parameters=BashParams,
        )

    async def execute(self, args: BashParams, ctx: ToolContext) -> ToolOutput:
        cwd = _resolve(ctx, args.workdir) if args.workdir else ctx.directory
        timeout = (args.timeout or DEFAULT_TIMEOUT_MS) / 1000

        await ctx.ask(
            "bash",
            [args.command],
            {"command": args.command, "description": args.description},
            [args.command],
        )

        proc = await asyncio.create_subprocess_shell(
            args.command,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        chunks: List[str] = []
        await ctx.metadata(metadata={"output": "", "description": args.description})

        async def pump() -> None:
            while True:
                data = await proc.stdout.read(4096)
                if not data:
                    break
                chunks.append(data.decode('utf-8', errors='replace'))
                output = "".join(chunks)
                if len(output) > MAX_METADATA_LENGTH:
                    output = output[:MAX_METADATA_LENGTH] + "\n\n..."
                await ctx.metadata(metadata={"output": output, "description": args.description})
            await proc.wait()

        notes = []
        try:
            result = await ctx.abort.guard(asyncio.wait_for(pump(), timeout=timeout))
            if result is CANCELLED:
                notes.append("Command aborted by user")
        except asyncio.TimeoutError:
            notes.append(f"Command terminated after exceeding timeout {int(timeout * 1000)} ms")
        finally:
            if proc.returncode is None or notes:
                _kill_tree(proc)
            await proc.wait()

        output = "".join(chunks)
        if notes:
            output += "\n\n<metadata>\n" + "\n".join(notes) + "\n</metadata>"
        return ToolOutput(
            title=args.description or args.command,
            output=output,
            metadata={"exit": proc.returncode, "description": args.description},
        )


class GlobParams(BaseModel):
    pattern: str = Field(description="The glob pattern to match files against")
    path: Optional[str] = Field(default=None, description="The directory to search in")


class GlobTool(Tool):
    """文件模式匹配工具"""

    def __init__(self):
        super().__init__(
            name="glob",
            description="Find files by glob pattern, sorted by modification time",
            parameters=GlobParams,
        )

    async def execute(self, args: GlobParams, ctx: ToolContext) -> ToolOutput:
        root = _resolve(ctx, args.path) if args.path else ctx.directory
        await ctx.ask("glob", [args.pattern], {"pattern": args.pattern, "path": root}, ["*"])

        matches = [
            p for p in _walk(root)
            if fnmatch.fnmatch(os.path.relpath(p, root), args.pattern)
            or fnmatch.fnmatch(os.path.basename(p), args.pattern)
        ]
        matches.sort(key=lambda p: os.path.getmtime(p), reverse=True)
        truncated = len(matches) > MAX_MATCHES
        lines = matches[:MAX_MATCHES] or ["No files found"]
        if truncated:
            lines.append("\n(Results are truncated. Consider using a more specific path or pattern.)")
        return ToolOutput(
            title=_relative(ctx, root),
            output="\n".join(lines),
            metadata={"count": len(matches), "truncated": truncated},
        )


class GrepParams(BaseModel):
    pattern: str = Field(description="The regex pattern to search for in file contents")
    path: Optional[str] = Field(default=None, description="The directory to search in")
    include: Optional[str] = Field(default=None, description='File pattern to include (e.g. "*.py")')


class GrepTool(Tool):
    """内容搜索工具"""

    def __init__(self):
        super().__init__(
            name="grep",
            description="Search file contents with a regular expression",
            parameters=GrepParams,
        )

    async def execute(self, args: GrepParams, ctx: ToolContext) -> ToolOutput:
        root = _resolve(ctx, args.path) if args.path else ctx.directory
        await ctx.ask("grep", [args.pattern], {"pattern": args.pattern, "path": root}, ["*"])

        regex = re.compile(args.pattern)
        found: List[str] = []
        for path in _walk(root):
            if args.include and not fnmatch.fnmatch(os.path.basename(path), args.include):
                continue
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    for number, line in enumerate(f, 1):
                        if regex.search(line):
                            found.append(f"{path}:{number}: {line.rstrip()[:MAX_LINE_LENGTH]}")
            except (UnicodeDecodeError, OSError):
                continue
            if len(found) >= MAX_MATCHES:
                break

        if not found:
            output = "No files found"
        else:
            output = f"Found {len(found)} matches\n" + "\n".join(found[:MAX_MATCHES])
        return ToolOutput(
            title=args.pattern,
            output=output,
            metadata={"matches": len(found), "truncated": len(found) >= MAX_MATCHES},
        )


def register_builtin_tools(registry: ToolRegistry) -> None:
    """注册所有内置工具"""
    for tool in (
        BashTool(),
        ReadTool(),
        GlobTool(),
        GrepTool(),
        EditTool(),
        WriteTool(),
        ApplyPatchTool(),
    ):
        registry.register(tool)
