"""Filesystem tools: Read, Write, Edit, Glob, Grep.

Every path argument is declared in ``path_fields``, so dispatch has already
checked it against the sandbox before a handler runs. Handlers resolve it
again to get the absolute path they act on.

Tool descriptions are the model's only documentation for each tool: they
say what the tool does, when to use it, and what it returns.
"""

import fnmatch
import hashlib
import logging
import re
from pathlib import Path

from pydantic import BaseModel, Field

from yoke.agent.context import ToolContext
from yoke.lib.errors import NotFoundError, ToolError
from yoke.lib.tools import ToolCategory, yoke_tool

logger = logging.getLogger(__name__)

MAX_READ_LINES = 2000
MAX_GLOB_RESULTS = 500
MAX_GREP_MATCHES = 200
MAX_GREP_LINE_CHARS = 300
SKIP_DIRS = frozenset({".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv"})


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def read_bytes(path: Path) -> bytes:
    """Read a file as stored, turning filesystem failures into tool errors."""
    if not path.exists():
        raise NotFoundError(f"No such file: {path.name}")
    if not path.is_file():
        raise ToolError(f"Not a regular file: {path.name}")
    try:
        return path.read_bytes()
    except OSError as e:
        raise ToolError(f"Cannot read {path.name}: {e.strerror}") from e


def decode_text(path: Path, data: bytes) -> str:
    """Decode UTF-8 without translating line endings."""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        raise ToolError(f"{path.name} is not a UTF-8 text file") from None


def read_text(path: Path) -> str:
    return decode_text(path, read_bytes(path))


def walk_files(root: Path) -> list[Path]:
    """Regular files under ``root``, skipping VCS and dependency directories."""
    if root.is_file():
        return [root]
    files: list[Path] = []
    for path in sorted(root.rglob("*")):
        if any(part in SKIP_DIRS for part in path.relative_to(root).parts):
            continue
        if path.is_file():
            files.append(path)
    return files


# --- Read ---


class ReadInput(BaseModel):
    path: str = Field(description="File path, relative to the project root")
    offset: int = Field(default=1, ge=1, description="First line to return (1-based)")
    limit: int = Field(
        default=MAX_READ_LINES, ge=1, le=MAX_READ_LINES, description="Maximum lines to return"
    )


class ReadOutput(BaseModel):
    path: str
    content: str
    start_line: int
    end_line: int
    total_lines: int


@yoke_tool(
    (
        "Read a text file from the project. "
        "Use this before editing a file or to inspect code, configs and docs. "
        "Large files can be read in pages with offset/limit. "
        "Returns {path, content, start_line, end_line, total_lines}."
    ),
    category=ToolCategory.READ,
    path_fields=("path",),
)
async def Read(params: ReadInput, ctx: ToolContext) -> ReadOutput:
    path = ctx.sandbox.resolve(params.path)
    lines = read_text(path).splitlines(keepends=True)
    start = params.offset - 1
    selected = lines[start : start + params.limit]
    return ReadOutput(
        path=ctx.sandbox.display(path),
        content="".join(selected),
        start_line=params.offset,
        end_line=start + len(selected),
        total_lines=len(lines),
    )


# --- Write ---


class WriteInput(BaseModel):
    path: str = Field(description="File path, relative to the project root")
    content: str = Field(description="Complete new file content")


class WriteOutput(BaseModel):
    path: str
    bytes_written: int
    sha256: str
    created: bool


@yoke_tool(
    (
        "Create or overwrite a file with the given content. Parent directories are created. "
        "Use Edit instead for small changes to an existing file. "
        "Returns {path, bytes_written, sha256, created}."
    ),
    category=ToolCategory.MUTATE,
    path_fields=("path",),
)
async def Write(params: WriteInput, ctx: ToolContext) -> WriteOutput:
    path = ctx.sandbox.resolve(params.path)
    created = not path.exists()
    data = params.content.encode("utf-8")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    except OSError as e:
        raise ToolError(f"Cannot write {params.path}: {e.strerror}") from e
    logger.info("Wrote %s (%d bytes)", path, len(data))
    return WriteOutput(
        path=ctx.sandbox.display(path),
        bytes_written=len(data),
        sha256=sha256(data),
        created=created,
    )


# --- Edit ---


class Replacement(BaseModel):
    find: str = Field(min_length=1, description="Exact text to find")
    replace: str = Field(description="Replacement text")
    count: int = Field(default=1, ge=0, description="Occurrences to replace; 0 = all")


class EditInput(BaseModel):
    path: str = Field(description="File path, relative to the project root")
    edits: list[Replacement] = Field(min_length=1, description="Applied in order")


class EditOutput(BaseModel):
    path: str
    applied: int
    before_sha256: str
    after_sha256: str


def to_crlf(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\n", "\r\n")


def apply_edits(content: str, edits: list[Replacement]) -> tuple[str, int]:
    """Apply find/replace edits in order.

    In a file with CRLF line endings, bare newlines in ``find`` and
    ``replace`` are taken as CRLF.

    Raises:
        ToolError: If any ``find`` text is absent when its edit is applied.
    """
    crlf = "\r\n" in content
    applied = 0
    for i, edit in enumerate(edits):
        find = to_crlf(edit.find) if crlf else edit.find
        replace = to_crlf(edit.replace) if crlf else edit.replace
        occurrences = content.count(find)
        if occurrences == 0:
            raise ToolError(f"Edit {i}: text not found: {edit.find[:80]!r}")
        n = occurrences if edit.count == 0 else min(edit.count, occurrences)
        content = content.replace(find, replace, n)
        applied += n
    return content, applied


@yoke_tool(
    (
        "Edit a file with exact find/replace pairs, applied in order. "
        "Use this for targeted changes; Read the file first so 'find' matches exactly. "
        "Nothing is written if any 'find' text is missing. "
        "Returns {path, applied, before_sha256, after_sha256}."
    ),
    category=ToolCategory.MUTATE,
    path_fields=("path",),
)
async def Edit(params: EditInput, ctx: ToolContext) -> EditOutput:
    path = ctx.sandbox.resolve(params.path)
    raw = read_bytes(path)
    updated, applied = apply_edits(decode_text(path, raw), params.edits)
    data = updated.encode("utf-8")
    try:
        path.write_bytes(data)
    except OSError as e:
        raise ToolError(f"Cannot write {params.path}: {e.strerror}") from e
    return EditOutput(
        path=ctx.sandbox.display(path),
        applied=applied,
        before_sha256=sha256(raw),
        after_sha256=sha256(data),
    )


# --- Glob ---


class GlobInput(BaseModel):
    pattern: str = Field(description="Glob pattern, e.g. '**/*.py'")
    path: str = Field(default=".", description="Directory to search from")


class GlobOutput(BaseModel):
    pattern: str
    matches: list[str]
    truncated: bool = False


@yoke_tool(
    (
        "Find files by glob pattern. "
        "Use this to locate files by name or extension before reading them. "
        "Returns {pattern, matches, truncated} with root-relative paths."
    ),
    category=ToolCategory.READ,
    path_fields=("path",),
)
async def Glob(params: GlobInput, ctx: ToolContext) -> GlobOutput:
    base = ctx.sandbox.resolve(params.path)
    if not base.is_dir():
        raise NotFoundError(f"No such directory: {params.path}")
    if Path(params.pattern).is_absolute() or ".." in Path(params.pattern).parts:
        raise ToolError("Glob patterns must be relative and may not contain '..'")
    matches: list[str] = []
    for path in sorted(base.glob(params.pattern)):
        if not ctx.sandbox.contains(path):
            continue
        matches.append(ctx.sandbox.display(path.resolve()))
        if len(matches) >= MAX_GLOB_RESULTS:
            return GlobOutput(pattern=params.pattern, matches=matches, truncated=True)
    return GlobOutput(pattern=params.pattern, matches=matches)


# --- Grep ---


class GrepInput(BaseModel):
    pattern: str = Field(description="Regular expression (Python syntax)")
    path: str = Field(default=".", description="File or directory to search")
    glob: str | None = Field(default=None, description="Only search files matching this glob")
    ignore_case: bool = False


class GrepMatch(BaseModel):
    path: str
    line: int
    text: str


class GrepOutput(BaseModel):
    pattern: str
    matches: list[GrepMatch]
    truncated: bool = False


@yoke_tool(
    (
        "Search file contents with a regular expression. "
        "Use this to find definitions, usages or strings across the project. "
        "Binary and non-UTF-8 files are skipped. "
        "Returns {pattern, matches: [{path, line, text}], truncated}."
    ),
    category=ToolCategory.READ,
    path_fields=("path",),
)
async def Grep(params: GrepInput, ctx: ToolContext) -> GrepOutput:
    try:
        regex = re.compile(params.pattern, re.IGNORECASE if params.ignore_case else 0)
    except re.error as e:
        raise ToolError(f"Invalid regular expression: {e}") from e
    base = ctx.sandbox.resolve(params.path)
    if not base.exists():
        raise NotFoundError(f"No such file or directory: {params.path}")

    matches: list[GrepMatch] = []
    for path in walk_files(base):
        if not ctx.sandbox.contains(path):
            continue
        shown = ctx.sandbox.display(path.resolve())
        if params.glob and not (
            fnmatch.fnmatch(shown, params.glob) or fnmatch.fnmatch(path.name, params.glob)
        ):
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        for number, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                matches.append(GrepMatch(path=shown, line=number, text=line[:MAX_GREP_LINE_CHARS]))
                if len(matches) >= MAX_GREP_MATCHES:
                    return GrepOutput(pattern=params.pattern, matches=matches, truncated=True)
    return GrepOutput(pattern=params.pattern, matches=matches)


FILE_TOOLS = [Read, Write, Edit, Glob, Grep]
