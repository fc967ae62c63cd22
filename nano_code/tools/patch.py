"""
补丁解析与应用

格式:
    *** Begin Patch
    *** Add File: path
    +line
    *** Update File: path
    *** Move to: new_path        (可选)
    @@ context
     unchanged
    -removed
    +added
    *** Delete File: path
    *** End Patch
"""
import os
from dataclasses import dataclass, field
from typing import Callable, List, Optional

BEGIN = "*** Begin Patch"
END = "*** End Patch"
ADD = "*** Add File: "
UPDATE = "*** Update File: "
DELETE = "*** Delete File: "
MOVE = "*** Move to: "
EOF_MARKER = "*** End of File"


@dataclass
class Chunk:
    old_lines: List[str] = field(default_factory=list)
    new_lines: List[str] = field(default_factory=list)


@dataclass
class Hunk:
    kind: str  # add / update / delete
    path: str
    contents: str = ""
    move_path: Optional[str] = None
    chunks: List[Chunk] = field(default_factory=list)


def parse_patch(text: str) -> List[Hunk]:
    """解析补丁文本, 格式错误时抛出 ValueError"""
    lines = text.strip().splitlines()
    if not lines or lines[0].strip() != BEGIN or lines[-1].strip() != END:
        raise ValueError("patch rejected: missing *** Begin Patch / *** End Patch markers")

    hunks: List[Hunk] = []
    i = 1
    while i < len(lines) - 1:
        line = lines[i]
        if line.startswith(ADD):
            hunk = Hunk("add", line[len(ADD):].strip())
            i += 1
            body = []
            while i < len(lines) - 1 and not lines[i].startswith("*** "):
                if not lines[i].startswith("+"):
                    raise ValueError(f"patch rejected: invalid add line: {lines[i]!r}")
                body.append(lines[i][1:])
                i += 1
            hunk.contents = "\n".join(body) + ("\n" if body else "")
            hunks.append(hunk)
        elif line.startswith(DELETE):
            hunks.append(Hunk("delete", line[len(DELETE):].strip()))
            i += 1
        elif line.startswith(UPDATE):
            hunk = Hunk("update", line[len(UPDATE):].strip())
            i += 1
            if i < len(lines) - 1 and lines[i].startswith(MOVE):
                hunk.move_path = lines[i][len(MOVE):].strip()
                i += 1
            chunk: Optional[Chunk] = None
            while i < len(lines) - 1 and not (
                lines[i].startswith("*** ") and lines[i] != EOF_MARKER
            ):
                current = lines[i]
                i += 1
                if current == EOF_MARKER:
                    continue
                if current.startswith("@@"):
                    chunk = Chunk()
                    hunk.chunks.append(chunk)
                    continue
                if chunk is None:
                    chunk = Chunk()
                    hunk.chunks.append(chunk)
                if current.startswith("-"):
                    chunk.old_lines.append(current[1:])
                elif current.startswith("+"):
                    chunk.new_lines.append(current[1:])
                else:
                    # 空行视为上下文
                    context = current[1:] if current.startswith(" ") else current
                    chunk.old_lines.append(context)
                    chunk.new_lines.append(context)
            if not hunk.chunks:
                raise ValueError(f"patch rejected: empty update for {hunk.path}")
            hunks.append(hunk)
        else:
            raise ValueError(f"patch rejected: unexpected line: {line!r}")
    return hunks


def _find(haystack: List[str], needle: List[str], start: int) -> int:
    if not needle:
        return len(haystack)
    for i in range(start, len(haystack) - len(needle) + 1):
        if haystack[i:i + len(needle)] == needle:
            return i
    # 忽略行尾空白再试一次
    stripped = [l.rstrip() for l in needle]
    for i in range(start, len(haystack) - len(needle) + 1):
        if [l.rstrip() for l in haystack[i:i + len(needle)]] == stripped:
            return i
    return -1


def apply_chunks(content: str, chunks: List[Chunk], path: str = "") -> str:
    lines = content.split("\n")
    trailing_newline = content.endswith("\n")
    if trailing_newline:
        lines = lines[:-1]
    cursor = 0
    for chunk in chunks:
        index = _find(lines, chunk.old_lines, cursor)
        if index < 0:
            raise ValueError(f"patch rejected: failed to find expected lines in {path}:\n"
                             + "\n".join(chunk.old_lines))
        lines[index:index + len(chunk.old_lines)] = chunk.new_lines
        cursor = index + len(chunk.new_lines)
    result = "\n".join(lines)
    return result + "\n" if trailing_newline or not content else result


def apply_patch_text(hunks: List[Hunk], resolve: Callable[[str], str]) -> List[str]:
    """
    应用补丁

    Args:
        resolve: 把补丁中的路径解析为绝对路径

    Returns:
        形如 "A path" / "M path" / "D path" 的变更摘要
    """
    summary = []
    for hunk in hunks:
        path = resolve(hunk.path)
        if hunk.kind == "add":
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                f.write(hunk.contents)
            summary.append(f"A {hunk.path}")
        elif hunk.kind == "delete":
            if not os.path.exists(path):
                raise FileNotFoundError(f"File not found: {path}")
            os.remove(path)
            summary.append(f"D {hunk.path}")
        else:
            if not os.path.exists(path):
                raise FileNotFoundError(f"File not found: {path}")
            with open(path, 'r', encoding='utf-8') as f:
                updated = apply_chunks(f.read(), hunk.chunks, hunk.path)
            target = resolve(hunk.move_path) if hunk.move_path else path
            os.makedirs(os.path.dirname(target) or ".", exist_ok=True)
            with open(target, 'w', encoding='utf-8') as f:
                f.write(updated)
            if target != path:
                os.remove(path)
            summary.append(f"M {hunk.move_path or hunk.path}")
    return summary
