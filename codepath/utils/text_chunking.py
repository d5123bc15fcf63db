"""
Line-based sliding-window chunker.

Consecutive fragments share `overlap` lines so nothing that spans a window
boundary loses its surroundings, and each fragment carries the signatures
enclosing its first line plus the comment block right above it.
"""

import hashlib
import re
import uuid
from functools import lru_cache
from typing import List

import tiktoken

from codepath.config import settings
from codepath.core.exceptions import InvalidInputError
from codepath.models import CodeFragment, SourceFile

FRAGMENT_NAMESPACE = uuid.UUID("6f1c7d8e-3b2a-5c4d-9e8f-0a1b2c3d4e5f")

SIGNATURE_PATTERN = re.compile(
    r"^\s*(?:export\s+)?(?:default\s+)?(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?"
    r"(?:def|class|function|interface|struct|enum|impl|trait|func|fn|module|namespace)\b"
    r"|^\s*(?:public|private|protected|static|abstract|final)\b.*[({]\s*$"
    r"|^\s*(?:export\s+)?(?:const|let|var)\s+\w+\s*=\s*(?:async\s+)?\([^)]*\)\s*=>"
)
COMMENT_PATTERN = re.compile(r"^\s*(?:#|//|/\*|\*|\"\"\"|''')")


@lru_cache(maxsize=1)
def _get_tokenizer():
    # cl100k_base works well for most modern LLMs
    return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    """Return token count for a given text."""
    return len(_get_tokenizer().encode(text))


def fragment_id(repository_id: str, file_path: str, ordinal: int, content_hash: str) -> str:
    """Identical slot + identical content always yields the same id."""
    return str(uuid.uuid5(FRAGMENT_NAMESPACE, f"{repository_id}:{file_path}:{ordinal}:{content_hash}"))


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


def _context_header(lines: List[str], start: int, max_lines: int) -> str:
    """Enclosing signatures (outermost first) and the comment block above lines[start]."""
    if start == 0 or max_lines <= 0:
        return ""

    comments: List[str] = []
    i = start - 1
    while i >= 0 and COMMENT_PATTERN.match(lines[i]) and len(comments) < max_lines:
        comments.append(lines[i].rstrip())
        i -= 1
    comments.reverse()

    first = next((line for line in lines[start:] if line.strip()), "")
    current_indent = _indent(first)
    signatures: List[str] = []
    if current_indent > 0:
        for j in range(start - 1, -1, -1):
            line = lines[j]
            if not line.strip() or _indent(line) >= current_indent:
                continue
            if SIGNATURE_PATTERN.match(line):
                signatures.append(line.rstrip())
                current_indent = _indent(line)
                if current_indent == 0 or len(signatures) >= max_lines:
                    break
    signatures.reverse()

    header = signatures + [c for c in comments if c not in signatures]
    return "\n".join(header[:max_lines])


def chunk_file(
    *,
    repository_id: str,
    source_file: SourceFile,
    window_lines: int | None = None,
    overlap_lines: int | None = None,
    context_lines: int | None = None,
) -> List[CodeFragment]:
    """
    Split a single file into overlapping line windows.

    Returns fragments ordered by ordinal; an empty or whitespace-only file
    yields none.
    """
    window = window_lines or settings.chunk_window_lines
    overlap = settings.chunk_overlap_lines if overlap_lines is None else overlap_lines
    max_context = settings.chunk_context_lines if context_lines is None else context_lines

    if window < 1 or overlap < 0 or overlap >= window:
        raise InvalidInputError(f"Invalid chunk window: window={window}, overlap={overlap}")

    content = source_file.content
    if not content.strip():
        return []

    lines = content.splitlines()
    total_lines = len(lines)
    step = window - overlap

    fragments: List[CodeFragment] = []
    start = 0
    ordinal = 0

    while True:
        end = min(start + window, total_lines)
        body = "\n".join(lines[start:end])

        if body.strip():
            context = _context_header(lines, start, max_context)
            digest = hashlib.sha256(
                f"{source_file.language}\n{start + 1}:{end}\n{context}\n\0{body}".encode("utf-8")
            ).hexdigest()
            fragments.append(
                CodeFragment(
                    id=fragment_id(repository_id, source_file.file_path, ordinal, digest),
                    repository_id=repository_id,
                    file_path=source_file.file_path,
                    ordinal=ordinal,
                    start_line=start + 1,
                    end_line=end,
                    language=source_file.language,
                    context=context,
                    content=body,
                    content_hash=digest,
                    token_count=count_tokens(body),
                )
            )
            ordinal += 1

        if end >= total_lines:
            break
        start += step

    return fragments


def chunk_files(
    *,
    repository_id: str,
    files: List[SourceFile],
) -> List[CodeFragment]:
    """
    Chunk multiple files into a flat list of fragments.
    """
    all_fragments: List[CodeFragment] = []

    for source_file in files:
        all_fragments.extend(chunk_file(repository_id=repository_id, source_file=source_file))

        if len(all_fragments) > settings.max_fragments_per_repository:
            raise InvalidInputError("Maximum fragment limit exceeded")

    return all_fragments
