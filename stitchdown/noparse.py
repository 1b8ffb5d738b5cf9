"""Protect ``{{noparse}}...{{/noparse}}`` spans from include resolution.

Content inside a noparse block is swapped for an opaque placeholder before
includes are resolved and put back verbatim afterwards. The noparse tags
themselves are stripped on restore. Typical use is a form field whose value
contains tag syntax that must be shown for editing, not resolved:

    {{noparse}}{{include contract=config func="logo"}}{{/noparse}}

Blocks nest: only the outermost pair is stripped, inner noparse tags are part
of the preserved content. Unbalanced tags are left untouched.
"""

import re
import uuid
from typing import List, NamedTuple, Tuple

NOPARSE_TOKEN = re.compile(r"\{\{(/?)noparse\}\}", re.IGNORECASE)

PLACEHOLDER_PREFIX = "___NOPARSE_"
PLACEHOLDER_SUFFIX = "___"


class NoparseBlock(NamedTuple):
    placeholder_id: str
    inner_content: str
    start: int
    end: int
    original: str


def _outer_spans(text: str) -> List[Tuple[int, int, int, int]]:
    """(start, inner_start, inner_end, end) of each balanced outermost block."""
    spans = []
    depth = 0
    open_start = inner_start = 0
    for match in NOPARSE_TOKEN.finditer(text):
        closing = match.group(1) == "/"
        if not closing:
            if depth == 0:
                open_start, inner_start = match.start(), match.end()
            depth += 1
        elif depth > 0:
            depth -= 1
            if depth == 0:
                spans.append((open_start, inner_start, match.start(), match.end()))
    return spans


def extract_noparse_blocks(text: str) -> Tuple[str, List[NoparseBlock]]:
    """Replace each noparse block with a placeholder.

    Returns:
        Tuple of (content with placeholders, blocks in document order)
    """
    spans = _outer_spans(text)
    if not spans:
        return text, []

    token = uuid.uuid4().hex[:12]
    blocks = []
    parts = []
    cursor = 0
    for n, (start, inner_start, inner_end, end) in enumerate(spans):
        placeholder_id = f"{PLACEHOLDER_PREFIX}{token}_{n}{PLACEHOLDER_SUFFIX}"
        blocks.append(
            NoparseBlock(
                placeholder_id=placeholder_id,
                inner_content=text[inner_start:inner_end],
                start=start,
                end=end,
                original=text[start:end],
            )
        )
        parts.append(text[cursor:start])
        parts.append(placeholder_id)
        cursor = end
    parts.append(text[cursor:])
    return "".join(parts), blocks


def restore_noparse_blocks(text: str, blocks: List[NoparseBlock]) -> str:
    """Put the preserved inner content back in place of each placeholder."""
    for block in blocks:
        text = text.replace(block.placeholder_id, block.inner_content, 1)
    return text


def has_noparse_blocks(text: str) -> bool:
    return bool(_outer_spans(text))


def wrap_noparse(text: str) -> str:
    """Protect ``text`` from include resolution.

    ``text`` must not contain an unmatched ``{{/noparse}}``: a stray closing tag
    ends the block early and the rest of the text is parsed normally. Balanced
    inner blocks are fine.
    """
    return f"{{{{noparse}}}}{text}{{{{/noparse}}}}"
