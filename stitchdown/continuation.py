"""Waterfall loading of render continuations.

``{{render path="/more"}}`` tags are turned into placeholder markup by
``parse_progressive_tags``:

    <div class="stitchdown-progressive-placeholder" data-type="render" data-path="/more"></div>

``load_render_continuations`` fetches each placeholder's path with the contract's
``render(path, viewer)``, runs the raw content through a caller-supplied
post-processor (which may emit new placeholders), substitutes it, and repeats
until no unseen paths remain or the continuation ceiling is hit. A path is
fetched at most once per run, so self-referencing pages terminate.

Defaults can be set with STITCHDOWN_RENDER_CONCURRENCY (default 2) and
STITCHDOWN_MAX_CONTINUATIONS (default 100).
"""

import asyncio
import functools
import html
import inspect
import logging
import re
from typing import Awaitable, Callable, List, Optional, Union

import anyio
from decouple import config as env_config

from .errors import RemoteCallError
from .remote import RemoteFetcher, build_legacy_args, decode_content
from .results import ContinuationError, RenderContinuationResult
from .tags import parse_render_tags

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = env_config("STITCHDOWN_RENDER_CONCURRENCY", default=2, cast=int)
DEFAULT_MAX_CONTINUATIONS = env_config("STITCHDOWN_MAX_CONTINUATIONS", default=100, cast=int)

# Empty div with any attributes; which attributes it carries is checked separately
EMPTY_DIV_PATTERN = re.compile(r"<div\b([^>]*)>\s*</div>", re.IGNORECASE)
HTML_ATTR_PATTERN = re.compile(r"""([\w-]+)\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s"'>]+))""")

PostProcessor = Callable[[str, str], Union[str, Awaitable[str]]]


def _placeholder_path(attrs_string: str) -> Optional[str]:
    """The render path of a placeholder div, or None if the div is not one.

    Attribute order does not matter.
    """
    attrs = {}
    for match in HTML_ATTR_PATTERN.finditer(attrs_string):
        name, double, single, bare = match.groups()
        attrs[name.lower()] = next(v for v in (double, single, bare) if v is not None)
    if attrs.get("data-type") != "render" or not attrs.get("data-path"):
        return None
    return html.unescape(attrs["data-path"])


def extract_placeholder_paths(document: str) -> List[str]:
    """Render paths of every placeholder div, in document order (may repeat)."""
    paths = []
    for match in EMPTY_DIV_PATTERN.finditer(document):
        path = _placeholder_path(match.group(1))
        if path is not None:
            paths.append(path)
    return paths


def has_render_placeholders(document: str) -> bool:
    return bool(extract_placeholder_paths(document))


def extract_render_paths(content: str) -> List[str]:
    """Unique paths from both raw ``{{render}}`` tags and placeholder divs."""
    paths = [tag.path for tag in parse_render_tags(content)]
    paths += extract_placeholder_paths(content)
    return list(dict.fromkeys(paths))


def replace_placeholder(document: str, path: str, replacement: str) -> str:
    """Replace every placeholder div for ``path`` with ``replacement``."""

    def substitute(match):
        if _placeholder_path(match.group(1)) == path:
            return replacement
        return match.group(0)

    return EMPTY_DIV_PATTERN.sub(substitute, document)


async def _identity(path: str, content: str) -> str:
    return content


async def load_render_continuations(
    initial_content: str,
    fetcher: RemoteFetcher,
    contract_id: str,
    viewer: Optional[str] = None,
    on_continuation_loaded: Optional[PostProcessor] = None,
    on_error: Optional[Callable[[Exception, str], None]] = None,
    max_concurrent: Optional[int] = None,
    max_continuations: Optional[int] = None,
) -> RenderContinuationResult:
    """Load render continuations until the document stops growing.

    Args:
        initial_content: Document containing render placeholder divs
        fetcher: The remote-fetch primitive
        contract_id: Contract whose ``render(path, viewer)`` serves each path
        viewer: Optional viewer address
        on_continuation_loaded: ``(path, raw) -> processed`` (sync or async); the
            processed markup is what gets substituted and may hold new placeholders
        on_error: ``(error, path)`` for each failed path
        max_concurrent: Fetches running at once within a round
        max_continuations: Ceiling on successful loads per run

    Returns:
        RenderContinuationResult with the final content, the number of
        continuations loaded, per-path errors and whether the ceiling stopped the run
    """
    post_process = on_continuation_loaded or _identity
    max_concurrent = max_concurrent or DEFAULT_MAX_CONCURRENT
    max_continuations = (
        DEFAULT_MAX_CONTINUATIONS if max_continuations is None else max_continuations
    )

    content = initial_content
    continuations_loaded = 0
    errors: List[ContinuationError] = []
    loaded_paths = set()
    limit_reached = False

    def record_error(path: str, error: Exception) -> None:
        logger.warning(f"Render continuation {path} failed: {error}")
        errors.append(ContinuationError(path=path, message=str(error), error=error))
        if on_error is not None:
            on_error(error, path)

    async def load_path(path: str):
        loaded_paths.add(path)
        try:
            raw = await fetcher.call(contract_id, None, build_legacy_args(path, viewer))
            raw_content = decode_content(raw)
            if raw_content is None:
                raise RemoteCallError(contract_id, None, "No result from simulation")
        except RemoteCallError as e:
            record_error(path, e)
            return None

        # post-processor failures belong to this path only
        try:
            processed = post_process(path, raw_content)
            if inspect.isawaitable(processed):
                processed = await processed
        except Exception as e:
            record_error(path, e)
            return None
        return processed

    while True:
        new_paths = [
            p
            for p in dict.fromkeys(extract_placeholder_paths(content))
            if p not in loaded_paths
        ]
        if not new_paths:
            break
        if continuations_loaded >= max_continuations:
            limit_reached = True
            logger.warning(
                f"Stopped after {continuations_loaded} render continuations "
                f"(limit {max_continuations}), {len(new_paths)} path(s) not loaded"
            )
            break

        # paths skipped because of the ceiling are picked up by the next scan
        for i in range(0, len(new_paths), max_concurrent):
            remaining = max_continuations - continuations_loaded
            if remaining <= 0:
                break
            batch = new_paths[i : i + min(max_concurrent, remaining)]
            outcomes = await asyncio.gather(*[load_path(path) for path in batch])

            for path, processed in zip(batch, outcomes):
                if processed is None:
                    continue
                content = replace_placeholder(content, path, processed)
                continuations_loaded += 1

    return RenderContinuationResult(
        content=content,
        continuations_loaded=continuations_loaded,
        errors=errors,
        limit_reached=limit_reached,
    )


def load_render_continuations_sync(
    initial_content: str, fetcher: RemoteFetcher, contract_id: str, **kwargs
) -> RenderContinuationResult:
    """Blocking wrapper around ``load_render_continuations``."""
    return anyio.run(
        functools.partial(
            load_render_continuations, initial_content, fetcher, contract_id, **kwargs
        )
    )
