"""Progressive loading of chunked content.

Contracts that store large content as numbered chunks emit tags instead of the
content itself:

    {{chunk collection="posts" index=3}}
    {{continue collection="posts" from=5}}

``ProgressiveLoader`` fetches those chunks with ``get_chunk(collection, index)``,
expanding open-ended continuations via ``get_chunk_meta(collection)``.
``render_progressive`` puts the loaded chunks back into the document.

Concurrency settings can be set with STITCHDOWN_CHUNK_BATCH_SIZE (default 3),
STITCHDOWN_CHUNK_CONCURRENCY (default 2) and STITCHDOWN_CHUNK_CACHE_SIZE
(default 256).
"""

import asyncio
import html
import logging
import re
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Sequence

from decouple import config as env_config

from .errors import RemoteCallError
from .remote import ChunkMeta, ContractArg, RemoteFetcher, decode_content
from .results import ChunkResult, ProgressiveResult
from .tags import (ChunkTag, ContinuationTag, ProgressiveTag, Tag,
                   create_chunk_key, create_tag_id, parse_progressive_tags)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = env_config("STITCHDOWN_CHUNK_BATCH_SIZE", default=3, cast=int)
DEFAULT_MAX_CONCURRENT = env_config("STITCHDOWN_CHUNK_CONCURRENCY", default=2, cast=int)
DEFAULT_CHUNK_CACHE_SIZE = env_config("STITCHDOWN_CHUNK_CACHE_SIZE", default=256, cast=int)


def _noop(*args):
    pass


class ProgressiveLoader:
    """Fetch numbered chunks of named collections from one contract.

    Identical chunk requests are coalesced: while a chunk is in flight, every
    caller awaits the same task. Loaded chunks are kept in a small LRU cache.

    Args:
        fetcher: The remote-fetch primitive
        contract_id: Contract holding the collections
        batch_size: Chunks per batch and concurrent slot
        max_concurrent: Chunk loads running at once
        cache_size: Number of chunks kept in the cache
        on_chunk_loaded: ``(collection, index, content)`` after each fresh fetch
        on_progress: ``(loaded, total)`` after each completed chunk in ``load_tags``
        on_error: ``(error, tag)`` when a chunk fails to load
    """

    def __init__(
        self,
        fetcher: RemoteFetcher,
        contract_id: str,
        batch_size: Optional[int] = None,
        max_concurrent: Optional[int] = None,
        cache_size: Optional[int] = None,
        on_chunk_loaded: Optional[Callable[[str, int, str], None]] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
        on_error: Optional[Callable[[Exception, Tag], None]] = None,
    ):
        self.fetcher = fetcher
        self.contract_id = contract_id
        self.batch_size = batch_size or DEFAULT_BATCH_SIZE
        self.max_concurrent = max_concurrent or DEFAULT_MAX_CONCURRENT
        self.cache_size = cache_size or DEFAULT_CHUNK_CACHE_SIZE
        self.on_chunk_loaded = on_chunk_loaded or _noop
        self.on_progress = on_progress or _noop
        self.on_error = on_error or _noop

        self._loaded: "OrderedDict[str, str]" = OrderedDict()
        self._pending: Dict[str, asyncio.Task] = {}
        self.aborted = False
        # bumped by reset(); fetches started before a reset do not write back
        self._generation = 0

    def _remember(self, key: str, content: str) -> None:
        self._loaded[key] = content
        self._loaded.move_to_end(key)
        while len(self._loaded) > self.cache_size:
            self._loaded.popitem(last=False)

    async def load_chunk(self, collection: str, index: int) -> str:
        """Load one chunk, from cache, an in-flight request, or the contract."""
        key = create_chunk_key(collection, index)

        if key in self._loaded:
            self._loaded.move_to_end(key)
            return self._loaded[key]

        pending = self._pending.get(key)
        if pending is not None:
            logger.debug(f"Joining in-flight request for chunk {key}")
            return await pending

        task = asyncio.ensure_future(self._fetch_chunk(collection, index, key, self._generation))
        self._pending[key] = task
        return await task

    async def _fetch_chunk(self, collection: str, index: int, key: str, generation: int) -> str:
        try:
            raw = await self.fetcher.call(
                self.contract_id,
                "get_chunk",
                [ContractArg("symbol", collection), ContractArg("u32", index)],
            )
            content = decode_content(raw)
            if content is None:
                logger.debug(f"Chunk {key} not found")
                return ""
            if generation != self._generation:
                logger.debug(f"Discarding chunk {key} fetched before reset")
                return content
            self._remember(key, content)
            self.on_chunk_loaded(collection, index, content)
            return content
        finally:
            if self._pending.get(key) is asyncio.current_task():
                del self._pending[key]

    async def get_chunk_meta(self, collection: str) -> Optional[ChunkMeta]:
        """Chunk count, size and version for a collection, or None if unknown."""
        try:
            return await self.fetcher.chunk_meta(self.contract_id, collection)
        except RemoteCallError as e:
            logger.warning(f"Chunk metadata for {collection} unavailable: {e}")
            return None

    async def expand_continuations(self, tags: Sequence[ProgressiveTag]) -> List[ChunkTag]:
        """Turn each continuation into chunk tags ``from .. count-1``.

        When a continuation has no ``total`` the count comes from the collection's
        metadata; unknown metadata counts as zero chunks.
        """
        chunk_tags: List[ChunkTag] = []
        for tag in tags:
            if isinstance(tag, ChunkTag):
                chunk_tags.append(tag)
                continue

            total = tag.total
            if total is None:
                meta = await self.get_chunk_meta(tag.collection)
                total = meta.count if meta is not None else 0
            chunk_tags.extend(
                ChunkTag.from_continuation(tag, i) for i in range(tag.from_index, total)
            )
        return chunk_tags

    async def load_tags(self, tags: Sequence[ProgressiveTag]) -> List[ChunkResult]:
        """Load every chunk referenced by ``tags``.

        Work proceeds in batches of ``batch_size * max_concurrent`` tags, each run
        ``max_concurrent`` at a time. A failed chunk is reported to ``on_error``
        and skipped. ``abort()`` stops new work from starting.

        Returns:
            Results for the chunks that loaded, in tag order
        """
        expanded = await self.expand_continuations(tags)
        total = len(expanded)
        loaded = 0
        results: List[ChunkResult] = []

        async def load_one(tag: ChunkTag) -> Optional[ChunkResult]:
            nonlocal loaded
            if self.aborted:
                return None
            try:
                content = await self.load_chunk(tag.collection, tag.index)
            except RemoteCallError as e:
                logger.warning(f"Chunk {create_chunk_key(tag.collection, tag.index)} failed: {e}")
                self.on_error(e, tag)
                return None
            loaded += 1
            self.on_progress(loaded, total)
            return ChunkResult(collection=tag.collection, index=tag.index, content=content)

        batch_span = self.batch_size * self.max_concurrent
        for batch_start in range(0, total, batch_span):
            if self.aborted:
                logger.info(f"Chunk loading aborted after {loaded}/{total}")
                break
            batch = expanded[batch_start : batch_start + batch_span]
            for step in range(0, len(batch), self.max_concurrent):
                if self.aborted:
                    break
                group = batch[step : step + self.max_concurrent]
                outcomes = await asyncio.gather(*[load_one(tag) for tag in group])
                results.extend(r for r in outcomes if r is not None)

        return results

    def abort(self) -> None:
        """Stop starting new work; requests already in flight still complete."""
        self.aborted = True

    def reset(self) -> None:
        """Clear cached and in-flight chunks and the abort flag."""
        self.aborted = False
        self._generation += 1
        self._loaded.clear()
        self._pending.clear()

    def get_cached(self, collection: str, index: int) -> Optional[str]:
        return self._loaded.get(create_chunk_key(collection, index))

    def is_cached(self, collection: str, index: int) -> bool:
        return create_chunk_key(collection, index) in self._loaded


async def load_progressive(
    tags: Sequence[ProgressiveTag],
    fetcher: RemoteFetcher,
    contract_id: str,
    **options,
) -> List[ChunkResult]:
    """Load the chunks for ``tags`` with a fresh loader. Options as for ProgressiveLoader."""
    loader = ProgressiveLoader(fetcher, contract_id, **options)
    return await loader.load_tags(tags)


def _placeholder_pattern(tag_id: str) -> "re.Pattern":
    escaped = re.escape(html.escape(tag_id, quote=True))
    return re.compile(
        rf'<div[^>]*\bdata-progressive-id="{escaped}"[^>]*>.*?</div>', re.DOTALL
    )


def _substitute(document: str, tag_id: str, replacement: str) -> str:
    return _placeholder_pattern(tag_id).sub(lambda _: replacement, document)


async def render_progressive(content: str, loader: ProgressiveLoader) -> ProgressiveResult:
    """Replace chunk and continuation tags in ``content`` with the loaded chunks.

    Chunk tags become their chunk's content. Chunks expanded from a continuation
    are inserted, in index order, where the continuation stood; the continuation
    placeholder is dropped unless the loader was aborted. Render tags are left
    as placeholders for ``load_render_continuations``.

    Failed chunks keep their placeholder and are listed in ``errors``; the
    loader's own ``on_error`` is still called.
    """
    parsed = parse_progressive_tags(content)
    if not parsed.tags:
        return ProgressiveResult(content=parsed.content)

    errors: List[Exception] = []
    forward_error = loader.on_error

    def record_error(error: Exception, tag: Tag) -> None:
        errors.append(error)
        forward_error(error, tag)

    loader.on_error = record_error
    try:
        expanded = await loader.expand_continuations(parsed.tags)
        chunks = await loader.load_tags(expanded)
    finally:
        loader.on_error = forward_error

    contents = {create_chunk_key(c.collection, c.index): c.content for c in chunks}
    continuations = {t.start: t for t in parsed.tags if isinstance(t, ContinuationTag)}
    continued: Dict[int, List[str]] = {start: [] for start in continuations}

    document = parsed.content
    for tag in expanded:
        key = create_chunk_key(tag.collection, tag.index)
        if key not in contents:
            continue
        if tag.is_expanded:
            continued[tag.start].append(contents[key])
        else:
            document = _substitute(document, create_tag_id(tag), contents[key])

    # continuations can share an id; placeholders are filled in document order
    fills_by_id: Dict[str, List[str]] = {}
    for start in sorted(continued):
        tag_id = create_tag_id(continuations[start])
        fills_by_id.setdefault(tag_id, []).append("".join(continued[start]))

    for tag_id, fills in fills_by_id.items():
        remaining = iter(fills)

        def fill(match):
            loaded = next(remaining, None)
            if loaded is None:
                return match.group(0)
            return loaded + match.group(0) if loader.aborted else loaded

        document = _placeholder_pattern(tag_id).sub(fill, document)

    return ProgressiveResult(
        content=document,
        loaded_chunks=len(chunks),
        total_chunks=len(expanded),
        chunks=chunks,
        errors=errors,
        aborted=loader.aborted,
    )
