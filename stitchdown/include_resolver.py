"""Recursive resolution of ``{{include ...}}`` tags.

Each include is replaced by the fully resolved output of a contract call:

    {{include contract=CA... func="header" path="?args"}}
    {{include contract=SELF func="chunk2"}}
    {{include contract=@main func="nav_include" viewer return_path="@main:/b/1"}}

For every document (the top-level text and each fetched child) the resolver:

1. swaps ``{{noparse}}`` blocks for placeholders,
2. strips ``{{aliases}}`` tags into the alias table for this subtree,
3. resolves each include: SELF/alias lookup, cycle check against the ancestor
   keys, cache lookup, fetch, recursive resolution of the fetched text, cache write,
4. substitutes results back-to-front and restores the noparse blocks.

Cycles and fetch failures become inline markers; they never abort the pass.
Sibling includes are fetched concurrently (bounded by a semaphore held only
around the fetch itself). A key is fetched at most once per pass, even when it
appears in several branches.
"""

import asyncio
import functools
import logging
import time
from typing import Dict, FrozenSet, List, Mapping, NamedTuple, Optional, Tuple, Union

import anyio
from decouple import config as env_config

from .aliases import AliasTable, parse_aliases
from .cache import TTLCache
from .errors import CYCLE_MARKER, IncludeCycleError, RemoteCallError, include_error_marker
from .noparse import extract_noparse_blocks, restore_noparse_blocks
from .remote import (RemoteFetcher, build_include_args, build_legacy_args,
                     decode_content, is_parameterized, render_function_name)
from .results import ResolveResult
from .tags import IncludeTag, create_include_key, parse_includes

logger = logging.getLogger(__name__)

SELF_CONTRACT = "SELF"
MAX_INCLUDE_CONCURRENCY = env_config("STITCHDOWN_MAX_CONCURRENCY", default=4, cast=int)


class _Outcome(NamedTuple):
    content: str
    key: str
    cycle_detected: bool = False
    # True only when this include itself closed a cycle
    is_cycle: bool = False


class _Pass:
    """State shared by every level of one top-level resolution call.

    Raw fetches are shared per resolution key for the whole pass: a key fetched
    (or being fetched) by one branch is not fetched again by another. Only the
    fetch is shared; each branch resolves the fetched text against its own
    ancestors, so no branch ever waits on another branch's resolution.
    """

    def __init__(
        self,
        fetcher: RemoteFetcher,
        viewer: Optional[str],
        cache: TTLCache,
        ttl: float,
        max_concurrent: int,
    ):
        self.fetcher = fetcher
        self.viewer = viewer
        self.cache = cache
        self.ttl = ttl
        self.semaphore = anyio.Semaphore(max_concurrent)
        self._fetches: Dict[str, asyncio.Task] = {}

    async def fetch(self, key: str, target_id: str, function_name: str, args) -> str:
        task = self._fetches.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(target_id, function_name, args))
            self._fetches[key] = task
        else:
            logger.debug(f"Sharing fetch for {key}")
        return await asyncio.shield(task)

    async def _fetch(self, target_id: str, function_name: str, args) -> str:
        call = f"{target_id}:{function_name}"
        async with self.semaphore:
            start_time = time.monotonic()
            logger.info(f"FETCH START {call}")
            try:
                raw = await self.fetcher.call(target_id, function_name, args)
            except RemoteCallError as e:
                elapsed_ms = (time.monotonic() - start_time) * 1000
                logger.warning(f"FETCH FAILED [{elapsed_ms:.0f}ms] {call}: {e}")
                raise
        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.info(f"FETCH DONE [{elapsed_ms:.0f}ms] {call}")

        content = decode_content(raw)
        if content is None:
            raise RemoteCallError(target_id, function_name, "No result from simulation")
        return content


def resolve_contract(reference: str, current_contract_id: str, aliases: AliasTable) -> str:
    """SELF -> the contract being rendered; aliases -> their ids; anything else as-is."""
    if reference == SELF_CONTRACT:
        return current_contract_id
    return aliases.resolve(reference)


def include_key(include: IncludeTag, contract_id: str) -> str:
    return create_include_key(contract_id, include.func, include.path, include.params)


def _check_cycle(key: str, ancestors: FrozenSet[str]) -> None:
    if key in ancestors:
        raise IncludeCycleError(key)


async def _resolve_one(
    run: _Pass,
    include: IncludeTag,
    contract_id: str,
    key: str,
    ancestors: FrozenSet[str],
    aliases: AliasTable,
) -> _Outcome:
    try:
        _check_cycle(key, ancestors)

        cached = run.cache.get(key, run.ttl)
        if cached is not None:
            logger.debug(f"Include cache hit: {key}")
            return _Outcome(cached, key)

        function_name = render_function_name(include.func)
        if is_parameterized(include):
            args = build_include_args(include.params, run.viewer, aliases)
        else:
            args = build_legacy_args(include.path, run.viewer)

        raw_content = await run.fetch(key, contract_id, function_name, args)
        child = await _resolve_document(
            run, raw_content, contract_id, ancestors | {key}, aliases
        )
        run.cache.set(key, child.content)
        return _Outcome(child.content, key, child.cycle_detected)

    except IncludeCycleError as e:
        logger.warning(str(e))
        return _Outcome(CYCLE_MARKER, key, cycle_detected=True, is_cycle=True)
    except RemoteCallError as e:
        return _Outcome(include_error_marker(e.reason), key)


async def _resolve_document(
    run: _Pass,
    text: str,
    contract_id: str,
    ancestors: FrozenSet[str],
    aliases: AliasTable,
) -> ResolveResult:
    processable, noparse_blocks = extract_noparse_blocks(text)
    processable, defined_aliases = parse_aliases(processable)
    aliases = aliases.extended(defined_aliases)

    includes = parse_includes(processable)
    if not includes:
        return ResolveResult(content=restore_noparse_blocks(processable, noparse_blocks))

    planned: List[Tuple[IncludeTag, str]] = []
    unique: Dict[str, Tuple[IncludeTag, str]] = {}
    for include in includes:
        target = resolve_contract(include.contract, contract_id, aliases)
        key = include_key(include, target)
        planned.append((include, key))
        unique.setdefault(key, (include, target))

    outcomes = await asyncio.gather(
        *[
            _resolve_one(run, include, target, key, ancestors, aliases)
            for key, (include, target) in unique.items()
        ]
    )
    by_key = {outcome.key: outcome for outcome in outcomes}

    # back-to-front so earlier offsets stay valid against the snapshot
    parts = []
    cursor = len(processable)
    cycle_detected = False
    resolved_keys = []
    for include, key in reversed(planned):
        outcome = by_key[key]
        parts.append(processable[include.end : cursor])
        parts.append(outcome.content)
        cursor = include.start
        cycle_detected = cycle_detected or outcome.cycle_detected
        if not outcome.is_cycle:
            resolved_keys.append(key)
    parts.append(processable[:cursor])

    content = restore_noparse_blocks("".join(reversed(parts)), noparse_blocks)
    return ResolveResult(
        content=content, cycle_detected=cycle_detected, resolved_keys=resolved_keys
    )


async def resolve_includes(
    text: str,
    fetcher: RemoteFetcher,
    contract_id: str,
    viewer: Optional[str] = None,
    cache: Optional[TTLCache] = None,
    ttl: Optional[float] = None,
    aliases: Optional[Union[AliasTable, Mapping[str, str]]] = None,
    max_concurrent: Optional[int] = None,
) -> ResolveResult:
    """Resolve every include in ``text``, recursively.

    Args:
        text: Raw page content
        fetcher: The remote-fetch primitive
        contract_id: Contract being rendered (the meaning of ``SELF``)
        viewer: Optional viewer address forwarded to every call
        cache: Page-session cache; a fresh one is used when omitted
        ttl: Cache TTL in seconds, defaults to the cache's own TTL
        aliases: Initial alias mappings; ``{{aliases}}`` tags in content extend them
        max_concurrent: Maximum simultaneous fetches for this pass

    Returns:
        ResolveResult with the resolved content, whether any cycle was cut, and
        the keys resolved at the top level (in processing order)

    Raises:
        TypeError: if ``text`` is not a string
    """
    if not isinstance(text, str):
        raise TypeError(f"Content must be a string, got {type(text).__name__}")

    if cache is None:
        cache = TTLCache(ttl=ttl)
    if not isinstance(aliases, AliasTable):
        aliases = AliasTable(aliases)

    run = _Pass(
        fetcher=fetcher,
        viewer=viewer,
        cache=cache,
        ttl=cache.ttl if ttl is None else ttl,
        max_concurrent=max_concurrent or MAX_INCLUDE_CONCURRENCY,
    )
    result = await _resolve_document(run, text, contract_id, frozenset(), aliases)
    if result.cycle_detected:
        logger.warning(f"Include cycle(s) cut while rendering {contract_id}")
    return result


def resolve_includes_sync(text: str, fetcher: RemoteFetcher, contract_id: str, **kwargs) -> ResolveResult:
    """Blocking wrapper around ``resolve_includes``."""
    return anyio.run(
        functools.partial(resolve_includes, text, fetcher, contract_id, **kwargs)
    )


class IncludeResolver:
    """Resolver bound to one fetcher with a cache shared across calls.

    Example:
        resolver = IncludeResolver(fetcher, ttl=60)
        page = await resolver.resolve(content, "CABC...", viewer="GXYZ...")
        resolver.clear_cache()
    """

    def __init__(
        self,
        fetcher: RemoteFetcher,
        ttl: Optional[float] = None,
        cache: Optional[TTLCache] = None,
        max_concurrent: Optional[int] = None,
    ):
        self.fetcher = fetcher
        self.cache = cache if cache is not None else TTLCache(ttl=ttl)
        self.max_concurrent = max_concurrent

    async def resolve(
        self,
        text: str,
        contract_id: str,
        viewer: Optional[str] = None,
        aliases: Optional[Union[AliasTable, Mapping[str, str]]] = None,
    ) -> ResolveResult:
        return await resolve_includes(
            text,
            self.fetcher,
            contract_id,
            viewer=viewer,
            cache=self.cache,
            aliases=aliases,
            max_concurrent=self.max_concurrent,
        )

    def clear_cache(self) -> None:
        self.cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self.cache)
