"""Stitchdown -- assemble pages from contract-rendered markup.

A contract's read-only ``render`` call returns markup that may embed other
contracts' output (``{{include}}``), chunked content (``{{chunk}}``,
``{{continue}}``) and deferred sub-pages (``{{render}}``). Stitchdown turns that
tree of remote-fetch directives into one flat document.
"""

import logging

# Version - reads from package metadata (set in pyproject.toml)
try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("stitchdown")
except PackageNotFoundError:
    __version__ = "0.0.0+dev"

logger = logging.getLogger(__name__)

from .aliases import AliasTable, has_alias_tags, parse_aliases, resolve_alias
from .cache import DEFAULT_CACHE_TTL, CacheEntry, TTLCache
from .continuation import (extract_placeholder_paths, extract_render_paths,
                           has_render_placeholders, load_render_continuations,
                           load_render_continuations_sync)
from .errors import (CYCLE_MARKER, IncludeCycleError, RemoteCallError,
                     include_error_marker)
from .include_resolver import (IncludeResolver, resolve_includes,
                               resolve_includes_sync)
from .noparse import (NoparseBlock, extract_noparse_blocks, has_noparse_blocks,
                      restore_noparse_blocks, wrap_noparse)
from .progressive import ProgressiveLoader, load_progressive, render_progressive
from .remote import (CallableFetcher, ChunkMeta, ContractArg, DirectoryFetcher,
                     RemoteFetcher)
from .results import (ChunkResult, ContinuationError, ProgressiveResult,
                      RenderContinuationResult, ResolveResult)
from .tags import (FLAG, ChunkTag, ContinuationTag, Flag, IncludeTag,
                   RegexTagScanner, RenderTag, Tag, create_include_key,
                   has_includes, has_progressive_tags, has_render_tags,
                   parse_includes, parse_progressive_tags, parse_render_tags)

__all__ = [
    "__version__",
    # Resolution
    "resolve_includes",
    "resolve_includes_sync",
    "IncludeResolver",
    "load_progressive",
    "render_progressive",
    "ProgressiveLoader",
    "load_render_continuations",
    "load_render_continuations_sync",
    # Results
    "ResolveResult",
    "ChunkResult",
    "ProgressiveResult",
    "ContinuationError",
    "RenderContinuationResult",
    # Remote calls
    "RemoteFetcher",
    "CallableFetcher",
    "DirectoryFetcher",
    "ContractArg",
    "ChunkMeta",
    # Errors
    "RemoteCallError",
    "IncludeCycleError",
    "CYCLE_MARKER",
    "include_error_marker",
    # Caching
    "TTLCache",
    "CacheEntry",
    "DEFAULT_CACHE_TTL",
    # Parsing
    "Tag",
    "IncludeTag",
    "ChunkTag",
    "ContinuationTag",
    "RenderTag",
    "Flag",
    "FLAG",
    "RegexTagScanner",
    "parse_includes",
    "has_includes",
    "parse_progressive_tags",
    "has_progressive_tags",
    "parse_render_tags",
    "has_render_tags",
    "create_include_key",
    "AliasTable",
    "parse_aliases",
    "has_alias_tags",
    "resolve_alias",
    "NoparseBlock",
    "extract_noparse_blocks",
    "restore_noparse_blocks",
    "has_noparse_blocks",
    "wrap_noparse",
    "extract_placeholder_paths",
    "extract_render_paths",
    "has_render_placeholders",
]
