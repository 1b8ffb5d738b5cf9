"""Tag parser for the ``{{kind attr=value ...}}`` directives embedded in page content.

Recognised tags:

    {{include contract=<id|SELF|@alias> [func="name"] [path="p"] [flag] [name="value"] ...}}
    {{chunk collection="c" index=N [placeholder="text"]}}
    {{continue collection="c" [from=N] [total=N]}}
    {{render path="p"}}

Aliases and noparse blocks have their own grammars (see ``aliases.py`` and
``noparse.py``). Scanning is regex based but isolated behind ``RegexTagScanner``;
the parse functions below only depend on its ``scan`` method.

Malformed tags (an include without a contract, a chunk without an integer index,
a render tag without a path) are dropped rather than raising.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class Flag:
    """A bare attribute with no value, e.g. ``viewer`` in ``{{include ... viewer}}``.

    There is only ever one instance, ``FLAG``.
    """

    __slots__ = ()
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "FLAG"

    def __bool__(self) -> bool:
        return True


FLAG = Flag()

AttrValue = Union[str, Flag]

# key, key="value", key='value' or key=value
ATTR_PATTERN = re.compile(r"""(\w+)(?:=(?:"([^"]*)"|'([^']*)'|(\S+)))?""")

INCLUDE_KIND = "include"
CHUNK_KIND = "chunk"
CONTINUE_KIND = "continue"
RENDER_KIND = "render"

# Attributes of an include that are not forwarded as call parameters
STANDARD_INCLUDE_ATTRS = frozenset({"contract", "func", "path"})

PLACEHOLDER_CLASS = "stitchdown-progressive-placeholder"

_INTEGER = re.compile(r"\d+")


def parse_attributes(attrs_string: str) -> Dict[str, AttrValue]:
    """Parse an attribute string into a mapping.

    Values may be double-quoted, single-quoted or unquoted. Attributes without a
    value are flags and map to ``FLAG``. Later duplicates override earlier ones.

    Example:
        >>> parse_attributes('contract=@main func="nav" viewer')
        {'contract': '@main', 'func': 'nav', 'viewer': FLAG}
    """
    attrs: Dict[str, AttrValue] = {}
    for match in ATTR_PATTERN.finditer(attrs_string):
        key, double, single, bare = match.groups()
        if double is not None:
            attrs[key] = double
        elif single is not None:
            attrs[key] = single
        elif bare is not None:
            attrs[key] = bare
        else:
            attrs[key] = FLAG
    return attrs


@dataclass(frozen=True)
class Tag:
    """A parsed tag. Offsets are only valid against the exact string it came from."""

    kind: str
    original: str
    start: int
    end: int
    attributes: Mapping[str, AttrValue] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    def value(self, name: str) -> Optional[str]:
        """Return a string attribute, or None if absent or given as a bare flag."""
        value = self.attributes.get(name)
        return value if isinstance(value, str) else None

    def int_value(self, name: str) -> Optional[int]:
        value = self.value(name)
        if value is not None and _INTEGER.fullmatch(value):
            return int(value)
        return None


class IncludeTag(Tag):
    """``{{include contract=... [func=...] [path=...] [params...]}}``"""

    @property
    def contract(self) -> str:
        return self.attributes["contract"]

    @property
    def func(self) -> Optional[str]:
        return self.value("func")

    @property
    def path(self) -> Optional[str]:
        return self.value("path")

    @property
    def params(self) -> Dict[str, AttrValue]:
        """Every non-standard attribute, in tag order."""
        return {
            k: v for k, v in self.attributes.items() if k not in STANDARD_INCLUDE_ATTRS
        }

    def has_custom_params(self) -> bool:
        return bool(self.params)


@dataclass(frozen=True)
class ChunkTag(Tag):
    """``{{chunk collection="c" index=N}}``, or a chunk expanded from a continuation.

    Expanded chunks carry the continuation's text and offsets.
    """

    expanded: bool = False

    @property
    def collection(self) -> str:
        return self.attributes["collection"]

    @property
    def index(self) -> int:
        return self.int_value("index")

    @property
    def placeholder(self) -> Optional[str]:
        return self.value("placeholder")

    @property
    def is_expanded(self) -> bool:
        """True when this chunk was produced by expanding a continuation tag."""
        return self.expanded

    @classmethod
    def from_continuation(cls, continuation: "ContinuationTag", index: int) -> "ChunkTag":
        return cls(
            kind=CHUNK_KIND,
            original=continuation.original,
            start=continuation.start,
            end=continuation.end,
            attributes={"collection": continuation.collection, "index": str(index)},
            expanded=True,
        )


class ContinuationTag(Tag):
    """``{{continue collection="c" [from=N] [total=N]}}``"""

    @property
    def collection(self) -> str:
        return self.attributes["collection"]

    @property
    def from_index(self) -> int:
        value = self.int_value("from")
        return value if value is not None else 0

    @property
    def total(self) -> Optional[int]:
        return self.int_value("total")


class RenderTag(Tag):
    """``{{render path="p"}}``"""

    @property
    def path(self) -> str:
        return self.attributes["path"]


ProgressiveTag = Union[ChunkTag, ContinuationTag]


class RegexTagScanner:
    """Stateless regex scanner for ``{{kind attrs}}`` tags.

    ``scan`` returns raw ``Tag`` records in document order; validation and
    specialisation happen in the parse functions, so a hand-written scanner with
    the same ``scan`` signature can replace this one.
    """

    pattern = re.compile(r"\{\{(include|chunk|continue|render)\s+([^}]+)\}\}")

    def scan(self, text: str, kinds: Optional[Iterable[str]] = None) -> List[Tag]:
        wanted = set(kinds) if kinds is not None else None
        tags = []
        for match in self.pattern.finditer(text):
            kind = match.group(1)
            if wanted is not None and kind not in wanted:
                continue
            tags.append(
                Tag(
                    kind=kind,
                    original=match.group(0),
                    start=match.start(),
                    end=match.end(),
                    attributes=parse_attributes(match.group(2)),
                )
            )
        return tags


DEFAULT_SCANNER = RegexTagScanner()


def _specialise(tag: Tag, cls):
    return cls(
        kind=tag.kind,
        original=tag.original,
        start=tag.start,
        end=tag.end,
        attributes=tag.attributes,
    )


def parse_includes(text: str, scanner: RegexTagScanner = DEFAULT_SCANNER) -> List[IncludeTag]:
    """Find all well-formed include tags, in document order."""
    includes = []
    for tag in scanner.scan(text, (INCLUDE_KIND,)):
        if tag.value("contract") is None:
            logger.debug(f"Dropping include without contract: {tag.original}")
            continue
        includes.append(_specialise(tag, IncludeTag))
    return includes


def has_includes(text: str, scanner: RegexTagScanner = DEFAULT_SCANNER) -> bool:
    return bool(parse_includes(text, scanner))


def parse_chunk_tags(text: str, scanner: RegexTagScanner = DEFAULT_SCANNER) -> List[ChunkTag]:
    chunks = []
    for tag in scanner.scan(text, (CHUNK_KIND,)):
        if tag.value("collection") is None or tag.int_value("index") is None:
            logger.debug(f"Dropping malformed chunk tag: {tag.original}")
            continue
        chunks.append(_specialise(tag, ChunkTag))
    return chunks


def parse_continuation_tags(
    text: str, scanner: RegexTagScanner = DEFAULT_SCANNER
) -> List[ContinuationTag]:
    continuations = []
    for tag in scanner.scan(text, (CONTINUE_KIND,)):
        if tag.value("collection") is None:
            logger.debug(f"Dropping continuation without collection: {tag.original}")
            continue
        continuations.append(_specialise(tag, ContinuationTag))
    return continuations


def parse_render_tags(text: str, scanner: RegexTagScanner = DEFAULT_SCANNER) -> List[RenderTag]:
    renders = []
    for tag in scanner.scan(text, (RENDER_KIND,)):
        if tag.value("path") is None:
            logger.debug(f"Dropping render tag without path: {tag.original}")
            continue
        renders.append(_specialise(tag, RenderTag))
    return renders


def has_render_tags(text: str, scanner: RegexTagScanner = DEFAULT_SCANNER) -> bool:
    return bool(parse_render_tags(text, scanner))


def has_progressive_tags(text: str, scanner: RegexTagScanner = DEFAULT_SCANNER) -> bool:
    return bool(parse_chunk_tags(text, scanner) or parse_continuation_tags(text, scanner))


def replace_tag(text: str, tag: Tag, replacement: str) -> str:
    return text[: tag.start] + replacement + text[tag.end :]


def create_include_key(
    contract_id: str,
    func: Optional[str] = None,
    path: Optional[str] = None,
    params: Optional[Mapping[str, AttrValue]] = None,
) -> str:
    """Build the resolution key used for cycle detection and caching.

    Format: ``contract:func|path|params`` with params sorted by name; flags
    serialise as the bare name, valued params as ``name=value``.

    Example:
        >>> create_include_key("C1", "nav", None, {"viewer": FLAG, "b_id": "5"})
        'C1:nav||b_id=5,viewer'
    """
    params_part = ""
    if params:
        params_part = ",".join(
            name if isinstance(params[name], Flag) else f"{name}={params[name]}"
            for name in sorted(params)
        )
    return f"{contract_id}:{func or ''}|{path or ''}|{params_part}"


def create_chunk_key(collection: str, index: int) -> str:
    return f"{collection}:{index}"


def create_tag_id(tag: Tag) -> str:
    """Stable DOM id for a progressive placeholder."""
    if isinstance(tag, ChunkTag):
        return f"chunk-{tag.collection}-{tag.index}"
    if isinstance(tag, ContinuationTag):
        return f"continue-{tag.collection}-{tag.from_index}"
    if isinstance(tag, RenderTag):
        return f"render-{tag.path}"
    raise TypeError(f"No placeholder id for {tag.kind} tags")


def _placeholder_div(attrs: List[Tuple[str, object]], inner: str = "") -> str:
    rendered = " ".join(
        f'{name}="{html.escape(str(value), quote=True)}"' for name, value in attrs
    )
    return f"<div {rendered}>{inner}</div>"


def placeholder_for(tag: Tag) -> str:
    """Markup that stands in for a progressive tag until its content is loaded."""
    attrs: List[Tuple[str, object]] = [
        ("class", PLACEHOLDER_CLASS),
        ("data-progressive-id", create_tag_id(tag)),
        ("data-type", tag.kind),
    ]
    if isinstance(tag, ChunkTag):
        attrs += [("data-collection", tag.collection), ("data-index", tag.index)]
        return _placeholder_div(attrs, html.escape(tag.placeholder or "", quote=False))
    if isinstance(tag, ContinuationTag):
        attrs += [("data-collection", tag.collection), ("data-from", tag.from_index)]
        return _placeholder_div(attrs)
    if isinstance(tag, RenderTag):
        attrs.append(("data-path", tag.path))
        return _placeholder_div(attrs)
    raise TypeError(f"No placeholder for {tag.kind} tags")


class ParsedProgressiveContent(NamedTuple):
    """Content with progressive tags swapped for placeholder markup."""

    content: str
    tags: List[ProgressiveTag]
    render_tags: List[RenderTag]

    @property
    def has_progressive(self) -> bool:
        return bool(self.tags or self.render_tags)


def parse_progressive_tags(
    text: str, scanner: RegexTagScanner = DEFAULT_SCANNER
) -> ParsedProgressiveContent:
    """Replace chunk, continue and render tags with placeholders.

    Returns the rewritten content plus the chunk/continue tags (for the chunk
    loader) and the render tags (for the continuation loader), each in
    document order with offsets into the *original* text.
    """
    tags: List[ProgressiveTag] = sorted(
        parse_chunk_tags(text, scanner) + parse_continuation_tags(text, scanner),
        key=lambda t: t.start,
    )
    render_tags = parse_render_tags(text, scanner)

    parts = []
    cursor = len(text)
    for tag in sorted(tags + render_tags, key=lambda t: t.start, reverse=True):
        parts.append(text[tag.end : cursor])
        parts.append(placeholder_for(tag))
        cursor = tag.start
    parts.append(text[:cursor])

    return ParsedProgressiveContent("".join(reversed(parts)), tags, render_tags)
