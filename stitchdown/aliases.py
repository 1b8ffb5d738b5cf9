"""Contract aliases defined in content.

Pages can map short names to full contract ids:

    {{aliases config=CCOBK... registry=CCDBT...}}
    {{aliases {"config": "CCOBK...", "registry": "CCDBT..."}}}

so includes can say ``contract=@config`` (or ``contract=config``) instead of
spelling out a 56-character id.
"""

import json
import logging
import re
from typing import Dict, List, Mapping, NamedTuple, Optional, Tuple

logger = logging.getLogger(__name__)

# JSON body first so its braces are not cut short by the key=value alternative
ALIASES_TAG_PATTERN = re.compile(
    r"\{\{aliases\s+(\{[^{}]*\}|[^}]+?)\s*\}\}", re.IGNORECASE
)
KEY_VALUE_PATTERN = re.compile(r"""(\w+)=(?:"([^"]*)"|'([^']*)'|(\S+))""")
ALIAS_REFERENCE_PATTERN = re.compile(r"@(\w+)")


class AliasTag(NamedTuple):
    original: str
    start: int
    end: int
    mappings: Dict[str, str]


def _parse_key_values(body: str) -> Dict[str, str]:
    mappings = {}
    for match in KEY_VALUE_PATTERN.finditer(body):
        key, double, single, bare = match.groups()
        mappings[key] = next(v for v in (double, single, bare) if v is not None)
    return mappings


def _parse_body(body: str) -> Dict[str, str]:
    body = body.strip()
    if body.startswith("{"):
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            logger.debug(f"Ignoring malformed JSON aliases: {body}")
            return {}
        if not isinstance(parsed, dict):
            return {}
        return {str(k): str(v) for k, v in parsed.items() if isinstance(v, str)}
    return _parse_key_values(body)


def find_alias_tags(text: str) -> List[AliasTag]:
    """All alias tags that define at least one mapping, in document order."""
    tags = []
    for match in ALIASES_TAG_PATTERN.finditer(text):
        mappings = _parse_body(match.group(1))
        if mappings:
            tags.append(AliasTag(match.group(0), match.start(), match.end(), mappings))
    return tags


def has_alias_tags(text: str) -> bool:
    return bool(find_alias_tags(text))


def parse_aliases(text: str) -> Tuple[str, Dict[str, str]]:
    """Extract alias mappings and strip the alias tags from the text.

    Returns:
        Tuple of (text without alias tags, merged mappings). Later tags override
        earlier ones.
    """
    tags = find_alias_tags(text)
    aliases: Dict[str, str] = {}
    for tag in tags:
        aliases.update(tag.mappings)

    for tag in reversed(tags):
        text = text[: tag.start] + text[tag.end :]
    return text, aliases


class AliasTable:
    """Short-name to contract-id mapping for one document and its descendants.

    Tables are copied, never shared, when a child document adds definitions, so
    siblings cannot see each other's aliases.
    """

    def __init__(self, aliases: Optional[Mapping[str, str]] = None):
        self._aliases: Dict[str, str] = dict(aliases or {})

    def __contains__(self, name: str) -> bool:
        return name.lstrip("@") in self._aliases

    def __len__(self) -> int:
        return len(self._aliases)

    def __repr__(self) -> str:
        return f"AliasTable({self._aliases!r})"

    def as_dict(self) -> Dict[str, str]:
        return dict(self._aliases)

    def extended(self, aliases: Mapping[str, str]) -> "AliasTable":
        """A new table with ``aliases`` layered over this one."""
        if not aliases:
            return self
        merged = dict(self._aliases)
        merged.update(aliases)
        return AliasTable(merged)

    def resolve(self, reference: str) -> str:
        """Resolve ``@name`` or ``name`` to a contract id.

        Unknown names come back unchanged, so the failure surfaces later as a
        remote call error against the literal reference.
        """
        if reference.startswith("@"):
            name = reference[1:]
            if name not in self._aliases:
                logger.warning(f"Unresolved contract alias {reference}")
                return reference
            return self._aliases[name]
        return self._aliases.get(reference, reference)

    def substitute(self, value: str) -> str:
        """Replace every ``@name`` inside a value, e.g. ``@main:/b/1`` -> ``CDZ...:/b/1``.

        Single pass: substituted ids are not themselves re-expanded.
        """
        return ALIAS_REFERENCE_PATTERN.sub(
            lambda m: self._aliases.get(m.group(1), m.group(0)), value
        )


def resolve_alias(reference: str, aliases: Optional[Mapping[str, str]] = None) -> str:
    """Resolve a contract reference against a plain mapping.

    Example:
        >>> resolve_alias("@main", {"main": "CDZ1"})
        'CDZ1'
    """
    table = aliases if isinstance(aliases, AliasTable) else AliasTable(aliases)
    return table.resolve(reference)
