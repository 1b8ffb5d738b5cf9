"""The remote-fetch primitive and its calling conventions.

stitchdown never talks to a network itself. The embedding application supplies a
``RemoteFetcher`` whose ``call`` performs one read-only contract call and returns
raw bytes (or text). This module defines that interface, the typed arguments
passed through it, and the two calling conventions includes can use:

Legacy mode
    ``render_{func}(path, viewer)`` (or ``render(path, viewer)``) with positional
    arguments. Used when the include has no extra attributes and ``func`` does not
    end in ``_include``.

Parameterized mode
    ``render_{func}(**params)`` with named arguments typed from their names:
    the ``viewer`` flag becomes the viewer's address, ``*_id`` becomes u64,
    ``count``/``depth``/``index``/``limit``/``offset`` become u32 and everything
    else is a string (with ``@alias`` references substituted).
"""

import inspect
import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Union

import anyio
from pydantic import BaseModel, ValidationError

from .aliases import AliasTable
from .errors import RemoteCallError
from .tags import AttrValue, Flag, IncludeTag

logger = logging.getLogger(__name__)

DEFAULT_FUNCTION = "render"
INCLUDE_FUNCTION_SUFFIX = "_include"
U32_PARAMS = frozenset({"count", "depth", "index", "limit", "offset"})

_UNSIGNED = re.compile(r"\d+")


class ContractArg(NamedTuple):
    """A typed argument for a contract call."""

    type: str  # string | symbol | address | u64 | u32 | bool | void
    value: Any = None

    @classmethod
    def void(cls) -> "ContractArg":
        return cls("void", None)

    @classmethod
    def string(cls, value: Optional[str]) -> "ContractArg":
        return cls("string", value) if value is not None else cls.void()

    @classmethod
    def address(cls, value: Optional[str]) -> "ContractArg":
        return cls("address", value) if value else cls.void()


PositionalArgs = List[ContractArg]
NamedArgs = Dict[str, ContractArg]
CallArgs = Union[PositionalArgs, NamedArgs]


class ChunkMeta(BaseModel):
    count: int = 0
    total_bytes: int = 0
    version: int = 0


def render_function_name(func: Optional[str]) -> str:
    """``header`` -> ``render_header``; names already prefixed are kept."""
    if not func:
        return DEFAULT_FUNCTION
    if func == DEFAULT_FUNCTION or func.startswith(f"{DEFAULT_FUNCTION}_"):
        return func
    return f"{DEFAULT_FUNCTION}_{func}"


def is_parameterized(include: IncludeTag) -> bool:
    """Whether an include uses named parameters rather than ``(path, viewer)``."""
    return include.has_custom_params() or bool(
        include.func and include.func.endswith(INCLUDE_FUNCTION_SUFFIX)
    )


def build_legacy_args(path: Optional[str], viewer: Optional[str]) -> PositionalArgs:
    return [ContractArg.string(path), ContractArg.address(viewer)]


def infer_arg(name: str, value: AttrValue, viewer: Optional[str], aliases: AliasTable) -> ContractArg:
    """Type one include parameter from its name and value."""
    if isinstance(value, Flag):
        if name == "viewer":
            return ContractArg.address(viewer)
        return ContractArg("bool", True)
    if name.endswith("_id") and _UNSIGNED.fullmatch(value):
        return ContractArg("u64", int(value))
    if name in U32_PARAMS and _UNSIGNED.fullmatch(value):
        return ContractArg("u32", int(value))
    return ContractArg("string", aliases.substitute(value))


def build_include_args(
    params: Mapping[str, AttrValue],
    viewer: Optional[str] = None,
    aliases: Optional[AliasTable] = None,
) -> NamedArgs:
    aliases = aliases if aliases is not None else AliasTable()
    return {name: infer_arg(name, value, viewer, aliases) for name, value in params.items()}


def decode_content(value: Union[bytes, bytearray, str, None]) -> Optional[str]:
    """Turn a raw call result into text. ``None`` means the call returned nothing."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, str):
        return value
    raise TypeError(f"Unexpected return type from remote call: {type(value).__name__}")


def decode_chunk_meta(value: Any) -> Optional[ChunkMeta]:
    """Decode a ``get_chunk_meta`` result (mapping or JSON text/bytes)."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, str)):
        try:
            value = json.loads(decode_content(value))
        except json.JSONDecodeError:
            return None
    if not isinstance(value, Mapping):
        return None
    try:
        return ChunkMeta.model_validate(dict(value))
    except ValidationError:
        return None


class RemoteFetcher:
    """Base class for the embedding application's remote-fetch primitive.

    Subclasses implement ``call``. ``chunk_meta`` defaults to calling the
    contract's ``get_chunk_meta(collection)`` and decoding the result.
    """

    async def call(
        self, target_id: str, function_name: Optional[str], args: CallArgs
    ) -> Union[bytes, str, None]:
        """Perform one read-only call; raise RemoteCallError on failure."""
        raise NotImplementedError

    async def chunk_meta(self, target_id: str, collection: str) -> Optional[ChunkMeta]:
        result = await self.call(
            target_id, "get_chunk_meta", [ContractArg("symbol", collection)]
        )
        return decode_chunk_meta(result)


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class CallableFetcher(RemoteFetcher):
    """Adapt plain functions (sync or async) to the fetcher interface.

    Example:
        >>> fetcher = CallableFetcher(lambda target, fn, args: f"{target}:{fn}")
    """

    def __init__(
        self,
        call: Callable[[str, Optional[str], CallArgs], Any],
        chunk_meta: Optional[Callable[[str, str], Any]] = None,
    ):
        self._call = call
        self._chunk_meta = chunk_meta

    async def call(self, target_id, function_name, args):
        return await _maybe_await(self._call(target_id, function_name, args))

    async def chunk_meta(self, target_id, collection):
        if self._chunk_meta is None:
            return await super().chunk_meta(target_id, collection)
        result = await _maybe_await(self._chunk_meta(target_id, collection))
        if isinstance(result, ChunkMeta) or result is None:
            return result
        return decode_chunk_meta(result)


def _path_argument(args: CallArgs) -> Optional[str]:
    if isinstance(args, Mapping):
        arg = args.get("path")
    else:
        arg = args[0] if args else None
    if arg is not None and arg.type == "string":
        return arg.value
    return None


def _relative_page_path(path: str) -> Optional[Path]:
    """Map a render path like ``/b/1?page=2`` onto a relative file path."""
    parts = [p for p in path.strip("/").split("/") if p]
    if any(p in (".", "..") for p in parts):
        return None
    if not parts:
        parts = ["index"]
    parts = [re.sub(r"[^\w.-]", "_", p) for p in parts]
    return Path(*parts[:-1], f"{parts[-1]}.md")


class DirectoryFetcher(RemoteFetcher):
    """Serve a directory tree as a set of contracts.

    Layout::

        <root>/<contract>/<function>.md              whole page for a function
        <root>/<contract>/<function>/<path>.md       page for a specific path
        <root>/<contract>/chunks/<collection>/<n>.md numbered chunks

    Useful for previewing pages offline and for tests.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def _contract_dir(self, target_id: str, function_name: Optional[str]) -> Path:
        contract_dir = self.root / target_id
        if not re.fullmatch(r"[\w@.-]+", target_id) or not contract_dir.is_dir():
            raise RemoteCallError(target_id, function_name, f"Contract not found: {target_id}")
        return contract_dir

    async def _read(self, path: Path) -> bytes:
        return await anyio.to_thread.run_sync(path.read_bytes)

    async def call(self, target_id, function_name, args):
        function_name = function_name or DEFAULT_FUNCTION
        contract_dir = self._contract_dir(target_id, function_name)

        if function_name == "get_chunk":
            collection, index = args[0].value, args[1].value
            chunk_file = contract_dir / "chunks" / str(collection) / f"{int(index)}.md"
            if not chunk_file.is_file():
                return None
            return await self._read(chunk_file)

        if function_name == "get_chunk_meta":
            meta = self._scan_chunks(contract_dir / "chunks" / str(args[0].value))
            return meta.model_dump() if meta else None

        candidates = []
        path = _path_argument(args)
        if path:
            relative = _relative_page_path(path)
            if relative is not None:
                candidates.append(contract_dir / function_name / relative)
        candidates.append(contract_dir / f"{function_name}.md")

        for candidate in candidates:
            if candidate.is_file():
                logger.debug(f"Serving {target_id}:{function_name} from {candidate}")
                return await self._read(candidate)
        raise RemoteCallError(
            target_id,
            function_name,
            f"Simulation failed: {target_id} has no function {function_name}",
        )

    def _scan_chunks(self, collection_dir: Path) -> Optional[ChunkMeta]:
        if not collection_dir.is_dir():
            return None
        files = [p for p in collection_dir.glob("*.md") if p.stem.isdigit()]
        return ChunkMeta(
            count=len(files),
            total_bytes=sum(p.stat().st_size for p in files),
            version=1,
        )
