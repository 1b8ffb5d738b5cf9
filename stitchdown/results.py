"""Result models returned by the resolution pipeline."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ResolveResult(BaseModel):
    """Outcome of one include-resolution pass."""

    content: str
    cycle_detected: bool = False
    resolved_keys: List[str] = Field(default_factory=list)


class ChunkResult(BaseModel):
    collection: str
    index: int
    content: str


class ProgressiveResult(BaseModel):
    """A document with its progressive chunks loaded in place."""

    content: str
    loaded_chunks: int = 0
    total_chunks: int = 0
    chunks: List[ChunkResult] = Field(default_factory=list)
    errors: List[Exception] = Field(default_factory=list)
    aborted: bool = False

    model_config = ConfigDict(arbitrary_types_allowed=True)


class ContinuationError(BaseModel):
    path: str
    message: str
    error: Optional[Exception] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


class RenderContinuationResult(BaseModel):
    content: str
    continuations_loaded: int = 0
    errors: List[ContinuationError] = Field(default_factory=list)
    limit_reached: bool = False
