"""Exception classes and inline markers for stitchdown."""

from typing import Optional

CYCLE_MARKER = "<!-- cycle detected -->"


def include_error_marker(reason: str) -> str:
    """Inline marker substituted for an include whose fetch failed."""
    return f"<!-- include error: {reason} -->"


class RemoteCallError(Exception):
    """A remote read-only call failed (transport error, failed simulation, missing result).

    This is the only failure the resolution pipeline recovers from. Anything else a
    fetcher raises is treated as a programming error and propagates unchanged.
    """

    def __init__(
        self,
        target_id: str,
        function_name: Optional[str],
        reason: str,
        original_error: Optional[Exception] = None,
    ):
        self.target_id = target_id
        self.function_name = function_name
        self.reason = reason
        self.original_error = original_error
        super().__init__(reason)

    def __str__(self):
        return self.reason

    def __repr__(self):
        return (
            f"RemoteCallError({self.target_id!r}, {self.function_name!r}, "
            f"{self.reason!r})"
        )


class IncludeCycleError(Exception):
    """An include refers to a key that is already being resolved further up the chain."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Include cycle detected at {key}")
