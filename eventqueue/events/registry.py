"""Handler registry: event-type pattern -> async handler (+ optional payload model)."""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from eventqueue.events.errors import HandlerExecutionError

logger = logging.getLogger(__name__)

Handler = Callable[[Any, Any], Awaitable[Any]]

WILDCARD = "*"


def validate_pattern(pattern: str) -> str:
    """Return the pattern if it is exact, a trailing-'*' prefix, or '*'. Raise ValueError otherwise."""
    if not isinstance(pattern, str) or not pattern.strip():
        raise ValueError("Pattern must be a non-empty string")
    if WILDCARD in pattern[:-1]:
        raise ValueError(f"Wildcard is only allowed at the end of a pattern: {pattern!r}")
    return pattern


def matches(pattern: str, event_type: str) -> bool:
    """Exact match, or namespace prefix match for patterns ending in '*' (e.g. 'job:*')."""
    if pattern.endswith(WILDCARD):
        return event_type.startswith(pattern[:-1])
    return pattern == event_type


@dataclass(frozen=True)
class HandlerEntry:
    """One registered handler."""

    pattern: str
    handler: Handler
    payload_model: type[BaseModel] | None = None

    def parse_payload(self, payload: dict) -> Any:
        """Payload as the handler sees it: model instance when a model is registered."""
        if self.payload_model is None:
            return payload
        try:
            return self.payload_model.model_validate(payload)
        except PydanticValidationError as e:
            raise HandlerExecutionError(
                f"Payload does not match {self.payload_model.__name__}: {e}"
            ) from e


class HandlerRegistry:
    """Maps event-type patterns to handlers. Populated once at process start."""

    def __init__(self) -> None:
        self._exact: dict[str, HandlerEntry] = {}
        self._prefixes: dict[str, HandlerEntry] = {}

    def register(
        self,
        pattern: str,
        handler: Handler,
        payload_model: type[BaseModel] | None = None,
    ) -> HandlerEntry:
        """Register handler for pattern. Raises ValueError on a duplicate pattern."""
        validate_pattern(pattern)
        if not callable(handler):
            raise ValueError(f"Handler for {pattern!r} is not callable")
        if pattern in self._exact or pattern in self._prefixes:
            raise ValueError(f"Handler already registered for {pattern!r}")
        entry = HandlerEntry(pattern=pattern, handler=handler, payload_model=payload_model)
        if pattern.endswith(WILDCARD):
            self._prefixes[pattern] = entry
        else:
            self._exact[pattern] = entry
        logger.debug("Registered handler for %s", pattern)
        return entry

    def handler(
        self, pattern: str, payload_model: type[BaseModel] | None = None
    ) -> Callable[[Handler], Handler]:
        """Decorator form of register()."""

        def decorator(fn: Handler) -> Handler:
            self.register(pattern, fn, payload_model)
            return fn

        return decorator

    def lookup(self, event_type: str) -> HandlerEntry | None:
        """Exact match first, then the longest matching prefix pattern."""
        entry = self._exact.get(event_type)
        if entry is not None:
            return entry
        best: HandlerEntry | None = None
        for pattern, candidate in self._prefixes.items():
            if matches(pattern, event_type) and (
                best is None or len(pattern) > len(best.pattern)
            ):
                best = candidate
        return best

    @property
    def patterns(self) -> list[str]:
        return [*self._exact, *self._prefixes]

    def __contains__(self, event_type: str) -> bool:
        return self.lookup(event_type) is not None

    def __len__(self) -> int:
        return len(self._exact) + len(self._prefixes)
