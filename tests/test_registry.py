"""Tests for HandlerRegistry: exact and prefix patterns, lookup precedence, payload models."""

import pytest
from pydantic import BaseModel

from eventqueue.events import HandlerExecutionError, HandlerRegistry
from eventqueue.events.registry import matches


async def _noop(payload, ctx) -> None:
    return None


async def _other(payload, ctx) -> None:
    return None


class Params(BaseModel):
    name: str


class TestPatterns:
    @pytest.mark.parametrize(
        ("pattern", "event_type", "expected"),
        [
            ("image.generated", "image.generated", True),
            ("image.generated", "image.generated.v2", False),
            ("job:*", "job:generate-report", True),
            ("job:*", "jobs:generate-report", False),
            ("*", "anything.at.all", True),
        ],
    )
    def test_matches(self, pattern: str, event_type: str, expected: bool) -> None:
        assert matches(pattern, event_type) is expected

    @pytest.mark.parametrize("pattern", ["", "  ", "job:*:x", "*job"])
    def test_invalid_patterns_rejected(self, pattern: str) -> None:
        with pytest.raises(ValueError):
            HandlerRegistry().register(pattern, _noop)


class TestLookup:
    def test_exact_beats_prefix(self) -> None:
        registry = HandlerRegistry()
        registry.register("job:*", _noop)
        registry.register("job:generate-report", _other)
        assert registry.lookup("job:generate-report").handler is _other
        assert registry.lookup("job:cleanup").handler is _noop

    def test_longest_prefix_wins(self) -> None:
        registry = HandlerRegistry()
        registry.register("*", _noop)
        registry.register("job:report:*", _other)
        assert registry.lookup("job:report:daily").handler is _other
        assert registry.lookup("image.generated").handler is _noop

    def test_unknown_type_returns_none(self) -> None:
        registry = HandlerRegistry()
        registry.register("image.generated", _noop)
        assert registry.lookup("quota.exceeded") is None
        assert "quota.exceeded" not in registry
        assert "image.generated" in registry

    def test_duplicate_registration_rejected(self) -> None:
        registry = HandlerRegistry()
        registry.register("job:*", _noop)
        with pytest.raises(ValueError):
            registry.register("job:*", _other)
        assert len(registry) == 1

    def test_decorator_registers_and_returns_function(self) -> None:
        registry = HandlerRegistry()

        @registry.handler("user.registered", payload_model=Params)
        async def welcome(payload: Params, ctx) -> dict:
            return {"hello": payload.name}

        entry = registry.lookup("user.registered")
        assert entry.handler is welcome
        assert entry.payload_model is Params
        assert registry.patterns == ["user.registered"]


class TestParsePayload:
    def test_without_model_payload_is_passed_through(self) -> None:
        entry = HandlerRegistry().register("e.x", _noop)
        assert entry.parse_payload({"a": 1}) == {"a": 1}

    def test_with_model_payload_is_validated(self) -> None:
        entry = HandlerRegistry().register("e.x", _noop, Params)
        assert entry.parse_payload({"name": "n"}) == Params(name="n")
        with pytest.raises(HandlerExecutionError):
            entry.parse_payload({})
