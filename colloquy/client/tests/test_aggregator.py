"""Unit tests for colloquy.client.aggregator (the per-turn response state machine)."""

import pytest

from colloquy.client import aggregator as agg
from colloquy.client import streaming
from colloquy.client.errors import CancellationError, TransportError


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def progress():
    return []


@pytest.fixture
def releases():
    return []


@pytest.fixture
def aggregator(progress, releases):
    a = agg.ResponseAggregator(on_progress=progress.append,
                               release=lambda: releases.append(True),
                               fallback_text="[filtered]")
    a.start()
    return a


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

class TestStart:
    def test_idle_then_streaming(self):
        a = agg.ResponseAggregator()
        assert a.state is agg.state_idle
        a.start()
        assert a.state is agg.state_streaming

    def test_cannot_start_twice(self, aggregator):
        with pytest.raises(RuntimeError):
            aggregator.start()

    def test_apply_before_start_raises(self):
        with pytest.raises(RuntimeError):
            agg.ResponseAggregator().apply(streaming.partial_text("x"))


class TestResolve:
    def test_deltas_then_done(self, aggregator, progress, releases):
        for delta in ["Hi", "! How", " can I help?"]:
            assert aggregator.apply(streaming.partial_text(delta)) is False
        assert aggregator.reply_so_far == "Hi! How can I help?"
        assert aggregator.apply(streaming.done("Hi! How can I help?", raw={"id": 1})) is True
        assert aggregator.state is agg.state_resolved
        assert progress == ["Hi", "! How", " can I help?"]
        assert releases == [True]
        outcome = aggregator.outcome()
        assert outcome.text == "Hi! How can I help?"
        assert outcome.raw == {"id": 1}
        assert outcome.interrupted is False

    def test_interrupted_uses_partial_text(self, aggregator):
        aggregator.apply(streaming.interrupted("Sure, here", raw=None))
        outcome = aggregator.outcome()
        assert outcome.text == "Sure, here"
        assert outcome.interrupted is True

    def test_interrupted_without_text_uses_fallback(self, aggregator):
        aggregator.apply(streaming.interrupted(""))
        assert aggregator.outcome().text == "[filtered]"


class TestReject:
    def test_failed_event(self, aggregator, releases):
        error = TransportError("connection lost", retryable=True)
        aggregator.apply(streaming.failed(error))
        assert aggregator.state is agg.state_rejected
        assert releases == [True]
        with pytest.raises(TransportError) as excinfo:
            aggregator.outcome()
        assert excinfo.value is error

    def test_fail_directly(self, aggregator):
        aggregator.fail(TransportError("timeout"))
        assert aggregator.finished
        with pytest.raises(TransportError):
            aggregator.outcome()

    def test_cancel_while_streaming(self, aggregator, releases):
        aggregator.apply(streaming.partial_text("Hi"))
        aggregator.cancel()
        assert releases == [True]
        with pytest.raises(CancellationError):
            aggregator.outcome()

    def test_cancel_while_idle(self):
        a = agg.ResponseAggregator()
        a.cancel()
        with pytest.raises(CancellationError):
            a.outcome()


class TestTerminalStatesAbsorb:
    def test_cancel_after_resolve_is_noop(self, aggregator, releases):
        aggregator.apply(streaming.done("Hi"))
        aggregator.cancel()
        assert aggregator.state is agg.state_resolved
        assert aggregator.outcome().text == "Hi"
        assert releases == [True]

    def test_events_after_resolve_ignored(self, aggregator, progress):
        aggregator.apply(streaming.done("Hi"))
        assert aggregator.apply(streaming.partial_text("late")) is True
        assert aggregator.apply(streaming.failed(TransportError("late"))) is True
        assert progress == []
        assert aggregator.outcome().text == "Hi"

    def test_release_exactly_once(self, aggregator, releases):
        aggregator.fail(TransportError("first"))
        aggregator.fail(TransportError("second"))
        aggregator.cancel()
        assert releases == [True]
        with pytest.raises(TransportError, match="first"):
            aggregator.outcome()

    def test_outcome_before_settling_raises(self, aggregator):
        with pytest.raises(RuntimeError):
            aggregator.outcome()
