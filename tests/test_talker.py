from __future__ import annotations

import threading

import pytest
import torch

from conftest import FakeTalker, FakeVocoder, RecordingSink
from omni_run.errors import SynthesisFailure
from omni_run.io_types import GenerationTrace, StopReason
from omni_run.sampling import GreedySampler
from omni_run.session import SessionContext
from omni_run.streaming import ChunkStreamer
from omni_run.talker import Talker


def _trace(tokens, closed=True) -> GenerationTrace:
    trace = GenerationTrace()
    for tok in tokens:
        trace.append(tok, torch.zeros(8))
    if closed:
        trace.close()
    return trace


def _run(model, trace, ctx, sink=None, max_new_tokens=None, cancel=None, chunk_size=4):
    session = SessionContext()
    streamer = ChunkStreamer(FakeVocoder(), sink or RecordingSink(), ctx, chunk_size, session)
    talker = Talker(model, GreedySampler(), max_new_tokens)
    reason = talker.run(model.open(ctx, "Chelsie"), trace, streamer, session, cancel)
    return talker, reason, session


def test_stops_on_speech_eos(ctx):
    sink = RecordingSink()
    talker, reason, session = _run(FakeTalker(tail=2), _trace([3, 4, 5]), ctx, sink)

    assert reason is StopReason.EOS
    assert talker.consumed_positions == [0, 1, 2, None, None]
    assert session.talker_seq_len == 5
    assert sink.terminal_flags == [False, True]


def test_stops_at_token_bound(ctx):
    sink = RecordingSink()
    talker, reason, _ = _run(FakeTalker(), _trace(range(1, 21)), ctx, sink, max_new_tokens=6)
    assert reason is StopReason.MAX_TOKENS
    assert talker.consumed_positions == list(range(6))
    assert sink.terminal_flags[-1] is True


def test_model_default_bound(ctx):
    talker, reason, _ = _run(FakeTalker(tail=100, max_tokens=10), _trace([1]), ctx)
    assert reason is StopReason.MAX_TOKENS
    assert len(talker.consumed_positions) == 10


def test_empty_closed_trace_produces_nothing(ctx):
    sink = RecordingSink()
    talker, reason, _ = _run(FakeTalker(), _trace([]), ctx, sink)
    assert reason is StopReason.EOS
    assert talker.consumed_positions == []
    assert sink.chunks == []


def test_cancel_event_stops_before_first_step(ctx):
    cancel = threading.Event()
    cancel.set()
    sink = RecordingSink()
    talker, reason, _ = _run(FakeTalker(), _trace([1, 2]), ctx, sink, cancel=cancel)
    assert reason is StopReason.CANCELLED
    assert talker.consumed_positions == []
    assert sink.chunks == []


def test_sink_cancel_ends_talker(ctx):
    sink = RecordingSink(stop_after=1)
    talker, reason, _ = _run(FakeTalker(), _trace(range(1, 30)), ctx, sink, chunk_size=2)
    assert reason is StopReason.CANCELLED
    assert len(talker.consumed_positions) == 3
    assert sink.terminal_flags == [False]


def test_follows_a_growing_trace(ctx):
    trace = GenerationTrace()
    model = FakeTalker()
    result = {}

    def consume():
        result["talker"], result["reason"], _ = _run(model, trace, ctx)

    worker = threading.Thread(target=consume)
    worker.start()
    for tok in range(1, 9):
        trace.append(tok, torch.zeros(8))
    trace.close()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert result["reason"] is StopReason.EOS
    assert result["talker"].consumed_positions == list(range(8))
    assert [tok for tok, _ in model.received] == list(range(1, 9))


def test_step_failure_is_synthesis_failure(ctx):
    session = SessionContext()
    model = FakeTalker(fail_at=2)
    streamer = ChunkStreamer(FakeVocoder(), RecordingSink(), ctx, 4, session)
    talker = Talker(model, GreedySampler())
    with pytest.raises(SynthesisFailure):
        talker.run(model.open(ctx, "Ethan"), _trace([1, 2, 3]), streamer, session)
    assert talker.stop_reason is StopReason.FAILED


def test_rejects_bad_bound():
    with pytest.raises(ValueError):
        Talker(FakeTalker(), GreedySampler(), 0)
