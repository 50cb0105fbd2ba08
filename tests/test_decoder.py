from __future__ import annotations

import pytest
import torch

from conftest import HIDDEN, FakeThinker
from omni_run.decoder import CallbackTokenSink, DecoderState, TextDecoder
from omni_run.errors import DecodeFailure
from omni_run.io_types import GenerationTrace, StopReason
from omni_run.prompt import PromptSequence
from omni_run.sampling import GreedySampler, Sampler, TopKTopPSampler
from omni_run.session import SessionContext


def _prompt(rows: int = 6) -> PromptSequence:
    return PromptSequence(embeds=torch.zeros(rows, HIDDEN), literal_tokens=rows - 2, audio_rows=2)


def _decode(thinker, ctx, max_new_tokens=512, sink=None):
    decoder = TextDecoder(thinker, GreedySampler(), max_new_tokens)
    trace = GenerationTrace(capacity=max_new_tokens)
    session = SessionContext()
    stream = thinker.open(ctx)
    reason = decoder.run(stream, _prompt(), trace, session, sink)
    return decoder, reason, trace, session


def test_decodes_until_eos(ctx):
    decoder, reason, trace, session = _decode(FakeThinker([7, 8, 9]), ctx)
    assert reason is StopReason.EOS
    assert trace.tokens == [7, 8, 9]
    assert trace.closed
    assert decoder.state is DecoderState.STOPPED
    assert session.prompt_len == 6
    assert session.gen_seq_len == 3


def test_hidden_states_are_recorded(ctx):
    _, _, trace, _ = _decode(FakeThinker([7, 8]), ctx)
    assert torch.equal(trace[1].hidden, torch.full((HIDDEN,), 1.0))


def test_stops_at_bound(ctx):
    _, reason, trace, session = _decode(FakeThinker(range(1, 50)), ctx, max_new_tokens=5)
    assert reason is StopReason.MAX_TOKENS
    assert len(trace) == 5
    assert session.gen_seq_len == 5


def test_text_sink_does_not_gate(ctx):
    seen = []
    ended = []

    class Sink(CallbackTokenSink):
        def on_end(self):
            ended.append(True)

    sink = Sink(lambda tok, piece: seen.append((tok, piece)) or False)
    _, _, trace, _ = _decode(FakeThinker([4, 5, 6]), ctx, sink=sink)

    assert trace.tokens == [4, 5, 6]
    assert seen == [(4, "w4"), (5, "w5"), (6, "w6")]
    assert ended == [True]


def test_step_failure_keeps_partial_trace(ctx):
    thinker = FakeThinker(range(1, 20), fail_at=3)
    decoder = TextDecoder(thinker, GreedySampler(), 100)
    trace = GenerationTrace()
    with pytest.raises(DecodeFailure) as info:
        decoder.run(thinker.open(ctx), _prompt(), trace, SessionContext())
    assert info.value.tokens == [1, 2, 3]
    assert info.value.trace is trace
    assert trace.closed
    assert decoder.stop_reason is StopReason.FAILED


def test_prefill_failure(ctx):
    thinker = FakeThinker([1], fail_at=0)
    trace = GenerationTrace()
    with pytest.raises(DecodeFailure):
        TextDecoder(thinker, GreedySampler(), 10).run(thinker.open(ctx), _prompt(), trace, SessionContext())
    assert trace.closed
    assert len(trace) == 0


def test_no_tokens_is_a_failure(ctx):
    with pytest.raises(DecodeFailure):
        _decode(FakeThinker([]), ctx)


def test_decoder_is_single_use(ctx):
    thinker = FakeThinker([1])
    decoder = TextDecoder(thinker, GreedySampler(), 4)
    decoder.run(thinker.open(ctx), _prompt(), GenerationTrace(), SessionContext())
    with pytest.raises(RuntimeError):
        decoder.run(thinker.open(ctx), _prompt(), GenerationTrace(), SessionContext())


@pytest.mark.parametrize("sampler", [GreedySampler(), TopKTopPSampler(0.7, seed=0)])
def test_nan_logits_are_a_decode_failure(ctx, sampler):
    thinker = FakeThinker(range(1, 20), nan_at=3)
    decoder = TextDecoder(thinker, sampler, 100)
    trace = GenerationTrace()
    with pytest.raises(DecodeFailure) as info:
        decoder.run(thinker.open(ctx), _prompt(), trace, SessionContext())
    assert info.value.tokens == [1, 2, 3]
    assert trace.closed
    assert decoder.stop_reason is StopReason.FAILED


def test_sampler_error_keeps_partial_trace(ctx):
    class Flaky(Sampler):
        def __init__(self):
            self.calls = 0

        def __call__(self, logits):
            self.calls += 1
            if self.calls > 2:
                raise RuntimeError("invalid multinomial distribution")
            return int(torch.argmax(logits))

    thinker = FakeThinker(range(1, 20))
    decoder = TextDecoder(thinker, Flaky(), 100)
    with pytest.raises(DecodeFailure) as info:
        decoder.run(thinker.open(ctx), _prompt(), GenerationTrace(), SessionContext())
    assert info.value.tokens == [1, 2]
    assert isinstance(info.value.cause, RuntimeError)


def test_text_sink_errors_do_not_stop_decoding(ctx):
    class Broken(CallbackTokenSink):
        def on_end(self):
            raise BrokenPipeError("display gone")

    def explode(tok, piece):
        raise UnicodeEncodeError("ascii", piece, 0, 1, "no")

    _, reason, trace, _ = _decode(FakeThinker([4, 5, 6]), ctx, sink=Broken(explode))
    assert reason is StopReason.EOS
    assert trace.tokens == [4, 5, 6]
