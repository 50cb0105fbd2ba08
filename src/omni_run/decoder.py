from __future__ import annotations

import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Optional

import torch

from .backend import ThinkerModel, ThinkerStream
from .client_utils import get_logger, log
from .errors import DecodeFailure
from .io_types import GenerationTrace, StopReason
from .prompt import PromptSequence
from .sampling import Sampler
from .session import SessionContext


class TextTokenSink(ABC):
    """Side channel for live text. Its return value never affects decoding."""

    @abstractmethod
    def on_token(self, token: int, piece: str) -> None:
        ...

    def on_end(self) -> None:
        pass


class ConsoleTokenSink(TextTokenSink):
    def on_token(self, token: int, piece: str) -> None:
        get_logger().print_token(piece)

    def on_end(self) -> None:
        get_logger().end_line()


class CallbackTokenSink(TextTokenSink):
    def __init__(self, fn: Callable[[int, str], object]):
        self._fn = fn

    def on_token(self, token: int, piece: str) -> None:
        self._fn(token, piece)


class DecoderState(str, Enum):
    IDLE = "idle"
    PREFILLING = "prefilling"
    DECODING = "decoding"
    STOPPED = "stopped"


class TextDecoder:
    """Autoregressive text loop over one prompt.

    Runs prefill once, then samples, commits and feeds back tokens until the
    thinker emits an end-of-sequence token (not committed) or the trace holds
    `max_new_tokens` entries. The trace is closed on every exit so a talker
    waiting on it is released. Errors from the text sink are logged and never
    stop decoding.
    """

    def __init__(self, thinker: ThinkerModel, sampler: Sampler, max_new_tokens: int):
        if max_new_tokens < 1:
            raise ValueError("max_new_tokens must be >= 1")
        self.thinker = thinker
        self.sampler = sampler
        self.max_new_tokens = max_new_tokens
        self.state = DecoderState.IDLE
        self.stop_reason: Optional[StopReason] = None
        self._sink_failed = False

    def run(
        self,
        stream: ThinkerStream,
        prompt: PromptSequence,
        trace: GenerationTrace,
        session: SessionContext,
        text_sink: Optional[TextTokenSink] = None,
    ) -> StopReason:
        if self.state is not DecoderState.IDLE:
            raise RuntimeError(f"decoder already used (state={self.state.value})")

        eos = self.thinker.eos_token_ids
        try:
            self.state = DecoderState.PREFILLING
            t0 = time.perf_counter()
            try:
                out = stream.prefill(prompt.embeds)
            except Exception as e:
                raise DecodeFailure(f"prefill failed: {e}", trace, cause=e) from e
            session.prefill_us = int((time.perf_counter() - t0) * 1e6)
            session.prompt_len = prompt.token_count
            log("debug", f"[Decoder] prefill {prompt.token_count} positions in {session.prefill_us / 1e3:.1f} ms")

            self.state = DecoderState.DECODING
            t0 = time.perf_counter()
            while True:
                token = self._sample(out.logits, trace)
                if token in eos:
                    self.stop_reason = StopReason.EOS
                    break
                trace.append(token, out.hidden)
                session.gen_seq_len = len(trace)
                if text_sink is not None:
                    self._show(text_sink, token)
                if len(trace) >= self.max_new_tokens:
                    self.stop_reason = StopReason.MAX_TOKENS
                    break
                try:
                    out = stream.step(token)
                except Exception as e:
                    raise DecodeFailure(f"decode step {len(trace)} failed: {e}", trace, cause=e) from e
            session.decode_us = int((time.perf_counter() - t0) * 1e6)
        except DecodeFailure:
            self.stop_reason = StopReason.FAILED
            raise
        finally:
            self.state = DecoderState.STOPPED
            trace.close()
            if text_sink is not None:
                try:
                    text_sink.on_end()
                except Exception as e:
                    log("warning", f"[Decoder] text sink failed at end: {e}")

        log("debug", f"[Decoder] stopped ({self.stop_reason.value}) after {len(trace)} tokens")
        if len(trace) == 0:
            self.stop_reason = StopReason.FAILED
            raise DecodeFailure("decode produced no text tokens; check max_new_tokens and the prompt", trace)
        return self.stop_reason

    def _sample(self, logits: torch.Tensor, trace: GenerationTrace) -> int:
        try:
            if torch.isnan(logits).any():
                raise ValueError("thinker produced NaN logits")
            return self.sampler(logits)
        except Exception as e:
            raise DecodeFailure(f"sampling failed after {len(trace)} tokens: {e}", trace, cause=e) from e

    def _show(self, sink: TextTokenSink, token: int) -> None:
        try:
            sink.on_token(token, self.thinker.detokenize([token]))
        except Exception as e:
            if not self._sink_failed:
                log("warning", f"[Decoder] text sink failed on token {token}: {e}")
            self._sink_failed = True
