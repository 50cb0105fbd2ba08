from __future__ import annotations

import threading
import time
from typing import Optional

from .backend import TalkerModel, TalkerStream
from .client_utils import log
from .config import Speaker
from .errors import SynthesisFailure
from .io_types import GenerationTrace, StopReason, TraceEntry
from .sampling import Sampler
from .session import SessionContext
from .streaming import ChunkStreamer

__all__ = ["Speaker", "Talker"]

# How long a caught-up talker sleeps on the trace before re-checking cancellation.
_WAIT_SLICE_S = 0.05


class Talker:
    """Speech-token loop driven by the text trace.

    Speech step k is conditioned on text position k. That position is read
    through `GenerationTrace.wait_for`, so the talker suspends while the
    decoder has not committed it yet and never sees an uncommitted entry. Once
    the trace is closed and exhausted, the remaining steps run without text
    conditioning until the speech end token or the token bound.
    """

    def __init__(self, model: TalkerModel, sampler: Sampler, max_new_tokens: Optional[int] = None):
        self.model = model
        self.sampler = sampler
        self.max_new_tokens = model.default_max_new_tokens if max_new_tokens is None else max_new_tokens
        if self.max_new_tokens < 1:
            raise ValueError("max_new_tokens must be >= 1")
        self.stop_reason: Optional[StopReason] = None
        # Text position consumed by each emitted speech token (None: text exhausted).
        self.consumed_positions: list[Optional[int]] = []

    def _next_text(self, trace: GenerationTrace, position: int, cancel: threading.Event) -> Optional[TraceEntry]:
        while True:
            entry = trace.wait_for(position, timeout=_WAIT_SLICE_S)
            if entry is not None or trace.closed or cancel.is_set():
                # A close can race the timeout; look once more.
                return entry if entry is not None else trace.wait_for(position, timeout=0)

    def run(
        self,
        stream: TalkerStream,
        trace: GenerationTrace,
        streamer: ChunkStreamer,
        session: SessionContext,
        cancel: Optional[threading.Event] = None,
    ) -> StopReason:
        cancel = cancel or threading.Event()
        eos = self.model.speech_eos_token_ids

        # Nothing may be voiced before the first text token exists.
        first = self._next_text(trace, 0, cancel)
        if first is None:
            self.stop_reason = StopReason.CANCELLED if cancel.is_set() else StopReason.EOS
            log("warning", "[Talker] no text tokens to voice")
            return self.stop_reason

        t0 = time.perf_counter()
        prev: Optional[int] = None
        position = 0
        text_done = False
        entry: Optional[TraceEntry] = first
        self.stop_reason = StopReason.MAX_TOKENS

        while len(self.consumed_positions) < self.max_new_tokens:
            if cancel.is_set():
                self.stop_reason = StopReason.CANCELLED
                break
            if position > 0 and not text_done:
                entry = self._next_text(trace, position, cancel)
                if entry is None:
                    if cancel.is_set():
                        self.stop_reason = StopReason.CANCELLED
                        break
                    text_done = True

            try:
                out = stream.step(prev, None if text_done else entry)
                token = self.sampler(out.logits)
            except Exception as e:
                self.stop_reason = StopReason.FAILED
                raise SynthesisFailure(
                    f"talker step {len(self.consumed_positions)} failed: {e}", streamer.delivered, cause=e
                ) from e

            if token in eos:
                self.stop_reason = StopReason.EOS
                break

            try:
                stream.commit(token)
            except Exception as e:
                self.stop_reason = StopReason.FAILED
                raise SynthesisFailure(
                    f"talker commit {len(self.consumed_positions)} failed: {e}", streamer.delivered, cause=e
                ) from e

            self.consumed_positions.append(None if text_done else position)
            session.talker_seq_len = len(self.consumed_positions)
            try:
                if not streamer.push(token):
                    self.stop_reason = StopReason.CANCELLED
                    break
            except SynthesisFailure:
                self.stop_reason = StopReason.FAILED
                raise
            prev = token
            position += 1

        if self.stop_reason is not StopReason.CANCELLED:
            try:
                streamer.finish()
            except SynthesisFailure:
                self.stop_reason = StopReason.FAILED
                raise

        elapsed = time.perf_counter() - t0
        log(
            "debug",
            f"[Talker] stopped ({self.stop_reason.value}) after {len(self.consumed_positions)} speech tokens "
            f"in {elapsed:.2f}s",
        )
        return self.stop_reason
