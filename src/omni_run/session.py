from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from typing import Iterator, Optional


@dataclass
class SessionContext:
    """Per-request counters, readable after `respond` returns.

    prompt_len:
        Prompt positions consumed by prefill (literal tokens + audio rows).
    gen_seq_len:
        Text tokens decoded so far.
    audio_input_s:
        Duration of the request audio.
    audio_us:
        Wall time spent in the audio front end and the vocoder path.
    """

    prompt_len: int = 0
    gen_seq_len: int = 0
    audio_input_s: float = 0.0
    audio_us: int = 0

    prefill_us: int = 0
    decode_us: int = 0
    talker_seq_len: int = 0
    chunks_delivered: int = 0
    samples_delivered: int = 0

    # The talker worker and the decoder both write audio_us in pipelined mode.
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def reset(self) -> None:
        with self._lock:
            self.prompt_len = 0
            self.gen_seq_len = 0
            self.audio_input_s = 0.0
            self.audio_us = 0
            self.prefill_us = 0
            self.decode_us = 0
            self.talker_seq_len = 0
            self.chunks_delivered = 0
            self.samples_delivered = 0

    def add_audio_us(self, us: int) -> None:
        with self._lock:
            self.audio_us += int(us)

    @contextmanager
    def time_audio(self) -> Iterator[None]:
        """Add the wall time of the block to `audio_us`."""
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.add_audio_us((time.perf_counter() - t0) * 1e6)

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith("_")}


def real_time_factor(ctx: SessionContext) -> Optional[float]:
    """Audio processing time over input duration; None without input audio."""
    if ctx.audio_input_s <= 0.0:
        return None
    return ctx.audio_us / 1e6 / ctx.audio_input_s


def format_stats(ctx: SessionContext) -> str:
    lines = [
        "===== Stats =====",
        f"Prompt tokens : {ctx.prompt_len}",
        f"Decode tokens : {ctx.gen_seq_len}",
        f"Speech tokens : {ctx.talker_seq_len}",
        f"Audio chunks  : {ctx.chunks_delivered}",
        f"Audio input s : {ctx.audio_input_s:.3f}",
        f"Audio proc  s : {ctx.audio_us / 1e6:.3f}",
    ]
    rtf = real_time_factor(ctx)
    if rtf is not None:
        lines.append(f"Audio RTF     : {rtf:.3f}")
    lines.append("=================")
    return "\n".join(lines)
