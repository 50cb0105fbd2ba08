"""Speech-token chunking, vocoding and delivery to the waveform sink.

The sink call is synchronous: a chunk is vocoded only after the previous sink
call has returned, so a slow sink throttles generation and a `False` return
stops it. Once the sink has asked to stop, nothing else is delivered, not even
a terminal chunk.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional

import numpy as np

from .backend import ExecutionContext, Vocoder
from .client_utils import log
from .errors import SynthesisFailure
from .io_types import SpeechTokenBuffer, WaveformChunk
from .session import SessionContext
from .wav_utils import write_wav


class WaveformSink(ABC):
    """Receives waveform chunks and decides whether generation continues.

    `samples` is only valid for the duration of the call; copy what you keep.
    """

    @abstractmethod
    def on_chunk(self, samples: np.ndarray, sample_count: int, is_terminal: bool) -> bool:
        ...


class CallbackWaveformSink(WaveformSink):
    def __init__(self, fn: Callable[[np.ndarray, int, bool], bool]):
        self._fn = fn

    def on_chunk(self, samples: np.ndarray, sample_count: int, is_terminal: bool) -> bool:
        return bool(self._fn(samples, sample_count, is_terminal))


class CollectingWaveformSink(WaveformSink):
    """Keeps every chunk; optionally writes a wav when the terminal chunk arrives."""

    def __init__(self, out_path: str | Path | None = None, sample_rate: int = 24000):
        self.out_path = out_path
        self.sample_rate = sample_rate
        self.chunks: list[np.ndarray] = []
        self.terminal_seen = False

    def on_chunk(self, samples: np.ndarray, sample_count: int, is_terminal: bool) -> bool:
        self.chunks.append(np.array(samples[:sample_count], dtype=np.float32, copy=True))
        if is_terminal:
            self.terminal_seen = True
            if self.out_path is not None:
                wav = self.waveform()
                if wav.size == 0:
                    log("warning", "No waveform data, skip save.")
                else:
                    write_wav(self.out_path, wav, self.sample_rate)
                    log("info", f"Waveform saved to: {self.out_path}")
        return True

    def waveform(self) -> np.ndarray:
        if not self.chunks:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(self.chunks)


class ChunkStreamer:
    """Buffers speech tokens, vocodes fixed-size chunks and delivers them in order."""

    def __init__(
        self,
        vocoder: Vocoder,
        sink: Optional[WaveformSink],
        ctx: ExecutionContext,
        chunk_size: int,
        session: SessionContext,
    ):
        self.vocoder = vocoder
        self.sink = sink
        self.ctx = ctx
        self.session = session
        self.buffer = SpeechTokenBuffer(chunk_size)
        self.delivered = 0
        self.cancelled = False
        self.finished = False

    def push(self, token: int) -> bool:
        """Queue one speech token. Returns False once the sink has cancelled."""
        if self.cancelled:
            return False
        if self.finished:
            raise RuntimeError("streamer already finished")
        self.buffer.append(token)
        for tokens in self.buffer.ready():
            if not self._deliver(tokens, is_terminal=False):
                return False
        return True

    def finish(self) -> None:
        """Deliver whatever is buffered as the terminal chunk."""
        if self.cancelled or self.finished:
            return
        self.finished = True
        self._deliver(self.buffer.drain(), is_terminal=True)

    def _deliver(self, tokens: list[int], is_terminal: bool) -> bool:
        index = self.delivered
        try:
            with self.session.time_audio():
                samples = self.vocoder.synthesize(tokens, self.ctx) if tokens else np.zeros(0, dtype=np.float32)
            samples = np.ascontiguousarray(samples, dtype=np.float32).reshape(-1)
        except Exception as e:
            raise SynthesisFailure(f"vocoder failed on chunk {index}: {e}", self.delivered, cause=e) from e

        chunk = WaveformChunk(samples=samples, is_terminal=is_terminal, index=index)
        keep_going = True
        if self.sink is not None:
            try:
                keep_going = self.sink.on_chunk(chunk.samples, chunk.sample_count, chunk.is_terminal)
            except Exception as e:
                raise SynthesisFailure(f"waveform sink failed on chunk {index}: {e}", self.delivered, cause=e) from e

        self.delivered += 1
        self.session.chunks_delivered = self.delivered
        self.session.samples_delivered += chunk.sample_count
        log("debug", f"[Stream] chunk {index}: {len(tokens)} tokens -> {chunk.sample_count} samples{' (last)' if is_terminal else ''}")

        if not keep_going and not is_terminal:
            self.cancelled = True
            log("info", f"[Stream] sink requested stop after chunk {index}")
            return False
        return True
