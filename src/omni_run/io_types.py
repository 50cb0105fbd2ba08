from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterator, Optional

import numpy as np
import torch

if TYPE_CHECKING:
    from .session import SessionContext


@dataclass
class AudioInput:
    """Decoded request audio.

    samples:
        Mono float32 waveform in [-1, 1], shape [T].
    sample_rate:
        Sample rate of `samples` (Hz).
    timestamp:
        Optional wall-clock timestamp (for lag measurement / debugging).
    """

    samples: np.ndarray
    sample_rate: int
    timestamp: float = 0.0

    @property
    def duration_s(self) -> float:
        return float(len(self.samples)) / float(self.sample_rate)


@dataclass(frozen=True)
class ConditioningBlock:
    """Audio encoder output spliced into the prompt in place of literal tokens.

    embeddings:
        [n, hidden] tensor; n >= 1. Never modified after construction.
    duration_s:
        Duration of the audio it was computed from.
    """

    embeddings: torch.Tensor
    duration_s: float

    def __post_init__(self) -> None:
        if self.embeddings.dim() != 2 or self.embeddings.shape[0] == 0:
            raise ValueError(f"conditioning embeddings must be [n>0, hidden], got {tuple(self.embeddings.shape)}")

    def __len__(self) -> int:
        return int(self.embeddings.shape[0])

    @property
    def hidden_size(self) -> int:
        return int(self.embeddings.shape[1])


@dataclass(frozen=True)
class TraceEntry:
    token: int
    hidden: torch.Tensor


class GenerationTrace:
    """Append-only record of decoded text tokens and their hidden states.

    One thread appends (the text decoder), one thread reads (the talker).
    Readers only ever see committed entries; `wait_for` suspends on a
    condition variable until the requested position exists or the trace is
    closed.
    """

    def __init__(self, capacity: Optional[int] = None):
        self.capacity = capacity
        self._entries: list[TraceEntry] = []
        self._closed = False
        self._cond = threading.Condition()

    def append(self, token: int, hidden: torch.Tensor) -> int:
        """Commit one entry and return its position."""
        with self._cond:
            if self._closed:
                raise RuntimeError("trace is closed")
            if self.capacity is not None and len(self._entries) >= self.capacity:
                raise RuntimeError(f"trace is full ({self.capacity} entries)")
            self._entries.append(TraceEntry(int(token), hidden))
            self._cond.notify_all()
            return len(self._entries) - 1

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def wait_for(self, position: int, timeout: Optional[float] = None) -> Optional[TraceEntry]:
        """Block until `position` is committed.

        Returns None once the trace is closed without reaching it. With a
        timeout, also returns None when it expires; check `closed` to tell the
        two apart.
        """
        with self._cond:
            self._cond.wait_for(lambda: position < len(self._entries) or self._closed, timeout=timeout)
            if position < len(self._entries):
                return self._entries[position]
            return None

    @property
    def tokens(self) -> list[int]:
        with self._cond:
            return [e.token for e in self._entries]

    def __len__(self) -> int:
        with self._cond:
            return len(self._entries)

    def __getitem__(self, position: int) -> TraceEntry:
        with self._cond:
            return self._entries[position]

    def __iter__(self) -> Iterator[TraceEntry]:
        with self._cond:
            snapshot = list(self._entries)
        return iter(snapshot)


class SpeechTokenBuffer:
    """Speech tokens waiting to be vocoded.

    A chunk is released only when more than `chunk_size` tokens are pending,
    so whatever remains when the talker stops (at least one token, if any were
    produced) can be flagged as the terminal chunk. Released chunks are not
    kept.
    """

    def __init__(self, chunk_size: int):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self.chunk_size = chunk_size
        self._pending: list[int] = []
        self.total = 0

    def append(self, token: int) -> None:
        self._pending.append(int(token))
        self.total += 1

    def ready(self) -> Iterator[list[int]]:
        while len(self._pending) > self.chunk_size:
            chunk = self._pending[: self.chunk_size]
            del self._pending[: self.chunk_size]
            yield chunk

    def drain(self) -> list[int]:
        out = self._pending
        self._pending = []
        return out

    def __len__(self) -> int:
        return len(self._pending)


@dataclass
class WaveformChunk:
    samples: np.ndarray
    is_terminal: bool
    index: int

    @property
    def sample_count(self) -> int:
        return int(self.samples.shape[0])


class GenerationStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StopReason(str, Enum):
    EOS = "eos"
    MAX_TOKENS = "max_tokens"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class GenerationResult:
    """What the caller gets back from one request."""

    text: str
    trace: GenerationTrace
    status: GenerationStatus = GenerationStatus.COMPLETED
    text_stop: Optional[StopReason] = None
    speech_stop: Optional[StopReason] = None
    speech_tokens: int = 0
    chunks_delivered: int = 0
    unknown_config_keys: tuple = field(default_factory=tuple)
    session: Optional["SessionContext"] = None

    @property
    def partial(self) -> bool:
        return self.status is GenerationStatus.CANCELLED

    @property
    def text_tokens(self) -> list[int]:
        return self.trace.tokens
