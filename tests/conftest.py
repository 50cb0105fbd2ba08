from __future__ import annotations

import time
from typing import Optional, Sequence

import numpy as np
import pytest
import torch

from omni_run.backend import (
    AudioFrontend,
    ExecutionContext,
    StepOutput,
    TalkerModel,
    TalkerStream,
    ThinkerModel,
    ThinkerStream,
    Vocoder,
)
from omni_run.config import AppConfig
from omni_run.io_types import AudioInput, ConditioningBlock, TraceEntry
from omni_run.scheduler import DualStreamScheduler

HIDDEN = 8
VOCAB = 128
EOS = 0
SAMPLES_PER_TOKEN = 10


def one_hot(token: int, vocab: int = VOCAB) -> torch.Tensor:
    logits = torch.full((vocab,), -1e4)
    logits[token] = 1e4
    return logits


class FakeThinkerStream(ThinkerStream):
    def __init__(self, model: "FakeThinker"):
        self.model = model
        self.steps = 0
        self.closed = False

    def _emit(self, index: int) -> StepOutput:
        script = self.model.script
        token = script[index] if index < len(script) else EOS
        self.model.produced_at[index] = time.perf_counter()
        if self.model.step_delay:
            time.sleep(self.model.step_delay)
        logits = torch.full((VOCAB,), float("nan")) if index == self.model.nan_at else one_hot(token)
        return StepOutput(logits=logits, hidden=torch.full((HIDDEN,), float(index)))

    def prefill(self, embeds: torch.Tensor) -> StepOutput:
        self.model.prefill_rows = int(embeds.shape[0])
        if self.model.fail_at == 0:
            raise RuntimeError("prefill exploded")
        return self._emit(0)

    def step(self, token: int) -> StepOutput:
        self.steps += 1
        if self.model.fail_at is not None and self.steps >= self.model.fail_at:
            raise RuntimeError(f"step {self.steps} exploded")
        return self._emit(self.steps)

    def close(self) -> None:
        self.closed = True


class FakeThinker(ThinkerModel):
    """Emits `script` (ids in 1..VOCAB-1) and then EOS."""

    def __init__(
        self,
        script: Sequence[int],
        fail_at: Optional[int] = None,
        step_delay: float = 0.0,
        nan_at: Optional[int] = None,
    ):
        self.script = list(script)
        self.fail_at = fail_at
        self.nan_at = nan_at
        self.step_delay = step_delay
        self.opened = 0
        self.prefill_rows = 0
        self.produced_at: dict[int, float] = {}

    @property
    def eos_token_ids(self) -> frozenset[int]:
        return frozenset({EOS})

    def tokenize(self, text: str) -> list[int]:
        return [1 + len(word) % (VOCAB - 1) for word in text.split()]

    def detokenize(self, ids: Sequence[int]) -> str:
        return " ".join(f"w{i}" for i in ids)

    def embed_tokens(self, ids: Sequence[int], ctx: ExecutionContext) -> torch.Tensor:
        return torch.zeros(len(ids), HIDDEN)

    def open(self, ctx: ExecutionContext) -> ThinkerStream:
        self.opened += 1
        return FakeThinkerStream(self)


class FakeTalkerStream(TalkerStream):
    def __init__(self, model: "FakeTalker", speaker: str):
        self.model = model
        self.speaker = speaker
        self.tail_left = model.tail
        self.steps = 0
        self.closed = False

    def step(self, speech_token: Optional[int], text: Optional[TraceEntry]) -> StepOutput:
        self.steps += 1
        if self.model.fail_at is not None and self.steps >= self.model.fail_at:
            raise RuntimeError(f"talker step {self.steps} exploded")
        if text is not None:
            self.model.received.append((text.token, time.perf_counter()))
            token = text.token
        elif self.tail_left > 0:
            self.tail_left -= 1
            token = 1
        else:
            token = EOS
        return StepOutput(logits=one_hot(token), hidden=torch.zeros(HIDDEN))

    def close(self) -> None:
        self.closed = True


class FakeTalker(TalkerModel):
    """One speech token per text token, then `tail` tokens without text, then EOS."""

    def __init__(self, tail: int = 0, fail_at: Optional[int] = None, max_tokens: int = 4096):
        self.tail = tail
        self.fail_at = fail_at
        self.max_tokens = max_tokens
        self.opened: list[str] = []
        self.received: list[tuple[int, float]] = []

    @property
    def speech_eos_token_ids(self) -> frozenset[int]:
        return frozenset({EOS})

    @property
    def default_max_new_tokens(self) -> int:
        return self.max_tokens

    def open(self, ctx: ExecutionContext, speaker: str) -> TalkerStream:
        self.opened.append(speaker)
        return FakeTalkerStream(self, speaker)


class FakeVocoder(Vocoder):
    def __init__(self, fail_on_call: Optional[int] = None):
        self.fail_on_call = fail_on_call
        self.calls: list[list[int]] = []
        self.scratch_dirs: list = []

    def synthesize(self, tokens: Sequence[int], ctx: ExecutionContext) -> np.ndarray:
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise RuntimeError("vocoder exploded")
        self.calls.append(list(tokens))
        if ctx.scratch_dir is not None:
            self.scratch_dirs.append((ctx.scratch_dir, ctx.scratch_dir.is_dir()))
        return np.full(len(tokens) * SAMPLES_PER_TOKEN, 0.1, dtype=np.float32)


class FakeFrontend(AudioFrontend):
    def __init__(self, rows: int = 3, error: Optional[Exception] = None):
        self.rows = rows
        self.error = error
        self.calls = 0

    def encode(self, audio: AudioInput, ctx: ExecutionContext) -> ConditioningBlock:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return ConditioningBlock(embeddings=torch.ones(self.rows, HIDDEN), duration_s=audio.duration_s)


class RecordingSink:
    """Waveform sink that records every call and can stop after a given chunk."""

    def __init__(self, stop_after: Optional[int] = None):
        self.stop_after = stop_after
        self.chunks: list[tuple[int, bool]] = []

    def on_chunk(self, samples: np.ndarray, sample_count: int, is_terminal: bool) -> bool:
        self.chunks.append((sample_count, is_terminal))
        if self.stop_after is not None and len(self.chunks) >= self.stop_after:
            return False
        return True

    @property
    def terminal_flags(self) -> list[bool]:
        return [t for _, t in self.chunks]


def make_audio(seconds: float = 5.0, sample_rate: int = 16000) -> AudioInput:
    return AudioInput(samples=np.zeros(int(seconds * sample_rate), dtype=np.float32), sample_rate=sample_rate)


def make_scheduler(thinker=None, talker=None, vocoder=None, frontend=None, generation=None) -> DualStreamScheduler:
    base = {"talker_temperature": 0.0}
    base.update(generation or {})
    return DualStreamScheduler(
        frontend or FakeFrontend(),
        thinker or FakeThinker(range(1, 41)),
        talker or FakeTalker(),
        vocoder or FakeVocoder(),
        app_config=AppConfig(generation=base),
    )


@pytest.fixture
def ctx() -> ExecutionContext:
    return ExecutionContext()


@pytest.fixture(params=[False, True], ids=["sequential", "pipelined"])
def async_mode(request) -> bool:
    return request.param
