"""Collaborator contracts and the execution handle threaded through them.

The scheduler never touches model weights directly. It drives these interfaces;
`qwen_backend` implements them on top of Transformers and the tests implement
them with small fakes.
"""

from __future__ import annotations

import shutil
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterator, Optional, Sequence

import numpy as np
import torch

from .client_utils import log
from .io_types import AudioInput, ConditioningBlock, TraceEntry


@dataclass(frozen=True)
class ExecutionContext:
    """Where and how a request computes.

    One base context is built per backend; `request_scope` derives a copy
    carrying the request's private scratch directory.
    """

    device: torch.device = torch.device("cpu")
    dtype: torch.dtype = torch.float32
    scratch_dir: Optional[Path] = None
    # Request-owned in-memory state shared between stages (e.g. codec frames).
    scratch: dict = field(default_factory=dict, compare=False, hash=False)

    @contextmanager
    def compute(self) -> Iterator[None]:
        # inference_mode is thread-local: every worker enters it itself.
        with torch.inference_mode():
            yield


@contextmanager
def request_scope(base: ExecutionContext, tmp_path: Optional[str]) -> Iterator[ExecutionContext]:
    """Give one request its own scratch directory and remove it on exit.

    Without `tmp_path` no directory is created.
    """
    scratch: Optional[Path] = None
    if tmp_path:
        root = Path(tmp_path)
        root.mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix="omni-req-", dir=root))
        log("debug", f"[Scope] scratch dir {scratch}")
    try:
        yield replace(base, scratch_dir=scratch, scratch={})
    finally:
        if scratch is not None:
            shutil.rmtree(scratch, ignore_errors=True)
            log("debug", f"[Scope] released {scratch}")


@dataclass
class StepOutput:
    """One forward step: next-token logits [vocab] and last hidden state [hidden]."""

    logits: torch.Tensor
    hidden: torch.Tensor


class AudioFrontend(ABC):
    @abstractmethod
    def encode(self, audio: AudioInput, ctx: ExecutionContext) -> ConditioningBlock:
        """Turn request audio into conditioning embeddings."""
        ...


class ThinkerStream(ABC):
    """Per-request decode state (KV cache) of the text model."""

    @abstractmethod
    def prefill(self, embeds: torch.Tensor) -> StepOutput:
        """Consume the whole prompt [n, hidden] in one pass."""
        ...

    @abstractmethod
    def step(self, token: int) -> StepOutput:
        ...

    def close(self) -> None:
        pass


class ThinkerModel(ABC):
    """The text model: tokenizer, embedding table and decode streams."""

    #: Text inserted where the audio embeddings go.
    audio_placeholder: str = "<|AUDIO|>"

    @property
    @abstractmethod
    def eos_token_ids(self) -> frozenset[int]:
        ...

    @abstractmethod
    def tokenize(self, text: str) -> list[int]:
        ...

    @abstractmethod
    def detokenize(self, ids: Sequence[int]) -> str:
        ...

    @abstractmethod
    def embed_tokens(self, ids: Sequence[int], ctx: ExecutionContext) -> torch.Tensor:
        """Embedding rows [len(ids), hidden] for literal prompt tokens."""
        ...

    @abstractmethod
    def open(self, ctx: ExecutionContext) -> ThinkerStream:
        ...


class TalkerStream(ABC):
    """Per-request decode state of the speech-token model."""

    @abstractmethod
    def step(self, speech_token: Optional[int], text: Optional[TraceEntry]) -> StepOutput:
        """Advance one speech position.

        `speech_token` is the previously sampled speech token (None on the
        first step); `text` is the text trace entry aligned with this step, or
        None once the text stream is exhausted.
        """
        ...

    def commit(self, speech_token: int) -> None:
        """Called once per sampled, non-final speech token before it is vocoded."""

    def close(self) -> None:
        pass


class TalkerModel(ABC):
    @property
    @abstractmethod
    def speech_eos_token_ids(self) -> frozenset[int]:
        ...

    @property
    def default_max_new_tokens(self) -> int:
        return 4096

    @abstractmethod
    def open(self, ctx: ExecutionContext, speaker: str) -> TalkerStream:
        ...


class Vocoder(ABC):
    @abstractmethod
    def synthesize(self, tokens: Sequence[int], ctx: ExecutionContext) -> np.ndarray:
        """Speech tokens -> float32 samples [T]."""
        ...
