from __future__ import annotations

from typing import Callable

import numpy as np
import torch

from .backend import AudioFrontend, ExecutionContext
from .errors import InvalidPromptError
from .feature_extractor import log_mel_spectrogram
from .io_types import AudioInput, ConditioningBlock

# features [1, n_mels, T] -> embeddings [n, hidden]
MelEncoder = Callable[[torch.Tensor, ExecutionContext], torch.Tensor]


def resample_linear(samples: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    if src_rate == dst_rate or len(samples) == 0:
        return np.asarray(samples, dtype=np.float32)
    n_out = max(1, int(round(len(samples) * dst_rate / src_rate)))
    x = torch.from_numpy(np.ascontiguousarray(samples, dtype=np.float32)).view(1, 1, -1)
    y = torch.nn.functional.interpolate(x, size=n_out, mode="linear", align_corners=False)
    return y.view(-1).numpy()


class MelAudioFrontend(AudioFrontend):
    """Log-mel features followed by an audio encoder.

    The duration reported in the conditioning block is the duration of the
    request audio, before any resampling.
    """

    def __init__(self, encoder: MelEncoder, sample_rate: int = 16000, n_mels: int = 128):
        self.encoder = encoder
        self.sample_rate = sample_rate
        self.n_mels = n_mels

    def features(self, audio: AudioInput) -> torch.Tensor:
        if audio.samples is None or len(audio.samples) == 0:
            raise InvalidPromptError("audio input has no samples")
        samples = resample_linear(audio.samples, audio.sample_rate, self.sample_rate)
        feats = log_mel_spectrogram(samples, sample_rate=self.sample_rate, n_mels=self.n_mels)
        if torch.isnan(feats).any() or torch.isinf(feats).any():
            feats = torch.nan_to_num(feats, nan=0.0, posinf=0.0, neginf=0.0)
        return feats

    def encode(self, audio: AudioInput, ctx: ExecutionContext) -> ConditioningBlock:
        feats = self.features(audio)
        with ctx.compute():
            emb = self.encoder(feats, ctx)
        if emb.dim() == 3:
            emb = emb.squeeze(0)
        return ConditioningBlock(embeddings=emb, duration_s=audio.duration_s)
