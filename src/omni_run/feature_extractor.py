"""CPU log-mel features for the audio encoder (torch only, no HF processor).

Whisper-style front end:
  - 25ms Hann window, 10ms hop (n_fft=400 / hop=160 at 16kHz)
  - n_mels triangular filters, area-normalized
  - log10, clamp to 8 decades below the peak, rescale to roughly [-1, 1]

Output shape: [1, n_mels, T] float32 on CPU.
"""

from __future__ import annotations

from functools import lru_cache

import numpy as np
import torch


def _hz_to_mel(hz: torch.Tensor) -> torch.Tensor:
    return 2595.0 * torch.log10(1.0 + hz / 700.0)


def _mel_to_hz(mel: torch.Tensor) -> torch.Tensor:
    return 700.0 * (10.0 ** (mel / 2595.0) - 1.0)


@lru_cache(maxsize=16)
def mel_filterbank(*, sample_rate: int, n_fft: int, n_mels: int) -> torch.Tensor:
    """Filter matrix [n_mels, n_fft//2 + 1] spanning 0 .. Nyquist."""
    n_freqs = n_fft // 2 + 1
    nyquist = float(sample_rate) / 2.0

    mels = torch.linspace(0.0, _hz_to_mel(torch.tensor(nyquist)).item(), n_mels + 2)
    hz = _mel_to_hz(mels)
    bins = torch.clamp(torch.floor((n_fft + 1) * hz / float(sample_rate)).long(), 0, n_freqs - 1)

    fb = torch.zeros((n_mels, n_freqs), dtype=torch.float32)
    for i in range(n_mels):
        lo, mid, hi = (int(b) for b in bins[i : i + 3])
        mid = max(mid, lo + 1)
        hi = max(hi, mid + 1)
        if mid > lo:
            fb[i, lo:mid] = (torch.arange(lo, mid) - lo) / float(mid - lo)
        if hi > mid and mid < n_freqs:
            end = min(hi, n_freqs)
            fb[i, mid:end] = (hi - torch.arange(mid, end)) / float(hi - mid)

    fb *= (2.0 / (hz[2 : n_mels + 2] - hz[:n_mels])).unsqueeze(1)
    return fb


def log_mel_spectrogram(
    waveform: torch.Tensor | np.ndarray,
    *,
    sample_rate: int,
    n_mels: int = 128,
    n_fft: int | None = None,
    hop_length: int | None = None,
) -> torch.Tensor:
    if isinstance(waveform, np.ndarray):
        waveform = torch.from_numpy(np.ascontiguousarray(waveform, dtype=np.float32))
    waveform = waveform.float().flatten()

    # Window and hop scale with the sample rate.
    n_fft = n_fft or int(round(0.025 * sample_rate))
    hop_length = hop_length or int(round(0.010 * sample_rate))

    # Reflect padding needs more than n_fft // 2 samples.
    if waveform.numel() <= n_fft // 2:
        waveform = torch.nn.functional.pad(waveform, (0, n_fft // 2 + 1 - waveform.numel()))

    stft = torch.stft(
        waveform,
        n_fft=n_fft,
        hop_length=hop_length,
        win_length=n_fft,
        window=torch.hann_window(n_fft, periodic=True),
        center=True,
        pad_mode="reflect",
        return_complex=True,
    )
    power = stft.abs() ** 2

    mel = mel_filterbank(sample_rate=sample_rate, n_fft=n_fft, n_mels=n_mels) @ power
    log_mel = torch.log10(torch.clamp(mel, min=1e-10))
    log_mel = torch.maximum(log_mel, log_mel.max() - 8.0)
    log_mel = (log_mel + 4.0) / 4.0
    return log_mel.unsqueeze(0).to(dtype=torch.float32)
