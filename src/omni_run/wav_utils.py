"""WAV encode/decode at the process boundary (CLI and server only).

Uses Python's built-in `wave` module, so only uncompressed 16-bit PCM is
supported.
"""

from __future__ import annotations

import io
import wave
from pathlib import Path

import numpy as np

from .io_types import AudioInput


def pcm16le_to_float_mono(pcm16le: bytes, channels: int) -> np.ndarray:
    """PCM16LE bytes -> mono float32 in [-1, 1]. Multi-channel input is averaged."""
    if channels <= 0:
        raise ValueError("channels must be positive")
    a = np.frombuffer(pcm16le, dtype="<i2").astype(np.float32) / 32768.0
    if channels == 1:
        return a
    n = len(a) // channels
    return a[: n * channels].reshape(n, channels).mean(axis=1)


def float_to_pcm16le(samples: np.ndarray) -> bytes:
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()


def wav_bytes_to_audio_input(wav_bytes: bytes) -> AudioInput:
    try:
        with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
            return _read(wf)
    except (wave.Error, EOFError) as e:
        raise ValueError(f"not a PCM WAV: {e}") from e


def read_wav_mono(path: str | Path) -> AudioInput:
    try:
        with wave.open(str(path), "rb") as wf:
            return _read(wf)
    except (wave.Error, EOFError) as e:
        raise ValueError(f"{path}: not a PCM WAV: {e}") from e


def _read(wf) -> AudioInput:
    channels = int(wf.getnchannels())
    sample_rate = int(wf.getframerate())
    sample_width = int(wf.getsampwidth())
    frames = wf.readframes(int(wf.getnframes()))
    if sample_width != 2:
        raise ValueError(f"Only 16-bit PCM WAV is supported (got sample_width={sample_width}).")
    return AudioInput(samples=pcm16le_to_float_mono(frames, channels), sample_rate=sample_rate)


def pcm16_mono_to_wav_bytes(pcm16: bytes, sample_rate: int) -> bytes:
    """Wrap raw PCM16LE mono bytes into a WAV container."""
    bio = io.BytesIO()
    with wave.open(bio, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)  # 16-bit
        wf.setframerate(sample_rate)
        wf.writeframes(pcm16)
    return bio.getvalue()


def write_wav(path: str | Path, samples: np.ndarray, sample_rate: int) -> None:
    Path(path).write_bytes(pcm16_mono_to_wav_bytes(float_to_pcm16le(samples), sample_rate))
