"""Qwen3-Omni (Transformers) implementation of the model collaborators.

Thinker:  chat-template tokens + audio-tower rows -> text logits / hidden state
Talker:   codec embedding of the previous code + text_projection(thinker hidden)
          -> codebook-0 logits; the code predictor fills codebooks 1..N-1 once
          codebook 0 has been sampled (`commit`)
Code2Wav: full codec frames -> 24kHz waveform, decoded chunk by chunk with a
          few frames of left context

Models are loaded once per process (lazily, under a lock). Every per-request
object (KV caches, codec frames) lives in the stream objects or in the
request's `ExecutionContext.scratch`.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Optional, Sequence

import numpy as np
import torch

from .backend import (
    ExecutionContext,
    StepOutput,
    TalkerModel,
    TalkerStream,
    ThinkerModel,
    ThinkerStream,
    Vocoder,
)
from .client_utils import log
from .config import AppConfig, Speaker
from .frontend import MelAudioFrontend
from .io_types import TraceEntry

_FRAMES_KEY = "qwen.codec_frames"
_CONTEXT_KEY = "qwen.codec_context"

# Qwen chat special tokens (shared by Qwen2.5/Qwen3 tokenizers)
IM_END_ID = 151645
ENDOFTEXT_ID = 151643
TTS_PAD_ID = 151671


# ============================================================================
# Loading
# ============================================================================

_model_lock = threading.Lock()
_model = None
_processor = None


def _resolve_dtype(name: str):
    if not name or name == "auto":
        return "auto"
    return getattr(torch, name)


def load_qwen_model(cfg: AppConfig):
    """Load the Omni model + processor once per process."""
    global _model, _processor
    if _model is not None and _processor is not None:
        return _model, _processor

    with _model_lock:
        if _model is not None and _processor is not None:
            return _model, _processor

        # Heavy imports live here
        from transformers import Qwen3OmniMoeForConditionalGeneration, Qwen3OmniMoeProcessor

        log("info", f"[Qwen] loading {cfg.model.model_id} (device_map={cfg.model.device_map})")
        kwargs = {
            "device_map": cfg.model.device_map,
            "torch_dtype": _resolve_dtype(cfg.model.torch_dtype),
            "trust_remote_code": True,
        }
        if cfg.model.attn_implementation:
            kwargs["attn_implementation"] = cfg.model.attn_implementation
        model = Qwen3OmniMoeForConditionalGeneration.from_pretrained(cfg.model.model_id, **kwargs)
        model.eval()
        processor = Qwen3OmniMoeProcessor.from_pretrained(cfg.model.model_id, trust_remote_code=True)

        _model, _processor = model, processor
        log("info", "[Qwen] model & processor ready")
        return _model, _processor


def _mrope_positions(start: int, length: int, device) -> torch.Tensor:
    # Text-only positions: the three rotary axes share the same index.
    pos = torch.arange(start, start + length, device=device).view(1, 1, -1)
    return pos.expand(3, 1, -1)


# ============================================================================
# Audio encoder
# ============================================================================


class QwenAudioEncoder:
    """Callable for `MelAudioFrontend`: log-mel [1, n_mels, T] -> rows [n, hidden]."""

    def __init__(self, model):
        self.model = model
        self.device = model.thinker.device
        try:
            self.dtype = model.thinker.audio_tower.conv2d1.weight.dtype
        except AttributeError:
            self.dtype = model.dtype

    def __call__(self, features: torch.Tensor, ctx: ExecutionContext) -> torch.Tensor:
        feats = features.to(device=self.device, dtype=self.dtype)
        mask = torch.ones((1, feats.shape[-1]), dtype=torch.long, device=self.device)
        emb = self.model.thinker.get_audio_features(input_features=feats, feature_attention_mask=mask)
        return emb.reshape(-1, emb.shape[-1])


# ============================================================================
# Thinker
# ============================================================================


class QwenThinkerStream(ThinkerStream):
    def __init__(self, owner: "QwenThinker"):
        self.owner = owner
        self.past = None
        self.position = 0

    def _forward(self, **kwargs) -> StepOutput:
        thinker = self.owner.model.thinker
        out = thinker(past_key_values=self.past, use_cache=True, output_hidden_states=True, **kwargs)
        self.past = out.past_key_values
        return StepOutput(logits=out.logits[0, -1, :], hidden=out.hidden_states[-1][0, -1, :])

    def prefill(self, embeds: torch.Tensor) -> StepOutput:
        device = self.owner.device
        n = embeds.shape[0]
        out = self._forward(
            inputs_embeds=embeds.unsqueeze(0).to(device),
            position_ids=_mrope_positions(0, n, device),
        )
        self.position = n
        return out

    def step(self, token: int) -> StepOutput:
        device = self.owner.device
        out = self._forward(
            input_ids=torch.tensor([[token]], device=device),
            position_ids=_mrope_positions(self.position, 1, device),
        )
        self.position += 1
        return out

    def close(self) -> None:
        self.past = None


class QwenThinker(ThinkerModel):
    def __init__(self, model, processor):
        self.model = model
        self.tokenizer = processor.tokenizer
        self.device = model.thinker.device
        self._eos = frozenset({IM_END_ID, ENDOFTEXT_ID, getattr(self.tokenizer, "eos_token_id", IM_END_ID)})

    @property
    def eos_token_ids(self) -> frozenset[int]:
        return self._eos

    def tokenize(self, text: str) -> list[int]:
        if not text:
            return []
        return list(self.tokenizer(text, add_special_tokens=False).input_ids)

    def detokenize(self, ids: Sequence[int]) -> str:
        return self.tokenizer.decode(list(ids), skip_special_tokens=True)

    def embed_tokens(self, ids: Sequence[int], ctx: ExecutionContext) -> torch.Tensor:
        table = self.model.thinker.get_input_embeddings()
        return table(torch.tensor(list(ids), device=self.device))

    def open(self, ctx: ExecutionContext) -> ThinkerStream:
        return QwenThinkerStream(self)


# ============================================================================
# Talker
# ============================================================================


class QwenTalkerStream(TalkerStream):
    def __init__(self, owner: "QwenTalker", ctx: ExecutionContext, speaker_code: Optional[int]):
        self.owner = owner
        self.ctx = ctx
        self.past = None
        self.position = 0
        self.last_hidden: Optional[torch.Tensor] = None
        self.frames: deque = ctx.scratch.setdefault(_FRAMES_KEY, deque())
        if speaker_code is not None:
            self._prefill_codes([speaker_code])

    def _talker_forward(self, embeds: torch.Tensor) -> torch.Tensor:
        talker = self.owner.model.talker
        out = talker.model(
            inputs_embeds=embeds,
            past_key_values=self.past,
            position_ids=_mrope_positions(self.position, embeds.shape[1], self.owner.device),
            use_cache=True,
        )
        self.past = out.past_key_values
        self.position += embeds.shape[1]
        return out.last_hidden_state[:, -1, :]

    def _prefill_codes(self, codes: list[int]) -> None:
        ids = torch.tensor([codes], device=self.owner.device)
        self._talker_forward(self.owner.codec_embed(ids))

    def step(self, speech_token: Optional[int], text: Optional[TraceEntry]) -> StepOutput:
        owner = self.owner
        prev = owner.codec_bos_id if speech_token is None else speech_token
        codec = owner.codec_embed(torch.tensor([[prev]], device=owner.device))
        cond = owner.text_condition(text)
        hidden = self._talker_forward(codec + cond)
        self.last_hidden = hidden
        logits = owner.model.talker.codec_head(hidden)
        return StepOutput(logits=logits[0], hidden=hidden[0])

    def commit(self, speech_token: int) -> None:
        owner = self.owner
        layer0 = torch.tensor([[speech_token]], device=owner.device)
        needed = owner.num_quantizers - 1
        if needed <= 0 or self.last_hidden is None:
            self.frames.append(layer0.view(-1))
            return
        predictor_input = torch.cat((self.last_hidden.unsqueeze(1), owner.codec_embed(layer0)), dim=1)
        residual = owner.model.talker.code_predictor.generate(
            inputs_embeds=predictor_input,
            max_new_tokens=needed,
            do_sample=False,
        )
        residual = residual[:, -needed:]
        self.frames.append(torch.cat([layer0, residual], dim=1).view(-1))

    def close(self) -> None:
        self.past = None
        self.last_hidden = None


class QwenTalker(TalkerModel):
    def __init__(self, model, thinker: QwenThinker):
        self.model = model
        self.thinker = thinker
        self.device = model.talker.device
        tc = model.config.talker_config
        self.num_quantizers = int(getattr(tc, "num_quantizers", getattr(tc, "num_code_groups", 16)))
        self.codec_bos_id = int(getattr(tc, "codec_bos_id", 0))
        eos = getattr(tc, "codec_eos_token_id", getattr(tc, "codec_eos_id", None))
        self._eos = frozenset({int(eos)}) if eos is not None else frozenset()
        self._speaker_ids = {str(k).lower(): int(v) for k, v in (getattr(tc, "speaker_id", None) or {}).items()}
        self._pad_condition: Optional[torch.Tensor] = None

    @property
    def speech_eos_token_ids(self) -> frozenset[int]:
        return self._eos

    @property
    def default_max_new_tokens(self) -> int:
        return 4096

    def codec_embed(self, ids: torch.Tensor) -> torch.Tensor:
        return self.model.talker.model.get_input_embeddings()(ids)

    def text_condition(self, text: Optional[TraceEntry]) -> torch.Tensor:
        projection = self.model.talker.text_projection
        if text is not None:
            hidden = text.hidden.to(self.device).view(1, 1, -1)
            return projection(hidden)
        if self._pad_condition is None:
            pad = self.thinker.embed_tokens([TTS_PAD_ID], ExecutionContext()).to(self.device)
            self._pad_condition = projection(pad.view(1, 1, -1))
        return self._pad_condition

    def open(self, ctx: ExecutionContext, speaker: str) -> TalkerStream:
        code = self._speaker_ids.get(Speaker.parse(speaker).value.lower())
        if code is None and self._speaker_ids:
            log("warning", f"[Qwen] checkpoint has no codec id for speaker {speaker!r}; using the default voice")
        return QwenTalkerStream(self, ctx, code)


# ============================================================================
# Code2Wav
# ============================================================================


class QwenVocoder(Vocoder):
    """Decodes the frames the talker committed, in order.

    The previous `left_context` frames are decoded along with each chunk and
    their samples dropped, which keeps chunk boundaries continuous.
    """

    def __init__(self, model, left_context: int = 4):
        self.model = model
        self.device = model.code2wav.device
        self.left_context = left_context

    def synthesize(self, tokens: Sequence[int], ctx: ExecutionContext) -> np.ndarray:
        frames: deque = ctx.scratch.setdefault(_FRAMES_KEY, deque())
        if len(frames) < len(tokens):
            raise RuntimeError(f"{len(tokens)} tokens to vocode but only {len(frames)} codec frames committed")
        chunk = [frames.popleft() for _ in tokens]
        for frame, token in zip(chunk, tokens):
            if int(frame[0]) != int(token):
                raise RuntimeError("codec frames out of step with speech tokens")

        context: list = ctx.scratch.setdefault(_CONTEXT_KEY, [])
        codes = torch.stack(context + chunk, dim=1).unsqueeze(0).to(self.device)  # [1, Q, n]
        wav = self.model.code2wav(codes).reshape(-1).float().cpu().numpy()

        if context:
            per_frame = wav.shape[0] // codes.shape[-1]
            wav = wav[len(context) * per_frame :]
        ctx.scratch[_CONTEXT_KEY] = (context + chunk)[-self.left_context :] if self.left_context > 0 else []
        return wav.astype(np.float32)


# ============================================================================
# Wiring
# ============================================================================


def build_qwen_scheduler(cfg: AppConfig):
    """Load the checkpoint named in `cfg` and return a ready scheduler."""
    from .scheduler import DualStreamScheduler

    model, processor = load_qwen_model(cfg)
    thinker = QwenThinker(model, processor)
    frontend = MelAudioFrontend(QwenAudioEncoder(model), sample_rate=cfg.audio.sample_rate, n_mels=cfg.audio.n_mels)
    base_ctx = ExecutionContext(device=model.thinker.device, dtype=model.dtype)
    return DualStreamScheduler(
        frontend=frontend,
        thinker=thinker,
        talker=QwenTalker(model, thinker),
        vocoder=QwenVocoder(model),
        app_config=cfg,
        base_ctx=base_ctx,
    )
