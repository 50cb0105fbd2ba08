"""Prompt construction for audio-in requests.

`build_audio_prompt` is the pure, model-free step: it validates the request and
fixes the instruction. `assemble_prompt` renders the chat template with the
thinker's tokenizer and splices the audio conditioning rows in place of the
audio placeholder.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np
import torch

from .backend import ExecutionContext, ThinkerModel
from .errors import InvalidPromptError
from .io_types import AudioInput, ConditioningBlock

DEFAULT_INSTRUCTION = "Please summarize the content of this audio."

AUDIO_BOS = "<|audio_bos|>"
AUDIO_EOS = "<|audio_eos|>"

AudioReference = Union[str, Path, np.ndarray, AudioInput]


def _is_empty_reference(ref) -> bool:
    if ref is None:
        return True
    if isinstance(ref, AudioInput):
        return ref.samples is None or len(ref.samples) == 0
    if isinstance(ref, np.ndarray):
        return ref.size == 0
    if isinstance(ref, Path):
        return str(ref).strip() in ("", ".")
    if isinstance(ref, str):
        return ref.strip() == ""
    return False


@dataclass(frozen=True)
class AudioPrompt:
    audio_reference: AudioReference
    instruction: str

    def audio_label(self) -> str:
        ref = self.audio_reference
        if isinstance(ref, (str, Path)):
            return str(ref)
        n = len(ref.samples) if isinstance(ref, AudioInput) else int(ref.size)
        return f"<pcm:{n}>"

    def render(self) -> str:
        """Human-readable form: the audio block followed by the instruction."""
        return f"<audio>{self.audio_label()}</audio>{self.instruction}"


def build_audio_prompt(audio_reference: AudioReference, instruction: Optional[str] = None) -> AudioPrompt:
    if _is_empty_reference(audio_reference):
        raise InvalidPromptError("audio reference is empty")
    if not isinstance(audio_reference, (str, Path, np.ndarray, AudioInput)):
        raise InvalidPromptError(f"unsupported audio reference type: {type(audio_reference).__name__}")
    text = instruction.strip() if isinstance(instruction, str) else ""
    return AudioPrompt(audio_reference=audio_reference, instruction=text or DEFAULT_INSTRUCTION)


def render_chat_template(prompt: AudioPrompt, placeholder: str, system_prompt: Optional[str] = None) -> str:
    parts = []
    if system_prompt:
        parts.append(f"<|im_start|>system\n{system_prompt}<|im_end|>\n")
    parts.append(f"<|im_start|>user\n{AUDIO_BOS}{placeholder}{AUDIO_EOS}{prompt.instruction}<|im_end|>\n")
    parts.append("<|im_start|>assistant\n")
    return "".join(parts)


@dataclass
class PromptSequence:
    """Model-ready prompt: embedding rows plus bookkeeping."""

    embeds: torch.Tensor  # [n, hidden]
    literal_tokens: int
    audio_rows: int

    @property
    def token_count(self) -> int:
        return self.literal_tokens + self.audio_rows


def assemble_prompt(
    prompt: AudioPrompt,
    conditioning: ConditioningBlock,
    thinker: ThinkerModel,
    ctx: ExecutionContext,
    system_prompt: Optional[str] = None,
) -> PromptSequence:
    placeholder = thinker.audio_placeholder
    text = render_chat_template(prompt, placeholder, system_prompt)
    before, _, after = text.partition(placeholder)

    head_ids = thinker.tokenize(before)
    tail_ids = thinker.tokenize(after)

    rows = []
    if head_ids:
        rows.append(thinker.embed_tokens(head_ids, ctx))
    audio = conditioning.embeddings
    ref = rows[0] if rows else audio
    rows.append(audio.to(device=ref.device, dtype=ref.dtype))
    if tail_ids:
        rows.append(thinker.embed_tokens(tail_ids, ctx).to(device=ref.device, dtype=ref.dtype))

    embeds = torch.cat(rows, dim=0)
    return PromptSequence(embeds=embeds, literal_tokens=len(head_ids) + len(tail_ids), audio_rows=len(conditioning))
