from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Union

try:
    import tomllib  # Python 3.11+
except ImportError:  # pragma: no cover
    import tomli as tomllib  # type: ignore

from .client_utils import log
from .errors import InvalidConfigError


def _env(key: str, default):
    v = os.getenv(key)
    return default if v is None or v == "" else v


class Speaker(str, Enum):
    """Voice profiles the talker can be conditioned on."""

    CHELSIE = "Chelsie"
    ETHAN = "Ethan"
    AIDEN = "Aiden"

    @classmethod
    def parse(cls, name: Any) -> "Speaker":
        if isinstance(name, Speaker):
            return name
        if not isinstance(name, str):
            raise InvalidConfigError("talker_speaker", name, "expected a speaker name")
        wanted = name.strip().lower()
        for speaker in cls:
            if speaker.value.lower() == wanted:
                return speaker
        names = ", ".join(s.value for s in cls)
        raise InvalidConfigError("talker_speaker", name, f"unknown speaker, expected one of: {names}")


@dataclass
class AudioConfig:
    """Audio formats at the process boundary."""

    # Request audio sample rate (Hz)
    sample_rate: int = 16000

    # Vocoder output sample rate (Hz)
    output_sample_rate: int = 24000

    # Mel bins fed to the audio encoder
    n_mels: int = 128

    channels: int = 1
    sample_width_bytes: int = 2  # int16


@dataclass
class ModelConfig:
    """Which Omni checkpoint to run and how to place it."""

    backend: str = "qwen"
    model_id: str = "Qwen/Qwen3-Omni-30B-A3B-Instruct"
    device_map: str = "cuda:0"
    torch_dtype: str = "bfloat16"
    attn_implementation: str | None = "flash_attention_2"

    system_prompt: str = (
        "You are a virtual human developed by the Qwen Team, Alibaba Group, "
        "capable of perceiving auditory and visual inputs, as well as generating text and speech."
    )


@dataclass
class AppConfig:
    audio: AudioConfig = field(default_factory=AudioConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    # Raw [generation] table; the base layer for per-request resolution.
    generation: dict = field(default_factory=dict)


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load config from TOML and environment variables.

    Priority: env overrides TOML, TOML overrides dataclass defaults. If path is
    None, uses ./config/default.toml relative to the repository root. A missing
    file is not an error.
    """

    if path is None:
        path = Path(__file__).resolve().parents[2] / "config" / "default.toml"
    else:
        path = Path(path)

    data: dict = {}
    if path.exists():
        data = tomllib.loads(path.read_text(encoding="utf-8"))

    audio_t = data.get("audio", {}) if isinstance(data, dict) else {}
    model_t = data.get("model", {}) if isinstance(data, dict) else {}
    gen_t = data.get("generation", {}) if isinstance(data, dict) else {}

    def_audio = AudioConfig()
    def_model = ModelConfig()

    audio = AudioConfig(
        sample_rate=int(_env("OMNI_SAMPLE_RATE", audio_t.get("sample_rate", def_audio.sample_rate))),
        output_sample_rate=int(_env("OMNI_OUTPUT_SAMPLE_RATE", audio_t.get("output_sample_rate", def_audio.output_sample_rate))),
        n_mels=int(_env("OMNI_N_MELS", audio_t.get("n_mels", def_audio.n_mels))),
        channels=int(_env("OMNI_CHANNELS", audio_t.get("channels", def_audio.channels))),
        sample_width_bytes=int(_env("OMNI_SAMPLE_WIDTH_BYTES", audio_t.get("sample_width_bytes", def_audio.sample_width_bytes))),
    )

    attn_default = def_model.attn_implementation if def_model.attn_implementation else ""

    model = ModelConfig(
        backend=str(_env("OMNI_BACKEND", model_t.get("backend", def_model.backend))),
        model_id=str(_env("OMNI_MODEL_ID", model_t.get("model_id", def_model.model_id))),
        device_map=str(_env("OMNI_DEVICE_MAP", model_t.get("device_map", def_model.device_map))),
        torch_dtype=str(_env("OMNI_TORCH_DTYPE", model_t.get("torch_dtype", def_model.torch_dtype))),
        attn_implementation=str(_env("OMNI_ATTN_IMPL", model_t.get("attn_implementation", attn_default))) or None,
        system_prompt=str(_env("OMNI_SYSTEM_PROMPT", model_t.get("system_prompt", def_model.system_prompt))),
    )

    generation = dict(gen_t) if isinstance(gen_t, dict) else {}
    # OMNI_GENERATION holds a JSON object layered over the [generation] table.
    env_gen = _env("OMNI_GENERATION", "")
    if env_gen:
        generation.update(_as_mapping(env_gen))

    return AppConfig(audio=audio, model=model, generation=generation)


# -----------------------------------------------------------------------------
# Per-request generation settings
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class GenerationSettings:
    """Effective options for one request. Built only by `resolve_generation_config`."""

    tmp_path: Optional[str] = None
    async_mode: bool = False
    max_new_tokens: int = 512
    talker_max_new_tokens: Optional[int] = None  # None: model default
    talker_speaker: Speaker = Speaker.CHELSIE
    talker_chunk_size: int = 25
    temperature: float = 0.0
    top_k: int = 0
    top_p: float = 1.0
    talker_temperature: float = 0.9
    talker_top_k: int = 40
    talker_top_p: float = 0.8
    seed: Optional[int] = None
    system_prompt: Optional[str] = None
    unknown_keys: tuple = ()

    def as_dict(self) -> dict:
        out = asdict(self)
        out["async"] = out.pop("async_mode")
        out["talker_speaker"] = self.talker_speaker.value
        out.pop("unknown_keys")
        return out


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("true", "1", "yes", "on"):
            return True
        if v in ("false", "0", "no", "off"):
            return False
    raise InvalidConfigError(key, value, "expected a boolean")


def _as_int(key: str, value: Any, minimum: int | None = None) -> int:
    if isinstance(value, bool):
        raise InvalidConfigError(key, value, "expected an integer")
    if isinstance(value, int):
        out = value
    elif isinstance(value, str) and value.strip().lstrip("-").isdigit():
        out = int(value.strip())
    else:
        raise InvalidConfigError(key, value, "expected an integer")
    if minimum is not None and out < minimum:
        raise InvalidConfigError(key, value, f"must be >= {minimum}")
    return out


def _as_float(key: str, value: Any, low: float, high: float | None = None, low_open: bool = False) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise InvalidConfigError(key, value, "expected a number")
    try:
        out = float(value)
    except ValueError:
        raise InvalidConfigError(key, value, "expected a number") from None
    if out != out:  # NaN
        raise InvalidConfigError(key, value, "expected a number")
    if out < low or (low_open and out == low) or (high is not None and out > high):
        bound = f"({low}, {high}]" if low_open else f"[{low}, {high if high is not None else 'inf'}]"
        raise InvalidConfigError(key, value, f"must be in {bound}")
    return out


def _as_optional_int(key: str, value: Any, minimum: int | None = None) -> Optional[int]:
    return None if value is None else _as_int(key, value, minimum)


def _as_optional_str(key: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidConfigError(key, value, "expected a string")
    return value


# key -> (settings field, parser)
_PARSERS = {
    "tmp_path": ("tmp_path", lambda k, v: _as_optional_str(k, v) or None),
    "async": ("async_mode", _as_bool),
    "max_new_tokens": ("max_new_tokens", lambda k, v: _as_int(k, v, minimum=1)),
    "talker_max_new_tokens": ("talker_max_new_tokens", lambda k, v: _as_optional_int(k, v, minimum=1)),
    "talker_speaker": ("talker_speaker", lambda k, v: Speaker.parse(v)),
    "talker_chunk_size": ("talker_chunk_size", lambda k, v: _as_int(k, v, minimum=1)),
    "temperature": ("temperature", lambda k, v: _as_float(k, v, 0.0)),
    "top_k": ("top_k", lambda k, v: _as_int(k, v, minimum=0)),
    "top_p": ("top_p", lambda k, v: _as_float(k, v, 0.0, 1.0, low_open=True)),
    "talker_temperature": ("talker_temperature", lambda k, v: _as_float(k, v, 0.0)),
    "talker_top_k": ("talker_top_k", lambda k, v: _as_int(k, v, minimum=0)),
    "talker_top_p": ("talker_top_p", lambda k, v: _as_float(k, v, 0.0, 1.0, low_open=True)),
    "seed": ("seed", lambda k, v: _as_optional_int(k, v)),
    "system_prompt": ("system_prompt", _as_optional_str),
}

RECOGNIZED_KEYS = frozenset(_PARSERS)

ConfigLayer = Union[Mapping[str, Any], str, None]


def _as_mapping(layer: ConfigLayer) -> Mapping[str, Any]:
    if layer is None:
        return {}
    if isinstance(layer, str):
        try:
            parsed = json.loads(layer) if layer.strip() else {}
        except json.JSONDecodeError as e:
            raise InvalidConfigError("<json>", layer, f"not valid JSON: {e.msg}") from None
        if not isinstance(parsed, dict):
            raise InvalidConfigError("<json>", layer, "expected a JSON object")
        return parsed
    if not isinstance(layer, Mapping):
        raise InvalidConfigError("<layer>", layer, "expected a mapping or a JSON object string")
    return layer


def resolve_generation_config(*layers: ConfigLayer) -> GenerationSettings:
    """Merge flat option maps into effective settings.

    Later layers override earlier ones. Unknown keys are skipped and listed in
    `unknown_keys`. Every known value is validated here, so a bad speaker or
    token bound fails before any model step runs.
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        merged.update(_as_mapping(layer))

    values: dict[str, Any] = {}
    unknown = []
    for key, raw in merged.items():
        spec = _PARSERS.get(key)
        if spec is None:
            unknown.append(key)
            continue
        name, parse = spec
        values[name] = parse(key, raw)

    if unknown:
        log("debug", f"[Config] ignoring unrecognized keys: {', '.join(sorted(unknown))}")
    return GenerationSettings(unknown_keys=tuple(sorted(unknown)), **values)
