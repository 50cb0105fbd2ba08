"""omni_run: audio-in, text + speech-out generation runtime for Omni models.

The scheduler (`DualStreamScheduler`) couples the text decoder and the talker
and streams vocoded audio to a caller-supplied sink. Model collaborators are
pluggable; `omni_run.qwen_backend` provides the Transformers implementation.
"""

from .config import AppConfig, GenerationSettings, Speaker, load_config, resolve_generation_config
from .errors import DecodeFailure, InvalidConfigError, InvalidPromptError, OmniRunError, SynthesisFailure
from .io_types import GenerationResult, GenerationStatus
from .scheduler import DualStreamScheduler
from .session import SessionContext, real_time_factor

__all__ = [
    "AppConfig",
    "DecodeFailure",
    "DualStreamScheduler",
    "GenerationResult",
    "GenerationSettings",
    "GenerationStatus",
    "InvalidConfigError",
    "InvalidPromptError",
    "OmniRunError",
    "SessionContext",
    "Speaker",
    "SynthesisFailure",
    "load_config",
    "real_time_factor",
    "resolve_generation_config",
]
