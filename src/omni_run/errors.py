"""Request outcomes that are surfaced to the caller.

All four are terminal for the request; nothing in the scheduler retries them.
Cancellation through the waveform sink is not an error and has no class here.
"""

from __future__ import annotations

from typing import Any, Optional


class OmniRunError(Exception):
    """Base class for every failure raised by the generation pipeline."""


class InvalidPromptError(OmniRunError):
    """The request input was empty or malformed. Nothing was generated."""


class InvalidConfigError(OmniRunError):
    """A known configuration key carried a value that cannot be used."""

    def __init__(self, key: str, value: Any, reason: str):
        self.key = key
        self.value = value
        self.reason = reason
        super().__init__(f"invalid value for {key!r}: {value!r} ({reason})")


class DecodeFailure(OmniRunError):
    """Text decoding stopped abnormally.

    `trace` holds every token committed before the failure. When raised by the
    scheduler, `result` carries the partial response (text and any audio that
    was voiced from the partial trace).
    """

    def __init__(self, message: str, trace=None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.trace = trace
        self.cause = cause
        self.result = None

    @property
    def tokens(self) -> list[int]:
        return [] if self.trace is None else self.trace.tokens


class SynthesisFailure(OmniRunError):
    """The talker or the vocoder failed. Audio already delivered stands.

    When the text decoder had failed first, `decode_failure` holds that
    DecodeFailure.
    """

    def __init__(self, message: str, chunks_delivered: int = 0, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.chunks_delivered = chunks_delivered
        self.cause = cause
        self.result = None
        self.decode_failure: Optional[DecodeFailure] = None
