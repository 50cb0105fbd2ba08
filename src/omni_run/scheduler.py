"""Dual-stream generation: text decode, then (or alongside) speech.

Data flow for one request:

  audio reference -> AudioFrontend -> ConditioningBlock
                  -> assemble_prompt -> TextDecoder -> GenerationTrace
                  -> Talker -> ChunkStreamer -> Vocoder -> WaveformSink

With `async=false` the talker starts after the decoder has closed the trace.
With `async=true` the talker runs on a worker thread and follows the trace as
it grows; it suspends on the trace whenever it catches up with the decoder.
Either way `respond` returns only after both stages have finished.
"""

from __future__ import annotations

import asyncio
import functools
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from .backend import AudioFrontend, ExecutionContext, TalkerModel, ThinkerModel, Vocoder, request_scope
from .client_utils import log
from .config import AppConfig, ConfigLayer, GenerationSettings, resolve_generation_config
from .decoder import TextDecoder, TextTokenSink
from .errors import DecodeFailure, InvalidPromptError, OmniRunError, SynthesisFailure
from .io_types import AudioInput, GenerationResult, GenerationStatus, GenerationTrace, StopReason
from .prompt import AudioPrompt, assemble_prompt, build_audio_prompt
from .sampling import make_sampler
from .session import SessionContext, real_time_factor
from .streaming import ChunkStreamer, WaveformSink
from .talker import Talker
from .wav_utils import read_wav_mono

AudioLoader = Callable[[Path], AudioInput]


class _Request:
    """Everything one `respond` call owns."""

    def __init__(self, settings: GenerationSettings, session: SessionContext, cancel: threading.Event):
        self.settings = settings
        self.session = session
        self.cancel = cancel
        self.trace = GenerationTrace(capacity=settings.max_new_tokens)
        self.decoder: Optional[TextDecoder] = None
        self.talker: Optional[Talker] = None
        self.streamer: Optional[ChunkStreamer] = None


class DualStreamScheduler:
    """Serves one request at a time over a shared set of models.

    Concurrent `respond` calls queue on an internal lock, so `context` and
    `cancel` always address the request that is running.
    """

    def __init__(
        self,
        frontend: AudioFrontend,
        thinker: ThinkerModel,
        talker: TalkerModel,
        vocoder: Vocoder,
        app_config: Optional[AppConfig] = None,
        base_ctx: Optional[ExecutionContext] = None,
        audio_loader: AudioLoader = read_wav_mono,
    ):
        self.frontend = frontend
        self.thinker = thinker
        self.talker = talker
        self.vocoder = vocoder
        self.app_config = app_config or AppConfig()
        self.base_ctx = base_ctx or ExecutionContext()
        self.audio_loader = audio_loader

        # Counters of the in-flight or most recent request.
        self.context = SessionContext()
        self._cancel = threading.Event()
        self._busy = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(self, overrides: ConfigLayer = None) -> GenerationSettings:
        return resolve_generation_config(self.app_config.generation, overrides)

    def cancel(self) -> None:
        """Stop the in-flight request at its next token or chunk boundary."""
        self._cancel.set()

    def respond(
        self,
        audio_reference,
        instruction: Optional[str] = None,
        *,
        text_sink: Optional[TextTokenSink] = None,
        waveform_sink: Optional[WaveformSink] = None,
        overrides: ConfigLayer = None,
    ) -> GenerationResult:
        settings = self.resolve(overrides)
        prompt = build_audio_prompt(audio_reference, instruction)

        with self._busy:
            session = SessionContext()
            self.context = session
            self._cancel = cancel = threading.Event()
            req = _Request(settings, session, cancel)

            t0 = time.perf_counter()
            mode = "pipelined" if settings.async_mode else "sequential"
            log("info", f"[Scheduler] request start ({mode}, speaker={settings.talker_speaker.value})")

            with request_scope(self.base_ctx, settings.tmp_path) as ctx:
                audio = self._load_audio(prompt)
                try:
                    with session.time_audio():
                        conditioning = self.frontend.encode(audio, ctx)
                except OmniRunError:
                    raise
                except Exception as e:
                    raise DecodeFailure(f"audio encoding failed: {e}", req.trace, cause=e) from e
                session.audio_input_s = conditioning.duration_s

                system_prompt = settings.system_prompt
                if system_prompt is None:
                    system_prompt = self.app_config.model.system_prompt
                with ctx.compute():
                    sequence = assemble_prompt(prompt, conditioning, self.thinker, ctx, system_prompt)

                req.decoder = TextDecoder(
                    self.thinker,
                    make_sampler(settings.temperature, settings.top_k, settings.top_p, settings.seed),
                    settings.max_new_tokens,
                )
                req.talker = Talker(
                    self.talker,
                    make_sampler(settings.talker_temperature, settings.talker_top_k, settings.talker_top_p, settings.seed),
                    settings.talker_max_new_tokens,
                )
                req.streamer = ChunkStreamer(self.vocoder, waveform_sink, ctx, settings.talker_chunk_size, session)

                if settings.async_mode:
                    result = self._run_pipelined(req, ctx, sequence, text_sink)
                else:
                    result = self._run_sequential(req, ctx, sequence, text_sink)

            rtf = real_time_factor(session)
            log(
                "info",
                f"[Scheduler] request {result.status.value}: {session.gen_seq_len} text tokens, "
                f"{session.talker_seq_len} speech tokens, {session.chunks_delivered} chunks in "
                f"{time.perf_counter() - t0:.2f}s" + (f" (audio RTF {rtf:.3f})" if rtf is not None else ""),
            )
            return result

    async def respond_async(self, audio_reference, instruction: Optional[str] = None, **kwargs) -> GenerationResult:
        """Run `respond` in the default executor so the event loop stays free."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self.respond, audio_reference, instruction, **kwargs))

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _load_audio(self, prompt: AudioPrompt) -> AudioInput:
        ref = prompt.audio_reference
        if isinstance(ref, AudioInput):
            audio = ref
        elif isinstance(ref, (str, Path)):
            try:
                audio = self.audio_loader(Path(ref))
            except (OSError, ValueError, EOFError) as e:
                raise InvalidPromptError(f"cannot read audio {ref}: {e}") from e
        else:
            audio = AudioInput(samples=ref, sample_rate=self.app_config.audio.sample_rate)
        if len(audio.samples) == 0:
            raise InvalidPromptError("audio input has no samples")
        return audio

    def _decode(self, req: _Request, ctx: ExecutionContext, sequence, text_sink) -> Optional[DecodeFailure]:
        try:
            stream = self.thinker.open(ctx)
        except Exception as e:
            req.trace.close()
            log("error", f"[Scheduler] thinker could not start: {e}")
            return DecodeFailure(f"thinker could not start: {e}", req.trace, cause=e)
        try:
            with ctx.compute():
                req.decoder.run(stream, sequence, req.trace, req.session, text_sink)
        except DecodeFailure as e:
            log("error", f"[Scheduler] {e}")
            return e
        finally:
            stream.close()
        return None

    def _speak(self, req: _Request, ctx: ExecutionContext) -> None:
        try:
            stream = self.talker.open(ctx, req.settings.talker_speaker.value)
        except Exception as e:
            raise SynthesisFailure(f"talker could not start: {e}", 0, cause=e) from e
        try:
            with ctx.compute():
                req.talker.run(stream, req.trace, req.streamer, req.session, req.cancel)
        finally:
            stream.close()

    def _run_sequential(self, req: _Request, ctx: ExecutionContext, sequence, text_sink) -> GenerationResult:
        failure = self._decode(req, ctx, sequence, text_sink)
        if failure is not None and len(req.trace) == 0:
            failure.result = self._result(req)
            raise failure
        try:
            self._speak(req, ctx)
        except SynthesisFailure as e:
            log("error", f"[Scheduler] {e}")
            self._attach(e, req, failure)
            raise
        return self._finish(req, failure)

    def _run_pipelined(self, req: _Request, ctx: ExecutionContext, sequence, text_sink) -> GenerationResult:
        errors: list[BaseException] = []

        def worker():
            # No talker stream is opened unless there is text to voice.
            if req.trace.wait_for(0) is None:
                return
            try:
                self._speak(req, ctx)
            except Exception as e:  # re-raised on the caller thread
                errors.append(e)

        thread = threading.Thread(target=worker, name="omni-talker", daemon=True)
        thread.start()
        try:
            failure = self._decode(req, ctx, sequence, text_sink)
        finally:
            # The decoder always closes the trace, which releases a waiting talker.
            req.trace.close()
            thread.join()

        if failure is not None and len(req.trace) == 0:
            failure.result = self._result(req)
            raise failure
        if errors:
            err = errors[0]
            if not isinstance(err, SynthesisFailure):
                wrapped = SynthesisFailure(f"talker worker failed: {err}", req.streamer.delivered, cause=err)
                wrapped.__cause__ = err
                err = wrapped
            log("error", f"[Scheduler] {err}")
            self._attach(err, req, failure)
            raise err
        return self._finish(req, failure)

    def _finish(self, req: _Request, failure: Optional[DecodeFailure]) -> GenerationResult:
        result = self._result(req)
        if failure is not None:
            # Partial text was voiced; the request still reports the decode failure.
            failure.result = result
            raise failure
        return result

    def _attach(self, err: SynthesisFailure, req: _Request, failure: Optional[DecodeFailure]) -> None:
        err.result = self._result(req)
        if failure is not None:
            # The decoder stopped early too; both failures travel on one exception.
            log("error", f"[Scheduler] speech failed after an earlier decode failure: {failure}")
            err.decode_failure = failure
            failure.result = err.result

    def _result(self, req: _Request) -> GenerationResult:
        cancelled = (req.streamer is not None and req.streamer.cancelled) or (
            req.talker is not None and req.talker.stop_reason is StopReason.CANCELLED
        )
        return GenerationResult(
            text=self.thinker.detokenize(req.trace.tokens),
            trace=req.trace,
            status=GenerationStatus.CANCELLED if cancelled else GenerationStatus.COMPLETED,
            text_stop=req.decoder.stop_reason if req.decoder is not None else None,
            speech_stop=req.talker.stop_reason if req.talker is not None else None,
            speech_tokens=req.session.talker_seq_len,
            chunks_delivered=req.session.chunks_delivered,
            unknown_config_keys=req.settings.unknown_keys,
            session=req.session,
        )
