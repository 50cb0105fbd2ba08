from __future__ import annotations

import argparse
import asyncio
import base64
import json
import os
import threading
from typing import Optional

import numpy as np
from fastapi import FastAPI, File, Form, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response

from .client_utils import log
from .config import AppConfig, load_config
from .decoder import CallbackTokenSink
from .errors import DecodeFailure, InvalidConfigError, InvalidPromptError, OmniRunError, SynthesisFailure
from .io_types import GenerationResult
from .streaming import CallbackWaveformSink, CollectingWaveformSink
from .wav_utils import float_to_pcm16le, wav_bytes_to_audio_input

app = FastAPI(title="omni_run")

# Load default config at import time; CLI can override
_CFG_PATH = os.getenv("OMNI_CONFIG")
CFG: AppConfig = load_config(_CFG_PATH)

_scheduler_lock = threading.Lock()
_scheduler = None


def set_scheduler(scheduler) -> None:
    """Install a ready scheduler (tests, embedding applications)."""
    global _scheduler
    with _scheduler_lock:
        _scheduler = scheduler


def get_scheduler():
    """Build the Qwen-backed scheduler on first use."""
    global _scheduler
    if _scheduler is not None:
        return _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            from .qwen_backend import build_qwen_scheduler

            _scheduler = build_qwen_scheduler(CFG)
        return _scheduler


def _error_kind(e: OmniRunError) -> tuple[int, str]:
    if isinstance(e, InvalidPromptError):
        return 400, "invalid_prompt"
    if isinstance(e, InvalidConfigError):
        return 422, "invalid_config"
    if isinstance(e, DecodeFailure):
        return 500, "decode_failure"
    if isinstance(e, SynthesisFailure):
        return 500, "synthesis_failure"
    return 500, "error"


def _summary(result: Optional[GenerationResult]) -> dict:
    if result is None:
        return {}
    return {
        "text": result.text,
        "text_tokens": len(result.trace),
        "speech_tokens": result.speech_tokens,
        "chunks": result.chunks_delivered,
        "partial": result.partial,
        "stats": result.session.as_dict() if result.session is not None else {},
    }


@app.get("/health")
def health() -> str:
    return "ok"


@app.get("/favicon.ico")
def favicon():
    # Avoid noisy 404s in logs.
    return Response(status_code=204)


@app.post("/respond")
async def respond(
    file: UploadFile = File(...),
    instruction: str = Form(""),
    config: str = Form(""),
):
    """One-shot request: WAV upload in, text + PCM16 (base64) out.

    NOTE: For streaming playback, prefer /ws/respond.
    """
    wav = await file.read()
    try:
        audio_in = wav_bytes_to_audio_input(wav)
    except ValueError as e:
        return JSONResponse({"status": "error", "error": "invalid_prompt", "detail": str(e)}, status_code=400)

    scheduler = get_scheduler()
    sink = CollectingWaveformSink()
    try:
        result = await scheduler.respond_async(audio_in, instruction, waveform_sink=sink, overrides=config or None)
    except OmniRunError as e:
        status, kind = _error_kind(e)
        body = {"status": "error", "error": kind, "detail": str(e)}
        body.update(_summary(getattr(e, "result", None)))
        return JSONResponse(body, status_code=status)

    body = {"status": result.status.value, "audio_format": "pcm16le", "audio_sample_rate": CFG.audio.output_sample_rate}
    body.update(_summary(result))
    body["audio_b64"] = base64.b64encode(float_to_pcm16le(sink.waveform())).decode("ascii")
    return body


@app.websocket("/ws/respond")
async def ws_respond(websocket: WebSocket):
    """Streaming request.

    Client:
    - sends one text frame: {"instruction": "...", "config": {...}}
    - sends one binary frame: the WAV file
    - may send {"type": "stop"} at any time to end speech output

    Server:
    - {"type": "text", "token": id, "piece": "..."} per text token
    - {"type": "audio", "index": i, "samples": n, "last": bool} followed by PCM16LE bytes
    - {"type": "done", ...summary} or {"type": "error", "error": kind, ...}
    """
    await websocket.accept()
    loop = asyncio.get_running_loop()

    try:
        header = json.loads(await websocket.receive_text() or "{}")
        if not isinstance(header, dict):
            raise KeyError("header must be a JSON object")
        wav = await websocket.receive_bytes()
    except WebSocketDisconnect:
        return
    except (json.JSONDecodeError, KeyError) as e:
        await websocket.send_json({"type": "error", "error": "invalid_prompt", "detail": str(e)})
        await websocket.close()
        return

    stop = threading.Event()
    send_lock = asyncio.Lock()

    async def send(payload: dict, data: Optional[bytes] = None):
        async with send_lock:
            await websocket.send_json(payload)
            if data is not None:
                await websocket.send_bytes(data)

    def on_token(token: int, piece: str):
        asyncio.run_coroutine_threadsafe(send({"type": "text", "token": token, "piece": piece}), loop)

    index = 0

    def on_chunk(samples: np.ndarray, count: int, last: bool) -> bool:
        nonlocal index
        meta = {"type": "audio", "index": index, "samples": count, "last": last}
        index += 1
        fut = asyncio.run_coroutine_threadsafe(send(meta, float_to_pcm16le(samples[:count])), loop)
        try:
            # Block the talker until the chunk is on the wire.
            fut.result()
        except Exception as e:
            log("warning", f"[WS] send failed: {e}")
            return False
        return not stop.is_set()

    async def control_loop():
        try:
            while True:
                msg = await websocket.receive_json()
                if isinstance(msg, dict) and msg.get("type") == "stop":
                    log("info", "[WS] client requested stop")
                    stop.set()
        except WebSocketDisconnect:
            stop.set()
        except Exception as e:
            log("debug", f"[WS] control loop ended: {e}")

    control = asyncio.create_task(control_loop())
    try:
        audio_in = wav_bytes_to_audio_input(wav)
        result = await get_scheduler().respond_async(
            audio_in,
            header.get("instruction") or None,
            text_sink=CallbackTokenSink(on_token),
            waveform_sink=CallbackWaveformSink(on_chunk),
            overrides=header.get("config") or None,
        )
        await send({"type": "done", "status": result.status.value, **_summary(result)})
    except ValueError as e:
        await send({"type": "error", "error": "invalid_prompt", "detail": str(e)})
    except OmniRunError as e:
        _, kind = _error_kind(e)
        await send({"type": "error", "error": kind, "detail": str(e), **_summary(getattr(e, "result", None))})
    except WebSocketDisconnect:
        log("info", "[WS] client disconnected")
        return
    finally:
        control.cancel()

    await websocket.close()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default="config/default.toml")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args(argv)

    global CFG
    CFG = load_config(args.config)

    import uvicorn

    uvicorn.run("omni_run.server:app", host=args.host, port=args.port, reload=False)


if __name__ == "__main__":
    main()
