from __future__ import annotations

import base64
import json

import numpy as np
import pytest
from fastapi.testclient import TestClient

from conftest import SAMPLES_PER_TOKEN, FakeThinker, make_scheduler
from omni_run import server
from omni_run.wav_utils import float_to_pcm16le, pcm16_mono_to_wav_bytes


def _wav(seconds: float = 1.0) -> bytes:
    return pcm16_mono_to_wav_bytes(float_to_pcm16le(np.zeros(int(16000 * seconds), dtype=np.float32)), 16000)


@pytest.fixture
def client():
    server.set_scheduler(make_scheduler(thinker=FakeThinker(range(1, 11)), generation={"talker_chunk_size": 4}))
    with TestClient(server.app) as c:
        yield c
    server.set_scheduler(None)


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == "ok"


def test_respond(client):
    r = client.post(
        "/respond",
        files={"file": ("clip.wav", _wav(), "audio/wav")},
        data={"instruction": "Summarize.", "config": json.dumps({"async": True})},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "completed"
    assert body["text_tokens"] == 10
    assert body["chunks"] == 3
    assert body["stats"]["audio_input_s"] == 1.0
    pcm = base64.b64decode(body["audio_b64"])
    assert len(pcm) == 2 * 10 * SAMPLES_PER_TOKEN


def test_respond_bad_speaker(client):
    r = client.post(
        "/respond",
        files={"file": ("clip.wav", _wav(), "audio/wav")},
        data={"config": '{"talker_speaker": "Nobody"}'},
    )
    assert r.status_code == 422
    assert r.json()["error"] == "invalid_config"


def test_respond_not_a_wav(client):
    r = client.post("/respond", files={"file": ("clip.wav", b"garbage", "audio/wav")})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_prompt"


def test_respond_empty_wav(client):
    r = client.post("/respond", files={"file": ("clip.wav", _wav(0.0), "audio/wav")})
    assert r.status_code == 400


def test_ws_stream(client):
    with client.websocket_connect("/ws/respond") as ws:
        ws.send_text(json.dumps({"instruction": "Hi", "config": {"async": False}}))
        ws.send_bytes(_wav())

        audio = []
        texts = 0
        while True:
            msg = ws.receive_json()
            if msg["type"] == "text":
                texts += 1
            elif msg["type"] == "audio":
                data = ws.receive_bytes()
                assert len(data) == 2 * msg["samples"]
                audio.append(msg)
            else:
                break

    assert msg["type"] == "done"
    assert msg["status"] == "completed"
    assert msg["text_tokens"] == 10
    assert [m["index"] for m in audio] == [0, 1, 2]
    assert [m["last"] for m in audio] == [False, False, True]


def test_ws_bad_config(client):
    with client.websocket_connect("/ws/respond") as ws:
        ws.send_text(json.dumps({"config": {"max_new_tokens": 0}}))
        ws.send_bytes(_wav())
        while True:
            msg = ws.receive_json()
            if msg["type"] not in ("text", "audio"):
                break
    assert msg["type"] == "error"
    assert msg["error"] == "invalid_config"
