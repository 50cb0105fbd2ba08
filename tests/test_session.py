from __future__ import annotations

import pytest

from omni_run.session import SessionContext, format_stats, real_time_factor


def test_rtf_needs_input_duration():
    assert real_time_factor(SessionContext()) is None


def test_rtf_from_counters():
    ctx = SessionContext(audio_input_s=5.0, audio_us=1_250_000)
    assert real_time_factor(ctx) == pytest.approx(0.25)
    assert "Audio RTF     : 0.250" in format_stats(ctx)


def test_time_audio_accumulates():
    ctx = SessionContext()
    with ctx.time_audio():
        pass
    ctx.add_audio_us(100)
    assert ctx.audio_us >= 100


def test_as_dict_and_reset():
    ctx = SessionContext(prompt_len=12, gen_seq_len=40, chunks_delivered=2)
    d = ctx.as_dict()
    assert d["prompt_len"] == 12
    assert d["gen_seq_len"] == 40
    assert "_lock" not in d
    ctx.reset()
    assert ctx.as_dict() == SessionContext().as_dict()


def test_stats_without_audio_skip_rtf():
    text = format_stats(SessionContext(prompt_len=3))
    assert "Prompt tokens : 3" in text
    assert "RTF" not in text
