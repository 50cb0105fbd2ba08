"""Command-line demo: audio in, text on stdout, speech saved to a wav file.

    omni-demo config/default.toml input.wav output.wav "Summarize this clip"

Extra generation options go through --set, e.g.
    --set talker_speaker=Ethan --set talker_max_new_tokens=1200
"""

from __future__ import annotations

import argparse
import sys
from typing import Optional

from .client_utils import log
from .config import load_config
from .decoder import ConsoleTokenSink
from .errors import DecodeFailure, InvalidConfigError, InvalidPromptError, SynthesisFailure
from .prompt import build_audio_prompt
from .session import format_stats
from .streaming import CollectingWaveformSink


def _parse_overrides(items: list[str]) -> dict:
    out = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise SystemExit(f"--set expects key=value, got {item!r}")
        out[key.strip()] = value
    return out


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="omni-demo", description="Omni speech-in / speech-out demo")
    parser.add_argument("config", help="TOML config file")
    parser.add_argument("audio", help="input wav (16-bit PCM)")
    parser.add_argument("output", nargs="?", default="output.wav", help="where to save the spoken reply")
    parser.add_argument("question", nargs="*", help="instruction; joined with spaces")
    parser.add_argument("--set", dest="overrides", action="append", default=[], metavar="KEY=VALUE")
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    question = " ".join(args.question)
    overrides = _parse_overrides(args.overrides)

    print(f"Config : {args.config}")
    print(f"Audio  : {args.audio}")
    print(f"OutWav : {args.output}")

    try:
        prompt = build_audio_prompt(args.audio, question)
    except InvalidPromptError as e:
        log("error", str(e))
        return 2
    print(f"\n==== Prompt ====\n{prompt.render()}\n================\n")

    # Heavy imports live here
    from .qwen_backend import build_qwen_scheduler

    scheduler = build_qwen_scheduler(cfg)
    sink = CollectingWaveformSink(args.output, sample_rate=cfg.audio.output_sample_rate)

    code = 0
    try:
        result = scheduler.respond(
            args.audio,
            question,
            text_sink=ConsoleTokenSink(),
            waveform_sink=sink,
            overrides=overrides,
        )
        if result.partial:
            log("warning", "speech output was cut short")
    except (InvalidConfigError, InvalidPromptError) as e:
        log("error", str(e))
        return 2
    except (DecodeFailure, SynthesisFailure) as e:
        log("error", f"{type(e).__name__}: {e}")
        code = 1

    print()
    print(format_stats(scheduler.context))
    return code


if __name__ == "__main__":
    sys.exit(main())
