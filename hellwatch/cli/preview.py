# =========================================================================================
#      _          _ _               _       _
#     | |__   ___| | |_      ____ _| |_ ___| |__
#     | '_ \ / _ \ | \ \ /\ / / _` | __/ __| '_ \
#     | | | |  __/ | |\ V  V / (_| | || (__| | | |
#     |_| |_|\___|_|_| \_/\_/ \__,_|\__\___|_| |_|
#                                                        event reminders, out loud
# =========================================================================================

import argparse
import asyncio
import datetime as dt
import pathlib
import sys
from typing import Optional

from hellwatch.audio import AudioPlayer, AudioUnavailable, BeepPlayer, beep_pattern_duration_ms
from hellwatch.config import load_config
from hellwatch.schedule import CATEGORIES, Category, event_name, format_countdown, format_local_time
from hellwatch.schedule_api import ScheduleClient, ScheduleFetchError
from hellwatch.settings import BeepPattern
from hellwatch.speech import TTS, Speaker, SpeechUnavailable, announcement


OUT_DIR = pathlib.Path("/tmp/hellwatch-preview-audio")


def cmd_beep(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    pattern = BeepPattern(args.pattern)
    beeper = BeepPlayer(AudioPlayer(cfg.audio.player), OUT_DIR, cfg.audio.sample_rate)
    try:
        ms = beeper.play(pattern, args.pitch, args.volume)
    except AudioUnavailable as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    print(f"OK: {pattern.value} at {args.pitch} Hz ({ms} ms, expected {beep_pattern_duration_ms(pattern)} ms)")
    return 0


def cmd_speak(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    if args.text:
        text = args.text
    else:
        cat = Category.parse(args.category) or Category.HELLTIDE
        text = announcement(cat, None, dt.timedelta(minutes=args.minutes))
    speaker = Speaker(
        tts=TTS(cfg.tts.backend, cfg.tts.voice, cfg.tts.rate_wpm, cfg.tts.volume),
        player=AudioPlayer(cfg.audio.player),
        audio_dir=OUT_DIR,
    )
    try:
        speaker.speak(text, args.volume)
    except (SpeechUnavailable, AudioUnavailable) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    print(f"OK: {text}")
    return 0


async def _fetch(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    client = ScheduleClient(
        args.url or cfg.schedule.url,
        timeout=cfg.schedule.timeout_seconds,
        user_agent=cfg.schedule.user_agent,
        cache_ttl=0,
    )
    try:
        snap = await client.fetch_schedule()
    except ScheduleFetchError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        await client.aclose()

    now = dt.datetime.now(dt.timezone.utc)
    for cat in CATEGORIES:
        nxt = snap.next_for(cat, now)
        if nxt is None:
            print(f"{cat.value:<11} (none scheduled)")
            continue
        print(
            f"{cat.value:<11} {event_name(cat, nxt):<28} at {format_local_time(nxt.start_time)}"
            f"  in {format_countdown(nxt.start_time - now)}  id={nxt.id}"
        )
    return 0


def cmd_schedule(args: argparse.Namespace) -> int:
    return asyncio.run(_fetch(args))


def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(prog="hellwatch-preview", description="Check audio, speech and schedule fetch in isolation")
    ap.add_argument("--config", default=None, help="Path to hellwatch config.yaml")

    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_beep = sub.add_parser("beep", help="Play a beep pattern")
    ap_beep.add_argument("--pattern", default="single", choices=[p.value for p in BeepPattern])
    ap_beep.add_argument("--pitch", default=880, type=int, help="Tone pitch in Hz (clamped 120..2000)")
    ap_beep.add_argument("--volume", default=0.8, type=float)
    ap_beep.set_defaults(func=cmd_beep)

    ap_speak = sub.add_parser("speak", help="Speak a reminder announcement")
    ap_speak.add_argument("text", nargs="?", default=None, help="Literal text (else a sample announcement)")
    ap_speak.add_argument("--category", default="helltide", choices=[c.value for c in CATEGORIES])
    ap_speak.add_argument("--minutes", default=10.0, type=float)
    ap_speak.add_argument("--volume", default=0.8, type=float)
    ap_speak.set_defaults(func=cmd_speak)

    ap_sched = sub.add_parser("schedule", help="Fetch the schedule and print the next event per category")
    ap_sched.add_argument("--url", default=None)
    ap_sched.set_defaults(func=cmd_schedule)

    args = ap.parse_args(argv)
    OUT_DIR.mkdir(parents=True, exist_ok=True)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
