from __future__ import annotations

import asyncio
import threading
from dataclasses import replace

from hellwatch.audio import AudioPlayer
from hellwatch.dispatcher import NotificationDispatcher
from hellwatch.overlay_sync import TOPIC_TOAST, LocalSurface, OverlaySyncChannel
from hellwatch.safety import PanicStop
from hellwatch.schedule import Category
from hellwatch.settings import BeepPattern, default_settings
from hellwatch.speech import TTS, Speaker
from hellwatch.tasks import TaskScheduler

from conftest import FakeBeeper, FakeSpeaker, make_event


def build(store, beeper=None):
    panic = PanicStop(store)
    channel = OverlaySyncChannel()
    surface = LocalSurface("main")
    channel.subscribe(surface)
    beeper = beeper or FakeBeeper(duration_ms=10)
    speaker = FakeSpeaker()
    sched = TaskScheduler()
    d = NotificationDispatcher(
        panic=panic,
        channel=channel,
        beeper=beeper,
        speaker=speaker,
        scheduler=sched,
        speech_pause_seconds=0.01,
    )
    return d, panic, surface, beeper, speaker, sched


def test_dispatch_toast_beep_then_speech(store):
    async def go():
        d, panic, surface, beeper, speaker, sched = build(store)
        start = sched.time()
        res = d.dispatch(make_event(), default_settings())
        assert res.speech_task is not None
        assert res.speech_task.due >= start + 0.02
        assert speaker.spoken == []
        await asyncio.sleep(0.2)
        return res, surface, beeper, speaker

    res, surface, beeper, speaker = asyncio.run(go())
    assert res.toast_delivered == 1
    assert res.beep_ms == 10
    topic, toast = surface.received[0]
    assert topic == TOPIC_TOAST
    assert toast["title"] == "World Boss Avarice"
    assert toast["body"] == "09:55"
    assert toast["durationMs"] == 5200
    assert toast["type"] == "world_boss"
    assert beeper.calls == [(BeepPattern.DOUBLE, 660, 0.8)]
    assert len(speaker.spoken) == 1
    assert speaker.spoken[0].startswith("World boss Avarice in ")


def test_panic_suppresses_everything(store):
    async def go():
        d, panic, surface, beeper, speaker, sched = build(store)
        panic.enable("test")
        res = d.dispatch(make_event(), default_settings())
        await asyncio.sleep(0.05)
        return res, surface, beeper, speaker

    res, surface, beeper, speaker = asyncio.run(go())
    assert res.suppressed
    assert surface.received == []
    assert beeper.calls == []
    assert speaker.spoken == []


def test_audio_failure_does_not_block_other_channels(store):
    async def go():
        d, panic, surface, beeper, speaker, sched = build(store, beeper=FakeBeeper(fail=True))
        res = d.dispatch(make_event(), default_settings())
        await asyncio.sleep(0.1)
        return res, surface, speaker

    res, surface, speaker = asyncio.run(go())
    assert res.beep_ms == 0
    assert len(surface.received) == 1
    assert len(speaker.spoken) == 1


def test_channel_toggles(store):
    async def go():
        d, panic, surface, beeper, speaker, sched = build(store)
        quiet = replace(default_settings(), sound_enabled=False)
        d.dispatch(make_event(), quiet)
        no_toast = replace(default_settings(), overlay_toasts_enabled=False)
        d.dispatch(make_event(speech=False), no_toast)
        await asyncio.sleep(0.05)
        return surface, beeper, speaker

    surface, beeper, speaker = asyncio.run(go())
    assert len(surface.received) == 1
    assert len(beeper.calls) == 1
    assert speaker.spoken == []


def test_panic_cancels_pending_speech(store):
    async def go():
        d, panic, surface, beeper, speaker, sched = build(store)
        d.speech_pause_seconds = 0.2
        d.dispatch(make_event(), default_settings())
        assert len(sched.pending("speech")) == 1
        panic.enable("watchdog")
        assert sched.pending("speech") == []
        await asyncio.sleep(0.3)
        return speaker

    speaker = asyncio.run(go())
    assert speaker.spoken == []
    assert speaker.cancelled == 1


def test_preview_toast_and_test_beep(store):
    d, panic, surface, beeper, speaker, sched = build(store)
    assert d.preview_toast(Category.LEGION) == 1
    _, toast = surface.received[-1]
    assert toast["kind"] == "debug"
    assert toast["durationMs"] == 8000
    assert d.test_beep(default_settings(), Category.HELLTIDE, 2) == 10
    assert beeper.calls[-1][0] is BeepPattern.TRIPLE


class SlowTTS(TTS):
    def __init__(self) -> None:
        super().__init__("espeak-ng", "en-us", 175, 1.0)
        self.started = threading.Event()
        self.release = threading.Event()

    def synth_to_wav(self, text, out_wav, volume=1.0):
        self.started.set()
        self.release.wait(timeout=5)
        out_wav.parent.mkdir(parents=True, exist_ok=True)
        out_wav.write_bytes(b"")


class RecordingPlayer(AudioPlayer):
    def __init__(self) -> None:
        super().__init__("")
        self.played = []
        self.stopped = 0

    def play(self, wav_path):
        self.played.append(wav_path)
        return None

    def stop(self):
        self.stopped += 1


def test_panic_during_synthesis_drops_playback(store, tmp_path):
    tts = SlowTTS()
    player = RecordingPlayer()
    speaker = Speaker(tts=tts, player=player, audio_dir=tmp_path / "audio")

    async def go():
        panic = PanicStop(store)
        d = NotificationDispatcher(
            panic=panic,
            channel=OverlaySyncChannel(),
            beeper=FakeBeeper(duration_ms=0),
            speaker=speaker,
            scheduler=TaskScheduler(),
            speech_pause_seconds=0.0,
        )
        d.dispatch(make_event(), default_settings())
        assert await asyncio.to_thread(tts.started.wait, 2)
        panic.enable("watchdog")
        tts.release.set()
        for _ in range(50):
            if not speaker._lock.locked():
                break
            await asyncio.sleep(0.02)
        await asyncio.sleep(0.05)

    asyncio.run(go())
    assert player.played == []
    assert player.stopped >= 2


def test_speaker_plays_when_gate_open(tmp_path):
    tts = SlowTTS()
    tts.release.set()
    player = RecordingPlayer()
    speaker = Speaker(tts=tts, player=player, audio_dir=tmp_path)
    assert speaker.speak("Helltide in about 5 minutes", gate=lambda: True)
    assert not speaker.speak("Helltide in about 5 minutes", gate=lambda: False)
    assert len(player.played) == 1
