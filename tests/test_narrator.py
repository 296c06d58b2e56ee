"""Tests for narration, effects and audio mixing."""

import asyncio
import subprocess
import time
from pathlib import Path


def _event(start_ms, path="clip.mp3", kind="speak", volume=1.0, label="hello"):
    from proofcast.models import AudioEvent

    return AudioEvent(kind=kind, start_ms=start_ms, duration_ms=1000,
                      audio_path=Path(path), label=label, volume=volume)


class FakeTTS:
    """Returns a fixed clip without calling any API."""

    def __init__(self, clip, duration_ms=10):
        self.clip = clip
        self.duration_ms = duration_ms
        self.generated = []

    async def generate(self, text, voice=None, speed=None):
        self.generated.append(text)
        return self.clip, self.duration_ms


class TestMixing:
    """Tests for mixing audio events into a video."""

    def test_no_events_returns_input_without_encoding(self, tmp_path, monkeypatch):
        """Test that an empty event list is a no-op."""
        from proofcast.narrator import mix_audio_into_video

        def fail(*args, **kwargs):
            raise AssertionError("ffmpeg must not run")

        monkeypatch.setattr(subprocess, "run", fail)
        video = tmp_path / "run.mp4"
        video.write_bytes(b"mp4")

        assert mix_audio_into_video(video, []) == video
        assert video.read_bytes() == b"mp4"

    def test_mix_args_delay_each_clip(self):
        """Test the adelay/amix filter graph."""
        from proofcast.narrator import build_mix_args

        args = build_mix_args(
            Path("run.mp4"),
            [_event(1500, "a.mp3"), _event(4200, "b.wav", kind="effect", volume=0.5)],
            Path("run.narrated.mp4"),
        )
        graph = args[args.index("-filter_complex") + 1]

        assert "[1:a]adelay=1500|1500,apad[a0]" in graph
        assert "[2:a]adelay=4200|4200,volume=0.50,apad[a1]" in graph
        assert "amix=inputs=2:normalize=0[mixed]" in graph
        assert args[args.index("-c:v") + 1] == "copy"
        assert args[args.index("-b:a") + 1] == "192k"
        assert "-shortest" in args
        assert args[-1] == "run.narrated.mp4"

    def test_mix_replaces_video_in_place(self, tmp_path, monkeypatch):
        """Test that the narrated file replaces the original."""
        from proofcast.narrator import mix_audio_into_video

        def fake_run(cmd, **kwargs):
            Path(cmd[-1]).write_bytes(b"narrated")
            return subprocess.CompletedProcess(cmd, 0, "", "")

        monkeypatch.setattr(subprocess, "run", fake_run)
        video = tmp_path / "run.mp4"
        video.write_bytes(b"silent")

        result = mix_audio_into_video(video, [_event(0)], ffmpeg="ffmpeg")

        assert result == video
        assert video.read_bytes() == b"narrated"
        assert not (tmp_path / "run.narrated.mp4").exists()

    def test_failed_mix_keeps_original(self, tmp_path, monkeypatch):
        """Test that a mixing failure degrades to the silent video."""
        from proofcast.narrator import mix_audio_into_video

        def fake_run(cmd, **kwargs):
            raise subprocess.CalledProcessError(1, cmd, "", "boom")

        monkeypatch.setattr(subprocess, "run", fake_run)
        video = tmp_path / "run.mp4"
        video.write_bytes(b"silent")

        assert mix_audio_into_video(video, [_event(0)], ffmpeg="ffmpeg") == video
        assert video.read_bytes() == b"silent"


class TestAudioEvent:
    """Tests for audio event values."""

    def test_volume_is_clamped(self):
        """Test that volume stays within 0..1."""
        assert _event(0, volume=3).volume == 1.0
        assert _event(0, volume=-1).volume == 0.0

    def test_summary_has_no_paths(self):
        """Test the metadata summary shape."""
        summary = _event(250, kind="effect", label="click").summary()

        assert summary == {"type": "effect", "startMs": 250, "durationMs": 1000, "label": "click"}


class TestDirector:
    """Tests for the audio director."""

    def test_speak_records_offset_and_blocks(self, tmp_path):
        """Test that speak() records when it started and waits for the clip."""
        from proofcast.narrator import AudioDirector

        tts = FakeTTS(tmp_path / "clip.mp3", duration_ms=50)
        director = AudioDirector(tts, start_time=time.monotonic(), buffer_ms=0)

        began = time.monotonic()
        asyncio.run(director.speak("Welcome"))
        elapsed = time.monotonic() - began

        assert elapsed >= 0.05
        [event] = director.events
        assert event.kind.value == "speak"
        assert event.label == "Welcome"
        assert event.duration_ms == 50
        assert 0 <= event.start_ms < 50

    def test_effect_does_not_block_and_unknown_is_skipped(self, tmp_path, monkeypatch):
        """Test effect scheduling."""
        from proofcast import ffmpeg as ff
        from proofcast.narrator import AudioDirector

        monkeypatch.setattr(ff, "probe_audio_duration_ms", lambda ffmpeg, path: 300)
        (tmp_path / "click.wav").write_bytes(b"RIFF")
        director = AudioDirector(FakeTTS(None), start_time=time.monotonic(), sfx_dir=tmp_path)

        asyncio.run(director.effect("click"))
        asyncio.run(director.effect("whoosh"))

        [event] = director.events
        assert event.kind.value == "effect"
        assert event.volume == 0.5
        assert event.duration_ms == 300

    def test_events_returns_a_copy(self, tmp_path):
        """Test that callers cannot mutate the event log."""
        from proofcast.narrator import AudioDirector

        director = AudioDirector(FakeTTS(tmp_path / "c.mp3"), start_time=time.monotonic(), buffer_ms=0)
        director.events.append("junk")

        assert director.events == []

    def test_noop_director_when_disabled(self):
        """Test that narration off yields the silent director."""
        from proofcast.narrator import NarrationOptions, NoopAudioDirector, create_audio_director

        director = create_audio_director(NarrationOptions(enabled=False), time.monotonic())

        assert isinstance(director, NoopAudioDirector)
        assert not director.enabled
        asyncio.run(director.speak("ignored"))
        assert director.events == []

    def test_fast_mode_never_narrates(self, monkeypatch):
        """Test that fast runs get the silent director even with a key."""
        from proofcast import narrator
        from proofcast.models import Mode

        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

        director = narrator.create_audio_director(
            narrator.NarrationOptions(enabled=True), time.monotonic(), mode=Mode.FAST,
        )

        assert isinstance(director, narrator.NoopAudioDirector)

    def test_missing_key_falls_back_to_silent(self, monkeypatch):
        """Test that narration without an API key runs silent."""
        from proofcast import narrator

        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.setattr(narrator, "OPENAI_API_KEY", None)

        director = narrator.create_audio_director(narrator.NarrationOptions(enabled=True), time.monotonic())

        assert not director.enabled


class TestTTSCache:
    """Tests for the content-addressed clip cache."""

    def test_cache_key_depends_on_every_input(self):
        """Test that each parameter changes the key."""
        from proofcast.narrator import cache_key

        base = cache_key("tts-1", "nova", 1.0, "Hello")

        assert len(base) == 16
        assert base == cache_key("tts-1", "nova", 1.0, "Hello")
        assert base != cache_key("tts-1", "alloy", 1.0, "Hello")
        assert base != cache_key("tts-1", "nova", 1.25, "Hello")
        assert base != cache_key("tts-1", "nova", 1.0, "Hello", language="German")

    def test_cached_clip_is_reused(self, tmp_path, monkeypatch):
        """Test that generate() does not synthesize a clip that exists."""
        from proofcast import ffmpeg as ff
        from proofcast.narrator import TTSEngine, cache_key

        monkeypatch.setattr(ff, "probe_audio_duration_ms", lambda ffmpeg, path: 1234)
        engine = TTSEngine(api_key="sk-test", cache_dir=tmp_path)
        clip = tmp_path / f"{cache_key(engine.model, engine.voice, engine.speed, 'Hi there')}.mp3"
        clip.write_bytes(b"ID3")

        path, duration_ms = asyncio.run(engine.generate("Hi there"))

        assert path == clip
        assert duration_ms == 1234
