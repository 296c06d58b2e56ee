"""
Narration and audio mixing using OpenAI TTS.

During a run the AudioDirector collects timed speech and effect clips. At
finish, mix_audio_into_video delays every clip to its recorded offset, mixes
them without normalization and muxes the result against the untouched video
stream.
"""
import asyncio
import hashlib
import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple

import openai

from config.settings import (
    AUDIO_BITRATE, AUDIO_CODEC, EFFECT_VOLUME, FFMPEG_PATH, OPENAI_API_KEY,
    SFX_DIR, SPEAK_BUFFER_MS, TRANSLATE_MODEL, TTS_CACHE_DIR, TTS_MODEL,
    TTS_SPEED, TTS_VOICE,
)
from proofcast import ffmpeg as ff
from proofcast.errors import NarrationError
from proofcast.models import AudioEvent, AudioKind, Mode

logger = logging.getLogger(__name__)


@dataclass
class NarrationOptions:
    """Narration settings for a session."""
    enabled: bool = False
    voice: str = TTS_VOICE
    speed: float = TTS_SPEED
    model: str = TTS_MODEL
    api_key: Optional[str] = None
    cache_dir: Optional[Path] = None
    language: Optional[str] = None   # Translate narration before synthesis
    realtime: bool = False           # Also play clips through the speakers


def cache_key(model: str, voice: str, speed: float, text: str, language: Optional[str] = None) -> str:
    """Content address of a synthesized clip."""
    parts = [model, voice, str(speed)]
    if language:
        parts.append(language)
    parts.append(text)
    return hashlib.sha256(":".join(parts).encode("utf-8")).hexdigest()[:16]


class TTSEngine:
    """Synthesizes narration clips with a content-addressed disk cache."""

    def __init__(
        self,
        api_key: str,
        cache_dir: Path = TTS_CACHE_DIR,
        voice: str = TTS_VOICE,
        speed: float = TTS_SPEED,
        model: str = TTS_MODEL,
        language: Optional[str] = None,
        ffmpeg: Optional[str] = None,
    ):
        self.client = openai.AsyncOpenAI(api_key=api_key)
        self.cache_dir = Path(cache_dir)
        self.voice = voice
        self.speed = speed
        self.model = model
        self.language = language
        self.ffmpeg = ffmpeg or FFMPEG_PATH

    async def translate(self, text: str) -> str:
        """Translate narration into the configured language (cached)."""
        key = cache_key(TRANSLATE_MODEL, "translate", 0, text, self.language)
        cached = self.cache_dir / f"{key}.txt"
        if cached.exists():
            return cached.read_text(encoding="utf-8")

        response = await self.client.chat.completions.create(
            model=TRANSLATE_MODEL,
            temperature=0.3,
            messages=[
                {
                    "role": "system",
                    "content": (
                        f"Translate the following text to {self.language}. "
                        "Respond with ONLY the translation, no explanations or extra text."
                    ),
                },
                {"role": "user", "content": text},
            ],
        )
        translated = (response.choices[0].message.content or "").strip() or text
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        cached.write_text(translated, encoding="utf-8")
        logger.info("Translated narration: %s", translated[:60])
        return translated

    async def generate(
        self, text: str, voice: Optional[str] = None, speed: Optional[float] = None
    ) -> Tuple[Path, int]:
        """
        Synthesize text, reusing a cached clip when one exists.

        Args:
            text: Narration text
            voice: Voice override
            speed: Speed override

        Returns:
            (clip path, duration in ms)
        """
        voice = voice or self.voice
        speed = self.speed if speed is None else speed
        key = cache_key(self.model, voice, speed, text, self.language)
        clip = self.cache_dir / f"{key}.mp3"

        if not clip.exists():
            spoken = await self.translate(text) if self.language else text
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            partial = clip.with_suffix(".part")
            try:
                async with self.client.audio.speech.with_streaming_response.create(
                    model=self.model,
                    voice=voice,
                    input=spoken,
                    speed=speed,
                    response_format="mp3",
                ) as response:
                    await response.stream_to_file(partial)
            except openai.OpenAIError as e:
                partial.unlink(missing_ok=True)
                raise NarrationError(f"TTS failed for {text[:40]!r}: {e}") from e
            partial.replace(clip)
            logger.info("Generated narration clip %s", clip.name)

        duration_ms = await asyncio.to_thread(ff.probe_audio_duration_ms, self.ffmpeg, clip)
        return clip, duration_ms


def resolve_effect(name: str, sfx_dir: Path = SFX_DIR) -> Optional[Path]:
    """Find a bundled effect by name, or accept an existing file path."""
    for suffix in (".wav", ".mp3"):
        candidate = Path(sfx_dir) / f"{name}{suffix}"
        if candidate.exists():
            return candidate
    if Path(name).is_file():
        return Path(name)
    return None


def _player_for(ffmpeg: str) -> Optional[list[str]]:
    if shutil.which("afplay"):
        return ["afplay"]
    ffplay = shutil.which(str(Path(ffmpeg).with_name("ffplay"))) or shutil.which("ffplay")
    if ffplay:
        return [ffplay, "-nodisp", "-autoexit", "-loglevel", "quiet"]
    return None


class AudioDirector:
    """Records timed speech and effect events for one session."""

    def __init__(
        self,
        tts: TTSEngine,
        start_time: float,
        ffmpeg: Optional[str] = None,
        realtime: bool = False,
        sfx_dir: Path = SFX_DIR,
        buffer_ms: int = SPEAK_BUFFER_MS,
    ):
        self.tts = tts
        self.start_time = start_time
        self.ffmpeg = ffmpeg or FFMPEG_PATH
        self.realtime = realtime
        self.sfx_dir = sfx_dir
        self.buffer_ms = buffer_ms
        self._events: list[AudioEvent] = []
        self._players: list[subprocess.Popen] = []

    @property
    def enabled(self) -> bool:
        return True

    @property
    def events(self) -> list[AudioEvent]:
        return list(self._events)

    def _offset_ms(self) -> int:
        return int((time.monotonic() - self.start_time) * 1000)

    async def warmup(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None):
        """Pre-generate a clip so a later speak() starts immediately."""
        await self.tts.generate(text, voice=voice, speed=speed)

    async def speak(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None):
        """Narrate text and block for the clip duration plus a short buffer."""
        start_ms = self._offset_ms()
        clip, duration_ms = await self.tts.generate(text, voice=voice, speed=speed)
        self._events.append(AudioEvent(
            kind=AudioKind.SPEAK,
            start_ms=start_ms,
            duration_ms=duration_ms,
            audio_path=clip,
            label=text,
            volume=1.0,
        ))
        if self.realtime:
            self._play(clip)
        await asyncio.sleep((duration_ms + self.buffer_ms) / 1000)

    async def effect(self, name: str, volume: float = EFFECT_VOLUME):
        """Schedule a short sound effect at the current offset without blocking."""
        path = resolve_effect(name, self.sfx_dir)
        if path is None:
            logger.warning('Unknown sound effect: "%s"', name)
            return
        start_ms = self._offset_ms()
        duration_ms = await asyncio.to_thread(ff.probe_audio_duration_ms, self.ffmpeg, path)
        self._events.append(AudioEvent(
            kind=AudioKind.EFFECT,
            start_ms=start_ms,
            duration_ms=duration_ms,
            audio_path=path,
            label=name,
            volume=volume,
        ))

    def _play(self, clip: Path):
        player = _player_for(self.ffmpeg)
        if player is None:
            logger.warning("No audio player found for realtime narration")
            return
        self._players.append(subprocess.Popen(
            [*player, str(clip)], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
        ))

    def close(self):
        """Stop any realtime playback still running."""
        for proc in self._players:
            if proc.poll() is None:
                proc.terminate()
        self._players.clear()


class NoopAudioDirector:
    """Stands in for AudioDirector when narration is off."""

    @property
    def enabled(self) -> bool:
        return False

    @property
    def events(self) -> list[AudioEvent]:
        return []

    async def warmup(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None):
        pass

    async def speak(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None):
        pass

    async def effect(self, name: str, volume: float = EFFECT_VOLUME):
        pass

    def close(self):
        pass


def create_audio_director(
    options: Optional[NarrationOptions],
    start_time: float,
    ffmpeg: Optional[str] = None,
    mode: Optional[Mode] = None,
):
    """
    Pick the real or silent director once, up front.

    Narration needs enabled=True, an OpenAI key (option or env) and a mode
    other than fast. Fast runs never call the TTS API.
    """
    if options is None or not options.enabled:
        return NoopAudioDirector()
    if mode == Mode.FAST:
        logger.info("Narration skipped in fast mode")
        return NoopAudioDirector()

    api_key = options.api_key or os.getenv("OPENAI_API_KEY") or OPENAI_API_KEY
    if not api_key:
        logger.warning("Narration enabled but OPENAI_API_KEY is not set; running silent")
        return NoopAudioDirector()

    tts = TTSEngine(
        api_key=api_key,
        cache_dir=options.cache_dir or TTS_CACHE_DIR,
        voice=options.voice,
        speed=options.speed,
        model=options.model,
        language=options.language,
        ffmpeg=ffmpeg,
    )
    return AudioDirector(tts, start_time=start_time, ffmpeg=ffmpeg, realtime=options.realtime)


def build_mix_args(video: Path, events: Sequence[AudioEvent], output: Path) -> list[str]:
    """Encoder arguments that mix events into video (without the binary)."""
    args = ["-y", "-i", str(video)]
    for event in events:
        args.extend(["-i", str(event.audio_path)])

    chains = []
    labels = []
    for i, event in enumerate(events):
        delay = max(0, int(round(event.start_ms)))
        chain = f"[{i + 1}:a]adelay={delay}|{delay}"
        if event.volume != 1.0:
            chain += f",volume={event.volume:.2f}"
        chain += f",apad[a{i}]"
        chains.append(chain)
        labels.append(f"[a{i}]")
    chains.append(f"{''.join(labels)}amix=inputs={len(events)}:normalize=0[mixed]")

    args.extend([
        "-filter_complex", ";".join(chains),
        "-map", "0:v", "-map", "[mixed]",
        "-c:v", "copy",
        "-c:a", AUDIO_CODEC, "-b:a", AUDIO_BITRATE,
        "-shortest",
        str(output),
    ])
    return args


def mix_audio_into_video(
    video: Path,
    events: Sequence[AudioEvent],
    ffmpeg: Optional[str] = None,
    output: Optional[Path] = None,
) -> Path:
    """
    Mix audio events into a video, replacing it in place.

    Args:
        video: Composed video file
        events: Audio events in any order (placement comes from start_ms)
        ffmpeg: FFmpeg binary
        output: Intermediate file (default: <video>.narrated.mp4)

    Returns:
        Path to the video with audio; the input path unchanged when there is
        nothing to mix or mixing failed
    """
    video = Path(video)
    if not events:
        return video

    output = Path(output) if output else video.with_suffix(".narrated.mp4")
    logger.info("Mixing %d audio clip(s) into %s", len(events), video.name)
    try:
        subprocess.run(
            [ffmpeg or FFMPEG_PATH, *build_mix_args(video, events, output)],
            capture_output=True, text=True, check=True,
        )
    except (subprocess.CalledProcessError, OSError) as e:
        logger.warning("Audio mixing failed: %s", e)
        output.unlink(missing_ok=True)
        return video

    output.replace(video)
    return video
