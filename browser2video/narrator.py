"""
Narration module using OpenAI TTS.

Generates (and caches) speech for step narration, collects timed audio
events while a session runs, and mixes them into the final video with
FFmpeg.
"""
import asyncio
import hashlib
import logging
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable, Optional
from dataclasses import dataclass

import openai

from config.settings import (
    OPENAI_API_KEY, TTS_MODEL, TTS_VOICE, TTS_SPEED, TTS_CACHE_DIR,
    TRANSLATION_MODEL, SPEAK_PACING_MS, EFFECT_VOLUME, SFX_DIR,
    AUDIO_CODEC, AUDIO_BITRATE,
)
from .errors import NarrationError
from .media import sibling_tool

logger = logging.getLogger(__name__)

MP3_FALLBACK_BITRATE = 128000


@dataclass
class NarrationOptions:
    """How a session narrates."""
    enabled: bool = False
    api_key: Optional[str] = None
    cache_dir: Path = TTS_CACHE_DIR
    voice: str = TTS_VOICE
    speed: float = TTS_SPEED
    model: str = TTS_MODEL
    language: Optional[str] = None
    realtime: bool = False


@dataclass(frozen=True)
class AudioEvent:
    """A narration clip or sound effect placed on the session timeline."""
    kind: str
    start_ms: int
    duration_ms: int
    audio_path: str
    label: str
    volume: float = 1.0

    def to_metadata(self) -> dict:
        return {
            "type": self.kind,
            "startMs": self.start_ms,
            "durationMs": self.duration_ms,
            "label": self.label,
        }


def tts_cache_key(model: str, voice: str, speed: float, text: str,
                  language: Optional[str] = None) -> str:
    """First 16 hex chars of sha256("model:voice:speed[:language]:text")."""
    lang_part = f":{language}" if language else ""
    payload = f"{model}:{voice}:{format(speed, 'g')}{lang_part}:{text}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def translation_cache_key(language: str, text: str) -> str:
    return hashlib.sha256(f"{language}:{text}".encode("utf-8")).hexdigest()[:16]


def get_audio_duration_ms(audio: Path, ffmpeg: Optional[str] = None) -> int:
    """Duration via ffprobe, or estimated from file size as 128kbps MP3."""
    cmd = [
        sibling_tool(ffmpeg, "ffprobe"), "-v", "error",
        "-show_entries", "format=duration",
        "-of", "csv=p=0",
        str(audio)
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        return round(float(result.stdout.strip()) * 1000)
    except (OSError, subprocess.CalledProcessError, ValueError):
        pass

    size = Path(audio).stat().st_size
    return round(size * 8 / MP3_FALLBACK_BITRATE * 1000)


def play_audio_file(audio: Path, ffmpeg: Optional[str] = None):
    """Start playback through the speakers without waiting for it."""
    if sys.platform == "darwin":
        cmd = ["afplay", str(audio)]
    else:
        cmd = [sibling_tool(ffmpeg, "ffplay"), "-nodisp", "-autoexit", "-loglevel", "quiet", str(audio)]
    try:
        subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
                         start_new_session=True)
    except OSError as e:
        logger.warning("Realtime playback unavailable (%s): %s", cmd[0], e)


def resolve_sfx_path(name: str) -> Optional[Path]:
    """Bundled effect (assets/sfx/<name>.wav|.mp3) or a literal file path."""
    for candidate in (SFX_DIR / f"{name}.wav", SFX_DIR / f"{name}.mp3"):
        if candidate.exists():
            return candidate
    path = Path(name)
    if path.exists():
        return path
    return None


class TTSEngine:
    """Generates speech with OpenAI TTS, caching audio and translations on disk."""

    def __init__(self, api_key: str, cache_dir: Path = TTS_CACHE_DIR, voice: str = TTS_VOICE,
                 speed: float = TTS_SPEED, model: str = TTS_MODEL,
                 language: Optional[str] = None, client=None):
        self.client = client or openai.AsyncOpenAI(api_key=api_key)
        self.cache_dir = Path(cache_dir)
        self.voice = voice
        self.speed = speed
        self.model = model
        self.language = language
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    async def translate(self, text: str) -> str:
        """
        Translate text to the configured language.

        Results are cached next to the audio; on API failure the original
        text is returned.
        """
        if not self.language:
            return text

        cache_file = self.cache_dir / f"tr_{translation_cache_key(self.language, text)}.txt"
        if cache_file.exists():
            return cache_file.read_text(encoding="utf-8")

        logger.info("Translating to %s: %r", self.language, text[:50])
        try:
            response = await self.client.chat.completions.create(
                model=TRANSLATION_MODEL,
                messages=[
                    {
                        "role": "system",
                        "content": f"Translate the following text to {self.language}. "
                                   "Respond with ONLY the translation, no explanations or extra text.",
                    },
                    {"role": "user", "content": text},
                ],
                temperature=0.3,
            )
        except openai.APIError as e:
            logger.warning("Translation failed, using original text: %s", e)
            return text

        translated = (response.choices[0].message.content or "").strip() or text
        cache_file.write_text(translated, encoding="utf-8")
        return translated

    async def generate(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None,
                       ffmpeg: Optional[str] = None) -> tuple[Path, int]:
        """
        Generate (or fetch cached) speech audio.

        Returns:
            (mp3 path, duration in ms)

        Raises:
            NarrationError: the TTS request failed
        """
        voice = voice or self.voice
        speed = speed or self.speed

        tts_text = await self.translate(text) if self.language else text
        key = tts_cache_key(self.model, voice, speed, text, self.language)
        audio_path = self.cache_dir / f"{key}.mp3"

        if audio_path.exists():
            return audio_path, get_audio_duration_ms(audio_path, ffmpeg)

        logger.info("Generating speech: %r", tts_text[:60])
        try:
            response = await self.client.audio.speech.create(
                model=self.model,
                voice=voice,
                input=tts_text,
                speed=speed,
                response_format="mp3",
            )
        except openai.APIError as e:
            raise NarrationError(f"OpenAI TTS request failed: {e}") from e

        audio_path.write_bytes(response.content)
        duration_ms = get_audio_duration_ms(audio_path, ffmpeg)
        logger.info("Generated %.1fs of audio", duration_ms / 1000)
        return audio_path, duration_ms


class AudioDirector:
    """Collects narration and effect events on the session timeline."""

    def __init__(self, tts: TTSEngine, start_time_ms: float, ffmpeg: Optional[str] = None,
                 realtime: bool = False, on_event: Optional[Callable[[AudioEvent], None]] = None):
        self.tts = tts
        self.start_time_ms = start_time_ms
        self.ffmpeg = ffmpeg
        self.realtime = realtime
        self.on_event = on_event
        self._events: list[AudioEvent] = []

    def _now(self) -> int:
        return int(time.time() * 1000 - self.start_time_ms)

    def _record(self, event: AudioEvent):
        self._events.append(event)
        if self.on_event:
            self.on_event(event)

    @property
    def events(self) -> list[AudioEvent]:
        return list(self._events)

    async def warmup(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None):
        """Generate audio ahead of time so a later speak() starts instantly."""
        await self.tts.generate(text, voice, speed, self.ffmpeg)

    async def speak(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None):
        """Narrate text and block for its duration plus a short pacing gap."""
        start_ms = self._now()
        audio_path, duration_ms = await self.tts.generate(text, voice, speed, self.ffmpeg)
        self._record(AudioEvent("speak", start_ms, duration_ms, str(audio_path), text, 1.0))

        if self.realtime:
            play_audio_file(audio_path, self.ffmpeg)

        await asyncio.sleep((duration_ms + SPEAK_PACING_MS) / 1000)

    async def effect(self, name: str, volume: float = EFFECT_VOLUME):
        """Place a sound effect at the current time; does not wait for it."""
        sfx = resolve_sfx_path(name)
        if not sfx:
            logger.warning("Unknown sound effect: %r", name)
            return
        start_ms = self._now()
        duration_ms = get_audio_duration_ms(sfx, self.ffmpeg)
        self._record(AudioEvent("effect", start_ms, duration_ms, str(sfx), name, volume))


class NoopAudioDirector:
    """Silent stand-in used when narration is off or no API key is configured."""

    @property
    def events(self) -> list[AudioEvent]:
        return []

    async def warmup(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None):
        pass

    async def speak(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None):
        pass

    async def effect(self, name: str, volume: float = EFFECT_VOLUME):
        pass


def create_audio_director(options: Optional[NarrationOptions], start_time_ms: float,
                          ffmpeg: Optional[str] = None,
                          on_event: Optional[Callable[[AudioEvent], None]] = None):
    """Real director when narration is enabled and a key exists, no-op otherwise."""
    if not options or not options.enabled:
        return NoopAudioDirector()

    api_key = options.api_key or os.getenv("OPENAI_API_KEY") or OPENAI_API_KEY
    if not api_key:
        logger.warning("No OpenAI API key found (set OPENAI_API_KEY); narration is silent")
        return NoopAudioDirector()

    tts = TTSEngine(
        api_key=api_key,
        cache_dir=options.cache_dir,
        voice=options.voice,
        speed=options.speed,
        model=options.model,
        language=options.language,
    )
    return AudioDirector(tts, start_time_ms, ffmpeg=ffmpeg, realtime=options.realtime, on_event=on_event)


def build_mix_args(video: Path, events: list[AudioEvent], output: Path) -> list[str]:
    """ffmpeg arguments delaying each clip to its start time and mixing them under the video."""
    args = ["-y", "-i", str(video)]
    for event in events:
        args += ["-i", event.audio_path]

    filter_parts = []
    mix_inputs = []
    for i, event in enumerate(events):
        delay = max(0, round(event.start_ms))
        chain = f"[{i + 1}:a]adelay={delay}|{delay}"
        if event.volume != 1.0:
            chain += f",volume={event.volume:.2f}"
        chain += f",apad[a{i}]"
        filter_parts.append(chain)
        mix_inputs.append(f"[a{i}]")
    filter_parts.append(f"{''.join(mix_inputs)}amix=inputs={len(events)}:normalize=0[mixed]")

    args += [
        "-filter_complex", ";".join(filter_parts),
        "-map", "0:v", "-map", "[mixed]",
        "-c:v", "copy",
        "-c:a", AUDIO_CODEC, "-b:a", AUDIO_BITRATE,
        "-shortest",
        str(output),
    ]
    return args


def mix_audio_into_video(video: Path, events: list[AudioEvent], ffmpeg: str = "ffmpeg") -> Path:
    """
    Mix audio events into the video, replacing it in place.

    Args:
        video: Composed MP4
        events: Narration and effect events
        ffmpeg: ffmpeg binary

    Returns:
        The video path (unchanged when there is nothing to mix or mixing failed)
    """
    video = Path(video)
    if not events:
        return video

    output = video.with_suffix(".narrated.mp4")
    logger.info("Mixing %d audio clip(s) into %s", len(events), video.name)
    try:
        subprocess.run([ffmpeg, *build_mix_args(video, events, output)],
                       capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        logger.warning("Audio mixing failed, keeping silent video: %s", getattr(e, "stderr", None) or e)
        return video

    output.replace(video)
    return video
