"""
Central configuration for browser2video.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).parent.parent
ASSETS_DIR = BASE_DIR / "assets"
SFX_DIR = ASSETS_DIR / "sfx"

# Run artifacts land in ./artifacts/<scenario>-<timestamp> unless overridden
ARTIFACTS_DIR = Path("artifacts")

# API Keys
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")

# Video settings
VIDEO_FPS = 60
VIDEO_CODEC = "libx264"
VIDEO_PRESET = "veryfast"
VIDEO_CRF = 18
PIXEL_FORMAT = "yuv420p"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"
FFMPEG_PATH = "ffmpeg"

# TTS settings
TTS_MODEL = "tts-1"
TTS_VOICE = "ash"
TTS_SPEED = 1.0
TTS_CACHE_DIR = Path(".cache/tts")
TRANSLATION_MODEL = "gpt-4o-mini"
SPEAK_PACING_MS = 50
EFFECT_VOLUME = 0.5

# Pane settings
BROWSER_VIEWPORT = {"width": 1280, "height": 720}
TERMINAL_VIEWPORT = {"width": 800, "height": 600}
XTERM_VIEWPORT = {"width": 800, "height": 500}
GRID_VIEWPORT = {"width": 1280, "height": 720}
PAGE_BACKGROUND = "#1a1a2e"
TERMINAL_BACKGROUND = "#1e1e1e"

# Timing
ELEMENT_TIMEOUT_MS = 3000
NAVIGATION_TIMEOUT_MS = 30000
IFRAME_BOX_TTL_MS = 2000
FINAL_FRAME_FLUSH_MS = 80  # two frames at Playwright's ~25fps capture

# Pseudo-terminal bridge
PTY_MAX_BUFFER = 1024 * 1024
PTY_INITIAL_SIZE = (80, 24)

# Managed web servers
SERVER_READY_TIMEOUT_MS = 30000
SERVER_STOP_TIMEOUT_MS = 3000
SERVER_OUTPUT_LIMIT = 32768

# Thumbnail
THUMBNAIL_MAX_SIZE = (1280, 720)

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-gpu",
    "--hide-scrollbars",
    "--disable-extensions",
    "--disable-sync",
    "--no-first-run",
    "--disable-background-networking",
]


def validate_api_keys():
    """Check that required API keys are configured."""
    missing = []
    if not os.getenv("OPENAI_API_KEY", OPENAI_API_KEY or ""):
        missing.append("OPENAI_API_KEY")
    return missing


def _env_bool(name: str):
    value = os.getenv(name)
    if value is None:
        return None
    return value.lower() != "false"


def running_under_pytest() -> bool:
    return "PYTEST_CURRENT_TEST" in os.environ


def env_overrides() -> dict:
    """
    Read the B2V_* environment overrides.

    Only variables that are actually set appear in the result, so callers
    can layer it between explicit options and defaults.
    """
    overrides = {}

    if os.getenv("B2V_MODE") in ("human", "fast"):
        overrides["mode"] = os.getenv("B2V_MODE")
    if _env_bool("B2V_RECORD") is not None:
        overrides["record"] = _env_bool("B2V_RECORD")
    if _env_bool("B2V_HEADED") is not None:
        overrides["headed"] = _env_bool("B2V_HEADED")
    if os.getenv("B2V_CDP_PORT"):
        overrides["cdp_port"] = int(os.getenv("B2V_CDP_PORT"))
    if os.getenv("B2V_FFMPEG"):
        overrides["ffmpeg_path"] = os.getenv("B2V_FFMPEG")

    narration = {}
    if os.getenv("B2V_VOICE"):
        narration["voice"] = os.getenv("B2V_VOICE")
    if os.getenv("B2V_NARRATION_SPEED"):
        narration["speed"] = float(os.getenv("B2V_NARRATION_SPEED"))
    if os.getenv("B2V_REALTIME_AUDIO"):
        narration["realtime"] = os.getenv("B2V_REALTIME_AUDIO") == "true"
    if os.getenv("B2V_NARRATION_LANGUAGE"):
        narration["language"] = os.getenv("B2V_NARRATION_LANGUAGE")
    if narration:
        overrides["narration"] = narration

    overrides["narrate"] = os.getenv("B2V_NARRATE") == "true" or bool(os.getenv("OPENAI_API_KEY"))
    return overrides
