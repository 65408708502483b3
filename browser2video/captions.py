"""
Caption generation module.

Writes one WebVTT cue per completed step ("Step <i>: <caption>") so the
composed video can be played with step titles as subtitles.
"""
import json
from pathlib import Path
from typing import Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class StepRecord:
    """A completed step, timed relative to the session start."""
    index: int
    caption: str
    start_ms: int
    end_ms: int

    def to_metadata(self) -> dict:
        return {
            "index": self.index,
            "caption": self.caption,
            "startMs": self.start_ms,
            "endMs": self.end_ms,
        }


def format_vtt_time(ms: float) -> str:
    """Format milliseconds as a WebVTT timestamp (HH:MM:SS.mmm)."""
    total_sec = int(ms // 1000)
    hours = total_sec // 3600
    minutes = (total_sec % 3600) // 60
    secs = total_sec % 60
    millis = int(ms % 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


def generate_webvtt(steps: Iterable[StepRecord]) -> str:
    lines = ["WEBVTT", ""]
    for step in steps:
        lines.append(f"{format_vtt_time(step.start_ms)} --> {format_vtt_time(step.end_ms)}")
        lines.append(f"Step {step.index}: {step.caption}")
        lines.append("")
    return "\n".join(lines) + "\n"


def write_webvtt(steps: Iterable[StepRecord], output: Path) -> Path:
    output = Path(output)
    output.write_text(generate_webvtt(steps), encoding="utf-8")
    return output


def steps_from_metadata(run_json: Path) -> list[StepRecord]:
    """Read the step list back from a run.json document."""
    with open(run_json, encoding="utf-8") as f:
        data = json.load(f)
    return [
        StepRecord(
            index=s["index"],
            caption=s["caption"],
            start_ms=s["startMs"],
            end_ms=s["endMs"],
        )
        for s in data.get("steps", [])
    ]


def regenerate_captions(run_json: str, output: str = None) -> str:
    """
    Convenience function to rebuild captions.vtt from run metadata.

    Args:
        run_json: Path to run.json
        output: Destination (captions.vtt next to run.json by default)

    Returns:
        Path to the written caption file
    """
    run_json = Path(run_json)
    target = Path(output) if output else run_json.with_name("captions.vtt")
    return str(write_webvtt(steps_from_metadata(run_json), target))
