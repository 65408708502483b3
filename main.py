#!/usr/bin/env python3
"""
browser2video - CLI

Runs scenario files and re-processes run artifacts:
record a scenario -> compose pane videos -> rebuild captions.
"""
import asyncio
import importlib.util
import json
import logging
import shutil
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from config.settings import FFMPEG_PATH, validate_api_keys

console = Console()


def setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def load_scenario(path: Path):
    """
    Load the `scenario(session)` coroutine function from a Python file.

    Raises:
        click.ClickException: if the file has no scenario function
    """
    spec = importlib.util.spec_from_file_location(path.stem, path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    scenario = getattr(module, "scenario", None)
    if scenario is None or not asyncio.iscoroutinefunction(scenario):
        raise click.ClickException(f"{path} must define `async def scenario(session)`")
    return scenario


async def run_scenario(scenario, options):
    from browser2video.session import Session

    async with Session(options) as session:
        await scenario(session)
        return await session.finish()


@click.group()
@click.version_option(version="1.0.0")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def cli(verbose: bool):
    """browser2video - Record scripted browser and terminal sessions as videos."""
    setup_logging(verbose)


@cli.command()
@click.argument("scenario_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--mode", type=click.Choice(["human", "fast"]), default=None, help="Pacing mode")
@click.option("--record/--no-record", default=None, help="Record pane videos")
@click.option("--headed/--headless", default=None, help="Show the browser window")
@click.option("--output-dir", type=click.Path(path_type=Path), default=None, help="Artifact directory")
@click.option("--layout", default=None, help='auto, row, column, grid, grid:N or a JSON template like "[[0,1],[0,2]]"')
@click.option("--narrate", is_flag=True, help="Enable OpenAI narration")
@click.option("--voice", default=None, help="Narration voice")
@click.option("--language", default=None, help="Translate narration to this language first")
@click.option("--cdp-port", type=int, default=None, help="Expose Chrome DevTools on this port")
@click.option("--save-replay", is_flag=True, help="Also write replay.jsonl")
def run(scenario_file: Path, mode: str, record: bool, headed: bool, output_dir: Path, layout: str,
        narrate: bool, voice: str, language: str, cdp_port: int, save_replay: bool):
    """Run a scenario file and record it."""
    from browser2video.narrator import NarrationOptions
    from browser2video.session import SessionOptions

    scenario = load_scenario(scenario_file)

    narration = None
    if narrate:
        if validate_api_keys():
            console.print("[bold red]Error:[/bold red] OPENAI_API_KEY not configured in .env")
            sys.exit(1)
        narration = NarrationOptions(enabled=True)
        if voice:
            narration.voice = voice
        if language:
            narration.language = language

    options = SessionOptions(
        mode=mode,
        record=record,
        headed=headed,
        output_dir=output_dir,
        layout=layout,
        cdp_port=cdp_port,
        narration=narration,
        save_replay=save_replay,
        name=scenario_file.stem,
    )

    console.print(Panel(f"[bold blue]Running Scenario[/bold blue]\nFile: {scenario_file}"))
    result = asyncio.run(run_scenario(scenario, options))

    table = Table(title="Run Complete")
    table.add_column("Artifact", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Directory", str(result.artifact_dir))
    table.add_row("Video", str(result.video) if result.video else "-")
    table.add_row("Thumbnail", str(result.thumbnail) if result.thumbnail else "-")
    table.add_row("Captions", str(result.subtitles))
    table.add_row("Metadata", str(result.metadata))
    table.add_row("Duration", f"{result.duration_ms / 1000:.1f}s")
    table.add_row("Steps", str(len(result.steps)))
    table.add_row("Audio Events", str(len(result.audio_events)))
    if result.replay:
        table.add_row("Replay Log", str(result.replay))

    console.print(table)


@cli.command()
@click.argument("inputs", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", required=True, help="Output MP4")
@click.option("--layout", default=None, help="Layout (see `run --help`)")
@click.option("--offsets", default=None, help="Comma-separated start offsets in ms, one per input")
@click.option("--crop", default=None, help="Crop every pane to X,Y,W,H in CSS pixels (optional 5th value: viewport width)")
@click.option("--thumbnail", is_flag=True, help="Also write thumbnail.png next to the output")
def compose(inputs: tuple, output: str, layout: str, offsets: str, crop: str, thumbnail: bool):
    """Compose existing pane recordings into one video."""
    from browser2video.compositor import CssCrop, compose_videos
    from browser2video.errors import CompositionError
    from browser2video.thumbnail import thumbnail_from_video

    start_offsets = [int(x) for x in offsets.split(",")] if offsets else None
    if start_offsets is not None and len(start_offsets) != len(inputs):
        raise click.BadParameter("need one offset per input", param_hint="--offsets")

    css_crop = None
    if crop:
        try:
            css_crop = CssCrop.parse(crop)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--crop")

    console.print(Panel(f"[bold blue]Composing Video[/bold blue]\nInputs: {len(inputs)}\nLayout: {layout or 'auto'}"))

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console
    ) as progress:
        task = progress.add_task("Running ffmpeg...", total=None)
        try:
            result = compose_videos(list(inputs), Path(output), layout, start_offsets,
                                    ffmpeg=FFMPEG_PATH, css_crop=css_crop)
        except (CompositionError, RuntimeError) as e:
            console.print(f"[bold red]Composition failed:[/bold red] {e}")
            sys.exit(1)
        progress.update(task, completed=True)

    table = Table(title="Video Composed")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Output", str(result["output_path"]))
    table.add_row("Layout", result["layout"])
    table.add_row("Inputs", str(len(result["inputs"])))
    table.add_row("Duration", f"{result['duration']:.1f}s")

    if thumbnail:
        thumb = thumbnail_from_video(Path(output), Path(output).with_name("thumbnail.png"), ffmpeg=FFMPEG_PATH)
        table.add_row("Thumbnail", str(thumb) if thumb else "failed")

    console.print(table)


@cli.command()
@click.argument("run_json", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", default=None, help="Destination (captions.vtt next to run.json by default)")
def captions(run_json: str, output: str):
    """Rebuild captions.vtt from a run.json."""
    from browser2video.captions import regenerate_captions

    try:
        path = regenerate_captions(run_json, output)
    except (KeyError, json.JSONDecodeError) as e:
        console.print(f"[bold red]Error:[/bold red] {run_json} is not a run metadata file ({e})")
        sys.exit(1)
    console.print(f"[bold green]Captions written:[/bold green] {path}")


@cli.command()
def check():
    """Check external tools and API keys."""
    table = Table(title="Environment")
    table.add_column("Requirement", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Needed For", style="yellow")

    for tool, purpose in ((FFMPEG_PATH, "composition, audio mix"),
                          ("ffprobe", "audio durations"),
                          ("ffplay", "realtime narration playback")):
        found = shutil.which(tool)
        table.add_row(tool, found or "[red]missing[/red]", purpose)

    missing = validate_api_keys()
    table.add_row("OPENAI_API_KEY", "[red]missing[/red]" if missing else "set", "narration")

    console.print(table)
    if shutil.which(FFMPEG_PATH) is None:
        console.print("[bold yellow]Recording works without FFmpeg, but run.mp4 will not be produced.[/bold yellow]")


if __name__ == "__main__":
    cli()
