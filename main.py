#!/usr/bin/env python3
"""
proofcast - CLI

Run browser scenarios as narrated proof-of-behavior videos, compose raw
captures by hand, and audit collaboration runs after the fact.
"""
import asyncio
import importlib.util
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from config.settings import validate_api_keys

console = Console()


def setup_logging(verbose: bool):
    """Route library logging through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=verbose, markup=False)],
        force=True,
    )


def load_config(path: Optional[str]) -> dict:
    """Load session options from a YAML or JSON file."""
    if not path:
        return {}
    with open(path) as f:
        if path.endswith(".json"):
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} must contain a mapping of session options", param_hint="--config")
    return data


def load_scenario(path: str):
    """Import a scenario file as a module."""
    scenario_path = Path(path).resolve()
    spec = importlib.util.spec_from_file_location(f"scenario_{scenario_path.stem}", scenario_path)
    if spec is None or spec.loader is None:
        raise click.BadParameter(f"Cannot import {path}", param_hint="SCENARIO")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    if not hasattr(module, "scenario"):
        raise click.BadParameter(f"{path} does not define 'async def scenario(session)'", param_hint="SCENARIO")
    return module


def build_layout(layout: Optional[str], cols: Optional[int]):
    from proofcast.compositor import GridLayout

    if cols:
        return GridLayout(cols)
    return layout


def build_session_options(config: dict, **overrides) -> dict:
    """Merge config file options with command-line flags (flags win)."""
    from proofcast.narrator import NarrationOptions

    options = dict(config)
    narration = options.pop("narration", None)
    for key, value in overrides.items():
        if value is not None:
            options[key] = value

    if isinstance(narration, dict):
        narration = dict(narration)
        narration.setdefault("enabled", True)
        if "cache_dir" in narration:
            narration["cache_dir"] = Path(narration["cache_dir"])
        options["narration"] = NarrationOptions(**narration)
    elif narration:
        options["narration"] = NarrationOptions(enabled=True)

    if "display_size" in options and options["display_size"] is not None:
        options["display_size"] = tuple(options["display_size"])
    if isinstance(options.get("layout"), dict):
        options["layout"] = build_layout(None, options["layout"].get("cols"))
    if "output_dir" in options and options["output_dir"] is not None:
        options["output_dir"] = Path(options["output_dir"])
    return options


@click.group()
@click.version_option(version="1.0.0")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def cli(verbose: bool):
    """proofcast - Record browser scenarios as narrated proof videos."""
    setup_logging(verbose)


@cli.command()
@click.argument("scenario_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--config", "config_file", default=None, type=click.Path(exists=True, dir_okay=False),
              help="YAML or JSON file with session options")
@click.option("--name", default=None, help="Session name (default: scenario file name)")
@click.option("--mode", type=click.Choice(["human", "fast"]), default=None, help="Execution profile")
@click.option("--record/--no-record", default=None, help="Record video")
@click.option("--record-mode", type=click.Choice(["screencast", "screen"]), default=None,
              help="Per-pane screencast or whole-screen capture")
@click.option("--headed/--headless", default=None, help="Show the browser")
@click.option("--layout", type=click.Choice(["auto", "row", "column", "grid"]), default=None, help="Multi-pane layout")
@click.option("--cols", type=int, default=None, help="Grid columns (implies grid layout)")
@click.option("--narrate", is_flag=True, help="Enable narration")
@click.option("--voice", default=None, help="TTS voice")
@click.option("--language", default=None, help="Translate narration to this language")
@click.option("--seed", type=int, default=None, help="Seed for cursor paths")
@click.option("--output-dir", default=None, type=click.Path(file_okay=False), help="Artifact directory")
def run(scenario_file: str, config_file: Optional[str], name: Optional[str], mode: Optional[str],
        record: Optional[bool], record_mode: Optional[str], headed: Optional[bool], layout: Optional[str],
        cols: Optional[int], narrate: bool, voice: Optional[str], language: Optional[str],
        seed: Optional[int], output_dir: Optional[str]):
    """Run a scenario file and produce its video, subtitles and metadata."""
    from proofcast.errors import ProofcastError
    from proofcast.narrator import NarrationOptions
    from proofcast.session import Session

    config = load_config(config_file)
    module = load_scenario(scenario_file)

    options = build_session_options(
        config,
        name=name or config.get("name") or Path(scenario_file).stem,
        mode=mode,
        record=record,
        record_mode=record_mode,
        headed=headed,
        layout=build_layout(layout, cols),
        seed=seed,
        output_dir=Path(output_dir) if output_dir else None,
    )
    if narrate or voice or language:
        narration = options.get("narration") or NarrationOptions(enabled=True)
        narration.enabled = True
        if voice:
            narration.voice = voice
        if language:
            narration.language = language
        options["narration"] = narration
        missing = validate_api_keys()
        if missing:
            console.print(f"[bold red]Missing API keys:[/bold red] {', '.join(missing)}")
            console.print("Configure these in your .env file")
            sys.exit(1)

    factory = getattr(module, "create_session", None)
    session = factory(**options) if factory else Session(**options)

    console.print(Panel(
        f"[bold blue]Running Scenario[/bold blue]\n"
        f"File: {scenario_file}\nMode: {session.mode.value}  Record: {session.record_mode.value}\n"
        f"Artifacts: {session.artifact_dir}"
    ))

    try:
        result = asyncio.run(session.run(module.scenario))
    except ProofcastError as e:
        console.print(f"[bold red]Scenario failed:[/bold red] {e}")
        console.print(f"Artifacts: {session.artifact_dir}")
        sys.exit(1)

    table = Table(title="Run Complete")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Steps", str(len(result.steps)))
    table.add_row("Duration", f"{result.duration_ms / 1000:.1f}s")
    table.add_row("Video", str(result.video) if result.video else "[yellow]none[/yellow]")
    table.add_row("Subtitles", str(result.subtitles))
    table.add_row("Metadata", str(result.metadata))
    if result.thumbnail:
        table.add_row("Thumbnail", str(result.thumbnail))
    for role, path in result.role_subtitles.items():
        table.add_row(f"Subtitles ({role})", str(path))
    if result.audio_events:
        table.add_row("Audio Events", str(len(result.audio_events)))
    console.print(table)

    if result.sync_report is not None:
        print_sync_report(result.sync_report)
        if not result.sync_report.ok:
            sys.exit(2)


@cli.command()
@click.argument("raw_files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("-o", "--output", required=True, type=click.Path(dir_okay=False), help="Output mp4")
@click.option("--layout", type=click.Choice(["auto", "row", "column", "grid"]), default="auto", help="Multi-input layout")
@click.option("--cols", type=int, default=None, help="Grid columns (implies grid layout)")
@click.option("--duration", type=float, default=None, help="Wall-clock duration to retime to, in seconds")
@click.option("--keep-raw", is_flag=True, help="Keep the raw inputs")
def compose(raw_files: tuple, output: str, layout: str, cols: Optional[int],
            duration: Optional[float], keep_raw: bool):
    """Compose raw captures into one 60 fps video."""
    from proofcast.compositor import VideoCompositor
    from proofcast.errors import CompositionError
    from proofcast.ffmpeg import resolve_ffmpeg

    try:
        compositor = VideoCompositor(resolve_ffmpeg())
    except RuntimeError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        sys.exit(1)

    console.print(Panel(f"[bold blue]Composing Video[/bold blue]\nInputs: {len(raw_files)}\nOutput: {output}"))

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console
    ) as progress:
        task = progress.add_task("Encoding...", total=None)
        try:
            result = compositor.compose(
                [Path(p) for p in raw_files],
                Path(output),
                layout=build_layout(layout, cols),
                target_duration_s=duration,
                cleanup=not keep_raw,
            )
        except CompositionError as e:
            progress.stop()
            console.print(f"[bold red]Composition failed:[/bold red] {e}")
            sys.exit(1)
        progress.update(task, completed=True)

    table = Table(title="Video Composed")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Output", str(result.output_path))
    table.add_row("Layout", result.layout)
    table.add_row("Fallback", "yes" if result.fallback else "no")
    console.print(table)


def print_sync_report(report):
    """Render a sync audit as a rich table."""
    from proofcast.sync_audit import summarize

    table = Table(title="Sync Audit")
    table.add_column("Item", style="cyan")
    table.add_column("Adder")
    table.add_column("Added", justify="right")
    table.add_column("Observer")
    table.add_column("Seen", justify="right")
    table.add_column("Delta", justify="right")
    table.add_column("Result")

    for sample in report.samples:
        table.add_row(
            sample.item,
            sample.adder,
            f"{sample.added_ms / 1000:.1f}s",
            sample.observer,
            f"{sample.seen_ms / 1000:.1f}s",
            f"{sample.delta_s:+.2f}s",
            "[green]OK[/green]" if sample.ok else "[red]FAIL[/red]",
        )
    console.print(table)

    summary = summarize(report)
    if summary:
        console.print(f"[bold green]{summary}[/bold green]" if report.ok else f"[bold red]{summary}[/bold red]")
    else:
        console.print("[yellow]No add/see caption pairs found[/yellow]")


@cli.command()
@click.argument("metadata_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--add-pattern", default=None, help="Regex for 'item added' captions")
@click.option("--see-pattern", default=None, help="Regex for 'item observed' captions")
@click.option("--roles", default=None, help="Comma-separated actor ids (default: from metadata)")
def audit(metadata_file: str, add_pattern: Optional[str], see_pattern: Optional[str], roles: Optional[str]):
    """Run the sync audit on a finished run's metadata."""
    from proofcast.models import StepRecord
    from proofcast.sync_audit import ADD_PATTERN, SEE_PATTERN, audit_sync

    with open(metadata_file) as f:
        metadata = json.load(f)

    steps = [StepRecord.from_dict(s) for s in metadata.get("steps", [])]
    if roles:
        role_ids = [r.strip() for r in roles.split(",") if r.strip()]
    elif metadata.get("actors"):
        role_ids = [a["id"] for a in metadata["actors"]]
    else:
        role_ids = sorted({s.role for s in steps if s.role and s.role != "both"})

    if len(role_ids) != 2:
        console.print(f"[bold red]Error:[/bold red] need exactly two roles, found {role_ids or 'none'}")
        sys.exit(1)

    report = audit_sync(steps, role_ids, add_pattern or ADD_PATTERN, see_pattern or SEE_PATTERN)
    print_sync_report(report)
    if not report.ok:
        sys.exit(2)


@cli.command()
def check():
    """Check system requirements and API keys."""
    import shutil

    table = Table(title="System Check")
    table.add_column("Component", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Details", style="yellow")

    # Check FFmpeg
    from config.settings import FFMPEG_PATH

    ffmpeg = shutil.which(FFMPEG_PATH)
    table.add_row(
        "FFmpeg",
        "[green]OK[/green]" if ffmpeg else "[red]Missing[/red]",
        ffmpeg or "Install: apt install ffmpeg (or set FFMPEG_PATH)"
    )

    # Check API keys
    missing = validate_api_keys()
    table.add_row(
        "OpenAI API Key",
        "[green]Configured[/green]" if not missing else "[yellow]Optional[/yellow]",
        "For narration (TTS)"
    )

    # Check Playwright and its chromium
    try:
        from playwright.sync_api import sync_playwright
    except ImportError:
        table.add_row(
            "Playwright",
            "[red]Missing[/red]",
            "Run: pip install playwright && playwright install chromium"
        )
    else:
        from playwright.sync_api import Error as PlaywrightError

        try:
            with sync_playwright() as p:
                browser = p.chromium.launch(headless=True)
                version = browser.version
                browser.close()
            table.add_row("Chromium", "[green]OK[/green]", version)
        except PlaywrightError as e:
            table.add_row("Chromium", "[red]Missing[/red]", f"Run: playwright install chromium ({str(e).splitlines()[0]})")

    # Screen capture backend
    from proofcast.capture import ScreenCapture

    capture = ScreenCapture(Path("screen.mp4"))
    available, details = capture.is_available()
    table.add_row(
        "Screen Capture",
        "[green]OK[/green]" if available else "[yellow]Unavailable[/yellow]",
        f"{capture.platform}: {details}"
    )

    console.print(table)


if __name__ == "__main__":
    cli()
