"""
CLI for the age-threshold minimum wage study.

Usage:
    agewage policies
    agewage harmonize [data_dir]
    agewage build-panel [data_dir]
    agewage estimate [--event nlw2016]
"""

import logging
from pathlib import Path
from typing import List, Optional

import pandas as pd
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

app = typer.Typer(
    name="agewage",
    help="Age-threshold minimum wage effects from labour force survey waves",
)
console = Console()


def setup_logging(level: Optional[str] = None) -> None:
    """Configure logging with rich output."""
    from config.settings import get_settings

    logging.basicConfig(
        level=level or get_settings().log_level,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _default_panel_path() -> Path:
    from config.settings import get_settings

    settings = get_settings()
    return settings.project_root / settings.processed_data_dir / "panel.parquet"


def _default_raw_dir() -> Path:
    from config.settings import get_settings

    settings = get_settings()
    return settings.project_root / settings.raw_data_dir


@app.command()
def policies():
    """List the configured policy events."""
    from agewage.data.policy_events import get_policy_calendar

    calendar = get_policy_calendar()

    table = Table(title="Policy Events")
    table.add_column("Slug", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("Age", style="yellow", justify="right")
    table.add_column("Implemented", style="green")
    table.add_column("Isolation window", style="white")

    for event in calendar:
        start, end = calendar.isolation_window(event)
        table.add_row(
            event.slug,
            event.name,
            str(event.age_threshold),
            event.implementation_date.isoformat(),
            f"{start or '...'} to {end or '...'}",
        )
    console.print(table)


@app.command()
def harmonize(
    data_dir: Optional[Path] = typer.Argument(None, help="Directory of wave files"),
    workers: int = typer.Option(1, help="Harmonization threads"),
):
    """Harmonize every wave and report missing canonical variables."""
    setup_logging()

    from agewage.data.harmonize import SchemaHarmonizer
    from agewage.data.waves import FileWaveLoader

    data_dir = data_dir or _default_raw_dir()
    if not data_dir.is_dir():
        console.print(f"[red]Data directory not found: {data_dir}[/red]")
        raise typer.Exit(1)
    loader = FileWaveLoader.from_directory(data_dir)
    raw = loader.load_all()
    if not raw:
        console.print(f"[red]No wave files found in {data_dir}[/red]")
        raise typer.Exit(1)

    harmonized = SchemaHarmonizer().harmonize_all(raw, max_workers=workers)

    table = Table(title="Harmonized Waves")
    table.add_column("Wave", style="cyan")
    table.add_column("Rows", justify="right")
    table.add_column("Weight variable", style="green")
    table.add_column("Missing", style="yellow")
    for wave, hw in harmonized.items():
        weight = hw.resolutions["weight"].synonym or "[red]none[/red]"
        table.add_row(wave.label, f"{len(hw):,}", weight, ", ".join(hw.missing_variables) or "-")
    console.print(table)

    failed = [w.label for w in raw if w not in harmonized]
    if failed:
        console.print(f"[red]Failed waves: {', '.join(failed)}[/red]")


@app.command()
def build_panel(
    data_dir: Optional[Path] = typer.Argument(None, help="Directory of wave files"),
    start_year: Optional[int] = typer.Option(None, help="First survey year"),
    end_year: Optional[int] = typer.Option(None, help="Last survey year"),
    dedup: Optional[str] = typer.Option(None, help="Deduplication: none | person_period"),
    output: Optional[Path] = typer.Option(None, help="Output path"),
    workers: int = typer.Option(1, help="Harmonization threads"),
):
    """Build the individual-quarter panel from wave files."""
    setup_logging()

    from agewage.data.panel import PanelBuilder
    from agewage.data.waves import FileWaveLoader
    from agewage.engine.pipeline import ThresholdPipeline

    data_dir = data_dir or _default_raw_dir()
    if not data_dir.is_dir():
        console.print(f"[red]Data directory not found: {data_dir}[/red]")
        raise typer.Exit(1)
    loader = FileWaveLoader.from_directory(data_dir)
    raw = loader.load_all(start_year=start_year, end_year=end_year)
    pipeline = ThresholdPipeline(
        builder=PanelBuilder(dedup=dedup, start_year=start_year, end_year=end_year),
        max_workers=workers,
    )
    result = pipeline.build_panel(raw)
    if result.panel.empty:
        console.print("[red]Panel is empty[/red]")
        raise typer.Exit(1)

    path = output or _default_panel_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    result.panel.to_parquet(path)

    console.print(f"Saved panel to {path}")
    console.print(f"Observations: {result.n_obs:,}, persons: {result.n_persons:,}")
    console.print(f"Waves used: {len(result.waves_used)}, excluded: {result.waves_excluded or '-'}")
    for issue in result.issues:
        console.print(f"[yellow]{issue}[/yellow]")


@app.command()
def estimate(
    panel_path: Optional[Path] = typer.Option(None, help="Path to panel data"),
    event: Optional[List[str]] = typer.Option(None, help="Reform slug(s), default all"),
    age_span: Optional[int] = typer.Option(None, help="Ages within threshold +/- span"),
    output: Optional[Path] = typer.Option(None, help="Write results table to CSV"),
    workers: int = typer.Option(1, help="Reforms estimated in parallel"),
):
    """Estimate DiD, event study and RDD for each reform."""
    setup_logging()

    from config.settings import get_settings
    from agewage.data.panel import PanelBuildResult
    from agewage.engine.pipeline import ThresholdPipeline

    panel_path = panel_path or _default_panel_path()
    if not panel_path.exists():
        console.print("[red]Panel not found. Run 'build-panel' first.[/red]")
        raise typer.Exit(1)

    panel = pd.read_parquet(panel_path)
    panel["period"] = pd.to_datetime(panel["date"]).dt.to_period(get_settings().period_freq)

    pipeline = ThresholdPipeline(age_span=age_span, max_workers=workers)
    result = pipeline.run_panel(PanelBuildResult(panel=panel), events=event or None)
    results = result.results_table()

    table = Table(title="Treatment Effects")
    table.add_column("Reform", style="cyan")
    table.add_column("Outcome")
    table.add_column("Model")
    table.add_column("Estimate", justify="right")
    table.add_column("SE", justify="right")
    table.add_column("p", justify="right")
    table.add_column("Reliable")
    for row in results[results["model"].isin(["did", "rdd", "pre_trend_wald"])].itertuples():
        table.add_row(
            row.reform, row.outcome, row.model,
            f"{row.estimate:.4f}",
            "" if pd.isna(row.std_error) else f"{row.std_error:.4f}",
            f"{row.pvalue:.3f}",
            "yes" if row.reliable else "[red]no[/red]",
        )
    console.print(table)

    for slug, run in result.reforms.items():
        for stage, message in run.errors.items():
            console.print(f"[red]{slug} {stage}: {message}[/red]")

    if output:
        results.to_csv(output, index=False)
        console.print(f"Saved results to {output}")


if __name__ == "__main__":
    app()
