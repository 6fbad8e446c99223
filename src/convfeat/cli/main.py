"""
CLI entry point for convfeat.

Commands:
  - 'info'    → load the configured extractor and print its cell geometry
  - 'extract' → compute one feature grid per image and save it as .npy
  - 'params'  → list the parameters understood by an extractor type

Every command reads the same YAML config (see ``convfeat.config``);
``--layer`` overrides ``extractor.params.layerName``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="convfeat",
    help="Dense per-cell CNN feature extraction.",
    add_completion=False,
)
console = Console()


def _load(config: Path, layer: Optional[str]):
    """Load the config, set up logging and build the extractor.

    Exits with code 1 on configuration or loading errors.
    """
    from pydantic import ValidationError

    from convfeat.config import build_extractor, load_config
    from convfeat.errors import ConvFeatError
    from convfeat.utils.logging import configure_logging, reset_logging

    try:
        cfg = load_config(config)
        # module imports already installed default handlers
        reset_logging()
        configure_logging(cfg.logging.level, cfg.logging.log_dir)
        if layer is not None:
            cfg.extractor.params.layer_name = layer
        return cfg, build_extractor(cfg)
    except (ConvFeatError, ValidationError, OSError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1)


@app.command()
def info(
    config: Path = typer.Option(..., "--config", "-c", help="Path to YAML config file"),
    layer: Optional[str] = typer.Option(None, "--layer", "-l", help="Comma-separated layer names (overrides config)"),
) -> None:
    """Print cell geometry, feature count and patchwork advice."""
    _, extractor = _load(config, layer)

    cell = extractor.cell_size()
    border = extractor.border_size()
    padding = extractor.patchwork_padding()
    max_size = extractor.max_image_size()

    table = Table(title=extractor.name)
    table.add_column("Property")
    table.add_column("Value")
    table.add_row("type", extractor.type)
    table.add_row("features", str(extractor.num_features()))
    table.add_row("cell size", f"{cell.width} x {cell.height}")
    table.add_row("border size", f"{border.width} x {border.height}")
    table.add_row("max image size", f"{max_size.width} x {max_size.height}" if max_size.width else "unlimited")
    table.add_row("multi-thread", str(extractor.supports_multi_thread()))
    table.add_row("patchwork", str(extractor.patchwork_processing()))
    table.add_row("patchwork padding", f"{padding.width} x {padding.height}")
    console.print(table)


@app.command()
def extract(
    images: list[Path] = typer.Argument(..., help="Image files"),
    config: Path = typer.Option(..., "--config", "-c", help="Path to YAML config file"),
    output: Path = typer.Option(Path("features"), "--output", "-o", help="Output directory"),
    layer: Optional[str] = typer.Option(None, "--layer", "-l", help="Comma-separated layer names (overrides config)"),
    save_config: bool = typer.Option(False, "--save-config", help="Write the effective config next to the features"),
) -> None:
    """Extract feature grids and save one .npy per image.

    Images that cannot be read or processed are reported and skipped; the
    command exits with code 1 if any image failed.
    """
    from convfeat.config import save_config_snapshot
    from convfeat.errors import ConvFeatError
    from convfeat.utils.logging import get_logger, log, log_grid

    cfg, extractor = _load(config, layer)
    logger = get_logger(__name__)

    if save_config:
        save_config_snapshot(cfg, output / "config_snapshot.yaml")

    failures = 0
    for image_path in images:
        try:
            grid = extractor.extract_from_file(image_path)
        except (ConvFeatError, FileNotFoundError) as exc:
            console.print(f"[bold red]{image_path}:[/bold red] {exc}")
            failures += 1
            continue
        log_grid(logger, image_path.name, grid.shape, extractor.cell_size())
        extractor.save_features(grid, output / image_path.stem)

    extractor.close()
    done = len(images) - failures
    log(f"extract_done | images={done} failed={failures} output={output}", severity="error" if failures else "ok")
    if failures:
        raise typer.Exit(code=1)


@app.command()
def params(
    extractor_type: str = typer.Option("cnn", "--type", "-t", help="Extractor type"),
) -> None:
    """List the parameters of an extractor type with their defaults."""
    from convfeat.extractors.registry import get_extractor_class

    try:
        cls = get_extractor_class(extractor_type)
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1)

    table = Table(title=f"{cls.type} parameters")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Default")
    table.add_column("Description")
    for spec in cls.param_specs():
        table.add_row(spec.name, spec.kind.__name__, repr(spec.default), spec.description)
    console.print(table)


if __name__ == "__main__":
    app()
