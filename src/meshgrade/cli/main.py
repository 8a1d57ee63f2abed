# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""
Command-line interface for meshgrade.

Provides commands for:
- grade: Grade a head mesh for HRTF simulation
- diagnose: Analyze a mesh and show diagnostics
- list-presets: Show available grading presets
- checkenv: Verify the environment is set up correctly
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from meshgrade import __version__
from meshgrade.core import (
    ConfigurationError,
    GradingConfig,
    MeshGrader,
    PRESETS,
    PRESET_DESCRIPTIONS,
    compute_diagnostics,
    compute_fingerprint,
    format_diagnostics,
    format_validation_result,
    get_preset,
    list_presets,
    load_mesh,
    save_mesh,
    validate_grading,
)


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S"
    )


def build_config(
    config_path: Optional[str],
    preset_name: Optional[str],
    overrides: dict,
) -> GradingConfig:
    """
    Combine a config file or preset with command-line overrides.

    Options left unset on the command line (None) do not override.

    Raises:
        ConfigurationError: If the combination is incomplete or invalid
        KeyError: If the preset does not exist
    """
    overrides = {k: v for k, v in overrides.items() if v is not None}

    if config_path:
        base = GradingConfig.load(config_path)
    elif preset_name:
        base = get_preset(preset_name)
        if base is None:
            raise KeyError(preset_name)
    else:
        base = None

    if base is None:
        config = GradingConfig.from_dict(overrides)
    else:
        config = base.replace(**overrides)

    return config.check()


@click.group()
@click.version_option(version=__version__, prog_name="meshgrade")
def main():
    """
    meshgrade - Adaptive mesh grading for HRTF simulation meshes.

    Use 'meshgrade COMMAND --help' for more information on each command.
    """
    pass


@main.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Path to input mesh file")
@click.option("--output", "-o", "output_path", type=click.Path(),
              help="Output file path (default: <input>_graded.<ext>)")
@click.option("--min-length", "-x", type=float, help="Minimum edge length (mm)")
@click.option("--max-length", "-y", type=float, help="Maximum edge length (mm)")
@click.option("--error", "-e", "error_tolerance", type=float,
              help="Allowed geometric error (mm, default: min length)")
@click.option("--side", "-z", type=click.Choice(["left", "right", "none"], case_sensitive=False),
              help="Ear to refine toward")
@click.option("--mode", type=click.Choice(["hybrid", "distance"], case_sensitive=False),
              help="Sizing strategy")
@click.option("--left-ear", nargs=3, type=float, default=None, metavar="X Y Z",
              help="Left ear-channel entrance (estimated if omitted)")
@click.option("--right-ear", nargs=3, type=float, default=None, metavar="X Y Z",
              help="Right ear-channel entrance (estimated if omitted)")
@click.option("--left-gamma", type=float, help="Scaling factor for the left ear estimate")
@click.option("--right-gamma", type=float, help="Scaling factor for the right ear estimate")
@click.option("--distance-norm", "distance_normalization", type=float,
              help="Distance over which edges grow from min to max (0: mesh extent)")
@click.option("--landmark-radius", type=float,
              help="Falloff radius of the hybrid ear-channel refinement (0: 5 x max length)")
@click.option("--iterations", type=int, help="Number of remeshing iterations")
@click.option("--no-project", is_flag=True, help="Do not project vertices onto the input surface")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True),
              help="Path to grading config (JSON/YAML)")
@click.option("--preset", "-p", "preset_name", type=str,
              help="Name of built-in preset to use")
@click.option("--report", "-r", "report_path", type=click.Path(),
              help="Path for JSON report output")
@click.option("--overwrite", is_flag=True, help="Overwrite existing output files")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def grade(
    input_path: str,
    output_path: Optional[str],
    min_length: Optional[float],
    max_length: Optional[float],
    error_tolerance: Optional[float],
    side: Optional[str],
    mode: Optional[str],
    left_ear: Optional[tuple],
    right_ear: Optional[tuple],
    left_gamma: Optional[float],
    right_gamma: Optional[float],
    distance_normalization: Optional[float],
    landmark_radius: Optional[float],
    iterations: Optional[int],
    no_project: bool,
    config_path: Optional[str],
    preset_name: Optional[str],
    report_path: Optional[str],
    overwrite: bool,
    verbose: bool
):
    """
    Grade a mesh: fine elements at the ear channel, coarse elsewhere.

    Examples:

        meshgrade grade -i head.ply -x 1 -y 10 -z left

        meshgrade grade -i head.stl -p hrtf-both -o graded.stl

        meshgrade grade -i head.stl -x 1 -y 8 --mode distance --left-ear -70 0 0
    """
    setup_logging(verbose)

    input_path = Path(input_path)

    if output_path:
        output_path = Path(output_path)
    else:
        output_path = input_path.parent / f"{input_path.stem}_graded{input_path.suffix}"

    if output_path.exists() and not overwrite:
        click.echo(f"Error: Output file exists: {output_path}")
        click.echo("Use --overwrite to replace it.")
        sys.exit(1)

    overrides = {
        "min_length": min_length,
        "max_length": max_length,
        "error_tolerance": error_tolerance,
        "side": side.lower() if side else None,
        "mode": mode.lower() if mode else None,
        # click passes an empty tuple for unset nargs options
        "left_ear_channel": tuple(left_ear) if left_ear else None,
        "right_ear_channel": tuple(right_ear) if right_ear else None,
        "left_gamma": left_gamma,
        "right_gamma": right_gamma,
        "distance_normalization": distance_normalization,
        "landmark_radius": landmark_radius,
        "iterations": iterations,
        "project_to_original": False if no_project else None,
        "verbose": True if verbose else None,
    }

    try:
        config = build_config(config_path, preset_name, overrides)
    except KeyError:
        click.echo(f"Error: Unknown preset '{preset_name}'")
        click.echo(f"Available presets: {', '.join(list_presets())}")
        sys.exit(1)
    except ConfigurationError as e:
        click.echo("Configuration errors:")
        for error in e.errors:
            click.echo(f"  - {error}")
        sys.exit(1)
    except (OSError, ValueError, ImportError) as e:
        click.echo(f"Error loading config: {e}")
        sys.exit(1)

    click.echo(f"Loading: {input_path}")
    try:
        mesh = load_mesh(input_path)
    except (OSError, ValueError) as e:
        click.echo(f"Error loading mesh: {e}")
        sys.exit(1)

    original_mesh = mesh.copy()
    click.echo(f"  Vertices: {len(mesh.vertices):,}")
    click.echo(f"  Faces: {len(mesh.faces):,}")

    click.echo(
        f"\nGrading: mode={config.mode}, side={config.side}, "
        f"lengths {config.min_length}..{config.max_length} mm"
    )

    def progress(iteration: int, total: int):
        click.echo(f"  [{iteration}/{total}] remeshing...")

    try:
        result = MeshGrader(config).run(mesh, progress_callback=progress)
    except ValueError as e:
        click.echo(f"\nGrading failed: {e}")
        sys.exit(1)

    click.echo(f"\nGrading completed in {result.duration_ms:.1f}ms")
    click.echo(f"  Vertices: {result.original_vertex_count:,} -> {result.vertex_count:,}")
    click.echo(f"  Faces: {result.original_face_count:,} -> {result.face_count:,}")

    if config.verbose:
        landmarks = result.landmarks
        click.echo(
            f"  Left ear channel: {landmarks.left_ear_channel} "
            f"({'estimated, gamma ' + str(landmarks.left_gamma) if landmarks.left_estimated else 'given'})"
        )
        click.echo(
            f"  Right ear channel: {landmarks.right_ear_channel} "
            f"({'estimated, gamma ' + str(landmarks.right_gamma) if landmarks.right_estimated else 'given'})"
        )
        click.echo(f"  Distance normalization: {result.normalization:.3f}")
        if config.mode == "hybrid" and config.side != "none":
            click.echo(f"  Landmark radius: {config.effective_landmark_radius:.3f}")
        click.echo(f"  Skipped operations: {result.stats.skipped_operations}")
        if result.low_confidence_count:
            click.echo(f"  Low-confidence curvature: {result.low_confidence_count} vertices")

    validation = validate_grading(original_mesh, result.mesh, config)

    click.echo(f"\nSaving: {output_path}")
    try:
        save_mesh(result.mesh, output_path)
    except (OSError, ValueError) as e:
        click.echo(f"Error saving mesh: {e}")
        sys.exit(1)

    if report_path:
        report_path = Path(report_path)
        report = {
            "input": str(input_path),
            "output": str(output_path),
            "fingerprint": compute_fingerprint(original_mesh),
            "grading": result.to_dict(),
            "validation": validation.to_dict(),
        }
        report_path.parent.mkdir(parents=True, exist_ok=True)
        with open(report_path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)
        click.echo(f"Report saved: {report_path}")

    if validation.is_acceptable:
        click.echo("\n✓ Graded mesh is within bounds")
    else:
        click.echo(format_validation_result(validation))


@main.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Path to mesh file")
@click.option("--json", "-j", "json_output", is_flag=True, help="Output as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def diagnose(input_path: str, json_output: bool, verbose: bool):
    """
    Analyze a mesh and show diagnostics.

    Examples:

        meshgrade diagnose --input head.stl

        meshgrade diagnose -i head.stl --json
    """
    setup_logging(verbose)

    input_path = Path(input_path)

    try:
        mesh = load_mesh(input_path)
    except (OSError, ValueError) as e:
        click.echo(f"Error loading mesh: {e}")
        sys.exit(1)

    diag = compute_diagnostics(mesh)

    if json_output:
        click.echo(json.dumps(diag.to_dict(), indent=2))
    else:
        click.echo(format_diagnostics(diag, f"Diagnostics: {input_path.name}"))


@main.command("list-presets")
def list_presets_cmd():
    """
    List available grading presets.
    """
    click.echo("Available presets:\n")
    for name, config in PRESETS.items():
        click.echo(f"  {name}")
        click.echo(f"    {PRESET_DESCRIPTIONS.get(name, '')}")
        click.echo(
            f"    mode={config.mode}, side={config.side}, "
            f"lengths {config.min_length}..{config.max_length} mm"
        )
        click.echo()


@main.command()
def checkenv():
    """
    Check if the environment is set up correctly.
    """
    click.echo("meshgrade Environment Check")
    click.echo("=" * 50)

    import platform
    click.echo(f"\nPython: {platform.python_version()}")

    click.echo("\nCore Dependencies:")

    import numpy
    import scipy
    import trimesh
    click.echo(f"  ✓ numpy: {numpy.__version__}")
    click.echo(f"  ✓ scipy: {scipy.__version__}")
    click.echo(f"  ✓ trimesh: {trimesh.__version__}")

    click.echo("\nOptional Dependencies:")

    from meshgrade.core.config import YAML_AVAILABLE
    if YAML_AVAILABLE:
        click.echo("  ✓ PyYAML: installed")
    else:
        click.echo("  ○ PyYAML: not installed (JSON-only grading configs)")

    click.echo("\n" + "=" * 50)
    click.echo("Environment check complete.")


if __name__ == "__main__":
    main()
