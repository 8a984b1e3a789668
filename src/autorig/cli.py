"""Click CLI entry point for autorig."""

from __future__ import annotations

import json
import os
from pathlib import Path

import click
import numpy as np

from autorig import __version__
from autorig.config import Settings, load_settings
from autorig.errors import AutorigError
from autorig.exporter import export_glb
from autorig.geometry import analyze_vertices, summarize_analysis
from autorig.mesh import MeshData, load_glb_meshes
from autorig.models import MeshWeights, ProjectData, Skeleton
from autorig.project import (
    calculate_model_hash,
    load_project,
    resolve_model_path,
    save_project,
    validate_project,
    verify_model_integrity,
)
from autorig.suggest import bones_from_suggestions, suggest_bones
from autorig.warning_policy import WARNING_CODES, WarningPolicy
from autorig.weights import calculate_automatic_weights

_warn_as_error_option = click.option(
    "--warn-as-error",
    "warn_as_error",
    type=str,
    default=None,
    help="Comma-separated W-codes to treat as errors (e.g. W01,W02).",
)
_suppress_warning_option = click.option(
    "--suppress-warning",
    "suppress_warning",
    type=str,
    default=None,
    help="Comma-separated W-codes to suppress (e.g. W03).",
)
_settings_option = click.option(
    "--settings",
    "settings_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML file with auto_bones / auto_weights settings.",
)
_format_option = click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
    help="Output format.",
)


def _build_warning_policy(
    warn_as_error: str | None, suppress_warning: str | None
) -> WarningPolicy | None:
    """Parse CLI warning options into a WarningPolicy, or None if unset."""
    if warn_as_error is None and suppress_warning is None:
        return None
    try:
        return WarningPolicy.from_options(warn_as_error, suppress_warning)
    except ValueError as e:
        raise click.UsageError(str(e)) from e


def _load_settings(settings_file: Path | None) -> Settings:
    return load_settings(settings_file) if settings_file is not None else Settings()


def _world_vertices(meshes: list[MeshData]) -> np.ndarray:
    if not meshes:
        return np.zeros((0, 3), dtype=np.float64)
    return np.vstack([m.world_positions() for m in meshes])


def _project_meshes(project: ProjectData, project_file: Path, policy: WarningPolicy | None) -> list[MeshData]:
    if not project.model_path:
        raise click.ClickException("Project has no modelPath")
    model = resolve_model_path(project, project_file)
    if not model.exists():
        raise click.ClickException(f"Model file not found: {model}")
    verify_model_integrity(model, project.model_hash, policy=policy)
    return load_glb_meshes(model)


@click.group()
@click.version_option(version=__version__, prog_name="autorig")
def main() -> None:
    """autorig: automatic rigging, skinning and animation export for GLB models."""


@main.command()
@click.argument("model_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--symmetry-axis",
    type=click.Choice(["auto", "x", "y", "z"]),
    default=None,
    help="Skip symmetry detection and use this axis.",
)
@_settings_option
@_format_option
def analyze(
    model_file: Path,
    symmetry_axis: str | None,
    settings_file: Path | None,
    output_format: str,
) -> None:
    """Print the geometry analysis of a GLB model."""
    try:
        settings = _load_settings(settings_file).auto_bones
        if symmetry_axis is not None:
            settings = settings.model_copy(update={"symmetry_axis": symmetry_axis})
        meshes = load_glb_meshes(model_file)
        analysis = analyze_vertices(_world_vertices(meshes), settings)
    except AutorigError as e:
        raise click.ClickException(str(e)) from e

    summary = summarize_analysis(analysis)
    summary["meshes"] = [{"name": m.name, "vertexCount": m.vertex_count} for m in meshes]
    if output_format == "json":
        click.echo(json.dumps(summary, indent=2))
        return

    click.echo(f"Model: {model_file}")
    click.echo(f"Meshes: {len(meshes)} ({analysis.vertex_count} vertices)")
    click.echo("Center: " + ", ".join(f"{v:.4f}" for v in summary["center"]))
    click.echo("Size: " + ", ".join(f"{v:.4f}" for v in summary["size"]))
    click.echo(f"Symmetry axis: {analysis.symmetry_axis}")
    click.echo(f"Extremities: {len(analysis.extremities)}")
    for point in summary["extremities"]:
        click.echo("  - " + ", ".join(f"{v:.4f}" for v in point))


@main.command()
@click.argument("model_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    required=True,
    help="Project JSON file to write.",
)
@click.option(
    "--rig-type",
    type=click.Choice(["auto", "humanoid", "quadruped"]),
    default=None,
    help="Bone layout policy. Defaults to the settings file, else auto.",
)
@_settings_option
def suggest(
    model_file: Path,
    output: Path,
    rig_type: str | None,
    settings_file: Path | None,
) -> None:
    """Analyze a model, propose a skeleton and write a new project."""
    try:
        settings = _load_settings(settings_file).auto_bones
        if rig_type is not None:
            settings = settings.model_copy(update={"rig_type": rig_type})
        meshes = load_glb_meshes(model_file)
        analysis = analyze_vertices(_world_vertices(meshes), settings)
        suggestions = suggest_bones(analysis, settings)
        project = ProjectData(
            model_path=os.path.relpath(model_file.resolve(), output.resolve().parent),
            model_hash=calculate_model_hash(model_file),
            skeleton=Skeleton(bones=bones_from_suggestions(suggestions)),
        )
        save_project(project, output)
    except AutorigError as e:
        raise click.ClickException(str(e)) from e
    except OSError as e:
        raise click.ClickException(f"Cannot write {output}: {e}") from e
    click.echo(f"Suggested {len(project.skeleton.bones)} bones ({settings.rig_type}): {output}")


@main.command()
@click.argument("project_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the updated project here instead of in place.",
)
@click.option("--method", type=click.Choice(["envelope", "heatmap", "nearest"]), default=None)
@click.option("--falloff", type=float, default=None)
@click.option("--smooth", "smooth_iterations", type=int, default=None, help="Smoothing iterations.")
@_settings_option
@_warn_as_error_option
@_suppress_warning_option
def weights(
    project_file: Path,
    output: Path | None,
    method: str | None,
    falloff: float | None,
    smooth_iterations: int | None,
    settings_file: Path | None,
    warn_as_error: str | None,
    suppress_warning: str | None,
) -> None:
    """Compute automatic vertex weights for every mesh of the project's model."""
    warning_policy = _build_warning_policy(warn_as_error, suppress_warning)
    try:
        settings = _load_settings(settings_file).auto_weights
        overrides = {
            k: v
            for k, v in (("method", method), ("falloff", falloff), ("smooth_iterations", smooth_iterations))
            if v is not None
        }
        if overrides:
            settings = type(settings)(**{**settings.model_dump(), **overrides})
        project = load_project(project_file, policy=warning_policy)
        bones = project.skeleton.bones
        if not bones:
            raise click.ClickException("Project has no bones; run 'autorig suggest' first")
        meshes = _project_meshes(project, project_file, warning_policy)
        weight_map = {
            mesh.name: MeshWeights(vertex_weights=calculate_automatic_weights(mesh, bones, settings))
            for mesh in meshes
        }
        project = project.model_copy(update={"weight_map": weight_map})
        destination = output or project_file
        save_project(project, destination)
    except AutorigError as e:
        raise click.ClickException(str(e)) from e
    vertex_total = sum(len(w.vertex_weights) for w in weight_map.values())
    click.echo(
        f"Weighted {vertex_total} vertices in {len(weight_map)} meshes ({settings.method}): {destination}"
    )


@main.command()
@click.argument("project_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_format_option
def inspect(project_file: Path, output_format: str) -> None:
    """Validate a project and report its contents."""
    try:
        project = load_project(project_file)
    except AutorigError as e:
        raise click.ClickException(str(e)) from e

    errors = validate_project(project)
    report = {
        "version": project.version,
        "modelPath": project.model_path,
        "bones": len(project.skeleton.bones),
        "roots": sum(1 for b in project.skeleton.bones if b.parent_id is None),
        "weightedMeshes": sorted(project.weight_map),
        "animations": [
            {
                "name": clip.name,
                "fps": clip.fps,
                "frameCount": clip.frame_count,
                "tracks": len(clip.tracks),
            }
            for clip in project.animations
        ],
        "errors": errors,
    }
    if output_format == "json":
        click.echo(json.dumps(report, indent=2))
    else:
        click.echo(f"Project: {project_file} (version {project.version})")
        click.echo(f"Model: {project.model_path or '(none)'}")
        click.echo(f"Bones: {report['bones']} ({report['roots']} roots)")
        click.echo(f"Weighted meshes: {len(project.weight_map)}")
        click.echo(f"Animations: {len(project.animations)}")
        for clip in report["animations"]:
            click.echo(f"  - {clip['name']}: {clip['frameCount']} frames @ {clip['fps']:g} fps, {clip['tracks']} tracks")
        if errors:
            click.echo(f"Errors ({len(errors)}):")
            for error in errors:
                click.echo(f"  - {error}")
        else:
            click.echo("No errors.")
    if errors:
        raise SystemExit(1)


@main.command()
@click.argument("project_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Output GLB file path. Defaults to the project name with .glb extension.",
)
@click.option(
    "--no-animations",
    is_flag=True,
    default=False,
    help="Export the skinned mesh without animation clips.",
)
@_settings_option
@_warn_as_error_option
@_suppress_warning_option
def export(
    project_file: Path,
    output: Path | None,
    no_animations: bool,
    settings_file: Path | None,
    warn_as_error: str | None,
    suppress_warning: str | None,
) -> None:
    """Bind, bake and write a skinned, animated GLB."""
    warning_policy = _build_warning_policy(warn_as_error, suppress_warning)
    if output is None:
        output = project_file.with_suffix(".glb")
    try:
        settings = _load_settings(settings_file).auto_weights
        project = load_project(project_file, policy=warning_policy)
        errors = validate_project(project)
        if errors:
            raise click.ClickException("Project is invalid:\n  " + "\n  ".join(errors))
        meshes = _project_meshes(project, project_file, warning_policy)
        export_glb(
            meshes,
            project.skeleton.bones,
            output,
            weight_map=project.weight_map,
            animations=[] if no_animations else project.animations,
            settings=settings,
            warning_policy=warning_policy,
        )
    except AutorigError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Exported: {output}")


@main.command()
def codes() -> None:
    """List the warning codes accepted by --warn-as-error and --suppress-warning."""
    for code, description in sorted(WARNING_CODES.items()):
        click.echo(f"{code}  {description}")
