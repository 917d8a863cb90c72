"""Click CLI entry point for glimport."""

from __future__ import annotations

import json
from pathlib import Path

import click

from glimport import __version__
from glimport.container import Format, decode_glb, read_bin_chunk
from glimport.errors import GlimportError
from glimport.graph import ResourceGraph, SceneNode
from glimport.importer import detect_format, parse_asset, start_load
from glimport.settings import ImportSettings, load_settings
from glimport.warning_policy import WarningPolicy

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
    help="Comma-separated W-codes to suppress (e.g. W04).",
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
    try:
        return WarningPolicy.from_options(warn_as_error, suppress_warning)
    except ValueError as e:
        raise click.ClickException(str(e)) from e


def _render_tree(node: SceneNode, depth: int = 0) -> list[str]:
    label = node.name or (f"node {node.index}" if node.index is not None else "Root")
    extras = []
    if node.mesh is not None:
        extras.append(f"mesh={node.mesh.index}")
    if node.skin is not None:
        extras.append(f"skin={node.skin.index}")
    if node.camera is not None:
        extras.append(f"camera={node.camera.index}")
    suffix = f" [{', '.join(extras)}]" if extras else ""
    lines = [f"{'  ' * depth}{label}{suffix}"]
    for child in node.children:
        lines.extend(_render_tree(child, depth + 1))
    return lines


def render_graph_text(graph: ResourceGraph) -> str:
    summary = graph.summary()
    lines = [f"{key}: {summary[key]}" for key in summary if key != "tree"]
    lines.append("tree:")
    lines.extend("  " + line for line in _render_tree(graph.root))
    return "\n".join(lines) + "\n"


@click.group()
@click.version_option(version=__version__, prog_name="glimport")
def main() -> None:
    """glimport: decode glTF/GLB assets into a linked resource graph."""


@main.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_format_option
@_warn_as_error_option
@_suppress_warning_option
def info(
    input_file: Path,
    output_format: str = "text",
    warn_as_error: str | None = None,
    suppress_warning: str | None = None,
) -> None:
    """Show container layout and section counts without running the pipeline."""
    warning_policy = _build_warning_policy(warn_as_error, suppress_warning)
    try:
        data = input_file.read_bytes()
    except OSError as e:
        raise click.ClickException(f"Cannot read {input_file}: {e}") from e

    try:
        payload: dict = {"path": str(input_file)}
        if detect_format(input_file) is Format.GLTF:
            payload["format"] = "gltf"
            asset = parse_asset(data.decode("utf-8-sig"))
        else:
            content = decode_glb(data, warning_policy=warning_policy)
            bin_chunk = read_bin_chunk(data, content.bin_chunk_start)
            payload.update(
                {
                    "format": "glb",
                    "declared_length": content.declared_length,
                    "actual_length": len(data),
                    "json_length": len(content.json_text.encode("utf-8")),
                    "bin_chunk_start": content.bin_chunk_start,
                    "bin_length": len(bin_chunk) if bin_chunk is not None else None,
                }
            )
            asset = parse_asset(content.json_text)
        payload["generator"] = asset.asset.generator
        payload["sections"] = asset.section_counts()
    except (GlimportError, UnicodeDecodeError) as e:
        raise click.ClickException(str(e))

    if output_format == "json":
        click.echo(json.dumps(payload, indent=2))
        return
    for key, value in payload.items():
        if key == "sections":
            click.echo("sections:")
            for name, count in value.items():
                click.echo(f"  {name}: {count}")
        else:
            click.echo(f"{key}: {value}")


@main.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--settings",
    "settings_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML file with import settings.",
)
@click.option(
    "--incremental",
    is_flag=True,
    default=False,
    help="Step the pipeline one unit at a time and report progress on stderr.",
)
@_format_option
@_warn_as_error_option
@_suppress_warning_option
def load(
    input_file: Path,
    settings_file: Path | None = None,
    incremental: bool = False,
    output_format: str = "text",
    warn_as_error: str | None = None,
    suppress_warning: str | None = None,
) -> None:
    """Run the import pipeline and summarize the resulting resource graph."""
    warning_policy = _build_warning_policy(warn_as_error, suppress_warning)

    try:
        settings = load_settings(settings_file) if settings_file is not None else ImportSettings()
        run = start_load(input_file, settings, warning_policy=warning_policy)
        if run is None:
            raise click.ClickException(f"Unrecognized input format: {input_file}")
        if incremental:
            last_stage = None
            for progress in run:
                if progress.stage != last_stage:
                    click.echo(f"stage {progress.stage}", err=True)
                    last_stage = progress.stage
                if progress.fraction >= 1.0:
                    click.echo(f"  done {progress.stage}", err=True)
            graph = run.result
        else:
            graph = run.run_sync()
    except GlimportError as e:
        stage = f" (stage {e.stage})" if e.stage else ""
        raise click.ClickException(f"{e}{stage}")

    if output_format == "json":
        click.echo(json.dumps(graph.summary(), indent=2))
    else:
        click.echo(render_graph_text(graph), nl=False)
