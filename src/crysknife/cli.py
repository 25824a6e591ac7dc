"""CLI commands for generating, applying and clearing engine patches."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from .orchestrator import Orchestrator, OutcomeStatus, RunSummary
from .patches.store import PatchStore, PatchStoreError
from .policy.rules import ConfigParseError
from .settings import Settings, SettingsError, build_settings, parse_defines
from .tools.applier import FileAction

APP_HELP = "Keep plugin modifications to an engine source tree reapplicable across engine upgrades."

_UPDATED_LABELS = {
    FileAction.GENERATE: "Generated",
    FileAction.APPLY: "Applied",
    FileAction.CLEAR: "Cleared",
}


@dataclass(slots=True)
class CliOptions:
    """Global options collected by the app callback and shared by commands."""

    plugin_root: Path
    target_root: Optional[Path]
    settings_path: Optional[Path]
    overrides: Dict[str, Any]
    verbose: bool


app = typer.Typer(help=APP_HELP, no_args_is_help=True)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unset CLI values so they do not override the settings file."""
    compacted: Dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, dict):
            nested = _compact(value)
            if nested:
                compacted[key] = nested
        elif value is not None and value != []:
            compacted[key] = value
    return compacted


def _resolve_settings(options: CliOptions, *, require_target: bool = True) -> Settings:
    target_root = options.target_root
    if target_root is None:
        if require_target:
            raise typer.BadParameter("An engine root is required.", param_hint="--target-root")
        target_root = Path(".")
    try:
        return build_settings(
            options.plugin_root,
            target_root,
            settings_path=options.settings_path,
            overrides=options.overrides,
        )
    except SettingsError as error:
        raise typer.BadParameter(str(error)) from error


def _render_summary(summary: RunSummary, verbose: bool) -> None:
    """Print one line per file that changed or failed; nothing if all is current."""
    for outcome in summary.outcomes:
        if outcome.status is OutcomeStatus.UPDATED:
            detail = f" ({outcome.message})" if outcome.message else ""
            typer.echo(f"{_UPDATED_LABELS[summary.action]} {outcome.target_path}{detail}")
        elif outcome.status is OutcomeStatus.CONFLICT:
            near = outcome.conflict.near_miss if outcome.conflict else None
            hint = f"; best score {near.score:.2f} at line {near.position + 1}" if near else ""
            typer.echo(f"Conflict: {outcome.target_path}: no stored version matches{hint}", err=True)
            if outcome.report_path is not None:
                typer.echo(f"  report: {outcome.report_path}", err=True)
        elif outcome.status is OutcomeStatus.FAILED:
            typer.echo(f"Failed: {outcome.target_path}: {outcome.message}", err=True)
        elif verbose:
            typer.echo(f"{outcome.status.value.capitalize()}: {outcome.target_path}")

    if summary.failures:
        typer.echo(f"{len(summary.failures)} file(s) failed.", err=True)
    if summary.sandbox_root is not None and summary.written:
        typer.echo(f"Dry run: {len(summary.written)} file(s) written under {summary.sandbox_root}")


def _run(ctx: typer.Context, action: FileAction) -> None:
    options: CliOptions = ctx.obj
    settings = _resolve_settings(options)
    try:
        orchestrator = Orchestrator.from_settings(settings)
        summary = orchestrator.run(action)
    except ConfigParseError as error:
        typer.echo(f"Config error: {error}", err=True)
        raise typer.Exit(code=2) from error
    except (FileNotFoundError, PatchStoreError) as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=2) from error
    except KeyboardInterrupt as error:
        typer.echo("Interrupted.", err=True)
        raise typer.Exit(code=130) from error

    _render_summary(summary, options.verbose)
    if summary.exit_code:
        raise typer.Exit(code=summary.exit_code)


@app.callback()
def main(
    ctx: typer.Context,
    plugin_root: Path = typer.Option(
        Path("."),
        "--plugin-root",
        "-p",
        help="Plugin directory holding the SourcePatch folder.",
    ),
    target_root: Optional[Path] = typer.Option(
        None,
        "--target-root",
        "-t",
        help="Root of the engine source tree the patches apply to.",
    ),
    tag: Optional[str] = typer.Option(
        None,
        "--tag",
        help="Guard tag; defaults to the plugin directory name.",
    ),
    define: List[str] = typer.Option(
        None,
        "--define",
        "-D",
        help="Variable definition NAME=VALUE (repeatable).",
    ),
    include: List[str] = typer.Option(
        None,
        "--include",
        "-i",
        help="Only process target paths under this prefix or glob (repeatable).",
    ),
    exclude: List[str] = typer.Option(
        None,
        "--exclude",
        "-e",
        help="Skip target paths under this prefix or glob (repeatable).",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Redirect every write to a scratch directory.",
    ),
    sandbox_root: Optional[Path] = typer.Option(
        None,
        "--sandbox-root",
        help="Scratch directory used by --dry-run.",
    ),
    jobs: Optional[int] = typer.Option(
        None,
        "--jobs",
        "-j",
        help="Worker threads (0 picks a default).",
    ),
    patch_context: Optional[int] = typer.Option(
        None,
        "--patch-context",
        help="Context lines recorded around each segment (default 50).",
    ),
    content_tolerance: Optional[float] = typer.Option(
        None,
        "--content-tolerance",
        help="Fraction of context lines allowed to mismatch (default 0.5).",
    ),
    line_tolerance: Optional[float] = typer.Option(
        None,
        "--line-tolerance",
        help="Maximum drift from the recorded line (default unlimited).",
    ),
    line_similarity: Optional[str] = typer.Option(
        None,
        "--line-similarity",
        help="Line comparison: exact, whitespace or fuzzy.",
    ),
    conflict_dir: Optional[Path] = typer.Option(
        None,
        "--conflict-dir",
        help="Write JSON conflict reports into this directory.",
    ),
    settings: Optional[Path] = typer.Option(
        None,
        "--settings",
        help="YAML settings file (defaults to crysknife.yaml in the plugin root).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log debug output and list unchanged files.",
    ),
) -> None:
    """Collect options shared by every command."""
    _configure_logging(verbose)
    try:
        defines = parse_defines(define)
    except SettingsError as error:
        raise typer.BadParameter(str(error), param_hint="--define") from error

    overrides = _compact(
        {
            "plugin": {"tag": tag},
            "matching": {
                "patch_context": patch_context,
                "content_tolerance": content_tolerance,
                "line_tolerance": line_tolerance,
                "line_similarity": line_similarity,
            },
            "scan": {"include": list(include or []), "exclude": list(exclude or [])},
            "run": {
                "jobs": jobs,
                "dry_run": dry_run or None,
                "sandbox_root": str(sandbox_root) if sandbox_root else None,
                "conflict_dir": str(conflict_dir) if conflict_dir else None,
            },
            "defines": defines,
        }
    )
    ctx.obj = CliOptions(
        plugin_root=plugin_root,
        target_root=target_root,
        settings_path=settings,
        overrides=overrides,
        verbose=verbose,
    )


@app.command()
def generate(ctx: typer.Context) -> None:
    """Record guarded segments found in the engine tree as patch versions."""
    _run(ctx, FileAction.GENERATE)


@app.command()
def apply(ctx: typer.Context) -> None:
    """Apply the best matching stored version to every in-scope engine file."""
    _run(ctx, FileAction.APPLY)


@app.command()
def clear(ctx: typer.Context) -> None:
    """Remove guarded segments from engine files, restoring stock code."""
    _run(ctx, FileAction.CLEAR)


@app.command()
def inspect(ctx: typer.Context) -> None:
    """List stored patch versions per target path."""
    options: CliOptions = ctx.obj
    settings = _resolve_settings(options, require_target=False)
    store = PatchStore(settings.patch_root)
    try:
        paths = store.paths()
        if not paths:
            typer.echo(f"No patches stored under {settings.patch_root}.")
            return
        for target_path in paths:
            version_set = store.load(target_path)
            typer.echo(target_path)
            for version in version_set.versions:
                typer.echo(
                    f"  v{version.order} {version.created_at.isoformat()} {len(version.records)} segment(s)"
                )
    except PatchStoreError as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=2) from error


if __name__ == "__main__":
    app()
