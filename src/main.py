"""
Patch Deploy — CLI entrypoint.

Usage:
    python -m src.main --help
    python -m src.main install --branch release --latest
    python -m src.main verify --branch release
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Callable

import click

from src import __version__
from src.core.config.loader import ConfigError, load_config
from src.core.config.paths import AppPaths
from src.core.config.schema import EngineConfig
from src.core.errors import DeployError
from src.core.models.progress import ProgressEvent
from src.core.models.release import InstallRequest, VersionPolicy
from src.core.observability.logging_config import setup_logging
from src.core.services.install import InstallCoordinator
from src.core.services.progress import ProgressSink

CoordinatorFactory = Callable[[EngineConfig, ProgressSink | None], InstallCoordinator]


class EchoSink:
    """Print stage changes and whole-percent steps to stderr."""

    def __init__(self, quiet: bool = False):
        self._quiet = quiet
        self._last: tuple[str, int] | None = None

    def emit(self, event: ProgressEvent) -> None:
        if self._quiet:
            return
        percent = int(event.percent) if event.percent is not None else -1
        key = (event.stage.value, percent // 10)
        if key == self._last:
            return
        self._last = key
        shown = f"{percent:3d}%" if percent >= 0 else "  ?%"
        speed = f"  {event.speed}" if event.speed else ""
        click.echo(f"   [{event.stage.value:<10}] {shown} {event.message}{speed}", err=True)


@click.group()
@click.version_option(version=__version__, prog_name="patchdeploy")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress progress output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to deploy.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """Patch Deploy — install and update the game client incrementally."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug

    try:
        config = load_config(Path(config_path) if config_path else None)
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)
    ctx.obj["config"] = config

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("PDE_LOG_LEVEL", "WARNING")

    paths = AppPaths.from_config(config)
    setup_logging(
        level=level,
        log_file=os.environ.get("PDE_LOG_FILE"),
        log_file_level=os.environ.get("PDE_LOG_FILE_LEVEL"),
        quiet_third_party=not debug,
        logs_dir=paths.logs_dir,
    )


def _coordinator(ctx: click.Context) -> InstallCoordinator:
    factory: CoordinatorFactory | None = ctx.obj.get("coordinator_factory")
    if factory is None:
        from src.core.services.factory import build_coordinator

        factory = build_coordinator
    return factory(ctx.obj["config"], EchoSink(quiet=ctx.obj.get("quiet", False)))


def _fail(error: DeployError, as_json: bool = False) -> None:
    if as_json:
        click.echo(json.dumps({"ok": False, "error": error.to_dict()}, indent=2))
    else:
        click.secho(f"❌ {error.message}", fg="red")
        log_path = getattr(error, "log_path", None)
        if log_path:
            click.echo(f"   Diagnostic log: {log_path}")
    sys.exit(1)


@cli.command()
@click.option("--branch", "-b", default="release", show_default=True, help="Release channel.")
@click.option("--pinned", type=int, default=None, help="Install exactly this version.")
@click.option("--latest", "policy", flag_value="latest", default=True, help="Resolve the newest version once.")
@click.option("--auto", "policy", flag_value="auto", help="Track the newest version; tolerate being offline.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(ctx: click.Context, branch: str, pinned: int | None, policy: str, as_json: bool) -> None:
    """Install or update a branch.

    Examples:

        patchdeploy install --branch release

        patchdeploy install --branch pre-release --pinned 12
    """
    if pinned is not None and policy == "auto":
        raise click.UsageError("--pinned cannot be combined with --auto")
    if pinned is not None:
        version_policy = VersionPolicy.pinned(pinned)
    elif policy == "auto":
        version_policy = VersionPolicy.auto()
    else:
        version_policy = VersionPolicy.latest()

    coordinator = _coordinator(ctx)
    try:
        resolved = coordinator.ensure_installed(InstallRequest(branch=branch, policy=version_policy))
    except DeployError as e:
        _fail(e, as_json)
        return

    if as_json:
        click.echo(json.dumps({"ok": True, **resolved.model_dump(mode="json")}, indent=2))
        return

    if resolved.changed:
        click.secho(f"✅ {branch} installed at version {resolved.version}", fg="green", bold=True)
        if resolved.previous_version:
            click.echo(f"   Updated from {resolved.previous_version}")
    else:
        click.secho(f"✅ {branch} is up to date (version {resolved.version})", fg="green")
    click.echo(f"   📁 {resolved.install_dir}")


@cli.command()
@click.option("--branch", "-b", default="release", show_default=True, help="Release channel.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def latest(ctx: click.Context, branch: str, as_json: bool) -> None:
    """Show the newest published version of a branch."""
    coordinator = _coordinator(ctx)
    try:
        version = coordinator.resolver.find_latest(branch)
        installed = coordinator.installed_version(branch)
    except DeployError as e:
        _fail(e, as_json)
        return

    if as_json:
        click.echo(json.dumps({"branch": branch, "latest": version, "installed": installed}, indent=2))
        return
    click.echo(f"{branch}: latest {version}, installed {installed or 'none'}")


@cli.command()
@click.option("--branch", "-b", default=None, help="Release channel (default: release and pre-release).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def versions(ctx: click.Context, branch: str | None, as_json: bool) -> None:
    """List every published version (slow: one probe per version)."""
    coordinator = _coordinator(ctx)
    resolver = coordinator.resolver
    try:
        if branch:
            listing = {branch: resolver.list_available_versions(branch)}
            errors: dict[str, str] = {}
        else:
            both = resolver.list_both_branches()
            listing = both.versions
            errors = {name: str(err) for name, err in both.errors.items()}
    except DeployError as e:
        _fail(e, as_json)
        return

    if as_json:
        click.echo(json.dumps({"versions": listing, "errors": errors}, indent=2))
    else:
        for name, found in listing.items():
            shown = ", ".join(str(v) for v in found) if found else "(none)"
            click.echo(f"{name}: {shown}")
        for name, message in errors.items():
            click.secho(f"⚠️  {name}: {message}", fg="yellow")
    if errors:
        sys.exit(1)


@cli.command()
@click.option("--branch", "-b", default="release", show_default=True, help="Release channel.")
@click.option("--variant", default="latest", show_default=True, help="Install variant (a pinned number or 'latest').")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def verify(ctx: click.Context, branch: str, variant: str, as_json: bool) -> None:
    """Check the runtime, tool, client binary and version marker."""
    try:
        report = _coordinator(ctx).verify_installation(branch, variant)
    except DeployError as e:
        _fail(e, as_json)
        return

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        sys.exit(0 if report.ok else 1)
        return

    def line(label: str, ok: bool, detail: str = "") -> None:
        click.secho(f"   {'✓' if ok else '✗'} {label}", fg="green" if ok else "red", nl=False)
        click.echo(f"  {detail}" if detail else "")

    click.secho(f"\n🔍 {branch}/{variant}", fg="cyan", bold=True)
    line("runtime", report.runtime_ok, report.runtime_version or "")
    line("patch tool", report.tool_ok)
    line("client", report.client_ok, str(report.client_path))
    line("version", report.installed_version > 0, str(report.installed_version or "not installed"))
    click.echo()
    if not report.ok:
        sys.exit(1)


@cli.command("clear-cache")
@click.pass_context
def clear_cache(ctx: click.Context) -> None:
    """Delete cached patches, staging directories and partial downloads."""
    from src.core.services.archive import remove_tree

    paths = AppPaths.from_config(ctx.obj["config"])
    try:
        for path in (paths.patch_cache_dir, paths.staging_root):
            remove_tree(path)
        removed = 0
        if paths.cache_dir.is_dir():
            for part in paths.cache_dir.rglob("*.part"):
                part.unlink(missing_ok=True)
                removed += 1
    except DeployError as e:
        _fail(e)
        return
    click.secho(f"🧹 Cache cleared ({removed} partial downloads removed)", fg="cyan")


if __name__ == "__main__":
    cli()
