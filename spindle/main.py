"""CLI entry point for spindle."""

import asyncio
import sys
from pathlib import Path

import click
import structlog

from spindle.config.settings import SpindleSettings
from spindle.engine.job_builder import JobBuilder
from spindle.engine.manager import ControllerManager
from spindle.engine.metrics import serve_metrics
from spindle.engine.spawner_controller import TaskSpawnerController
from spindle.engine.task_controller import TaskController
from spindle.exceptions import AlreadyExistsError, ConfigurationError, SpindleError, ValidationError
from spindle.executors.local import SubprocessExecutor
from spindle.manifests import apply_manifests, apply_order, load_manifests
from spindle.rendering import TemplateRenderer
from spindle.sources.registry import SourceRegistry
from spindle.store import ResourceStore
from spindle.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option("--config", default=None, help="Path to configuration file")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Logging level (overrides the configuration file)",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "console"]),
    default=None,
    help="Log renderer (overrides the configuration file)",
)
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str | None, log_format: str | None) -> None:
    """spindle: run coding agents as declarative Tasks."""
    try:
        if config is None:
            settings = SpindleSettings()
        else:
            if not Path(config).exists():
                click.echo(f"Error: Configuration file not found: {config}", err=True)
                sys.exit(1)
            settings = SpindleSettings.from_yaml(config)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    configure_logging((log_level or settings.log_level).upper(), log_format or settings.log_format)
    ctx.obj = {"settings": settings}


@cli.command()
@click.argument("manifests", nargs=-1, type=click.Path(exists=True))
@click.pass_context
def run(ctx: click.Context, manifests: tuple[str, ...]) -> None:
    """Apply MANIFESTS and run the controllers until interrupted."""
    settings = ctx.obj["settings"]
    try:
        asyncio.run(_run(settings, manifests))
    except KeyboardInterrupt:
        click.echo("\nShutting down...")
        sys.exit(130)
    except SpindleError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("manifests", nargs=-1, required=True, type=click.Path(exists=True))
def validate(manifests: tuple[str, ...]) -> None:
    """Check that MANIFESTS parse and pass admission."""
    try:
        resources = load_manifests(manifests)
    except SpindleError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    errors = asyncio.run(_admit_all(resources))
    for error in errors:
        click.echo(f"Error: {error}", err=True)
    if errors:
        sys.exit(1)
    click.echo(f"{len(resources)} resources valid")


async def _admit_all(resources: list) -> list[str]:
    store = ResourceStore()
    errors = []
    for resource in apply_order(resources):
        try:
            await store.create(resource)
        except ValidationError as e:
            errors.append(f"{resource.kind} {resource.key}: {e}")
        except AlreadyExistsError:
            errors.append(f"{resource.kind} {resource.key}: defined more than once")
    return errors


async def _run(settings: SpindleSettings, manifests: tuple[str, ...]) -> None:
    """Build the controllers and run them.

    Args:
        settings: Spindle settings
        manifests: Manifest files or directories to apply before starting
    """
    renderer = TemplateRenderer()
    store = ResourceStore(settings.state_dir)
    loaded = await store.load()
    if loaded:
        log.info("state_restored", resources=loaded, state_dir=str(settings.state_dir))

    if manifests:
        applied = await apply_manifests(store, load_manifests(manifests))
        click.echo(f"Applied {len(applied)} resources")

    executor = SubprocessExecutor(
        settings.work_dir,
        git_command=settings.executor.git_command,
        shutdown_timeout=settings.executor.shutdown_timeout,
    )
    sources = SourceRegistry(store, settings.github)
    task_controller = TaskController(
        store,
        executor,
        job_builder=JobBuilder(settings.executor),
        renderer=renderer,
        settings=settings.controller,
    )
    spawner_controller = TaskSpawnerController(store, sources, renderer=renderer, settings=settings.controller)
    manager = ControllerManager(store, task_controller, spawner_controller, settings.controller)
    if settings.controller.metrics_port:
        serve_metrics(settings.controller.metrics_port)

    try:
        await manager.run()
    finally:
        await sources.close()
        await executor.close()


if __name__ == "__main__":
    cli()
