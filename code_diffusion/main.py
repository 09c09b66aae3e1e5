"""CLI entry point for code-diffusion."""

import json
import sys
from pathlib import Path

import click
import structlog

from code_diffusion.config.settings import DiffusionSettings
from code_diffusion.engine.state_machine import TRANSITIONS
from code_diffusion.engine.stage_outputs import validate_stage_output
from code_diffusion.enums import WorkflowStage
from code_diffusion.exceptions import CodeDiffusionError, ConfigurationError
from code_diffusion.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

OUTPUT_STAGES = [WorkflowStage.EXPLORING.value, WorkflowStage.PLANNING.value, WorkflowStage.IMPLEMENTING.value]


@click.group()
@click.option(
    "--config",
    default=None,
    help="Path to configuration file (defaults and environment only when omitted)",
)
@click.option("--log-level", default="INFO", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str) -> None:
    """code-diffusion: staged code-generation workflow orchestration."""
    configure_logging(log_level)

    if config is None:
        ctx.obj = {"settings": DiffusionSettings()}
        return

    if not Path(config).exists():
        click.echo(f"Error: Configuration file not found: {config}", err=True)
        sys.exit(1)

    try:
        settings = DiffusionSettings.from_yaml(config)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides server.host)")
@click.option("--port", type=int, default=None, help="Port (overrides server.port)")
@click.option("--dry-run", is_flag=True, help="Keep workflow records in memory instead of Notion")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, dry_run: bool) -> None:
    """Run the webhook server."""
    import uvicorn

    from code_diffusion.engine.coordinator import FlowCoordinator
    from code_diffusion.providers import create_knowledge_base
    from code_diffusion.webhook_server import create_app

    settings: DiffusionSettings = ctx.obj["settings"]
    if not dry_run and not settings.notion.enabled:
        click.echo("Error: notion.api_key is not configured (use --dry-run to run without Notion)", err=True)
        sys.exit(1)

    coordinator = FlowCoordinator(settings, create_knowledge_base(settings.notion, dry_run=dry_run))
    app = create_app(settings, coordinator)

    try:
        uvicorn.run(
            app,
            host=host or settings.server.host,
            port=port or settings.server.port,
            log_config=None,
        )
    except CodeDiffusionError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


@cli.command("validate-output")
@click.argument("stage", type=click.Choice(OUTPUT_STAGES))
@click.argument("output_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate_output(stage: str, output_file: Path) -> None:
    """Validate a worker's JSON output for STAGE."""
    try:
        payload = json.loads(output_file.read_text())
    except (OSError, ValueError) as e:
        click.echo(f"Error: Cannot read {output_file}: {e}", err=True)
        sys.exit(1)

    result = validate_stage_output(WorkflowStage(stage), payload)
    if not result.ok:
        click.echo(f"Invalid {stage} output:", err=True)
        for error in result.errors:
            click.echo(f"  - {error}", err=True)
        sys.exit(1)

    click.echo(f"Valid {stage} output")


@cli.command()
def transitions() -> None:
    """Print the stage transition table."""
    for stage in WorkflowStage:
        targets = ", ".join(sorted(s.value for s in TRANSITIONS[stage])) or "(terminal)"
        click.echo(f"{stage.value:<13} -> {targets}")


if __name__ == "__main__":
    cli()
