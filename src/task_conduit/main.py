"""CLI entrypoint for task-conduit."""

from pathlib import Path

import rich_click as click

from task_conduit import __version__
from task_conduit.config import ConfigError
from task_conduit.controllers import (
    ConduitCliController,
    HealthCommand,
    RunTaskCommand,
    ServeCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ConduitCliController()

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Config file path. Defaults to TASK_CONDUIT_CONFIG or ./task-conduit.config.json.",
)


@click.group()
@click.version_option(version=__version__, prog_name="task-conduit")
def task_conduit() -> None:
    """Delegate coding tasks to local agent CLIs with policy checks."""


@task_conduit.command("serve")
@_config_option
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level for stderr output. Defaults to TASK_CONDUIT_LOG_LEVEL or INFO.",
)
@click.option(
    "--max-workers",
    type=click.IntRange(min=1, max=64),
    default=4,
    show_default=True,
    help="Maximum number of tasks executed concurrently.",
)
def serve(config_path: Path | None, log_level: str | None, max_workers: int) -> None:
    """Serve framed JSON-RPC requests on stdin/stdout."""

    try:
        exit_code = CONTROLLER.serve(
            ServeCommand(config_path=config_path, log_level=log_level, max_workers=max_workers),
            reader=click.get_binary_stream("stdin"),
            writer=click.get_binary_stream("stdout"),
        )
    except ConfigError as error:
        raise click.ClickException(str(error)) from error
    click.get_current_context().exit(exit_code)


@task_conduit.command("run")
@_config_option
@click.option("--provider", required=True, help="Provider id from config.")
@click.option("--instructions", required=True, help="Task instructions for the agent.")
@click.option(
    "--allowlist",
    multiple=True,
    help="Relative path the task may touch. Can be repeated.",
)
@click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Working directory (git repository) for the task.",
)
@click.option("--dry-run", is_flag=True, default=False, help="Validate and plan without running.")
@click.option("--test-command", default=None, help="Shell command run after the agent.")
@click.option(
    "--env",
    "env_pairs",
    multiple=True,
    help="KEY=VALUE environment override for the agent. Can be repeated.",
)
@click.option("--task-id", default=None, help="Explicit task id.")
def run(  # noqa: PLR0913
    config_path: Path | None,
    provider: str,
    instructions: str,
    allowlist: tuple[str, ...],
    cwd: Path | None,
    dry_run: bool,
    test_command: str | None,
    env_pairs: tuple[str, ...],
    task_id: str | None,
) -> None:
    """Run one task and print the JSON result."""

    result = CONTROLLER.run_task(
        RunTaskCommand(
            config_path=config_path,
            provider=provider,
            instructions=instructions,
            allowlist=allowlist,
            cwd=cwd,
            dry_run=dry_run,
            test_command=test_command,
            env=_parse_env_pairs(env_pairs),
            task_id=task_id,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Task failed.")


@task_conduit.command("health")
@_config_option
@click.option(
    "--provider",
    "providers",
    multiple=True,
    help="Provider to probe. Repeat to probe several; defaults to all configured.",
)
def health(config_path: Path | None, providers: tuple[str, ...]) -> None:
    """Probe provider CLIs for availability."""

    result = CONTROLLER.health(HealthCommand(config_path=config_path, providers=providers))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Provider health check failed.")


def _parse_env_pairs(pairs: tuple[str, ...]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, separator, value = pair.partition("=")
        if not separator or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got {pair!r}", param_hint="--env")
        env[key] = value
    return env


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_conduit()
