"""Concilium command line interface."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler

from .. import __version__
from ..core.config import get_effective_config, load_agent_instances, parse_agent_specs, split_csv
from ..core.errors import ConciliumError
from ..core.orchestrator import ConsoleEvents, DeliberationEvents, DeliberationInput, NullEvents
from ..formatters.report import FORMATS, final_answer, render_error, render_report
from ..models.run import RunRecord

err_console = Console(stderr=True)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


async def run_deliberation(
    config: dict,
    run_input: DeliberationInput,
    save: bool,
    events: DeliberationEvents,
) -> RunRecord:
    from ..core.orchestrator import DeliberationService
    from ..core.storage import JsonRunRepository
    from ..providers.opencode import shutdown_embedded_server

    repository = JsonRunRepository(config["data_dir"]) if save else None
    service = DeliberationService(config, repository=repository, events=events)
    try:
        return await service.run(run_input)
    finally:
        await shutdown_embedded_server()


def _read_prompt(prompt: tuple[str, ...], prompt_file: Optional[str]) -> str:
    if prompt_file == "-":
        return sys.stdin.read().strip()
    if prompt_file:
        return Path(prompt_file).read_text(encoding="utf-8-sig").strip()
    return " ".join(prompt).strip()


@click.group()
@click.version_option(__version__, prog_name="concilium")
def cli() -> None:
    """Concilium - run coding agents side by side and let a council judge them."""


@cli.command()
@click.argument("prompt", nargs=-1)
@click.option("--file", "-f", "prompt_file", type=str, help="Read prompt from file (- for stdin)")
@click.option("--agents", type=str, help='Agents to run, e.g. "claude:opus,codex"')
@click.option("--juror-models", type=str, help="Comma-separated OpenRouter juror models")
@click.option("--chairman", type=str, help="OpenRouter chairman model")
@click.option("--stage1-only", is_flag=True, help="Skip the juror and chairman stages")
@click.option("--cwd", type=click.Path(exists=True, file_okay=False), default=".", help="Project working directory")
@click.option("--format", "output_format", type=click.Choice(FORMATS), default=None)
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Save the final answer to a file")
@click.option("--no-save", is_flag=True, help="Do not persist the run to history")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--config", "config_file", type=click.Path(dir_okay=False), help="Config file override")
def run(
    prompt: tuple[str, ...],
    prompt_file: str | None,
    agents: str | None,
    juror_models: str | None,
    chairman: str | None,
    stage1_only: bool,
    cwd: str,
    output_format: str | None,
    output: str | None,
    no_save: bool,
    verbose: bool,
    config_file: str | None,
) -> None:
    """Run a deliberation on PROMPT."""
    configure_logging(verbose)

    try:
        text = _read_prompt(prompt, prompt_file)
    except OSError as e:
        err_console.print(f"  [red]ERROR[/red] Could not read prompt file: {e}")
        sys.exit(1)
    if not text:
        err_console.print("  [red]ERROR[/red] No prompt provided. Use `concilium run <prompt>` or `-f <file>`.")
        sys.exit(1)

    cli_overrides: dict = {}
    if juror_models:
        cli_overrides.setdefault("council", {})["council_models"] = split_csv(juror_models)
    if chairman:
        cli_overrides.setdefault("council", {})["chairman_model"] = chairman

    try:
        config = get_effective_config(
            Path(config_file) if config_file else None,
            cli_overrides=cli_overrides or None,
        )
        instances = parse_agent_specs(agents) if agents else load_agent_instances(config)
    except ConciliumError as e:
        err_console.print(f"  [red]ERROR[/red] {e}")
        sys.exit(1)

    output_format = output_format or config.get("output", {}).get("format", "markdown")
    save = not no_save and bool(config.get("output", {}).get("save", True))
    events: DeliberationEvents = NullEvents() if output_format == "json" else ConsoleEvents(err_console)

    run_input = DeliberationInput(
        prompt=text,
        cwd=str(Path(cwd).resolve()),
        agent_instances=instances,
        stage1_only=stage1_only,
    )

    try:
        record = asyncio.run(run_deliberation(config, run_input, save, events))
    except ConciliumError as e:
        click.echo(render_error(str(e), output_format), err=True)
        sys.exit(1)

    click.echo(render_report(record, output_format))

    if output:
        Path(output).write_text(final_answer(record), encoding="utf-8")
        err_console.print(f"  [green]OK[/green] Final answer saved to {output}")
    if save:
        err_console.print(f"  [dim]Run saved: {record.id}[/dim]")


@cli.command()
@click.option("--agent", type=click.Choice(["claude", "codex", "opencode"]), help="Only this agent")
@click.option("--council", is_flag=True, help="OpenRouter models for jurors and chairman")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--config", "config_file", type=click.Path(dir_okay=False), help="Config file override")
def models(agent: str | None, council: bool, as_json: bool, config_file: str | None) -> None:
    """List available models."""
    configure_logging(False)
    try:
        config = get_effective_config(Path(config_file) if config_file else None)
    except ConciliumError as e:
        err_console.print(f"  [red]ERROR[/red] {e}")
        sys.exit(1)

    if council:
        from ..providers.openrouter import OpenRouterGateway, format_pricing

        council_config = config["council"]
        gateway = OpenRouterGateway(council_config.get("api_key") or "", council_config["api_url"])
        found = asyncio.run(gateway.fetch_models())
        if as_json:
            click.echo(json.dumps([m.model_dump() for m in found], indent=2))
            return
        click.echo(f"\n  OpenRouter models ({len(found)}):\n")
        for m in found[:50]:
            pricing = format_pricing(m.pricing.prompt, m.pricing.completion)
            click.echo(f"  {m.id:<45} {pricing:<20} {m.name}")
        if len(found) > 50:
            click.echo(f"  ... and {len(found) - 50} more (use --json for the full list)")
        click.echo()
        return

    from ..core.discovery import ModelDiscoveryService
    from ..providers.base import get_agent_provider
    from ..providers.opencode import shutdown_embedded_server

    kinds = [agent] if agent else ["claude", "codex", "opencode"]
    providers = {kind: get_agent_provider(kind, config) for kind in kinds}

    async def discover():
        try:
            return await ModelDiscoveryService(providers).discover_all()
        finally:
            await shutdown_embedded_server()

    results = asyncio.run(discover())
    if as_json:
        click.echo(json.dumps([r.model_dump(mode="json") for r in results], indent=2))
        return
    for info in results:
        click.echo(f"\n  {info.provider.value} (default: {info.default_model or 'auto'}):")
        if not info.models:
            click.echo("    (no models discovered)")
        for model in info.models:
            marker = " (default)" if model == info.default_model else ""
            click.echo(f"    {model}{marker}")
    click.echo()


@cli.command()
@click.argument("run_id", required=False)
@click.option("--limit", "-n", type=int, default=20, help="Number of runs to list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--config", "config_file", type=click.Path(dir_okay=False), help="Config file override")
def history(run_id: str | None, limit: int, as_json: bool, config_file: str | None) -> None:
    """List past runs, or show one run by RUN_ID."""
    from ..core.storage import JsonRunRepository

    try:
        config = get_effective_config(Path(config_file) if config_file else None)
    except ConciliumError as e:
        err_console.print(f"  [red]ERROR[/red] {e}")
        sys.exit(1)

    repo = JsonRunRepository(config["data_dir"])

    if run_id:
        try:
            record = repo.load(run_id)
        except ConciliumError as e:
            err_console.print(f"  [red]ERROR[/red] {e}")
            sys.exit(1)
        click.echo(render_report(record, "json" if as_json else "markdown"))
        return

    runs = repo.list()[:limit]
    if as_json:
        click.echo(json.dumps([r.model_dump(mode="json") for r in runs], indent=2))
        return
    if not runs:
        click.echo("No runs found.")
        return

    click.echo(f"\n  {'ID':<38} {'Date':<20} {'Status':<15} Prompt")
    click.echo(f"  {'-' * 38} {'-' * 20} {'-' * 15} {'-' * 40}")
    for summary in runs:
        date = summary.created_at.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"  {summary.id:<38} {date:<20} {summary.status:<15} {summary.prompt_preview}")
    click.echo()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
