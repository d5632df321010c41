"""Main CLI entry point for abpilot."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from abpilot import __version__
from abpilot.conclusion.engine import TestConclusionEngine
from abpilot.conclusion.models import TestConclusion
from abpilot.core.exceptions import ABPilotError
from abpilot.core.logging import configure_logging, configure_logging_from_settings
from abpilot.core.settings import ABPilotSettings, get_settings
from abpilot.monitoring.monitor import PerformanceMonitor
from abpilot.rollout.registry import ImplementationRegistry
from abpilot.rollout.traffic import InMemoryLiveMetricsSource, InMemoryTrafficRouter
from abpilot.scheduler.models import (
    ActiveTest,
    EvaluationOutcome,
    SchedulerConfig,
    TickResult,
)
from abpilot.scheduler.scheduler import AutomaticWinnerScheduler
from abpilot.scheduler.sources import InMemoryTestSource
from abpilot.statistics.engine import StatisticalSignificanceEngine
from abpilot.statistics.models import QualityCheckStatus, TestAnalysis

EXIT_SUCCESS = 0  # Command succeeded, winner found, all evaluations ran
EXIT_FAILURE = 1  # No winner, failed quality checks or failed evaluations
EXIT_ERROR = 2  # Invalid input, config or missing file

console = Console()


class CLIContext:
    """Holds settings shared by all commands."""

    def __init__(self) -> None:
        self.config_file: Path | None = None
        self.verbose: bool = False
        self._settings: ABPilotSettings | None = None

    @property
    def settings(self) -> ABPilotSettings:
        if self._settings is None:
            self._settings = get_settings(config_file=self.config_file)
        return self._settings


pass_cli = click.make_pass_decorator(CLIContext, ensure=True)


def _load_document(path: Path) -> dict[str, Any]:
    """Load a YAML or JSON document describing one or more tests."""
    try:
        with open(path) as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise click.ClickException(f"Invalid test file {path}: {e}")
    except OSError as e:
        raise click.ClickException(f"Cannot read test file: {e}")
    if not isinstance(data, dict):
        raise click.ClickException(f"Test file {path} must contain a mapping")
    return data


def _load_tests(path: Path) -> list[ActiveTest]:
    data = _load_document(path)
    raw = data["tests"] if "tests" in data else [data]
    try:
        return [ActiveTest.model_validate(item) for item in raw]
    except ValidationError as e:
        raise click.ClickException(f"Invalid test definition: {e}")


def _load_single(path: Path) -> ActiveTest:
    tests = _load_tests(path)
    if len(tests) != 1:
        raise click.ClickException(
            f"Expected exactly one test in {path}, found {len(tests)}"
        )
    return tests[0]


def _format_status(status: str) -> str:
    colors = {
        "significant": "green",
        "running": "cyan",
        "inconclusive": "yellow",
        "insufficient_data": "dim",
        "winner": "green",
        "no_winner": "cyan",
        "skipped": "dim",
        "failed": "bold red",
        "timeout": "bold red",
    }
    color = colors.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _output_analysis_console(analysis: TestAnalysis) -> None:
    table = Table(
        title=f"Analysis: {analysis.test_id}",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Variant", style="green", no_wrap=True)
    table.add_column("Impressions", justify="right")
    table.add_column("Conversions", justify="right")
    table.add_column("Rate", justify="right")
    table.add_column("Improvement", justify="right")
    table.add_column("p-value", justify="right")
    table.add_column("Significant")

    for r in analysis.results:
        name = f"{r.variant_id} (control)" if r.is_control else r.variant_id
        table.add_row(
            name,
            str(r.impressions),
            str(r.conversions),
            f"{r.conversion_rate:.2%}",
            "-" if r.is_control else f"{r.improvement:+.1%}",
            "-" if r.is_control else f"{r.p_value:.4f}",
            "-" if r.is_control else ("yes" if r.is_significant else "no"),
        )
    console.print(table)

    sample = analysis.sample_size_analysis
    console.print(f"Status: {_format_status(analysis.status.value)}")
    action = analysis.recommended_action.value
    console.print(f"Recommended action: [bold]{action}[/bold]")
    console.print(f"Overall significance: {analysis.overall_significance:.1%}")
    console.print(
        f"Sample size: {sample.current}/{sample.required} ({sample.progress:.0%})"
    )
    console.print(f"Power: {analysis.power_analysis.current_power:.1%}")
    if analysis.winning_variant:
        console.print(f"Winning variant: [green]{analysis.winning_variant}[/green]")

    for check in analysis.quality_checks:
        if check.status != QualityCheckStatus.PASS:
            color = "red" if check.status == QualityCheckStatus.FAIL else "yellow"
            console.print(f"[{color}]{check.name}: {check.message}[/{color}]")


def _output_conclusion_console(conclusion: TestConclusion) -> None:
    winner = conclusion.selected_winner
    if winner is not None:
        console.print(
            f"Winner: [green]{winner.variant_id}[/green] "
            f"({winner.expected_improvement:+.1%}, confidence {winner.confidence:.1%})"
        )
    console.print(f"Reason: {conclusion.conclusion_reason}")
    risk = conclusion.risk_assessment
    console.print(
        f"Risk: {risk.overall_risk_score:.0f}/100, "
        f"approach {risk.recommended_approach.value}"
    )

    plan = conclusion.implementation_plan
    table = Table(
        title=f"Rollout plan ({plan.strategy.value})",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Phase", style="green")
    table.add_column("Traffic", justify="right")
    table.add_column("Duration (h)", justify="right")
    for phase in plan.phases:
        table.add_row(
            phase.name, f"{phase.rollout_percentage:.0f}%", f"{phase.duration:.1f}"
        )
    console.print(table)
    console.print(
        f"Rollback to {conclusion.rollback_plan.fallback_variant} "
        f"in ~{conclusion.rollback_plan.time_to_rollback:.0f} min"
    )


def _output_tick_console(result: TickResult, registry: ImplementationRegistry) -> None:
    table = Table(title="Evaluations", show_header=True, header_style="bold cyan")
    table.add_column("Test", style="green", no_wrap=True)
    table.add_column("Outcome")
    table.add_column("Status")
    table.add_column("Action")
    table.add_column("Winner")
    table.add_column("Rollout")
    for record in result.records:
        status = registry.get_status(record.test_id)
        table.add_row(
            record.test_id,
            _format_status(record.outcome.value),
            record.analysis_status.value if record.analysis_status else "-",
            record.recommended_action.value if record.recommended_action else "-",
            record.winner_variant_id or "-",
            status.label if status else "-",
        )
    console.print(table)


@click.group(invoke_without_command=True)
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to abpilot.config.yaml configuration file",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable debug logging",
)
@click.version_option(version=__version__, prog_name="abpilot")
@click.pass_context
def cli(ctx: click.Context, config_file: Path | None, verbose: bool) -> None:
    """abpilot - automatic A/B test winner selection.

    Examples:

      # Analyze a test's counters
      abpilot analyze checkout.yaml

      # Decide whether a test has a winner and show its rollout plan
      abpilot conclude checkout.yaml --output=json

      # Run the scheduler over several tests
      abpilot run tests.yaml --ticks=3
    """
    ctx.ensure_object(CLIContext)
    cli_ctx = ctx.obj
    cli_ctx.config_file = config_file
    cli_ctx.verbose = verbose
    if verbose:
        configure_logging(level="DEBUG", json_output=False, stream=sys.stderr)
    else:
        try:
            configure_logging_from_settings(cli_ctx.settings, stream=sys.stderr)
        except ValidationError as e:
            click.echo(f"Error: invalid configuration: {e}", err=True)
            sys.exit(EXIT_ERROR)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command(name="version")
def version_cmd() -> None:
    """Display version information."""
    click.echo(f"abpilot v{__version__}")
    click.echo(f"Python: {sys.version.split()[0]}")


@cli.command(name="analyze")
@click.argument("test_file", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--output",
    type=click.Choice(["console", "json"]),
    default="console",
    help="Output format",
)
@pass_cli
def analyze_cmd(cli_ctx: CLIContext, test_file: Path, output: str) -> None:
    """Analyze the significance of one test.

    Exits 1 when a quality check failed.
    """
    try:
        test = _load_single(test_file)
        engine = StatisticalSignificanceEngine(cli_ctx.settings.statistics)
        analysis = engine.analyze_test(test.test_id, test.variants)
    except (click.ClickException, ABPilotError, ValidationError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)

    if output == "json":
        click.echo(analysis.model_dump_json(indent=2))
    else:
        _output_analysis_console(analysis)
    sys.exit(EXIT_FAILURE if analysis.has_failed_checks else EXIT_SUCCESS)


@cli.command(name="conclude")
@click.argument("test_file", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--output",
    type=click.Choice(["console", "json"]),
    default="console",
    help="Output format",
)
@pass_cli
def conclude_cmd(cli_ctx: CLIContext, test_file: Path, output: str) -> None:
    """Select a winner for one test and plan its rollout.

    Exits 1 when the test should keep running.
    """
    settings = cli_ctx.settings
    try:
        test = _load_single(test_file)
        engine = TestConclusionEngine(
            StatisticalSignificanceEngine(settings.statistics),
            criteria=SchedulerConfig.from_settings(
                settings.scheduler
            ).selection_criteria(),
            rollout_settings=settings.rollout,
        )
        conclusion = engine.evaluate_test_conclusion(
            test.test_id, test.variants, context=test.context
        )
    except (click.ClickException, ABPilotError, ValidationError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)

    if conclusion is None:
        if output == "json":
            click.echo(json.dumps({"test_id": test.test_id, "conclusion": None}))
        else:
            console.print(f"[cyan]No winner yet for {test.test_id}[/cyan]")
        sys.exit(EXIT_FAILURE)

    if output == "json":
        click.echo(conclusion.model_dump_json(indent=2))
    else:
        _output_conclusion_console(conclusion)
    sys.exit(EXIT_SUCCESS)


async def _advance_rollouts(registry: ImplementationRegistry) -> None:
    for status in registry.list_statuses():
        controller = registry.get(status.test_id)
        if controller is not None and not controller.is_terminal:
            await controller.step()


async def _run_scheduler(
    settings: ABPilotSettings,
    tests: list[ActiveTest],
    ticks: int,
    once: bool = False,
) -> tuple[list[TickResult], ImplementationRegistry]:
    """Run forced passes, or with ``once`` a single scheduled pass.

    A scheduled pass honors ``scheduler.enabled`` and skips busy tests, the
    way the timer loop does.
    """
    engine = StatisticalSignificanceEngine(settings.statistics)
    monitor = PerformanceMonitor(engine, settings=settings.monitoring)
    registry = ImplementationRegistry(
        InMemoryTrafficRouter(),
        InMemoryLiveMetricsSource(),
        monitor,
        settings=settings.rollout,
        run_loops=False,
    )
    scheduler = AutomaticWinnerScheduler(
        InMemoryTestSource(tests),
        TestConclusionEngine(engine, rollout_settings=settings.rollout),
        monitor,
        registry,
        config=SchedulerConfig.from_settings(settings.scheduler),
    )
    results = []
    try:
        if once:
            if scheduler.get_config().enabled:
                results.append(await scheduler.run_tick())
                await _advance_rollouts(registry)
        else:
            for _ in range(ticks):
                results.append(await scheduler.force_run())
                await _advance_rollouts(registry)
    finally:
        await registry.shutdown()
    return results, registry


@cli.command(name="run")
@click.argument("tests_file", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--ticks",
    type=click.IntRange(min=1),
    default=1,
    help="Number of scheduler passes to run",
)
@click.option(
    "--once",
    is_flag=True,
    help="Run a single scheduled pass instead of forced passes",
)
@click.option(
    "--output",
    type=click.Choice(["console", "json"]),
    default="console",
    help="Output format",
)
@pass_cli
def run_cmd(
    cli_ctx: CLIContext, tests_file: Path, ticks: int, once: bool, output: str
) -> None:
    """Run scheduler passes over the tests in a file.

    Passes are forced unless --once is given, which runs one scheduled pass
    and does nothing when the scheduler is disabled. Winners are rolled out
    against an in-memory traffic router. Exits 1 when any evaluation failed.
    """
    try:
        tests = _load_tests(tests_file)
        results, registry = asyncio.run(
            _run_scheduler(cli_ctx.settings, tests, ticks, once=once)
        )
    except (click.ClickException, ABPilotError, ValidationError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)

    failed = sum(
        r.count(EvaluationOutcome.FAILED) + r.count(EvaluationOutcome.TIMEOUT)
        for r in results
    )
    if output == "json":
        payload = {
            "ticks": [r.model_dump(mode="json") for r in results],
            "rollouts": [s.model_dump(mode="json") for s in registry.list_statuses()],
        }
        click.echo(json.dumps(payload, indent=2))
    else:
        for result in results:
            _output_tick_console(result, registry)
    sys.exit(EXIT_FAILURE if failed else EXIT_SUCCESS)


@cli.group(name="config")
def config_command() -> None:
    """Inspect configuration."""


@config_command.command(name="show")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["yaml", "json"]),
    default="yaml",
    help="Output format",
)
@pass_cli
def config_show(cli_ctx: CLIContext, fmt: str) -> None:
    """Print the effective settings."""
    try:
        data = cli_ctx.settings.to_dict()
    except ValidationError as e:
        click.echo(f"Error: invalid configuration: {e}", err=True)
        sys.exit(EXIT_ERROR)
    if fmt == "json":
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.safe_dump(data, sort_keys=False))


def main() -> None:
    """Main entry point for the CLI."""
    cli(auto_envvar_prefix="ABPILOT")


if __name__ == "__main__":
    main()
