"""
CLI for the Model Rollout Controller.

Provides a rich command-line interface with:
- Plan validation and template generation
- Starting, following and resuming rollouts
- Status tables, aborts and audit reports
- Offline simulation of a plan against synthetic metrics

Usage:
    model-rollout validate plan.yaml
    model-rollout generate --type plan --strategy canary -o plan.yaml
    model-rollout start plan.yaml --config settings.yaml --follow
    model-rollout status --config settings.yaml
    model-rollout simulate plan.yaml --fail-at-step 2
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import sys
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from model_rollout import __version__
from model_rollout.adapters.simulated import (
    MetricProfile,
    RecordingTrafficRouter,
    SimulatedClock,
    SimulatedMetricsGateway,
)
from model_rollout.config import (
    ConfigLoader,
    ControllerSettings,
    DeltaMode,
    RolloutPlan,
    RolloutStrategy,
    load_controller_settings,
    load_plan_config,
)
from model_rollout.config.loader import ConfigError
from model_rollout.rollout.controller import RolloutController, request_abort
from model_rollout.rollout.errors import RolloutError
from model_rollout.rollout.models import RolloutPhase, RolloutRun
from model_rollout.rollout.report import generate_audit_report
from model_rollout.rollout.store import InMemoryRunStore, JsonFileRunStore

# Initialize Rich console
console = Console()

# Create Typer app
app = typer.Typer(
    name="model-rollout",
    help="Model Rollout Controller - Progressive delivery for ML models",
    add_completion=True,
    rich_markup_mode="rich",
)

PHASE_STYLES = {
    RolloutPhase.PENDING: "dim",
    RolloutPhase.ADVANCING: "cyan",
    RolloutPhase.HOLDING: "blue",
    RolloutPhase.ROLLING_BACK: "yellow",
    RolloutPhase.ROLLED_BACK: "red",
    RolloutPhase.COMPLETED: "green",
}

CONFIG_OPTION_HELP = "Path to controller settings YAML (defaults apply if omitted)"


# =============================================================================
# Utility Functions
# =============================================================================


def setup_logging(
    verbose: bool = False, log_file: Path | None = None, level_name: str = "INFO"
) -> None:
    """Configure logging with Rich handler."""
    level = logging.DEBUG if verbose else logging.getLevelName(level_name)

    handlers: list[logging.Handler] = [
        RichHandler(
            console=console,
            show_time=True,
            show_path=verbose,
            rich_tracebacks=True,
        )
    ]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,
    )


def print_header() -> None:
    """Print the CLI header banner."""
    header = Text()
    header.append("Model Rollout Controller", style="bold blue")
    header.append(" v", style="dim")
    header.append(__version__, style="cyan")

    console.print(
        Panel(
            header,
            subtitle="Progressive delivery for ML models",
            border_style="blue",
        )
    )


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green][+][/green] {message}")


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red][-][/red] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow][!][/yellow] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue][*][/blue] {message}")


def _phase_text(phase: RolloutPhase) -> str:
    style = PHASE_STYLES[phase]
    return f"[{style}]{phase.value}[/{style}]"


# =============================================================================
# Commands
# =============================================================================


@app.command()
def validate(
    config_path: Path = typer.Argument(
        ...,
        help="Path to configuration YAML file",
        exists=True,
        readable=True,
    ),
    config_type: str = typer.Option(
        "plan",
        "--type",
        "-t",
        help="Configuration type: plan, settings",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show detailed validation output",
    ),
) -> None:
    """
    Validate a configuration file.

    Checks the file for YAML errors and validates every field against
    the schema.
    """
    print_header()

    loader = ConfigLoader()

    try:
        with console.status(f"[bold blue]Validating {config_type} configuration..."):
            if config_type == "plan":
                config = loader.load_plan(config_path)
            elif config_type == "settings":
                config = loader.load_settings(config_path)
            else:
                print_error(f"Unknown configuration type: {config_type}")
                raise typer.Exit(1)
    except ConfigError as e:
        print_error(f"Validation failed: {e}")
        raise typer.Exit(1) from e

    if isinstance(config, RolloutPlan):
        print_success(
            f"Plan is valid: {config.baseline_version} -> {config.candidate_version} "
            f"in {config.num_steps} step(s)"
        )
        if verbose:
            _display_plan(config)
    else:
        print_success("Settings are valid")
        if verbose:
            _display_settings(config)


@app.command()
def generate(
    config_type: str = typer.Option(
        "plan",
        "--type",
        "-t",
        help="Configuration type to generate: plan, settings",
    ),
    strategy: RolloutStrategy = typer.Option(
        RolloutStrategy.CANARY,
        "--strategy",
        "-s",
        help="Plan strategy: canary, blue-green",
    ),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Output file path (default: stdout)",
    ),
) -> None:
    """
    Generate a configuration template.

    Creates a plan or settings template that can be customized for your
    rollout.
    """
    print_header()

    loader = ConfigLoader()
    if config_type == "plan":
        content = loader.generate_plan_template(strategy)
    elif config_type == "settings":
        content = loader.generate_settings_template()
    else:
        print_error(f"Unknown configuration type: {config_type}")
        raise typer.Exit(1)

    if output:
        output.write_text(content, encoding="utf-8")
        print_success(f"Configuration template written to: {output}")
    else:
        console.print(Panel(content, title=f"{config_type.title()} Template"))


@app.command()
def start(
    plan_path: Path = typer.Argument(
        ...,
        help="Path to rollout plan YAML file",
        exists=True,
        readable=True,
    ),
    config: Path | None = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
    follow: bool = typer.Option(
        False,
        "--follow",
        "-f",
        help="Drive the run in the foreground until it finishes",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
    log_file: Path | None = typer.Option(None, "--log-file", "-l", help="Path to log file"),
) -> None:
    """
    Start a rollout.

    Registers a run for the plan in the state directory. With --follow the
    run is driven here until it completes or rolls back; otherwise a
    controller started with `serve` or `resume` picks it up.
    """
    print_header()

    try:
        plan = load_plan_config(plan_path)
        settings = load_controller_settings(config)
        setup_logging(verbose, log_file, settings.log_level)
        controller = RolloutController.from_settings(settings)
        run = asyncio.run(_start(controller, plan, follow))
    except ConfigError as e:
        print_error(f"Configuration error: {e}")
        raise typer.Exit(1) from e
    except RolloutError as e:
        print_error(str(e))
        raise typer.Exit(1) from e
    except KeyboardInterrupt:
        print_warning("Interrupted; the run stays persisted and can be resumed")
        raise typer.Abort() from None

    print_success(f"Run {run.run_id} created for {run.candidate_version}")
    if follow:
        _display_run(run)
        if run.phase == RolloutPhase.ROLLED_BACK:
            raise typer.Exit(2)


@app.command()
def resume(
    config: Path | None = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
    log_file: Path | None = typer.Option(None, "--log-file", "-l", help="Path to log file"),
) -> None:
    """
    Resume every persisted active run and drive it to a terminal phase.

    Used after a controller crash: each run continues from its persisted
    phase and step.
    """
    print_header()

    try:
        settings = load_controller_settings(config)
        setup_logging(verbose, log_file, settings.log_level)
        controller = RolloutController.from_settings(settings)
        runs = asyncio.run(_resume(controller))
    except ConfigError as e:
        print_error(f"Configuration error: {e}")
        raise typer.Exit(1) from e
    except RolloutError as e:
        print_error(str(e))
        raise typer.Exit(1) from e
    except KeyboardInterrupt:
        print_warning("Interrupted; runs stay persisted and can be resumed")
        raise typer.Abort() from None

    if not runs:
        print_info("No active runs to resume")
        return
    _display_runs(runs)


@app.command()
def status(
    run_id: str | None = typer.Argument(None, help="Run to show (all runs if omitted)"),
    config: Path | None = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
    active_only: bool = typer.Option(False, "--active", "-a", help="Only show active runs"),
) -> None:
    """Show the status of one run or list all runs."""
    try:
        store = JsonFileRunStore(load_controller_settings(config).state_dir)
        if run_id:
            _display_run(store.get(run_id))
            return
        runs = store.list_runs(active_only=active_only)
    except (ConfigError, RolloutError) as e:
        print_error(str(e))
        raise typer.Exit(1) from e

    if not runs:
        print_info("No runs found")
        return
    _display_runs(runs)


@app.command()
def abort(
    run_id: str = typer.Argument(..., help="Run to abort"),
    reason: str = typer.Option("operator request", "--reason", "-r", help="Abort reason"),
    config: Path | None = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
) -> None:
    """
    Abort a run.

    The abort is persisted immediately; the controller driving the run
    restores the baseline split on its next tick.
    """
    try:
        store = JsonFileRunStore(load_controller_settings(config).state_dir)
        ack = request_abort(store, run_id, reason)
    except (ConfigError, RolloutError) as e:
        print_error(f"Abort failed: {e}")
        raise typer.Exit(1) from e

    print_success(f"Run {ack.run_id} aborted ({ack.reason}); now {ack.phase.value}")


@app.command()
def report(
    run_id: str = typer.Argument(..., help="Run to report on"),
    config: Path | None = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Write the Markdown report to this file"
    ),
) -> None:
    """Generate the Markdown audit report of a run."""
    try:
        store = JsonFileRunStore(load_controller_settings(config).state_dir)
        content = generate_audit_report(store.get(run_id))
    except (ConfigError, RolloutError) as e:
        print_error(str(e))
        raise typer.Exit(1) from e

    if output:
        output.write_text(content, encoding="utf-8")
        print_success(f"Audit report written to: {output}")
    else:
        console.print(content)


@app.command()
def simulate(
    plan_path: Path = typer.Argument(
        ...,
        help="Path to rollout plan YAML file",
        exists=True,
        readable=True,
    ),
    fail_at_step: int | None = typer.Option(
        None,
        "--fail-at-step",
        help="Degrade the candidate once this step's weight is reached (0-indexed)",
    ),
    tick_interval: float = typer.Option(
        30.0, "--tick-interval", help="Simulated seconds between ticks"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
) -> None:
    """
    Simulate a plan against synthetic metrics.

    Runs the real controller with an in-memory store, a recording router
    and a simulated clock, then prints the weights sent and the outcome.
    """
    print_header()
    if verbose:
        setup_logging(verbose)

    try:
        plan = load_plan_config(plan_path)
    except ConfigError as e:
        print_error(f"Configuration error: {e}")
        raise typer.Exit(1) from e

    if fail_at_step is not None and not 0 <= fail_at_step < plan.num_steps:
        print_error(f"--fail-at-step must be between 0 and {plan.num_steps - 1}")
        raise typer.Exit(1)

    run, router = asyncio.run(_simulate(plan, fail_at_step, tick_interval))

    weights = " -> ".join(f"{w}%" for w in router.candidate_weights)
    print_info(f"Candidate weights sent: {weights or 'none'}")
    _display_run(run)
    if run.phase == RolloutPhase.COMPLETED:
        print_success(f"{plan.candidate_version} promoted to 100% of traffic")
    else:
        print_warning(f"{plan.candidate_version} rolled back: {run.failure_reason}")


@app.command()
def serve(
    config: Path | None = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8080, "--port", "-p", help="Bind port"),
) -> None:
    """Run the REST API with an embedded controller."""
    import uvicorn

    if config:
        os.environ["ROLLOUT_CONFIG"] = str(config)
    print_info(f"Serving on http://{host}:{port} (docs at /docs)")
    uvicorn.run("model_rollout.api.main:app", host=host, port=port, workers=1)


@app.command()
def info() -> None:
    """
    Display controller information.

    Shows version, system information and supported features.
    """
    print_header()

    table = Table(title="System Information", show_header=True)
    table.add_column("Component", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Python", sys.version.split()[0])
    table.add_row("Platform", sys.platform)
    table.add_row("Time", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))

    console.print(table)

    tree = Tree("[bold blue]Available Features")

    strategies = tree.add("[cyan]Strategies")
    strategies.add("Canary (weighted steps)")
    strategies.add("Blue-green (0% -> 100%)")

    gates = tree.add("[cyan]Health Gates")
    gates.add("Error-rate delta (absolute or relative)")
    gates.add("p99 latency delta")
    gates.add("Drift score")

    safety = tree.add("[cyan]Safety")
    safety.add("Automatic rollback on breach, timeout or router loss")
    safety.add("Persist-before-effect crash recovery")
    safety.add("Operator abort")

    console.print(tree)


@app.command()
def version() -> None:
    """Display version information."""
    console.print(f"model-rollout version [bold cyan]{__version__}[/bold cyan]")


# =============================================================================
# Helper Functions
# =============================================================================


async def _start(controller: RolloutController, plan: RolloutPlan, follow: bool) -> RolloutRun:
    run_id = await controller.start_rollout(plan)
    if not follow:
        return await controller.get_status(run_id)
    print_info(f"Following run {run_id} (Ctrl+C to detach)")
    try:
        return await controller.run_until_terminal(run_id, on_tick=_print_tick)
    finally:
        await controller.stop()


async def _resume(controller: RolloutController) -> list[RolloutRun]:
    runs = await controller.list_runs(active_only=True)
    for run in runs:
        print_info(
            f"Resuming {run.run_id} ({run.candidate_version}) "
            f"in {run.phase.value} at step {run.step_index}"
        )
    try:
        return list(
            await asyncio.gather(
                *(controller.run_until_terminal(run.run_id, on_tick=_print_tick) for run in runs)
            )
        )
    finally:
        await controller.stop()


def _degraded_profile(plan: RolloutPlan, baseline: MetricProfile) -> MetricProfile:
    """Candidate profile that breaches every configured threshold."""
    thresholds = plan.thresholds
    error_rate = baseline.error_rate
    if thresholds.max_error_rate_delta is not None:
        if thresholds.error_rate_delta_mode == DeltaMode.RELATIVE:
            error_rate = max(baseline.error_rate, 0.01) * (1 + 2 * thresholds.max_error_rate_delta)
        else:
            error_rate = baseline.error_rate + 2 * thresholds.max_error_rate_delta
    latency = baseline.latency_p99 + 2 * (thresholds.max_latency_p99_delta_ms or 0.0)
    drift = baseline.drift_score + 2 * (thresholds.max_drift_score or 0.0)
    return MetricProfile(error_rate=error_rate, latency_p99=latency, drift_score=drift)


async def _simulate(
    plan: RolloutPlan, fail_at_step: int | None, tick_interval: float
) -> tuple[RolloutRun, RecordingTrafficRouter]:
    clock = SimulatedClock()
    router = RecordingTrafficRouter()
    baseline = MetricProfile()
    gateway = SimulatedMetricsGateway(
        clock,
        baseline=baseline,
        candidate=baseline,
        degraded=_degraded_profile(plan, baseline) if fail_at_step is not None else None,
        degrade_at_weight=(
            plan.steps[fail_at_step].candidate_weight if fail_at_step is not None else None
        ),
        router=router,
        samples_per_fetch=max(step.min_samples for step in plan.steps),
    )

    async def no_sleep(_: float) -> None:
        return None

    controller = RolloutController(
        InMemoryRunStore(),
        gateway,
        router,
        ControllerSettings(tick_interval_seconds=tick_interval),
        clock=clock,
        sleep=no_sleep,
    )
    run_id = await controller.start_rollout(plan)
    max_ticks = math.ceil(plan.max_total_duration_seconds / tick_interval) + 2

    run = await controller.tick(run_id)
    for _ in range(max_ticks):
        if run.is_terminal:
            break
        clock.advance(tick_interval)
        run = await controller.tick(run_id)
    return run, router


def _print_tick(run: RolloutRun) -> None:
    verdict = run.last_verdict
    verdict_text = f", last verdict {verdict.outcome.value} ({verdict.reason.value})" if verdict else ""
    console.print(
        f"  [dim]{run.run_id}[/dim] {_phase_text(run.phase)} step "
        f"{run.step_index + 1}/{run.plan.num_steps} "
        f"@ {run.applied_candidate_weight if run.applied_candidate_weight is not None else '-'}%"
        f"{verdict_text}"
    )


def _display_plan(plan: RolloutPlan) -> None:
    """Display plan steps and thresholds."""
    table = Table(title=f"Plan {plan.plan_id}", show_header=True)
    table.add_column("Step", style="cyan")
    table.add_column("Candidate %", style="yellow")
    table.add_column("Baseline %", style="white")
    table.add_column("Min Observation", style="green")
    table.add_column("Min Samples", style="green")

    for i, step in enumerate(plan.steps):
        table.add_row(
            str(i),
            str(step.candidate_weight),
            str(step.baseline_weight),
            f"{step.min_observation_seconds:g}s",
            str(step.min_samples),
        )
    console.print(table)

    thresholds = Table(title="Thresholds", show_header=True)
    thresholds.add_column("Metric", style="cyan")
    thresholds.add_column("Limit", style="red")
    for metric, limit in plan.thresholds.configured().items():
        thresholds.add_row(metric.value, f"{limit:g}")
    console.print(thresholds)


def _display_settings(settings: ControllerSettings) -> None:
    """Display controller settings."""
    table = Table(title="Controller Settings")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")

    for key, value in settings.model_dump().items():
        table.add_row(key, str(value))
    console.print(table)


def _display_runs(runs: list[RolloutRun]) -> None:
    """Display a table of runs."""
    table = Table(title="Rollout Runs", show_header=True)
    table.add_column("Run ID", style="cyan")
    table.add_column("Candidate", style="white")
    table.add_column("Phase")
    table.add_column("Step", style="yellow")
    table.add_column("Weight", style="yellow")
    table.add_column("Reason", style="dim")

    for run in runs:
        weight = run.applied_candidate_weight
        table.add_row(
            run.run_id,
            run.candidate_version,
            _phase_text(run.phase),
            f"{run.step_index + 1}/{run.plan.num_steps}",
            f"{weight}%" if weight is not None else "-",
            run.failure_reason or "",
        )
    console.print(table)


def _display_run(run: RolloutRun) -> None:
    """Display one run with its verdict history."""
    table = Table(title=f"Run {run.run_id}", show_header=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")

    table.add_row("Candidate", run.candidate_version)
    table.add_row("Baseline", run.plan.baseline_version)
    table.add_row("Phase", _phase_text(run.phase))
    table.add_row("Step", f"{run.step_index + 1}/{run.plan.num_steps}")
    table.add_row("Target weight", f"{run.current_step_weight}%")
    table.add_row(
        "Applied weight",
        f"{run.applied_candidate_weight}%" if run.applied_candidate_weight is not None else "-",
    )
    table.add_row("Started", run.started_at.isoformat())
    if run.outcome:
        table.add_row("Outcome", run.outcome.value)
    if run.failure_reason:
        table.add_row("Failure reason", run.failure_reason)
    if run.abort_reason:
        table.add_row("Abort reason", run.abort_reason)
    if run.last_error:
        table.add_row("Last error", run.last_error)
    console.print(table)

    if run.history:
        verdicts = Table(title="Verdicts", show_header=True)
        verdicts.add_column("Step", style="yellow")
        verdicts.add_column("Outcome")
        verdicts.add_column("Reason", style="dim")
        verdicts.add_column("Deltas", style="white")
        for verdict in run.history[-10:]:
            color = {"pass": "green", "fail": "red"}.get(verdict.outcome.value, "yellow")
            verdicts.add_row(
                str(verdict.step_index),
                f"[{color}]{verdict.outcome.value}[/{color}]",
                verdict.reason.value,
                ", ".join(f"{k}={v:.4g}" for k, v in verdict.deltas.items()) or "-",
            )
        console.print(verdicts)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
