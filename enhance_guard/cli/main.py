"""
CLI interface for enhance-guard.

Provides command-line access to usage accounting, routing previews, frame
scoring and end-to-end enhancement.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from enhance_guard.config.loader import RouterConfig, default_config, load_router_config
from enhance_guard.core.errors import EnhanceGuardError, RoutingError, ScoringError
from enhance_guard.core.ledger import UsageLedger
from enhance_guard.core.routing import RoutingEngine
from enhance_guard.core.scoring import FrameScorer
from enhance_guard.core.types import CostClass, EditTask, Tier
from enhance_guard.providers import (
    ClipdropProvider,
    FakeProvider,
    FalFluxProvider,
    GeminiProvider,
    OnDeviceProvider,
    OpenAIImageProvider,
    ProviderRegistry,
)
from enhance_guard.sdk.session import build_default_registry, build_session
from enhance_guard.storage.db import DEFAULT_DB_PATH
from enhance_guard.storage.repository import (
    InMemoryUsageStore,
    SQLiteUsageStore,
    fetch_recent_charge_events,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CLOUD_ADAPTERS = (GeminiProvider, OpenAIImageProvider, FalFluxProvider, ClipdropProvider)

_USER_ACTION_HINTS = {
    "upgrade": "Upgrade to Pro for more credits.",
    "retry": "Please try again in a moment.",
}


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """enhance-guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("enhance-guard - Use --help to see available commands")


@app.command()
def init(db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path")):
    """Initialize the usage database."""
    try:
        initialize_schema(db)
        console.print(f"[green]✓[/] Database initialized at {db}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def validate(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Router config YAML"),
    all_providers: bool = typer.Option(
        False, "--all-providers", help="Validate against every known provider, ignoring API keys"
    ),
):
    """Validate the router config against the registered providers."""
    try:
        router_config = _load_config(config)
        registry = _preview_registry() if all_providers else build_default_registry()
    except Exception as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Task routes")
    table.add_column("Task")
    table.add_column("Cost class")
    table.add_column("Eligible providers")
    table.add_column("Status")

    for task, route in router_config.tasks.items():
        eligible = registry.eligible(task, router_config)
        status = "[green]✓[/]" if eligible else "[red]no provider[/]"
        table.add_row(
            task.display_name,
            route.cost_class.value,
            ", ".join(adapter.provider_id.value for adapter in eligible) or "-",
            status,
        )
    console.print(table)

    missing = registry.unservable(router_config)
    if missing:
        console.print(
            f"[red]✗[/] No provider for: {', '.join(task.value for task in missing)}"
        )
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] Configuration is valid")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    account: str = typer.Option(..., "--account", "-a", help="Account identifier"),
    tier: Optional[Tier] = typer.Option(None, "--tier", help="Show limits for this tier"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Router config YAML"),
):
    """Show credit usage for the current period."""
    try:
        router_config = _load_config(config)
        ledger = UsageLedger(SQLiteUsageStore(db), router_config.capacities, router_config.reset_period)
        snapshot = asyncio.run(ledger.snapshot(account, tier))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Usage for {account}[/bold] ({snapshot.tier.display_name} tier)")
    table = Table()
    table.add_column("Class")
    table.add_column("Used", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Capacity", justify="right")
    table.add_column("Usage", justify="right")
    for cost_class, remaining, capacity in (
        (CostClass.BUDGET, snapshot.budget_remaining, snapshot.budget_capacity),
        (CostClass.PREMIUM, snapshot.premium_remaining, snapshot.premium_capacity),
    ):
        table.add_row(
            cost_class.value,
            str(capacity - remaining),
            str(remaining),
            str(capacity),
            f"{snapshot.usage_percentage(cost_class) * 100:.0f}%",
        )
    console.print(table)
    console.print(f"Period started: {snapshot.period_start:%Y-%m-%d %H:%M} UTC")
    console.print(f"Next reset:     {snapshot.next_reset:%Y-%m-%d %H:%M} UTC")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Filter to one account"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of charges to show"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
):
    """List recent credit charges, newest first."""
    try:
        initialize_schema(db)
        events = fetch_recent_charge_events(account, limit, db)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not events:
        console.print("[dim]No credit charges recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Recent credit charges")
    table.add_column("Time")
    table.add_column("Account")
    table.add_column("Tier")
    table.add_column("Class")
    table.add_column("Provider")
    table.add_column("Task")
    for event in events:
        table.add_row(
            f"{event.timestamp:%Y-%m-%d %H:%M:%S}",
            event.account_id,
            event.tier.value,
            event.cost_class.value,
            event.provider or "-",
            event.task or "-",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def plan(
    task: EditTask = typer.Option(..., "--task", "-t", help="Edit task"),
    tier: Tier = typer.Option(Tier.FREE, "--tier", help="Account tier"),
    quality: float = typer.Option(0.8, "--quality", "-q", help="Quality hint between 0 and 1"),
    budget_remaining: Optional[int] = typer.Option(None, "--budget-remaining", help="Budget credits left"),
    premium_remaining: Optional[int] = typer.Option(None, "--premium-remaining", help="Premium credits left"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Router config YAML"),
    all_providers: bool = typer.Option(
        False, "--all-providers", help="Plan against every known provider, ignoring API keys"
    ),
):
    """Preview the routing decision for a request without running it."""
    try:
        router_config = _load_config(config)
        registry = _preview_registry() if all_providers else build_default_registry()
        engine = _engine_for_preview(registry, router_config)
        remaining = {
            CostClass.BUDGET: (
                budget_remaining if budget_remaining is not None
                else router_config.capacity(tier, CostClass.BUDGET)
            ),
            CostClass.PREMIUM: (
                premium_remaining if premium_remaining is not None
                else router_config.capacity(tier, CostClass.PREMIUM)
            ),
        }
        decision = engine.decide_for_remaining(task, tier, quality=quality, remaining=remaining)
    except RoutingError as e:
        console.print(f"[red]✗[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Routing plan:[/bold] {task.display_name} ({tier.display_name} tier)")
    console.print(f"Cost class:        {decision.cost_class.value}")
    console.print(f"Consumes credit:   {'yes' if decision.will_consume_credit else 'no'}")
    console.print(f"Estimated quality: {decision.estimated_quality:.2f}")
    console.print(
        "Provider chain:    " + " → ".join(provider.value for provider in decision.provider_chain)
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def score(
    files: List[Path] = typer.Argument(..., help="Frames of one burst, in capture order"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Router config YAML"),
):
    """Score a burst and show which frame would be enhanced."""
    try:
        router_config = _load_config(config)
        frames = [path.read_bytes() for path in files]
        selection = FrameScorer(router_config.score_weights).select_best(frames)
    except (ScoringError, OSError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Frame scores")
    table.add_column("#", justify="right")
    table.add_column("File")
    table.add_column("Sharpness", justify="right")
    table.add_column("Exposure", justify="right")
    table.add_column("Composition", justify="right")
    table.add_column("Overall", justify="right")
    table.add_column("Selected")
    for index, (path, frame_score) in enumerate(zip(files, selection.scores)):
        if frame_score is None:
            table.add_row(str(index), path.name, "-", "-", "-", "[red]unscorable[/]", "")
            continue
        table.add_row(
            str(index),
            path.name,
            f"{frame_score.sharpness:.3f}",
            f"{frame_score.exposure:.3f}",
            f"{frame_score.composition:.3f}",
            f"{frame_score.overall_score:.3f}",
            "[green]✓[/]" if index == selection.index else "",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def enhance(
    files: List[Path] = typer.Argument(..., help="Frames of one burst, in capture order"),
    account: str = typer.Option(..., "--account", "-a", help="Account identifier"),
    output: Path = typer.Option(..., "--output", "-o", help="Where to write the enhanced image"),
    task: Optional[EditTask] = typer.Option(None, "--task", "-t", help="Edit task; inferred from the prompt if omitted"),
    tier: Optional[Tier] = typer.Option(None, "--tier", help="Apply this tier to the account first"),
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="Free-text instruction"),
    quality: float = typer.Option(0.8, "--quality", "-q", help="Quality hint between 0 and 1"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Router config YAML"),
    offline: bool = typer.Option(False, "--offline", help="Use only the on-device provider"),
):
    """Select the best frame of a burst and enhance it."""
    try:
        router_config = _load_config(config)
        frames = [path.read_bytes() for path in files]
        registry = build_default_registry(include_cloud=not offline)
        session = build_session(
            account,
            config=router_config,
            store=SQLiteUsageStore(db),
            registry=registry,
            validate=False,
        )
        result = asyncio.run(_run_enhance(session, frames, task, tier, prompt, quality))
        result.image.save(output)
    except RoutingError as e:
        console.print(f"[red]✗[/] {str(e)}")
        hint = _USER_ACTION_HINTS.get(e.user_action)
        if hint:
            console.print(f"[yellow]{hint}[/]")
        sys.exit(EXIT_CODE_FAIL)
    except (EnhanceGuardError, OSError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Enhanced image written to {output}")
    console.print(
        f"Provider: {result.provider_used.value} | class: {result.cost_class.value} "
        f"| {result.elapsed_time:.2f}s"
    )
    sys.exit(EXIT_CODE_PASS)


async def _run_enhance(session, frames, task, tier, prompt, quality):
    async with session:
        return await session.enhance(frames, task, tier, prompt=prompt, quality=quality)


def _load_config(path: Optional[str]) -> RouterConfig:
    if path is None:
        return default_config()
    return load_router_config(path)


def _preview_registry() -> ProviderRegistry:
    """Registry with inert stand-ins for every cloud provider."""
    registry = ProviderRegistry([OnDeviceProvider()])
    for adapter_cls in CLOUD_ADAPTERS:
        registry.register(FakeProvider(
            adapter_cls.provider_id,
            cost_class=adapter_cls.cost_class,
            tasks=adapter_cls.supported_tasks,
            max_image_pixels=adapter_cls.max_image_pixels,
        ))
    return registry


def _engine_for_preview(registry: ProviderRegistry, config: RouterConfig) -> RoutingEngine:
    ledger = UsageLedger(InMemoryUsageStore(), config.capacities, config.reset_period)
    return RoutingEngine(registry, ledger, config)


if __name__ == "__main__":
    app()
