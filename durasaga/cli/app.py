"""
Durasaga CLI Application - Built with Click.

Commands run the order fulfillment saga in-process (engine, dispatcher and
both activity workers in one event loop) and inspect execution histories
kept by the configured storage.
"""

import asyncio
import json
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from durasaga import __version__
from durasaga.activities import PaymentActivities, ShippingActivities
from durasaga.core.config import EngineConfig
from durasaga.core.engine import ExecutionDescription, WorkflowEngine
from durasaga.core.exceptions import DurasagaError
from durasaga.core.retry import RetryPolicy
from durasaga.core.types import ExecutionStatus
from durasaga.dispatch.worker import ActivityWorker
from durasaga.monitoring.logging import setup_engine_logging
from durasaga.saga.order import (
    PAYMENT_ACTIVITY_TASK_QUEUE,
    SHIPPING_ACTIVITY_TASK_QUEUE,
    OrderService,
    order_saga,
)

console = Console()

STATUS_STYLES = {
    ExecutionStatus.RUNNING.value: "cyan",
    ExecutionStatus.COMPENSATING.value: "yellow",
    ExecutionStatus.COMPLETED.value: "green",
    ExecutionStatus.FAILED.value: "red",
}


# ============================================================================
# CLI Group
# ============================================================================


class OrderedGroup(click.Group):
    """Click Group that lists commands in the order they were added."""

    def list_commands(self, ctx):
        return list(self.commands.keys())


@click.group(cls=OrderedGroup)
@click.version_option(version=__version__, prog_name="durasaga")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML configuration file (default: DURASAGA_* environment variables)",
)
@click.option("--verbose", "-v", is_flag=True, help="Log engine activity to stderr")
@click.pass_context
def cli(ctx, config_path: Path | None, verbose: bool):
    """
    Durasaga - durable saga orchestration.

    \b
    Commands:
        run-order        Run the order fulfillment saga in-process
        status           Show status, failure cause and compensations
        list             List executions
        history          Show the event history of an execution
        cancel           Request cancellation of an execution
        recover          Resume every unfinished execution
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    if verbose:
        setup_engine_logging("INFO", json_format=False)


def _load_config(ctx: click.Context) -> EngineConfig:
    config_path = ctx.obj.get("config_path") if ctx.obj else None
    if config_path is not None:
        return EngineConfig.from_file(config_path)
    return EngineConfig.from_env()


def _fail(error: Exception) -> None:
    console.print(f"[red]Error: {error}[/red]")
    raise SystemExit(1)


def _status_text(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.upper()}[/{style}]"


# ============================================================================
# In-process runtime
# ============================================================================


class OrderRuntime:
    """
    Engine plus payment and shipping workers sharing one event loop.

    Usage:
        >>> async with OrderRuntime(config) as runtime:
        ...     handle = await runtime.orders.create_order(1, 10.0, 2)
    """

    def __init__(
        self,
        config: EngineConfig,
        payments: PaymentActivities | None = None,
        shipping: ShippingActivities | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.config = config
        self.payments = payments or PaymentActivities()
        self.shipping = shipping or ShippingActivities()
        self.engine = WorkflowEngine(config=config)
        self.engine.register(
            order_saga(
                retry_policy=retry_policy or config.retry_policy,
                start_to_close_timeout=config.start_to_close_timeout,
            )
        )
        self.orders = OrderService(self.engine)
        self.workers = [
            ActivityWorker(
                queue,
                handlers,
                self.engine.dispatcher,
                max_concurrent=config.max_concurrent,
                poll_interval=config.poll_interval,
                handle_signals=False,
            )
            for queue, handlers in (
                (PAYMENT_ACTIVITY_TASK_QUEUE, self.payments.handlers()),
                (SHIPPING_ACTIVITY_TASK_QUEUE, self.shipping.handlers()),
            )
        ]
        self._runners: list[asyncio.Task] = []

    async def __aenter__(self) -> "OrderRuntime":
        await self.engine.__aenter__()
        self._runners = [asyncio.create_task(worker.start()) for worker in self.workers]
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        for worker in self.workers:
            await worker.stop()
        await asyncio.gather(*self._runners, return_exceptions=True)
        await self.engine.shutdown()
        await self.config.queues.close()
        await self.config.storage.close()


# ============================================================================
# Rendering
# ============================================================================


def _render_description(description: ExecutionDescription) -> None:
    lines = [
        f"[bold]Execution:[/bold] {description.execution_id}",
        f"[bold]Workflow:[/bold]  {description.definition_ref}",
        f"[bold]Status:[/bold]    {_status_text(description.status.value)}",
        f"[bold]Events:[/bold]    {description.event_count}",
    ]
    if description.task_queue:
        lines.insert(2, f"[bold]Queue:[/bold]     {description.task_queue}")
    if description.run_state is not None:
        state = description.run_state.to_dict()
        lines.append(f"[bold]Completed steps:[/bold] {state['completed_steps']}")
    if description.failure:
        cause = description.failure.get("cause") or {}
        lines.append(f"[bold]Cause:[/bold]     {cause.get('message', description.failure)}")
    console.print(Panel.fit("\n".join(lines), border_style=STATUS_STYLES.get(description.status.value, "blue")))

    if description.output and description.status == ExecutionStatus.COMPLETED:
        console.print_json(data=description.output, default=str)

    if description.compensations:
        table = Table(title="Compensations")
        table.add_column("Step", style="cyan")
        table.add_column("Activity")
        table.add_column("Status")
        table.add_column("Detail", style="dim")
        for record in description.compensations:
            detail = record.get("error") or record.get("result") or ""
            if isinstance(detail, dict):
                detail = detail.get("message") or json.dumps(detail, default=str)
            table.add_row(
                record.get("step", ""),
                record.get("activity_type", ""),
                record.get("status", ""),
                str(detail),
            )
        console.print(table)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


# ============================================================================
# durasaga run-order
# ============================================================================


@cli.command("run-order")
@click.option("--product-id", type=int, required=True, help="Product to order (999 cannot be shipped)")
@click.option("--price", type=float, required=True, help="Unit price")
@click.option("--quantity", type=int, required=True, help="Units to order")
@click.option("--order-id", type=int, default=None, help="Order id (default: next free id)")
@click.option(
    "--fail-debits",
    type=int,
    default=0,
    show_default=True,
    help="Transient payment failures to inject before debits succeed",
)
@click.option("--retry-interval", type=float, default=None, help="Override the initial retry interval (s)")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def run_order(
    ctx,
    product_id: int,
    price: float,
    quantity: int,
    order_id: int | None,
    fail_debits: int,
    retry_interval: float | None,
    as_json: bool,
):
    """
    Run the order fulfillment saga in-process and print the result.

    \b
    Examples:
        durasaga run-order --product-id 1 --price 10 --quantity 2
        durasaga run-order --product-id 999 --price 10 --quantity 1
        durasaga run-order --product-id 1 --price 10 --quantity 1 --fail-debits 3 --retry-interval 0.01
    """
    config = _load_config(ctx)
    retry_policy = config.retry_policy
    if retry_interval is not None:
        retry_policy = RetryPolicy(
            max_attempts=retry_policy.max_attempts,
            initial_interval=retry_interval,
            backoff_coefficient=retry_policy.backoff_coefficient,
        )

    async def _run() -> ExecutionDescription:
        runtime = OrderRuntime(
            config,
            payments=PaymentActivities(transient_failures=fail_debits),
            retry_policy=retry_policy,
        )
        async with runtime:
            handle = await runtime.orders.create_order(product_id, price, quantity, order_id=order_id)
            await handle.result()
            return await handle.describe()

    try:
        description = asyncio.run(_run())
    except DurasagaError as e:
        _fail(e)

    if as_json:
        _echo_json(description.to_dict())
    else:
        _render_description(description)


# ============================================================================
# durasaga status / list / history
# ============================================================================


@cli.command()
@click.argument("execution_id")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
@click.pass_context
def status(ctx, execution_id: str, as_json: bool):
    """Show status, failure cause and compensation outcomes of an execution."""
    config = _load_config(ctx)

    async def _describe() -> ExecutionDescription:
        engine = WorkflowEngine(config=config)
        engine.register(order_saga())
        try:
            async with config.storage:
                return await engine.describe(execution_id)
        finally:
            await config.queues.close()

    try:
        description = asyncio.run(_describe())
    except DurasagaError as e:
        _fail(e)

    if as_json:
        _echo_json(description.to_dict())
    else:
        _render_description(description)


@cli.command("list")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in ExecutionStatus]),
    default=None,
    help="Only executions with this status",
)
@click.option("--limit", type=int, default=50, show_default=True)
@click.pass_context
def list_executions(ctx, status_filter: str | None, limit: int):
    """List executions, most recently updated first."""
    config = _load_config(ctx)

    async def _list() -> list[dict[str, Any]]:
        async with config.storage as storage:
            return await storage.list_executions(
                status=ExecutionStatus(status_filter) if status_filter else None, limit=limit
            )

    summaries = asyncio.run(_list())
    if not summaries:
        console.print("[dim]No executions found[/dim]")
        return

    table = Table(title="Executions")
    table.add_column("Execution", style="cyan", no_wrap=True)
    table.add_column("Workflow")
    table.add_column("Status")
    table.add_column("Events", justify="right")
    table.add_column("Updated", style="dim")
    for summary in summaries:
        table.add_row(
            summary["execution_id"],
            summary["definition_ref"],
            _status_text(summary["status"]),
            str(summary["event_count"]),
            summary["updated_at"][:19],
        )
    console.print(table)
    console.print(f"\n[dim]Total: {len(summaries)} executions[/dim]")


@cli.command()
@click.argument("execution_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw events as JSON")
@click.pass_context
def history(ctx, execution_id: str, as_json: bool):
    """Show the append-only event history of an execution."""
    config = _load_config(ctx)

    async def _history():
        async with config.storage as storage:
            return await storage.load_execution(execution_id)

    execution = asyncio.run(_history())
    if execution is None:
        _fail(DurasagaError(f"Workflow execution '{execution_id}' not found"))

    if as_json:
        _echo_json([event.to_dict() for event in execution.history])
        return

    table = Table(title=f"History of {execution_id}")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Event", style="cyan")
    table.add_column("Seq", justify="right")
    table.add_column("Activity")
    table.add_column("Detail", style="dim")
    for event in execution.history:
        attrs = event.attributes
        detail = attrs.get("error") or attrs.get("result") or attrs.get("reason") or ""
        if isinstance(detail, dict):
            detail = detail.get("message") or json.dumps(detail, default=str)
        table.add_row(
            str(event.sequence),
            event.event_type.value,
            str(attrs.get("seq", "")),
            attrs.get("activity_type", ""),
            str(detail)[:60],
        )
    console.print(table)


# ============================================================================
# durasaga cancel / recover
# ============================================================================


@cli.command()
@click.argument("execution_id")
@click.option("--reason", default=None, help="Recorded with the request")
@click.pass_context
def cancel(ctx, execution_id: str, reason: str | None):
    """
    Request cancellation. The execution compensates its completed steps the
    next time it runs (see recover).
    """
    config = _load_config(ctx)

    async def _cancel() -> bool:
        engine = WorkflowEngine(config=config)
        try:
            async with config.storage:
                return await engine.cancel(execution_id, reason)
        finally:
            await config.queues.close()

    try:
        accepted = asyncio.run(_cancel())
    except DurasagaError as e:
        _fail(e)

    if accepted:
        console.print(f"[yellow]Cancellation requested for {execution_id}[/yellow]")
    else:
        console.print(f"[dim]{execution_id} already finished; nothing to cancel[/dim]")


@cli.command()
@click.option("--timeout", type=float, default=None, help="Give up waiting after this many seconds")
@click.pass_context
def recover(ctx, timeout: float | None):
    """
    Resume every unfinished order execution found in storage and wait for
    them to finish.
    """
    config = _load_config(ctx)

    async def _recover() -> list[ExecutionDescription]:
        async with OrderRuntime(config) as runtime:
            handles = await runtime.engine.recover()
            descriptions = []
            for handle in handles:
                await handle.result(timeout=timeout)
                descriptions.append(await handle.describe())
            return descriptions

    try:
        descriptions = asyncio.run(_recover())
    except (DurasagaError, TimeoutError) as e:
        _fail(e)

    if not descriptions:
        console.print("[dim]No unfinished executions[/dim]")
        return

    table = Table(title="Recovered executions")
    table.add_column("Execution", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Compensations", justify="right")
    for description in descriptions:
        table.add_row(
            description.execution_id,
            _status_text(description.status.value),
            str(len(description.compensations)),
        )
    console.print(table)


if __name__ == "__main__":
    cli()
