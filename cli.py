# Trade gateway CLI
import asyncio
import json

import click

from app.main import ApplicationOrchestrator, main as run_app
from core.trading.models import BrokerName, MarketType, Side, Task, TaskKind, TradeIntent
from core.utils.ids import generate_task_id


@click.group()
def cli():
    """Trade Gateway CLI"""
    pass


@cli.command()
def run():
    """Run the gateway with the durable task worker"""
    click.echo("Starting Trade Gateway...")
    asyncio.run(run_app())


@cli.command()
@click.option("--instrument", required=True, help="Symbol or epic, e.g. BTCUSDT")
@click.option("--size", required=True, type=float)
@click.option("--side", required=True, type=click.Choice([s.value for s in Side], case_sensitive=False))
@click.option("--strategy", required=True)
@click.option("--market", required=True, type=click.Choice([m.value for m in MarketType], case_sensitive=False))
@click.option("--broker", required=True, type=click.Choice([b.value for b in BrokerName], case_sensitive=False))
@click.option("--leverage", type=int, default=None)
@click.option("--kind", type=click.Choice([k.value for k in TaskKind]), default=TaskKind.REVERSE.value)
def submit(instrument, size, side, strategy, market, broker, leverage, kind):
    """Publish a trade task to the durable task topic"""
    intent = TradeIntent(
        instrument=instrument, size=size, side=Side(side.upper()), strategy=strategy,
        market=MarketType(market.upper()), broker=BrokerName(broker.lower()), leverage=leverage,
    )
    task = Task(task_id=generate_task_id(), kind=TaskKind(kind), payload=intent,
                description=f"cli {kind} {intent.side.value} {intent.instrument}")

    async def _publish():
        app = ApplicationOrchestrator()
        publisher = app.container.task_publisher()
        await publisher.start()
        try:
            await publisher.publish(task)
        finally:
            await publisher.stop()

    asyncio.run(_publish())
    click.echo(f"Task {task.task_id} published")


@cli.command()
def reconcile():
    """Run one reconciliation sweep"""
    closed = asyncio.run(ApplicationOrchestrator().reconcile_once())
    click.echo(json.dumps(closed, indent=2))


@cli.command(name="open-positions")
@click.option("--broker", type=click.Choice([b.value for b in BrokerName]), default=None)
@click.option("--strategy", default=None)
@click.option("--market", type=click.Choice([m.value for m in MarketType]), default=None)
def open_positions(broker, strategy, market):
    """List locally open positions"""
    positions = asyncio.run(ApplicationOrchestrator().open_positions(broker, strategy, market))
    click.echo(json.dumps([p.model_dump(mode="json") for p in positions], indent=2))


if __name__ == "__main__":
    cli()
