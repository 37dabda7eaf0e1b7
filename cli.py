# Command line entry points for the custody ledger
import asyncio
import json
import click
from app.main import main as run_app


async def _run_with_container(job):
    """Bring up DB and custodian for a one-shot command, run `job(container)`, tear down."""
    from app.containers import AppContainer
    from core.logging import configure_logging

    container = AppContainer()
    configure_logging(container.settings())
    db_manager = container.db_manager()
    gateway = container.custodian_gateway()
    await db_manager.init()
    try:
        await gateway.initialize()
        return await job(container)
    finally:
        await gateway.shutdown()
        await db_manager.shutdown()


def _echo_model(model):
    click.echo(json.dumps(model.model_dump(mode="json"), indent=2))


@click.group()
def cli():
    """Custody ledger CLI"""
    pass


@cli.command()
def run():
    """Run settlement, monitoring and reconciliation services"""
    click.echo("Starting custody ledger...")
    raise SystemExit(asyncio.run(run_app()))


@cli.command()
def api():
    """Run the API server"""
    click.echo("Starting custody ledger API server...")
    from api.main import run as run_api
    run_api()


@cli.command("init-db")
def init_db():
    """Create the database schema"""
    async def job(container):
        await container.db_manager().verify_connection()

    asyncio.run(_run_with_container(job))
    click.echo("Database initialized")


@cli.command("monitor-once")
def monitor_once():
    """Run a single stuck-transfer sweep"""
    async def job(container):
        return await container.stuck_transfer_monitor().sweep()

    _echo_model(asyncio.run(_run_with_container(job)))


@cli.command()
@click.option("--user", "user_id", default=None, help="Reconcile one user's holdings")
@click.option("--product", "product_id", default=None, help="Reconcile one product's holders")
@click.option("--auto-correct", is_flag=True, help="Run auto-correction on the discrepancies found")
@click.option("--live", is_flag=True, help="Apply corrections instead of simulating them")
def reconcile(user_id, product_id, auto_correct, live):
    """Run a reconciliation and print the report"""
    if user_id and product_id:
        raise click.UsageError("--user and --product are mutually exclusive")
    if live and not auto_correct:
        raise click.UsageError("--live requires --auto-correct")

    async def job(container):
        engine = container.reconciliation_engine()
        if user_id:
            report = await engine.user_reconciliation(user_id)
        elif product_id:
            report = await engine.product_reconciliation(product_id)
        else:
            report = await engine.full_reconciliation()
        correction = None
        if auto_correct and report.discrepancies:
            correction = await engine.auto_correct(report.discrepancies, dry_run=not live)
        return report, correction

    report, correction = asyncio.run(_run_with_container(job))
    _echo_model(report)
    if correction is not None:
        click.echo(correction.summary)


if __name__ == "__main__":
    cli()
