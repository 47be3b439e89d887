"""Command-line interface for marketplace sync."""

import json
import logging
import sys
from typing import List, Optional

import click

from .config import AppSettings, load_environment, setup_logging
from ..exceptions import JobStateError, MarketplaceAPIError, MarketSyncException, NotFoundError
from ..models.sync import SyncCadence, SyncJob


@click.group()
@click.option('--log-level', default='INFO', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']),
              help='Set logging level')
@click.option('--env-file', type=click.Path(exists=True), help='Path to .env file')
def cli(log_level: str, env_file: Optional[str]) -> None:
    """Marketplace sync CLI: plan, enqueue and inspect account syncs."""
    setup_logging(log_level)
    load_environment(env_file)


def _runtime():
    # Imported lazily so --help works without Google Cloud credentials
    from ..bootstrap import Runtime
    return Runtime(AppSettings.from_env())


def _fail(e: Exception) -> None:
    if isinstance(e, (NotFoundError, JobStateError)):
        click.echo(f"Error: {e}", err=True)
    elif isinstance(e, MarketplaceAPIError):
        click.echo(f"Marketplace API Error: {e}", err=True)
    elif isinstance(e, (ValueError, MarketSyncException)):
        click.echo(f"Configuration Error: {e}", err=True)
    else:
        logging.exception("Unexpected error occurred")
        click.echo(f"Unexpected error: {e}", err=True)
    sys.exit(1)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str, ensure_ascii=False))


def _display_jobs_table(jobs: List[SyncJob]) -> None:
    """Display sync jobs in a table format."""
    if not jobs:
        click.echo("No sync jobs found.")
        return

    # Header
    click.echo(f"{'ID':<38} {'Type':<10} {'Mode':<10} {'Status':<12} {'Progress':<9} {'Records':<9} {'Created':<20}")
    click.echo("-" * 112)

    # Rows
    for job in jobs:
        mode_str = job.mode.value if job.mode else "-"
        created_str = job.created_at.strftime('%Y-%m-%d %H:%M:%S')
        click.echo(f"{job.id:<38} {job.type.value:<10} {mode_str:<10} {job.status.value:<12} "
                   f"{job.progress:<9} {job.records_processed:<9} {created_str:<20}")


@cli.command()
@click.argument('account_id')
def test_connection(account_id: str) -> None:
    """Test the stored credentials of an account."""
    try:
        result = _runtime().sync_service.check_account_connection(account_id)
        if result["connected"]:
            click.echo(f"Account {account_id}: connected")
        else:
            click.echo(f"Account {account_id}: connection failed: {result['error']}", err=True)
            sys.exit(1)
    except Exception as e:
        _fail(e)


@cli.command()
@click.argument('account_id')
def plan(account_id: str) -> None:
    """Show the window the next scheduled sync would fetch."""
    try:
        _echo_json(_runtime().sync_service.preview_plan(account_id))
    except Exception as e:
        _fail(e)


@cli.command()
@click.argument('cadence', type=click.Choice([c.value for c in SyncCadence]))
def tick(cadence: str) -> None:
    """Run one scheduler tick now."""
    try:
        _echo_json(_runtime().sync_service.tick(cadence))
    except Exception as e:
        _fail(e)


@cli.command()
@click.argument('account_id')
@click.option('--type', 'job_type', default='full', help='sales, products, stock, orders, regional or full')
@click.option('--start', help='Window start (ISO date)')
@click.option('--end', help='Window end (ISO date)')
def enqueue(account_id: str, job_type: str, start: Optional[str], end: Optional[str]) -> None:
    """Enqueue a sync job for an account."""
    params = {}
    if start:
        params["start_date"] = start
    if end:
        params["end_date"] = end

    try:
        job = _runtime().sync_service.create_sync_job(account_id, job_type, params, triggered_by="cli")
        click.echo(f"Job {job.id} is {job.status.value}")
        _display_jobs_table([job])
    except Exception as e:
        _fail(e)


@cli.command()
@click.argument('job_id')
def retry(job_id: str) -> None:
    """Retry a failed sync job."""
    try:
        job = _runtime().sync_service.retry_failed_job(job_id)
        click.echo(f"Job {job.id} re-enqueued (retry {job.retry_count})")
    except Exception as e:
        _fail(e)


@cli.command()
@click.argument('job_id')
def cancel(job_id: str) -> None:
    """Cancel a pending or processing sync job."""
    try:
        job = _runtime().sync_service.cancel_sync_job(job_id)
        click.echo(f"Job {job.id} {job.status.value}")
    except Exception as e:
        _fail(e)


@cli.command()
@click.argument('account_id')
@click.option('--limit', default=20, help='Maximum number of jobs to show')
@click.option('--format', 'output_format', default='table', type=click.Choice(['table', 'json']),
              help='Output format')
def jobs(account_id: str, limit: int, output_format: str) -> None:
    """List recent sync jobs of an account."""
    try:
        found = _runtime().sync_service.get_sync_jobs(account_id, limit=limit)
        if output_format == 'json':
            _echo_json([job.model_dump(mode="json") for job in found])
        else:
            _display_jobs_table(found)
    except Exception as e:
        _fail(e)


@cli.command()
@click.argument('account_id')
def stats(account_id: str) -> None:
    """Show sync statistics of an account."""
    try:
        _echo_json(_runtime().sync_service.get_sync_statistics(account_id).model_dump(mode="json"))
    except Exception as e:
        _fail(e)


@cli.command()
def setup_schedules() -> None:
    """Create or update the task queues and cadence scheduler jobs."""
    try:
        for job in _runtime().setup_infrastructure():
            click.echo(f"{job['cadence']:<12} {job['schedule']:<16} {job['job_path']}")
    except Exception as e:
        _fail(e)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind address')
@click.option('--port', default=8000, type=int, help='Bind port')
def serve(host: str, port: int) -> None:
    """Run the HTTP API."""
    import uvicorn
    uvicorn.run("marketsync.api.app:app", host=host, port=port)


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
