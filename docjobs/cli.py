"""
DocJobs CLI commands

Command-line interface for operating the job subsystem: initialization,
account administration, running workers and maintenance.
"""

import asyncio
import json
import logging
from pathlib import Path

import click
import yaml
from sqlalchemy.exc import IntegrityError

from docjobs import DocJobs
from docjobs.config.docjobs_config import DocJobsConfig
from docjobs.db.repository import AccountRepository
from docjobs.entitlements import TIER_ORDER, resolve
from docjobs.exceptions import DocJobsError
from docjobs.jobs.worker import Worker, WorkerConfig
from docjobs.transforms import load_transform

logger = logging.getLogger(__name__)

TIER_CHOICES = [tier.value for tier in TIER_ORDER]


def setup_logging(config: DocJobsConfig) -> None:
    log_config = config.get_logging_config()
    logging.basicConfig(
        level=getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO),
        format=log_config.get('format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s'),
        filename=log_config.get('file') or None
    )


def _load_config(path):
    if path:
        return DocJobsConfig.from_file(path)
    return DocJobsConfig.instance()


def _service(ctx, transform=None) -> DocJobs:
    """Build the service for a command; closed when the command finishes"""
    service = DocJobs.setup(ctx.obj['config'], transform=transform)
    ctx.call_on_close(service.close)
    return service


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option('--config', 'config_path', type=click.Path(exists=True), help='Path to configuration file')
@click.pass_context
def cli(ctx, config_path):
    """DocJobs command-line interface"""
    ctx.ensure_object(dict)
    try:
        config = _load_config(config_path)
    except (OSError, yaml.YAMLError, RuntimeError) as e:
        click.echo(f'Error: Could not load configuration: {e}', err=True)
        raise click.Abort()
    ctx.obj['config'] = config
    setup_logging(config)


@cli.command()
@click.option('--output', type=click.Path(), help='Where to write the configuration file')
@click.option('--force', is_flag=True, help='Overwrite an existing configuration file')
@click.option('--db-path', type=click.Path(), help='SQLite database path')
@click.option('--storage-path', type=click.Path(), help='Storage path for documents')
@click.option('--redis-url', help='Use Redis for rate limit counters')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']), help='Logging level')
@click.pass_context
def init(ctx, output, force, db_path, storage_path, redis_url, log_level):
    """Write a configuration file and create the database tables"""
    config: DocJobsConfig = ctx.obj['config']
    target = Path(output) if output else config.config_file
    if target.exists() and not force:
        if not click.confirm(f'{target} already exists. Overwrite it?'):
            return

    if db_path:
        config.set('database.type', 'sqlite')
        config.set('database.sqlite.path', str(db_path))
    if storage_path:
        config.set('storage.type', 'filesystem')
        config.set('storage.filesystem.path', str(storage_path))
    if redis_url:
        config.set('cache.type', 'redis')
        config.set('cache.redis.url', redis_url)
    if log_level:
        config.set('logging.level', log_level)

    if not config.validate():
        click.echo('Error: Invalid configuration', err=True)
        raise click.Abort()

    config.save(target)
    try:
        _service(ctx)
    except DocJobsError as e:
        click.echo(f'Error: {e}', err=True)
        raise click.Abort()
    click.echo(f'Configuration written to {target}')
    click.echo('Database initialized')


@cli.group()
def account():
    """Manage accounts"""


def _account_dict(service: DocJobs, account_id: str):
    return service.orchestrator.get_usage_summary(account_id)


@account.command('create')
@click.option('--tier', type=click.Choice(TIER_CHOICES, case_sensitive=False), default='FREE', show_default=True)
@click.option('--id', 'account_id', help='Account ID (generated when omitted)')
@click.pass_context
def account_create(ctx, tier, account_id):
    """Create an account"""
    service = _service(ctx)
    try:
        created = AccountRepository(service.db).create_account(tier=tier, account_id=account_id)
    except IntegrityError:
        click.echo(f'Error: account {account_id} already exists', err=True)
        raise click.Abort()
    click.echo(f'Created account {created.id} ({created.tier}, {created.monthly_allotment} credits)')


@account.command('show')
@click.argument('account_id')
@click.pass_context
def account_show(ctx, account_id):
    """Show tier, credit balance and usage of an account"""
    service = _service(ctx)
    try:
        _echo_json(_account_dict(service, account_id))
    except DocJobsError as e:
        click.echo(f'Error: {e}', err=True)
        raise click.Abort()


@account.command('set-tier')
@click.argument('account_id')
@click.argument('tier', type=click.Choice(TIER_CHOICES, case_sensitive=False))
@click.pass_context
def account_set_tier(ctx, account_id, tier):
    """Change the subscription tier of an account"""
    service = _service(ctx)
    if not AccountRepository(service.db).set_tier(account_id, tier):
        click.echo(f'Error: Account not found: {account_id}', err=True)
        raise click.Abort()
    click.echo(f'Account {account_id} moved to {tier.upper()} ({resolve(tier).max_credits_per_month} credits)')


@account.command('reset')
@click.argument('account_id')
@click.pass_context
def account_reset(ctx, account_id):
    """Start a new credit period for an account"""
    service = _service(ctx)
    try:
        reset = service.ledger.reset_period(account_id)
    except DocJobsError as e:
        click.echo(f'Error: {e}', err=True)
        raise click.Abort()
    if reset:
        click.echo(f'Credits reset for {account_id}')
    else:
        click.echo(f'Credits for {account_id} were already reset')


@account.command('deactivate')
@click.argument('account_id')
@click.pass_context
def account_deactivate(ctx, account_id):
    """Deactivate an account; new submissions are rejected"""
    service = _service(ctx)
    if not AccountRepository(service.db).deactivate(account_id):
        click.echo(f'Error: Account not found: {account_id}', err=True)
        raise click.Abort()
    click.echo(f'Account {account_id} deactivated')


@cli.group()
def job():
    """Inspect and cancel jobs"""


@job.command('show')
@click.argument('job_id')
@click.pass_context
def job_show(ctx, job_id):
    """Show the state of a job"""
    service = _service(ctx)
    view = service.orchestrator.get_job(job_id)
    if view is None:
        click.echo(f'Error: Job not found: {job_id}', err=True)
        raise click.Abort()
    _echo_json(view.to_dict())


@job.command('cancel')
@click.argument('job_id')
@click.pass_context
def job_cancel(ctx, job_id):
    """Cancel a pending job or request cancellation of a running one"""
    service = _service(ctx)
    view = service.orchestrator.get_job(job_id)
    outcome = service.orchestrator.cancel(job_id, view.account_id) if view else None
    if outcome is None:
        click.echo(f'Job {job_id} cannot be cancelled')
        return
    click.echo(f'Job {job_id}: {outcome}')


@cli.command()
@click.option('--transform', 'transform_path', required=True,
              help='Transform to run, as module:attribute')
@click.option('--concurrency', type=int, help='Jobs executed at the same time')
@click.option('--once', is_flag=True, help='Execute every eligible job, then exit')
@click.pass_context
def worker(ctx, transform_path, concurrency, once):
    """Run a job worker"""
    try:
        transform = load_transform(transform_path)
    except (ImportError, ValueError) as e:
        click.echo(f'Error: Could not load transform: {e}', err=True)
        raise click.Abort()

    service = _service(ctx, transform=transform)
    worker_config = WorkerConfig.from_config(ctx.obj['config'])
    if concurrency:
        worker_config.max_concurrent = concurrency
    runner = Worker(service.orchestrator, worker_config)

    if once:
        count = asyncio.run(runner.run_once())
        click.echo(f'Executed {count} jobs')
        return
    asyncio.run(runner.run())


@cli.command()
@click.pass_context
def sweep(ctx):
    """Requeue jobs whose lease expired"""
    service = _service(ctx)
    report = service.orchestrator.sweep()
    click.echo(f'Requeued {len(report.requeued)} jobs, failed {len(report.failed)} jobs')


@cli.command()
@click.option('--limit', type=int, default=500, show_default=True, help='Maximum jobs to delete')
@click.option('--older-than-days', type=int, default=None,
              help='Delete every finished job older than this, ignoring retention')
@click.pass_context
def cleanup(ctx, limit, older_than_days):
    """Delete finished jobs past their retention period"""
    service = _service(ctx)
    if older_than_days is not None:
        count = service.orchestrator.clear_completed(older_than_days, limit=limit)
        click.echo(f'Deleted {count} finished jobs')
        return
    count = service.orchestrator.cleanup_expired(limit=limit)
    click.echo(f'Deleted {count} expired jobs')


@cli.command()
@click.pass_context
def stats(ctx):
    """Show queue statistics"""
    service = _service(ctx)
    _echo_json(service.queue.get_queue_stats())


if __name__ == '__main__':
    cli()
