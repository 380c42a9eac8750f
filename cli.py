#!/usr/bin/env python3
"""
Media Transcription Pipeline CLI

Run the API server and the job worker, submit jobs from the shell, and
inspect or wait on their status.
"""

import asyncio
import json
import sys
from typing import Optional

import click
import httpx
from tqdm import tqdm

from config.settings import get_settings, setup_logging
from core.admission import AdmissionContext, Identity
from core.error_handling import AdmissionDenied, QueueFullError
from core.models import OUTPUT_FORMATS, AccuracyMode, JobOptions, SourceDescriptor, SourceKind, Tier
from core.poller import PollResult
from core.service import build_components

__version__ = "1.0.0"


async def _with_components(coro_factory):
    """Run ``coro_factory(components)`` against the SQL-backed pipeline."""
    components = build_components(get_settings())
    await components.db_manager.initialize()
    try:
        return await coro_factory(components)
    finally:
        await components.db_manager.close()


def _echo_status(result: PollResult) -> None:
    color = {
        'completed': 'green',
        'failed': 'red',
        'cancelled': 'yellow',
        'timeout': 'yellow',
        'not_found': 'red',
    }.get(result.status.value, 'blue')
    click.echo(f"Job {result.job_id}: {click.style(result.status.value, fg=color)}"
               f" ({result.state or '-'})")
    if result.message:
        click.echo(f"   {result.message}")
    if result.queue_position:
        click.echo(f"   Queue position: {result.queue_position}"
                   f" (~{result.estimated_wait_seconds or 0}s)")
    if result.warning:
        click.echo(f"   Warning: {click.style(result.warning, fg='yellow')}")
    if result.error:
        click.echo(f"   Error: {click.style(result.error, fg='red')}", err=True)


@click.group(invoke_without_command=True)
@click.option('--version', is_flag=True, help='Show version and exit')
@click.option('--log-level', default=None, help='Override the configured log level')
@click.pass_context
def cli(ctx, version, log_level):
    """
    Media Transcription Pipeline

    Admit, queue and transcribe media from stored uploads, remote URLs
    and video platforms.
    """
    if version:
        click.echo(f"media-transcribe version {__version__}")
        return

    setup_logging(log_level)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option('--host', default=None, help='Bind address (default: API_HOST)')
@click.option('--port', type=int, default=None, help='Bind port (default: API_PORT)')
@click.option('--no-worker', is_flag=True, help='Do not run the embedded job worker')
def serve(host, port, no_worker):
    """Run the HTTP API."""
    import uvicorn
    from api.main import create_app

    settings = get_settings()
    app = create_app(start_worker=not no_worker)
    uvicorn.run(app, host=host or settings.api_host, port=port or settings.api_port,
                log_level=settings.log_level.value.lower())


@cli.command('init-db')
def init_db():
    """Create the database schema."""
    from core.database import create_database

    settings = get_settings()

    async def _init():
        manager = await create_database(settings.database_url)
        await manager.close()

    asyncio.run(_init())
    click.echo(f"✅ Database initialized at {settings.database_url}")


@cli.command()
@click.option('--worker-id', default='worker-1', help='Identifier used in logs')
def worker(worker_id):
    """Run a standalone job worker against the database."""
    from workers.job_worker import JobWorker

    settings = get_settings()

    async def _run(components):
        job_worker = JobWorker(
            components,
            worker_id=worker_id,
            idle_sleep=settings.worker_idle_sleep,
            sync_from_repository=True,
        )
        await job_worker.run_forever()

    click.echo(f"Starting worker {worker_id}...")
    try:
        asyncio.run(_with_components(_run))
    except KeyboardInterrupt:
        click.echo("\nWorker stopped")


@cli.command()
@click.argument('reference')
@click.option('--kind', type=click.Choice([k.value for k in SourceKind]), default=SourceKind.PLATFORM.value,
              help='Source kind (default: platform)')
@click.option('--duration', type=float, help='Known media duration in seconds')
@click.option('--account', help='Account id; anonymous when omitted')
@click.option('--tier', type=click.Choice([t.value for t in Tier]), default=Tier.FREE.value)
@click.option('--language', help='Language hint, e.g. zh or en')
@click.option('--format', 'formats', multiple=True, type=click.Choice(OUTPUT_FORMATS),
              help='Output format (repeatable, default: txt and srt)')
@click.option('--accuracy', type=click.Choice([a.value for a in AccuracyMode]), default=AccuracyMode.STANDARD.value)
@click.option('--preview', type=int, help='Only transcribe this many seconds')
@click.option('--offset', type=float, default=0.0, help='Preview start offset in seconds')
@click.option('--diarize', is_flag=True, help='Request speaker labels')
def submit(reference, kind, duration, account, tier, language, formats, accuracy, preview, offset, diarize):
    """Submit a transcription job.

    REFERENCE is a blob key, a media URL or a platform page URL.
    """
    try:
        source = SourceDescriptor(kind=kind, reference=reference, duration_seconds=duration)
        options = JobOptions(
            language=language,
            formats=list(formats) or ["txt", "srt"],
            accuracy=accuracy,
            preview_seconds=preview,
            offset_seconds=offset,
            diarize=diarize,
        )
    except ValueError as e:
        raise click.BadParameter(str(e))

    identity = Identity(key=account, tier=Tier(tier))
    context = AdmissionContext(ip="127.0.0.1")

    async def _submit(components):
        return await components.service.submit_job(identity, source, options, context)

    try:
        submitted = asyncio.run(_with_components(_submit))
    except AdmissionDenied as e:
        click.echo(f"❌ Submission denied: {click.style(e.reason, fg='red')}", err=True)
        if e.retry_after:
            click.echo(f"   Retry after: {e.retry_after}s", err=True)
        if e.remaining:
            click.echo(f"   Remaining: {json.dumps(e.remaining)}", err=True)
        sys.exit(1)
    except QueueFullError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    click.echo("✅ Job queued")
    click.echo(f"   Job ID: {click.style(submitted.job_id, fg='blue')}")
    click.echo(f"   Queue position: {submitted.queue_position}")
    click.echo(f"\n💡 Run {click.style('media-transcribe worker', fg='cyan')} to process it")


@cli.command()
@click.argument('job_id')
@click.option('--wait', is_flag=True, help='Poll until the job finishes')
@click.option('--json', 'as_json', is_flag=True, help='Print the raw status')
def status(job_id, wait, as_json):
    """Show the status of a job."""

    async def _status(components):
        if not wait:
            return await components.service.get_job_status(job_id)

        with tqdm(total=100, desc=job_id[:8], unit="%") as bar:
            async def on_update(result: PollResult):
                if result.progress is not None and result.progress > bar.n:
                    bar.update(result.progress - bar.n)
                bar.set_postfix_str(result.state or result.status.value)

            return await components.poller.poll_until_done(job_id, on_update=on_update)

    result = asyncio.run(_with_components(_status))
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    else:
        _echo_status(result)
    if result.status.value in ('failed', 'not_found'):
        sys.exit(1)


@cli.command()
@click.argument('job_id')
@click.argument('fmt', type=click.Choice(OUTPUT_FORMATS))
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Write to a file instead of stdout')
def output(job_id, fmt, output):
    """Print a rendered output of a completed job."""
    from core.error_handling import JobNotFoundError

    async def _output(components):
        return await components.service.get_output(job_id, fmt)

    try:
        content = asyncio.run(_with_components(_output))
    except JobNotFoundError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if output:
        with open(output, 'w', encoding='utf-8') as f:
            f.write(content)
        click.echo(f"📄 Saved {fmt} output to {output}")
    else:
        click.echo(content)


@cli.command()
@click.argument('account')
@click.option('--tier', type=click.Choice([t.value for t in Tier]), default=Tier.FREE.value)
def usage(account, tier):
    """Show the remaining quota of an account."""

    async def _usage(components):
        return await components.quota_tracker.check(account, Tier(tier), 0)

    check = asyncio.run(_with_components(_usage))
    click.echo(f"Account {account} ({tier})")
    for name, value in check.remaining.items():
        shown = 'unlimited' if value is None else f"{value:g}"
        click.echo(f"   {name}: {click.style(shown, fg='green')}")


@cli.command('reset-identity')
@click.argument('identity_key')
@click.option('--api-url', default=None, help='API base URL (default: http://API_HOST:API_PORT)')
@click.option('--admin-token', default=None, help='Admin token (default: ADMIN_TOKEN)')
def reset_identity(identity_key, api_url: Optional[str], admin_token: Optional[str]):
    """Clear rate-limit and abuse state for an identity on a running server."""
    settings = get_settings()
    if api_url is None:
        host = '127.0.0.1' if settings.api_host == '0.0.0.0' else settings.api_host
        api_url = f"http://{host}:{settings.api_port}"
    admin_token = admin_token or settings.admin_token
    if not admin_token:
        click.echo("❌ No admin token: pass --admin-token or set ADMIN_TOKEN", err=True)
        sys.exit(1)
    url = f"{api_url.rstrip('/')}/api/v1/admin/identities/{identity_key}/reset"
    try:
        response = httpx.post(url, headers={"X-Admin-Token": admin_token}, timeout=10.0)
        response.raise_for_status()
    except httpx.HTTPError as e:
        click.echo(f"❌ Reset failed: {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Reset admission state for {identity_key}")


if __name__ == '__main__':
    cli()
