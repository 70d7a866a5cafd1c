"""
Main CLI entry point for the CloudPRNT print queue

Runs the HTTP server, renders receipts, inspects printers and manages jobs
in a PostgreSQL-backed queue.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional, Dict, Any, List

import click
import httpx

from ..core.exceptions import PrintQueueError
from ..core.orchestrator import PrintQueueOrchestrator
from ..encoding.escpos import (
    KITCHEN,
    CUSTOMER,
    ReceiptOptions,
    build_receipt,
    build_test_receipt,
)
from ..models.job import JobStatus, JobType, ContentType, utcnow
from ..utils.config import load_settings
from ..utils.logger import setup_logger, LoggerContext


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.option('--database-url', '-d', help='Database connection URL')
@click.option('--log-level', '-l', default=None, help='Log level')
@click.option('--verbose', '-v', is_flag=True, help='Plain text logs instead of JSON')
@click.pass_context
def cli(ctx, config, database_url, log_level, verbose):
    """CloudPRNT print queue CLI"""

    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
    except PrintQueueError as e:
        raise click.ClickException(e.message)

    if database_url:
        settings.database_url = database_url
    if log_level:
        settings.log_level = log_level
    if verbose:
        settings.structured_logs = False

    logger = setup_logger(
        "cloudprnt_queue",
        level=settings.log_level,
        structured=settings.structured_logs,
        log_file=settings.log_file
    )
    ctx.obj['logger'] = logger
    ctx.obj['settings'] = settings
    ctx.obj['verbose'] = verbose


@cli.group()
@click.pass_context
def receipt(ctx):
    """Receipt rendering commands"""
    pass


@cli.group()
@click.pass_context
def printers(ctx):
    """Printer commands"""
    pass


@cli.group()
@click.pass_context
def job(ctx):
    """Job management commands (PostgreSQL queue)"""
    pass


# Server

@cli.command('serve')
@click.option('--host', default=None, help='HTTP server host')
@click.option('--port', type=int, default=None, help='HTTP server port')
@click.pass_context
def serve(ctx, host, port):
    """Start the HTTP server"""
    import uvicorn
    from ..api.app import create_app

    settings = ctx.obj['settings']
    host = host or settings.host
    port = port or settings.port

    click.echo(f"Starting CloudPRNT print queue on {host}:{port}")
    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)


# Receipt Commands

@receipt.command('render')
@click.argument('items_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--kind', type=click.Choice([CUSTOMER, KITCHEN]), default=CUSTOMER, help='Receipt kind')
@click.option('--order', 'order_reference', help='Order reference printed in the header')
@click.option('--customer', 'customer_name', help='Customer name')
@click.option('--header', 'header_text', help='Header text')
@click.option('--footer', 'footer_text', help='Footer text')
@click.option('--width', type=int, default=48, help='Paper width in characters')
@click.option('--currency', default='$', help='Currency symbol')
@click.option('--show-prices', is_flag=True, help='Show prices on kitchen copies')
@click.option('--output', '-o', type=click.Path(dir_okay=False, writable=True), help='Write bytes to a file')
@click.option('--hex', 'as_hex', is_flag=True, help='Print a hex dump instead of raw bytes')
def render_receipt(items_file, kind, order_reference, customer_name, header_text, footer_text,
                   width, currency, show_prices, output, as_hex):
    """Render order items from a JSON file to ESC/POS bytes

    ITEMS_FILE holds either a list of items or an object with an "items" list.
    """
    items = _load_items(items_file)
    options = ReceiptOptions(
        kind=kind,
        order_reference=order_reference,
        customer_name=customer_name,
        header_text=header_text,
        footer_text=footer_text,
        show_prices_on_kitchen=show_prices,
        paper_width=width,
        currency_symbol=currency
    )
    _emit_bytes(build_receipt(items, options), output, as_hex)


@receipt.command('test')
@click.option('--width', type=int, default=48, help='Paper width in characters')
@click.option('--output', '-o', type=click.Path(dir_okay=False, writable=True), help='Write bytes to a file')
@click.option('--hex', 'as_hex', is_flag=True, help='Print a hex dump instead of raw bytes')
def test_receipt(width, output, as_hex):
    """Render the printer test page"""
    _emit_bytes(build_test_receipt(width, utcnow()), output, as_hex)


# Printer Commands

@printers.command('list')
@click.pass_context
def list_printers(ctx):
    """List configured printers"""
    orchestrator = PrintQueueOrchestrator(ctx.obj['settings'], run_scheduler=False)
    _display_printers_table(orchestrator.list_printers(), ctx.obj['verbose'])


@printers.command('simulate')
@click.argument('printer_id')
@click.option('--url', default='http://localhost:8000', help='Base URL of the print queue server')
@click.option('--code', default='200 OK', help='Status code sent when confirming the job')
@click.option('--no-confirm', is_flag=True, help='Fetch the job but do not confirm it')
@click.option('--output', '-o', type=click.Path(dir_okay=False, writable=True), help='Write the job bytes to a file')
@click.pass_context
def simulate_printer(ctx, printer_id, url, code, no_confirm, output):
    """Run one CloudPRNT poll cycle against a running server"""
    endpoint = f"{url.rstrip('/')}/printers/{printer_id}/job"
    logger = ctx.obj['logger']

    with LoggerContext(logger, printer_id=printer_id, command="simulate"):
        try:
            with httpx.Client(timeout=10.0) as client:
                poll = client.post(endpoint, json={"printerMAC": "00:00:00:00:00:00", "statusCode": "200 OK"})
                poll.raise_for_status()
                answer = poll.json()
                if not answer.get("jobReady"):
                    click.echo("No job ready")
                    return

                content = client.get(endpoint, params={"type": answer.get("mediaTypes", [None])[0]})
                content.raise_for_status()
                if content.status_code == 204:
                    click.echo("Job was claimed by another poll")
                    return

                token = content.headers.get("X-Star-Job-Token", answer.get("jobToken"))
                logger.info("Simulated printer received job", extra={
                    "job_id": token,
                    "payload_size": len(content.content)
                })
                click.echo(f"Received job {token} ({len(content.content)} bytes, "
                           f"{content.headers.get('content-type')})")
                if output:
                    Path(output).write_bytes(content.content)

                if not no_confirm:
                    confirm = client.delete(endpoint, params={"token": token, "code": code})
                    confirm.raise_for_status()
                    click.echo(f"Confirmed: {confirm.json().get('status')}")

        except httpx.HTTPError as e:
            logger.error("Simulated poll failed", extra={"endpoint": endpoint, "error": str(e)})
            click.echo(f"Error polling {endpoint}: {str(e)}", err=True)
            sys.exit(1)


# Job Commands

@job.command('enqueue')
@click.argument('printer_id')
@click.argument('payload_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--key', 'idempotency_key', required=True, help='Idempotency key')
@click.option('--content-type', default=ContentType.ESCPOS, help='Payload content type')
@click.option('--job-type', type=click.Choice([t.value for t in JobType]), default=JobType.RECEIPT.value,
              help='Type of job')
@click.option('--priority', type=int, default=0, help='Higher runs first')
@click.option('--max-retries', type=int, default=None, help='Maximum retry attempts')
@click.option('--order-id', help='Order id for correlation')
@click.pass_context
def enqueue_job(ctx, printer_id, payload_file, idempotency_key, content_type, job_type,
                priority, max_retries, order_id):
    """Enqueue the contents of a file for a printer"""

    payload = Path(payload_file).read_bytes()

    async def _enqueue(orchestrator):
        result = await orchestrator.enqueue(
            printer_id=printer_id,
            idempotency_key=idempotency_key,
            payload=payload,
            content_type=content_type,
            job_type=job_type,
            priority=priority,
            max_retries=max_retries,
            order_id=order_id
        )
        action = "created" if result.created else "already exists"
        click.echo(f"Job {result.job_id} {action} ({result.status.value})")

    _run_with_orchestrator(ctx, _enqueue)


@job.command('list')
@click.option('--printer', 'printer_id', help='Filter by printer')
@click.option('--status', 'statuses', multiple=True, type=click.Choice([s.value for s in JobStatus]),
              help='Filter by status (repeatable)')
@click.option('--limit', type=int, default=20, help='Limit number of jobs to show')
@click.pass_context
def list_jobs(ctx, printer_id, statuses, limit):
    """List jobs, newest first"""

    async def _list(orchestrator):
        jobs = await orchestrator.list_jobs(
            printer_id, [JobStatus(s) for s in statuses] or None, limit
        )
        _display_jobs_table([j.to_dict() for j in jobs], ctx.obj['verbose'])

    _run_with_orchestrator(ctx, _list)


@job.command('cancel')
@click.argument('job_id')
@click.option('--reason', help='Reason recorded in the job log')
@click.pass_context
def cancel_job(ctx, job_id, reason):
    """Cancel a queued or delivered job"""

    async def _cancel(orchestrator):
        await orchestrator.cancel_job(job_id, reason, strict=True)
        click.echo(f"Job {job_id} cancelled")

    _run_with_orchestrator(ctx, _cancel)


@job.command('reprint')
@click.argument('job_id')
@click.option('--reason', help='Reason recorded on the reprint')
@click.pass_context
def reprint_job(ctx, job_id, reason):
    """Queue an existing job's content again"""

    async def _reprint(orchestrator):
        result = await orchestrator.reprint(job_id, reason)
        click.echo(f"Reprint job {result.job_id} queued")

    _run_with_orchestrator(ctx, _reprint)


@job.command('failures')
@click.option('--limit', type=int, default=20, help='Limit number of jobs to show')
@click.pass_context
def list_failures(ctx, limit):
    """List jobs that failed permanently"""

    async def _failures(orchestrator):
        jobs = await orchestrator.list_failures(limit)
        _display_jobs_table([j.to_dict() for j in jobs], verbose=True)

    _run_with_orchestrator(ctx, _failures)


@job.command('sweep')
@click.pass_context
def sweep_jobs(ctx):
    """Run one retry sweep"""

    async def _sweep(orchestrator):
        result = await orchestrator.sweep()
        click.echo(f"Timed out: {len(result.timed_out)}")
        click.echo(f"Requeued: {len(result.requeued)}")
        click.echo(f"Exhausted: {len(result.exhausted)}")

    _run_with_orchestrator(ctx, _sweep)


# Helper Functions

def _run_with_orchestrator(ctx, action):
    """Start an orchestrator on the configured database, run action, stop it"""
    settings = ctx.obj['settings']
    if not settings.database_url:
        raise click.ClickException(
            "Job commands need a database: pass --database-url or set CLOUDPRNT_DATABASE_URL"
        )

    async def _runner():
        orchestrator = PrintQueueOrchestrator(settings, run_scheduler=False)
        try:
            await orchestrator.start()
            await action(orchestrator)
        except PrintQueueError as e:
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)
        finally:
            await orchestrator.stop()

    asyncio.run(_runner())


def _load_items(items_file: str) -> List[Dict[str, Any]]:
    try:
        data = json.loads(Path(items_file).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e.msg}", param_hint="ITEMS_FILE")
    if isinstance(data, dict):
        data = data.get("items", [])
    if not isinstance(data, list):
        raise click.BadParameter("expected a list of items", param_hint="ITEMS_FILE")
    return data


def _emit_bytes(data: bytes, output: Optional[str], as_hex: bool):
    if output:
        Path(output).write_bytes(data)
        click.echo(f"Wrote {len(data)} bytes to {output}")
    elif as_hex:
        click.echo(data.hex(" "))
    else:
        stream = click.get_binary_stream('stdout')
        stream.write(data)
        stream.flush()


def _display_printers_table(printers: list, verbose: bool):
    """Display printers in table format"""
    if not printers:
        click.echo("No printers configured")
        return

    click.echo(f"{'Printer ID':<20} {'Name':<25} {'Active':<7} {'Width':<6} {'Last Poll':<20}")
    click.echo("-" * 80)
    for printer in printers:
        last_poll = printer['last_poll'][:19] if printer.get('last_poll') else 'Never'
        active = "yes" if printer['active'] else "no"
        click.echo(f"{printer['id']:<20} {printer['display_name']:<25} {active:<7} "
                   f"{printer['paper_width']:<6} {last_poll:<20}")
        if verbose:
            click.echo(f"    media types: {', '.join(printer['media_types'])}")


def _display_jobs_table(jobs: list, verbose: bool):
    """Display jobs in table format"""
    if not jobs:
        click.echo("No jobs found")
        return

    if verbose:
        click.echo(f"{'Job ID':<34} {'Printer':<15} {'Status':<10} {'Retries':<8} {'Created':<20} Last Error")
        click.echo("-" * 110)
    else:
        click.echo(f"{'Job ID':<34} {'Printer':<15} {'Status':<10} {'Retries':<8}")
        click.echo("-" * 70)

    for job in jobs:
        retries = f"{job['retry_count']}/{job['max_retries']}"
        if verbose:
            created = job['created_at'][:19] if job.get('created_at') else 'Unknown'
            click.echo(f"{job['id']:<34} {job['printer_id']:<15} {job['status']:<10} "
                       f"{retries:<8} {created:<20} {job.get('last_error') or ''}")
        else:
            click.echo(f"{job['id']:<34} {job['printer_id']:<15} {job['status']:<10} {retries:<8}")


def main():
    """Main CLI entry point"""
    cli()


if __name__ == '__main__':
    main()
