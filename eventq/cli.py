import json
import logging
import threading
from importlib import import_module

import click

from .admin import LOCAL_OPERATOR
from .errors import JobNotFound, QueueNotFound
from .jobs import JOB_TYPES
from .models import JOB_STATES, JobOptions
from .repository import get_config, set_config
from .runtime import build_runtime
from .store import MemoryStore
from .utils import from_iso, parse_delay_to_seconds
from .worker import setup_signal_handlers, start_workers


def load_store(spec):
    """Resolve `module:attribute` to a MemoryStore, calling the attribute if it is a factory."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Store must be given as module:attribute, got '{spec}'")
    target = getattr(import_module(module_name), attr)
    store = target() if callable(target) else target
    if not isinstance(store, MemoryStore):
        raise ValueError(f"{spec} did not resolve to a MemoryStore")
    return store


def _runtime(ctx):
    obj = ctx.find_root().obj
    if obj.get("runtime") is None:
        try:
            store = load_store(obj["store"]) if obj.get("store") else None
        except (ImportError, AttributeError, ValueError) as e:
            _fail(e)
        obj["runtime"] = build_runtime(obj["db"], store=store)
    return obj["runtime"]


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


@click.group(help="eventq: background jobs and signed QR codes for the event platform")
@click.option("--db", envvar="EVENTQ_DB", default="eventq.db", show_default=True, help="Job store path")
@click.option("--store", "store_spec", envvar="EVENTQ_STORE", default=None,
              help="Domain store as module:attribute (a MemoryStore or a factory returning one); "
                   "without it jobs run against an empty in-memory store")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db, store_spec, verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    ctx.obj = {"db": db, "store": store_spec, "runtime": None}


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a job to a queue")
@click.argument("queue", type=click.Choice(sorted(JOB_TYPES)))
@click.argument("job_type")
@click.option("--data", default="{}", show_default=True, help="Job data as a JSON object")
@click.option("--id", "job_id", default=None, help="Job id; enqueueing an existing id is a no-op")
@click.option("--attempts", default=None, type=int, help="Override the queue's attempt count")
@click.option("--timeout-ms", default=None, type=int, help="Fail an attempt after this many ms")
@click.option("--delay", "delay_str", default=None, help="Run after a delay, e.g. 20s, 5m, 1h30m")
@click.pass_context
def enqueue_cmd(ctx, queue, job_type, data, job_id, attempts, timeout_ms, delay_str):
    try:
        payload = json.loads(data)
        if not isinstance(payload, dict):
            raise ValueError("--data must be a JSON object")
        delay_ms = parse_delay_to_seconds(delay_str) * 1000 if delay_str else 0
        handle = _runtime(ctx).registry.enqueue(
            queue, job_type, payload,
            JobOptions(attempts=attempts, timeout_ms=timeout_ms, delay_ms=delay_ms, job_id=job_id),
        )
    except (ValueError, RuntimeError) as e:
        _fail(e)
    click.secho(f"Enqueued {handle.job_id} -> {queue}/{job_type}"
                f"{' (delay=' + delay_str + ')' if delay_str else ''}", fg="green")


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start", help="Process jobs on every queue until Ctrl+C. Pass --store on the group "
                                       "so sweeps and certificate jobs see your users and events.")
@click.option("--concurrency", type=int, default=1, show_default=True, help="Worker threads per queue")
@click.pass_context
def worker_start(ctx, concurrency):
    rt = _runtime(ctx)
    click.secho(f"Starting {concurrency} worker(s) per queue. Press Ctrl+C to stop…", fg="cyan")
    start_workers(rt.registry, rt.processors, concurrency)
    click.secho("Workers stopped.", fg="yellow")


# ---------- Scheduler ----------
@cli.group("scheduler", help="Recurring jobs")
def scheduler_group():
    pass


@scheduler_group.command("setup")
@click.pass_context
def scheduler_setup(ctx):
    created = _runtime(ctx).scheduler.setup()
    for key, new in created.items():
        click.echo(f"{key:>24} | {'created' if new else 'exists'}")


@scheduler_group.command("run")
@click.pass_context
def scheduler_run(ctx):
    scheduler = _runtime(ctx).scheduler
    scheduler.setup()
    stop = threading.Event()
    setup_signal_handlers(stop)
    click.secho("Scheduler running. Press Ctrl+C to stop…", fg="cyan")
    scheduler.run(stop)


# ---------- Queues and jobs ----------
@cli.command("status")
@click.pass_context
def status_cmd(ctx):
    click.echo(json.dumps(_runtime(ctx).admin.all_stats(LOCAL_OPERATOR), indent=2))


@cli.command("list")
@click.argument("queue")
@click.option("--state", type=click.Choice(JOB_STATES), default=None)
@click.option("--limit", type=int, default=50, show_default=True)
@click.pass_context
def list_cmd(ctx, queue, state, limit):
    try:
        rows = _runtime(ctx).admin.list_jobs(LOCAL_OPERATOR, queue, state, limit)
    except QueueNotFound as e:
        _fail(e)

    if not rows:
        click.echo("No jobs.")
        return

    for r in rows:
        click.echo(
            f"{r['id']:>32} | {r['type']:<22} | {r['state']:<9} | attempts={r['attemptsMade']} "
            f"| created={r['createdAt']} | failed_reason={r['failedReason']}"
        )


@cli.group("job", help="Inspect and manage single jobs")
def job_group():
    pass


@job_group.command("show")
@click.argument("queue")
@click.argument("job_id")
@click.pass_context
def job_show(ctx, queue, job_id):
    try:
        click.echo(json.dumps(_runtime(ctx).admin.get_job(LOCAL_OPERATOR, queue, job_id), indent=2))
    except (QueueNotFound, JobNotFound) as e:
        _fail(e)


@job_group.command("retry")
@click.argument("queue")
@click.argument("job_id")
@click.pass_context
def job_retry(ctx, queue, job_id):
    try:
        _runtime(ctx).admin.retry_job(LOCAL_OPERATOR, queue, job_id)
    except (QueueNotFound, JobNotFound, ValueError) as e:
        _fail(e)
    click.secho(f"Re-queued failed job {job_id}.", fg="green")


@job_group.command("remove")
@click.argument("queue")
@click.argument("job_id")
@click.pass_context
def job_remove(ctx, queue, job_id):
    try:
        _runtime(ctx).admin.remove_job(LOCAL_OPERATOR, queue, job_id)
    except (QueueNotFound, JobNotFound, ValueError) as e:
        _fail(e)
    click.secho(f"Removed job {job_id}.", fg="green")


@cli.command("pause", help="Pause one queue, or all queues")
@click.argument("queue", required=False)
@click.pass_context
def pause_cmd(ctx, queue):
    try:
        names = _runtime(ctx).admin.pause(LOCAL_OPERATOR, queue)
    except QueueNotFound as e:
        _fail(e)
    click.secho(f"Paused: {', '.join(names)}", fg="yellow")


@cli.command("resume", help="Resume one queue, or all queues")
@click.argument("queue", required=False)
@click.pass_context
def resume_cmd(ctx, queue):
    try:
        names = _runtime(ctx).admin.resume(LOCAL_OPERATOR, queue)
    except QueueNotFound as e:
        _fail(e)
    click.secho(f"Resumed: {', '.join(names)}", fg="green")


@cli.command("clean", help="Delete old completed/failed jobs")
@click.argument("queue", required=False)
@click.option("--grace-ms", type=int, default=None, help="Age threshold; defaults to clean_grace_ms")
@click.option("--status", type=click.Choice(["completed", "failed"]), default=None)
@click.pass_context
def clean_cmd(ctx, queue, grace_ms, status):
    try:
        removed = _runtime(ctx).admin.clean(LOCAL_OPERATOR, grace_ms, status, queue)
    except (QueueNotFound, ValueError) as e:
        _fail(e)
    click.echo(json.dumps(removed, indent=2))


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    with _runtime(ctx).registry.connect() as conn:
        click.echo(json.dumps(get_config(conn), indent=2))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    try:
        with _runtime(ctx).registry.connect() as conn:
            set_config(conn, key, value)
    except ValueError as e:
        _fail(e)
    click.secho(f"Config updated: {key}={value}", fg="green")


# ---------- QR ----------
@cli.group("qr", help="Signed QR codes")
def qr_group():
    pass


@qr_group.command("ticket")
@click.option("--user-id", required=True)
@click.option("--event-id", required=True)
@click.option("--name", "user_name", required=True)
@click.option("--email", "user_email", required=True)
@click.option("--event-title", required=True)
@click.option("--event-date", required=True, help="ISO datetime of the event")
@click.option("--out", "out_path", default=None, help="Write a PNG here instead of printing the content")
@click.pass_context
def qr_ticket(ctx, user_id, event_id, user_name, user_email, event_title, event_date, out_path):
    codec = _runtime(ctx).codec
    try:
        when = from_iso(event_date)
    except ValueError as e:
        _fail(e)
    signed = codec.build_ticket_qr(user_id, event_id, user_name, user_email, event_title, when)
    if out_path:
        codec.save_image(signed, out_path)
        click.secho(f"Ticket QR written to {out_path}", fg="green")
    else:
        click.echo(signed.content())


@qr_group.command("verify")
@click.argument("content")
@click.pass_context
def qr_verify(ctx, content):
    result = _runtime(ctx).codec.verify_scanned(content)
    click.echo(json.dumps(result.to_dict(), indent=2))
    if not result.valid:
        raise SystemExit(1)


# ---------- HTTP ----------
@cli.command("serve", help="Run the admin and attendance HTTP API")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=5000, type=int, show_default=True)
@click.pass_context
def serve_cmd(ctx, host, port):
    from .web import create_app

    app = create_app(_runtime(ctx))
    app.run(host=host, port=port)


def main():
    cli()
