import json
from dataclasses import replace

import click
from click.core import ParameterSource

from .config import Settings
from .db import init_db, connect_db
from .engine import EngineClient
from .errors import ValidationError
from .gateway import validate_payload
from .models import COMPLETION, STATES
from .repository import (
    enqueue_job, get_job, list_jobs, counts, prune_terminal,
    get_config, set_config,
)
from .worker import start_workers


@click.group(help="jobrelay: async completion job gateway, queue and workers")
@click.option("--db", "db_path", envvar="JOBRELAY_DB", default="jobrelay.db", show_default=True,
              help="SQLite file backing the durable queue")
@click.pass_context
def cli(ctx, db_path):
    # an explicit --db (or JOBRELAY_DB) also selects the durable backend for `serve`
    ctx.obj = {
        "db_path": db_path,
        "db_given": ctx.get_parameter_source("db_path") != ParameterSource.DEFAULT,
    }


def _conn(ctx):
    init_db(ctx.obj["db_path"])
    return connect_db(ctx.obj["db_path"])


# ---------- Services ----------
@cli.command("serve", help="Run the submission gateway")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=4700, type=int, show_default=True)
@click.pass_context
def serve_cmd(ctx, host, port):
    import uvicorn
    from .api import create_app
    from .gateway import build_gateway

    settings = Settings.from_env()
    if ctx.obj["db_given"]:
        settings = replace(settings, db_path=ctx.obj["db_path"])
    gateway = build_gateway(settings)
    click.secho(f"Gateway using {gateway.kind} backend on http://{host}:{port}", fg="cyan")
    try:
        uvicorn.run(create_app(gateway), host=host, port=port)
    finally:
        gateway.close()


@cli.command("sidecar", help="Run the in-memory queue as a standalone service")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=4800, type=int, show_default=True)
def sidecar_cmd(host, port):
    import uvicorn
    from .api import create_sidecar_app
    from .backends import EphemeralQueue

    settings = Settings.from_env()
    engine = EngineClient(settings.engine_url, timeout=settings.timeout, default_model=settings.model)
    click.secho(f"Sidecar on http://{host}:{port} -> engine {settings.engine_url}", fg="cyan")
    try:
        uvicorn.run(create_sidecar_app(EphemeralQueue(engine)), host=host, port=port)
    finally:
        engine.close()


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a completion job to the durable queue")
@click.option("--prompt", required=True, help="Prompt text")
@click.option("--model", default=None, help="Model selector (engine default if omitted)")
@click.option("--priority", default=0, type=int, show_default=True,
              help="Higher number = dequeued first")
@click.option("--requester", default="cli", show_default=True, help="Recorded as meta.requester")
@click.pass_context
def enqueue_cmd(ctx, prompt, model, priority, requester):
    payload = {"prompt": prompt}
    if model:
        payload["model"] = model
    conn = _conn(ctx)
    try:
        job_id = enqueue_job(
            conn,
            job_type=COMPLETION,
            payload=validate_payload(payload),
            meta={"requester": requester},
            priority=priority,
        )
        click.secho(f"Enqueued {job_id} (priority={priority})", fg="green")
    except (ValueError, ValidationError) as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=None, help="Number of worker threads [default: concurrency setting]")
@click.pass_context
def worker_start(ctx, count):
    settings = Settings.from_env()
    conn = _conn(ctx)
    try:
        timeout = float(get_config(conn).get("timeout_seconds", "20"))
    finally:
        conn.close()
    engine = EngineClient(settings.engine_url, timeout=timeout, default_model=settings.model)
    click.secho("Starting workers. Press Ctrl+C to stop…", fg="cyan")
    try:
        start_workers(ctx.obj["db_path"], engine, count=count)
    finally:
        engine.close()
    click.secho("Workers stopped.", fg="yellow")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--state", type=click.Choice(list(STATES)), default=None)
@click.option("--limit", type=int, default=100, show_default=True)
@click.pass_context
def list_cmd(ctx, state, limit):
    conn = _conn(ctx)
    try:
        rows = list_jobs(conn, state=state, limit=limit)
    finally:
        conn.close()

    if not rows:
        click.echo("No jobs.")
        return

    for r in rows:
        click.echo(
            f"{r['id']:>36} | {r['state']:<9} | prio={r['priority']} | attempts={r['attempts']}/{r['max_attempts']} "
            f"| next={r['next_run_at']} | last_error={r['last_error']}"
        )


@cli.command("get")
@click.argument("job_id")
@click.pass_context
def get_cmd(ctx, job_id):
    conn = _conn(ctx)
    try:
        job = get_job(conn, job_id)
    finally:
        conn.close()
    if job is None:
        click.secho(f"Error: Job {job_id} not found.", fg="red")
        raise SystemExit(1)
    click.echo(json.dumps(job.to_status(), indent=2))


@cli.command("status")
@click.pass_context
def status_cmd(ctx):
    conn = _conn(ctx)
    try:
        click.echo(json.dumps(counts(conn), indent=2))
    finally:
        conn.close()


@cli.command("prune", help="Apply the retention limit to finished jobs")
@click.pass_context
def prune_cmd(ctx):
    conn = _conn(ctx)
    try:
        keep = int(get_config(conn).get("retention", "1000"))
        deleted = prune_terminal(conn, keep)
    finally:
        conn.close()
    click.echo(f"Pruned {deleted} job(s).")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    conn = _conn(ctx)
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    conn = _conn(ctx)
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


def main():
    cli()
