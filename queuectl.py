import json
import multiprocessing
import signal
from contextlib import contextmanager

import click

from config import CONFIG_KEYS, QueueConfig
from db import DB_FILE
from errors import QueueError
from log import setup_logging
from models import JobState, JobType
from queue_module import build_queue_module
from worker import Worker, run_worker_process


@contextmanager
def queue_errors():
    """Turns queue errors into a clean CLI error (exit status 1)."""
    try:
        yield
    except QueueError as e:
        raise click.ClickException(str(e)) from e


def get_module(ctx):
    obj = ctx.find_root().obj
    if "module" not in obj:
        try:
            obj["module"] = build_queue_module(obj["config"], registry=obj.get("registry"))
        except (ImportError, ValueError) as e:
            raise click.ClickException(f"Could not load handlers: {e}") from e
    return obj["module"]


def echo_job(job):
    click.echo(f"  - ID: {job.id}")
    click.echo(f"    Type: {job.type.value}")
    click.echo(f"    State: {job.state.value}")
    click.echo(f"    Attempts: {job.attempts}/{job.max_retries}")
    click.echo(f"    Updated: {job.updated_at.isoformat()}")
    if job.result is not None:
        click.echo(f"    Result: {json.dumps(job.result, default=str)}")
    if job.error:
        click.echo(f"    Error: {job.error}")
    click.echo("-" * 20)


@click.group()
@click.option("--db", envvar="QUEUECTL_DB", default=DB_FILE, show_default=True,
              help="SQLite database holding the queue.")
@click.option("--handlers", envvar="QUEUECTL_HANDLERS", default=None,
              help="Handler registrar, as 'module:function'.")
@click.option("--log-level", default="WARNING", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines.")
@click.pass_context
def cli(ctx, db, handlers, log_level, json_logs):
    """Typed background job queue."""
    setup_logging(log_level, json_logs)
    ctx.ensure_object(dict)
    ctx.obj["config"] = QueueConfig.from_env(db_path=db, handlers=handlers)
    ctx.obj["log_level"] = log_level
    ctx.obj["json_logs"] = json_logs


@cli.command()
@click.pass_context
def initdb(ctx):
    """Creates the queue tables."""
    get_module(ctx).start()
    click.echo("Database initialized successfully.")


@cli.command()
@click.argument("job_type", type=click.Choice([t.value for t in JobType], case_sensitive=False))
@click.argument("payload", type=str)
@click.option("--id", "job_id", default=None, help="Job ID (generated if omitted).")
@click.option("--priority", default=0, show_default=True, type=int, help="Higher runs first.")
@click.pass_context
def enqueue(ctx, job_type, payload, job_id, priority):
    """Enqueues a JOB_TYPE job with a JSON PAYLOAD."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        raise click.ClickException("Invalid JSON payload.")

    module = get_module(ctx)
    with queue_errors():
        job_id = module.service.submit(job_type, data, priority=priority, job_id=job_id)
    click.echo(f"Job '{job_id}' enqueued successfully (Type: {job_type.lower()}, Priority: {priority}).")


@cli.command()
@click.argument("job_id", required=False)
@click.pass_context
def status(ctx, job_id):
    """Shows queue totals, or the state of one job."""
    service = get_module(ctx).service

    if job_id:
        with queue_errors():
            job = service.get(job_id)
        echo_job(job)
        return

    click.echo(" Job Status Summary:")
    for state, count in service.summary().items():
        click.echo(f"  - {state.upper()}: {count}")

    click.echo("\n Execution Metrics:")
    metrics = service.metrics()
    click.echo(f"  - Total Jobs Succeeded: {metrics.get('jobs_succeeded', 0)}")
    click.echo(f"  - Total Failed Attempts: {metrics.get('jobs_failed', 0)}")


@cli.command(name="list")  # Use 'name=' to avoid conflict with Python 'list'
@click.option("--state",
              type=click.Choice([s.value for s in JobState], case_sensitive=False),
              required=True,
              help="List jobs by their state.")
@click.option("--limit", type=int, default=None)
@click.pass_context
def list_cmd(ctx, state, limit):
    """Lists jobs in a state."""
    jobs = get_module(ctx).service.list_jobs(JobState(state.lower()), limit=limit)

    click.echo(f"Jobs in '{state.upper()}' state:")
    if not jobs:
        click.echo("  No jobs found in this state.")
        return
    for job in jobs:
        echo_job(job)


@cli.command()
@click.argument("job_id")
@click.pass_context
def cancel(ctx, job_id):
    """Withdraws a pending job."""
    service = get_module(ctx).service
    with queue_errors():
        if not service.cancel(job_id):
            raise click.ClickException(
                f"Job '{job_id}' is '{service.status(job_id).value}', only pending jobs can be canceled."
            )
    click.echo(f"Job '{job_id}' canceled.")


@click.group()
def dlq():
    """Inspect and retry dead jobs."""
    pass


@dlq.command(name="list")
@click.pass_context
def dlq_list(ctx):
    jobs = get_module(ctx).service.list_jobs(JobState.FAILED)

    click.echo("Dead jobs:")
    if not jobs:
        click.echo("  No dead jobs.")
        return
    for job in jobs:
        echo_job(job)


@dlq.command(name="retry")
@click.argument("job_id")
@click.pass_context
def dlq_retry(ctx, job_id):
    """Re-submits a dead job's payload as a new job."""
    with queue_errors():
        new_id = get_module(ctx).service.retry_failed(job_id)
    if new_id is None:
        raise click.ClickException(f"Could not retry job '{job_id}'. (Is it dead?)")
    click.echo(f"Job '{job_id}' re-submitted as '{new_id}'.")


cli.add_command(dlq)


@click.group()
def config():
    """Manage configuration (retry, backoff, retention)."""
    pass


@config.command(name="set")
@click.argument("key", type=click.Choice(list(CONFIG_KEYS)))
@click.argument("value", type=int)
@click.pass_context
def config_set(ctx, key, value):
    minimum = 0 if key == "backoff-base" else 1
    if value < minimum:
        raise click.ClickException(f"{key} must be at least {minimum}.")

    get_module(ctx).store.set_config(CONFIG_KEYS[key], str(value))
    click.echo(f"Config updated: {key} = {value}")


@config.command(name="get")
@click.argument("key", type=click.Choice(list(CONFIG_KEYS)))
@click.pass_context
def config_get(ctx, key):
    # the module's config already has stored values applied
    click.echo(f"{key} = {getattr(get_module(ctx).config, CONFIG_KEYS[key])}")


cli.add_command(config)


@click.group()
def worker():
    """Run workers."""
    pass


@worker.command()
@click.option("--count", default=1, show_default=True, help="Number of workers to start.")
@click.pass_context
def start(ctx, count):
    """Starts worker processes until interrupted."""
    if count <= 0:
        raise click.ClickException("--count must be 1 or greater.")

    obj = ctx.find_root().obj
    module = get_module(ctx)
    if not module.config.handlers:
        click.echo("Warning: no --handlers given; every job will fail with no handler.", err=True)
    # No worker is alive yet, so anything still 'running' was orphaned
    module.start(recover=True)

    click.echo(f"Starting {count} worker process(es)...")
    click.echo("Press CTRL+C to stop all workers.")

    processes = []
    for i in range(count):
        p = multiprocessing.Process(
            target=run_worker_process,
            args=(i + 1, module.config, obj["log_level"], obj["json_logs"]),
        )
        p.start()
        processes.append(p)

    def shutdown_main(sig, frame):
        click.echo("\nMain process received signal, terminating all workers...")
        for p in processes:
            p.terminate()
        click.echo("Waiting for workers to shut down...")

    signal.signal(signal.SIGINT, shutdown_main)
    signal.signal(signal.SIGTERM, shutdown_main)

    try:
        for p in processes:
            p.join()
    except KeyboardInterrupt:
        pass

    click.echo("All workers have shut down.")


@worker.command()
@click.option("--burst", is_flag=True, help="Exit once the queue is empty.")
@click.pass_context
def run(ctx, burst):
    """Runs one worker in this process."""
    module = get_module(ctx)
    w = Worker(1, module.service)
    try:
        processed = w.run(burst=burst)
    except KeyboardInterrupt:
        w.stop()
        processed = w.processed
    click.echo(f"Worker processed {processed} job(s).")


cli.add_command(worker)


@cli.command()
@click.option("--older-than", type=float, default=None,
              help="Age in hours (defaults to retention-hours).")
@click.pass_context
def purge(ctx, older_than):
    """Deletes finished jobs older than the retention window."""
    module = get_module(ctx)
    hours = older_than if older_than is not None else module.config.retention_hours
    removed = module.service.purge(hours)
    click.echo(f"Purged {removed} job(s).")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=5000, show_default=True, type=int)
@click.pass_context
def dashboard(ctx, host, port):
    """
    Runs a minimal web dashboard and JSON API for the queue.
    """
    from dashboard import run_dashboard

    click.echo(f"View at: http://{host}:{port}")
    run_dashboard(get_module(ctx).service, host=host, port=port)


if __name__ == "__main__":
    cli()
