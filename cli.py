# cli.py
import json
import time

import click

from agents import AgentDirectory
from config import Settings
from models import OK, REGIONS, VISIBILITIES, SchedulerError
from reclaimer import Reclaimer
from repositories import sqlite_repositories
from scheduler import Scheduler
from storage import Storage


class Services:
    def __init__(self, db_path):
        self.db = Storage(db_path)
        self.agents, self.jobs = sqlite_repositories(self.db)
        self.directory = AgentDirectory(self.agents)
        self.scheduler = Scheduler(self.agents, self.jobs)

    def settings(self):
        return Settings.from_storage(self.db)


def _json_option(value, name):
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint=name)


@click.group()
@click.option("--db", "db_path", envvar="EVALQ_DB", default="scheduler.db", show_default=True,
              help="SQLite database path")
@click.pass_context
def cli(ctx, db_path):
    """evalq - lease-and-recovery scheduler for eval agents"""
    ctx.obj = Services(db_path)


# ---------------- Enqueue ----------------
@cli.command()
@click.option("--region", required=True, type=click.Choice(REGIONS), help="Region the job must run in")
@click.option("--id", "job_id", default=None, help="Job ID (generated if omitted)")
@click.option("--max-retries", default=None, type=int, help="Maximum retries (overrides default_max_retries config if set)")
@click.option("--priority", default=0, type=int, help="Job priority (higher runs first)")
@click.option("--config", "config_json", default=None, help="Opaque JSON config handed to the agent")
@click.option("--command", default=None, help="Shorthand for a config with a shell command")
@click.pass_obj
def enqueue(svc, region, job_id, max_retries, priority, config_json, command):
    """Add a new pending job"""
    # fall back to config default if not provided
    if max_retries is None:
        max_retries = svc.settings().default_max_retries
    config = _json_option(config_json, "--config") or {}
    if command:
        config["command"] = command
    try:
        job = svc.scheduler.enqueue(region, max_retries=max_retries, priority=priority,
                                    config=config, job_id=job_id)
    except SchedulerError as e:
        raise click.ClickException(str(e))
    click.echo(f"✅ Job {job.id} enqueued (region={job.region}, max_retries={job.max_retries}, version={job.version})")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--status", default=None, help="Filter jobs by status (pending, running, completed, failed)")
@click.option("--region", default=None, help="Filter jobs by region")
@click.pass_obj
def list_jobs(svc, status, region):
    """List jobs"""
    jobs = svc.scheduler.list_jobs(status=status, region=region)
    if not jobs:
        click.echo("No jobs found.")
        return

    for job in jobs:
        owner = job.owner_agent_id or "-"
        dur = f"{job.duration_seconds:.3f}s" if job.duration_seconds is not None else "-"
        click.echo(f"{job.id} | region={job.region} | status={job.status} | owner={owner} | "
                   f"retries={job.retry_count}/{job.max_retries} | version={job.version} | "
                   f"priority={job.priority} | duration={dur}")


# ---------------- Status ----------------
@cli.command()
@click.pass_obj
def status(svc):
    """Show summary of job statuses and agent states"""
    job_rows = svc.db.query("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status ORDER BY status")
    agent_rows = svc.db.query("SELECT state, COUNT(*) AS count FROM agents GROUP BY state ORDER BY state")

    if not job_rows and not agent_rows:
        click.echo("No jobs or agents in the system yet.")
        return

    click.echo("📊 Jobs:")
    for row in job_rows:
        click.echo(f"  {row['status']}: {row['count']}")
    click.echo("🤖 Agents:")
    for row in agent_rows:
        click.echo(f"  {row['state']}: {row['count']}")


@cli.command()
@click.argument("job_id")
@click.pass_obj
def show(svc, job_id):
    """Show details of a single job"""
    job = svc.scheduler.get_job(job_id)
    if job is None:
        raise click.ClickException(f"Job {job_id} not found.")

    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Region: {job.region}")
    click.echo(f"  Status: {job.status}")
    click.echo(f"  Owner: {job.owner_agent_id or '-'}")
    click.echo(f"  Retries: {job.retry_count}/{job.max_retries}")
    click.echo(f"  Version: {job.version}")
    click.echo(f"  Priority: {job.priority}")
    click.echo(f"  Created: {job.created_at.isoformat()}")
    click.echo(f"  Started: {job.started_at.isoformat() if job.started_at else '-'}")
    click.echo(f"  Finished: {job.finished_at.isoformat() if job.finished_at else '-'}")
    click.echo(f"  Duration: {job.duration_seconds:.3f}s" if job.duration_seconds is not None else "  Duration: -")
    click.echo(f"  Error: {job.error or '-'}")
    click.echo(f"  Config: {json.dumps(job.config)}")
    click.echo(f"  Result: {json.dumps(job.result) if job.result is not None else '-'}")


# ---------------- Agent protocol ----------------
@cli.command()
@click.argument("job_id")
@click.option("--agent", "agent_id", required=True, help="Claiming agent ID")
@click.option("--version", "expected_version", required=True, type=int, help="Job version seen when polling")
@click.pass_obj
def claim(svc, job_id, agent_id, expected_version):
    """Claim a pending job for an idle agent"""
    result = svc.scheduler.claim(job_id, agent_id, expected_version)
    if not result.ok:
        click.echo(f"⚠️ {result.status}: {result.reason}")
        raise SystemExit(1)
    click.echo(f"🔒 Job {job_id} claimed by {agent_id} (version={result.version})")


@cli.command()
@click.argument("job_id")
@click.option("--agent", "agent_id", required=True, help="Owning agent ID")
@click.option("--result", "result_json", default=None, help="JSON result payload")
@click.option("--error", default=None, help="Report a failed run instead of a result")
@click.pass_obj
def complete(svc, job_id, agent_id, result_json, error):
    """Report the outcome of a running job"""
    if result_json is not None and error is not None:
        raise click.UsageError("--result and --error are mutually exclusive")
    payload = _json_option(result_json, "--result")
    outcome = svc.scheduler.complete(job_id, agent_id, result=payload, error=error)
    if not outcome.ok:
        click.echo(f"⚠️ {outcome.status}: {outcome.reason}")
        raise SystemExit(1)
    job = outcome.job
    click.echo(f"🏁 Job {job_id} is now {job.status} (retries={job.retry_count}/{job.max_retries})")


# ---------------- Agents ----------------
@cli.group()
def agents():
    """Eval agent registration and liveness"""
    pass


@agents.command("register")
@click.argument("name")
@click.option("--region", required=True, type=click.Choice(REGIONS))
@click.option("--visibility", default="public", type=click.Choice(VISIBILITIES), show_default=True)
@click.pass_obj
def agents_register(svc, name, region, visibility):
    """Register a new agent"""
    agent = svc.directory.register(name, region, visibility)
    click.echo(f"🤖 Registered {agent.id} (name={agent.name}, region={agent.region}, state={agent.state})")


@agents.command("list")
@click.option("--region", default=None)
@click.option("--state", default=None, help="idle, occupied or offline")
@click.pass_obj
def agents_list(svc, region, state):
    """List agents"""
    rows = svc.directory.list(region=region, state=state)
    if not rows:
        click.echo("No agents found.")
        return
    for agent in rows:
        seen = agent.last_seen_at.isoformat() if agent.last_seen_at else "-"
        click.echo(f"{agent.id} | {agent.name} | region={agent.region} | {agent.visibility} | "
                   f"state={agent.state} | last_seen={seen}")


@agents.command("heartbeat")
@click.argument("agent_id")
@click.pass_obj
def agents_heartbeat(svc, agent_id):
    """Record a heartbeat for an agent"""
    if svc.directory.heartbeat(agent_id) != OK:
        raise click.ClickException(f"Agent {agent_id} not found.")
    click.echo(f"💓 {agent_id}")


# ---------------- Workers ----------------
@cli.group()
def agent():
    """Run in-process eval agents"""
    pass


@agent.command("run")
@click.option("--name", default="eval-agent", help="Agent name prefix")
@click.option("--region", required=True, type=click.Choice(REGIONS))
@click.option("--visibility", default="public", type=click.Choice(VISIBILITIES))
@click.option("--count", default=1, help="Number of agents to start")
@click.option("--heartbeat-interval", default=None, type=float, help="Seconds between heartbeats (uses config if set)")
@click.option("--poll-interval", default=None, type=float, help="Idle polling interval (seconds) (uses config if set)")
@click.pass_obj
def agent_run(svc, name, region, visibility, count, heartbeat_interval, poll_interval):
    """Start agents that poll, claim and run jobs until Ctrl+C"""
    import threading
    from worker import EvalAgentWorker

    # Load config defaults if args are not provided
    settings = svc.settings()
    if heartbeat_interval is None:
        heartbeat_interval = settings.heartbeat_interval_seconds
    if poll_interval is None:
        poll_interval = settings.poll_interval_seconds

    stop_event = threading.Event()
    workers = []

    for i in range(count):
        w = EvalAgentWorker(svc.directory, svc.scheduler,
                            name=f"{name}-{i+1}" if count > 1 else name,
                            region=region,
                            visibility=visibility,
                            heartbeat_interval=heartbeat_interval,
                            poll_interval=poll_interval,
                            stop_event=stop_event)
        w.register()
        t = threading.Thread(target=w.run, name=f"agent-thread-{i+1}", daemon=True)
        workers.append((w, t))
        click.echo(f"🚀 Starting {w.agent_id} (region={region}, heartbeat={heartbeat_interval}s, poll={poll_interval}s)")
        t.start()

    click.echo("Press Ctrl+C to stop agents gracefully.")

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping agents ...")
        stop_event.set()
        for _, t in workers:
            t.join(timeout=5.0)
        click.echo("✅ Agents stopped cleanly.")


# ---------------- Reclaimer ----------------
@cli.command()
@click.option("--stale-minutes", default=None, type=float, help="Heartbeat staleness threshold (uses config if set)")
@click.pass_obj
def reclaim(svc, stale_minutes):
    """Run the stale-lease reclaimer once"""
    if stale_minutes is None:
        stale_minutes = svc.settings().stale_minutes
    report = Reclaimer(svc.agents, svc.jobs, stale_minutes=stale_minutes).run_once()
    click.echo(f"🔧 {report.offline_agents} agent(s) marked offline, "
               f"{report.released_jobs} job(s) released, {report.failed_jobs} job(s) failed")


@cli.command()
@click.option("--interval", default=None, type=float, help="Seconds between runs (uses config if set)")
@click.option("--stale-minutes", default=None, type=float, help="Heartbeat staleness threshold (uses config if set)")
@click.pass_obj
def reclaimer(svc, interval, stale_minutes):
    """Run the stale-lease reclaimer periodically until Ctrl+C"""
    import threading

    settings = svc.settings()
    if interval is None:
        interval = settings.reclaim_interval_seconds
    if stale_minutes is None:
        stale_minutes = settings.stale_minutes

    stop_event = threading.Event()
    r = Reclaimer(svc.agents, svc.jobs, stale_minutes=stale_minutes,
                  interval_seconds=interval, stop_event=stop_event)
    t = threading.Thread(target=r.run, name="reclaimer", daemon=True)
    click.echo(f"🚀 Starting reclaimer (interval={interval}s, stale={stale_minutes}m)")
    t.start()

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping reclaimer ...")
        stop_event.set()
        t.join(timeout=5.0)
        click.echo("✅ Reclaimer stopped cleanly.")


# ---------------- Status API ----------------
@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.pass_obj
def serve(svc, host, port):
    """Serve the read-only JSON status API"""
    import uvicorn
    import dashboard

    dashboard.app.dependency_overrides[dashboard.get_storage] = lambda: svc.db
    uvicorn.run(dashboard.app, host=host, port=port)


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration for agents and the reclaimer"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set(svc, key, value):
    """Set a config key to a value"""
    svc.db.set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
@click.pass_obj
def config_get(svc, key, default):
    """Get a config key"""
    value = svc.db.get_config(key)
    if value is None:
        if default is not None:
            click.echo(f"{key}={default} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={value}")


@config.command("list")
@click.pass_obj
def config_list(svc):
    """List all config keys"""
    rows = svc.db.list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


def main():
    cli()


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    main()
