# worker.py
import subprocess
import threading
import time

from events import log


class ExecutionError(Exception):
    """The benchmark ran but did not succeed."""


def run_command(job):
    """Default executor: run ``config['command']`` in a shell.

    Returns ``{exit_code, output, duration_seconds}``; raises ExecutionError on a
    non-zero exit or timeout.
    """
    command = (job.config or {}).get("command")
    if not command:
        raise ExecutionError("job config has no command")
    timeout = (job.config or {}).get("timeout_seconds")
    start = time.monotonic()
    try:
        result = subprocess.run(
            command,
            shell=True,
            capture_output=True,
            text=True,
            timeout=timeout if timeout else None  # Enforce timeout if provided
        )
    except subprocess.TimeoutExpired:
        raise ExecutionError(f"timeout after {timeout}s")
    output = (result.stdout or "") + (result.stderr or "")
    if result.returncode != 0:
        raise ExecutionError(f"exit_code={result.returncode}: {(result.stderr or '').strip()}")
    return {
        "exit_code": result.returncode,
        "output": output,
        "duration_seconds": round(time.monotonic() - start, 3),
    }


class EvalAgentWorker:
    """In-process eval agent: register, heartbeat, poll, claim, execute, complete."""

    def __init__(self, directory, scheduler, name, region, visibility="public",
                 executor=None, heartbeat_interval=30.0, poll_interval=10.0, stop_event=None):
        self.directory = directory
        self.scheduler = scheduler
        self.name = name
        self.region = region
        self.visibility = visibility
        self.executor = executor or run_command
        self.heartbeat_interval = heartbeat_interval
        self.poll_interval = poll_interval
        self.stop_event = stop_event or threading.Event()
        self.agent_id = None
        self._heartbeat_thread = None

    def register(self):
        agent = self.directory.register(self.name, self.region, self.visibility)
        self.agent_id = agent.id
        return agent

    def run(self):
        if self.agent_id is None:
            self.register()
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop, name=f"{self.agent_id}-heartbeat", daemon=True
        )
        self._heartbeat_thread.start()
        while not self.stop_event.is_set():
            try:
                processed = self.process_once()
            except Exception as e:
                log(f"Agent {self.agent_id}: poll cycle failed: {e!r}")
                processed = False
            if not processed:
                self.stop_event.wait(self.poll_interval)
        self._heartbeat_thread.join(timeout=max(self.heartbeat_interval, 1.0))

    def _heartbeat_loop(self):
        while not self.stop_event.wait(self.heartbeat_interval):
            try:
                self.directory.heartbeat(self.agent_id)
            except Exception as e:
                log(f"Agent {self.agent_id}: heartbeat failed: {e!r}")

    def process_once(self):
        """Claim and run at most one job. Returns True if a job was processed."""
        job = self._claim_one_ready_job()
        if job is None:
            return False
        self._process_job(job)
        return True

    def _claim_one_ready_job(self):
        for job in self.scheduler.list_claimable(self.region):
            claim = self.scheduler.claim(job.id, self.agent_id, job.version)
            if claim.ok:
                return claim.job
        return None

    def _process_job(self, job):
        try:
            result = self.executor(job)
        except Exception as e:
            outcome = self.scheduler.complete(job.id, self.agent_id, error=str(e) or repr(e))
        else:
            try:
                outcome = self.scheduler.complete(job.id, self.agent_id, result=result)
            except Exception as e:
                # Unstorable result counts as a failed attempt
                log(f"Agent {self.agent_id}: storing result of {job.id} failed: {e!r}")
                outcome = self.scheduler.complete(job.id, self.agent_id, error=repr(e))
        return outcome
