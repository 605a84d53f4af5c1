"""CLI entry point for the work dispatcher."""

import json
import logging
import sys

import click

from work_dispatcher.config import Config, ConfigurationError, get_config
from work_dispatcher.core import preflight as preflight_mod
from work_dispatcher.core import tasks as tasks_mod
from work_dispatcher.core.drain import DrainSignal
from work_dispatcher.core.events import EventLog, read_events
from work_dispatcher.core.hooks import HookRunner
from work_dispatcher.core.orchestrator import OrchestrationLoop
from work_dispatcher.core.records import FileStateStore
from work_dispatcher.db.engine import get_db
from work_dispatcher.db.models import TaskStatus, branch_display, format_duration
from work_dispatcher.integrations import github as github_mod
from work_dispatcher.integrations import slack as slack_mod
from work_dispatcher.integrations.docker import DockerCliRuntime


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _build_loop(config: Config) -> OrchestrationLoop:
    return OrchestrationLoop(
        config=config,
        store=FileStateStore(config.workers_dir),
        containers=DockerCliRuntime(),
        tracker=github_mod.GhCliGateway(),
        events=EventLog(config.event_log_path),
        hooks=HookRunner(config.hooks_dir),
        drain=DrainSignal(config.drain_path),
        notifier=slack_mod.SlackNotifier(config.slack_bot_token, config.slack_channel),
        gh_token=github_mod.auth_token(),
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """wd - Work Dispatcher CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Dispatch Commands ─────────────────────────────────────────────────────────


@main.command("work")
@click.argument("repos", nargs=-1)
@click.option("--once", is_flag=True, help="Run a single cycle and exit")
@click.option("--force", is_flag=True, help="Take over a repository lock held by another process")
def work(repos, once, force):
    """Poll REPOS (owner/name) for labeled issues and dispatch workers."""
    try:
        config = get_config()
        repos = tuple(repos) or config.repos
        if not repos:
            raise ConfigurationError("No repositories given. Pass owner/name or set WD_REPOS")
        for repo in repos:
            if repo.count("/") != 1:
                raise ConfigurationError(f"Repository must be owner/name: {repo}")
        config = config.replace(repos=repos, once=once, force=force)
        preflight_mod.run_preflight(config)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    loop = _build_loop(config)
    loop.install_signal_handlers()
    loop.run()


@main.command("drain")
def drain():
    """Stop dispatching new workers; running workers finish normally."""
    config = get_config()
    DrainSignal(config.drain_path).set()
    click.echo("Drain set. No new workers will be dispatched (wd resume to undo).")


@main.command("resume")
def resume():
    """Clear the drain signal."""
    config = get_config()
    DrainSignal(config.drain_path).clear()
    click.echo("Drain cleared. Dispatching resumes on the next cycle.")


@main.command("ps")
@click.option("--all", "show_all", is_flag=True, help="Include finished workers")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def ps(show_all, json_output):
    """List worker records."""
    config = get_config()
    store = FileStateStore(config.workers_dir)
    records = store.list_all() if show_all else store.list_active()

    if json_output:
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return

    if not records:
        click.echo("No workers found.")
        return

    for r in records:
        click.echo(
            f"  {r.status.value:<10} {r.repo}#{r.issue_num:<6} "
            f"{format_duration(r.duration_s):>7}  {branch_display(r)}  {r.issue_title}"
        )


@main.command("events")
@click.option("--lines", "-n", default=20, type=int, help="Number of events to show")
def events(lines):
    """Show the most recent dispatcher events."""
    config = get_config()
    for event in read_events(config.event_log_path, lines):
        ts = event.pop("ts", "")
        name = event.pop("event", "?")
        details = " ".join(f"{k}={v}" for k, v in event.items())
        click.echo(f"{ts} {name} {details}".rstrip())


@main.command("doctor")
def doctor():
    """Check that docker, gh and worker credentials are ready."""
    config = get_config()
    failed = False
    for result in preflight_mod.check_environment(config):
        mark = "ok" if result.ok else "FAIL"
        click.echo(f"  [{mark}] {result.name}: {result.detail}")
        failed = failed or not result.ok
    if failed:
        sys.exit(1)


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage queued tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--repo", default=None, help="Repository (owner/name) the task belongs to")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--priority", "-p", default=3, type=int, help="Priority P0 (highest) to P6 (lowest)")
def task_add(title, repo, description, priority):
    """Queue a new task."""
    with _get_db() as db:
        task = tasks_mod.create_task(db, title, description, repo=repo, priority=priority)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Status: {task.status.value}")


@task_group.command("list")
@click.option("--status", default=None, type=click.Choice([s.value for s in TaskStatus]))
@click.option("--repo", default=None, help="Filter by repository")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(status, repo, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, status=status, repo=repo)

    if json_output:
        click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    status_icons = {
        "queued": "○",
        "running": "●",
        "done": "✓",
        "failed": "✗",
    }
    for task in tasks:
        icon = status_icons.get(task.status.value, "?")
        repo_note = f" [{task.repo}]" if task.repo else ""
        click.echo(f"  {icon} P{task.priority} {task.id}: {task.title} ({task.status.value}){repo_note}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details and history."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Status: {task.status.value}")
        if task.repo:
            click.echo(f"  Repo: {task.repo}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.started_at:
            click.echo(f"  Started: {task.started_at.isoformat()}")
        if task.ended_at:
            click.echo(f"  Ended: {task.ended_at.isoformat()}")

        history = tasks_mod.get_task_events(db, task_id)
        if history:
            click.echo("  History:")
            for e in history:
                click.echo(f"    {e.event_type}: {e.old_value or '-'} -> {e.new_value or '-'}")


def _transition_command(name: str, action: str, help_text: str):
    @task_group.command(name, help=help_text)
    @click.argument("task_id")
    def command(task_id):
        with _get_db() as db:
            try:
                task = tasks_mod.transition_task(db, task_id, action)
            except tasks_mod.InvalidTransition as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(1)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Task {task.id} is now {task.status.value}")

    return command


@task_group.command("next")
@click.option("--repo", default=None, help="Only consider tasks for this repository")
@click.option("--start", "start_task", is_flag=True, help="Mark the task as running")
def task_next(repo, start_task):
    """Show the highest-priority queued task."""
    with _get_db() as db:
        task = tasks_mod.next_queued_task(db, repo=repo)
        if not task:
            click.echo("No queued tasks.")
            return
        if start_task:
            task = tasks_mod.transition_task(db, task.id, "start")
    click.echo(f"{task.id}: {task.title} (P{task.priority}, {task.status.value})")


task_start = _transition_command("start", "start", "Mark a queued task as running.")
task_done = _transition_command("done", "complete", "Mark a running task as done.")
task_fail = _transition_command("fail", "fail", "Mark a running task as failed.")
task_retry = _transition_command("retry", "retry", "Put a failed task back on the queue.")


# ── Slack Commands ────────────────────────────────────────────────────────────


@main.group("slack")
def slack_group():
    """Slack integration commands."""
    pass


@slack_group.command("send")
@click.argument("message")
@click.option("--channel", default=None, help="Slack channel (defaults to WD_SLACK_CHANNEL)")
def slack_send(message, channel):
    """Send a message, e.g. to check the notification setup."""
    config = get_config()
    channel = channel or config.slack_channel
    if not channel:
        click.echo("No channel specified and WD_SLACK_CHANNEL not set.", err=True)
        sys.exit(1)
    try:
        result = slack_mod.send_message(config.slack_bot_token, channel, message)
        click.echo(f"Message sent to {result.channel} (ts: {result.ts})")
    except slack_mod.SlackError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


# ── Web UI Command ────────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--open/--no-open", default=True, help="Open browser automatically")
def ui_command(host, port, open):
    """Launch the web dashboard."""
    import webbrowser

    from work_dispatcher.web.app import run_server

    url = f"http://{host}:{port}"
    click.echo(f"Starting dashboard at {url}")
    if open:
        webbrowser.open(url)
    run_server(host=host, port=port)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status.value,
        "priority": f"P{task.priority}",
        "repo": task.repo,
        "description": task.description,
        "started_at": task.started_at.isoformat() if task.started_at else None,
        "ended_at": task.ended_at.isoformat() if task.ended_at else None,
    }


if __name__ == "__main__":
    main()
