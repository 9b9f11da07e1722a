"""
Command Line Interface for stackgate.
"""
import os
import signal
import threading

import click
import psutil
import yaml

from ..CONVERTERS.plan_report import PlanRenderer
from ..errors import DefinitionError, PortConflictError, StackError
from ..MANAGERS.log_aggregator import LogAggregator
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MANAGERS.state_store import StateStore
from ..MODELS.orchestration_config import StackSettings
from ..PARSERS.compose_parser import ComposeParser
from ..STACKS import bundled_stack_path
from ..UTILS.logging_setup import setup_logging


@click.group()
@click.option('--file', '-f', 'files', multiple=True,
              help='Compose file path (repeatable, later files override earlier ones; default compose.yaml)')
@click.option('--stack', default=None, help='Use a bundled stack as the base manifest (e.g. erpnext)')
@click.option('--project-name', '-p', default=None, help='Project name (defaults to the stack or directory name)')
@click.option('--project-directory', default='.', help='Directory holding state, volumes and logs')
@click.option('--env-file', multiple=True, help='Read variables from this file (repeatable)')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.pass_context
def cli(ctx, files, stack, project_name, project_directory, env_file, verbose):
    """
    stackgate - dependency-gated stack orchestrator.

    Runs a compose-style stack as native processes, starting each service
    only once the services it depends on are started or healthy.
    """
    setup_logging(verbose)
    ctx.ensure_object(dict)

    files = list(files)
    if stack:
        try:
            files.insert(0, bundled_stack_path(stack))
        except KeyError as e:
            raise click.BadParameter(str(e.args[0]), param_hint='--stack')
    elif not files:
        files = ['compose.yaml']

    env_files = list(env_file)
    default_env = os.path.join(os.path.dirname(os.path.abspath(files[0])), '.env')
    if not env_files and not stack and os.path.exists(default_env):
        env_files = [default_env]

    ctx.obj['files'] = files
    ctx.obj['env_files'] = env_files
    ctx.obj['settings'] = StackSettings(
        project_name=project_name or _default_project_name(files[0], stack),
        base_dir=os.path.abspath(project_directory),
    )


def _default_project_name(file: str, stack) -> str:
    if stack:
        return stack
    if os.path.exists(file):
        with open(file, 'r') as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError:
                data = {}
        if isinstance(data, dict) and isinstance(data.get('name'), str) and '$' not in data['name']:
            return data['name']
    return os.path.basename(os.path.dirname(os.path.abspath(file))) or 'stackgate'


def _load(ctx):
    """Parses and validates the manifest, exiting with status 1 on any definition error."""
    files = ctx.obj['files']
    for file in files:
        if not os.path.exists(file):
            click.echo(f"Error: {file} not found.", err=True)
            ctx.exit(1)
    try:
        return ComposeParser(env_files=ctx.obj['env_files']).parse_files(files)
    except DefinitionError as e:
        click.echo(f"Error: {', '.join(files)} is not a valid stack definition:", err=True)
        for problem in e.problems:
            click.echo(f"  - {problem}", err=True)
        ctx.exit(1)


@cli.command()
@click.pass_context
def config(ctx):
    """Validate the stack and print it with variables resolved."""
    stack = _load(ctx)
    click.echo(yaml.safe_dump(stack.model_dump(mode='json', exclude_defaults=True), sort_keys=False))


@cli.command()
@click.pass_context
def plan(ctx):
    """Show the startup order and what each service waits for."""
    stack = _load(ctx)
    click.echo(PlanRenderer(stack, ctx.obj['settings'].project_name).render())


@cli.command()
@click.option('--timeout', type=float, default=None, help='Seconds to wait for the stack to become ready')
@click.pass_context
def up(ctx, timeout):
    """Start services and supervise them until interrupted."""
    stack = _load(ctx)
    settings = ctx.obj['settings']
    store = StateStore(settings.state_dir)

    existing = store.read()
    if existing and psutil.pid_exists(existing.supervisor_pid) and existing.supervisor_pid != os.getpid():
        click.echo(f"Error: project {settings.project_name} is already running "
                   f"(supervisor pid {existing.supervisor_pid}).", err=True)
        ctx.exit(1)

    orchestrator = ServiceOrchestrator(stack, settings, state_store=store)
    stop_requested = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_requested.set())

    exit_code = 0
    try:
        orchestrator.up()
        try:
            orchestrator.wait_until_ready(timeout)
            click.echo("Services started.")
        except TimeoutError as e:
            click.echo(f"Warning: {e}", err=True)
        except StackError as e:
            click.echo(f"Error: {e}", err=True)
            exit_code = 1
            stop_requested.set()

        if not stop_requested.is_set():
            click.echo("Running... Press Ctrl+C to stop.")
        while not stop_requested.wait(1):
            pass
    except KeyboardInterrupt:
        pass
    except PortConflictError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    click.echo("\nStopping services...")
    orchestrator.down(remove_volumes=store.pop_teardown_request())
    click.echo("Services stopped.")
    ctx.exit(exit_code)


@cli.command()
@click.option('--volumes', '-v', is_flag=True, help='Also remove named volumes')
@click.option('--timeout', type=float, default=30.0, help='Seconds to wait for the supervisor to finish')
@click.pass_context
def down(ctx, volumes, timeout):
    """Stop a running project."""
    settings = ctx.obj['settings']
    store = StateStore(settings.state_dir)
    state = store.read()
    if state is None:
        click.echo(f"Project {settings.project_name} is not running.")
        return

    try:
        supervisor = psutil.Process(state.supervisor_pid)
    except psutil.NoSuchProcess:
        supervisor = None

    if supervisor is None:
        # Supervisor is gone; stop whatever it left behind
        for name, status in state.services.items():
            if status.pid and psutil.pid_exists(status.pid):
                click.echo(f"Stopping orphaned service {name} (pid {status.pid})")
                psutil.Process(status.pid).terminate()
        store.clear()
        click.echo("Services stopped.")
        return

    store.request_teardown(remove_volumes=volumes)
    supervisor.terminate()
    try:
        supervisor.wait(timeout=timeout)
        click.echo("Services stopped.")
    except psutil.TimeoutExpired:
        click.echo(f"Error: supervisor did not stop within {timeout}s.", err=True)
        ctx.exit(1)


@cli.command()
@click.pass_context
def ps(ctx):
    """List service status"""
    settings = ctx.obj['settings']
    state = StateStore(settings.state_dir).read()
    if state is None:
        click.echo(f"Project {settings.project_name} is not running.")
        return

    stale = not psutil.pid_exists(state.supervisor_pid)
    click.echo(f"{'SERVICE':15} {'STATE':10} {'RESTARTS':8} {'PID':8}")
    click.echo("-" * 44)
    for name, status in state.services.items():
        pid = str(status.pid) if status.pid else "-"
        click.echo(f"{name:15} {status.state.value:10} {status.restart_count:<8} {pid:8}")
    for failure in state.failures:
        click.echo(f"Failure: {failure}")
    if stale:
        click.echo("Warning: the supervisor is no longer running; this state is stale.")


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--follow', '-f', is_flag=True, help='Follow log output')
@click.option('--tail', '-n', type=int, default=None, help='Number of lines to show from the end of each log')
@click.pass_context
def logs(ctx, services, follow, tail):
    """Show service logs"""
    log_dir = os.path.join(ctx.obj['settings'].state_dir, "logs")
    aggregator = LogAggregator(log_dir)
    if not services:
        services = sorted(
            os.path.splitext(entry)[0] for entry in os.listdir(log_dir) if entry.endswith(".log")
        ) if os.path.isdir(log_dir) else []

    for line in aggregator.read(list(services), tail=tail):
        click.echo(line)
    if follow:
        try:
            for line in aggregator.follow(list(services)):
                click.echo(line)
        except KeyboardInterrupt:
            click.echo("\nStopping log tailing...")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
