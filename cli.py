"""
Command Line Interface for TaskPilot.

This module provides a CLI for running the task automation loop over one or
many workspaces and for inspecting tasks and persisted sessions.
"""

import click
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import os

from .main import (run_all, run_automation, run_config_commands, run_init, run_next, run_parse,
                   run_session, run_status, run_task_action)
from .__version__ import __version__


def _set_verbosity(verbose: int) -> None:
    if verbose == 1:
        os.environ['TASKPILOT_LOG_LEVEL'] = 'INFO'
    elif verbose >= 2:
        os.environ['TASKPILOT_LOG_LEVEL'] = 'DEBUG'


def _parse_priorities(values: Tuple[str, ...]) -> Dict[str, int]:
    priorities = {}
    for value in values:
        workspace, sep, priority = value.rpartition('=')
        if not sep or not workspace:
            raise click.BadParameter(f"Expected WORKSPACE=N, got {value!r}", param_hint='--priority')
        if os.sep in workspace:
            workspace = str(Path(workspace).expanduser().resolve())
        try:
            priorities[workspace] = int(priority)
        except ValueError:
            raise click.BadParameter(f"Priority must be an integer: {value!r}", param_hint='--priority') from None
    return priorities


@click.group(invoke_without_command=True, help="TaskPilot - Automated execution of markdown task lists.")
@click.option('--config', '-c', type=click.Path(exists=True, path_type=Path),
              help='Path to configuration file')
@click.option('--version', '-v', is_flag=True, help='Show version and exit')
@click.option('--verbose', '-V', count=True, help='Increase verbosity (use -VV for debug)')
@click.pass_context
def cli(ctx: click.Context, config: Optional[Path], version: bool, verbose: int) -> None:
    """
    TaskPilot - Automated execution of markdown task lists.

    TaskPilot reads checklist task documents, hands each ready task to an
    agent, writes progress back into the documents and checkpoints the
    session so an interrupted run can be resumed.

    Usage Examples:
      taskpilot run                                 # Run the tasks of the current directory
      taskpilot run ~/work/api --resume             # Resume an interrupted session
      taskpilot run-all ws1 ws2 --max-concurrent 2  # Run several workspaces
      taskpilot status                              # Show tasks and session
      taskpilot parse .kiro/specs/api/tasks.md      # Parse a task document
      taskpilot config --list                       # List configuration
    """
    if version:
        click.echo(f"TaskPilot v{__version__}")
        return

    _set_verbosity(verbose)

    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command(help="Run the automation loop for a workspace.")
@click.argument('workspace', required=False, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option('--resume', is_flag=True, help='Resume the persisted session of the workspace')
@click.option('--dry-run', is_flag=True, help='Mark tasks completed without invoking the agent')
@click.option('--watch', is_flag=True, help='Re-parse task documents when they change')
@click.option('--continue-on-failure', is_flag=True, help='Keep going after a task fails permanently')
@click.option('--skip-optional', is_flag=True, help='Skip optional subtasks')
@click.option('--max-retries', type=int, default=None, help='Retries for retryable failures')
@click.option('--task-timeout', type=float, default=None, help='Seconds before an agent invocation times out')
@click.option('--agent-command', type=str, default=None,
              help='Shell command template run per task; must contain {prompt}')
@click.option('--verbose', '-V', count=True, help='Increase verbosity (use -VV for debug)')
@click.pass_context
def run(ctx, workspace: Optional[Path], resume: bool, dry_run: bool, watch: bool, continue_on_failure: bool,
        skip_optional: bool, max_retries: Optional[int], task_timeout: Optional[float],
        agent_command: Optional[str], verbose: int) -> None:
    """
    Run the automation loop for a workspace.

    Tasks are executed one at a time in document order once their
    dependencies are completed. Press Ctrl+C to stop; the session is
    checkpointed and can be continued with --resume.

    Examples:
      taskpilot run                                    # Current directory
      taskpilot run ~/work/api --resume                # Resume a session
      taskpilot run --agent-command 'agent -p {prompt}'
      taskpilot run --dry-run                          # Walk the task list only
    """
    _set_verbosity(verbose)
    cli_options = {
        'continue_on_failure': continue_on_failure,
        'skip_optional': skip_optional,
        'max_retries': max_retries,
        'task_timeout': task_timeout,
        'agent_command': agent_command,
    }
    exit_code = run_automation(config_path=ctx.obj.get('config_path'), workspace=workspace,
                               resume=resume, dry_run=dry_run, watch=watch, cli_options=cli_options)
    sys.exit(exit_code)


@cli.command('run-all', help="Run several workspaces concurrently.")
@click.argument('workspaces', nargs=-1, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option('--max-concurrent', type=int, default=None, help='Maximum workspaces running at once')
@click.option('--priority', 'priorities', multiple=True, metavar='WORKSPACE=N',
              help='Priority of a workspace (higher runs first)')
@click.option('--dry-run', is_flag=True, help='Mark tasks completed without invoking the agent')
@click.option('--continue-on-failure', is_flag=True, help='Keep going after a task fails permanently')
@click.option('--verbose', '-V', count=True, help='Increase verbosity (use -VV for debug)')
@click.pass_context
def run_all_cmd(ctx, workspaces: List[Path], max_concurrent: Optional[int], priorities: Tuple[str, ...],
                dry_run: bool, continue_on_failure: bool, verbose: int) -> None:
    """
    Run several workspaces concurrently.

    Without arguments the workspaces listed in the configuration are used.

    Examples:
      taskpilot run-all                                # Configured workspaces
      taskpilot run-all ws1 ws2 ws3 --max-concurrent 2
      taskpilot run-all ws1 ws2 --priority ws2=9
    """
    _set_verbosity(verbose)
    cli_options = {
        'max_concurrent': max_concurrent,
        'continue_on_failure': continue_on_failure,
    }
    exit_code = run_all(config_path=ctx.obj.get('config_path'), workspaces=list(workspaces),
                        priorities=_parse_priorities(priorities), dry_run=dry_run, cli_options=cli_options)
    sys.exit(exit_code)


@cli.command(help="Show the tasks and persisted session of a workspace.")
@click.argument('workspace', required=False, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option('--format', 'output_format', type=click.Choice(['text', 'json', 'yaml']),
              default='text', help='Output format (default: text)')
@click.pass_context
def status(ctx, workspace: Optional[Path], output_format: str) -> None:
    """
    Show the tasks and persisted session of a workspace.

    Examples:
      taskpilot status
      taskpilot status ~/work/api --format json
    """
    exit_code = run_status(config_path=ctx.obj.get('config_path'), workspace=workspace,
                           output_format=output_format)
    sys.exit(exit_code)


@cli.command(help="Parse a task document and show its tasks.")
@click.argument('document', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--output', '-o', type=click.Path(path_type=Path),
              help='Output file for parsed results (json/yaml)')
@click.option('--format', 'output_format', type=click.Choice(['text', 'tree', 'json', 'yaml']),
              default='text', help='Output format (default: text)')
def parse(document: Path, output: Optional[Path], output_format: str) -> None:
    """
    Parse a task document and show its tasks.

    Examples:
      taskpilot parse .kiro/specs/api/tasks.md
      taskpilot parse tasks.md --format tree
      taskpilot parse tasks.md --format json -o tasks.json
    """
    exit_code = run_parse(document=document, output_path=output, output_format=output_format)
    sys.exit(exit_code)


@cli.command('next', help="Show the task that would run next.")
@click.argument('workspace', required=False, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option('--prompt', 'show_prompt', is_flag=True, help='Print the rendered agent prompt')
@click.pass_context
def next_cmd(ctx, workspace: Optional[Path], show_prompt: bool) -> None:
    """
    Show the task that would run next.

    Examples:
      taskpilot next
      taskpilot next ~/work/api --prompt
    """
    exit_code = run_next(config_path=ctx.obj.get('config_path'), workspace=workspace, show_prompt=show_prompt)
    sys.exit(exit_code)


@cli.command(help="Re-admit a failed task of the persisted session.")
@click.argument('workspace', type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument('task_id')
@click.pass_context
def retry(ctx, workspace: Path, task_id: str) -> None:
    """
    Re-admit a failed task of the persisted session.

    Example:
      taskpilot retry ~/work/api api:2.1 && taskpilot run ~/work/api --resume
    """
    sys.exit(run_task_action('retry', task_id, config_path=ctx.obj.get('config_path'), workspace=workspace))


@cli.command(help="Skip a task of the persisted session.")
@click.argument('workspace', type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument('task_id')
@click.pass_context
def skip(ctx, workspace: Path, task_id: str) -> None:
    """
    Skip a task of the persisted session.

    Example:
      taskpilot skip ~/work/api api:3 && taskpilot run ~/work/api --resume
    """
    sys.exit(run_task_action('skip', task_id, config_path=ctx.obj.get('config_path'), workspace=workspace))


@cli.command(help="Inspect or manage the persisted session of a workspace.")
@click.argument('workspace', required=False, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option('--clear', is_flag=True, help='Delete the persisted session')
@click.option('--history', is_flag=True, help='List recent session ids')
@click.option('--export', 'export_path', type=click.Path(dir_okay=False, path_type=Path),
              help='Write the persisted session to a file')
@click.option('--import', 'import_path', type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help='Replace the persisted session with a file written by --export')
@click.pass_context
def session(ctx, workspace: Optional[Path], clear: bool, history: bool,
            export_path: Optional[Path], import_path: Optional[Path]) -> None:
    """
    Inspect or manage the persisted session of a workspace.

    Examples:
      taskpilot session
      taskpilot session ~/work/api --history
      taskpilot session --export session.json
      taskpilot session --clear
    """
    exit_code = run_session(config_path=ctx.obj.get('config_path'), workspace=workspace, clear=clear,
                            history=history, export_path=export_path, import_path=import_path)
    sys.exit(exit_code)


@cli.command('config', help="Manage configuration settings.")
@click.option('--config', '-c', type=click.Path(path_type=Path),
              help='Path to configuration file (default: taskpilot.yaml)')
@click.option('--set', 'set_options', multiple=True, nargs=2, metavar='KEY VALUE',
              help='Set configuration option (e.g., --set engine.max_retries 5)')
@click.option('--get', 'get_option', type=str,
              help='Get specific configuration option')
@click.option('--list', 'list_config', is_flag=True,
              help='List all configuration options')
@click.option('--validate', 'validate_config', is_flag=True,
              help='Validate configuration file')
@click.option('--reset', 'reset_config', is_flag=True,
              help='Reset to default configuration')
@click.option('--verbose', '-V', count=True, help='Increase verbosity (use -VV for debug)')
@click.pass_context
def config_cmd(ctx, config: Optional[Path], set_options: List[tuple],
               get_option: str, list_config: bool, validate_config: bool,
               reset_config: bool, verbose: int) -> None:
    """
    Manage configuration settings.

    Configuration options follow the format 'section.option', such as:
    - engine.max_retries
    - engine.task_timeout
    - scheduler.max_concurrent_workspaces
    - logging.level

    Examples:
      taskpilot config --list                           # List all config options
      taskpilot config --get engine.max_retries         # Get specific option
      taskpilot config --set engine.max_retries 5       # Set an option
      taskpilot config --validate                       # Validate config
      taskpilot config --reset                          # Reset to defaults
    """
    _set_verbosity(verbose)
    exit_code = run_config_commands(config_path=config or ctx.obj.get('config_path'),
                                    set_options=list(set_options),
                                    get_option=get_option, list_config=list_config,
                                    validate_config=validate_config,
                                    reset_config=reset_config)
    sys.exit(exit_code)


@cli.command(help="Initialize a new configuration file.")
@click.argument('directory', required=False, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option('--force', is_flag=True, help='Overwrite an existing configuration file')
def init(directory: Optional[Path], force: bool) -> None:
    """
    Initialize a new configuration file.

    Creates a taskpilot.yaml with defaults in the given directory (or the
    current one) that lists the directory as a workspace.

    Example:
      taskpilot init    # Create default configuration
    """
    sys.exit(run_init(directory=directory, force=force))


def main() -> None:
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
