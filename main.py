"""
Main application entry point for TaskPilot.

This module provides the functions behind the command line: running the
automation loop for one or many workspaces, and inspecting tasks and
persisted sessions.
"""

import sys
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import json
import yaml

from rich.console import Console

from .config.config import Config
from .config.settings import Settings
from .core.agent import NoopAgent
from .core.app_context import AppContext
from .core.errors import TaskPilotError
from .core.event_bus import Event, EventType
from .core.models import SessionStatus
from .core.session_store import SessionCheckpoint, session_statistics
from .core.task_store import TaskStore
from .parsers.task_parser import TaskParser
from .utils.formatting import FormattingUtils
from .utils.log_setup import setup_logging
from .utils.status_visualization import StatusVisualization

console = Console()

logger = logging.getLogger(__name__)


def _load_config(config_path: Optional[Path] = None, cli_options: Optional[Dict[str, Any]] = None) -> Config:
    config = Config.load(config_path)
    if cli_options:
        config.apply_cli_overrides(cli_options)

    log_level = os.environ.get('TASKPILOT_LOG_LEVEL', config.logging.level)
    setup_logging(log_level, Path(config.logging.file) if config.logging.file else None)
    return config


def _print_event(event: Event) -> None:
    data = event.data or {}
    if event.type == EventType.TASK_STARTED:
        console.print(f"[blue]▶[/blue] {data.get('task_id')} {data.get('title')} (attempt {data.get('attempt', 0) + 1})")
    elif event.type == EventType.TASK_COMPLETED:
        console.print(f"[green]✔[/green] {data.get('task_id')} {data.get('title')}")
    elif event.type == EventType.TASK_FAILED:
        console.print(f"[red]✘[/red] {data.get('task_id')} {data.get('title')}: {data.get('error')}")
    elif event.type == EventType.TASK_SKIPPED:
        console.print(f"[magenta]↷[/magenta] {data.get('task_id')} skipped")
    elif event.type == EventType.ERROR_OCCURRED and data.get('retryable'):
        console.print(f"[yellow]![/yellow] {data.get('task_id')}: {data.get('message')} "
                      f"({data.get('error_type')}, retrying)")


def _dump(data: Any, output_format: str) -> str:
    if output_format == 'yaml':
        return yaml.safe_dump(json.loads(FormattingUtils.format_json(data)), default_flow_style=False,
                              sort_keys=False)
    return FormattingUtils.format_json(data)


def run_automation(config_path: Optional[Path] = None, workspace: Optional[Path] = None,
                   resume: bool = False, dry_run: bool = False, watch: bool = False,
                   cli_options: Optional[Dict[str, Any]] = None) -> int:
    """
    Run the automation loop for one workspace.

    Args:
        config_path: Path to configuration file
        workspace: Workspace root directory (defaults to the current directory)
        resume: Continue the persisted session of the workspace
        dry_run: Use an agent that completes every task without doing anything
        watch: Re-parse task documents when they change during the run
        cli_options: Configuration overrides from the command line

    Returns:
        Exit code
    """
    context = None
    try:
        config = _load_config(config_path, cli_options)
        context = AppContext(config, agent=NoopAgent() if dry_run else None)
        context.event_bus.subscribe_all(_print_event)
        context.resource_manager.start()

        engine = context.create_engine(workspace or Path.cwd())
        if resume:
            recovered = engine.recover_session()
            if recovered is None:
                console.print("[yellow]No persisted session to resume; starting a new one[/yellow]")
            else:
                console.print(f"Resuming session {recovered.id}")
        if watch or config.task_store.watch:
            engine.task_store.start_watching()

        engine.start()
        try:
            while not engine.join(timeout=0.5):
                pass
        except KeyboardInterrupt:
            console.print("[yellow]Stopping after interrupt...[/yellow]")
            engine.stop()
            engine.join()

        session = engine.session
        console.print(StatusVisualization.create_session_table(session))
        return 1 if session.status == SessionStatus.FAILED else 0

    except TaskPilotError as e:
        logging.error(f"Automation error: {str(e)}")
        return 1
    except Exception as e:
        logging.exception(f"Application error: {str(e)}")
        return 1
    finally:
        if context is not None:
            context.shutdown()


def run_all(config_path: Optional[Path] = None, workspaces: Optional[List[Path]] = None,
            priorities: Optional[Dict[str, int]] = None, dry_run: bool = False,
            cli_options: Optional[Dict[str, Any]] = None) -> int:
    """
    Run several workspaces concurrently.

    Args:
        config_path: Path to configuration file
        workspaces: Workspace roots; the configured workspaces when omitted
        priorities: Priority per workspace path or name
        dry_run: Use an agent that completes every task without doing anything
        cli_options: Configuration overrides from the command line

    Returns:
        Exit code
    """
    context = None
    try:
        config = _load_config(config_path, cli_options)
        priorities = priorities or {}

        entries = config.workspace_entries()
        if workspaces:
            configured = {entry['path']: entry for entry in entries}
            entries = [configured.get(AppContext.workspace_id(path),
                                      {'path': AppContext.workspace_id(path), 'name': Path(path).name,
                                       'priority': config.scheduler.default_priority,
                                       'max_memory_mb': config.scheduler.default_memory_mb})
                       for path in workspaces]
        if not entries:
            console.print("[red]No workspaces given or configured[/red]")
            return 1

        workspace_ids = [entry['path'] for entry in entries]
        priority_map = {}
        for entry in entries:
            override = priorities.get(entry['path'], priorities.get(entry['name']))
            priority_map[entry['path']] = override if override is not None else entry['priority']
        memory_map = {entry['path']: entry['max_memory_mb'] for entry in entries}

        context = AppContext(config, agent=NoopAgent() if dry_run else None)
        context.event_bus.subscribe_all(_print_event)
        context.resource_manager.start()
        scheduler = context.create_scheduler()

        scheduler.start_concurrent(workspace_ids, priorities=priority_map, resource_limits=memory_map)
        try:
            while not scheduler.wait(timeout=0.5):
                pass
        except KeyboardInterrupt:
            console.print("[yellow]Stopping all workspaces after interrupt...[/yellow]")
            scheduler.stop_all()
            scheduler.wait()

        results = scheduler.get_results()
        console.print(StatusVisualization.create_workspace_results_table(results))
        failed = [result for result in results if result.status in (SessionStatus.FAILED.value, 'error')]
        return 1 if failed else 0

    except TaskPilotError as e:
        logging.error(f"Automation error: {str(e)}")
        return 1
    except Exception as e:
        logging.exception(f"Application error: {str(e)}")
        return 1
    finally:
        if context is not None:
            context.shutdown()


def run_status(config_path: Optional[Path] = None, workspace: Optional[Path] = None,
               output_format: str = 'text') -> int:
    """
    Show the tasks of a workspace and its persisted session.

    Args:
        config_path: Path to configuration file
        workspace: Workspace root directory
        output_format: Output format ('text', 'json', 'yaml')

    Returns:
        Exit code
    """
    try:
        config = _load_config(config_path)
        context = AppContext(config, agent=NoopAgent())
        store = context.create_task_store(workspace or Path.cwd())
        tasks = store.load()
        checkpoint = context.session_store.load(store.workspace_id)

        if output_format in ('json', 'yaml'):
            data = {
                'workspace': store.workspace_id,
                'statistics': store.get_statistics(),
                'tasks': [task.to_dict() for task in tasks],
                'session': checkpoint.to_dict() if checkpoint else None,
            }
            print(_dump(data, output_format))
            return 0

        blocked = {task.key: store.unsatisfied_dependencies(task) for task in tasks if task.is_ready_status()}
        blocked = {key: deps for key, deps in blocked.items() if deps}
        console.print(StatusVisualization.create_task_table(tasks, title=f"Tasks in {store.workspace_id}",
                                                            blocked=blocked))
        console.print(StatusVisualization.create_status_summary_table(store.get_statistics()))
        for problem in store.validate_dependencies():
            console.print(f"[red]{problem}[/red]")
        if checkpoint:
            console.print(StatusVisualization.create_session_table(checkpoint.session, checkpoint.execution_queue))
        return 0

    except TaskPilotError as e:
        logging.error(f"Status error: {str(e)}")
        return 1
    except Exception as e:
        logging.exception(f"Status error: {str(e)}")
        return 1


def run_parse(document: Path, output_path: Optional[Path] = None, output_format: str = 'text') -> int:
    """
    Parse one task document and print its tasks.

    Args:
        document: Path to the task document
        output_path: Output file for parsed results
        output_format: Output format ('text', 'tree', 'json', 'yaml')

    Returns:
        Exit code
    """
    try:
        setup_logging(os.environ.get('TASKPILOT_LOG_LEVEL', Settings.DEFAULT_LOG_LEVEL))
        spec_name = document.resolve().parent.name
        tasks = TaskParser().parse(str(document), spec_name=spec_name)

        if output_format in ('json', 'yaml'):
            rendered = _dump({'document': str(document), 'tasks': [task.to_dict() for task in tasks]},
                             output_format)
            if output_path:
                output_path.write_text(rendered, encoding='utf-8')
                console.print(f"Parsed {len(tasks)} tasks into {output_path}")
            else:
                print(rendered)
            return 0

        if output_format == 'tree':
            console.print(StatusVisualization.create_task_tree(tasks))
        else:
            console.print(StatusVisualization.create_task_table(tasks, title=str(document)))
        return 0

    except TaskPilotError as e:
        logging.error(f"Parse error: {str(e)}")
        return 1
    except Exception as e:
        logging.exception(f"Parse error: {str(e)}")
        return 1


def run_next(config_path: Optional[Path] = None, workspace: Optional[Path] = None,
             show_prompt: bool = False) -> int:
    """
    Show the task the engine would execute next.

    Args:
        config_path: Path to configuration file
        workspace: Workspace root directory
        show_prompt: Also print the rendered agent prompt

    Returns:
        Exit code (1 when no task is ready)
    """
    try:
        config = _load_config(config_path)
        context = AppContext(config, agent=NoopAgent())
        engine = context.create_engine(workspace or Path.cwd())
        store = engine.task_store
        store.load()

        checkpoint = context.session_store.load(store.workspace_id)
        exclude = checkpoint.session.handled_tasks() if checkpoint else []
        task = store.get_next_ready(exclude=exclude)
        if task is None:
            console.print("No task is ready")
            for problem in store.validate_dependencies():
                console.print(f"[red]{problem}[/red]")
            return 1

        console.print(f"[bold cyan]{task.key}[/bold cyan] {task.title}")
        for subtask in task.subtasks:
            optional = " (optional)" if subtask.optional else ""
            console.print(f"  {StatusVisualization.get_status_symbol(subtask.status)} {subtask.id} "
                          f"{subtask.title}{optional}")
        if show_prompt:
            console.print()
            print(engine.prompt_builder.build(task))
        return 0

    except TaskPilotError as e:
        logging.error(f"Next task error: {str(e)}")
        return 1
    except Exception as e:
        logging.exception(f"Next task error: {str(e)}")
        return 1


def run_task_action(action: str, task_ref: str, config_path: Optional[Path] = None,
                    workspace: Optional[Path] = None) -> int:
    """
    Retry or skip a failed task of the persisted session.

    Args:
        action: 'retry' or 'skip'
        task_ref: Task key or id
        config_path: Path to configuration file
        workspace: Workspace root directory

    Returns:
        Exit code
    """
    try:
        config = _load_config(config_path)
        context = AppContext(config, agent=NoopAgent())
        engine = context.create_engine(workspace or Path.cwd())
        engine.task_store.load()

        if engine.recover_session() is None:
            console.print(f"[red]No persisted session for {engine.workspace_id}[/red]")
            return 1

        if action == 'retry':
            engine.retry_task(task_ref)
            console.print(f"Task {task_ref} will be retried on the next 'taskpilot run --resume'")
        elif action == 'skip':
            engine.skip_task(task_ref)
            console.print(f"Task {task_ref} skipped")
        else:
            raise ValueError(f"Unknown task action: {action}")
        return 0

    except (KeyError, ValueError) as e:
        logging.error(f"Task {action} error: {str(e)}")
        return 1
    except TaskPilotError as e:
        logging.error(f"Task {action} error: {str(e)}")
        return 1


def run_session(config_path: Optional[Path] = None, workspace: Optional[Path] = None,
                clear: bool = False, history: bool = False, export_path: Optional[Path] = None,
                import_path: Optional[Path] = None) -> int:
    """
    Inspect or manage the persisted session of a workspace.

    Args:
        config_path: Path to configuration file
        workspace: Workspace root directory
        clear: Delete the persisted session
        history: List recent session ids
        export_path: Write the persisted session to this file
        import_path: Replace the persisted session with this file

    Returns:
        Exit code
    """
    try:
        config = _load_config(config_path)
        context = AppContext(config, agent=NoopAgent())
        workspace_id = AppContext.workspace_id(workspace or Path.cwd())
        store = context.session_store

        if import_path:
            checkpoint = store.import_session(import_path)
            checkpoint.session.workspace_id = workspace_id
            store.save(workspace_id, checkpoint)
            console.print(f"Imported session {checkpoint.session.id}")
            return 0

        if clear:
            if store.clear(workspace_id):
                console.print("Persisted session cleared")
            else:
                console.print("No persisted session")
            return 0

        if history:
            ids = store.get_history(workspace_id)
            if not ids:
                console.print("No session history")
            for session_id in ids:
                console.print(session_id)
            return 0

        checkpoint = store.load(workspace_id)
        if checkpoint is None:
            console.print("No persisted session")
            return 0
        if export_path:
            store.export_session(checkpoint, export_path)
            console.print(f"Exported session {checkpoint.session.id} to {export_path}")
            return 0

        _print_checkpoint(checkpoint)
        return 0

    except TaskPilotError as e:
        logging.error(f"Session error: {str(e)}")
        return 1
    except OSError as e:
        logging.error(f"Session error: {str(e)}")
        return 1


def _print_checkpoint(checkpoint: SessionCheckpoint) -> None:
    console.print(StatusVisualization.create_session_table(checkpoint.session, checkpoint.execution_queue))
    stats = session_statistics(checkpoint.session)
    console.print(f"Completion rate: {stats['completion_rate']:.0%}  "
                  f"Failure rate: {stats['failure_rate']:.0%}  "
                  f"Average task time: {FormattingUtils.format_duration(stats['average_task_time'])}")
    console.print(f"Persisted at {checkpoint.persisted_at:%Y-%m-%d %H:%M:%S} (format {checkpoint.version})")


def run_config_commands(config_path: Optional[Path] = None, set_options: Optional[List[Tuple[str, str]]] = None,
                        get_option: Optional[str] = None, list_config: bool = False,
                        validate_config: bool = False, reset_config: bool = False) -> int:
    """
    Run configuration management commands.

    Args:
        config_path: Path to configuration file
        set_options: List of (key, value) tuples to set
        get_option: Option to get
        list_config: Whether to list all configuration options
        validate_config: Whether to validate the configuration
        reset_config: Whether to reset to default configuration

    Returns:
        Exit code
    """
    try:
        # Determine config path (use default if not provided)
        if not config_path:
            config_path = Config.find_config_file() or Path(Settings.DEFAULT_CONFIG_PATH)

        setup_logging(os.environ.get('TASKPILOT_LOG_LEVEL', Settings.DEFAULT_LOG_LEVEL))

        if reset_config:
            Config.from_dict(Config.get_default_config_dict()).save(config_path)
            console.print(f"Configuration reset to defaults: {config_path}")
            return 0

        config = Config.load(config_path)

        if validate_config:
            errors = config.validate()
            if errors:
                for error in errors:
                    print(f"Configuration error: {error}", file=sys.stderr)
                return 1
            console.print("Configuration is valid")
            return 0

        if set_options:
            for key, value in set_options:
                config.set_option(key, value)
            config.save(config_path)
            console.print(f"Configuration updated: {config_path}")

        if get_option:
            console.print(f"{get_option} = {config.get_option(get_option)}")

        if list_config:
            console.print("Configuration:")
            for section, options in config.to_dict().items():
                console.print(f"  [{section}]", markup=False)
                if isinstance(options, dict):
                    for key, value in options.items():
                        console.print(f"    {key} = {value}", markup=False)
                else:
                    console.print(f"    {section} = {options}", markup=False)
                console.print()

        return 0

    except TaskPilotError as e:
        logging.error(f"Config command error: {str(e)}")
        return 1
    except OSError as e:
        logging.error(f"Config command error: {str(e)}")
        return 1


def run_init(directory: Optional[Path] = None, force: bool = False) -> int:
    """
    Write a starter configuration file for a workspace.

    Args:
        directory: Workspace root that gets the configuration file
        force: Overwrite an existing file

    Returns:
        Exit code
    """
    directory = Path(directory or Path.cwd())
    config_path = directory / Path(Settings.DEFAULT_CONFIG_PATH).name
    if config_path.exists() and not force:
        print(f"{config_path} already exists (use --force to overwrite)", file=sys.stderr)
        return 1

    data = Config.get_default_config_dict()
    data['workspaces'] = [{'path': str(directory.resolve()), 'priority': Settings.DEFAULT_WORKSPACE_PRIORITY}]
    try:
        Config.from_dict(data).save(config_path)
    except OSError as e:
        logging.error(f"Init error: {str(e)}")
        return 1

    store = TaskStore(directory, patterns=data['task_store']['patterns'])
    documents = store.discover()
    console.print(f"Wrote {config_path}")
    console.print(f"Found {len(documents)} task documents")
    return 0


def main() -> None:
    """Main entry point for the application."""
    exit_code = run_automation(workspace=Path.cwd())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
