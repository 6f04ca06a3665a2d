"""Command-line interface for clidoctor.

The ``doctor`` command gathers information about the installed CLI, runs the
built-in diagnostics and any extension-provided hooks, optionally runs one
command in debug mode, and writes everything to ``{run_id}-diagnosis.json``.
"""
from __future__ import annotations

import asyncio
import json
import os
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .doctor import (
    CheckOptions,
    CommandRunResult,
    DebugCommandExecutor,
    DiagnosticResult,
    DiagnosticStatus,
    Diagnosis,
    Doctor,
    ExtensionHost,
    UnknownExtensionError,
    dump_diagnosis,
    init_doctor,
    reset_doctor,
    serialize_diagnosis,
    wait_for_tasks,
)
from .environment import collect_environment_facts
from .events import DIAGNOSTIC_STATUS_TOPIC, get_event_bus
from .exit_codes import ExitCode
from .issues import build_issue_url, fetch_issue_template, generate_issue_markdown
from .logging import OperationScope, StructuredLogger

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to clidoctor's YAML config file.",
)

DOCTOR_COMMAND_OPTION = typer.Option(
    None,
    "--command",
    "-c",
    help="Command to run in debug mode; results are written to log files.",
)
DOCTOR_PLUGIN_OPTION = typer.Option(
    None,
    "--plugin",
    "-p",
    help="Run only the diagnostics contributed by this installed plugin.",
)
DOCTOR_OUTPUT_DIR_OPTION = typer.Option(
    None,
    "--output-dir",
    "-d",
    file_okay=False,
    help="Directory to save all created files rather than the current directory.",
)
DOCTOR_CREATE_ISSUE_OPTION = typer.Option(
    False,
    "--create-issue",
    "-i",
    help="Create a new issue on GitHub populated with the diagnosis.",
)
DOCTOR_JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the diagnosis as JSON.",
)
DOCTOR_COMMAND_TIMEOUT_OPTION = typer.Option(
    None,
    "--command-timeout",
    min=0.001,
    help="Stop the debug command after this many seconds.",
)

_STATUS_STYLE = {
    DiagnosticStatus.PASS: "[green]pass[/green]",
    DiagnosticStatus.FAIL: "[red]fail[/red]",
    DiagnosticStatus.WARN: "[yellow]warn[/yellow]",
    DiagnosticStatus.UNKNOWN: "[dim]unknown[/dim]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Self-diagnostics for the clidoctor host CLI.

        Gathers CLI configuration data, runs diagnostic checks and writes a
        diagnosis file that can be attached to bug reports.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the clidoctor version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(ctx, config_file)
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"clidoctor {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _check_options(config: AppConfig) -> CheckOptions:
    return CheckOptions(
        network_timeout=config.network.timeout,
        endpoints=config.network.endpoints,
        deprecated_plugins=config.deprecated_plugins,
        bin=config.bin,
        package_name=config.package_name,
        version_url=config.network.version_url,
    )


def _resolve_output_dir(config: AppConfig, output_dir: Path | None) -> Path:
    chosen = output_dir or config.output_dir or Path.cwd()
    return Path(os.path.abspath(chosen.expanduser()))


async def _run_doctor(
    doctor: Doctor,
    config: AppConfig,
    op: OperationScope,
    *,
    command: str | None,
    plugin: str | None,
    output_dir: Path,
    command_timeout: float | None,
    quiet: bool,
) -> CommandRunResult | None:
    """Schedule every doctor task, wait for all of them and return the command outcome."""
    extensions = ExtensionHost(doctor, prefix=config.hook_prefix)
    printer = None
    if not quiet:

        def _print_status(result: DiagnosticResult) -> None:
            console.print(f"{_STATUS_STYLE[result.status]} - {escape(result.name)}")

        printer = doctor.bus.subscribe(DIAGNOSTIC_STATUS_TOPIC, _print_status)

    try:
        # Raises for an unknown plugin before anything is scheduled.
        hook_tasks = extensions.schedule(plugin)
        tasks: list[asyncio.Task[object]] = []

        command_task = None
        if command:
            executor = DebugCommandExecutor(
                doctor,
                command,
                bin_name=config.bin,
                debug_flag=config.debug_flag,
                output_dir=output_dir,
                env_overrides=dict(config.command.env),
                timeout=command_timeout or config.command.timeout,
            )
            if not quiet:
                console.rule("Running command with debugging")
                console.print(executor.command, markup=False)
            command_task = executor.start()
            tasks.append(command_task)
            op.add_step("command", detail=executor.command)

        if plugin is not None:
            if not quiet:
                if hook_tasks:
                    console.rule(f"Running diagnostics for plugin: {plugin}")
                else:
                    console.print(
                        f"{plugin} doesn't have diagnostic tests to run.", markup=False
                    )
            tasks.extend(hook_tasks)
        else:
            if not quiet:
                console.rule("Running all diagnostics")
            tasks.extend(hook_tasks)
            tasks.extend(doctor.run_builtin_checks(_check_options(config)))
        op.add_step("schedule", detail={"tasks": len(tasks), "hooks": len(hook_tasks)})

        await wait_for_tasks(tasks)
    finally:
        extensions.close()
        if printer is not None:
            printer.cancel()

    if command_task is None or command_task.cancelled() or command_task.exception():
        return None
    return command_task.result()


def _render_summary(written: Sequence[str], diagnosis: Diagnosis) -> None:
    console.print()
    for message in written:
        console.print(message, markup=False)
    console.print()
    console.rule("Suggestions")
    for suggestion in diagnosis.suggestions:
        console.print(f"  * {suggestion}", markup=False)


def _create_issue(config: AppConfig, diagnosis: Diagnosis) -> str:
    template = ""
    if config.issues.template_url:
        template = fetch_issue_template(
            config.issues.template_url, timeout=config.network.timeout
        )
    title = typer.prompt("Enter a title for your new issue")
    body = generate_issue_markdown(template, diagnosis)
    url = build_issue_url(config, title, body)
    typer.launch(url)
    return url


@app.command()
def doctor(
    ctx: typer.Context,
    command: str | None = DOCTOR_COMMAND_OPTION,
    plugin: str | None = DOCTOR_PLUGIN_OPTION,
    output_dir: Path | None = DOCTOR_OUTPUT_DIR_OPTION,
    create_issue: bool = DOCTOR_CREATE_ISSUE_OPTION,
    json_output: bool = DOCTOR_JSON_OPTION,
    command_timeout: float | None = DOCTOR_COMMAND_TIMEOUT_OPTION,
) -> None:
    """Gather CLI configuration data and run diagnostic tests."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "doctor",
        args={
            "command": command,
            "plugin": plugin,
            "output_dir": output_dir,
            "create_issue": create_issue,
            "json": json_output,
            "command_timeout": command_timeout,
        },
        target={"kind": "system", "scope": "diagnosis"},
    ) as op:
        resolved_dir = _resolve_output_dir(config, output_dir)
        facts = collect_environment_facts(config)
        bus = get_event_bus()
        bus.subscriber_timeout = config.events.subscriber_timeout
        doctor_instance = init_doctor(facts, config, bus=bus)
        try:
            try:
                command_result = asyncio.run(
                    _run_doctor(
                        doctor_instance,
                        config,
                        op,
                        command=command,
                        plugin=plugin,
                        output_dir=resolved_dir,
                        command_timeout=command_timeout,
                        quiet=json_output,
                    )
                )
            except UnknownExtensionError as exc:
                _command_error(op, str(exc), rc=ExitCode.VALIDATION)

            diagnosis = doctor_instance.snapshot()
            try:
                location = doctor_instance.write_file(
                    resolved_dir / "diagnosis.json", dump_diagnosis(diagnosis)
                )
            except OSError as exc:
                _command_error(
                    op,
                    f"Unable to write the diagnosis to {resolved_dir}: {exc}",
                    rc=ExitCode.ENVIRONMENT,
                )
            # Re-read so the diagnosis file itself is listed.
            diagnosis = doctor_instance.snapshot()
        finally:
            reset_doctor()

        written: list[str] = []
        if command_result is not None:
            if command_result.stdout_path is not None:
                written.append(f"Wrote command stdout log to: {command_result.stdout_path}")
            if command_result.debug_path is not None:
                written.append(f"Wrote command debug log to: {command_result.debug_path}")
        written.append(f"Wrote doctor diagnosis to: {location}")

        payload = serialize_diagnosis(diagnosis)
        if json_output:
            console.print(
                json.dumps(payload, indent=2),
                markup=False,
                highlight=False,
                soft_wrap=True,
            )
        else:
            _render_summary(written, diagnosis)

        issue_url = None
        if create_issue:
            issue_url = _create_issue(config, diagnosis)
            if not json_output:
                console.print(f"Opened new issue: {issue_url}", markup=False)

        failures = [
            result.name for result in diagnosis.diagnostic_results if result.status.is_failure
        ]
        log_context = {
            "run_id": diagnosis.run_id,
            "diagnosis": str(location),
            "results": [result.to_dict() for result in diagnosis.diagnostic_results],
            "issue_url": issue_url,
        }
        if failures:
            op.warning(
                "Doctor completed with failing diagnostics.",
                warnings=failures,
                context=log_context,
            )
        else:
            op.success("Doctor run completed successfully.", context=log_context)


__all__ = ["app"]
