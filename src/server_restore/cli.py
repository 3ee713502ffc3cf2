from __future__ import annotations

import argparse
import os
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .config import DEFAULT_CONFIG_PATH, RestoreConfig, load_config
from .credentials import CredentialSource, CredentialStore
from .errors import ConfigurationError, ExitCode
from .logger import configure_logging, get_logger
from .models import BackendKind, BackupArtifact
from .orchestrator import RESTORE_MODES, Operation, OperationResult, RestoreOrchestrator, Selector
from .report import render_artifacts, render_plan, render_report, write_report

LOG = get_logger(__name__)

InputFn = Callable[[str], str]
OutputFn = Callable[[str], None]

MENU: List[Tuple[str, Operation, str]] = [
    ("1", Operation.RESTORE_MINIMAL, "Restore from Minimal Backup (Google Drive)"),
    ("2", Operation.RESTORE_FULL, "Restore from Full Backup (GitHub)"),
    ("3", Operation.LIST_BACKUPS, "List Available Backups"),
    ("4", Operation.SETUP_CREDENTIALS, "Setup Credentials Only"),
    ("5", Operation.INSTALL_BASE_PACKAGES, "Install Base Packages Only"),
    ("6", Operation.EXIT, "Exit"),
]
MENU_CHOICES: Dict[str, Operation] = {key: operation for key, operation, _ in MENU}
CREDENTIAL_CHOICES: Dict[str, Tuple[BackendKind, ...]] = {
    "1": (BackendKind.CLOUD_STORAGE,),
    "2": (BackendKind.SOURCE_HOSTING,),
    "3": (BackendKind.CLOUD_STORAGE, BackendKind.SOURCE_HOSTING),
}
ACTIONS = [operation.value for operation in Operation if operation is not Operation.EXIT]


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Restore this server from a remote backup.")
    parser.add_argument(
        "--config",
        default=os.getenv("SERVER_RESTORE_CONFIG"),
        help=f"Path to configuration YAML file (default {DEFAULT_CONFIG_PATH} when present).",
    )
    parser.add_argument(
        "--action",
        choices=ACTIONS,
        default=os.getenv("SERVER_RESTORE_ACTION") or None,
        help="Run one operation non-interactively instead of showing the menu.",
    )
    parser.add_argument(
        "--backup",
        default=os.getenv("SERVER_RESTORE_BACKUP") or None,
        help="Backup id or file name to restore, or 'latest'.",
    )
    parser.add_argument(
        "--backend",
        action="append",
        choices=[kind.value for kind in BackendKind],
        help="Backend for list-backups/setup-credentials (can be given twice). Defaults to both.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print the restore plan without executing it.")
    parser.add_argument("--keep-staging", action="store_true", help="Keep the downloaded archive and extracted tree.")
    parser.add_argument("--report", type=Path, help="Write the restoration report as JSON to this path.")
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        default=_env_flag("SERVER_RESTORE_NON_INTERACTIVE"),
        help="Never prompt; credentials must come from the environment.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Log level (default INFO).",
    )
    return parser.parse_args(argv)


def load_configuration(path: Optional[str]) -> RestoreConfig:
    if path:
        return load_config(Path(path).expanduser())
    return load_config(DEFAULT_CONFIG_PATH, required=False)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = load_configuration(args.config)
    except ConfigurationError as exc:
        configure_logging(args.log_level)
        LOG.error("Configuration error: %s", exc.message)
        return int(exc.exit_code)

    configure_logging(args.log_level, config.log_file)
    interactive = not args.non_interactive and sys.stdin.isatty()
    if hasattr(os, "geteuid") and os.geteuid() != 0 and not args.dry_run:
        LOG.warning("Not running as root; package, file and service steps will likely fail")

    orchestrator = RestoreOrchestrator(
        config=config,
        credential_store=CredentialStore(config),
        credential_source=CredentialSource.PROMPT if interactive else CredentialSource.ENV,
        cancel_event=threading.Event(),
    )

    if args.action and args.action not in ACTIONS:
        LOG.error("Unknown action '%s' (expected one of: %s)", args.action, ", ".join(ACTIONS))
        return int(ExitCode.CONFIG)
    if args.action:
        result = run_operation(orchestrator, Operation(args.action), args, interactive=False)
        return int(result.exit_code)
    if not interactive:
        LOG.error("No --action given and no terminal available for the interactive menu")
        return int(ExitCode.CONFIG)
    return run_menu(orchestrator, args)


def run_menu(
    orchestrator: RestoreOrchestrator,
    args: argparse.Namespace,
    input_fn: InputFn = input,
    output: OutputFn = print,
) -> int:
    # Ctrl-C at a prompt leaves the menu; during an operation it only cancels that operation.
    try:
        return _menu_loop(orchestrator, args, input_fn, output)
    except KeyboardInterrupt:
        output("")
        LOG.warning("Interrupted; leaving the menu")
        return int(ExitCode.CANCELLED)


def _menu_loop(
    orchestrator: RestoreOrchestrator,
    args: argparse.Namespace,
    input_fn: InputFn,
    output: OutputFn,
) -> int:
    exit_code = ExitCode.OK
    while True:
        show_menu(output)
        try:
            choice = input_fn("Enter your choice (1-6): ").strip()
        except EOFError:
            return int(exit_code)

        operation = MENU_CHOICES.get(choice)
        if operation is None:
            output("Invalid choice. Please enter 1-6.")
            continue
        if operation is Operation.EXIT:
            LOG.info("Exiting")
            return int(exit_code)

        backends = None
        if operation is Operation.SETUP_CREDENTIALS:
            backends = _ask_credential_backends(input_fn, output)
            if backends is None:
                continue

        result = run_operation(
            orchestrator,
            operation,
            args,
            interactive=True,
            input_fn=input_fn,
            output=output,
            backends=backends,
        )
        exit_code = result.exit_code
        if operation in RESTORE_MODES:
            return int(exit_code)


def show_menu(output: OutputFn = print) -> None:
    output("")
    output("============================================")
    output("SERVER RESTORATION")
    output("============================================")
    for key, _, label in MENU:
        output(f"{key}. {label}")
    output("============================================")


def run_operation(
    orchestrator: RestoreOrchestrator,
    operation: Operation,
    args: argparse.Namespace,
    *,
    interactive: bool,
    input_fn: InputFn = input,
    output: OutputFn = print,
    backends: Optional[Sequence[BackendKind]] = None,
) -> OperationResult:
    if backends is None and args.backend:
        backends = [BackendKind(value) for value in args.backend]
    if interactive:
        prompt_backend_settings(orchestrator.config, _backends_for(operation, backends), input_fn)
    selector = prompt_selector(input_fn, output) if interactive and not args.backup else None

    with cancel_on_signal(orchestrator.cancel_event):
        result = orchestrator.run(
            operation,
            backends=backends,
            selection=args.backup,
            selector=selector,
            dry_run=args.dry_run,
            keep_staging=args.keep_staging or None,
        )
    print_result(result, output)

    if args.report and result.report is not None:
        try:
            write_report(result.report, args.report)
        except OSError as exc:
            LOG.error("Cannot write report to %s: %s", args.report, exc)
        else:
            LOG.info("Report written to %s", args.report)
    return result


@contextmanager
def cancel_on_signal(cancel_event: Optional[threading.Event]) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancel request for the duration of one operation."""
    if cancel_event is None:
        yield
        return
    cancel_event.clear()

    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        LOG.warning("Received signal %s; stopping after the current step", signum)
        cancel_event.set()

    previous = {signum: signal.signal(signum, _handle_signal) for signum in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)


def prompt_selector(input_fn: InputFn = input, output: OutputFn = print) -> Selector:
    def _select(artifacts: Sequence[BackupArtifact]) -> Optional[BackupArtifact]:
        output("Select a backup to restore:")
        output(render_artifacts(artifacts))
        try:
            answer = input_fn("Enter backup number: ").strip()
        except EOFError:
            return None
        if answer.isdigit() and 1 <= int(answer) <= len(artifacts):
            return artifacts[int(answer) - 1]
        output("Invalid selection")
        return None

    return _select


def print_result(result: OperationResult, output: OutputFn = print) -> None:
    if result.operation is Operation.LIST_BACKUPS:
        output(render_artifacts(result.artifacts))
    if result.plan and result.report is None:
        output("Planned actions (dry run):")
        output(render_plan(result.plan))
    if result.report is not None:
        output(render_report(result.report))
    for error in result.errors:
        output(f"✗ {error.message}")
        if error.hint:
            output(f"  Hint: {error.hint}")
    if result.success:
        LOG.info("%s completed", result.operation.value)
    elif result.exit_code is ExitCode.PARTIAL:
        LOG.warning(
            "%s completed with failed optional steps (exit code %d)", result.operation.value, int(result.exit_code)
        )
    else:
        LOG.error("%s failed with exit code %d", result.operation.value, int(result.exit_code))


def prompt_backend_settings(
    config: RestoreConfig,
    backends: Sequence[BackendKind],
    input_fn: InputFn = input,
) -> None:
    """Ask for backend locations that neither the config file nor the environment provide."""
    try:
        if BackendKind.CLOUD_STORAGE in backends and not config.google_drive.resolved_folder_id():
            config.google_drive.folder_id = input_fn("Google Drive folder ID: ").strip() or None
        if BackendKind.SOURCE_HOSTING in backends and not config.github.resolved_repository():
            config.github.repository = input_fn("GitHub Repository (owner/repo): ").strip() or None
            branch = input_fn(f"GitHub Branch (default: {config.github.branch}): ").strip()
            if branch:
                config.github.branch = branch
    except EOFError:
        return


def _backends_for(operation: Operation, backends: Optional[Sequence[BackendKind]]) -> Sequence[BackendKind]:
    if operation in RESTORE_MODES:
        return (RESTORE_MODES[operation][0],)
    if operation in (Operation.LIST_BACKUPS, Operation.SETUP_CREDENTIALS):
        return tuple(backends) if backends else tuple(BackendKind)
    return ()


def _ask_credential_backends(input_fn: InputFn, output: OutputFn) -> Optional[Tuple[BackendKind, ...]]:
    output("Choose credential type to set up:")
    output("1. Google Drive (for minimal backups)")
    output("2. GitHub (for full backups)")
    output("3. Both")
    try:
        choice = input_fn("Enter choice (1-3): ").strip()
    except EOFError:
        return None
    backends = CREDENTIAL_CHOICES.get(choice)
    if backends is None:
        output("Invalid choice")
    return backends


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


if __name__ == "__main__":
    sys.exit(main())
