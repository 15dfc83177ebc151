# src/layerpatch/cli.py

import argparse
import getpass
import importlib.metadata
import os
import sys
import time
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterator, List, Optional

import platformdirs
from rich.progress import (
    BarColumn,
    Progress,
    TaskProgressColumn,
    TextColumn,
    TimeRemainingColumn,
)

from layerpatch import log_utils
from layerpatch.config import PatcherConfig, load_config, save_config
from layerpatch.constants import (
    APP_NAME,
    CONFIG_FILE_NAME,
    DISABLE_FILE_LOGGING_ENV_VAR,
    EXIT_FAILURE,
    EXIT_OK,
    MSG_NO_ROLLBACK,
)
from layerpatch.exceptions import LayerpatchError
from layerpatch.patch import Component, ComponentState, PatchOrchestrator, VersionStatus
from layerpatch.transport import ProgressCallback, Transport, log_progress

logger = log_utils.logger


def get_version() -> str:
    try:
        return importlib.metadata.version("layerpatch")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def prompt_password(component: Component) -> str:
    """Ask for the archive password of component on the terminal."""
    return getpass.getpass(f"Password for {component.name} archive: ")


@contextmanager
def _rich_progress(description: str) -> Iterator[ProgressCallback]:
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeRemainingColumn(),
        console=log_utils.get_console(),
        transient=True,
    ) as progress:
        task = progress.add_task(description, total=1.0)
        yield lambda fraction: progress.update(task, completed=fraction)


def select_progress_factory():
    """Progress bars on an interactive console, logged milestones otherwise."""
    if log_utils.get_console().is_terminal:
        return _rich_progress
    return log_progress


def _enable_file_logging(level_name: str) -> None:
    if os.environ.get(DISABLE_FILE_LOGGING_ENV_VAR):
        logger.debug(f"File logging disabled by {DISABLE_FILE_LOGGING_ENV_VAR}")
        return
    log_utils.add_file_logging(Path(platformdirs.user_log_dir(APP_NAME)), level_name)


def _report_failure(error: BaseException) -> None:
    if isinstance(error, LayerpatchError):
        logger.error(str(error))
    else:
        logger.error(f"I/O error: {error}")


def _load(args: argparse.Namespace) -> PatcherConfig:
    config = load_config(args.config)
    if config.log_level and not args.log_level:
        log_utils.set_log_level(config.log_level)
    return config


def _destination(args: argparse.Namespace) -> Path:
    if args.dest:
        return Path(args.dest)
    return Path(args.config).resolve().parent


def run_update(args: argparse.Namespace) -> int:
    """
    Bring every configured component up to date and persist the new versions.

    The configuration is only rewritten after the whole run succeeded.
    """
    config = _load(args)
    destination = _destination(args)
    if not config.components:
        logger.warning(f"No components configured in {args.config}")
        return EXIT_OK

    with Transport(timeout=config.request_timeout) as transport:
        orchestrator = PatchOrchestrator(
            transport,
            destination,
            password_prompt=prompt_password,
            progress_factory=select_progress_factory(),
            install_marker=config.install_marker,
        )
        try:
            report = orchestrator.run(config.components)
        except (LayerpatchError, OSError) as e:
            _report_failure(e)
            if any(r.state is ComponentState.APPLIED for r in orchestrator.results):
                logger.warning(MSG_NO_ROLLBACK)
            return EXIT_FAILURE

    if report.changed:
        save_config(args.config, replace(config, components=report.components))
        logger.info(f"Saved updated component records to {args.config}")

    if report.applied:
        logger.info("Update complete")
    else:
        logger.info("Everything is up to date")
    return EXIT_OK


def run_check(args: argparse.Namespace) -> int:
    """
    Report the status of every component without changing anything.

    Returns EXIT_FAILURE when a component can no longer be updated incrementally.
    """
    config = _load(args)
    incompatible: List[str] = []

    with Transport(timeout=config.request_timeout) as transport:
        orchestrator = PatchOrchestrator(transport, _destination(args))
        for component, check in orchestrator.check(config.components):
            if check.status is VersionStatus.FORCED_DUE:
                logger.info(f"{component.name}: untracked, reapplied on every update")
            elif check.status is VersionStatus.UP_TO_DATE:
                logger.info(f"{component.name}: {check.recorded} is up to date")
            elif check.status is VersionStatus.OUTDATED:
                logger.info(
                    f"{component.name}: {check.recorded or '(none)'} -> {check.remote}"
                )
            else:
                logger.warning(
                    f"{component.name}: {check.recorded} -> {check.remote} "
                    "requires a fresh install"
                )
                incompatible.append(component.name)

    return EXIT_FAILURE if incompatible else EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="layerpatch",
        description="layerpatch - keep a base game and its mods up to date from patch archives",
    )
    parser.add_argument(
        "--config",
        "-c",
        default=CONFIG_FILE_NAME,
        help=f"Path to the configuration file (default: ./{CONFIG_FILE_NAME})",
    )
    parser.add_argument(
        "--dest",
        "-d",
        help="Installation directory (default: the configuration file's directory)",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level (overrides the configuration file)",
    )
    parser.add_argument(
        "--log-file",
        action="store_true",
        help="Also write a rotating log file to the user log directory",
    )
    parser.add_argument(
        "--pause",
        type=float,
        default=0,
        metavar="SECONDS",
        help="Wait before exiting so the console window stays readable",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("update", help="Apply pending patches (default)")
    subparsers.add_parser("check", help="Show which components have updates")
    subparsers.add_parser("version", help="Display layerpatch version")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """
    Entry point for the layerpatch command-line interface.

    Runs the `update` command when no command is given. Exits with status 0 on
    success and 1 on any failure, after temporary files were removed.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        log_utils.set_log_level(args.log_level)
    if args.log_file:
        _enable_file_logging(args.log_level or "INFO")

    command = args.command or "update"
    if command == "version":
        print(f"layerpatch {get_version()}")
        sys.exit(EXIT_OK)

    try:
        if command == "check":
            exit_code = run_check(args)
        else:
            exit_code = run_update(args)
    except (LayerpatchError, OSError) as e:
        _report_failure(e)
        exit_code = EXIT_FAILURE
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        exit_code = EXIT_FAILURE
    except Exception:
        logger.exception("Unexpected error")
        exit_code = EXIT_FAILURE

    if args.pause > 0:
        logger.info(f"Closing in {args.pause:g} seconds")
        time.sleep(args.pause)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
