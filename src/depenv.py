"""depenv - project dependency environments.

Thin command line front end: parses arguments, turns package tokens into
PackageSpec values and hands them to the Orchestrator.

    Returns:
        int: Exit code
"""
import logging
import os
import sys
from pathlib import Path
from typing import List

from args import parse_args
from cli_config import Settings
from common.logging_utils import configure_logging, extra_context, is_debug_enabled
from constants import Constants, ExitCodes
from errors import (
    BuildError,
    ConstraintConflictError,
    EnvironmentLockedError,
    MaterializationError,
    RegistryUnavailableError,
    SpecResolutionError,
)
from operations.context import Context
from operations.materialize import DepotFetcher
from operations.orchestrator import Orchestrator
from operations.results import CommandResult
from registry.index import IndexCatalog
from versioning.models import PackageMode, PackageSpec, UpgradeLevel
from versioning.parser import parse_package_tokens

logger = logging.getLogger(__name__)


def exit_code_for(result: CommandResult) -> ExitCodes:
    """Map a command result to the process exit code."""
    if result.ok:
        return ExitCodes.SUCCESS
    kinds = [type(e) for e in result.errors]
    if EnvironmentLockedError in kinds:
        return ExitCodes.LOCKED
    if any(issubclass(k, (ConstraintConflictError, SpecResolutionError)) for k in kinds):
        return ExitCodes.RESOLUTION_ERROR
    if any(issubclass(k, (RegistryUnavailableError, MaterializationError)) for k in kinds):
        return ExitCodes.CONNECTION_ERROR
    if any(issubclass(k, BuildError) for k in kinds):
        return ExitCodes.BUILD_ERROR
    return ExitCodes.FILE_ERROR


def _specs(args, mode: PackageMode = PackageMode.PROJECT, level: UpgradeLevel = UpgradeLevel.MAJOR) -> List[PackageSpec]:
    return parse_package_tokens(getattr(args, "PACKAGES", None) or [], mode=mode, level=level)


def build_orchestrator(args, settings: Settings, context: Context) -> Orchestrator:
    """Wire catalog, fetcher and environment directory from settings."""
    env_dir = getattr(args, "PROJECT", None) or os.environ.get(Constants.ENV_PROJECT) or os.getcwd()
    index = settings.registry_index or str(settings.depot / Constants.REGISTRY_INDEX_FILE)
    return Orchestrator(
        env_dir=Path(env_dir),
        catalog=IndexCatalog(index),
        fetcher=DepotFetcher(settings.depot),
        settings=settings,
        context=context,
    )


def run_action(args, orchestrator: Orchestrator) -> CommandResult:
    """Dispatch the parsed subcommand."""
    # pylint: disable=too-many-return-statements
    mode = PackageMode(getattr(args, "MODE", None) or "project")
    action = args.action
    if action == "add":
        return orchestrator.add(_specs(args))
    if action == "rm":
        return orchestrator.rm(_specs(args, mode), mode=mode)
    if action == "update":
        level = UpgradeLevel.from_name(args.LEVEL)
        return orchestrator.update(_specs(args, mode, level) or None, level=level, mode=mode)
    if action == "pin":
        return orchestrator.pin(_specs(args))
    if action == "free":
        return orchestrator.free(_specs(args))
    if action == "develop":
        return orchestrator.develop(_specs(args), shared=not args.LOCAL)
    if action == "instantiate":
        return orchestrator.instantiate()
    if action == "resolve":
        return orchestrator.resolve()
    if action == "status":
        return orchestrator.status(mode)
    if action == "build":
        return orchestrator.build(_specs(args) or None)
    if action == "test":
        return orchestrator.test(_specs(args) or None, coverage=args.COVERAGE)
    if action == "gc":
        return orchestrator.gc(dry_run=args.DRY_RUN)
    if action == "activate":
        return orchestrator.activate(args.TARGET, shared=args.SHARED)
    if action == "generate":
        return orchestrator.generate(args.NAME)
    if action == "installed":
        return orchestrator.installed()
    raise ValueError(f"Unknown command {action}")


def print_result(result: CommandResult) -> None:
    """Write the human readable outcome to stdout."""
    if result.command == "status":
        for line in result.report:
            print(line.render())
    elif result.command == "installed":
        for name, version in sorted(result.data.get("installed", {}).items()):
            print(f"{name} {version or '(not resolved)'}")
    elif "path" in result.data:
        print(result.data["path"])
    elif result.command == "gc":
        for path in result.data.get("removed", []):
            print(f"Removed {path}")
    for line in result.summary():
        print(line)


def main():
    """Main function of the program."""
    args = parse_args()
    # Honor CLI --loglevel by passing it to centralized logger via env
    if getattr(args, "LOG_LEVEL", None):
        os.environ[Constants.ENV_LOG_LEVEL] = str(args.LOG_LEVEL).upper()
    configure_logging(log_file=getattr(args, "LOG_FILE", None))

    try:
        settings = Settings.from_args(args)
    except ValueError as exc:
        logger.error("Configuration error: %s", exc)
        sys.exit(ExitCodes.FILE_ERROR.value)
    Constants.REQUEST_TIMEOUT = settings.http_timeout

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.action),
        )

    context = Context()
    orchestrator = build_orchestrator(args, settings, context)
    try:
        result = run_action(args, orchestrator)
    except ValueError as exc:
        logger.error("%s", exc)
        sys.exit(ExitCodes.FILE_ERROR.value)
    except KeyboardInterrupt:
        context.cancel()
        logger.info("Interrupted by user")
        sys.exit(130)

    print_result(result)
    sys.exit(exit_code_for(result).value)


if __name__ == "__main__":
    main()
