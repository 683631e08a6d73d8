"""Argument parsing functionality for depenv."""

import argparse
from typing import List, Optional

from versioning.models import UpgradeLevel

_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
_LEVELS = [level.name.lower() for level in UpgradeLevel]


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--project",
                        dest="PROJECT",
                        help="Environment directory (default: $DEPENV_PROJECT or the current directory)",
                        action="store",
                        type=str)
    parser.add_argument("--depot",
                        dest="DEPOT",
                        help="Depot directory holding installed packages",
                        action="store",
                        type=str)
    parser.add_argument("--devdir",
                        dest="DEVDIR",
                        help="Directory for shared development checkouts",
                        action="store",
                        type=str)
    parser.add_argument("--registry",
                        dest="REGISTRY",
                        help="Registry index (URL or path to a JSON file)",
                        action="store",
                        type=str)
    parser.add_argument("--config",
                        dest="CONFIG",
                        help="Path to YAML config file",
                        action="store",
                        type=str)
    parser.add_argument("--max-workers",
                        dest="MAX_WORKERS",
                        help="Concurrent downloads and builds",
                        action="store",
                        type=int)
    parser.add_argument("--no-wait",
                        dest="NO_WAIT",
                        help="Fail instead of waiting when the environment is locked",
                        action="store_true")
    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str,
                        choices=_LOG_LEVELS,
                        default='INFO')
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)


def _add_mode(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument("-p", "--project-mode",
                       dest="MODE",
                       help="Operate on direct dependencies (default)",
                       action="store_const",
                       const="project")
    group.add_argument("-m", "--manifest",
                       dest="MODE",
                       help="Operate on every package in the manifest",
                       action="store_const",
                       const="manifest")


def _packages(parser: argparse.ArgumentParser, required: bool = True) -> None:
    parser.add_argument("PACKAGES",
                        help="Packages: Name, Name@range, Name=uuid, ./path or url[#rev]",
                        nargs="+" if required else "*")


def build_parser() -> argparse.ArgumentParser:
    """Create the top-level parser with one subcommand per operation."""
    parser = argparse.ArgumentParser(
        prog="depenv",
        description="depenv - project dependency environments",
        add_help=True,
    )
    subparsers = parser.add_subparsers(dest="action", metavar="<command>")
    subparsers.required = True

    add = subparsers.add_parser("add", help="Add packages to the project")
    _packages(add)

    rm = subparsers.add_parser("rm", help="Remove packages")
    _packages(rm)
    _add_mode(rm)

    up = subparsers.add_parser("update", aliases=["up"], help="Upgrade packages")
    _packages(up, required=False)
    _add_mode(up)
    up.add_argument("--level",
                    dest="LEVEL",
                    help="Upgrade ceiling (default: major)",
                    action="store",
                    type=str.lower,
                    choices=_LEVELS,
                    default="major")

    pin = subparsers.add_parser("pin", help="Pin packages at their current or given version")
    _packages(pin)

    free = subparsers.add_parser("free", help="Undo pin, develop or repo tracking")
    _packages(free)

    dev = subparsers.add_parser("develop", aliases=["dev"], help="Track packages from a local checkout")
    _packages(dev)
    dev.add_argument("--local",
                     dest="LOCAL",
                     help="Clone into <project>/dev instead of the shared development directory",
                     action="store_true")

    subparsers.add_parser("instantiate", help="Install everything the manifest records")
    subparsers.add_parser("resolve", help="Re-resolve, picking up path-tracked changes")

    status = subparsers.add_parser("status", aliases=["st"], help="Show resolved packages")
    _add_mode(status)

    build = subparsers.add_parser("build", help="Run build scripts")
    _packages(build, required=False)

    test = subparsers.add_parser("test", help="Run test scripts")
    _packages(test, required=False)
    test.add_argument("--coverage",
                      dest="COVERAGE",
                      help="Ask test scripts to collect coverage",
                      action="store_true")

    gc = subparsers.add_parser("gc", help="Remove unreferenced packages from the depot")
    gc.add_argument("--dry-run",
                    dest="DRY_RUN",
                    help="Only report what would be removed",
                    action="store_true")

    activate = subparsers.add_parser("activate", help="Print the environment a target refers to")
    activate.add_argument("TARGET", nargs="?", help="Path, dependency name or shared environment name")
    activate.add_argument("--shared",
                          dest="SHARED",
                          help="Use a named environment in the depot",
                          action="store_true")

    generate = subparsers.add_parser("generate", help="Create a new package skeleton")
    generate.add_argument("NAME", help="Package name")

    subparsers.add_parser("installed", help="List direct dependencies and their versions")

    # aliases map to the same parser object
    for sub in {id(p): p for p in subparsers.choices.values()}.values():
        _add_common(sub)
    return parser


def parse_args(argv: Optional[List[str]] = None):
    """Parses the arguments passed to the program."""
    ns = build_parser().parse_args(argv)
    aliases = {"up": "update", "dev": "develop", "st": "status"}
    ns.action = aliases.get(ns.action, ns.action)
    return ns
