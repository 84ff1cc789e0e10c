"""Entry point for `python -m dropstage` / `dropstage`.

Subcommands:
    dropstage stage <name> [-b BUILDPACK]... [-p DIR] [-d DIR [-r]] [-s APP] [-f APP] [-e]
    dropstage download <path> [-o FILE]
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from dropstage.commands import DownloadCommand, StageCommand, StageOptions
from dropstage.config import get_settings
from dropstage.engine import EngineClient
from dropstage.errors import StagingError
from dropstage.fs import LocalFS
from dropstage.local_config import LocalConfigLoader, LocalServiceResolver
from dropstage.logger import logger, set_level
from dropstage.stager import Stager


def _green(text: str) -> str:
    return f"\033[32m{text}\033[0m"


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dropstage",
        description="Stage apps into Cloud Foundry droplets with a local container engine",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    stage = sub.add_parser("stage", help="Build a droplet from app source")
    stage.add_argument("name", help="App name (droplet is written to ./<name>.droplet)")
    stage.add_argument(
        "-b",
        dest="buildpacks",
        action="append",
        default=[],
        help="Buildpack zip to use; repeat for multi-buildpack apps",
    )
    stage.add_argument("-p", dest="app", default=".", help="App source directory")
    stage.add_argument(
        "-d", dest="app_dir", default="", help="Mount this directory as the app root"
    )
    stage.add_argument(
        "-r",
        dest="rsync",
        action="store_true",
        help="Sync the mounted app dir in and out (needs -d)",
    )
    stage.add_argument(
        "-s",
        dest="service_app",
        default="",
        help="Bind the services of this app (from local.yml)",
    )
    stage.add_argument(
        "-f",
        dest="forward_app",
        default="",
        help="App whose services are forwarded; used for binding when -s is not given",
    )
    stage.add_argument(
        "-e", dest="force_detect", action="store_true", help="Run detection even with one buildpack"
    )

    download = sub.add_parser("download", help="Copy a file out of the staging image")
    download.add_argument("path", help="Absolute path inside the image")
    download.add_argument("-o", dest="output", default="", help="Local file (default: basename)")
    return parser


async def _run(args: argparse.Namespace) -> str:
    s = get_settings()
    exit_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, exit_event.set)

    fs = LocalFS()
    async with EngineClient.from_config(s.engine) as engine:
        stager = Stager(engine, s.stager, logs=sys.stdout, exit_event=exit_event)
        match args.command:
            case "stage":
                loader = LocalConfigLoader()
                command = StageCommand(
                    stager,
                    fs,
                    loader,
                    service_resolver=LocalServiceResolver(loader),
                    color=_green if sys.stdout.isatty() else None,
                )
                await command.run(
                    StageOptions(
                        name=args.name,
                        buildpacks=args.buildpacks,
                        app=args.app,
                        app_dir=args.app_dir,
                        service_app=args.service_app,
                        forward_app=args.forward_app,
                        force_detect=args.force_detect,
                        rsync=args.rsync,
                    )
                )
                return f"Successfully staged: {args.name}"
            case "download":
                output = args.output or args.path.rstrip("/").rsplit("/", 1)[-1]
                await DownloadCommand(stager, fs).run(args.path, output)
                return f"Successfully downloaded: {args.path}"
    raise AssertionError(f"unhandled command {args.command}")


def main() -> None:
    args = _parser().parse_args()
    if args.command == "stage" and args.rsync and not args.app_dir:
        print("Error: -r requires -d", file=sys.stderr)
        sys.exit(2)
    set_level(get_settings().logging.level)
    try:
        message = asyncio.run(_run(args))
    except (StagingError, OSError, ValueError) as exc:
        logger.debug("Command failed", command=args.command, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    print(message)


if __name__ == "__main__":
    main()
