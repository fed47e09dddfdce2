"""Command line entry point.

Subcommands: menu (default), list, run, hold and serve.
"""

import argparse
import sys
from typing import List, Optional

import structlog

from .demos import DEMOS, run_demo, stop_all_workers
from .detector import detector
from .errors import UnknownDemoError
from .log import configure_logging
from .menu import hold, run_menu
from .settings import settings

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="leaklab",
        description="Demonstrations of unintended memory retention, and a bounded cache that avoids it",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging with the console renderer")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("menu", help="Interactive menu (default)")
    sub.add_parser("list", help="List available demonstrations")

    run = sub.add_parser("run", help="Run one demonstration by name")
    run.add_argument("name", help="Demonstration name, see `leaklab list`")

    sub.add_parser("hold", help='Keep the process alive until a line reads "exit"')

    serve = sub.add_parser("serve", help="Serve the HTTP API with uvicorn")
    serve.add_argument("--host", default=settings.host)
    serve.add_argument("--port", type=int, default=settings.port)
    return parser


def cmd_list() -> int:
    for demo in DEMOS.values():
        option = demo.option or "-"
        print(f"{option:>2}  {demo.name:<18} {demo.title}")
    return 0


def cmd_run(name: str) -> int:
    try:
        run_demo(name)
    except UnknownDemoError as e:
        print(f"Error: {e}", file=sys.stderr)
        print(f"Available: {', '.join(DEMOS)}", file=sys.stderr)
        return 2
    print(detector.format_stats())
    return 0


def cmd_serve(host: str, port: int) -> int:
    import uvicorn

    uvicorn.run("leaklab.main:app", host=host, port=port, log_level=settings.log_level.lower())
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        configure_logging("DEBUG", "console")
    else:
        configure_logging(settings.log_level, settings.log_format)

    command = args.command or "menu"
    try:
        if command == "list":
            return cmd_list()
        if command == "run":
            return cmd_run(args.name)
        if command == "hold":
            return hold()
        if command == "serve":
            return cmd_serve(args.host, args.port)
        return run_menu()
    except KeyboardInterrupt:
        return 130
    finally:
        stopped = stop_all_workers()
        if stopped:
            logger.info("stopped_leftover_workers", count=stopped)


if __name__ == "__main__":
    sys.exit(main())
