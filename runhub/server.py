#!/usr/bin/env python3
"""runhub server – run the test-run hub until SIGINT/SIGTERM.

Usage:
  runhub [--host H] [--port P] [--config runhub.yaml] [--watch] [--verbose]

Environment:
  RUNHUB_CONFIG         Path to YAML config (same as --config)
  RUNHUB_HOST/PORT      Listen address overrides
  RUNHUB_GRACE_PERIOD   Seconds between SIGTERM and SIGKILL on stop
  RUNHUB_MAX_RUNS       Concurrent run limit (0 = unlimited)
  RUNHUB_WORKING_DIR    Directory the test runner is started in
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from aiohttp import web

from .api import HubServer
from .config import HubConfig, load_hub_config
from .errors import HubConfigError

log = logging.getLogger("runhub")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    # access log is noisy with polling clients
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="runhub", description="Run tests in the background and stream results to viewers"
    )
    parser.add_argument("--host", type=str, help="Listen host (default 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Listen port (default 8080)")
    parser.add_argument("--config", type=str, help="YAML config file")
    parser.add_argument("--watch", action="store_true", help="Re-run the last tests on file changes")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


async def serve(config: HubConfig, watch: bool = False) -> None:
    server = HubServer(config, watch=watch)
    runner = web.AppRunner(server.app)
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    await site.start()
    log.info("runhub listening on http://%s:%d (runner: %s)",
             config.host, config.port, " ".join(config.runner_argv))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        log.info("Shutting down")
        await runner.cleanup()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    try:
        config = load_hub_config(args.config, host=args.host, port=args.port)
    except HubConfigError as exc:
        print(f"runhub: {exc}", file=sys.stderr)
        return 1
    asyncio.run(serve(config, watch=args.watch))
    return 0


if __name__ == "__main__":
    sys.exit(main())
