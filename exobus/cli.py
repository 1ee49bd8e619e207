"""Command line host: run modules on the bus until interrupted.

Usage:
    exobus run local:./modules/clock github:someone/notes#main
    python -m exobus run local:./my_module.py --grace-period 2 --log-level DEBUG
"""

import argparse
import asyncio
import logging
import signal
import sys

from exobus.channels.subprocess import SubprocessLauncher
from exobus.core.logging import configure_bus_logger, set_level
from exobus.core.manager import ModuleManager
from exobus.core.supervisor import DEFAULT_MAX_RESTARTS, DEFAULT_STOP_GRACE_PERIOD
from exobus.directory.base import InvalidModuleIdError, ModuleDescriptor, parse_module_id
from exobus.directory.local import LocalInstaller
from exobus.directory.memory import InMemoryModuleDirectory
from exobus.directory.redis import RedisModuleDirectory


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="exobus", description="exobus module host")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start modules and serve the bus until interrupted")
    run.add_argument("modules", nargs="*", help="Module ids (local:<path> or github:<owner>/<name>[#branch])")
    run.add_argument("--modules-path", default="modules", help="Root of installed repository modules")
    run.add_argument("--redis-url", help="Keep the module directory in Redis instead of memory")
    run.add_argument("--grace-period", type=float, default=DEFAULT_STOP_GRACE_PERIOD,
                     help="Seconds a module gets to exit after `kill`")
    run.add_argument("--max-restarts", type=int, default=DEFAULT_MAX_RESTARTS,
                     help="Automatic restarts before a module is given up")
    run.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


async def run_host(args: argparse.Namespace) -> int:
    log = configure_bus_logger("exobus")
    descriptors: list[ModuleDescriptor] = []
    for module_id in args.modules:
        try:
            descriptors.append(parse_module_id(module_id))
        except InvalidModuleIdError as e:
            log.error(str(e))
            return 2

    if args.redis_url:
        directory = RedisModuleDirectory(args.redis_url)
        for descriptor in descriptors:
            await directory.add(descriptor)
    else:
        directory = InMemoryModuleDirectory(descriptors)

    manager = ModuleManager(
        directory,
        SubprocessLauncher(modules_path=args.modules_path),
        installer=LocalInstaller(args.modules_path),
        max_restarts=args.max_restarts,
        stop_grace_period=args.grace_period,
    )
    manager.expose("modules.running", lambda argument: manager.running())
    manager.on(
        "init:failed",
        lambda descriptor, error: log.error(
            f"Not started: {descriptor.module_id}", extra={"module_id": descriptor.module_id}
        ),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    started = await manager.init()
    log.info(f"{len(started)} module(s) running, Ctrl-C to stop")
    try:
        await stop.wait()
    finally:
        await manager.kill()
        if isinstance(directory, RedisModuleDirectory):
            await directory.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    set_level(getattr(logging, args.log_level))
    if args.command == "run":
        try:
            return asyncio.run(run_host(args))
        except KeyboardInterrupt:
            return 130
    return 1


if __name__ == "__main__":
    sys.exit(main())
