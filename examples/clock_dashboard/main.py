#!/usr/bin/env python3
"""
Clock Dashboard - exobus Demo Application

Runs two modules as separate processes: a clock that emits `tick` events and
a dashboard that subscribes to them and calls back into the host.

Run modes:
  python main.py                   # Run for 5 seconds
  python main.py --duration 20     # Run longer
  python main.py --grace-period 1  # Shorter stop timeout
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from exobus import InMemoryModuleDirectory, LocalInstaller, ModuleManager, SubprocessLauncher
from exobus.core.logging import set_level

HERE = Path(__file__).parent
ROOT = HERE.parent.parent

CLOCK = f"local:{HERE / 'modules' / 'clock'}"
DASHBOARD = f"local:{HERE / 'modules' / 'dashboard'}"


async def run_demo(duration: float, grace_period: float) -> None:
    manager = ModuleManager(
        InMemoryModuleDirectory(),
        SubprocessLauncher(env={"PYTHONPATH": str(ROOT)}),
        installer=LocalInstaller(),
        stop_grace_period=grace_period,
    )
    manager.expose("modules.running", lambda argument: manager.running())
    manager.on("module:restarted", lambda d, **details: print(f"  restarted {d.name}: {details}"))
    manager.on("module:failed", lambda d, **details: print(f"  gave up on {d.name}: {details}"))

    print("=" * 60)
    print("  Clock Dashboard")
    print("=" * 60)

    clock = await manager.add(CLOCK, version="1.0.0")
    dashboard = await manager.add(DASHBOARD)
    print(f"  running: {manager.running()}")

    try:
        await asyncio.sleep(duration)
        ticks = await manager.call(dashboard.module_id, "ticks", timeout=5)
        now = await manager.call(clock.module_id, "now", timeout=5)
        print(f"  dashboard saw {ticks} ticks, clock says {now:.2f}")
    finally:
        await manager.kill()
    print("  stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="exobus clock dashboard demo")
    parser.add_argument("--duration", type=float, default=5.0, help="Seconds to run")
    parser.add_argument("--grace-period", type=float, default=2.0, help="Stop timeout per module")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show bus logs")
    args = parser.parse_args()

    set_level(logging.INFO if args.verbose else logging.WARNING)
    try:
        asyncio.run(run_demo(args.duration, args.grace_period))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
