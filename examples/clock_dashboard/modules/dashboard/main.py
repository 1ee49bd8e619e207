"""Dashboard module: counts ticks from the clock and reports them to the host."""

import sys

from exobus.worker import ModuleClient, run_stdio_module


def setup(client: ModuleClient) -> None:
    seen = {"ticks": 0}

    async def on_tick(event) -> None:
        seen["ticks"] += 1
        if seen["ticks"] % 4 == 0:
            running = await client.call_host("modules.running", timeout=5)
            print(f"[dashboard] {seen['ticks']} ticks, running: {running}", file=sys.stderr)

    client.register(r"clock", r"^tick$", on_tick)
    client.expose("ticks", lambda argument: seen["ticks"])


if __name__ == "__main__":
    run_stdio_module(setup)
