"""Clock module: emits a `tick` event every interval and answers `now`."""

import asyncio
import time

from exobus.worker import ModuleClient, run_stdio_module

INTERVAL = 0.5


async def setup(client: ModuleClient) -> None:
    ticks = 0

    async def tick_forever() -> None:
        nonlocal ticks
        while True:
            await asyncio.sleep(INTERVAL)
            ticks += 1
            client.emit("tick", {"count": ticks, "time": time.time()})

    task = asyncio.create_task(tick_forever())
    client.expose("now", lambda argument: time.time())
    def kill(argument) -> None:
        task.cancel()
        client.close()

    client.expose("kill", kill)


if __name__ == "__main__":
    run_stdio_module(setup)
