"""Module used by the subprocess tests: acknowledges `kill` but never exits."""

from exobus.worker import run_stdio_module


def setup(client):
    client.expose("kill", lambda argument: "no")


if __name__ == "__main__":
    run_stdio_module(setup)
