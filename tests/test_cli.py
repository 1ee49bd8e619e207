"""Tests for the command line host."""

import pytest

from exobus.cli import build_parser, main, run_host
from exobus.core.supervisor import DEFAULT_MAX_RESTARTS, DEFAULT_STOP_GRACE_PERIOD


def test_run_defaults():
    args = build_parser().parse_args(["run", "local:clock", "github:someone/notes#main"])
    assert args.modules == ["local:clock", "github:someone/notes#main"]
    assert args.grace_period == DEFAULT_STOP_GRACE_PERIOD
    assert args.max_restarts == DEFAULT_MAX_RESTARTS
    assert args.redis_url is None


def test_command_is_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


async def test_invalid_module_id_exits_with_error():
    args = build_parser().parse_args(["run", "not-a-module"])
    assert await run_host(args) == 2


def test_main_rejects_unknown_log_level():
    with pytest.raises(SystemExit):
        main(["run", "--log-level", "LOUD"])
