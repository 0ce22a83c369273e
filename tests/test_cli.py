"""Tests for the command line interface"""

import logging
import socket

import pytest
from rich.logging import RichHandler
from click.testing import CliRunner

from netlens import __version__
from netlens.cli import main
from netlens.config import set_settings
from netlens.errors import ResolutionError
from netlens.probe import tcp as tcp_module


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def listening_port():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(8)
    yield server.getsockname()[1]
    server.close()


def test_version(runner):
    result = runner.invoke(main, ['--version'])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_invalid_ports_are_usage_errors(runner):
    result = runner.invoke(main, ['scan', '127.0.0.1', '22,abc'])
    assert result.exit_code == 2
    assert "Invalid port: 'abc'" in result.output


def test_invalid_record_type(runner):
    result = runner.invoke(main, ['dns', 'example.com', '-t', 'BOGUS'])
    assert result.exit_code == 2


def test_invalid_url(runner):
    result = runner.invoke(main, ['http', 'example.com'])
    assert result.exit_code == 2
    assert "full URL" in result.output


def test_invalid_hops(runner):
    result = runner.invoke(main, ['trace', 'example.com', '-m', '200'])
    assert result.exit_code == 2


def test_scan_loopback(runner, listening_port):
    result = runner.invoke(main, ['scan', '127.0.0.1', str(listening_port), '-w', '2000'])

    assert result.exit_code == 0, result.output
    assert "Starting TCP port scan for 127.0.0.1..." in result.output
    assert "Open" in result.output
    assert "Scan complete." in result.output


def test_scan_unresolvable_exits_nonzero(runner, monkeypatch):
    def fail(host, prefer_ipv4=True):
        raise ResolutionError(host)

    monkeypatch.setattr(tcp_module, "resolve_host", fail)
    result = runner.invoke(main, ['scan', 'nowhere.invalid', '80'])

    assert result.exit_code == 1
    assert "Stopping scan." in result.output


def console_level():
    logger = logging.getLogger("netlens")
    (handler,) = [h for h in logger.handlers if isinstance(h, RichHandler)]
    return handler.level


def test_log_level_from_environment(runner, monkeypatch):
    set_settings(None)
    monkeypatch.delenv("NETLENS_LOG_FILE", raising=False)
    monkeypatch.setenv("NETLENS_LOG_LEVEL", "ERROR")
    runner.invoke(main, ['scan', '127.0.0.1', 'abc'])

    assert console_level() == logging.ERROR
    assert logging.getLogger("netlens").level == logging.ERROR


def test_debug_flag_overrides_log_level(runner, monkeypatch):
    set_settings(None)
    monkeypatch.setenv("NETLENS_LOG_LEVEL", "ERROR")
    runner.invoke(main, ['--debug', 'scan', '127.0.0.1', 'abc'])

    assert console_level() == logging.DEBUG


def test_unknown_log_level_falls_back_to_warning(runner, monkeypatch):
    set_settings(None)
    monkeypatch.setenv("NETLENS_LOG_LEVEL", "chatty")
    runner.invoke(main, ['scan', '127.0.0.1', 'abc'])

    assert console_level() == logging.WARNING
