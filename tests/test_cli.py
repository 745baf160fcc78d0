"""
Tests for the kbdctl Command-Line Interface
===========================================

The CLI is run through click's CliRunner with Keyboard.open patched to
return a keyboard backed by the simulated device.
"""

import datetime
from unittest.mock import patch

import click
import pytest
from click.testing import CliRunner

from kbdctl import __version__
from kbdctl.cli.errors import ExitCode, exit_code_for
from kbdctl.cli.kbdctl import main
from kbdctl.clock import decode_clock, encode_clock
from kbdctl.comms.frame import CommandId
from kbdctl.comms.usb import DeviceInfo
from kbdctl.errors import (
    DeviceCloseError,
    DeviceNotFoundError,
    ResponseTimeoutError,
    TransactionAborted,
    TransportError,
)
from kbdctl.keyboard import Keyboard

FRIDAY = datetime.datetime(2024, 3, 15, 10, 20, 30)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def keyboard(device, clock, fast_config) -> Keyboard:
    return Keyboard(device, fast_config, clock=clock)


@pytest.fixture
def open_keyboard(keyboard):
    with patch("kbdctl.cli.kbdctl.Keyboard.open", return_value=keyboard) as mock:
        yield mock


# =============================================================================
# Operations
# =============================================================================

class TestDumpConfig:
    """Tests for --dump-config."""

    def test_prints_hex_and_clock(self, runner, device, open_keyboard):
        device.image[:] = encode_clock(bytes(48), FRIDAY)
        result = runner.invoke(main, ["--dump-config"])

        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines[0] == bytes(device.image).hex(" ")
        assert lines[0].split(" ")[35:42] == [
            "30", "20", "10", "05", "15", "03", "24"
        ]
        assert lines[1] == "clock: 2024-03-15 10:20:30"
        assert lines[-1] == "OK"

    def test_undecodable_clock_still_ok(self, runner, open_keyboard):
        result = runner.invoke(main, ["--dump-config"])
        assert result.exit_code == 0
        assert result.output.splitlines()[0] == " ".join(["00"] * 48)
        assert "clock:" not in result.output
        assert result.output.splitlines()[-1] == "OK"

    def test_dump_wins_over_set_time(self, runner, device, open_keyboard):
        result = runner.invoke(main, ["--dump-config", "--set-time"])
        assert result.exit_code == 0
        assert CommandId.CONFIG_WRITE not in [c for c, _, _ in device.commands]

    def test_device_closed(self, runner, device, open_keyboard):
        runner.invoke(main, ["--dump-config"])
        assert device.closed


class TestSetTime:
    """Tests for --set-time."""

    def test_sets_clock(self, runner, device, open_keyboard):
        before = datetime.datetime.now().replace(microsecond=0)
        result = runner.invoke(main, ["--set-time"])

        assert result.exit_code == 0, result.output
        assert result.output.splitlines()[-1] == "OK"
        written = decode_clock(bytes(device.image))
        assert before <= written <= before + datetime.timedelta(seconds=5)
        assert device.commands[-2][0] == CommandId.CONFIG_WRITE

    def test_trace_file(self, runner, open_keyboard, tmp_path):
        path = tmp_path / "run.trace"
        result = runner.invoke(main, ["--set-time", "--trace", str(path)])
        assert result.exit_code == 0
        text = path.read_text()
        assert "SetTime" in text
        assert "loadConfig" in text
        assert "updateConfig" in text


class TestNoOperation:
    """Without an operation flag the device is only opened and closed."""

    def test_open_close(self, runner, device, open_keyboard):
        result = runner.invoke(main, [])
        assert result.exit_code == 0
        assert result.output == "OK\n"
        assert device.frames == []
        assert device.closed


# =============================================================================
# Options
# =============================================================================

class TestOptions:
    """Tests for device selection and other options."""

    def test_vid_pid(self, runner, open_keyboard):
        result = runner.invoke(main, ["--vid", "1234", "--pid", "0x5678"])
        assert result.exit_code == 0
        config = open_keyboard.call_args[0][0]
        assert config.vendor_id == 0x1234
        assert config.product_id == 0x5678

    def test_env_ids(self, runner, open_keyboard):
        result = runner.invoke(main, [], env={"KBDCTL_PID": "0x4321"})
        assert result.exit_code == 0
        assert open_keyboard.call_args[0][0].product_id == 0x4321

    def test_option_beats_env(self, runner, open_keyboard):
        runner.invoke(main, ["--pid", "aaaa"], env={"KBDCTL_PID": "0x4321"})
        assert open_keyboard.call_args[0][0].product_id == 0xAAAA

    @pytest.mark.parametrize("value", ["xyz", "10000"])
    def test_invalid_vid(self, runner, open_keyboard, value):
        result = runner.invoke(main, ["--vid", value])
        assert result.exit_code == ExitCode.INVALID_ARGS
        open_keyboard.assert_not_called()

    def test_invalid_timeout(self, runner, open_keyboard):
        result = runner.invoke(main, ["--timeout", "0"])
        assert result.exit_code == ExitCode.INVALID_ARGS

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestList:
    """Tests for --list."""

    def test_lists_devices(self, runner):
        info = DeviceInfo(1, 7, 0x320F, 0x5055, "Zuoya", "GMK87")
        with patch("kbdctl.cli.kbdctl.list_devices", return_value=[info]) as mock:
            result = runner.invoke(main, ["--list"])
        assert result.exit_code == 0
        assert result.output == "Bus 001 Device 007: ID 320f:5055 Zuoya GMK87\n"
        mock.assert_called_once_with(0x320F, 0x5055)

    def test_none_found(self, runner):
        with patch("kbdctl.cli.kbdctl.list_devices", return_value=[]):
            result = runner.invoke(main, ["--list", "--vid", "1111"])
        assert result.exit_code == 0
        assert "No devices found with id 1111:5055" in result.output


# =============================================================================
# Errors
# =============================================================================

class TestErrors:
    """Tests for error reporting and exit codes."""

    def test_device_not_found(self, runner):
        with patch("kbdctl.cli.kbdctl.Keyboard.open",
                   side_effect=DeviceNotFoundError(0x320F, 0x5055)):
            result = runner.invoke(main, ["--set-time"])
        assert result.exit_code == ExitCode.DEVICE_ERROR
        assert "Error: device not found: 320f:5055" in result.output
        assert "OK" not in result.output

    def test_transaction_failure(self, runner, device, open_keyboard):
        device.fail_on = (CommandId.END, TransportError("pipe error"))
        result = runner.invoke(main, ["--dump-config"])
        assert result.exit_code == ExitCode.DEVICE_ERROR
        assert "Error: send finalize: pipe error" in result.output
        assert device.closed

    def test_timeout(self, runner, device, open_keyboard):
        device.fail_on = (CommandId.START, ResponseTimeoutError(1, 2.0))
        result = runner.invoke(main, ["--set-time"])
        assert result.exit_code == ExitCode.DEVICE_ERROR
        assert "no response for command 1 within 2s" in result.output

    def test_close_failure_is_not_fatal(self, runner, device, open_keyboard):
        error = DeviceCloseError([("reset device", OSError("gone"))])
        with patch.object(device, "close", side_effect=error):
            result = runner.invoke(main, ["--dump-config"])
        assert result.exit_code == 0
        assert result.output.splitlines()[-1] == "OK"

    def test_internal_error(self, runner):
        with patch("kbdctl.cli.kbdctl.Keyboard.open",
                   side_effect=RuntimeError("unexpected")):
            result = runner.invoke(main, [])
        assert result.exit_code == ExitCode.INTERNAL_ERROR
        assert "Internal error: unexpected" in result.output


class TestExitCodes:
    """Tests for exit_code_for()."""

    def test_mapping(self):
        aborted = TransactionAborted("send start", TransportError("x"))
        assert exit_code_for(aborted) is ExitCode.DEVICE_ERROR
        assert exit_code_for(click.BadParameter("x")) is ExitCode.INVALID_ARGS
        assert exit_code_for(PermissionError("x")) is ExitCode.INVALID_ARGS
        assert exit_code_for(KeyError("x")) is ExitCode.INTERNAL_ERROR
