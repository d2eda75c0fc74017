"""
Unit tests for the `agentrelay` launcher: relay options on the command line
become AGENTRELAY_* settings for the server process.
"""
import pytest

from agentrelay.cli import build_parser, export_relay_options


def test_relay_options_are_exported():
    args = build_parser().parse_args([
        "--transport", "bus",
        "--presence", "redis",
        "--no-ledger",
        "--name-policy", "strict",
        "--bus-url", "redis://bus:6379/1",
    ])
    environ = {}

    export_relay_options(args, environ)

    assert environ == {
        "AGENTRELAY_TRANSPORT": "bus",
        "AGENTRELAY_PRESENCE": "redis",
        "AGENTRELAY_LEDGER": "0",
        "AGENTRELAY_NAME_POLICY": "strict",
        "AGENTRELAY_BUS_URL": "redis://bus:6379/1",
    }


def test_unset_options_leave_environment_alone():
    environ = {"AGENTRELAY_TRANSPORT": "bus"}
    export_relay_options(build_parser().parse_args(["--port", "40000", "--ledger"]), environ)
    assert environ == {"AGENTRELAY_TRANSPORT": "bus", "AGENTRELAY_LEDGER": "1"}


def test_unknown_transport_rejected():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--transport", "carrier-pigeon"])
