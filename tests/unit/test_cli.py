"""Tests for the command line."""

import json
from functools import partial
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from oemnet import cli
from oemnet.infrastructure.fabric.client import setup_client
from oemnet.infrastructure.fabric.errors import TransportError
from oemnet.infrastructure.fabric.events import ChaincodeEvent
from oemnet.infrastructure.fabric.gateway import GatewayOptions

from conftest import CHAINCODE, CHANNEL, PEER0, FakeTransport


class RefusingTransport(FakeTransport):
    """Event source that refuses every delivery stream."""

    async def deliver(self, peer, node, request, on_open=None):
        self.deliver_requests.append((peer, request))
        raise TransportError(f"Connection refused: {peer}")
        yield


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke_cli(runner, settings, transport):
    """Run the CLI against the test settings and in-memory transport."""

    def _invoke(*args, settings_override=None, transport_override=None):
        active_transport = transport_override or transport
        with patch.object(cli, "get_settings", return_value=settings_override or settings), \
                patch.object(cli, "configure_logging"), \
                patch.object(cli, "setup_client", partial(setup_client, transport=active_transport)), \
                patch.object(cli, "GatewayOptions", partial(GatewayOptions, transport=active_transport)):
            return runner.invoke(cli.main, list(args))

    return _invoke


class TestConfigCommand:
    """Tests for `oemnet config`."""

    def test_shows_settings(self, invoke_cli):
        result = invoke_cli("config")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["channel_name"] == CHANNEL
        assert data["chaincode_id"] == CHAINCODE

    def test_global_overrides(self, invoke_cli):
        result = invoke_cli("--peer", "peer1.oem.requirements.com", "--user", "User1", "config")

        data = json.loads(result.output)
        assert data["peer_name"] == "peer1.oem.requirements.com"
        assert data["user_name"] == "User1"

    def test_bad_option_is_usage_error(self, invoke_cli):
        result = invoke_cli("--log-format", "xml", "config")

        assert result.exit_code == 2


class TestInvokeCommands:
    """Tests for `oemnet invoke`."""

    def test_share_bulk(self, invoke_cli, transport):
        result = invoke_cli("invoke", "share-bulk", "--start", "1", "--end", "4")

        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report["name"] == "ShareAssetsBulk"
        assert report["transactions"] == 1
        assert len(transport.broadcasts) == 1
        assert {peer for peer, _ in transport.proposals} == {PEER0}
        assert json.loads(transport.broadcasts[0].proposal.args[0]) == ["Req-11", "Req-12", "Req-13"]

    def test_create(self, invoke_cli, transport):
        result = invoke_cli("invoke", "create", "--start", "1", "--end", "3", "--text", "300")

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["succeeded"] == 2
        assert [e.proposal.args[2] for e in transport.broadcasts] == [b"300", b"300"]

    def test_endorsement_failure_exit_code(self, invoke_cli, transport):
        transport.failing_peers = {PEER0}

        result = invoke_cli("invoke", "share-bulk", "--start", "1", "--end", "2")

        assert result.exit_code == 3
        assert transport.broadcasts == []

    def test_reversed_range_is_usage_error(self, invoke_cli, transport):
        result = invoke_cli("invoke", "create", "--start", "5", "--end", "1")

        assert result.exit_code == 2
        assert transport.proposals == []

    def test_unknown_org_is_setup_failure(self, invoke_cli):
        result = invoke_cli("--org", "unknown.example.com", "invoke", "create", "--end", "4505")

        assert result.exit_code == 1
        assert "Setup failed" in result.output

    def test_missing_user_is_setup_failure(self, invoke_cli):
        result = invoke_cli("--user", "User1", "invoke", "create", "--end", "4505")

        assert result.exit_code == 1

    def test_unknown_channel_is_setup_failure(self, invoke_cli):
        result = invoke_cli("--channel", "missing-channel", "invoke", "create", "--end", "4505")

        assert result.exit_code == 1


class TestGatewayCommands:
    """Tests for `oemnet gateway`."""

    def test_evaluate(self, invoke_cli, transport):
        transport.response = b'{"id":"REQ-10","contentid":"200"}'

        result = invoke_cli("gateway", "evaluate", "GetAsset", "REQ-10")

        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"id": "REQ-10", "contentid": "200"}
        assert transport.broadcasts == []

    def test_submit(self, invoke_cli, transport):
        transport.response = b"plain text"

        result = invoke_cli("gateway", "submit", "UpdateValue", "REQ-10", "300")

        assert result.exit_code == 0, result.output
        assert result.output.strip() == "plain text"
        assert len(transport.broadcasts) == 1

    def test_submit_failure_exit_code(self, invoke_cli, transport):
        transport.failing_peers = {PEER0, "peer1.oem.requirements.com"}

        result = invoke_cli("gateway", "submit", "UpdateValue", "REQ-10", "300")

        assert result.exit_code == 3
        assert "Transaction failed" in result.output


class TestListenCommand:
    """Tests for `oemnet listen`."""

    def test_stops_after_reconnects_exhausted(self, invoke_cli, settings):
        refusing = RefusingTransport()
        limited = settings.model_copy(update={"listener_max_reconnect_attempts": 0})

        result = invoke_cli(
            "listen", "--no-checkpoint", settings_override=limited, transport_override=refusing
        )

        assert result.exit_code == 1
        assert "Listener stopped" in result.output
        assert len(refusing.deliver_requests) == 1

    @pytest.mark.asyncio
    async def test_print_event(self, capsys):
        event = ChaincodeEvent(
            chaincode_id=CHAINCODE,
            event_name="assetAccessed",
            payload=b'{"assetid":"Req-14504","sharetime":"t1","readtime":"t2"}',
            tx_id="tx1",
            block_number=9,
        )

        await cli._print_event(event)

        record = json.loads(capsys.readouterr().out)
        assert record["event"] == "assetAccessed"
        assert record["block"] == 9
        assert record["payload"]["asset_id"] == "Req-14504"

    @pytest.mark.asyncio
    async def test_print_unknown_event(self, capsys):
        event = ChaincodeEvent(
            chaincode_id=CHAINCODE,
            event_name="custom",
            payload=b"raw",
            tx_id="tx1",
            block_number=1,
        )

        await cli._print_event(event)

        assert json.loads(capsys.readouterr().out)["payload"] == "raw"
