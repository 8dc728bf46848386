"""Tests for the JSON-over-HTTP peer transport."""

import json

import httpx
import pytest

from oemnet.infrastructure.fabric.errors import BroadcastError, TransportError
from oemnet.infrastructure.fabric.profile import NodeConfig
from oemnet.infrastructure.fabric.transaction import (
    Proposal,
    SignedProposal,
    TransactionEnvelope,
    TransactionProposalRequest,
    b64decode,
    b64encode,
)
from oemnet.infrastructure.fabric.transport import (
    DeliverRequest,
    HttpPeerTransport,
    http_base_url,
)

from conftest import CHAINCODE, CHANNEL, PEER0, make_block

NODE = NodeConfig(url="grpcs://peer0.oem.requirements.com:7051")


def make_transport(handler) -> HttpPeerTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpPeerTransport(timeout=5.0, client=client)


@pytest.fixture
def signed(client, identity) -> SignedProposal:
    request = TransactionProposalRequest(
        targets=(PEER0,),
        chaincode_id=CHAINCODE,
        fcn="GetAsset",
        args=("REQ-10",),
        channel_id=CHANNEL,
        tx_id=client.new_transaction_id(),
    )
    proposal = Proposal.from_request(request)
    data = proposal.to_bytes()
    return SignedProposal(proposal=proposal, proposal_bytes=data, signature=identity.sign(data))


class TestHttpBaseUrl:
    """Tests for endpoint URL mapping."""

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("grpcs://peer0:7051", "https://peer0:7051"),
            ("grpc://peer0:7051/", "http://peer0:7051"),
            ("https://peer0:7051", "https://peer0:7051"),
            ("peer0:7051", "http://peer0:7051"),
        ],
    )
    def test_mapping(self, url, expected):
        assert http_base_url(url) == expected


class TestProcessProposal:
    """Tests for proposal requests."""

    @pytest.mark.asyncio
    async def test_endorsed_response(self, signed):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "status": 200,
                    "payload": b64encode(b"rwset"),
                    "response": b64encode(b'{"id":"REQ-10"}'),
                    "endorsement": {"endorser": b64encode(b"peer0"), "signature": b64encode(b"s")},
                },
            )

        transport = make_transport(handler)
        response = await transport.process_proposal(PEER0, NODE, signed)

        assert seen["url"] == f"https://peer0.oem.requirements.com:7051/v1/channels/{CHANNEL}/proposals"
        assert b64decode(seen["body"]["proposal_bytes"]) == signed.proposal_bytes
        assert response.succeeded
        assert response.response == b'{"id":"REQ-10"}'

    @pytest.mark.asyncio
    async def test_error_status(self, signed):
        transport = make_transport(
            lambda request: httpx.Response(500, json={"message": "chaincode panic"})
        )

        response = await transport.process_proposal(PEER0, NODE, signed)

        assert response.succeeded is False
        assert response.status == 500
        assert response.error == "chaincode panic"

    @pytest.mark.asyncio
    async def test_non_json_body(self, signed):
        transport = make_transport(lambda request: httpx.Response(502, text="bad gateway"))

        with pytest.raises(TransportError, match="HTTP 502"):
            await transport.process_proposal(PEER0, NODE, signed)

    @pytest.mark.asyncio
    async def test_connection_error(self, signed):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        transport = make_transport(handler)

        with pytest.raises(TransportError, match="connection refused"):
            await transport.process_proposal(PEER0, NODE, signed)


class TestBroadcast:
    """Tests for ordering broadcast."""

    @pytest.mark.asyncio
    async def test_ack(self, signed, identity):
        envelope = TransactionEnvelope.build(signed.proposal, [], identity)
        transport = make_transport(
            lambda request: httpx.Response(200, json={"status": "SUCCESS"})
        )

        ack = await transport.broadcast("orderer.oem.com", NODE, envelope)

        assert ack.succeeded

    @pytest.mark.asyncio
    async def test_unparseable_ack(self, signed, identity):
        envelope = TransactionEnvelope.build(signed.proposal, [], identity)
        transport = make_transport(lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(BroadcastError, match="HTTP 503"):
            await transport.broadcast("orderer.oem.com", NODE, envelope)


class TestDeliver:
    """Tests for block delivery streams."""

    @pytest.mark.asyncio
    async def test_stream_blocks(self):
        lines = "\n".join(json.dumps(make_block(n, f"tx{n}")) for n in (5, 6)) + "\n\n"
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, text=lines)

        transport = make_transport(handler)
        node = NodeConfig(url="grpcs://peer0:7051", eventUrl="grpcs://peer0:7053")

        blocks = [
            raw
            async for raw in transport.deliver(
                PEER0, node, DeliverRequest(channel_id=CHANNEL, start=5)
            )
        ]

        assert [b["number"] for b in blocks] == [5, 6]
        assert seen["url"] == f"https://peer0:7053/v1/channels/{CHANNEL}/deliver"
        assert seen["body"]["start"] == 5

    @pytest.mark.asyncio
    async def test_on_open_called_before_first_block(self):
        lines = json.dumps(make_block(1, "tx1")) + "\n"
        transport = make_transport(lambda request: httpx.Response(200, text=lines))
        calls = []

        async for raw in transport.deliver(
            PEER0, NODE, DeliverRequest(channel_id=CHANNEL), on_open=lambda: calls.append("open")
        ):
            calls.append(raw["number"])

        assert calls == ["open", 1]

    @pytest.mark.asyncio
    async def test_refused(self):
        transport = make_transport(lambda request: httpx.Response(403, text="forbidden"))
        opened = []

        with pytest.raises(TransportError, match="refused delivery"):
            async for _ in transport.deliver(
                PEER0, NODE, DeliverRequest(channel_id=CHANNEL), on_open=lambda: opened.append(1)
            ):
                pass

        assert opened == []

    @pytest.mark.asyncio
    async def test_malformed_line(self):
        transport = make_transport(lambda request: httpx.Response(200, text="not-json\n"))

        with pytest.raises(TransportError, match="Malformed block"):
            async for _ in transport.deliver(PEER0, NODE, DeliverRequest(channel_id=CHANNEL)):
                pass
