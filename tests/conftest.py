"""Pytest configuration and fixtures."""

import asyncio
import json
from pathlib import Path
from typing import Any, AsyncIterator

import pytest
import yaml
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from oemnet.core.config import Settings
from oemnet.infrastructure.fabric.channel import Channel
from oemnet.infrastructure.fabric.client import FabricClient
from oemnet.infrastructure.fabric.errors import TransportError
from oemnet.infrastructure.fabric.profile import NodeConfig, parse_profile
from oemnet.infrastructure.fabric.transaction import (
    BroadcastResponse,
    Endorsement,
    ProposalResponse,
    SignedProposal,
    TransactionEnvelope,
    TransactionService,
    b64encode,
)
from oemnet.infrastructure.fabric.transport import DeliverRequest, PeerTransport
from oemnet.infrastructure.fabric.wallet import Identity

CHANNEL = "oem-channel"
CHAINCODE = "oemcc"
PEER0 = "peer0.oem.requirements.com"
PEER1 = "peer1.oem.requirements.com"
SIM_PEER = "peer0.simulation.com"
ORDERER = "orderer.oem.com"

CERTIFICATE = "-----BEGIN CERTIFICATE-----\nMIIBtestcertificate\n-----END CERTIFICATE-----\n"


def make_profile_dict() -> dict[str, Any]:
    """Connection profile for a two-organization OEM network."""
    return {
        "name": "oem-network",
        "version": "1.0",
        "channels": {
            CHANNEL: {
                "orderers": [ORDERER],
                "peers": {
                    PEER0: {},
                    PEER1: {},
                    SIM_PEER: {"endorsingPeer": False, "chaincodeQuery": False},
                },
            }
        },
        "organizations": {
            "requirements.oem.com": {"mspid": "RequirementsMSP", "peers": [PEER0, PEER1]},
            "simulation.com": {"mspid": "SimulationMSP", "peers": [SIM_PEER]},
        },
        "orderers": {ORDERER: {"url": "grpcs://orderer.oem.com:7050"}},
        "peers": {
            PEER0: {"url": "grpcs://peer0.oem.requirements.com:7051"},
            PEER1: {"url": "grpcs://peer1.oem.requirements.com:8051"},
            SIM_PEER: {"url": "grpc://peer0.simulation.com:9051"},
        },
    }


def make_block(
    number: int,
    tx_id: str,
    validation_code: str = "VALID",
    events: list[tuple[str, str, bytes]] | None = None,
) -> dict[str, Any]:
    """Raw delivered block with one transaction."""
    return {
        "number": number,
        "transactions": [
            {
                "tx_id": tx_id,
                "validation_code": validation_code,
                "chaincode_events": [
                    {"chaincode_id": cc, "event_name": name, "payload": b64encode(payload)}
                    for cc, name, payload in events or []
                ],
            }
        ],
    }


_CLOSE = object()


class FakeTransport(PeerTransport):
    """In-memory peers, orderer and event sources.

    Broadcast envelopes are committed into a block pushed to every open
    delivery stream unless ``commit_code`` is None.
    """

    def __init__(self):
        self.proposals: list[tuple[str, SignedProposal]] = []
        self.broadcasts: list[TransactionEnvelope] = []
        self.deliver_requests: list[tuple[str, DeliverRequest]] = []
        self.failing_peers: set[str] = set()
        self.unreachable_peers: set[str] = set()
        self.refused_streams: set[str] = set()
        self.rw_sets: dict[str, bytes] = {}
        self.response = b'{"ok":true}'
        self.broadcast_status = "SUCCESS"
        self.commit_code: str | None = "VALID"
        self.commit_events: list[tuple[str, str, bytes]] = []
        self.block_number = 0
        self._streams: list[asyncio.Queue] = []

    async def process_proposal(
        self, peer: str, node: NodeConfig, signed: SignedProposal
    ) -> ProposalResponse:
        self.proposals.append((peer, signed))
        if peer in self.unreachable_peers:
            raise TransportError(f"Connection refused: {peer}")
        if peer in self.failing_peers:
            return ProposalResponse.from_dict(
                peer, {"status": 500, "message": "chaincode error"}
            )
        return ProposalResponse(
            peer=peer,
            status=200,
            payload=self.rw_sets.get(peer, b"rwset"),
            response=self.response,
            endorsement=Endorsement(endorser=peer.encode(), signature=b"sig"),
        )

    async def broadcast(
        self, orderer: str, node: NodeConfig, envelope: TransactionEnvelope
    ) -> BroadcastResponse:
        self.broadcasts.append(envelope)
        if self.broadcast_status == "SUCCESS" and self.commit_code is not None:
            self.block_number += 1
            self.push_block(
                make_block(
                    self.block_number, envelope.tx_id, self.commit_code, self.commit_events
                )
            )
        return BroadcastResponse(status=self.broadcast_status)

    async def deliver(
        self, peer: str, node: NodeConfig, request: DeliverRequest, on_open=None
    ) -> AsyncIterator[dict[str, Any]]:
        self.deliver_requests.append((peer, request))
        if peer in self.refused_streams:
            raise TransportError(f"Connection refused: {peer}")
        queue: asyncio.Queue = asyncio.Queue()
        self._streams.append(queue)
        if on_open is not None:
            on_open()
        try:
            while True:
                item = await queue.get()
                if item is _CLOSE:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self._streams.remove(queue)

    @property
    def open_streams(self) -> int:
        return len(self._streams)

    def push_block(self, raw: dict[str, Any]) -> None:
        for queue in list(self._streams):
            queue.put_nowait(raw)

    def close_streams(self) -> None:
        for queue in list(self._streams):
            queue.put_nowait(_CLOSE)

    def fail_streams(self, error: Exception) -> None:
        for queue in list(self._streams):
            queue.put_nowait(error)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


# =============================================================================
# Identity fixtures
# =============================================================================


@pytest.fixture
def private_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def private_key_pem(private_key) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture
def identity(private_key) -> Identity:
    return Identity(
        name="Admin",
        mspid="RequirementsMSP",
        certificate=CERTIFICATE,
        private_key=private_key,
    )


def _user_json(name: str, signing_identity: str) -> str:
    return json.dumps(
        {
            "name": name,
            "mspid": "RequirementsMSP",
            "roles": None,
            "affiliation": "",
            "enrollment": {
                "signingIdentity": signing_identity,
                "identity": {"certificate": CERTIFICATE},
            },
        }
    )


@pytest.fixture
def credential_store_dirs(tmp_path, private_key_pem) -> tuple[Path, Path]:
    """State store with user ``Admin`` and its key in a separate crypto store."""
    state = tmp_path / "hfc-kvs"
    crypto = tmp_path / "hfc-cvs"
    state.mkdir()
    crypto.mkdir()
    (state / "Admin").write_text(_user_json("Admin", "a1b2c3"))
    (crypto / "a1b2c3-priv").write_bytes(private_key_pem)
    return state, crypto


@pytest.fixture
def wallet_dir(tmp_path, private_key_pem) -> Path:
    """Gateway wallet holding ``Admin@requirements.oem.com``."""
    label = "Admin@requirements.oem.com"
    wallet = tmp_path / "user-wallet"
    (wallet / label).mkdir(parents=True)
    (wallet / label / label).write_text(_user_json(label, "d4e5f6"))
    (wallet / label / "d4e5f6-priv").write_bytes(private_key_pem)
    return wallet


# =============================================================================
# Profile fixtures
# =============================================================================


@pytest.fixture
def profile_dict() -> dict[str, Any]:
    return make_profile_dict()


@pytest.fixture
def profile(profile_dict):
    return parse_profile(profile_dict)


@pytest.fixture
def profile_files(tmp_path, credential_store_dirs) -> tuple[Path, Path]:
    """Connection profile and requirements client profile as YAML files."""
    state, crypto = credential_store_dirs
    connection = tmp_path / "aws-dev-connection.yaml"
    connection.write_text(yaml.safe_dump(make_profile_dict()))

    client = tmp_path / "requirements-client.yaml"
    client.write_text(
        yaml.safe_dump(
            {
                "name": "requirements-client",
                "version": "1.0",
                "client": {
                    "organization": "requirements.oem.com",
                    "credentialStore": {"path": str(state), "cryptoStore": {"path": str(crypto)}},
                    "connection": {"timeout": {"peer": {"endorser": 120}}},
                },
            }
        )
    )
    return connection, client


@pytest.fixture
def settings(tmp_path, profile_files, wallet_dir) -> Settings:
    """Create settings instance for testing."""
    connection, client = profile_files
    return Settings(
        environment="testing",
        connection_profile_path=str(connection),
        client_profile_paths={"requirements.oem.com": str(client)},
        wallet_path=str(wallet_dir),
        listener_checkpoint_path=str(tmp_path / "checkpoint.json"),
        commit_timeout=1.0,
    )


# =============================================================================
# Client fixtures
# =============================================================================


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def client(profile, transport, identity) -> FabricClient:
    fabric_client = FabricClient(profile=profile, transport=transport)
    fabric_client.set_user_context(identity)
    return fabric_client


@pytest.fixture
def channel(client) -> Channel:
    return client.get_channel(CHANNEL)


@pytest.fixture
def service(client, channel) -> TransactionService:
    return TransactionService(client, channel, commit_timeout=1.0)
