"""Wire transport to peers and orderers."""

import json
import logging
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

import httpx

from oemnet.infrastructure.fabric.errors import BroadcastError, TransportError
from oemnet.infrastructure.fabric.profile import NodeConfig
from oemnet.infrastructure.fabric.transaction import (
    BroadcastResponse,
    ProposalResponse,
    SignedProposal,
    TransactionEnvelope,
    b64encode,
)

logger = logging.getLogger(__name__)

SCHEME_MAP = {"grpc": "http", "grpcs": "https"}


@dataclass(frozen=True)
class DeliverRequest:
    """Signed request to start block delivery from a peer."""

    channel_id: str
    start: int | str = "newest"
    full_block: bool = False
    creator: bytes = b""
    signature: bytes = b""

    def seek_info(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "start": self.start,
            "full_block": self.full_block,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.seek_info(),
            "creator": b64encode(self.creator),
            "signature": b64encode(self.signature),
        }


class PeerTransport(ABC):
    """Abstract transport for the three calls the client makes."""

    @abstractmethod
    async def process_proposal(
        self, peer: str, node: NodeConfig, signed: SignedProposal
    ) -> ProposalResponse:
        """Send a signed proposal to one peer for endorsement."""
        ...

    @abstractmethod
    async def broadcast(
        self, orderer: str, node: NodeConfig, envelope: TransactionEnvelope
    ) -> BroadcastResponse:
        """Send an endorsed envelope to the ordering service."""
        ...

    @abstractmethod
    def deliver(
        self,
        peer: str,
        node: NodeConfig,
        request: DeliverRequest,
        on_open: Callable[[], None] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Stream raw blocks from a peer's event source.

        ``on_open`` is called once the peer has accepted the request, before
        the first block.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""


def http_base_url(url: str) -> str:
    """Map a grpc(s):// endpoint URL onto the node's HTTP(S) bridge."""
    scheme, sep, rest = url.partition("://")
    if not sep:
        return f"http://{url}".rstrip("/")
    return f"{SCHEME_MAP.get(scheme, scheme)}://{rest}".rstrip("/")


class HttpPeerTransport(PeerTransport):
    """JSON-over-HTTP transport.

    Every request carries an explicit timeout; block delivery streams use the
    connect timeout only, since events may be arbitrarily far apart.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize transport.

        Args:
            timeout: Per-request timeout in seconds
            client: Shared HTTP client (one per TLS configuration is created
                    lazily when not given)
        """
        self.timeout = timeout
        self._shared_client = client
        self._clients: dict[str, httpx.AsyncClient] = {}

    def _client_for(self, node: NodeConfig) -> httpx.AsyncClient:
        if self._shared_client is not None:
            return self._shared_client

        ca_pem = node.tls_ca_certs.load() if node.tls_ca_certs else None
        key = ca_pem or ""
        if key not in self._clients:
            verify: ssl.SSLContext | bool = True
            if ca_pem:
                verify = ssl.create_default_context(cadata=ca_pem)
            self._clients[key] = httpx.AsyncClient(timeout=self.timeout, verify=verify)
        return self._clients[key]

    async def _post(self, node: NodeConfig, path: str, body: dict[str, Any]) -> httpx.Response:
        url = f"{http_base_url(node.url)}{path}"
        try:
            return await self._client_for(node).post(url, json=body)
        except httpx.HTTPError as e:
            raise TransportError(f"Request to {url} failed: {e}") from e

    async def process_proposal(
        self, peer: str, node: NodeConfig, signed: SignedProposal
    ) -> ProposalResponse:
        channel_id = signed.proposal.channel_id
        response = await self._post(
            node, f"/v1/channels/{channel_id}/proposals", signed.to_dict()
        )
        try:
            data = response.json()
        except ValueError:
            data = None

        if not isinstance(data, dict):
            raise TransportError(
                f"Peer {peer} returned HTTP {response.status_code} without a proposal response"
            )
        if response.status_code >= 400 and "status" not in data:
            data["status"] = response.status_code
        return ProposalResponse.from_dict(peer, data)

    async def broadcast(
        self, orderer: str, node: NodeConfig, envelope: TransactionEnvelope
    ) -> BroadcastResponse:
        channel_id = envelope.proposal.channel_id
        response = await self._post(
            node, f"/v1/channels/{channel_id}/broadcast", envelope.to_dict()
        )
        try:
            data = response.json()
        except ValueError as e:
            raise BroadcastError(
                f"Orderer {orderer} returned HTTP {response.status_code}: {response.text}"
            ) from e

        if not isinstance(data, dict):
            raise BroadcastError(f"Orderer {orderer} returned an unexpected body: {data!r}")

        return BroadcastResponse(
            status=str(data.get("status", "UNKNOWN")),
            info=str(data.get("info", "")),
        )

    async def deliver(
        self,
        peer: str,
        node: NodeConfig,
        request: DeliverRequest,
        on_open: Callable[[], None] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        base = http_base_url(node.event_url or node.url)
        url = f"{base}/v1/channels/{request.channel_id}/deliver"
        timeout = httpx.Timeout(self.timeout, read=None)
        client = self._client_for(node)

        try:
            async with client.stream(
                "POST", url, json=request.to_dict(), timeout=timeout
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise TransportError(
                        f"Peer {peer} refused delivery (HTTP {response.status_code}): {response.text}"
                    )
                if on_open is not None:
                    on_open()
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        yield json.loads(line)
                    except json.JSONDecodeError as e:
                        raise TransportError(f"Malformed block from {peer}: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Delivery stream from {peer} failed: {e}") from e

    async def close(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
