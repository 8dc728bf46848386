"""Channel handle: proposal fan-out, ordering broadcast and event hubs."""

import asyncio
import logging
from typing import TYPE_CHECKING

from oemnet.infrastructure.fabric.errors import (
    BroadcastError,
    FabricClientError,
    ProfileError,
    ProposalTransportError,
    TransactionError,
)
from oemnet.infrastructure.fabric.events import EventHub
from oemnet.infrastructure.fabric.profile import ChannelConfig, ConnectionProfile, NodeConfig
from oemnet.infrastructure.fabric.transaction import (
    BroadcastResponse,
    EndorsementPolicy,
    OrdererRequest,
    Proposal,
    ProposalResponse,
    ProposalResults,
    SignedProposal,
    TransactionEnvelope,
    TransactionProposalRequest,
)

if TYPE_CHECKING:
    from oemnet.infrastructure.fabric.client import FabricClient

logger = logging.getLogger(__name__)


class Channel:
    """A channel as described by the connection profile.

    Holds no mutable state besides the cache of event hubs; signing identity
    and transport come from the owning client.
    """

    def __init__(self, name: str, client: "FabricClient"):
        self.name = name
        self.client = client
        self._event_hubs: dict[str, EventHub] = {}

    @property
    def profile(self) -> ConnectionProfile:
        return self.client.profile

    @property
    def config(self) -> ChannelConfig:
        return self.profile.channels[self.name]

    # -- topology -------------------------------------------------------------

    def get_channel_peers(self) -> list[str]:
        return list(self.config.peers)

    def get_channel_peer(self, name: str) -> str:
        """Validate that a peer belongs to this channel.

        Raises:
            ProfileError: Peer is not on the channel
        """
        if name not in self.config.peers:
            raise ProfileError(f"Peer {name} is not a member of channel {self.name}")
        return name

    def endorsing_peers(self) -> list[str]:
        return [name for name, opts in self.config.peers.items() if opts.endorsing_peer]

    def query_peers(self) -> list[str]:
        return [name for name, opts in self.config.peers.items() if opts.chaincode_query]

    def event_source_peers(self, mspid: str | None = None) -> list[str]:
        """Peers acting as event source, optionally limited to one organization."""
        peers = [name for name, opts in self.config.peers.items() if opts.event_source]
        if mspid is None:
            return peers
        return [
            name
            for name in peers
            if (org := self.profile.organization_for_peer(name)) is not None
            and org.mspid == mspid
        ]

    def get_orderers(self) -> list[str]:
        return list(self.config.orderers)

    def _resolve_targets(self, targets: tuple[str, ...]) -> list[tuple[str, NodeConfig]]:
        resolved = []
        unknown = []
        for name in targets:
            if name in self.config.peers and name in self.profile.peers:
                resolved.append((name, self.profile.peers[name]))
            else:
                unknown.append(name)
        if unknown:
            raise ProposalTransportError(
                f"Target peers not on channel {self.name}: {', '.join(unknown)}"
            )
        return resolved

    # -- proposal phase -------------------------------------------------------

    def sign_proposal(self, request: TransactionProposalRequest) -> SignedProposal:
        proposal = Proposal.from_request(request)
        proposal_bytes = proposal.to_bytes()
        signature = self.client.user_context.sign(proposal_bytes)
        return SignedProposal(
            proposal=proposal, proposal_bytes=proposal_bytes, signature=signature
        )

    async def send_transaction_proposal(
        self, request: TransactionProposalRequest
    ) -> ProposalResults:
        """Send a proposal to every target and collect responses.

        Returns:
            One response per target, in target order. A peer that errors
            or cannot be reached yields a failed response in its slot.

        Raises:
            ProposalTransportError: A target is not addressable on this channel
        """
        if request.channel_id != self.name:
            raise ProposalTransportError(
                f"Request for channel {request.channel_id} sent to channel {self.name}"
            )

        targets = self._resolve_targets(request.targets)
        signed = self.sign_proposal(request)
        transport = self.client.transport

        logger.debug(
            f"Sending proposal {request.fcn} (tx {request.tx_id}) to "
            f"{len(targets)} peer(s): {[name for name, _ in targets]}"
        )
        outcomes = await asyncio.gather(
            *(transport.process_proposal(name, node, signed) for name, node in targets),
            return_exceptions=True,
        )

        responses: list[ProposalResponse] = []
        for (name, _), outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning(f"Proposal to {name} failed: {outcome}")
                responses.append(ProposalResponse.failure(name, str(outcome)))
            else:
                responses.append(outcome)

        return ProposalResults(responses=responses, proposal=signed.proposal)

    async def query_by_chaincode(self, request: TransactionProposalRequest) -> bytes:
        """Run only the proposal phase and return the chaincode response.

        Raises:
            TransactionError: No peer returned a successful response
        """
        results = await self.send_transaction_proposal(request)
        for response in results.responses:
            if response.succeeded:
                return response.response

        errors = "; ".join(f"{r.peer}: {r.error}" for r in results.failed)
        raise TransactionError(f"Query {request.fcn} failed: {errors}")

    # -- ordering phase -------------------------------------------------------

    async def send_transaction(
        self,
        request: OrdererRequest,
        policy: EndorsementPolicy | None = None,
    ) -> BroadcastResponse:
        """Broadcast an endorsed transaction to the ordering service.

        Only endorsed responses are packaged. The acknowledgement confirms
        queuing for block inclusion, not commit.

        Raises:
            ValueError: Request transaction id does not match the proposal
            EndorsementPolicyError: Responses do not satisfy ``policy``
            BroadcastError: Ordering service rejected the envelope
        """
        if request.tx_id.value != request.proposal.tx_id:
            raise ValueError(
                f"Transaction ID {request.tx_id} does not match proposal {request.proposal.tx_id}"
            )

        endorsed = (policy or EndorsementPolicy()).check(request.proposal_responses)
        envelope = TransactionEnvelope.build(
            request.proposal, endorsed, self.client.user_context
        )

        orderers = self.get_orderers()
        orderer = request.orderer or (orderers[0] if orderers else None)
        if orderer is None:
            raise BroadcastError(f"No orderer defined for channel {self.name}")
        node = self.profile.get_orderer(orderer)

        try:
            ack = await self.client.transport.broadcast(orderer, node, envelope)
        except FabricClientError:
            raise
        except Exception as e:
            raise BroadcastError(f"Broadcast to {orderer} failed: {e}") from e

        if not ack.succeeded:
            raise BroadcastError(
                f"Orderer {orderer} rejected transaction {envelope.tx_id}: {ack.status} {ack.info}".rstrip()
            )
        return ack

    # -- events ---------------------------------------------------------------

    def new_channel_event_hub(self, peer_name: str) -> EventHub:
        """Create an event hub for a channel peer (not cached)."""
        self.get_channel_peer(peer_name)
        return EventHub(
            channel_name=self.name,
            peer_name=peer_name,
            node=self.profile.get_peer(peer_name),
            transport=self.client.transport,
            identity=self.client.user_context,
            connect_timeout=self.client.request_timeout,
        )

    def get_channel_event_hub(self, peer_name: str) -> EventHub:
        """Get the shared event hub for a channel peer."""
        if peer_name not in self._event_hubs:
            self._event_hubs[peer_name] = self.new_channel_event_hub(peer_name)
        return self._event_hubs[peer_name]

    async def close(self) -> None:
        for hub in self._event_hubs.values():
            await hub.disconnect()
        self._event_hubs.clear()
