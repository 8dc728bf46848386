"""Gateway / Network / Contract surface.

Bundles proposal, ordering and the (bounded) commit wait into single calls:

    gateway = Gateway()
    await gateway.connect(profile, GatewayOptions(identity="Admin@org", wallet=wallet))
    network = gateway.get_network("oem-channel")
    contract = network.get_contract("oemcc")
    await contract.evaluate_transaction("GetAsset", "REQ-10")
    await contract.submit_transaction("NewAsset", "130", owner_json, "200")
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping

from oemnet.infrastructure.fabric.channel import Channel
from oemnet.infrastructure.fabric.client import FabricClient
from oemnet.infrastructure.fabric.errors import (
    CommitTimeoutError,
    FabricClientError,
    IdentityNotFoundError,
    TransactionError,
)
from oemnet.infrastructure.fabric.events import ErrorCallback, EventCallback, EventHub
from oemnet.infrastructure.fabric.profile import ConnectionProfile, load_profile
from oemnet.infrastructure.fabric.transaction import (
    EndorsementPolicy,
    TransactionID,
    TransactionProposalRequest,
    TransactionResult,
    TransactionService,
    TransactionStatus,
)
from oemnet.infrastructure.fabric.transport import PeerTransport
from oemnet.infrastructure.fabric.wallet import CredentialStore

logger = logging.getLogger(__name__)


class CommitStrategy(str, Enum):
    """How long submit_transaction waits after ordering."""

    NONE = "none"
    ANY_FOR_TX = "any_for_tx"
    ALL_FOR_TX = "all_for_tx"


@dataclass
class GatewayOptions:
    identity: str
    wallet: CredentialStore
    commit_strategy: CommitStrategy = CommitStrategy.ANY_FOR_TX
    commit_timeout: float = 300.0
    endorsement_policy: EndorsementPolicy | None = None
    transport: PeerTransport | None = None
    request_timeout: float = 30.0


class Gateway:
    """Entry point holding the client context for one identity."""

    def __init__(self) -> None:
        self.client: FabricClient | None = None
        self.options: GatewayOptions | None = None
        self._networks: dict[str, "Network"] = {}

    async def connect(
        self, profile: ConnectionProfile | str | Path, options: GatewayOptions
    ) -> None:
        """Set up the client. No peer or orderer is contacted here.

        Raises:
            IdentityNotFoundError: Identity is not in the wallet
            ProfileError: Profile cannot be loaded
        """
        if not isinstance(profile, ConnectionProfile):
            profile = load_profile(profile)

        identity = options.wallet.get(options.identity)
        if identity is None:
            raise IdentityNotFoundError(options.identity, str(options.wallet.state_store_path))

        client = FabricClient(
            profile=profile,
            transport=options.transport,
            request_timeout=options.request_timeout,
        )
        client.set_user_context(identity)
        self.client = client
        self.options = options
        logger.info(f"Gateway connected as {options.identity}")

    def _require_client(self) -> FabricClient:
        if self.client is None:
            raise FabricClientError("Gateway is not connected")
        return self.client

    def get_network(self, name: str) -> "Network":
        """Get a network (channel) by name.

        Raises:
            ChannelNotFoundError: Channel is not in the profile
        """
        if name not in self._networks:
            channel = self._require_client().get_channel(name)
            self._networks[name] = Network(self, channel)
        return self._networks[name]

    async def disconnect(self) -> None:
        if self.client is not None:
            await self.client.close()
        self._networks.clear()
        self.client = None


class Network:
    def __init__(self, gateway: Gateway, channel: Channel):
        self.gateway = gateway
        self.channel = channel
        self._contracts: dict[str, "Contract"] = {}

    @property
    def name(self) -> str:
        return self.channel.name

    def get_contract(self, chaincode_id: str) -> "Contract":
        if chaincode_id not in self._contracts:
            self._contracts[chaincode_id] = Contract(self, chaincode_id)
        return self._contracts[chaincode_id]

    def event_hubs(self) -> list[EventHub]:
        """Event hubs of the client organization's event-source peers."""
        mspid = self.gateway._require_client().user_context.mspid
        peers = self.channel.event_source_peers(mspid) or self.channel.event_source_peers()
        return [self.channel.get_channel_event_hub(peer) for peer in peers]


class ContractListener:
    """Chaincode event registration made through a contract."""

    def __init__(self, name: str, hub: EventHub, handle: int):
        self.name = name
        self.hub = hub
        self.handle = handle

    def unregister(self) -> bool:
        return self.hub.unregister_chaincode_event(self.handle)


class Contract:
    """A chaincode on a network."""

    def __init__(self, network: Network, chaincode_id: str):
        self.network = network
        self.chaincode_id = chaincode_id
        options = network.gateway.options
        self.service = TransactionService(
            client=network.gateway._require_client(),
            channel=network.channel,
            endorsement_policy=options.endorsement_policy if options else None,
            commit_timeout=options.commit_timeout if options else 300.0,
        )

    def create_transaction(self, name: str) -> "Transaction":
        return Transaction(self, name)

    async def submit_transaction(self, name: str, *args: str | bytes) -> bytes:
        """Endorse, order and (per commit strategy) await commit.

        Returns:
            The chaincode response payload

        Raises:
            TransactionError: Transaction did not succeed
            CommitTimeoutError: Commit event not received in time
        """
        return await self.create_transaction(name).submit(*args)

    async def evaluate_transaction(self, name: str, *args: str | bytes) -> bytes:
        """Query the ledger; the result is never sent to ordering."""
        return await self.create_transaction(name).evaluate(*args)

    async def add_contract_listener(
        self,
        listener_name: str,
        event_name: str,
        on_event: EventCallback,
        on_error: ErrorCallback | None = None,
    ) -> ContractListener:
        """Listen for this contract's events on the first organization event hub."""
        hubs = self.network.event_hubs()
        if not hubs:
            raise FabricClientError(f"No event source peers on {self.network.name}")
        hub = hubs[0]
        handle = hub.register_chaincode_event(self.chaincode_id, event_name, on_event, on_error)
        await hub.connect()
        logger.info(f"Contract listener {listener_name} registered for {event_name}")
        return ContractListener(listener_name, hub, handle)


class Transaction:
    """A single named transaction with a fixed transaction id."""

    def __init__(self, contract: Contract, name: str):
        self.contract = contract
        self.name = name
        self.tx_id: TransactionID = contract.service.client.new_transaction_id()
        self.transient_map: Mapping[str, bytes] | None = None
        self.result: TransactionResult | None = None
        self._submitted = False

    def get_name(self) -> str:
        return self.name

    def get_transaction_id(self) -> TransactionID:
        return self.tx_id

    def set_transient(self, transient_map: Mapping[str, bytes]) -> "Transaction":
        self.transient_map = transient_map
        return self

    async def submit(self, *args: str | bytes) -> bytes:
        """Submit once; a Transaction cannot be re-submitted.

        Raises:
            TransactionError: Already submitted, or the transaction failed
            CommitTimeoutError: Commit event not received in time
        """
        if self._submitted:
            raise TransactionError(f"Transaction {self.tx_id} has already been submitted")

        service = self.contract.service
        options = self.contract.network.gateway.options
        strategy = options.commit_strategy if options else CommitStrategy.NONE

        request = TransactionProposalRequest(
            targets=tuple(self.contract.network.channel.endorsing_peers()),
            chaincode_id=self.contract.chaincode_id,
            fcn=self.name,
            args=args,
            channel_id=self.contract.network.name,
            tx_id=self.tx_id,
            transient_map=self.transient_map,
        )

        wait = strategy != CommitStrategy.NONE
        self._submitted = True
        self.result = await service.submit(
            request,
            wait_for_commit=wait,
            event_hubs=self.contract.network.event_hubs() if wait else None,
            wait_for_all=strategy == CommitStrategy.ALL_FOR_TX,
        )

        result = self.result
        if result.status == TransactionStatus.TIMEOUT:
            raise CommitTimeoutError(
                f"Transaction {result.tx_id} commit timed out: {result.error}", result
            )
        if not result.succeeded or (wait and result.error):
            raise TransactionError(
                f"Transaction {self.name} ({result.tx_id}) failed: {result.status.value}: {result.error}",
                result,
            )
        return result.payload

    async def evaluate(self, *args: str | bytes) -> bytes:
        service = self.contract.service
        return await service.query(
            self.contract.chaincode_id,
            self.name,
            args,
            tx_id=self.tx_id,
            transient_map=self.transient_map,
        )
