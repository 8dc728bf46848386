"""Two-phase transaction submission.

A transaction is proposed to the target endorsing peers, the endorsements
are checked against an endorsement policy, and the proposal plus endorsed
responses are broadcast to the ordering service as one envelope keyed by
the same transaction id. Optionally the per-transaction commit event is
awaited with a timeout.
"""

import asyncio
import base64
import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from oemnet.infrastructure.fabric.errors import (
    EndorsementMismatchError,
    EndorsementPolicyError,
    EventHubError,
    FabricClientError,
)

if TYPE_CHECKING:
    from oemnet.infrastructure.fabric.channel import Channel
    from oemnet.infrastructure.fabric.client import FabricClient
    from oemnet.infrastructure.fabric.events import EventHub, TxEvent
    from oemnet.infrastructure.fabric.wallet import Identity

logger = logging.getLogger(__name__)

NONCE_SIZE = 24


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str | None) -> bytes:
    return base64.b64decode(data) if data else b""


def canonical_json(obj: Any) -> bytes:
    """Deterministic JSON encoding used for everything that gets signed."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _to_bytes(value: str | bytes) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


# =============================================================================
# Transaction ids
# =============================================================================


@dataclass(frozen=True)
class TransactionID:
    """Transaction id bound to the creator that generated it.

    ``value`` is sha256(nonce + creator), so two ids only collide if the
    random nonce repeats for the same creator.
    """

    nonce: bytes
    creator: bytes
    value: str

    @classmethod
    def generate(cls, identity: "Identity") -> "TransactionID":
        nonce = os.urandom(NONCE_SIZE)
        creator = identity.serialize()
        value = hashlib.sha256(nonce + creator).hexdigest()
        return cls(nonce=nonce, creator=creator, value=value)

    def __str__(self) -> str:
        return self.value


# =============================================================================
# Proposal phase
# =============================================================================


@dataclass(frozen=True)
class TransactionProposalRequest:
    """One chaincode invocation attempt.

    Immutable once constructed; a new request (and transaction id) is
    needed for every attempt.
    """

    targets: tuple[str, ...]
    chaincode_id: str
    fcn: str
    args: tuple[str | bytes, ...]
    channel_id: str
    tx_id: TransactionID
    transient_map: Mapping[str, bytes] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        # Accept lists from callers but store tuples
        object.__setattr__(self, "targets", tuple(self.targets))
        object.__setattr__(self, "args", tuple(self.args))

        if not self.targets:
            raise ValueError("Proposal request requires at least one target peer")
        if not self.chaincode_id:
            raise ValueError("Proposal request requires a chaincode id")
        if not self.fcn:
            raise ValueError("Proposal request requires a function name")
        if not self.channel_id:
            raise ValueError("Proposal request requires a channel id")


@dataclass(frozen=True)
class Proposal:
    """The signed part of a proposal request."""

    tx_id: str
    channel_id: str
    chaincode_id: str
    fcn: str
    args: tuple[bytes, ...]
    creator: bytes
    nonce: bytes
    timestamp: str
    transient_map: Mapping[str, bytes] | None = field(default=None, compare=False)

    @classmethod
    def from_request(
        cls, request: TransactionProposalRequest, timestamp: datetime | None = None
    ) -> "Proposal":
        ts = timestamp or datetime.now(timezone.utc)
        return cls(
            tx_id=request.tx_id.value,
            channel_id=request.channel_id,
            chaincode_id=request.chaincode_id,
            fcn=request.fcn,
            args=tuple(_to_bytes(arg) for arg in request.args),
            creator=request.tx_id.creator,
            nonce=request.tx_id.nonce,
            timestamp=ts.isoformat(),
            transient_map=request.transient_map,
        )

    def to_dict(self) -> dict[str, Any]:
        # Transient data is sent beside the proposal, never signed into it
        return {
            "tx_id": self.tx_id,
            "channel_id": self.channel_id,
            "chaincode_id": self.chaincode_id,
            "fcn": self.fcn,
            "args": [b64encode(arg) for arg in self.args],
            "creator": b64encode(self.creator),
            "nonce": b64encode(self.nonce),
            "timestamp": self.timestamp,
        }

    def to_bytes(self) -> bytes:
        return canonical_json(self.to_dict())


@dataclass(frozen=True)
class SignedProposal:
    proposal: Proposal
    proposal_bytes: bytes
    signature: bytes

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "proposal_bytes": b64encode(self.proposal_bytes),
            "signature": b64encode(self.signature),
        }
        if self.proposal.transient_map:
            body["transient_map"] = {
                key: b64encode(value) for key, value in self.proposal.transient_map.items()
            }
        return body


@dataclass(frozen=True)
class Endorsement:
    endorser: bytes
    signature: bytes


@dataclass
class ProposalResponse:
    """A single peer's answer to a proposal.

    ``payload`` is the proposal-response payload the endorsement signs; it
    carries the simulated read/write set. ``response`` is the chaincode
    return value.
    """

    peer: str
    status: int = 0
    message: str = ""
    payload: bytes = b""
    response: bytes = b""
    endorsement: Endorsement | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return (
            self.error is None
            and 200 <= self.status < 400
            and self.endorsement is not None
        )

    @classmethod
    def failure(cls, peer: str, error: str, status: int = 500) -> "ProposalResponse":
        return cls(peer=peer, status=status, message=error, error=error)

    @classmethod
    def from_dict(cls, peer: str, data: dict[str, Any]) -> "ProposalResponse":
        status = int(data.get("status", 0))
        message = data.get("message") or ""
        endorsement = None
        if data.get("endorsement"):
            endorsement = Endorsement(
                endorser=b64decode(data["endorsement"].get("endorser")),
                signature=b64decode(data["endorsement"].get("signature")),
            )
        error = None
        if status >= 400 or endorsement is None:
            error = message or f"Peer returned status {status} without endorsement"
        return cls(
            peer=peer,
            status=status,
            message=message,
            payload=b64decode(data.get("payload")),
            response=b64decode(data.get("response")),
            endorsement=endorsement,
            error=error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "peer": self.peer,
            "status": self.status,
            "message": self.message,
            "payload": b64encode(self.payload),
            "response": b64encode(self.response),
            "endorsement": (
                {
                    "endorser": b64encode(self.endorsement.endorser),
                    "signature": b64encode(self.endorsement.signature),
                }
                if self.endorsement
                else None
            ),
        }


@dataclass
class ProposalResults:
    """Responses in target order, plus the proposal they answer."""

    responses: list[ProposalResponse]
    proposal: Proposal

    @property
    def successful(self) -> list[ProposalResponse]:
        return [r for r in self.responses if r.succeeded]

    @property
    def failed(self) -> list[ProposalResponse]:
        return [r for r in self.responses if not r.succeeded]

    @property
    def all_succeeded(self) -> bool:
        return bool(self.responses) and not self.failed

    @property
    def none_succeeded(self) -> bool:
        return not self.successful

    def endorsements_agree(self) -> bool:
        """True if every successful response carries the same read/write set."""
        payloads = {r.payload for r in self.successful}
        return len(payloads) <= 1


@dataclass(frozen=True)
class EndorsementPolicy:
    """Client-side gate applied before anything is sent to ordering."""

    min_endorsements: int = 1
    require_all: bool = False

    def __post_init__(self) -> None:
        if self.min_endorsements < 1:
            raise ValueError("min_endorsements must be at least 1")

    def check(self, responses: Sequence[ProposalResponse]) -> list[ProposalResponse]:
        """Validate responses and return the endorsed ones.

        Raises:
            EndorsementPolicyError: Not enough endorsements
            EndorsementMismatchError: Endorsements carry different read/write sets
        """
        endorsed = [r for r in responses if r.succeeded]
        failed = [r for r in responses if not r.succeeded]

        if not endorsed:
            raise EndorsementPolicyError(
                f"No successful endorsements out of {len(responses)} responses"
            )
        if self.require_all and failed:
            peers = ", ".join(r.peer for r in failed)
            raise EndorsementPolicyError(f"Endorsement failed on: {peers}")
        if len(endorsed) < self.min_endorsements:
            raise EndorsementPolicyError(
                f"Got {len(endorsed)} endorsements, policy requires {self.min_endorsements}"
            )
        if len({r.payload for r in endorsed}) > 1:
            raise EndorsementMismatchError(
                "Endorsing peers returned different read/write sets"
            )
        return endorsed


# =============================================================================
# Ordering phase
# =============================================================================


@dataclass
class OrdererRequest:
    tx_id: TransactionID
    proposal: Proposal
    proposal_responses: list[ProposalResponse]
    orderer: str | None = None


@dataclass(frozen=True)
class TransactionEnvelope:
    """Endorsed transaction as broadcast to the ordering service."""

    tx_id: str
    proposal: Proposal
    responses: tuple[ProposalResponse, ...]
    signature: bytes = b""

    def payload_dict(self) -> dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "proposal": self.proposal.to_dict(),
            "responses": [r.to_dict() for r in self.responses],
        }

    def payload_bytes(self) -> bytes:
        return canonical_json(self.payload_dict())

    @classmethod
    def build(
        cls,
        proposal: Proposal,
        responses: Sequence[ProposalResponse],
        identity: "Identity",
    ) -> "TransactionEnvelope":
        unsigned = cls(tx_id=proposal.tx_id, proposal=proposal, responses=tuple(responses))
        return cls(
            tx_id=unsigned.tx_id,
            proposal=proposal,
            responses=unsigned.responses,
            signature=identity.sign(unsigned.payload_bytes()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "payload": b64encode(self.payload_bytes()),
            "signature": b64encode(self.signature),
        }


@dataclass
class BroadcastResponse:
    """Ordering-service acknowledgement; SUCCESS only means queued."""

    status: str
    info: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCESS"


# =============================================================================
# Results
# =============================================================================


class TransactionStatus(str, Enum):
    """Outcome of a transaction attempt."""

    SUBMITTED = "submitted"
    COMMITTED = "committed"
    ENDORSEMENT_FAILED = "endorsement_failed"
    SUBMISSION_FAILED = "submission_failed"
    INVALIDATED = "invalidated"
    TIMEOUT = "timeout"


@dataclass
class TransactionResult:
    """Result of a transaction attempt."""

    tx_id: str
    status: TransactionStatus
    responses: list[ProposalResponse] = field(default_factory=list)
    payload: bytes = b""
    block_number: int | None = None
    validation_code: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (TransactionStatus.SUBMITTED, TransactionStatus.COMMITTED)


# =============================================================================
# Service
# =============================================================================


class TransactionService:
    """Runs the propose -> endorse -> order flow on one channel.

    Nothing is retried. Per-peer endorsement failures are logged and the
    endorsement policy decides whether ordering happens at all.
    """

    def __init__(
        self,
        client: "FabricClient",
        channel: "Channel",
        endorsement_policy: EndorsementPolicy | None = None,
        commit_timeout: float = 300.0,
    ):
        """Initialize transaction service.

        Args:
            client: Client holding the signing identity
            channel: Channel to propose and order on
            endorsement_policy: Policy gating ordering (default: at least one)
            commit_timeout: Default timeout when waiting for commit events
        """
        self.client = client
        self.channel = channel
        self.endorsement_policy = endorsement_policy or EndorsementPolicy()
        self.commit_timeout = commit_timeout
        self._submitted: set[str] = set()

    def new_request(
        self,
        chaincode_id: str,
        fcn: str,
        args: Sequence[str | bytes],
        targets: Sequence[str] | None = None,
        transient_map: Mapping[str, bytes] | None = None,
    ) -> TransactionProposalRequest:
        """Build a proposal request with a fresh transaction id."""
        return TransactionProposalRequest(
            targets=tuple(targets or self.channel.endorsing_peers()),
            chaincode_id=chaincode_id,
            fcn=fcn,
            args=tuple(args),
            channel_id=self.channel.name,
            tx_id=self.client.new_transaction_id(),
            transient_map=transient_map,
        )

    async def invoke(
        self,
        chaincode_id: str,
        fcn: str,
        args: Sequence[str | bytes],
        targets: Sequence[str] | None = None,
        **kwargs: Any,
    ) -> TransactionResult:
        """Build a request and submit it. See ``submit`` for keyword arguments."""
        request = self.new_request(chaincode_id, fcn, args, targets=targets)
        return await self.submit(request, **kwargs)

    async def submit(
        self,
        request: TransactionProposalRequest,
        policy: EndorsementPolicy | None = None,
        wait_for_commit: bool = False,
        commit_timeout: float | None = None,
        event_hubs: Sequence["EventHub"] | None = None,
        wait_for_all: bool = False,
    ) -> TransactionResult:
        """Submit a transaction.

        Args:
            request: Proposal request (its transaction id must be unused)
            policy: Endorsement policy overriding the service default
            wait_for_commit: Await the commit event after ordering
            commit_timeout: Commit wait timeout in seconds
            event_hubs: Event hubs to watch (default: channel event hub of
                        the first target)
            wait_for_all: Require the commit event from every hub instead of
                          the first one

        Returns:
            TransactionResult describing the outcome

        Raises:
            ValueError: Transaction id was already submitted
            ProposalTransportError: No target peer could be addressed
        """
        tx_id = request.tx_id.value
        if tx_id in self._submitted:
            raise ValueError(f"Transaction ID {tx_id} already used")
        self._submitted.add(tx_id)
        policy = policy or self.endorsement_policy

        # 1. Proposal phase
        results = await self.channel.send_transaction_proposal(request)
        for response in results.failed:
            logger.warning(
                f"Endorsement failed on {response.peer} for {request.fcn} "
                f"(tx {tx_id}): {response.error}"
            )

        # 2. Endorsement gate
        try:
            endorsed = policy.check(results.responses)
        except EndorsementPolicyError as e:
            logger.error(f"Transaction {tx_id} not sent to ordering: {e}")
            return TransactionResult(
                tx_id=tx_id,
                status=TransactionStatus.ENDORSEMENT_FAILED,
                responses=results.responses,
                error=str(e),
            )

        # 3. Register commit listeners before anything reaches the orderer
        waiters: list[asyncio.Future] = []
        if wait_for_commit:
            hubs = list(event_hubs or [self.channel.get_channel_event_hub(request.targets[0])])
            for hub in hubs:
                waiters.append(hub.wait_for_transaction(tx_id))
                await hub.connect()

        # 4. Ordering phase
        try:
            ack = await self.channel.send_transaction(
                OrdererRequest(
                    tx_id=request.tx_id,
                    proposal=results.proposal,
                    proposal_responses=results.responses,
                ),
                policy=policy,
            )
        except FabricClientError as e:
            logger.error(f"Transaction {tx_id} submission failed: {e}")
            _cancel_all(waiters)
            return TransactionResult(
                tx_id=tx_id,
                status=TransactionStatus.SUBMISSION_FAILED,
                responses=results.responses,
                error=str(e),
            )

        logger.info(
            f"Transaction {tx_id} ({request.fcn}) queued for ordering: {ack.status}"
        )
        result = TransactionResult(
            tx_id=tx_id,
            status=TransactionStatus.SUBMITTED,
            responses=results.responses,
            payload=endorsed[0].response,
        )
        if not waiters:
            return result

        timeout = commit_timeout if commit_timeout is not None else self.commit_timeout
        return await self._wait_for_commit(result, waiters, timeout, wait_for_all)

    async def _wait_for_commit(
        self,
        result: TransactionResult,
        waiters: list[asyncio.Future],
        timeout: float,
        wait_for_all: bool,
    ) -> TransactionResult:
        """Collect commit events until the strategy is satisfied.

        A waiter that fails is dropped; the commit status is unknown only
        when every waiter has failed.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        pending = set(waiters)
        events: list["TxEvent"] = []
        errors: list[BaseException] = []
        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                for future in done:
                    if future.cancelled():
                        errors.append(EventHubError("Commit wait cancelled"))
                    elif future.exception() is not None:
                        error = future.exception()
                        logger.warning(f"Commit wait for {result.tx_id} failed: {error}")
                        errors.append(error)
                    else:
                        events.append(future.result())
                if events and (not wait_for_all or not all(e.valid for e in events)):
                    break
        finally:
            _cancel_all(waiters)

        invalid = [event for event in events if not event.valid]
        if invalid or (events and not wait_for_all) or (events and not pending and not errors):
            event = invalid[0] if invalid else events[0]
            result.block_number = event.block_number
            result.validation_code = event.status
            if invalid:
                logger.error(f"Transaction {result.tx_id} invalidated: {event.status}")
                result.status = TransactionStatus.INVALIDATED
                result.error = f"Transaction invalidated with code {event.status}"
            else:
                logger.info(f"Transaction {result.tx_id} committed in block {event.block_number}")
                result.status = TransactionStatus.COMMITTED
            return result

        if pending:
            logger.error(f"Transaction {result.tx_id} not committed within {timeout}s")
            result.status = TransactionStatus.TIMEOUT
            result.error = f"Transaction not committed within {timeout}s"
            return result

        # Ordering acknowledged, commit status unknown
        logger.error(f"Commit status of {result.tx_id} unknown: {errors[0]}")
        result.error = f"Commit status unknown: {errors[0]}"
        return result

    async def query(
        self,
        chaincode_id: str,
        fcn: str,
        args: Sequence[str | bytes],
        targets: Sequence[str] | None = None,
        tx_id: TransactionID | None = None,
        transient_map: Mapping[str, bytes] | None = None,
    ) -> bytes:
        """Evaluate a chaincode function without ordering.

        ``tx_id`` defaults to a fresh transaction id.

        Raises:
            TransactionError: No peer returned a successful response
        """
        request = TransactionProposalRequest(
            targets=tuple(targets or self.channel.query_peers()[:1]),
            chaincode_id=chaincode_id,
            fcn=fcn,
            args=tuple(args),
            channel_id=self.channel.name,
            tx_id=tx_id if tx_id is not None else self.client.new_transaction_id(),
            transient_map=transient_map,
        )
        return await self.channel.query_by_chaincode(request)


def _cancel_all(futures: list[asyncio.Future]) -> None:
    for future in futures:
        if not future.done():
            future.cancel()
