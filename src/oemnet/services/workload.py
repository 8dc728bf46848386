"""Load-generation workloads against the OEM chaincode."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

from oemnet.infrastructure.fabric.contracts import OEMFunction, Owner
from oemnet.infrastructure.fabric.errors import ProposalTransportError
from oemnet.infrastructure.fabric.transaction import (
    TransactionResult,
    TransactionService,
    TransactionStatus,
)

logger = logging.getLogger(__name__)


def asset_id_range(prefix: str, start: int, end: int) -> list[str]:
    """Asset ids ``prefix + i`` for ``start <= i < end``.

    Raises:
        ValueError: ``end`` is before ``start``
    """
    if end < start:
        raise ValueError(f"Invalid asset range: {start}..{end}")
    return [f"{prefix}{i}" for i in range(start, end)]


@dataclass
class WorkloadReport:
    """Timing and outcome of one workload run."""

    name: str
    started_at: datetime
    finished_at: datetime | None = None
    results: list[TransactionResult] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.succeeded)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded

    @property
    def all_succeeded(self) -> bool:
        return bool(self.results) and self.failed == 0

    def status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for result in self.results:
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "transactions": len(self.results),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "statuses": self.status_counts(),
            "tx_ids": [result.tx_id for result in self.results],
        }


def _start(name: str) -> WorkloadReport:
    report = WorkloadReport(name=name, started_at=datetime.now(timezone.utc))
    logger.info(f"{name} start time: {report.started_at.isoformat()}")
    return report


def _finish(report: WorkloadReport) -> WorkloadReport:
    report.finished_at = datetime.now(timezone.utc)
    logger.info(
        f"{report.name} end time: {report.finished_at.isoformat()} "
        f"({report.duration_seconds:.3f}s, {report.succeeded}/{len(report.results)} succeeded)"
    )
    return report


async def share_assets_bulk(
    service: TransactionService,
    chaincode_id: str,
    asset_ids: Sequence[str],
    owner: Owner,
    targets: Sequence[str] | None = None,
    wait_for_commit: bool = False,
) -> WorkloadReport:
    """Share every asset in a single ShareAssetsBulk transaction.

    The whole id list travels as one JSON argument, so the run is exactly
    one proposal, one envelope and one broadcast.
    """
    report = _start(OEMFunction.SHARE_ASSETS_BULK.value)
    logger.info(f"Sharing {len(asset_ids)} assets with {owner.firstname} {owner.lastname}")

    await _run_transaction(
        service,
        report,
        chaincode_id,
        OEMFunction.SHARE_ASSETS_BULK.value,
        [json.dumps(list(asset_ids)), owner.model_dump_json()],
        targets,
        wait_for_commit,
    )
    return _finish(report)


async def create_assets(
    service: TransactionService,
    chaincode_id: str,
    asset_ids: Sequence[str],
    owner: Owner,
    text: str,
    targets: Sequence[str] | None = None,
    wait_for_commit: bool = False,
    stop_on_failure: bool = False,
) -> WorkloadReport:
    """Create assets one NewAsset transaction at a time.

    Args:
        service: Transaction service on the target channel
        chaincode_id: Chaincode to invoke
        asset_ids: Ids of the assets to create
        owner: Owner stored on each asset
        text: Asset content
        targets: Endorsing peers (default: all channel endorsers)
        wait_for_commit: Await each commit before the next transaction
        stop_on_failure: Stop at the first unsuccessful transaction

    Returns:
        Report with one result per attempted asset
    """
    report = _start(OEMFunction.NEW_ASSET.value)
    owner_json = owner.model_dump_json()

    for asset_id in asset_ids:
        result = await _run_transaction(
            service,
            report,
            chaincode_id,
            OEMFunction.NEW_ASSET.value,
            [asset_id, owner_json, text],
            targets,
            wait_for_commit,
        )
        if stop_on_failure and not result.succeeded:
            logger.error(f"Stopping after failed NewAsset for {asset_id}")
            break

    return _finish(report)


async def _run_transaction(
    service: TransactionService,
    report: WorkloadReport,
    chaincode_id: str,
    fcn: str,
    args: Sequence[str | bytes],
    targets: Sequence[str] | None,
    wait_for_commit: bool,
) -> TransactionResult:
    """Submit one transaction and record its result in the report."""
    request = service.new_request(chaincode_id, fcn, args, targets=targets)
    try:
        result = await service.submit(request, wait_for_commit=wait_for_commit)
    except ProposalTransportError as e:
        # No proposal was sent
        result = TransactionResult(
            tx_id=request.tx_id.value,
            status=TransactionStatus.ENDORSEMENT_FAILED,
            error=str(e),
        )
    report.results.append(result)
    _log_result(result)
    return result


def _log_result(result: TransactionResult) -> None:
    if result.status == TransactionStatus.ENDORSEMENT_FAILED:
        if not result.responses:
            logger.error(f"Transaction {result.tx_id} not endorsed: {result.error}")
        for response in result.responses:
            if not response.succeeded:
                logger.error(f"Proposal response from {response.peer} failed: {response.error}")
    elif result.succeeded:
        logger.info(f"Transaction {result.tx_id} {result.status.value}")
    else:
        logger.error(f"Transaction {result.tx_id} {result.status.value}: {result.error}")
