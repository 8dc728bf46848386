"""oemnet command line.

Usage:
    oemnet invoke share-bulk                 # ShareAssetsBulk over Req-14504..Req-19503
    oemnet invoke create --start 1 --end 11  # one NewAsset per id
    oemnet listen                            # print OEM chaincode events
    oemnet listen --event assetAccessed      # only one event name
    oemnet gateway evaluate GetAsset REQ-10  # query through the gateway
    oemnet gateway submit NewAsset 130 '{"firstname":"Sam","lastname":"Designer"}' 200
    oemnet config                            # show effective settings

Exit codes: 0 success, 1 setup failure, 2 usage error, 3 transaction failure.
"""

import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine

import click

from oemnet.core.config import Settings, get_settings
from oemnet.core.logging import configure_logging
from oemnet.infrastructure.fabric.client import setup_client
from oemnet.infrastructure.fabric.contracts import Owner, parse_event_payload
from oemnet.infrastructure.fabric.errors import (
    ChannelNotFoundError,
    FabricClientError,
    IdentityNotFoundError,
    ProfileError,
)
from oemnet.infrastructure.fabric.events import ChaincodeEvent
from oemnet.infrastructure.fabric.gateway import CommitStrategy, Gateway, GatewayOptions
from oemnet.infrastructure.fabric.transaction import EndorsementPolicy, TransactionService
from oemnet.infrastructure.fabric.wallet import FileSystemWallet
from oemnet.services import workload
from oemnet.services.event_listener import (
    CheckpointManager,
    EventListener,
    ListenerConfig,
    ListenerState,
)

logger = logging.getLogger(__name__)

EXIT_SETUP_FAILURE = 1
EXIT_TRANSACTION_FAILURE = 3

SETUP_ERRORS = (ProfileError, IdentityNotFoundError, ChannelNotFoundError)

DEFAULT_EVENTS = ("assetAccessed", "newAsset", "assetModified")


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run a command coroutine, mapping failures to exit codes."""
    try:
        return asyncio.run(coro)
    except SETUP_ERRORS as e:
        click.echo(f"Setup failed: {e}", err=True)
        sys.exit(EXIT_SETUP_FAILURE)
    except FabricClientError as e:
        click.echo(f"Transaction failed: {e}", err=True)
        sys.exit(EXIT_TRANSACTION_FAILURE)


def _policy(settings: Settings) -> EndorsementPolicy:
    return EndorsementPolicy(
        min_endorsements=settings.min_endorsements,
        require_all=settings.require_all_endorsements,
    )


@click.group()
@click.option("--org", "org_name", help="Organization of the client profile")
@click.option("--user", "user_name", help="User in the credential store")
@click.option("--channel", "channel_name", help="Channel name")
@click.option("--peer", "peer_name", help="Target peer")
@click.option("--log-level", help="Logging level")
@click.option("--log-format", type=click.Choice(["json", "console"]), help="Log output format")
@click.pass_context
def main(ctx: click.Context, **overrides: str | None) -> None:
    """Client for the OEM requirements network."""
    update = {key: value for key, value in overrides.items() if value is not None}
    settings = get_settings().model_copy(update=update)
    configure_logging(settings.log_level, settings.log_format)
    ctx.obj = settings


# =============================================================================
# invoke
# =============================================================================


@main.group()
def invoke() -> None:
    """Submit OEM chaincode workloads."""


def _owner_options(func):
    func = click.option("--lastname", default="Designer", show_default=True)(func)
    func = click.option("--firstname", default="Sam", show_default=True)(func)
    return func


def _range_options(func):
    func = click.option("--wait", is_flag=True, help="Wait for commit events")(func)
    func = click.option("--end", default=9504, show_default=True, help="End index (exclusive)")(func)
    func = click.option("--start", default=4504, show_default=True, help="Start index")(func)
    func = click.option("--prefix", default="Req-1", show_default=True, help="Asset id prefix")(func)
    return func


async def _run_workload(
    settings: Settings, run: Callable[..., Coroutine[Any, Any, workload.WorkloadReport]], **kwargs: Any
) -> workload.WorkloadReport:
    client = setup_client(settings)
    async with client:
        channel = client.get_channel(settings.channel_name)
        service = TransactionService(
            client, channel, endorsement_policy=_policy(settings), commit_timeout=settings.commit_timeout
        )
        return await run(
            service, settings.chaincode_id, targets=[settings.peer_name], **kwargs
        )


def _report(report: workload.WorkloadReport) -> None:
    click.echo(json.dumps(report.to_dict(), indent=2))
    if not report.all_succeeded:
        sys.exit(EXIT_TRANSACTION_FAILURE)


@invoke.command("share-bulk")
@_range_options
@_owner_options
@click.pass_obj
def share_bulk(
    settings: Settings,
    prefix: str,
    start: int,
    end: int,
    wait: bool,
    firstname: str,
    lastname: str,
) -> None:
    """Share a range of assets in one ShareAssetsBulk transaction."""
    try:
        asset_ids = workload.asset_id_range(prefix, start, end)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    report = _run(
        _run_workload(
            settings,
            workload.share_assets_bulk,
            asset_ids=asset_ids,
            owner=Owner(firstname=firstname, lastname=lastname),
            wait_for_commit=wait,
        )
    )
    _report(report)


@invoke.command("create")
@_range_options
@_owner_options
@click.option("--text", default="200", show_default=True, help="Asset content")
@click.option("--stop-on-failure", is_flag=True, help="Stop at the first failed transaction")
@click.pass_obj
def create(
    settings: Settings,
    prefix: str,
    start: int,
    end: int,
    wait: bool,
    firstname: str,
    lastname: str,
    text: str,
    stop_on_failure: bool,
) -> None:
    """Create a range of assets, one NewAsset transaction each."""
    try:
        asset_ids = workload.asset_id_range(prefix, start, end)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    report = _run(
        _run_workload(
            settings,
            workload.create_assets,
            asset_ids=asset_ids,
            owner=Owner(firstname=firstname, lastname=lastname),
            text=text,
            wait_for_commit=wait,
            stop_on_failure=stop_on_failure,
        )
    )
    _report(report)


# =============================================================================
# listen
# =============================================================================


async def _print_event(event: ChaincodeEvent) -> None:
    payload = parse_event_payload(event)
    record: dict[str, Any] = {
        "event": event.event_name,
        "tx_id": event.tx_id,
        "block": event.block_number,
        "received_at": datetime.now(timezone.utc).isoformat(),
    }
    if payload is not None:
        record["payload"] = payload.model_dump(mode="json")
    else:
        record["payload"] = event.payload.decode(errors="replace")
    click.echo(json.dumps(record))


async def _listen(
    settings: Settings,
    event_names: list[str] | None,
    start_block: int | None,
    checkpoint: bool,
) -> EventListener:
    client = setup_client(settings)
    async with client:
        channel = client.get_channel(settings.channel_name)
        hub = channel.get_channel_event_hub(settings.active_event_peer)
        listener = EventListener(
            hub,
            ListenerConfig(
                chaincode_id=settings.chaincode_id,
                event_names=event_names,
                reconnect_delay=settings.listener_reconnect_delay,
                max_reconnect_attempts=settings.listener_max_reconnect_attempts,
                start_block=start_block,
            ),
            checkpoint_manager=CheckpointManager(
                settings.listener_checkpoint_path if checkpoint else None
            ),
        )
        listener.add_handler(_print_event)
        await listener.start()
        try:
            await listener.wait()
        finally:
            await listener.stop()
        return listener


@main.command()
@click.option(
    "--event",
    "events",
    multiple=True,
    help="Event name to print (repeatable, default: the OEM asset events)",
)
@click.option("--all-events", is_flag=True, help="Print every event of the chaincode")
@click.option("--start-block", type=int, help="First block when there is no checkpoint")
@click.option("--no-checkpoint", is_flag=True, help="Do not read or write the checkpoint file")
@click.pass_obj
def listen(
    settings: Settings,
    events: tuple[str, ...],
    all_events: bool,
    start_block: int | None,
    no_checkpoint: bool,
) -> None:
    """Print chaincode events from the event peer until interrupted."""
    event_names = None if all_events else list(events or DEFAULT_EVENTS)
    click.echo(
        f"Listening on {settings.active_event_peer} ({settings.channel_name}/{settings.chaincode_id})",
        err=True,
    )
    try:
        listener = _run(_listen(settings, event_names, start_block, not no_checkpoint))
    except KeyboardInterrupt:
        click.echo("\nShutting down", err=True)
        return

    if listener.stats.state == ListenerState.ERROR:
        click.echo(f"Listener stopped: {listener.stats.last_error}", err=True)
        sys.exit(EXIT_SETUP_FAILURE)


# =============================================================================
# gateway
# =============================================================================


@main.group("gateway")
def gateway_group() -> None:
    """Call the chaincode through the gateway and wallet."""


async def _gateway_call(settings: Settings, name: str, args: tuple[str, ...], submit: bool) -> bytes:
    gateway = Gateway()
    await gateway.connect(
        settings.connection_profile_path,
        GatewayOptions(
            identity=settings.gateway_identity,
            wallet=FileSystemWallet(settings.wallet_path),
            commit_strategy=CommitStrategy(settings.commit_strategy),
            commit_timeout=settings.commit_timeout,
            endorsement_policy=_policy(settings),
            request_timeout=settings.request_timeout,
        ),
    )
    try:
        contract = gateway.get_network(settings.channel_name).get_contract(settings.chaincode_id)
        transaction = contract.create_transaction(name)
        if submit:
            logger.info(
                f"Submitting {transaction.get_name()} as {transaction.get_transaction_id()}"
            )
            return await transaction.submit(*args)
        return await transaction.evaluate(*args)
    finally:
        await gateway.disconnect()


def _echo_payload(payload: bytes) -> None:
    text = payload.decode(errors="replace")
    try:
        click.echo(json.dumps(json.loads(text), indent=2))
    except ValueError:
        click.echo(text)


@gateway_group.command("evaluate")
@click.argument("function")
@click.argument("args", nargs=-1)
@click.pass_obj
def gateway_evaluate(settings: Settings, function: str, args: tuple[str, ...]) -> None:
    """Evaluate FUNCTION with ARGS (no ordering)."""
    _echo_payload(_run(_gateway_call(settings, function, args, submit=False)))


@gateway_group.command("submit")
@click.argument("function")
@click.argument("args", nargs=-1)
@click.pass_obj
def gateway_submit(settings: Settings, function: str, args: tuple[str, ...]) -> None:
    """Submit FUNCTION with ARGS and wait per the commit strategy."""
    _echo_payload(_run(_gateway_call(settings, function, args, submit=True)))


# =============================================================================
# config
# =============================================================================


@main.command("config")
@click.pass_obj
def show_config(settings: Settings) -> None:
    """Show effective settings."""
    click.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


if __name__ == "__main__":
    main()
