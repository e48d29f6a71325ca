"""
sbtoolkit Command-Line Interface

Operator commands for draining, inspecting and re-injecting Service Bus
messages. Every command is a thin wrapper over ``sbtoolkit.servicebus``.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

import sys
import json
import asyncio
import logging
from contextlib import aclosing
from dataclasses import asdict
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import click
from pydantic import ValidationError

from sbtoolkit import __version__
from sbtoolkit.core.config_manager import ConfigManager, EmulatorConfig, ToolkitConfig
from sbtoolkit.core.logging_config import setup_logging
from sbtoolkit.servicebus.azure_client import AzureServiceBusBroker
from sbtoolkit.servicebus.client import BrokerClient
from sbtoolkit.servicebus.constants import DEFAULT_CLEAR_BATCH_SIZE, DEFAULT_CLEAR_WAIT
from sbtoolkit.servicebus.dispatcher import dispatch_messages
from sbtoolkit.servicebus.exceptions import ServiceBusError
from sbtoolkit.servicebus.logging_utils import CorrelationContext
from sbtoolkit.servicebus.memory_broker import InMemoryBroker
from sbtoolkit.servicebus.message_builder import build_messages, messages_from_records
from sbtoolkit.servicebus.models import (
    EntityRef,
    ReceiveMode,
    SendTarget,
    SessionOrderingState,
    SettlementAction,
)
from sbtoolkit.servicebus.operations import clear_entity, receive_deferred, replay_dead_letters
from sbtoolkit.servicebus.plan import ReceivePlan
from sbtoolkit.servicebus.resolver import EntityAccessResolver
from sbtoolkit.servicebus.session_context import SessionContext
from sbtoolkit.servicebus.session_state import new_ordering_state

logger = logging.getLogger("sbtoolkit.cli")

SETTLE_CHOICES = [action.value for action in SettlementAction]


async def build_emulator(topology: EmulatorConfig) -> InMemoryBroker:
    """Create an in-memory broker holding the configured queues and topics."""
    broker = InMemoryBroker()
    for queue in topology.queues:
        await broker.create_queue(
            queue.name,
            requires_session=queue.requires_session,
            lock_duration=queue.lock_duration_seconds,
        )
    for topic in topology.topics:
        await broker.create_topic(topic.name)
        for subscription in topic.subscriptions:
            await broker.create_subscription(
                topic.name,
                subscription.name,
                requires_session=subscription.requires_session,
                lock_duration=subscription.lock_duration_seconds,
            )
    return broker


async def _open_broker(obj: Dict[str, Any]) -> BrokerClient:
    settings: ToolkitConfig = obj["settings"]
    if obj.get("emulator"):
        return await build_emulator(settings.emulator)

    connection_string = settings.connection.connection_string
    if not connection_string:
        raise click.UsageError(
            "No connection string: pass --connection-string, set "
            "SBTOOLKIT_CONNECTION_STRING or use --emulator"
        )
    return AzureServiceBusBroker.from_connection_string(connection_string)


def _run(ctx: click.Context, operation: Callable[[BrokerClient], Awaitable[Any]]) -> Any:
    """
    Run ``operation`` against the configured broker.

    A broker placed in ``ctx.obj["broker"]`` is used as is and left open.
    Toolkit errors end the command with a JSON error object on stderr and
    exit status 1.
    """
    obj = ctx.obj

    async def runner():
        CorrelationContext.get_correlation_id()
        injected = obj.get("broker")
        broker = injected if injected is not None else await _open_broker(obj)
        try:
            return await operation(broker)
        finally:
            if injected is None:
                await broker.close()

    try:
        return asyncio.run(runner())
    except ServiceBusError as e:
        logger.debug(f"Command failed: {e.error_code}")
        click.echo(json.dumps(e.to_dict()), err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("Interrupted", err=True)
        sys.exit(130)


def _echo_json(value: Any) -> None:
    click.echo(json.dumps(value, default=str))


def entity_options(func):
    """Attach --queue / --topic / --subscription / --dead-letter to a command."""
    func = click.option("--dead-letter", is_flag=True, help="Use the dead-letter sub-queue")(func)
    func = click.option("--subscription", "-s", help="Subscription name (with --topic)")(func)
    func = click.option("--topic", "-t", help="Topic name (with --subscription)")(func)
    func = click.option("--queue", "-q", help="Queue name")(func)
    return func


def _entity(queue: Optional[str], topic: Optional[str], subscription: Optional[str], dead_letter: bool) -> EntityRef:
    try:
        return EntityRef(queue=queue, topic=topic, subscription=subscription, dead_letter=dead_letter)
    except ValidationError as e:
        raise click.UsageError(e.errors()[0]["msg"])


def _target(queue: Optional[str], topic: Optional[str]) -> SendTarget:
    try:
        return SendTarget(queue=queue, topic=topic)
    except ValidationError as e:
        raise click.UsageError(e.errors()[0]["msg"])


def _parse_properties(pairs: Tuple[str, ...]) -> Dict[str, str]:
    properties: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got '{pair}'", param_hint="--property")
        properties[key] = value
    return properties


def _parse_deferred(entries: Tuple[str, ...]) -> List[Tuple[int, int]]:
    pairs: List[Tuple[int, int]] = []
    for entry in entries:
        order, sep, seq = entry.partition(":")
        try:
            pairs.append((int(order), int(seq)))
        except ValueError:
            raise click.BadParameter(f"expected ORDER:SEQ, got '{entry}'", param_hint="--deferred")
    return pairs


def _read_records(path: Path) -> List[Any]:
    records = []
    with open(path, "r", encoding="utf-8") as f:
        for number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except ValueError as e:
                raise click.BadParameter(f"line {number}: {e}", param_hint="--input")
    return records


@click.group()
@click.version_option(version=__version__, prog_name="sbtoolkit")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file (YAML or JSON)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level (overrides config and SBTOOLKIT_LOG_LEVEL)",
)
@click.option("--connection-string", help="Service Bus connection string")
@click.option("--emulator", is_flag=True, help="Run against the in-memory broker")
@click.pass_context
def cli(ctx, config: Optional[Path], log_level: Optional[str], connection_string: Optional[str], emulator: bool):
    """
    sbtoolkit - Azure Service Bus operator toolkit

    Drain, inspect and re-inject messages on queues and subscriptions,
    including session-enabled ones.
    """
    ctx.ensure_object(dict)

    overrides: Dict[str, Any] = {}
    if log_level:
        overrides["logging"] = {"level": log_level.upper()}
    if connection_string:
        overrides["connection"] = {"connection_string": connection_string}

    try:
        settings = ConfigManager().load(
            config_file=str(config) if config else None,
            cli_overrides=overrides,
        )
    except (ValidationError, ValueError) as e:
        raise click.UsageError(f"Invalid configuration: {e}")

    # Setup logging
    setup_logging(
        level=settings.logging.level,
        format_type=settings.logging.format,
        log_file=settings.logging.file,
        rotation_size=settings.logging.rotation_size,
        rotation_count=settings.logging.rotation_count,
        module_levels=settings.logging.module_levels,
    )

    ctx.obj["settings"] = settings
    ctx.obj["emulator"] = emulator


@cli.command()
@entity_options
@click.option("--max-messages", "-n", type=click.IntRange(min=0), help="Stop after this many messages")
@click.option("--wait-seconds", "-w", type=click.FloatRange(min=0), help="Stop after this many seconds")
@click.option("--batch-size", type=click.IntRange(1, 1000), help="Messages fetched per round trip")
@click.option("--peek", is_flag=True, help="Browse without locking or settling")
@click.option("--no-complete", is_flag=True, help="Leave received messages unsettled")
@click.option(
    "--settle",
    type=click.Choice(SETTLE_CHOICES, case_sensitive=False),
    default=SettlementAction.COMPLETE.value,
    show_default=True,
    help="Settlement applied to each received message",
)
@click.option("--dead-letter-reason", help="Reason recorded with --settle dead-letter")
@click.option("--session-id", help="Drain only this session")
@click.pass_context
def receive(
    ctx,
    queue: Optional[str],
    topic: Optional[str],
    subscription: Optional[str],
    dead_letter: bool,
    max_messages: Optional[int],
    wait_seconds: Optional[float],
    batch_size: Optional[int],
    peek: bool,
    no_complete: bool,
    settle: str,
    dead_letter_reason: Optional[str],
    session_id: Optional[str],
):
    """
    Receive or peek messages, writing one JSON object per line.

    Session-enabled entities are drained session by session.

    Examples:
        sbtoolkit receive --queue orders --max-messages 10
        sbtoolkit receive --topic events -s audit --dead-letter --peek
        sbtoolkit receive --queue orders --session-id order-42 --no-complete
    """
    entity = _entity(queue, topic, subscription, dead_letter)
    settings: ToolkitConfig = ctx.obj["settings"]

    overrides: Dict[str, Any] = {
        "settle_action": None if no_complete else SettlementAction(settle.lower()),
        "dead_letter_reason": dead_letter_reason,
    }
    if batch_size is not None:
        overrides["batch_size"] = batch_size
    options = settings.receive.to_options(**overrides)
    plan = ReceivePlan(max_messages=max_messages, wait_seconds=wait_seconds)
    mode = ReceiveMode.PEEK if peek else ReceiveMode.RECEIVE

    async def operation(broker: BrokerClient) -> None:
        resolver = EntityAccessResolver(broker, options)
        async with aclosing(resolver.receive(entity, plan, mode, session_id=session_id)) as messages:
            async for message in messages:
                _echo_json(message.to_dict())
        logger.debug(f"Receive finished: {resolver.outcome}")

    _run(ctx, operation)


@cli.command()
@click.option("--queue", "-q", help="Destination queue")
@click.option("--topic", "-t", help="Destination topic")
@click.option("--body", "-b", "bodies", multiple=True, help="Message body (repeatable)")
@click.option("--session-id", help="Session id for every --body message")
@click.option("--property", "-p", "properties", multiple=True, help="Application property key=value (repeatable)")
@click.option(
    "--input",
    "-i",
    "input_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON lines of {sessionId, body, customProperties}",
)
@click.option("--per-session-auto", is_flag=True, help="One concurrent sender per session")
@click.option("--per-session-workers", type=click.IntRange(min=0), help="Concurrent senders within each session")
@click.option("--max-batch-size", type=click.IntRange(min=1), help="Maximum messages per batch")
@click.pass_context
def send(
    ctx,
    queue: Optional[str],
    topic: Optional[str],
    bodies: Tuple[str, ...],
    session_id: Optional[str],
    properties: Tuple[str, ...],
    input_file: Optional[Path],
    per_session_auto: bool,
    per_session_workers: Optional[int],
    max_batch_size: Optional[int],
):
    """
    Send messages to a queue or topic.

    Examples:
        sbtoolkit send --queue orders --body '{"id": 1}' --session-id order-1
        sbtoolkit send --topic events --input messages.jsonl --per-session-auto
    """
    target = _target(queue, topic)
    settings: ToolkitConfig = ctx.obj["settings"]

    if bool(bodies) == bool(input_file):
        raise click.UsageError("Provide either --body or --input (exactly one)")

    if per_session_workers is not None:
        workers = per_session_workers
    elif per_session_auto:
        # the configured worker default only applies when no strategy was chosen
        workers = 0
    else:
        workers = settings.send.per_session_workers
    batch_limit = max_batch_size if max_batch_size is not None else settings.send.max_batch_size

    async def operation(broker: BrokerClient) -> Dict[str, Any]:
        if input_file:
            messages = messages_from_records(
                _read_records(input_file),
                require_session_id=per_session_auto or workers > 0,
            )
        else:
            messages = build_messages(
                list(bodies),
                session_id=session_id,
                properties=_parse_properties(properties),
            )
        report = await dispatch_messages(
            broker,
            target,
            messages,
            per_session_auto=per_session_auto,
            per_session_workers=workers,
            max_batch_size=batch_limit,
        )
        return asdict(report)

    _echo_json(_run(ctx, operation))


@cli.command()
@entity_options
@click.option(
    "--sequence-number",
    "-n",
    "sequence_numbers",
    type=int,
    multiple=True,
    required=True,
    help="Sequence number of a deferred message (repeatable)",
)
@click.option("--session-id", help="Session holding the deferred messages")
@click.option(
    "--settle",
    type=click.Choice(SETTLE_CHOICES, case_sensitive=False),
    help="Settle each fetched message (default: leave it locked)",
)
@click.pass_context
def deferred(
    ctx,
    queue: Optional[str],
    topic: Optional[str],
    subscription: Optional[str],
    dead_letter: bool,
    sequence_numbers: Tuple[int, ...],
    session_id: Optional[str],
    settle: Optional[str],
):
    """Fetch deferred messages by sequence number."""
    entity = _entity(queue, topic, subscription, dead_letter)
    settings: ToolkitConfig = ctx.obj["settings"]
    action = SettlementAction(settle.lower()) if settle else None

    async def operation(broker: BrokerClient) -> None:
        messages = await receive_deferred(
            broker,
            entity,
            list(sequence_numbers),
            session_id=session_id,
            settle_action=action,
            session_timeout=settings.receive.session_accept_window_seconds,
        )
        for message in messages:
            _echo_json(message.to_dict())

    _run(ctx, operation)


@cli.command()
@entity_options
@click.option("--batch-size", type=click.IntRange(1, 1000), default=DEFAULT_CLEAR_BATCH_SIZE, show_default=True)
@click.option(
    "--wait-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=DEFAULT_CLEAR_WAIT,
    show_default=True,
    help="Idle window that ends the clear",
)
@click.pass_context
def clear(
    ctx,
    queue: Optional[str],
    topic: Optional[str],
    subscription: Optional[str],
    dead_letter: bool,
    batch_size: int,
    wait_seconds: float,
):
    """
    Remove every message from a queue or subscription.

    Examples:
        sbtoolkit clear --queue orders
        sbtoolkit clear --topic events -s audit --dead-letter
    """
    entity = _entity(queue, topic, subscription, dead_letter)

    async def operation(broker: BrokerClient) -> int:
        return await clear_entity(broker, entity, batch_size=batch_size, wait_seconds=wait_seconds)

    _echo_json({"entity": entity.path, "removed": _run(ctx, operation)})


@cli.command()
@click.option("--queue", "-q", help="Source queue")
@click.option("--topic", "-t", help="Source topic (with --subscription)")
@click.option("--subscription", "-s", help="Source subscription")
@click.option("--to-queue", help="Destination queue (default: the source queue)")
@click.option("--to-topic", help="Destination topic (default: the source topic)")
@click.option("--max-messages", "-n", type=click.IntRange(min=0), help="Stop after this many messages")
@click.option("--wait-seconds", "-w", type=click.FloatRange(min=0), help="Stop after this many seconds")
@click.pass_context
def replay(
    ctx,
    queue: Optional[str],
    topic: Optional[str],
    subscription: Optional[str],
    to_queue: Optional[str],
    to_topic: Optional[str],
    max_messages: Optional[int],
    wait_seconds: Optional[float],
):
    """
    Move dead-lettered messages back onto an entity.

    Examples:
        sbtoolkit replay --queue orders
        sbtoolkit replay --topic events -s audit --to-queue audit-retry
    """
    source = _entity(queue, topic, subscription, False)
    if to_queue or to_topic:
        target = _target(to_queue, to_topic)
    elif source.is_queue:
        target = SendTarget(queue=source.queue)
    else:
        target = SendTarget(topic=source.topic)
    settings: ToolkitConfig = ctx.obj["settings"]

    async def operation(broker: BrokerClient) -> int:
        return await replay_dead_letters(
            broker,
            source,
            target,
            max_messages=max_messages,
            wait_seconds=wait_seconds,
            options=settings.receive.to_options(),
        )

    _echo_json({"source": source.with_dead_letter().path, "target": target.path, "replayed": _run(ctx, operation)})


@cli.group("session-state")
def session_state():
    """Read or write the state blob of a session."""


@session_state.command("get")
@entity_options
@click.option("--session-id", required=True, help="Session to read")
@click.option("--as-string", is_flag=True, help="Print the raw state text")
@click.pass_context
def get_state(
    ctx,
    queue: Optional[str],
    topic: Optional[str],
    subscription: Optional[str],
    dead_letter: bool,
    session_id: str,
    as_string: bool,
):
    """Print a session's state (the ordering record when it decodes as one)."""
    entity = _entity(queue, topic, subscription, dead_letter)
    settings: ToolkitConfig = ctx.obj["settings"]

    async def operation(broker: BrokerClient) -> Any:
        async with SessionContext(broker, entity, session_id, options=settings.receive.to_options()) as session:
            return await session.get_state(as_string=as_string)

    state = _run(ctx, operation)
    if isinstance(state, SessionOrderingState):
        click.echo(state.model_dump_json(by_alias=True))
    elif isinstance(state, str):
        click.echo(state)
    else:
        _echo_json(state)


@session_state.command("set")
@entity_options
@click.option("--session-id", required=True, help="Session to write")
@click.option("--value", help="State text to store")
@click.option("--json", "as_json", is_flag=True, help="Parse --value as JSON and store it compactly")
@click.option("--last-seen-order-num", type=click.IntRange(min=0), help="Store an ordering record")
@click.option("--deferred", "deferred_entries", multiple=True, help="ORDER:SEQ entry of the ordering record (repeatable)")
@click.option("--clear", "clear_state", is_flag=True, help="Store an empty state")
@click.pass_context
def set_state(
    ctx,
    queue: Optional[str],
    topic: Optional[str],
    subscription: Optional[str],
    dead_letter: bool,
    session_id: str,
    value: Optional[str],
    as_json: bool,
    last_seen_order_num: Optional[int],
    deferred_entries: Tuple[str, ...],
    clear_state: bool,
):
    """
    Overwrite a session's state.

    Examples:
        sbtoolkit session-state set -q orders --session-id o-1 --last-seen-order-num 5 --deferred 6:1001
        sbtoolkit session-state set -q orders --session-id o-1 --value '{"step": 2}' --json
        sbtoolkit session-state set -q orders --session-id o-1 --clear
    """
    entity = _entity(queue, topic, subscription, dead_letter)
    settings: ToolkitConfig = ctx.obj["settings"]

    chosen = [value is not None, last_seen_order_num is not None, clear_state]
    if sum(chosen) != 1:
        raise click.UsageError("Provide exactly one of --value, --last-seen-order-num or --clear")
    if deferred_entries and last_seen_order_num is None:
        raise click.UsageError("--deferred requires --last-seen-order-num")

    if clear_state:
        state: Any = None
    elif last_seen_order_num is not None:
        state = new_ordering_state(last_seen_order_num, _parse_deferred(deferred_entries))
    elif as_json:
        try:
            state = json.loads(value)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--value")
    else:
        state = value

    async def operation(broker: BrokerClient) -> bytes:
        async with SessionContext(broker, entity, session_id, options=settings.receive.to_options()) as session:
            return await session.set_state(state)

    written = _run(ctx, operation)
    _echo_json({"session_id": session_id, "entity": entity.path, "bytes": len(written)})


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
