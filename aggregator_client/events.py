"""
Program event capture and correlation.

The aggregator program emits Anchor events as ``Program data: <base64>`` log
lines. The correlator listens to the program's log stream in a background
task, decodes the kinds that have an active subscription and appends one
``EventRecord`` per subscription to an injected ``EventSink``.

Ordering: records appear in arrival order. Across kinds there is no global
order; within a kind arrival order approximates slot order. The only guarantee
is that every event delivered before ``unsubscribe`` ends up in the sink.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import itertools
import logging
import time
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from borsh_construct import U16, U64, CStruct
from construct import ConstructError
from solders.pubkey import Pubkey

from aggregator_client.errors import SubscriptionError, TransportError
from aggregator_client.ledger import LedgerClient
from aggregator_client.logging_config import short
from aggregator_client.program import PUBKEY, discriminator

logger = logging.getLogger(__name__)

PROGRAM_DATA = "Program data: "
PROGRAM_LOG = "Program log: "


# ============================================================================
# Event payloads
# ============================================================================

@dataclass(frozen=True)
class DepositEvent:
    user: Pubkey
    amount: int
    minted_amount: int


@dataclass(frozen=True)
class WithdrawEvent:
    user: Pubkey
    burned_amount: int
    returned_amount: int


@dataclass(frozen=True)
class RebalanceEvent:
    balance_a: int
    balance_b: int


@dataclass(frozen=True)
class AllocationUpdateEvent:
    bps_a: int
    bps_b: int


@dataclass(frozen=True)
class ViewEvent:
    user: Pubkey
    yield_value: int


@dataclass(frozen=True)
class EventSchema:
    """Maps an on-chain event struct to its payload dataclass."""

    kind: str
    struct_name: str
    layout: CStruct
    payload_type: Type
    # on-chain field name -> payload field name
    field_map: Tuple[Tuple[str, str], ...]
    labels: Tuple[Tuple[str, str], ...] = ()

    @property
    def discriminator(self) -> bytes:
        return discriminator("event", self.struct_name)

    def decode(self, data: bytes) -> Any:
        parsed = self.layout.parse(data)
        return self.payload_type(**{ours: getattr(parsed, theirs) for theirs, ours in self.field_map})

    def encode(self, payload: Any) -> bytes:
        """Serialize a payload the way the program logs it (discriminator included)."""
        values = {theirs: getattr(payload, ours) for theirs, ours in self.field_map}
        return self.discriminator + self.layout.build(values)


EVENT_SCHEMAS: Dict[str, EventSchema] = {
    schema.kind: schema
    for schema in (
        EventSchema(
            kind="depositEvent",
            struct_name="DepositEvent",
            layout=CStruct("user" / PUBKEY, "amount" / U64, "cusdc_minted" / U64),
            payload_type=DepositEvent,
            field_map=(("user", "user"), ("amount", "amount"), ("cusdc_minted", "minted_amount")),
            labels=(("user", "User"), ("amount", "Amount"), ("minted_amount", "Shares Minted")),
        ),
        EventSchema(
            kind="withdrawEvent",
            struct_name="WithdrawEvent",
            layout=CStruct("user" / PUBKEY, "cusdc_burned" / U64, "usdc_returned" / U64),
            payload_type=WithdrawEvent,
            field_map=(
                ("user", "user"),
                ("cusdc_burned", "burned_amount"),
                ("usdc_returned", "returned_amount"),
            ),
            labels=(("user", "User"), ("burned_amount", "Shares Burned"), ("returned_amount", "Returned")),
        ),
        EventSchema(
            kind="rebalanceEvent",
            struct_name="RebalanceEvent",
            layout=CStruct("juplend_balance" / U64, "kamino_balance" / U64),
            payload_type=RebalanceEvent,
            field_map=(("juplend_balance", "balance_a"), ("kamino_balance", "balance_b")),
            labels=(("balance_a", "Protocol A Balance"), ("balance_b", "Protocol B Balance")),
        ),
        EventSchema(
            kind="allocationUpdateEvent",
            struct_name="AllocationUpdateEvent",
            layout=CStruct("juplend_bps" / U16, "kamino_bps" / U16),
            payload_type=AllocationUpdateEvent,
            field_map=(("juplend_bps", "bps_a"), ("kamino_bps", "bps_b")),
            labels=(("bps_a", "Protocol A BPS"), ("bps_b", "Protocol B BPS")),
        ),
        EventSchema(
            kind="viewEvent",
            struct_name="ViewEvent",
            layout=CStruct("user" / PUBKEY, "user_yeild" / U64),
            payload_type=ViewEvent,
            field_map=(("user", "user"), ("user_yeild", "yield_value")),
            labels=(("user", "User"), ("yield_value", "User Yield")),
        ),
    )
}

EVENT_KINDS = tuple(EVENT_SCHEMAS)


# ============================================================================
# Log decoding
# ============================================================================

class EventDecoder:
    """Extracts events from a transaction's log lines."""

    def __init__(self, program_id: Pubkey, schemas: Optional[Dict[str, EventSchema]] = None):
        self.program_id = str(program_id)
        self.schemas = schemas or EVENT_SCHEMAS
        self._by_discriminator = {schema.discriminator: schema for schema in self.schemas.values()}

    def parse_logs(self, logs: List[str]) -> List[Tuple[str, Any]]:
        """
        Return ``(kind, payload)`` for each event emitted by the program itself.

        Tracks the invoke stack so data logged by other programs (including
        CPIs into lending protocols) is ignored.

        Raises:
            SubscriptionError: a known event carries a malformed payload
        """
        events: List[Tuple[str, Any]] = []
        stack: List[str] = []
        for line in logs:
            if line.startswith(PROGRAM_DATA):
                payload = line[len(PROGRAM_DATA):]
            elif line.startswith(PROGRAM_LOG):
                # Anchor < 0.26 emitted events through msg!
                payload = line[len(PROGRAM_LOG):]
            else:
                if line.startswith("Program ") and " invoke [" in line:
                    stack.append(line.split(" ", 2)[1])
                elif line.startswith("Program ") and (line.endswith(" success") or " failed" in line):
                    if stack and stack[-1] == line.split(" ", 2)[1]:
                        stack.pop()
                continue

            if not stack or stack[-1] != self.program_id:
                continue
            decoded = self._decode(payload)
            if decoded is not None:
                events.append(decoded)
        return events

    def _decode(self, payload: str) -> Optional[Tuple[str, Any]]:
        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            return None
        schema = self._by_discriminator.get(raw[:8])
        if schema is None:
            return None
        try:
            return schema.kind, schema.decode(raw[8:])
        except (ConstructError, ValueError) as e:
            raise SubscriptionError(f"Malformed {schema.kind} payload: {e}") from e


# ============================================================================
# Sink and subscriptions
# ============================================================================

@dataclass(frozen=True)
class EventRecord:
    kind: str
    payload: Any
    slot: int
    signature: str
    subscription_id: int
    received_at: float = field(default_factory=time.time)


class EventSink:
    """
    Append-only event log with a single writer.

    Readers can wait on it with ``wait_for`` instead of sleeping for a fixed time.
    """

    def __init__(self):
        self._records: List[EventRecord] = []
        self._changed = asyncio.Condition()

    async def append(self, record: EventRecord) -> None:
        async with self._changed:
            self._records.append(record)
            self._changed.notify_all()

    def records(self, kind: Optional[str] = None) -> List[EventRecord]:
        if kind is None:
            return list(self._records)
        return [record for record in self._records if record.kind == kind]

    def for_signature(self, signature: str) -> List[EventRecord]:
        return [record for record in self._records if record.signature == signature]

    def __len__(self) -> int:
        return len(self._records)

    async def wait_for(self, predicate: Callable[[List[EventRecord]], bool], timeout: Optional[float]) -> bool:
        """Wait until ``predicate(records)`` holds; False if ``timeout`` passes first."""
        async with self._changed:
            try:
                await asyncio.wait_for(
                    self._changed.wait_for(lambda: predicate(self._records)),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                return False
        return True


@dataclass
class Subscription:
    id: int
    kind: str
    active: bool = True


# ============================================================================
# Correlator
# ============================================================================

class EventCorrelator:
    """Subscribes to program events by kind and buffers deliveries in a sink."""

    def __init__(
        self,
        ledger: LedgerClient,
        program_id: Pubkey,
        sink: Optional[EventSink] = None,
        *,
        commitment: Optional[str] = None,
        schemas: Optional[Dict[str, EventSchema]] = None,
        registration_timeout: float = 10.0,
    ):
        self.ledger = ledger
        self.program_id = program_id
        self.sink = sink if sink is not None else EventSink()
        self.commitment = commitment
        self.schemas = schemas or EVENT_SCHEMAS
        self.decoder = EventDecoder(program_id, self.schemas)
        self.registration_timeout = registration_timeout

        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._stream_task: Optional[asyncio.Task] = None
        self._registered = asyncio.Event()
        self._failure: Optional[SubscriptionError] = None

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions.values())

    async def subscribe(self, kind: str) -> Subscription:
        """Register interest in one event kind; opens the log stream on first use."""
        self._raise_failure()
        if kind not in self.schemas:
            raise SubscriptionError(f"Unknown event kind '{kind}', expected one of {sorted(self.schemas)}")
        subscription = Subscription(id=next(self._ids), kind=kind)
        self._subscriptions[subscription.id] = subscription
        if self._stream_task is None:
            self._start_stream()
            await self._await_registration(subscription)
        logger.debug(f"Subscribed to {kind} (#{subscription.id})")
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        """Stop future deliveries for ``subscription``. Buffered records stay."""
        subscription.active = False
        self._subscriptions.pop(subscription.id, None)
        if not self._subscriptions:
            await self._stop_stream()

    async def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            await self.unsubscribe(subscription)
        await self._stop_stream()
        self._raise_failure()

    async def settle(
        self,
        predicate: Optional[Callable[[List[EventRecord]], bool]] = None,
        *,
        min_records: Optional[int] = None,
        timeout: float = 10.0,
    ) -> bool:
        """
        Wait until delivery has caught up with what the caller expects.

        Returns False when the timeout passes first. Re-raises a stream failure.
        """
        if predicate is None:
            wanted = min_records or 0
            predicate = lambda records: len(records) >= wanted  # noqa: E731
        settled = await self.sink.wait_for(predicate, timeout)
        self._raise_failure()
        if not settled:
            logger.warning(f"Events not settled after {timeout}s ({len(self.sink)} buffered)")
        return settled

    def _raise_failure(self) -> None:
        if self._failure is not None:
            raise self._failure

    # ------------------------------------------------------------------
    # Stream task
    # ------------------------------------------------------------------

    async def _await_registration(self, subscription: Subscription) -> None:
        try:
            await asyncio.wait_for(self._registered.wait(), timeout=self.registration_timeout)
        except asyncio.TimeoutError:
            await self.unsubscribe(subscription)
            raise SubscriptionError(
                f"Log subscription for {short(self.program_id)} not registered "
                f"within {self.registration_timeout}s"
            ) from None
        if self._failure is not None:
            await self.unsubscribe(subscription)
            self._raise_failure()

    def _start_stream(self) -> None:
        self._registered.clear()
        self._stream_task = asyncio.create_task(self._run_stream(), name="event-correlator.stream")

    async def _stop_stream(self) -> None:
        task, self._stream_task = self._stream_task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run_stream(self) -> None:
        try:
            async for notification in self.ledger.stream_logs(
                self.program_id, self.commitment, on_subscribed=self._registered.set
            ):
                if notification.err is not None:
                    logger.debug(f"Skipping events of failed tx {short(notification.signature)}")
                    continue
                for kind, payload in self.decoder.parse_logs(notification.logs):
                    await self._deliver(kind, payload, notification.slot, notification.signature)
        except SubscriptionError as e:
            logger.error(f"Event stream stopped: {e}")
            self._failure = e
        except TransportError as e:
            logger.error(f"Event stream lost: {e}")
            self._failure = SubscriptionError(f"Event stream lost: {e}")
        except Exception as e:
            logger.exception("Event stream crashed")
            self._failure = SubscriptionError(f"Event stream failed: {type(e).__name__}: {e}")
        finally:
            self._registered.set()

    async def _deliver(self, kind: str, payload: Any, slot: int, signature: str) -> None:
        for subscription in list(self._subscriptions.values()):
            if not subscription.active or subscription.kind != kind:
                continue
            await self.sink.append(
                EventRecord(
                    kind=kind,
                    payload=payload,
                    slot=slot,
                    signature=signature,
                    subscription_id=subscription.id,
                )
            )
            logger.info(f"Captured {kind} at slot {slot} ({short(signature)})")

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    def report(self, width: int = 80) -> str:
        """Render every buffered record in arrival order. Read-only."""
        return render_report(self.sink.records(), self.schemas, width=width)


def _cell(text: str, inner: int) -> str:
    if len(text) > inner:
        text = text[: inner - 3] + "..."
    return f"│ {text.ljust(inner)} │"


def render_report(
    records: List[EventRecord],
    schemas: Optional[Dict[str, EventSchema]] = None,
    width: int = 80,
) -> str:
    schemas = schemas or EVENT_SCHEMAS
    if not records:
        return "No events captured"

    inner = width - 4
    rule = "─" * (width - 2)
    lines = ["=" * width, "CAPTURED EVENTS SUMMARY", "=" * width, f"Total Events: {len(records)}", ""]

    for index, record in enumerate(records, start=1):
        lines.append(f"┌{rule}┐")
        lines.append(_cell(f"Event #{index}", inner))
        lines.append(f"├{rule}┤")
        lines.append(_cell(f"Type: {record.kind}", inner))
        lines.append(_cell(f"Slot: {record.slot}", inner))
        lines.append(_cell(f"Signature: {record.signature}", inner))
        lines.append(f"├{rule}┤")
        lines.append(_cell("Event Data:", inner))

        schema = schemas.get(record.kind)
        labels = dict(schema.labels) if schema else {}
        for payload_field in fields(record.payload):
            value = getattr(record.payload, payload_field.name)
            label = labels.get(payload_field.name, payload_field.name)
            lines.append(_cell(f"  {label}: {value}", inner))
        lines.append(f"└{rule}┘")
        lines.append("")

    lines.append("=" * width)
    return "\n".join(lines)
