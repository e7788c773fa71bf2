"""
aggregator-client test configuration.

FakeLedger stands in for a validator behind the LedgerClient surface. It
applies lookup-table create/extend instructions, serves tables with a
configurable visibility lag, tracks block height for blockhash expiry, and
plays the aggregator program by emitting its event logs to subscribers.
"""

import asyncio
import base64
import struct
from typing import Dict, List, Optional

import pytest
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from aggregator_client.config import (
    ClientSettings,
    EventSettings,
    LookupTableSettings,
    SubmissionSettings,
    TransactionSettings,
)
from aggregator_client.errors import AlreadyProcessedError, SimulationError, TransportError
from aggregator_client.events import (
    EVENT_SCHEMAS,
    AllocationUpdateEvent,
    DepositEvent,
    EventCorrelator,
    EventSink,
    RebalanceEvent,
    ViewEvent,
    WithdrawEvent,
)
from aggregator_client.ledger import (
    BlockhashInfo,
    LogNotification,
    SignatureStatus,
    SimulationOutcome,
    TokenBalance,
)
from aggregator_client.lookup_table import LookupTableManager
from aggregator_client.program import BPS_BASE, CONFIG_LAYOUT, AggregatorProgram, discriminator
from aggregator_client.registry import ProgramRegistry
from aggregator_client.submitter import TransactionSubmitter
from aggregator_client.transactions import TransactionBuilder

ALT_PROGRAM_ID = Pubkey.from_string("AddressLookupTab1e1111111111111111111111111")
COMPUTE_BUDGET_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")
BLOCKHASH_WINDOW = 150

AGGREGATOR_INSTRUCTIONS = {
    discriminator("global", name): name
    for name in ("init_aggregator_config", "deposit", "withdraw", "update_strategy", "rebalance", "view")
}


def program_data(kind: str, payload) -> str:
    """A ``Program data:`` log line as the aggregator program emits it."""
    raw = EVENT_SCHEMAS[kind].encode(payload)
    return f"Program data: {base64.b64encode(raw).decode()}"


class FakeLedger:
    """In-memory ledger. Knobs are plain attributes so tests can flip them mid-run."""

    def __init__(self, program_id: Optional[Pubkey] = None):
        self.program_id = program_id
        self.slot = 1_000
        self.block_height = 500
        self.auto_advance = 0  # block height added per get_block_height call
        self.table_visibility_lag = 0  # reads that still see the previous table state
        self.stale_slot_window = 150
        self.status_lag = 0  # status polls before a landed tx reports confirmed
        self.transport_failures = 0
        self.drop_sends = False
        self.lose_responses = 0  # sends that execute but whose response never arrives
        self.fail_next: Optional[str] = None
        self.preflight_error: Optional[str] = None
        self.simulate_error: Optional[str] = None
        self.fail_subscribe = False
        self.hold_subscription = False

        self.send_calls: List[VersionedTransaction] = []
        self.send_options: List[dict] = []
        self.airdrops: List[tuple] = []
        self.simulations = 0
        self.token_balances: Dict[Pubkey, int] = {}
        self.accounts: Dict[Pubkey, bytes] = {}
        self.tables: Dict[Pubkey, List[Pubkey]] = {}
        self.allocation_bps = BPS_BASE
        self.total_deposits = 0

        self._visible: Dict[Pubkey, Optional[List[Pubkey]]] = {}
        self._lag: Dict[Pubkey, int] = {}
        self._statuses: Dict[str, dict] = {}
        self._logs: Dict[str, List[str]] = {}
        self._streams: List[asyncio.Queue] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_latest_blockhash(self, commitment=None) -> BlockhashInfo:
        return BlockhashInfo(Hash.new_unique(), self.block_height + BLOCKHASH_WINDOW)

    async def get_slot(self, commitment=None) -> int:
        return self.slot

    async def get_block_height(self, commitment=None) -> int:
        self.block_height += self.auto_advance
        return self.block_height

    async def get_balance(self, address: Pubkey) -> int:
        return sum(lamports for target, lamports in self.airdrops if target == address)

    async def get_token_account_balance(self, address: Pubkey) -> TokenBalance:
        return TokenBalance(amount=self.token_balances.get(address, 0), decimals=6)

    async def get_account_data(self, address: Pubkey) -> Optional[bytes]:
        return self.accounts.get(address)

    async def get_lookup_table(self, address: Pubkey) -> Optional[AddressLookupTableAccount]:
        if address not in self.tables:
            return None
        if self._lag.get(address, 0) > 0:
            self._lag[address] -= 1
            visible = self._visible.get(address)
        else:
            visible = self._visible[address] = list(self.tables[address])
        if visible is None:
            return None
        return AddressLookupTableAccount(key=address, addresses=list(visible))

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        entry = self._statuses.get(signature)
        if entry is None:
            return None
        if entry["err"] is None and entry["polls"] < self.status_lag:
            entry["polls"] += 1
            return SignatureStatus(slot=entry["slot"], confirmation="processed")
        return SignatureStatus(slot=entry["slot"], confirmation="confirmed", err=entry["err"])

    async def get_transaction_logs(self, signature: str) -> List[str]:
        return list(self._logs.get(signature, []))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def send_transaction(self, transaction, *, skip_preflight=False, max_retries=None) -> str:
        self.send_calls.append(transaction)
        self.send_options.append({"skip_preflight": skip_preflight, "max_retries": max_retries})
        if self.transport_failures > 0:
            self.transport_failures -= 1
            raise TransportError("connection reset by peer", method="sendTransaction")
        if self.preflight_error:
            raise SimulationError(
                f"Preflight failed: {self.preflight_error}",
                logs=["Program log: preflight rejected"],
                err=self.preflight_error,
            )
        signature = str(transaction.signatures[0])
        if signature in self._statuses and not skip_preflight:
            raise AlreadyProcessedError(
                "Preflight failed: This transaction has already been processed",
                err="AlreadyProcessed",
            )
        if self.drop_sends or signature in self._statuses:
            return signature
        self._execute(transaction, signature)
        if self.lose_responses > 0:
            self.lose_responses -= 1
            raise TransportError("response lost after send", method="sendTransaction")
        return signature

    async def simulate_transaction(self, transaction) -> SimulationOutcome:
        self.simulations += 1
        if self.simulate_error:
            return SimulationOutcome(err=self.simulate_error, logs=["Program log: simulated failure"])
        return SimulationOutcome(err=None, logs=["Program log: simulated"], units_consumed=5_000)

    async def request_airdrop(self, address: Pubkey, lamports: int) -> str:
        self.airdrops.append((address, lamports))
        signature = str(Signature.new_unique())
        self._statuses[signature] = {"slot": self.slot, "err": None, "polls": 0}
        return signature

    # ------------------------------------------------------------------
    # Log stream
    # ------------------------------------------------------------------

    async def stream_logs(self, program_id, commitment=None, on_subscribed=None):
        if self.fail_subscribe:
            raise TransportError("logsSubscribe rejected", method="logsSubscribe")
        queue: asyncio.Queue = asyncio.Queue()
        self._streams.append(queue)
        try:
            if self.hold_subscription:
                await asyncio.Event().wait()
            if on_subscribed is not None:
                on_subscribed()
            while True:
                yield await queue.get()
        finally:
            self._streams.remove(queue)

    @property
    def stream_count(self) -> int:
        return len(self._streams)

    def emit_logs(self, logs: List[str], *, err: Optional[str] = None, signature: Optional[str] = None) -> str:
        """Push a notification to every open stream, as if a transaction had landed."""
        signature = signature or str(Signature.new_unique())
        self.slot += 1
        notification = LogNotification(signature=signature, slot=self.slot, logs=list(logs), err=err)
        for queue in self._streams:
            queue.put_nowait(notification)
        return signature

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _resolve_keys(self, message) -> List[Pubkey]:
        keys = list(message.account_keys)
        writable: List[Pubkey] = []
        readonly: List[Pubkey] = []
        for lookup in message.address_table_lookups:
            table = self.tables[lookup.account_key]
            writable.extend(table[index] for index in lookup.writable_indexes)
            readonly.extend(table[index] for index in lookup.readonly_indexes)
        return keys + writable + readonly

    def _execute(self, transaction, signature: str) -> None:
        message = transaction.message
        keys = self._resolve_keys(message)
        err, self.fail_next = self.fail_next, None
        logs: List[str] = []
        mentions_program = False

        for instruction in message.instructions:
            program = keys[instruction.program_id_index]
            accounts = [keys[index] for index in instruction.accounts]
            data = bytes(instruction.data)
            if program == ALT_PROGRAM_ID:
                logs.extend(self._apply_table_instruction(accounts, data, apply=err is None))
            elif program == self.program_id:
                mentions_program = True
                logs.extend(self._apply_program_instruction(accounts, data, err))
            elif program == COMPUTE_BUDGET_ID:
                logs.append(f"Program {COMPUTE_BUDGET_ID} invoke [1]")
                logs.append(f"Program {COMPUTE_BUDGET_ID} success")

        self.slot += 1
        self._statuses[signature] = {"slot": self.slot, "err": err, "polls": 0}
        self._logs[signature] = logs
        if mentions_program:
            notification = LogNotification(signature=signature, slot=self.slot, logs=logs, err=err)
            for queue in self._streams:
                queue.put_nowait(notification)

    def _apply_table_instruction(self, accounts: List[Pubkey], data: bytes, apply: bool) -> List[str]:
        tag = struct.unpack_from("<I", data, 0)[0]
        table = accounts[0]
        logs = [f"Program {ALT_PROGRAM_ID} invoke [1]"]
        if tag == 0:
            recent_slot = struct.unpack_from("<Q", data, 4)[0]
            if recent_slot > self.slot or recent_slot < self.slot - self.stale_slot_window:
                raise SimulationError(
                    "Transaction simulation failed: Error processing Instruction 0: invalid instruction data",
                    logs=logs + [
                        f"Program log: {recent_slot} is not a recent slot",
                        f"Program {ALT_PROGRAM_ID} failed: invalid instruction data",
                    ],
                    err="InstructionError(0, InvalidInstructionData)",
                )
            if apply:
                self.tables[table] = []
                self._visible[table] = None
                self._lag[table] = self.table_visibility_lag
        elif tag == 2:
            count = struct.unpack_from("<Q", data, 4)[0]
            new = [Pubkey.from_bytes(data[12 + 32 * i : 44 + 32 * i]) for i in range(count)]
            if apply:
                self.tables[table].extend(new)
                self._lag[table] = self.table_visibility_lag
        logs.append(f"Program {ALT_PROGRAM_ID} success")
        return logs

    def _apply_program_instruction(self, accounts: List[Pubkey], data: bytes, err: Optional[str]) -> List[str]:
        program = str(self.program_id)
        name = AGGREGATOR_INSTRUCTIONS[data[:8]]
        args = data[8:]
        logs = [f"Program {program} invoke [1]", f"Program log: Instruction: {name}"]
        if err is not None:
            logs.append(f"Program {program} failed: custom program error")
            return logs

        if name == "init_aggregator_config":
            (self.allocation_bps,) = struct.unpack("<H", args)
            authority, config, usdc_mint, share_mint, vault = accounts[:5]
            self.accounts[config] = discriminator("account", "AggregatorConfig") + CONFIG_LAYOUT.build(
                {
                    "authority": authority,
                    "usdc_mint": usdc_mint,
                    "cusdc_mint": share_mint,
                    "vault_usdc": vault,
                    "juplend_allocation_bps": self.allocation_bps,
                    "kamino_allocation_bps": BPS_BASE - self.allocation_bps,
                    "total_deposits": 0,
                    "bump": 255,
                }
            )
        elif name == "deposit":
            (amount,) = struct.unpack("<Q", args)
            user, shares = accounts[0], accounts[3]
            self.total_deposits += amount
            self.token_balances[shares] = self.token_balances.get(shares, 0) + amount
            logs.append(program_data("depositEvent", DepositEvent(user=user, amount=amount, minted_amount=amount)))
        elif name == "withdraw":
            (burned,) = struct.unpack("<Q", args)
            user, shares = accounts[1], accounts[3]
            self.total_deposits -= burned
            self.token_balances[shares] = self.token_balances.get(shares, 0) - burned
            logs.append(
                program_data("withdrawEvent", WithdrawEvent(user=user, burned_amount=burned, returned_amount=burned))
            )
        elif name == "update_strategy":
            (self.allocation_bps,) = struct.unpack("<H", args)
            logs.append(
                program_data(
                    "allocationUpdateEvent",
                    AllocationUpdateEvent(bps_a=self.allocation_bps, bps_b=BPS_BASE - self.allocation_bps),
                )
            )
        elif name == "rebalance":
            balance_a = self.total_deposits * self.allocation_bps // BPS_BASE
            logs.append(
                program_data(
                    "rebalanceEvent",
                    RebalanceEvent(balance_a=balance_a, balance_b=self.total_deposits - balance_a),
                )
            )
        elif name == "view":
            user, shares = accounts[0], accounts[2]
            logs.append(
                program_data("viewEvent", ViewEvent(user=user, yield_value=self.token_balances.get(shares, 0)))
            )
        logs.append(f"Program {program} success")
        return logs


# ==============================================================================
# Fixtures
# ==============================================================================

@pytest.fixture
def settings() -> ClientSettings:
    return ClientSettings(
        transactions=TransactionSettings(compute_unit_limit=1_400_000, compute_unit_price=1),
        submission=SubmissionSettings(
            send_attempts=3,
            confirm_timeout_seconds=2.0,
            poll_interval=0.01,
            max_poll_interval=0.02,
        ),
        lookup_table=LookupTableSettings(
            batch_size=5,
            settle_seconds=0,
            chunk_retries=2,
            visibility_timeout=2.0,
            poll_interval=0.01,
        ),
        events=EventSettings(settle_timeout=2.0),
    )


@pytest.fixture
def program_id() -> Pubkey:
    return Pubkey.new_unique()


@pytest.fixture
def registry(program_id) -> ProgramRegistry:
    lending_program = Pubkey.new_unique()
    return ProgramRegistry.from_dict(
        {
            "program_id": str(program_id),
            "usdc_mint": str(Pubkey.new_unique()),
            "bundles": [
                {
                    "name": "protocol_a",
                    "accounts": [
                        {"pubkey": str(Pubkey.new_unique()), "writable": True},
                        {"pubkey": str(lending_program), "writable": False},
                        {"ata": {"mint": str(Pubkey.new_unique()), "owner": "$config"}, "writable": True},
                    ],
                },
                {
                    "name": "protocol_b",
                    "accounts": [
                        {"pubkey": str(Pubkey.new_unique()), "writable": True},
                        {
                            "pda": {"program": str(lending_program), "seeds": ["user", "$config"]},
                            "writable": True,
                        },
                        {"pubkey": str(lending_program), "writable": False},
                    ],
                },
            ],
        }
    )


@pytest.fixture
def ledger(program_id) -> FakeLedger:
    return FakeLedger(program_id)


@pytest.fixture
def payer() -> Keypair:
    return Keypair()


@pytest.fixture
def builder(ledger, settings) -> TransactionBuilder:
    return TransactionBuilder(ledger, settings.transactions)


@pytest.fixture
def submitter(ledger, settings) -> TransactionSubmitter:
    return TransactionSubmitter(ledger, settings.submission)


@pytest.fixture
def tables(ledger, builder, submitter, settings) -> LookupTableManager:
    return LookupTableManager(ledger, builder, submitter, settings.lookup_table)


@pytest.fixture
def program(registry) -> AggregatorProgram:
    return AggregatorProgram(registry)


@pytest.fixture
def sink() -> EventSink:
    return EventSink()


@pytest.fixture
def correlator(ledger, program_id, sink) -> EventCorrelator:
    return EventCorrelator(ledger, program_id, sink, registration_timeout=0.5)
