"""
End-to-end scenario against the aggregator program.

Runs the fixed sequence initialize, deposit, update_strategy, rebalance, view,
withdraw with event capture around it. Every component is passed in, so the
same driver runs against a live validator or the in-memory test ledger.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from aggregator_client.config import ClientSettings
from aggregator_client.errors import AggregatorClientError, InstructionArgumentError, TransportError
from aggregator_client.events import EVENT_KINDS, EventCorrelator, EventRecord, EventSink
from aggregator_client.finality import wait_for
from aggregator_client.ledger import LedgerClient
from aggregator_client.logging_config import short, step_context
from aggregator_client.lookup_table import LookupTableManager
from aggregator_client.program import AggregatorProgram
from aggregator_client.registry import ProgramRegistry
from aggregator_client.submitter import TransactionSubmitter
from aggregator_client.transactions import TransactionBuilder

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000

# Event kind each step is expected to emit
STEP_EVENTS = {
    "initialize": None,
    "deposit": "depositEvent",
    "update_strategy": "allocationUpdateEvent",
    "rebalance": "rebalanceEvent",
    "view": "viewEvent",
    "withdraw": "withdrawEvent",
}


@dataclass
class ScenarioResult:
    signatures: Dict[str, str] = field(default_factory=dict)
    records: List[EventRecord] = field(default_factory=list)
    lookup_table: Optional[Pubkey] = None
    report: str = ""

    def events_for(self, step: str) -> List[EventRecord]:
        signature = self.signatures.get(step)
        return [record for record in self.records if record.signature == signature]


class ScenarioDriver:
    """Drives the aggregator program through one full user and admin cycle."""

    def __init__(
        self,
        ledger: LedgerClient,
        tables: LookupTableManager,
        builder: TransactionBuilder,
        submitter: TransactionSubmitter,
        correlator: EventCorrelator,
        program: AggregatorProgram,
        registry: ProgramRegistry,
        settings: ClientSettings,
        user: Keypair,
        sink: Optional[EventSink] = None,
    ):
        self.ledger = ledger
        self.tables = tables
        self.builder = builder
        self.submitter = submitter
        self.correlator = correlator
        self.program = program
        self.registry = registry
        self.settings = settings
        self.user = user
        self.sink = sink if sink is not None else correlator.sink

        self.lookup_table: Optional[AddressLookupTableAccount] = None
        self.signatures: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def fund(self, addresses: Sequence[Pubkey], lamports: int) -> List[str]:
        """Airdrop to every address concurrently and wait for all of them."""
        if self.settings.is_mainnet:
            raise AggregatorClientError("Refusing to airdrop on mainnet")
        with step_context("fund"):
            signatures = await asyncio.gather(
                *(self.ledger.request_airdrop(address, lamports) for address in addresses)
            )
            await asyncio.gather(*(self._await_landed(signature) for signature in signatures))
            logger.info(f"Funded {len(addresses)} accounts with {lamports / LAMPORTS_PER_SOL} SOL each")
            return list(signatures)

    async def _await_landed(self, signature: str) -> None:
        async def probe():
            status = await self.ledger.get_signature_status(signature)
            if status is not None and status.err is not None:
                raise AggregatorClientError(f"Airdrop {short(signature)} failed: {status.err}")
            return status

        await wait_for(
            probe,
            timeout=self.settings.submission.confirm_timeout_seconds,
            interval=self.settings.submission.poll_interval,
            max_interval=self.settings.submission.max_poll_interval,
            retry_on=(TransportError,),
            description=f"airdrop {short(signature)}",
        )

    async def prepare_lookup_table(self) -> AddressLookupTableAccount:
        with step_context("lookup_table"):
            addresses = self.registry.lookup_addresses(self.user.pubkey())
            logger.info(f"Preparing lookup table with {len(addresses)} addresses")
            self.lookup_table = await self.tables.prepare_table(
                addresses, authority=self.user, payer=self.user
            )
            return self.lookup_table

    async def subscribe_all(self) -> None:
        with step_context("subscribe"):
            for kind in EVENT_KINDS:
                await self.correlator.subscribe(kind)
            logger.info(f"Listening for {len(EVENT_KINDS)} event kinds")

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _execute(self, step: str, instruction: Instruction) -> str:
        with step_context(step):
            tables = [self.lookup_table] if self.lookup_table is not None else []
            tx = await self.builder.build(instruction, self.user, lookup_tables=tables)
            signature = await self.submitter.submit(tx)
            self.signatures[step] = signature
            logger.info(f"{step} done: {signature}")
            return signature

    async def initialize(self, fee_bps: int) -> str:
        return await self._execute("initialize", self.program.initialize_config(self.user.pubkey(), fee_bps))

    async def deposit(self, amount: int) -> str:
        return await self._execute("deposit", self.program.deposit(self.user.pubkey(), amount))

    async def update_strategy(self, allocation_bps: int) -> str:
        return await self._execute(
            "update_strategy", self.program.update_strategy(self.user.pubkey(), allocation_bps)
        )

    async def rebalance(self) -> str:
        return await self._execute("rebalance", self.program.rebalance(self.user.pubkey()))

    async def view(self) -> str:
        return await self._execute("view", self.program.view(self.user.pubkey()))

    async def withdraw(self, amount: Optional[int] = None) -> str:
        """Burn ``amount`` shares, or the user's whole share balance when omitted."""
        if amount is None:
            shares = self.registry.user_accounts(self.user.pubkey()).shares
            balance = await self.ledger.get_token_account_balance(shares)
            amount = balance.amount
            if amount == 0:
                raise InstructionArgumentError(
                    f"Nothing to withdraw: share account {short(shares)} is empty",
                    hint="Deposit first, or pass an explicit share amount.",
                )
            logger.info(f"Withdrawing full share balance of {amount}")
        return await self._execute("withdraw", self.program.withdraw(self.user.pubkey(), amount))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def settle_events(self) -> bool:
        """Wait until every step that emits an event has one buffered for its signature."""
        expected = {
            self.signatures[step]
            for step, kind in STEP_EVENTS.items()
            if kind is not None and step in self.signatures
        }

        def caught_up(records: List[EventRecord]) -> bool:
            return expected <= {record.signature for record in records}

        with step_context("events"):
            return await self.correlator.settle(caught_up, timeout=self.settings.events.settle_timeout)

    def report(self) -> str:
        return self.correlator.report()

    async def close(self) -> None:
        await self.correlator.close()

    async def run(self, amount: int, fee_bps: int, allocation_bps: int) -> ScenarioResult:
        """Full cycle; event capture is torn down even when a step fails."""
        await self.prepare_lookup_table()
        await self.subscribe_all()
        try:
            await self.initialize(fee_bps)
            await self.deposit(amount)
            await self.update_strategy(allocation_bps)
            await self.rebalance()
            await self.view()
            await self.withdraw()
            await self.settle_events()
            report = self.report()
        finally:
            await self.close()

        return ScenarioResult(
            signatures=dict(self.signatures),
            records=self.sink.records(),
            lookup_table=self.lookup_table.key if self.lookup_table is not None else None,
            report=report,
        )
