"""
Address lookup table lifecycle: create, extend in bounded chunks, fetch once visible.

A freshly created or extended table is not immediately visible to every RPC
node, so reads go through ``wait_until_visible`` instead of fixed sleeps.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterator, List, Optional, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.system_program import (
    CreateLookupTableParams,
    ExtendLookupTableParams,
    create_lookup_table,
    extend_lookup_table,
)
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from aggregator_client.config import LookupTableSettings
from aggregator_client.errors import (
    ConfirmationTimeoutError,
    ExecutionError,
    SimulationError,
    StaleBlockhashError,
    StaleSlotError,
    TableNotReadyError,
    TransportError,
)
from aggregator_client.finality import wait_for
from aggregator_client.ledger import LedgerClient
from aggregator_client.logging_config import short
from aggregator_client.submitter import TransactionSubmitter
from aggregator_client.transactions import TransactionBuilder

logger = logging.getLogger(__name__)

# Failures after which a chunk may or may not have landed
_CHUNK_RETRYABLE = (TransportError, ConfirmationTimeoutError, StaleBlockhashError)


def chunk_addresses(addresses: Sequence[Pubkey], size: int) -> Iterator[List[Pubkey]]:
    """Yield consecutive chunks of at most ``size`` addresses, order preserved."""
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    for start in range(0, len(addresses), size):
        yield list(addresses[start : start + size])


def _is_stale_slot(error: Exception) -> bool:
    logs = getattr(error, "logs", None) or []
    return any("is not a recent slot" in line for line in logs) or "is not a recent slot" in str(error)


class LookupTableManager:
    """Creates, extends and resolves address lookup tables."""

    def __init__(
        self,
        ledger: LedgerClient,
        builder: TransactionBuilder,
        submitter: TransactionSubmitter,
        settings: LookupTableSettings,
    ):
        self.ledger = ledger
        self.builder = builder
        self.submitter = submitter
        self.settings = settings

    async def create_table(
        self,
        authority: Keypair,
        payer: Keypair,
        reference_slot: Optional[int] = None,
    ) -> Pubkey:
        """
        Create a table and return its derived address.

        The table is not guaranteed to be visible when this returns. The
        reference slot must already be final on the cluster, so by default it
        is read at ``finalized`` commitment.

        Raises:
            StaleSlotError: the program rejected the slot; create again with a fresher one
        """
        slot = reference_slot if reference_slot is not None else await self.ledger.get_slot("finalized")
        instruction, address = create_lookup_table(
            CreateLookupTableParams(
                authority_address=authority.pubkey(),
                payer_address=payer.pubkey(),
                recent_slot=slot,
            )
        )
        tx = await self.builder.build_raw([instruction], payer, signers=[authority])
        try:
            signature = await self.submitter.submit(tx)
        except (SimulationError, ExecutionError) as e:
            if _is_stale_slot(e):
                raise StaleSlotError(
                    f"Slot {slot} is no longer accepted for table creation",
                    logs=e.logs,
                    err=e.err,
                    hint="Read a fresh finalized slot and create a new table.",
                ) from e
            raise
        logger.info(f"Lookup table {address} created at slot {slot} ({short(signature)})")
        return address

    async def extend_table(
        self,
        table: Pubkey,
        addresses: Sequence[Pubkey],
        *,
        authority: Keypair,
        payer: Keypair,
    ) -> List[str]:
        """
        Append ``addresses`` in chunks of ``batch_size``, one transaction per chunk.

        Chunks go out sequentially in input order with ``settle_seconds`` between
        them. A chunk that fails in transit is rebuilt and retried unless the
        table already ends with it, so a chunk that did land is not appended twice.
        """
        chunks = list(chunk_addresses(addresses, self.settings.batch_size))
        signatures: List[str] = []
        for index, chunk in enumerate(chunks):
            if index:
                await asyncio.sleep(self.settings.settle_seconds)
            logger.info(f"Extending {short(table)}: chunk {index + 1}/{len(chunks)} with {len(chunk)} addresses")
            signatures.append(await self._extend_chunk(table, chunk, authority, payer))
        return signatures

    async def _extend_chunk(
        self, table: Pubkey, chunk: List[Pubkey], authority: Keypair, payer: Keypair
    ) -> str:
        instruction = extend_lookup_table(
            ExtendLookupTableParams(
                lookup_table_address=table,
                authority_address=authority.pubkey(),
                new_addresses=chunk,
                payer_address=payer.pubkey(),
            )
        )
        attempts = self.settings.chunk_retries + 1
        for attempt in range(attempts):
            tx = await self.builder.build_raw([instruction], payer, signers=[authority])
            try:
                return await self.submitter.submit(tx)
            except _CHUNK_RETRYABLE as e:
                if await self._chunk_applied(table, chunk):
                    logger.info(f"Chunk already applied to {short(table)} despite: {e}")
                    return tx.signature
                if attempt == attempts - 1:
                    raise
                logger.warning(f"Extend chunk failed ({e}); retry {attempt + 1}/{self.settings.chunk_retries}")
            except (SimulationError, ExecutionError) as e:
                # Rejected outright, so nothing landed; only transient causes are worth a rebuild
                if not e.retryable or attempt == attempts - 1:
                    raise
                logger.warning(f"Extend chunk rejected ({e.err}); retry {attempt + 1}/{self.settings.chunk_retries}")
            await asyncio.sleep(self.settings.settle_seconds)
        raise AssertionError("unreachable")

    async def _chunk_applied(self, table: Pubkey, chunk: List[Pubkey]) -> bool:
        try:
            account = await self.ledger.get_lookup_table(table)
        except TransportError:
            return False
        if account is None:
            return False
        addresses = list(account.addresses)
        return len(addresses) >= len(chunk) and addresses[-len(chunk):] == chunk

    async def fetch_table(self, table: Pubkey) -> AddressLookupTableAccount:
        """Resolve the table's address list; raises TableNotReadyError until it is visible."""
        account = await self.ledger.get_lookup_table(table)
        if account is None:
            raise TableNotReadyError(str(table))
        return account

    async def wait_until_visible(
        self,
        table: Pubkey,
        *,
        min_addresses: int = 0,
        timeout: Optional[float] = None,
    ) -> AddressLookupTableAccount:
        """Poll until the table is visible and holds at least ``min_addresses`` entries."""

        async def probe() -> Optional[AddressLookupTableAccount]:
            account = await self.fetch_table(table)
            if len(account.addresses) < min_addresses:
                raise TableNotReadyError(str(table), found=len(account.addresses), expected=min_addresses)
            return account

        account = await wait_for(
            probe,
            timeout=self.settings.visibility_timeout if timeout is None else timeout,
            interval=self.settings.poll_interval,
            retry_on=(TableNotReadyError, TransportError),
            description=f"lookup table {short(table)}",
        )
        logger.info(f"Lookup table {short(table)} visible with {len(account.addresses)} addresses")
        return account

    async def prepare_table(
        self,
        addresses: Sequence[Pubkey],
        *,
        authority: Keypair,
        payer: Keypair,
    ) -> AddressLookupTableAccount:
        """Create a table holding ``addresses`` and return it once fully visible."""
        table = await self.create_table(authority, payer)
        await self.wait_until_visible(table)
        await self.extend_table(table, addresses, authority=authority, payer=payer)
        return await self.wait_until_visible(table, min_addresses=len(addresses))
