"""
Tests for the lookup table lifecycle against the in-memory ledger.

Tests:
    1. chunk_addresses yields ceil(B/L) ordered chunks
    2. extend_table issues exactly ceil(B/L) transactions and preserves order
    3. fetch_table is stable between extends
    4. wait_until_visible rides out visibility lag
    5. a stale reference slot raises StaleSlotError
    6. a chunk that landed despite a lost confirmation is not appended twice
    7. transient on-chain rejections rebuild the chunk, permanent ones do not
"""

import math

import pytest
from solders.pubkey import Pubkey

from aggregator_client.errors import (
    ConfirmationTimeoutError,
    ExecutionError,
    FinalityTimeoutError,
    StaleSlotError,
    TableNotReadyError,
)
from aggregator_client.lookup_table import chunk_addresses

from conftest import ALT_PROGRAM_ID


def _addresses(count):
    return [Pubkey.new_unique() for _ in range(count)]


class TestChunkAddresses:
    @pytest.mark.parametrize("total,size", [(0, 5), (5, 5), (12, 5), (44, 20), (1, 30)])
    def test_chunk_count_and_order(self, total, size):
        addresses = _addresses(total)
        chunks = list(chunk_addresses(addresses, size))
        assert len(chunks) == math.ceil(total / size)
        assert all(len(chunk) <= size for chunk in chunks)
        assert [address for chunk in chunks for address in chunk] == addresses

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            list(chunk_addresses(_addresses(3), 0))


class TestCreateAndExtend:
    @pytest.mark.asyncio
    async def test_create_returns_derived_address(self, tables, ledger, payer):
        address = await tables.create_table(payer, payer)
        assert address in ledger.tables
        assert ledger.tables[address] == []

    @pytest.mark.asyncio
    async def test_extend_submits_one_tx_per_chunk_in_order(self, tables, ledger, payer):
        table = await tables.create_table(payer, payer)
        ledger.send_calls.clear()
        addresses = _addresses(12)

        signatures = await tables.extend_table(table, addresses, authority=payer, payer=payer)

        assert len(signatures) == math.ceil(12 / 5)
        assert len(ledger.send_calls) == 3
        assert ledger.tables[table] == addresses

    @pytest.mark.asyncio
    async def test_extend_transactions_carry_no_budget_directives(self, tables, ledger, payer):
        table = await tables.create_table(payer, payer)
        await tables.extend_table(table, _addresses(2), authority=payer, payer=payer)
        message = ledger.send_calls[-1].message
        programs = {message.account_keys[ix.program_id_index] for ix in message.instructions}
        assert programs == {ALT_PROGRAM_ID}

    @pytest.mark.asyncio
    async def test_empty_extend_issues_nothing(self, tables, ledger, payer):
        table = await tables.create_table(payer, payer)
        ledger.send_calls.clear()
        assert await tables.extend_table(table, [], authority=payer, payer=payer) == []
        assert ledger.send_calls == []

    @pytest.mark.asyncio
    async def test_stale_reference_slot(self, tables, ledger, payer):
        ledger.slot = 10_000
        with pytest.raises(StaleSlotError) as exc_info:
            await tables.create_table(payer, payer, reference_slot=10)
        assert any("is not a recent slot" in line for line in exc_info.value.logs)

    @pytest.mark.asyncio
    async def test_transport_failure_retries_same_chunk(self, tables, ledger, payer, settings):
        settings.submission.send_attempts = 1
        table = await tables.create_table(payer, payer)
        addresses = _addresses(3)
        ledger.transport_failures = 1

        signatures = await tables.extend_table(table, addresses, authority=payer, payer=payer)

        assert len(signatures) == 1
        assert ledger.tables[table] == addresses

    @pytest.mark.asyncio
    async def test_landed_chunk_is_not_appended_twice(self, tables, ledger, payer, monkeypatch):
        table = await tables.create_table(payer, payer)
        addresses = _addresses(3)
        original_submit = tables.submitter.submit

        async def submit_then_lose_confirmation(tx, **kwargs):
            await original_submit(tx, **kwargs)
            raise ConfirmationTimeoutError("not confirmed", signature=tx.signature)

        monkeypatch.setattr(tables.submitter, "submit", submit_then_lose_confirmation)
        signatures = await tables.extend_table(table, addresses, authority=payer, payer=payer)

        assert len(signatures) == 1
        assert ledger.tables[table] == addresses

    @pytest.mark.asyncio
    async def test_transient_rejection_rebuilds_chunk(self, tables, ledger, payer):
        table = await tables.create_table(payer, payer)
        addresses = _addresses(3)
        ledger.send_calls.clear()
        ledger.fail_next = "AccountInUse"

        signatures = await tables.extend_table(table, addresses, authority=payer, payer=payer)

        assert len(ledger.send_calls) == 2
        assert signatures == [str(ledger.send_calls[-1].signatures[0])]
        assert ledger.tables[table] == addresses

    @pytest.mark.asyncio
    async def test_permanent_rejection_is_not_retried(self, tables, ledger, payer):
        table = await tables.create_table(payer, payer)
        ledger.send_calls.clear()
        ledger.fail_next = "InstructionError(0, InvalidInstructionData)"

        with pytest.raises(ExecutionError):
            await tables.extend_table(table, _addresses(3), authority=payer, payer=payer)
        assert len(ledger.send_calls) == 1
        assert ledger.tables[table] == []


class TestVisibility:
    @pytest.mark.asyncio
    async def test_fetch_unknown_table_not_ready(self, tables):
        with pytest.raises(TableNotReadyError):
            await tables.fetch_table(Pubkey.new_unique())

    @pytest.mark.asyncio
    async def test_fetch_is_stable_without_extends(self, tables, payer):
        table = await tables.create_table(payer, payer)
        await tables.extend_table(table, _addresses(7), authority=payer, payer=payer)
        first = await tables.fetch_table(table)
        second = await tables.fetch_table(table)
        assert list(first.addresses) == list(second.addresses)

    @pytest.mark.asyncio
    async def test_wait_until_visible_rides_out_lag(self, tables, ledger, payer):
        ledger.table_visibility_lag = 3
        table = await tables.create_table(payer, payer)

        with pytest.raises(TableNotReadyError):
            await tables.fetch_table(table)
        account = await tables.wait_until_visible(table)
        assert account.key == table

    @pytest.mark.asyncio
    async def test_wait_for_full_count(self, tables, ledger, payer):
        table = await tables.create_table(payer, payer)
        ledger.table_visibility_lag = 4
        addresses = _addresses(6)
        await tables.extend_table(table, addresses, authority=payer, payer=payer)

        account = await tables.wait_until_visible(table, min_addresses=6)
        assert list(account.addresses) == addresses

    @pytest.mark.asyncio
    async def test_wait_times_out(self, tables, payer):
        with pytest.raises(FinalityTimeoutError):
            await tables.wait_until_visible(Pubkey.new_unique(), timeout=0.05)

    @pytest.mark.asyncio
    async def test_prepare_table(self, tables, ledger, payer):
        ledger.table_visibility_lag = 2
        addresses = _addresses(11)
        account = await tables.prepare_table(addresses, authority=payer, payer=payer)
        assert list(account.addresses) == addresses
