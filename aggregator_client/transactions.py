"""Versioned transaction assembly: compute-budget directives, v0 compilation, signing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from aggregator_client.config import TransactionSettings
from aggregator_client.errors import TransactionBuildError
from aggregator_client.ledger import LedgerClient
from aggregator_client.logging_config import short

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignedTransaction:
    """A signed v0 transaction and the blockhash window it is valid for."""

    transaction: VersionedTransaction
    blockhash: Hash
    last_valid_block_height: int

    @property
    def signature(self) -> str:
        return str(self.transaction.signatures[0])

    @property
    def message(self) -> MessageV0:
        return self.transaction.message


def static_account_keys(tx: SignedTransaction) -> List[Pubkey]:
    return list(tx.message.account_keys)


def lookup_account_count(tx: SignedTransaction) -> int:
    """Number of accounts the message resolves through lookup tables."""
    return sum(
        len(lookup.writable_indexes) + len(lookup.readonly_indexes)
        for lookup in tx.message.address_table_lookups
    )


class TransactionBuilder:
    """
    Builds signed v0 transactions.

    ``build`` always emits ``[compute unit limit, compute unit price, instruction]``:
    the budget directives must precede the instruction they apply to, and the
    design never combines several domain instructions in one transaction.
    """

    def __init__(self, ledger: LedgerClient, settings: TransactionSettings):
        self.ledger = ledger
        self.settings = settings

    def priority_instructions(self) -> List[Instruction]:
        return [
            set_compute_unit_limit(self.settings.compute_unit_limit),
            set_compute_unit_price(self.settings.compute_unit_price),
        ]

    async def build(
        self,
        instruction: Instruction,
        fee_payer: Keypair,
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
        signers: Iterable[Keypair] = (),
    ) -> SignedTransaction:
        instructions = self.priority_instructions() + [instruction]
        return await self._compile_and_sign(instructions, fee_payer, lookup_tables, signers)

    async def build_raw(
        self,
        instructions: Sequence[Instruction],
        fee_payer: Keypair,
        signers: Iterable[Keypair] = (),
    ) -> SignedTransaction:
        """Build without budget directives or lookup tables (table administration)."""
        return await self._compile_and_sign(list(instructions), fee_payer, (), signers)

    async def _compile_and_sign(
        self,
        instructions: List[Instruction],
        fee_payer: Keypair,
        lookup_tables: Sequence[AddressLookupTableAccount],
        signers: Iterable[Keypair],
    ) -> SignedTransaction:
        # Fetched as late as possible; the validity window starts here.
        info = await self.ledger.get_latest_blockhash()
        try:
            message = MessageV0.try_compile(
                fee_payer.pubkey(),
                instructions,
                list(lookup_tables),
                info.blockhash,
            )
        except Exception as e:
            raise TransactionBuildError(f"Cannot compile message: {e}") from e

        keypairs = self._required_signers(message, fee_payer, signers)
        transaction = VersionedTransaction(message, keypairs)
        signed = SignedTransaction(transaction, info.blockhash, info.last_valid_block_height)
        logger.debug(
            f"Built tx {short(signed.signature)}: {len(instructions)} ix, "
            f"{len(message.account_keys)} static / {lookup_account_count(signed)} looked-up accounts"
        )
        return signed

    @staticmethod
    def _required_signers(
        message: MessageV0, fee_payer: Keypair, signers: Iterable[Keypair]
    ) -> List[Keypair]:
        available = {fee_payer.pubkey(): fee_payer}
        for keypair in signers:
            available.setdefault(keypair.pubkey(), keypair)

        required = message.account_keys[: message.header.num_required_signatures]
        missing = [key for key in required if key not in available]
        if missing:
            raise TransactionBuildError(
                f"Missing signers: {', '.join(short(key) for key in missing)}"
            )
        return [available[key] for key in required]
