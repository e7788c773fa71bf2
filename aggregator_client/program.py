"""
Instruction interface of the external aggregator program.

Builds Anchor-style instructions (8-byte ``global:<name>`` discriminator
followed by Borsh arguments) with the fixed account order the program declares,
plus the protocol bundles as remaining accounts where the program reads them.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from borsh_construct import U8, U16, U64, CStruct
from construct import Adapter, Bytes
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from aggregator_client.errors import InstructionArgumentError
from aggregator_client.ledger import LedgerClient
from aggregator_client.registry import ProgramRegistry

logger = logging.getLogger(__name__)

BPS_BASE = 10_000
PROGRAM_ERROR_OFFSET = 6000

# (name, message) indexed by ``code - 6000``
PROGRAM_ERRORS = [
    ("InvalidAllocation", "Invalid allocation percentage"),
    ("InvalidAmount", "Invalid amount"),
    ("MathOverflow", "Math overflow"),
    ("InsufficientLiquidity", "Insufficient liquidity"),
    ("CpiToLendingProgramFailed", "CPI to lending program failed"),
    ("InvalidAccountData", "Invalid account data"),
    ("InsufficientBalance", "Insufficient balance"),
]


class _PubkeyAdapter(Adapter):
    def _decode(self, obj, context, path) -> Pubkey:
        return Pubkey.from_bytes(obj)

    def _encode(self, obj, context, path) -> bytes:
        return bytes(obj)


PUBKEY = _PubkeyAdapter(Bytes(32))


def discriminator(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:8]


def decode_program_error(code: int) -> Optional[str]:
    """Map a custom program error code to ``Name: message``."""
    index = code - PROGRAM_ERROR_OFFSET
    if 0 <= index < len(PROGRAM_ERRORS):
        name, message = PROGRAM_ERRORS[index]
        return f"{name}: {message}"
    return None


def _check_bps(value: int, what: str) -> None:
    if not 0 <= value <= BPS_BASE:
        raise InstructionArgumentError(f"{what} must be within 0..{BPS_BASE} bps, got {value}")


def _check_amount(value: int) -> None:
    if value <= 0 or value >= 2 ** 64:
        raise InstructionArgumentError(f"amount must be a positive u64, got {value}")


def _writable(pubkey: Pubkey, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=signer, is_writable=True)


def _readonly(pubkey: Pubkey, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=signer, is_writable=False)


CONFIG_LAYOUT = CStruct(
    "authority" / PUBKEY,
    "usdc_mint" / PUBKEY,
    "cusdc_mint" / PUBKEY,
    "vault_usdc" / PUBKEY,
    "juplend_allocation_bps" / U16,
    "kamino_allocation_bps" / U16,
    "total_deposits" / U64,
    "bump" / U8,
)


@dataclass(frozen=True)
class AggregatorConfigState:
    """Decoded on-chain config account."""

    authority: Pubkey
    usdc_mint: Pubkey
    share_mint: Pubkey
    vault_usdc: Pubkey
    allocation_a_bps: int
    allocation_b_bps: int
    total_deposits: int
    bump: int

    @classmethod
    def decode(cls, data: bytes) -> "AggregatorConfigState":
        expected = discriminator("account", "AggregatorConfig")
        if data[:8] != expected:
            raise ValueError("Account is not an AggregatorConfig")
        parsed = CONFIG_LAYOUT.parse(data[8:])
        return cls(
            authority=parsed.authority,
            usdc_mint=parsed.usdc_mint,
            share_mint=parsed.cusdc_mint,
            vault_usdc=parsed.vault_usdc,
            allocation_a_bps=parsed.juplend_allocation_bps,
            allocation_b_bps=parsed.kamino_allocation_bps,
            total_deposits=parsed.total_deposits,
            bump=parsed.bump,
        )


class AggregatorProgram:
    """Instruction builders for the six aggregator operations."""

    def __init__(self, registry: ProgramRegistry):
        self.registry = registry

    @property
    def program_id(self) -> Pubkey:
        return self.registry.program_id

    def _instruction(self, name: str, args: bytes, accounts: Sequence[AccountMeta]) -> Instruction:
        return Instruction(
            program_id=self.registry.program_id,
            data=discriminator("global", name) + args,
            accounts=list(accounts),
        )

    def initialize_config(self, authority: Pubkey, fee_bps: int) -> Instruction:
        """``fee_bps`` is the share routed to the first protocol; the rest goes to the second."""
        _check_bps(fee_bps, "fee_bps")
        reg = self.registry
        accounts = [
            _writable(authority, signer=True),
            _writable(reg.config),
            _readonly(reg.usdc_mint),
            _writable(reg.share_mint),
            _writable(reg.vault_usdc),
            _readonly(reg.token_program),
            _readonly(reg.associated_token_program),
            _readonly(reg.system_program),
        ]
        return self._instruction("init_aggregator_config", U16.build(fee_bps), accounts)

    def deposit(self, user: Pubkey, amount: int) -> Instruction:
        _check_amount(amount)
        reg = self.registry
        owned = reg.user_accounts(user)
        accounts = [
            _writable(user, signer=True),
            _writable(reg.config),
            _writable(owned.usdc),
            _writable(owned.shares),
            _writable(reg.vault_usdc),
            _writable(reg.share_mint),
            _readonly(reg.usdc_mint),
            _readonly(reg.token_program),
            _readonly(reg.associated_token_program),
            _readonly(reg.system_program),
            _readonly(reg.rent_sysvar),
        ]
        accounts.extend(reg.remaining_accounts())
        return self._instruction("deposit", U64.build(amount), accounts)

    def withdraw(self, user: Pubkey, amount: int) -> Instruction:
        """``amount`` is denominated in share tokens."""
        _check_amount(amount)
        reg = self.registry
        owned = reg.user_accounts(user)
        accounts = [
            _writable(reg.config),
            _writable(user, signer=True),
            _writable(owned.usdc),
            _writable(owned.shares),
            _writable(reg.vault_usdc),
            _writable(reg.share_mint),
            _readonly(reg.usdc_mint),
            _readonly(reg.token_program),
            _readonly(reg.associated_token_program),
            _readonly(reg.system_program),
            _readonly(reg.rent_sysvar),
        ]
        accounts.extend(reg.remaining_accounts())
        return self._instruction("withdraw", U64.build(amount), accounts)

    def update_strategy(self, authority: Pubkey, allocation_bps: int) -> Instruction:
        _check_bps(allocation_bps, "allocation_bps")
        reg = self.registry
        accounts = [
            _writable(reg.config),
            _readonly(authority, signer=True),
            _writable(reg.vault_usdc),
            _readonly(reg.usdc_mint),
        ]
        return self._instruction("update_strategy", U16.build(allocation_bps), accounts)

    def rebalance(self, authority: Pubkey) -> Instruction:
        reg = self.registry
        accounts = [
            _writable(reg.config),
            _readonly(authority, signer=True),
            _writable(reg.vault_usdc),
            _writable(reg.share_mint),
            _readonly(reg.usdc_mint),
            _readonly(reg.token_program),
            _readonly(reg.associated_token_program),
            _readonly(reg.system_program),
            _readonly(reg.rent_sysvar),
        ]
        accounts.extend(reg.remaining_accounts())
        return self._instruction("rebalance", b"", accounts)

    def view(self, authority: Pubkey) -> Instruction:
        reg = self.registry
        accounts: List[AccountMeta] = [
            _readonly(authority, signer=True),
            _writable(reg.config),
            _readonly(reg.user_accounts(authority).shares),
            _writable(reg.share_mint),
        ]
        accounts.extend(reg.remaining_accounts())
        return self._instruction("view", b"", accounts)

    async def fetch_config(self, ledger: LedgerClient) -> Optional[AggregatorConfigState]:
        data = await ledger.get_account_data(self.registry.config)
        if data is None:
            return None
        return AggregatorConfigState.decode(data)
