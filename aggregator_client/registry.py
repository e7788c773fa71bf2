"""
Static address registry for the aggregator program and its two protocol bundles.

Data only: derives the program's PDAs and token accounts and holds the opaque,
fixed-order account bundles of the external lending protocols. Bundle entries
come from configuration so no protocol address lives in code.

Bundle entry forms::

    {"pubkey": "<base58>", "writable": true}
    {"ata": {"mint": "<base58>", "owner": "$config"}, "writable": true}
    {"pda": {"program": "<base58>", "seeds": ["user", "key:<base58>", "$config"]}}

Seeds are ``$config`` (the program's config PDA), ``key:<base58>`` (raw
pubkey bytes) or plain UTF-8 text.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from functools import cached_property
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

from solders.instruction import AccountMeta
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.sysvar import RENT
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from aggregator_client.errors import ConfigError

CONFIG_SEED = b"config"
SHARE_MINT_SEED = b"cusdc-mint"


def _pubkey(value: Any, what: str) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    try:
        return Pubkey.from_string(str(value))
    except ValueError as e:
        raise ConfigError(f"Invalid address for {what}: {value!r}") from e


@dataclass(frozen=True)
class ProtocolBundle:
    """An external protocol's account list, in the order its program expects."""

    name: str
    accounts: Tuple[AccountMeta, ...]

    def addresses(self) -> List[Pubkey]:
        return [meta.pubkey for meta in self.accounts]

    def __len__(self) -> int:
        return len(self.accounts)


@dataclass(frozen=True)
class UserAccounts:
    owner: Pubkey
    usdc: Pubkey
    shares: Pubkey


@dataclass
class ProgramRegistry:
    program_id: Pubkey
    usdc_mint: Pubkey
    bundles: Sequence[ProtocolBundle] = field(default_factory=tuple)
    token_program: Pubkey = TOKEN_PROGRAM_ID
    associated_token_program: Pubkey = ASSOCIATED_TOKEN_PROGRAM_ID
    system_program: Pubkey = SYSTEM_PROGRAM_ID
    rent_sysvar: Pubkey = RENT

    @cached_property
    def config(self) -> Pubkey:
        return Pubkey.find_program_address([CONFIG_SEED], self.program_id)[0]

    @cached_property
    def share_mint(self) -> Pubkey:
        return Pubkey.find_program_address([SHARE_MINT_SEED], self.program_id)[0]

    @cached_property
    def vault_usdc(self) -> Pubkey:
        return get_associated_token_address(self.config, self.usdc_mint)

    def user_accounts(self, owner: Pubkey) -> UserAccounts:
        return UserAccounts(
            owner=owner,
            usdc=get_associated_token_address(owner, self.usdc_mint),
            shares=get_associated_token_address(owner, self.share_mint),
        )

    def remaining_accounts(self) -> List[AccountMeta]:
        """Concatenation of every bundle, bundle order preserved."""
        metas: List[AccountMeta] = []
        for bundle in self.bundles:
            metas.extend(bundle.accounts)
        return metas

    def bundle(self, name: str) -> ProtocolBundle:
        for bundle in self.bundles:
            if bundle.name == name:
                return bundle
        raise KeyError(name)

    def lookup_addresses(self, owner: Pubkey) -> List[Pubkey]:
        """Every address a user-facing instruction touches, de-duplicated in first-seen order."""
        user = self.user_accounts(owner)
        candidates = [
            owner,
            self.config,
            user.usdc,
            user.shares,
            self.vault_usdc,
            self.share_mint,
            self.usdc_mint,
            self.token_program,
            self.associated_token_program,
            self.system_program,
            self.rent_sysvar,
        ]
        for bundle in self.bundles:
            candidates.extend(bundle.addresses())

        seen = set()
        ordered: List[Pubkey] = []
        for address in candidates:
            if address not in seen:
                seen.add(address)
                ordered.append(address)
        return ordered

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _resolve_seed(self, seed: str) -> bytes:
        if seed == "$config":
            return bytes(self.config)
        if seed.startswith("key:"):
            return bytes(_pubkey(seed[4:], "seed"))
        return seed.encode("utf-8")

    def _resolve_owner(self, value: str) -> Pubkey:
        return self.config if value == "$config" else _pubkey(value, "ata owner")

    def _resolve_entry(self, entry: Dict[str, Any], where: str) -> AccountMeta:
        if "pubkey" in entry:
            address = _pubkey(entry["pubkey"], where)
        elif "ata" in entry:
            ata = entry["ata"]
            address = get_associated_token_address(
                self._resolve_owner(ata.get("owner", "$config")),
                _pubkey(ata.get("mint"), f"{where} mint"),
            )
        elif "pda" in entry:
            pda = entry["pda"]
            seeds = [self._resolve_seed(str(seed)) for seed in pda.get("seeds", [])]
            address = Pubkey.find_program_address(seeds, _pubkey(pda.get("program"), f"{where} program"))[0]
        else:
            raise ConfigError(f"{where}: entry needs one of 'pubkey', 'ata' or 'pda'")
        return AccountMeta(
            pubkey=address,
            is_signer=bool(entry.get("signer", False)),
            is_writable=bool(entry.get("writable", False)),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgramRegistry":
        if not data:
            raise ConfigError("Registry configuration is empty")
        for key in ("program_id", "usdc_mint"):
            if key not in data:
                raise ConfigError(f"Registry is missing '{key}'")

        registry = cls(
            program_id=_pubkey(data["program_id"], "program_id"),
            usdc_mint=_pubkey(data["usdc_mint"], "usdc_mint"),
        )
        if "token_program" in data:
            registry.token_program = _pubkey(data["token_program"], "token_program")

        bundles: List[ProtocolBundle] = []
        for index, raw in enumerate(data.get("bundles", [])):
            name = raw.get("name") or f"bundle_{index}"
            accounts = tuple(
                registry._resolve_entry(entry, f"{name}[{pos}]")
                for pos, entry in enumerate(raw.get("accounts", []))
            )
            if not accounts:
                raise ConfigError(f"Bundle '{name}' has no accounts")
            bundles.append(ProtocolBundle(name=name, accounts=accounts))
        registry.bundles = tuple(bundles)
        return registry

    @classmethod
    def load(cls, path: Path) -> "ProgramRegistry":
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read registry {path}: {e}") from e
        return cls.from_dict(data.get("registry", data))
