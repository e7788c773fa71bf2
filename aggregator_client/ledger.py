"""Thin async RPC surface over solana-py: one method per ledger operation the client needs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Optional

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solana.rpc.websocket_api import connect
from solders.address_lookup_table_account import AddressLookupTable, AddressLookupTableAccount
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.rpc.config import RpcTransactionLogsFilterMentions
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus
from websockets.exceptions import ConnectionClosed, WebSocketException

from aggregator_client.errors import AlreadyProcessedError, SimulationError, StaleBlockhashError, TransportError
from aggregator_client.finality import backoff_delay
from aggregator_client.logging_config import short

logger = logging.getLogger(__name__)

def confirmation_name(status: Optional[TransactionConfirmationStatus]) -> str:
    # Rooted transactions report no status name
    if status is None or status == TransactionConfirmationStatus.Finalized:
        return "finalized"
    if status == TransactionConfirmationStatus.Confirmed:
        return "confirmed"
    return "processed"


def is_blockhash_error(error: Optional[str]) -> bool:
    if not error:
        return False
    lower = error.lower()
    return "blockhashnotfound" in lower or "blockhash not found" in lower or "blockhash expired" in lower


def is_already_processed(error: Optional[str]) -> bool:
    if not error:
        return False
    lower = error.lower()
    return "alreadyprocessed" in lower or "already been processed" in lower


@dataclass(frozen=True)
class BlockhashInfo:
    blockhash: Hash
    last_valid_block_height: int


@dataclass(frozen=True)
class TokenBalance:
    amount: int
    decimals: int


@dataclass(frozen=True)
class SignatureStatus:
    slot: int
    confirmation: str  # processed | confirmed | finalized
    err: Optional[str] = None


@dataclass(frozen=True)
class SimulationOutcome:
    err: Optional[str]
    logs: List[str] = field(default_factory=list)
    units_consumed: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.err is None


@dataclass(frozen=True)
class LogNotification:
    signature: str
    slot: int
    logs: List[str]
    err: Optional[str] = None


class LedgerClient:
    """
    Async wrapper around ``AsyncClient`` and the logs websocket.

    Transport failures surface as ``TransportError``; preflight rejections of a
    send surface as ``SimulationError`` or ``StaleBlockhashError``. Nothing here
    retries: retry policy belongs to the callers.
    """

    def __init__(
        self,
        rpc_url: str,
        ws_url: str,
        *,
        commitment: str = "confirmed",
        allow_airdrop: bool = True,
        timeout: float = 30.0,
        max_reconnects: int = 3,
    ):
        self.rpc_url = rpc_url
        self.ws_url = ws_url
        self.commitment = Commitment(commitment)
        self.allow_airdrop = allow_airdrop
        self.max_reconnects = max_reconnects
        self._client = AsyncClient(rpc_url, commitment=self.commitment, timeout=timeout)

    async def __aenter__(self) -> "LedgerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.close()

    def _commitment(self, commitment: Optional[str]) -> Commitment:
        return Commitment(commitment) if commitment else self.commitment

    async def _call(self, method: str, coro):
        try:
            return await coro
        except (SolanaRpcException, httpx.HTTPError, asyncio.TimeoutError) as e:
            raise TransportError(f"{method} failed: {e}", method=method) from e
        except RPCException as e:
            raise TransportError(f"{method} rejected: {e}", method=method) from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_latest_blockhash(self, commitment: Optional[str] = None) -> BlockhashInfo:
        resp = await self._call(
            "getLatestBlockhash",
            self._client.get_latest_blockhash(self._commitment(commitment)),
        )
        return BlockhashInfo(resp.value.blockhash, resp.value.last_valid_block_height)

    async def get_slot(self, commitment: Optional[str] = None) -> int:
        resp = await self._call("getSlot", self._client.get_slot(self._commitment(commitment)))
        return resp.value

    async def get_block_height(self, commitment: Optional[str] = None) -> int:
        resp = await self._call(
            "getBlockHeight", self._client.get_block_height(self._commitment(commitment))
        )
        return resp.value

    async def get_balance(self, address: Pubkey) -> int:
        resp = await self._call("getBalance", self._client.get_balance(address, self.commitment))
        return resp.value

    async def get_token_account_balance(self, address: Pubkey) -> TokenBalance:
        resp = await self._call(
            "getTokenAccountBalance",
            self._client.get_token_account_balance(address, self.commitment),
        )
        return TokenBalance(amount=int(resp.value.amount), decimals=resp.value.decimals)

    async def get_account_data(self, address: Pubkey) -> Optional[bytes]:
        resp = await self._call("getAccountInfo", self._client.get_account_info(address, self.commitment))
        if resp.value is None:
            return None
        return bytes(resp.value.data)

    async def get_lookup_table(self, address: Pubkey) -> Optional[AddressLookupTableAccount]:
        data = await self.get_account_data(address)
        if data is None:
            return None
        table = AddressLookupTable.deserialize(data)
        return AddressLookupTableAccount(key=address, addresses=list(table.addresses))

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        resp = await self._call(
            "getSignatureStatuses",
            self._client.get_signature_statuses([Signature.from_string(signature)]),
        )
        value = resp.value[0] if resp.value else None
        if value is None:
            return None
        confirmation = confirmation_name(value.confirmation_status)
        err = str(value.err) if value.err is not None else None
        return SignatureStatus(slot=value.slot, confirmation=confirmation, err=err)

    async def get_transaction_logs(self, signature: str) -> List[str]:
        resp = await self._call(
            "getTransaction",
            self._client.get_transaction(
                Signature.from_string(signature),
                encoding="json",
                commitment=Commitment("confirmed"),
                max_supported_transaction_version=0,
            ),
        )
        if resp.value is None or resp.value.transaction.meta is None:
            return []
        return list(resp.value.transaction.meta.log_messages or [])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def send_transaction(
        self,
        transaction: VersionedTransaction,
        *,
        skip_preflight: bool = False,
        max_retries: Optional[int] = None,
    ) -> str:
        opts = TxOpts(
            skip_confirmation=True,
            skip_preflight=skip_preflight,
            preflight_commitment=self.commitment,
            max_retries=max_retries,
        )
        try:
            resp = await self._client.send_raw_transaction(bytes(transaction), opts=opts)
        except (SolanaRpcException, httpx.HTTPError, asyncio.TimeoutError) as e:
            raise TransportError(f"sendTransaction failed: {e}", method="sendTransaction") from e
        except RPCException as e:
            raise self._classify_send_rejection(e) from e
        return str(resp.value)

    @staticmethod
    def _classify_send_rejection(exc: RPCException) -> Exception:
        detail = exc.args[0] if exc.args else None
        message = getattr(detail, "message", None) or str(exc)
        data = getattr(detail, "data", None)
        logs = list(getattr(data, "logs", None) or [])
        err = getattr(data, "err", None)
        err_text = str(err) if err is not None else None

        if is_blockhash_error(err_text) or is_blockhash_error(message):
            return StaleBlockhashError(f"Send rejected: {message}")
        if is_already_processed(err_text) or is_already_processed(message):
            return AlreadyProcessedError(f"Preflight failed: {message}", logs=logs, err=err_text or "AlreadyProcessed")
        if data is not None and hasattr(data, "logs"):
            return SimulationError(f"Preflight failed: {message}", logs=logs, err=err_text)
        return TransportError(f"sendTransaction rejected: {message}", method="sendTransaction")

    async def simulate_transaction(self, transaction: VersionedTransaction) -> SimulationOutcome:
        resp = await self._call(
            "simulateTransaction",
            self._client.simulate_transaction(transaction, sig_verify=False, commitment=self.commitment),
        )
        value = resp.value
        err = str(value.err) if value.err is not None else None
        return SimulationOutcome(err=err, logs=list(value.logs or []), units_consumed=value.units_consumed)

    async def request_airdrop(self, address: Pubkey, lamports: int) -> str:
        if not self.allow_airdrop:
            raise TransportError("Airdrops are only available on test clusters", method="requestAirdrop")
        resp = await self._call(
            "requestAirdrop", self._client.request_airdrop(address, lamports, self.commitment)
        )
        logger.info(f"Airdrop of {lamports} lamports to {short(address)} requested")
        return str(resp.value)

    # ------------------------------------------------------------------
    # Log stream
    # ------------------------------------------------------------------

    async def stream_logs(
        self,
        program_id: Pubkey,
        commitment: Optional[str] = None,
        on_subscribed: Optional[Callable[[], None]] = None,
    ) -> AsyncIterator[LogNotification]:
        """
        Yield log notifications for every transaction mentioning ``program_id``.

        Reconnects with backoff on dropped connections; notifications produced
        while disconnected are not replayed.
        """
        reconnects = 0
        while True:
            try:
                async with connect(self.ws_url) as websocket:
                    await websocket.logs_subscribe(
                        RpcTransactionLogsFilterMentions(program_id),
                        commitment=self._commitment(commitment),
                    )
                    first = await websocket.recv()
                    subscription_id = first[0].result
                    logger.info(f"Log subscription {subscription_id} open for {short(program_id)}")
                    if on_subscribed is not None:
                        on_subscribed()
                    reconnects = 0
                    try:
                        async for messages in websocket:
                            for message in messages:
                                value = message.result.value
                                yield LogNotification(
                                    signature=str(value.signature),
                                    slot=message.result.context.slot,
                                    logs=list(value.logs or []),
                                    err=str(value.err) if value.err is not None else None,
                                )
                    finally:
                        if websocket.open:
                            await websocket.logs_unsubscribe(subscription_id)
                return
            except (ConnectionClosed, OSError) as e:
                if reconnects >= self.max_reconnects:
                    raise TransportError(f"Log stream lost: {e}", method="logsSubscribe") from e
                wait_time = backoff_delay(1.0, reconnects)
                reconnects += 1
                logger.warning(f"Log stream dropped ({e}), reconnecting in {wait_time:.1f}s")
                await asyncio.sleep(wait_time)
            except WebSocketException as e:
                # Handshake rejections (403, 429) and bad URIs do not heal by reconnecting
                raise TransportError(f"Log subscription failed: {e}", method="logsSubscribe") from e
