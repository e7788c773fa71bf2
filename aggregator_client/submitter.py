"""Send signed transactions, confirm them at a commitment level, surface failures with logs."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

from aggregator_client.config import SubmissionSettings
from aggregator_client.errors import (
    AlreadyProcessedError,
    ConfirmationTimeoutError,
    ExecutionError,
    FinalityTimeoutError,
    SimulationError,
    StaleBlockhashError,
    TransportError,
)
from aggregator_client.finality import backoff_delay, wait_for
from aggregator_client.ledger import LedgerClient, SignatureStatus, SimulationOutcome, is_blockhash_error
from aggregator_client.logging_config import bind_signature, short
from aggregator_client.program import decode_program_error
from aggregator_client.transactions import SignedTransaction

logger = logging.getLogger(__name__)

COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}

_CUSTOM_ERROR = re.compile(r"Custom\((\d+)\)")


def describe_error(error: Optional[str]) -> Optional[str]:
    """Return a short, human-readable hint for common Solana transaction errors."""
    if not error:
        return None

    lower = error.lower()
    if "alreadyprocessed" in lower:
        return "Transaction already processed; likely duplicate or replayed."
    if is_blockhash_error(error):
        return "Blockhash expired; rebuild and re-sign the transaction."
    if "accountinuse" in lower:
        return "Account in use; retry with backoff."
    if "insufficientfunds" in lower:
        return "Insufficient funds for fee or transfer."
    if "invalidaccountdata" in lower:
        return "Invalid account data; verify mint/account ownership."
    if "accountnotfound" in lower or "uninitializedaccount" in lower:
        return "Account not initialized; token accounts must exist before this call."
    if "computationalbudgetexceeded" in lower or "exceeded cus" in lower:
        return "Compute budget exhausted; raise transactions.compute_unit_limit."
    if "signatureverificationfailed" in lower:
        return "Signature verification failed; ensure signer and recent blockhash match."

    match = _CUSTOM_ERROR.search(error)
    if match:
        code = int(match.group(1))
        decoded = decode_program_error(code)
        if decoded:
            return f"Program rejected the instruction ({decoded})."
        return f"Custom program error {code}; program-specific constraint failed."
    return None


def classify_error(error: Optional[str]) -> str:
    """Classify an error string as retryable, permanent or unknown."""
    if not error:
        return "unknown"

    lower = error.lower()
    if "alreadyprocessed" in lower:
        return "permanent"
    if is_blockhash_error(error) or "accountinuse" in lower:
        return "retryable"
    if "timeout" in lower or "timed out" in lower:
        return "retryable"
    if "connection" in lower or "network" in lower:
        return "retryable"
    if "rate" in lower or "429" in lower or "503" in lower:
        return "retryable"
    if "insufficientfunds" in lower or "invalidaccountdata" in lower:
        return "permanent"
    if "signatureverificationfailed" in lower or "custom" in lower:
        return "permanent"
    return "unknown"


def program_error_from(error: Optional[str]) -> Optional[str]:
    if not error:
        return None
    match = _CUSTOM_ERROR.search(error)
    return decode_program_error(int(match.group(1))) if match else None


class TransactionSubmitter:
    """
    Submits a signed transaction and blocks until it reaches the target commitment.

    Send retries reuse the exact signed bytes. A failed or expired transaction is
    never rebuilt here: a rebuild gets a new blockhash and therefore a new,
    unrelated identity, and only the caller can decide that is safe.
    """

    def __init__(self, ledger: LedgerClient, settings: SubmissionSettings, commitment: str = "confirmed"):
        self.ledger = ledger
        self.settings = settings
        self.commitment = commitment

    async def simulate(self, tx: SignedTransaction) -> SimulationOutcome:
        """Diagnostic pre-flight; raises SimulationError when the program rejects it."""
        outcome = await self.ledger.simulate_transaction(tx.transaction)
        if not outcome.ok:
            logger.error(f"Simulation of {short(tx.signature)} failed: {outcome.err}")
            if is_blockhash_error(outcome.err):
                raise StaleBlockhashError(f"Simulation rejected blockhash: {outcome.err}", signature=tx.signature)
            error = SimulationError(
                f"Simulation failed: {outcome.err}",
                logs=outcome.logs,
                err=outcome.err,
                hint=describe_error(outcome.err),
            )
            error.retryable = classify_error(outcome.err) == "retryable"
            raise error
        logger.debug(f"Simulation of {short(tx.signature)} ok, {outcome.units_consumed} CU")
        return outcome

    async def submit(
        self,
        tx: SignedTransaction,
        *,
        simulate: Optional[bool] = None,
        commitment: Optional[str] = None,
    ) -> str:
        """Send ``tx`` and return its signature once confirmed at ``commitment``."""
        should_simulate = self.settings.simulate_before_send if simulate is None else simulate
        if should_simulate:
            await self.simulate(tx)

        signature = await self._send(tx)
        bind_signature(signature)
        await self._confirm(tx, signature, commitment or self.commitment)
        logger.info(f"Transaction {short(signature)} confirmed")
        return signature

    async def _send(self, tx: SignedTransaction) -> str:
        attempts = self.settings.send_attempts
        for attempt in range(attempts):
            try:
                signature = await self.ledger.send_transaction(
                    tx.transaction,
                    skip_preflight=self.settings.skip_preflight,
                    max_retries=self.settings.rpc_max_retries,
                )
            except TransportError as e:
                if attempt == attempts - 1:
                    logger.error(f"Send of {short(tx.signature)} failed after {attempts} attempts: {e}")
                    raise
                wait_time = backoff_delay(self.settings.poll_interval, attempt)
                logger.warning(f"Send attempt {attempt + 1}/{attempts} failed ({e}), retrying in {wait_time:.1f}s")
                await asyncio.sleep(wait_time)
                continue
            except AlreadyProcessedError as e:
                if attempt == 0:
                    e.hint = e.hint or describe_error(e.err)
                    logger.error(f"Preflight rejected {short(tx.signature)}: {e}")
                    raise
                # An earlier attempt landed even though its response was lost
                logger.info(f"Send of {short(tx.signature)} was already processed by an earlier attempt")
                return tx.signature
            except SimulationError as e:
                e.hint = e.hint or describe_error(e.err)
                e.retryable = classify_error(e.err) == "retryable"
                logger.error(f"Preflight rejected {short(tx.signature)}: {e}")
                raise
            logger.info(f"Transaction sent: {short(signature)}")
            return signature
        raise AssertionError("unreachable")

    async def _confirm(self, tx: SignedTransaction, signature: str, commitment: str) -> None:
        target = COMMITMENT_RANK[commitment]

        async def probe() -> Optional[SignatureStatus]:
            status = await self.ledger.get_signature_status(signature)
            if status is not None:
                if status.err is not None:
                    return status
                if COMMITMENT_RANK.get(status.confirmation, 0) >= target:
                    return status
                return None
            block_height = await self.ledger.get_block_height()
            if block_height > tx.last_valid_block_height:
                raise StaleBlockhashError(
                    f"Transaction {short(signature)} expired at block height {block_height} "
                    f"(valid through {tx.last_valid_block_height})",
                    signature=signature,
                )
            return None

        try:
            status = await wait_for(
                probe,
                timeout=self.settings.confirm_timeout_seconds,
                interval=self.settings.poll_interval,
                max_interval=self.settings.max_poll_interval,
                retry_on=(TransportError,),
                description=f"{commitment} status of {short(signature)}",
            )
        except FinalityTimeoutError as e:
            raise ConfirmationTimeoutError(
                f"Transaction {short(signature)} not {commitment} after "
                f"{self.settings.confirm_timeout_seconds}s",
                signature=signature,
            ) from e

        if status.err is not None:
            await self._raise_execution_error(signature, status.err)

    async def _raise_execution_error(self, signature: str, err: str) -> None:
        try:
            logs = await self.ledger.get_transaction_logs(signature)
        except TransportError as e:
            logger.warning(f"Could not fetch logs for {short(signature)}: {e}")
            logs = []
        if is_blockhash_error(err):
            raise StaleBlockhashError(f"Transaction {short(signature)} failed: {err}", signature=signature)
        logger.error(f"Transaction {short(signature)} failed on chain: {err}")
        error = ExecutionError(
            f"Transaction {signature} failed: {err}",
            signature=signature,
            logs=logs,
            err=err,
            program_error=program_error_from(err),
            hint=describe_error(err),
        )
        error.retryable = classify_error(err) == "retryable"
        raise error
