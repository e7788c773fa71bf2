"""
Client for a two-protocol USDC yield aggregator program on Solana.

Builds v0 transactions against address lookup tables, submits them with
block-height based expiry, and correlates the program's events with the
transactions that produced them.
"""

from aggregator_client.config import ClientSettings, load_keypair, load_settings
from aggregator_client.errors import (
    AggregatorClientError,
    AlreadyProcessedError,
    ConfigError,
    ConfirmationTimeoutError,
    ExecutionError,
    FinalityTimeoutError,
    InstructionArgumentError,
    SimulationError,
    StaleBlockhashError,
    StaleSlotError,
    SubscriptionError,
    TableNotReadyError,
    TransactionBuildError,
    TransportError,
)
from aggregator_client.events import EVENT_KINDS, EventCorrelator, EventRecord, EventSink
from aggregator_client.ledger import LedgerClient
from aggregator_client.lookup_table import LookupTableManager
from aggregator_client.program import AggregatorProgram
from aggregator_client.registry import ProgramRegistry, ProtocolBundle
from aggregator_client.scenario import ScenarioDriver, ScenarioResult
from aggregator_client.submitter import TransactionSubmitter
from aggregator_client.transactions import SignedTransaction, TransactionBuilder

__version__ = "0.1.0"

__all__ = [
    "AggregatorClientError",
    "AggregatorProgram",
    "AlreadyProcessedError",
    "ClientSettings",
    "ConfigError",
    "ConfirmationTimeoutError",
    "EVENT_KINDS",
    "EventCorrelator",
    "EventRecord",
    "EventSink",
    "ExecutionError",
    "FinalityTimeoutError",
    "InstructionArgumentError",
    "LedgerClient",
    "LookupTableManager",
    "ProgramRegistry",
    "ProtocolBundle",
    "ScenarioDriver",
    "ScenarioResult",
    "SignedTransaction",
    "SimulationError",
    "StaleBlockhashError",
    "StaleSlotError",
    "SubscriptionError",
    "TableNotReadyError",
    "TransactionBuildError",
    "TransactionSubmitter",
    "TransportError",
    "load_keypair",
    "load_settings",
]
