"""aggregator-client CLI entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from aggregator_client.config import ClientSettings, load_keypair, load_settings
from aggregator_client.errors import AggregatorClientError, ConfigError
from aggregator_client.events import EventCorrelator, EventSink
from aggregator_client.ledger import LedgerClient
from aggregator_client.logging_config import setup_logging
from aggregator_client.lookup_table import LookupTableManager
from aggregator_client.program import BPS_BASE, AggregatorProgram
from aggregator_client.registry import ProgramRegistry
from aggregator_client.scenario import LAMPORTS_PER_SOL, ScenarioDriver
from aggregator_client.submitter import TransactionSubmitter
from aggregator_client.transactions import TransactionBuilder

logger = logging.getLogger(__name__)

DEFAULT_AMOUNT = 100_000_000  # 100 USDC at 6 decimals
DEFAULT_FEE_BPS = 5_000
DEFAULT_ALLOCATION_BPS = 7_000


def _tag(level: str) -> str:
    return f"[{level}]"


def _print_status(level: str, message: str) -> None:
    print(f"{_tag(level)} {message}")


@dataclass
class Components:
    settings: ClientSettings
    keypair: Keypair
    ledger: LedgerClient
    builder: TransactionBuilder
    submitter: TransactionSubmitter
    tables: LookupTableManager
    registry: Optional[ProgramRegistry] = None
    program: Optional[AggregatorProgram] = None
    sink: Optional[EventSink] = None
    correlator: Optional[EventCorrelator] = None

    def require_registry(self) -> ProgramRegistry:
        if self.registry is None:
            raise ConfigError("No 'registry' section configured; see config/aggregator.example.json")
        return self.registry

    def driver(self) -> ScenarioDriver:
        registry = self.require_registry()
        return ScenarioDriver(
            ledger=self.ledger,
            tables=self.tables,
            builder=self.builder,
            submitter=self.submitter,
            correlator=self.correlator,
            program=self.program,
            registry=registry,
            settings=self.settings,
            user=self.keypair,
            sink=self.sink,
        )


def build_components(settings: ClientSettings, keypair: Keypair) -> Components:
    """Wire every component from settings; nothing here touches the network."""
    ledger = LedgerClient(
        settings.rpc_url,
        settings.ws_url,
        commitment=settings.commitment,
        allow_airdrop=not settings.is_mainnet,
    )
    builder = TransactionBuilder(ledger, settings.transactions)
    submitter = TransactionSubmitter(ledger, settings.submission, commitment=settings.commitment)
    tables = LookupTableManager(ledger, builder, submitter, settings.lookup_table)
    components = Components(
        settings=settings,
        keypair=keypair,
        ledger=ledger,
        builder=builder,
        submitter=submitter,
        tables=tables,
    )
    if settings.registry:
        registry = ProgramRegistry.from_dict(settings.registry)
        sink = EventSink()
        components.registry = registry
        components.program = AggregatorProgram(registry)
        components.sink = sink
        components.correlator = EventCorrelator(
            ledger, registry.program_id, sink, commitment=settings.commitment
        )
    return components


def _parse_pubkey(value: str) -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not a base58 address: {value}") from e


def _parse_bps(value: str) -> int:
    bps = int(value)
    if not 0 <= bps <= BPS_BASE:
        raise argparse.ArgumentTypeError(f"must be within 0..{BPS_BASE}")
    return bps


# ============================================================================
# Commands
# ============================================================================

async def cmd_table_create(components: Components, args: argparse.Namespace) -> int:
    keypair = components.keypair
    address = await components.tables.create_table(keypair, keypair, reference_slot=args.slot)
    table = await components.tables.wait_until_visible(address)
    _print_status("OK", f"Lookup table created: {table.key}")
    return 0


async def cmd_table_extend(components: Components, args: argparse.Namespace) -> int:
    keypair = components.keypair
    signatures = await components.tables.extend_table(
        args.table, args.addresses, authority=keypair, payer=keypair
    )
    for signature in signatures:
        _print_status("OK", f"Extend: {signature}")
    table = await components.tables.wait_until_visible(args.table, min_addresses=len(args.addresses))
    _print_status("OK", f"{table.key} now holds {len(table.addresses)} addresses")
    return 0


async def cmd_table_show(components: Components, args: argparse.Namespace) -> int:
    table = await components.tables.fetch_table(args.table)
    print(f"Lookup table {table.key} ({len(table.addresses)} addresses)")
    for index, address in enumerate(table.addresses):
        print(f"  {index:3d}  {address}")
    return 0


async def cmd_simulate_deposit(components: Components, args: argparse.Namespace) -> int:
    components.require_registry()
    keypair = components.keypair
    instruction = components.program.deposit(keypair.pubkey(), args.amount)
    tables = [await components.tables.fetch_table(args.table)] if args.table else []
    tx = await components.builder.build(instruction, keypair, lookup_tables=tables)
    outcome = await components.ledger.simulate_transaction(tx.transaction)
    for index, line in enumerate(outcome.logs):
        print(f"  {index}: {line}")
    if outcome.ok:
        _print_status("OK", f"Deposit of {args.amount} simulates cleanly ({outcome.units_consumed} CU)")
        return 0
    _print_status("ERROR", f"Simulation failed: {outcome.err}")
    return 1


def airdrop_targets(components: Components, extra: Optional[List[Pubkey]] = None) -> List[Pubkey]:
    """The signer and the aggregator config account, plus any extra recipients."""
    registry = components.require_registry()
    targets = [components.keypair.pubkey(), registry.config]
    for address in extra or []:
        if address not in targets:
            targets.append(address)
    return targets


async def cmd_run(components: Components, args: argparse.Namespace) -> int:
    driver = components.driver()
    if args.airdrop:
        targets = airdrop_targets(components, args.airdrop_to)
        await driver.fund(targets, int(args.airdrop * LAMPORTS_PER_SOL))
    result = await driver.run(args.amount, args.fee_bps, args.allocation_bps)
    print(result.report)
    for step, signature in result.signatures.items():
        _print_status("OK", f"{step}: {signature}")
    return 0


async def _dispatch(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    keypair = load_keypair(args.keypair or settings.keypair_path)
    components = build_components(settings, keypair)
    logger.info(f"Using {settings.cluster} at {settings.rpc_url} as {keypair.pubkey()}")
    async with components.ledger:
        return await args.func(components, args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aggregator-client",
        description="Drive the yield aggregator program over versioned transactions.",
    )
    parser.add_argument("--config", help="Settings JSON (default: config/aggregator.json).")
    parser.add_argument("--keypair", help="Signer keypair file.")
    parser.add_argument("--log-level", default="INFO", help="Logging level.")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines.")
    parser.add_argument("--log-file", help="Also write JSON logs to this rotating file.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    table_parser = subparsers.add_parser("table", help="Manage address lookup tables.")
    table_sub = table_parser.add_subparsers(dest="table_command", required=True)

    create_parser = table_sub.add_parser("create", help="Create an empty lookup table.")
    create_parser.add_argument("--slot", type=int, help="Reference slot (default: latest finalized).")
    create_parser.set_defaults(func=cmd_table_create)

    extend_parser = table_sub.add_parser("extend", help="Append addresses to a lookup table.")
    extend_parser.add_argument("table", type=_parse_pubkey)
    extend_parser.add_argument("addresses", type=_parse_pubkey, nargs="+")
    extend_parser.set_defaults(func=cmd_table_extend)

    show_parser = table_sub.add_parser("show", help="Print a lookup table's addresses.")
    show_parser.add_argument("table", type=_parse_pubkey)
    show_parser.set_defaults(func=cmd_table_show)

    simulate_parser = subparsers.add_parser("simulate-deposit", help="Dry-run a deposit and print its logs.")
    simulate_parser.add_argument("amount", type=int)
    simulate_parser.add_argument("--table", type=_parse_pubkey, help="Lookup table holding the deposit accounts.")
    simulate_parser.set_defaults(func=cmd_simulate_deposit)

    run_parser = subparsers.add_parser("run", help="Run the full scenario with event capture.")
    run_parser.add_argument("--amount", type=int, default=DEFAULT_AMOUNT)
    run_parser.add_argument("--fee-bps", type=_parse_bps, default=DEFAULT_FEE_BPS)
    run_parser.add_argument("--allocation-bps", type=_parse_bps, default=DEFAULT_ALLOCATION_BPS)
    run_parser.add_argument("--airdrop", type=float, default=0.0, help="SOL to airdrop first (test clusters).")
    run_parser.add_argument(
        "--airdrop-to",
        type=_parse_pubkey,
        action="append",
        default=[],
        help="Extra airdrop recipient besides the signer and config account (repeatable).",
    )
    run_parser.set_defaults(func=cmd_run)

    return parser


def run(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, json_format=args.json_logs, log_file=args.log_file)
    try:
        exit_code = asyncio.run(_dispatch(args))
    except AggregatorClientError as e:
        logger.debug("Command failed", exc_info=True)
        _print_status("ERROR", e.details())
        exit_code = 2 if isinstance(e, ConfigError) else 1
    except KeyboardInterrupt:
        _print_status("WARN", "Interrupted")
        exit_code = 130
    raise SystemExit(exit_code)
