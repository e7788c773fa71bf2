"""Settings loading: JSON base + local override, env substitution and env overrides."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import base58
from solders.keypair import Keypair

from aggregator_client.errors import ConfigError

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = ROOT / "config"
BASE_CONFIG = CONFIG_DIR / "aggregator.json"
LOCAL_CONFIG = CONFIG_DIR / "aggregator.local.json"

COMMITMENTS = ("processed", "confirmed", "finalized")
# Extend instructions must fit a single legacy-sized packet.
MAX_BATCH_SIZE = 30


@dataclass
class TransactionSettings:
    compute_unit_limit: int = 1_400_000
    compute_unit_price: int = 1  # micro-lamports per compute unit


@dataclass
class SubmissionSettings:
    send_attempts: int = 3
    rpc_max_retries: int = 3
    skip_preflight: bool = False
    simulate_before_send: bool = False
    confirm_timeout_seconds: Optional[float] = 90.0
    poll_interval: float = 0.5
    max_poll_interval: float = 2.0


@dataclass
class LookupTableSettings:
    batch_size: int = 20
    settle_seconds: float = 0.5
    chunk_retries: int = 2
    visibility_timeout: float = 30.0
    poll_interval: float = 0.5


@dataclass
class EventSettings:
    settle_timeout: float = 10.0


@dataclass
class ClientSettings:
    rpc_url: str = "http://127.0.0.1:8899"
    ws_url: str = "ws://127.0.0.1:8900"
    cluster: str = "localnet"
    commitment: str = "confirmed"
    keypair_path: Optional[str] = None
    transactions: TransactionSettings = field(default_factory=TransactionSettings)
    submission: SubmissionSettings = field(default_factory=SubmissionSettings)
    lookup_table: LookupTableSettings = field(default_factory=LookupTableSettings)
    events: EventSettings = field(default_factory=EventSettings)
    registry: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_mainnet(self) -> bool:
        return self.cluster in ("mainnet", "mainnet-beta")

    def validate(self) -> "ClientSettings":
        if self.commitment not in COMMITMENTS:
            raise ConfigError(f"Unknown commitment '{self.commitment}', expected one of {COMMITMENTS}")
        if not 1 <= self.lookup_table.batch_size <= MAX_BATCH_SIZE:
            raise ConfigError(
                f"lookup_table.batch_size must be within 1..{MAX_BATCH_SIZE}, got {self.lookup_table.batch_size}"
            )
        if self.transactions.compute_unit_limit <= 0:
            raise ConfigError("transactions.compute_unit_limit must be positive")
        if self.transactions.compute_unit_price < 0:
            raise ConfigError("transactions.compute_unit_price must not be negative")
        if self.submission.send_attempts < 1:
            raise ConfigError("submission.send_attempts must be at least 1")
        if self.lookup_table.chunk_retries < 0:
            raise ConfigError("lookup_table.chunk_retries must not be negative")
        timeout = self.submission.confirm_timeout_seconds
        if timeout is not None and timeout <= 0:
            raise ConfigError("submission.confirm_timeout_seconds must be positive or null")
        return self


_SECTIONS = {
    "transactions": TransactionSettings,
    "submission": SubmissionSettings,
    "lookup_table": LookupTableSettings,
    "events": EventSettings,
}

_ENV_OVERRIDES = {
    "AGGREGATOR_RPC_URL": "rpc_url",
    "AGGREGATOR_WS_URL": "ws_url",
    "AGGREGATOR_CLUSTER": "cluster",
    "AGGREGATOR_COMMITMENT": "commitment",
    "AGGREGATOR_KEYPAIR": "keypair_path",
}


def _load_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a JSON object in {path}")
    return data


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _substitute_env(value: Any) -> Any:
    """Replace ``${NAME}`` placeholders recursively; unset variables become None."""
    if isinstance(value, dict):
        return {key: _substitute_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_substitute_env(item) for item in value]
    if not isinstance(value, str) or "${" not in value:
        return value
    start = value.find("${")
    end = value.find("}", start + 2)
    if end == -1:
        return value
    env_name = value[start + 2 : end]
    env_value = os.environ.get(env_name)
    if not env_value:
        logger.warning(f"Config placeholder ${{{env_name}}} is not set")
        return None
    return _substitute_env(value.replace(f"${{{env_name}}}", env_value))


def _build_section(cls, data: Any):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"Section for {cls.__name__} must be an object")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown keys for {cls.__name__}: {sorted(unknown)}")
    return cls(**data)


def settings_from_dict(payload: Dict[str, Any]) -> ClientSettings:
    payload = _substitute_env(payload)
    kwargs: Dict[str, Any] = {}
    for key, value in payload.items():
        if key in _SECTIONS:
            kwargs[key] = _build_section(_SECTIONS[key], value)
        elif key in {f.name for f in fields(ClientSettings)}:
            if value is not None:
                kwargs[key] = value
        else:
            raise ConfigError(f"Unknown settings key '{key}'")

    for env_name, attr in _ENV_OVERRIDES.items():
        env_value = os.environ.get(env_name)
        if env_value:
            kwargs[attr] = env_value

    return ClientSettings(**kwargs).validate()


def load_settings(path: Optional[str] = None) -> ClientSettings:
    """Load settings from ``path`` or the repository config directory."""
    if path:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        payload = _load_json(config_path)
    else:
        payload = _load_json(BASE_CONFIG)
        local = _load_json(LOCAL_CONFIG)
        if local:
            payload = _deep_merge(payload, local)
        if not payload:
            logger.info("No aggregator config found, using local validator defaults")
    return settings_from_dict(payload)


def _keypair_from_file(path: Path) -> Keypair:
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read keypair file {path}: {e}") from e
    if not isinstance(data, list):
        raise ConfigError(f"Keypair file {path} must hold a JSON byte array")
    return Keypair.from_bytes(bytes(data))


def load_keypair(path: Optional[str] = None) -> Keypair:
    """Load the signer from an explicit path, the Solana CLI default, or SOLANA_PRIVATE_KEY."""
    if path:
        return _keypair_from_file(Path(path).expanduser())

    solana_default = Path.home() / ".config" / "solana" / "id.json"
    if solana_default.exists():
        return _keypair_from_file(solana_default)

    env_key = os.environ.get("SOLANA_PRIVATE_KEY")
    if env_key:
        try:
            return Keypair.from_bytes(base58.b58decode(env_key))
        except ValueError as e:
            raise ConfigError(f"SOLANA_PRIVATE_KEY is not a valid base58 keypair: {e}") from e

    raise ConfigError("No keypair found; pass --keypair or set SOLANA_PRIVATE_KEY")
