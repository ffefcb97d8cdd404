"""
Faucet Configuration

Loads the YAML configuration once at startup into frozen, validated
dataclasses. Missing or malformed fields raise ConfigError instead of being
silently defaulted. Key material is not part of this file: it comes from the
environment (see operator_session.py).
"""

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from eth_utils import is_hex_address, to_checksum_address
from loguru import logger

from .address_translator import Environment
from .errors import ConfigError


# Ledger-B reference meaning "the chain's native coin"
NATIVE_TOKEN_SENTINEL = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"

NETWORK_MODES = ('live', 'local')


@dataclass(frozen=True)
class Asset:
    """A distributable asset"""
    symbol: str
    decimals: int
    amount_per_request: int
    target_balance: int
    denom: Optional[str] = None            # Ledger-A bank denom
    erc20_contract: Optional[str] = None   # Ledger-B token, or NATIVE_TOKEN_SENTINEL
    evm_decimals: Optional[int] = None

    @property
    def is_native(self) -> bool:
        return self.erc20_contract == NATIVE_TOKEN_SENTINEL

    @property
    def evm_scale(self) -> int:
        """Exact multiplier from Ledger-A base units to Ledger-B base units"""
        if self.evm_decimals is None:
            return 1
        return 10 ** (self.evm_decimals - self.decimals)

    def eligible_for(self, environment: Environment) -> bool:
        if environment == Environment.LEDGER_A:
            return self.denom is not None
        if environment == Environment.LEDGER_B:
            return self.erc20_contract is not None
        return False

    def target_for(self, environment: Environment) -> int:
        """Target balance in the environment's base units"""
        if environment == Environment.LEDGER_B and self.is_native:
            return self.target_balance * self.evm_scale
        return self.target_balance

    def reference_for(self, environment: Environment) -> str:
        """Environment-specific identifier (denom or contract)"""
        if environment == Environment.LEDGER_A:
            return self.denom
        return self.erc20_contract


@dataclass(frozen=True)
class ChainSettings:
    evm_chain_id: int
    cosmos_chain_id: str
    bech32_prefix: str
    tx_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 2.0


@dataclass(frozen=True)
class LedgerASettings:
    rest_endpoint: str
    fee_denom: str
    fee_amount: int
    gas_limit: int = 200000
    pubkey_type_url: str = "/cosmos.evm.crypto.v1.ethsecp256k1.PubKey"
    request_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class LedgerBSettings:
    rpc_endpoint: str
    atomic_multisend: str
    gas_limit: int = 500000
    request_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class LimitSettings:
    window_seconds: float = 12 * 60 * 60
    address: int = 1
    ip: Optional[int] = 10


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    file: Optional[str] = None
    rotation: str = "10 MB"
    retention: int = 5


@dataclass(frozen=True)
class HistorySettings:
    db_path: str = ".faucet/history.db"


@dataclass(frozen=True)
class HealthSettings:
    cache_minutes: float = 5.0


@dataclass(frozen=True)
class FaucetConfig:
    """Complete faucet configuration"""
    network_name: str
    network_mode: str
    chain: ChainSettings
    ledger_a: LedgerASettings
    ledger_b: LedgerBSettings
    assets: Tuple[Asset, ...]
    limits: LimitSettings = field(default_factory=LimitSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    history: HistorySettings = field(default_factory=HistorySettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    testing_mode: bool = False

    def get_asset(self, symbol: str) -> Asset:
        for asset in self.assets:
            if asset.symbol == symbol:
                return asset
        raise KeyError(symbol)

    def assets_for(self, environment: Environment) -> List[Asset]:
        """Assets distributable to an environment, in config order"""
        return [asset for asset in self.assets if asset.eligible_for(environment)]


# ============================================================================
# PARSING HELPERS
# ============================================================================

def _require(section: Dict, key: str, where: str) -> Any:
    if not isinstance(section, dict) or key not in section or section[key] is None:
        raise ConfigError(f"Missing required field '{where}.{key}'")
    return section[key]


def _section(config: Dict, key: str, required: bool = True) -> Dict:
    value = config.get(key)
    if value is None:
        if required:
            raise ConfigError(f"Missing required section '{key}'")
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Section '{key}' must be a mapping")
    return value


def parse_amount(value: Any, where: str) -> int:
    """
    Parse a base-unit amount as an exact integer

    Accepts ints and strings of decimal digits. Floats are rejected since
    they cannot carry 18-decimal amounts exactly.
    """
    if isinstance(value, bool):
        raise ConfigError(f"'{where}' must be an integer amount, got {value!r}")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str) and value.strip().isdigit():
        amount = int(value.strip())
    else:
        raise ConfigError(f"'{where}' must be an integer amount in base units, got {value!r}")

    if amount < 0:
        raise ConfigError(f"'{where}' must not be negative")
    return amount


def _parse_positive_int(value: Any, where: str) -> int:
    amount = parse_amount(value, where)
    if amount == 0:
        raise ConfigError(f"'{where}' must be positive")
    return amount


def _parse_number(value: Any, where: str) -> float:
    """Parse a strictly positive number of seconds, hours or minutes"""
    if isinstance(value, bool):
        raise ConfigError(f"'{where}' must be a positive number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{where}' must be a positive number, got {value!r}") from None

    if not math.isfinite(number) or number <= 0:
        raise ConfigError(f"'{where}' must be a positive number, got {value!r}")
    return number


def _parse_address(value: Any, where: str) -> str:
    if not isinstance(value, str) or not is_hex_address(value):
        raise ConfigError(f"'{where}' must be a 0x hex address, got {value!r}")
    if value.lower() == NATIVE_TOKEN_SENTINEL.lower():
        return NATIVE_TOKEN_SENTINEL
    return to_checksum_address(value)


def parse_asset(entry: Dict, index: int) -> Asset:
    """Parse and validate one asset entry"""
    where = f"assets[{index}]"
    if not isinstance(entry, dict):
        raise ConfigError(f"'{where}' must be a mapping")

    symbol = _require(entry, 'symbol', where)
    if not isinstance(symbol, str) or not symbol.strip():
        raise ConfigError(f"'{where}.symbol' must be a non-empty string")

    denom = entry.get('denom')
    erc20_contract = entry.get('erc20_contract')
    if denom is None and erc20_contract is None:
        raise ConfigError(f"'{where}' ({symbol}) needs a 'denom', an 'erc20_contract', or both")
    if denom is not None and (not isinstance(denom, str) or not denom):
        raise ConfigError(f"'{where}.denom' must be a non-empty string")
    if erc20_contract is not None:
        erc20_contract = _parse_address(erc20_contract, f"{where}.erc20_contract")

    decimals = _require(entry, 'decimals', where)
    if isinstance(decimals, bool) or not isinstance(decimals, int) or not 0 <= decimals <= 36:
        raise ConfigError(f"'{where}.decimals' must be an integer between 0 and 36")

    evm_decimals = entry.get('evm_decimals')
    if evm_decimals is not None:
        if isinstance(evm_decimals, bool) or not isinstance(evm_decimals, int) or evm_decimals < decimals:
            raise ConfigError(f"'{where}.evm_decimals' must be an integer >= decimals")
        if erc20_contract != NATIVE_TOKEN_SENTINEL:
            raise ConfigError(f"'{where}.evm_decimals' only applies to the native coin")

    return Asset(
        symbol=symbol.strip(),
        decimals=decimals,
        amount_per_request=parse_amount(_require(entry, 'amount_per_request', where), f"{where}.amount_per_request"),
        target_balance=parse_amount(_require(entry, 'target_balance', where), f"{where}.target_balance"),
        denom=denom,
        erc20_contract=erc20_contract,
        evm_decimals=evm_decimals
    )


def parse_config(raw: Dict) -> FaucetConfig:
    """
    Build a FaucetConfig from an already-parsed YAML mapping

    Raises:
        ConfigError: on any missing or malformed field
    """
    if not isinstance(raw, dict):
        raise ConfigError("Configuration root must be a mapping")

    network = _section(raw, 'network')
    mode = network.get('mode', 'live')
    if mode not in NETWORK_MODES:
        raise ConfigError(f"'network.mode' must be one of {NETWORK_MODES}, got {mode!r}")

    chain_raw = _section(raw, 'chain')
    prefix = _require(chain_raw, 'bech32_prefix', 'chain')
    if not isinstance(prefix, str) or not prefix.isalnum() or prefix != prefix.lower():
        raise ConfigError("'chain.bech32_prefix' must be a lowercase alphanumeric string")

    chain = ChainSettings(
        evm_chain_id=_parse_positive_int(_require(chain_raw, 'evm_chain_id', 'chain'), 'chain.evm_chain_id'),
        cosmos_chain_id=str(_require(chain_raw, 'cosmos_chain_id', 'chain')),
        bech32_prefix=prefix,
        tx_timeout_seconds=_parse_number(chain_raw.get('tx_timeout_seconds', 60.0), 'chain.tx_timeout_seconds'),
        poll_interval_seconds=_parse_number(chain_raw.get('poll_interval_seconds', 2.0), 'chain.poll_interval_seconds')
    )

    ledger_a_raw = _section(raw, 'ledger_a')
    ledger_a = LedgerASettings(
        rest_endpoint=str(_require(ledger_a_raw, 'rest_endpoint', 'ledger_a')).rstrip('/'),
        fee_denom=str(_require(ledger_a_raw, 'fee_denom', 'ledger_a')),
        fee_amount=parse_amount(_require(ledger_a_raw, 'fee_amount', 'ledger_a'), 'ledger_a.fee_amount'),
        gas_limit=_parse_positive_int(ledger_a_raw.get('gas_limit', 200000), 'ledger_a.gas_limit'),
        pubkey_type_url=str(ledger_a_raw.get('pubkey_type_url', LedgerASettings.pubkey_type_url)),
        request_timeout_seconds=_parse_number(
            ledger_a_raw.get('request_timeout_seconds', 10.0), 'ledger_a.request_timeout_seconds'
        )
    )

    ledger_b_raw = _section(raw, 'ledger_b')
    ledger_b = LedgerBSettings(
        rpc_endpoint=str(_require(ledger_b_raw, 'rpc_endpoint', 'ledger_b')),
        atomic_multisend=_parse_address(
            _require(ledger_b_raw, 'atomic_multisend', 'ledger_b'), 'ledger_b.atomic_multisend'
        ),
        gas_limit=_parse_positive_int(ledger_b_raw.get('gas_limit', 500000), 'ledger_b.gas_limit'),
        request_timeout_seconds=_parse_number(
            ledger_b_raw.get('request_timeout_seconds', 10.0), 'ledger_b.request_timeout_seconds'
        )
    )

    limits_raw = _section(raw, 'limits', required=False)
    ip_limit = limits_raw.get('ip', 10)
    limits = LimitSettings(
        window_seconds=_parse_number(limits_raw.get('window_hours', 12), 'limits.window_hours') * 3600,
        address=_parse_positive_int(limits_raw.get('address', 1), 'limits.address'),
        ip=_parse_positive_int(ip_limit, 'limits.ip') if ip_limit else None
    )

    logging_raw = _section(raw, 'logging', required=False)
    logging_settings = LoggingSettings(
        level=str(logging_raw.get('level', 'INFO')).upper(),
        file=logging_raw.get('file'),
        rotation=str(logging_raw.get('rotation', '10 MB')),
        retention=_parse_positive_int(logging_raw.get('retention', 5), 'logging.retention')
    )

    history_raw = _section(raw, 'history', required=False)
    health_raw = _section(raw, 'health', required=False)

    assets_raw = raw.get('assets')
    if not isinstance(assets_raw, list) or not assets_raw:
        raise ConfigError("'assets' must be a non-empty list")

    assets = tuple(parse_asset(entry, i) for i, entry in enumerate(assets_raw))

    symbols = [asset.symbol for asset in assets]
    duplicates = sorted({s for s in symbols if symbols.count(s) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate asset symbols: {duplicates}")

    natives = [asset.symbol for asset in assets if asset.is_native]
    if len(natives) > 1:
        raise ConfigError(f"Only one asset may use the native sentinel, found {natives}")

    return FaucetConfig(
        network_name=str(network.get('name', 'dual-environment-chain')),
        network_mode=mode,
        chain=chain,
        ledger_a=ledger_a,
        ledger_b=ledger_b,
        assets=assets,
        limits=limits,
        logging=logging_settings,
        history=HistorySettings(db_path=str(history_raw.get('db_path', HistorySettings.db_path))),
        health=HealthSettings(
            cache_minutes=_parse_number(health_raw.get('cache_minutes', 5.0), 'health.cache_minutes')
        ),
        testing_mode=bool(_section(raw, 'faucet', required=False).get('testing_mode', False))
    )


def load_config(config_path: str = "faucet_config.yaml") -> FaucetConfig:
    """
    Load configuration from YAML

    Args:
        config_path: Path to the YAML file

    Returns:
        Validated FaucetConfig
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e

    config = parse_config(raw)

    logger.info(f"Loaded config from {path}: {config.network_name} ({config.network_mode} mode)")
    logger.info(f"  Assets: {', '.join(asset.symbol for asset in config.assets)}")
    if config.testing_mode:
        logger.warning("⚠ Testing mode enabled - every address receives 1 base unit of each asset")

    return config
