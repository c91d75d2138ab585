import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ConfigError
from .utils import normalize_address

STANDARDS = {"erc721", "erc1155", "auto"}


@dataclass
class ThrottleTier:
    batch_size: int
    delay_ms: float


@dataclass
class ThrottleConfig:
    # volume tiers: >= high_volume requests, >= medium_volume requests, below that
    high_volume: int = 100
    medium_volume: int = 50
    conservative: ThrottleTier = field(default_factory=lambda: ThrottleTier(5, 1000))
    medium: ThrottleTier = field(default_factory=lambda: ThrottleTier(8, 750))
    aggressive: ThrottleTier = field(default_factory=lambda: ThrottleTier(15, 200))
    min_batch_size: int = 3
    max_batch_size: int = 20
    batch_step: int = 3
    min_delay_ms: float = 100
    max_delay_ms: float = 3000
    soft_max_delay_ms: float = 2000
    decay_factor: float = 0.8
    backoff_factor: float = 1.5
    emergency_factor: float = 2.0
    emergency_threshold: int = 2
    max_rate_limit_requeues: int = 5


@dataclass
class ContractConfig:
    address: str
    name: str
    standard: str
    start_block: int


@dataclass
class AppConfig:
    chain_id: int
    http_rpc_url: str
    sqlite_path: str
    contracts: List[ContractConfig]
    scan_window_blocks: int
    validation_window_blocks: int
    max_window_attempts: int
    retry_base_delay_ms: int
    retry_max_delay_ms: int
    rpc_timeout_sec: int
    max_rpc_retries: int
    confirmations: int
    sync_interval_sec: int
    gap_threshold_blocks: int
    throttle: ThrottleConfig
    log_level: str
    api_host: str
    api_port: int
    cors_allow_origins: List[str]

    def get_contract(self, address: str) -> Optional[ContractConfig]:
        addr = normalize_address(address)
        for c in self.contracts:
            if c.address == addr:
                return c
        return None


def _tier(raw: Dict[str, Any], key: str, default: ThrottleTier) -> ThrottleTier:
    item = raw.get(key)
    if not item:
        return default
    tier = ThrottleTier(
        batch_size=int(item.get("batch_size", default.batch_size)),
        delay_ms=float(item.get("delay_ms", default.delay_ms)),
    )
    if tier.batch_size <= 0:
        raise ConfigError(f"THROTTLE.{key}.batch_size must be >= 1")
    if tier.delay_ms < 0:
        raise ConfigError(f"THROTTLE.{key}.delay_ms must be >= 0")
    return tier


def parse_throttle(raw: Dict[str, Any]) -> ThrottleConfig:
    d = ThrottleConfig()
    cfg = ThrottleConfig(
        high_volume=int(raw.get("HIGH_VOLUME", d.high_volume)),
        medium_volume=int(raw.get("MEDIUM_VOLUME", d.medium_volume)),
        conservative=_tier(raw, "CONSERVATIVE", d.conservative),
        medium=_tier(raw, "MEDIUM", d.medium),
        aggressive=_tier(raw, "AGGRESSIVE", d.aggressive),
        min_batch_size=int(raw.get("MIN_BATCH_SIZE", d.min_batch_size)),
        max_batch_size=int(raw.get("MAX_BATCH_SIZE", d.max_batch_size)),
        batch_step=int(raw.get("BATCH_STEP", d.batch_step)),
        min_delay_ms=float(raw.get("MIN_DELAY_MS", d.min_delay_ms)),
        max_delay_ms=float(raw.get("MAX_DELAY_MS", d.max_delay_ms)),
        soft_max_delay_ms=float(raw.get("SOFT_MAX_DELAY_MS", d.soft_max_delay_ms)),
        decay_factor=float(raw.get("DECAY_FACTOR", d.decay_factor)),
        backoff_factor=float(raw.get("BACKOFF_FACTOR", d.backoff_factor)),
        emergency_factor=float(raw.get("EMERGENCY_FACTOR", d.emergency_factor)),
        emergency_threshold=int(raw.get("EMERGENCY_THRESHOLD", d.emergency_threshold)),
        max_rate_limit_requeues=int(
            raw.get("MAX_RATE_LIMIT_REQUEUES", d.max_rate_limit_requeues)
        ),
    )
    if cfg.medium_volume > cfg.high_volume:
        raise ConfigError("THROTTLE.MEDIUM_VOLUME must not exceed HIGH_VOLUME")
    if cfg.min_batch_size <= 0 or cfg.max_batch_size < cfg.min_batch_size:
        raise ConfigError("THROTTLE batch size bounds are invalid")
    if cfg.min_delay_ms < 0 or cfg.max_delay_ms < cfg.min_delay_ms:
        raise ConfigError("THROTTLE delay bounds are invalid")
    if not (0 < cfg.decay_factor <= 1):
        raise ConfigError("THROTTLE.DECAY_FACTOR must be in (0,1]")
    if cfg.emergency_factor < 2:
        raise ConfigError("THROTTLE.EMERGENCY_FACTOR must be >= 2")
    if cfg.emergency_threshold <= 0:
        raise ConfigError("THROTTLE.EMERGENCY_THRESHOLD must be >= 1")
    return cfg


def parse_contracts(items: List[Dict[str, Any]]) -> List[ContractConfig]:
    contracts: List[ContractConfig] = []
    seen = set()
    for item in items:
        address = normalize_address(item["address"])
        if address in seen:
            raise ConfigError(f"contract {address} is configured twice")
        seen.add(address)
        standard = str(item.get("standard", "auto")).lower()
        if standard not in STANDARDS:
            raise ConfigError(f"contract {address} standard is invalid: {standard}")
        start_block = int(item.get("start_block", 0))
        if start_block < 0:
            raise ConfigError(f"contract {address} start_block must be >= 0")
        contracts.append(
            ContractConfig(
                address=address,
                name=str(item.get("name") or address),
                standard=standard,
                start_block=start_block,
            )
        )
    return contracts


def load_config(path: str) -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return config_from_dict(raw)


def config_from_dict(raw: Dict[str, Any]) -> AppConfig:
    if "HTTP_RPC_URL" not in raw:
        raise ConfigError("HTTP_RPC_URL is required")
    http_rpc_url = str(raw["HTTP_RPC_URL"]).strip()
    if not http_rpc_url:
        raise ConfigError("HTTP_RPC_URL cannot be empty")

    contracts = parse_contracts(raw.get("CONTRACTS", []))
    if not contracts:
        raise ConfigError("CONTRACTS cannot be empty")

    scan_window_blocks = int(raw.get("SCAN_WINDOW_BLOCKS", 2000))
    validation_window_blocks = int(raw.get("VALIDATION_WINDOW_BLOCKS", 10000))
    if scan_window_blocks <= 0:
        raise ConfigError("SCAN_WINDOW_BLOCKS must be >= 1")
    if validation_window_blocks <= 0:
        raise ConfigError("VALIDATION_WINDOW_BLOCKS must be >= 1")

    max_window_attempts = int(raw.get("MAX_WINDOW_ATTEMPTS", 3))
    if max_window_attempts <= 0:
        raise ConfigError("MAX_WINDOW_ATTEMPTS must be >= 1")

    cors_allow_origins_raw = raw.get("CORS_ALLOW_ORIGINS", [])
    cors_allow_origins: List[str] = []
    if isinstance(cors_allow_origins_raw, str):
        cors_allow_origins = [
            x.strip().rstrip("/")
            for x in cors_allow_origins_raw.split(",")
            if x and x.strip()
        ]
    elif isinstance(cors_allow_origins_raw, list):
        cors_allow_origins = [
            str(x).strip().rstrip("/")
            for x in cors_allow_origins_raw
            if str(x).strip()
        ]

    return AppConfig(
        chain_id=int(raw.get("CHAIN_ID", 1)),
        http_rpc_url=http_rpc_url,
        sqlite_path=str(raw.get("SQLITE_PATH", "./data/ledger_sync.db")),
        contracts=contracts,
        scan_window_blocks=scan_window_blocks,
        validation_window_blocks=validation_window_blocks,
        max_window_attempts=max_window_attempts,
        retry_base_delay_ms=int(raw.get("RETRY_BASE_DELAY_MS", 1000)),
        retry_max_delay_ms=int(raw.get("RETRY_MAX_DELAY_MS", 10000)),
        rpc_timeout_sec=int(raw.get("RPC_TIMEOUT_SEC", 12)),
        max_rpc_retries=max(1, int(raw.get("MAX_RPC_RETRIES", 1))),
        confirmations=max(0, int(raw.get("CONFIRMATIONS", 0))),
        sync_interval_sec=max(1, int(raw.get("SYNC_INTERVAL_SEC", 15))),
        gap_threshold_blocks=max(1, int(raw.get("GAP_THRESHOLD_BLOCKS", 50000))),
        throttle=parse_throttle(raw.get("THROTTLE", {})),
        log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=int(raw.get("API_PORT", 8080)),
        cors_allow_origins=cors_allow_origins,
    )
