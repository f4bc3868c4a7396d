"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import List

from dotenv import load_dotenv

from solver_engine.core.exceptions import ConfigError

load_dotenv()

log = logging.getLogger("solver")

# Order-cache polling interval bounds (seconds)
MIN_CACHE_POLL_SEC = 1
MAX_CACHE_POLL_SEC = 300


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from e


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from e


def _list_env(key: str) -> List[str]:
    raw = os.getenv(key)
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    # Identity
    solver_address: str | None
    private_key: str | None
    # Evaluation
    min_profitability_pct: float
    max_gas_price_gwei: float
    priority_fee_gwei: float
    defer_seconds: float
    strategy: str
    # Cost fallbacks (gas units)
    prepare_gas_units: int
    fill_gas_units: int
    post_fill_gas_units: int
    pre_claim_gas_units: int
    claim_gas_units: int
    # Delivery / settlement
    confirmations: int
    monitoring_timeout_minutes: float
    claim_batch_size: int
    claim_batch_window_sec: float
    # Runtime
    max_concurrent_flows: int
    storage_backend: str
    state_dir: str
    log_level: str
    log_file: str | None
    log_json: bool
    metrics_port: int
    # Order-cache discovery
    cache_url: str | None
    cache_poll_interval_sec: int
    cache_whitelist: List[str]
    cache_standard: str
    cache_lock_type: str
    cache_id_prefix: str
    http_timeout: float

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging (secrets redacted)."""
        data = self.__dict__.copy()
        if data.get("private_key"):
            data["private_key"] = "***"
        return data

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            solver_address=os.getenv("SOLVER_ADDRESS"),
            private_key=os.getenv("SOLVER_PRIVATE_KEY"),
            min_profitability_pct=_float_env("SOLVER_MIN_PROFITABILITY_PCT", 1.0),
            max_gas_price_gwei=_float_env("SOLVER_MAX_GAS_PRICE_GWEI", 100.0),
            priority_fee_gwei=_float_env("SOLVER_PRIORITY_FEE_GWEI", 1.0),
            defer_seconds=_float_env("SOLVER_DEFER_SECONDS", 60.0),
            strategy=os.getenv("SOLVER_STRATEGY", "simple"),
            prepare_gas_units=_int_env("SOLVER_PREPARE_GAS_UNITS", 150_000),
            fill_gas_units=_int_env("SOLVER_FILL_GAS_UNITS", 300_000),
            post_fill_gas_units=_int_env("SOLVER_POST_FILL_GAS_UNITS", 0),
            pre_claim_gas_units=_int_env("SOLVER_PRE_CLAIM_GAS_UNITS", 0),
            claim_gas_units=_int_env("SOLVER_CLAIM_GAS_UNITS", 200_000),
            confirmations=_int_env("SOLVER_CONFIRMATIONS", 1),
            monitoring_timeout_minutes=_float_env("SOLVER_MONITORING_TIMEOUT_MINUTES", 60.0),
            claim_batch_size=_int_env("SOLVER_CLAIM_BATCH_SIZE", 10),
            claim_batch_window_sec=_float_env("SOLVER_CLAIM_BATCH_WINDOW_SEC", 5.0),
            max_concurrent_flows=_int_env("SOLVER_MAX_CONCURRENT_FLOWS", 32),
            storage_backend=os.getenv("SOLVER_STORAGE_BACKEND", "file"),
            state_dir=os.getenv("SOLVER_STATE_DIR", "state"),
            log_level=os.getenv("SOLVER_LOG_LEVEL", "INFO"),
            log_file=os.getenv("SOLVER_LOG_FILE"),
            log_json=env_bool("SOLVER_LOG_JSON", False),
            metrics_port=_int_env("SOLVER_METRICS_PORT", 0),
            cache_url=os.getenv("SOLVER_CACHE_URL"),
            cache_poll_interval_sec=_int_env("SOLVER_CACHE_POLL_INTERVAL_SEC", 5),
            cache_whitelist=_list_env("SOLVER_CACHE_WHITELIST"),
            cache_standard=os.getenv("SOLVER_CACHE_STANDARD", "eip7683"),
            cache_lock_type=os.getenv("SOLVER_CACHE_LOCK_TYPE", "permit2"),
            cache_id_prefix=os.getenv("SOLVER_CACHE_ID_PREFIX", "cache"),
            http_timeout=_float_env("SOLVER_HTTP_TIMEOUT", 10.0),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def resolve_solver_address(self) -> str:
        if self.private_key:
            from eth_account import Account

            return Account.from_key(self.private_key).address
        if self.solver_address:
            return self.solver_address
        raise ConfigError("Missing SOLVER_ADDRESS or SOLVER_PRIVATE_KEY")

    def _validate(self) -> None:
        if self.min_profitability_pct < 0:
            raise ConfigError("SOLVER_MIN_PROFITABILITY_PCT must be >= 0")
        if self.max_gas_price_gwei <= 0:
            raise ConfigError("SOLVER_MAX_GAS_PRICE_GWEI must be > 0")
        if self.priority_fee_gwei < 0:
            raise ConfigError("SOLVER_PRIORITY_FEE_GWEI must be >= 0")
        if self.defer_seconds <= 0:
            raise ConfigError("SOLVER_DEFER_SECONDS must be > 0")
        if self.monitoring_timeout_minutes <= 0:
            raise ConfigError("SOLVER_MONITORING_TIMEOUT_MINUTES must be > 0")
        if self.confirmations < 1:
            raise ConfigError("SOLVER_CONFIRMATIONS must be >= 1")
        if self.claim_batch_size < 1:
            raise ConfigError("SOLVER_CLAIM_BATCH_SIZE must be >= 1")
        if self.claim_batch_window_sec < 0:
            raise ConfigError("SOLVER_CLAIM_BATCH_WINDOW_SEC must be >= 0")
        if self.max_concurrent_flows < 1:
            raise ConfigError("SOLVER_MAX_CONCURRENT_FLOWS must be >= 1")
        if self.storage_backend not in {"memory", "file"}:
            raise ConfigError("SOLVER_STORAGE_BACKEND must be 'memory' or 'file'")
        for key, units in (
            ("SOLVER_PREPARE_GAS_UNITS", self.prepare_gas_units),
            ("SOLVER_FILL_GAS_UNITS", self.fill_gas_units),
            ("SOLVER_POST_FILL_GAS_UNITS", self.post_fill_gas_units),
            ("SOLVER_PRE_CLAIM_GAS_UNITS", self.pre_claim_gas_units),
            ("SOLVER_CLAIM_GAS_UNITS", self.claim_gas_units),
        ):
            if units < 0:
                raise ConfigError(f"{key} must be >= 0")
        if not MIN_CACHE_POLL_SEC <= self.cache_poll_interval_sec <= MAX_CACHE_POLL_SEC:
            raise ConfigError(
                f"SOLVER_CACHE_POLL_INTERVAL_SEC must be between "
                f"{MIN_CACHE_POLL_SEC} and {MAX_CACHE_POLL_SEC} seconds"
            )

        if self.storage_backend == "memory":
            log.warning(
                "WARNING: SOLVER_STORAGE_BACKEND=memory. "
                "Orders will not survive a restart and recovery has nothing to resume."
            )
        if self.min_profitability_pct == 0:
            log.warning(
                "WARNING: SOLVER_MIN_PROFITABILITY_PCT is 0. "
                "Break-even orders will be executed."
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    payload = {
        "event": "config_loaded",
        "min_profitability_pct": cfg.min_profitability_pct,
        "max_gas_price_gwei": cfg.max_gas_price_gwei,
        "monitoring_timeout_minutes": cfg.monitoring_timeout_minutes,
        "strategy": cfg.strategy,
        "storage_backend": cfg.storage_backend,
        "cache_url": cfg.cache_url,
    }
    log.info(json.dumps(payload))
