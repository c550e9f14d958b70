"""
Environment-driven configuration with validation.

``Settings`` is read once from the process environment (and ``.env``) at
startup; ``Settings.engine_config()`` turns it into the plain ``EngineConfig``
value handed to the engine and to each session.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass, field, fields, is_dataclass, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

from volumebot.fees.fee_ledger import DEFAULT_DISCOUNT_TIERS, DiscountTier, FeeConfig
from volumebot.risk.circuit_breaker import CircuitBreakerConfig
from volumebot.risk.errors import InvalidConfiguration

log = logging.getLogger("volumebot")


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass
class StrategyConfig:
    duration_sec: float
    loop_interval_sec: float
    max_wallets_per_cycle: int = 5

    @property
    def max_cycles(self) -> int:
        return int(self.duration_sec // self.loop_interval_sec)


@dataclass
class StrategiesConfig:
    volume_only: StrategyConfig = field(default_factory=lambda: StrategyConfig(
        duration_sec=1200.0, loop_interval_sec=8.0))
    makers_volume: StrategyConfig = field(default_factory=lambda: StrategyConfig(
        duration_sec=181.0, loop_interval_sec=6.0))


@dataclass
class RiskConfig:
    max_slippage_pct: float = 10.0
    min_slippage_pct: float = 1.0
    dynamic_slippage: bool = True
    slippage_step_pct: float = 2.0
    max_relaxed_slippage_pct: float = 15.0


@dataclass
class WalletConfig:
    max_wallets: int = 50
    # Native balance each wallet keeps back for network fees
    min_native_per_wallet: float = 0.001
    min_trade_native: float = 0.001
    min_trade_token: float = 0.0


@dataclass
class RandomizationConfig:
    buy_pct_min: float = 5.0
    buy_pct_max: float = 15.0
    sell_pct_min: float = 50.0
    sell_pct_max: float = 100.0


@dataclass
class EngineConfig:
    strategies: StrategiesConfig = field(default_factory=StrategiesConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    wallets: WalletConfig = field(default_factory=WalletConfig)
    randomization: RandomizationConfig = field(default_factory=RandomizationConfig)
    fees: FeeConfig = field(default_factory=FeeConfig)
    breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    recent_trades_limit: int = 200
    # "global": one failure table for every session; "session": one per session
    error_scope: str = "global"
    native_price_usd: float = 100.0
    # Estimated token price in native units, for balance-ratio decisions
    token_price_native: float = 0.1
    makers_buy_ratio: float = 0.6

    def strategy(self, strategy: Any) -> StrategyConfig:
        name = getattr(strategy, "value", strategy)
        if name == "VOLUME_ONLY":
            return self.strategies.volume_only
        if name == "MAKERS_VOLUME":
            return self.strategies.makers_volume
        raise InvalidConfiguration(f"unrecognized strategy: {strategy!r}")

    def validate(self) -> "EngineConfig":
        """Raise InvalidConfiguration for unusable values; returns self."""
        try:
            for sc in (self.strategies.volume_only, self.strategies.makers_volume):
                if sc.loop_interval_sec <= 0:
                    raise ValueError("loop_interval_sec must be > 0")
                if sc.duration_sec < sc.loop_interval_sec:
                    raise ValueError("duration_sec must be >= loop_interval_sec")
                if sc.max_wallets_per_cycle < 1:
                    raise ValueError("max_wallets_per_cycle must be >= 1")
            r = self.risk
            if not 0 < r.min_slippage_pct <= r.max_slippage_pct <= r.max_relaxed_slippage_pct:
                raise ValueError("slippage must satisfy 0 < min <= max <= max_relaxed")
            if r.slippage_step_pct < 0:
                raise ValueError("slippage_step_pct must be >= 0")
            rz = self.randomization
            if not 0 < rz.buy_pct_min <= rz.buy_pct_max <= 100:
                raise ValueError("buy pct range must satisfy 0 < min <= max <= 100")
            if not 0 < rz.sell_pct_min <= rz.sell_pct_max <= 100:
                raise ValueError("sell pct range must satisfy 0 < min <= max <= 100")
            w = self.wallets
            if w.max_wallets < 1 or w.min_native_per_wallet < 0 or w.min_trade_native < 0 or w.min_trade_token < 0:
                raise ValueError("wallet limits must be non-negative (max_wallets >= 1)")
            if self.recent_trades_limit < 1:
                raise ValueError("recent_trades_limit must be >= 1")
            if self.error_scope not in ("global", "session"):
                raise ValueError("error_scope must be 'global' or 'session'")
            if self.native_price_usd <= 0 or self.token_price_native <= 0:
                raise ValueError("prices must be > 0")
            if not 0 < self.makers_buy_ratio < 1:
                raise ValueError("makers_buy_ratio must be in (0, 1)")
            self.fees.validate()
            self.breaker.validate()
        except ValueError as exc:
            if isinstance(exc, InvalidConfiguration):
                raise
            raise InvalidConfiguration(str(exc)) from exc
        return self

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "EngineConfig":
        """
        Copy with nested overrides applied, e.g.
        ``{"strategies": {"volume_only": {"loop_interval_sec": 4}}}``.
        """
        if not overrides:
            return self
        return _apply(copy.deepcopy(self), overrides, path="").validate()

    def to_dict(self) -> Dict[str, Any]:
        return _as_dict(self)


def _apply(obj: Any, overrides: Mapping[str, Any], path: str) -> Any:
    names = {f.name for f in fields(obj)}
    changes: Dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in names:
            raise InvalidConfiguration(f"unknown config key: {path}{key}")
        current = getattr(obj, key)
        if is_dataclass(current) and isinstance(value, Mapping):
            changes[key] = _apply(current, value, path=f"{path}{key}.")
        elif key == "discount_tiers":
            changes[key] = tuple(
                t if isinstance(t, DiscountTier) else DiscountTier(int(t[0]), float(t[1])) for t in value
            )
        else:
            changes[key] = value
    return replace(obj, **changes)


def _as_dict(obj: Any) -> Any:
    if is_dataclass(obj):
        return {f.name: _as_dict(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, tuple):
        return [_as_dict(v) for v in obj]
    return obj


def _parse_tiers(raw: Optional[str]) -> Tuple[DiscountTier, ...]:
    """``"100:0.1,500:0.2"`` -> tiers."""
    if not raw:
        return DEFAULT_DISCOUNT_TIERS
    tiers = []
    for part in raw.split(","):
        count, _, discount = part.strip().partition(":")
        tiers.append(DiscountTier(int(count), float(discount)))
    return tuple(tiers)


@dataclass(frozen=True)
class Settings:
    mode: str
    log_level: str
    log_file: str | None
    metrics_port: int
    metrics_token: str | None
    state_dir: str
    session_file: str | None
    owner: str
    token: str
    strategy: str
    wallet_count: int
    paper_native_balance: float
    paper_failure_rate: float
    volume_only_duration_sec: float
    volume_only_interval_sec: float
    makers_volume_duration_sec: float
    makers_volume_interval_sec: float
    max_wallets_per_cycle: int
    max_slippage_pct: float
    min_slippage_pct: float
    dynamic_slippage: bool
    max_wallets: int
    min_native_per_wallet: float
    min_trade_native: float
    buy_pct_min: float
    buy_pct_max: float
    sell_pct_min: float
    sell_pct_max: float
    fee_per_transaction: float
    minimum_fee: float
    free_trades: int
    discount_tiers: str | None
    fee_collection_wallet: str | None
    immediate_collection_threshold: float
    min_collection_amount: float
    breaker_threshold: int
    breaker_window_sec: float
    rpc_backoff_base_sec: float
    rpc_backoff_cap_sec: float
    rate_limit_cooldown_sec: float
    error_scope: str
    recent_trades_limit: int
    native_price_usd: float
    alert_webhook_url: str | None
    alert_webhook_type: str
    alert_enabled: bool

    def dump(self) -> dict:
        """Settings for logging, with nothing secret in them."""
        data = self.__dict__.copy()
        data.pop("metrics_token", None)
        return data

    @classmethod
    def load(cls) -> "Settings":
        load_dotenv()
        cfg = cls(
            mode=os.getenv("VB_MODE", "paper"),
            log_level=os.getenv("VB_LOG_LEVEL", "INFO"),
            log_file=os.getenv("VB_LOG_FILE") or None,
            metrics_port=_int_env("VB_METRICS_PORT", 9096),
            metrics_token=os.getenv("VB_METRICS_TOKEN"),
            state_dir=os.getenv("VB_STATE_DIR", "sessions"),
            session_file=os.getenv("VB_SESSION_FILE") or None,
            owner=os.getenv("VB_OWNER", "local"),
            token=os.getenv("VB_TOKEN", "PAPER_TOKEN"),
            strategy=os.getenv("VB_STRATEGY", "VOLUME_ONLY"),
            wallet_count=_int_env("VB_WALLET_COUNT", 5),
            paper_native_balance=_float_env("VB_PAPER_NATIVE_BALANCE", 1.0),
            paper_failure_rate=_float_env("VB_PAPER_FAILURE_RATE", 0.0),
            volume_only_duration_sec=_float_env("VB_VOLUME_ONLY_DURATION_SEC", 1200.0),
            volume_only_interval_sec=_float_env("VB_VOLUME_ONLY_INTERVAL_SEC", 8.0),
            makers_volume_duration_sec=_float_env("VB_MAKERS_VOLUME_DURATION_SEC", 181.0),
            makers_volume_interval_sec=_float_env("VB_MAKERS_VOLUME_INTERVAL_SEC", 6.0),
            max_wallets_per_cycle=_int_env("VB_MAX_WALLETS_PER_CYCLE", 5),
            max_slippage_pct=_float_env("VB_MAX_SLIPPAGE_PCT", 10.0),
            min_slippage_pct=_float_env("VB_MIN_SLIPPAGE_PCT", 1.0),
            dynamic_slippage=env_bool("VB_DYNAMIC_SLIPPAGE", True),
            max_wallets=_int_env("VB_MAX_WALLETS", 50),
            min_native_per_wallet=_float_env("VB_MIN_NATIVE_PER_WALLET", 0.001),
            min_trade_native=_float_env("VB_MIN_TRADE_NATIVE", 0.001),
            buy_pct_min=_float_env("VB_BUY_PCT_MIN", 5.0),
            buy_pct_max=_float_env("VB_BUY_PCT_MAX", 15.0),
            sell_pct_min=_float_env("VB_SELL_PCT_MIN", 50.0),
            sell_pct_max=_float_env("VB_SELL_PCT_MAX", 100.0),
            fee_per_transaction=_float_env("VB_FEE_PER_TRANSACTION", 0.001),
            minimum_fee=_float_env("VB_MINIMUM_FEE", 0.0005),
            free_trades=_int_env("VB_FREE_TRADES", 10),
            discount_tiers=os.getenv("VB_DISCOUNT_TIERS") or None,
            fee_collection_wallet=os.getenv("VB_FEE_COLLECTION_WALLET") or None,
            immediate_collection_threshold=_float_env("VB_IMMEDIATE_COLLECTION_THRESHOLD", 0.005),
            min_collection_amount=_float_env("VB_MIN_COLLECTION_AMOUNT", 0.001),
            breaker_threshold=_int_env("VB_BREAKER_THRESHOLD", 10),
            breaker_window_sec=_float_env("VB_BREAKER_WINDOW_SEC", 300.0),
            rpc_backoff_base_sec=_float_env("VB_RPC_BACKOFF_BASE_SEC", 1.0),
            rpc_backoff_cap_sec=_float_env("VB_RPC_BACKOFF_CAP_SEC", 30.0),
            rate_limit_cooldown_sec=_float_env("VB_RATE_LIMIT_COOLDOWN_SEC", 60.0),
            error_scope=os.getenv("VB_ERROR_SCOPE", "global"),
            recent_trades_limit=_int_env("VB_RECENT_TRADES_LIMIT", 200),
            native_price_usd=_float_env("VB_NATIVE_PRICE_USD", 100.0),
            alert_webhook_url=os.getenv("VB_ALERT_WEBHOOK_URL") or None,
            alert_webhook_type=os.getenv("VB_ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool("VB_ALERT_ENABLED", True),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            strategies=StrategiesConfig(
                volume_only=StrategyConfig(
                    duration_sec=self.volume_only_duration_sec,
                    loop_interval_sec=self.volume_only_interval_sec,
                    max_wallets_per_cycle=self.max_wallets_per_cycle,
                ),
                makers_volume=StrategyConfig(
                    duration_sec=self.makers_volume_duration_sec,
                    loop_interval_sec=self.makers_volume_interval_sec,
                    max_wallets_per_cycle=self.max_wallets_per_cycle,
                ),
            ),
            risk=RiskConfig(
                max_slippage_pct=self.max_slippage_pct,
                min_slippage_pct=self.min_slippage_pct,
                dynamic_slippage=self.dynamic_slippage,
                max_relaxed_slippage_pct=max(self.max_slippage_pct, RiskConfig.max_relaxed_slippage_pct),
            ),
            wallets=WalletConfig(
                max_wallets=self.max_wallets,
                min_native_per_wallet=self.min_native_per_wallet,
                min_trade_native=self.min_trade_native,
            ),
            randomization=RandomizationConfig(
                buy_pct_min=self.buy_pct_min,
                buy_pct_max=self.buy_pct_max,
                sell_pct_min=self.sell_pct_min,
                sell_pct_max=self.sell_pct_max,
            ),
            fees=FeeConfig(
                fee_per_transaction=self.fee_per_transaction,
                minimum_fee=self.minimum_fee,
                free_trades=self.free_trades,
                discount_tiers=_parse_tiers(self.discount_tiers),
                immediate_collection_threshold=self.immediate_collection_threshold,
                min_collection_amount=self.min_collection_amount,
                collection_address=self.fee_collection_wallet,
            ),
            breaker=CircuitBreakerConfig(
                trip_threshold=self.breaker_threshold,
                window_sec=self.breaker_window_sec,
                rpc_backoff_base_sec=self.rpc_backoff_base_sec,
                rpc_backoff_cap_sec=self.rpc_backoff_cap_sec,
                rate_limit_cooldown_sec=self.rate_limit_cooldown_sec,
            ),
            recent_trades_limit=self.recent_trades_limit,
            error_scope=self.error_scope,
            native_price_usd=self.native_price_usd,
        ).validate()

    def _validate(self) -> None:
        if self.mode not in ("paper",):
            raise ValueError(f"VB_MODE={self.mode!r}: only 'paper' can run standalone; "
                             "live trading needs injected collaborators")
        if self.strategy.upper() not in ("VOLUME_ONLY", "MAKERS_VOLUME"):
            raise ValueError("VB_STRATEGY must be VOLUME_ONLY or MAKERS_VOLUME")
        if self.wallet_count <= 0:
            raise ValueError("VB_WALLET_COUNT must be > 0")
        if self.wallet_count > self.max_wallets:
            raise ValueError("VB_WALLET_COUNT must be <= VB_MAX_WALLETS")
        if not 0.0 <= self.paper_failure_rate <= 1.0:
            raise ValueError("VB_PAPER_FAILURE_RATE must be within [0, 1]")
        if self.volume_only_interval_sec <= 0 or self.makers_volume_interval_sec <= 0:
            raise ValueError("Loop intervals must be > 0")
        if self.alert_webhook_type not in ("generic", "slack", "discord"):
            raise ValueError("VB_ALERT_WEBHOOK_TYPE must be generic, slack or discord")

        if self.max_slippage_pct > 20:
            log.warning(
                f"WARNING: VB_MAX_SLIPPAGE_PCT is {self.max_slippage_pct}%. "
                "Consider a tighter slippage bound."
            )
        if not self.fee_collection_wallet:
            log.warning(
                "WARNING: VB_FEE_COLLECTION_WALLET not set. "
                "Fees will accrue but never be collected."
            )
        if self.metrics_port and not self.metrics_token:
            log.warning("WARNING: VB_METRICS_TOKEN not set; /metrics and /status are unauthenticated.")


def _sanity_check(cfg: Settings) -> None:
    """Log critical settings once at startup so overrides are obvious."""
    payload = {
        "event": "config_loaded",
        "mode": cfg.mode,
        "strategy": cfg.strategy,
        "wallet_count": cfg.wallet_count,
        "volume_only_interval_sec": cfg.volume_only_interval_sec,
        "makers_volume_interval_sec": cfg.makers_volume_interval_sec,
        "max_slippage_pct": cfg.max_slippage_pct,
        "error_scope": cfg.error_scope,
    }
    log.info(json.dumps(payload))
