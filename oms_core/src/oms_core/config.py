"""Typed views over the Hydra configuration.

Components with a ``_target_`` (store, broker, market data, processing)
are built by ``hydra.utils.instantiate``; plain sections are read into the
frozen dataclasses below so the rest of the code never touches
``DictConfig`` directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Final

from oms_core.execution.idempotency import DEFAULT_IDEMPOTENCY_TTL
from oms_core.execution.worker import (
    DEFAULT_MAX_REDELIVERIES,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_PROCESSING_TIMEOUT,
    DEFAULT_SHUTDOWN_GRACE,
    DEFAULT_WORKER_COUNT,
)
from oms_core.services.query import DEFAULT_HISTORY_LIMIT, MAX_HISTORY_LIMIT
from oms_core.services.submission import (
    DEFAULT_LIMIT_BAND,
    DEFAULT_MARKET_DATA_TIMEOUT,
    DEFAULT_MAX_ORDER_VALUE,
    DEFAULT_MAX_QUANTITY_PER_ORDER,
    DEFAULT_MIN_ORDER_VALUE,
    DEFAULT_PRICE_TOLERANCE,
)

if TYPE_CHECKING:
    from omegaconf import DictConfig

# Development only; deployments set OMS_JWT_SECRET
DEV_JWT_SECRET: Final[str] = "dev-secret-change-me-0123456789abcdef"


def _section(cfg: DictConfig | None, name: str) -> Any:
    if cfg is None:
        return {}
    return cfg.get(name) or {}


@dataclass(frozen=True)
class WorkerConfig:
    """Worker pool sizing and deadlines (W, R_max, T_proc)."""

    enabled: bool = True
    count: int = DEFAULT_WORKER_COUNT
    max_redeliveries: int = DEFAULT_MAX_REDELIVERIES
    processing_timeout: float = DEFAULT_PROCESSING_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE
    recover_on_start: bool = True

    @classmethod
    def from_cfg(cls, cfg: Any) -> WorkerConfig:
        return cls(
            enabled=bool(cfg.get("enabled", True)),
            count=int(cfg.get("count", DEFAULT_WORKER_COUNT)),
            max_redeliveries=int(cfg.get("max_redeliveries", DEFAULT_MAX_REDELIVERIES)),
            processing_timeout=float(cfg.get("processing_timeout", DEFAULT_PROCESSING_TIMEOUT)),
            poll_interval=float(cfg.get("poll_interval", DEFAULT_POLL_INTERVAL)),
            shutdown_grace=float(cfg.get("shutdown_grace", DEFAULT_SHUTDOWN_GRACE)),
            recover_on_start=bool(cfg.get("recover_on_start", True)),
        )


@dataclass(frozen=True)
class SubmissionConfig:
    """Acceptance limits (T_md, price sanity bands, per-order size)."""

    market_data_timeout: float = DEFAULT_MARKET_DATA_TIMEOUT
    price_tolerance: float = float(DEFAULT_PRICE_TOLERANCE)
    limit_band: float = float(DEFAULT_LIMIT_BAND)
    max_order_value: float = float(DEFAULT_MAX_ORDER_VALUE)
    min_order_value: float = float(DEFAULT_MIN_ORDER_VALUE)
    max_quantity_per_order: float = float(DEFAULT_MAX_QUANTITY_PER_ORDER)

    @classmethod
    def from_cfg(cls, cfg: Any) -> SubmissionConfig:
        return cls(
            market_data_timeout=float(cfg.get("market_data_timeout", DEFAULT_MARKET_DATA_TIMEOUT)),
            price_tolerance=float(cfg.get("price_tolerance", DEFAULT_PRICE_TOLERANCE)),
            limit_band=float(cfg.get("limit_band", DEFAULT_LIMIT_BAND)),
            max_order_value=float(cfg.get("max_order_value", DEFAULT_MAX_ORDER_VALUE)),
            min_order_value=float(cfg.get("min_order_value", DEFAULT_MIN_ORDER_VALUE)),
            max_quantity_per_order=float(
                cfg.get("max_quantity_per_order", DEFAULT_MAX_QUANTITY_PER_ORDER)
            ),
        )


@dataclass(frozen=True)
class IdempotencyConfig:
    """Guard-record lifetime."""

    ttl_hours: float = DEFAULT_IDEMPOTENCY_TTL.total_seconds() / 3600

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.ttl_hours)

    @classmethod
    def from_cfg(cls, cfg: Any) -> IdempotencyConfig:
        return cls(ttl_hours=float(cfg.get("ttl_hours", 24.0)))


@dataclass(frozen=True)
class ApiConfig:
    """HTTP edge: bind address, token verification and history paging."""

    host: str = "127.0.0.1"
    port: int = 8080
    jwt_secret: str = DEV_JWT_SECRET
    jwt_algorithm: str = "HS256"
    jwt_leeway_seconds: int = 30
    history_default_limit: int = DEFAULT_HISTORY_LIMIT
    history_max_limit: int = MAX_HISTORY_LIMIT

    @classmethod
    def from_cfg(cls, cfg: Any) -> ApiConfig:
        return cls(
            host=str(cfg.get("host", "127.0.0.1")),
            port=int(cfg.get("port", 8080)),
            jwt_secret=str(cfg.get("jwt_secret", DEV_JWT_SECRET)),
            jwt_algorithm=str(cfg.get("jwt_algorithm", "HS256")),
            jwt_leeway_seconds=int(cfg.get("jwt_leeway_seconds", 30)),
            history_default_limit=int(cfg.get("history_default_limit", DEFAULT_HISTORY_LIMIT)),
            history_max_limit=int(cfg.get("history_max_limit", MAX_HISTORY_LIMIT)),
        )


@dataclass(frozen=True)
class PipelineConfig:
    """Every plain (non-instantiated) setting of the service."""

    env: str = "dev"
    debug: bool = False
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    @property
    def json_logs(self) -> bool:
        # Human-readable in dev, JSON everywhere else
        return self.env != "dev"

    @classmethod
    def from_cfg(cls, cfg: DictConfig | None) -> PipelineConfig:
        if cfg is None:
            return cls()
        return cls(
            env=str(cfg.get("env", "dev")),
            debug=bool(cfg.get("debug", False)),
            worker=WorkerConfig.from_cfg(_section(cfg, "worker")),
            submission=SubmissionConfig.from_cfg(_section(cfg, "submission")),
            idempotency=IdempotencyConfig.from_cfg(_section(cfg, "idempotency")),
            api=ApiConfig.from_cfg(_section(cfg, "api")),
        )
