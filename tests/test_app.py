"""Tests for configuration loading and the application container."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest
from hydra import compose, initialize_config_dir
from omegaconf import OmegaConf

from oms_core.app import Application, build_application
from oms_core.common.errors import OrderValidationError
from oms_core.config import DEV_JWT_SECRET, PipelineConfig, WorkerConfig
from oms_core.domain.order import SubmitOrderCommand
from oms_core.execution import (
    HealthStatus,
    MarketProcessingService,
    MemoryBroker,
    MemoryStore,
    SimulatedProcessingService,
    StaticMarketDataClient,
)

CONF_DIR = str(Path(__file__).resolve().parents[1] / "conf")


def _compose(overrides: list[str] | None = None):
    with initialize_config_dir(version_base=None, config_dir=CONF_DIR):
        return compose(config_name="main", overrides=overrides or [])


class TestPipelineConfig:
    """Tests for the typed config views."""

    def test_defaults(self) -> None:
        """Test defaults without any config."""
        config = PipelineConfig.from_cfg(None)
        assert config.worker.count == 8
        assert config.worker.max_redeliveries == 5
        assert config.worker.processing_timeout == 30.0
        assert config.submission.market_data_timeout == 5.0
        assert config.submission.max_order_value == 1_000_000
        assert config.submission.max_quantity_per_order == 10_000
        assert config.idempotency.ttl == timedelta(hours=24)
        assert config.api.history_max_limit == 100
        assert config.json_logs is False

    def test_partial_sections(self) -> None:
        """Test missing keys fall back to defaults."""
        cfg = OmegaConf.create({"env": "prod", "worker": {"count": 2}})
        config = PipelineConfig.from_cfg(cfg)
        assert config.worker.count == 2
        assert config.worker.max_redeliveries == 5
        assert config.json_logs is True


class TestBuildApplication:
    """Tests for Hydra-driven wiring."""

    def test_default_backends(self, monkeypatch) -> None:
        """Test the default config wires in-memory backends."""
        monkeypatch.delenv("OMS_JWT_SECRET", raising=False)
        app = build_application(_compose())

        assert isinstance(app.store, MemoryStore)
        assert isinstance(app.broker, MemoryBroker)
        assert isinstance(app.market_data, StaticMarketDataClient)
        assert isinstance(app.processing, SimulatedProcessingService)
        assert app.market_data.quotes["AAPL"] == Decimal("150.0")
        assert app.config.api.jwt_secret == DEV_JWT_SECRET
        assert app.workers.worker_count == 8

    def test_market_processing_gets_market_data(self) -> None:
        """Test the partial processing node receives the market-data client."""
        app = build_application(_compose(["processing=market"]))
        assert isinstance(app.processing, MarketProcessingService)
        assert app.processing.market_data is app.market_data
        assert app.processing.max_price_move == Decimal("0.05")

    def test_overrides(self, monkeypatch) -> None:
        """Test command-line style overrides reach the services."""
        monkeypatch.setenv("OMS_JWT_SECRET", "from-the-environment-0123456789abcdef")
        app = build_application(
            _compose(["worker.count=3", "worker.max_redeliveries=2", "api.history_max_limit=50"])
        )
        assert app.workers.worker_count == 3
        assert app.workers.max_redeliveries == 2
        assert app.query.max_limit == 50
        assert app.config.api.jwt_secret == "from-the-environment-0123456789abcdef"

    @pytest.mark.asyncio
    async def test_order_limits_from_config(self) -> None:
        """Test per-order limits from config reach the submission rules."""
        app = build_application(_compose(["submission.max_quantity_per_order=5"]))
        assert app.config.submission.max_quantity_per_order == 5

        command = SubmitOrderCommand(
            user_id="u1", symbol="AAPL", side="BUY", order_type="LIMIT", quantity="6", price="150"
        )
        with pytest.raises(OrderValidationError, match="quantity 6.00 exceeds maximum allowed 5.00"):
            await app.submission.submit(command)


class TestApplication:
    """Tests for container lifecycle."""

    @pytest.mark.asyncio
    async def test_disabled_workers(self, store, broker, market_data) -> None:
        """Test start is a no-op when workers are disabled."""
        app = Application(
            config=PipelineConfig(worker=WorkerConfig(enabled=False)),
            store=store,
            broker=broker,
            market_data=market_data,
            processing=SimulatedProcessingService(),
        )
        await app.start()
        assert app.workers.running is False

    @pytest.mark.asyncio
    async def test_start_recovers_in_flight(self, application, broker) -> None:
        """Test start returns unsettled messages to the queue first."""
        await broker.publish("stranded")
        await broker.receive(timeout=0.1)
        assert broker.in_flight == 1

        await application.start()
        try:
            report = await application.health()
            assert report["workers"] == HealthStatus.HEALTHY.value
            assert report["status"] == "healthy"
            for _ in range(200):
                if await broker.dead_letters():
                    break
                await asyncio.sleep(0.01)
        finally:
            await application.close()

        letters = await broker.dead_letters()
        assert letters[0].order_id == "stranded"
        assert letters[0].processing_error == "ORDER_NOT_FOUND"
        assert letters[0].redelivery_count == 1
