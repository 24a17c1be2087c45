"""Unit tests for settings and topic configuration."""

from decimal import Decimal

import pytest

from fulfillment_service.config import EventTopics, Settings


class TestSettings:
    """Tests for Settings defaults and environment overrides."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Defaults describe a local development setup."""
        monkeypatch.delenv("EVENT_DELIVERY", raising=False)
        settings = Settings(_env_file=None)

        assert settings.grpc_port == 50051
        assert settings.event_delivery == "outbox"
        assert settings.conflict_max_retries == 3
        assert settings.max_payment_amount == Decimal("10000.00")
        assert settings.low_stock_threshold == 10
        assert settings.outbox_max_retries == 5

    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Plain and nested values come from the environment."""
        monkeypatch.setenv("EVENT_DELIVERY", "direct")
        monkeypatch.setenv("GATEWAY_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("TOPICS__ORDER_CREATED", "shop.orders.created")

        settings = Settings(_env_file=None)

        assert settings.event_delivery == "direct"
        assert settings.gateway_timeout_seconds == 2.5
        assert settings.topics.order_created == "shop.orders.created"
        assert settings.topics.payment_failed == "payment.failed"

    def test_invalid_delivery_mode_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Only outbox and direct delivery exist."""
        monkeypatch.setenv("EVENT_DELIVERY", "carrier-pigeon")

        with pytest.raises(ValueError):
            Settings(_env_file=None)


class TestEventTopics:
    """Tests for EventTopics."""

    def test_unknown_event_type_raises_key_error(self) -> None:
        """Unmapped event types are a KeyError."""
        with pytest.raises(KeyError):
            EventTopics().for_event("ORDER_ARCHIVED")

    def test_all_topics_excludes_dead_letter(self) -> None:
        """Consumers subscribe to every event topic but not the DLQ."""
        topics = EventTopics()
        names = topics.all_topics()

        assert topics.dead_letter not in names
        assert "order.created" in names
        assert "product.stock.updated" in names
        assert len(names) == len(set(names))
