"""Tests for settings validation and structured logging."""

import json
import logging
import sys
import warnings

import pytest

from courier_engine.common.config import CourierSettings
from courier_engine.common.logging import JSONFormatter, get_logger

INSECURE_KEY = "insecure-admin-key-change-me"


class TestSettings:
    def test_defaults(self):
        settings = CourierSettings(environment="test")
        assert settings.registry_cache_ttl == 300.0
        assert settings.response_body_limit == 1000
        assert settings.require_https is False

    def test_production_requires_https(self):
        assert CourierSettings(environment="production", api_key="k").require_https is True
        assert CourierSettings(https_only=True).require_https is True

    def test_insecure_key_rejected_in_production(self):
        settings = CourierSettings(environment="production", api_key=INSECURE_KEY)
        with pytest.raises(RuntimeError, match="COURIER_API_KEY"):
            settings.validate_for_production()

    def test_insecure_key_warns_in_development(self):
        settings = CourierSettings(environment="development", api_key=INSECURE_KEY)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            settings.validate_for_production()
        assert any("COURIER_API_KEY" in str(w.message) for w in caught)

    def test_secure_key_passes(self):
        CourierSettings(environment="production", api_key="a-real-key").validate_for_production()

    def test_unknown_queue_backend(self):
        with pytest.raises(RuntimeError, match="QUEUE_BACKEND"):
            CourierSettings(queue_backend="kafka", api_key="k").validate_for_production()

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("COURIER_WORKER_CONCURRENCY", "3")
        assert CourierSettings().worker_concurrency == 3


class TestJSONFormatter:
    def test_includes_extra_fields(self):
        record = logging.makeLogRecord({
            "name": "courier_engine.deliveries.worker",
            "levelname": "WARNING",
            "msg": "Delivery dead-lettered: %s",
            "args": ("d-1",),
            "alert": "webhook_dead_letter",
            "delivery_id": "d-1",
        })
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Delivery dead-lettered: d-1"
        assert entry["level"] == "WARNING"
        assert entry["alert"] == "webhook_dead_letter"
        assert entry["delivery_id"] == "d-1"
        assert "args" not in entry

    def test_includes_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.makeLogRecord({"msg": "failed", "exc_info": sys.exc_info()})
        entry = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in entry["exception"]

    def test_get_logger_is_namespaced(self):
        assert get_logger("worker").name == "courier_engine.worker"
