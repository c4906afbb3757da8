import io
import json
import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from shared.core import HealthStatus, ServiceHealth, get_logger, set_request_context, setup_logging


def test_startup_fails_without_processor_keys(engine):
    health = ServiceHealth("settlement-service", engine=engine,
                           required_config={"STRIPE_SECRET_KEY": "", "STRIPE_WEBHOOK_SECRET": "whsec_x"})
    app = FastAPI()
    app.include_router(health.create_health_router())

    resp = TestClient(app).get("/health/startup")

    assert resp.status_code == 503
    checks = resp.json()["checks"]
    assert checks["config:environment"]["output"] == "Missing configuration: STRIPE_SECRET_KEY"
    # tables come from create_all in tests, not alembic
    assert checks["database:migrations"]["status"] == HealthStatus.WARN


def test_readiness_checks_the_service_database(engine):
    checks = ServiceHealth("settlement-service", engine=engine).perform_readiness_checks()
    assert checks["database:connectivity"]["status"] == HealthStatus.PASS
    assert "cache:connectivity" not in checks


def test_overall_status_is_the_worst_check():
    checks = {"a": {"status": HealthStatus.PASS}, "b": {"status": HealthStatus.WARN}}
    assert ServiceHealth.calculate_overall_status(checks) == HealthStatus.WARN
    checks["c"] = {"status": HealthStatus.FAIL}
    assert ServiceHealth.calculate_overall_status(checks) == HealthStatus.FAIL


def test_log_lines_are_json_with_context_and_redacted_secrets():
    stream = io.StringIO()
    setup_logging("settlement-service", level="INFO", stream=stream)
    try:
        set_request_context(request_id="req-1", order_id=42)
        get_logger("settlement.test").info(
            "Refund call with sk_test_abc123 failed",
            extra={"extra_fields": {"payment_id": 7}}
        )
        line = json.loads(stream.getvalue().strip().splitlines()[-1])
    finally:
        logging.getLogger().handlers = []

    assert line["service"] == "settlement-service"
    assert line["trace"]["request_id"] == "req-1"
    assert line["trace"]["order_id"] == "42"
    assert line["custom"] == {"payment_id": 7}
    assert "sk_test_abc123" not in line["message"]
    assert "***REDACTED***" in line["message"]
