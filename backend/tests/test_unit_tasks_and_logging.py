"""Scheduled task entry points and the structured log format."""

import json
import logging
from datetime import datetime, timedelta, timezone

from credit_engine.components.ledger.reservations import ReservationManager
from credit_engine.platform.logging import JsonFormatter
from credit_engine.platform.request_context import (
    reset_webhook_event_id,
    set_webhook_event_id,
)
from credit_engine.tasks import celery_app, run_reconciliation, sweep_expired_reservations


def test_beat_schedule_registers_both_sweeps():
    tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert tasks == {
        "credit_engine.tasks.reconciliation_tasks.run_reconciliation",
        "credit_engine.tasks.reconciliation_tasks.sweep_expired_reservations",
    }


def test_run_reconciliation_task(store, seed_account):
    seed_account(1, allocated=100, used=40, reset_at=datetime.now(timezone.utc) - timedelta(minutes=1))

    result = run_reconciliation.apply().get()

    assert result["accounts_reset"] == 1
    assert result["credits_rolled_over"] == 60
    assert result["failures"] == []
    assert store.snapshot(1).rollover.amount == 60


def test_sweep_expired_reservations_task(store, seed_account):
    seed_account(2, purchased=10)
    ReservationManager(store, ttl_seconds=-1).reserve(2, 4)

    result = sweep_expired_reservations.apply().get()

    assert result == {"expired": 1, "failures": 0}
    assert store.snapshot(2).purchased.amount == 10


def _format(message, **extra):
    record = logging.LogRecord("credit_engine.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(JsonFormatter().format(record))


def test_json_log_carries_account_and_webhook_context():
    token = set_webhook_event_id("evt_abc")
    try:
        payload = _format("granted", account_id=7, request_id="req-123")
    finally:
        reset_webhook_event_id(token)

    assert payload["message"] == "granted"
    assert payload["level"] == "INFO"
    assert payload["request_id"] == "req-123"
    assert payload["webhook_event_id"] == "evt_abc"
    assert payload["account_id"] == 7


def test_json_log_omits_unset_context():
    payload = _format("plain")
    assert "webhook_event_id" not in payload
    assert "account_id" not in payload
