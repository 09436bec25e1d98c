from __future__ import annotations

from types import SimpleNamespace

import pytest

from backend.app.billing.reconciler import WebhookReconciler
from backend.app.billing.service import BillingService
from billing_fakes import (
    NOW,
    FakeGateway,
    InMemoryCounterStore,
    InMemoryLedger,
    RecordingEventLogger,
    StubDowngradeGate,
    make_catalog,
)


@pytest.fixture
def billing():
    ledger = InMemoryLedger()
    gateway = FakeGateway()
    gate = StubDowngradeGate()
    events = RecordingEventLogger()
    counters = InMemoryCounterStore()
    catalog = make_catalog()
    service = BillingService(
        ledger=ledger,
        catalog=catalog,
        gateway=gateway,
        downgrade_gate=gate,
        event_logger=events,
        clock=lambda: NOW,
    )
    reconciler = WebhookReconciler(ledger=ledger, event_logger=events, counters=counters)
    return SimpleNamespace(
        ledger=ledger,
        gateway=gateway,
        gate=gate,
        events=events,
        counters=counters,
        catalog=catalog,
        service=service,
        reconciler=reconciler,
    )
