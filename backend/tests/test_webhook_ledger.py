from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.models_sqlalchemy import Base
from app.models_sqlalchemy.models import WebhookEvent
from app.services.webhook_ledger import mark_processed


def test_first_delivery_wins_and_repeats_are_ignored(db):
    payload = {"idempotencyKey": "evt-1", "actionType": "SaleStatusChanged"}

    assert mark_processed("basta", "evt-1", payload, event_type="SaleStatusChanged", db=db) is True
    assert mark_processed("basta", "evt-1", payload, db=db) is False
    assert mark_processed("basta", "evt-1", db=db) is False

    rows = db.query(WebhookEvent).all()
    assert len(rows) == 1
    assert rows[0].payload == payload
    assert rows[0].event_type == "SaleStatusChanged"


def test_keys_are_scoped_per_provider(db):
    assert mark_processed("basta", "evt-1", db=db) is True
    assert mark_processed("stripe", "evt-1", db=db) is True
    assert db.query(WebhookEvent).count() == 2


def test_empty_key_is_rejected(db):
    with pytest.raises(ValueError):
        mark_processed("basta", "", db=db)


def test_concurrent_deliveries_record_exactly_one(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)

    def deliver(_):
        session = Session()
        try:
            return mark_processed("stripe", "evt_same", {"n": 1}, db=session)
        finally:
            session.close()

    try:
        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(deliver, range(16)))

        check = Session()
        try:
            assert check.query(WebhookEvent).count() == 1
        finally:
            check.close()
    finally:
        engine.dispose()

    assert outcomes.count(True) == 1
    assert outcomes.count(False) == 15
