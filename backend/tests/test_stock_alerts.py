# Overview: Pytest coverage for low-stock and expiry alert scans.

from datetime import date

import pytest
from labstock.services import alert_service
from labstock.services.stock_errors import InvalidRequestError
from labstock.time_utils import utcnow

TODAY = date(2026, 3, 10)


class TestLowStock:

    def test_at_or_below_minimum_including_out_of_stock(self, db_session, make_item, lab_b):
        make_item(name="Acetone", quantity=3, minimum_quantity=3)
        make_item(name="Buffer", quantity=0, minimum_quantity=2)
        make_item(name="Gloves", quantity=4, minimum_quantity=3)
        make_item(name="Pipettes", quantity=0, minimum_quantity=None)
        make_item(name="Agar", lab=lab_b, quantity=1, minimum_quantity=5)

        rows = alert_service.low_stock()

        assert [r["name"] for r in rows] == ["Acetone", "Buffer", "Agar"]
        assert rows[1]["stock_status"] == "out_of_stock"

    def test_filtered_by_lab(self, db_session, make_item, lab_b):
        make_item(name="Acetone", quantity=1, minimum_quantity=3)
        make_item(name="Agar", lab=lab_b, quantity=1, minimum_quantity=5)

        rows = alert_service.low_stock(lab_id=lab_b.id)
        assert [r["name"] for r in rows] == ["Agar"]

    def test_soft_deleted_items_never_alert(self, db_session, make_item):
        gone = make_item(name="Acetone", quantity=0, minimum_quantity=3)
        gone.deleted_at = utcnow()
        db_session.commit()

        assert alert_service.low_stock() == []


class TestExpiry:

    @pytest.fixture
    def dated_items(self, make_item):
        make_item(name="Expired", expiry_date=date(2026, 3, 9))
        make_item(name="Today", expiry_date=date(2026, 3, 10))
        make_item(name="Soon", expiry_date=date(2026, 3, 20))
        make_item(name="Edge", expiry_date=date(2026, 4, 9))
        make_item(name="Later", expiry_date=date(2026, 4, 10))
        make_item(name="Never", expiry_date=None)

    def test_expiring_includes_expired_by_default(self, db_session, dated_items):
        rows = alert_service.expiring(within_days=30, today=TODAY)

        assert [r["name"] for r in rows] == ["Expired", "Today", "Soon", "Edge"]
        assert rows[0]["is_expired"] is True
        assert rows[0]["days_until_expiry"] == -1
        assert rows[1]["is_expired"] is False
        assert rows[1]["days_until_expiry"] == 0

    def test_upcoming_only(self, db_session, dated_items):
        rows = alert_service.expiring(within_days=30, include_expired=False, today=TODAY)
        assert [r["name"] for r in rows] == ["Today", "Soon", "Edge"]

    def test_zero_day_window(self, db_session, dated_items):
        rows = alert_service.expiring(within_days=0, include_expired=False, today=TODAY)
        assert [r["name"] for r in rows] == ["Today"]

    def test_expired_bucket(self, db_session, dated_items):
        rows = alert_service.expired(today=TODAY)
        assert [r["name"] for r in rows] == ["Expired"]
        assert rows[0]["stock_status"] == "expired"

    def test_default_window_comes_from_config(self, app, monkeypatch, db_session, dated_items):
        monkeypatch.setitem(app.config, "EXPIRY_WINDOW_DAYS", 10)
        rows = alert_service.expiring(include_expired=False, today=TODAY)
        assert [r["name"] for r in rows] == ["Today", "Soon"]

    @pytest.mark.parametrize("within_days", [-1, 2.5, True])
    def test_invalid_window(self, db_session, within_days):
        with pytest.raises(InvalidRequestError):
            alert_service.expiring(within_days=within_days, today=TODAY)


class TestSummary:

    def test_counts(self, db_session, make_item):
        make_item(name="Low", quantity=2, minimum_quantity=3)
        make_item(name="Empty", quantity=0, minimum_quantity=1)
        make_item(name="Expired", quantity=5, minimum_quantity=1, expiry_date=date(2026, 3, 1))
        make_item(name="Soon", quantity=5, minimum_quantity=1, expiry_date=date(2026, 3, 15))

        summary = alert_service.alert_summary(within_days=30, today=TODAY)

        assert summary["low_stock_count"] == 2
        assert summary["out_of_stock_count"] == 1
        assert summary["expired_count"] == 1
        assert summary["expiring_soon_count"] == 1

    def test_group_by_lab(self):
        rows = [
            {"lab_id": 2, "name": "b"},
            {"lab_id": 1, "name": "a"},
            {"lab_id": 2, "name": "c"},
        ]
        grouped = alert_service.group_by_lab(rows)
        assert list(grouped) == [2, 1]
        assert [r["name"] for r in grouped[2]] == ["b", "c"]
