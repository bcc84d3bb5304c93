"""
Business analytics: period ranges in the business timezone, daily revenue series
and the admin analytics routes.
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from services.analytics_service import (
    daily_revenue_series,
    get_date_range,
    percent_change,
    previous_range,
    trend,
)
from conftest import mock_cursor

# 07:00 in Chicago (CDT)
NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestDateRanges:
    def test_today_starts_at_business_midnight(self):
        start, end = get_date_range("today", NOW)
        assert start == datetime(2026, 6, 1, 5, 0, tzinfo=timezone.utc)
        assert end == NOW

    def test_yesterday_is_one_full_business_day(self):
        start, end = get_date_range("yesterday", NOW)
        assert start == datetime(2026, 5, 31, 5, 0, tzinfo=timezone.utc)
        assert end == datetime(2026, 6, 1, 5, 0, tzinfo=timezone.utc)

    def test_ytd_uses_winter_offset(self):
        start, _ = get_date_range("ytd", NOW)
        assert start == datetime(2026, 1, 1, 6, 0, tzinfo=timezone.utc)

    def test_rolling_and_all(self):
        assert get_date_range("7d", NOW) == (NOW - timedelta(days=7), NOW)
        assert get_date_range("all", NOW) == (None, NOW)

    def test_invalid_period(self):
        with pytest.raises(ValueError):
            get_date_range("2w", NOW)

    def test_previous_range(self):
        start = NOW - timedelta(days=30)
        assert previous_range(start, NOW) == (start - timedelta(days=30), start)
        assert previous_range(None, NOW) is None


def test_percent_change_and_trend():
    assert percent_change(150, 100) == 50.0
    assert percent_change(50, 0) == 0.0
    assert trend(-3.2) == "down"
    assert trend(0) == "flat"


def test_daily_series_buckets_by_business_day_and_zero_fills():
    orders = [
        {"created_at": datetime(2026, 6, 1, 3, 0, tzinfo=timezone.utc), "pricing": {"total": 1000}},
        {"created_at": datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc), "pricing": {"total": 500.25}},
        {"created_at": None, "pricing": {"total": 99}},
    ]
    series = daily_revenue_series(orders, NOW - timedelta(days=2), NOW)
    assert series == [
        {"date": "2026-05-30", "revenue": 0.0, "orders": 0},
        {"date": "2026-05-31", "revenue": 1000.0, "orders": 1},
        {"date": "2026-06-01", "revenue": 500.25, "orders": 1},
    ]


def test_daily_series_empty_range():
    series = daily_revenue_series([], NOW - timedelta(days=1), NOW)
    assert [d["revenue"] for d in series] == [0.0, 0.0]


# ============================================
# Routes
# ============================================

def test_invalid_period_rejected(client, admin_headers):
    assert client.get("/api/admin/analytics/summary?period=2w", headers=admin_headers).status_code == 422


def test_financial_needs_financial_permission(client, viewer_headers):
    assert client.get("/api/admin/analytics/financial", headers=viewer_headers).status_code == 403


def test_funnel_invalid_cohort_is_400(client, admin_headers):
    with patch("services.conversion_funnel.load_funnel_records", new_callable=AsyncMock, return_value=[]):
        resp = client.get("/api/admin/analytics/funnel?cohort=daily", headers=admin_headers)
    assert resp.status_code == 400


def test_model_performance_route(client, admin_headers):
    models = [{"model_slug": "the-magnolia", "name": "The Magnolia", "builds": 4, "orders": 1, "revenue": 90000, "conversion_rate": 25.0}]
    with patch("services.analytics_service.model_performance", new_callable=AsyncMock, return_value=models):
        resp = client.get("/api/admin/analytics/models?period=90d", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json() == {"period": "90d", "models": models}


def test_daily_revenue_route_zero_fills_period(client, viewer_headers):
    db = MagicMock()
    orders = [
        {"created_at": datetime.now(timezone.utc) - timedelta(days=1), "pricing": {"total": 1200.5}},
        {"created_at": datetime.now(timezone.utc) - timedelta(days=1), "pricing": {"total": 800}},
    ]
    db.orders.find.return_value = mock_cursor(orders)
    with patch("services.analytics_service.database.get_db", return_value=db):
        resp = client.get("/api/admin/analytics/revenue/daily?period=7d", headers=viewer_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["period"] == "7d"
    assert body["timezone"] == "America/Chicago"
    assert body["total"] == 2000.5
    assert len(body["series"]) >= 7
    assert sum(day["orders"] for day in body["series"]) == 2
    query = db.orders.find.call_args[0][0]
    assert "$nin" in query["status"]


def test_daily_revenue_route_rejects_unknown_period(client, viewer_headers):
    assert client.get("/api/admin/analytics/revenue/daily?period=2w", headers=viewer_headers).status_code == 422
