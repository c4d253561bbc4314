"""
Entitlement Engine: monthly reset, free quota, usage counters.
"""

import os
import threading
from datetime import datetime

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from conftest import utc
from entitlements import (
    FREE_QUOTA, EntitlementEngine, is_permitted, needs_monthly_reset, usage_increments,
)
from errors import NotFoundError, PersistenceError, UsageLimitError
from user_db import Plan, User


# ============================================================================
# PURE DECISIONS
# ============================================================================

class TestMonthlyReset:
    def test_same_month_needs_no_reset(self):
        assert not needs_monthly_reset(utc(2026, 3, 1), utc(2026, 3, 31, 23, 59))

    def test_new_month_needs_reset(self):
        assert needs_monthly_reset(utc(2026, 3, 31), utc(2026, 4, 1))

    def test_same_month_other_year_needs_reset(self):
        assert needs_monthly_reset(utc(2025, 3, 10), utc(2026, 3, 10))

    def test_naive_stored_value_is_treated_as_utc(self):
        assert not needs_monthly_reset(datetime(2026, 3, 5), utc(2026, 3, 6))


class TestPermission:
    @pytest.mark.parametrize("used,allowed", [(0, True), (2, True), (3, False), (10, False)])
    def test_free_plan_quota(self, used, allowed):
        assert is_permitted(Plan.free, used) is allowed

    @pytest.mark.parametrize("plan", [Plan.yearly, Plan.lifetime])
    def test_paid_plans_are_unlimited(self, plan):
        assert is_permitted(plan, 1000)


class TestUsageIncrements:
    def test_analysis_bumps_total_and_monthly(self):
        assert usage_increments("analysis", 2) == {"total_analyses": 2, "monthly_analyses": 2}

    def test_images_and_downloads(self):
        assert usage_increments("images", 4) == {"images_analyzed": 4}
        assert usage_increments("download") == {"reports_downloaded": 1}

    def test_unknown_kind_has_no_effect(self):
        assert usage_increments("screenshots", 5) == {}


# ============================================================================
# ENGINE
# ============================================================================

class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(utc(2026, 1, 20, 12))


@pytest.fixture
def engine(db, clock):
    return EntitlementEngine(db, clock=clock)


@pytest.fixture
def free_user(make_user):
    return make_user(Plan.free, last_reset_date=utc(2026, 1, 2))


class TestEntitlementEngine:
    def test_three_analyses_exhaust_the_free_plan(self, engine, free_user):
        for _ in range(FREE_QUOTA):
            assert engine.can_perform(free_user, "analysis")
            engine.record_usage(free_user, "analysis")
        assert not engine.can_perform(free_user, "analysis")

    def test_month_boundary_restores_access(self, engine, clock, free_user, load):
        for _ in range(FREE_QUOTA):
            engine.record_usage(free_user, "analysis")
        assert not engine.can_perform(free_user)

        clock.now = utc(2026, 2, 1, 0, 5)
        assert engine.can_perform(free_user)

        stored = load(User, free_user)
        assert stored.monthly_analyses == 0
        assert stored.total_analyses == FREE_QUOTA
        assert stored.last_reset_date.month == 2

    def test_reset_happens_before_increment(self, engine, clock, make_user, load):
        uid = make_user(monthly_analyses=3, total_analyses=3, last_reset_date=utc(2025, 12, 30))
        engine.record_usage(uid, "analysis")
        stored = load(User, uid)
        assert stored.monthly_analyses == 1
        assert stored.total_analyses == 4

    def test_record_usage_counters(self, engine, free_user, load):
        engine.record_usage(free_user, "images", 3)
        engine.record_usage(free_user, "download")
        stored = load(User, free_user)
        assert (stored.images_analyzed, stored.reports_downloaded, stored.monthly_analyses) == (3, 1, 0)

    def test_unknown_kind_is_a_no_op(self, engine, free_user, load):
        engine.record_usage(free_user, "bogus", 5)
        stored = load(User, free_user)
        assert stored.total_analyses == 0
        assert stored.images_analyzed == 0
        assert stored.reports_downloaded == 0

    def test_missing_user(self, engine):
        with pytest.raises(NotFoundError):
            engine.record_usage(9999, "analysis")
        with pytest.raises(NotFoundError):
            engine.can_perform(9999)

    def test_consume_over_limit_raises_without_incrementing(self, engine, make_user, load):
        uid = make_user(monthly_analyses=3, total_analyses=7, last_reset_date=utc(2026, 1, 5))
        with pytest.raises(UsageLimitError) as exc:
            engine.consume(uid, "analysis")
        assert exc.value.extra["plan"] == "free"
        assert exc.value.extra["usage"]["monthlyAnalyses"] == 3
        stored = load(User, uid)
        assert (stored.monthly_analyses, stored.total_analyses) == (3, 7)

    def test_consume_non_analysis_is_not_limited(self, engine, make_user, load):
        uid = make_user(monthly_analyses=3, last_reset_date=utc(2026, 1, 5))
        engine.consume(uid, "download")
        assert load(User, uid).reports_downloaded == 1

    def test_paid_plan_is_never_limited(self, engine, make_user):
        uid = make_user(Plan.yearly, monthly_analyses=50, last_reset_date=utc(2026, 1, 5))
        user = engine.consume(uid, "analysis")
        assert user.monthly_analyses == 51
        assert engine.can_perform(uid)

    def test_persist_failure_is_surfaced(self, engine, db, free_user, monkeypatch):
        def broken_commit():
            raise OperationalError("UPDATE users", {}, Exception("disk full"))

        monkeypatch.setattr(db, "commit", broken_commit)
        with pytest.raises(PersistenceError):
            engine.record_usage(free_user, "analysis")


# ============================================================================
# ROW LOCKING
# ============================================================================

POSTGRES_URL = os.getenv("TEST_POSTGRES_URL")


class TestRowLock:
    def test_usage_query_locks_the_user_row(self, engine, free_user):
        sql = str(engine.locking_query(free_user).statement.compile(dialect=postgresql.dialect()))
        assert sql.rstrip().endswith("FOR UPDATE")
        assert "users.id =" in sql

    def test_record_usage_goes_through_the_lock(self, engine, free_user, monkeypatch):
        calls = []
        original = engine.locking_query

        def spy(user_id):
            calls.append(user_id)
            return original(user_id)

        monkeypatch.setattr(engine, "locking_query", spy)
        engine.record_usage(free_user, "analysis")
        engine.consume(free_user, "download")
        assert calls == [free_user, free_user]

    @pytest.mark.skipif(not POSTGRES_URL, reason="TEST_POSTGRES_URL not set")
    def test_concurrent_increments_are_not_lost(self):
        from sqlalchemy import create_engine

        from auth import create_user
        from database import Base, init_db

        pg = create_engine(POSTGRES_URL)
        factory = init_db(engine=pg)
        try:
            with factory() as s:
                uid = create_user(s, "race@acme.io", "secret123", "Race").id
                s.get(User, uid).plan = Plan.lifetime
                s.commit()

            rounds = 25

            def worker():
                with factory() as s:
                    worker_engine = EntitlementEngine(s)
                    for _ in range(rounds):
                        worker_engine.record_usage(uid, "analysis")

            threads = [threading.Thread(target=worker) for _ in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            with factory() as s:
                stored = s.get(User, uid)
                assert stored.total_analyses == 2 * rounds
                assert stored.monthly_analyses == 2 * rounds
        finally:
            Base.metadata.drop_all(bind=pg)
            pg.dispose()
