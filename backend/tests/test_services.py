"""Service layer tests (plan derivation, upserts, streaks, archive aggregates)"""
import pytest
from datetime import date, datetime, timedelta, timezone
from sqlalchemy import event

from conftest import test_engine

from mindsync.models.deleted_user import DeletedUser
from mindsync.models.subscription import Subscription
from mindsync.models.user import PLANS, User
from mindsync.services.archive_service import archive_deleted_user, get_deleted_user_stats, list_deleted_users
from mindsync.services.listening_service import compute_streak
from mindsync.services.subscription_service import (
    append_payment, cancel_subscription, derive_plan_from_price_id, get_subscription_by_user_id, upsert_subscription
)
from mindsync.services.user_service import (
    create_user_with_subscription, delete_user, get_user_by_customer_id, set_user_plan
)


@pytest.mark.critical
class TestPlanDerivation:
    """Test price id to plan mapping"""

    @pytest.mark.parametrize("price_id,plan", [
        ("price_premium_monthly", "premium"),
        ("price_pro_yearly", "pro"),
        ("price_1Nabc", "free"),
        (None, "free"),
    ])
    def test_substring_rule(self, price_id, plan):
        assert derive_plan_from_price_id(price_id) == plan

    def test_premium_checked_before_pro(self):
        # "premium_pro" contains both markers
        assert derive_plan_from_price_id("price_premium_pro") == "premium"

    @pytest.mark.parametrize("price_id", ["price_premium_x", "price_pro_x", "price_basic", "", None])
    def test_result_is_a_known_plan(self, price_id):
        assert derive_plan_from_price_id(price_id) in PLANS


@pytest.mark.critical
class TestSubscriptionUpsert:
    """Test one-row-per-user upserts"""

    def test_upsert_twice_keeps_one_row(self, db_session, test_user):
        upsert_subscription(test_user.clerk_id, {"plan": "premium", "status": "active"}, db_session)
        db_session.commit()
        upsert_subscription(test_user.clerk_id, {"plan": "pro", "status": "past_due"}, db_session)
        db_session.commit()

        rows = db_session.query(Subscription).filter(Subscription.user_id == test_user.clerk_id).all()
        assert len(rows) == 1
        assert rows[0].plan == "pro"
        assert rows[0].status == "past_due"

    def test_upsert_creates_missing_row(self, db_session):
        db_session.add(User(clerk_id="user_nosub", email="nosub@example.com"))
        db_session.commit()

        subscription = upsert_subscription("user_nosub", {"plan": "premium"}, db_session)
        db_session.commit()
        assert subscription.status == "active"
        assert subscription.plan == "premium"

    def test_unknown_fields_ignored(self, db_session, test_user):
        upsert_subscription(test_user.clerk_id, {"user_id": "user_hijack", "plan": "pro"}, db_session)
        db_session.commit()
        assert get_subscription_by_user_id(test_user.clerk_id, db_session).plan == "pro"
        assert get_subscription_by_user_id("user_hijack", db_session) is None

    def test_cancel_missing_subscription(self, db_session):
        assert cancel_subscription("user_nobody", db_session) is None

    def test_append_payment_deduplicates_invoice(self, db_session, test_user):
        payment = {"invoice_id": "in_1", "amount": 500, "currency": "usd", "status": "succeeded",
                   "date": datetime(2025, 1, 1, tzinfo=timezone.utc).isoformat()}
        append_payment(test_user.clerk_id, payment, True, db_session)
        append_payment(test_user.clerk_id, dict(payment), True, db_session)
        db_session.commit()

        subscription = get_subscription_by_user_id(test_user.clerk_id, db_session)
        assert len(subscription.payment_history) == 1


@pytest.mark.high
class TestUserLifecycle:
    """Test user creation and deletion helpers"""

    def test_create_is_idempotent(self, db_session, test_user):
        assert create_user_with_subscription(test_user.clerk_id, "other@example.com", None, db_session) is None
        db_session.refresh(test_user)
        assert test_user.email == "listener@example.com"

    def test_delete_removes_subscription(self, db_session, test_user):
        assert delete_user(test_user.clerk_id, db_session) is True
        assert get_subscription_by_user_id("user_test123", db_session) is None
        assert delete_user("user_test123", db_session) is False

    def test_customer_lookup_ignores_empty_id(self, db_session, test_user):
        assert get_user_by_customer_id(None, db_session) is None

    def test_set_user_plan_mirrors_known_plan(self, db_session, test_user):
        set_user_plan(test_user, "premium", db_session)
        db_session.commit()
        db_session.refresh(test_user)
        assert test_user.plan == "premium"

    def test_set_user_plan_rejects_unknown_plan(self, db_session, test_user):
        with pytest.raises(ValueError):
            set_user_plan(test_user, "enterprise", db_session)
        assert test_user.plan == "free"


@pytest.mark.high
class TestStreak:
    """Test consecutive-day streak computation"""

    def test_no_sessions(self):
        assert compute_streak([], date(2025, 3, 10)) == 0

    def test_run_ending_today(self):
        days = [date(2025, 3, 10), date(2025, 3, 9), date(2025, 3, 8)]
        assert compute_streak(days, date(2025, 3, 10)) == 3

    def test_run_ending_yesterday(self):
        days = [date(2025, 3, 9), date(2025, 3, 8)]
        assert compute_streak(days, date(2025, 3, 10)) == 2

    def test_gap_breaks_run(self):
        days = [date(2025, 3, 10), date(2025, 3, 8), date(2025, 3, 7)]
        assert compute_streak(days, date(2025, 3, 10)) == 1

    def test_old_sessions_only(self):
        assert compute_streak([date(2025, 3, 1)], date(2025, 3, 10)) == 0


@pytest.mark.high
class TestArchive:
    """Test archive writes and aggregates"""

    def test_archive_reused_for_same_clerk_id(self, db_session, test_user):
        subscription = get_subscription_by_user_id(test_user.clerk_id, db_session)
        first = archive_deleted_user(test_user, subscription, db_session)
        second = archive_deleted_user(test_user, subscription, db_session)
        assert first.id == second.id
        assert db_session.query(DeletedUser).count() == 1

    def test_archive_omits_payment_history(self, db_session, test_user):
        subscription = get_subscription_by_user_id(test_user.clerk_id, db_session)
        subscription.payment_history = [{"invoice_id": "in_1"}]
        db_session.commit()

        record = archive_deleted_user(test_user, subscription, db_session, deletion_source="admin", deletion_reason="abuse")
        assert set(record.subscription_info) == {"plan", "status", "cancel_reason"}
        assert record.deletion_reason == "abuse"

    def test_invalid_source_rejected(self, db_session, test_user):
        with pytest.raises(ValueError):
            archive_deleted_user(test_user, None, db_session, deletion_source="robot")

    def test_stats_on_empty_archive(self, db_session):
        stats = get_deleted_user_stats(db_session)
        assert stats == {
            "totalDeleted": 0,
            "byReason": {},
            "bySource": {"user": 0, "admin": 0, "system": 0},
            "byMonth": {},
        }

    def test_list_returns_total(self, db_session):
        for i in range(3):
            db_session.add(DeletedUser(clerk_id=f"user_{i}", email=f"{i}@example.com", deletion_source="user"))
        db_session.commit()

        page = list_deleted_users(db_session, limit=2)
        assert len(page["records"]) == 2
        assert page["total"] == 3

    def test_stats_aggregated_with_group_by(self, db_session):
        for i, reason in enumerate(["too_expensive", "too_expensive", None]):
            db_session.add(DeletedUser(clerk_id=f"user_{i}", email=f"{i}@example.com",
                                       deletion_source="user", deletion_reason=reason))
        db_session.commit()

        statements = []

        def capture(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(test_engine, "before_cursor_execute", capture)
        try:
            stats = get_deleted_user_stats(db_session)
        finally:
            event.remove(test_engine, "before_cursor_execute", capture)

        assert stats["totalDeleted"] == 3
        assert stats["byReason"] == {"too_expensive": 2, "unknown": 1}
        assert any("GROUP BY" in statement for statement in statements)
        assert all("count(" in statement for statement in statements)

    def test_month_buckets_are_utc(self, db_session):
        # 23:30 on 31 March in UTC-5 is already April in UTC
        eastern = timezone(timedelta(hours=-5))
        db_session.add(DeletedUser(clerk_id="user_late", email="late@example.com", deletion_source="user",
                                   deleted_at=datetime(2025, 3, 31, 23, 30, tzinfo=eastern)))
        # 01:00 on 1 April in UTC+2 is still March in UTC
        cest = timezone(timedelta(hours=2))
        db_session.add(DeletedUser(clerk_id="user_early", email="early@example.com", deletion_source="admin",
                                   deleted_at=datetime(2025, 4, 1, 1, 0, tzinfo=cest)))
        db_session.commit()

        stats = get_deleted_user_stats(db_session)
        assert list(stats["byMonth"].items()) == [("2025-03", 1), ("2025-04", 1)]
        assert stats["bySource"] == {"user": 1, "admin": 1, "system": 0}
