"""
Tests for the ad-session pipeline: issuing sessions, recording views and settling rewards.
"""

import datetime
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from fonpay import sessions
from fonpay.config import Config
from fonpay.database import Database, utcnow
from fonpay.errors import (
    NotFound, AlreadySettled, Incomplete, FeatureDisabled, UserBanned
)
from tests.conftest import USER_ID, REFERRER_ID, coins_of


def watch_ads(db, session_id, count=10, prefix="evt"):
    result = 0
    for i in range(count):
        result = sessions.record_view(db, session_id, ad_index=i, external_event_id=f"{prefix}-{session_id}-{i}")
    return result


class TestStartSession:

    def test_creates_open_session_with_link(self, db, user):
        session = sessions.start_session(db, USER_ID)

        assert session.telegram_id == USER_ID
        assert session.completed is False
        assert session.link == f"https://fonpay.test/ad/{session.id}"

    def test_returns_existing_open_session(self, db, user):
        first = sessions.start_session(db, USER_ID)
        second = sessions.start_session(db, USER_ID)

        assert first.id == second.id

    def test_new_session_after_settlement(self, db, user):
        first = sessions.start_session(db, USER_ID)
        watch_ads(db, first.id)
        sessions.settle(db, first.id)

        second = sessions.start_session(db, USER_ID)
        assert second.id != first.id

    def test_unknown_user(self, db):
        with pytest.raises(NotFound):
            sessions.start_session(db, 424242)

    def test_banned_user(self, db, user):
        db.set_banned(USER_ID, True)
        with pytest.raises(UserBanned):
            sessions.start_session(db, USER_ID)

    def test_tasks_disabled(self, db, user):
        db.update_setting("tasks_enabled", "0")
        with pytest.raises(FeatureDisabled):
            sessions.start_session(db, USER_ID)

        db.update_setting("tasks_enabled", "1")
        assert sessions.start_session(db, USER_ID).completed is False


class TestRecordView:

    def test_counts_views(self, db, user):
        session = sessions.start_session(db, USER_ID)

        assert sessions.record_view(db, session.id, external_event_id="a") == 1
        assert sessions.record_view(db, session.id, external_event_id="b") == 2
        assert sessions.record_view(db, session.id) == 3

    def test_duplicate_event_counts_once(self, db, user):
        session = sessions.start_session(db, USER_ID)

        for _ in range(5):
            count = sessions.record_view(db, session.id, external_event_id="same-event")

        assert count == 1
        assert sessions.session_progress(db, session.id).count == 1

    def test_unknown_session(self, db):
        with pytest.raises(NotFound):
            sessions.record_view(db, "does-not-exist")

    def test_idle_session_resets_progress(self, db, user):
        session = sessions.start_session(db, USER_ID)
        start = utcnow()
        for i in range(4):
            sessions.record_view(db, session.id, external_event_id=f"e{i}", now=start)

        later = start + datetime.timedelta(seconds=Config.SESSION_INACTIVITY_SECONDS + 1)
        assert sessions.session_progress(db, session.id, now=later).count == 0
        assert sessions.record_view(db, session.id, external_event_id="e-late", now=later) == 1

    def test_activity_within_window_keeps_progress(self, db, user):
        session = sessions.start_session(db, USER_ID)
        start = utcnow()
        sessions.record_view(db, session.id, external_event_id="e0", now=start)

        soon = start + datetime.timedelta(seconds=60)
        assert sessions.record_view(db, session.id, external_event_id="e1", now=soon) == 2

    def test_redelivery_after_reset_not_counted(self, db, user):
        session = sessions.start_session(db, USER_ID)
        start = utcnow()
        assert sessions.record_view(db, session.id, external_event_id="evt-1", now=start) == 1

        later = start + datetime.timedelta(minutes=3)
        assert sessions.record_view(db, session.id, external_event_id="evt-2", now=later) == 1
        assert sessions.record_view(db, session.id, external_event_id="evt-1",
                                    now=later + datetime.timedelta(seconds=1)) == 1

    def test_finished_session_is_not_reset(self, db, user):
        session = sessions.start_session(db, USER_ID)
        finished_at = utcnow() - datetime.timedelta(minutes=5)
        for i in range(10):
            sessions.record_view(db, session.id, external_event_id=f"evt-{i}", now=finished_at)

        assert sessions.session_progress(db, session.id).count == 10
        assert sessions.settle(db, session.id).reward == 200
        assert coins_of(db, USER_ID) == 200

    def test_reset_policy_can_be_disabled(self, db, user, monkeypatch):
        monkeypatch.setattr(Config, "SESSION_INACTIVITY_SECONDS", 0)
        session = sessions.start_session(db, USER_ID)
        start = utcnow()
        sessions.record_view(db, session.id, external_event_id="e0", now=start)

        much_later = start + datetime.timedelta(hours=5)
        assert sessions.session_progress(db, session.id, now=much_later).count == 1


class TestSettle:

    def test_ten_views_then_settle_credits_reward(self, db, user):
        session = sessions.start_session(db, USER_ID)
        assert watch_ads(db, session.id) == 10

        settlement = sessions.settle(db, session.id)

        assert settlement.reward == 200
        assert settlement.coins == 200
        assert coins_of(db, USER_ID) == 200
        assert sessions.get_session(db, session.id).completed is True
        ledger = db.get_transactions(USER_ID)
        assert [(t['type'], t['coins']) for t in ledger] == [('task_reward', 200)]

    def test_settle_twice_credits_once(self, db, user):
        session = sessions.start_session(db, USER_ID)
        watch_ads(db, session.id)

        sessions.settle(db, session.id)
        with pytest.raises(AlreadySettled):
            sessions.settle(db, session.id)

        assert coins_of(db, USER_ID) == 200

    def test_incomplete_session(self, db, user):
        session = sessions.start_session(db, USER_ID)
        watch_ads(db, session.id, count=9)

        with pytest.raises(Incomplete) as exc:
            sessions.settle(db, session.id)

        assert (exc.value.count, exc.value.threshold) == (9, 10)
        assert coins_of(db, USER_ID) == 0
        assert sessions.get_session(db, session.id).completed is False

    def test_unknown_session(self, db):
        with pytest.raises(NotFound):
            sessions.settle(db, "missing")

    def test_reward_reads_current_setting(self, db, user):
        db.update_setting("task_reward", "350")
        session = sessions.start_session(db, USER_ID)
        watch_ads(db, session.id)

        assert sessions.settle(db, session.id).reward == 350
        assert coins_of(db, USER_ID) == 350


class TestReferralBonus:

    @pytest.fixture
    def referred(self, db):
        db.register_user(REFERRER_ID, "bob", "Bob")
        db.register_user(USER_ID, "alice", "Alice", referred_by=REFERRER_ID)

    def test_first_settlement_pays_referrer(self, db, referred):
        session = sessions.start_session(db, USER_ID)
        watch_ads(db, session.id)

        settlement = sessions.settle(db, session.id)

        assert settlement.referrer_id == REFERRER_ID
        assert settlement.referral_bonus == 50
        assert coins_of(db, REFERRER_ID) == 50
        assert db.get_user(USER_ID)['referral_credited'] == 1
        assert db.get_transactions(REFERRER_ID)[0]['type'] == 'referral_bonus'

    def test_later_settlements_do_not_pay_again(self, db, referred):
        for n in range(3):
            session = sessions.start_session(db, USER_ID)
            watch_ads(db, session.id, prefix=f"round{n}")
            settlement = sessions.settle(db, session.id)
            if n:
                assert settlement.referrer_id is None

        assert coins_of(db, REFERRER_ID) == 50
        assert coins_of(db, USER_ID) == 600

    def test_already_credited_flag_blocks_bonus(self, db, referred):
        conn = db.get_connection()
        conn.execute('UPDATE users SET referral_credited = 1 WHERE telegram_id = ?', (USER_ID,))
        conn.commit()
        conn.close()

        session = sessions.start_session(db, USER_ID)
        watch_ads(db, session.id)
        sessions.settle(db, session.id)

        assert coins_of(db, REFERRER_ID) == 0

    def test_failure_mid_settlement_rolls_back(self, db, referred):
        session = sessions.start_session(db, USER_ID)
        watch_ads(db, session.id)

        # The second ledger write is the referral bonus
        with patch.object(Database, "add_transaction", side_effect=[None, RuntimeError("ledger write failed")]):
            with pytest.raises(RuntimeError):
                sessions.settle(db, session.id)

        assert sessions.get_session(db, session.id).completed is False
        assert coins_of(db, USER_ID) == 0
        assert coins_of(db, REFERRER_ID) == 0
        assert db.get_user(USER_ID)['referral_credited'] == 0
        assert db.get_transactions(USER_ID) == []

        settlement = sessions.settle(db, session.id)
        assert (settlement.reward, settlement.referral_bonus) == (200, 50)
        assert coins_of(db, REFERRER_ID) == 50

    def test_user_without_referrer(self, db, user):
        session = sessions.start_session(db, USER_ID)
        watch_ads(db, session.id)

        settlement = sessions.settle(db, session.id)

        assert settlement.referrer_id is None
        assert db.get_user(USER_ID)['referral_credited'] == 0


class TestRegistration:

    def test_self_referral_ignored(self, db):
        db.register_user(USER_ID, "alice", "Alice", referred_by=USER_ID)
        assert db.get_user(USER_ID)['referred_by'] is None

    def test_unknown_referrer_ignored(self, db):
        db.register_user(USER_ID, "alice", "Alice", referred_by=555)
        assert db.get_user(USER_ID)['referred_by'] is None

    def test_second_start_keeps_original_referrer(self, db):
        db.register_user(REFERRER_ID, "bob", "Bob")
        db.register_user(USER_ID, "alice", "Alice")

        assert db.register_user(USER_ID, "alice", "Alice", referred_by=REFERRER_ID) is False
        assert db.get_user(USER_ID)['referred_by'] is None


class TestConcurrentSettlement:

    def test_only_one_settle_wins(self, db, user):
        session = sessions.start_session(db, USER_ID)
        watch_ads(db, session.id)
        barrier = threading.Barrier(2)

        def attempt(_):
            barrier.wait()
            try:
                return sessions.settle(db, session.id)
            except AlreadySettled as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(attempt, range(2)))

        assert len([r for r in results if isinstance(r, sessions.Settlement)]) == 1
        assert len([r for r in results if isinstance(r, AlreadySettled)]) == 1
        assert coins_of(db, USER_ID) == 200
        assert len(db.get_transactions(USER_ID)) == 1
