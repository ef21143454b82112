"""
Ad-session reward pipeline.

A session is one "watch N ads" task. The ad network reports validated views
against it, and once the validated count reaches the threshold the session is
settled: the owner is credited the task reward exactly once and, on the
owner's first settlement, their referrer receives the referral bonus.
"""

import uuid
import logging
import datetime
from dataclasses import dataclass
from typing import Optional

from .config import Config
from .database import Database, utcnow, parse_timestamp
from .errors import NotFound, AlreadySettled, Incomplete, FeatureDisabled, UserBanned

logger = logging.getLogger(__name__)


@dataclass
class AdSession:
    id: str
    telegram_id: int
    completed: bool
    created_at: str

    @property
    def link(self) -> str:
        return ad_link(self.id)


@dataclass
class Progress:
    session_id: str
    count: int
    threshold: int
    completed: bool

    @property
    def remaining(self) -> int:
        return max(self.threshold - self.count, 0)


@dataclass
class Settlement:
    session_id: str
    telegram_id: int
    reward: int
    coins: int
    referrer_id: Optional[int] = None
    referral_bonus: int = 0


def ad_link(session_id: str) -> str:
    """Shareable link to the ad-viewer page for a session"""
    return f"{Config.BASE_URL}/ad/{session_id}"


def _row_to_session(row) -> AdSession:
    return AdSession(
        id=row['id'],
        telegram_id=row['telegram_id'],
        completed=bool(row['completed']),
        created_at=row['created_at'],
    )


def _fetch_session(cursor, session_id: str):
    cursor.execute('SELECT * FROM ad_sessions WHERE id = ?', (session_id,))
    row = cursor.fetchone()
    if row is None:
        raise NotFound("❓ Task session not found.")
    return row


def _validated_count(cursor, session_id: str) -> int:
    cursor.execute('SELECT COUNT(*) FROM ad_views WHERE session_id = ? AND validated = 1', (session_id,))
    return cursor.fetchone()[0]


def _reset_if_stale(cursor, session_id: str, now: datetime.datetime):
    """Invalidate a session's views when the newest one is older than the inactivity window.

    Rows are kept with ``validated = 0`` so their event ids still block redeliveries.
    A session that already reached the threshold is never reset; it stays claimable.
    """
    window = Config.SESSION_INACTIVITY_SECONDS
    if window <= 0:
        return
    cursor.execute('''
        SELECT MAX(created_at), COUNT(*) FROM ad_views WHERE session_id = ? AND validated = 1
    ''', (session_id,))
    last_view, count = cursor.fetchone()
    if last_view is None or count >= Config.REQUIRED_VIEWS:
        return
    if now - parse_timestamp(last_view) > datetime.timedelta(seconds=window):
        cursor.execute('UPDATE ad_views SET validated = 0 WHERE session_id = ? AND validated = 1', (session_id,))
        logger.info("Session %s idle for more than %ss, progress reset (%s views invalidated)",
                    session_id, window, cursor.rowcount)


def get_session(db: Database, session_id: str) -> AdSession:
    conn = db.get_connection()
    try:
        row = conn.execute('SELECT * FROM ad_sessions WHERE id = ?', (session_id,)).fetchone()
    finally:
        conn.close()
    if row is None:
        raise NotFound("❓ Task session not found.")
    return _row_to_session(row)


def start_session(db: Database, telegram_id: int) -> AdSession:
    """Start an ad-watch task, or return the user's task that is still open"""
    with db.transaction() as cursor:
        user = db.require_user(telegram_id, cursor=cursor)
        if user['is_banned']:
            raise UserBanned()
        if not db.tasks_enabled(cursor=cursor):
            raise FeatureDisabled()

        cursor.execute('SELECT * FROM ad_sessions WHERE telegram_id = ? AND completed = 0', (telegram_id,))
        row = cursor.fetchone()
        if row is not None:
            return _row_to_session(row)

        session = AdSession(
            id=uuid.uuid4().hex,
            telegram_id=telegram_id,
            completed=False,
            created_at=utcnow().isoformat(),
        )
        cursor.execute('''
            INSERT INTO ad_sessions (id, telegram_id, completed, created_at)
            VALUES (?, ?, 0, ?)
        ''', (session.id, session.telegram_id, session.created_at))

    logger.info("Started ad session %s for user %s", session.id, telegram_id)
    return session


def record_view(db: Database, session_id: str, ad_index: int = None,
                external_event_id: str = None, now: datetime.datetime = None) -> int:
    """Record one validated view and return the session's validated count.

    A repeated ``external_event_id`` is ignored, so redelivered postbacks count once.
    """
    now = now or utcnow()
    with db.transaction() as cursor:
        session = _fetch_session(cursor, session_id)
        if not session['completed']:
            _reset_if_stale(cursor, session_id, now)

        cursor.execute('''
            INSERT OR IGNORE INTO ad_views (session_id, telegram_id, ad_index, external_event_id, validated, created_at)
            VALUES (?, ?, ?, ?, 1, ?)
        ''', (session_id, session['telegram_id'], ad_index, external_event_id, now.isoformat()))
        if cursor.rowcount == 0:
            logger.info("Duplicate ad event %s for session %s ignored", external_event_id, session_id)

        count = _validated_count(cursor, session_id)

    logger.debug("Session %s has %s validated views", session_id, count)
    return count


def session_progress(db: Database, session_id: str, now: datetime.datetime = None) -> Progress:
    now = now or utcnow()
    with db.transaction() as cursor:
        session = _fetch_session(cursor, session_id)
        if not session['completed']:
            _reset_if_stale(cursor, session_id, now)
        count = _validated_count(cursor, session_id)

    return Progress(
        session_id=session_id,
        count=count,
        threshold=Config.REQUIRED_VIEWS,
        completed=bool(session['completed']),
    )


def settle(db: Database, session_id: str) -> Settlement:
    """Credit the task reward for a finished session, exactly once.

    Marking the session completed, crediting the owner, paying the one-time
    referral bonus and writing the ledger rows happen in one transaction; the
    conditional update on ``completed`` decides the single winner.
    """
    threshold = Config.REQUIRED_VIEWS
    with db.transaction() as cursor:
        session = _fetch_session(cursor, session_id)
        if session['completed']:
            raise AlreadySettled()

        count = _validated_count(cursor, session_id)
        if count < threshold:
            raise Incomplete(count, threshold)

        now = utcnow().isoformat()
        cursor.execute('''
            UPDATE ad_sessions SET completed = 1, completed_at = ?
            WHERE id = ? AND completed = 0
        ''', (now, session_id))
        if cursor.rowcount == 0:
            raise AlreadySettled()

        telegram_id = session['telegram_id']
        reward = db.get_int_setting('task_reward', Config.TASK_REWARD, cursor=cursor)
        cursor.execute('UPDATE users SET coins = coins + ? WHERE telegram_id = ?', (reward, telegram_id))
        db.add_transaction(cursor, telegram_id, 'task_reward', reward, meta={'session_id': session_id})

        settlement = Settlement(session_id=session_id, telegram_id=telegram_id, reward=reward, coins=0)

        # Referral bonus: only the first settlement of a referred user pays it
        cursor.execute('''
            UPDATE users SET referral_credited = 1
            WHERE telegram_id = ? AND referral_credited = 0 AND referred_by IS NOT NULL
        ''', (telegram_id,))
        if cursor.rowcount:
            referrer_id = db.get_user(telegram_id, cursor=cursor)['referred_by']
            bonus = db.get_int_setting('referral_bonus', Config.REFERRAL_BONUS, cursor=cursor)
            cursor.execute('UPDATE users SET coins = coins + ? WHERE telegram_id = ?', (bonus, referrer_id))
            if cursor.rowcount:
                db.add_transaction(cursor, referrer_id, 'referral_bonus', bonus,
                                   meta={'referred_id': telegram_id, 'session_id': session_id})
                settlement.referrer_id = referrer_id
                settlement.referral_bonus = bonus

        settlement.coins = db.get_user(telegram_id, cursor=cursor)['coins']

    logger.info("Settled session %s: user %s +%s coins%s", session_id, telegram_id, reward,
                f", referrer {settlement.referrer_id} +{settlement.referral_bonus}" if settlement.referrer_id else "")
    return settlement
