"""
Withdrawal requests and their admin review.

Coins leave the user's balance when the request is made. Approval only
changes the status; a decline returns the coins. Both transitions are
conditional on the row still being ``pending``.
"""

import logging
from typing import Dict, List

from .config import Config, is_admin
from .database import Database, utcnow
from .errors import (
    NotFound, AlreadyProcessed, Unauthorized, UserBanned,
    NoBankOnFile, BelowMinimum, InsufficientBalance,
)

logger = logging.getLogger(__name__)

PENDING = 'pending'
APPROVED = 'approved'
DECLINED = 'declined'


def currency_amount(coins: int, rate: float) -> float:
    return round(coins * rate, 2)


def _fetch_withdrawal(cursor, withdrawal_id: int):
    cursor.execute('SELECT * FROM withdrawals WHERE id = ?', (withdrawal_id,))
    row = cursor.fetchone()
    if row is None:
        raise NotFound(f"❓ Withdrawal #{withdrawal_id} not found.")
    return row


def get_withdrawal(db: Database, withdrawal_id: int) -> Dict:
    conn = db.get_connection()
    try:
        return dict(_fetch_withdrawal(conn.cursor(), withdrawal_id))
    finally:
        conn.close()


def request_withdrawal(db: Database, telegram_id: int, coins: int) -> Dict:
    """Debit ``coins`` from the user and create a pending withdrawal"""
    with db.transaction() as cursor:
        user = db.require_user(telegram_id, cursor=cursor)
        if user['is_banned']:
            raise UserBanned()
        if not (user['bank_name'] and user['account_number']):
            raise NoBankOnFile()

        minimum = db.get_int_setting('min_withdrawal', Config.MIN_WITHDRAWAL, cursor=cursor)
        if coins < minimum:
            raise BelowMinimum(minimum)
        if coins > user['coins']:
            raise InsufficientBalance()

        cursor.execute('''
            UPDATE users SET coins = coins - ?
            WHERE telegram_id = ? AND coins >= ?
        ''', (coins, telegram_id, coins))
        if cursor.rowcount == 0:
            raise InsufficientBalance()

        rate = db.get_float_setting('coin_rate', Config.COIN_RATE, cursor=cursor)
        amount = currency_amount(coins, rate)
        cursor.execute('''
            INSERT INTO withdrawals (telegram_id, coins, amount, bank_name, account_number, account_name,
                                     status, requested_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (telegram_id, coins, amount, user['bank_name'], user['account_number'],
              user['account_name'] or '', PENDING, utcnow().isoformat()))
        withdrawal_id = cursor.lastrowid
        db.add_transaction(cursor, telegram_id, 'withdrawal_debit', -coins, amount,
                           meta={'withdrawal_id': withdrawal_id})

        withdrawal = dict(_fetch_withdrawal(cursor, withdrawal_id))

    logger.info("Withdrawal #%s requested by %s: %s coins (%.2f)", withdrawal_id, telegram_id, coins, amount)
    return withdrawal


def _process(db: Database, withdrawal_id: int, admin_id: int, status: str, note: str = None) -> Dict:
    if not is_admin(admin_id):
        logger.warning("Non-admin %s tried to %s withdrawal #%s", admin_id, status, withdrawal_id)
        raise Unauthorized()

    with db.transaction() as cursor:
        withdrawal = _fetch_withdrawal(cursor, withdrawal_id)
        cursor.execute('''
            UPDATE withdrawals
            SET status = ?, admin_note = ?, processed_by = ?, processed_at = ?
            WHERE id = ? AND status = ?
        ''', (status, note, admin_id, utcnow().isoformat(), withdrawal_id, PENDING))
        if cursor.rowcount == 0:
            raise AlreadyProcessed()

        if status == DECLINED:
            cursor.execute('UPDATE users SET coins = coins + ? WHERE telegram_id = ?',
                           (withdrawal['coins'], withdrawal['telegram_id']))
            db.add_transaction(cursor, withdrawal['telegram_id'], 'withdrawal_refund', withdrawal['coins'],
                               withdrawal['amount'], meta={'withdrawal_id': withdrawal_id, 'reason': note})

        db.log_admin_action(admin_id, f'withdrawal_{status}',
                            {'withdrawal_id': withdrawal_id, 'note': note}, cursor=cursor)
        result = dict(_fetch_withdrawal(cursor, withdrawal_id))

    logger.info("Withdrawal #%s %s by admin %s", withdrawal_id, status, admin_id)
    return result


def approve_withdrawal(db: Database, withdrawal_id: int, admin_id: int) -> Dict:
    return _process(db, withdrawal_id, admin_id, APPROVED)


def decline_withdrawal(db: Database, withdrawal_id: int, admin_id: int, reason: str) -> Dict:
    """Decline a pending withdrawal and refund its coins"""
    return _process(db, withdrawal_id, admin_id, DECLINED, note=reason)


def list_withdrawals(db: Database, status: str = None, limit: int = 20) -> List[Dict]:
    """Get withdrawals, optionally filtered by status"""
    conn = db.get_connection()
    try:
        if status:
            rows = conn.execute('''
                SELECT w.*, u.username
                FROM withdrawals w
                LEFT JOIN users u ON w.telegram_id = u.telegram_id
                WHERE w.status = ?
                ORDER BY w.id ASC
                LIMIT ?
            ''', (status, limit)).fetchall()
        else:
            rows = conn.execute('''
                SELECT w.*, u.username
                FROM withdrawals w
                LEFT JOIN users u ON w.telegram_id = u.telegram_id
                ORDER BY w.id DESC
                LIMIT ?
            ''', (limit,)).fetchall()
    finally:
        conn.close()
    return [dict(row) for row in rows]


def user_withdrawals(db: Database, telegram_id: int, limit: int = 5) -> List[Dict]:
    conn = db.get_connection()
    try:
        rows = conn.execute('''
            SELECT * FROM withdrawals WHERE telegram_id = ? ORDER BY id DESC LIMIT ?
        ''', (telegram_id, limit)).fetchall()
    finally:
        conn.close()
    return [dict(row) for row in rows]
