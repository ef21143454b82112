import json
import logging
import sqlite3
import datetime
from contextlib import contextmanager
from typing import Dict, List, Optional

from .config import Config
from .errors import NotFound, TransientIO

logger = logging.getLogger(__name__)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def parse_timestamp(value: str) -> datetime.datetime:
    """Parse a stored timestamp; rows written by SQLite defaults carry no offset"""
    parsed = datetime.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


# ==================== DATABASE ====================
class Database:
    """SQLite store for users, ad sessions, withdrawals and the coin ledger"""

    def __init__(self, db_path: str = Config.DB_PATH):
        self.db_path = db_path
        self.init_database()

    def init_database(self):
        """Initialize database with all tables"""
        conn = self.get_connection()
        cursor = conn.cursor()

        # Users table
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id INTEGER UNIQUE NOT NULL,
                username TEXT,
                first_name TEXT,
                coins INTEGER NOT NULL DEFAULT 0 CHECK (coins >= 0),
                bank_name TEXT,
                account_number TEXT,
                account_name TEXT,
                referred_by INTEGER,
                referral_credited INTEGER NOT NULL DEFAULT 0,
                is_banned INTEGER NOT NULL DEFAULT 0,
                joined_date TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # Ad sessions: one "watch N ads" task instance
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS ad_sessions (
                id TEXT PRIMARY KEY,
                telegram_id INTEGER NOT NULL,
                completed INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP NOT NULL,
                completed_at TIMESTAMP,
                FOREIGN KEY (telegram_id) REFERENCES users(telegram_id)
            )
        ''')

        # At most one open session per user
        cursor.execute('''
            CREATE UNIQUE INDEX IF NOT EXISTS idx_ad_sessions_open
            ON ad_sessions (telegram_id) WHERE completed = 0
        ''')

        # Ad views reported by the ad network
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS ad_views (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                telegram_id INTEGER,
                ad_index INTEGER,
                external_event_id TEXT UNIQUE,
                validated INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP NOT NULL,
                FOREIGN KEY (session_id) REFERENCES ad_sessions(id)
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_ad_views_session ON ad_views (session_id)')

        # Withdrawals table
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS withdrawals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id INTEGER NOT NULL,
                coins INTEGER NOT NULL,
                amount REAL NOT NULL,
                bank_name TEXT NOT NULL,
                account_number TEXT NOT NULL,
                account_name TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending', -- 'pending', 'approved', 'declined'
                admin_note TEXT,
                processed_by INTEGER,
                requested_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                processed_at TIMESTAMP,
                FOREIGN KEY (telegram_id) REFERENCES users(telegram_id)
            )
        ''')

        # Coin ledger, append only
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id INTEGER NOT NULL,
                type TEXT NOT NULL, -- 'task_reward', 'referral_bonus', 'withdrawal_debit', 'withdrawal_refund'
                coins INTEGER NOT NULL DEFAULT 0,
                amount REAL NOT NULL DEFAULT 0,
                meta TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS help_requests (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id INTEGER NOT NULL,
                message TEXT,
                status TEXT NOT NULL DEFAULT 'open',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS admin_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                admin_id INTEGER,
                action TEXT NOT NULL,
                meta TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # Settings table
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        ''')

        # Insert default settings if not exists
        default_settings = [
            ('task_reward', str(Config.TASK_REWARD)),
            ('referral_bonus', str(Config.REFERRAL_BONUS)),
            ('min_withdrawal', str(Config.MIN_WITHDRAWAL)),
            ('coin_rate', str(Config.COIN_RATE)),
            ('tasks_enabled', '1'),
        ]

        for key, value in default_settings:
            cursor.execute('INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)', (key, value))

        conn.commit()
        conn.close()
        logger.info("Database initialized at %s", self.db_path)

    def get_connection(self):
        """Get database connection"""
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self):
        """Yield a cursor inside a write transaction; commit on success, roll back on any error.

        BEGIN IMMEDIATE takes the write lock up front so concurrent writers are
        serialized before they read the rows they are about to change.
        """
        conn = self.get_connection()
        conn.isolation_level = None
        try:
            conn.execute('BEGIN IMMEDIATE')
            cursor = conn.cursor()
            yield cursor
            conn.execute('COMMIT')
        except BaseException as e:
            if conn.in_transaction:
                conn.execute('ROLLBACK')
            # Constraint violations are programming errors, not outages
            if isinstance(e, sqlite3.DatabaseError) and not isinstance(e, sqlite3.IntegrityError):
                logger.error("Database error in %s: %s", self.db_path, e)
                raise TransientIO() from e
            raise
        finally:
            conn.close()

    def ping(self) -> bool:
        conn = self.get_connection()
        try:
            conn.execute('SELECT 1').fetchone()
            return True
        finally:
            conn.close()

    # User operations
    def register_user(self, telegram_id: int, username: str, first_name: str = None,
                      referred_by: int = None) -> bool:
        """Register a new user; returns False if the user already exists"""
        with self.transaction() as cursor:
            if referred_by is not None:
                cursor.execute('SELECT 1 FROM users WHERE telegram_id = ?', (referred_by,))
                if referred_by == telegram_id or cursor.fetchone() is None:
                    logger.info("Ignoring referrer %s for user %s", referred_by, telegram_id)
                    referred_by = None

            cursor.execute('''
                INSERT OR IGNORE INTO users (telegram_id, username, first_name, referred_by)
                VALUES (?, ?, ?, ?)
            ''', (telegram_id, username, first_name, referred_by))
            created = cursor.rowcount > 0

        if created:
            logger.info("Registered user %s (referred by %s)", telegram_id, referred_by)
        return created

    def get_user(self, telegram_id: int, cursor=None) -> Optional[Dict]:
        """Get user by Telegram ID"""
        if cursor is not None:
            cursor.execute('SELECT * FROM users WHERE telegram_id = ?', (telegram_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

        conn = self.get_connection()
        try:
            row = conn.execute('SELECT * FROM users WHERE telegram_id = ?', (telegram_id,)).fetchone()
        finally:
            conn.close()
        return dict(row) if row else None

    def require_user(self, telegram_id: int, cursor=None) -> Dict:
        user = self.get_user(telegram_id, cursor=cursor)
        if not user:
            raise NotFound("❓ User not found. Send /start first.")
        return user

    def set_banned(self, telegram_id: int, banned: bool, admin_id: int = None):
        with self.transaction() as cursor:
            cursor.execute('UPDATE users SET is_banned = ? WHERE telegram_id = ?',
                           (1 if banned else 0, telegram_id))
            if cursor.rowcount == 0:
                raise NotFound("❓ User not found.")
            self.log_admin_action(admin_id, 'ban' if banned else 'unban',
                                  {'telegram_id': telegram_id}, cursor=cursor)
        logger.info("User %s %s by admin %s", telegram_id, 'banned' if banned else 'unbanned', admin_id)

    def get_all_users(self, limit: int = None) -> List[Dict]:
        """Get all users, newest first"""
        conn = self.get_connection()
        try:
            if limit:
                rows = conn.execute('SELECT * FROM users ORDER BY joined_date DESC, id DESC LIMIT ?',
                                    (limit,)).fetchall()
            else:
                rows = conn.execute('SELECT * FROM users ORDER BY joined_date DESC, id DESC').fetchall()
        finally:
            conn.close()
        return [dict(row) for row in rows]

    def get_referral_stats(self, telegram_id: int) -> Dict:
        """Get referral statistics for user"""
        conn = self.get_connection()
        try:
            total = conn.execute('SELECT COUNT(*) FROM users WHERE referred_by = ?',
                                 (telegram_id,)).fetchone()[0]
            active = conn.execute('''
                SELECT COUNT(*) FROM users WHERE referred_by = ? AND referral_credited = 1
            ''', (telegram_id,)).fetchone()[0]
            earnings = conn.execute('''
                SELECT COALESCE(SUM(coins), 0) FROM transactions
                WHERE telegram_id = ? AND type = 'referral_bonus'
            ''', (telegram_id,)).fetchone()[0]
        finally:
            conn.close()

        return {
            "total": total,
            "active": active,
            "earnings": earnings
        }

    # Ledger
    def add_transaction(self, cursor, telegram_id: int, type: str, coins: int,
                        amount: float = 0, meta: Dict = None):
        """Append a ledger row inside the caller's transaction"""
        cursor.execute('''
            INSERT INTO transactions (telegram_id, type, coins, amount, meta, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (telegram_id, type, coins, amount, json.dumps(meta) if meta else None, utcnow().isoformat()))

    def get_transactions(self, telegram_id: int, limit: int = 10) -> List[Dict]:
        conn = self.get_connection()
        try:
            rows = conn.execute('''
                SELECT * FROM transactions WHERE telegram_id = ?
                ORDER BY id DESC LIMIT ?
            ''', (telegram_id, limit)).fetchall()
        finally:
            conn.close()
        return [dict(row) for row in rows]

    # Admin audit
    def log_admin_action(self, admin_id: int, action: str, meta: Dict = None, cursor=None):
        if cursor is not None:
            cursor.execute('''
                INSERT INTO admin_logs (admin_id, action, meta, created_at) VALUES (?, ?, ?, ?)
            ''', (admin_id, action, json.dumps(meta) if meta else None, utcnow().isoformat()))
            return
        with self.transaction() as cursor:
            self.log_admin_action(admin_id, action, meta, cursor=cursor)

    def get_admin_logs(self, limit: int = 20) -> List[Dict]:
        conn = self.get_connection()
        try:
            rows = conn.execute('SELECT * FROM admin_logs ORDER BY id DESC LIMIT ?', (limit,)).fetchall()
        finally:
            conn.close()
        return [dict(row) for row in rows]

    # Help requests
    def create_help_request(self, telegram_id: int, message: str) -> int:
        with self.transaction() as cursor:
            cursor.execute('''
                INSERT INTO help_requests (telegram_id, message, created_at) VALUES (?, ?, ?)
            ''', (telegram_id, message, utcnow().isoformat()))
            return cursor.lastrowid

    def get_help_request(self, request_id: int) -> Dict:
        conn = self.get_connection()
        try:
            row = conn.execute('SELECT * FROM help_requests WHERE id = ?', (request_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFound(f"❓ Help request #{request_id} not found.")
        return dict(row)

    def answer_help_request(self, request_id: int, admin_id: int, reply: str) -> Dict:
        request = self.get_help_request(request_id)
        with self.transaction() as cursor:
            cursor.execute("UPDATE help_requests SET status = 'answered' WHERE id = ?", (request_id,))
            self.log_admin_action(admin_id, 'help_reply', {'request_id': request_id, 'reply': reply},
                                  cursor=cursor)
        return request

    # Settings
    def get_setting(self, key: str, default: str = None, cursor=None) -> str:
        """Get system setting"""
        if cursor is not None:
            cursor.execute('SELECT value FROM settings WHERE key = ?', (key,))
            result = cursor.fetchone()
            return result[0] if result else default

        conn = self.get_connection()
        try:
            result = conn.execute('SELECT value FROM settings WHERE key = ?', (key,)).fetchone()
        finally:
            conn.close()
        return result[0] if result else default

    def get_int_setting(self, key: str, default: int, cursor=None) -> int:
        return int(float(self.get_setting(key, str(default), cursor=cursor)))

    def get_float_setting(self, key: str, default: float, cursor=None) -> float:
        return float(self.get_setting(key, str(default), cursor=cursor))

    def update_setting(self, key: str, value: str, admin_id: int = None):
        """Update system setting"""
        with self.transaction() as cursor:
            cursor.execute('''
                INSERT INTO settings (key, value) VALUES (?, ?)
                ON CONFLICT (key) DO UPDATE SET value = excluded.value
            ''', (key, value))
            self.log_admin_action(admin_id, 'set_setting', {'key': key, 'value': value}, cursor=cursor)
        logger.info("Setting %s = %s (admin %s)", key, value, admin_id)

    def tasks_enabled(self, cursor=None) -> bool:
        return self.get_setting('tasks_enabled', '1', cursor=cursor) not in ('0', 'false', 'off')

    def get_system_stats(self) -> Dict:
        """Get system statistics"""
        conn = self.get_connection()
        cursor = conn.cursor()
        stats = {}

        try:
            cursor.execute('SELECT COUNT(*) FROM users')
            stats['total_users'] = cursor.fetchone()[0]

            cursor.execute('SELECT COUNT(*) FROM users WHERE is_banned = 1')
            stats['banned_users'] = cursor.fetchone()[0]

            cursor.execute('SELECT COALESCE(SUM(coins), 0) FROM users')
            stats['coins_outstanding'] = cursor.fetchone()[0]

            cursor.execute('SELECT COUNT(*) FROM ad_sessions WHERE completed = 1')
            stats['completed_sessions'] = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*), COALESCE(SUM(coins), 0) FROM withdrawals WHERE status = 'pending'")
            stats['pending_count'], stats['pending_coins'] = cursor.fetchone()

            cursor.execute("SELECT COALESCE(SUM(amount), 0) FROM withdrawals WHERE status = 'approved'")
            stats['total_paid'] = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM help_requests WHERE status = 'open'")
            stats['open_help_requests'] = cursor.fetchone()[0]
        finally:
            conn.close()

        return stats
