"""
Shared fixtures: a fresh SQLite store per test, pinned configuration,
and factories for Telegram update/context mocks.
"""

import logging
from unittest.mock import Mock, AsyncMock

import pytest

from fonpay.config import Config
from fonpay.database import Database

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

ADMIN_ID = 900001
USER_ID = 100001
REFERRER_ID = 100002


@pytest.fixture(autouse=True)
def config(monkeypatch):
    """Pin every tunable so tests do not depend on the environment"""
    monkeypatch.setattr(Config, "ADMIN_IDS", [ADMIN_ID])
    monkeypatch.setattr(Config, "BASE_URL", "https://fonpay.test")
    monkeypatch.setattr(Config, "BOT_USERNAME", "FonPayTestBot")
    monkeypatch.setattr(Config, "TASK_REWARD", 200)
    monkeypatch.setattr(Config, "REFERRAL_BONUS", 50)
    monkeypatch.setattr(Config, "MIN_WITHDRAWAL", 60000)
    monkeypatch.setattr(Config, "COIN_RATE", 0.00005)
    monkeypatch.setattr(Config, "CURRENCY_SYMBOL", "$")
    monkeypatch.setattr(Config, "REQUIRED_VIEWS", 10)
    monkeypatch.setattr(Config, "SESSION_INACTIVITY_SECONDS", 120)
    monkeypatch.setattr(Config, "POSTBACK_SECRET", "")
    monkeypatch.setattr(Config, "WEBHOOK_SECRET", "")
    monkeypatch.setattr(Config, "MONETAG_ZONE_ID", "")
    return Config


@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "fonpay_test.db"))


def set_coins(db, telegram_id, coins):
    conn = db.get_connection()
    conn.execute('UPDATE users SET coins = ? WHERE telegram_id = ?', (coins, telegram_id))
    conn.commit()
    conn.close()


def coins_of(db, telegram_id):
    return db.get_user(telegram_id)['coins']


@pytest.fixture
def user(db):
    db.register_user(USER_ID, "alice", "Alice")
    return db.get_user(USER_ID)


@pytest.fixture
def banked_user(db, user):
    conn = db.get_connection()
    conn.execute('''
        UPDATE users SET bank_name = 'Moniepoint', account_number = '0123456789', account_name = 'Alice Doe'
        WHERE telegram_id = ?
    ''', (USER_ID,))
    conn.commit()
    conn.close()
    return db.get_user(USER_ID)


def make_update(user_id=USER_ID, text=None, callback_data=None, username="alice"):
    update = Mock()
    update.effective_user = Mock(id=user_id, username=username, first_name="Alice")

    message = Mock()
    message.text = text
    message.reply_text = AsyncMock()
    update.message = message
    update.effective_message = message

    if callback_data is not None:
        query = Mock()
        query.data = callback_data
        query.answer = AsyncMock()
        query.edit_message_text = AsyncMock()
        query.message = message
        update.callback_query = query
    else:
        update.callback_query = None
    return update


def make_context(args=None):
    context = Mock()
    context.args = args or []
    context.user_data = {}
    context.bot.username = "FonPayTestBot"
    return context


def last_text(update):
    """Text of the most recent reply or edit sent for this update"""
    if update.callback_query is not None and update.callback_query.edit_message_text.await_count:
        return update.callback_query.edit_message_text.call_args.kwargs["text"]
    call = update.message.reply_text.call_args
    return call.kwargs.get("text") or call.args[0]
