import asyncio
import datetime
import logging
from typing import Iterable

from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import RetryAfter, TelegramError

from .config import Config
from .sessions import Settlement

logger = logging.getLogger(__name__)


class Notifier:
    """Best-effort outbound messages; a failed send is logged, never raised"""

    MAX_ATTEMPTS = 3
    MAX_RETRY_DELAY = 5

    def __init__(self, bot):
        self.bot = bot

    async def send(self, chat_id: int, text: str, reply_markup=None, parse_mode: str = None) -> bool:
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                await self.bot.send_message(
                    chat_id=chat_id,
                    text=text,
                    reply_markup=reply_markup,
                    parse_mode=parse_mode
                )
                return True
            except RetryAfter as e:
                delay = e.retry_after
                if isinstance(delay, datetime.timedelta):
                    delay = delay.total_seconds()
                logger.warning("Flood control sending to %s, retry %s/%s in %ss",
                               chat_id, attempt, self.MAX_ATTEMPTS, delay)
                await asyncio.sleep(min(delay, self.MAX_RETRY_DELAY))
            except TelegramError as e:
                logger.warning("Failed to send message to %s: %s", chat_id, e)
                return False
        logger.warning("Giving up on message to %s after %s attempts", chat_id, self.MAX_ATTEMPTS)
        return False

    async def notify_admins(self, text: str, reply_markup=None) -> int:
        sent = 0
        for admin_id in Config.ADMIN_IDS:
            if await self.send(admin_id, text, reply_markup=reply_markup):
                sent += 1
        return sent

    async def broadcast(self, user_ids: Iterable[int], text: str) -> int:
        """Send an announcement to every user; returns the number delivered"""
        success = 0
        for user_id in user_ids:
            if await self.send(user_id, f"📢 Announcement\n\n{text}"):
                success += 1
            await asyncio.sleep(0.05)  # Rate limiting
        return success

    async def notify_settlement(self, settlement: Settlement, notify_user: bool = True):
        if notify_user:
            await self.send(
                settlement.telegram_id,
                Config.MESSAGES["task_complete"].format(reward=settlement.reward, coins=settlement.coins),
                reply_markup=InlineKeyboardMarkup([
                    [InlineKeyboardButton("🎯 Next Task", callback_data="task")],
                    [InlineKeyboardButton("⬅️ Menu", callback_data="back_to_menu")]
                ])
            )
        if settlement.referrer_id:
            await self.send(
                settlement.referrer_id,
                Config.MESSAGES["referral_paid"].format(bonus=settlement.referral_bonus)
            )

    async def notify_withdrawal_request(self, withdrawal: dict, username: str = None):
        symbol = Config.CURRENCY_SYMBOL
        text = (
            f"🆕 New Withdrawal Request #{withdrawal['id']}\n\n"
            f"User: @{username or 'N/A'} ({withdrawal['telegram_id']})\n"
            f"Coins: {withdrawal['coins']}\n"
            f"Amount: {symbol}{withdrawal['amount']:.2f}\n"
            f"Bank: {withdrawal['bank_name']}\n"
            f"Account: {withdrawal['account_number']}\n"
            f"Name: {withdrawal['account_name']}"
        )
        keyboard = InlineKeyboardMarkup([[
            InlineKeyboardButton("✅ Approve", callback_data=f"withdraw_action_approve_{withdrawal['id']}"),
            InlineKeyboardButton("❌ Decline", callback_data=f"withdraw_action_decline_{withdrawal['id']}")
        ]])
        return await self.notify_admins(text, reply_markup=keyboard)

    async def notify_withdrawal_result(self, withdrawal: dict):
        symbol = Config.CURRENCY_SYMBOL
        if withdrawal['status'] == 'approved':
            text = Config.MESSAGES["withdraw_approved"].format(
                id=withdrawal['id'], symbol=symbol, amount=withdrawal['amount'])
        else:
            text = Config.MESSAGES["withdraw_declined"].format(
                id=withdrawal['id'], reason=withdrawal['admin_note'] or 'N/A', coins=withdrawal['coins'])
        return await self.send(withdrawal['telegram_id'], text)
