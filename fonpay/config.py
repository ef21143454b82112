import os
import json
import logging
from typing import List

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _parse_ids(raw: str) -> List[int]:
    """Accept either a JSON list (``[1, 2]``) or a comma separated string (``1,2``)"""
    raw = (raw or "").strip()
    if not raw:
        return []
    if raw.startswith("["):
        return [int(x) for x in json.loads(raw)]
    return [int(x) for x in raw.split(",") if x.strip().lstrip("-").isdigit()]


# ==================== CONFIGURATION ====================
class Config:
    """Configuration settings for the bot"""

    # Bot settings
    BOT_TOKEN = os.getenv("BOT_TOKEN", "")
    BOT_USERNAME = os.getenv("BOT_USERNAME", "FonPayTaskBot")
    ADMIN_IDS = _parse_ids(os.getenv("ADMIN_IDS", ""))

    # HTTP listener
    BASE_URL = os.getenv("BASE_URL", "").rstrip("/")
    PORT = int(os.getenv("PORT", "10000"))
    WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
    POSTBACK_SECRET = os.getenv("POSTBACK_SECRET", "")
    MONETAG_ZONE_ID = os.getenv("MONETAG_ZONE_ID", "")

    # Database
    DB_PATH = os.getenv("DB_PATH", "fonpay.db")

    # Financial settings (seed values for the settings table)
    TASK_REWARD = int(os.getenv("TASK_REWARD", "200"))  # Per completed session
    REFERRAL_BONUS = int(os.getenv("REFERRAL_BONUS", "50"))  # Per referred user, once
    MIN_WITHDRAWAL = int(os.getenv("MIN_WITHDRAWAL", "60000"))  # In coins
    COIN_RATE = float(os.getenv("COIN_RATE", "0.00005"))  # Currency per coin
    CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "$")

    # Ad sessions
    REQUIRED_VIEWS = int(os.getenv("REQUIRED_VIEWS", "10"))
    SESSION_INACTIVITY_SECONDS = int(os.getenv("SESSION_INACTIVITY_SECONDS", "120"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Keys an admin may change with /set
    TUNABLE_SETTINGS = ["task_reward", "referral_bonus", "min_withdrawal", "coin_rate", "tasks_enabled"]

    MESSAGES = {
        "welcome": "👋 Welcome to *FonPay Task Earnings Bot!*\n\nWatch ads, invite friends and withdraw your rewards to your bank.",
        "menu": "📱 *Main Menu*",
        "balance": "💰 Coins: {coins}\n💵 Value: {symbol}{amount:.2f}",
        "task_started": "🎯 New task\n\nWatch {required} ads on the page below. Your reward of {reward} coins is credited automatically when you finish.\n\n{link}",
        "task_progress": "📺 Progress: {count}/{required}",
        "task_complete": "🎉 Task complete! {reward} coins added to your wallet.\nBalance: {coins} coins",
        "referral_link": "👥 Invite friends and earn {bonus} coins when they finish their first task.\n\nYour referral link:\n{link}",
        "referral_paid": "🎁 Your friend completed a task. {bonus} coins referral bonus added!",
        "bank_prompt": "🏦 Send your bank details in one message:\n`Bank Name, Account Number, Account Holder`",
        "bank_change_prompt": "🏦 To change your bank, send the current and new details in one message:\n`Old Bank, Old Account | New Bank, New Account, New Holder`",
        "bank_saved": "✅ Bank details saved:\n{bank_name} - {account_number} ({account_name})",
        "withdraw_prompt": "💸 Balance: {coins} coins\nMinimum withdrawal: {minimum} coins\n\nSend the number of coins to withdraw:",
        "withdraw_success": "✅ Withdrawal request #{id} submitted: {coins} coins ({symbol}{amount:.2f}). Await admin approval.",
        "withdraw_approved": "✅ Your withdrawal #{id} of {symbol}{amount:.2f} has been approved and paid.",
        "withdraw_declined": "❌ Your withdrawal #{id} was declined.\nReason: {reason}\n{coins} coins have been returned to your wallet.",
        "help_prompt": "🆘 Send your message for the support team:",
        "help_received": "✅ Your message has been sent to support. Ticket #{id}.",
        "admin_panel": "🔧 *Admin Panel*",
        "banned": "🚫 Your account has been banned.",
        "try_again": "⚠️ Something went wrong. Please try again later.",
    }


def is_admin(user_id: int) -> bool:
    return user_id in Config.ADMIN_IDS


def setup_logging(level: str = None):
    """Configure process-wide logging"""
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO)
    )
    # httpx logs every Bot API request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
