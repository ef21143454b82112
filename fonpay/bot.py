"""
Telegram bot handlers: user menu, task flow, bank capture, withdrawals, help and admin panel.
"""

import functools
import logging
from enum import Enum

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import BadRequest
from telegram.ext import (
    Application,
    CommandHandler,
    MessageHandler,
    CallbackQueryHandler,
    ContextTypes,
    filters
)

from .config import Config, is_admin
from .database import Database
from .errors import BotError, TransientIO, Unauthorized, InvalidInput, NotFound
from .notifier import Notifier
from . import bank, sessions, withdrawals

logger = logging.getLogger(__name__)


class Awaiting(Enum):
    """What the next plain-text message from a user is expected to be"""
    BANK_DETAILS = "bank_details"
    BANK_CHANGE = "bank_change"
    WITHDRAW_AMOUNT = "withdraw_amount"
    HELP_MESSAGE = "help_message"
    BROADCAST = "broadcast"
    DECLINE_REASON = "decline_reason"


TRANSACTION_LABELS = {
    "task_reward": "🎯 Task reward",
    "referral_bonus": "👥 Referral bonus",
    "withdrawal_debit": "💸 Withdrawal",
    "withdrawal_refund": "↩️ Withdrawal refund",
}

STATUS_EMOJI = {"pending": "⏳", "approved": "✅", "declined": "❌"}


def handles_errors(handler):
    """Turn expected workflow errors into a reply instead of a crash"""
    @functools.wraps(handler)
    async def wrapper(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        try:
            return await handler(self, update, context)
        except TransientIO as e:
            user = update.effective_user
            logger.exception("Transient failure in %s for user %s", handler.__name__, user.id if user else None)
            await self._reply(update, e.user_message)
        except BotError as e:
            await self._reply(update, e.user_message)
    return wrapper


def _back(callback_data: str = "back_to_menu") -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[InlineKeyboardButton("⬅️ Back", callback_data=callback_data)]])


def _parse_int(value: str, message: str = "❌ Invalid number.") -> int:
    value = (value or "").replace(",", "").strip()
    if not value.isdigit():
        raise InvalidInput(message)
    return int(value)


# ==================== BOT HANDLERS ====================
class TelegramBot:
    """Main Telegram bot handler"""

    def __init__(self, db: Database, notifier: Notifier = None):
        self.db = db
        self.notifier = notifier
        self.application = None

    async def _reply(self, update: Update, text: str, reply_markup=None, parse_mode: str = None):
        """Edit the message behind a button press, or answer a typed message"""
        if update.callback_query:
            try:
                await update.callback_query.edit_message_text(
                    text=text, reply_markup=reply_markup, parse_mode=parse_mode
                )
                return
            except BadRequest as e:
                logger.debug("Could not edit message, replying instead: %s", e)
        await update.effective_message.reply_text(text=text, reply_markup=reply_markup, parse_mode=parse_mode)

    def _bot_username(self, context: ContextTypes.DEFAULT_TYPE) -> str:
        try:
            return context.bot.username or Config.BOT_USERNAME
        except RuntimeError:
            return Config.BOT_USERNAME

    def _require_admin(self, update: Update) -> int:
        telegram_id = update.effective_user.id
        if not is_admin(telegram_id):
            raise Unauthorized()
        return telegram_id

    @handles_errors
    async def start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /start command"""
        user = update.effective_user
        referred_by = None
        if context.args and context.args[0].isdigit():
            referred_by = int(context.args[0])

        self.db.register_user(user.id, user.username or user.first_name, user.first_name, referred_by)
        user_data = self.db.require_user(user.id)
        context.user_data.pop("awaiting", None)

        if user_data['is_banned']:
            await update.effective_message.reply_text(Config.MESSAGES["banned"])
            return

        await update.effective_message.reply_text(Config.MESSAGES["welcome"], parse_mode="Markdown")
        await self.show_main_menu(update, context)

    def main_menu_keyboard(self, telegram_id: int) -> InlineKeyboardMarkup:
        keyboard = [
            [
                InlineKeyboardButton("🎯 Perform Task", callback_data="task"),
                InlineKeyboardButton("💰 Wallet Balance", callback_data="balance")
            ],
            [
                InlineKeyboardButton("🏦 Withdraw", callback_data="withdraw"),
                InlineKeyboardButton("👥 Refer & Earn", callback_data="referral")
            ],
            [
                InlineKeyboardButton("💳 Bank Account", callback_data="bank"),
                InlineKeyboardButton("📜 History", callback_data="history")
            ],
            [InlineKeyboardButton("🆘 Get Help", callback_data="help")]
        ]
        if is_admin(telegram_id):
            keyboard.append([InlineKeyboardButton("🔧 Admin", callback_data="admin_panel")])
        return InlineKeyboardMarkup(keyboard)

    async def show_main_menu(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Show main menu"""
        if update.callback_query:
            await self._reply(update, Config.MESSAGES["menu"],
                              reply_markup=self.main_menu_keyboard(update.effective_user.id),
                              parse_mode="Markdown")
        else:
            await update.effective_message.reply_text(
                text=Config.MESSAGES["menu"],
                reply_markup=self.main_menu_keyboard(update.effective_user.id),
                parse_mode="Markdown"
            )

    @handles_errors
    async def handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle callback queries"""
        query = update.callback_query
        await query.answer()

        data = query.data
        # Any button press abandons a half-finished text prompt
        context.user_data.pop("awaiting", None)

        if data == "task":
            await self.perform_task(update, context)
        elif data.startswith("progress_"):
            await self.show_progress(update, context, data[len("progress_"):])
        elif data.startswith("claim_"):
            await self.claim_reward(update, context, data[len("claim_"):])
        elif data == "balance":
            await self.show_balance(update, context)
        elif data == "withdraw":
            await self.show_withdraw_menu(update, context)
        elif data == "referral":
            await self.show_referral_info(update, context)
        elif data == "bank":
            await self.show_bank_menu(update, context)
        elif data == "bank_add":
            await self.start_bank_capture(update, context, change=False)
        elif data == "bank_change":
            await self.start_bank_capture(update, context, change=True)
        elif data == "history":
            await self.show_history(update, context)
        elif data == "help":
            await self.show_help_prompt(update, context)
        elif data == "back_to_menu":
            await self.show_main_menu(update, context)
        elif data == "admin_panel" or data.startswith("admin_") or data.startswith("withdraw_action_"):
            await self.handle_admin_callback(update, context)

    # ==================== TASKS ====================
    async def perform_task(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Start (or resume) an ad-watch task"""
        telegram_id = update.effective_user.id
        session = sessions.start_session(self.db, telegram_id)
        progress = sessions.session_progress(self.db, session.id)
        reward = self.db.get_int_setting('task_reward', Config.TASK_REWARD)

        message = Config.MESSAGES["task_started"].format(
            required=progress.threshold, reward=reward, link=session.link
        )
        message += "\n\n" + Config.MESSAGES["task_progress"].format(count=progress.count, required=progress.threshold)

        keyboard = []
        if Config.BASE_URL:
            keyboard.append([InlineKeyboardButton("▶️ Watch Ads", url=session.link)])
        keyboard.append([
            InlineKeyboardButton("🔄 Check Progress", callback_data=f"progress_{session.id}"),
            InlineKeyboardButton("✅ Claim Reward", callback_data=f"claim_{session.id}")
        ])
        keyboard.append([InlineKeyboardButton("⬅️ Back", callback_data="back_to_menu")])

        await self._reply(update, message, reply_markup=InlineKeyboardMarkup(keyboard))

    async def show_progress(self, update: Update, context: ContextTypes.DEFAULT_TYPE, session_id: str):
        session = sessions.get_session(self.db, session_id)
        if session.telegram_id != update.effective_user.id:
            raise NotFound("❓ Task session not found.")
        progress = sessions.session_progress(self.db, session_id)

        if progress.completed:
            message = "✅ This task has already been rewarded."
            keyboard = [[InlineKeyboardButton("🎯 Next Task", callback_data="task")]]
        else:
            message = Config.MESSAGES["task_progress"].format(count=progress.count, required=progress.threshold)
            message += f"\nRemaining: {progress.remaining}"
            keyboard = [[
                InlineKeyboardButton("🔄 Check Progress", callback_data=f"progress_{session_id}"),
                InlineKeyboardButton("✅ Claim Reward", callback_data=f"claim_{session_id}")
            ]]
        keyboard.append([InlineKeyboardButton("⬅️ Back", callback_data="back_to_menu")])

        await self._reply(update, message, reply_markup=InlineKeyboardMarkup(keyboard))

    async def claim_reward(self, update: Update, context: ContextTypes.DEFAULT_TYPE, session_id: str):
        """Settle a finished session on the user's request"""
        session = sessions.get_session(self.db, session_id)
        if session.telegram_id != update.effective_user.id:
            raise NotFound("❓ Task session not found.")

        settlement = sessions.settle(self.db, session_id)
        await self._reply(
            update,
            Config.MESSAGES["task_complete"].format(reward=settlement.reward, coins=settlement.coins),
            reply_markup=InlineKeyboardMarkup([
                [InlineKeyboardButton("🎯 Next Task", callback_data="task")],
                [InlineKeyboardButton("⬅️ Back", callback_data="back_to_menu")]
            ])
        )
        await self.notifier.notify_settlement(settlement, notify_user=False)

    # ==================== ACCOUNT ====================
    async def show_balance(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Show coins and their cash value"""
        user = self.db.require_user(update.effective_user.id)
        rate = self.db.get_float_setting('coin_rate', Config.COIN_RATE)
        message = Config.MESSAGES["balance"].format(
            coins=user['coins'], symbol=Config.CURRENCY_SYMBOL, amount=withdrawals.currency_amount(user['coins'], rate)
        )
        await self._reply(update, message, reply_markup=_back())

    async def show_referral_info(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Show referral information"""
        telegram_id = update.effective_user.id
        self.db.require_user(telegram_id)

        ref_link = f"https://t.me/{self._bot_username(context)}?start={telegram_id}"
        stats = self.db.get_referral_stats(telegram_id)
        bonus = self.db.get_int_setting('referral_bonus', Config.REFERRAL_BONUS)

        message = Config.MESSAGES["referral_link"].format(bonus=bonus, link=ref_link)
        message += f"\n\n👥 Invited: {stats['total']}\n✅ Completed a task: {stats['active']}\n"
        message += f"💰 Referral earnings: {stats['earnings']} coins"

        await self._reply(update, message, reply_markup=_back())

    async def show_history(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Show recent ledger entries and withdrawals"""
        telegram_id = update.effective_user.id
        self.db.require_user(telegram_id)
        entries = self.db.get_transactions(telegram_id, limit=10)
        recent = withdrawals.user_withdrawals(self.db, telegram_id, limit=5)

        message = "📜 Recent activity\n\n"
        if not entries:
            message += "No activity yet.\n"
        for entry in entries:
            sign = "+" if entry['coins'] >= 0 else ""
            label = TRANSACTION_LABELS.get(entry['type'], entry['type'])
            message += f"• {label}: {sign}{entry['coins']} coins ({entry['created_at'][:16]})\n"

        if recent:
            message += "\n💸 Withdrawals\n"
            for wd in recent:
                message += f"• #{wd['id']} {STATUS_EMOJI.get(wd['status'], '❓')} {wd['coins']} coins - {wd['status']}\n"

        await self._reply(update, message, reply_markup=_back())

    # ==================== BANK ====================
    async def show_bank_menu(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        details = bank.get_bank_details(self.db, update.effective_user.id)
        if details is None:
            message = "🏦 No bank account on file."
            keyboard = [[InlineKeyboardButton("➕ Add Bank", callback_data="bank_add")]]
        else:
            message = f"🏦 Bank on file:\n{details.masked()}"
            keyboard = [[InlineKeyboardButton("✏️ Change Bank", callback_data="bank_change")]]
        keyboard.append([InlineKeyboardButton("⬅️ Back", callback_data="back_to_menu")])
        await self._reply(update, message, reply_markup=InlineKeyboardMarkup(keyboard))

    async def start_bank_capture(self, update: Update, context: ContextTypes.DEFAULT_TYPE, change: bool):
        if change:
            context.user_data["awaiting"] = Awaiting.BANK_CHANGE
            await self._reply(update, Config.MESSAGES["bank_change_prompt"], parse_mode="Markdown")
        else:
            context.user_data["awaiting"] = Awaiting.BANK_DETAILS
            await self._reply(update, Config.MESSAGES["bank_prompt"], parse_mode="Markdown")

    async def _handle_bank_details(self, update: Update, context: ContextTypes.DEFAULT_TYPE, text: str):
        details = bank.save_bank_details(self.db, update.effective_user.id, bank.parse_bank_details(text))
        context.user_data.pop("awaiting", None)
        await update.effective_message.reply_text(
            Config.MESSAGES["bank_saved"].format(**details.__dict__),
            reply_markup=self.main_menu_keyboard(update.effective_user.id)
        )

    async def _handle_bank_change(self, update: Update, context: ContextTypes.DEFAULT_TYPE, text: str):
        old_bank_name, old_account_number, new_details = bank.parse_bank_change(text)
        # One attempt per prompt: a wrong guess of the current details ends the flow
        context.user_data.pop("awaiting", None)
        details = bank.change_bank_details(
            self.db, update.effective_user.id, old_bank_name, old_account_number, new_details
        )
        await update.effective_message.reply_text(
            Config.MESSAGES["bank_saved"].format(**details.__dict__),
            reply_markup=self.main_menu_keyboard(update.effective_user.id)
        )

    # ==================== WITHDRAWALS ====================
    async def show_withdraw_menu(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Show withdrawal menu"""
        telegram_id = update.effective_user.id
        user = self.db.require_user(telegram_id)
        details = bank.get_bank_details(self.db, telegram_id)

        if details is None:
            await self._reply(update, "🏦 Please add your bank details before withdrawing.",
                              reply_markup=InlineKeyboardMarkup([
                                  [InlineKeyboardButton("➕ Add Bank", callback_data="bank_add")],
                                  [InlineKeyboardButton("⬅️ Back", callback_data="back_to_menu")]
                              ]))
            return

        minimum = self.db.get_int_setting('min_withdrawal', Config.MIN_WITHDRAWAL)
        context.user_data["awaiting"] = Awaiting.WITHDRAW_AMOUNT
        message = Config.MESSAGES["withdraw_prompt"].format(coins=user['coins'], minimum=minimum)
        message += f"\n\nPayout to: {details.masked()}"
        await self._reply(update, message, reply_markup=_back())

    async def _handle_withdraw_amount(self, update: Update, context: ContextTypes.DEFAULT_TYPE, text: str):
        coins = _parse_int(text, "❌ Invalid amount. Please enter a whole number of coins:")
        withdrawal = withdrawals.request_withdrawal(self.db, update.effective_user.id, coins)
        context.user_data.pop("awaiting", None)

        await update.effective_message.reply_text(
            Config.MESSAGES["withdraw_success"].format(
                id=withdrawal['id'], coins=withdrawal['coins'],
                symbol=Config.CURRENCY_SYMBOL, amount=withdrawal['amount']
            ),
            reply_markup=self.main_menu_keyboard(update.effective_user.id)
        )
        await self.notifier.notify_withdrawal_request(withdrawal, update.effective_user.username)

    # ==================== HELP ====================
    async def show_help_prompt(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        context.user_data["awaiting"] = Awaiting.HELP_MESSAGE
        await self._reply(update, Config.MESSAGES["help_prompt"], reply_markup=_back())

    async def _handle_help_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE, text: str):
        user = update.effective_user
        request_id = self.db.create_help_request(user.id, text)
        context.user_data.pop("awaiting", None)

        await update.effective_message.reply_text(Config.MESSAGES["help_received"].format(id=request_id))
        await self.notifier.notify_admins(
            f"🆘 Help request #{request_id} from @{user.username or 'N/A'} ({user.id}):\n\n{text}\n\n"
            f"Reply with /reply {request_id} <message>"
        )

    @handles_errors
    async def handle_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Route a typed message to whichever prompt is waiting for it"""
        text = update.effective_message.text.strip()
        awaiting = context.user_data.get("awaiting")

        if awaiting == Awaiting.BANK_DETAILS:
            await self._handle_bank_details(update, context, text)
        elif awaiting == Awaiting.BANK_CHANGE:
            await self._handle_bank_change(update, context, text)
        elif awaiting == Awaiting.WITHDRAW_AMOUNT:
            await self._handle_withdraw_amount(update, context, text)
        elif awaiting == Awaiting.HELP_MESSAGE:
            await self._handle_help_message(update, context, text)
        elif awaiting == Awaiting.BROADCAST:
            self._require_admin(update)
            context.user_data.pop("awaiting", None)
            await self.send_broadcast(update, context, text)
        elif awaiting == Awaiting.DECLINE_REASON:
            withdrawal_id = context.user_data.pop("withdrawal_id", None)
            context.user_data.pop("awaiting", None)
            await self._decline(update, withdrawal_id, text)
        else:
            await update.effective_message.reply_text(
                "⚠️ Please use one of the menu buttons.",
                reply_markup=self.main_menu_keyboard(update.effective_user.id)
            )

    # ==================== ADMIN PANEL ====================
    async def show_admin_panel(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Show admin panel"""
        self._require_admin(update)
        stats = self.db.get_system_stats()

        message = f"{Config.MESSAGES['admin_panel']}\n\n"
        message += "📊 System Stats:\n"
        message += f"• Total Users: {stats['total_users']} ({stats['banned_users']} banned)\n"
        message += f"• Completed Tasks: {stats['completed_sessions']}\n"
        message += f"• Coins Outstanding: {stats['coins_outstanding']}\n"
        message += f"• Pending Withdrawals: {stats['pending_count']} ({stats['pending_coins']} coins)\n"
        message += f"• Total Paid: {Config.CURRENCY_SYMBOL}{stats['total_paid']:.2f}\n"
        message += f"• Open Help Requests: {stats['open_help_requests']}\n"
        message += f"• Tasks Enabled: {'yes' if self.db.tasks_enabled() else 'no'}"

        keyboard = [
            [
                InlineKeyboardButton("👥 Users", callback_data="admin_users"),
                InlineKeyboardButton("💸 Withdrawals", callback_data="admin_withdrawals")
            ],
            [
                InlineKeyboardButton("⚙️ Settings", callback_data="admin_settings"),
                InlineKeyboardButton("📢 Broadcast", callback_data="admin_broadcast")
            ],
            [InlineKeyboardButton("⬅️ Back", callback_data="back_to_menu")]
        ]

        await self._reply(update, message, reply_markup=InlineKeyboardMarkup(keyboard), parse_mode="Markdown")

    async def handle_admin_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle admin panel callbacks"""
        admin_id = self._require_admin(update)
        data = update.callback_query.data

        if data in ("admin_panel", "admin_back"):
            await self.show_admin_panel(update, context)
        elif data == "admin_users":
            await self.show_admin_users(update, context)
        elif data == "admin_withdrawals":
            await self.show_admin_withdrawals(update, context)
        elif data == "admin_settings":
            await self.show_admin_settings(update, context)
        elif data == "admin_broadcast":
            context.user_data["awaiting"] = Awaiting.BROADCAST
            await self._reply(update, "📢 Broadcast Message\n\nSend the message you want to broadcast:",
                              reply_markup=_back("admin_back"))
        elif data.startswith("withdraw_action_"):
            _, _, action, withdrawal_id = data.split("_")
            withdrawal_id = int(withdrawal_id)

            if action == "approve":
                withdrawal = withdrawals.approve_withdrawal(self.db, withdrawal_id, admin_id)
                await self.notifier.notify_withdrawal_result(withdrawal)
                await self.show_admin_withdrawals(update, context)
            elif action == "decline":
                # Make sure it is still pending before asking for a reason
                withdrawal = withdrawals.get_withdrawal(self.db, withdrawal_id)
                if withdrawal['status'] != withdrawals.PENDING:
                    await self._reply(update, f"⚠️ Withdrawal #{withdrawal_id} is already {withdrawal['status']}.",
                                      reply_markup=_back("admin_withdrawals"))
                    return
                context.user_data["awaiting"] = Awaiting.DECLINE_REASON
                context.user_data["withdrawal_id"] = withdrawal_id
                await self._reply(update, f"❌ Declining withdrawal #{withdrawal_id}\n\nSend the reason:")

    async def show_admin_users(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Show admin users list"""
        users = self.db.get_all_users(limit=20)

        message = "👥 Users List\n\n"
        for i, user in enumerate(users[:10], 1):
            status = "🚫" if user['is_banned'] else "✅"
            message += f"{i}. @{user['username'] or 'N/A'} ({user['telegram_id']}) - {user['coins']} coins {status}\n"

        if len(users) > 10:
            message += f"\n... and {len(users) - 10} more users"
        message += "\n\nUse /ban <id> or /unban <id>"

        await self._reply(update, message, reply_markup=_back("admin_back"))

    async def show_admin_withdrawals(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Show admin withdrawals list"""
        pending = withdrawals.list_withdrawals(self.db, withdrawals.PENDING)

        if not pending:
            message = "📭 No pending withdrawals"
            keyboard = [[InlineKeyboardButton("⬅️ Back", callback_data="admin_back")]]
        else:
            message = "💸 Pending Withdrawals\n\n"
            for wd in pending[:5]:
                message += f"#{wd['id']} @{wd['username'] or 'N/A'} ({wd['telegram_id']})\n"
                message += f"   Coins: {wd['coins']} ({Config.CURRENCY_SYMBOL}{wd['amount']:.2f})\n"
                message += f"   Bank: {wd['bank_name']} {wd['account_number']} ({wd['account_name']})\n"
                message += f"   Date: {wd['requested_at'][:16]}\n\n"

            keyboard = []
            for wd in pending[:5]:
                keyboard.append([
                    InlineKeyboardButton(f"✅ {wd['id']}", callback_data=f"withdraw_action_approve_{wd['id']}"),
                    InlineKeyboardButton(f"❌ {wd['id']}", callback_data=f"withdraw_action_decline_{wd['id']}")
                ])
            keyboard.append([InlineKeyboardButton("⬅️ Back", callback_data="admin_back")])

        await self._reply(update, message, reply_markup=InlineKeyboardMarkup(keyboard))

    async def show_admin_settings(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Show admin settings"""
        message = "⚙️ System Settings\n\n"
        for key in Config.TUNABLE_SETTINGS:
            message += f"{key}: {self.db.get_setting(key, 'N/A')}\n"

        message += "\nTo change settings, use command:\n"
        message += "/set <key> <value>\n"
        message += "Example: /set task_reward 250\n"
        message += "Toggle tasks: /tasks on|off"

        await self._reply(update, message, reply_markup=_back("admin_back"))

    async def _decline(self, update: Update, withdrawal_id: int, reason: str):
        admin_id = self._require_admin(update)
        if withdrawal_id is None:
            raise InvalidInput("❌ No withdrawal selected.")
        withdrawal = withdrawals.decline_withdrawal(self.db, withdrawal_id, admin_id, reason)
        await update.effective_message.reply_text(
            f"❌ Withdrawal #{withdrawal_id} declined. {withdrawal['coins']} coins refunded."
        )
        await self.notifier.notify_withdrawal_result(withdrawal)

    # ==================== ADMIN COMMANDS ====================
    @handles_errors
    async def cmd_admin(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self.show_admin_panel(update, context)

    @handles_errors
    async def cmd_set(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/set <key> <value>"""
        admin_id = self._require_admin(update)
        if len(context.args) != 2:
            raise InvalidInput("❌ Usage: /set <key> <value>")

        key, value = context.args
        if key not in Config.TUNABLE_SETTINGS:
            raise InvalidInput(f"❌ Invalid key. Valid keys: {', '.join(Config.TUNABLE_SETTINGS)}")

        if key == "tasks_enabled":
            value = "1" if value.lower() in ("1", "on", "true", "yes") else "0"
        elif key == "coin_rate":
            try:
                if float(value) <= 0:
                    raise ValueError(value)
            except ValueError:
                raise InvalidInput("❌ coin_rate must be a positive number.")
        else:
            value = str(_parse_int(value, f"❌ {key} must be a whole number."))

        self.db.update_setting(key, value, admin_id=admin_id)
        await update.effective_message.reply_text(f"✅ Setting updated: {key} = {value}")

    @handles_errors
    async def cmd_tasks(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/tasks on|off"""
        admin_id = self._require_admin(update)
        if not context.args or context.args[0].lower() not in ("on", "off"):
            raise InvalidInput("❌ Usage: /tasks on|off")
        enabled = context.args[0].lower() == "on"
        self.db.update_setting("tasks_enabled", "1" if enabled else "0", admin_id=admin_id)
        await update.effective_message.reply_text("✅ Tasks enabled" if enabled else "⏸ Tasks disabled")

    async def _set_ban(self, update: Update, context: ContextTypes.DEFAULT_TYPE, banned: bool):
        admin_id = self._require_admin(update)
        if not context.args:
            raise InvalidInput("❌ Usage: /ban <telegram_id>" if banned else "❌ Usage: /unban <telegram_id>")
        target = _parse_int(context.args[0], "❌ Invalid user id.")
        self.db.set_banned(target, banned, admin_id=admin_id)
        await update.effective_message.reply_text(f"✅ User {target} {'banned' if banned else 'unbanned'}")

    @handles_errors
    async def cmd_ban(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._set_ban(update, context, True)

    @handles_errors
    async def cmd_unban(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._set_ban(update, context, False)

    @handles_errors
    async def cmd_approve(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/approve <withdrawal_id>"""
        admin_id = self._require_admin(update)
        if not context.args:
            raise InvalidInput("❌ Usage: /approve <withdrawal_id>")
        withdrawal_id = _parse_int(context.args[0], "❌ Invalid withdrawal id.")
        withdrawal = withdrawals.approve_withdrawal(self.db, withdrawal_id, admin_id)
        await update.effective_message.reply_text(f"✅ Withdrawal #{withdrawal_id} approved.")
        await self.notifier.notify_withdrawal_result(withdrawal)

    @handles_errors
    async def cmd_decline(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/decline <withdrawal_id> <reason>"""
        self._require_admin(update)
        if len(context.args) < 2:
            raise InvalidInput("❌ Usage: /decline <withdrawal_id> <reason>")
        withdrawal_id = _parse_int(context.args[0], "❌ Invalid withdrawal id.")
        await self._decline(update, withdrawal_id, " ".join(context.args[1:]))

    @handles_errors
    async def cmd_reply(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/reply <request_id> <message>"""
        admin_id = self._require_admin(update)
        if len(context.args) < 2:
            raise InvalidInput("❌ Usage: /reply <request_id> <message>")
        request_id = _parse_int(context.args[0], "❌ Invalid request id.")
        text = " ".join(context.args[1:])

        request = self.db.answer_help_request(request_id, admin_id, text)
        delivered = await self.notifier.send(request['telegram_id'], f"💬 Support reply:\n\n{text}")
        await update.effective_message.reply_text("✅ Reply sent" if delivered else "⚠️ Reply saved but could not be delivered")

    @handles_errors
    async def cmd_broadcast(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/broadcast <message>"""
        self._require_admin(update)
        if not context.args:
            raise InvalidInput("❌ Usage: /broadcast <message>")
        await self.send_broadcast(update, context, " ".join(context.args))

    async def send_broadcast(self, update: Update, context: ContextTypes.DEFAULT_TYPE, message: str):
        """Send broadcast message to all users"""
        admin_id = self._require_admin(update)
        users = [u['telegram_id'] for u in self.db.get_all_users() if not u['is_banned']]
        total = len(users)

        await update.effective_message.reply_text(f"📢 Broadcasting to {total} users...")
        success = await self.notifier.broadcast(users, message)
        self.db.log_admin_action(admin_id, 'broadcast', {'sent': success, 'total': total})

        await update.effective_message.reply_text(f"✅ Broadcast sent to {success}/{total} users")

    # ==================== USER COMMANDS ====================
    @handles_errors
    async def cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        help_text = "\n".join([
            "Available Commands",
            "/start - Start bot & show menu",
            "/help - Show this help",
            "/task - Start a task",
            "/balance - Show your coins balance",
            "/withdraw - Request withdrawal",
            "/bank - Manage bank account",
            "/referral - Show referral link",
            "/history - Recent activity",
            "/support - Contact support",
        ])
        await update.effective_message.reply_text(help_text)

    @handles_errors
    async def cmd_task(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self.perform_task(update, context)

    @handles_errors
    async def cmd_balance(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self.show_balance(update, context)

    @handles_errors
    async def cmd_withdraw(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self.show_withdraw_menu(update, context)

    @handles_errors
    async def cmd_bank(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self.show_bank_menu(update, context)

    @handles_errors
    async def cmd_referral(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self.show_referral_info(update, context)

    @handles_errors
    async def cmd_history(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self.show_history(update, context)

    @handles_errors
    async def cmd_support(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self.show_help_prompt(update, context)

    async def error_handler(self, update: object, context: ContextTypes.DEFAULT_TYPE):
        """Log unexpected errors and tell the user to retry"""
        logger.error("Exception while handling an update", exc_info=context.error)
        if isinstance(update, Update) and update.effective_message:
            try:
                await update.effective_message.reply_text(Config.MESSAGES["try_again"])
            except Exception:
                logger.exception("Could not send error reply")

    # ==================== SETUP ====================
    def setup_handlers(self):
        """Setup bot handlers"""
        app = self.application

        # User commands
        app.add_handler(CommandHandler("start", self.start))
        app.add_handler(CommandHandler("help", self.cmd_help))
        app.add_handler(CommandHandler("task", self.cmd_task))
        app.add_handler(CommandHandler("balance", self.cmd_balance))
        app.add_handler(CommandHandler("withdraw", self.cmd_withdraw))
        app.add_handler(CommandHandler("bank", self.cmd_bank))
        app.add_handler(CommandHandler("referral", self.cmd_referral))
        app.add_handler(CommandHandler("history", self.cmd_history))
        app.add_handler(CommandHandler("support", self.cmd_support))

        # Admin commands
        app.add_handler(CommandHandler("admin", self.cmd_admin))
        app.add_handler(CommandHandler("set", self.cmd_set))
        app.add_handler(CommandHandler("tasks", self.cmd_tasks))
        app.add_handler(CommandHandler("ban", self.cmd_ban))
        app.add_handler(CommandHandler("unban", self.cmd_unban))
        app.add_handler(CommandHandler("approve", self.cmd_approve))
        app.add_handler(CommandHandler("decline", self.cmd_decline))
        app.add_handler(CommandHandler("reply", self.cmd_reply))
        app.add_handler(CommandHandler("broadcast", self.cmd_broadcast))

        # Callback query handler
        app.add_handler(CallbackQueryHandler(self.handle_callback))

        # Free text goes to whichever prompt is open
        app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self.handle_text))

        app.add_error_handler(self.error_handler)

    def build_application(self, token: str) -> Application:
        """Create the telegram Application and register handlers"""
        self.application = Application.builder().token(token).build()
        if self.notifier is None:
            self.notifier = Notifier(self.application.bot)
        self.setup_handlers()
        logger.info("Bot configured, admin IDs: %s", Config.ADMIN_IDS)
        return self.application
