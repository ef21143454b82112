"""
Handler tests driven with mocked Telegram updates; no network involved.
"""

from unittest.mock import AsyncMock, patch

import pytest

from fonpay import bank, sessions, withdrawals
from fonpay.bot import TelegramBot, Awaiting
from fonpay.config import Config
from fonpay.errors import TransientIO, FeatureDisabled
from fonpay.notifier import Notifier
from tests.conftest import (
    ADMIN_ID, USER_ID, REFERRER_ID, make_update, make_context, last_text, set_coins, coins_of
)


@pytest.fixture
def notifier():
    return AsyncMock(spec=Notifier)


@pytest.fixture
def bot(db, notifier):
    return TelegramBot(db, notifier=notifier)


class TestStart:

    @pytest.mark.asyncio
    async def test_start_with_referral(self, bot, db):
        db.register_user(REFERRER_ID, "bob", "Bob")
        update = make_update(text="/start")

        await bot.start(update, make_context(args=[str(REFERRER_ID)]))

        assert db.get_user(USER_ID)['referred_by'] == REFERRER_ID
        assert update.message.reply_text.await_count == 2
        assert last_text(update) == Config.MESSAGES["menu"]

    @pytest.mark.asyncio
    async def test_banned_user(self, bot, db, user):
        db.set_banned(USER_ID, True)
        update = make_update(text="/start")

        await bot.start(update, make_context())

        assert last_text(update) == Config.MESSAGES["banned"]
        update.message.reply_text.assert_awaited_once()


class TestTasks:

    @pytest.mark.asyncio
    async def test_perform_task_shows_link(self, bot, user):
        update = make_update(callback_data="task")

        await bot.handle_callback(update, make_context())

        session = sessions.start_session(bot.db, USER_ID)
        assert session.link in last_text(update)

    @pytest.mark.asyncio
    async def test_tasks_disabled(self, bot, db, user):
        db.update_setting("tasks_enabled", "0")
        update = make_update(text="/task")

        await bot.cmd_task(update, make_context())

        assert last_text(update) == FeatureDisabled.user_message

    @pytest.mark.asyncio
    async def test_claim_reward(self, bot, db, user, notifier):
        session = sessions.start_session(db, USER_ID)
        for i in range(10):
            sessions.record_view(db, session.id, external_event_id=f"evt-{i}")
        update = make_update(callback_data=f"claim_{session.id}")

        await bot.handle_callback(update, make_context())

        assert coins_of(db, USER_ID) == 200
        assert "200" in last_text(update)
        notifier.notify_settlement.assert_awaited_once()
        assert notifier.notify_settlement.await_args.kwargs == {"notify_user": False}

    @pytest.mark.asyncio
    async def test_notification_failure_keeps_credit(self, bot, db, user, notifier):
        session = sessions.start_session(db, USER_ID)
        for i in range(10):
            sessions.record_view(db, session.id, external_event_id=f"evt-{i}")
        notifier.notify_settlement.side_effect = RuntimeError("network down")

        with pytest.raises(RuntimeError):
            await bot.handle_callback(make_update(callback_data=f"claim_{session.id}"), make_context())

        assert coins_of(db, USER_ID) == 200
        assert sessions.get_session(db, session.id).completed is True

    @pytest.mark.asyncio
    async def test_claim_before_finished(self, bot, db, user, notifier):
        session = sessions.start_session(db, USER_ID)
        sessions.record_view(db, session.id, external_event_id="only-one")
        update = make_update(callback_data=f"claim_{session.id}")

        await bot.handle_callback(update, make_context())

        assert "1/10" in last_text(update)
        assert coins_of(db, USER_ID) == 0
        notifier.notify_settlement.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_claim_someone_elses_session(self, bot, db, user):
        session = sessions.start_session(db, USER_ID)
        db.register_user(REFERRER_ID, "bob", "Bob")
        update = make_update(user_id=REFERRER_ID, callback_data=f"claim_{session.id}", username="bob")

        await bot.handle_callback(update, make_context())

        assert "not found" in last_text(update)

    @pytest.mark.asyncio
    async def test_transient_failure_asks_to_retry(self, bot, user):
        update = make_update(text="/task")

        with patch("fonpay.sessions.start_session", side_effect=TransientIO()):
            await bot.cmd_task(update, make_context())

        assert last_text(update) == TransientIO.user_message


class TestBankFlow:

    @pytest.mark.asyncio
    async def test_first_capture(self, bot, db, user):
        context = make_context()
        await bot.handle_callback(make_update(callback_data="bank_add"), context)
        assert context.user_data["awaiting"] == Awaiting.BANK_DETAILS

        update = make_update(text="Opay, 9876543210, Alice Doe")
        await bot.handle_text(update, context)

        assert bank.get_bank_details(db, USER_ID).bank_name == "Opay"
        assert "awaiting" not in context.user_data

    @pytest.mark.asyncio
    async def test_bad_format_keeps_prompt_open(self, bot, db, user):
        context = make_context()
        context.user_data["awaiting"] = Awaiting.BANK_DETAILS

        update = make_update(text="just a bank name")
        await bot.handle_text(update, context)

        assert context.user_data["awaiting"] == Awaiting.BANK_DETAILS
        assert bank.get_bank_details(db, USER_ID) is None

    @pytest.mark.asyncio
    async def test_edited_message_is_handled(self, bot, db, user):
        context = make_context()
        context.user_data["awaiting"] = Awaiting.BANK_DETAILS
        update = make_update(text="Opay, 9876543210, Alice Doe")
        edited = update.effective_message
        update.message = None

        await bot.handle_text(update, context)

        assert bank.get_bank_details(db, USER_ID).bank_name == "Opay"
        edited.reply_text.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_change_with_wrong_old_details(self, bot, db, banked_user):
        context = make_context()
        context.user_data["awaiting"] = Awaiting.BANK_CHANGE

        update = make_update(text="Kuda, 0123456789 | Opay, 9876543210, Mallory")
        await bot.handle_text(update, context)

        assert "do not match" in last_text(update)
        assert bank.get_bank_details(db, USER_ID).bank_name == "Moniepoint"
        assert "awaiting" not in context.user_data


class TestWithdrawFlow:

    @pytest.mark.asyncio
    async def test_withdraw_menu_without_bank(self, bot, user):
        context = make_context()
        update = make_update(callback_data="withdraw")

        await bot.handle_callback(update, context)

        assert "add your bank details" in last_text(update)
        assert "awaiting" not in context.user_data

    @pytest.mark.asyncio
    async def test_successful_request(self, bot, db, banked_user, notifier):
        set_coins(db, USER_ID, 100000)
        context = make_context()
        await bot.handle_callback(make_update(callback_data="withdraw"), context)
        assert context.user_data["awaiting"] == Awaiting.WITHDRAW_AMOUNT

        update = make_update(text="60,000")
        await bot.handle_text(update, context)

        assert coins_of(db, USER_ID) == 40000
        assert "awaiting" not in context.user_data
        notifier.notify_withdrawal_request.assert_awaited_once()
        withdrawal = notifier.notify_withdrawal_request.await_args.args[0]
        assert withdrawal['status'] == withdrawals.PENDING

    @pytest.mark.asyncio
    async def test_below_minimum_keeps_prompt_open(self, bot, db, banked_user, notifier):
        set_coins(db, USER_ID, 100000)
        context = make_context()
        context.user_data["awaiting"] = Awaiting.WITHDRAW_AMOUNT

        update = make_update(text="50000")
        await bot.handle_text(update, context)

        assert "Minimum withdrawal is 60000" in last_text(update)
        assert context.user_data["awaiting"] == Awaiting.WITHDRAW_AMOUNT
        assert coins_of(db, USER_ID) == 100000
        notifier.notify_withdrawal_request.assert_not_awaited()


class TestAdmin:

    @pytest.fixture
    def pending(self, db, banked_user):
        set_coins(db, USER_ID, 100000)
        return withdrawals.request_withdrawal(db, USER_ID, 60000)

    @pytest.mark.asyncio
    async def test_non_admin_denied(self, bot, user):
        update = make_update(callback_data="admin_panel")

        await bot.handle_callback(update, make_context())

        assert last_text(update) == "⛔ Access Denied"

    @pytest.mark.asyncio
    async def test_admin_panel(self, bot, user):
        update = make_update(user_id=ADMIN_ID, callback_data="admin_panel", username="admin")

        await bot.handle_callback(update, make_context())

        assert "Total Users: 1" in last_text(update)

    @pytest.mark.asyncio
    async def test_decline_via_buttons(self, bot, db, pending, notifier):
        context = make_context()
        await bot.handle_callback(
            make_update(user_id=ADMIN_ID, callback_data=f"withdraw_action_decline_{pending['id']}"),
            context
        )
        assert context.user_data["awaiting"] == Awaiting.DECLINE_REASON

        update = make_update(user_id=ADMIN_ID, text="wrong account")
        await bot.handle_text(update, context)

        assert coins_of(db, USER_ID) == 100000
        assert withdrawals.get_withdrawal(db, pending['id'])['admin_note'] == "wrong account"
        assert "refunded" in last_text(update)
        notifier.notify_withdrawal_result.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_approve_via_button(self, bot, db, pending, notifier):
        update = make_update(user_id=ADMIN_ID, callback_data=f"withdraw_action_approve_{pending['id']}")

        await bot.handle_callback(update, make_context())

        assert withdrawals.get_withdrawal(db, pending['id'])['status'] == withdrawals.APPROVED
        assert coins_of(db, USER_ID) == 40000
        assert last_text(update) == "📭 No pending withdrawals"
        notifier.notify_withdrawal_result.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_decline_already_approved(self, bot, db, pending):
        withdrawals.approve_withdrawal(db, pending['id'], ADMIN_ID)
        context = make_context()
        update = make_update(user_id=ADMIN_ID, callback_data=f"withdraw_action_decline_{pending['id']}")

        await bot.handle_callback(update, context)

        assert "already approved" in last_text(update)
        assert "awaiting" not in context.user_data

    @pytest.mark.asyncio
    async def test_set_invalid_key(self, bot, db):
        update = make_update(user_id=ADMIN_ID, text="/set foo 1")

        await bot.cmd_set(update, make_context(args=["foo", "1"]))

        assert last_text(update).startswith("❌ Invalid key")

    @pytest.mark.asyncio
    async def test_set_task_reward(self, bot, db):
        update = make_update(user_id=ADMIN_ID, text="/set task_reward 250")

        await bot.cmd_set(update, make_context(args=["task_reward", "250"]))

        assert db.get_setting("task_reward") == "250"
        assert db.get_admin_logs()[0]['admin_id'] == ADMIN_ID

    @pytest.mark.asyncio
    async def test_set_by_non_admin(self, bot, db):
        update = make_update(text="/set task_reward 999999")

        await bot.cmd_set(update, make_context(args=["task_reward", "999999"]))

        assert last_text(update) == "⛔ Access Denied"
        assert db.get_setting("task_reward") == "200"

    @pytest.mark.asyncio
    async def test_ban(self, bot, db, user):
        update = make_update(user_id=ADMIN_ID, text=f"/ban {USER_ID}")

        await bot.cmd_ban(update, make_context(args=[str(USER_ID)]))

        assert db.get_user(USER_ID)['is_banned'] == 1

    @pytest.mark.asyncio
    async def test_broadcast_skips_banned(self, bot, db, user, notifier):
        db.register_user(REFERRER_ID, "bob", "Bob")
        db.set_banned(REFERRER_ID, True)
        notifier.broadcast.return_value = 1
        update = make_update(user_id=ADMIN_ID, text="/broadcast hello")

        await bot.cmd_broadcast(update, make_context(args=["hello"]))

        notifier.broadcast.assert_awaited_once_with([USER_ID], "hello")
        assert last_text(update) == "✅ Broadcast sent to 1/1 users"


class TestSupport:

    @pytest.mark.asyncio
    async def test_help_request_and_reply(self, bot, db, user, notifier):
        context = make_context()
        context.user_data["awaiting"] = Awaiting.HELP_MESSAGE

        await bot.handle_text(make_update(text="My withdrawal is late"), context)

        notifier.notify_admins.assert_awaited_once()
        request = db.get_help_request(1)
        assert request['message'] == "My withdrawal is late"

        notifier.send.return_value = True
        update = make_update(user_id=ADMIN_ID, text="/reply 1 Processing today")
        await bot.cmd_reply(update, make_context(args=["1", "Processing", "today"]))

        notifier.send.assert_awaited_once_with(USER_ID, "💬 Support reply:\n\nProcessing today")
        assert db.get_help_request(1)['status'] == 'answered'
