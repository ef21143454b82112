"""
Error taxonomy for the reward and withdrawal workflows.

Every error carries a plain-language ``user_message`` that the bot replies with.
Only ``TransientIO`` is unexpected; the rest are normal user-facing outcomes.
"""


class BotError(Exception):
    """Base class for all expected workflow errors"""

    user_message = "⚠️ Request could not be completed."

    def __init__(self, message: str = None):
        super().__init__(message or self.user_message)
        if message:
            self.user_message = message


# ---------- Not found ----------
class NotFound(BotError):
    user_message = "❓ Not found."


# ---------- Invalid state ----------
class InvalidState(BotError):
    user_message = "⚠️ This action is no longer possible."


class AlreadySettled(InvalidState):
    user_message = "✅ This task has already been rewarded."


class AlreadyProcessed(InvalidState):
    user_message = "⚠️ This withdrawal has already been processed."


class Incomplete(InvalidState):
    def __init__(self, count: int, threshold: int):
        self.count = count
        self.threshold = threshold
        super().__init__(f"⏳ Task not finished yet: {count}/{threshold} ads watched.")


# ---------- Policy violations ----------
class PolicyViolation(BotError):
    user_message = "⚠️ This request is not allowed."


class FeatureDisabled(PolicyViolation):
    user_message = "⏸ Tasks are currently disabled. Please check back later."


class InsufficientBalance(PolicyViolation):
    user_message = "❌ Insufficient balance."


class BelowMinimum(PolicyViolation):
    def __init__(self, minimum: int):
        self.minimum = minimum
        super().__init__(f"⚠️ Minimum withdrawal is {minimum} coins.")


class NoBankOnFile(PolicyViolation):
    user_message = "🏦 Please add your bank details first."


class BankAlreadyOnFile(PolicyViolation):
    user_message = "🏦 Bank details are already on file. Use Change Bank to update them."


class MismatchedOldDetails(PolicyViolation):
    user_message = "❌ The current bank details you entered do not match our records."


class UserBanned(PolicyViolation):
    user_message = "🚫 Your account has been banned."


class InvalidInput(PolicyViolation):
    user_message = "❌ Invalid format. Please try again."


# ---------- Authorization ----------
class Unauthorized(BotError):
    user_message = "⛔ Access Denied"


# ---------- Infrastructure ----------
class TransientIO(BotError):
    user_message = "⚠️ Something went wrong. Please try again later."
