import re
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .database import Database
from .errors import InvalidInput, NoBankOnFile, BankAlreadyOnFile, MismatchedOldDetails

logger = logging.getLogger(__name__)

ACCOUNT_NUMBER_RE = re.compile(r"^\d{6,20}$")


@dataclass
class BankDetails:
    bank_name: str
    account_number: str
    account_name: str

    def masked(self) -> str:
        return f"{self.bank_name} - ****{self.account_number[-4:]} ({self.account_name})"


def _split(text: str, minimum: int, maximum: int):
    parts = [p.strip() for p in (text or "").split(",")]
    if not minimum <= len(parts) <= maximum or not all(parts):
        raise InvalidInput()
    if not ACCOUNT_NUMBER_RE.match(parts[1]):
        raise InvalidInput("❌ Account number must be 6-20 digits.")
    return parts


def parse_bank_details(text: str) -> BankDetails:
    """Parse ``Bank Name, Account Number, Account Holder``"""
    bank_name, account_number, account_name = _split(text, 3, 3)
    return BankDetails(bank_name, account_number, account_name)


def parse_bank_change(text: str) -> Tuple[str, str, BankDetails]:
    """Parse ``Old Bank, Old Account | New Bank, New Account, New Holder``"""
    if (text or "").count("|") != 1:
        raise InvalidInput()
    old, new = text.split("|")
    old_parts = _split(old, 2, 3)
    return old_parts[0], old_parts[1], parse_bank_details(new)


def _same_bank(claimed: str, on_file: str) -> bool:
    return " ".join(claimed.split()).casefold() == " ".join((on_file or "").split()).casefold()


def get_bank_details(db: Database, telegram_id: int) -> Optional[BankDetails]:
    user = db.require_user(telegram_id)
    if not (user['bank_name'] and user['account_number']):
        return None
    return BankDetails(user['bank_name'], user['account_number'], user['account_name'] or '')


def save_bank_details(db: Database, telegram_id: int, details: BankDetails) -> BankDetails:
    """First-time capture of a user's bank account"""
    with db.transaction() as cursor:
        user = db.require_user(telegram_id, cursor=cursor)
        if user['bank_name'] and user['account_number']:
            raise BankAlreadyOnFile()
        cursor.execute('''
            UPDATE users SET bank_name = ?, account_number = ?, account_name = ?
            WHERE telegram_id = ?
        ''', (details.bank_name, details.account_number, details.account_name, telegram_id))

    logger.info("Bank details saved for user %s", telegram_id)
    return details


def change_bank_details(db: Database, telegram_id: int, old_bank_name: str,
                        old_account_number: str, new_details: BankDetails) -> BankDetails:
    """Replace bank details; the caller must state the details currently on file"""
    with db.transaction() as cursor:
        user = db.require_user(telegram_id, cursor=cursor)
        if not (user['bank_name'] and user['account_number']):
            raise NoBankOnFile()
        if not _same_bank(old_bank_name, user['bank_name']) or old_account_number.strip() != user['account_number']:
            logger.warning("Bank change for user %s rejected: old details mismatch", telegram_id)
            raise MismatchedOldDetails()
        cursor.execute('''
            UPDATE users SET bank_name = ?, account_number = ?, account_name = ?
            WHERE telegram_id = ?
        ''', (new_details.bank_name, new_details.account_number, new_details.account_name, telegram_id))

    logger.info("Bank details changed for user %s", telegram_id)
    return new_details
