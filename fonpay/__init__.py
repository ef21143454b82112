"""FonPay Task Earnings Bot: ad-watch rewards, referrals and bank withdrawals over Telegram."""

__version__ = "1.0.0"
