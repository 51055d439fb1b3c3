# backend/orderledger/config.py
from __future__ import annotations
import os
from decimal import Decimal


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the instance by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///orderledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Undo log depth per order (oldest entry evicted first)
    UNDO_STACK_CAPACITY = int(os.environ.get("UNDO_STACK_CAPACITY", "10"))

    # Low-stock bands: CRITICAL <= min < LOW < min * factor <= NORMAL
    LOW_STOCK_FACTOR = Decimal(os.environ.get("LOW_STOCK_FACTOR", "1.2"))
    REORDER_MULTIPLIER = Decimal(os.environ.get("REORDER_MULTIPLIER", "2"))

    # Bounded retry for lock/stale-row failures on ledger and order writes
    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "3"))
    LEDGER_RETRY_BACKOFF = float(os.environ.get("LEDGER_RETRY_BACKOFF", "0.05"))

    ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "ORD")
