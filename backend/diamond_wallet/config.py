"""
Diamond Wallet Configuration and Constants

Action costs, diamond packs, refill policy and error messages are defined here.
Every layer (ledger engine, routes, client facade) reads policy from this module.
"""

import os

# ==================== ACCOUNT DEFAULTS ====================
INITIAL_BALANCE = 15
MAX_BALANCE = 10           # Ceiling for the daily refill only
PURCHASED_BALANCE_CAP = 999  # Purchases saturate here instead of overflowing

ACCOUNT_DEFAULTS = {
    "initial_balance": INITIAL_BALANCE,
    "max_balance": MAX_BALANCE,
}

# ==================== ACTION COSTS ====================
# Diamonds charged per gated feature action
ACTION_COSTS = {
    "camera": 3,             # Take a face photo
    "viewResult": 4,         # Open a diagnosis result
    "addUser": 3,            # Add a user profile
    "adviceGeneration": 1,   # Generate advice
    "historyView": 1,        # Open diagnosis history
}

ACTION_DESCRIPTIONS = {
    "camera": "Take a photo",
    "viewResult": "View result",
    "addUser": "Add user",
    "adviceGeneration": "Generate advice",
    "historyView": "View history",
}

# ==================== DIAMOND PACKS (JPY) ====================
DIAMOND_PACKS = {
    "standard": {
        "name": "Standard Pack",
        "diamonds": 50,
        "price_jpy": 120,
    },
    "value": {
        "name": "Value Pack",
        "diamonds": 150,
        "price_jpy": 300,
    },
    "premium": {
        "name": "Premium Pack",
        "diamonds": 500,
        "price_jpy": 800,
    },
}

# ==================== TRANSACTION KINDS ====================
KIND_CONSUMPTION = "consumption"
KIND_PURCHASE = "purchase"
KIND_REFILL = "refill"
KIND_GRANT = "grant"

CREDIT_KINDS = (KIND_PURCHASE, KIND_GRANT)

# ==================== REFILL POLICY ====================
# One refill opportunity per calendar day in this timezone
REFILL_TIMEZONE = os.environ.get("DIAMOND_REFILL_TZ", "Asia/Tokyo")
REFILL_SWEEP_ENABLED = os.environ.get("DIAMOND_REFILL_SWEEP", "0") == "1"

# ==================== STORAGE ====================
ACCOUNTS_COLLECTION = "diamond_accounts"
TRANSACTIONS_COLLECTION = "diamond_transactions"

CAS_MAX_ATTEMPTS = int(os.environ.get("DIAMOND_CAS_MAX_ATTEMPTS", "5"))
MONGO_TIMEOUT_MS = int(os.environ.get("MONGO_TIMEOUT_MS", "5000"))

HISTORY_DEFAULT_LIMIT = 50
HISTORY_MAX_LIMIT = 200

# ==================== ERROR CODES ====================
# User-facing messages; internal error text is never returned to clients
ERROR_CODES = {
    "INSUFFICIENT_BALANCE": "Not enough diamonds. Purchase more or wait for the daily refill.",
    "UNKNOWN_ACTION": "This action is not available.",
    "UNKNOWN_PACK": "This diamond pack is not available.",
    "INVALID_AMOUNT": "Amount must be a positive whole number.",
    "STORAGE_UNAVAILABLE": "Diamonds are temporarily unavailable. Please try again.",
    "NOT_FOUND": "Diamond account could not be loaded. Please try again.",
}
