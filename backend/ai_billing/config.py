"""
AI Billing Configuration and Constants

Provider endpoints, timeouts, estimation constants and user-facing
error messages are defined here. Prices are in USD.
"""

# ==================== TOKEN ESTIMATION ====================
# Coarse pre-call heuristic: ~4 characters per token, doubled to leave room
# for the response.
CHARS_PER_TOKEN = 4
ESTIMATE_MULTIPLIER = 2

# ==================== TOP-UPS ====================
TOP_UP_TOKENS_PER_USD = 100000
TOP_UP_MIN_TOKENS = 1000
TOP_UP_MAX_TOKENS = 500000000
TOP_UP_PLAN_ID = "topup"

# ==================== CYCLES ====================
BILLING_CYCLE_DAYS = 30

# Most recent idempotency keys remembered on each usage record
IDEMPOTENCY_WINDOW = 500

# Low balance threshold (fraction of tokens_total)
LOW_BALANCE_THRESHOLD = 0.1

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "INSUFFICIENT_TOKENS": "You do not have enough tokens to complete this request. Please upgrade your plan or add more tokens.",
    "INVALID_SIGNATURE": "Invalid signature",
    "MISSING_SIGNATURE": "Missing signature header",
    "INVALID_PLAN": "Invalid plan ID",
    "INVALID_PAYMENT_METHOD": "Invalid payment method",
    "UNAUTHORIZED": "Unauthorized",
    "STORAGE_UNAVAILABLE": "Billing storage is temporarily unavailable. Please retry.",
    "PROVIDER_ERROR": "Payment provider error",
    "NOT_FOUND": "Not found",
}

# ==================== PAYMENT PROVIDERS ====================
# Bounded timeout for every outbound provider call
PROVIDER_TIMEOUT_SECONDS = 15.0

PAYMENT_METHODS = {
    "card": "stripe",
    "crypto": "cryptomus",
}

CRYPTOMUS_CONFIG = {
    "api_base": "https://api.cryptomus.com/v1",
    "payment_lifetime_seconds": 3600,
}

# Cryptomus payment statuses -> PaymentIntent statuses
CRYPTOMUS_STATUS_MAP = {
    "paid": "paid",
    "paid_over": "paid",
    "wrong_amount": "partially_paid",
    "partially_paid": "partially_paid",
    "process": "waiting",
    "check": "waiting",
    "confirm_check": "waiting",
    "waiting": "waiting",
    "wrong_amount_waiting": "waiting",
    "cancel": "expired",
    "expired": "expired",
    "fail": "failed",
    "system_fail": "failed",
}

STRIPE_API_VERSION = "2023-10-16"

# Stripe signature header timestamp tolerance
STRIPE_SIGNATURE_TOLERANCE_SECONDS = 300

# ==================== AI MODELS ====================
GENERATION_TIMEOUT_SECONDS = 60.0

DEFAULT_MODEL = "gpt-4o"

AI_MODELS = {
    "gpt-4o": {
        "name": "GPT-4o",
        "api_model": "gpt-4o",
        "provider": "OpenAI",
        "max_tokens": 128000,
        "cost_per_token": 0.00003,
        "is_premium": False,
    },
    "claude-3": {
        "name": "Claude 3",
        "provider": "Anthropic",
        "max_tokens": 200000,
        "cost_per_token": 0.000015,
        "is_premium": True,
    },
    "gemini-pro": {
        "name": "Gemini Pro",
        "provider": "Google",
        "max_tokens": 32000,
        "cost_per_token": 0.00001,
        "is_premium": False,
    },
    "deepseek-coder": {
        "name": "DeepSeek Coder",
        "provider": "DeepSeek",
        "max_tokens": 64000,
        "cost_per_token": 0.000002,
        "is_premium": False,
    },
}
