"""
Centralized configuration — env vars and engine constants.
"""
import os


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis ─────────────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

# ── PostgreSQL ────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')

# ── Budget ────────────────────────────────────────────────────────────────────
DAILY_BUDGET_CENTS = int(os.getenv('SKIPTRACE_DAILY_BUDGET_CENTS', '2500'))
BUDGET_TIMEZONE = os.getenv('BUDGET_TIMEZONE', 'UTC')

# ── Run execution ─────────────────────────────────────────────────────────────
RUN_CONCURRENCY = int(os.getenv('RUN_CONCURRENCY', '4'))
BULK_MAX_BATCH = int(os.getenv('BULK_MAX_BATCH', '100'))
RUN_MAX_BATCH = int(os.getenv('RUN_MAX_BATCH', '5000'))
RUN_JOB_TIMEOUT = int(os.getenv('RUN_JOB_TIMEOUT', '14400'))

# ── Provider chain ────────────────────────────────────────────────────────────
# Comma-separated slot names; empty means "use providers.yaml order"
PROVIDER_CHAIN = os.getenv('PROVIDER_CHAIN', '')
MOCK_PROVIDERS = os.getenv('SKIPTRACE_MOCK_PROVIDERS', '') not in ('', '0', 'false')

# ── Do-not-call compliance ────────────────────────────────────────────────────
# Without DNC_API_URL/DNC_API_KEY only cached and provider-reported flags apply
DNC_API_URL = os.getenv('DNC_API_URL')
DNC_API_KEY = os.getenv('DNC_API_KEY')
DNC_TIMEOUT = float(os.getenv('DNC_TIMEOUT', '10'))
DNC_CACHE_DAYS = int(os.getenv('DNC_CACHE_DAYS', '30'))
ENFORCE_QUIET_HOURS = os.getenv('ENFORCE_QUIET_HOURS', '') in ('1', 'true', 'yes')
DEFAULT_CALL_TIMEZONE = os.getenv('DEFAULT_CALL_TIMEZONE', 'America/New_York')
