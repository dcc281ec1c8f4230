"""
Per-provider circuit breakers with Redis-backed state and health tracking.

One breaker per adapter in the chain. States:
  - CLOSED    → provider is called normally
  - OPEN      → too many consecutive failures; the orchestrator skips the
                provider without calling it (and without a ProviderCall row)
  - HALF_OPEN → after reset_timeout, one trial call is let through

Redis problems never block lookups: every Redis error degrades to CLOSED.
Health counters feed GET /skiptrace/providers.
"""
import logging
import time

logger = logging.getLogger('services.circuit_breaker')

CLOSED = 'closed'
OPEN = 'open'
HALF_OPEN = 'half_open'


class CircuitOpenError(Exception):
    """Raised by call() when the provider's breaker is open."""
    def __init__(self, name, retry_after=None):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is OPEN, provider skipped")


class CircuitBreaker:
    """
    Redis-backed breaker keyed by provider name.

    Usage:
        cb = CircuitBreaker('batchdata', redis_client, failure_threshold=5, reset_timeout=120)
        if cb.allow_request():
            try:
                result = adapter.lookup(lead)
                cb.record_success()
            except ProviderFailure as e:
                cb.record_failure(e)
    """

    PREFIX = 'skiptrace:cb'

    def __init__(self, name, redis_client, failure_threshold=5, reset_timeout=120, clock=time.time):
        self.name = name
        self.redis = redis_client
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

    def _key(self, suffix):
        return f'{self.PREFIX}:{self.name}:{suffix}'

    # ── State ─────────────────────────────────────────────────────────

    @property
    def state(self):
        try:
            current = self.redis.get(self._key('state')) or CLOSED
            if current == OPEN and self._open_elapsed() > self.reset_timeout:
                self.redis.set(self._key('state'), HALF_OPEN)
                return HALF_OPEN
            return current
        except Exception as e:
            logger.debug("Breaker '%s' state unavailable (%s), treating as closed", self.name, e)
            return CLOSED

    def _open_elapsed(self):
        opened = self.redis.get(self._key('opened_at'))
        return self._clock() - float(opened) if opened else float('inf')

    @property
    def failure_count(self):
        try:
            return int(self.redis.get(self._key('failures')) or 0)
        except Exception:
            return 0

    def allow_request(self):
        """True unless the breaker is OPEN and still cooling down."""
        return self.state != OPEN

    def retry_after(self):
        try:
            return max(0.0, self.reset_timeout - self._open_elapsed())
        except Exception:
            return None

    # ── Outcomes ──────────────────────────────────────────────────────

    def record_success(self):
        try:
            pipe = self.redis.pipeline()
            pipe.set(self._key('state'), CLOSED)
            pipe.set(self._key('failures'), 0)
            pipe.hincrby(self._key('health'), 'success', 1)
            pipe.hset(self._key('health'), 'last_success', str(self._clock()))
            pipe.execute()
        except Exception as e:
            logger.debug("Breaker '%s' could not record success: %s", self.name, e)

    def record_failure(self, error):
        try:
            failures = self.redis.incr(self._key('failures'))
            pipe = self.redis.pipeline()
            pipe.hincrby(self._key('health'), 'failure', 1)
            pipe.hset(self._key('health'), 'last_failure', str(self._clock()))
            pipe.hset(self._key('health'), 'last_error', str(error)[:200])
            # A failed half-open trial call re-opens immediately
            if failures >= self.failure_threshold or self.state == HALF_OPEN:
                pipe.set(self._key('state'), OPEN)
                pipe.set(self._key('opened_at'), str(self._clock()))
                logger.warning("Circuit '%s' OPENED after %d failures (threshold=%d): %s",
                               self.name, failures, self.failure_threshold, error)
            else:
                logger.info("Circuit '%s' failure %d/%d: %s",
                            self.name, failures, self.failure_threshold, error)
            pipe.execute()
        except Exception as e:
            logger.debug("Breaker '%s' could not record failure: %s", self.name, e)

    def call(self, func, *args, **kwargs):
        """Run func through the breaker; any exception counts as a failure."""
        if not self.allow_request():
            raise CircuitOpenError(self.name, retry_after=self.retry_after())
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result

    def reset(self):
        """Manually close the breaker."""
        try:
            pipe = self.redis.pipeline()
            pipe.set(self._key('state'), CLOSED)
            pipe.set(self._key('failures'), 0)
            pipe.delete(self._key('opened_at'))
            pipe.execute()
            logger.info("Circuit '%s' manually reset to CLOSED", self.name)
        except Exception as e:
            logger.error("Failed to reset circuit '%s': %s", self.name, e)

    def get_health(self):
        """Health metrics dict for this provider."""
        health = {
            'name': self.name,
            'state': 'unknown',
            'failure_count': 0,
            'failure_threshold': self.failure_threshold,
            'reset_timeout': self.reset_timeout,
            'total_success': 0,
            'total_failure': 0,
            'last_success': None,
            'last_failure': None,
            'last_error': '',
        }
        try:
            data = self.redis.hgetall(self._key('health')) or {}
        except Exception:
            return health
        health.update({
            'state': self.state,
            'failure_count': self.failure_count,
            'total_success': int(data.get('success', 0)),
            'total_failure': int(data.get('failure', 0)),
            'last_success': float(data['last_success']) if data.get('last_success') else None,
            'last_failure': float(data['last_failure']) if data.get('last_failure') else None,
            'last_error': data.get('last_error', ''),
        })
        return health


# ── Global registry ───────────────────────────────────────────────────────

_registry = {}


def get_breaker(name, redis_client=None, **kwargs):
    """Get or create a named circuit breaker (singleton per name)."""
    if name not in _registry:
        if redis_client is None:
            from skiptrace.extensions import redis_client as rc
            redis_client = rc
        _registry[name] = CircuitBreaker(name, redis_client, **kwargs)
    return _registry[name]


def get_all_breakers():
    """Return all registered circuit breakers."""
    return dict(_registry)


def init_breakers(redis_client, chain_settings):
    """Register one breaker per adapter in the configured chain."""
    breakers = {}
    for entry in chain_settings:
        opts = entry.get('breaker') or {}
        breakers[entry['adapter']] = CircuitBreaker(
            entry['adapter'], redis_client,
            failure_threshold=int(opts.get('failure_threshold', 5)),
            reset_timeout=int(opts.get('reset_timeout', 120)),
        )
    _registry.update(breakers)
    return breakers


def clear_registry():
    """Drop all registered breakers (useful for testing)."""
    _registry.clear()
