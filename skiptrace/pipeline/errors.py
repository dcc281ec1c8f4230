"""
Skip-trace error taxonomy.

Routes map each class to an HTTP status via `http_status`; the run manager
records `reason` as an item's last_error.
"""


class SkipTraceError(Exception):
    """Base class for all engine errors."""
    http_status = 500
    reason = 'internal_error'

    def __init__(self, message='', reason=None):
        super().__init__(message or self.reason)
        if reason:
            self.reason = reason


class ValidationError(SkipTraceError):
    """Missing/invalid lead id, empty or oversized batch."""
    http_status = 400
    reason = 'validation_error'


class LeadNotFound(SkipTraceError):
    http_status = 404
    reason = 'lead_not_found'

    def __init__(self, lead_id):
        self.lead_id = lead_id
        super().__init__(f"Lead '{lead_id}' not found")


class BudgetExceeded(SkipTraceError):
    """Budget Guard denied the reservation; no provider was charged."""
    http_status = 429
    reason = 'budget_exceeded'

    def __init__(self, message='Daily skip-trace budget exhausted', quota=None):
        self.quota = quota
        super().__init__(message)


class ProviderFailure(SkipTraceError):
    """One adapter failed (timeout, transport, non-2xx, malformed payload).

    Triggers fallback to the next provider; never surfaced on its own.
    """
    http_status = 502
    reason = 'provider_failure'

    def __init__(self, provider, message, status_code=None, retryable=False):
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(f'{provider}: {message}')


class AllProvidersExhausted(SkipTraceError):
    """Every provider in the chain failed or was skipped for a lead."""
    http_status = 200
    reason = 'all_providers_exhausted'

    def __init__(self, lead_id, failures):
        self.lead_id = lead_id
        self.failures = list(failures)
        last = self.failures[-1] if self.failures else 'no provider attempted'
        super().__init__(f'All providers failed for lead {lead_id}; last error: {last}')


class StoreError(SkipTraceError):
    """Ledger/run persistence failure, isolated to one item."""
    reason = 'store_error'


class ConfigurationError(SkipTraceError):
    """Fatal at run creation, e.g. an empty provider chain."""
    reason = 'configuration_error'
