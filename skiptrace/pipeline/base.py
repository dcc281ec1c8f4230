"""
Provider adapter contracts.

Every contact provider implements ProviderAdapter.lookup() and returns a
LookupResult. Provider-specific request/response handling lives in concrete
adapter classes; the orchestrator only sees the uniform interface.
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Any, Optional, Type

import requests

from skiptrace.pipeline.errors import ProviderFailure, ConfigurationError

logger = logging.getLogger('pipeline.providers')


@dataclass
class LeadRecord:
    """Detached view of a lead — safe to hand across worker threads."""
    id: str
    address: str
    owner_name: str = ''
    city: str = ''
    state: str = ''
    zip_code: str = ''
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass
class Phone:
    number: str
    type: str = 'unknown'
    confidence: int = 0
    is_dnc: bool = False
    is_litigator: bool = False


@dataclass
class Email:
    address: str
    confidence: int = 0


@dataclass
class LookupResult:
    """Uniform output from every provider adapter."""
    phones: List[Phone] = field(default_factory=list)
    emails: List[Email] = field(default_factory=list)
    cost_cents: int = 0
    meta: Dict[str, Any] = field(default_factory=dict)

    def phone_dicts(self) -> List[Dict[str, Any]]:
        return [asdict(p) for p in self.phones]

    def email_dicts(self) -> List[Dict[str, Any]]:
        return [asdict(e) for e in self.emails]


class ProviderAdapter(ABC):
    """
    Base class for all contact provider adapters.

    One adapter instance is built per chain slot from that slot's config
    (endpoint, api key, cost, timeout, retries). lookup() either returns a
    LookupResult or raises ProviderFailure; it never returns None.
    """
    name: str = ''
    description: str = ''

    # Statuses worth retrying within a single invocation
    RETRY_STATUSES = (429, 500, 502, 503, 504)

    def __init__(self, slot: str, settings: Dict[str, Any] = None, session=None, sleep=time.sleep):
        settings = settings or {}
        self.slot = slot
        self.endpoint = settings.get('endpoint')
        self.api_key = settings.get('api_key')
        self.cost_cents = int(settings.get('cost_cents', 0))
        self.timeout = float(settings.get('timeout', 15))
        self.max_retries = int(settings.get('max_retries', 2))
        self.retry_backoff = float(settings.get('retry_backoff', 2.0))
        self.http = session or requests.Session()
        self._sleep = sleep

    @abstractmethod
    def lookup(self, lead: LeadRecord) -> LookupResult:
        """
        Resolve contacts for a lead.

        Returns:
            LookupResult with normalized phones/emails and the billed cost.

        Raises:
            ProviderFailure on timeout, transport error, non-2xx or a payload
            that cannot be interpreted.
        """
        ...

    def estimate_cost(self) -> int:
        """Cents billed for one successful lookup."""
        return self.cost_cents

    # ── HTTP helper ───────────────────────────────────────────────────

    def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """Issue an HTTP call with per-provider timeout and bounded retry.

        Retries transport errors, 429 and 5xx with exponential backoff
        (retry_backoff * 2^attempt seconds). Returns the decoded JSON body.
        """
        attempt = 0
        while True:
            try:
                response = self.http.request(method, url, timeout=self.timeout, **kwargs)
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                failure = ProviderFailure(self.name, f'transport error: {e}', retryable=True)
            else:
                if response.status_code in self.RETRY_STATUSES:
                    failure = ProviderFailure(
                        self.name, f'HTTP {response.status_code}',
                        status_code=response.status_code, retryable=True,
                    )
                elif response.status_code >= 400:
                    raise ProviderFailure(
                        self.name, f'HTTP {response.status_code}',
                        status_code=response.status_code,
                    )
                else:
                    try:
                        return response.json()
                    except ValueError:
                        raise ProviderFailure(self.name, 'malformed payload: response is not JSON')

            if attempt >= self.max_retries:
                raise failure
            delay = self.retry_backoff * (2 ** attempt)
            attempt += 1
            logger.info("%s attempt %d failed (%s), retrying in %.1fs", self.name, attempt, failure, delay)
            self._sleep(delay)


# ── Adapter registry ──────────────────────────────────────────────────────────
# providers.ADAPTERS maps adapter name → class, e.g.:
#   ADAPTERS = {'batchdata': BatchDataAdapter, 'whitepages': WhitePagesAdapter, ...}
#
# The chain config names an adapter per slot; build_chain() instantiates them.


def get_adapter(adapters: Dict[str, Type[ProviderAdapter]], name: str,
                slot: str, settings: Dict[str, Any] = None) -> ProviderAdapter:
    """Look up and instantiate the adapter registered under `name`."""
    adapter_cls = adapters.get(name)
    if not adapter_cls:
        raise ConfigurationError(
            f"No provider adapter registered as '{name}' (slot '{slot}'). "
            f"Available: {sorted(adapters)}"
        )
    return adapter_cls(slot, settings)
