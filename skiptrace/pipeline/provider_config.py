"""
Provider chain configuration loader — slot order, endpoints, costs, timeouts.

YAML file with in-memory cache and hardcoded fallback if the file is missing.
Environment variables override secrets, endpoints and per-slot cost/timeout,
so swapping a provider or repricing one is a config change.
"""
import logging
import os
from typing import Any, Dict, List

import yaml

from skiptrace.config import PROVIDER_CHAIN

logger = logging.getLogger('pipeline.provider_config')


_provider_config = None


def _default_config():
    """Hardcoded fallback if YAML is missing."""
    return {
        'version': 'default',
        'chain': [
            {'slot': 'primary', 'adapter': 'batchdata',
             'endpoint': 'https://api.batchdata.com/api', 'endpoint_env': 'BATCHDATA_API_URL',
             'api_key_env': 'BATCHDATA_API_KEY', 'cost_cents': 25, 'timeout': 15, 'max_retries': 2},
            {'slot': 'secondary', 'adapter': 'whitepages',
             'endpoint': 'https://api.whitepages.com/3.3/person', 'endpoint_env': 'WHITEPAGES_API_URL',
             'api_key_env': 'WHITEPAGES_API_KEY', 'cost_cents': 30, 'timeout': 15, 'max_retries': 2},
            {'slot': 'free', 'adapter': 'public_records',
             'endpoint_env': 'PUBLIC_RECORDS_URL', 'cost_cents': 0, 'timeout': 10, 'max_retries': 1},
        ],
    }


def load_provider_config() -> dict:
    """Load provider config from YAML, with in-memory cache and hardcoded fallback."""
    global _provider_config
    if _provider_config is not None:
        return _provider_config

    config_path = os.getenv('PROVIDERS_CONFIG') or os.path.join(os.path.dirname(__file__), 'providers.yaml')
    try:
        with open(config_path, 'r') as f:
            _provider_config = yaml.safe_load(f)
        logger.info("Provider config loaded from YAML (version=%s)", _provider_config.get('version', '?'))
    except Exception as e:
        logger.warning("Provider YAML not found (%s), using defaults", e)
        _provider_config = _default_config()

    return _provider_config


def _resolve(entry: Dict[str, Any]) -> Dict[str, Any]:
    """Apply env overrides to one chain entry."""
    slot = entry['slot']
    prefix = slot.upper()
    resolved = dict(entry)
    if entry.get('endpoint_env') and os.getenv(entry['endpoint_env']):
        resolved['endpoint'] = os.getenv(entry['endpoint_env'])
    resolved['api_key'] = os.getenv(entry['api_key_env']) if entry.get('api_key_env') else None
    resolved['cost_cents'] = int(os.getenv(f'{prefix}_COST_CENTS', entry.get('cost_cents', 0)))
    resolved['timeout'] = float(os.getenv(f'{prefix}_TIMEOUT', entry.get('timeout', 15)))
    resolved['breaker'] = dict(entry.get('breaker') or {})
    return resolved


def get_chain_settings() -> List[Dict[str, Any]]:
    """Ordered, env-resolved chain entries.

    PROVIDER_CHAIN (comma list of slots) selects and reorders entries;
    unknown slots in it are ignored with a warning.
    """
    entries = load_provider_config().get('chain') or []
    by_slot = {e['slot']: e for e in entries}

    wanted = [s.strip() for s in (os.getenv('PROVIDER_CHAIN', PROVIDER_CHAIN) or '').split(',') if s.strip()]
    if wanted:
        for slot in wanted:
            if slot not in by_slot:
                logger.warning("PROVIDER_CHAIN names unknown slot '%s', ignoring", slot)
        entries = [by_slot[s] for s in wanted if s in by_slot]

    return [_resolve(e) for e in entries]


def reset_cache():
    """Reset the in-memory cache (useful for testing)."""
    global _provider_config
    _provider_config = None
