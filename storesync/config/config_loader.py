"""
Configuration loader for StoreSync
"""

import os
import re
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config/storesync.yaml'
WEBHOOK_SECRET_ENV = re.compile(r'^STORESYNC_WEBHOOK_SECRET_(?P<tenant>.+)_(?P<platform>WOOCOMMERCE|QUICKBOOKS)$')


def default_config() -> Dict[str, Any]:
    return {
        'database': {
            'url': 'sqlite+aiosqlite:///./data/storesync.db',
            'echo': False
        },
        'api': {
            'host': '0.0.0.0',
            'port': 8080,
            'api_key': 'development-key-change-in-production',
            'cors_origins': ['*']
        },
        'logging': {
            'level': 'INFO',
            'console_enabled': True,
            'file_enabled': False,
            'file_path': 'logs/storesync.log',
            'json': False
        },
        'queue': {
            'max_size': 100_000,
            'archive_after_days': 30
        },
        'processor': {
            'batch_size': 50,
            'max_items_per_drain': 5000,
            'poll_interval_seconds': 30,
            'max_pages_per_pull': 50,
            'workers_enabled': True
        },
        'backoff': {
            'base_delay_seconds': 1.0,
            'multiplier': 2.0,
            'max_delay_seconds': 300.0,
            'max_retries': 10,
            'jitter_factor': 0.1
        },
        'circuit_breaker': {
            'failure_threshold': 5,
            'reset_timeout_seconds': 60,
            'success_threshold': 3,
            'half_open_max_probes': 1,
            'reopen_on_half_open_failure': True
        },
        'rate_limits': {
            'default': {'requests_per_second': 2, 'burst': 5},
            'woocommerce': {'requests_per_second': 5, 'burst': 10},
            'quickbooks': {'requests_per_second': 8, 'burst': 10}
        },
        'sync': {
            'direction': 'bidirectional',
            'delete_policy': 'local_only',
            'conflict_strategies': {},
            'merge_fields': ['notes']
        },
        'webhooks': {
            'seen_ttl_seconds': 600,
            'seen_max_size': 10_000
        },
        'notifications': {
            'max_alerts': 500,
            'webhook': {
                'enabled': False,
                'url': '',
                'api_key': ''
            }
        },
        'scheduler': {
            'timezone': 'UTC',
            'schedules': []
        },
        'tenants': {}
    }


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from defaults, the YAML file and the environment"""

    # Load environment variables
    load_dotenv()

    config = default_config()

    yaml_path = Path(path or os.getenv('STORESYNC_CONFIG', DEFAULT_CONFIG_PATH))
    if yaml_path.exists():
        with open(yaml_path, 'r', encoding='utf-8') as f:
            yaml_config = yaml.safe_load(f)
        if yaml_config:
            _deep_update(config, yaml_config)
            tenants = list((yaml_config.get('tenants') or {}).keys())
            logger.info(f"Configuration loaded from {yaml_path} ({len(tenants)} tenants: {tenants})")
    else:
        logger.warning(f"Configuration file {yaml_path} not found, using defaults")

    apply_env_overrides(config, os.environ)
    return config


def apply_env_overrides(config: Dict[str, Any], environ) -> Dict[str, Any]:
    """Environment wins over YAML for secrets and deployment settings"""
    if environ.get('STORESYNC_API_KEY'):
        config['api']['api_key'] = environ['STORESYNC_API_KEY']

    if environ.get('DATABASE_URL'):
        config['database']['url'] = environ['DATABASE_URL']

    if environ.get('LOG_LEVEL'):
        config['logging']['level'] = environ['LOG_LEVEL'].upper()

    if environ.get('STORESYNC_ALERT_WEBHOOK_URL'):
        config['notifications']['webhook']['url'] = environ['STORESYNC_ALERT_WEBHOOK_URL']
        config['notifications']['webhook']['enabled'] = True

    if environ.get('STORESYNC_ALERT_WEBHOOK_API_KEY'):
        config['notifications']['webhook']['api_key'] = environ['STORESYNC_ALERT_WEBHOOK_API_KEY']

    # STORESYNC_WEBHOOK_SECRET_<TENANT>_<PLATFORM>
    tenants = config.setdefault('tenants', {})
    for name, value in environ.items():
        match = WEBHOOK_SECRET_ENV.match(name)
        if not match or not value:
            continue
        tenant = _find_tenant(tenants, match.group('tenant'))
        platform = match.group('platform').lower()
        tenant_config = tenants.setdefault(tenant, {})
        platforms = tenant_config.setdefault('platforms', {})
        platforms.setdefault(platform, {})['webhook_secret'] = value

    return config


def _find_tenant(tenants: Dict[str, Any], env_name: str) -> str:
    """Match an upper-cased env tenant name back to the configured tenant key"""
    for tenant in tenants:
        if tenant.upper().replace('-', '_') == env_name:
            return tenant
    return env_name.lower()


def _deep_update(base_dict: Dict[str, Any], update_dict: Dict[str, Any]) -> None:
    """Deep update nested dictionary"""
    for key, value in update_dict.items():
        if key in base_dict and isinstance(base_dict[key], dict) and isinstance(value, dict):
            _deep_update(base_dict[key], value)
        else:
            base_dict[key] = value
