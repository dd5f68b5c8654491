"""
Tests for log formatting and secret masking
"""

import json
import logging

from storesync.core.logging_manager import SecuritySafeFormatter, JSONFormatter, LoggingManager


def make_record(message, *args, level=logging.INFO):
    return logging.LogRecord('storesync.test', level, __file__, 1, message, args, None)


def test_masks_key_value_secrets():
    formatter = SecuritySafeFormatter('%(message)s')

    output = formatter.format(make_record("connecting with password=hunter2 and consumer_secret: cs_live_1"))

    assert 'hunter2' not in output
    assert 'cs_live_1' not in output
    assert 'password=***' in output


def test_masks_bearer_tokens():
    formatter = SecuritySafeFormatter('%(message)s')

    output = formatter.format(make_record("GET /v3/company Authorization: Bearer eyJhbGciOi.abc-123"))

    assert 'eyJhbGciOi' not in output


def test_message_args_are_interpolated_before_masking():
    formatter = SecuritySafeFormatter('%(message)s')
    output = formatter.format(make_record("refresh token=%s for %s", 'rt-secret', 'acme'))
    assert output == 'refresh token=*** for acme'


def test_plain_messages_untouched():
    formatter = SecuritySafeFormatter('%(levelname)s %(message)s')
    assert formatter.format(make_record("Queued 3 fetch items")) == 'INFO Queued 3 fetch items'


def test_json_formatter_emits_one_object():
    payload = json.loads(JSONFormatter().format(make_record("api_key=abc123 rejected", level=logging.WARNING)))

    assert payload['level'] == 'WARNING'
    assert payload['component'] == 'storesync.test'
    assert payload['message'] == 'api_key=*** rejected'


def test_configure_installs_handlers_once(tmp_path):
    manager = LoggingManager()
    config = {'level': 'debug', 'file_enabled': True, 'file_path': str(tmp_path / 'logs' / 'sync.log')}
    try:
        manager.configure(config)
        manager.configure(config)

        assert len(manager.handlers) == 2
        assert logging.getLogger().level == logging.DEBUG
        assert (tmp_path / 'logs').is_dir()
    finally:
        manager.shutdown()
    assert manager.handlers == []
