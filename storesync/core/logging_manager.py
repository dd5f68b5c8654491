"""
Logging setup for the StoreSync engine
Console and rotating file handlers with secret masking
"""

import json
import logging
import logging.handlers
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any


class SecuritySafeFormatter(logging.Formatter):
    """Formatter that masks credentials, tokens and signatures"""

    sensitive_fields = (
        'password', 'secret', 'token', 'api_key', 'authorization', 'consumer_key',
        'consumer_secret', 'signature', 'private_key', 'cookie'
    )

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._patterns = [
            re.compile(rf'({field}["\']?\s*[:=]\s*["\']?)([^"\'\s,}}]+)', re.IGNORECASE)
            for field in self.sensitive_fields
        ]
        self._bearer = re.compile(r'(Bearer\s+)[A-Za-z0-9\-._~+/]+=*', re.IGNORECASE)

    def format(self, record):
        record.msg = self._sanitize_message(record.getMessage())
        record.args = None
        return super().format(record)

    def _sanitize_message(self, message: str) -> str:
        message = self._bearer.sub(r'\1***', message)
        lowered = message.lower()
        for field, pattern in zip(self.sensitive_fields, self._patterns):
            if field in lowered:
                message = pattern.sub(r'\1***', message)
        return message


class JSONFormatter(SecuritySafeFormatter):
    """One JSON object per line"""

    def format(self, record):
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'component': record.name,
            'message': self._sanitize_message(record.getMessage())
        }
        if record.exc_info:
            log_data['stack_trace'] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


class LoggingManager:
    """Installs handlers on the root logger once"""

    def __init__(self):
        self.configured = False
        self.handlers = []

    def configure(self, config: Dict[str, Any]):
        if self.configured:
            return

        level = getattr(logging, str(config.get('level', 'INFO')).upper(), logging.INFO)
        root_logger = logging.getLogger()
        root_logger.setLevel(level)

        if config.get('console_enabled', True):
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(level)
            if config.get('json', False):
                console_handler.setFormatter(JSONFormatter())
            else:
                console_handler.setFormatter(SecuritySafeFormatter(
                    config.get('format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s')
                ))
            root_logger.addHandler(console_handler)
            self.handlers.append(console_handler)

        if config.get('file_enabled', False):
            file_path = Path(config.get('file_path', 'logs/storesync.log'))
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                filename=str(file_path),
                maxBytes=int(config.get('file_max_size', 10 * 1024 * 1024)),
                backupCount=int(config.get('file_backup_count', 5)),
                encoding='utf-8'
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(JSONFormatter())
            root_logger.addHandler(file_handler)
            self.handlers.append(file_handler)

        # Chatty client libraries
        logging.getLogger('httpx').setLevel(max(level, logging.WARNING))
        logging.getLogger('apscheduler').setLevel(max(level, logging.WARNING))

        self.configured = True
        logging.getLogger(__name__).info("Logging system configured successfully")

    def shutdown(self):
        root_logger = logging.getLogger()
        for handler in self.handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self.handlers.clear()
        self.configured = False


# Global logging manager
logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]):
    """Configure logging from the 'logging' config section"""
    logging_manager.configure(config or {})
