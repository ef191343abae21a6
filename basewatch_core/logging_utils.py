import json
import logging
import os
import sys
from datetime import datetime, timezone

DEFAULT_LOG_DIR = '/var/log/basewatch'
LOG_FILE_NAME = 'basewatch.log'


class JSONFormatter(logging.Formatter):
    def format(self, record):
        payload = {
            'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'msg': record.getMessage(),
            'logger': record.name,
        }
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload)


def _writable_log_dir(log_dir: str) -> str:
    for candidate in (log_dir, os.path.abspath('./logs'), '/tmp/basewatch'):
        try:
            os.makedirs(candidate, exist_ok=True)
            return candidate
        except OSError:
            continue
    raise OSError(f"No writable log directory, tried {log_dir}")


def setup_logging(name: str = 'basewatch') -> logging.Logger:
    """Configure root logging from LOG_LEVEL, LOG_DIR and LOG_FORMAT and return the agent logger."""
    log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_dir = _writable_log_dir(os.getenv('LOG_DIR', DEFAULT_LOG_DIR))

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        handlers=[
            logging.FileHandler(os.path.join(log_dir, LOG_FILE_NAME)),
            logging.StreamHandler(sys.stdout),
        ],
    )
    fmt = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    if os.getenv('LOG_FORMAT', 'plain').lower() == 'json':
        fmt = JSONFormatter()
    for h in logging.getLogger().handlers:
        h.setFormatter(fmt)
    return logging.getLogger(name)
