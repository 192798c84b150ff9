"""
Runtime Settings

Environment-driven configuration. Values are read from the process
environment after loading a local .env file.
"""

import os
import logging
from dataclasses import dataclass
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

DEFAULT_DATABASE_URL = 'sqlite:///regime_tracker.db'
DEFAULT_COINGLASS_URL = 'https://open-api-v4.coinglass.com/api'

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    coinglass_api_key: str = ''
    coinglass_base_url: str = DEFAULT_COINGLASS_URL
    sync_batch_size: int = 500
    sync_request_delay: float = 0.5
    sync_rate_limit_cooldown: float = 65.0
    sync_retry_delay: float = 5.0
    sync_max_consecutive_errors: int = 5
    sync_lease_seconds: int = 900
    log_level: str = 'INFO'


def load_settings() -> Settings:
    """Build Settings from environment variables"""
    return Settings(
        database_url=os.getenv('DATABASE_URL', DEFAULT_DATABASE_URL),
        coinglass_api_key=os.getenv('COINGLASS_API_KEY', ''),
        coinglass_base_url=os.getenv('COINGLASS_BASE_URL', DEFAULT_COINGLASS_URL),
        sync_batch_size=int(os.getenv('SYNC_BATCH_SIZE', '500')),
        sync_request_delay=float(os.getenv('SYNC_REQUEST_DELAY', '0.5')),
        sync_rate_limit_cooldown=float(os.getenv('SYNC_RATE_LIMIT_COOLDOWN', '65')),
        sync_retry_delay=float(os.getenv('SYNC_RETRY_DELAY', '5')),
        sync_max_consecutive_errors=int(os.getenv('SYNC_MAX_CONSECUTIVE_ERRORS', '5')),
        sync_lease_seconds=int(os.getenv('SYNC_LEASE_SECONDS', '900')),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    )


def configure_logging(level: str = None):
    """Configure root logging for command-line entry points"""
    if level is None:
        level = os.getenv('LOG_LEVEL', 'INFO').upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT
    )
