"""
Server and job configuration, read from the environment (.env supported).

See .env.template for all options.
"""

import os
import logging

import pytz
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def get_database_url():
    """Build database URL from environment variables."""
    url = os.getenv('DATABASE_URL')
    if url:
        return url

    host = os.getenv('DB_HOST', 'localhost')
    port = os.getenv('DB_PORT', '5432')
    name = os.getenv('DB_NAME', 'ms11_telemetry')
    user = os.getenv('DB_USER', 'ms11_user')
    password = os.getenv('DB_PASSWORD', 'ms11_user')

    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


def env_flag(name, default='false'):
    return os.getenv(name, default).lower() == 'true'


DATABASE_URL = get_database_url()
DB_POOL_MIN = int(os.getenv('DB_POOL_MIN_CONN', 2))
DB_POOL_MAX = int(os.getenv('DB_POOL_MAX_CONN', 10))

# Credential store: "key1=Device 1,key2=Device 2"
API_KEYS = os.getenv('API_KEYS', '')
API_KEY_REQUIRED = env_flag('API_KEY_REQUIRED', 'true')

# Optional key for the query and admin endpoints (empty = open)
READ_API_KEY = os.getenv('READ_API_KEY', '')

# Server config
PORT = int(os.getenv('PORT', 5000))
HOST = os.getenv('HOST', '0.0.0.0')
DEBUG = env_flag('DEBUG')

# Timezone devices report in
TIMEZONE = os.getenv('TIMEZONE', 'Europe/Amsterdam')
try:
    LOCAL_TZ = pytz.timezone(TIMEZONE)
except pytz.exceptions.UnknownTimeZoneError:
    LOCAL_TZ = pytz.UTC

# Data retention (in days, 0 = keep forever)
DATA_RETENTION_DAYS = int(os.getenv('DATA_RETENTION_DAYS', 90))

# Logging config
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FILE = os.getenv('LOG_FILE', '')
LOG_REQUESTS = env_flag('LOG_REQUESTS')

# CORS
CORS_ORIGINS = os.getenv('CORS_ORIGINS', '*')


def setup_logging():
    """Configure root logging once for the server and the jobs."""
    log_handlers = [logging.StreamHandler()]
    if LOG_FILE:
        log_handlers.append(logging.FileHandler(LOG_FILE))

    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=log_handlers
    )
