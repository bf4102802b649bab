"""Base configuration shared by every environment."""
import os
from datetime import timedelta

class Config:
    """Base configuration."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = False

    # JWT Configuration
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or 'jwt-secret-key-change-in-production'
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=2)
    JWT_ALGORITHM = 'HS256'

    # CORS
    CORS_ORIGINS = ["http://localhost:*", "https://*.vercel.app", "http://127.0.0.1:*"]

    # Rate Limiting
    RATELIMIT_STORAGE_URI = os.environ.get('REDIS_URL') or 'memory://'
    RATELIMIT_DEFAULT = "200 per day, 50 per hour"

    # Reverse proxy hops trusted for X-Forwarded-For (0 = none)
    PROXY_FIX_X_FOR = int(os.environ.get('PROXY_FIX_X_FOR', 0))

    # Notification queue (notices are dropped when REDIS_URL is unset)
    REDIS_URL = os.environ.get('REDIS_URL') or None
    NOTIFICATION_QUEUE_KEY = 'attendiq:notifications'

    # Logging
    LOG_LEVEL = 'INFO'
    LOG_FILE = 'logs/app.log'

    # Session timing
    INITIAL_PHASE_SECONDS = 60
    REVERIFY_PHASE_SECONDS = 240
    TOKEN_ROTATION_MS = 5000
    TOKEN_GRACE_MS = 1000

    # Reverification
    REVERIFY_SELECTION_RATE = 0.35
    REVERIFY_EXPECTED_RETRY_RATE = 0.35
    REVERIFY_SLOT_CAPACITY = 4
    REVERIFY_SLOT_LEAD_MS = 10000
    REVERIFY_MAX_ATTEMPTS = 3
    REVERIFY_MAX_RETRIES = 2

    # Scoring
    DEFAULT_CONFIDENCE_THRESHOLD = 70
    GPS_MAX_DISTANCE_FACTOR = 10  # reject marks beyond radius * factor

    # Anomaly detection
    ANOMALY_MIN_TIME_GAP_SECONDS = 60
    ANOMALY_HISTORY_SIZE = 10
    ANOMALY_JUMP_MIN_HISTORY = 3
    ANOMALY_JUMP_DISTANCE_METERS = 50000
