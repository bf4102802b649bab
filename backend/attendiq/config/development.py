"""Development configuration."""
import os

from .base import Config

class DevelopmentConfig(Config):
    """Development configuration class."""

    DEBUG = True
    TESTING = False

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv('DEV_DATABASE_URL') or \
        'sqlite:///attendiq_dev.db'
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO') == '1'

    LOG_LEVEL = 'DEBUG'
