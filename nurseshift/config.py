import logging
import os

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class Config:
    """Runtime settings, read from the environment when the app is created."""

    def __init__(self):
        self.SECRET_KEY = os.environ.get('SECRET_KEY', 'nurseshift-secret-key-change-in-production')
        self.SQLALCHEMY_DATABASE_URI = os.environ.get('NURSESHIFT_DATABASE_URL', 'sqlite:///nurseshift.db')
        self.SQLALCHEMY_TRACK_MODIFICATIONS = False

        # Generation runs stop (keeping what they already committed) after this many seconds
        self.GENERATION_TIMEOUT_SECONDS = float(os.environ.get('NURSESHIFT_GENERATION_TIMEOUT', 120))
        self.OPTIMIZER_MAX_SECONDS = float(os.environ.get('NURSESHIFT_OPTIMIZER_MAX_SECONDS', 10))
        self.ROSTER_LOCK_TIMEOUT_SECONDS = float(os.environ.get('NURSESHIFT_ROSTER_LOCK_TIMEOUT', 10))

        self.LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


def configure_logging(level='INFO'):
    logging.basicConfig(level=level, format=LOG_FORMAT)
