import logging
import os
from logging.handlers import RotatingFileHandler

LOG_FILE_NAME = 'tunnelwatch.log'
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(threadName)s - %(name)s:%(lineno)d - %(message)s'
DEFAULT_LOG_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'logs')


class Logger:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(Logger, cls).__new__(cls)
            cls._instance._setup_logger()
        return cls._instance

    def _setup_logger(self):
        self.logger = logging.getLogger('TunnelWatch')
        self.file_handler = None
        self.log_file = None
        self.configure(
            level=os.environ.get('TUNNELWATCH_LOG_LEVEL', 'INFO'),
            log_dir=os.environ.get('TUNNELWATCH_LOG_DIR', DEFAULT_LOG_DIR),
        )

    def configure(self, level=None, log_dir=None):
        """
        Change the level and/or the directory the rotating log file lives in.

        Raises:
            ValueError: unknown level name
        """
        if level:
            self.logger.setLevel(level.upper())
        if not log_dir:
            return

        os.makedirs(log_dir, exist_ok=True)
        log_file = os.path.join(log_dir, LOG_FILE_NAME)
        if log_file == self.log_file:
            return
        # 5 MB per file, 3 backups
        handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        if self.file_handler is not None:
            self.logger.removeHandler(self.file_handler)
            self.file_handler.close()
        self.logger.addHandler(handler)
        self.file_handler = handler
        self.log_file = log_file

    def get_logger(self):
        return self.logger


logger = Logger().get_logger()
