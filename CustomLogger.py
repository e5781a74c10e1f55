import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any

from config import LOG_DIR, LOG_LEVEL


class CustomLogger:
    TRACE_LEVEL_NUM = 5
    LOGGER_NAME = "node_gateway"

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    @staticmethod
    def register_trace_level() -> None:
        logging.addLevelName(CustomLogger.TRACE_LEVEL_NUM, "TRACE")

        def trace(self: logging.Logger, message: str, *args: Any, **kwargs: Any) -> None:
            if self.isEnabledFor(CustomLogger.TRACE_LEVEL_NUM):
                self._log(CustomLogger.TRACE_LEVEL_NUM, message, args, **kwargs)

        logging.Logger.trace = trace  # type: ignore[attr-defined]

    @staticmethod
    def create(log_dir: str = LOG_DIR, log_file: str = "node_gateway.log", level: str = LOG_LEVEL) -> "CustomLogger":
        CustomLogger.register_trace_level()

        os.makedirs(log_dir, exist_ok=True)
        logger = logging.getLogger(CustomLogger.LOGGER_NAME)
        logger.setLevel(logging.getLevelName(level.upper()) if level.upper() != "TRACE" else CustomLogger.TRACE_LEVEL_NUM)

        if not logger.handlers:
            log_path = os.path.join(log_dir, log_file)
            file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5)
            formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
            file_handler.setFormatter(formatter)

            stream_handler = logging.StreamHandler()
            stream_handler.setFormatter(formatter)

            logger.addHandler(file_handler)
            logger.addHandler(stream_handler)

        return CustomLogger(logger)

    def trace(self, message: str, *args: Any, **kwargs: Any) -> None:
        if self.logger.isEnabledFor(CustomLogger.TRACE_LEVEL_NUM):
            self.logger.log(CustomLogger.TRACE_LEVEL_NUM, message, *args, **kwargs)

    def debug(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.debug(message, *args, **kwargs)

    def info(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.info(message, *args, **kwargs)

    def warning(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.warning(message, *args, **kwargs)

    def error(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.error(message, *args, **kwargs)

    def critical(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.critical(message, *args, **kwargs)

    def exception(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.exception(message, *args, **kwargs)
