import logging
import sys

from colorama import init, Fore, Style
from benefits_worker.config import config


# Библиотеки, которые слишком шумят на INFO
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


class BaseLogger:
    """ Общая логика для обоих вариантов логгера """

    def setup_logger(self, name: str, level: str | int = config.log_level):
        raise NotImplementedError

    @staticmethod
    def convert_level(level: str | int):
        """Возвращает числовое значение"""
        if isinstance(level, str):
            level = level.strip().upper() # Форматирую dEbUG -> DEBUG
        return logging.getLevelName(level)

    @staticmethod
    def silence_noisy_loggers(level: str | int = logging.WARNING):
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(level)


class RootLogger(BaseLogger):
    """Простой логгер, работающий с корневым регистром"""

    def __init__(self):
        logging.basicConfig(
            level=self.convert_level(config.log_level),
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            handlers=[
                logging.StreamHandler()
            ]
        )
        self.root_logger = logging.getLogger()

    def setup_logger(self, name: str, level: str | int = config.log_level):
        """Добавляет логгер с указанным именем и уровнем"""
        logger = logging.getLogger(name)
        logger.setLevel(self.convert_level(level))
        return logger


class CustomLogger(BaseLogger):
    """ Логгер с цветным выводом уровней """

    init()      # colorama: кроссплатформенная поддержка цветов

    NAME_WIDTH = 20

    class ColorFormatter(logging.Formatter):
        """Форматтер, раскрашивающий только уровень логирования"""
        LEVEL_COLORS = {
            "DEBUG": Fore.CYAN,
            "INFO": Fore.GREEN,
            "WARNING": Fore.YELLOW,
            "ERROR": Fore.RED,
            "CRITICAL": Fore.RED + Style.BRIGHT,
        }

        # По самому длинному слову "CRITICAL"
        LEVEL_WIDTH = 8

        def __init__(self, name_width: int, datefmt=None):
            self.name_width = name_width
            super().__init__(
                "%(asctime)s - %(levelname)s - %(name)s - %(message)s", datefmt
            )

        def format(self, record):
            original_levelname = record.levelname
            original_name = record.name

            record.levelname = (
                self.LEVEL_COLORS.get(original_levelname, "")
                + original_levelname.ljust(self.LEVEL_WIDTH)
                + Style.RESET_ALL
            )

            name = original_name
            if len(name) > self.name_width:
                name = name[: self.name_width - 3] + "..."
            record.name = name.center(self.name_width)

            try:
                return super().format(record)
            finally:
                record.levelname = original_levelname
                record.name = original_name

    def setup_logger(self, name=None, level: str | int = config.log_level):
        """Настройка логгера с цветным выводом только уровней"""
        logger = logging.getLogger(name)
        logger.setLevel(self.convert_level(level))

        # Повторный вызов не должен плодить обработчики
        logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.convert_level(level))
        console_handler.setFormatter(
            self.ColorFormatter(self.NAME_WIDTH, datefmt="%Y-%m-%d %H:%M:%S")
        )
        logger.addHandler(console_handler)

        return logger


opt_logger = RootLogger() if config.debug else CustomLogger()
opt_logger.silence_noisy_loggers()
