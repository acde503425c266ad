import logging
import os
import sys
from datetime import datetime
from typing import TextIO

# Changed by the CLI (--debug); loggers already handed out follow it
_default_level: int = logging.WARNING

_RESET = '\033[0m'
_LEVEL_COLORS = {
    'DEBUG': '\033[90m',
    'INFO': '\033[92m',
    'WARNING': '\033[93m',
    'ERROR': '\033[91m',
    'CRITICAL': '\033[1;91m',
}
_TIME_COLOR = '\033[94m'
_THREAD_COLOR = '\033[36m'


def _wants_color(stream: TextIO) -> bool:
    if os.environ.get('NO_COLOR'):
        return False
    isatty = getattr(stream, 'isatty', None)
    return bool(isatty and isatty())


class ColoredFormatter(logging.Formatter):
    """
    One line per record: ``[time] [component] [LEVEL] (worker) message``.

    Records from scheduler pool threads carry the worker name so lines from
    concurrently running job instances can be told apart. Colors are only
    used when the target stream is a terminal and NO_COLOR is unset.
    """

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def _paint(self, text: str, code: str) -> str:
        return f'{code}{text}{_RESET}' if self.color else text

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        component = record.name.rsplit('.', 1)[-1]

        parts = [
            self._paint(f'[{time_str}]', _TIME_COLOR),
            f'[{component}]'.ljust(13),
            self._paint(f'[{record.levelname}]'.ljust(10), _LEVEL_COLORS.get(record.levelname, '')),
        ]
        # pool threads are named matrixci_0, matrixci_1, ...
        if record.threadName and record.threadName.startswith('matrixci'):
            parts.append(self._paint(f'({record.threadName})', _THREAD_COLOR))
        parts.append(record.getMessage())

        formatted = ' '.join(parts)
        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)
        return formatted


def set_default_level(level: int) -> None:
    """Set the level for new loggers and for those already handed out."""
    global _default_level
    _default_level = level
    for name, logger in logging.Logger.manager.loggerDict.items():
        if name.startswith('matrixci.') and isinstance(logger, logging.Logger):
            logger.setLevel(level)
            for handler in logger.handlers:
                handler.setLevel(level)


def get_logger(component_name: str) -> logging.Logger:
    """Get a ``matrixci.<component>`` logger writing to stderr (stdout is the console's)."""
    logger = logging.getLogger(f'matrixci.{component_name}')

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(ColoredFormatter(color=_wants_color(sys.stderr)))
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)
        logger.propagate = False

    return logger
