# Copyright (c) 2024, Emmanuel Blot <emmanuel.blot@free.fr>
# All rights reserved.
#
# SPDX-License-Identifier: BSD-3-Clause

"""Logging helpers."""

import logging
from os import environ, isatty
from sys import stderr
from typing import List, Tuple, Union


class ColorLogFormatter(logging.Formatter):
    """Log formatter for ANSI terminals, with colorized log levels.

       Optional features:
         * 'time' (boolean): prefix messages with HH:MM:SS time
         * 'ms' (boolean): prefix messages with HH:MM:SS.msec time
         * 'lineno'(boolean): show line numbers
         * 'name_width' (int): padding width for logger names
         * 'color' (boolean): colorize log levels, default to a TTY check
    """

    GREY = "\x1b[38;20m"
    YELLOW = "\x1b[33;1m"
    RED = "\x1b[31;1m"
    MAGENTA = "\x1b[35;1m"
    WHITE = "\x1b[37;1m"
    RESET = "\x1b[0m"
    FMT_LEVEL = '%(levelname)8s'

    COLORS = {
        logging.DEBUG: GREY,
        logging.INFO: WHITE,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: MAGENTA,
    }

    def __init__(self, *args, **kwargs):
        kwargs = dict(kwargs)
        name_width = kwargs.pop('name_width', 16)
        color = kwargs.pop('color', None)
        if color is None:
            try:
                color = isatty(stderr.fileno())
            except (AttributeError, ValueError, OSError):
                # stderr may be replaced with a non-file stream
                color = False
        self._use_ansi = color
        use_ms = kwargs.pop('ms', False)
        use_time = kwargs.pop('time', use_ms)
        use_lineno = kwargs.pop('lineno', False)
        super().__init__(*args, **kwargs)
        trail = f' %(name)-{name_width}s %(message)s'
        if use_time:
            tfmt = '%(asctime)s.%(msecs)03d ' if use_ms else '%(asctime)s '
        else:
            tfmt = ''
        lno = ' [%(lineno)4d]' if use_lineno else ''
        self._plain = logging.Formatter(f'{tfmt}{self.FMT_LEVEL}{lno}{trail}',
                                        '%H:%M:%S')
        self._colored = {
            lvl: logging.Formatter(
                f'{tfmt}{clr}{self.FMT_LEVEL}{self.RESET}{lno}{trail}',
                '%H:%M:%S')
            for lvl, clr in self.COLORS.items()
        }

    def format(self, record: logging.LogRecord) -> str:
        formatter = self._colored.get(record.levelno, self._plain) \
            if self._use_ansi else self._plain
        return formatter.format(record)


def configure_loggers(level: int, *lognames: Union[str, int], **kwargs) \
        -> List[logging.Logger]:
    """Configure loggers with a shared stderr handler.

       :param level: verbosity, each step increases verbosity by one level,
                     starting from ERROR
       :param lognames: one or more loggers to configure, an integer value
                        shifts the verbosity of the following loggers
       :param kwargs: optional :py:class:`ColorLogFormatter` features
       :return: configured loggers
    """
    loglevel = logging.ERROR - (10 * (level or 0))
    loglevel = min(logging.ERROR, loglevel)
    formatter = ColorLogFormatter(**kwargs)
    logh = logging.StreamHandler(stderr)
    logh.setFormatter(formatter)
    loggers: List[logging.Logger] = []
    logdefs: List[Tuple[List[str], logging.Logger]] = []
    for logdef in lognames:
        if isinstance(logdef, int):
            loglevel += -10 * logdef
            continue
        log = logging.getLogger(logdef)
        log.setLevel(max(logging.DEBUG, loglevel))
        loggers.append(log)
        logdefs.append((logdef.split('.'), log))
    logdefs.sort(key=lambda p: len(p[0]))
    # only one handler per logger subtree
    for _, log in logdefs:
        if not log.hasHandlers():
            log.addHandler(logh)
    return loggers


def configure_test_loggers(*lognames: str, **kwargs) -> List[logging.Logger]:
    """Configure loggers for unit tests.

       Use `FTUART_LOGLEVEL` environment variable to select the log level,
       e.g. ``FTUART_LOGLEVEL=debug``.
    """
    level = environ.get('FTUART_LOGLEVEL', 'warning').upper()
    try:
        loglevel = getattr(logging, level)
    except AttributeError as exc:
        raise ValueError(f'Invalid log level: {level}') from exc
    if not isinstance(loglevel, int):
        raise ValueError(f'Invalid log level: {level}')
    loggers = configure_loggers(0, *(lognames or ('pyftuart', )), **kwargs)
    for log in loggers:
        log.setLevel(loglevel)
    return loggers
