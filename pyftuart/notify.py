# Copyright (c) 2024, Emmanuel Blot <emmanuel.blot@free.fr>
# All rights reserved.
#
# SPDX-License-Identifier: BSD-3-Clause

"""Single-fire notifications shared between the driver and its poller."""

from logging import getLogger
from threading import Event, Lock
from typing import Any, Callable, List, Optional


class OneShotSignal:
    """A notification that fires at most once.

       The first call to :py:meth:`fire` records an optional value, wakes up
       any waiter and runs the registered callbacks. Subsequent calls are
       ignored, so that a notification emitted from several places is still
       observed a single time.

       :param name: name of the signal, for logging
    """

    def __init__(self, name: str):
        self.log = getLogger('pyftuart.notify')
        self._name = name
        self._event = Event()
        self._lock = Lock()
        self._value: Any = None
        self._callbacks: List[Callable[[Any], None]] = []

    def __repr__(self) -> str:
        state = 'fired' if self.is_set else 'pending'
        return f'<{self.__class__.__name__} {self._name} {state}>'

    @property
    def name(self) -> str:
        """Return the signal name."""
        return self._name

    @property
    def is_set(self) -> bool:
        """Tell whether the signal has already fired."""
        return self._event.is_set()

    @property
    def value(self) -> Any:
        """Return the value the signal fired with, if any."""
        return self._value

    def fire(self, value: Any = None) -> bool:
        """Fire the signal.

           :param value: optional payload delivered to waiters and callbacks
           :return: True if this call fired the signal, False if it had
                    already fired
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._value = value
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        self.log.debug('%s fired', self._name)
        for callback in callbacks:
            callback(value)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for the signal to fire.

           :param timeout: maximum time to wait, in seconds, or None to wait
                           forever
           :return: True if the signal has fired
        """
        return self._event.wait(timeout)

    def add_callback(self, callback: Callable[[Any], None]) -> None:
        """Register a callable to be invoked once the signal fires.

           The callback is invoked immediately, from the calling thread, if
           the signal has already fired. Otherwise it is invoked from the
           thread that fires the signal.

           :param callback: callable receiving the signal value
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback(self._value)
