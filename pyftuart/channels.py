# Copyright (c) 2024, Emmanuel Blot <emmanuel.blot@free.fr>
# All rights reserved.
#
# SPDX-License-Identifier: BSD-3-Clause

"""Consumer-facing byte channels of the UART driver."""

#pylint: disable-msg=too-few-public-methods

from collections import deque
from enum import Enum, unique
from io import RawIOBase
from threading import Condition, Lock
from typing import Callable, Deque, Optional, Union


@unique
class ChannelState(Enum):
    """Life cycle of a channel slot."""

    ABSENT = 'absent'
    ACTIVE = 'active'
    CONSUMER_CLOSED = 'consumer-closed'


class UartReader(RawIOBase):
    """Readable byte channel, fed by the inbound poller.

       Received chunks are stored in a bounded FIFO. When the FIFO is full,
       new chunks are rejected and the producer is told so, it is up to the
       producer to decide what to do with the rejected data.

       Reading blocks up to :py:attr:`timeout` seconds (forever if None);
       ``None`` is returned on timeout, an empty read signals that the
       driver has been closed and all received data have been consumed.

       :param on_close: invoked with the channel once the consumer closes it
       :param capacity: maximum count of buffered bytes
    """

    DEFAULT_CAPACITY = 64 << 10  # 64 KiB

    def __init__(self, on_close: Optional[Callable[['UartReader'], None]],
                 capacity: int = DEFAULT_CAPACITY):
        super().__init__()
        self._on_close = on_close
        self._capacity = capacity
        self._cond = Condition()
        self._chunks: Deque[bytes] = deque()
        self._size = 0
        self._ended = False
        self.timeout: Optional[float] = None

    def readable(self) -> bool:
        return True

    @property
    def in_waiting(self) -> int:
        """Return the count of buffered bytes."""
        with self._cond:
            return self._size

    @property
    def at_eof(self) -> bool:
        """Tell whether no more data can be read from this channel."""
        with self._cond:
            return self._ended and not self._size

    def feed(self, data: Union[bytes, bytearray]) -> bool:
        """Push received data into the channel.

           :param data: the payload to deliver
           :return: False if the data could not be enqueued, i.e. whenever
                    the channel is full or no longer active
        """
        with self._cond:
            if self._ended or self.closed:
                return False
            if self._size + len(data) > self._capacity:
                return False
            self._chunks.append(bytes(data))
            self._size += len(data)
            self._cond.notify_all()
        return True

    def end(self) -> None:
        """Tell the consumer no more data is coming."""
        with self._cond:
            self._ended = True
            self._cond.notify_all()

    def purge(self) -> int:
        """Discard all buffered data.

           :return: the count of discarded bytes
        """
        with self._cond:
            count = self._size
            self._chunks.clear()
            self._size = 0
        return count

    def readinto(self, buffer) -> Optional[int]:
        if self.closed:
            raise ValueError('I/O operation on closed channel')
        view = memoryview(buffer).cast('B')
        size = len(view)
        with self._cond:
            if not self._cond.wait_for(lambda: self._chunks or self._ended,
                                       self.timeout):
                return None
            count = 0
            while self._chunks and count < size:
                chunk = self._chunks[0]
                length = min(len(chunk), size - count)
                view[count:count+length] = chunk[:length]
                if length < len(chunk):
                    self._chunks[0] = chunk[length:]
                else:
                    self._chunks.popleft()
                count += length
            self._size -= count
        return count

    def close(self) -> None:
        if self.closed:
            return
        self.end()
        super().close()
        if self._on_close:
            self._on_close(self)


class UartWriter(RawIOBase):
    """Writable byte channel, forwarding each write to the outbound sender.

       :param send: callable emitting one bulk transfer, returning the count
                    of written bytes
       :param on_close: invoked with the channel once the consumer closes it
    """

    def __init__(self, send: Callable[[bytes], int],
                 on_close: Optional[Callable[['UartWriter'], None]]):
        super().__init__()
        self._send = send
        self._on_close = on_close

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        if self.closed:
            raise ValueError('I/O operation on closed channel')
        return self._send(bytes(data))

    def close(self) -> None:
        if self.closed:
            return
        super().close()
        if self._on_close:
            self._on_close(self)

    def detach_driver(self) -> None:
        """Close the channel on behalf of the driver."""
        self._on_close = None
        self.close()


class ChannelSlot:
    """Hold the single channel of one direction for a driver instance.

       The channel is lazily built on first access. Once its consumer closes
       it, the slot moves to the CONSUMER_CLOSED state, and a new channel is
       built on the next access as long as the driver is still active.

       :param name: slot name, for logging
       :param factory: builds a new channel, given the close notifier
    """

    def __init__(self, name: str,
                 factory: Callable[[Callable[[RawIOBase], None]],
                                   RawIOBase]):
        self._name = name
        self._factory = factory
        self._lock = Lock()
        self._state = ChannelState.ABSENT
        self._channel: Optional[RawIOBase] = None

    @property
    def state(self) -> ChannelState:
        """Return the current slot state."""
        return self._state

    @property
    def channel(self) -> Optional[RawIOBase]:
        """Return the live channel, if any, without creating one."""
        with self._lock:
            return self._channel if self._state == ChannelState.ACTIVE \
                else None

    def acquire(self) -> RawIOBase:
        """Return the live channel, creating one if needed."""
        with self._lock:
            if self._state == ChannelState.CONSUMER_CLOSED:
                self._state = ChannelState.ABSENT
            if self._state == ChannelState.ABSENT:
                self._channel = self._factory(self._consumer_closed)
                self._state = ChannelState.ACTIVE
            return self._channel

    def invalidate(self) -> Optional[RawIOBase]:
        """Drop the channel, as the driver is no longer active.

           :return: the dropped channel, if any
        """
        with self._lock:
            channel = self._channel
            self._channel = None
            self._state = ChannelState.ABSENT
        return channel

    def _consumer_closed(self, channel: RawIOBase) -> None:
        with self._lock:
            if channel is not self._channel:
                return
            self._channel = None
            self._state = ChannelState.CONSUMER_CLOSED
