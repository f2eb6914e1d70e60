# Copyright (c) 2024, Emmanuel Blot <emmanuel.blot@free.fr>
# All rights reserved.
#
# SPDX-License-Identifier: BSD-3-Clause

"""pyserial backend for the ``ftuart://`` URL scheme."""

#pylint: disable-msg=attribute-defined-outside-init
#pylint: disable-msg=invalid-name

from io import RawIOBase
from typing import Optional
from serial import SerialBase, SerialException
from serial.serialutil import Timeout
from ..channels import UartReader, UartWriter
from ..ftdi import FtdiUart
from ..usbtools import UsbTools, UsbToolsError


class FtUartSerial(SerialBase):
    """Base class for Serial port implementation compatible with pyserial API
       using a FTDI USB-UART device.
    """

    BAUDRATES = sorted([9600 * (x+1) for x in range(6)] +
                       list(range(115200, 1000000, 115200)) +
                       list(range(1000000, 13000000, 100000)))

    udev: Optional[FtdiUart] = None
    _reader: Optional[UartReader] = None
    _writer: Optional[UartWriter] = None

    def open(self):
        """Open the initialized serial port"""
        if self._port is None:
            raise SerialException("Port must be configured before use.")
        if self.is_open:
            raise SerialException("Port is already open.")
        try:
            handle = UsbTools.open_handle(self.portstr)
        except (UsbToolsError, IOError) as exc:
            raise SerialException(f'Unable to open USB port '
                                  f'{self.portstr}: {exc}') from exc
        self.udev = FtdiUart(handle)
        try:
            self._reconfigure_port()
        except SerialException:
            self.udev = None
            raise
        self.is_open = True

    def close(self):
        """Close the open port"""
        self.is_open = False
        if self.udev:
            self.udev.close()
            self.udev = None
        self._reader = None
        self._writer = None

    def read(self, size=1):
        """Read size bytes from the serial port. If a timeout is set it may
           return less characters as requested. With no timeout it will block
           until the requested number of bytes is read."""
        if not self.is_open:
            raise SerialException('Port not open')
        data = bytearray()
        timeout = Timeout(self._timeout)
        while len(data) < size:
            self._reader.timeout = timeout.time_left()
            buf = self._reader.read(size - len(data))
            if buf is None:
                break
            if not buf:
                if data:
                    break
                raise SerialException('Device disconnected')
            data.extend(buf)
            if timeout.expired():
                break
        return bytes(data)

    def write(self, data):
        """Output the given string over the serial port."""
        if not self.is_open:
            raise SerialException('Port not open')
        data = bytes(data)
        try:
            count = self._writer.write(data)
        except (IOError, ValueError) as exc:
            raise SerialException(f'Write failed: {exc}') from exc
        if data and not count:
            raise SerialException('Write failed, device may be gone')
        return count

    def flush(self):
        """Flush of file like objects. Each write is a complete USB
           transfer, there is nothing to wait for."""

    def reset_input_buffer(self):
        """Clear input buffer, discarding all that is in the buffer."""
        if self._reader:
            self._reader.purge()

    def reset_output_buffer(self):
        """Clear output buffer. There is no output buffer."""

    def _update_break_state(self):
        """Send break condition. Not supported"""
        raise SerialException('Break condition is not supported')

    def _update_rts_state(self):
        """Set terminal status line: Request To Send"""
        self._set_signals(rts=self._rts_state)

    def _update_dtr_state(self):
        """Set terminal status line: Data Terminal Ready"""
        self._set_signals(dtr=self._dtr_state)

    @property
    def ftuart(self) -> FtdiUart:
        """Return the UART driver instance.

           :return: the FtdiUart instance
        """
        return self.udev

    @property
    def cts(self):
        """Read terminal status line: Clear To Send"""
        return 'cts' in self._modem_status()

    @property
    def dsr(self):
        """Read terminal status line: Data Set Ready"""
        return 'dsr' in self._modem_status()

    @property
    def ri(self):
        """Read terminal status line: Ring Indicator"""
        return 'ri' in self._modem_status()

    @property
    def cd(self):
        """Read terminal status line: Carrier Detect"""
        return 'dcd' in self._modem_status()

    @property
    def in_waiting(self):
        """Return the number of characters currently in the input buffer."""
        return self._reader.in_waiting if self._reader else 0

    @property
    def out_waiting(self):
        """Return the number of bytes currently in the output buffer."""
        return 0

    def _modem_status(self):
        if not self.udev:
            raise SerialException('Port not open')
        return self.udev.modem_status

    def _set_signals(self, **signals):
        if not self.udev or not self.udev.is_active:
            # applied once the port is open
            return
        try:
            self.udev.set_signals(**signals)
        except IOError as exc:
            raise SerialException(str(exc)) from exc

    def _reconfigure_port(self):
        # line settings can only be changed with a new driver session
        if self._rtscts or self._xonxoff or self._dsrdtr:
            raise SerialException('Flow control is not supported')
        try:
            lineopts = self.udev.line_options.merge(
                baudrate=self._baudrate, bytesize=self._bytesize,
                parity=self._parity, stopbits=self._stopbits)
            if self.udev.is_active:
                if lineopts == self.udev.line_options:
                    # e.g. timeout change
                    return
                self.udev.close()
            self.udev.open(**lineopts._asdict())
        except (IOError, ValueError) as exc:
            raise SerialException(f'Cannot configure port: {exc}') from exc
        self._reader = self.udev.readable
        self._writer = self.udev.writable
        self._set_signals(dtr=self._dtr_state, rts=self._rts_state)


# assemble Serial class with the base for file-like behavior.
class Serial(FtUartSerial, RawIOBase):

    BACKEND = 'pyftuart'

    def __init__(self, *args, **kwargs):
        RawIOBase.__init__(self)
        FtUartSerial.__init__(self, *args, **kwargs)
