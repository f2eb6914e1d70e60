# Copyright (c) 2024, Emmanuel Blot <emmanuel.blot@free.fr>
# All rights reserved.
#
# SPDX-License-Identifier: BSD-3-Clause

"""FTDI USB-UART driver."""

from enum import Enum, unique
from logging import getLogger, DEBUG
from threading import RLock, Thread, current_thread
from typing import (Callable, Dict, NamedTuple, Optional, Tuple, Union)
from usb.core import Device as UsbDevice
from .baudrate import BaudrateEncoder, BaudrateError, DeviceCapability
from .channels import ChannelSlot, UartReader, UartWriter
from .misc import hexline
from .notify import OneShotSignal
from .usbtools import (UsbDeviceHandle, UsbEndpoint, UsbInterface,
                       UsbTools, UsbTransportError, as_handle)

#pylint: disable-msg=too-many-instance-attributes


class FtdiError(IOError):
    """Base class error for all FTDI device"""


class FtdiOpenError(FtdiError):
    """FTDI device cannot be opened or initialized"""


class FtdiPortNotOpenError(FtdiError):
    """FTDI port has not been open, no endpoint is available"""


@unique
class DriverState(Enum):
    """UART driver life cycle."""

    CLOSED = 'closed'
    OPENING = 'opening'
    ACTIVE = 'active'
    CLOSING = 'closing'


class LineOptions(NamedTuple):
    """UART line characteristics.

       Values use the pyserial vocabulary:

       * baudrate: the line speed, in bps
       * stopbits: ``1``, ``1.5`` or ``2``
       * parity: ``N``, ``O``, ``E``, ``M`` or ``S``
       * bytesize: the count of data bits, from ``5`` to ``8``
    """

    baudrate: int = 9600
    stopbits: Union[int, float] = 1
    parity: str = 'N'
    bytesize: int = 8

    def merge(self, **options) -> 'LineOptions':
        """Build new line options, overriding the current ones with the
           specified options. Options set to None are ignored.

           :return: the merged options
           :raise ValueError: if an option is unknown or invalid
        """
        unknown = set(options) - set(self._fields)
        if unknown:
            raise ValueError(f"Unknown line option(s): "
                             f"{', '.join(sorted(unknown))}")
        lineopts = self._replace(**{k: v for k, v in options.items()
                                    if v is not None})
        if not isinstance(lineopts.baudrate, int) or lineopts.baudrate <= 0:
            raise ValueError(f'Invalid baudrate: {lineopts.baudrate}')
        if lineopts.parity not in FtdiUart.PARITIES:
            raise ValueError(f'Unsupported parity: {lineopts.parity}')
        if lineopts.stopbits not in FtdiUart.STOPBITS:
            raise ValueError(f'Unsupported stop bits: {lineopts.stopbits}')
        if lineopts.bytesize not in FtdiUart.BYTESIZES:
            raise ValueError(f'Unsupported byte length: {lineopts.bytesize}')
        return lineopts


class InboundPoller(Thread):
    """Background reader of the bulk IN endpoint.

       Each received USB packet starts with a 2-byte modem status header,
       the remaining bytes, if any, are the UART payload. The poller runs
       until the closing signal is observed, which is only checked between
       two transfers, or until a transfer fails.

       :param handle: the USB device
       :param endpoint: the bulk IN endpoint
       :param deliver: consumer of the UART payload, returning whether the
                       payload has been accepted
       :param closing: signal to stop polling
       :param stopped: signal fired once the poller exits
       :param disconnect: signal fired on transfer failure
    """

    PACKET_SIZE = 64
    STATUS_SIZE = 2

    def __init__(self, handle: UsbDeviceHandle, endpoint: UsbEndpoint,
                 deliver: Callable[[bytes], bool], closing: OneShotSignal,
                 stopped: OneShotSignal, disconnect: OneShotSignal):
        super().__init__(name=f'FtdiPoller-{endpoint.address:02x}',
                         daemon=True)
        self.log = getLogger('pyftuart.ftdi.poller')
        self._handle = handle
        self._endpoint = endpoint
        self._deliver = deliver
        self._closing = closing
        self._stopped = stopped
        self._disconnect = disconnect
        self._status = bytes(self.STATUS_SIZE)

    @property
    def modem_status(self) -> bytes:
        """Return the last received modem status header."""
        return self._status

    def run(self) -> None:
        try:
            self._poll()
        finally:
            self._stopped.fire()

    def _poll(self) -> None:
        debug = self.log.isEnabledFor(DEBUG)
        while not self._closing.is_set:
            try:
                transfer = self._handle.transfer_in(self._endpoint.address,
                                                    self.PACKET_SIZE)
            except UsbTransportError as exc:
                self.log.warning('Bulk IN transfer failed: %s', exc)
                self._disconnect.fire(exc)
                break
            if transfer.status != 'ok':
                continue
            data = transfer.data
            if len(data) >= self.STATUS_SIZE:
                self._status = bytes(data[:self.STATUS_SIZE])
            if len(data) <= self.STATUS_SIZE:
                continue
            payload = bytes(data[self.STATUS_SIZE:])
            if debug:
                self.log.debug('< %s', hexline(payload))
            # delivery is best effort: no way to push back on the device
            if not self._deliver(payload):
                self.log.debug('Dropped %d bytes, no room in channel',
                               len(payload))


class OutboundSender:
    """Forward write requests to the bulk OUT endpoint.

       Transfer failures are reported through the disconnect signal, the
       writer only sees a zero-length write.

       :param handle: the USB device
       :param endpoint: the bulk OUT endpoint, if any
       :param disconnect: signal fired on transfer failure
    """

    def __init__(self, handle: UsbDeviceHandle,
                 endpoint: Optional[UsbEndpoint], disconnect: OneShotSignal):
        self.log = getLogger('pyftuart.ftdi.sender')
        self._handle = handle
        self._endpoint = endpoint
        self._disconnect = disconnect

    def send(self, data: bytes) -> int:
        """Emit one bulk OUT transfer.

           :param data: the bytes to send
           :return: the count of written bytes, 0 on transfer failure
           :raise FtdiPortNotOpenError: if no OUT endpoint is known
        """
        if not self._endpoint:
            raise FtdiPortNotOpenError('Port must be open first')
        if self.log.isEnabledFor(DEBUG):
            self.log.debug('> %s', hexline(data))
        try:
            return self._handle.transfer_out(self._endpoint.address, data)
        except UsbTransportError as exc:
            self.log.warning('Bulk OUT transfer failed: %s', exc)
            self._disconnect.fire(exc)
            return 0


class FtdiUart:
    """FTDI USB-UART driver.

       The driver takes over an existing USB device, which is only opened
       when :py:meth:`open` is called. Once open, received data are
       continuously pulled from the device by a background thread and made
       available through the :py:attr:`readable` channel, while
       :py:attr:`writable` channel forwards data to the device.

       :param device: the USB device, either a PyUSB device or a device
                      handle
    """

    # Requests
    SIO_REQ_RESET = 0x0              # Reset the port
    SIO_REQ_SET_MODEM_CTRL = 0x1     # Set the modem control register
    SIO_REQ_SET_BAUDRATE = 0x3       # Set baud rate
    SIO_REQ_SET_DATA = 0x4           # Set the data characteristics of the port
    SIO_REQ_SET_BITMODE = 0xb        # Change bit mode

    # Reset arguments
    SIO_RESET_SIO = 0        # Reset device

    # Bitmode arguments
    BITMODE_RESET = 0x00     # switch off alternative mode (default to UART)

    # Modem control arguments
    SIO_SET_DTR_MASK = 0x1
    SIO_SET_DTR_HIGH = SIO_SET_DTR_MASK | (SIO_SET_DTR_MASK << 8)
    SIO_SET_DTR_LOW = 0x0 | (SIO_SET_DTR_MASK << 8)
    SIO_SET_RTS_MASK = 0x2
    SIO_SET_RTS_HIGH = SIO_SET_RTS_MASK | (SIO_SET_RTS_MASK << 8)
    SIO_SET_RTS_LOW = 0x0 | (SIO_SET_RTS_MASK << 8)

    # Line properties
    PARITIES = {'N': 0, 'O': 1, 'E': 2, 'M': 3, 'S': 4}
    STOPBITS = {1: 0, 1.5: 1, 2: 2}
    BYTESIZES = (5, 6, 7, 8)

    # cts:  Clear to send
    # dsr:  Data set ready
    # ri:   Ring indicator
    # dcd:  Data carrier detect
    # dr:   Data ready
    # oe:   Overrun error
    # pe:   Parity error
    # fe:   Framing error
    # bi:   Break interrupt
    # thre: Transmitter holding register empty
    # temt: Transmitter empty
    # err:  Error in RCVR FIFO
    MODEM_STATUS = [('', '', '', '', 'cts', 'dsr', 'ri', 'dcd'),
                    ('dr', 'overrun', 'parity', 'framing',
                     'break', 'thre', 'txe', 'rcve')]

    ERROR_BITS = (0x00, 0x8E)

    def __init__(self, device: Union[UsbDevice, UsbDeviceHandle]):
        self.log = getLogger('pyftuart.ftdi')
        self._dev = as_handle(device)
        self._lock = RLock()
        self._state = DriverState.CLOSED
        self._options = LineOptions()
        self._baudrate = -1
        self._interface: Optional[UsbInterface] = None
        self._in_ep: Optional[UsbEndpoint] = None
        self._out_ep: Optional[UsbEndpoint] = None
        self._poller: Optional[InboundPoller] = None
        self._sender: Optional[OutboundSender] = None
        self._closing: Optional[OneShotSignal] = None
        self._stopped: Optional[OneShotSignal] = None
        self._disconnected = OneShotSignal('disconnect')
        self._reader_slot = ChannelSlot('readable', self._build_reader)
        self._writer_slot = ChannelSlot('writable', self._build_writer)

    # --- Public API -------------------------------------------------------

    @classmethod
    def create_from_url(cls, url: str, **options) -> 'FtdiUart':
        """Create and open a UART driver from a device URL.

           URL scheme: ftuart://[vendor[:product[:index|:serial]]]/1

           :param url: device selector
           :param options: line options, see :py:meth:`open`
           :return: a fresh, open driver instance
        """
        return cls(UsbTools.open_handle(url)).open(**options)

    @classmethod
    def decode_modem_status(cls, value: bytes, error_only: bool = False) -> \
            Tuple[str, ...]:
        """Decode the FTDI modem status bitfield into short strings.

           :param value: 2-byte mode status
           :param error_only: only decode error flags
           :return: a tuple of status identifiers
        """
        status = []
        for byte_, ebits, names in zip(value, cls.ERROR_BITS,
                                       cls.MODEM_STATUS):
            if error_only:
                byte_ &= ebits
            # reserved bits have no name
            status.extend(name for bit, name in enumerate(names)
                          if name and byte_ & (1 << bit))
        return tuple(status)

    @property
    def state(self) -> DriverState:
        """Return the driver state."""
        return self._state

    @property
    def is_active(self) -> bool:
        """Tell whether the UART is open and ready to exchange data."""
        return self._state == DriverState.ACTIVE

    @property
    def line_options(self) -> LineOptions:
        """Return the line options of the current (or next) session."""
        return self._options

    @property
    def baudrate(self) -> int:
        """Return the achieved baudrate, -1 if the port has never been
           open.
        """
        return self._baudrate

    @property
    def endpoints(self) -> Tuple[Optional[UsbEndpoint],
                                 Optional[UsbEndpoint]]:
        """Return the discovered (in, out) bulk endpoints."""
        return self._in_ep, self._out_ep

    @property
    def capability(self) -> DeviceCapability:
        """Return the device generation."""
        return DeviceCapability(self._dev.version_major)

    @property
    def disconnected(self) -> OneShotSignal:
        """Return the signal fired when the device stops responding.

           The signal value is the transport error. Once fired, the only
           meaningful operation left on the driver is :py:meth:`close`.
        """
        return self._disconnected

    @property
    def modem_status(self) -> Tuple[str, ...]:
        """Return the last modem status reported by the device."""
        poller = self._poller
        if not poller:
            return tuple()
        return self.decode_modem_status(poller.modem_status)

    @property
    def readable(self) -> Optional[UartReader]:
        """Return the channel to read received data from, or None if the
           port is not active.

           The same channel is returned until its consumer closes it.
        """
        if self._state != DriverState.ACTIVE:
            return None
        return self._reader_slot.acquire()

    @property
    def writable(self) -> Optional[UartWriter]:
        """Return the channel to send data through, or None if the port is
           not active.

           The same channel is returned until its consumer closes it.
        """
        if self._state != DriverState.ACTIVE:
            return None
        return self._writer_slot.acquire()

    def get_info(self) -> Dict[str, int]:
        """Report USB identifiers of the device.

           :return: a map with the USB vendor and product identifiers
        """
        return {
            'usb_vendor_id': self._dev.vendor_id,
            'usb_product_id': self._dev.product_id,
        }

    def open(self, **options) -> 'FtdiUart':
        """Open and configure the UART.

           Unspecified options keep the value they had on the previous
           session, or their default value, see :py:class:`LineOptions`.

           :param options: baudrate, stopbits, parity and/or bytesize
           :return: self
           :raise ValueError: if a line option is invalid
           :raise BaudrateError: if the baudrate cannot be achieved
           :raise FtdiOpenError: if the device cannot be initialized
        """
        with self._lock:
            if self._state != DriverState.CLOSED:
                raise FtdiOpenError('Port already open')
            lineopts = self._options.merge(**options)
            self._state = DriverState.OPENING
            try:
                self._initialize(lineopts)
            except UsbTransportError as exc:
                self._release()
                raise FtdiOpenError(f'Failed to open device: {exc}') \
                    from exc
            except (FtdiError, BaudrateError):
                self._release()
                raise
            self._options = lineopts
            if self._disconnected.is_set:
                self._disconnected = OneShotSignal('disconnect')
            self._closing = OneShotSignal('closing')
            self._stopped = OneShotSignal('stopped')
            self._stopped.add_callback(self._poller_stopped)
            self._sender = OutboundSender(self._dev, self._out_ep,
                                          self._disconnected)
            self._poller = InboundPoller(self._dev, self._in_ep,
                                         self._deliver, self._closing,
                                         self._stopped, self._disconnected)
            self._state = DriverState.ACTIVE
            self._poller.start()
            self.log.info('UART open @ %d bps', self._baudrate)
            return self

    def close(self) -> None:
        """Close the UART.

           Wait for the background poller to complete its current transfer
           and exit, then release the device. Closing a port that has never
           been open, or that is already closed, has no effect.
        """
        from_poller = current_thread() is self._poller
        if not self._lock.acquire(blocking=not from_poller):
            # another thread holds the lock, and may wait for this poller to
            # exit
            self.log.debug('Close from poller deferred to owner thread')
            return
        try:
            if self._state != DriverState.ACTIVE:
                return
            self._state = DriverState.CLOSING
            self._closing.fire()
            if not from_poller:
                self._stopped.wait()
                self._poller.join()
            reader = self._reader_slot.invalidate()
            if reader:
                reader.end()
            writer = self._writer_slot.invalidate()
            if writer:
                writer.detach_driver()
            self._sender = None
            self._release()
            self.log.info('UART closed')
        finally:
            self._lock.release()

    def set_signals(self, dtr: Optional[bool] = None,
                    rts: Optional[bool] = None) -> None:
        """Change the output modem control lines.

           Only the specified lines are updated, the other ones are left
           untouched.

           :param dtr: new DTR logical level, if not None
           :param rts: new RTS logical level, if not None
           :raise FtdiOpenError: if the device interface is not known
        """
        if not self._interface:
            raise FtdiOpenError('No interface available')
        value = 0
        if dtr is not None:
            value |= self.SIO_SET_DTR_HIGH if dtr else self.SIO_SET_DTR_LOW
        if rts is not None:
            value |= self.SIO_SET_RTS_HIGH if rts else self.SIO_SET_RTS_LOW
        try:
            self._ctrl_transfer_out(self.SIO_REQ_SET_MODEM_CTRL, value)
        except UsbTransportError as exc:
            raise FtdiError(f'Unable to set DTR/RTS lines: {exc}') from exc

    def set_dtr(self, state: bool) -> None:
        """Set dtr line

           :param state: new DTR logical level
        """
        self.set_signals(dtr=state)

    def set_rts(self, state: bool) -> None:
        """Set rts line

           :param state: new RTS logical level
        """
        self.set_signals(rts=state)

    def write_data(self, data: Union[bytes, bytearray]) -> int:
        """Write data to the UART, as a single bulk transfer.

           :param data: the bytes to send
           :return: the count of written bytes, 0 if the device is gone
           :raise FtdiPortNotOpenError: if the port is not open
        """
        sender = self._sender
        if not sender:
            raise FtdiPortNotOpenError('Port must be open first')
        return sender.send(bytes(data))

    # --- Private implementation -------------------------------------------

    def _initialize(self, lineopts: LineOptions) -> None:
        self._dev.open()
        interfaces = self._dev.interfaces
        if not interfaces:
            raise FtdiOpenError('Failed to open device: no interface')
        interface = interfaces[0]
        self._dev.claim_interface(interface.number)
        self._interface = interface
        self._in_ep, self._out_ep = self._find_endpoints(interface)
        if not self._in_ep:
            raise FtdiOpenError('Failed to open device: no bulk IN endpoint')
        self._ctrl_transfer_out(self.SIO_REQ_RESET, self.SIO_RESET_SIO)
        self._ctrl_transfer_out(self.SIO_REQ_SET_BITMODE, self.BITMODE_RESET)
        self._set_baudrate(lineopts.baudrate)
        self._set_line_property(lineopts)

    @classmethod
    def _find_endpoints(cls, interface: UsbInterface) -> \
            Tuple[Optional[UsbEndpoint], Optional[UsbEndpoint]]:
        in_ep = None
        out_ep = None
        for endpoint in interface.endpoints:
            if endpoint.type != 'bulk':
                continue
            if endpoint.direction == 'in':
                if not in_ep:
                    in_ep = endpoint
            elif not out_ep:
                out_ep = endpoint
        return in_ep, out_ep

    def _set_baudrate(self, baudrate: int) -> None:
        actual, value, index = BaudrateEncoder.convert(
            baudrate, self.capability, self._interface.number)
        delta = BaudrateEncoder.deviation(baudrate, actual)
        self.log.debug('Actual baudrate: %d %.1f%% div [%04x:%04x]',
                       actual, delta, index, value)
        if delta > BaudrateEncoder.BAUDRATE_TOLERANCE:
            self.log.warning('Baudrate tolerance exceeded: %.02f%% '
                             '(wanted %d, achievable %d)',
                             delta, baudrate, actual)
        self._ctrl_transfer_out(self.SIO_REQ_SET_BAUDRATE, value, index)
        self._baudrate = actual

    def _set_line_property(self, lineopts: LineOptions) -> None:
        value = lineopts.bytesize & 0x0F
        value |= self.PARITIES[lineopts.parity] << 8
        value |= self.STOPBITS[lineopts.stopbits] << 11
        self._ctrl_transfer_out(self.SIO_REQ_SET_DATA, value)

    def _ctrl_transfer_out(self, reqtype: int, value: int,
                           index: Optional[int] = None) -> None:
        """Send a control message to the device"""
        if index is None:
            index = self._interface.number
        self.log.debug('ctrl req 0x%02x value 0x%04x index 0x%04x',
                       reqtype, value, index)
        self._dev.control_transfer_out(reqtype, value, index)

    def _release(self) -> None:
        interface = self._interface
        self._interface = None
        self._in_ep = None
        self._out_ep = None
        if interface:
            try:
                self._dev.release_interface(interface.number)
            except UsbTransportError as exc:
                self.log.warning('FTDI device may be gone: %s', exc)
        try:
            self._dev.close()
        except UsbTransportError as exc:
            self.log.warning('FTDI device may be gone: %s', exc)
        self._state = DriverState.CLOSED

    def _deliver(self, data: bytes) -> bool:
        reader = self._reader_slot.channel
        if not reader:
            return False
        return reader.feed(data)

    def _poller_stopped(self, _) -> None:
        # no more data will be received within this session
        reader = self._reader_slot.channel
        if reader:
            reader.end()

    def _build_reader(self, on_close: Callable) -> UartReader:
        reader = UartReader(on_close)
        if self._stopped and self._stopped.is_set:
            reader.end()
        return reader

    def _build_writer(self, on_close: Callable) -> UartWriter:
        return UartWriter(self.write_data, on_close)
