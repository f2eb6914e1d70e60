# Copyright (c) 2024, Emmanuel Blot <emmanuel.blot@free.fr>
# All rights reserved.
#
# SPDX-License-Identifier: BSD-3-Clause

"""USB Helpers"""

import sys
from errno import EPIPE
from importlib import import_module
from logging import getLogger
from string import printable as printablechars
from threading import RLock
from typing import (Dict, List, NamedTuple, Optional, Sequence, Set, TextIO,
                    Tuple, Union)
from urllib.parse import urlsplit
from usb.backend import IBackend
from usb.core import Device as UsbDevice, USBError, USBTimeoutError
from usb.util import (build_request_type, claim_interface, dispose_resources,
                      endpoint_direction, endpoint_type, get_string,
                      release_interface, CTRL_OUT, CTRL_TYPE_VENDOR,
                      CTRL_RECIPIENT_DEVICE, ENDPOINT_IN, ENDPOINT_TYPE_BULK,
                      ENDPOINT_TYPE_CTRL, ENDPOINT_TYPE_INTR,
                      ENDPOINT_TYPE_ISO)
from .misc import bcd_major, to_int

#pylint: disable-msg=too-many-locals,too-many-branches
#pylint: disable-msg=too-many-arguments


class UsbToolsError(Exception):
    """UsbTools error."""


class UsbTransportError(IOError):
    """A USB transfer could not be completed, the device may be gone."""


UsbDeviceDescriptor = NamedTuple('UsbDeviceDescriptor',
                                 (('vid', int),
                                  ('pid', int),
                                  ('bus', Optional[int]),
                                  ('address', Optional[int]),
                                  ('sn', Optional[str]),
                                  ('index', Optional[int]),
                                  ('description', Optional[str])))
"""USB Device descriptors are used to report known information about a FTDI
   compatible device, and as a device selection filter

   * vid: vendor identifier, 16-bit integer
   * pid: product identifier, 16-bit integer
   * bus: USB bus identifier, host dependent integer
   * address: USB address identifier on a USB bus, host dependent integer
   * sn: serial number, string
   * index: integer, can be used to descriminate similar devices
   * description: device description, as a string

   To select a device, use None for unknown fields
"""


class UsbEndpoint(NamedTuple):
    """Endpoint of an interface alternate setting."""

    address: int
    direction: str  # 'in' or 'out'
    type: str  # 'control', 'isochronous', 'bulk' or 'interrupt'

    @property
    def number(self) -> int:
        """Return the endpoint number, i.e. the address w/o direction."""
        return self.address & 0x0f


class UsbInterface(NamedTuple):
    """Interface and the endpoints of its active alternate setting."""

    number: int
    endpoints: Tuple[UsbEndpoint, ...]


class UsbTransferResult(NamedTuple):
    """Outcome of an IN transfer.

       status is one of 'ok', 'timeout', 'stall' or 'babble'.
    """

    status: str
    data: bytes


class UsbDeviceHandle:
    """Abstract USB device, as consumed by the UART driver.

       Implementations report transfer failures with
       :py:class:`UsbTransportError`.
    """

    @property
    def vendor_id(self) -> int:
        """Return the USB vendor identifier."""
        raise NotImplementedError('Not implemented')

    @property
    def product_id(self) -> int:
        """Return the USB product identifier."""
        raise NotImplementedError('Not implemented')

    @property
    def version_major(self) -> int:
        """Return the major device release number (decoded BCD)."""
        raise NotImplementedError('Not implemented')

    @property
    def interfaces(self) -> Sequence[UsbInterface]:
        """Return the interfaces of the active configuration."""
        raise NotImplementedError('Not implemented')

    def open(self) -> None:
        """Open the device."""
        raise NotImplementedError('Not implemented')

    def close(self) -> None:
        """Close the device, releasing all its resources."""
        raise NotImplementedError('Not implemented')

    def claim_interface(self, number: int) -> None:
        """Claim an interface for exclusive use."""
        raise NotImplementedError('Not implemented')

    def release_interface(self, number: int) -> None:
        """Release a previously claimed interface."""
        raise NotImplementedError('Not implemented')

    def control_transfer_out(self, request: int, value: int, index: int,
                             data: bytes = b'') -> None:
        """Emit a vendor, device recipient, host-to-device control request.
        """
        raise NotImplementedError('Not implemented')

    def transfer_in(self, endpoint: int, length: int) -> UsbTransferResult:
        """Receive up to length bytes from an IN endpoint."""
        raise NotImplementedError('Not implemented')

    def transfer_out(self, endpoint: int, data: bytes) -> int:
        """Send data to an OUT endpoint.

           :return: the count of sent bytes
        """
        raise NotImplementedError('Not implemented')


class PyUsbDeviceHandle(UsbDeviceHandle):
    """USB device handle backed by a PyUSB device.

       :param device: the PyUSB device
    """

    REQ_OUT = build_request_type(CTRL_OUT, CTRL_TYPE_VENDOR,
                                 CTRL_RECIPIENT_DEVICE)

    ENDPOINT_TYPES = {
        ENDPOINT_TYPE_CTRL: 'control',
        ENDPOINT_TYPE_ISO: 'isochronous',
        ENDPOINT_TYPE_BULK: 'bulk',
        ENDPOINT_TYPE_INTR: 'interrupt',
    }

    def __init__(self, device: UsbDevice):
        if not isinstance(device, UsbDevice):
            raise UsbToolsError(f"Device '{device}' is not a PyUSB device")
        self.log = getLogger('pyftuart.usb')
        self._dev = device
        self._usb_read_timeout = 1000
        self._usb_write_timeout = 5000
        self._detached: Set[int] = set()

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__} ' \
               f'{self.vendor_id:04x}:{self.product_id:04x}>'

    @property
    def usb_dev(self) -> UsbDevice:
        """Return the underlying USB Device."""
        return self._dev

    @property
    def vendor_id(self) -> int:
        return self._dev.idVendor

    @property
    def product_id(self) -> int:
        return self._dev.idProduct

    @property
    def version_major(self) -> int:
        return bcd_major(self._dev.bcdDevice)

    @property
    def interfaces(self) -> Sequence[UsbInterface]:
        try:
            config = self._dev.get_active_configuration()
        except USBError as exc:
            raise UsbTransportError(f'UsbError: {exc}') from exc
        interfaces = []
        for intf in config:
            if intf.bAlternateSetting != 0:
                continue
            endpoints = tuple(self._build_endpoint(ep) for ep in intf)
            interfaces.append(UsbInterface(intf.bInterfaceNumber, endpoints))
        return interfaces

    def open(self) -> None:
        # only change the active configuration if the active one is not the
        # first. This allows other libusb sessions running with the same
        # device to run seamlessly.
        try:
            config = self._dev.get_active_configuration()
            setconf = config.bConfigurationValue != 1
        except USBError:
            setconf = True
        if setconf:
            try:
                self._dev.set_configuration()
            except USBError as exc:
                raise UsbTransportError(f'UsbError: {exc}') from exc

    def close(self) -> None:
        for number in sorted(self._detached):
            try:
                self._dev.attach_kernel_driver(number)
            except (NotImplementedError, USBError):
                pass
        self._detached.clear()
        dispose_resources(self._dev)

    def claim_interface(self, number: int) -> None:
        # detach kernel driver from the interface
        try:
            if self._dev.is_kernel_driver_active(number):
                self._dev.detach_kernel_driver(number)
                self._detached.add(number)
        except (NotImplementedError, USBError):
            pass
        try:
            claim_interface(self._dev, number)
        except USBError as exc:
            raise UsbTransportError(f'UsbError: {exc}') from exc

    def release_interface(self, number: int) -> None:
        try:
            release_interface(self._dev, number)
        except USBError as exc:
            raise UsbTransportError(f'UsbError: {exc}') from exc

    def control_transfer_out(self, request: int, value: int, index: int,
                             data: bytes = b'') -> None:
        try:
            self._dev.ctrl_transfer(self.REQ_OUT, request, value, index,
                                    bytearray(data), self._usb_write_timeout)
        except USBError as exc:
            raise UsbTransportError(f'UsbError: {exc}') from None

    def transfer_in(self, endpoint: int, length: int) -> UsbTransferResult:
        try:
            data = self._dev.read(endpoint, length, self._usb_read_timeout)
        except USBTimeoutError:
            return UsbTransferResult('timeout', b'')
        except USBError as exc:
            if exc.errno == EPIPE:
                return UsbTransferResult('stall', b'')
            raise UsbTransportError(f'UsbError: {exc}') from None
        return UsbTransferResult('ok', bytes(data))

    def transfer_out(self, endpoint: int, data: bytes) -> int:
        try:
            return self._dev.write(endpoint, data, self._usb_write_timeout)
        except USBError as exc:
            raise UsbTransportError(f'UsbError: {exc}') from None

    @classmethod
    def _build_endpoint(cls, endpoint) -> UsbEndpoint:
        address = endpoint.bEndpointAddress
        direction = 'in' if endpoint_direction(address) == ENDPOINT_IN \
            else 'out'
        eptype = cls.ENDPOINT_TYPES[endpoint_type(endpoint.bmAttributes)]
        return UsbEndpoint(address, direction, eptype)

    def __get_timeouts(self) -> Tuple[int, int]:
        return self._usb_read_timeout, self._usb_write_timeout

    def __set_timeouts(self, timeouts: Tuple[int, int]):
        (read_timeout, write_timeout) = timeouts
        self._usb_read_timeout = read_timeout
        self._usb_write_timeout = write_timeout

    timeouts = property(__get_timeouts, __set_timeouts)


class UsbTools:
    """Helpers to locate USB-UART devices from URLs.

       URL syntax::

           ftuart://[vendor[:product[:serial|:index]]]/1

       vendor and product may be specified either as integers or as names,
       the only supported port is the first interface.
    """

    SCHEME = 'ftuart'

    # Supported back ends, in preference order
    BACKENDS = ('usb.backend.libusb1', 'usb.backend.libusb0')

    FTDI_VENDOR = 0x403

    VENDOR_IDS = {'ftdi': FTDI_VENDOR}

    PRODUCT_IDS = {
        FTDI_VENDOR: {
            # first occurence of a PID takes precedence when generating URLs
            '232': 0x6001,
            '232r': 0x6001,
            '232h': 0x6014,
            '2232': 0x6010,
            '2232h': 0x6010,
            '4232': 0x6011,
            '4232h': 0x6011,
            'ft-x': 0x6015,
            '230x': 0x6015,
            '231x': 0x6015,
            '234x': 0x6015,
        }
    }

    DEFAULT_VENDOR = FTDI_VENDOR

    Lock = RLock()

    @classmethod
    def add_custom_product(cls, vid: int, pid: int, pidname: str = '') \
            -> None:
        """Add a custom USB-UART product to the supported devices.

           :param vid: USB vendor identifier
           :param pid: USB product identifier
           :param pidname: optional product name
        """
        with cls.Lock:
            products = cls.PRODUCT_IDS.setdefault(vid, {})
            if not pidname:
                pidname = f'{pid:04x}'
            if pidname in products:
                raise ValueError(f'Product "{pidname}" already exists')
            products[pidname] = pid

    @classmethod
    def find_all(cls, vps: Sequence[Tuple[int, int]]) -> \
            List[Tuple[UsbDeviceDescriptor, int]]:
        """Find all devices that match the specified vendor/product pairs.

           :param vps: a sequence of 2-tuple (vid, pid) pairs
           :return: a list of 2-tuple (UsbDeviceDescriptor, interface count)
        """
        with cls.Lock:
            devices = []
            for dev in cls._find_devices(vps):
                ifcount = max([cfg.bNumInterfaces for cfg in dev])
                sernum = cls.get_string(dev, dev.iSerialNumber)
                description = cls.get_string(dev, dev.iProduct)
                descriptor = UsbDeviceDescriptor(dev.idVendor, dev.idProduct,
                                                 dev.bus, dev.address,
                                                 sernum, None, description)
                devices.append((descriptor, ifcount))
            return devices

    @classmethod
    def get_device(cls, devdesc: UsbDeviceDescriptor) -> UsbDevice:
        """Find the USB device that matches a device descriptor.

           :param devdesc: Device descriptor that identifies the device by
                           constraints.
           :return: PyUSB device instance
           :raise UsbToolsError: if no device matches
        """
        with cls.Lock:
            if not devdesc.vid:
                raise UsbToolsError('Vendor identifier is required')
            devs = cls._find_devices([(devdesc.vid, devdesc.pid)])
            if devdesc.sn:
                devs = [dev for dev in devs if
                        cls.get_string(dev, dev.iSerialNumber) == devdesc.sn]
            if devdesc.bus is not None and devdesc.address is not None:
                devs = [dev for dev in devs if
                        (devdesc.bus == dev.bus and
                         devdesc.address == dev.address)]
            try:
                return devs[devdesc.index or 0]
            except IndexError:
                raise UsbToolsError('No such device') from None

    @classmethod
    def open_handle(cls, url: str) -> PyUsbDeviceHandle:
        """Create a device handle from a device URL.

           :param url: the device URL
           :return: a device handle, not yet open
        """
        devdesc = cls.parse_url(url)
        return PyUsbDeviceHandle(cls.get_device(devdesc))

    @classmethod
    def parse_url(cls, urlstr: str) -> UsbDeviceDescriptor:
        """Parse a device specifier URL.

           :param urlstr: the URL to parse
           :return: the matching device descriptor
           :raise UsbToolsError: if the URL is invalid or matches no device
        """
        urlparts = urlsplit(urlstr)
        if urlparts.scheme != cls.SCHEME:
            raise UsbToolsError(f'Invalid URL: {urlstr}')
        path = urlparts.path.strip('/')
        try:
            port = to_int(path) if path else 1
        except ValueError as exc:
            raise UsbToolsError(f'Invalid device URL: {urlstr}') from exc
        if port != 1:
            raise UsbToolsError(f'No such UART port: {port}')
        specifiers = urlparts.netloc.split(':') + [''] * 2
        try:
            vendor = to_int(cls.VENDOR_IDS.get(specifiers[0], specifiers[0])
                            or cls.DEFAULT_VENDOR)
            products = cls.PRODUCT_IDS.get(vendor, {})
            product = to_int(products.get(specifiers[1], specifiers[1])) \
                or None
        except ValueError as exc:
            raise UsbToolsError(f'Invalid device URL: {urlstr}') from exc
        sernum = None
        index = None
        locator = specifiers[2]
        if locator:
            try:
                index = to_int(locator)
                if index > 255:
                    raise ValueError()
                index = max(0, index - 1)
            except ValueError:
                index = None
                sernum = locator
        if product is None:
            if vendor not in cls.PRODUCT_IDS:
                raise UsbToolsError(f'Vendor ID 0x{vendor:04x} not '
                                    f'supported')
            candidates = cls.find_all(
                [(vendor, pid) for pid in
                 set(cls.PRODUCT_IDS[vendor].values())])
            pids = {desc.pid for desc, _ in candidates}
            if len(pids) != 1:
                raise UsbToolsError(f'{len(pids) or "No"} USB product(s) '
                                    f"match URL '{urlstr}'")
            product = pids.pop()
        return UsbDeviceDescriptor(vendor, product, None, None, sernum,
                                   index, None)

    @classmethod
    def show_devices(cls, devdescs: Sequence[Tuple[UsbDeviceDescriptor,
                                                   int]],
                     out: Optional[TextIO] = None) -> None:
        """Show connected devices, as URLs.

           :param devdescs: candidate devices
           :param out: output stream, none for stdout
        """
        if not devdescs:
            return
        if not out:
            out = sys.stdout
        devstrs = cls.build_dev_strings(devdescs)
        max_url_len = max([len(url) for url, _ in devstrs])
        print('Available interfaces:', file=out)
        for url, desc in devstrs:
            print(f'  {url:{max_url_len}s}   {desc}', file=out)
        print('', file=out)

    @classmethod
    def build_dev_strings(cls, devdescs: Sequence[Tuple[UsbDeviceDescriptor,
                                                        int]]) -> \
            List[Tuple[str, str]]:
        """Build URL and device descriptors from UsbDeviceDescriptors.

           :param devdescs: USB devices and interfaces
           :return: list of (url, descriptors)
        """
        indices: Dict[Tuple[int, int], int] = {}
        descs = []
        for desc, _ in sorted(devdescs, key=lambda d: (d[0].vid, d[0].pid,
                                                       d[0].sn or '')):
            ikey = (desc.vid, desc.pid)
            indices[ikey] = indices.get(ikey, 0) + 1
            vendor = f'{desc.vid:04x}'
            vendors = sorted([name for name, vid in cls.VENDOR_IDS.items()
                              if vid == desc.vid], key=len)
            if vendors:
                vendor = vendors[0]
            product = f'{desc.pid:04x}'
            products = [name for name, pid in
                        cls.PRODUCT_IDS.get(desc.vid, {}).items()
                        if pid == desc.pid]
            if products:
                product = products[0]
            sernum = desc.sn or ''
            if not sernum or [c for c in sernum
                              if c not in printablechars or c in '?:/']:
                sernum = f'{indices[ikey]}'
            url = f'{cls.SCHEME}://{vendor}:{product}:{sernum}/1'
            description = f'({desc.description})' if desc.description else ''
            descs.append((url, description))
        return descs

    @classmethod
    def get_string(cls, device: UsbDevice, stridx: int) -> str:
        """Retrieve a string from the USB device.

           :param device: USB device instance
           :param stridx: the string identifier
           :return: the string read from the USB device
        """
        if not stridx:
            return ''
        try:
            return get_string(device, stridx) or ''
        except (UnicodeDecodeError, ValueError, USBError):
            # do not abort if EEPROM data is somewhat incoherent
            return ''

    @classmethod
    def _find_devices(cls, vps: Sequence[Tuple[int, Optional[int]]]) -> \
            List[UsbDevice]:
        backend = cls._load_backend()
        vpdict: Dict[int, Set[Optional[int]]] = {}
        for vid, pid in vps:
            vpdict.setdefault(vid, set()).add(pid)
        devs = []
        for dev in backend.enumerate_devices():
            device = UsbDevice(dev, backend)
            products = vpdict.get(device.idVendor)
            if products is None:
                continue
            if None not in products and device.idProduct not in products:
                continue
            devs.append(device)
        return devs

    @classmethod
    def _load_backend(cls) -> IBackend:
        for candidate in cls.BACKENDS:
            mod = import_module(candidate)
            backend = mod.get_backend()
            if backend is not None:
                return backend
        raise UsbToolsError('No backend available')


def as_handle(device: Union[UsbDevice, UsbDeviceHandle]) -> UsbDeviceHandle:
    """Wrap a PyUSB device into a device handle, if needed."""
    if isinstance(device, UsbDeviceHandle):
        return device
    return PyUsbDeviceHandle(device)
