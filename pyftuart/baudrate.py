# Copyright (c) 2024, Emmanuel Blot <emmanuel.blot@free.fr>
# All rights reserved.
#
# SPDX-License-Identifier: BSD-3-Clause

"""FTDI UART baudrate divisor computation."""

from typing import NamedTuple, Tuple
from .misc import bcd_major


class BaudrateError(ValueError):
    """Requested baudrate cannot be achieved with the FTDI device"""


class DeviceCapability(NamedTuple):
    """Device generation, as reported by the major device version.

       Each class is evaluated on its own: a device may both be a modern
       device and an MPSSE-capable one.
    """

    version: int

    @classmethod
    def from_bcd(cls, bcd_device: int) -> 'DeviceCapability':
        """Build a capability from a raw ``bcdDevice`` descriptor field.

           :param bcd_device: the 16-bit BCD device release number
           :return: the device capability
        """
        return cls(bcd_major(bcd_device))

    @property
    def is_legacy(self) -> bool:
        """Tell whether the device is a first generation FT8U232 device."""
        return self.version < 2

    @property
    def is_modern(self) -> bool:
        """Tell whether the device supports the 12 MHz reference clock."""
        return self.version in (7, 8, 9)

    @property
    def has_mpsse(self) -> bool:
        """Tell whether the device is MPSSE-capable, i.e. whether the
           baudrate index also encodes the interface number.
        """
        return self.version in (5, 7, 8, 9)


class BaudrateSetting(NamedTuple):
    """Outcome of a baudrate conversion."""

    estimate: int
    value: int
    index: int


class BaudrateEncoder:
    """Convert a baudrate into the (value, index) pair of the FTDI
       SET_BAUDRATE control request.

       The search of the best divisor mimics the FTDI reference drivers, so
       that the UART is programmed with the very same bit rate.
    """

    BAUDRATE_REF_BASE = int(3.0E6)  # 3 MHz
    BAUDRATE_REF_HIGH = int(12.0E6)  # 12 MHz
    BAUDRATE_MIN = (2 * BAUDRATE_REF_BASE) // (2 * 16384 + 1)
    BAUDRATE_TOLERANCE = 3.0  # acceptable clock drift for UART, in %

    FRAC_DIV_CODE = (0, 3, 2, 4, 1, 5, 6, 7)
    # FT8U232AM cannot achieve all sub-integer divisors
    AM_ADJUST_UP = (0, 0, 0, 1, 0, 3, 2, 1)
    AM_ADJUST_DN = (0, 0, 0, 1, 0, 1, 2, 3)

    DIVISOR_MAX_AM = 0x1fff8
    DIVISOR_MAX = 0x1ffff
    HISPEED_INDEX_BIT = 1 << 9

    @classmethod
    def encode(cls, baudrate: int, capability: DeviceCapability,
               interface: int = 0) -> Tuple[int, int]:
        """Compute the SET_BAUDRATE control request arguments.

           :param baudrate: the requested baudrate in bps
           :param capability: the device generation
           :param interface: the interface number
           :return: a 2-uple of value and index
           :raise BaudrateError: if the baudrate is out of range
        """
        setting = cls.convert(baudrate, capability, interface)
        return setting.value, setting.index

    @classmethod
    def convert(cls, baudrate: int, capability: DeviceCapability,
                interface: int = 0) -> BaudrateSetting:
        """Convert a requested baudrate into the closest possible baudrate
           that can be assigned to the FTDI device.

           :param baudrate: the requested baudrate in bps
           :param capability: the device generation
           :param interface: the interface number
           :return: the achievable baudrate, and the value and index to use
                    as the USB configuration parameters
           :raise BaudrateError: if the baudrate is out of range
        """
        if baudrate < cls.BAUDRATE_MIN:
            raise BaudrateError(f'Invalid baudrate (too low): {baudrate}')
        if baudrate > cls.BAUDRATE_REF_BASE:
            if not capability.is_modern or baudrate > cls.BAUDRATE_REF_HIGH:
                raise BaudrateError(f'Invalid baudrate (too high): '
                                    f'{baudrate}')
            clock = cls.BAUDRATE_REF_HIGH
            hispeed = True
        else:
            clock = cls.BAUDRATE_REF_BASE
            hispeed = False
        legacy = capability.is_legacy
        divisor = (clock * 8) // baudrate
        if legacy:
            divisor -= cls.AM_ADJUST_DN[divisor & 7]
        best_divisor = 0
        best_diff = 0
        for step in range(2):
            try_divisor = divisor + step
            if not hispeed:
                if try_divisor <= 8:
                    try_divisor = 8
                elif legacy and try_divisor < 12:
                    try_divisor = 12
                elif try_divisor < 16:
                    try_divisor = 16
                elif legacy:
                    try_divisor += cls.AM_ADJUST_UP[try_divisor & 7]
                    try_divisor = min(try_divisor, cls.DIVISOR_MAX_AM)
                else:
                    try_divisor = min(try_divisor, cls.DIVISOR_MAX)
            estimate = ((clock * 8) + (try_divisor // 2)) // try_divisor
            diff = abs(baudrate - estimate)
            if step == 0 or diff < best_diff:
                best_divisor = try_divisor
                best_diff = diff
                if diff == 0:
                    break
        encoded = (best_divisor >> 3) | \
            (cls.FRAC_DIV_CODE[best_divisor & 7] << 14)
        # special cases for 3 and 2 Mbps
        if encoded == 1:
            encoded = 0
        elif encoded == 0x4001:
            encoded = 1
        value = encoded & 0xFFFF
        if capability.has_mpsse:
            index = ((encoded >> 8) & 0xFF00) | interface
        else:
            index = (encoded >> 16) & 0xFFFF
        if hispeed:
            index |= cls.HISPEED_INDEX_BIT
        estimate = ((clock * 8) + (best_divisor // 2)) // best_divisor
        return BaudrateSetting(estimate, value, index)

    @classmethod
    def deviation(cls, baudrate: int, estimate: int) -> float:
        """Report the deviation between requested and achievable baudrates.

           :return: the deviation, in %
        """
        return 100 * abs(float(estimate - baudrate)) / baudrate
