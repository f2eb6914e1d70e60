# Copyright (c) 2024, Emmanuel Blot <emmanuel.blot@free.fr>
# All rights reserved.
#
# SPDX-License-Identifier: BSD-3-Clause

"""Miscellaneous helpers"""

#pylint: disable-msg=invalid-name

from re import match
from typing import Iterable, Union


# String values evaluated as true boolean values
TRUE_BOOLEANS = ['on', 'true', 'enable', 'enabled', 'yes', 'high', '1']
# String values evaluated as false boolean values
FALSE_BOOLEANS = ['off', 'false', 'disable', 'disabled', 'no', 'low', '0']
# Printable ASCII chars are kept as is, other bytes are shown as '.'
ASCIIFILTER = bytearray((_x if 0x20 <= _x < 0x7f else ord('.'))
                        for _x in range(256))


def hexline(data: Union[bytes, bytearray, Iterable[int]],
            sep: str = ' ') -> str:
    """Convert a binary buffer into a single line of hexadecimal values
       followed with its printable ASCII representation.

       :param data: binary buffer to dump
       :param sep: separator between hexadecimal bytes
       :return: the generated string
    """
    try:
        src = bytes(data)
    except (TypeError, ValueError) as exc:
        raise TypeError(f"Unsupported data type '{type(data)}'") from exc
    hexa = sep.join([f'{x:02x}' for x in src])
    printable = src.translate(ASCIIFILTER).decode('ascii')
    return f'({len(src)}) {hexa} : {printable}'


def to_int(value: Union[int, str]) -> int:
    """Parse a value and convert it into an integer value if possible.

       Input value may be:
       - a string with an integer coded as a decimal value
       - a string with an integer coded as a hexadecimal value (0x prefix)
       - a integral value

       :param value: input value to convert to an integer
       :return: the value as an integer
       :raise ValueError: if the input value cannot be converted into an int
    """
    if not value:
        return 0
    if isinstance(value, int):
        return value
    value = value.strip()
    return int(value, 16 if value.lower().startswith('0x') else 10)


def to_bool(value: Union[int, bool, str], permissive: bool = True,
            allow_int: bool = False) -> bool:
    """Parse a string and convert it into a boolean value if possible.

       :param value: the value to parse and convert
       :param permissive: default to the False value if parsing fails
       :param allow_int: allow an integral type as the input value
       :raise ValueError: if the input value cannot be converted into an bool
    """
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if allow_int:
            return bool(value)
        if permissive:
            return False
        raise ValueError(f"Invalid boolean value: '{value}'")
    if value.lower() in TRUE_BOOLEANS:
        return True
    if permissive or (value.lower() in FALSE_BOOLEANS):
        return False
    raise ValueError(f"Invalid boolean value: '{value}'")


def to_bps(value: Union[int, float, str]) -> int:
    """Parse a string and convert it into a baudrate value.

       The function accepts common multipliers as K and M, e.g. ``115.2K``
       or ``3M``.

       :param value: the value to parse and convert
       :raise ValueError: if the input value cannot be converted into a
                          baudrate
    """
    if isinstance(value, float):
        return int(value)
    if isinstance(value, int):
        return value
    mo = match(r'^(?P<value>[0-9]*\.?[0-9]+)(?P<unit>[KkMm])?$',
               value.strip())
    if not mo:
        raise ValueError(f'Invalid baudrate: {value}')
    baudrate = float(mo.group('value'))
    if mo.group('unit'):
        baudrate *= {'K': 1E3, 'M': 1E6}[mo.group('unit').upper()]
    return int(baudrate)


def bcd_major(bcd_device: int) -> int:
    """Decode the major version from a BCD device release number, as USB
       stacks report it.

       >>> bcd_major(0x0600)
       6
       >>> bcd_major(0x1000)
       10
    """
    major = (bcd_device >> 8) & 0xff
    return (major >> 4) * 10 + (major & 0xf)
