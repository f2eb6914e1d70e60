#!/usr/bin/env python3

"""Bridge a FTDI USB-UART with the standard input and output streams.
"""

# Copyright (c) 2024, Emmanuel Blot <emmanuel.blot@free.fr>
# All rights reserved.
#
# SPDX-License-Identifier: BSD-3-Clause

#pylint: disable-msg=too-many-locals

from argparse import ArgumentParser
from logging import Formatter, StreamHandler, DEBUG, ERROR
from os import environ
from sys import exit as sysexit, modules, stderr, stdin, stdout
from threading import Thread
from traceback import format_exc
from pyftuart import FtUartLogger
from pyftuart.ftdi import FtdiUart, LineOptions
from pyftuart.misc import to_bps, to_int
from pyftuart.usbtools import UsbTools, UsbToolsError


class UartBridge:
    """Copy data between the console streams and the UART.

       :param uart: an open UART driver
       :param loopback: send back all received data
    """

    def __init__(self, uart: FtdiUart, loopback: bool = False):
        self._uart = uart
        self._loopback = loopback
        self._uart.disconnected.add_callback(self._on_disconnect)

    def run(self) -> None:
        """Bridge the streams, until EOF is received from the standard
           input or the UART is disconnected."""
        reader = Thread(target=self._pump_rx, name='UartRx', daemon=True)
        reader.start()
        writer = self._uart.writable
        try:
            while True:
                line = stdin.buffer.readline()
                if not line or self._uart.disconnected.is_set:
                    break
                writer.write(line)
        finally:
            self._uart.close()
        reader.join()

    def _pump_rx(self) -> None:
        reader = self._uart.readable
        # the channel signals EOF once the UART is closed or disconnected
        while True:
            data = reader.read(4096)
            if not data:
                break
            stdout.buffer.write(data)
            stdout.buffer.flush()
            if self._loopback:
                self._uart.write_data(data)

    def _on_disconnect(self, exc: Exception) -> None:
        print(f'\nDevice disconnected: {exc}', file=stderr)


def add_custom_devices(vidpids) -> None:
    """Register custom vendor:product identifiers.

       :param vidpids: a sequence of "vid:pid" strings
       :raise ValueError: if a specifier is invalid
    """
    for vidpid in vidpids or []:
        vendor, product = (to_int(x) for x in vidpid.split(':', 1))
        if not 0 < vendor < 0x10000 or not 0 < product < 0x10000:
            raise ValueError(f'Invalid VID:PID value: {vidpid}')
        UsbTools.add_custom_product(vendor, product)


def main():
    """Main routine"""
    debug = False
    try:
        default_device = environ.get('FTUART_DEVICE', 'ftuart:///1')
        argparser = ArgumentParser(description=modules[__name__].__doc__)
        argparser.add_argument('device', nargs='?', default=default_device,
                               help=f'device URL, use "ftuart:///?" to list '
                                    f'devices (default: {default_device})')
        argparser.add_argument('-b', '--baudrate',
                               default=str(LineOptions().baudrate),
                               help=f'serial port baudrate (default: '
                                    f'{LineOptions().baudrate})')
        argparser.add_argument('-p', '--parity', default='N',
                               choices=sorted(FtdiUart.PARITIES),
                               help='parity (default: N)')
        argparser.add_argument('-s', '--stopbits', type=float, default=1,
                               choices=sorted(FtdiUart.STOPBITS),
                               help='stop bits (default: 1)')
        argparser.add_argument('-l', '--loopback', action='store_true',
                               help='loopback mode (send back all received '
                                    'chars)')
        argparser.add_argument('-i', '--info', action='store_true',
                               help='show device information and exit')
        argparser.add_argument('-P', '--vidpid', action='append',
                               help='specify a custom VID:PID device ID, '
                                    'may be repeated')
        argparser.add_argument('-v', '--verbose', action='count', default=0,
                               help='increase verbosity')
        argparser.add_argument('-d', '--debug', action='store_true',
                               help='enable debug mode')
        args = argparser.parse_args()
        debug = args.debug

        loglevel = max(DEBUG, ERROR - (10 * args.verbose))
        loglevel = min(ERROR, loglevel)
        if debug:
            formatter = Formatter('%(asctime)s.%(msecs)03d %(name)-20s '
                                  '%(message)s', '%H:%M:%S')
        else:
            formatter = Formatter('%(message)s')
        FtUartLogger.set_formatter(formatter)
        FtUartLogger.set_level(loglevel)
        FtUartLogger.log.addHandler(StreamHandler(stderr))

        try:
            add_custom_devices(args.vidpid)
        except ValueError as exc:
            argparser.error(str(exc))

        if args.device.rstrip('/').endswith('?'):
            vps = [(vid, pid) for vid, pids in UsbTools.PRODUCT_IDS.items()
                   for pid in set(pids.values())]
            devices = UsbTools.find_all(vps)
            if not devices:
                print('No USB-UART device found', file=stderr)
                sysexit(1)
            UsbTools.show_devices(devices)
            sysexit(0)

        stopbits = int(args.stopbits) if args.stopbits.is_integer() \
            else args.stopbits
        uart = FtdiUart.create_from_url(args.device,
                                        baudrate=to_bps(args.baudrate),
                                        parity=args.parity,
                                        stopbits=stopbits)
        if args.info:
            info = uart.get_info()
            uart.close()
            print(f"vendor:   0x{info['usb_vendor_id']:04x}")
            print(f"product:  0x{info['usb_product_id']:04x}")
            print(f'version:  {uart.capability.version}')
            print(f'baudrate: {uart.baudrate}')
            sysexit(0)
        UartBridge(uart, args.loopback).run()

    except (IOError, ValueError, UsbToolsError) as exc:
        print(f'\nError: {exc}', file=stderr)
        if debug:
            print(format_exc(chain=False), file=stderr)
        sysexit(1)
    except KeyboardInterrupt:
        sysexit(2)


if __name__ == '__main__':
    main()
