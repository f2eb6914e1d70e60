#!/usr/bin/env python3
# -*- coding: utf-8 -*-

# Copyright (c) 2024, Emmanuel Blot <emmanuel.blot@free.fr>
# All rights reserved.
#
# SPDX-License-Identifier: BSD-3-Clause

#pylint: disable-msg=missing-docstring
#pylint: disable-msg=too-many-public-methods
#pylint: disable-msg=protected-access

from os import environ
from threading import Event, RLock, Thread
from time import sleep, time as now
from unittest import TestCase, TestSuite, defaultTestLoader, main as ut_main
from unittest.mock import patch
from pyftuart.baudrate import BaudrateError
from pyftuart.ftdi import (DriverState, FtdiError, FtdiOpenError,
                           FtdiPortNotOpenError, FtdiUart, LineOptions)
from pyftuart.log import configure_test_loggers
from pyftuart.misc import to_bool
from pyftuart.usbtools import UsbTools, UsbTransportError
from pyftuart.tests.backend.mockusb import MockLoader

RESET, MODEM_CTRL, BAUDRATE, DATA, BITMODE = 0x0, 0x1, 0x3, 0x4, 0xb


class HookedLock:
    """Reentrant lock running a hook once, right after a successful
       acquisition."""

    def __init__(self, hook):
        self._lock = RLock()
        self._hook = hook

    def acquire(self, blocking=True, timeout=-1):
        acquired = self._lock.acquire(blocking, timeout)
        if acquired and self._hook:
            hook, self._hook = self._hook, None
            hook()
        return acquired

    def release(self):
        self._lock.release()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *_):
        self.release()


class UartTestCase(TestCase):
    """Common features for driver tests."""

    DEVICE = 'ft232r'

    @classmethod
    def setUpClass(cls):
        cls.debug = to_bool(environ.get('FTUART_DEBUG', 'off'),
                            permissive=False)

    def setUp(self):
        if self.debug:
            print('.'.join(self.id().split('.')[-2:]))
        self.loader = MockLoader.from_resource('devices.yaml')
        self.dev = self.loader.get(self.DEVICE)
        self.uart = FtdiUart(self.dev)
        self.addCleanup(self.uart.close)

    def read_exactly(self, size, timeout=1.0):
        reader = self.uart.readable
        reader.timeout = timeout
        data = bytearray()
        while len(data) < size:
            buf = reader.read(size - len(data))
            if not buf:
                break
            data.extend(buf)
        return bytes(data)

    @staticmethod
    def wait_for(predicate, timeout=1.0):
        deadline = now() + timeout
        while now() < deadline:
            if predicate():
                return True
            sleep(0.005)
        return predicate()


class OpenTestCase(UartTestCase):
    """Device initialization sequence."""

    def test_sequence(self):
        self.assertIs(self.uart.open(), self.uart)
        self.assertEqual(self.uart.state, DriverState.ACTIVE)
        self.assertTrue(self.uart.is_active)
        self.assertEqual(self.dev.claimed, [0])
        self.assertEqual(self.dev.requests,
                         [(RESET, 0, 0), (BITMODE, 0, 0),
                          (BAUDRATE, 0x4138, 0), (DATA, 0x0008, 0)])
        in_ep, out_ep = self.uart.endpoints
        self.assertEqual((in_ep.address, out_ep.address), (0x81, 0x02))
        self.assertEqual(self.uart.baudrate, 9600)
        self.assertEqual(self.uart.line_options, LineOptions())

    def test_second_interface(self):
        dev = self.loader.get('ft2232h-b')
        uart = FtdiUart(dev)
        self.addCleanup(uart.close)
        uart.open(baudrate=3000000)
        self.assertEqual(dev.claimed, [1])
        self.assertEqual(dev.requests,
                         [(RESET, 0, 1), (BITMODE, 0, 1),
                          (BAUDRATE, 0, 1), (DATA, 0x0008, 1)])
        self.assertEqual(uart.endpoints[0].address, 0x83)

    def test_high_speed(self):
        dev = self.loader.get('ft2232h')
        uart = FtdiUart(dev)
        self.addCleanup(uart.close)
        uart.open(baudrate=6000000)
        self.assertEqual(dev.requests_for(BAUDRATE), [(2, 0x200)])
        self.assertEqual(uart.baudrate, 6000000)

    def test_legacy_device(self):
        dev = self.loader.get('ft8u232am')
        uart = FtdiUart(dev)
        self.addCleanup(uart.close)
        uart.open(baudrate=57600)
        self.assertEqual(dev.requests_for(BAUDRATE), [(0xC034, 0)])
        self.assertEqual(uart.baudrate, 57554)

    def test_line_options(self):
        self.uart.open(baudrate=115200, parity='E', stopbits=2, bytesize=7)
        self.assertEqual(self.dev.requests_for(BAUDRATE), [(0x1A, 0)])
        self.assertEqual(self.dev.requests_for(DATA), [(0x1207, 0)])
        self.uart.close()
        # options are retained from one session to the next
        self.uart.open()
        self.assertEqual(self.dev.requests_for(DATA),
                         [(0x1207, 0), (0x1207, 0)])
        self.uart.close()
        self.uart.open(parity='N', stopbits=1.5)
        self.assertEqual(self.dev.requests_for(DATA)[-1], (0x0807, 0))
        self.assertEqual(self.uart.line_options,
                         LineOptions(115200, 1.5, 'N', 7))

    def test_invalid_options(self):
        for options in ({'parity': 'X'}, {'stopbits': 3}, {'bytesize': 9},
                        {'baudrate': 0}, {'flow': 'hw'}):
            with self.subTest(**options):
                with self.assertRaises(ValueError):
                    self.uart.open(**options)
                self.assertEqual(self.uart.state, DriverState.CLOSED)
        self.assertEqual(self.dev.open_count, 0)
        self.assertEqual(self.dev.requests, [])

    def test_unsupported_baudrate(self):
        with self.assertRaises(BaudrateError):
            self.uart.open(baudrate=6000000)
        self.assertEqual(self.uart.state, DriverState.CLOSED)
        self.assertEqual(self.dev.released, [0])
        self.assertEqual(self.dev.close_count, 1)
        self.assertEqual(self.uart.endpoints, (None, None))
        self.assertIsNone(self.uart.readable)
        # a rejected configuration is not retained
        self.uart.open()
        self.assertEqual(self.uart.baudrate, 9600)

    def test_baudrate_tolerance(self):
        with self.assertLogs('pyftuart.ftdi', 'WARNING') as logs:
            self.uart.open(baudrate=2000000)
        self.assertIn('tolerance', '\n'.join(logs.output))
        self.assertEqual(self.uart.baudrate, 1500000)

    def test_no_interface(self):
        uart = FtdiUart(self.loader.get('no-interface'))
        with self.assertRaises(FtdiOpenError):
            uart.open()
        self.assertEqual(uart.state, DriverState.CLOSED)

    def test_no_input_endpoint(self):
        dev = self.loader.get('tx-only')
        uart = FtdiUart(dev)
        with self.assertRaises(FtdiOpenError):
            uart.open()
        self.assertEqual(dev.released, [0])
        self.assertEqual(uart.state, DriverState.CLOSED)

    def test_transport_failures(self):
        self.dev.fail_open = UsbTransportError('busy')
        with self.assertRaises(FtdiOpenError):
            self.uart.open()
        self.dev.fail_open = None
        self.dev.fail_claim = UsbTransportError('claimed')
        with self.assertRaises(FtdiOpenError):
            self.uart.open()
        self.assertEqual(self.dev.released, [])
        self.dev.fail_claim = None
        self.dev.fail_requests[BITMODE] = UsbTransportError('stall')
        with self.assertRaises(FtdiOpenError):
            self.uart.open()
        self.assertEqual(self.dev.released, [0])
        self.assertEqual(self.dev.close_count, 3)
        self.assertEqual(self.uart.state, DriverState.CLOSED)
        del self.dev.fail_requests[BITMODE]
        self.uart.open()
        self.assertTrue(self.uart.is_active)

    def test_already_open(self):
        self.uart.open()
        with self.assertRaises(FtdiOpenError):
            self.uart.open()
        self.assertTrue(self.uart.is_active)
        self.assertEqual(self.dev.claimed, [0])

    def test_first_bulk_endpoints(self):
        dev = self.loader.get('dual-bulk')
        uart = FtdiUart(dev)
        self.addCleanup(uart.close)
        uart.open()
        in_ep, out_ep = uart.endpoints
        self.assertEqual((in_ep.address, out_ep.address), (0x81, 0x02))
        self.assertTrue(self.wait_for(lambda: dev.in_lengths))
        self.assertEqual(set(dev.in_lengths), {64})

    def test_create_from_url(self):
        with patch.object(UsbTools, 'open_handle',
                          return_value=self.dev) as open_handle:
            uart = FtdiUart.create_from_url('ftuart://ftdi:232r/1',
                                            baudrate=115200)
        self.addCleanup(uart.close)
        open_handle.assert_called_once_with('ftuart://ftdi:232r/1')
        self.assertTrue(uart.is_active)
        self.assertEqual(self.dev.requests_for(BAUDRATE), [(0x1A, 0)])

    def test_info(self):
        dev = self.loader.get('ft2232h')
        uart = FtdiUart(dev)
        self.assertEqual(uart.get_info(),
                         {'usb_vendor_id': 0x403, 'usb_product_id': 0x6010})
        self.assertTrue(uart.capability.is_modern)
        self.assertTrue(uart.capability.has_mpsse)


class DataTestCase(UartTestCase):
    """Data exchange while the port is active."""

    def setUp(self):
        super().setUp()
        self.uart.open()

    def test_read(self):
        reader = self.uart.readable
        self.dev.push_rx(b'hello')
        self.dev.push_rx(b'')
        self.dev.push_rx(b' world')
        self.assertEqual(self.read_exactly(11), b'hello world')
        self.assertIs(self.uart.readable, reader)

    def test_status_only_packets(self):
        reader = self.uart.readable
        for _ in range(4):
            self.dev.push_rx()
        self.assertTrue(self.dev.wait_rx_drained())
        reader.timeout = 0.05
        self.assertIsNone(reader.read(16))

    def test_drop_without_reader(self):
        self.dev.push_rx(b'lost')
        self.assertTrue(self.dev.wait_rx_drained())
        sleep(0.05)
        reader = self.uart.readable
        self.dev.push_rx(b'kept')
        self.assertEqual(self.read_exactly(4), b'kept')
        reader.timeout = 0.05
        self.assertIsNone(reader.read(4))

    def test_stall_ignored(self):
        self.assertIsNotNone(self.uart.readable)
        self.dev.push_rx_raw('stall')
        self.dev.push_rx(b'ok')
        self.assertEqual(self.read_exactly(2), b'ok')
        self.assertFalse(self.uart.disconnected.is_set)

    def test_write(self):
        writer = self.uart.writable
        self.assertEqual(writer.write(b'abc'), 3)
        self.assertEqual(self.uart.write_data(bytearray(b'de')), 2)
        self.assertEqual(self.dev.tx_data, [(0x02, b'abc'), (0x02, b'de')])
        self.assertIs(self.uart.writable, writer)

    def test_channel_reopen(self):
        reader = self.uart.readable
        writer = self.uart.writable
        reader.close()
        writer.close()
        self.assertIsNot(self.uart.readable, reader)
        self.assertIsNot(self.uart.writable, writer)
        self.dev.push_rx(b'again')
        self.assertEqual(self.read_exactly(5), b'again')
        self.assertEqual(self.uart.writable.write(b'x'), 1)

    def test_modem_status(self):
        self.dev.push_rx(status=b'\x31\x60')
        self.assertTrue(self.wait_for(
            lambda: 'cts' in self.uart.modem_status))
        self.assertEqual(self.uart.modem_status,
                         ('cts', 'dsr', 'thre', 'txe'))
        self.assertEqual(FtdiUart.decode_modem_status(b'\x01\x8e', True),
                         ('overrun', 'parity', 'framing', 'rcve'))

    def test_signals(self):
        self.uart.set_signals(dtr=True)
        self.uart.set_signals(rts=False)
        self.uart.set_signals(dtr=False, rts=True)
        self.uart.set_signals()
        self.uart.set_dtr(False)
        self.uart.set_rts(True)
        self.assertEqual(self.dev.requests_for(MODEM_CTRL),
                         [(0x0101, 0), (0x0200, 0), (0x0302, 0), (0, 0),
                          (0x0100, 0), (0x0202, 0)])
        self.dev.fail_requests[MODEM_CTRL] = UsbTransportError('gone')
        with self.assertRaises(FtdiError):
            self.uart.set_signals(dtr=True)


class CloseTestCase(UartTestCase):
    """Port shutdown and device disconnection."""

    def test_close_never_opened(self):
        self.uart.close()
        self.assertEqual(self.uart.state, DriverState.CLOSED)
        self.assertEqual(self.dev.close_count, 0)
        with self.assertRaises(FtdiOpenError):
            self.uart.set_signals(dtr=True)
        with self.assertRaises(FtdiPortNotOpenError):
            self.uart.write_data(b'x')

    def test_close(self):
        self.uart.open()
        reader = self.uart.readable
        writer = self.uart.writable
        self.dev.push_rx(b'pending')
        self.assertTrue(self.wait_for(lambda: reader.in_waiting == 7))
        self.uart.close()
        self.assertEqual(self.uart.state, DriverState.CLOSED)
        self.assertEqual(self.dev.released, [0])
        self.assertEqual(self.dev.close_count, 1)
        self.assertIsNone(self.uart.readable)
        self.assertIsNone(self.uart.writable)
        self.assertEqual(self.uart.endpoints, (None, None))
        # buffered data can still be drained, then EOF is reported
        reader.timeout = 1.0
        self.assertEqual(reader.read(16), b'pending')
        self.assertEqual(reader.read(16), b'')
        with self.assertRaises(ValueError):
            writer.write(b'late')
        self.uart.close()
        self.assertEqual(self.dev.close_count, 1)

    def test_close_release_failure(self):
        self.uart.open()
        self.dev.fail_release = UsbTransportError('gone')
        with self.assertLogs('pyftuart.ftdi', 'WARNING'):
            self.uart.close()
        self.assertEqual(self.uart.state, DriverState.CLOSED)
        self.assertEqual(self.dev.close_count, 1)

    def test_reopen(self):
        self.uart.open()
        signal = self.uart.disconnected
        self.uart.close()
        self.uart.open()
        self.assertIs(self.uart.disconnected, signal)
        self.dev.push_rx(b'second')
        self.assertEqual(self.read_exactly(6), b'second')
        self.assertEqual(self.dev.claimed, [0, 0])

    def test_disconnect(self):
        self.uart.open()
        reader = self.uart.readable
        errors = []
        self.uart.disconnected.add_callback(errors.append)
        self.dev.disconnect()
        self.assertTrue(self.uart.disconnected.wait(1.0))
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], UsbTransportError)
        # no more data is expected
        reader.timeout = 1.0
        self.assertEqual(reader.read(16), b'')
        start = now()
        self.uart.close()
        self.assertLess(now() - start, 0.5)
        self.assertEqual(self.uart.state, DriverState.CLOSED)
        self.uart.open()
        self.assertFalse(self.uart.disconnected.is_set)

    def test_close_on_disconnect(self):
        self.uart.open()
        self.uart.disconnected.add_callback(lambda _: self.uart.close())
        self.dev.disconnect()
        self.assertTrue(self.wait_for(
            lambda: self.uart.state == DriverState.CLOSED))
        self.assertEqual(self.dev.close_count, 1)

    def test_disconnect_while_closing(self):
        self.uart.open()
        entered = Event()

        def on_disconnect(_):
            entered.set()
            self.uart.close()

        def disconnect_with_lock_held():
            # the poller reaches close() while the closer owns the lock
            self.dev.disconnect()
            entered.wait(1.0)
            sleep(0.05)

        self.uart.disconnected.add_callback(on_disconnect)
        self.uart._lock = HookedLock(disconnect_with_lock_held)
        closer = Thread(target=self.uart.close, daemon=True)
        closer.start()
        closer.join(3.0)
        self.assertFalse(closer.is_alive())
        self.assertTrue(entered.is_set())
        self.assertEqual(self.uart.state, DriverState.CLOSED)
        self.assertEqual(self.dev.close_count, 1)

    def test_send_failure(self):
        self.uart.open()
        self.dev.fail_out = UsbTransportError('gone')
        self.assertEqual(self.uart.writable.write(b'x'), 0)
        self.assertTrue(self.uart.disconnected.is_set)
        self.assertIs(self.uart.disconnected.value, self.dev.fail_out)

    def test_receive_only_device(self):
        dev = self.loader.get('rx-only')
        uart = FtdiUart(dev)
        self.addCleanup(uart.close)
        uart.open()
        with self.assertRaises(FtdiPortNotOpenError):
            uart.writable.write(b'x')


def suite():
    suite_ = TestSuite()
    loader = defaultTestLoader
    suite_.addTest(loader.loadTestsFromTestCase(OpenTestCase))
    suite_.addTest(loader.loadTestsFromTestCase(DataTestCase))
    suite_.addTest(loader.loadTestsFromTestCase(CloseTestCase))
    return suite_


if __name__ == '__main__':
    configure_test_loggers()
    ut_main(defaultTest='suite')
