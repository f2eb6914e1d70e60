#!/usr/bin/env python3
# -*- coding: utf-8 -*-

# Copyright (c) 2024, Emmanuel Blot <emmanuel.blot@free.fr>
# All rights reserved.
#
# SPDX-License-Identifier: BSD-3-Clause

#pylint: disable-msg=missing-docstring

from threading import Timer
from unittest import TestCase, TestSuite, defaultTestLoader, main as ut_main
from pyftuart.channels import ChannelSlot, ChannelState, UartReader, UartWriter
from pyftuart.log import configure_test_loggers


class UartReaderTestCase(TestCase):

    def test_read_in_order(self):
        reader = UartReader(None)
        self.assertTrue(reader.feed(b'abc'))
        self.assertTrue(reader.feed(b'def'))
        self.assertEqual(reader.in_waiting, 6)
        self.assertEqual(reader.read(4), b'abcd')
        self.assertEqual(reader.read(10), b'ef')
        self.assertEqual(reader.in_waiting, 0)

    def test_timeout(self):
        reader = UartReader(None)
        reader.timeout = 0.01
        self.assertIsNone(reader.read(4))
        reader.timeout = 0
        self.assertIsNone(reader.read(4))

    def test_blocking_read(self):
        reader = UartReader(None)
        timer = Timer(0.02, reader.feed, args=(b'late',))
        timer.start()
        self.assertEqual(reader.read(16), b'late')
        timer.join()

    def test_full(self):
        reader = UartReader(None, capacity=8)
        self.assertTrue(reader.feed(b'01234567'))
        self.assertFalse(reader.feed(b'8'))
        self.assertEqual(reader.read(8), b'01234567')
        self.assertTrue(reader.feed(b'8'))

    def test_end(self):
        reader = UartReader(None)
        reader.feed(b'tail')
        reader.end()
        self.assertFalse(reader.feed(b'more'))
        self.assertFalse(reader.at_eof)
        self.assertEqual(reader.read(16), b'tail')
        self.assertTrue(reader.at_eof)
        self.assertEqual(reader.read(16), b'')

    def test_purge(self):
        reader = UartReader(None)
        reader.feed(b'junk')
        self.assertEqual(reader.purge(), 4)
        reader.timeout = 0
        self.assertIsNone(reader.read(4))

    def test_close(self):
        closed = []
        reader = UartReader(closed.append)
        reader.close()
        reader.close()
        self.assertEqual(closed, [reader])
        self.assertFalse(reader.feed(b'x'))
        with self.assertRaises(ValueError):
            reader.read(1)


class UartWriterTestCase(TestCase):

    def test_write(self):
        sent = []

        def send(data):
            sent.append(data)
            return len(data)

        writer = UartWriter(send, None)
        self.assertEqual(writer.write(bytearray(b'hello')), 5)
        self.assertEqual(sent, [b'hello'])

    def test_close(self):
        closed = []
        writer = UartWriter(len, closed.append)
        writer.close()
        self.assertEqual(closed, [writer])
        with self.assertRaises(ValueError):
            writer.write(b'x')

    def test_detach(self):
        closed = []
        writer = UartWriter(len, closed.append)
        writer.detach_driver()
        self.assertTrue(writer.closed)
        self.assertEqual(closed, [])


class ChannelSlotTestCase(TestCase):

    @staticmethod
    def _build(on_close):
        return UartReader(on_close)

    def test_lazy(self):
        slot = ChannelSlot('readable', self._build)
        self.assertEqual(slot.state, ChannelState.ABSENT)
        self.assertIsNone(slot.channel)
        channel = slot.acquire()
        self.assertEqual(slot.state, ChannelState.ACTIVE)
        self.assertIs(slot.channel, channel)
        self.assertIs(slot.acquire(), channel)

    def test_consumer_close(self):
        slot = ChannelSlot('readable', self._build)
        first = slot.acquire()
        first.close()
        self.assertEqual(slot.state, ChannelState.CONSUMER_CLOSED)
        self.assertIsNone(slot.channel)
        second = slot.acquire()
        self.assertIsNot(second, first)
        self.assertEqual(slot.state, ChannelState.ACTIVE)

    def test_invalidate(self):
        slot = ChannelSlot('readable', self._build)
        channel = slot.acquire()
        self.assertIs(slot.invalidate(), channel)
        self.assertEqual(slot.state, ChannelState.ABSENT)
        # closing a stale channel does not alter the slot
        channel.close()
        self.assertEqual(slot.state, ChannelState.ABSENT)
        self.assertIsNone(slot.invalidate())


def suite():
    suite_ = TestSuite()
    loader = defaultTestLoader
    suite_.addTest(loader.loadTestsFromTestCase(UartReaderTestCase))
    suite_.addTest(loader.loadTestsFromTestCase(UartWriterTestCase))
    suite_.addTest(loader.loadTestsFromTestCase(ChannelSlotTestCase))
    return suite_


if __name__ == '__main__':
    configure_test_loggers()
    ut_main(defaultTest='suite')
