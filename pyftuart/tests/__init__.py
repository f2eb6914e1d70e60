# Copyright (c) 2024, Emmanuel Blot <emmanuel.blot@free.fr>
# All rights reserved.
#
# SPDX-License-Identifier: BSD-3-Clause

import unittest


def suite():
    #pylint: disable-msg=import-outside-toplevel
    from . import (test_baudrate, test_channels, test_driver, test_misc,
                   test_notify, test_serialext, test_usbtools)
    suite_ = unittest.TestSuite()
    for module in (test_misc, test_baudrate, test_notify, test_channels,
                   test_usbtools, test_driver, test_serialext):
        suite_.addTest(module.suite())
    return suite_
