# -*- coding: latin-1 -*-
import pasori
import pasori.clf
import pasori.clf.transport

import pytest
from mock import call, MagicMock
import errno

import logging
logging.basicConfig(level=logging.DEBUG-1)
logging_level = logging.getLogger().getEffectiveLevel()
logging.getLogger("pasori.clf").setLevel(logging_level)
logging.getLogger("pasori.clf.transport").setLevel(logging_level)


def HEX(s):
    return bytearray.fromhex(s)


BULK, INTERRUPT = 0x0002, 0x0003


class TestUSB(object):
    class Endpoint(object):
        def __init__(self, addr, attr, maxp=64):
            self.addr, self.attr, self.maxp = addr, attr, maxp

        def getAddress(self):
            return self.addr

        def getAttributes(self):
            return self.attr

        def getMaxPacketSize(self):
            return self.maxp

    class Settings(object):
        def __init__(self, endpoints):
            self.endpoints = endpoints

        def iterEndpoints(self):
            return iter(self.endpoints)

    class Device(object):
        def __init__(self, vid, pid, bus, dev, settings=None):
            self.vid, self.pid, self.bus, self.dev = vid, pid, bus, dev
            self.settings = settings

        def iterSettings(self):
            return iter(self.settings)

        def getVendorID(self):
            return self.vid

        def getProductID(self):
            return self.pid

        def getBusNumber(self):
            return self.bus

        def getDeviceAddress(self):
            return self.dev

        def getManufacturer(self):
            return 'SONY'

        def getProduct(self):
            return 'RC-S380/S'

        def open(self):
            return MagicMock(spec=pasori.clf.transport.libusb.USBDeviceHandle)

    def rcs380(self):
        return self.Device(0x054c, 0x06c1, 1, 2, [
            self.Settings([
                self.Endpoint(0x0081, BULK),
                self.Endpoint(0x0002, BULK),
            ])
        ])

    @pytest.fixture()
    def usb_context(self, mocker):
        libusb = 'pasori.clf.transport.libusb'
        return mocker.patch(libusb + '.USBContext', autospec=True)

    @pytest.mark.parametrize("path, devices, found", [
        ('tty', [], None),
        ('usb_', [], None),
        ('usb', [Device(1, 2, 3, 4), Device(5, 6, 7, 8)],
         [(1, 2, 3, 4), (5, 6, 7, 8)]),
        ('usb:054c', [Device(0x54c, 2, 3, 4), Device(0x54c, 6, 7, 8)],
         [(0x54c, 2, 3, 4), (0x54c, 6, 7, 8)]),
        ('usb:054c:06c1', [Device(0x54c, 0x6c1, 3, 4), Device(0x54c, 6, 7, 8)],
         [(0x54c, 0x6c1, 3, 4)]),
        ('usb:003', [Device(1, 2, 3, 4), Device(5, 6, 3, 8)],
         [(1, 2, 3, 4), (5, 6, 3, 8)]),
        ('usb:003:004', [Device(1, 2, 3, 4), Device(5, 6, 3, 8)],
         [(1, 2, 3, 4)]),
    ])
    def test_find(self, usb_context, path, devices, found):
        usb_context_enter = usb_context.return_value.__enter__
        usb_context_enter.return_value.getDeviceList.return_value = devices
        assert pasori.clf.transport.USB.find(path) == found

    @pytest.mark.parametrize("bus, dev, settings", [
        (1, 2, []),
        (2, 1, []),
        (1, 2, [Settings([Endpoint(0x0004, BULK), Endpoint(0x0084, BULK)])]),
        (1, 2, [Settings([Endpoint(0x0002, BULK)])]),
        (1, 2, [Settings([Endpoint(0x0081, BULK)])]),
        (1, 2, [Settings([Endpoint(0x0002, INTERRUPT),
                          Endpoint(0x0081, INTERRUPT)])]),
    ])
    def test_init_fail_attr(self, usb_context, bus, dev, settings):
        usb_context.return_value.getDeviceList.return_value = [
            self.Device(0x054c, 0x06c1, bus, dev, settings)
        ]
        with pytest.raises(IOError) as excinfo:
            pasori.clf.transport.USB(1, 2)
        assert excinfo.value.errno == errno.ENODEV

    def test_init_fail_name(self, usb_context):
        device = self.rcs380()
        device.getManufacturer = MagicMock()
        device.getManufacturer.side_effect = [
            pasori.clf.transport.libusb.USBErrorIO
        ]
        usb_context.return_value.getDeviceList.return_value = [device]
        usb = pasori.clf.transport.USB(1, 2)
        assert usb.manufacturer_name is None
        assert usb.product_name is None

    def test_init_fail_open(self, usb_context):
        device = self.rcs380()
        device.open = MagicMock()
        device.open.side_effect = [
            pasori.clf.transport.libusb.USBErrorAccess,
            pasori.clf.transport.libusb.USBErrorBusy,
            pasori.clf.transport.libusb.USBErrorNoDevice,
        ]
        usb_context.return_value.getDeviceList.return_value = [device]

        with pytest.raises(IOError) as excinfo:
            pasori.clf.transport.USB(1, 2)
        assert excinfo.value.errno == errno.EACCES

        with pytest.raises(IOError) as excinfo:
            pasori.clf.transport.USB(1, 2)
        assert excinfo.value.errno == errno.EBUSY

        with pytest.raises(IOError) as excinfo:
            pasori.clf.transport.USB(1, 2)
        assert excinfo.value.errno == errno.ENODEV

    def test_init_fail_claim(self, usb_context):
        device = self.rcs380()
        handle = MagicMock(spec=pasori.clf.transport.libusb.USBDeviceHandle)
        handle.getConfiguration.return_value = 1
        handle.claimInterface.side_effect = [
            pasori.clf.transport.libusb.USBErrorBusy,
        ]
        device.open = MagicMock(return_value=handle)
        usb_context.return_value.getDeviceList.return_value = [device]
        with pytest.raises(IOError) as excinfo:
            pasori.clf.transport.USB(1, 2)
        assert excinfo.value.errno == errno.EBUSY

    def test_init_configuration_already_set(self, usb_context):
        device = self.rcs380()
        handle = MagicMock(spec=pasori.clf.transport.libusb.USBDeviceHandle)
        handle.getConfiguration.return_value = 1
        device.open = MagicMock(return_value=handle)
        usb_context.return_value.getDeviceList.return_value = [device]
        usb = pasori.clf.transport.USB(1, 2)
        assert usb.usb_dev is handle
        handle.setConfiguration.assert_not_called()
        handle.claimInterface.assert_called_once_with(0)

    @pytest.fixture()
    def usb(self, usb_context):
        usb_context.return_value.getDeviceList.return_value = [
            self.Device(0x054c, 0x06c1, 1, 2, [
                self.Settings([
                    self.Endpoint(0x0003, INTERRUPT),
                    self.Endpoint(0x0081, BULK),
                    self.Endpoint(0x0002, BULK),
                    self.Endpoint(0x0084, BULK),
                    self.Endpoint(0x0004, BULK),
                ])
            ])
        ]
        usb = pasori.clf.transport.USB(1, 2)
        return usb

    def test_init(self, usb):
        usb.usb_dev.setConfiguration.assert_called_once_with(1)
        usb.usb_dev.claimInterface.assert_called_once_with(0)
        assert usb.usb_inp.getAddress() == 0x81
        assert usb.usb_out.getAddress() == 0x02

    def test_manufacturer_name(self, usb):
        assert usb.manufacturer_name == "SONY"

    def test_product_name(self, usb):
        assert usb.product_name == "RC-S380/S"

    def test_read(self, usb):
        usb.usb_dev.bulkRead.side_effect = [
            b'12',
            b'34',
            pasori.clf.transport.libusb.USBErrorTimeout,
            pasori.clf.transport.libusb.USBErrorNoDevice,
            pasori.clf.transport.libusb.USBError,
            b'',
        ]
        assert usb.read() == b'12'
        usb.usb_dev.bulkRead.assert_called_with(0x81, 290, 0)

        assert usb.read(100) == b'34'
        usb.usb_dev.bulkRead.assert_called_with(0x81, 290, 100)

        with pytest.raises(IOError) as excinfo:
            usb.read()
        assert excinfo.value.errno == errno.ETIMEDOUT

        with pytest.raises(IOError) as excinfo:
            usb.read()
        assert excinfo.value.errno == errno.ENODEV

        with pytest.raises(IOError) as excinfo:
            usb.read()
        assert excinfo.value.errno == errno.EIO

        with pytest.raises(IOError) as excinfo:
            usb.read()
        assert excinfo.value.errno == errno.EIO

        usb.usb_inp = None
        assert usb.read() is None

    def test_write(self, usb):
        usb.write(b'12')
        usb.usb_dev.bulkWrite.assert_called_with(0x02, b'12', 0)

        usb.write(HEX('0000ff00ff00'), 100)
        usb.usb_dev.bulkWrite.assert_called_with(
            0x02, HEX('0000ff00ff00'), 100)

        usb.write(64 * b'1', 100)
        usb.usb_dev.bulkWrite.assert_has_calls([
            call(0x02, 64 * b'1', 100),
            call(0x02, b'', 100),
        ])

        usb.usb_dev.bulkWrite.reset_mock()
        usb.write(None)
        assert usb.usb_dev.bulkWrite.mock_calls == []

        usb.usb_dev.bulkWrite.side_effect = [
            pasori.clf.transport.libusb.USBErrorTimeout,
            pasori.clf.transport.libusb.USBErrorNoDevice,
            pasori.clf.transport.libusb.USBError,
        ]
        with pytest.raises(IOError) as excinfo:
            usb.write(b'12')
        assert excinfo.value.errno == errno.ETIMEDOUT

        with pytest.raises(IOError) as excinfo:
            usb.write(b'12')
        assert excinfo.value.errno == errno.ENODEV

        with pytest.raises(IOError) as excinfo:
            usb.write(b'12')
        assert excinfo.value.errno == errno.EIO

        usb.usb_out = None
        assert usb.write(b'12') is None

    def test_close(self, usb):
        usb_dev = usb.usb_dev
        usb_dev.releaseInterface.side_effect = [
            pasori.clf.transport.libusb.USBErrorNoDevice,
        ]
        usb.close()
        usb_dev.releaseInterface.assert_called_once_with(0)
        usb_dev.close.assert_called_once_with()
        assert usb.usb_dev is None
        assert usb.usb_inp is None
        assert usb.usb_out is None
        assert usb.read() is None
        assert usb.write(b'12') is None
        usb.close()
