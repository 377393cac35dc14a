# -*- coding: latin-1 -*-
# -----------------------------------------------------------------------------
# Copyright 2012, 2017 Stephen Tiedemann <stephen.tiedemann@gmail.com>
#
# Licensed under the EUPL, Version 1.1 or - as soon they
# will be approved by the European Commission - subsequent
# versions of the EUPL (the "Licence");
# You may not use this work except in compliance with the
# Licence.
# You may obtain a copy of the Licence at:
#
# https://joinup.ec.europa.eu/software/page/eupl
#
# Unless required by applicable law or agreed to in
# writing, software distributed under the Licence is
# distributed on an "AS IS" basis,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either
# express or implied.
# See the Licence for the specific language governing
# permissions and limitations under the Licence.
# -----------------------------------------------------------------------------
"""Driver module for the Sony NFC Port-100 chipset. The only product
known to use this chipset is the PaSoRi RC-S380. The RC-S380 connects
to the host as a native USB device with one bulk endpoint for each
direction.

Every chipset command is a request frame answered by an ACK frame
and then a response frame. The request data starts with D6h and the
command code, the response data with D7h and the command code plus
one. The chipset processes one command at a time.

==========  =======  ============
function    support  remarks
==========  =======  ============
sense_tta   partial  SENS_REQ only, no anticollision and selection
sense_ttf   yes
exchange    yes      raw InCommRF exchange with the current settings
==========  =======  ============

"""
import pasori.clf

import os
import math
import time
import errno
import struct
import threading
from binascii import hexlify

import logging
log = logging.getLogger(__name__)


class Frame(object):
    """A chipset frame. Outgoing frames are built with :meth:`encode`,
    received bytes are classified with :meth:`decode`. The frame type
    is one of :const:`ACK`, :const:`ERR` or :const:`DATA`, only data
    frames carry :attr:`data`.

    """
    ACK, ERR, DATA = "ack", "err", "data"

    PREAMBLE = bytearray.fromhex("0000FF")
    ACK_FRAME = bytearray.fromhex("0000FF00FF00")
    ERR_FRAME = bytearray.fromhex("0000FFFFFF")

    def __init__(self, frame_type, data=None, frame=None):
        self._type = frame_type
        self._data = data
        self._frame = frame

    @classmethod
    def encode(cls, data):
        data = bytearray(data)
        if len(data) > 0xFFFF:
            raise ValueError("frame data can not exceed 65535 byte")
        frame = bytearray([0, 0, 255, 255, 255])
        frame += bytearray(struct.pack("<H", len(data)))
        frame += bytearray(struct.pack("B", (256 - sum(frame[5:7])) % 256))
        frame += data
        frame += bytearray([(256 - sum(frame[8:])) % 256, 0])
        return cls(cls.DATA, data, frame)

    @classmethod
    def decode(cls, frame):
        frame = bytearray(frame)
        if frame[0:3] != cls.PREAMBLE:
            raise pasori.clf.FramingError(
                "frame has no preamble: %s" % hexlify(frame).decode())
        if frame == cls.ACK_FRAME:
            return cls(cls.ACK, frame=frame)
        if frame == cls.ERR_FRAME:
            return cls(cls.ERR, frame=frame)
        if frame[3:5] != bytearray(b"\xff\xff") or len(frame) < 8:
            raise pasori.clf.FramingError(
                "unknown frame type: %s" % hexlify(frame).decode())
        if (sum(frame[5:8]) & 0xFF) != 0:
            raise pasori.clf.FramingError("frame length checksum error")
        length = struct.unpack("<H", bytes(frame[5:7]))[0]
        if len(frame) < 8 + length + 2:
            raise pasori.clf.FramingError(
                "frame has {0} byte but expected {1}".format(
                    len(frame), 8 + length + 2))
        data = frame[8:8+length]
        if ((sum(data) + frame[8+length]) & 0xFF) != 0:
            raise pasori.clf.FramingError("frame data checksum error")
        if frame[8+length+1] != 0:
            raise pasori.clf.FramingError("frame postamble is not 00h")
        return cls(cls.DATA, data, frame[0:8+length+2])

    def __bytes__(self):
        return bytes(self._frame)

    def __repr__(self):
        return "Frame({0!r}, {1})".format(
            self._type, hexlify(self._frame).decode())

    @property
    def type(self):
        return self._type

    @property
    def data(self):
        return self._data


class CommunicationError(pasori.clf.Error):
    """An RF communication error reported for InCommRF. The *errno* is a
    bitmask, more than one error may be indicated. Comparing with an
    error name is true if the bit is set, ``NO_ERROR`` only compares
    equal to a zero *errno*.

    >>> error = CommunicationError(bytearray.fromhex("84000000"))
    >>> error == "CRC_ERROR", error == "RECEIVE_TIMEOUT_ERROR"
    (True, True)

    """
    err2str = {0x00000000: "NO_ERROR",
               0x00000001: "PROTOCOL_ERROR",
               0x00000002: "PARITY_ERROR",
               0x00000004: "CRC_ERROR",
               0x00000008: "COLLISION_ERROR",
               0x00000010: "OVERFLOW_ERROR",
               0x00000040: "TEMPERATURE_ERROR",
               0x00000080: "RECEIVE_TIMEOUT_ERROR",
               0x00000100: "CRYPTO1_ERROR",
               0x00000200: "RFCA_ERROR",
               0x00000400: "RF_OFF_ERROR",
               0x00000800: "TRANSMIT_TIMEOUT_ERROR",
               0x80000000: "RECEIVE_LENGTH_ERROR"
               }
    str2err = dict([(v, k) for k, v in err2str.items()])

    def __init__(self, status_bytes):
        self.errno = struct.unpack('<L', bytes(status_bytes))[0]

    def matches(self, strerr):
        try:
            mask = CommunicationError.str2err[strerr]
        except KeyError:
            raise ValueError("unknown communication error %r" % strerr)
        return bool(self.errno & mask) or self.errno == mask

    def __eq__(self, strerr):
        if not isinstance(strerr, str):
            return NotImplemented
        return self.matches(strerr)

    def __ne__(self, strerr):
        if not isinstance(strerr, str):
            return NotImplemented
        return not self.matches(strerr)

    __hash__ = pasori.clf.Error.__hash__

    def __str__(self):
        return CommunicationError.err2str.get(
            self.errno, "0x{0:08X}".format(self.errno))

    def __repr__(self):
        return "{0}({1})".format(self.__class__.__name__, self)


class StatusError(pasori.clf.Error):
    err2str = ("SUCCESS", "PARAMETER_ERROR", "PB_ERROR", "RFCA_ERROR",
               "TEMPERATURE_ERROR", "PWD_ERROR", "RECEIVE_ERROR",
               "COMMANDTYPE_ERROR")

    def __init__(self, status):
        self.errno = status

    def __str__(self):
        if 0 <= self.errno < len(StatusError.err2str):
            return StatusError.err2str[self.errno]
        return "UNKNOWN STATUS ERROR 0x{:02X}".format(self.errno)

    def __repr__(self):
        return "{0}({1})".format(self.__class__.__name__, self)


class Chipset(object):
    ACK = bytearray.fromhex('0000FF00FF00')
    CMD = {
        # RF Communication
        0x00: "InSetRF",
        0x02: "InSetProtocol",
        0x04: "InCommRF",
        0x06: "SwitchRF",
        0x10: "MaintainFlash",
        0x12: "ResetDevice",
        0x20: "GetFirmwareVersion",
        0x22: "GetPDDataVersion",
        0x24: "GetProperty",
        0x26: "InGetProtocol",
        0x28: "GetCommandType",
        0x2A: "SetCommandType",
        0x30: "InSetRCT",
        0x32: "InGetRCT",
        0x34: "GetPDData",
        0x36: "ReadRegister",
        0x40: "TgSetRF",
        0x42: "TgSetProtocol",
        0x44: "TgSetAuto",
        0x46: "TgSetRFOff",
        0x48: "TgCommRF",
        0x50: "TgGetProtocol",
        0x60: "TgSetRCT",
        0x62: "TgGetRCT",
        0xF0: "Diagnose",
    }

    # send and receive parameter bytes for InSetRF
    in_set_rf_settings = {
        "212F": (1, 1, 15, 1), "424F": (1, 2, 15, 2),
        "106A": (2, 3, 15, 3), "212A": (4, 4, 15, 4),
        "424A": (5, 5, 15, 5), "106B": (3, 7, 15, 7),
        "212B": (3, 8, 15, 8), "424B": (3, 9, 15, 9),
    }

    # InSetProtocol settings, the position is the setting number
    in_set_protocol_keys = (
        "initial_guard_time", "add_crc", "check_crc", "multi_card",
        "add_parity", "check_parity", "bitwise_anticoll",
        "last_byte_bit_count", "mifare_crypto", "add_sof",
        "check_sof", "add_eof", "check_eof", "rfu", "deaf_time",
        "continuous_receive_mode", "min_len_for_crm",
        "type_1_tag_rrdd", "rfca", "guard_time")

    in_set_protocol_defaults = bytearray.fromhex(
        "0018 0101 0201 0300 0400 0500 0600 0708 0800 0900"
        "0A00 0B00 0C00 0E04 0F00 1000 1100 1200 1306")

    def __init__(self, transport):
        self.transport = transport
        self.lock = threading.Lock()

    def init(self):
        # write ack to perform a soft reset
        # raises IOError(EACCES) if we're second
        self.transport.write(Chipset.ACK)

        # Clear any response data that may be leftover from the last
        # session when it was killed.
        try:
            while True:
                data = self.transport.read(timeout=10)
                log.debug("cleared garbage %s", hexlify(data).decode())
        except IOError:
            pass

        self.set_command_type(1)

    def close(self):
        if self.transport is None:
            return
        try:
            self.switch_rf('off')
            with self.lock:
                self.transport.write(Chipset.ACK)
        finally:
            with self.lock:
                if self.transport is not None:
                    self.transport.close()
                    self.transport = None

    def send_command(self, cmd_code, cmd_data, timeout=100):
        """Send the chipset command *cmd_code* with parameters *cmd_data*
        and return the response data that follows the response code.
        Both the ACK and the response frame must arrive within
        *timeout* milliseconds.

        **Exceptions**

        * :exc:`~exceptions.IOError` :const:`errno.ENODEV` if the
          chipset was closed, or any transport error.

        * :exc:`~pasori.clf.FramingError` if a received frame is
          malformed.

        * :exc:`~pasori.clf.ProtocolError` if the ACK frame is missing
          or the response code does not match *cmd_code*.

        """
        cmd_data = bytearray(cmd_data)
        log.log(logging.DEBUG-1, "{} {}".format(
            self.CMD.get(cmd_code, "0x{:02X}".format(cmd_code)),
            hexlify(cmd_data).decode()))

        with self.lock:
            if self.transport is None:
                log.debug("transport closed in send_command")
                raise IOError(errno.ENODEV, os.strerror(errno.ENODEV))

            cmd = bytearray([0xD6, cmd_code]) + cmd_data
            self.transport.write(bytes(Frame.encode(cmd)))

            ack = Frame.decode(self.transport.read(timeout))
            if ack.type != Frame.ACK:
                raise pasori.clf.ProtocolError(
                    "expected ack but got {}".format(ack.type))

            try:
                rsp = Frame.decode(self.transport.read(timeout))
            except IOError as error:
                if error.errno == errno.ETIMEDOUT:
                    self.transport.write(Chipset.ACK)  # cancel command
                raise

            if rsp.type != Frame.DATA:
                raise pasori.clf.ProtocolError(
                    "expected data but got {}".format(rsp.type))

            rsp_code = bytearray([0xD7, (cmd_code + 1) & 0xFF])
            if rsp.data[0:2] != rsp_code:
                raise pasori.clf.ProtocolError(
                    "expected rsp code {} not {}".format(
                        hexlify(rsp_code).decode().upper(),
                        hexlify(rsp.data[0:2]).decode().upper()))

            return rsp.data[2:]

    def in_set_rf(self, brty_send, brty_recv=None):
        if brty_recv is None:
            brty_recv = brty_send
        for brty in (brty_send, brty_recv):
            if brty not in self.in_set_rf_settings:
                raise ValueError("unknown bitrate {0!r}".format(brty))
        data = (self.in_set_rf_settings[brty_send][0:2] +
                self.in_set_rf_settings[brty_recv][2:4])
        data = self.send_command(0x00, data)
        if data and data[0] != 0:
            raise StatusError(data[0])

    def in_set_protocol(self, data=None, **kwargs):
        data = bytearray() if data is None else bytearray(data)
        for key, value in sorted(kwargs.items()):
            if key not in self.in_set_protocol_keys:
                raise ValueError("unknown protocol setting {0!r}".format(key))
            index = self.in_set_protocol_keys.index(key)
            data.extend(bytearray([index, int(value)]))
        if len(data) > 0:
            data = self.send_command(0x02, data)
            if data and data[0] != 0:
                raise StatusError(data[0])

    def in_comm_rf(self, data, timeout):
        """Send *data* and return the data received from the remote
        target. The chipset waits at most *timeout* milliseconds for a
        response, the value is sent in units of 0.1 ms and limited to
        65535 units. The host waits 100 ms longer than the chipset.

        """
        if timeout < 0:
            raise ValueError("timeout must not be negative")
        rf_timeout = min(int(math.ceil(timeout)) * 10, 0xFFFF)
        data = self.send_command(0x04,
                                 struct.pack("<H", rf_timeout) + bytes(data),
                                 timeout=rf_timeout // 10 + 100)
        if len(data) < 4:
            raise pasori.clf.ProtocolError(
                "InCommRF response too short: %s" % hexlify(data).decode())
        if tuple(data[0:4]) != (0, 0, 0, 0):
            raise CommunicationError(data[0:4])
        return data[5:]

    def switch_rf(self, switch):
        switch = ("off", "on").index(switch)
        data = self.send_command(0x06, [switch])
        if data and data[0] != 0:
            raise StatusError(data[0])

    def reset_device(self, startup_delay=0):
        self.send_command(0x12, struct.pack("<H", startup_delay))
        with self.lock:
            self.transport.write(Chipset.ACK)
        time.sleep(float(startup_delay + 500)/1000)

    def get_firmware_version(self, option=None):
        assert option in (None, 0x60, 0x61, 0x80)
        data = self.send_command(0x20, [option] if option else [])
        self._check_length("GetFirmwareVersion", data, 2)
        log.debug("firmware version {1:x}.{0:02x}".format(*data))
        return data

    def get_pd_data_version(self):
        data = self.send_command(0x22, [])
        self._check_length("GetPDDataVersion", data, 2)
        log.debug("package data format {1:x}.{0:02x}".format(*data))
        return data

    def get_command_type(self):
        data = self.send_command(0x28, [])
        self._check_length("GetCommandType", data, 8)
        return struct.unpack(">Q", bytes(data[0:8]))[0]

    @staticmethod
    def _check_length(name, data, length):
        if len(data) < length:
            raise pasori.clf.ProtocolError(
                "{0} response too short: {1}".format(
                    name, hexlify(data).decode()))

    def set_command_type(self, command_type):
        data = self.send_command(0x2A, [command_type])
        if data and data[0] != 0:
            raise StatusError(data[0])


class Device(object):
    # Device driver for the Sony NFC Port-100 chipset.

    # InSetProtocol settings applied after the defaults, per technology
    protocol_settings = {
        "A": dict(initial_guard_time=6, add_parity=1, check_parity=1,
                  add_crc=1, check_crc=1, last_byte_bit_count=8),
        "B": dict(initial_guard_time=20, add_sof=1, check_sof=1,
                  add_eof=1, check_eof=1),
        "F": dict(initial_guard_time=24),
    }

    def __init__(self, chipset):
        self.chipset = chipset
        self._vendor_name = None
        self._product_name = None
        self._path = None

        minor, major = self.chipset.get_firmware_version()[0:2]
        self._chipset_name = "NFC Port-100 v{0:x}.{1:02x}".format(major, minor)

    def __str__(self):
        strings = (self.vendor_name, self.product_name, self.chipset_name)
        return ' '.join(filter(bool, strings)) + " at " + str(self.path)

    @property
    def vendor_name(self):
        """The USB manufacturer string, or None if it could not be read."""
        return self._vendor_name

    @property
    def product_name(self):
        """The USB product string, or None if it could not be read."""
        return self._product_name

    @property
    def chipset_name(self):
        return self._chipset_name

    @property
    def path(self):
        """The ``usb:bus:device`` path the device was opened with."""
        return self._path

    def close(self):
        self.chipset.close()

    def mute(self):
        self.chipset.switch_rf("off")

    def setup_rf(self, brty):
        """Configure bitrate, modulation and framing for exchanging
        frames with a target of the technology in *brty*, for example
        "106A" or "212F".

        """
        if brty not in self.chipset.in_set_rf_settings:
            raise ValueError("unknown bitrate {0!r}".format(brty))
        self.chipset.in_set_rf(brty)
        self.chipset.in_set_protocol(self.chipset.in_set_protocol_defaults)
        self.chipset.in_set_protocol(**self.protocol_settings[brty[-1]])

    def exchange(self, data, timeout):
        log.debug(">> %s (%d ms)", hexlify(data).decode(), timeout)
        data = self.chipset.in_comm_rf(data, timeout)
        log.debug("<< %s", hexlify(data).decode())
        return data

    def sense_tta(self):
        """Send a SENS_REQ at 106 kbps and return the 2 byte SENS_RES, or
        None if no Type A target answered. Anticollision and selection
        of the target are not performed.

        """
        log.debug("polling for NFC-A technology")

        self.chipset.in_set_rf("106A")
        self.chipset.in_set_protocol(self.chipset.in_set_protocol_defaults)
        self.chipset.in_set_protocol(initial_guard_time=6, add_crc=0,
                                     check_crc=0, check_parity=1,
                                     last_byte_bit_count=7)

        sens_req = bytearray.fromhex("26")
        try:
            sens_res = self.chipset.in_comm_rf(sens_req, 30)
        except CommunicationError as error:
            if error != "RECEIVE_TIMEOUT_ERROR":
                raise
            return None

        if len(sens_res) != 2:
            log.debug("SENS_RES must be 2 byte, got %d", len(sens_res))
            return None

        log.debug("rcvd SENS_RES %s", hexlify(sens_res).decode())
        if sens_res[0] & 0x1F == 0:
            log.debug("type 1 tag target found")
        return sens_res

    def sense_ttf(self, brty="212F", sensf_req=None):
        """Send a SENSF_REQ and return the SENSF_RES, or None if no Type F
        target answered. The default request polls for any system
        code without request code.

        """
        log.debug("polling for NFC-F technology")

        if brty not in ("212F", "424F"):
            raise ValueError("unsupported bitrate {0}".format(brty))

        self.setup_rf(brty)

        if sensf_req is None:
            sensf_req = bytearray.fromhex("00FFFF0100")

        log.debug("send SENSF_REQ %s", hexlify(sensf_req).decode())
        try:
            frame = bytearray([len(sensf_req)+1]) + sensf_req
            frame = self.chipset.in_comm_rf(frame, 10)
        except CommunicationError as error:
            if error != "RECEIVE_TIMEOUT_ERROR":
                raise
            return None

        if 18 <= len(frame) == frame[0] and frame[1] == 1:
            log.debug("rcvd SENSF_RES %s", hexlify(frame[1:]).decode())
            return frame[1:]

    def get_max_send_data_size(self):
        return 290

    def get_max_recv_data_size(self):
        return 290


def init(transport):
    try:
        chipset = Chipset(transport)
        chipset.init()
        device = Device(chipset)
    except (IOError, pasori.clf.Error):
        transport.close()
        raise
    device._vendor_name = transport.manufacturer_name
    device._product_name = transport.product_name
    return device
