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
"""The contactless frontend owns a single RC-S380 reader connected
through USB. It is either :class:`Disconnected` or :class:`Connected`,
and only a connected frontend holds a driver :class:`Device` with its
chipset and transport.

"""
import os
import time
import errno
import threading
from binascii import hexlify

import logging
log = logging.getLogger(__name__)


###############################################################################
#
# Exceptions
#
###############################################################################
class Error(Exception):
    """Base class for exceptions specific to the contacless frontend module.

    - FramingError
    - ProtocolError
    - rcs380.StatusError
    - rcs380.CommunicationError

    Transport failures are raised as :exc:`IOError` with an *errno*.

    """


class FramingError(Error):
    """Received bytes do not form a valid ACK, error or data frame, or a
    data frame has a wrong length or data checksum.

    """


class ProtocolError(Error):
    """The chipset did not answer with the frame that the command and
    response sequence requires, for example a data frame where an ACK
    was expected or a response code that does not match the command.

    """


###############################################################################
#
# Frontend
#
###############################################################################
class Disconnected(object):
    name = "disconnected"

    @property
    def device(self):
        raise IOError(errno.ENODEV, os.strerror(errno.ENODEV))


class Connected(object):
    name = "connected"

    def __init__(self, device):
        self.device = device


class ContactlessFrontend(object):
    """This class is the main interface for working with an RC-S380
    reader. A frontend starts out disconnected, :meth:`connect` opens
    the first reader that matches *path* and :meth:`disconnect` turns
    the RF field off and releases the USB device.

    >>> import pasori
    >>> with pasori.ContactlessFrontend('usb:054c:06c1') as clf:
    ...     print(clf.get_firmware_version())

    Any operation that needs the reader raises :exc:`IOError` with
    :data:`errno.ENODEV` while disconnected. The methods of this class
    are thread-safe.

    """
    def __init__(self, path=None):
        self.lock = threading.RLock()
        self._state = Disconnected()
        if path and not self.connect(path):
            raise IOError(errno.ENODEV, os.strerror(errno.ENODEV))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.disconnect()

    def __str__(self):
        if self.state == "connected":
            s = "{dev.vendor_name} {dev.product_name} on {dev.path}"
            return s.format(dev=self.device)
        else:
            return self.__repr__()

    @property
    def state(self):
        return self._state.name

    @property
    def device(self):
        return self._state.device

    def connect(self, path="usb:054c:06c1"):
        """Open the reader identified by the search *path* and return
        True, or False if no reader was found. The *path* is
        ``usb[:vendor[:product]]`` with four digit hexadecimal ids or
        ``usb[:bus[:device]]`` with three digit decimal numbers.

        A reader that was found but could not be opened raises
        :exc:`IOError` when *path* identifies a single device, for
        example :data:`errno.EACCES` if the process lacks permission
        or :data:`errno.EBUSY` if another process claimed it.

        """
        if not isinstance(path, str):
            raise TypeError("expecting a string type argument *path*")
        if not len(path) > 0:
            raise ValueError("argument *path* must not be empty")

        from . import device

        with self.lock:
            log.info("searching for reader on path " + path)
            if self.state == "connected":
                self.disconnect()
            found = device.connect(path)
            if found is None:
                log.error("no reader available on path " + path)
                return False
            log.info("using {0}".format(found))
            self._state = Connected(found)
            return True

    def disconnect(self):
        """Turn the RF field off and release the reader. Subsequent calls
        do nothing until the next :meth:`connect`."""
        with self.lock:
            if self.state == "connected":
                try:
                    self.device.close()
                finally:
                    self._state = Disconnected()

    def get_firmware_version(self):
        """Return the chipset firmware version as a "major.minor" string."""
        with self.lock:
            data = self.device.chipset.get_firmware_version()
            return "{1:x}.{0:02x}".format(*data)

    def sense_tta(self):
        """Send a Type A SENS_REQ and return the SENS_RES or None. This
        only detects that a Type A target is present, anticollision and
        selection are not performed."""
        with self.lock:
            return self.device.sense_tta()

    def exchange(self, data, timeout=30):
        with self.lock:
            return self.device.exchange(data, timeout)

    def poll(self, brty="212F", data=None, timeout=10, interval=0.1,
             terminate=lambda: False):
        """Repeatedly send *data* at bitrate and modulation *brty* and
        yield each response, or None for rounds without an answer.

        The generator stops after a round in which *terminate* returns
        a true value, or when the caller stops iterating. Calling
        :meth:`poll` again starts a new sequence. If *data* is None a
        Type F polling request for any system code is sent. The RF
        settings for *brty* are applied at the start of every round, so
        other operations may run between rounds.

        >>> import time
        >>> started = time.time()
        >>> for rsp in clf.poll(terminate=lambda: time.time()-started > 5):
        ...     if rsp: print(hexlify(rsp))

        """
        from .rcs380 import CommunicationError

        if data is None:
            data = bytearray.fromhex("0600FFFF0100")

        while not terminate():
            with self.lock:
                log.debug("poll %s %s", brty, hexlify(data).decode())
                # other operations may have changed the settings
                self.device.setup_rf(brty)
                try:
                    rsp = self.device.exchange(data, timeout)
                except CommunicationError as error:
                    if error != "RECEIVE_TIMEOUT_ERROR":
                        log.debug(error)
                    rsp = None
            yield rsp
            if interval:
                time.sleep(interval)
