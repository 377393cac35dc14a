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
"""Discovery of locally connected readers. A reader is found through
:meth:`~pasori.clf.transport.USB.find`, matched against
:data:`usb_device_map` and then handed to the driver module's
``init()`` function. The driver interface is used internally by
:class:`~pasori.clf.ContactlessFrontend` and is not thread-safe.

"""
from . import transport

import os
import sys
import errno
import importlib

import logging
log = logging.getLogger(__name__)

usb_device_map = {
    (0x054c, 0x06c1): "rcs380",  # Sony RC-S380/S
    (0x054c, 0x06c3): "rcs380",  # Sony RC-S380/P
}


def connect(path):
    """Connect to a local device identified by *path* and load the
    appropriate device driver. The return value is either a driver
    :class:`~pasori.clf.rcs380.Device` instance or :const:`None`. A
    device that fails to open is skipped if *path* has less than three
    colon separated parts, like ``usb`` or ``usb:054c``, and its
    :exc:`IOError` is raised otherwise. This includes vendor and
    product paths like ``usb:054c:06c1`` as well as bus and device
    paths like ``usb:001:004``.

    """
    assert isinstance(path, str) and len(path) > 0

    found = transport.USB.find(path)
    if found is None:
        return None

    for vid, pid, bus, dev in found:
        module = usb_device_map.get((vid, pid))
        if module is None:
            continue

        log.debug("loading {mod} driver for usb:{vid:04x}:{pid:04x}"
                  .format(mod=module, vid=vid, pid=pid))

        if sys.platform.startswith("linux"):
            devnode = "/dev/bus/usb/%03d/%03d" % (int(bus), int(dev))
            if not os.access(devnode, os.R_OK | os.W_OK):
                log.debug("access denied to " + devnode)
                if len(path.split(':')) < 3:
                    continue
                else:
                    raise IOError(errno.EACCES, os.strerror(errno.EACCES))

        driver = importlib.import_module("pasori.clf." + module)
        try:
            device = driver.init(transport.USB(bus, dev))
        except IOError as error:
            log.debug(error)
            if len(path.split(':')) < 3:
                continue
            else:
                raise error

        device._path = "usb:{0:03}:{1:03}".format(int(bus), int(dev))
        return device
