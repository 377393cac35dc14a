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
import pasori
import pasori.clf.device
import pasori.clf.rcs380
import pasori.clf.transport

import os
import time
import errno
import logging
import platform
import argparse
from binascii import hexlify

description = """

The pasori module drives a Sony RC-S380 contactless reader through
libusb. Executing it as a module searches this machine for readers
and prints what was found. With --poll the first reader found sends a
polling request in a loop and prints the responses.

"""


def main(args):
    print("This is the %s version of pasori run in Python %s\non %s" %
          (pasori.__version__, platform.python_version(),
           platform.platform()))

    logging.basicConfig()
    log_levels = (logging.WARN, logging.INFO, logging.DEBUG, logging.DEBUG-1)
    log_level = log_levels[min(args.verbose, len(log_levels) - 1)]
    logging.getLogger('pasori').setLevel(log_level)

    if args.poll:
        return poll(args)

    print("I'm now searching your system for contactless readers")
    found = 0
    for vid, pid, bus, dev in pasori.clf.transport.USB.find(args.path) or []:
        if (vid, pid) in pasori.clf.device.usb_device_map:
            path = "usb:{0:03d}:{1:03d}".format(bus, dev)
            try:
                clf = pasori.ContactlessFrontend(path)
                print("** found %s" % clf.device)
                print("-- firmware version %s" % clf.get_firmware_version())
                clf.disconnect()
                found += 1
            except IOError as error:
                if error.errno == errno.EACCES:
                    usb_device_access_denied(bus, dev, vid, pid, path)
                elif error.errno == errno.EBUSY:
                    info = "** found usb:{0:04x}:{1:04x} at {2} but it's busy"
                    print(info.format(vid, pid, path))
                else:
                    print("** found %s but %s" % (path, error))
            except pasori.clf.Error as error:
                print("** found %s but it did not respond: %s" % (path, error))

    if not found:
        print("Sorry, but I couldn't find any contactless reader")
    return found


def poll(args):
    clf = pasori.ContactlessFrontend()
    if not clf.connect(args.path):
        print("Sorry, but I couldn't find any contactless reader")
        return 0

    data = bytearray.fromhex(args.data) if args.data else None
    count = [0]

    def terminate():
        return args.count and count[0] >= args.count

    with clf:
        print("** polling with %s, press Ctrl-C to stop" % clf.device)
        try:
            for rsp in clf.poll(args.brty, data, args.timeout,
                                args.interval, terminate):
                count[0] += 1
                if rsp is not None:
                    print("%.3f %s" % (time.time(), hexlify(rsp).decode()))
        except KeyboardInterrupt:
            pass
    return count[0]


def usb_device_access_denied(bus, dev, vid, pid, path):
    info = "** found usb:{vid:04x}:{pid:04x} at {path} but access is denied"
    print(info.format(vid=vid, pid=pid, path=path))
    if platform.system().lower() == "linux":
        devnode = "/dev/bus/usb/{0:03d}/{1:03d}".format(bus, dev)
        if not os.access(devnode, os.R_OK | os.W_OK):
            import pwd
            import grp
            usrname = pwd.getpwuid(os.getuid()).pw_name
            devinfo = os.stat(devnode)
            dev_usr = pwd.getpwuid(devinfo.st_uid).pw_name
            dev_grp = grp.getgrgid(devinfo.st_gid).gr_name

            udev_rule = 'SUBSYSTEM==\\"usb\\", ACTION==\\"add\\", ' \
                        'ATTRS{{idVendor}}==\\"{vid:04x}\\", ' \
                        'ATTRS{{idProduct}}==\\"{pid:04x}\\", ' \
                        'GROUP=\\"plugdev\\"'
            udev_file = "/etc/udev/rules.d/pasori.rules"

            print("-- the device is owned by '{dev_usr}' but you are '{user}'"
                  .format(dev_usr=dev_usr, user=usrname))
            print("-- also members of the '{dev_grp}' group would be permitted"
                  .format(dev_grp=dev_grp))
            print("-- better assign the device to the 'plugdev' group")
            print("   sudo sh -c 'echo {udev_rule} >> {udev_file}'".format(
                udev_rule=udev_rule.format(vid=vid, pid=pid),
                udev_file=udev_file))
            print("   sudo udevadm control -R # then re-attach device")


parser = argparse.ArgumentParser(
    prog="python -m pasori", description=description)

parser.add_argument(
    "--path", default="usb",
    help="search path, for example usb:054c:06c1 or usb:001:023")

parser.add_argument(
    "--poll", action="store_true",
    help="poll for targets with the first reader found")

parser.add_argument(
    "--brty", default="212F",
    choices=sorted(pasori.clf.rcs380.Chipset.in_set_rf_settings),
    help="bitrate and modulation for polling (default: %(default)s)")

parser.add_argument(
    "--data", metavar="HEX",
    help="frame to send when polling (default: a Type F SENSF_REQ)")

parser.add_argument(
    "--timeout", type=float, default=10,
    help="response timeout in milliseconds (default: %(default)s)")

parser.add_argument(
    "--interval", type=float, default=0.1,
    help="seconds between polling rounds (default: %(default)s)")

parser.add_argument(
    "--count", type=int, default=0,
    help="stop after this many polling rounds, 0 means forever")

parser.add_argument(
    "--verbose", "-v", action="count", default=0,
    help="be verbose. Multiple -v options increase the verbosity.")

if __name__ == "__main__":  # pragma: no cover
    main(parser.parse_args())
