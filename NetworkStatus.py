# NetworkStatus - a status bar block that shows what the NetworkManager daemon
# says about the active connections.
#
# (C)2011-2016 Dennis Kaarsemaker
# License: zlib

import dbus
import enum
import os
import socket
import struct
import subprocess
import sys
import threading
import time
import types
import uuid
from collections import namedtuple

from dbus.mainloop.glib import DBusGMainLoop
from gi.repository import GLib

try:
    debuglevel = int(os.environ['NM_DEBUG'])
    def debug(msg, data):
        sys.stderr.write(msg + "\n")
        sys.stderr.write(repr(data)+"\n")
except (KeyError, ValueError):
    debug = lambda *args: None

BLOCK_NAME = 'networkmanager'

NM_SERVICE = 'org.freedesktop.NetworkManager'
NM_PATH = '/org/freedesktop/NetworkManager'
NM_INTERFACE = 'org.freedesktop.NetworkManager'
PROPERTIES_INTERFACE = 'org.freedesktop.DBus.Properties'
ROOT_PATH = '/'

# Seconds
REQUEST_TIMEOUT = 1.0
KEEPALIVE_INTERVAL = 300

DISCONNECTED_GLYPH = u'×'
ERROR_GLYPH = 'E'
NO_IP_GLYPH = u'×'

class BlockError(Exception):
    def __init__(self, block, message):
        super(BlockError, self).__init__(block, message)
        self.block = block
        self.message = message

    def __str__(self):
        return "Error in block '%s': %s" % (self.block, self.message)

class ConfigError(BlockError):
    pass

class NetworkError(BlockError):
    """A single property lookup failed. The refresh decides how to degrade."""
    def __init__(self, message, path=None, interface=None, property=None):
        super(NetworkError, self).__init__(BLOCK_NAME, message)
        self.path = path
        self.interface = interface
        self.property = property

    def __str__(self):
        if self.path is None:
            return super(NetworkError, self).__str__()
        return "Error in block '%s': %s (%s.%s on %s)" % (
            self.block, self.message, self.interface, self.property, self.path)

class NoPrimaryConnection(NetworkError):
    pass

class DecodeError(NetworkError):
    pass

# Display severity of a widget, lowest to highest
class State(enum.IntEnum):
    IDLE = 0
    INFO = 1
    GOOD = 2
    WARNING = 3
    CRITICAL = 4

# https://networkmanager.dev/docs/api/latest/nm-dbus-types.html
class NetworkState(enum.IntEnum):
    UNKNOWN = 0
    ASLEEP = 10
    DISCONNECTED = 20
    DISCONNECTING = 30
    CONNECTING = 40
    CONNECTED_LOCAL = 50
    CONNECTED_SITE = 60
    CONNECTED_GLOBAL = 70

    @classmethod
    def from_code(cls, code):
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN

    def to_state(self):
        return {
            NetworkState.CONNECTED_GLOBAL: State.GOOD,
            NetworkState.CONNECTED_SITE: State.INFO,
            NetworkState.CONNECTED_LOCAL: State.IDLE,
            NetworkState.CONNECTING: State.WARNING,
            NetworkState.DISCONNECTING: State.WARNING,
        }.get(self, State.CRITICAL)

    def to_glyph(self):
        if self in (NetworkState.DISCONNECTED, NetworkState.ASLEEP):
            return DISCONNECTED_GLYPH
        if self == NetworkState.UNKNOWN:
            return ERROR_GLYPH
        return ''

    def good_state(self):
        """The severity an activated connection gets under this overall state"""
        return {
            NetworkState.CONNECTED_GLOBAL: State.GOOD,
            NetworkState.CONNECTED_SITE: State.INFO,
        }.get(self, State.IDLE)

    @property
    def is_offline(self):
        return self in (NetworkState.DISCONNECTED, NetworkState.ASLEEP, NetworkState.UNKNOWN)

class ActiveConnectionState(enum.IntEnum):
    UNKNOWN = 0
    ACTIVATING = 1
    ACTIVATED = 2
    DEACTIVATING = 3
    DEACTIVATED = 4

    @classmethod
    def from_code(cls, code):
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN

    def to_state(self, good):
        if self == ActiveConnectionState.ACTIVATED:
            return good
        if self in (ActiveConnectionState.ACTIVATING, ActiveConnectionState.DEACTIVATING):
            return State.WARNING
        return State.CRITICAL

class DeviceType(enum.IntEnum):
    UNKNOWN = 0
    ETHERNET = 1
    WIFI = 2
    MODEM = 8
    BRIDGE = 13
    TUN = 16
    WIREGUARD = 29

    @classmethod
    def from_code(cls, code):
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN

    @property
    def icon_name(self):
        return {
            DeviceType.ETHERNET: 'net_wired',
            DeviceType.WIFI: 'net_wireless',
            DeviceType.MODEM: 'net_modem',
            DeviceType.BRIDGE: 'net_bridge',
            DeviceType.TUN: 'net_bridge',
            DeviceType.WIREGUARD: 'net_vpn',
        }.get(self)

    @property
    def display_name(self):
        return self.name.title()

class Ipv4Address(namedtuple('Ipv4Address', 'address prefix gateway')):
    __slots__ = ()

    def __str__(self):
        return "%s/%d" % (self.address, self.prefix)

# Several fixer methods to make the data easier to handle in python
# - SSID returned as bytes (only encoding tried is utf-8)
# - IPv4 addresses are network-order bytes inside host-order words
class fixups(object):
    @staticmethod
    def ssid_to_python(ssid):
        if not isinstance(ssid, (bytes, bytearray, list, tuple)):
            raise DecodeError("Failed to read ssid")
        try:
            return bytes(bytearray(ssid)).decode('utf-8')
        except (TypeError, ValueError) as e:
            if isinstance(e, UnicodeDecodeError):
                raise DecodeError("Failed to parse ssid") from e
            raise DecodeError("Failed to read ssid") from e

    @staticmethod
    def ssid_to_dbus(ssid):
        if isinstance(ssid, str):
            ssid = ssid.encode('utf-8')
        return [dbus.Byte(x) for x in ssid]

    @staticmethod
    def addr_to_python(addr):
        return socket.inet_ntop(socket.AF_INET, struct.pack('I', addr))

    @staticmethod
    def addr_to_dbus(addr):
        return dbus.UInt32(struct.unpack('I', socket.inet_pton(socket.AF_INET, addr))[0])

    @staticmethod
    def addrconf_to_python(addrconf):
        words = list(addrconf)
        if len(words) != 3:
            raise DecodeError("Expected 3 address words, got %d" % len(words))
        for word in words:
            if isinstance(word, bool) or not isinstance(word, int) or not 0 <= word <= 0xffffffff:
                raise DecodeError("Invalid address word %r" % (word,))
        addr, prefix, gateway = words
        return Ipv4Address(
            fixups.addr_to_python(addr),
            int(prefix),
            fixups.addr_to_python(gateway)
        )

    @staticmethod
    def addrconf_to_dbus(addrconf):
        addr, prefix, gateway = addrconf
        return dbus.Array([
            fixups.addr_to_dbus(addr),
            dbus.UInt32(prefix),
            fixups.addr_to_dbus(gateway)
        ], signature='u')

def unwrap(val):
    if isinstance(val, (dbus.ByteArray, bytes)):
        return bytes(val)
    if isinstance(val, (dbus.Array, dbus.Struct, list, tuple)):
        return [unwrap(x) for x in val]
    if isinstance(val, (dbus.Dictionary, dict)):
        return dict([(unwrap(x), unwrap(y)) for x, y in val.items()])
    if isinstance(val, (dbus.ObjectPath, dbus.Signature, dbus.String)):
        return str(val)
    if isinstance(val, dbus.Boolean):
        return bool(val)
    if isinstance(val, (dbus.Byte, dbus.Int16, dbus.UInt16, dbus.Int32, dbus.UInt32, dbus.Int64, dbus.UInt64)):
        return int(val)
    return val

# Remote objects are plain (kind, path) records. Nothing is cached on them,
# every getter below is one round trip.
class ActiveConnection(namedtuple('ActiveConnection', 'path')):
    __slots__ = ()
    interface_name = 'org.freedesktop.NetworkManager.Connection.Active'

class Device(namedtuple('Device', 'path')):
    __slots__ = ()
    interface_name = 'org.freedesktop.NetworkManager.Device'
    wireless_interface_name = 'org.freedesktop.NetworkManager.Device.Wireless'

class AccessPoint(namedtuple('AccessPoint', 'path')):
    __slots__ = ()
    interface_name = 'org.freedesktop.NetworkManager.AccessPoint'

class IP4Config(namedtuple('IP4Config', 'path')):
    __slots__ = ()
    interface_name = 'org.freedesktop.NetworkManager.IP4Config'

def get_property(bus, path, interface_name, name, byte_arrays=False):
    debug("Requesting property %s.%s on %s" % (interface_name, name, path), None)
    try:
        data = bus.call_blocking(NM_SERVICE, path, PROPERTIES_INTERFACE, 'Get', 'ss',
                                 (interface_name, name), timeout=REQUEST_TIMEOUT,
                                 byte_arrays=byte_arrays)
    except dbus.exceptions.DBusException as e:
        raise NetworkError("Failed to retrieve property", path, interface_name, name) from e
    debug("Received property %s.%s" % (interface_name, name), data)
    return unwrap(data)

def _expect_int(val, path, interface_name, name):
    if isinstance(val, bool) or not isinstance(val, int):
        raise NetworkError("Failed to read property", path, interface_name, name)
    return val

def _expect_path(val, path, interface_name, name):
    if not isinstance(val, str) or not val.startswith('/'):
        raise NetworkError("Failed to read property", path, interface_name, name)
    return val

def _expect_object(val, path, interface_name, name, what):
    val = _expect_path(val, path, interface_name, name)
    if val == ROOT_PATH:
        raise NetworkError("No %s" % what, path, interface_name, name)
    return val

def _expect_paths(val, path, interface_name, name):
    if not isinstance(val, list):
        raise NetworkError("Failed to read property", path, interface_name, name)
    return [_expect_path(x, path, interface_name, name) for x in val]

def network_state(bus):
    val = get_property(bus, NM_PATH, NM_INTERFACE, 'State')
    return NetworkState.from_code(_expect_int(val, NM_PATH, NM_INTERFACE, 'State'))

def primary_connection(bus):
    val = get_property(bus, NM_PATH, NM_INTERFACE, 'PrimaryConnection')
    val = _expect_path(val, NM_PATH, NM_INTERFACE, 'PrimaryConnection')
    if val == ROOT_PATH:
        raise NoPrimaryConnection("No primary connection", NM_PATH, NM_INTERFACE, 'PrimaryConnection')
    return ActiveConnection(val)

def active_connections(bus):
    val = get_property(bus, NM_PATH, NM_INTERFACE, 'ActiveConnections')
    return [ActiveConnection(x) for x in _expect_paths(val, NM_PATH, NM_INTERFACE, 'ActiveConnections')]

def connection_state(bus, conn):
    val = get_property(bus, conn.path, conn.interface_name, 'State')
    return ActiveConnectionState.from_code(_expect_int(val, conn.path, conn.interface_name, 'State'))

def connection_devices(bus, conn):
    val = get_property(bus, conn.path, conn.interface_name, 'Devices')
    return [Device(x) for x in _expect_paths(val, conn.path, conn.interface_name, 'Devices')]

def connection_ip4config(bus, conn):
    val = get_property(bus, conn.path, conn.interface_name, 'Ip4Config')
    return IP4Config(_expect_object(val, conn.path, conn.interface_name, 'Ip4Config', 'ip4config'))

def device_type(bus, device):
    val = get_property(bus, device.path, device.interface_name, 'DeviceType')
    return DeviceType.from_code(_expect_int(val, device.path, device.interface_name, 'DeviceType'))

def device_active_access_point(bus, device):
    iface = device.wireless_interface_name
    val = get_property(bus, device.path, iface, 'ActiveAccessPoint')
    return AccessPoint(_expect_object(val, device.path, iface, 'ActiveAccessPoint', 'active access point'))

def access_point_ssid(bus, ap):
    val = get_property(bus, ap.path, ap.interface_name, 'Ssid', byte_arrays=True)
    try:
        return fixups.ssid_to_python(val)
    except DecodeError as e:
        e.path, e.interface, e.property = ap.path, ap.interface_name, 'Ssid'
        raise

def ip4config_addresses(bus, config):
    val = get_property(bus, config.path, config.interface_name, 'Addresses')
    if not isinstance(val, list):
        raise NetworkError("Failed to read addresses", config.path, config.interface_name, 'Addresses')
    try:
        return [fixups.addrconf_to_python(addr) for addr in val]
    except (DecodeError, TypeError) as e:
        raise DecodeError("Failed to read addresses", config.path, config.interface_name, 'Addresses') from e

Task = namedtuple('Task', 'id update_time')

# dbus-python dispatches signals on the default GLib main context only, so
# every listener in the process shares one loop thread on that context.
_loop_lock = threading.Lock()
_loop_thread = None

def _run_main_loop():
    GLib.MainLoop().run()

def start_main_loop():
    global _loop_thread
    with _loop_lock:
        if _loop_thread is None:
            _loop_thread = threading.Thread(target=_run_main_loop, name='%s-mainloop' % BLOCK_NAME)
            _loop_thread.daemon = True
            _loop_thread.start()
        return _loop_thread

class ChangeListener(object):
    """Turns NetworkManager change notifications into wake tasks.

    Each listener owns a private system bus connection and its own
    keepalive timer, which sends a wake even when NetworkManager stays
    silent. Both are served by the GLib main loop thread, which runs for
    the rest of the process. The wake queue is the only thing shared with
    the refresh side. A full queue blocks the loop thread until the host
    takes a task, so no wake is lost.
    """
    match_args = {
        'signal_name': 'PropertiesChanged',
        'dbus_interface': NM_INTERFACE,
        'path': NM_PATH,
    }

    def __init__(self, block_id, send, bus=None, keepalive=KEEPALIVE_INTERVAL):
        self.block_id = block_id
        self.send = send
        self.keepalive = keepalive
        self.thread = None
        self.timer = None
        try:
            if bus is None:
                bus = dbus.SystemBus(mainloop=DBusGMainLoop(), private=True)
            self.bus = bus
            self.receiver = bus.add_signal_receiver(self.on_signal, **self.match_args)
        except dbus.exceptions.DBusException as e:
            raise BlockError(BLOCK_NAME, "Failed to subscribe to NetworkManager signals") from e

    def on_signal(self, *args, **kwargs):
        debug("Received signal for %s" % self.block_id, args)
        self.wake()

    def on_keepalive(self):
        self.wake()
        return True

    def wake(self):
        task = Task(self.block_id, time.monotonic())
        self.send.put(task)
        debug("Sent wake", task)
        return task

    def start(self):
        self.timer = GLib.timeout_add_seconds(self.keepalive, self.on_keepalive)
        self.thread = start_main_loop()
        return self.thread

DEFAULT_ICONS = {
    'net_wired': 'ETH ',
    'net_wireless': 'WLAN ',
    'net_modem': 'MODEM ',
    'net_bridge': 'BRIDGE ',
    'net_vpn': 'VPN ',
    'unknown': '? ',
}

class Config(object):
    """Host-wide settings shared by every widget built in one refresh"""
    def __init__(self, icons=None):
        merged = dict(DEFAULT_ICONS)
        merged.update(icons or {})
        self.icons = types.MappingProxyType(merged)

    def icon(self, name):
        return self.icons.get(name, '')

class Widget(object):
    def __init__(self, config, instance):
        self.config = config
        self.instance = instance
        self.state = State.IDLE
        self.text = ''

    def set_state(self, state):
        self.state = state

    def set_text(self, text):
        self.text = text

    def render(self):
        return {
            'name': self.instance,
            'full_text': self.text,
            'state': self.state.name.lower(),
        }

class MouseButton(object):
    LEFT = 1
    MIDDLE = 2
    RIGHT = 3

I3BarEvent = namedtuple('I3BarEvent', 'name button')

_config_fields = ('on_click', 'primary_only', 'unknown_device_icon', 'ip', 'ssid', 'max_ssid_width')

class NetworkManagerConfig(namedtuple('NetworkManagerConfig', _config_fields,
                                      defaults=(None, False, False, True, True, 21))):
    __slots__ = ()

    @classmethod
    def from_dict(cls, data):
        unknown = sorted(set(data) - set(cls._fields))
        if unknown:
            raise ConfigError(BLOCK_NAME, "Unknown configuration key(s): %s" % ", ".join(unknown))
        conf = cls(**data)
        if conf.on_click is not None and not isinstance(conf.on_click, str):
            raise ConfigError(BLOCK_NAME, "on_click must be a string")
        for key in ('primary_only', 'unknown_device_icon', 'ip', 'ssid'):
            if not isinstance(getattr(conf, key), bool):
                raise ConfigError(BLOCK_NAME, "%s must be a boolean" % key)
        width = conf.max_ssid_width
        if isinstance(width, bool) or not isinstance(width, int) or width < 0:
            raise ConfigError(BLOCK_NAME, "max_ssid_width must be a non-negative integer")
        return conf

class NetworkManagerBlock(object):
    def __init__(self, block_config, config, send, bus=None, listener=ChangeListener):
        self.id = uuid.uuid4().hex
        self.block_config = block_config
        self.config = config
        if bus is None:
            try:
                bus = dbus.SystemBus(private=True)
            except dbus.exceptions.DBusException as e:
                raise BlockError(BLOCK_NAME, "Failed to establish D-Bus connection") from e
        self.bus = bus
        self.listener = listener(self.id, send)
        self.listener.start()
        self.indicator = Widget(config, self.id)
        self.output = []

    def update(self):
        try:
            state = network_state(self.bus)
        except NetworkError as e:
            debug("Failed to retrieve state", e)
            state = NetworkState.UNKNOWN

        self.indicator.set_state(state.to_state())
        self.indicator.set_text(state.to_glyph())

        # No point bothering NetworkManager in these states
        if state.is_offline:
            self.output = []
            return None

        good = state.good_state()
        config = self.config
        self.output = [self.connection_widget(conn, good, config) for conn in self.connections()]
        return None

    def connections(self):
        """The connections to show, primary connection first"""
        if self.block_config.primary_only:
            try:
                return [primary_connection(self.bus)]
            except NetworkError as e:
                debug("No primary connection", e)
                return []

        try:
            active = active_connections(self.bus)
        except NetworkError as e:
            debug("Failed to retrieve active connections", e)
            active = []
        try:
            primary = [primary_connection(self.bus)]
        except NetworkError as e:
            debug("No primary connection", e)
            primary = []

        seen = set()
        ret = []
        for conn in primary + active:
            if conn.path not in seen:
                seen.add(conn.path)
                ret.append(conn)
        return ret

    def connection_widget(self, conn, good, config):
        widget = Widget(config, self.id)
        try:
            conn_state = connection_state(self.bus, conn)
        except NetworkError as e:
            debug("Failed to retrieve connection state", e)
            conn_state = ActiveConnectionState.UNKNOWN
        widget.set_state(conn_state.to_state(good))
        widget.set_text(self.device_text(conn, config) + self.ip_text(conn))
        return widget

    def device_text(self, conn, config):
        try:
            devices = connection_devices(self.bus, conn)
        except NetworkError as e:
            debug("Failed to retrieve devices", e)
            return ''
        return " ".join([self.device_label(device, config) for device in devices])

    def device_label(self, device, config):
        try:
            dev_type = device_type(self.bus, device)
        except NetworkError as e:
            debug("Failed to retrieve device type", e)
            dev_type = None

        if dev_type is None:
            icon = ''
        elif dev_type.icon_name is not None:
            icon = config.icon(dev_type.icon_name)
        elif self.block_config.unknown_device_icon:
            icon = config.icon('unknown')
        else:
            icon = dev_type.display_name

        # Without a type only the wireless lookup itself can tell
        ssid = ''
        if self.block_config.ssid and dev_type in (None, DeviceType.WIFI):
            try:
                ap = device_active_access_point(self.bus, device)
                ssid = access_point_ssid(self.bus, ap)[:self.block_config.max_ssid_width] + ' '
            except NetworkError as e:
                debug("Failed to retrieve ssid", e)
        return icon + ssid

    def ip_text(self, conn):
        if not self.block_config.ip:
            return ''
        try:
            addresses = ip4config_addresses(self.bus, connection_ip4config(self.bus, conn))
        except NetworkError as e:
            debug("Failed to retrieve addresses", e)
            return NO_IP_GLYPH
        if not addresses:
            return NO_IP_GLYPH
        return ",".join([str(addr) for addr in addresses])

    def view(self):
        if not self.output:
            return [self.indicator]
        return list(self.output)

    def click(self, event):
        if event.name != self.id or event.button != MouseButton.LEFT:
            return
        cmd = self.block_config.on_click
        if not cmd or not cmd.split():
            return
        args = cmd.split()
        debug("Running on_click command", args)
        try:
            subprocess.Popen(args)
        except OSError as e:
            raise BlockError(BLOCK_NAME, "Failed to run %s" % args[0]) from e
