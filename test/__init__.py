# These tests never touch the system bus. FakeBus answers property requests
# from a table, so any machine can run them.

import dbus
import ipaddress
import queue
import unittest

import NetworkStatus

NM_PATH = NetworkStatus.NM_PATH
CONN_IFACE = NetworkStatus.ActiveConnection.interface_name
DEVICE_IFACE = NetworkStatus.Device.interface_name
WIRELESS_IFACE = NetworkStatus.Device.wireless_interface_name
AP_IFACE = NetworkStatus.AccessPoint.interface_name
IP4_IFACE = NetworkStatus.IP4Config.interface_name

ICONS = {
    'net_wired': '<eth> ',
    'net_wireless': '<wifi>',
    'net_modem': '<modem> ',
    'net_bridge': '<bridge> ',
    'net_vpn': '<vpn> ',
    'unknown': '<?> ',
}

def unknown_property():
    return dbus.exceptions.DBusException("No such property",
                                         name='org.freedesktop.DBus.Error.UnknownProperty')

class FakeBus(object):
    """Answers org.freedesktop.DBus.Properties.Get from a table"""
    def __init__(self):
        self.properties = {}
        self.calls = []

    def set(self, path, interface, name, value):
        self.properties[(path, interface, name)] = value

    def call_blocking(self, bus_name, object_path, dbus_interface, method, signature, args,
                      timeout=-1.0, byte_arrays=False):
        self.calls.append((bus_name, object_path, dbus_interface, method, signature, tuple(args), timeout))
        key = (object_path,) + tuple(args)
        if key not in self.properties:
            raise unknown_property()
        value = self.properties[key]
        if isinstance(value, Exception):
            raise value
        return value

    # Helpers to describe a NetworkManager object tree
    def manager(self, state, primary='/', active=()):
        self.set(NM_PATH, NetworkStatus.NM_INTERFACE, 'State', dbus.UInt32(state))
        self.set(NM_PATH, NetworkStatus.NM_INTERFACE, 'PrimaryConnection', dbus.ObjectPath(primary))
        self.set(NM_PATH, NetworkStatus.NM_INTERFACE, 'ActiveConnections',
                 dbus.Array([dbus.ObjectPath(x) for x in active], signature='o'))

    def connection(self, path, state=2, devices=(), ip4config='/'):
        self.set(path, CONN_IFACE, 'State', dbus.UInt32(state))
        self.set(path, CONN_IFACE, 'Devices', dbus.Array([dbus.ObjectPath(x) for x in devices], signature='o'))
        self.set(path, CONN_IFACE, 'Ip4Config', dbus.ObjectPath(ip4config))

    def device(self, path, type, access_point=None):
        self.set(path, DEVICE_IFACE, 'DeviceType', dbus.UInt32(type))
        if access_point is not None:
            self.set(path, WIRELESS_IFACE, 'ActiveAccessPoint', dbus.ObjectPath(access_point))

    def access_point(self, path, ssid):
        if isinstance(ssid, str):
            ssid = ssid.encode('utf-8')
        self.set(path, AP_IFACE, 'Ssid', dbus.ByteArray(ssid))

    def ip4config(self, path, addresses):
        words = [NetworkStatus.fixups.addrconf_to_dbus(NetworkStatus.Ipv4Address(*addr)) for addr in addresses]
        self.set(path, IP4_IFACE, 'Addresses', dbus.Array(words, signature='au'))

class FakeSignalBus(object):
    def __init__(self, fail=False):
        self.fail = fail
        self.receivers = []

    def add_signal_receiver(self, handler, **kwargs):
        if self.fail:
            raise dbus.exceptions.DBusException("Connection is closed",
                                                name='org.freedesktop.DBus.Error.Disconnected')
        self.receivers.append((handler, kwargs))
        return object()

class FakeListener(object):
    def __init__(self, block_id, send):
        self.block_id = block_id
        self.send = send
        self.started = False

    def start(self):
        self.started = True

class TestCase(unittest.TestCase):
    def assertIsIpAddress(self, ip):
        try:
            ipaddress.ip_address(str(ip))
        except ValueError as e:
            raise self.failureException(str(e))

    def assertIsIpNetwork(self, ip, prefix):
        try:
            ipaddress.ip_network((ip, prefix), strict=False)
        except ValueError as e:
            raise self.failureException(str(e))

    def assertRaisesNetworkError(self, message, func, *args, **kwargs):
        with self.assertRaises(NetworkStatus.NetworkError) as cm:
            func(*args, **kwargs)
        self.assertEqual(cm.exception.message, message)
        return cm.exception

    def make_block(self, bus, **block_config):
        conf = NetworkStatus.NetworkManagerConfig.from_dict(block_config)
        config = NetworkStatus.Config(icons=ICONS)
        return NetworkStatus.NetworkManagerBlock(conf, config, queue.Queue(maxsize=16),
                                                 bus=bus, listener=FakeListener)

    def texts(self, block):
        return [w.text for w in block.view()]

    def states(self, block):
        return [w.state for w in block.view()]
