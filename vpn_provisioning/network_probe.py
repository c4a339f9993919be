# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import re
import time
from dataclasses import dataclass
from ipaddress import IPv4Address
from typing import Callable
from typing import Optional

import requests

from vpn_provisioning._core import Host
from vpn_provisioning._core import Run
from vpn_provisioning._exceptions import NetworkDetectionError
from vpn_provisioning._shell import CommandFailed

_interface_name_re = re.compile(r'[A-Za-z0-9_.@:-]{1,15}')

_HTTP_TIMEOUT_SEC = 10
_ATTEMPTS = 3
_BACKOFF_SEC = 1


def is_valid_interface_name(name: str) -> bool:
    """Check name against what Linux accepts and what is safe to quote.

    >>> is_valid_interface_name('eth0'), is_valid_interface_name('enp0s31f6')
    (True, True)
    >>> is_valid_interface_name('eth0" accept'), is_valid_interface_name('x' * 16)
    (False, False)
    """
    return _interface_name_re.fullmatch(name) is not None


@dataclass(frozen=True)
class HostNetworkInfo:
    wan_interface: str
    public_ip: IPv4Address

    def __post_init__(self):
        if not self.wan_interface or not is_valid_interface_name(self.wan_interface):
            raise NetworkDetectionError(f"Invalid WAN interface: {self.wan_interface!r}")
        if not isinstance(self.public_ip, IPv4Address):
            raise NetworkDetectionError(f"Public IP must be IPv4, got {self.public_ip!r}")


def parse_default_route_interface(route_output: str) -> str:
    """Take interface of the first default route.

    >>> parse_default_route_interface('default via 203.0.113.1 dev eth0 proto dhcp metric 100\\n')
    'eth0'
    >>> parse_default_route_interface('default dev ppp0 scope link\\ndefault via 10.0.0.1 dev eth1\\n')
    'ppp0'
    >>> parse_default_route_interface('')
    Traceback (most recent call last):
    ...
    vpn_provisioning._exceptions.NetworkDetectionError: No default route
    """
    line = next((line for line in route_output.splitlines() if line.strip()), '')
    if not line:
        raise NetworkDetectionError("No default route")
    parts = line.split()
    if 'dev' not in parts or parts.index('dev') + 1 >= len(parts):
        raise NetworkDetectionError(f"Cannot parse default route: {line}")
    return parts[parts.index('dev') + 1]


def parse_public_ip(text: str) -> IPv4Address:
    """Parse body of the address echo service.

    >>> parse_public_ip('203.0.113.5\\n')
    IPv4Address('203.0.113.5')
    >>> parse_public_ip('2001:db8::1')
    Traceback (most recent call last):
    ...
    ipaddress.AddressValueError: Expected 4 octets in '2001:db8::1'
    """
    return IPv4Address(text.strip())


class NetworkProbe:
    """Find out where the traffic leaves the host and how the host is seen outside.

    Each part can be fixed by configuration,
    which skips the corresponding detection.
    """

    def __init__(
            self,
            host: Host,
            ip_echo_url: str,
            *,
            wan_interface: Optional[str] = None,
            public_ip: Optional[IPv4Address] = None,
            http_get: Callable[..., requests.Response] = requests.get,
            sleep: Callable[[float], None] = time.sleep,
            ):
        self._host = host
        self._ip_echo_url = ip_echo_url
        self._wan_interface = wan_interface
        self._public_ip = public_ip
        self._http_get = http_get
        self._sleep = sleep

    def probe(self) -> HostNetworkInfo:
        wan_interface = self._wan_interface or self.detect_wan_interface()
        public_ip = self._public_ip or self.fetch_public_ip()
        info = HostNetworkInfo(wan_interface, public_ip)
        _logger.info("WAN interface %s, public IP %s", info.wan_interface, info.public_ip)
        return info

    def detect_wan_interface(self) -> str:
        try:
            result = self._host.execute(Run(['ip', '-4', 'route', 'show', 'default']))
        except CommandFailed as e:
            raise NetworkDetectionError(f"Cannot read routing table: {e}") from e
        return parse_default_route_interface(result.stdout.decode(errors='backslashreplace'))

    def fetch_public_ip(self) -> IPv4Address:
        last_error = None
        for attempt in range(1, _ATTEMPTS + 1):
            self._host.check_cancelled()
            try:
                response = self._http_get(self._ip_echo_url, timeout=_HTTP_TIMEOUT_SEC)
                response.raise_for_status()
                return parse_public_ip(response.text)
            except (requests.RequestException, ValueError) as e:
                last_error = e
                _logger.warning(
                    "Attempt %d/%d to get public IP from %s failed: %s",
                    attempt, _ATTEMPTS, self._ip_echo_url, e)
                if attempt < _ATTEMPTS:
                    self._sleep(_BACKOFF_SEC * 2 ** (attempt - 1))
        raise NetworkDetectionError(
            f"Cannot get public IPv4 from {self._ip_echo_url} "
            f"after {_ATTEMPTS} attempts: {last_error}") from last_error


_logger = logging.getLogger(__name__)
