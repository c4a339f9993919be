# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import fnmatch
import logging
import os
import re
import socket
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from ipaddress import IPv4Address
from ipaddress import IPv4Network
from pathlib import Path
from typing import Mapping
from typing import Optional
from typing import Sequence
from typing import Tuple

from vpn_provisioning._exceptions import ConfigurationError
from vpn_provisioning.network_probe import is_valid_interface_name

_default_config_file = Path(__file__).with_name('gateway.ini')
_system_config_file = Path('/etc/vpn-provisioning.ini')

_username_re = re.compile(r'[A-Za-z0-9._@+-]+')
_forbidden_in_secret = ('"', '\\', '\n', '\r')
_forbidden_in_dn = ('"', "'", '\\', '\n', '\r')


@dataclass(frozen=True)
class ProvisioningConfig:
    """Input of the provisioning plan; fixed for the whole run.

    >>> c = ProvisioningConfig('user', 'secret', IPv4Network('10.10.10.0/24'), (IPv4Address('1.1.1.1'),), 'CN=CA', 'CN=server')
    >>> 'secret' in repr(c)
    False
    >>> ProvisioningConfig('us er', 'secret', IPv4Network('10.10.10.0/24'), (), 'CN=CA', 'CN=server')
    Traceback (most recent call last):
    ...
    vpn_provisioning._exceptions.ConfigurationError: Username must match [A-Za-z0-9._@+-]+, got 'us er'
    """

    username: str
    password: str = field(repr=False)
    pool: IPv4Network
    dns: Tuple[IPv4Address, ...]
    ca_dn: str
    server_dn: str
    ssh_port: int = 22
    key_size: int = 4096
    ca_lifetime_days: int = 3650
    server_lifetime_days: int = 1825
    ip_echo_url: str = 'https://api.ipify.org'
    public_ip: Optional[IPv4Address] = None
    wan_interface: Optional[str] = None

    def __post_init__(self):
        if not _username_re.fullmatch(self.username):
            raise ConfigurationError(
                f"Username must match {_username_re.pattern}, got {self.username!r}")
        if not self.password:
            raise ConfigurationError("Password is empty")
        if any(c in self.password for c in _forbidden_in_secret):
            raise ConfigurationError("Password must not contain quotes, backslashes or line breaks")
        if not isinstance(self.pool, IPv4Network):
            raise ConfigurationError(f"Client pool must be an IPv4 network, got {self.pool!r}")
        if not self.dns:
            raise ConfigurationError("At least one DNS server is required")
        for server in self.dns:
            if not isinstance(server, IPv4Address):
                raise ConfigurationError(f"DNS server must be an IPv4 address, got {server!r}")
        for name, dn in (('ca_dn', self.ca_dn), ('server_dn', self.server_dn)):
            if '=' not in dn or any(c in dn for c in _forbidden_in_dn):
                raise ConfigurationError(f"{name} is not a valid distinguished name: {dn!r}")
        if not 1 <= self.ssh_port <= 65535:
            raise ConfigurationError(f"Port out of range: {self.ssh_port}")
        if self.key_size < 2048:
            raise ConfigurationError(f"Key size is too small: {self.key_size}")
        if self.ca_lifetime_days <= 0 or self.server_lifetime_days <= 0:
            raise ConfigurationError("Certificate lifetime must be positive")
        if not self.ip_echo_url.startswith('https://'):
            raise ConfigurationError(f"Address echo service must use HTTPS: {self.ip_echo_url}")
        if self.wan_interface is not None and not is_valid_interface_name(self.wan_interface):
            raise ConfigurationError(f"Invalid interface name: {self.wan_interface!r}")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, str], environ: Mapping[str, str]) -> 'ProvisioningConfig':
        """Build from config file values.

        >>> c = ProvisioningConfig.from_mapping({
        ...     'username': 'alice', 'pool': '10.10.10.0/24', 'dns': '1.1.1.1, 8.8.8.8',
        ...     'ca_dn': 'CN=VPN Root CA', 'server_dn': 'CN=server',
        ...     }, {'VPN_PASSWORD': 'pa$$'})
        >>> [str(s) for s in c.dns]
        ['1.1.1.1', '8.8.8.8']
        >>> c.password
        'pa$$'
        """
        password = environ.get('VPN_PASSWORD') or raw.get('password')
        if not password:
            raise ConfigurationError("Password is not set: use 'password' option or VPN_PASSWORD")
        try:
            return cls(
                username=_required(raw, 'username'),
                password=password,
                pool=IPv4Network(_required(raw, 'pool'), strict=True),
                dns=tuple(IPv4Address(s.strip()) for s in _required(raw, 'dns').split(',')),
                ca_dn=_required(raw, 'ca_dn'),
                server_dn=_required(raw, 'server_dn'),
                ssh_port=int(raw.get('ssh_port', 22)),
                key_size=int(raw.get('key_size', 4096)),
                ca_lifetime_days=int(raw.get('ca_lifetime_days', 3650)),
                server_lifetime_days=int(raw.get('server_lifetime_days', 1825)),
                ip_echo_url=raw.get('ip_echo_url', 'https://api.ipify.org'),
                public_ip=IPv4Address(raw['public_ip']) if raw.get('public_ip') else None,
                wan_interface=raw.get('wan_interface') or None,
                )
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e


def _required(raw: Mapping[str, str], key: str) -> str:
    value = raw.get(key, '').strip()
    if not value:
        raise ConfigurationError(f"Option {key!r} is required")
    return value


def load_config(extra_file: Optional[Path] = None) -> ProvisioningConfig:
    paths = [_default_config_file, _system_config_file]
    if extra_file is not None:
        if not extra_file.is_file():
            raise ConfigurationError(f"Config file does not exist: {extra_file}")
        paths.append(extra_file)
    raw = read_config(paths, socket.gethostname())
    return ProvisioningConfig.from_mapping(raw, os.environ)


def read_config(paths: Sequence[Path], host: str) -> Mapping[str, str]:
    """Read files and resolve overrides.

    Section [defaults] applies to every host; other section names are
    hostname masks. Host sections override [defaults] and later files
    override earlier ones. Missing files are skipped.
    """
    config_parts = []
    for path_i, path in enumerate(paths):
        # Passwords may contain "%", which the default interpolation rejects.
        config_parser = ConfigParser(interpolation=None)
        config_parser.read(path)
        for section_i, section in enumerate(config_parser.sections()):
            is_host_specific = section != 'defaults'
            if not is_host_specific or fnmatch.fnmatch(host, section):
                _logger.info("Config %s: section %s: read", path, section)
                items = config_parser.items(section)
                config_parts.append((path_i, is_host_specific, section_i, items))
            else:
                _logger.debug("Config %s: section %s: skip", path, section)
    config_parts.sort(key=lambda part: part[:3])
    config = {}
    for _path_i, _is_host_specific, _section_i, items in config_parts:
        config.update(items)
    return config


class GatewayLayout:
    """Filesystem paths consumed by the tunnel daemon, firewall and kernel.

    Root is "/" on a real host. Anything else is for staging and tests.

    >>> layout = GatewayLayout(Path('/'))
    >>> print(layout.server_cert)
    /etc/ipsec.d/certs/server-cert.pem
    >>> print(GatewayLayout(Path('/tmp/stage')).sysctl_conf)
    /tmp/stage/etc/sysctl.d/99-ipsec-vpn.conf
    """

    def __init__(self, root: Path = Path('/')):
        self.root = root
        etc = root / 'etc'
        self.ipsec_dir = etc / 'ipsec.d'
        self.private_dir = self.ipsec_dir / 'private'
        self.cacerts_dir = self.ipsec_dir / 'cacerts'
        self.certs_dir = self.ipsec_dir / 'certs'
        self.ca_key = self.private_dir / 'ca-key.pem'
        self.ca_cert = self.cacerts_dir / 'ca-cert.pem'
        self.server_key = self.private_dir / 'server-key.pem'
        self.server_cert = self.certs_dir / 'server-cert.pem'
        self.ipsec_conf = etc / 'ipsec.conf'
        self.ipsec_secrets = etc / 'ipsec.secrets'
        self.strongswan_conf = etc / 'strongswan.conf'
        self.nftables_conf = etc / 'nftables.conf'
        self.sysctl_conf = etc / 'sysctl.d' / '99-ipsec-vpn.conf'
        self.lock_file = root / 'run' / 'vpn-provisioning.lock'

    def __repr__(self):
        return f'{GatewayLayout.__name__}({str(self.root)!r})'


_logger = logging.getLogger(__name__)
