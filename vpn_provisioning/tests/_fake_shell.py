# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from ipaddress import AddressValueError
from ipaddress import IPv4Address
from ipaddress import IPv4Network
from pathlib import Path
from subprocess import CompletedProcess
from typing import Collection
from typing import List
from typing import Sequence

import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from vpn_provisioning._shell import Shell
from vpn_provisioning.config import ProvisioningConfig
from vpn_provisioning.packages import OPTIONAL_PACKAGES
from vpn_provisioning.packages import REQUIRED_PACKAGES
from vpn_provisioning.pki import IKE_INTERMEDIATE_OID

DEFAULT_ROUTES = 'default via 203.0.113.1 dev eth0 proto static metric 100\n'
DAEMON_STATUS = 'Status of IKE charon daemon (strongSwan 5.9.13, Linux 6.8.0-generic, x86_64):\n'


def make_config(**overrides) -> ProvisioningConfig:
    values = dict(
        username='user',
        password='STRONG_PASSWORD',
        pool=IPv4Network('10.10.10.0/24'),
        dns=(IPv4Address('1.1.1.1'), IPv4Address('8.8.8.8')),
        ca_dn='CN=VPN Root CA',
        server_dn='CN=server',
        key_size=2048,
        )
    values.update(overrides)
    return ProvisioningConfig(**values)


class FakeShell(Shell):
    """Record argument vectors; pretend to be the tools the gateway needs.

    "ipsec pki" is emulated with the cryptography package,
    so keys and certificates are real and can be inspected.
    """

    def __init__(
            self,
            routes: str = DEFAULT_ROUTES,
            known_packages: Collection[str] = (*REQUIRED_PACKAGES, *OPTIONAL_PACKAGES[:2]),
            ):
        self.routes = routes
        self.known_packages = set(known_packages)
        self.commands: List[List[str]] = []
        self.envs = []
        self._failing: List[List[str]] = []

    def __repr__(self):
        return f'<{FakeShell.__name__}>'

    def fail(self, *prefix: str):
        self._failing.append(list(prefix))

    def count(self, *prefix: str) -> int:
        return sum(1 for c in self.commands if c[:len(prefix)] == list(prefix))

    def index(self, *prefix: str) -> int:
        for i, c in enumerate(self.commands):
            if c[:len(prefix)] == list(prefix):
                return i
        raise ValueError(f"Not run: {prefix}")

    def run_still(self, args, *, input=None, timeout=600, env=None):
        args = [str(a) for a in args]
        self.commands.append(args)
        self.envs.append(env)
        for prefix in self._failing:
            if args[:len(prefix)] == prefix:
                return CompletedProcess(args, 1, b'', b'forced failure')
        if args[:3] == ['ip', '-4', 'route']:
            return CompletedProcess(args, 0, self.routes.encode(), b'')
        if args[:2] == ['apt-cache', 'show']:
            if args[2] in self.known_packages:
                return CompletedProcess(args, 0, f'Package: {args[2]}\n'.encode(), b'')
            return CompletedProcess(args, 100, b'', b'E: No packages found')
        if args[:2] == ['ipsec', 'pki']:
            return CompletedProcess(args, 0, _FakePki(args[2:], input).output(), b'')
        if args == ['ipsec', 'statusall']:
            return CompletedProcess(args, 0, DAEMON_STATUS.encode(), b'')
        return CompletedProcess(args, 0, b'', b'')


class _FakePki:

    def __init__(self, args: Sequence[str], stdin: bytes):
        self._args = args
        self._stdin = stdin

    def output(self) -> bytes:
        if '--gen' in self._args:
            return self._generate()
        if '--self' in self._args:
            return self._self_sign()
        if '--pub' in self._args:
            return self._public_key()
        if '--issue' in self._args:
            return self._issue()
        raise NotImplementedError(f"Unsupported: {self._args}")

    def _option(self, name: str) -> str:
        return self._args[self._args.index(name) + 1]

    def _options(self, name: str) -> List[str]:
        return [self._args[i + 1] for i, a in enumerate(self._args) if a == name]

    def _generate(self):
        key = rsa.generate_private_key(65537, int(self._option('--size')))
        return key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption())

    def _self_sign(self):
        key = serialization.load_pem_private_key(self._stdin, None)
        name = x509.Name.from_rfc4514_string(self._option('--dn'))
        cert = (
            self._builder()
                .subject_name(name)
                .issuer_name(name)
                .public_key(key.public_key())
                .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
                .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
                .sign(key, hashes.SHA256()))
        return cert.public_bytes(serialization.Encoding.PEM)

    def _public_key(self):
        key = serialization.load_pem_private_key(self._stdin, None)
        return key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo)

    def _issue(self):
        public_key = serialization.load_pem_public_key(self._stdin)
        ca_cert = x509.load_pem_x509_certificate(Path(self._option('--cacert')).read_bytes())
        ca_key = serialization.load_pem_private_key(Path(self._option('--cakey')).read_bytes(), None)
        alternative_entries = []
        for san in self._options('--san'):
            try:
                alternative_entries.append(x509.IPAddress(IPv4Address(san)))
            except AddressValueError:
                alternative_entries.append(x509.DNSName(san))
        usages = []
        flags = self._options('--flag')
        if 'serverAuth' in flags:
            usages.append(x509.ExtendedKeyUsageOID.SERVER_AUTH)
        if 'ikeIntermediate' in flags:
            usages.append(IKE_INTERMEDIATE_OID)
        cert = (
            self._builder()
                .subject_name(x509.Name.from_rfc4514_string(self._option('--dn')))
                .issuer_name(ca_cert.subject)
                .public_key(public_key)
                .add_extension(x509.SubjectAlternativeName(alternative_entries), critical=False)
                .add_extension(x509.ExtendedKeyUsage(usages), critical=False)
                .sign(ca_key, hashes.SHA256()))
        return cert.public_bytes(serialization.Encoding.PEM)

    def _builder(self):
        now = datetime.now(timezone.utc)
        return (
            x509.CertificateBuilder()
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - timedelta(days=1))
                .not_valid_after(now + timedelta(days=int(self._option('--lifetime')))))


class FakeResponse:

    def __init__(self, text: str, status_code: int = 200):
        self.text = text
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


class FakeHttpGet:
    """Return prepared responses or raise prepared exceptions, in order."""

    def __init__(self, *outcomes):
        self._outcomes = list(outcomes)
        self.calls = []

    def __call__(self, url, timeout=None):
        self.calls.append((url, timeout))
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome
