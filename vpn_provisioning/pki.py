# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Certificate authority and server certificate of the gateway.

Key material is produced by strongSwan's PKI tool. It's piped from one
invocation to another in memory and lands on disk only with owner-only
permissions. The cryptography package is used only to inspect the results:
to decide whether existing files may be reused and to report fingerprints.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from ipaddress import IPv4Address
from pathlib import Path
from typing import Optional
from typing import Set

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization

from vpn_provisioning._core import Host
from vpn_provisioning._core import InstallCommon
from vpn_provisioning._core import InstallSecret
from vpn_provisioning._core import Run
from vpn_provisioning._exceptions import CertificateGenerationError
from vpn_provisioning._shell import CommandFailed

# Extended key usage strongSwan adds with "--flag ikeIntermediate".
# Older Windows and macOS clients want it in addition to serverAuth.
IKE_INTERMEDIATE_OID = x509.ObjectIdentifier('1.3.6.1.5.5.8.2.2')

_RENEW_BEFORE = timedelta(days=30)


class CertificateAuthority:
    """Self-signed root which signs the server certificate.

    Once generated, it is reused forever: clients trust it explicitly,
    so replacing it is a destructive operation, which must be requested.
    """

    def __init__(self, host: Host, key_path: Path, cert_path: Path):
        self._host = host
        self.key_path = key_path
        self.cert_path = cert_path

    def __repr__(self):
        return f'<{CertificateAuthority.__name__} {self.cert_path}>'

    def exists(self) -> bool:
        return self.key_path.is_file() and self.cert_path.is_file()

    def ensure(
            self,
            distinguished_name: str,
            key_size: int,
            lifetime_days: int,
            *,
            regenerate: bool = False,
            ) -> bool:
        """Generate key and self-signed certificate unless valid ones exist.

        Return whether anything was generated.
        """
        if not regenerate:
            if self.exists():
                problem = find_ca_problem(self.key_path, self.cert_path)
                if problem is None:
                    _logger.info("CA %s: valid, reuse", self.cert_path)
                    return False
                raise CertificateGenerationError(
                    f"Existing CA {self.cert_path} is unusable: {problem}; "
                    "regenerate it explicitly, all clients will have to trust the new one")
            if self.key_path.exists() or self.cert_path.exists():
                raise CertificateGenerationError(
                    f"Only one of {self.key_path} and {self.cert_path} exists; "
                    "regenerate the CA explicitly")
        else:
            _logger.warning("CA %s: regenerate as requested", self.cert_path)
        try:
            key_pem = self._host.execute(_GenerateKey(key_size)).stdout
            cert_pem = self._host.execute(Run(
                [
                    'ipsec', 'pki', '--self', '--ca',
                    '--lifetime', str(lifetime_days),
                    '--type', 'rsa',
                    '--dn', distinguished_name,
                    '--outform', 'pem',
                    ],
                input=key_pem,
                )).stdout
        except CommandFailed as e:
            raise CertificateGenerationError(f"Cannot generate CA: {e}") from e
        _parse_certificate(cert_pem)
        self._host.run([
            InstallSecret(self.key_path, key_pem),
            InstallCommon(self.cert_path, cert_pem),
            ])
        _logger.info("CA %s: generated", self.cert_path)
        return True

    def load_certificate(self) -> x509.Certificate:
        return _parse_certificate(self.cert_path.read_bytes())


class ServerIdentity:
    """Server key and certificate; the SAN must be the public IP of the host.

    The tunnel daemon and the clients bind the gateway identity to this
    address: a certificate for a stale address breaks every connection.
    """

    def __init__(self, host: Host, key_path: Path, cert_path: Path):
        self._host = host
        self.key_path = key_path
        self.cert_path = cert_path

    def __repr__(self):
        return f'<{ServerIdentity.__name__} {self.cert_path}>'

    def issue(
            self,
            ca: CertificateAuthority,
            distinguished_name: str,
            subject_alt_name: IPv4Address,
            key_size: int,
            lifetime_days: int,
            ):
        """Generate a fresh key and have it certified by the CA."""
        if not ca.exists():
            raise CertificateGenerationError(
                f"Cannot issue server certificate: CA {ca.cert_path} does not exist")
        try:
            key_pem = self._host.execute(_GenerateKey(key_size)).stdout
            public_key_pem = self._host.execute(Run(
                ['ipsec', 'pki', '--pub', '--type', 'rsa'],
                input=key_pem,
                )).stdout
            cert_pem = self._host.execute(Run(
                [
                    'ipsec', 'pki', '--issue',
                    '--lifetime', str(lifetime_days),
                    '--cacert', ca.cert_path,
                    '--cakey', ca.key_path,
                    '--dn', distinguished_name,
                    '--san', str(subject_alt_name),
                    '--flag', 'serverAuth',
                    '--flag', 'ikeIntermediate',
                    '--outform', 'pem',
                    ],
                input=public_key_pem,
                )).stdout
        except CommandFailed as e:
            raise CertificateGenerationError(f"Cannot issue server certificate: {e}") from e
        cert = _parse_certificate(cert_pem)
        san = certificate_ip_addresses(cert)
        if san != {subject_alt_name}:
            raise CertificateGenerationError(
                f"Issued certificate has SAN {sorted(map(str, san))}, expected {subject_alt_name}")
        self._host.run([
            InstallSecret(self.key_path, key_pem),
            InstallCommon(self.cert_path, cert_pem),
            ])
        _logger.info("Server certificate %s: issued for %s", self.cert_path, subject_alt_name)

    def find_problem(self, ca: CertificateAuthority, public_ip: IPv4Address) -> Optional[str]:
        """Say why existing certificate can't be kept, None if it can."""
        if not self.key_path.is_file() or not self.cert_path.is_file():
            return "does not exist"
        try:
            cert = _load_certificate(self.cert_path)
            key_problem = _find_key_mismatch(self.key_path, cert)
            ca_cert = _load_certificate(ca.cert_path)
        except (ValueError, OSError) as e:
            return f"cannot be parsed: {e}"
        if key_problem is not None:
            return key_problem
        san = certificate_ip_addresses(cert)
        if san != {public_ip}:
            return f"issued for {sorted(map(str, san))}, public IP is {public_ip}"
        try:
            cert.verify_directly_issued_by(ca_cert)
        except (ValueError, TypeError, InvalidSignature):
            return f"not issued by {ca.cert_path}"
        if cert.not_valid_after_utc - _RENEW_BEFORE < datetime.now(timezone.utc):
            return f"expires at {cert.not_valid_after_utc.isoformat()}"
        return None


class _GenerateKey(Run):

    def __init__(self, key_size: int):
        super().__init__([
            'ipsec', 'pki', '--gen', '--type', 'rsa', '--size', str(key_size), '--outform', 'pem',
            ])


def find_ca_problem(key_path: Path, cert_path: Path) -> Optional[str]:
    try:
        cert = _load_certificate(cert_path)
        key_problem = _find_key_mismatch(key_path, cert)
    except (ValueError, OSError) as e:
        return f"cannot be parsed: {e}"
    if key_problem is not None:
        return key_problem
    try:
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return "no basic constraints"
    if not constraints.ca:
        return "not a CA certificate"
    if cert.not_valid_after_utc < datetime.now(timezone.utc):
        return f"expired at {cert.not_valid_after_utc.isoformat()}"
    return None


def _find_key_mismatch(key_path: Path, cert: x509.Certificate) -> Optional[str]:
    try:
        key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm, OSError) as e:
        return f"{key_path} is not a usable unencrypted key: {e}"
    if _public_bytes(key.public_key()) != _public_bytes(cert.public_key()):
        return f"{key_path} does not match the certificate"
    return None


def _public_bytes(public_key) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
        )


def _load_certificate(path: Path) -> x509.Certificate:
    return x509.load_pem_x509_certificate(path.read_bytes())


def _parse_certificate(data: bytes) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as e:
        raise CertificateGenerationError(f"PKI tool produced no valid certificate: {e}") from e


def certificate_ip_addresses(cert: x509.Certificate) -> Set[IPv4Address]:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return set()
    return set(san.get_values_for_type(x509.IPAddress))


@dataclass(frozen=True)
class CertificateSummary:
    subject: str
    issuer: str
    sha256_fingerprint: str
    not_valid_after: datetime

    @classmethod
    def of(cls, cert: x509.Certificate) -> 'CertificateSummary':
        return cls(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            sha256_fingerprint=format_fingerprint(cert.fingerprint(hashes.SHA256())),
            not_valid_after=cert.not_valid_after_utc,
            )


def format_fingerprint(digest: bytes) -> str:
    """Format as OpenSSL does, which is what clients show on import.

    >>> format_fingerprint(bytes([0, 171, 255]))
    '00:AB:FF'
    """
    return ':'.join(f'{b:02X}' for b in digest)


_logger = logging.getLogger(__name__)
