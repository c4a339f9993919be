# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
from enum import Enum
from typing import Mapping
from typing import Sequence

from vpn_provisioning._core import Command
from vpn_provisioning._core import Host
from vpn_provisioning._core import Run
from vpn_provisioning._exceptions import PackageInstallError
from vpn_provisioning._shell import CommandFailed

REQUIRED_PACKAGES = (
    'strongswan',
    'strongswan-pki',
    'strongswan-starter',
    'nftables',
    'ca-certificates',
    )

# Plugin packages come and go between Ubuntu releases.
# Without them some authentication methods are unavailable,
# but the gateway still works.
OPTIONAL_PACKAGES = (
    'libcharon-extra-plugins',
    'libcharon-extauth-plugins',
    'libstrongswan-extra-plugins',
    'libtss2-tcti-tabrmd0',
    'strongswan-plugin-eap-mschapv2',
    )

_apt_env = {'DEBIAN_FRONTEND': 'noninteractive'}


class PackageStatus(Enum):
    INSTALLED = 'installed'
    UNAVAILABLE = 'unavailable'
    FAILED = 'failed'


class AptInstall(Run):

    def __init__(self, *packages: str):
        super().__init__(
            ['apt-get', '-y', 'install', '--no-install-recommends', *packages],
            env=_apt_env,
            )


class AptUpdate(Run):

    def __init__(self):
        super().__init__(['apt-get', 'update'], env=_apt_env)


class IsPackageKnown(Command):
    """Whether the package exists in the configured repositories."""

    def __init__(self, package: str):
        self._package = package

    def __repr__(self):
        return f'{IsPackageKnown.__name__}({self._package!r})'

    def run(self, shell) -> bool:
        r = shell.run_still(['apt-cache', 'show', self._package])
        return r.returncode == 0 and bool(r.stdout.strip())


class PackageInstaller:

    def __init__(self, host: Host):
        self._host = host

    def prepare_repositories(self):
        """Make sure the "universe" component is enabled, where strongSwan lives."""
        self._run_required([
            AptUpdate(),
            AptInstall('software-properties-common'),
            Run(['add-apt-repository', '-y', 'universe'], env=_apt_env),
            AptUpdate(),
            ])

    def install_required(self, packages: Sequence[str] = REQUIRED_PACKAGES):
        self._run_required([AptInstall(*packages)])

    def install_optional(
            self,
            packages: Sequence[str] = OPTIONAL_PACKAGES,
            ) -> Mapping[str, PackageStatus]:
        """Try each package independently and report what happened to each."""
        outcome = {}
        for package in packages:
            try:
                known = self._host.execute(IsPackageKnown(package))
            except CommandFailed as e:
                _logger.warning("%s: cannot query: %s", package, e)
                outcome[package] = PackageStatus.FAILED
                continue
            if not known:
                _logger.info("%s: not in repositories, skip", package)
                outcome[package] = PackageStatus.UNAVAILABLE
                continue
            try:
                self._host.execute(AptInstall(package))
            except CommandFailed as e:
                _logger.warning("%s: optional package not installed: %s", package, e)
                outcome[package] = PackageStatus.FAILED
            else:
                outcome[package] = PackageStatus.INSTALLED
        return outcome

    def _run_required(self, commands: Sequence[Command]):
        for command in commands:
            try:
                self._host.execute(command)
            except CommandFailed as e:
                raise PackageInstallError(f"{command!r} failed: {e}") from e


_logger = logging.getLogger(__name__)
