# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
from dataclasses import dataclass
from ipaddress import IPv4Address
from pathlib import Path
from typing import Callable
from typing import Mapping

from vpn_provisioning._core import CompositeCommand
from vpn_provisioning._core import Host
from vpn_provisioning._core import InstallCommon
from vpn_provisioning._core import MakeDirs
from vpn_provisioning._exceptions import ProvisioningError
from vpn_provisioning._lock import host_locked
from vpn_provisioning.config import GatewayLayout
from vpn_provisioning.config import ProvisioningConfig
from vpn_provisioning.network_probe import HostNetworkInfo
from vpn_provisioning.network_probe import NetworkProbe
from vpn_provisioning.packages import PackageInstaller
from vpn_provisioning.packages import PackageStatus
from vpn_provisioning.pki import CertificateAuthority
from vpn_provisioning.pki import CertificateSummary
from vpn_provisioning.pki import ServerIdentity
from vpn_provisioning.render import ConfigRenderer
from vpn_provisioning.render import render_sysctl_settings
from vpn_provisioning.services import DAEMON_SERVICE
from vpn_provisioning.services import ServiceController


@dataclass(frozen=True)
class GatewayReport:
    ca: CertificateSummary
    ca_cert_path: Path
    server_cert_path: Path
    server_key_path: Path
    server_ip: IPv4Address
    wan_interface: str
    optional_packages: Mapping[str, PackageStatus]
    config_reread: bool
    daemon_status: str

    def format(self) -> str:
        lines = [
            self.daemon_status.rstrip(),
            '',
            "=== CA certificate details ===",
            f"subject={self.ca.subject}",
            f"issuer={self.ca.issuer}",
            f"sha256 Fingerprint={self.ca.sha256_fingerprint}",
            f"valid until={self.ca.not_valid_after.isoformat()}",
            '',
            f"CA path: {self.ca_cert_path}",
            f"Server cert path: {self.server_cert_path}",
            f"Server key path: {self.server_key_path}",
            f"Server identity (SAN): {self.server_ip}",
            f"WAN interface: {self.wan_interface}",
            '',
            "Optional plugins:",
            *[f"  {name}: {status.value}" for name, status in self.optional_packages.items()],
            ]
        if not self.config_reread:
            lines += ['', "WARNING: daemon did not re-read its configuration; it was restarted, though"]
        lines += ['', f"Logs: journalctl -u {DAEMON_SERVICE} -f"]
        return '\n'.join(lines) + '\n'


class ProvisioningPlan:
    """Bring the host to the state of a working IKEv2 gateway.

    Steps run strictly in order, each relies on what the previous ones left.
    The first failure stops the run: everything done so far stays,
    and every step is safe to repeat, so the fix is to correct the cause
    and run again.
    """

    def __init__(
            self,
            config: ProvisioningConfig,
            layout: GatewayLayout,
            host: Host,
            network_probe: NetworkProbe,
            *,
            regenerate_ca: bool = False,
            reissue_server_cert: bool = False,
            ):
        self._config = config
        self._layout = layout
        self._host = host
        self._network_probe = network_probe
        self._regenerate_ca = regenerate_ca
        self._reissue_server_cert = reissue_server_cert
        self._packages = PackageInstaller(host)
        self._ca = CertificateAuthority(host, layout.ca_key, layout.ca_cert)
        self._server = ServerIdentity(host, layout.server_key, layout.server_cert)
        self._renderer = ConfigRenderer(config, layout)
        self._services = ServiceController(host, layout)

    def run(self) -> GatewayReport:
        with host_locked(self._layout.lock_file):
            self._step("prepare repositories", self._packages.prepare_repositories)
            self._step("install packages", self._packages.install_required)
            optional = self._step("install optional plugins", self._packages.install_optional)
            self._step("write sysctl settings", self._write_sysctl_settings)
            network = self._step("detect network", self._network_probe.probe)
            self._step("prepare directories", self._prepare_directories)
            self._step("certificate authority", self._ensure_ca)
            self._step("server certificate", self._ensure_server_identity, network)
            rendered = self._step("render configuration", self._renderer.render, network)
            self._step("write configuration", self._host.run, rendered.install_commands(self._layout))
            reread = self._step("apply", self._services.apply)
            status = self._step("verify", self._services.daemon_status)
            return GatewayReport(
                ca=CertificateSummary.of(self._ca.load_certificate()),
                ca_cert_path=self._layout.ca_cert,
                server_cert_path=self._layout.server_cert,
                server_key_path=self._layout.server_key,
                server_ip=network.public_ip,
                wan_interface=network.wan_interface,
                optional_packages=optional,
                config_reread=reread,
                daemon_status=status,
                )

    def _step(self, name: str, func: Callable, *args):
        try:
            self._host.check_cancelled()
            _logger.info("Step %s: start", name)
            print(f"==> {name}", flush=True)
            result = func(*args)
        except ProvisioningError as e:
            if e.step is None:
                e.step = name
            _logger.error("Step %s: failed: %s", name, e)
            raise
        _logger.info("Step %s: done", name)
        return result

    def _write_sysctl_settings(self):
        self._host.execute(InstallCommon(self._layout.sysctl_conf, render_sysctl_settings()))

    def _prepare_directories(self):
        self._host.execute(CompositeCommand([
            MakeDirs(self._layout.cacerts_dir),
            MakeDirs(self._layout.certs_dir),
            MakeDirs(self._layout.private_dir, 0o700),
            ]))

    def _ensure_ca(self):
        self._ca.ensure(
            self._config.ca_dn,
            self._config.key_size,
            self._config.ca_lifetime_days,
            regenerate=self._regenerate_ca,
            )

    def _ensure_server_identity(self, network: HostNetworkInfo):
        if self._reissue_server_cert:
            _logger.info("Server certificate: reissue as requested")
        else:
            problem = self._server.find_problem(self._ca, network.public_ip)
            if problem is None:
                _logger.info("Server certificate %s: valid, reuse", self._layout.server_cert)
                return
            _logger.info("Server certificate %s: %s; issue new", self._layout.server_cert, problem)
        self._server.issue(
            self._ca,
            self._config.server_dn,
            network.public_ip,
            self._config.key_size,
            self._config.server_lifetime_days,
            )


_logger = logging.getLogger(__name__)
