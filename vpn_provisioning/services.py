# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
from typing import Sequence

from vpn_provisioning._core import Command
from vpn_provisioning._core import Host
from vpn_provisioning._core import Run
from vpn_provisioning._exceptions import ServiceReloadError
from vpn_provisioning._shell import CommandFailed
from vpn_provisioning.config import GatewayLayout

DAEMON_SERVICE = 'strongswan-starter'
FIREWALL_SERVICE = 'nftables'


class SystemCtl(Run):

    def __init__(self, *args: str):
        super().__init__(['systemctl', *args])


class ServiceController:
    """Make the kernel, the firewall and the daemon use the written files.

    Order matters: forwarding must be on and the firewall must be in place
    before the daemon starts accepting clients.
    """

    def __init__(self, host: Host, layout: GatewayLayout):
        self._host = host
        self._layout = layout

    def apply(self) -> bool:
        """Apply everything; return whether the daemon re-read its config."""
        self.apply_sysctl()
        self.reload_firewall()
        self.restart_daemon()
        return self.reread_daemon_config()

    def apply_sysctl(self):
        self._run_fatal([Run(['sysctl', '-p', self._layout.sysctl_conf])])

    def reload_firewall(self):
        # Checking first gives a clear error. Loading is atomic anyway.
        self._run_fatal([
            Run(['nft', '-c', '-f', self._layout.nftables_conf]),
            Run(['nft', '-f', self._layout.nftables_conf]),
            # The unit loads the same file on boot.
            SystemCtl('enable', FIREWALL_SERVICE),
            ])

    def restart_daemon(self):
        self._run_fatal([
            SystemCtl('enable', DAEMON_SERVICE),
            SystemCtl('restart', DAEMON_SERVICE),
            ])

    def reread_daemon_config(self) -> bool:
        """Ask the daemon to re-read config and secrets, keeping tunnels."""
        try:
            self._host.execute(Run(['ipsec', 'rereadall']))
        except CommandFailed as e:
            _logger.warning("Daemon did not re-read configuration: %s", e)
            return False
        return True

    def daemon_status(self) -> str:
        try:
            result = self._host.execute(Run(['ipsec', 'statusall']))
        except CommandFailed as e:
            raise ServiceReloadError(f"Daemon status is unavailable: {e}") from e
        return result.stdout.decode(errors='backslashreplace')

    def _run_fatal(self, commands: Sequence[Command]):
        for command in commands:
            try:
                self._host.execute(command)
            except CommandFailed as e:
                raise ServiceReloadError(f"{command!r} failed: {e}") from e


_logger = logging.getLogger(__name__)
