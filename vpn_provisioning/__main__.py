# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import argparse
import dataclasses
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Sequence

from vpn_provisioning._core import Host
from vpn_provisioning._exceptions import ConfigurationError
from vpn_provisioning._exceptions import HostLocked
from vpn_provisioning._exceptions import ProvisioningCancelled
from vpn_provisioning._exceptions import ProvisioningError
from vpn_provisioning._logging import init_logging
from vpn_provisioning._shell import LocalShell
from vpn_provisioning.config import GatewayLayout
from vpn_provisioning.config import ProvisioningConfig
from vpn_provisioning.config import load_config
from vpn_provisioning.network_probe import NetworkProbe
from vpn_provisioning.plan import ProvisioningPlan
from vpn_provisioning.render import ConfigRenderer


def main(args: Sequence[str]) -> int:
    parsed_args = _parse_args(args)
    init_logging(parsed_args.log_dir or _default_log_dir(), parsed_args.verbose)
    cancel_event = threading.Event()
    _install_signal_handlers(cancel_event)
    layout = GatewayLayout(parsed_args.root)
    try:
        config = load_config(parsed_args.config)
        host = Host(LocalShell(), cancel_event)
        network_probe = NetworkProbe(
            host,
            config.ip_echo_url,
            wan_interface=config.wan_interface,
            public_ip=config.public_ip,
            )
        if parsed_args.render_only:
            _print_rendered(config, layout, network_probe)
            return 0
        if parsed_args.root == Path('/') and os.geteuid() != 0:
            print("Provisioning requires root, run with sudo", file=sys.stderr)
            return 1
        plan = ProvisioningPlan(
            config,
            layout,
            host,
            network_probe,
            regenerate_ca=parsed_args.regenerate_ca,
            reissue_server_cert=parsed_args.reissue_server_cert,
            )
        report = plan.run()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except HostLocked as e:
        print(str(e), file=sys.stderr)
        return 3
    except ProvisioningCancelled as e:
        print(f"Cancelled: {e}", file=sys.stderr)
        return 130
    except ProvisioningError as e:
        print(f"Step {e.step or 'startup'} failed: {e}", file=sys.stderr)
        print("Nothing was rolled back. Fix the cause and run again.", file=sys.stderr)
        return 1
    print(report.format(), end='')
    return 0


def _print_rendered(config: ProvisioningConfig, layout: GatewayLayout, network_probe: NetworkProbe):
    # The real password must never reach the terminal.
    masked_config = dataclasses.replace(config, password='********')
    rendered = ConfigRenderer(masked_config, layout).render(network_probe.probe())
    for path, text in [
            (layout.strongswan_conf, rendered.daemon_settings),
            (layout.ipsec_conf, rendered.tunnel_config),
            (layout.ipsec_secrets, rendered.secrets),
            (layout.nftables_conf, rendered.firewall_ruleset),
            (layout.sysctl_conf, rendered.sysctl_settings),
            ]:
        print(f"### {path}")
        print(text)


def _default_log_dir() -> Path:
    if os.geteuid() == 0:
        return Path('/var/log/vpn-provisioning')
    return Path('~/.cache/vpn-provisioning').expanduser()


def _install_signal_handlers(cancel_event: threading.Event):

    def _cancel(signum, _frame):
        _logger.warning(
            "Got %s: stop after the current command", signal.Signals(signum).name)
        cancel_event.set()

    signal.signal(signal.SIGINT, _cancel)
    signal.signal(signal.SIGTERM, _cancel)


def _parse_args(args: Sequence[str]):
    parser = argparse.ArgumentParser(
        prog='python -m vpn_provisioning',
        description="Install and configure an IKEv2 VPN gateway on this host.",
        )
    parser.add_argument(
        '--config', type=Path, default=None,
        help="INI file overriding packaged defaults and /etc/vpn-provisioning.ini.")
    parser.add_argument(
        '--root', type=Path, default=Path('/'),
        help="Filesystem root to write to; default: %(default)s.")
    parser.add_argument(
        '--regenerate-ca', action='store_true',
        help="Replace the CA; every client will have to trust the new one.")
    parser.add_argument(
        '--reissue-server-cert', action='store_true',
        help="Issue a new server certificate even if the current one is valid.")
    parser.add_argument(
        '--render-only', action='store_true',
        help="Detect network and print configuration files; change nothing.")
    parser.add_argument(
        '--log-dir', type=Path, default=None,
        help="Directory for the debug log; default: /var/log/vpn-provisioning for root, ~/.cache/vpn-provisioning otherwise.")
    parser.add_argument('--verbose', '-v', action='store_true')
    return parser.parse_args(args)


_logger = logging.getLogger(__name__)

if __name__ == '__main__':
    exit(main(sys.argv[1:]))
