# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Text of every configuration file the gateway needs.

Rendering has no side effects: it's a function of the configuration,
the detected network and the artifact paths. Writing is done separately
by commands, which allows to check the output without a live host.

Templates are filled from value maps. Every value is validated before
it gets there: configuration by ProvisioningConfig, network by
HostNetworkInfo, so operator input can't inject extra syntax.
"""

from dataclasses import dataclass
from string import Template
from typing import List

from vpn_provisioning._core import Command
from vpn_provisioning._core import InstallCommon
from vpn_provisioning._core import InstallSecret
from vpn_provisioning.config import GatewayLayout
from vpn_provisioning.config import ProvisioningConfig
from vpn_provisioning.network_probe import HostNetworkInfo

CONNECTION_NAME = 'ikev2-vpn'

# Single proposal for each phase. No fallback list: a client which can't
# do these is refused instead of being downgraded to a weaker cipher.
IKE_PROPOSAL = 'aes256-sha256-prfsha256-modp2048!'
ESP_PROPOSAL = 'aes256gcm16!'

IKE_PORT = 500
NAT_TRAVERSAL_PORT = 4500

# leftid is the bare public IP: clients match it against the certificate SAN.
# eap_identity=%identity, not %any, for macOS username/password profiles.
_tunnel_config = Template('''\
config setup
    uniqueids=no

conn ${connection}
    auto=add
    compress=no
    type=tunnel
    keyexchange=ikev2
    fragmentation=yes
    forceencaps=yes

    left=%any
    leftid=${public_ip}
    leftcert=${server_cert}
    leftsendcert=always
    leftsubnet=0.0.0.0/0

    right=%any
    rightid=%any
    rightauth=eap-mschapv2
    rightsourceip=${pool}
    rightdns=${dns}
    eap_identity=%identity

    ike=${ike}
    esp=${esp}
''')

_secrets = Template('''\
: RSA ${server_key}
${username} : EAP "${password}"
''')

# "flush ruleset" comes in the same file, so "nft -f" replaces the old
# ruleset in a single transaction: if the file fails to load,
# the previous ruleset stays active.
_firewall_ruleset = Template('''\
flush ruleset

table inet filter {
  chain input {
    type filter hook input priority 0;
    policy drop;

    iif "lo" accept
    ct state established,related accept

    # SSH
    tcp dport ${ssh_port} accept

    # IKEv2
    udp dport ${ike_port} accept
    udp dport ${nat_traversal_port} accept

    ip protocol icmp accept
    ip6 nexthdr icmpv6 accept
  }

  chain forward {
    type filter hook forward priority 0;
    policy drop;

    ct state established,related accept

    # VPN clients
    ip saddr ${pool} accept
  }
}

table ip nat {
  chain postrouting {
    type nat hook postrouting priority srcnat;
    policy accept;

    oifname "${wan_interface}" ip saddr ${pool} masquerade
  }
}
''')

# Client traffic comes in on one interface with a pool address and leaves
# through another, which strict reverse path filtering would drop.
_sysctl_settings = '''\
net.ipv4.ip_forward=1
net.ipv4.conf.all.accept_redirects=0
net.ipv4.conf.all.send_redirects=0
net.ipv4.conf.all.rp_filter=0
net.ipv4.conf.default.rp_filter=0
'''

# Distribution plugin configs are kept. EAP-MSCHAPv2 is forced on
# as it may be packaged without a config snippet.
_daemon_settings = '''\
charon {
    load_modular = yes
    plugins {
        include strongswan.d/charon/*.conf
        eap-mschapv2 {
            load = yes
        }
    }
}
include strongswan.d/*.conf
'''


@dataclass(frozen=True)
class RenderedConfigSet:
    tunnel_config: str
    secrets: str
    firewall_ruleset: str
    sysctl_settings: str
    daemon_settings: str

    def install_commands(self, layout: GatewayLayout) -> List[Command]:
        return [
            InstallCommon(layout.strongswan_conf, self.daemon_settings),
            InstallCommon(layout.ipsec_conf, self.tunnel_config),
            InstallSecret(layout.ipsec_secrets, self.secrets),
            InstallCommon(layout.nftables_conf, self.firewall_ruleset),
            InstallCommon(layout.sysctl_conf, self.sysctl_settings),
            ]


class ConfigRenderer:

    def __init__(self, config: ProvisioningConfig, layout: GatewayLayout):
        self._config = config
        self._layout = layout

    def render(self, network: HostNetworkInfo) -> RenderedConfigSet:
        return RenderedConfigSet(
            tunnel_config=self.render_tunnel_config(network),
            secrets=self.render_secrets(),
            firewall_ruleset=self.render_firewall_ruleset(network),
            sysctl_settings=render_sysctl_settings(),
            daemon_settings=render_daemon_settings(),
            )

    def render_tunnel_config(self, network: HostNetworkInfo) -> str:
        # Paths are relative to /etc/ipsec.d subdirectories, where the daemon looks.
        return _tunnel_config.substitute(
            connection=CONNECTION_NAME,
            public_ip=network.public_ip,
            server_cert=self._layout.server_cert.name,
            pool=self._config.pool,
            dns=','.join(str(s) for s in self._config.dns),
            ike=IKE_PROPOSAL,
            esp=ESP_PROPOSAL,
            )

    def render_secrets(self) -> str:
        return _secrets.substitute(
            server_key=self._layout.server_key.name,
            username=self._config.username,
            password=self._config.password,
            )

    def render_firewall_ruleset(self, network: HostNetworkInfo) -> str:
        return _firewall_ruleset.substitute(
            ssh_port=self._config.ssh_port,
            ike_port=IKE_PORT,
            nat_traversal_port=NAT_TRAVERSAL_PORT,
            pool=self._config.pool,
            wan_interface=network.wan_interface,
            )


def render_sysctl_settings() -> str:
    return _sysctl_settings


def render_daemon_settings() -> str:
    return _daemon_settings
