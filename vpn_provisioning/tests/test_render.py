# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import unittest
from ipaddress import IPv4Address
from ipaddress import IPv4Network
from pathlib import Path

from vpn_provisioning.config import GatewayLayout
from vpn_provisioning.network_probe import HostNetworkInfo
from vpn_provisioning.render import ConfigRenderer
from vpn_provisioning.render import ESP_PROPOSAL
from vpn_provisioning.render import IKE_PROPOSAL
from vpn_provisioning.tests._fake_shell import make_config

_network = HostNetworkInfo('eth0', IPv4Address('203.0.113.5'))


class TestRender(unittest.TestCase):

    def setUp(self):
        self._layout = GatewayLayout(Path('/'))
        self._rendered = ConfigRenderer(make_config(), self._layout).render(_network)

    def test_tunnel_config(self):
        lines = [line.strip() for line in self._rendered.tunnel_config.splitlines()]
        self.assertIn('conn ikev2-vpn', lines)
        self.assertIn('leftid=203.0.113.5', lines)
        self.assertIn('leftcert=server-cert.pem', lines)
        self.assertIn('rightsourceip=10.10.10.0/24', lines)
        self.assertIn('rightdns=1.1.1.1,8.8.8.8', lines)
        self.assertIn('rightauth=eap-mschapv2', lines)
        self.assertIn('eap_identity=%identity', lines)
        self.assertIn('keyexchange=ikev2', lines)
        self.assertIn(f'ike={IKE_PROPOSAL}', lines)
        self.assertIn(f'esp={ESP_PROPOSAL}', lines)

    def test_secrets(self):
        self.assertEqual(
            self._rendered.secrets,
            ': RSA server-key.pem\n'
            'user : EAP "STRONG_PASSWORD"\n')

    def test_firewall_ruleset(self):
        ruleset = self._rendered.firewall_ruleset
        self.assertTrue(ruleset.startswith('flush ruleset\n'))
        self.assertEqual(ruleset.count('oifname "eth0" ip saddr 10.10.10.0/24 masquerade'), 1)
        self.assertEqual(ruleset.count('masquerade'), 1)
        self.assertEqual(ruleset.count('policy drop;'), 2)
        for rule in ['tcp dport 22 accept', 'udp dport 500 accept', 'udp dport 4500 accept']:
            with self.subTest(rule=rule):
                self.assertIn(rule, ruleset)

    def test_custom_values(self):
        config = make_config(
            pool=IPv4Network('172.16.0.0/20'),
            dns=(IPv4Address('9.9.9.9'),),
            ssh_port=2222,
            )
        network = HostNetworkInfo('ens3', IPv4Address('198.51.100.7'))
        rendered = ConfigRenderer(config, self._layout).render(network)
        self.assertIn('leftid=198.51.100.7\n', rendered.tunnel_config)
        self.assertIn('rightdns=9.9.9.9\n', rendered.tunnel_config)
        self.assertIn('tcp dport 2222 accept', rendered.firewall_ruleset)
        self.assertIn('oifname "ens3" ip saddr 172.16.0.0/20 masquerade', rendered.firewall_ruleset)

    def test_sysctl_settings(self):
        settings = dict(line.split('=') for line in self._rendered.sysctl_settings.splitlines())
        self.assertEqual(settings['net.ipv4.ip_forward'], '1')
        self.assertEqual(settings['net.ipv4.conf.all.rp_filter'], '0')
        self.assertEqual(settings['net.ipv4.conf.all.accept_redirects'], '0')

    def test_deterministic(self):
        again = ConfigRenderer(make_config(), self._layout).render(_network)
        self.assertEqual(again, self._rendered)

    def test_install_commands(self):
        commands = self._rendered.install_commands(self._layout)
        self.assertEqual([repr(c) for c in commands], [
            "InstallCommon('/etc/strongswan.conf')",
            "InstallCommon('/etc/ipsec.conf')",
            "InstallSecret('/etc/ipsec.secrets')",
            "InstallCommon('/etc/nftables.conf')",
            "InstallCommon('/etc/sysctl.d/99-ipsec-vpn.conf')",
            ])


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)7s %(name)s %(message).5000s",
        )
    unittest.main()
