# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import os
import unittest

from vpn_provisioning._core import Host
from vpn_provisioning._exceptions import PackageInstallError
from vpn_provisioning.packages import PackageInstaller
from vpn_provisioning.packages import PackageStatus
from vpn_provisioning.packages import REQUIRED_PACKAGES
from vpn_provisioning.tests._fake_shell import FakeShell


class TestPackageInstaller(unittest.TestCase):

    def setUp(self):
        os.environ.pop('PROVISIONING_ASK_FOR_CONFIRMATION', None)
        self._shell = FakeShell()
        self._installer = PackageInstaller(Host(self._shell))

    def test_repositories(self):
        self._installer.prepare_repositories()
        self.assertEqual(self._shell.commands, [
            ['apt-get', 'update'],
            ['apt-get', '-y', 'install', '--no-install-recommends', 'software-properties-common'],
            ['add-apt-repository', '-y', 'universe'],
            ['apt-get', 'update'],
            ])
        self.assertTrue(all(env == {'DEBIAN_FRONTEND': 'noninteractive'} for env in self._shell.envs))

    def test_required_in_one_transaction(self):
        self._installer.install_required()
        self.assertEqual(self._shell.commands, [
            ['apt-get', '-y', 'install', '--no-install-recommends', *REQUIRED_PACKAGES],
            ])

    def test_required_failure_is_fatal(self):
        self._shell.fail('apt-get', '-y', 'install')
        with self.assertRaisesRegex(PackageInstallError, "forced failure"):
            self._installer.install_required()

    def test_repository_failure_is_fatal(self):
        self._shell.fail('add-apt-repository')
        with self.assertRaises(PackageInstallError):
            self._installer.prepare_repositories()
        self.assertEqual(self._shell.count('apt-get', 'update'), 1)

    def test_optional_outcomes(self):
        self._shell.known_packages = {'plugin-ok', 'plugin-broken'}
        self._shell.fail('apt-get', '-y', 'install', '--no-install-recommends', 'plugin-broken')
        outcome = self._installer.install_optional(['plugin-ok', 'plugin-missing', 'plugin-broken'])
        self.assertEqual(outcome, {
            'plugin-ok': PackageStatus.INSTALLED,
            'plugin-missing': PackageStatus.UNAVAILABLE,
            'plugin-broken': PackageStatus.FAILED,
            })
        self.assertEqual(self._shell.count('apt-get', '-y', 'install'), 2)

    def test_optional_installed_one_by_one(self):
        self._shell.known_packages = {'a', 'b'}
        self._installer.install_optional(['a', 'b'])
        installs = [c for c in self._shell.commands if c[:2] == ['apt-get', '-y']]
        self.assertEqual([c[-1] for c in installs], ['a', 'b'])
        self.assertTrue(all(len(c) == 5 for c in installs))


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)7s %(name)s %(message).5000s",
        )
    unittest.main()
