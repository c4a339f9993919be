# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Provisioning of an IKEv2 VPN gateway: strongSwan, nftables, kernel settings.

The goal is to keep the gateway configuration in code under version control.
It serves as documentation for what is installed and configured.
Nothing on the gateway should be changed by hand.

Cryptography, packet filtering and IKE itself are done by system tools:
apt, strongSwan's PKI tool, nft, sysctl and systemd. This package only
decides what to run, in which order, and what to write where.

Every action is formulated in terms of a command.
In most cases, it is a Run object with a plain argument vector,
so that it is clear what is being run and it is easy to copy.

Commands must be idempotent.
The second run must not "accumulate" changes.
Running it multiple times must be safe.

Commands should not be executed directly. Only via a Host.
This allows for logging, cancellation and interaction with the user.

If a run fails, the human who runs it must investigate the problem:
nothing is rolled back. Correct the cause and run again.

Configuration must be as non-invasive as possible.
Alter the defaults as little as possible.
The default configuration is usually the most tested and secure.
"""
from vpn_provisioning._core import Command
from vpn_provisioning._core import CompositeCommand
from vpn_provisioning._core import Host
from vpn_provisioning._core import InstallCommon
from vpn_provisioning._core import InstallSecret
from vpn_provisioning._core import MakeDirs
from vpn_provisioning._core import Run
from vpn_provisioning._exceptions import CertificateGenerationError
from vpn_provisioning._exceptions import ConfigurationError
from vpn_provisioning._exceptions import ConfigWriteError
from vpn_provisioning._exceptions import HostLocked
from vpn_provisioning._exceptions import NetworkDetectionError
from vpn_provisioning._exceptions import PackageInstallError
from vpn_provisioning._exceptions import ProvisioningCancelled
from vpn_provisioning._exceptions import ProvisioningError
from vpn_provisioning._exceptions import ServiceReloadError

__all__ = [
    'CertificateGenerationError',
    'Command',
    'CompositeCommand',
    'ConfigWriteError',
    'ConfigurationError',
    'Host',
    'HostLocked',
    'InstallCommon',
    'InstallSecret',
    'MakeDirs',
    'NetworkDetectionError',
    'PackageInstallError',
    'ProvisioningCancelled',
    'ProvisioningError',
    'Run',
    'ServiceReloadError',
    ]
