# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
from typing import Optional


class ProvisioningError(Exception):
    """Fatal failure of a provisioning step.

    The plan fills in the step name when the error passes through it.
    Already applied changes are left in place: no rollback is attempted.
    """

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.step = step


class ConfigurationError(ProvisioningError):
    pass


class PackageInstallError(ProvisioningError):
    pass


class NetworkDetectionError(ProvisioningError):
    pass


class CertificateGenerationError(ProvisioningError):
    pass


class ConfigWriteError(ProvisioningError):
    pass


class ServiceReloadError(ProvisioningError):
    pass


class ProvisioningCancelled(ProvisioningError):
    pass


class HostLocked(ProvisioningError):
    pass
