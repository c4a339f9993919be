# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import errno
import fcntl
import logging
from contextlib import contextmanager
from pathlib import Path

from vpn_provisioning._exceptions import ConfigWriteError
from vpn_provisioning._exceptions import HostLocked


def _try_lock_exclusively(fileno: int) -> bool:
    # "flock" locks the open file description, so a second open of the same file
    # within this process fails to lock too, unlike "lockf".
    # See: https://man7.org/linux/man-pages/man2/flock.2.html
    try:
        fcntl.flock(fileno, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as err:
        if err.errno == errno.EWOULDBLOCK:
            return False
        raise
    return True


@contextmanager
def host_locked(file: Path):
    """Hold the host-wide provisioning lock or fail immediately."""
    _logger.info("%s: Try to lock exclusively", file)
    try:
        file.parent.mkdir(parents=True, exist_ok=True)
        file.touch(exist_ok=True)
        fd = file.open('rb')
    except OSError as e:
        raise ConfigWriteError(f"Cannot open lock file {file}: {e}", step="lock host") from e
    with fd:
        if not _try_lock_exclusively(fd.fileno()):
            raise HostLocked(f"Another provisioning run holds {file}")
        _logger.info("%s: Locked exclusively", file)
        try:
            yield
        finally:
            _logger.info("%s: Lock is released", file)


_logger = logging.getLogger(__name__)
