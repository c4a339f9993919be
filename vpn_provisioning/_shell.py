# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import os
import shlex
import subprocess
from abc import ABCMeta
from abc import abstractmethod
from subprocess import CalledProcessError
from subprocess import CompletedProcess
from typing import Mapping
from typing import Optional
from typing import Sequence

_DEFAULT_TIMEOUT_SEC = 600


class CommandFailed(CalledProcessError):

    def __str__(self):
        stderr = (self.stderr or b'').decode(errors='backslashreplace')[:5000]
        if self.returncode is None:
            result = "no exit status"
        else:
            result = f"exit status {self.returncode}"
        return f"Command {shlex.join(self.cmd)} died with {result}: {stderr.strip()}"


class Shell(metaclass=ABCMeta):

    @abstractmethod
    def run_still(
            self,
            args: Sequence[str],
            *,
            input: Optional[bytes] = None,  # noqa PyShadowingBuiltins
            timeout: float = _DEFAULT_TIMEOUT_SEC,
            env: Optional[Mapping[str, str]] = None,
            ) -> CompletedProcess:
        """Run and return the result, whatever the exit status is."""
        pass

    def run(
            self,
            args: Sequence[str],
            *,
            input: Optional[bytes] = None,  # noqa PyShadowingBuiltins
            timeout: float = _DEFAULT_TIMEOUT_SEC,
            env: Optional[Mapping[str, str]] = None,
            ) -> CompletedProcess:
        r = self.run_still(args, input=input, timeout=timeout, env=env)
        if r.returncode != 0:
            raise CommandFailed(r.returncode, r.args, r.stdout, r.stderr)
        return r


class LocalShell(Shell):

    def __repr__(self):
        return f'<{LocalShell.__name__}>'

    def run_still(self, args, *, input=None, timeout=_DEFAULT_TIMEOUT_SEC, env=None):
        args = [str(a) for a in args]
        _log(args)
        full_env = None if env is None else {**os.environ, **env}
        try:
            return subprocess.run(
                args,
                input=input,
                # Tools must not wait for input that nobody would provide.
                stdin=None if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout,
                env=full_env,
                # Ctrl+C in the terminal must not reach a tool in the middle
                # of a firewall reload or a package installation.
                start_new_session=True,
                )
        except subprocess.TimeoutExpired as e:
            raise CommandFailed(None, args, e.stdout, e.stderr)
        except FileNotFoundError as e:
            raise CommandFailed(127, args, b'', str(e).encode())


def _log(args: Sequence[str]):
    _logger.info("Run: %s", shlex.join(args))


_logger = logging.getLogger(__name__)
