# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import os
import shlex
import tempfile
import threading
from abc import ABCMeta
from abc import abstractmethod
from pathlib import Path
from subprocess import CompletedProcess
from typing import Mapping
from typing import Optional
from typing import Sequence
from typing import Union

from vpn_provisioning._exceptions import ConfigWriteError
from vpn_provisioning._exceptions import ProvisioningCancelled
from vpn_provisioning._shell import Shell


class Command(metaclass=ABCMeta):

    @abstractmethod
    def run(self, shell: Shell):
        pass


class Run(Command):
    """Run external tool with the given argument vector.

    >>> Run(['systemctl', 'restart', 'strongswan-starter'])
    Run('systemctl restart strongswan-starter')
    >>> Run(['nft', '-f', Path('/etc/nft tables.conf')])
    Run("nft -f '/etc/nft tables.conf'")
    """

    def __init__(
            self,
            args: Sequence[Union[str, os.PathLike]],
            *,
            input: Optional[bytes] = None,  # noqa PyShadowingBuiltins
            env: Optional[Mapping[str, str]] = None,
            ):
        self._args = [str(a) for a in args]
        self._input = input
        self._env = env

    def __repr__(self):
        return f'{Run.__name__}({shlex.join(self._args)!r})'

    def run(self, shell) -> CompletedProcess:
        return shell.run(self._args, input=self._input, env=self._env)


class MakeDirs(Command):

    def __init__(self, path: Path, mode: int = 0o755):
        self._path = path
        self._mode = mode

    def __repr__(self):
        return f'{MakeDirs.__name__}({str(self._path)!r}, {self._mode:#o})'

    def run(self, shell):
        try:
            self._path.mkdir(parents=True, exist_ok=True)
            self._path.chmod(self._mode)
        except OSError as e:
            raise ConfigWriteError(f"Cannot create directory {self._path}: {e}") from e


class _Install(Command):
    """Write file atomically with the given permissions.

    Permissions are set on a temporary file before it replaces the target,
    so the content is never readable with wider permissions.
    If the file already has the same content and permissions, it's not touched.
    """

    _mode: int

    def __init__(self, path: Path, data: Union[str, bytes]):
        self._path = path
        self._data = data.encode() if isinstance(data, str) else data

    def __repr__(self):
        return f'{self.__class__.__name__}({str(self._path)!r})'

    def run(self, shell):
        try:
            if self._is_up_to_date():
                _logger.info("%s: unchanged", self._path)
                return
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=self._path.parent, prefix=f'.{self._path.name}.')
            try:
                os.fchmod(fd, self._mode)
                with os.fdopen(fd, 'wb') as f:
                    f.write(self._data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_path, self._path)
            except BaseException:
                Path(temp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise ConfigWriteError(f"Cannot write {self._path}: {e}") from e
        _logger.info("%s: written, mode %#o", self._path, self._mode)

    def _is_up_to_date(self) -> bool:
        if not self._path.is_file():
            return False
        if self._path.stat().st_mode & 0o777 != self._mode:
            return False
        return self._path.read_bytes() == self._data


class InstallCommon(_Install):
    _mode = 0o644


class InstallSecret(_Install):
    _mode = 0o600


class CompositeCommand(Command):

    def __init__(self, commands: Sequence[Command]):
        self._commands: Sequence[Command] = commands

    def __repr__(self):
        return f'<{self.__class__.__name__} with {len(self._commands)} commands>'

    def run(self, shell):
        for command in self._commands:
            command.run(shell)


class Host:
    """The only place where commands are executed.

    Cancellation is checked between commands: a command which has
    already started is never interrupted.
    """

    def __init__(self, shell: Shell, cancel_event: Optional[threading.Event] = None):
        self._shell = shell
        self._cancel_event = cancel_event or threading.Event()
        self._questionnaire = Questionnaire("Run")

    def __repr__(self):
        return f'<{Host.__name__} via {self._shell!r}>'

    def execute(self, command: Command):
        if self._cancel_event.is_set():
            raise ProvisioningCancelled(f"Cancelled before {command!r}")
        _logger.info("Command %r", command)
        if not self._questionnaire.user_agrees_with(repr(command)):
            raise ProvisioningCancelled(f"Declined by operator: {command!r}")
        return command.run(self._shell)

    def run(self, commands: Sequence[Command]):
        for command in commands:
            self.execute(command)

    def check_cancelled(self):
        if self._cancel_event.is_set():
            raise ProvisioningCancelled("Cancelled")


class Questionnaire:

    def __init__(self, prompt):
        self._agrees_with_all = False
        self._prompt = prompt

    def user_agrees_with(self, question) -> bool:
        if not os.getenv('PROVISIONING_ASK_FOR_CONFIRMATION', ''):
            return True
        prompt = f"{self._prompt} {question} [y,n,a]? "
        if self._agrees_with_all:
            print(prompt + 'a', flush=True)
            return True
        while True:
            answer = input(prompt)[:1].lower()
            if answer == 'y':
                return True
            if answer == 'n':
                return False
            if answer == 'a':
                self._agrees_with_all = True
                return True


_logger = logging.getLogger(__name__)
