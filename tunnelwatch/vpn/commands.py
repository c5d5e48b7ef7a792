"""Command templates for the tools the monitor drives or probes."""

import shutil
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .exceptions import VPNError


class CommandError(VPNError):
    """Base exception for command-related errors."""
    pass


class ValidationError(CommandError):
    """Raised when an argument does not fit the command's option rules."""
    pass


FLAG = type(None)


@dataclass(frozen=True)
class Command:
    """Immutable argv template; every builder call returns a new Command.

    ``options`` maps long option names (underscores for dashes) to the type
    their value must convert to, or FLAG for options taking no value. When
    it is None any option is accepted.
    """
    argv: Tuple[str, ...]
    use_sudo: bool = False
    options: Optional[Dict[str, type]] = None

    @classmethod
    def parse(cls, cmd: str, options: Optional[Dict[str, type]] = None) -> 'Command':
        argv = tuple(cmd.split())
        if not argv:
            raise ValidationError("Command cannot be empty")
        return cls(argv, options=options)

    @property
    def executable(self) -> str:
        return self.argv[0]

    def is_available(self) -> bool:
        """Whether the executable can be found in PATH."""
        return shutil.which(self.executable) is not None

    def _check_option(self, name: str, value: Optional[str]) -> None:
        if self.options is None:
            return
        if name not in self.options:
            known = ", ".join(f"--{opt.replace('_', '-')}" for opt in self.options)
            raise ValidationError(f"{self.executable} has no option --{name.replace('_', '-')} (known: {known})")

        expected = self.options[name]
        if expected is FLAG:
            if value is not None:
                raise ValidationError(f"--{name} is a flag and takes no value")
            return
        if value is None:
            raise ValidationError(f"--{name} requires a value")
        if expected is not Path:
            try:
                expected(value)
            except ValueError:
                raise ValidationError(f"Invalid value {value!r} for --{name}, expected {expected.__name__}")

    def args(self, *values: str) -> 'Command':
        return replace(self, argv=self.argv + tuple(str(v) for v in values))

    def with_options(self, **kwargs) -> 'Command':
        """Append ``--name value`` pairs; a None value appends the bare flag."""
        argv = list(self.argv)
        for name, value in kwargs.items():
            value = None if value is None else str(value)
            self._check_option(name, value)
            argv.append("--" + name.replace("_", "-"))
            if value is not None:
                argv.append(value)
        return replace(self, argv=tuple(argv))

    def as_sudo(self, enabled: bool = True) -> 'Command':
        return replace(self, use_sudo=enabled)

    def build(self) -> List[str]:
        argv = list(self.argv)
        return ["sudo"] + argv if self.use_sudo else argv


OPENVPN_OPTIONS = {
    'config': Path,
    'daemon': FLAG,
    'verb': int,
    'log': Path,
    'dev': str,
    'writepid': Path,
}

WG = Command.parse("wg")
WG_SHOW_DUMP = WG.args("show", "all", "dump")

WG_QUICK = Command.parse("wg-quick")
WG_QUICK_UP = WG_QUICK.args("up")
WG_QUICK_DOWN = WG_QUICK.args("down")

OPENVPN = Command.parse("openvpn", options=OPENVPN_OPTIONS)
OPENVPN_START = OPENVPN.with_options(daemon=None, verb=3)

PKILL = Command.parse("pkill")

PING = Command.parse("ping")
PING_ONCE = PING.args("-c", "1", "-W", "2")
