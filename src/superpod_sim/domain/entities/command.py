"""Command-path value types.

ParsedCommand is produced once per invocation by the parser and never
mutated. CommandContext is the per-terminal session. CommandResult carries
output text, an exit status and any state changes a tool asked for; the
engine, not the simulator, applies those changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Sequence, Union

FlagValue = Union[str, bool]


@dataclass(frozen=True)
class ParsedCommand:
    """Structured form of one command line."""
    base_command: str
    subcommands: tuple[str, ...] = ()
    flags: Mapping[str, FlagValue] = field(default_factory=lambda: MappingProxyType({}))
    positional_args: tuple[str, ...] = ()
    raw: str = ""

    @property
    def subcommand(self) -> Optional[str]:
        """The verb, if any (e.g. ``diag`` in ``dcgmi diag -r 3``)."""
        return self.subcommands[0] if self.subcommands else None

    @property
    def arguments(self) -> tuple[str, ...]:
        """Subcommands followed by positionals, in command-line order."""
        return self.subcommands + self.positional_args

    def has_flag(self, *names: str) -> bool:
        return any(name in self.flags for name in names)

    def get_flag(self, *names: str) -> Optional[FlagValue]:
        for name in names:
            if name in self.flags:
                return self.flags[name]
        return None

    def get_flag_string(self, *names: str) -> Optional[str]:
        """Return a flag's string value; boolean flags yield None."""
        value = self.get_flag(*names)
        if isinstance(value, str):
            return value
        return None


@dataclass
class CommandContext:
    """Per-session terminal state. Never persisted."""
    current_node: str = "dgx-00"
    current_path: str = "/root"
    environment: dict[str, str] = field(
        default_factory=lambda: {
            "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
            "HOME": "/root",
            "USER": "root",
        }
    )
    history: list[str] = field(default_factory=list)


class StateAction(Enum):
    """Named store actions a tool may request."""
    SET_SLURM_STATE = "set_slurm_state"
    SUBMIT_JOB = "submit_job"
    CANCEL_JOB = "cancel_job"
    SET_MIG_MODE = "set_mig_mode"
    CREATE_MIG_INSTANCES = "create_mig_instances"
    DESTROY_MIG_INSTANCES = "destroy_mig_instances"
    SET_POWER_LIMIT = "set_power_limit"
    SET_PERSISTENCE_MODE = "set_persistence_mode"
    RESET_GPU = "reset_gpu"


@dataclass(frozen=True)
class StateChange:
    """A state mutation requested by a simulator."""
    action: StateAction
    node_id: Optional[str] = None
    gpu_ids: tuple[int, ...] = ()
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass
class CommandResult:
    """Output of one command execution."""
    output: str
    exit_code: int = 0
    changes: Sequence[StateChange] = ()

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
