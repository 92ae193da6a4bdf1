"""Command-line parser.

Turns one terminal line into a ``ParsedCommand``. Quoting follows the
shell: single quotes are literal, double quotes honour backslash escapes of
``"``, ``\\``, ``$`` and backtick, and an unquoted backslash escapes the
next character. Pipes, redirection, command separators and command
substitution are rejected because the simulator executes exactly one tool
per line.
"""

from __future__ import annotations

import re
from types import MappingProxyType
from typing import Mapping, Optional

from superpod_sim.domain.entities.command import FlagValue, ParsedCommand
from superpod_sim.domain.exceptions import ParseError

_BASE_COMMAND = re.compile(r"[A-Za-z0-9_.][A-Za-z0-9_.+-]*")
_NUMBER = re.compile(r"-?\d+(\.\d+)?")
_OPERATORS = frozenset("|<>;&`")
_DOUBLE_QUOTE_ESCAPES = frozenset('"\\$`')

# Flags that never take a separate value token
GLOBAL_BOOLEAN_FLAGS = frozenset({"help", "version"})

BOOLEAN_FLAGS: Mapping[str, frozenset[str]] = MappingProxyType({
    "nvidia-smi": frozenset({
        "h", "q", "query", "L", "list-gpus", "x", "xml-format", "r", "gpu-reset",
        "s", "status", "m", "lgip", "lgi", "lci", "dgi", "dci", "C", "c",
        "rgc", "reset-gpu-clocks", "e", "errorcounters", "matrix", "create-compute",
    }),
    "dcgmi": frozenset({"l", "list", "c", "check", "j", "json", "v", "verbose"}),
    "nv-fabricmanager": frozenset({"v", "verbose"}),
    "sinfo": frozenset({
        "N", "Node", "l", "long", "R", "list-reasons", "s", "summarize",
        "a", "all", "e", "exact", "h", "noheader", "V", "r", "responding",
    }),
    "squeue": frozenset({"l", "long", "h", "noheader", "a", "all", "r", "array", "s", "steps"}),
    "scontrol": frozenset({"d", "details", "o", "oneliner", "V"}),
    "sbatch": frozenset({"exclusive", "test-only", "parsable", "H", "hold", "requeue", "no-requeue"}),
    "srun": frozenset({"exclusive", "pty", "l", "label"}),
    "scancel": frozenset({"i", "interactive", "v", "verbose", "f", "full"}),
    "sacct": frozenset({"a", "allusers", "X", "allocations", "l", "long", "n", "noheader", "P", "parsable2"}),
    "bcm": frozenset({"v", "verbose", "a", "all"}),
    "bcm-node": frozenset({"v", "verbose", "a", "all"}),
    "crm": frozenset({"1", "f", "full"}),
    "cmsh": frozenset({"q", "quiet"}),
    "ipmitool": frozenset({"v", "c", "E"}),
    "ibstat": frozenset({"l", "list_of_cas", "p", "port_list", "s", "short", "d", "debug"}),
    "ibportstate": frozenset({"D", "d", "debug"}),
    "ibporterrors": frozenset({"v", "verbose", "c", "clear"}),
    "iblinkinfo": frozenset({"l", "line", "R", "switches-only", "v", "verbose", "down"}),
    "perfquery": frozenset({"x", "extended", "r", "reset_after_read", "a", "all_ports", "R", "reset"}),
    "ibdiagnet": frozenset({"v", "verbose", "r", "routing", "pc", "ls"}),
    "ibdev2netdev": frozenset({"v", "verbose"}),
    "ibnetdiscover": frozenset({"l", "list", "H", "Hca_list", "S", "Switch_list", "p", "ports"}),
    "mst": frozenset({"v", "verbose"}),
    "mlxconfig": frozenset({"y", "yes", "e", "enable_verbosity"}),
    "mlxlink": frozenset({"m", "show_module", "c", "show_counters", "e", "show_eye", "json"}),
    "mlxcables": frozenset({"q", "query", "DDM", "dump"}),
    "mlxfwmanager": frozenset({"query", "u", "update", "y", "yes", "online-query-psid"}),
    "lscpu": frozenset({"e", "extended", "p", "parse", "J", "json"}),
    "free": frozenset({"h", "human", "b", "k", "m", "g", "t", "w", "wide", "si"}),
    "uptime": frozenset({"p", "pretty", "s", "since"}),
    "uname": frozenset({"a", "all", "s", "n", "r", "v", "m", "p", "i", "o"}),
    "hostname": frozenset({"f", "fqdn", "s", "short", "i", "ip-address", "I", "all-ip-addresses"}),
    "dmesg": frozenset({"T", "ctime", "H", "human", "w", "follow", "k", "kernel", "x", "decode", "c", "clear"}),
    "systemctl": frozenset({"no-pager", "a", "all", "l", "full", "q", "quiet"}),
    "sensors": frozenset({"f", "fahrenheit", "A", "no-adapter", "j"}),
    "lspci": frozenset({"v", "vv", "vvv", "nn", "k", "t", "tv", "D", "x", "xxx", "n", "mm"}),
    "journalctl": frozenset({"k", "dmesg", "f", "follow", "b", "boot", "no-pager", "r", "reverse", "x", "catalog", "a", "all"}),
    "docker": frozenset({"a", "all", "rm", "it", "i", "t", "d", "detach", "q", "quiet", "no-trunc", "privileged"}),
    "enroot": frozenset({"f", "fancy", "w", "rw", "r", "root", "force"}),
    "nvidia-container-cli": frozenset({"k", "load-kmods", "d", "debug", "csv"}),
    "df": frozenset({"h", "human-readable", "H", "si", "T", "print-type", "a", "all", "i", "inodes", "l", "local", "hT", "Th"}),
    "mount": frozenset({"l", "a", "all", "v", "verbose", "n"}),
    "lfs": frozenset({"h", "i", "l", "lazy", "v", "verbose"}),
    "hpl": frozenset({"verbose", "dry-run"}),
    "nccl-test": frozenset({"verbose", "c", "check"}),
    "all_reduce_perf": frozenset({"verbose"}),
    "gpu-burn": frozenset({"d", "doubles", "tc", "tensor-cores", "l", "list"}),
    "clusterkit": frozenset({"v", "verbose"}),
    "nvsm": frozenset({"detailed", "json", "v", "verbose"}),
    "nvlink-audit": frozenset({"v", "verbose", "json", "errors-only"}),
    "nvidia-bug-report.sh": frozenset({"safe-mode", "extra-system-data", "no-compress", "quiet", "v", "verbose"}),
})


def _is_flag(token: str) -> bool:
    return token.startswith("-") and token != "-" and not _NUMBER.fullmatch(token)


def tokenize(raw: str) -> list[str]:
    """Split a command line into tokens with shell quoting rules.

    Raises:
        ParseError: On an unterminated quote, a trailing backslash or an
            unquoted shell operator.
    """
    tokens: list[str] = []
    current: list[str] = []
    in_token = False
    quote: Optional[str] = None
    i = 0
    n = len(raw)

    while i < n:
        ch = raw[i]

        if quote == "'":
            if ch == "'":
                quote = None
            else:
                current.append(ch)
            i += 1
            continue

        if quote == '"':
            if ch == '"':
                quote = None
            elif ch == "\\" and i + 1 < n and raw[i + 1] in _DOUBLE_QUOTE_ESCAPES:
                current.append(raw[i + 1])
                i += 1
            else:
                current.append(ch)
            i += 1
            continue

        if ch.isspace():
            if in_token:
                tokens.append("".join(current))
                current = []
                in_token = False
        elif ch in ("'", '"'):
            quote = ch
            in_token = True
        elif ch == "\\":
            if i + 1 >= n:
                raise ParseError("unexpected end of input after backslash")
            current.append(raw[i + 1])
            in_token = True
            i += 1
        elif ch in _OPERATORS:
            raise ParseError(f"unsupported shell operator '{ch}' (pipes, redirection and chaining are not available)")
        elif ch == "$" and i + 1 < n and raw[i + 1] == "(":
            raise ParseError("command substitution '$(' is not supported")
        else:
            current.append(ch)
            in_token = True
        i += 1

    if quote is not None:
        raise ParseError(f"unexpected EOF while looking for matching `{quote}'")
    if in_token:
        tokens.append("".join(current))
    return tokens


class CommandParser:
    """Parse terminal lines into ParsedCommand values."""

    def __init__(self, boolean_flags: Mapping[str, frozenset[str]] = BOOLEAN_FLAGS):
        self._boolean_flags = boolean_flags

    def parse(self, raw: str) -> ParsedCommand:
        """Parse one command line.

        Args:
            raw: The line as typed.

        Returns:
            Immutable parsed command.

        Raises:
            ParseError: If the line is empty or malformed.
        """
        tokens = tokenize(raw)
        if not tokens:
            raise ParseError("empty command")

        base = tokens[0]
        if not _BASE_COMMAND.fullmatch(base):
            raise ParseError(f"invalid command name '{base}'")

        booleans = GLOBAL_BOOLEAN_FLAGS | self._boolean_flags.get(base, frozenset())
        subcommands: list[str] = []
        flags: dict[str, FlagValue] = {}
        positional: list[str] = []
        flags_ended = False
        seen_non_subcommand = False

        rest = tokens[1:]
        i = 0
        while i < len(rest):
            token = rest[i]
            i += 1

            if flags_ended:
                positional.append(token)
                continue
            if token == "--":
                flags_ended = True
                seen_non_subcommand = True
                continue

            if _is_flag(token):
                seen_non_subcommand = True
                body = token[2:] if token.startswith("--") else token[1:]
                if "=" in body:
                    name, value = body.split("=", 1)
                    if not name:
                        raise ParseError(f"invalid flag '{token}'")
                    flags[name] = value
                    continue
                if not body:
                    raise ParseError(f"invalid flag '{token}'")
                takes_value = body not in booleans and i < len(rest)
                if takes_value and not _is_flag(rest[i]) and rest[i] != "--":
                    flags[body] = rest[i]
                    i += 1
                else:
                    flags[body] = True
                continue

            if not seen_non_subcommand and "=" not in token and not _NUMBER.fullmatch(token):
                subcommands.append(token)
            else:
                seen_non_subcommand = True
                positional.append(token)

        return ParsedCommand(
            base_command=base,
            subcommands=tuple(subcommands),
            flags=MappingProxyType(flags),
            positional_args=tuple(positional),
            raw=raw,
        )


_default_parser = CommandParser()


def parse_command(raw: str) -> ParsedCommand:
    """Parse with the default boolean flag schemas."""
    return _default_parser.parse(raw)
