"""Unit tests for the command parser."""

import pytest

from superpod_sim.adapters.inbound.command_parser import CommandParser, parse_command, tokenize
from superpod_sim.domain.exceptions import ParseError


@pytest.mark.unit
class TestTokenize:
    """Test shell-style tokenization."""

    def test_whitespace_split(self):
        assert tokenize("nvidia-smi  -i   0") == ["nvidia-smi", "-i", "0"]

    def test_single_quotes_are_literal(self):
        assert tokenize("echo 'a \\\" b'") == ["echo", 'a \\" b']

    def test_double_quotes_honour_escapes(self):
        assert tokenize('scontrol update reason="bad \\"gpu\\""') == [
            "scontrol", "update", 'reason=bad "gpu"',
        ]

    def test_unquoted_backslash_escapes_next_character(self):
        assert tokenize("echo a\\ b") == ["echo", "a b"]

    def test_empty_quotes_produce_empty_token(self):
        assert tokenize('echo ""') == ["echo", ""]

    def test_operators_inside_quotes_are_allowed(self):
        assert tokenize("echo 'a|b;c'") == ["echo", "a|b;c"]

    @pytest.mark.parametrize("line", [
        "nvidia-smi | grep GPU",
        "nvidia-smi > out.txt",
        "sinfo; squeue",
        "sinfo && squeue",
        "echo `hostname`",
    ])
    def test_shell_operators_rejected(self, line):
        with pytest.raises(ParseError):
            tokenize(line)

    def test_command_substitution_rejected(self):
        with pytest.raises(ParseError, match="command substitution"):
            tokenize("echo $(hostname)")

    def test_unterminated_quote(self):
        with pytest.raises(ParseError, match="matching"):
            tokenize("echo 'oops")

    def test_trailing_backslash(self):
        with pytest.raises(ParseError):
            tokenize("echo \\")


@pytest.mark.unit
class TestCommandParser:
    """Test parsing into ParsedCommand."""

    def test_subcommands_and_flags(self):
        cmd = parse_command("dcgmi diag -r 3 -i 0")
        assert cmd.base_command == "dcgmi"
        assert cmd.subcommands == ("diag",)
        assert cmd.subcommand == "diag"
        assert cmd.get_flag("r") == "3"
        assert cmd.get_flag("i") == "0"

    def test_boolean_flag_does_not_consume_value(self):
        cmd = parse_command("nvidia-smi -q -i 0")
        assert cmd.flags["q"] is True
        assert cmd.flags["i"] == "0"

    def test_long_flag_with_equals(self):
        cmd = parse_command("nvidia-smi --query-gpu=name,temperature.gpu --format=csv")
        assert cmd.get_flag("query-gpu") == "name,temperature.gpu"
        assert cmd.get_flag("format") == "csv"

    def test_flag_at_end_is_boolean(self):
        cmd = parse_command("nvsm show health --detailed")
        assert cmd.subcommands == ("show", "health")
        assert cmd.flags["detailed"] is True

    def test_negative_number_is_not_a_flag(self):
        cmd = parse_command("perfquery -x -1")
        assert cmd.flags["x"] is True
        assert cmd.positional_args == ("-1",)

    def test_double_dash_ends_flags(self):
        cmd = parse_command("srun -N 1 -- nvidia-smi -L")
        assert cmd.get_flag("N") == "1"
        assert cmd.positional_args == ("nvidia-smi", "-L")

    def test_positionals_after_first_flag(self):
        cmd = parse_command("scontrol update NodeName=dgx-00 State=DRAIN")
        assert cmd.subcommands == ("update",)
        assert cmd.positional_args == ("NodeName=dgx-00", "State=DRAIN")
        assert cmd.arguments == ("update", "NodeName=dgx-00", "State=DRAIN")

    def test_numbers_are_positional(self):
        cmd = parse_command("scancel 1000 1001")
        assert cmd.subcommands == ()
        assert cmd.positional_args == ("1000", "1001")

    def test_global_help_is_boolean(self):
        cmd = parse_command("ibstat --help mlx5_0")
        assert cmd.flags["help"] is True
        assert cmd.positional_args == ("mlx5_0",)

    def test_flags_are_immutable(self):
        cmd = parse_command("nvidia-smi -i 0")
        with pytest.raises(TypeError):
            cmd.flags["i"] = "1"

    def test_raw_is_preserved(self):
        assert parse_command("sinfo -N").raw == "sinfo -N"

    def test_get_flag_string_ignores_booleans(self):
        cmd = parse_command("nvidia-smi -q")
        assert cmd.get_flag_string("q") is None

    def test_custom_boolean_schema(self):
        parser = CommandParser({"tool": frozenset({"x"})})
        cmd = parser.parse("tool -x value")
        assert cmd.flags["x"] is True
        assert cmd.subcommands == ()
        assert cmd.positional_args == ("value",)

    @pytest.mark.parametrize("line", ["", "   ", "$HOME", "-x foo"])
    def test_invalid_lines(self, line):
        with pytest.raises(ParseError):
            parse_command(line)
