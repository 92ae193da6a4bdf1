"""Unit tests for the command router."""

import pytest

from superpod_sim.adapters.inbound.command_parser import parse_command
from superpod_sim.adapters.inbound.command_router import (
    ROUTES,
    CommandName,
    CommandRouter,
    SimulatorKind,
    lookup_command,
)
from superpod_sim.adapters.inbound.simulators import SIMULATOR_CLASSES, build_simulators
from superpod_sim.domain.entities.command import CommandContext
from superpod_sim.domain.exceptions import InvariantViolation, UnknownCommandError


@pytest.mark.unit
class TestRoutingTable:
    """Test the static command table."""

    def test_every_command_is_routed(self):
        assert set(ROUTES) == set(CommandName)
        assert len(CommandName) == 53

    def test_every_kind_has_a_class(self):
        assert set(SIMULATOR_CLASSES) == set(SimulatorKind)
        assert len(SimulatorKind) == 17

    def test_lookup_known(self):
        assert lookup_command("nvidia-bug-report.sh") is CommandName.NVIDIA_BUG_REPORT

    def test_lookup_unknown(self):
        with pytest.raises(UnknownCommandError) as exc_info:
            lookup_command("vim")
        assert exc_info.value.command == "vim"


@pytest.mark.unit
class TestCommandRouter:
    """Test router construction and dispatch."""

    def test_commands_sorted(self, store):
        router = CommandRouter(build_simulators(store))
        assert router.commands == sorted(c.value for c in CommandName)

    def test_route_returns_wrapped_entry(self, store):
        router = CommandRouter(build_simulators(store))
        cmd = parse_command("hostname")
        result = router.route(cmd)(cmd, CommandContext(current_node="dgx-03"))
        assert result.exit_code == 0
        assert result.output.strip() == "dgx-03"

    def test_route_unknown(self, store):
        router = CommandRouter(build_simulators(store))
        with pytest.raises(UnknownCommandError):
            router.route(parse_command("top"))

    def test_missing_kind_rejected(self, store):
        simulators = build_simulators(store)
        del simulators[SimulatorKind.NVSM]
        with pytest.raises(InvariantViolation, match="nvsm"):
            CommandRouter(simulators)

    def test_missing_route_rejected(self, store):
        routes = dict(ROUTES)
        del routes[CommandName.GPU_BURN]
        with pytest.raises(InvariantViolation, match="gpu-burn"):
            CommandRouter(build_simulators(store), routes)

    def test_missing_method_rejected(self, store):
        routes = dict(ROUTES)
        routes[CommandName.HPL] = (SimulatorKind.BENCHMARK, "execute_linpack")
        with pytest.raises(InvariantViolation, match="execute_linpack"):
            CommandRouter(build_simulators(store), routes)
