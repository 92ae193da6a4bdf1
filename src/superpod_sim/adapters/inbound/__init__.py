"""Inbound adapters for the SuperPOD simulator.

Provides the command parser, the command router and the REST API.
"""

from superpod_sim.adapters.inbound.command_parser import CommandParser, parse_command, tokenize
from superpod_sim.adapters.inbound.command_router import CommandName, CommandRouter, SimulatorKind
from superpod_sim.adapters.inbound.rest_api import create_app

__all__ = [
    "CommandName",
    "CommandParser",
    "CommandRouter",
    "SimulatorKind",
    "create_app",
    "parse_command",
    "tokenize",
]
