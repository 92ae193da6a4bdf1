"""Outbound ports - interfaces the domain services and engine depend on.

The fault injector and drift worker write GPUs through ``GPUStateStore``;
the engine parses and dispatches through ``CommandParserPort`` and
``CommandDispatcher``; timestamps come from an injected ``Clock``.
"""

from superpod_sim.ports.outbound.clock import Clock, fixed_clock, isoformat_utc, system_clock
from superpod_sim.ports.outbound.commands import CommandDispatcher, CommandParserPort, EntryPoint
from superpod_sim.ports.outbound.gpu_state import GPUPartial, GPUStateStore

__all__ = [
    # Clock
    "Clock",
    "fixed_clock",
    "isoformat_utc",
    "system_clock",
    # Commands
    "CommandDispatcher",
    "CommandParserPort",
    "EntryPoint",
    # State
    "GPUPartial",
    "GPUStateStore",
]
