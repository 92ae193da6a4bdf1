"""DGX SuperPOD simulator.

A stateful emulator of an 8-node DGX cluster: GPUs, NVLink, InfiniBand,
BMCs and Slurm, exercised through the same command-line tools operators
use on real systems.
"""

__version__ = "0.1.0"
