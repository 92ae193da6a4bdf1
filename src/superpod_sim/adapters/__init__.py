"""Adapters - command-line simulators and the REST surface."""
