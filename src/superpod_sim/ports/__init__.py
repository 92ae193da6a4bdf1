"""Ports - contracts between the core and its adapters."""
