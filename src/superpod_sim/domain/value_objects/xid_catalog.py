"""Catalog of NVIDIA driver XID error codes.

Each XID carries a short description, a severity and a category. Kernel-log
simulators use the follow-up lines to mimic what the driver prints after the
primary ``NVRM: Xid`` message.

References:
    - NVIDIA XID Errors documentation (r535)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class XIDSeverity(Enum):
    """Operator-facing severity of an XID."""
    INFORMATIONAL = "Informational"
    WARNING = "Warning"
    CRITICAL = "Critical"


class XIDCategory(Enum):
    """Subsystem an XID points at."""
    APPLICATION = "Application"
    DRIVER = "Driver"
    HARDWARE = "Hardware"
    MEMORY = "Memory"
    NVLINK = "NVLink"


@dataclass(frozen=True)
class XIDDefinition:
    """One catalogued XID code."""
    code: int
    name: str
    severity: XIDSeverity
    category: XIDCategory
    kernel_followup: str = ""     # Extra NVRM line printed after the Xid line


# XID that removes a GPU from PCIe enumeration
XID_FALLEN_OFF_BUS = 79

XID_CATALOG: dict[int, XIDDefinition] = {
    d.code: d
    for d in (
        XIDDefinition(13, "Graphics Engine Exception", XIDSeverity.WARNING, XIDCategory.APPLICATION),
        XIDDefinition(31, "GPU Memory Page Fault", XIDSeverity.WARNING, XIDCategory.APPLICATION),
        XIDDefinition(32, "Invalid or Corrupted Push Buffer", XIDSeverity.WARNING, XIDCategory.DRIVER),
        XIDDefinition(38, "Driver Firmware Mismatch", XIDSeverity.CRITICAL, XIDCategory.DRIVER),
        XIDDefinition(
            43, "GPU Stopped Responding", XIDSeverity.CRITICAL, XIDCategory.HARDWARE,
            "GPU stopped responding to commands",
        ),
        XIDDefinition(45, "Preemptive GPU Cleanup", XIDSeverity.INFORMATIONAL, XIDCategory.DRIVER),
        XIDDefinition(
            48, "Double-Bit ECC Error", XIDSeverity.CRITICAL, XIDCategory.MEMORY,
            "Uncorrectable ECC error detected in DRAM",
        ),
        XIDDefinition(56, "Display Engine Error", XIDSeverity.WARNING, XIDCategory.HARDWARE),
        XIDDefinition(57, "Error in Copy Engine", XIDSeverity.WARNING, XIDCategory.DRIVER),
        XIDDefinition(62, "Internal Micro-controller Halt", XIDSeverity.CRITICAL, XIDCategory.HARDWARE),
        XIDDefinition(
            63, "Row Remapping Failure", XIDSeverity.CRITICAL, XIDCategory.MEMORY,
            "Row remapping failed - no spare rows available",
        ),
        XIDDefinition(64, "Row Remapping Threshold Exceeded", XIDSeverity.CRITICAL, XIDCategory.MEMORY),
        XIDDefinition(68, "Video Processor Exception", XIDSeverity.WARNING, XIDCategory.HARDWARE),
        XIDDefinition(69, "Graphics Engine Class Error", XIDSeverity.WARNING, XIDCategory.DRIVER),
        XIDDefinition(
            74, "NVLink Error", XIDSeverity.CRITICAL, XIDCategory.NVLINK,
            "NVLink: fatal error detected on link",
        ),
        XIDDefinition(
            79, "GPU Fallen Off Bus", XIDSeverity.CRITICAL, XIDCategory.HARDWARE,
            "GPU has fallen off the bus.",
        ),
        XIDDefinition(92, "High Single-Bit ECC Rate", XIDSeverity.WARNING, XIDCategory.MEMORY),
        XIDDefinition(94, "Contained ECC Error", XIDSeverity.WARNING, XIDCategory.MEMORY),
        XIDDefinition(95, "Uncontained ECC Error", XIDSeverity.CRITICAL, XIDCategory.MEMORY),
        XIDDefinition(119, "GSP Error", XIDSeverity.CRITICAL, XIDCategory.HARDWARE),
    )
}


def get_xid(code: int) -> Optional[XIDDefinition]:
    """Look up an XID definition by code."""
    return XID_CATALOG.get(code)
