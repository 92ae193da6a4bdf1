"""Storage tools: ``df``, ``mount`` and ``lfs``.

Every node sees the same shared filesystems (NFS home, Lustre scratch) plus
its own boot disk and the local NVMe RAID at ``/raid``. Sizes are fixed
catalogue values in KiB.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand

TIB = 1024 ** 3               # KiB per TiB
GIB = 1024 ** 2
LUSTRE_FSNAME = "lustre"
LUSTRE_MOUNT = "/lustre"


@dataclass(frozen=True)
class Filesystem:
    device: str
    fstype: str
    mount_point: str
    size_kib: int
    used_kib: int
    inodes: int
    inodes_used: int
    options: str

    @property
    def avail_kib(self) -> int:
        return self.size_kib - self.used_kib

    @property
    def use_percent(self) -> int:
        return math.ceil(self.used_kib * 100 / self.size_kib) if self.size_kib else 0

    @property
    def inode_percent(self) -> int:
        return math.ceil(self.inodes_used * 100 / self.inodes) if self.inodes else 0


@dataclass(frozen=True)
class LustreTarget:
    uuid: str
    kind: str                     # "MDT" or "OST"
    index: int
    size_kib: int
    used_kib: int

    @property
    def avail_kib(self) -> int:
        return self.size_kib - self.used_kib


FILESYSTEMS = (
    Filesystem("/dev/md0", "ext4", "/", 1787 * GIB, 61 * GIB, 117_178_368, 512_004,
               "rw,relatime,errors=remount-ro"),
    Filesystem("tmpfs", "tmpfs", "/dev/shm", 504 * GIB, 0, 132_098_431, 1, "rw,nosuid,nodev"),
    Filesystem("/dev/md1", "ext4", "/raid", 14 * TIB, 2 * TIB + 310 * GIB, 937_500_672, 3_144_000,
               "rw,relatime,stripe=384"),
    Filesystem("nfs01:/export/home", "nfs4", "/home", 20 * TIB, 11 * TIB, 671_088_640, 301_989_888,
               "rw,relatime,vers=4.2,rsize=1048576,wsize=1048576,hard,proto=tcp,timeo=600,retrans=2,sec=sys"),
    Filesystem("10.10.0.1@o2ib:10.10.0.2@o2ib:/lustre", "lustre", LUSTRE_MOUNT, 140 * TIB + 812 * GIB,
               92 * TIB + 400 * GIB, 6_553_600_000, 4_390_912_000, "rw,flock,user_xattr,lazystatfs"),
)

LUSTRE_TARGETS = (
    LustreTarget(f"{LUSTRE_FSNAME}-MDT0000_UUID", "MDT", 0, 953 * GIB, 238 * GIB),
    LustreTarget(f"{LUSTRE_FSNAME}-OST0000_UUID", "OST", 0, 35 * TIB + 205 * GIB, 23 * TIB + 102 * GIB),
    LustreTarget(f"{LUSTRE_FSNAME}-OST0001_UUID", "OST", 1, 35 * TIB + 205 * GIB, 22 * TIB + 819 * GIB),
    LustreTarget(f"{LUSTRE_FSNAME}-OST0002_UUID", "OST", 2, 35 * TIB + 205 * GIB, 23 * TIB + 410 * GIB),
    LustreTarget(f"{LUSTRE_FSNAME}-OST0003_UUID", "OST", 3, 35 * TIB + 205 * GIB, 23 * TIB),
)

# Pseudo filesystems that mount prints but df hides
PSEUDO_MOUNTS = (
    ("sysfs", "/sys", "sysfs", "rw,nosuid,nodev,noexec,relatime"),
    ("proc", "/proc", "proc", "rw,nosuid,nodev,noexec,relatime"),
    ("devtmpfs", "/dev", "devtmpfs", "rw,nosuid,size=528393728k,nr_inodes=132098432,mode=755"),
    ("tmpfs", "/run", "tmpfs", "rw,nosuid,nodev,noexec,relatime,size=105678744k,mode=755"),
)


def human_size(kib: int) -> str:
    """df -h rendering: one decimal below 10, rounded up."""
    value = float(kib)
    suffix = "K"
    for unit in ("M", "G", "T", "P"):
        if value < 1024:
            break
        value /= 1024
        suffix = unit
    if value < 10 and suffix != "K":
        return f"{math.ceil(value * 10) / 10:.1f}{suffix}"
    return f"{math.ceil(value)}{suffix}"


class StorageSimulator(BaseSimulator):
    """Simulates df, mount and the Lustre client tool."""

    TOOLS = {
        "df": ToolInfo("df", "report file system disk space usage", "8.32",
                       usage="df [-h] [-T] [-i] [FILE]...", version_text="df (GNU coreutils) 8.32"),
        "mount": ToolInfo("mount", "mount a filesystem", "2.37.2",
                          usage="mount [-l] [-t type]", version_text="mount from util-linux 2.37.2 (libmount 2.37.2)"),
        "lfs": ToolInfo(
            "lfs", "Lustre utility to create a file with specific striping pattern and find the striping pattern of existing files",
            "2.15.3",
            usage="lfs <df|check|getstripe|osts|mdts> [options]",
            commands=(
                ("df [-h] [-i]", "Report filesystem disk space usage or inodes usage"),
                ("check servers", "Display the status of MDTs and OSTs"),
                ("getstripe PATH", "Show the layout of a file or directory"),
                ("osts", "List OSTs of the filesystem"),
                ("mdts", "List MDTs of the filesystem"),
            ),
            version_text="lfs 2.15.3",
        ),
    }

    # -------- df --------

    def execute_df(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        self.current_node(self.snapshot(), ctx)
        human = cmd.has_flag("h", "human-readable", "hT", "Th")
        show_type = cmd.has_flag("T", "print-type", "hT", "Th")
        inodes = cmd.has_flag("i", "inodes")
        fs_type = cmd.get_flag_string("t", "type")

        filesystems = list(FILESYSTEMS)
        if fs_type:
            filesystems = [f for f in filesystems if f.fstype == fs_type]
            if not filesystems:
                raise self.error("df: no file systems processed")
        if cmd.has_flag("l", "local"):
            filesystems = [f for f in filesystems if f.fstype not in ("nfs4", "lustre")]
        paths = cmd.arguments
        if paths:
            selected = []
            for path in paths:
                match = max(
                    (f for f in FILESYSTEMS if path == f.mount_point or path.startswith(f.mount_point.rstrip("/") + "/")),
                    key=lambda f: len(f.mount_point),
                    default=None,
                )
                if match is None:
                    raise self.error(f"df: {path}: No such file or directory")
                selected.append(match)
            filesystems = selected

        def size(kib: int) -> str:
            return human_size(kib) if human else str(kib)

        if inodes:
            headers = ["Filesystem", "Inodes", "IUsed", "IFree", "IUse%", "Mounted on"]
            rows = [
                [f.device, str(f.inodes), str(f.inodes_used), str(f.inodes - f.inodes_used),
                 f"{f.inode_percent}%", f.mount_point]
                for f in filesystems
            ]
        else:
            headers = ["Filesystem", "Size" if human else "1K-blocks", "Used", "Avail", "Use%", "Mounted on"]
            rows = [
                [f.device, size(f.size_kib), size(f.used_kib), size(f.avail_kib), f"{f.use_percent}%", f.mount_point]
                for f in filesystems
            ]
        if show_type:
            headers.insert(1, "Type")
            for row, f in zip(rows, filesystems):
                row.insert(1, f.fstype)
        return self.success(self._align(headers, rows) + "\n")

    @staticmethod
    def _align(headers: list[str], rows: list[list[str]]) -> str:
        """df alignment: first column left, numbers right, mount point left."""
        widths = [max(len(h), *(len(r[i]) for r in rows)) if rows else len(h) for i, h in enumerate(headers)]
        text_columns = {0, len(headers) - 1}
        if headers[1] == "Type":
            text_columns.add(1)

        def fmt(cells: list[str]) -> str:
            out = []
            for i, cell in enumerate(cells):
                if i == len(cells) - 1:
                    out.append(cell)
                elif i in text_columns:
                    out.append(cell.ljust(widths[i]))
                else:
                    out.append(cell.rjust(widths[i]))
            return " ".join(out)

        return "\n".join([fmt(headers)] + [fmt(r) for r in rows])

    # -------- mount --------

    def execute_mount(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        self.current_node(self.snapshot(), ctx)
        if cmd.arguments:
            raise self.error(f"mount: {cmd.arguments[-1]}: mount point does not exist.", 32)
        fs_type = cmd.get_flag_string("t", "types")
        entries = list(PSEUDO_MOUNTS)
        entries.extend((f.device, f.mount_point, f.fstype, f.options) for f in FILESYSTEMS)
        if fs_type:
            entries = [e for e in entries if e[2] == fs_type]
        lines = [f"{device} on {mount} type {fstype} ({options})" for device, mount, fstype, options in entries]
        return self.success("\n".join(lines) + ("\n" if lines else ""))

    # -------- lfs --------

    def execute_lfs(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        self.current_node(self.snapshot(), ctx)
        verb = cmd.subcommand
        if verb is None:
            return self.help(self.TOOLS["lfs"])
        if verb == "df":
            return self._lfs_df(cmd)
        if verb == "check":
            target = cmd.arguments[1] if len(cmd.arguments) > 1 else None
            if target not in ("servers", "osts", "mds", "mdts"):
                raise self.error("lfs check: missing target (servers|osts|mds)")
            kinds = {"servers": ("MDT", "OST"), "osts": ("OST",), "mds": ("MDT",), "mdts": ("MDT",)}[target]
            lines = [
                f"{t.uuid.removesuffix('_UUID')}-mdc-ffff9a0c active." if t.kind == "MDT"
                else f"{t.uuid.removesuffix('_UUID')}-osc-ffff9a0c active."
                for t in LUSTRE_TARGETS if t.kind in kinds
            ]
            return self.success("\n".join(lines) + "\n")
        if verb in ("osts", "mdts"):
            kind = verb[:3].upper()
            lines = [f"{kind}S:"]
            lines.extend(f"{t.index}: {t.uuid} ACTIVE" for t in LUSTRE_TARGETS if t.kind == kind)
            return self.success("\n".join(lines) + "\n")
        if verb == "getstripe":
            path = cmd.arguments[1] if len(cmd.arguments) > 1 else None
            if path is None:
                raise self.error("lfs getstripe: no file or directory specified")
            if not (path == LUSTRE_MOUNT or path.startswith(LUSTRE_MOUNT + "/")):
                raise self.error(f"lfs getstripe: '{path}' is not on a Lustre filesystem: Inappropriate ioctl for device (25)")
            return self.success(
                f"{path}\n"
                "stripe_count:  1 stripe_size:   1048576 pattern:       raid0 stripe_offset: -1\n"
            )
        raise self.error(f"lfs: unknown command '{verb}'\nTry 'lfs help' for more information.")

    def _lfs_df(self, cmd: ParsedCommand) -> CommandResult:
        human = cmd.has_flag("h")
        rows = []
        for t in LUSTRE_TARGETS:
            used_pct = math.ceil(t.used_kib * 100 / t.size_kib)
            cells = [t.size_kib, t.used_kib, t.avail_kib]
            rendered = [human_size(v) if human else str(v) for v in cells]
            rows.append([t.uuid, *rendered, f"{used_pct}%", f"{LUSTRE_MOUNT}[{t.kind}:{t.index}]"])
        osts = [t for t in LUSTRE_TARGETS if t.kind == "OST"]
        total = [sum(t.size_kib for t in osts), sum(t.used_kib for t in osts), sum(t.avail_kib for t in osts)]
        total_rendered = [human_size(v) if human else str(v) for v in total]
        rows.append([""])
        rows.append([
            "filesystem_summary:", *total_rendered,
            f"{math.ceil(total[1] * 100 / total[0])}%", LUSTRE_MOUNT,
        ])
        headers = ["UUID", "bytes" if human else "1K-blocks", "Used", "Available", "Use%", "Mounted on"]
        widths = [max(len(h), *(len(r[i]) for r in rows if len(r) > i)) for i, h in enumerate(headers)]

        def fmt(cells: list[str]) -> str:
            if len(cells) == 1:
                return ""
            parts = [cells[0].ljust(widths[0])]
            parts.extend(c.rjust(widths[i]) for i, c in enumerate(cells[1:5], start=1))
            parts.append(cells[5])
            return " ".join(parts)

        return self.success("\n".join([fmt(headers)] + [fmt(r) for r in rows]) + "\n")
