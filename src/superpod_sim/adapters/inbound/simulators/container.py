"""Container runtime tools.

``docker``, ``enroot`` and ``nvidia-container-cli`` on the current node.
Images and containers are a fixed catalogue, not cluster state. GPU
injection goes through the same checks the NVIDIA container toolkit makes:
a GPU that fell off the bus cannot be handed to a container.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.adapters.inbound.simulators.basic_system import kernel_pci_address
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.entities.node import DGXNode
from superpod_sim.domain.value_objects.hardware_specs import DGX_A100, SYSTEM_SPECS

DOCKER_VERSION = "24.0.7"
ENROOT_VERSION = "3.4.1"
TOOLKIT_VERSION = "1.14.3"


@dataclass(frozen=True)
class ContainerImage:
    repository: str
    tag: str
    size: str

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"

    @property
    def image_id(self) -> str:
        return hashlib.sha256(self.reference.encode()).hexdigest()[:12]


IMAGES = (
    ContainerImage("nvcr.io/nvidia/pytorch", "23.10-py3", "21.4GB"),
    ContainerImage("nvcr.io/nvidia/tensorflow", "23.10-tf2-py3", "15.8GB"),
    ContainerImage("nvcr.io/nvidia/hpc-benchmarks", "23.10", "6.92GB"),
    ContainerImage("nvcr.io/nvidia/cuda", "12.2.0-base-ubuntu22.04", "243MB"),
    ContainerImage("nvcr.io/nvidia/k8s/dcgm-exporter", "3.3.0-3.2.0-ubuntu22.04", "1.1GB"),
)

ENROOT_IMAGES = ("nvidia+pytorch+23.10-py3.sqsh", "nvidia+hpc-benchmarks+23.10.sqsh")


def enroot_name(uri: str) -> str:
    """``docker://nvcr.io#nvidia/pytorch:23.10-py3`` -> ``nvidia+pytorch+23.10-py3.sqsh``."""
    path = uri.split("#", 1)[-1].removeprefix("docker://")
    return path.replace("/", "+").replace(":", "+") + ".sqsh"


class ContainerSimulator(BaseSimulator):
    """Simulates Docker, enroot and the NVIDIA container CLI."""

    TOOLS = {
        "docker": ToolInfo(
            "docker", "A self-sufficient runtime for containers", DOCKER_VERSION,
            usage="docker [OPTIONS] COMMAND",
            commands=(
                ("ps", "List containers"),
                ("images", "List images"),
                ("run", "Create and run a new container from an image"),
                ("info", "Display system-wide information"),
            ),
            version_text=f"Docker version {DOCKER_VERSION}, build afdd53b",
        ),
        "enroot": ToolInfo(
            "enroot", "unprivileged container runtime", ENROOT_VERSION,
            usage="enroot COMMAND [ARG...]",
            commands=(("list", "List container images"), ("import", "Import a container image")),
            version_text=ENROOT_VERSION,
        ),
        "nvidia-container-cli": ToolInfo(
            "nvidia-container-cli", "NVIDIA container runtime library command-line interface", TOOLKIT_VERSION,
            usage="nvidia-container-cli [OPTION...] info|list|configure",
            commands=(("info", "Report information about the driver and devices"), ("list", "List driver components")),
            version_text=f"cli-version: {TOOLKIT_VERSION}\nlib-version: {TOOLKIT_VERSION}",
        ),
    }

    # -------- docker --------

    def execute_docker(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        verb = cmd.subcommand
        if verb is None:
            return self.help(self.TOOLS["docker"])
        if verb == "version":
            return self.version(self.TOOLS["docker"])
        node = self.current_node(self.snapshot(), ctx)
        if verb == "ps":
            return self._docker_ps(cmd, node)
        if verb == "images":
            rows = [[i.repository, i.tag, i.image_id, "2 weeks ago", i.size] for i in IMAGES]
            return self.success(
                self.format_columns(["REPOSITORY", "TAG", "IMAGE ID", "CREATED", "SIZE"], rows, gap=3) + "\n"
            )
        if verb == "run":
            return self._docker_run(cmd, node)
        if verb == "info":
            return self.success(
                "Server:\n"
                f" Server Version: {DOCKER_VERSION}\n"
                " Storage Driver: overlay2\n"
                " Runtimes: io.containerd.runc.v2 nvidia runc\n"
                " Default Runtime: runc\n"
                f" Kernel Version: {node.kernel_version}\n"
                f" Operating System: {node.os_version}\n"
                f" CPUs: {node.total_cores * 2}\n"
                f" Total Memory: {node.ram_total_gb}GiB\n"
                f" Name: {node.id}\n"
            )
        raise self.error(f"docker: '{verb}' is not a docker command.\nSee 'docker --help'")

    def _docker_ps(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        exporter = IMAGES[4]
        rows = [[
            exporter.image_id,
            exporter.reference,
            '"/usr/local/dcgm/dcg…"',
            "6 weeks ago",
            "Up 6 weeks",
            "0.0.0.0:9400->9400/tcp",
            "dcgm-exporter",
        ]]
        if cmd.has_flag("q", "quiet"):
            return self.success("\n".join(r[0] for r in rows) + "\n")
        headers = ["CONTAINER ID", "IMAGE", "COMMAND", "CREATED", "STATUS", "PORTS", "NAMES"]
        return self.success(self.format_columns(headers, rows, gap=3) + "\n")

    def _requested_gpus(self, spec: str, node: DGXNode) -> list[GPU]:
        spec = spec.strip("'\"")
        if spec == "all":
            return list(node.gpus)
        if spec.startswith("device="):
            gpus = []
            for item in spec.removeprefix("device=").split(","):
                item = item.strip()
                gpu = next((g for g in node.gpus if str(g.id) == item or g.uuid == item), None)
                if gpu is None:
                    raise self.error(
                        "docker: Error response from daemon: failed to create task for container: "
                        f"nvidia-container-cli: device error: {item}: unknown device: unknown.",
                        125,
                    )
                gpus.append(gpu)
            return gpus
        if spec.isdigit():
            count = int(spec)
            if count > len(node.gpus):
                raise self.error(
                    "docker: Error response from daemon: could not select device driver \"\" with capabilities: [[gpu]].",
                    125,
                )
            return list(node.gpus[:count])
        raise self.error(f"invalid argument \"{spec}\" for \"--gpus\" flag: unexpected key '{spec}'", 125)

    def _docker_run(self, cmd: ParsedCommand, node: DGXNode) -> CommandResult:
        args = list(cmd.arguments[1:])
        if not args:
            raise self.error("\"docker run\" requires at least 1 argument.\nSee 'docker run --help'.", 1)
        image, command = args[0], args[1:]
        if ":" not in image.rsplit("/", 1)[-1]:
            image += ":latest"
        if image not in {i.reference for i in IMAGES}:
            raise self.error(
                f"Unable to find image '{image}' locally\n"
                f"docker: Error response from daemon: pull access denied for {image.split(':')[0]}, "
                "repository does not exist or may require 'docker login'.",
                125,
            )

        gpu_spec = cmd.get_flag_string("gpus")
        gpus = self._requested_gpus(gpu_spec, node) if gpu_spec else []
        lost = [g for g in gpus if g.has_fallen_off_bus]
        if lost:
            raise self.error(
                "docker: Error response from daemon: failed to create task for container: "
                "failed to create shim task: OCI runtime create failed: nvidia-container-cli: "
                f"initialization error: nvml error: GPU is lost (GPU {lost[0].id} at {kernel_pci_address(lost[0])}).",
                125,
            )

        if not command:
            return self.success("")
        program = command[0]
        if program == "nvidia-smi":
            if not gpus:
                raise self.error(
                    'docker: Error response from daemon: failed to create task for container: exec: "nvidia-smi": '
                    "executable file not found in $PATH: unknown.",
                    127,
                )
            lines = [f"GPU {i}: {g.name} (UUID: {g.uuid})" for i, g in enumerate(gpus)]
            return self.success("\n".join(lines) + "\n")
        if program == "echo":
            return self.success(" ".join(command[1:]) + "\n")
        return self.success(f"Executing in {image}: {' '.join(command)}\n")

    # -------- enroot --------

    def execute_enroot(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        verb = cmd.subcommand
        if verb is None:
            return self.help(self.TOOLS["enroot"])
        if verb == "version":
            return self.version(self.TOOLS["enroot"])
        if verb == "list":
            return self.success("\n".join(ENROOT_IMAGES) + "\n")
        if verb == "import":
            uri = cmd.arguments[1] if len(cmd.arguments) > 1 else None
            if uri is None:
                raise self.error("Usage: enroot import [options] [--] URI")
            if not uri.startswith("docker://"):
                raise self.error(f"[ERROR] Invalid image reference: {uri}")
            output = cmd.get_flag_string("o", "output") or enroot_name(uri)
            return self.success(
                "[INFO] Querying registry for permission grant\n"
                "[INFO] Fetching image manifest list\n"
                "[INFO] Found all layers in cache\n"
                "[INFO] Extracting image layers...\n"
                "[INFO] Converting whiteouts...\n"
                "[INFO] Creating squashfs filesystem...\n\n"
                "Parallel mksquashfs: Using 128 processors\n"
                f"Creating 4.0 filesystem on {output}, block size 131072.\n"
            )
        if verb in ("create", "start"):
            target = cmd.arguments[1] if len(cmd.arguments) > 1 else None
            if target is None:
                raise self.error(f"Usage: enroot {verb} [options] [--] IMAGE")
            return self.success("" if verb == "create" else f"Starting container from {target}\n")
        raise self.error(f"Unknown command: {verb}\nUsage: enroot COMMAND [ARG...]")

    # -------- nvidia-container-cli --------

    def execute_nvidia_container_cli(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        verb = cmd.subcommand or "info"
        spec = SYSTEM_SPECS.get(node.system_type, DGX_A100)
        if verb == "info":
            lines = [
                f"NVRM version:   {node.nvidia_driver_version}",
                f"CUDA version:   {node.cuda_version}",
                "",
            ]
            for gpu in node.gpus:
                if gpu.has_fallen_off_bus:
                    raise self.error(
                        f"nvidia-container-cli: initialization error: nvml error: GPU is lost "
                        f"(GPU {gpu.id} at {kernel_pci_address(gpu)})"
                    )
                lines.extend([
                    f"Device Index:   {gpu.id}",
                    f"Device Minor:   {gpu.id}",
                    f"Model:          {gpu.name}",
                    "Brand:          Nvidia",
                    f"GPU UUID:       {gpu.uuid}",
                    f"Bus Location:   {gpu.pci_address.lower()}",
                    f"Architecture:   {'8.0' if spec.gpu.architecture == 'Ampere' else '9.0'}",
                    "",
                ])
            return self.success("\n".join(lines))
        if verb == "list":
            lines = ["/dev/nvidiactl", "/dev/nvidia-uvm", "/dev/nvidia-uvm-tools"]
            lines.extend(f"/dev/nvidia{g.id}" for g in node.visible_gpus())
            lines.extend([
                "/usr/bin/nvidia-smi",
                "/usr/bin/nvidia-persistenced",
                f"/usr/lib/x86_64-linux-gnu/libnvidia-ml.so.{node.nvidia_driver_version}",
                f"/usr/lib/x86_64-linux-gnu/libcuda.so.{node.nvidia_driver_version}",
            ])
            return self.success("\n".join(lines) + "\n")
        raise self.error(f"nvidia-container-cli: unrecognized command '{verb}'")
