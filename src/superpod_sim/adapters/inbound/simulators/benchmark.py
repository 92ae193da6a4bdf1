"""Benchmark simulators: HPL, NCCL tests, gpu-burn and NeMo training.

Results are a deterministic function of the participating GPUs. A Critical
GPU aborts the run with the CUDA/NCCL failure the real binary would print.
Warning conditions slow it down: thermal slowdown lowers the SM clock,
power capping costs throughput and a down NVLink cuts bus bandwidth in
proportion to the links lost. Benchmarks never change cluster state.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass

from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.domain.entities.command import CommandContext, CommandResult, ParsedCommand
from superpod_sim.domain.entities.gpu import GPU
from superpod_sim.domain.entities.node import DGXNode
from superpod_sim.domain.services.fabric import gpu_links
from superpod_sim.domain.services.health import health_findings
from superpod_sim.domain.value_objects.hardware_specs import DGX_A100, SYSTEM_SPECS, SystemSpec
from superpod_sim.domain.value_objects.health_rules import HealthStatus, HealthThresholds

logger = logging.getLogger(__name__)

RULE = "=" * 80
HPL_BASE_EFFICIENCY = 0.88
HPL_PASS_EFFICIENCY = 0.80
POWER_CAP_PENALTY = 0.93
# Peak per GPU: (FP64 TFLOPS, FP32 Gflop/s, TF32 tensor Gflop/s, NVLink bus bandwidth GB/s)
ARCH_PERFORMANCE = {
    "Ampere": (19.5, 19500, 156000, 240.0),
    "Hopper": (67.0, 67000, 495000, 360.0),
}
SIZE_UNITS = {"": 1, "B": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}
# NeMo samples/s per GPU for a 7B-parameter model; larger models scale down linearly
NEMO_SAMPLES_PER_GPU = {"Ampere": 180.0, "Hopper": 540.0}
NEMO_REFERENCE_PARAMS_B = 7.0
NEMO_MODEL_PARAMS_B = {"bert-large": 0.34, "bert-base": 0.11}
NEMO_LOSS_START = 4.5
NEMO_LOSS_FINAL = 2.1
NEMO_LOSS_DECAY = 10.0
NEMO_GPU_UTIL = 97.0


@dataclass(frozen=True)
class Participant:
    """A GPU taking part in a run, with its degradation factors."""
    node: DGXNode
    gpu: GPU
    status: HealthStatus
    reason: str                   # Most severe finding, "" when healthy
    clock_factor: float
    power_capped: bool
    link_factor: float

    @property
    def compute_factor(self) -> float:
        return self.clock_factor * (POWER_CAP_PENALTY if self.power_capped else 1.0)


def _spec(node: DGXNode) -> SystemSpec:
    return SYSTEM_SPECS.get(node.system_type, DGX_A100)


def assess(node: DGXNode, gpu: GPU, thresholds: HealthThresholds) -> Participant:
    """Evaluate how much a GPU slows a benchmark down."""
    findings = health_findings(gpu, thresholds)
    status = HealthStatus.worst(*(f.status for f in findings))
    max_clock = _spec(node).gpu.max_clock_mhz or gpu.clocks_sm
    total_links = len(gpu.nvlinks)
    return Participant(
        node=node,
        gpu=gpu,
        status=status,
        reason=findings[0].reason if findings else "",
        clock_factor=min(1.0, gpu.clocks_sm / max_clock) if max_clock else 1.0,
        power_capped=gpu.power_limit > 0
        and gpu.power_draw >= thresholds.power_warning_fraction * gpu.power_limit,
        link_factor=gpu_links(gpu).active / total_links if total_links else 1.0,
    )


def parse_size(text: str) -> int:
    """``8``, ``128M``, ``1G`` -> bytes."""
    match = re.fullmatch(r"(\d+(?:\.\d+)?)([BKMG]?)", text.strip().upper())
    if not match:
        raise ValueError(text)
    return int(float(match.group(1)) * SIZE_UNITS[match.group(2)])


def model_params(model: str) -> float:
    """Parameter count in billions: ``gpt3-175b`` -> 175.0."""
    if model in NEMO_MODEL_PARAMS_B:
        return NEMO_MODEL_PARAMS_B[model]
    match = re.search(r"(\d+(?:\.\d+)?)b$", model.lower())
    return float(match.group(1)) if match else NEMO_REFERENCE_PARAMS_B


def training_loss(iteration: int) -> float:
    return NEMO_LOSS_FINAL + (NEMO_LOSS_START - NEMO_LOSS_FINAL) * math.exp(-iteration / NEMO_LOSS_DECAY)


def _cuda_failure(p: Participant) -> str:
    if p.gpu.has_fallen_off_bus:
        return "unspecified launch failure"
    if p.gpu.ecc_errors.double_bit:
        return "uncorrectable ECC error encountered"
    return "an illegal memory access was encountered"


class BenchmarkSimulator(BaseSimulator):
    """Simulates HPL, nccl-tests, gpu-burn and NeMo."""

    TOOLS = {
        "hpl": ToolInfo(
            "hpl", "High-Performance Linpack benchmark", "2.3",
            usage="hpl [--nodes N] [--gpus-per-node G] [--problem-size N]",
            version_text="HPL 2.3 (NVIDIA HPC-Benchmarks 23.10)",
        ),
        "nccl-test": ToolInfo(
            "nccl-test", "NCCL collective performance tests", "2.13.8",
            usage="nccl-test [-b MINBYTES] [-e MAXBYTES] [-f FACTOR] [-g NGPUS] [--operation OP]",
            version_text="nccl-tests 2.13.8 (NCCL 2.18.5+cuda12.2)",
        ),
        "all_reduce_perf": ToolInfo(
            "all_reduce_perf", "NCCL all-reduce performance test", "2.13.8",
            usage="all_reduce_perf [-b MINBYTES] [-e MAXBYTES] [-f FACTOR] [-g NGPUS]",
            version_text="nccl-tests 2.13.8 (NCCL 2.18.5+cuda12.2)",
        ),
        "gpu-burn": ToolInfo(
            "gpu-burn", "multi-GPU CUDA stress test", "1.1",
            usage="gpu-burn [-d] [-tc] [-l] [-i N] [TIME]",
            version_text="gpu_burn 1.1",
        ),
        "nemo": ToolInfo(
            "nemo", "NVIDIA NeMo Framework - AI model training and validation", "1.21.0",
            usage="nemo <train|burn-in> [--model NAME] [--gpus N] [--iterations N]",
            commands=(
                ("train", "Train an AI model (--model required)"),
                ("burn-in", "Run extended burn-in test for training validation"),
            ),
            options=frozenset({"model", "gpus", "iterations"}),
        ),
    }

    def _int_flag(self, cmd: ParsedCommand, names: tuple[str, ...], default: int, tool: str) -> int:
        value = cmd.get_flag_string(*names)
        if value is None:
            return default
        if not value.isdigit() or int(value) < 1:
            raise self.error(f"{tool}: invalid value '{value}' for --{names[-1]}")
        return int(value)

    # -------- HPL --------

    def execute_hpl(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        cluster = self.snapshot()
        start = self.current_node(cluster, ctx)
        nodes_requested = self._int_flag(cmd, ("N", "nodes"), 1, "hpl")
        gpus_per_node = self._int_flag(cmd, ("gpus-per-node",), len(start.gpus), "hpl")
        if gpus_per_node > len(start.gpus):
            raise self.error(f"HPL ERROR: --gpus-per-node {gpus_per_node} exceeds the {len(start.gpus)} GPUs per node")
        first = cluster.nodes.index(start)
        nodes = cluster.nodes[first:first + nodes_requested]
        if len(nodes) < nodes_requested:
            raise self.error(
                f"HPL ERROR: requested {nodes_requested} nodes starting at {start.id}, only {len(nodes)} available"
            )

        thresholds = self._store.thresholds
        participants = [assess(n, g, thresholds) for n in nodes for g in n.gpus[:gpus_per_node]]
        total_gpus = len(participants)
        problem_size = self._int_flag(cmd, ("problem-size",), int(100000 * total_gpus ** 0.5), "hpl")
        fp64_tflops = ARCH_PERFORMANCE.get(_spec(start).gpu.architecture, ARCH_PERFORMANCE["Ampere"])[0]

        header = [
            RULE,
            "HPL - High-Performance Linpack Benchmark",
            RULE,
            "",
            f"N        : {problem_size:>8}",
            "NB       :      288",
            f"P x Q    : {nodes_requested:>4} x {gpus_per_node:<4}",
            f"Nodes    : {', '.join(n.id for n in nodes)}",
            f"GPUs     : {total_gpus} x {start.gpus[0].name}",
            "",
        ]

        failed = [p for p in participants if p.status == HealthStatus.CRITICAL]
        if failed:
            p = failed[0]
            rank = participants.index(p)
            logger.info(f"HPL aborted: {p.node.id} GPU {p.gpu.id} is {p.status.value}")
            lines = header + [
                f"CUDA error at rank {rank} ({p.node.id} GPU {p.gpu.id}): {_cuda_failure(p)}",
                f"  cause: {p.reason}",
                f"HPL ERROR from process # {rank}, on line 512 of function HPL_pdgesv:",
                ">>> Illegal input in HPL_pdgesv, aborting <<<",
                "",
                "Status: FAILED",
            ]
            return CommandResult("\n".join(lines) + "\n", 1)

        slowest = min(p.compute_factor for p in participants)
        efficiency = HPL_BASE_EFFICIENCY * slowest
        peak = fp64_tflops * total_gpus
        achieved = peak * efficiency
        seconds = (2 / 3) * problem_size ** 3 / (achieved * 1e12)
        residual = 0.0012345

        lines = header + [
            "T/V                N    NB     P     Q               Time                 Gflops",
            "-" * 80,
            f"WR03L8R2  {problem_size:>9}   288 {nodes_requested:>5} {gpus_per_node:>5} {seconds:>18.2f} {achieved * 1000:>22.4e}",
            f"||Ax-b||_oo/(eps*(||A||_oo*||x||_oo+||b||_oo)*N)= {residual:>12.7f} ...... PASSED",
            RULE,
            "",
            f"Theoretical Peak:    {peak:.2f} TFLOPS",
            f"Achieved:            {achieved:.2f} TFLOPS",
            f"Efficiency:          {efficiency * 100:.2f}%",
            "",
        ]
        if efficiency >= HPL_PASS_EFFICIENCY:
            lines.append("Status: PASSED")
        else:
            lines.append("Status: WARNING - Low efficiency")
            degraded = [p for p in participants if p.status == HealthStatus.WARNING]
            for p in degraded:
                lines.append(f"  {p.node.id} GPU {p.gpu.id}: {p.reason}")
        return self.success("\n".join(lines) + "\n")

    # -------- NCCL --------

    def execute_nccl_test(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        tool = cmd.base_command
        try:
            min_bytes = parse_size(cmd.get_flag_string("b", "minbytes") or "8")
            max_bytes = parse_size(cmd.get_flag_string("e", "maxbytes") or "128M")
        except ValueError as e:
            raise self.error(f"{tool}: invalid size '{e}'") from None
        factor = self._int_flag(cmd, ("f", "stepfactor"), 2, tool)
        ngpus = self._int_flag(cmd, ("g", "ngpus"), len(node.gpus), tool)
        if factor < 2:
            raise self.error(f"{tool}: step factor must be at least 2")
        if min_bytes > max_bytes:
            raise self.error(f"{tool}: minbytes {min_bytes} is larger than maxbytes {max_bytes}")
        if ngpus > len(node.gpus):
            raise self.error(f"{tool}: requested {ngpus} GPUs, only {len(node.gpus)} available on {node.id}")
        operation = "all_reduce" if tool == "all_reduce_perf" else (cmd.get_flag_string("operation") or "all_reduce")

        thresholds = self._store.thresholds
        participants = [assess(node, g, thresholds) for g in node.gpus[:ngpus]]
        lines = [
            f"# nThread 1 nGpus {ngpus} minBytes {min_bytes} maxBytes {max_bytes} step: {factor}(factor) "
            "warmup iters: 5 iters: 20 agg iters: 1 validation: 1 graph: 0",
            "#",
            "# Using devices",
        ]
        for rank, p in enumerate(participants):
            lines.append(
                f"#  Rank {rank:2d} Group  0 Pid  41872 on {node.id:>9} device {p.gpu.id:2d} "
                f"[{p.gpu.pci_address[4:].lower()}] {p.gpu.name}"
            )

        failed = [p for p in participants if p.status == HealthStatus.CRITICAL]
        if failed:
            p = failed[0]
            lines.extend([
                f"{node.id}:41872:41872 [{p.gpu.id}] NCCL WARN Cuda failure '{_cuda_failure(p)}'",
                f"{node.id}:41872:41872 [{p.gpu.id}] NCCL INFO {p.reason}",
                f"{node.id}: Test NCCL failure common.cu:1005 'unhandled cuda error "
                "(run with NCCL_DEBUG=INFO for details)'",
                f" .. {node.id} pid 41872: Test failure common.cu:891",
            ])
            return CommandResult("\n".join(lines) + "\n", 1)

        nominal_bus = ARCH_PERFORMANCE.get(_spec(node).gpu.architecture, ARCH_PERFORMANCE["Ampere"])[3]
        bus_factor = min(p.link_factor * p.clock_factor for p in participants) if ngpus > 1 else 1.0
        # all_reduce moves 2(n-1)/n of the buffer per rank
        bus_ratio = 2 * (ngpus - 1) / ngpus if ngpus > 1 else 1.0

        lines.extend([
            "#",
            "#                                                              out-of-place                       in-place",
            "#       size         count      type   redop    root     time   algbw   busbw #wrong     time   algbw   busbw #wrong",
            "#        (B)    (elements)                               (us)  (GB/s)  (GB/s)            (us)  (GB/s)  (GB/s)",
        ])
        size = min_bytes
        bus_values = []
        while size <= max_bytes:
            mib = size / 1024 ** 2
            if mib < 1:
                ramp = 0.02 + 0.68 * mib
            elif mib < 8:
                ramp = 0.7 + (mib - 1) / 7 * 0.2
            else:
                ramp = 0.9 + (min(mib, 128) - 8) / 120 * 0.08
            busbw = nominal_bus * ramp * bus_factor
            algbw = busbw / bus_ratio
            time_us = 5.0 + size / (algbw * 1e3) if algbw else 0.0
            bus_values.append(busbw)
            row = f"{size:>12} {size // 4:>13}     float     sum      -1 {time_us:>8.1f} {algbw:>7.2f} {busbw:>7.2f}      0"
            lines.append(f"{row} {time_us:>8.1f} {algbw:>7.2f} {busbw:>7.2f}      0")
            size *= factor

        average = sum(bus_values) / len(bus_values) if bus_values else 0.0
        lines.extend([
            "# Out of bounds values : 0 OK",
            f"# Avg bus bandwidth    : {average:.4f}",
            "#",
        ])
        if bus_factor < 1.0:
            degraded = [p for p in participants if p.link_factor < 1.0 or p.clock_factor < 1.0]
            lines.append(
                f"# WARNING: {operation} bus bandwidth is {bus_factor:.0%} of nominal "
                f"({len(degraded)} degraded GPU(s))"
            )
            for p in degraded:
                lines.append(f"#   GPU {p.gpu.id}: {p.reason}")
        return self.success("\n".join(lines) + "\n")

    # -------- gpu-burn --------

    def execute_gpu_burn(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        if cmd.has_flag("l", "list"):
            lines = [f"ID {g.id}: {g.name}, {g.memory_total}MB" for g in node.visible_gpus()]
            return self.success("\n".join(lines) + "\n")

        duration_text = next((a for a in cmd.arguments if a.isdigit()), "60")
        duration = int(duration_text)
        if duration < 1:
            raise self.error("gpu_burn: run time must be a positive number of seconds")
        index = cmd.get_flag_string("i")
        gpus = node.gpus
        if index is not None:
            gpus = [node.find_gpu(self.parse_gpu_index(index, node))]

        perf = ARCH_PERFORMANCE.get(_spec(node).gpu.architecture, ARCH_PERFORMANCE["Ampere"])
        if cmd.has_flag("tc", "tensor-cores"):
            peak, precision = perf[2], "tensor cores"
        elif cmd.has_flag("d", "doubles"):
            peak, precision = perf[0] * 1000, "doubles"
        else:
            peak, precision = perf[1], "floats"

        thresholds = self._store.thresholds
        participants = [assess(node, g, thresholds) for g in gpus]
        lost = [p for p in participants if p.gpu.has_fallen_off_bus]
        if lost and len(lost) == len(participants):
            raise self.error("Couldn't init a GPU test: No CUDA-capable device is detected", 1)

        lines = [
            "Using compare file: compare.ptx",
            f"Burning for {duration} seconds.",
        ]
        for p in participants:
            if not p.gpu.has_fallen_off_bus:
                usable = p.gpu.memory_total - 1024
                lines.append(f"GPU {p.gpu.id}: {p.gpu.name} (UUID: {p.gpu.uuid})")
                lines.append(
                    f"Initialized device {p.gpu.id} with {p.gpu.memory_total} MB of memory "
                    f"({usable} MB available, using {int(usable * 0.9)} MB of it), using {precision}"
                )

        # Load heats a GPU up to just under slowdown; one already past it stays there
        ceiling = thresholds.thermal_warning_c - 3
        progress, errors, temps = [], [], []
        for p in participants:
            if p.gpu.has_fallen_off_bus:
                progress.append("--")
                errors.append("--")
                temps.append("--")
                continue
            gflops = 0 if p.status == HealthStatus.CRITICAL else int(peak * 0.87 * p.compute_factor)
            progress.append(f"{duration * 13} ({gflops} Gflop/s)")
            errors.append(str(p.gpu.ecc_errors.double_bit + len(p.gpu.xid_errors)))
            temps.append(f"{max(p.gpu.temperature, min(p.gpu.temperature + 30, ceiling)):.0f} C")
        lines.append(
            f"100.0%  proc'd: {' - '.join(progress)}   errors: {' - '.join(errors)}   temps: {' - '.join(temps)}"
        )
        lines.append("Killing processes.. done")
        lines.append("")
        lines.append(f"Tested {len(participants)} GPUs:")

        faulty = False
        for p in participants:
            if p.status == HealthStatus.CRITICAL:
                faulty = True
                lines.append(f"\tGPU {p.gpu.id}: FAULTY ({p.reason})")
            elif p.status == HealthStatus.WARNING:
                lines.append(f"\tGPU {p.gpu.id}: OK (degraded: {p.reason})")
            else:
                lines.append(f"\tGPU {p.gpu.id}: OK")
        return CommandResult("\n".join(lines) + "\n", 1 if faulty else 0)

    # -------- NeMo --------

    def execute_nemo(self, cmd: ParsedCommand, ctx: CommandContext) -> CommandResult:
        verb = cmd.subcommand
        if verb is None:
            return self.help(self.TOOLS["nemo"])
        if verb == "train":
            model = cmd.get_flag_string("model")
            if not model:
                raise self.error(
                    "Missing required flag: --model\n\n"
                    "Usage: nemo train --model <name> [--gpus N] [--iterations N]\n"
                    "Example: nemo train --model gpt3-175b"
                )
            return self._nemo_run(cmd, ctx, model, burn_in=False)
        if verb == "burn-in":
            return self._nemo_run(cmd, ctx, cmd.get_flag_string("model") or "gpt3-7b", burn_in=True)
        raise self.unknown_subcommand("nemo", verb, ("train", "burn-in"))

    def _nemo_run(self, cmd: ParsedCommand, ctx: CommandContext, model: str, burn_in: bool) -> CommandResult:
        node = self.current_node(self.snapshot(), ctx)
        iterations = self._int_flag(cmd, ("iterations",), 1000, "nemo")
        ngpus = len(node.gpus) if burn_in else self._int_flag(cmd, ("gpus",), len(node.gpus), "nemo")
        if ngpus > len(node.gpus):
            raise self.error(f"nemo: requested {ngpus} GPUs, only {len(node.gpus)} available on {node.id}")

        thresholds = self._store.thresholds
        participants = [assess(node, g, thresholds) for g in node.gpus[:ngpus]]
        title = "NeMo Training Burn-in Test" if burn_in else "NeMo Framework - Model Training"
        lines = [
            title,
            "=" * len(title),
            f"Model: {model}",
            f"GPUs: {ngpus}",
            f"Iterations: {iterations}",
            f"Driver: {node.nvidia_driver_version}",
            f"CUDA: {node.cuda_version}",
        ]
        if burn_in:
            lines.append(f"Start time: {self.now()}")
        lines.extend(["", "Initializing distributed training...", f"[Rank 0] Initialized on {node.hostname}"])
        shown_ranks = min(ngpus, 4)
        lines.extend(f"[Rank {rank}] Initialized" for rank in range(1, shown_ranks))
        if ngpus > shown_ranks:
            lines.append(f"... ({ngpus - shown_ranks} more ranks)")

        failed = [p for p in participants if p.status == HealthStatus.CRITICAL]
        if failed:
            p = failed[0]
            rank = participants.index(p)
            logger.info(f"NeMo aborted: {node.id} GPU {p.gpu.id} is {p.status.value}")
            lines.extend([
                "",
                f"[Rank {rank}] RuntimeError: CUDA error: {_cuda_failure(p)}",
                f"  cause: {p.reason}",
                "torch.distributed.DistBackendError: NCCL communicator was aborted on rank "
                f"{rank} ({node.id} GPU {p.gpu.id})",
                "",
                "Burn-in Results:" if burn_in else "Training FAILED",
            ])
            if burn_in:
                lines.extend(["  Status: FAILED", f"  Failures: {len(failed)}"])
            return CommandResult("\n".join(lines) + "\n", 1)

        arch = _spec(node).gpu.architecture
        per_gpu = NEMO_SAMPLES_PER_GPU.get(arch, NEMO_SAMPLES_PER_GPU["Ampere"])
        per_gpu *= NEMO_REFERENCE_PARAMS_B / max(model_params(model), 0.01)
        # Data parallel steps wait for the slowest rank; the gradient all-reduce rides NVLink
        slowest = min(p.compute_factor for p in participants)
        link = min(p.link_factor for p in participants) if ngpus > 1 else 1.0
        throughput = per_gpu * ngpus * slowest * link
        utilization = NEMO_GPU_UTIL * slowest

        lines.extend(["", "Model architecture loaded", "Starting training...", ""])
        sample = min(10 if burn_in else 5, iterations)
        for i in range(1, sample + 1):
            line = f"Iteration {i}/{iterations}: loss={training_loss(i):.4f}, throughput={throughput:.0f} samples/sec"
            if burn_in:
                line += f", GPU util={utilization:.1f}%"
            lines.append(line)
        if iterations > sample:
            if burn_in:
                lines.append(f"... ({iterations - sample} more iterations)")
            else:
                lines.append("...")
                lines.append(
                    f"Iteration {iterations}/{iterations}: loss={training_loss(iterations):.4f}, "
                    f"throughput={throughput:.0f} samples/sec"
                )

        degraded = [p for p in participants if p.status == HealthStatus.WARNING]
        lines.append("")
        if not burn_in:
            lines.append("Training completed successfully")
            lines.append(f"Model checkpoint saved to: /workspace/checkpoints/{model}/")
            for p in degraded:
                lines.append(f"WARNING: GPU {p.gpu.id} degraded: {p.reason}")
            return self.success("\n".join(lines) + "\n")

        losses = [training_loss(i) for i in range(1, iterations + 1)]
        lines.extend([
            "Burn-in Results:",
            f"  Status: {'DEGRADED' if degraded else 'PASSED'}",
            f"  Average Loss: {sum(losses) / len(losses):.4f}",
            f"  Average Throughput: {throughput:.0f} samples/sec",
            f"  Average GPU Utilization: {utilization:.1f}%",
            f"  Training Stability: {'Unstable' if degraded else 'Stable'}",
            "  GPU Memory: No leaks detected",
            "  Loss Convergence: Normal",
            "  Failures: 0",
        ])
        for p in degraded:
            lines.append(f"  GPU {p.gpu.id}: {p.reason}")
        return self.success("\n".join(lines) + "\n")
