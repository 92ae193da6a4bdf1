"""Integration tests for fault scenarios seen through every tool."""

import json
import re

import pytest

from superpod_sim.domain.entities.node import SlurmState
from superpod_sim.domain.services.fault_injection import FaultKind


def gpu_status_line(output: str) -> str:
    return next(line for line in output.splitlines() if "GPU Health" in line)


@pytest.mark.integration
class TestXIDScenario:
    """An XID on one GPU, from injection to clear."""

    def test_full_lifecycle(self, engine, run):
        """Every tool reports the XID, and clearing restores the baseline."""
        baseline = engine.snapshot()
        assert engine.stats().healthy_gpus == 64

        engine.inject_fault("dgx-00", 0, FaultKind.XID)
        stats = engine.stats()
        assert stats.critical_gpus == 1
        assert stats.healthy_gpus == 63

        detail = run("nvidia-smi -q -i 0").output
        assert "Xid 43" in detail
        assert gpu_status_line(detail).endswith(": Critical")
        for level in ("1", "2", "3"):
            result = run(f"dcgmi diag -r {level} -i 0")
            assert "Overall Result: Pass" not in result.output
            assert result.exit_code == 226
        assert "NVRM: Xid" in run("dmesg").output

        engine.clear_faults("dgx-00", 0)
        assert engine.stats().healthy_gpus == 64
        assert engine.snapshot() == baseline
        assert "Overall Result: Pass" in run("dcgmi diag -r 3 -i 0").output
        assert "NVRM: Xid" not in run("dmesg").output

    def test_other_nodes_unaffected(self, engine, run, ctx):
        """A fault on one node leaves other nodes healthy."""
        engine.inject_fault("dgx-00", 0, FaultKind.XID)
        run("ssh dgx-01")
        assert "Overall Health: Healthy" in run("dcgmi health -c").output
        assert run("hpl").exit_code == 0


@pytest.mark.integration
class TestCrossToolConsistency:
    """All tools agree on derived GPU health."""

    def test_mixed_faults(self, engine, run):
        """A Warning GPU and a Critical GPU render identically everywhere."""
        engine.inject_fault("dgx-00", 2, FaultKind.THERMAL)
        engine.inject_fault("dgx-00", 5, FaultKind.ECC)

        assert gpu_status_line(run("nvidia-smi -q -i 2").output).endswith(": Warning")
        assert gpu_status_line(run("nvidia-smi -q -i 5").output).endswith(": Critical")

        assert "Overall Health: Failure" in run("dcgmi health -c").output

        payload = json.loads(run("nvsm show health --json").output)
        statuses = {c["description"]: c["status"] for c in payload["checks"]}
        assert statuses["GPU temperature [GPU2]"] == "Warning"
        assert statuses["GPU ECC status [GPU5]"] == "Critical"
        assert payload["gpu_rollup"] == "Critical"

        report = run("nvidia-bug-report.sh").output
        assert "Warning:           1" in report
        assert "Critical:          1" in report

        burn = run("gpu-burn 5").output
        assert "GPU 5: FAULTY" in burn
        assert "GPU 2: OK (degraded" in burn

    def test_lost_gpu(self, engine, run):
        """A GPU off the bus disappears from listings and fails diagnostics."""
        engine.add_xid_error("dgx-00", 7, 79)
        assert "GPU 7:" not in run("nvidia-smi -L").output
        assert run("dcgmi diag -r 1").exit_code == 1
        assert "Status: ERRORS DETECTED" in run("nvlink-audit").output
        assert run("hpl").exit_code == 1
        assert run("nccl-test").exit_code == 1

    def test_nvlink_down(self, engine, run):
        """A down link degrades the fabric without failing compute."""
        engine.inject_fault("dgx-00", 0, FaultKind.NVLINK)
        assert "Link 0: <inactive>" in run("nvidia-smi nvlink -s -i 0").output
        assert "Overall:              Degraded" in run("nv-fabricmanager").output
        assert "NVLink link 0 is down" in run("dmesg").output
        assert run("hpl").exit_code == 0


FABRIC_SCENARIOS = [kind.value for kind in FaultKind] + ["xid79"]


def field(output: str, label: str) -> str:
    return re.search(rf"{re.escape(label)}\s*[:=]\s*(\S+)", output).group(1)


@pytest.mark.integration
class TestFabricConsistency:
    """All tools agree on GPU and NVLink counts after any fault."""

    @pytest.mark.parametrize("scenario", FABRIC_SCENARIOS)
    def test_counts_agree(self, engine, run, scenario):
        if scenario == "xid79":
            engine.add_xid_error("dgx-00", 3, 79)
        else:
            engine.inject_fault("dgx-00", 3, scenario)

        listed = len(run("nvidia-smi -L").output.splitlines())
        audit = json.loads(run("nvlink-audit --json").output)
        fabric = run("nv-fabricmanager status").output
        nvsm = run("nvsm show gpus").output
        link_lines = run("nvidia-smi nvlink -s").output.count("GB/s")

        detected = {
            listed,
            audit["gpus_detected"],
            int(field(fabric, "GPUs")),
            int(field(nvsm, "GPUCount")),
        }
        assert detected == {7 if scenario == "xid79" else 8}

        active = {
            audit["active_links"],
            int(field(fabric, "NVLinks Active")),
            int(field(nvsm, "NVLinksActive").split("/")[0]),
            link_lines,
        }
        expected = {"xid79": 84, FaultKind.NVLINK.value: 95}.get(scenario, 96)
        assert active == {expected}

        fabric_healthy = field(fabric, "Overall") == "Healthy"
        assert fabric_healthy == (audit["status"] == "Healthy")
        assert fabric_healthy == (scenario not in ("xid79", FaultKind.NVLINK.value))


@pytest.mark.integration
class TestDrainPolicy:
    """Only operators drain nodes."""

    def test_operator_drain_after_fault(self, engine, run):
        """A fault leaves the node schedulable until the operator drains it."""
        engine.inject_fault("dgx-03", 1, FaultKind.ECC)
        assert engine.snapshot().find_node("dgx-03").slurm_state is SlurmState.IDLE

        run("scontrol update NodeName=dgx-03 State=DRAIN Reason=ecc")
        assert "drain" in run("sinfo").output

        job_id = engine.snapshot().next_job_id
        run("sbatch -N 8 --gres=gpu:8 train.sh")
        assert "(Resources)" in run("squeue").output
        run(f"scancel {job_id}")

        engine.clear_faults("dgx-03", 1)
        assert engine.snapshot().find_node("dgx-03").slurm_state is SlurmState.DRAIN
        run("scontrol update NodeName=dgx-03 State=RESUME")
        assert "drain" not in run("sinfo").output


@pytest.mark.integration
class TestPersistence:
    """Export and import of a live cluster."""

    def test_round_trip_preserves_tool_output(self, engine, run):
        """Tools render an imported cluster exactly like the original."""
        engine.inject_fault("dgx-00", 4, FaultKind.THERMAL)
        run("sbatch --gres=gpu:4 train.sh")
        exported = engine.export_cluster()
        before = {line: run(line).output for line in ("nvidia-smi", "squeue", "nvsm show health")}

        engine.reset_cluster()
        assert engine.stats().warning_gpus == 0

        engine.import_cluster(exported)
        assert engine.export_cluster() == exported
        for line, output in before.items():
            assert run(line).output == output
