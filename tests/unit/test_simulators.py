"""Unit tests for the command simulators."""

import json

import pytest

from superpod_sim.adapters.inbound.command_parser import parse_command
from superpod_sim.adapters.inbound.simulators.base import BaseSimulator, ToolInfo
from superpod_sim.adapters.inbound.simulators.slurm import compress_hostlist, format_elapsed
from superpod_sim.domain.entities.command import CommandContext


@pytest.mark.unit
class TestBaseSimulator:
    """Test the shared entry wrapper."""

    class Dummy(BaseSimulator):
        TOOLS = {"dummy": ToolInfo("dummy", "a test tool", "1.2.3")}

    def _boom(self, cmd, ctx):
        raise RuntimeError("boom")

    def test_help_and_version(self, store):
        sim = self.Dummy(store)
        ctx = CommandContext("dgx-00")
        help_text = sim.safe_execute(self._boom, parse_command("dummy --help"), ctx).output
        assert help_text.startswith("dummy - a test tool")
        assert sim.safe_execute(self._boom, parse_command("dummy -V"), ctx).output == "dummy version 1.2.3\n"

    def test_unexpected_error_is_rendered(self, store):
        sim = self.Dummy(store)
        result = sim.safe_execute(self._boom, parse_command("dummy"), CommandContext("dgx-00"))
        assert result.exit_code == 1
        assert result.output == "Internal error: boom"

    def test_strict_mode_propagates(self, store):
        sim = self.Dummy(store, strict=True)
        with pytest.raises(RuntimeError):
            sim.safe_execute(self._boom, parse_command("dummy"), CommandContext("dgx-00"))

    def test_declared_options_reject_unknown_flags(self, store):
        class Strict(BaseSimulator):
            TOOLS = {"strict": ToolInfo("strict", "a tool with options", "1.0", options=frozenset({"verbose", "v"}))}

        sim = Strict(store)
        ctx = CommandContext("dgx-00")
        result = sim.safe_execute(self._boom, parse_command("strict --verbos"), ctx)
        assert result.exit_code == 2
        assert result.output.splitlines() == [
            "strict: unrecognized option '--verbos'",
            "Did you mean '--verbose'?",
            "Try 'strict --help' for more information.",
        ]
        short = sim.safe_execute(self._boom, parse_command("strict -x"), ctx)
        assert short.output.splitlines()[0] == "strict: invalid option -- 'x'"

    def test_format_table(self):
        table = BaseSimulator.format_table(["A", "BB"], [["1", "2"]])
        assert table.splitlines() == ["+---+----+", "| A | BB |", "+---+----+", "| 1 | 2  |", "+---+----+"]


@pytest.mark.unit
class TestNvidiaSmi:
    """Test nvidia-smi rendering."""

    def test_list_gpus(self, run):
        lines = run("nvidia-smi -L").output.splitlines()
        assert len(lines) == 8
        assert lines[0].startswith("GPU 0: NVIDIA A100")

    def test_default_table(self, run):
        output = run("nvidia-smi").output
        assert "No running processes found" in output
        assert "WARNING" not in output

    def test_query_gpu_csv(self, run):
        result = run("nvidia-smi --query-gpu=index,temperature.gpu,power.limit --format=csv,noheader,nounits")
        assert result.output.splitlines()[0] == "0, 45, 400.00"
        assert len(result.output.splitlines()) == 8

    def test_query_gpu_header_units(self, run):
        header = run("nvidia-smi --query-gpu=index,power.draw --format=csv -i 1").output.splitlines()
        assert header == ["index, power.draw [W]", "1, 100.00 W"]

    def test_unknown_query_field(self, run):
        result = run("nvidia-smi --query-gpu=fan.speed --format=csv")
        assert result.exit_code == 2

    def test_xid_in_detailed_query(self, engine, run):
        engine.inject_fault("dgx-00", 0, "xid")
        output = run("nvidia-smi -q -i 0").output
        assert "Xid 43" in output
        assert "GPU Stopped Responding" in output
        health = next(line for line in output.splitlines() if "GPU Health" in line)
        assert health.endswith(": Critical")

    def test_table_warns_on_unhealthy_gpu(self, engine, run):
        engine.inject_fault("dgx-00", 2, "thermal")
        assert "WARNING: GPU 2 health is Warning" in run("nvidia-smi").output

    def test_fallen_off_bus_is_hidden(self, engine, run):
        engine.add_xid_error("dgx-00", 3, 79)
        assert len(run("nvidia-smi -L").output.splitlines()) == 7
        assert "1 GPU(s) not shown" in run("nvidia-smi").output
        result = run("nvidia-smi -q -i 3")
        assert result.exit_code == 1
        assert "fallen off the bus" in result.output

    def test_nvlink_status(self, engine, run):
        engine.inject_fault("dgx-00", 0, "nvlink")
        output = run("nvidia-smi nvlink -s -i 0").output
        assert "Link 0: <inactive>" in output
        assert "Link 1: 25 GB/s" in output

    def test_invalid_index(self, run):
        result = run("nvidia-smi -i abc")
        assert result.exit_code == 1
        assert "Invalid GPU index 'abc'" in result.output

    def test_help_and_version(self, run):
        assert run("nvidia-smi --help").output.startswith("nvidia-smi - NVIDIA System Management Interface")
        assert "NVIDIA-SMI version  : 535.129.03" in run("nvidia-smi --version").output


@pytest.mark.unit
class TestDcgmi:
    """Test dcgmi verdicts."""

    def test_diag_passes_when_healthy(self, run):
        result = run("dcgmi diag -r 3")
        assert result.exit_code == 0
        assert "Overall Result: Pass" in result.output

    @pytest.mark.parametrize("kind", ["xid", "ecc"])
    def test_diag_fails_on_critical(self, engine, run, kind):
        engine.inject_fault("dgx-00", 0, kind)
        for level in ("1", "2", "3"):
            result = run(f"dcgmi diag -r {level} -i 0")
            assert result.exit_code == 226
            assert "Overall Result: Fail" in result.output

    def test_diag_warns_on_thermal(self, engine, run):
        engine.inject_fault("dgx-00", 0, "thermal")
        output = run("dcgmi diag -r 1 -i 0").output
        assert "Overall Result: Warn" in output
        assert "Pass" not in output.split("Overall Result:")[1]

    def test_diag_refuses_lost_gpu(self, engine, run):
        engine.add_xid_error("dgx-00", 5, 79)
        result = run("dcgmi diag -r 1")
        assert result.exit_code == 1
        assert "fallen off the bus" in result.output

    def test_diag_requires_level(self, run):
        result = run("dcgmi diag")
        assert result.exit_code == 1
        assert "missing required argument" in result.output

    def test_health_check(self, engine, run):
        assert "Overall Health: Healthy" in run("dcgmi health -c").output
        engine.inject_fault("dgx-00", 1, "ecc")
        assert "Overall Health: Failure" in run("dcgmi health -c").output

    def test_dmon_count(self, run):
        lines = run("dcgmi dmon -e 150 -c 2").output.splitlines()
        assert lines[0].startswith("#Entity")
        assert len(lines) == 2 + 2 * 8
        assert lines[2].split() == ["GPU", "0", "45"]

    def test_unknown_subcommand(self, run):
        assert run("dcgmi frobnicate").exit_code == 1

    def test_unknown_subcommand_suggests(self, run):
        result = run("dcgmi dia -r 1")
        assert result.exit_code == 1
        assert result.output.splitlines() == [
            "dcgmi: 'dia' is not a dcgmi command.",
            "Did you mean 'diag'?",
            "See 'dcgmi --help'.",
        ]


@pytest.mark.unit
class TestSlurm:
    """Test Slurm client output."""

    def test_compress_hostlist(self):
        assert compress_hostlist(["dgx-00", "dgx-01", "dgx-03"]) == "dgx-[00-01,03]"
        assert compress_hostlist(["dgx-05"]) == "dgx-05"

    def test_format_elapsed(self):
        assert format_elapsed(65) == "1:05"
        assert format_elapsed(3725) == "1:02:05"
        assert format_elapsed(90061) == "1-01:01:01"

    def test_sinfo_default(self, run):
        lines = run("sinfo").output.splitlines()
        assert lines[0].split() == ["PARTITION", "AVAIL", "TIMELIMIT", "NODES", "STATE", "NODELIST"]
        assert lines[1].split() == ["gpu*", "up", "infinite", "8", "idle", "dgx-[00-07]"]

    def test_sinfo_short_h_is_noheader(self, run):
        result = run("sinfo -h")
        assert result.exit_code == 0
        assert result.output.splitlines()[0].split() == ["gpu*", "up", "infinite", "8", "idle", "dgx-[00-07]"]

    def test_sinfo_node_noheader(self, run):
        result = run("sinfo -N -h")
        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert len(lines) == 8
        assert lines[0].split()[0] == "dgx-00"

    def test_sinfo_reasons_noheader(self, run):
        assert run("sinfo -R -h").output == ""
        run("scontrol update NodeName=dgx-02 State=DRAIN Reason=xid43")
        lines = run("sinfo -R -h").output.splitlines()
        assert len(lines) == 1
        assert lines[0].split()[0] == "xid43"

    def test_squeue_noheader(self, run):
        run("sbatch --gres=gpu:8 train.sh")
        result = run("squeue -h")
        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert len(lines) == 1
        assert lines[0].split()[0].isdigit()

    def test_noheader_keeps_column_widths(self):
        rows = [["a", "b"]]
        with_header = BaseSimulator.format_columns(["LONG", "X"], rows).splitlines()
        assert BaseSimulator.format_columns(["LONG", "X"], rows, header=False).splitlines() == with_header[1:]

    def test_faults_do_not_drain(self, engine, run):
        engine.inject_fault("dgx-02", 0, "xid")
        assert "drain" not in run("sinfo").output

    def test_drained_node_listed_with_reason(self, run):
        run("scontrol update NodeName=dgx-02 State=DRAIN Reason=xid43")
        assert "drain" in run("sinfo").output
        reasons = run("sinfo -R").output.splitlines()
        assert reasons[1].split()[0] == "xid43"
        assert reasons[1].split()[-1] == "dgx-02"

    def test_scontrol_show_node(self, run):
        output = run("scontrol show node dgx-01").output
        assert output.startswith("NodeName=dgx-01 ")
        assert "State=IDLE " in output

    def test_squeue_empty(self, run):
        lines = run("squeue").output.splitlines()
        assert lines == ["JOBID  PARTITION  NAME  USER  ST  TIME  NODES  NODELIST(REASON)"]

    def test_scancel_unknown_job(self, run):
        result = run("scancel 4242")
        assert result.exit_code == 1
        assert "Invalid job id specified" in result.output


@pytest.mark.unit
class TestNvsmAndAudit:
    """Test nvsm and nvlink-audit."""

    def test_nvsm_without_subcommand_prints_help(self, run):
        assert run("nvsm").output.startswith("nvsm - NVIDIA System Management")

    def test_nvsm_health_healthy(self, run):
        output = run("nvsm show health").output
        assert "GPU health rollup is Healthy" in output
        assert "Overall system status is Healthy" in output

    def test_nvsm_health_reports_thermal(self, engine, run):
        engine.inject_fault("dgx-00", 0, "thermal")
        output = run("nvsm show health").output
        assert "GPU temperature [GPU0]" in output
        assert "GPU health rollup is Warning" in output

    def test_nvsm_health_json(self, engine, run):
        engine.inject_fault("dgx-00", 4, "xid")
        payload = json.loads(run("nvsm show health --json").output)
        assert payload["gpu_rollup"] == "Critical"
        assert any(c["description"] == "GPU XID error check [GPU4]" for c in payload["checks"])

    def test_audit_healthy(self, run):
        result = run("nvlink-audit")
        assert result.exit_code == 0
        assert "Status: HEALTHY" in result.output

    def test_audit_reports_down_link(self, engine, run):
        engine.inject_fault("dgx-00", 0, "nvlink")
        result = run("nvlink-audit --json")
        assert result.exit_code == 0
        report = json.loads(result.output)
        assert report["status"] == "Errors Detected"
        assert report["down_links"] == 1
        assert report["gpus"][0]["down_link_ids"] == [0]

    def test_audit_counts_lost_gpu_links_as_down(self, engine, run):
        engine.add_xid_error("dgx-00", 7, 79)
        report = json.loads(run("nvlink-audit --json").output)
        assert report["gpus_detected"] == 7
        assert report["active_links"] == 84
        assert report["down_links"] == 12
        status = run("nv-fabricmanager status").output
        assert "NVLinks Active:       84" in status
        assert "Overall:              Degraded" in status

    def test_audit_index_uses_gpu_id(self, engine, run):
        data = json.loads(engine.export_cluster())
        del data["nodes"][0]["gpus"][0]
        engine.import_cluster(json.dumps(data))
        report = json.loads(run("nvlink-audit -i 7 --json").output)
        assert [g["gpu"] for g in report["gpus"]] == [7]


@pytest.mark.unit
class TestBenchmarks:
    """Test benchmark verdicts."""

    def test_hpl_passes(self, run):
        result = run("hpl")
        assert result.exit_code == 0
        assert "Status: PASSED" in result.output

    def test_hpl_aborts_on_critical_gpu(self, engine, run):
        engine.inject_fault("dgx-00", 2, "xid")
        result = run("hpl")
        assert result.exit_code == 1
        assert "dgx-00 GPU 2" in result.output
        assert "Status: FAILED" in result.output

    def test_nccl_degraded_by_down_link(self, engine, run):
        engine.inject_fault("dgx-00", 0, "nvlink")
        result = run("nccl-test")
        assert result.exit_code == 0
        assert "# WARNING: all_reduce bus bandwidth" in result.output

    def test_gpu_burn_flags_faulty_gpu(self, engine, run):
        assert run("gpu-burn 10").exit_code == 0
        engine.inject_fault("dgx-00", 1, "ecc")
        result = run("gpu-burn 10")
        assert result.exit_code == 1
        assert "GPU 1: FAULTY" in result.output

    def test_gpu_burn_index_uses_gpu_id(self, engine, run):
        data = json.loads(engine.export_cluster())
        del data["nodes"][0]["gpus"][0]
        engine.import_cluster(json.dumps(data))
        result = run("gpu-burn -i 7 5")
        assert result.exit_code == 0
        assert "Tested 1 GPUs:" in result.output
        assert "\tGPU 7: OK" in result.output

    def test_benchmarks_do_not_change_state(self, engine, run):
        before = engine.snapshot()
        lines = (
            "hpl", "nccl-test", "all_reduce_perf -b 8 -e 1M", "gpu-burn 5",
            "nemo train --model gpt3-7b", "nemo burn-in",
        )
        for line in lines:
            run(line)
        assert engine.snapshot() == before


@pytest.mark.unit
class TestSystemTools:
    """Test OS, BMC and fabric tools."""

    def test_hostname_variants(self, run):
        assert run("hostname -f").output == "dgx-00.cluster.local\n"
        assert run("hostname -i").output == "10.0.0.10\n"

    def test_dmesg_shows_xid(self, engine, run):
        engine.inject_fault("dgx-00", 0, "xid")
        assert ": 43, GPU Stopped Responding" in run("dmesg").output

    def test_dmesg_clear_refused(self, run):
        result = run("dmesg -c")
        assert result.exit_code == 1
        assert "Operation not permitted" in result.output

    def test_ipmitool_power_control_refused(self, engine, run):
        before = engine.snapshot()
        result = run("ipmitool chassis power off")
        assert result.exit_code == 1
        assert "Insufficient privilege level" in result.output
        assert engine.snapshot() == before

    def test_fabric_manager_status(self, engine, run):
        assert "Overall:              Healthy" in run("nv-fabricmanager status").output
        engine.inject_fault("dgx-00", 0, "nvlink")
        assert "Overall:              Degraded" in run("nv-fabricmanager status").output

    def test_bug_report_summary(self, engine, run):
        engine.inject_fault("dgx-00", 0, "xid")
        before = engine.snapshot()
        output = run("nvidia-bug-report.sh").output
        assert "Critical:          1" in output
        assert output.endswith("nvidia-bug-report.sh completed successfully.\n")
        assert engine.snapshot() == before


@pytest.mark.unit
class TestNemo:
    """Test NeMo training runs."""

    def test_train_requires_model(self, run):
        result = run("nemo train")
        assert result.exit_code == 1
        assert result.output.startswith("Missing required flag: --model")

    def test_train_on_healthy_node(self, run):
        result = run("nemo train --model gpt3-7b --iterations 100")
        assert result.exit_code == 0
        assert "Iteration 1/100: loss=" in result.output
        assert "throughput=1440 samples/sec" in result.output
        assert "Model checkpoint saved to: /workspace/checkpoints/gpt3-7b/" in result.output

    def test_output_is_deterministic(self, run):
        assert run("nemo burn-in").output == run("nemo burn-in").output

    def test_larger_model_is_slower(self, run):
        assert "throughput=58 samples/sec" in run("nemo train --model gpt3-175b").output

    def test_train_aborts_on_critical_gpu(self, engine, run):
        engine.inject_fault("dgx-00", 3, "ecc")
        result = run("nemo train --model llama2-70b")
        assert result.exit_code == 1
        assert "[Rank 3] RuntimeError: CUDA error: uncorrectable ECC error encountered" in result.output
        assert run("nemo train --model llama2-70b --gpus 2").exit_code == 0

    def test_burn_in_degraded_by_thermal(self, engine, run):
        assert "Status: PASSED" in run("nemo burn-in").output
        engine.inject_fault("dgx-00", 0, "thermal")
        result = run("nemo burn-in --iterations 20")
        assert result.exit_code == 0
        assert "Status: DEGRADED" in result.output
        assert "... (10 more iterations)" in result.output

    def test_unknown_subcommand_suggests(self, run):
        result = run("nemo trian")
        assert result.exit_code == 1
        assert "Did you mean 'train'?" in result.output

    def test_too_many_gpus(self, run):
        result = run("nemo train --model gpt3-7b --gpus 16")
        assert result.exit_code == 1
        assert "requested 16 GPUs" in result.output


@pytest.mark.unit
class TestClusterKit:
    """Test clusterkit assessments."""

    def test_assess_healthy(self, run):
        result = run("clusterkit assess")
        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0] == "ClusterKit Assessment Report"
        assert "Overall Health: PASS" in lines
        assert lines[-5:] == [
            "  gpu       PASS",
            "  network   PASS",
            "  storage   PASS",
            "  firmware  PASS",
            "  drivers   PASS",
        ]

    def test_assess_verbose(self, run):
        output = run("clusterkit assess -v").output
        assert "Detailed Checks:" in output
        assert "  gpu: PASS - 8/8 GPUs detected, 8 healthy" in output

    def test_critical_gpu_fails_assessment(self, engine, run):
        engine.inject_fault("dgx-00", 2, "ecc")
        result = run("clusterkit assess")
        assert result.exit_code == 1
        assert "Overall Health: FAIL" in result.output
        check = run("clusterkit check gpu")
        assert check.exit_code == 1
        assert "Status: FAIL" in check.output
        assert "  - GPU 2: Critical (" in check.output

    def test_thermal_warns(self, engine, run):
        engine.inject_fault("dgx-00", 0, "thermal")
        result = run("clusterkit assess")
        assert result.exit_code == 0
        assert "Overall Health: WARNING" in result.output

    def test_lost_gpu_fails_drivers(self, engine, run):
        engine.add_xid_error("dgx-00", 6, 79)
        result = run("clusterkit check drivers")
        assert result.exit_code == 1
        assert "GPU 6: fallen off the bus" in result.output
        assert "7/8 GPUs detected" in run("clusterkit check gpu").output

    def test_node_flag(self, engine, run):
        engine.inject_fault("dgx-00", 0, "xid")
        result = run("clusterkit assess --node dgx-03")
        assert result.exit_code == 0
        assert "Node: dgx-03" in result.output
        missing = run("clusterkit assess --node dgx-99")
        assert missing.exit_code == 1
        assert "node dgx-99 not found" in missing.output

    def test_check_requires_category(self, run):
        result = run("clusterkit check")
        assert result.exit_code == 1
        assert "Valid categories: gpu, network, storage, firmware, drivers" in result.output

    def test_invalid_category_suggests(self, run):
        result = run("clusterkit check netwrok")
        assert result.exit_code == 1
        assert result.output.startswith("Invalid category: netwrok\nDid you mean 'network'?")

    def test_unknown_flag(self, run):
        result = run("clusterkit assess --verbos")
        assert result.exit_code == 2
        assert "Did you mean '--verbose'?" in result.output

    def test_read_only(self, engine, run):
        before = engine.snapshot()
        run("clusterkit assess -v")
        run("clusterkit check firmware")
        assert engine.snapshot() == before
