"""Unit tests for the simulation engine."""

import json

import pytest

from superpod_sim.adapters.inbound.command_parser import CommandParser
from superpod_sim.adapters.inbound.command_router import CommandRouter
from superpod_sim.adapters.inbound.simulators import build_simulators
from superpod_sim.application.engine import BUILTINS, SimulationEngine
from superpod_sim.domain.entities.cluster import JobState
from superpod_sim.domain.entities.node import SlurmState
from superpod_sim.domain.value_objects.health_rules import HealthStatus
from superpod_sim.infrastructure.config import Config, EngineConfig
from superpod_sim.infrastructure.container import build_container


@pytest.mark.unit
class TestExitCodes:
    """Test shell-level failures."""

    def test_blank_line(self, engine, ctx):
        result = engine.execute("   ", ctx)
        assert result.output == ""
        assert result.exit_code == 0
        assert engine.history == []

    def test_syntax_error(self, run):
        result = run("nvidia-smi | grep GPU")
        assert result.exit_code == 2
        assert result.output.startswith("bash: syntax error:")

    def test_unknown_command(self, run):
        result = run("vim /etc/hosts")
        assert result.exit_code == 127
        assert result.output == "vim: command not found"

    def test_unknown_command_suggests_close_match(self, run):
        result = run("nvidia-sm -L")
        assert result.exit_code == 127
        lines = result.output.splitlines()
        assert lines[0] == "nvidia-sm: command not found"
        assert lines[1].startswith(("Did you mean 'nvidia-smi'", "Did you mean one of: 'nvidia-smi'"))

    def test_unknown_command_lists_several_matches(self, run):
        output = run("ibstatus").output
        assert output.startswith("ibstatus: command not found\nDid you mean one of: ")
        assert "'ibstat'" in output

    def test_tool_error_is_rendered(self, run):
        result = run("nvidia-smi -i 42")
        assert result.exit_code == 1
        assert "GPU not found" in result.output

    def test_known_command_succeeds(self, run):
        result = run("hostname")
        assert result.exit_code == 0
        assert result.output.strip() == "dgx-00"


@pytest.mark.unit
class TestBuiltins:
    """Test shell builtins."""

    def test_pwd_and_whoami(self, run):
        assert run("pwd").output == "/root\n"
        assert run("whoami").output == "root\n"

    def test_echo_expands_variables(self, run):
        assert run("echo $USER says hi").output == "root says hi\n"
        assert run("echo $NOPE").output == "\n"

    def test_ssh_moves_session(self, run, ctx):
        result = run("ssh dgx-03")
        assert result.exit_code == 0
        assert result.output.startswith("Welcome to ")
        assert ctx.current_node == "dgx-03"
        assert run("hostname").output.strip() == "dgx-03"

    def test_exit_returns_home(self, run, ctx):
        run("ssh dgx-05")
        assert run("exit").output == "logout\nConnection closed.\n"
        assert ctx.current_node == "dgx-00"
        assert run("logout").output == "logout\n"

    def test_ssh_accepts_user_and_fqdn(self, run, ctx):
        run("ssh root@dgx-01.cluster.local")
        assert ctx.current_node == "dgx-01"

    def test_ssh_remote_command(self, run, ctx):
        result = run("ssh dgx-02 hostname")
        assert result.output.strip() == "dgx-02"
        assert ctx.current_node == "dgx-00"

    def test_ssh_unknown_host(self, run, ctx):
        result = run("ssh dgx-42")
        assert result.exit_code == 255
        assert "Could not resolve hostname dgx-42" in result.output
        assert ctx.current_node == "dgx-00"

    def test_ssh_without_target(self, run):
        assert run("ssh").exit_code == 255

    def test_commands_include_builtins(self, engine):
        commands = engine.commands
        assert BUILTINS <= set(commands)
        assert "nvidia-smi" in commands
        assert len(commands) == 53 + len(BUILTINS)
        assert commands == sorted(commands)


@pytest.mark.unit
class TestStateChanges:
    """Test commands that mutate the cluster through the engine."""

    def test_scontrol_drain(self, engine, run):
        result = run("scontrol update NodeName=dgx-01 State=DRAIN Reason=maintenance")
        assert result.exit_code == 0
        assert result.output == "Node dgx-01 updated successfully\n"
        node = engine.snapshot().find_node("dgx-01")
        assert node.slurm_state is SlurmState.DRAIN
        assert node.slurm_reason == "maintenance"

    def test_drain_requires_reason(self, engine, run):
        result = run("scontrol update NodeName=dgx-01 State=DRAIN")
        assert result.exit_code == 1
        assert engine.snapshot().find_node("dgx-01").slurm_state is SlurmState.IDLE

    def test_resume(self, engine, run):
        run("scontrol update NodeName=dgx-01 State=DRAIN Reason=x")
        run("scontrol update NodeName=dgx-01 State=RESUME")
        node = engine.snapshot().find_node("dgx-01")
        assert node.slurm_state is SlurmState.IDLE
        assert node.slurm_reason is None

    def test_power_limit(self, engine, run):
        result = run("nvidia-smi -i 0 -pl 300")
        assert result.output == "Power limit for GPU 0 set to 300 W\n"
        assert engine.snapshot().nodes[0].gpus[0].power_limit == 300.0

    def test_power_limit_out_of_range(self, engine, run):
        result = run("nvidia-smi -i 0 -pl 50")
        assert result.exit_code == 1
        assert engine.snapshot().nodes[0].gpus[0].power_limit == 400.0

    def test_sbatch_and_scancel(self, engine, run):
        job_id = engine.snapshot().next_job_id
        result = run("sbatch --gres=gpu:8 train.sh")
        assert result.output == f"Submitted batch job {job_id}\n"
        job = engine.snapshot().find_job(job_id)
        assert job.state is JobState.RUNNING
        assert job.name == "train.sh"
        assert str(job_id) in run("squeue").output

        result = run(f"scancel {job_id}")
        assert result.output == f"scancel: Terminating job {job_id}\n"
        assert engine.snapshot().find_job(job_id).state is JobState.CANCELLED

    def test_gpu_reset_clears_xid(self, engine, run):
        engine.add_xid_error("dgx-00", 0, 13)
        result = run("nvidia-smi -r -i 0")
        assert "Cleared critical XID error(s): 13" in result.output
        assert engine.snapshot().nodes[0].gpus[0].health_status is HealthStatus.OK

    def test_mig_workflow(self, engine, run):
        run("nvidia-smi -i 0 -mig 1")
        result = run("nvidia-smi mig -cgi 19,19 -i 0")
        assert result.exit_code == 0
        gpu = engine.snapshot().nodes[0].gpus[0]
        assert gpu.mig_mode is True
        assert len(gpu.mig_instances) == 2
        run("nvidia-smi mig -dgi -i 0")
        assert engine.snapshot().nodes[0].gpus[0].mig_instances == []

    def test_srun_leaves_no_job(self, engine, run):
        before = engine.snapshot()
        result = run("srun -N 1 --gpus=1 nvidia-smi -L")
        assert result.exit_code == 0
        assert engine.snapshot().jobs == before.jobs


@pytest.mark.unit
class TestHistoryAndSession:
    """Test history and session bookkeeping."""

    def test_history_records_node_and_exit_code(self, engine, run, ctx):
        run("hostname")
        run("ssh dgx-01")
        run("bogus")
        entries = engine.history
        assert [e.command for e in entries] == ["hostname", "ssh dgx-01", "bogus"]
        assert entries[2].node == "dgx-01"
        assert entries[2].exit_code == 127
        assert entries[0].timestamp == "2024-01-15T10:30:00Z"
        assert ctx.history == ["hostname", "ssh dgx-01", "bogus"]

    def test_history_limit(self, metrics, clock, ctx):
        config = Config(engine=EngineConfig(history_limit=2))
        engine = build_container(config, metrics=metrics, clock=clock).resolve(SimulationEngine)
        for line in ("pwd", "whoami", "hostname"):
            engine.execute(line, ctx)
        assert [e.command for e in engine.history] == ["whoami", "hostname"]

    def test_default_context(self, engine):
        engine.execute("ssh dgx-04")
        assert engine.context.current_node == "dgx-04"

    def test_reset_returns_home(self, engine):
        engine.execute("ssh dgx-04")
        engine.inject_fault("dgx-04", 0, "xid")
        engine.reset_cluster()
        assert engine.context.current_node == "dgx-00"
        assert engine.stats().critical_gpus == 0

    def test_import_moves_session_off_missing_node(self, engine):
        engine.execute("ssh dgx-06")
        data = json.loads(engine.export_cluster())
        data["nodes"] = data["nodes"][:2]
        cluster = engine.import_cluster(json.dumps(data))
        assert len(cluster.nodes) == 2
        assert engine.context.current_node == "dgx-00"

    def test_import_keeps_existing_node(self, engine):
        engine.execute("ssh dgx-01")
        engine.import_cluster(engine.export_cluster())
        assert engine.context.current_node == "dgx-01"


@pytest.mark.unit
class TestDriftControl:
    """Test drift start and stop through the engine."""

    def test_start_stop(self, engine):
        assert not engine.drift_running
        engine.start_drift()
        assert engine.drift_running
        engine.stop_drift()
        assert not engine.drift_running

    def test_no_drift_configured(self, store, faults):
        engine = SimulationEngine(
            store=store,
            parser=CommandParser(),
            dispatcher=CommandRouter(build_simulators(store)),
            faults=faults,
        )
        with pytest.raises(RuntimeError):
            engine.start_drift()
        engine.stop_drift()
        assert not engine.drift_running
