"""Unit tests for the cluster state store."""

import json

import pytest

from superpod_sim.application.state_store import ClusterStore, plan_mig_instances
from superpod_sim.domain.entities.cluster import JobState
from superpod_sim.domain.entities.node import PortState, SlurmState
from superpod_sim.domain.exceptions import ClusterValidationError, InvariantViolation, NotFoundError
from superpod_sim.domain.services.cluster_factory import create_default_cluster
from superpod_sim.domain.services.cluster_schema import validate_cluster_document
from superpod_sim.domain.value_objects.health_rules import HealthStatus


@pytest.mark.unit
class TestReads:
    """Test snapshot isolation."""

    def test_snapshot_is_a_copy(self, store):
        snap = store.snapshot()
        snap.nodes[0].gpus[0].temperature = 99.0
        assert store.get_gpu("dgx-00", 0).temperature == 45.0

    def test_lookup_by_hostname(self, store):
        assert store.get_node("dgx-02.cluster.local").id == "dgx-02"

    def test_unknown_node(self, store):
        with pytest.raises(NotFoundError):
            store.get_node("dgx-99")
        assert not store.has_node("dgx-99")

    def test_unknown_gpu(self, store):
        with pytest.raises(NotFoundError):
            store.get_gpu("dgx-00", 8)


@pytest.mark.unit
class TestUpdateGPU:
    """Test atomic GPU writes and health re-derivation."""

    def test_health_rederived(self, store):
        gpu = store.update_gpu("dgx-00", 1, {"temperature": 87.0})
        assert gpu.health_status is HealthStatus.WARNING
        assert store.get_node("dgx-00").health_status is HealthStatus.WARNING

    def test_callable_partial(self, store):
        gpu = store.update_gpu("dgx-00", 1, lambda g: {"utilization": g.utilization + 10})
        assert gpu.utilization == 10.0

    def test_consistent_assertion_accepted(self, store):
        gpu = store.update_gpu("dgx-00", 1, {"temperature": 87.0, "health_status": "Warning"})
        assert gpu.health_status is HealthStatus.WARNING

    def test_contradicting_assertion_rejected(self, store):
        with pytest.raises(InvariantViolation):
            store.update_gpu("dgx-00", 1, {"health_status": HealthStatus.CRITICAL})
        assert store.get_gpu("dgx-00", 1).health_status is HealthStatus.OK

    @pytest.mark.parametrize("field", ["uuid", "id", "pci_address"])
    def test_immutable_fields(self, store, field):
        with pytest.raises(ValueError, match="cannot be updated"):
            store.update_gpu("dgx-00", 0, {field: "x"})

    def test_unknown_field(self, store):
        with pytest.raises(ValueError, match="Unknown GPU field"):
            store.update_gpu("dgx-00", 0, {"fan_speed": 50})


@pytest.mark.unit
class TestGPUActions:
    """Test nvidia-smi style actions."""

    def test_power_limit_bounds(self, store):
        with pytest.raises(ValueError):
            store.set_power_limit("dgx-00", [0], 50)
        with pytest.raises(ValueError):
            store.set_power_limit("dgx-00", [0], 500)
        gpus = store.set_power_limit("dgx-00", [0, 1], 300)
        assert [g.power_limit for g in gpus] == [300.0, 300.0]

    def test_power_limit_caps_draw(self, store):
        store.update_gpu("dgx-00", 0, {"power_draw": 350.0})
        gpu = store.set_power_limit("dgx-00", [0], 200)[0]
        assert gpu.power_draw == 180.0
        assert gpu.health_status is HealthStatus.OK

    def test_reset_gpu_clears_xids(self, store, faults):
        faults.add_xid_error("dgx-00", 0, 13)
        store.update_gpu("dgx-00", 0, {"utilization": 50.0})
        assert store.get_gpu("dgx-00", 0).health_status is HealthStatus.CRITICAL
        gpu = store.reset_gpu("dgx-00", 0)
        assert gpu.xid_errors == []
        assert gpu.utilization == 0.0
        assert gpu.health_status is HealthStatus.OK

    def test_reset_refused_when_fallen_off_bus(self, store, faults):
        faults.add_xid_error("dgx-00", 2, 79)
        with pytest.raises(ValueError, match="fallen off the bus"):
            store.reset_gpu("dgx-00", 2)

    def test_persistence_mode(self, store):
        gpu = store.set_persistence_mode("dgx-00", [3], False)[0]
        assert gpu.persistence_mode is False

    def test_mig_lifecycle(self, store):
        with pytest.raises(ValueError, match="not enabled"):
            store.create_mig_instances("dgx-00", 0, [19])
        store.set_mig_mode("dgx-00", [0], True)
        gpu = store.create_mig_instances("dgx-00", 0, [19, 19])
        assert [i.instance_id for i in gpu.mig_instances] == [1, 2]
        gpu = store.destroy_mig_instances("dgx-00", 0)
        assert gpu.mig_instances == []

    def test_mig_disable_destroys_instances(self, store):
        store.set_mig_mode("dgx-00", [0], True)
        store.create_mig_instances("dgx-00", 0, [9])
        gpu = store.set_mig_mode("dgx-00", [0], False)[0]
        assert gpu.mig_mode is False
        assert gpu.mig_instances == []

    def test_mig_capacity(self, store):
        gpu = store.set_mig_mode("dgx-00", [0], True)[0]
        with pytest.raises(ValueError):
            plan_mig_instances(gpu, [0, 0])
        with pytest.raises(ValueError, match="Unknown MIG profile"):
            plan_mig_instances(gpu, [123])


@pytest.mark.unit
class TestNodeAndJobActions:
    """Test Slurm state and job scheduling."""

    def test_drain_keeps_reason(self, store):
        node = store.set_slurm_state("dgx-01", "drain", "bad gpu")
        assert node.slurm_state is SlurmState.DRAIN
        assert node.slurm_reason == "bad gpu"

    def test_resume_clears_reason(self, store):
        store.set_slurm_state("dgx-01", SlurmState.DRAIN, "bad gpu")
        node = store.set_slurm_state("dgx-01", "idle")
        assert node.slurm_reason is None

    def test_invalid_state(self, store):
        with pytest.raises(ValueError):
            store.set_slurm_state("dgx-01", "sleeping")

    def test_submit_schedules_on_idle_node(self, store):
        job = store.submit_job("train", num_nodes=2, gpus=8)
        assert job.state is JobState.RUNNING
        assert job.node_list == "dgx-00,dgx-01"
        node = store.get_node("dgx-00")
        assert node.slurm_state is SlurmState.ALLOC
        assert all(g.allocated_job_id == job.job_id for g in node.gpus)
        assert store.stats().running_jobs == 1

    def test_drained_nodes_are_skipped(self, store):
        store.set_slurm_state("dgx-00", "drain", "maintenance")
        job = store.submit_job("train", gpus=1)
        assert job.node_list == "dgx-01"

    def test_pending_when_no_resources(self, store):
        job = store.submit_job("huge", num_nodes=9, gpus=8)
        assert job.state is JobState.PENDING
        assert job.reason == "Resources"

    def test_cancel_releases_gpus(self, store):
        job = store.submit_job("train", gpus=8)
        cancelled = store.cancel_job(job.job_id)
        assert cancelled.state is JobState.CANCELLED
        node = store.get_node("dgx-00")
        assert node.slurm_state is SlurmState.IDLE
        assert all(g.allocated_job_id is None for g in node.gpus)

    def test_cancel_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.cancel_job(4242)

    def test_job_ids_increase(self, store):
        first = store.submit_job("a")
        second = store.submit_job("b")
        assert second.job_id == first.job_id + 1

    def test_update_hca_port(self, store):
        port = store.update_hca_port("dgx-00", 0, 1, {"state": PortState.DOWN})
        assert port.state is PortState.DOWN
        with pytest.raises(NotFoundError):
            store.update_hca_port("dgx-00", 42, 1, {})
        with pytest.raises(ValueError):
            store.update_hca_port("dgx-00", 0, 1, {"port_number": 2})


@pytest.mark.unit
class TestImportExport:
    """Test whole-cluster persistence."""

    def test_round_trip_is_deep_equal(self, store, faults):
        faults.inject_fault("dgx-03", 4, "thermal")
        store.submit_job("train", gpus=4)
        exported = store.export_cluster()
        before = store.snapshot()

        other = ClusterStore()
        other.import_cluster(exported)
        assert other.snapshot() == before
        assert other.export_cluster() == exported

    def test_reset_restores_default(self, store, faults):
        faults.inject_fault("dgx-00", 0, "xid")
        store.reset_cluster()
        assert store.snapshot() == ClusterStore().snapshot()

    def test_import_rederives_health(self, store):
        data = json.loads(store.export_cluster())
        data["nodes"][0]["gpus"][0]["temperature"] = 90.0
        store.import_cluster(json.dumps(data))
        assert store.get_gpu("dgx-00", 0).health_status is HealthStatus.WARNING

    def test_import_accepts_bytes(self, store):
        store.import_cluster(store.export_cluster().encode("utf-8"))
        assert len(store.snapshot().nodes) == 8

    @pytest.mark.parametrize("document", [
        "not json",
        "[]",
        '{"name": "", "nodes": []}',
        '{"name": "x", "nodes": [{"id": "a"}]}',
        '{"name": "x", "nodes": [{"id": "a", "hostname": "a", "gpus": []}], "fabric_topology": "ring"}',
        '{"name": "x", "nodes": [], "__proto__": {}}',
    ])
    def test_invalid_documents_rejected(self, store, document):
        with pytest.raises(ClusterValidationError):
            store.import_cluster(document)
        assert len(store.snapshot().nodes) == 8

    def test_size_limit(self):
        small = ClusterStore(max_import_bytes=1024)
        with pytest.raises(ClusterValidationError, match="exceeds maximum"):
            small.import_cluster(small.export_cluster())

    def test_duplicate_node_ids(self, store):
        data = json.loads(store.export_cluster())
        data["nodes"][1]["id"] = data["nodes"][0]["id"]
        with pytest.raises(ClusterValidationError, match="unique"):
            store.import_cluster(json.dumps(data))

    def test_invalid_utf8(self, store):
        with pytest.raises(ClusterValidationError):
            store.import_cluster(b"\xff\xfe\x00")

    def test_validator_reports_every_problem(self):
        errors = validate_cluster_document({"nodes": [{}], "bcm_ha": {"enabled": "yes"}})
        assert len(errors) == 5

    def test_default_document_is_valid(self):
        assert validate_cluster_document(create_default_cluster().to_dict()) == []
