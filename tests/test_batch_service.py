# tests/test_batch_service.py
import pytest

from batchtrace.errors import BatchNotFoundError, OutOfOrderRoleError
from batchtrace.models.batch_models import Role
from batchtrace.models.hop_models import CreateBatchPayload, HopPayload
from batchtrace.services.batch_service import BatchService
from batchtrace.services.role_gate import RoleProgressionGate
from tests.test_role_gate import BrokenProgressCollection


@pytest.fixture
def service(ledger, signers, orchestrator, quantities):
    return BatchService(ledger, signers, quantities=quantities, orchestrator=orchestrator)


class TestBatchService:
    def test_scenario_create_then_distributor(self, service, quantities):
        batch_id, res = service.create_batch(CreateBatchPayload(batchId="B1", product="Tomatoes", quantity=100))
        assert batch_id == "B1" and res.success
        assert [(r.role, r.quantity) for r in quantities.query("B1")] == [("Farmer", 100)]

        hop = service.perform_hop("B1", "Distributor", HopPayload(quantity=90))
        assert hop.success

        custody = [e for e in service.history("B1") if e.kind in ("created", "transferred")]
        assert [e.kind for e in custody] == ["created", "transferred"]
        assert custody[1].declaredQuantity == 90
        assert service.next_role("B1") == Role.RETAILER

    def test_gate_blocks_skipping_a_role(self, service, ledger):
        service.create_batch(CreateBatchPayload(batchId="B1", product="Tomatoes", quantity=100))
        with pytest.raises(OutOfOrderRoleError):
            service.perform_hop("B1", "Consumer", HopPayload(quantity=1))
        assert ledger.calls() == ["createBatch"]

    def test_gate_seeded_from_ledger(self, service, orchestrator):
        orchestrator.create_batch("EXT", "Beans", 10)
        assert service.completed_roles("EXT") == []
        assert service.next_role("EXT") == Role.DISTRIBUTOR
        assert service.perform_hop("EXT", "Distributor", HopPayload(quantity=10)).success
        assert service.completed_roles("EXT") == ["Farmer", "Distributor"]

    def test_failed_hop_does_not_advance_gate(self, service, ledger):
        service.create_batch(CreateBatchPayload(batchId="B1", product="Tomatoes", quantity=100))
        ledger.fail_submit["updateBatchStatus"] = ValueError("user rejected transaction")
        res = service.perform_hop("B1", "Distributor", HopPayload(quantity=90))
        assert res.error.kind == "TransactionCancelled"
        assert service.next_role("B1") == Role.DISTRIBUTOR

    def test_batch_view_missing(self, service):
        with pytest.raises(BatchNotFoundError):
            service.batch_view("nope")

    def test_network_status_lists_identities(self, service, accounts):
        status = service.network_status()
        assert status["connected"] is True
        assert status["identities"]["Retailer"] == accounts[Role.RETAILER].address
        assert status["balances"]["Retailer"] == "100"

    def test_gate_seeded_from_filled_custody_slots(self, service, orchestrator):
        # advanced to Distributor by another client before this service saw it
        orchestrator.create_batch("EXT", "Beans", 10)
        assert orchestrator.perform_hop("EXT", "Distributor", HopPayload(quantity=10)).success

        assert service.next_role("EXT") == Role.RETAILER
        assert service.completed_roles("EXT") == ["Farmer", "Distributor"]

    def test_auto_advanced_consumer_slot_does_not_complete_consumer(self, service, orchestrator):
        orchestrator.create_batch("EXT", "Beans", 10)
        res = orchestrator.perform_hop("EXT", "Retailer", HopPayload(quantity=10))
        assert res.autoAdvance.success

        assert service.next_role("EXT") == Role.CONSUMER
        assert service.perform_hop("EXT", "Consumer", HopPayload(quantity=9)).success


class TestProgressStoreOutage:
    @pytest.fixture
    def service(self, ledger, signers, orchestrator, quantities):
        gate = RoleProgressionGate(BrokenProgressCollection())
        return BatchService(ledger, signers, quantities=quantities, gate=gate, orchestrator=orchestrator)

    def test_create_reports_warning(self, service, ledger):
        batch_id, res = service.create_batch(CreateBatchPayload(batchId="B1", product="Tomatoes", quantity=100))
        assert res.success
        assert "B1" in ledger.batches
        assert [w.kind for w in res.warnings] == ["StorageUnavailable"]

    def test_hop_keeps_confirmed_writes(self, service, ledger, quantities):
        service.create_batch(CreateBatchPayload(batchId="B1", product="Tomatoes", quantity=100))
        res = service.perform_hop("B1", "Distributor", HopPayload(quantity=90))

        assert res.success
        assert ledger.calls() == ["createBatch", "transferToDistributor", "updateBatchStatus"]
        assert len(res.transactionRefs) == 2
        assert "StorageUnavailable" in {w.kind for w in res.warnings}
        assert ("Distributor", 90) in [(r.role, r.quantity) for r in quantities.query("B1")]
