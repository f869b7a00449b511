# tests/test_history.py
from datetime import datetime, timezone

from batchtrace.models.batch_models import BatchSnapshot, EventKind, QuantityRecord, Role
from batchtrace.models.hop_models import HopPayload
from batchtrace.services.history_service import HistoryReconstructor
from tests.conftest import GENESIS_TS


def _at(minute):
    return datetime(2024, 1, 1, 12, minute, tzinfo=timezone.utc)


class TestGetHistory:
    def test_distributor_hop_trail(self, orchestrator, ledger, quantities, accounts):
        orchestrator.create_batch("B1", "Tomatoes", 100)
        orchestrator.perform_hop("B1", "Distributor", HopPayload(quantity=90))

        events = HistoryReconstructor(ledger, quantities).get_history("B1")

        assert [e.kind for e in events] == ["created", "transferred", "updated"]
        custody = [e for e in events if e.kind in ("created", "transferred")]
        assert [(e.role, e.declaredQuantity) for e in custody] == [("Farmer", 100), ("Distributor", 90)]

        created, transferred, updated = events
        assert created.actor == accounts[Role.FARMER].address
        assert created.action == "Created (Tomatoes)"
        assert transferred.action == "Transferred to Distributor"
        assert transferred.actor == accounts[Role.DISTRIBUTOR].address
        assert updated.role == "Distributor"
        assert updated.action == "Received by Distributor"
        assert updated.declaredQuantity == 90

    def test_timestamps_and_refs(self, orchestrator, ledger, quantities):
        res = orchestrator.create_batch("B1", "Tomatoes", 100)
        (ev,) = HistoryReconstructor(ledger, quantities).get_history("B1")

        assert ev.timestamp == GENESIS_TS + 12 * ev.blockNumber
        assert ev.transactionRef == res.transactionRef
        assert ev.transactionRef.startswith("0x")

    def test_ordered_by_block_then_log_index(self, ledger, quantities):
        ledger.add_log(EventKind.UPDATED, "B9", 7, 1, {"status": "late", "updatedBy": "0x1"})
        ledger.add_log(EventKind.CREATED, "B9", 3, 0, {"product": "Rice", "quantity": 5, "farmer": "0x1"})
        ledger.add_log(EventKind.TRANSFERRED, "B9", 7, 0, {"from": "0x1", "to": "0x2", "role": "Distributor"})
        ledger.add_log(EventKind.UPDATED, "B9", 5, 2, {"status": "mid", "updatedBy": "0x1"})

        events = HistoryReconstructor(ledger, quantities).get_history("B9")
        assert [e.order_key for e in events] == [(3, 0), (5, 2), (7, 0), (7, 1)]

    def test_repeat_calls_are_identical(self, orchestrator, ledger, quantities):
        orchestrator.create_batch("B1", "Tomatoes", 100)
        orchestrator.perform_hop("B1", "Retailer", HopPayload(quantity=80))
        h = HistoryReconstructor(ledger, quantities)

        first = [e.to_dict() for e in h.get_history("B1")]
        second = [e.to_dict() for e in h.get_history("B1")]
        assert first == second
        assert len({(e["blockNumber"], e["logIndex"]) for e in first}) == len(first)

    def test_latest_quantity_per_role_wins(self, orchestrator, ledger, quantities):
        orchestrator.create_batch("B1", "Tomatoes", 100)
        orchestrator.perform_hop("B1", "Distributor", HopPayload(quantity=100))
        quantities.record("B1", Role.DISTRIBUTOR, 95, None, at=datetime(2030, 1, 1, tzinfo=timezone.utc))

        events = HistoryReconstructor(ledger, quantities).get_history("B1")
        transferred = [e for e in events if e.kind == "transferred"][0]
        assert transferred.declaredQuantity == 95

    def test_no_completed_events_from_this_contract(self, orchestrator, ledger, quantities):
        orchestrator.create_batch("B1", "Tomatoes", 100)
        orchestrator.perform_hop("B1", "Retailer", HopPayload(quantity=80))
        events = HistoryReconstructor(ledger, quantities).get_history("B1")
        assert "completed" not in {e.kind for e in events}
        assert [e.role for e in events if e.kind == "transferred"] == ["Distributor", "Retailer", "Consumer"]

    def test_one_timestamp_lookup_per_block(self, ledger, quantities):
        ledger.add_log(EventKind.CREATED, "B2", 4, 0, {"product": "Rice", "quantity": 5, "farmer": "0x1"})
        ledger.add_log(EventKind.UPDATED, "B2", 4, 1, {"status": "x", "updatedBy": "0x1"})
        ledger.add_log(EventKind.UPDATED, "B2", 6, 0, {"status": "y", "updatedBy": "0x1"})

        HistoryReconstructor(ledger, quantities).get_history("B2")
        assert sorted(ledger.timestamp_calls) == [4, 6]

    def test_unresolved_timestamp_does_not_abort(self, ledger, quantities):
        ledger.add_log(EventKind.CREATED, "B2", 4, 0, {"product": "Rice", "quantity": 5, "farmer": "0x1"})
        ledger.add_log(EventKind.UPDATED, "B2", 6, 0, {"status": "y", "updatedBy": "0x1"})
        ledger.fail_timestamps.add(6)

        events = HistoryReconstructor(ledger, quantities).get_history("B2")
        assert [e.timestamp for e in events] == [GENESIS_TS + 48, None]

    def test_failed_stream_is_skipped(self, orchestrator, ledger, quantities):
        orchestrator.create_batch("B1", "Tomatoes", 100)
        orchestrator.perform_hop("B1", "Distributor", HopPayload(quantity=90))
        ledger.fail_events[EventKind.UPDATED] = ConnectionError("connection refused")

        events = HistoryReconstructor(ledger, quantities).get_history("B1")
        assert [e.kind for e in events] == ["created", "transferred"]

    def test_update_by_unknown_address_has_no_role(self, orchestrator, ledger, quantities):
        orchestrator.create_batch("B1", "Tomatoes", 100)
        ledger.add_log(EventKind.UPDATED, "B1", 50, 0, {"status": "??", "updatedBy": "0x" + "ee" * 20})

        events = HistoryReconstructor(ledger, quantities).get_history("B1")
        assert events[-1].role is None
        assert events[-1].declaredQuantity is None

    def test_unknown_batch_is_empty(self, ledger, quantities):
        assert HistoryReconstructor(ledger, quantities).get_history("missing") == []


class TestJourney:
    def test_journey_follows_custody_slots(self):
        snap = BatchSnapshot(
            batchId="B1", product="Tomatoes", quantity=100,
            farmer="0xF", distributor="0xD", retailer=None, consumer=None,
            createdAt=10, updatedAt=20, status="Received by Distributor",
        )
        steps = HistoryReconstructor.journey(snap)

        assert [s.step for s in steps] == ["Farm", "Distribution", "Retail", "Consumer"]
        assert [s.completed for s in steps] == [True, True, False, False]
        assert steps[0].timestamp == 10
        assert steps[2].status == "Pending"
        assert steps[2].timestamp is None

    def test_display_quantity_prefers_consumer_then_latest(self):
        snap = BatchSnapshot(batchId="B1", quantity=100)
        recs = [
            QuantityRecord("B1", "Farmer", 100, None, _at(0)),
            QuantityRecord("B1", "Distributor", 90, None, _at(1)),
        ]
        assert HistoryReconstructor.display_quantity(snap, []) == 100
        assert HistoryReconstructor.display_quantity(snap, recs) == 90

        recs.insert(0, QuantityRecord("B1", "Consumer", 70, None, _at(5)))
        assert HistoryReconstructor.display_quantity(snap, recs) == 70
