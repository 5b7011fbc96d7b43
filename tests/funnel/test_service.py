"""ClientService tests.

Tests for:
- create: placeholder handle, default status, first-contact history
- handle conflicts: new record routed onto the holder, existing record merged
- client guard and legacy state normalization
- activity tracking
- metrics backfill with lease and outage handling
- admin master override, deleted-booking flag reset and message recording
"""
from datetime import datetime

import pytest

from funnel.booking import ClientMetrics
from funnel.errors import NotFound
from funnel.service import METRICS_LEASE_PREFIX

NOW = datetime(2024, 5, 10, 12, 0, 0)

T1 = datetime(2024, 5, 1, 10, 0)
T2 = datetime(2024, 5, 2, 10, 0)


# ============================================================
# Create / update
# ============================================================
class TestSave:
    """Tests for ClientService.save."""

    def test_create_defaults(self, service, temp_db):
        client = service.save({"external_booking_id": 100, "state": "client"}, reason="first-contact")

        assert client.handle == "missing-handle-100"
        assert client.status_id == "new"
        assert client.first_contact_at == NOW
        history = service.get_state_history(client.id)
        assert [(h.state, h.previous_state, h.reason) for h in history] == [("client", None, "first-contact")]

    def test_create_without_any_key_gets_unique_placeholder(self, service):
        first = service.save({"given_name": "Anna"})
        second = service.save({"given_name": "Iryna"})
        assert first.handle.startswith("missing-handle-")
        assert first.handle != second.handle

    def test_handle_is_normalized(self, service):
        client = service.save({"handle": "@Anna.Hair"})
        assert client.handle == "anna.hair"

    def test_real_handle_is_not_replaced_by_placeholder(self, service, temp_db):
        client = service.save({"handle": "anna.hair"})
        service.save({"id": client.id, "handle": "missing-handle-100"})
        assert temp_db.clients.get(client.id).handle == "anna.hair"

    def test_external_id_is_immutable(self, service, temp_db):
        client = service.save({"external_booking_id": 100})
        service.save({"id": client.id, "external_booking_id": 200})
        assert temp_db.clients.get(client.id).external_booking_id == 100

    def test_same_state_writes_no_history(self, service):
        client = service.save({"handle": "anna", "state": "message"})
        service.save({"id": client.id, "state": "message", "given_name": "Anna"})
        assert len(service.get_state_history(client.id)) == 1

    def test_unknown_id_raises(self, service):
        with pytest.raises(NotFound):
            service.save({"id": 999, "state": "client"})

    def test_unknown_field_raises(self, service):
        with pytest.raises(ValueError):
            service.save({"handle": "anna", "nickname": "A"})

    def test_unknown_state_raises(self, service):
        with pytest.raises(ValueError):
            service.save({"handle": "anna", "state": "vip"})

    def test_legacy_states_are_normalized(self, service, temp_db):
        client = service.save({"handle": "anna", "state": "lead"})
        assert temp_db.clients.get(client.id).state == "message"

        temp_db.state_logs.append(client.id, "consultation", "message", "imported")
        history = service.history_states(client.id)
        assert history == ["consultation-booked", "message"]


class TestHandleConflicts:
    """Tests for conflict recovery in save."""

    def test_new_record_is_routed_onto_holder(self, service, temp_db):
        holder = service.save({"handle": "anna", "given_name": "Anna"})
        saved = service.save({"handle": "anna", "family_name": "Smith"})

        assert saved.id == holder.id
        assert temp_db.clients.count() == 1
        assert temp_db.clients.get(holder.id).family_name == "Smith"

    def test_existing_record_is_merged(self, service, temp_db):
        by_ext = service.save({"external_booking_id": 100, "state": "client"})
        by_handle = service.save({"handle": "anna", "state": "message"})

        saved = service.save({"id": by_ext.id, "handle": "anna"})

        assert saved.id == by_ext.id
        assert temp_db.clients.count() == 1
        survivor = temp_db.clients.get(by_ext.id)
        assert survivor.handle == "anna"
        assert survivor.external_booking_id == 100
        assert temp_db.clients.get(by_handle.id) is None
        assert temp_db.state_logs.count(by_ext.id) == 2

    def test_concurrent_insert_is_routed_onto_holder(self, service, temp_db, monkeypatch):
        """The handle lookup misses, the insert hits the unique index and the write lands on the holder."""
        holder = service.save({"handle": "anna", "given_name": "Anna"})
        original = temp_db.clients.get_by_handle
        calls = []

        def get_by_handle(handle, session=None):
            calls.append(handle)
            if len(calls) == 1:
                return None
            return original(handle, session=session)

        monkeypatch.setattr(temp_db.clients, "get_by_handle", get_by_handle)
        saved = service.save({"handle": "anna", "family_name": "Smith"})

        assert len(calls) >= 2
        assert saved.id == holder.id
        assert temp_db.clients.count() == 1
        stored = temp_db.clients.get(holder.id)
        assert (stored.given_name, stored.family_name) == ("Anna", "Smith")


class TestClientGuard:
    """client may be entered only once."""

    def test_client_after_funnel_progress_keeps_state(self, service, temp_db):
        client = service.save({"external_booking_id": 100, "state": "client"})
        service.save({"id": client.id, "state": "consultation-booked"})

        service.save({"id": client.id, "state": "client"})

        assert temp_db.clients.get(client.id).state == "consultation-booked"
        assert service.history_states(client.id) == ["consultation-booked", "client"]

    def test_first_client_is_allowed(self, service, temp_db):
        client = service.save({"handle": "anna", "state": "message"})
        service.save({"id": client.id, "state": "client"})
        assert temp_db.clients.get(client.id).state == "client"


class TestActivity:
    """Tests for activity_at stamping."""

    def test_tracked_change_moves_activity(self, service, temp_db, clock):
        client = service.save({"handle": "anna"})
        assert temp_db.clients.get(client.id).activity_at is None

        clock.now = T2
        service.save({"id": client.id, "last_message_at": T1})
        stored = temp_db.clients.get(client.id)
        assert stored.activity_at == T2
        assert stored.activity_keys == ["last_message_at"]

    def test_untracked_changes_do_not_move_activity(self, service, temp_db, clock):
        client = service.save({"handle": "anna", "last_message_at": T1})
        before = temp_db.clients.get(client.id).activity_at

        clock.now = T2
        service.save({"id": client.id, "state": "hair-extension", "given_name": "Anna"})
        assert temp_db.clients.get(client.id).activity_at == before

    def test_touch_activity_false(self, service, temp_db, clock):
        client = service.save({"handle": "anna"})
        clock.now = T2
        service.save({"id": client.id, "paid_service_at": T1}, touch_activity=False)
        assert temp_db.clients.get(client.id).activity_at is None


# ============================================================
# Metrics backfill
# ============================================================
class TestMetricsBackfill:
    """Tests for the first-time metrics backfill."""

    def test_backfill_after_save(self, synced_service, booking_client, temp_db):
        booking_client.metrics[100] = ClientMetrics(phone="+380501112233", visit_count=3, total_spent=4500)

        client = synced_service.save({"external_booking_id": 100})

        stored = temp_db.clients.get(client.id)
        assert stored.phone == "+380501112233"
        assert stored.visit_count == 3
        assert stored.total_spent == 4500
        assert stored.activity_at is None
        assert temp_db.cache.get(f"{METRICS_LEASE_PREFIX}100") is None

    def test_backfill_runs_once(self, synced_service, booking_client):
        booking_client.metrics[100] = ClientMetrics(visit_count=3)
        client = synced_service.save({"external_booking_id": 100})
        synced_service.save({"id": client.id, "given_name": "Anna"})
        assert booking_client.metric_calls == [100]

    def test_outage_does_not_block_save(self, synced_service, booking_client, temp_db):
        booking_client.unavailable = True
        client = synced_service.save({"external_booking_id": 100, "state": "client"})

        stored = temp_db.clients.get(client.id)
        assert stored.state == "client"
        assert stored.visit_count is None
        assert temp_db.cache.get(f"{METRICS_LEASE_PREFIX}100") is None

    def test_held_lease_skips_request(self, synced_service, booking_client, temp_db):
        temp_db.cache.acquire(f"{METRICS_LEASE_PREFIX}100", 300)
        synced_service.save({"external_booking_id": 100})
        assert booking_client.metric_calls == []

    def test_no_external_id(self, synced_service, booking_client):
        synced_service.save({"handle": "anna"})
        assert booking_client.metric_calls == []


# ============================================================
# Admin operations and messages
# ============================================================
class TestAdminAndMessages:
    """Tests for set_master, reset_deleted_upstream and record_message."""

    def test_set_master(self, service, temp_db):
        master = temp_db.masters.get_or_create("Olena")
        client = service.save({"handle": "anna"})

        service.set_master(client.id, master.id)
        stored = temp_db.clients.get(client.id)
        assert stored.master_id == master.id
        assert stored.master_manually_set is True
        assert stored.activity_at is None

    def test_set_master_unknown(self, service):
        client = service.save({"handle": "anna"})
        with pytest.raises(NotFound):
            service.set_master(client.id, 999)

    def test_record_message(self, service, temp_db):
        client = service.save({"handle": "anna"})

        service.record_message(client.id, "Hi", T2)
        service.record_message(client.id, "Hi", T2)
        service.record_message(client.id, "Earlier", T1)

        assert len(temp_db.messages.list_for_client(client.id)) == 2
        assert temp_db.clients.get(client.id).last_message_at == T2

    def test_reset_deleted_upstream(self, service, temp_db, clock):
        client = service.save({"handle": "anna", "paid_service_deleted_upstream": True})
        before = len(service.get_state_history(client.id))

        clock.now = T2
        service.reset_deleted_upstream(client.id)

        stored = temp_db.clients.get(client.id)
        assert stored.paid_service_deleted_upstream is False
        assert stored.activity_at is None
        assert len(service.get_state_history(client.id)) == before

    def test_reset_deleted_upstream_unknown(self, service):
        with pytest.raises(NotFound):
            service.reset_deleted_upstream(999)
