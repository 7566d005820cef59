"""Tests for the desired-state store."""

import pytest

from konverge.core.config import DEFAULT_FINALIZER
from konverge.core.errors import Conflict, ImmutableViolation, NotFound, ValidationError
from konverge.core.schema.identity import ResourceIdentity
from konverge.core.store import APPLIED, DELETING, PURGED, STATUS, DesiredStateStore, is_immutable

SETTINGS = ResourceIdentity("ConfigMap", "default", "settings")
SERVICE = ResourceIdentity("Service", "default", "web")
SERVICE_SPEC = {"selector": {"app": "web"}, "ports": [{"port": 80}]}


class TestApply:
    """Tests for DesiredStateStore.apply()."""

    def test_create(self):
        """Test first apply creates generation 1 with the finalizer."""
        store = DesiredStateStore()
        record = store.apply(SETTINGS, {"data": {"mode": "fast"}}, labels={"app": "web"})

        assert record.generation == 1
        assert record.resource_version
        assert record.finalizers == (DEFAULT_FINALIZER,)
        assert store.get(SETTINGS) is record
        assert len(store) == 1

    def test_identical_apply_is_noop(self):
        """Test that re-applying the same spec changes nothing."""
        store = DesiredStateStore()
        first = store.apply(SETTINGS, {"data": {"mode": "fast"}})
        events = []
        store.subscribe(lambda identity, reason: events.append(reason))

        second = store.apply(SETTINGS, {"data": {"mode": "fast"}})

        assert second is first
        assert events == []

    def test_spec_change_bumps_generation(self):
        """Test generation and version move on a spec change."""
        store = DesiredStateStore()
        first = store.apply(SETTINGS, {"data": {"mode": "fast"}})
        second = store.apply(SETTINGS, {"data": {"mode": "slow"}})

        assert second.generation == 2
        assert second.resource_version != first.resource_version

    def test_caller_edits_after_apply_are_not_shared(self):
        """Test nested changes to a reused spec dict are seen as a new spec."""
        store = DesiredStateStore()
        spec = {"data": {"mode": "fast"}}
        first = store.apply(SETTINGS, spec)
        events = []
        store.subscribe(lambda identity, reason: events.append(reason))

        spec["data"]["mode"] = "slow"
        assert first.spec == {"data": {"mode": "fast"}}

        second = store.apply(SETTINGS, spec)
        assert second.generation == 2
        assert second.spec == {"data": {"mode": "slow"}}
        assert events == [APPLIED]

    def test_metadata_change_keeps_generation(self):
        """Test label-only changes bump the version but not the generation."""
        store = DesiredStateStore()
        first = store.apply(SETTINGS, {"data": {"mode": "fast"}})
        second = store.apply(SETTINGS, {"data": {"mode": "fast"}}, labels={"team": "core"})

        assert second.generation == 1
        assert second.resource_version != first.resource_version
        assert second.labels == {"team": "core"}

    def test_expected_version(self):
        """Test optimistic concurrency on apply."""
        store = DesiredStateStore()
        record = store.apply(SETTINGS, {"data": {"mode": "fast"}})
        store.apply(SETTINGS, {"data": {"mode": "fast"}}, expected_version=record.resource_version)

        with pytest.raises(Conflict) as exc_info:
            store.apply(SETTINGS, {"data": {"mode": "slow"}}, expected_version="0")
        assert exc_info.value.actual == record.resource_version
        assert store.get(SETTINGS).spec == {"data": {"mode": "fast"}}

    def test_invalid_spec_persists_nothing(self):
        """Test a ValidationError leaves the store unchanged."""
        store = DesiredStateStore()
        with pytest.raises(ValidationError):
            store.apply(SERVICE, {"ports": [{"port": 0}]})
        assert store.find(SERVICE) is None

    def test_immutable(self):
        """Test frozen ConfigMaps only accept identical re-applies."""
        store = DesiredStateStore()
        record = store.apply(SETTINGS, {"data": {"mode": "fast"}, "immutable": True})
        assert is_immutable(record)

        # identical spec with new labels is allowed
        store.apply(SETTINGS, {"data": {"mode": "fast"}, "immutable": True}, labels={"a": "b"})
        with pytest.raises(ImmutableViolation):
            store.apply(SETTINGS, {"data": {"mode": "slow"}, "immutable": True})

    def test_notifications(self):
        """Test listeners receive (identity, reason)."""
        store = DesiredStateStore()
        events = []
        store.subscribe(lambda identity, reason: events.append((identity, reason)))

        store.apply(SERVICE, SERVICE_SPEC)
        assert events == [(SERVICE, APPLIED)]


class TestStatus:
    """Tests for update_status()."""

    def test_status_keeps_generation(self):
        """Test status writes never bump the generation."""
        store = DesiredStateStore()
        record = store.apply(SERVICE, SERVICE_SPEC)
        updated = store.update_status(SERVICE, {"observedGeneration": 1})

        assert updated.generation == record.generation
        assert updated.resource_version != record.resource_version
        assert updated.status == {"observedGeneration": 1}

    def test_same_status_is_noop(self):
        """Test writing the stored status again."""
        store = DesiredStateStore()
        store.apply(SERVICE, SERVICE_SPEC)
        first = store.update_status(SERVICE, {"observedGeneration": 1})
        assert store.update_status(SERVICE, {"observedGeneration": 1}) is first

    def test_status_is_copied(self):
        """Test the stored status does not follow later edits of the caller's dict."""
        store = DesiredStateStore()
        store.apply(SERVICE, SERVICE_SPEC)
        status = {"conditions": [{"type": "Ready", "status": "False"}]}
        stored = store.update_status(SERVICE, status)

        status["conditions"][0]["status"] = "True"
        assert stored.status["conditions"][0]["status"] == "False"
        assert store.update_status(SERVICE, status) is not stored

    def test_status_notification_reason(self):
        """Test status writes are distinguishable from applies."""
        store = DesiredStateStore()
        store.apply(SERVICE, SERVICE_SPEC)
        events = []
        store.subscribe(lambda identity, reason: events.append(reason))
        store.update_status(SERVICE, {"observedGeneration": 1})
        assert events == [STATUS]

    def test_unknown_identity(self):
        """Test status of a missing record."""
        with pytest.raises(NotFound):
            DesiredStateStore().update_status(SERVICE, {})


class TestDelete:
    """Tests for delete() and finalizers."""

    def test_delete_waits_for_finalizer(self):
        """Test deletion keeps the record until finalizers clear."""
        store = DesiredStateStore()
        store.apply(SERVICE, SERVICE_SPEC)
        events = []
        store.subscribe(lambda identity, reason: events.append(reason))

        record = store.delete(SERVICE)
        assert record.is_deleting
        assert store.get(SERVICE).is_deleting

        assert store.remove_finalizer(SERVICE, DEFAULT_FINALIZER) is None
        assert store.find(SERVICE) is None
        assert events == [DELETING, PURGED]

    def test_delete_is_idempotent(self):
        """Test deleting a finalizing record again."""
        store = DesiredStateStore()
        store.apply(SERVICE, SERVICE_SPEC)
        first = store.delete(SERVICE)
        assert store.delete(SERVICE) is first

    def test_apply_while_deleting(self):
        """Test a finalizing record refuses new intent."""
        store = DesiredStateStore()
        store.apply(SERVICE, SERVICE_SPEC)
        store.delete(SERVICE)
        with pytest.raises(Conflict):
            store.apply(SERVICE, dict(SERVICE_SPEC, type="NodePort"))

    def test_delete_without_finalizers_purges(self):
        """Test records without finalizers disappear at once."""
        store = DesiredStateStore(finalizers=())
        store.apply(SERVICE, SERVICE_SPEC)
        assert store.delete(SERVICE) is None
        assert store.find(SERVICE) is None

    def test_delete_unknown(self):
        """Test deleting a missing record."""
        with pytest.raises(NotFound):
            DesiredStateStore().delete(SERVICE)

    def test_delete_expected_version(self):
        """Test optimistic concurrency on delete."""
        store = DesiredStateStore()
        store.apply(SERVICE, SERVICE_SPEC)
        with pytest.raises(Conflict):
            store.delete(SERVICE, expected_version="999")
        assert not store.get(SERVICE).is_deleting


class TestPersistence:
    """Tests for JSON persistence."""

    def test_save_and_reload(self, tmp_path):
        """Test a restarted store resumes versions and generations."""
        path = str(tmp_path / "desired.json")
        store = DesiredStateStore(file_path=path)
        store.apply(SETTINGS, {"data": {"mode": "fast"}})
        last = store.apply(SETTINGS, {"data": {"mode": "slow"}})

        reloaded = DesiredStateStore(file_path=path)
        record = reloaded.get(SETTINGS)
        assert record == last

        newer = reloaded.apply(SETTINGS, {"data": {"mode": "off"}})
        assert int(newer.resource_version) > int(last.resource_version)
        assert newer.generation == 3

    def test_corrupt_file_starts_empty(self, tmp_path):
        """Test a broken file is logged and ignored."""
        path = tmp_path / "desired.json"
        path.write_text("not json")
        assert len(DesiredStateStore(file_path=str(path))) == 0

    def test_list_filters(self):
        """Test listing by kind and namespace."""
        store = DesiredStateStore()
        store.apply(SETTINGS, {"data": {}})
        store.apply(SERVICE, SERVICE_SPEC)
        store.apply(ResourceIdentity("ConfigMap", "other", "settings"), {"data": {}})

        assert [str(r.identity) for r in store.list("ConfigMap")] == [
            "ConfigMap/default/settings",
            "ConfigMap/other/settings",
        ]
        assert len(store.list(namespace="default")) == 2
