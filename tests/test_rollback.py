"""
Tests for rolling back committed batches from the undo log.
"""

import pytest

from customer_import.domain.imports.errors import AlreadyRolledBackError, InvalidStateError
from customer_import.domain.imports.rollback import compute_row_hash
from conftest import ORG_ID, USER_ID


class TestRowHash:
    def test_key_order_does_not_matter(self):
        assert compute_row_hash({"a": "1", "b": 2}) == compute_row_hash({"b": 2, "a": "1"})

    def test_numbers_compare_as_floats(self):
        assert compute_row_hash({"interval": 12}) == compute_row_hash({"interval": 12.0})

    def test_values_change_hash(self):
        assert compute_row_hash({"city": "Oslo"}) != compute_row_hash({"city": "Bergen"})
        assert compute_row_hash({"city": None}) != compute_row_hash({"city": "None"})


class TestRollback:
    def test_rollback_deletes_created_records(self, pipeline, store, validated_batch, audit_sink):
        pipeline.commit(ORG_ID, USER_ID, validated_batch)
        assert store.count(ORG_ID) == 2

        result = pipeline.rollback(ORG_ID, USER_ID, validated_batch, "Feil fil")

        assert result.records_deleted == 2
        assert result.failed_count == 0
        assert result.rolled_back_at is not None
        assert store.count(ORG_ID) == 0
        batch, _ = pipeline.get_batch(ORG_ID, validated_batch)
        assert batch.status == "rolled_back"
        assert batch.rollback_reason == "Feil fil"
        assert audit_sink.names[-1] == "import.rolled_back"

    def test_entries_replayed_newest_first(self, pipeline, validated_batch):
        commit = pipeline.commit(ORG_ID, USER_ID, validated_batch)
        result = pipeline.rollback(ORG_ID, USER_ID, validated_batch, "Feil fil")
        assert [o.record_id for o in result.outcomes] == list(reversed(commit.created_ids))

    def test_second_rollback_rejected(self, pipeline, validated_batch):
        pipeline.commit(ORG_ID, USER_ID, validated_batch)
        pipeline.rollback(ORG_ID, USER_ID, validated_batch, "Feil fil")
        with pytest.raises(AlreadyRolledBackError) as exc:
            pipeline.rollback(ORG_ID, USER_ID, validated_batch, "Igjen")
        assert exc.value.code == "already_rolled_back"

    def test_uncommitted_batch_cannot_be_rolled_back(self, pipeline, validated_batch):
        with pytest.raises(InvalidStateError):
            pipeline.rollback(ORG_ID, USER_ID, validated_batch, "Feil fil")

    def test_updated_record_is_restored(self, pipeline, store, validated_batch):
        existing_id = store.create(ORG_ID, {
            "name": "Fjordkraft (gammel)", "address": "Gamle Bryggen 1", "external_id": "K-2",
        })
        before = store.get(ORG_ID, existing_id)
        pipeline.commit(ORG_ID, USER_ID, validated_batch)
        assert store.get(ORG_ID, existing_id)["phone"] == "55123456"

        result = pipeline.rollback(ORG_ID, USER_ID, validated_batch, "Feil fil")

        assert (result.records_deleted, result.records_reverted, result.conflicts) == (1, 1, 0)
        restored = store.get(ORG_ID, existing_id)
        assert restored["address"] == "Gamle Bryggen 1"
        assert restored["phone"] is None
        assert restored == before
        assert store.count(ORG_ID) == 1

    def test_changed_after_commit_is_flagged_but_restored(self, pipeline, store, validated_batch):
        existing_id = store.create(ORG_ID, {"name": "Fjordkraft (gammel)", "address": "Gamle Bryggen 1",
                                            "external_id": "K-2", "city": "Os"})
        pipeline.commit(ORG_ID, USER_ID, validated_batch)
        store.update(ORG_ID, existing_id, {"city": "Stavanger"})

        result = pipeline.rollback(ORG_ID, USER_ID, validated_batch, "Feil fil")

        assert result.conflicts == 1
        reverted = next(o for o in result.outcomes if o.record_id == existing_id)
        assert reverted.status == "reverted"
        assert reverted.conflict is True
        assert store.get(ORG_ID, existing_id)["city"] == "Os"

    def test_externally_deleted_record_is_reported(self, pipeline, store, validated_batch):
        commit = pipeline.commit(ORG_ID, USER_ID, validated_batch)
        store.delete(ORG_ID, commit.created_ids[0])

        result = pipeline.rollback(ORG_ID, USER_ID, validated_batch, "Feil fil")

        assert (result.records_deleted, result.failed_count) == (1, 1)
        failed = next(o for o in result.outcomes if o.status == "failed")
        assert failed.record_id == commit.created_ids[0]
        assert store.count(ORG_ID) == 0
        batch, _ = pipeline.get_batch(ORG_ID, validated_batch)
        assert batch.status == "rolled_back"
