"""
Tests for committing validated batches into the customer store.
"""

import threading

import pytest

from customer_import.domain.customers.store import SqlCustomerStore
from customer_import.domain.imports.errors import InvalidStateError, NotFoundError
from customer_import.domain.imports.pipeline import ImportPipeline
from customer_import.domain.imports.repository import ImportRepository
from conftest import (
    CUSTOMER_HEADER,
    CUSTOMER_MAPPING,
    ORG_ID,
    OTHER_ORG_ID,
    USER_ID,
    make_csv,
    row_ids_by_number,
    three_row_csv,
)


def _outcome_for(result, row_number):
    return next(o for o in result.outcomes if o.row_number == row_number)


class FailingStore(SqlCustomerStore):
    """Store that refuses to create one particular customer."""

    def __init__(self, session_factory, fail_name):
        super().__init__(session_factory)
        self.fail_name = fail_name

    def create(self, organization_id, values):
        if values.get("name") == self.fail_name:
            raise RuntimeError("customers table is locked")
        return super().create(organization_id, values)


class TestCommit:
    def test_three_row_scenario(self, pipeline, store, validated_batch, audit_sink):
        result = pipeline.commit(ORG_ID, USER_ID, validated_batch)

        assert (result.created_count, result.updated_count, result.skipped_count, result.failed_count) == (2, 0, 1, 0)
        assert _outcome_for(result, 2).code == "validation_blocked"
        assert len(result.created_ids) == 2
        assert store.count(ORG_ID) == 2
        assert result.duration_ms >= 0

        batch, page = pipeline.get_batch(ORG_ID, validated_batch)
        assert batch.status == "committed"
        assert batch.committed_at is not None
        assert [row.action_taken for row in page.rows] == ["skipped", "created", "created"]
        assert page.rows[1].target_record_id in result.created_ids
        assert "import.committed" in audit_sink.names

    def test_written_values_are_coerced(self, pipeline, store, validated_batch):
        result = pipeline.commit(ORG_ID, USER_ID, validated_batch)
        record = store.get(ORG_ID, _outcome_for(result, 3).record_id)
        assert record["name"] == "Fjordkraft Service AS"
        assert record["phone"] == "55123456"
        assert record["postal_code"] == "5003"
        assert record["external_id"] == "K-2"

    def test_dry_run_writes_nothing(self, pipeline, store, validated_batch, audit_sink):
        result = pipeline.commit(ORG_ID, USER_ID, validated_batch, dry_run=True)

        assert result.dry_run is True
        assert (result.created_count, result.skipped_count) == (2, 1)
        assert result.created_ids == []
        assert store.count(ORG_ID) == 0
        batch, page = pipeline.get_batch(ORG_ID, validated_batch)
        assert batch.status == "validated"
        assert all(row.action_taken is None for row in page.rows)
        assert "import.committed" not in audit_sink.names

    def test_dry_run_matches_real_commit(self, pipeline, validated_batch):
        dry = pipeline.commit(ORG_ID, USER_ID, validated_batch, dry_run=True)
        real = pipeline.commit(ORG_ID, USER_ID, validated_batch)
        assert [o.action for o in dry.outcomes] == [o.action for o in real.outcomes]

    def test_second_commit_rejected(self, pipeline, store, validated_batch):
        pipeline.commit(ORG_ID, USER_ID, validated_batch)
        with pytest.raises(InvalidStateError):
            pipeline.commit(ORG_ID, USER_ID, validated_batch)
        assert store.count(ORG_ID) == 2

    def test_commit_requires_validation(self, pipeline):
        upload = pipeline.upload(ORG_ID, USER_ID, three_row_csv(), "kunder.csv")
        pipeline.apply_mapping(ORG_ID, USER_ID, upload.batch.id, mapping=CUSTOMER_MAPPING)
        with pytest.raises(InvalidStateError):
            pipeline.commit(ORG_ID, USER_ID, upload.batch.id)


class TestOperatorAdjustments:
    def test_edit_resolving_errors_lets_invalid_row_through(self, pipeline, store, validated_batch):
        row_ids = row_ids_by_number(pipeline, validated_batch)
        result = pipeline.commit(
            ORG_ID, USER_ID, validated_batch,
            row_edits={row_ids[2]: {"name": "Nordlys Kontroll AS"}},
        )
        assert result.created_count == 3
        record = store.get(ORG_ID, _outcome_for(result, 2).record_id)
        assert record["name"] == "Nordlys Kontroll AS"
        assert record["address"] == "Storgata 5"

    def test_edit_not_covering_errors_keeps_row_blocked(self, pipeline, validated_batch):
        row_ids = row_ids_by_number(pipeline, validated_batch)
        result = pipeline.commit(
            ORG_ID, USER_ID, validated_batch,
            row_edits={row_ids[2]: {"city": "Bergen"}},
        )
        outcome = _outcome_for(result, 2)
        assert outcome.action == "skipped"
        assert outcome.code == "validation_blocked"
        assert "name" in outcome.message

    def test_edits_are_coerced(self, pipeline, store, validated_batch):
        row_ids = row_ids_by_number(pipeline, validated_batch)
        result = pipeline.commit(
            ORG_ID, USER_ID, validated_batch,
            row_edits={row_ids[3]: {"phone": "+47 400 00 000", "service_interval_months": "12"}},
        )
        record = store.get(ORG_ID, _outcome_for(result, 3).record_id)
        assert record["phone"] == "+4740000000"
        assert record["service_interval_months"] == 12

    def test_excluded_rows_are_skipped(self, pipeline, store, validated_batch):
        row_ids = row_ids_by_number(pipeline, validated_batch)
        result = pipeline.commit(ORG_ID, USER_ID, validated_batch, excluded_row_ids=[row_ids[3]])
        assert _outcome_for(result, 3).code == "excluded"
        assert (result.created_count, result.skipped_count) == (1, 2)
        assert store.count(ORG_ID) == 1

    def test_unknown_row_reference_rejected(self, pipeline, store, validated_batch):
        with pytest.raises(NotFoundError):
            pipeline.commit(ORG_ID, USER_ID, validated_batch, excluded_row_ids=[999999])
        batch, _ = pipeline.get_batch(ORG_ID, validated_batch)
        assert batch.status == "validated"
        assert store.count(ORG_ID) == 0

    def _upload_with_repeated_row(self, pipeline):
        content = make_csv([
            CUSTOMER_HEADER,
            ["Fjordkraft Service AS", "Bryggen 12", "5003", "Bergen", "55 12 34 56", "kontakt@fjord.no", "K-2"],
            ["Fjordkraft Service AS", "Bryggen 12", "5003", "Bergen", "55 12 34 56", "kontakt@fjord.no", "K-2"],
        ])
        upload = pipeline.upload(ORG_ID, USER_ID, content, "kunder.csv")
        pipeline.apply_mapping(ORG_ID, USER_ID, upload.batch.id, mapping=CUSTOMER_MAPPING)
        pipeline.validate(ORG_ID, USER_ID, upload.batch.id)
        return upload.batch.id

    def test_rows_flagged_by_cleaning_are_skipped(self, pipeline, store):
        batch_id = self._upload_with_repeated_row(pipeline)
        result = pipeline.commit(ORG_ID, USER_ID, batch_id)
        outcome = _outcome_for(result, 3)
        assert (outcome.action, outcome.code) == ("skipped", "excluded")
        assert "Duplicate of row 2" in outcome.message
        assert (result.created_count, result.skipped_count) == (1, 1)
        assert store.count(ORG_ID) == 1

    def test_included_flagged_row_is_written(self, pipeline, store):
        batch_id = self._upload_with_repeated_row(pipeline)
        row_ids = row_ids_by_number(pipeline, batch_id)
        result = pipeline.commit(ORG_ID, USER_ID, batch_id, included_row_ids=[row_ids[3]])
        assert [o.action for o in result.outcomes] == ["created", "updated"]
        assert store.count(ORG_ID) == 1

    def test_unknown_included_row_rejected(self, pipeline, validated_batch):
        with pytest.raises(NotFoundError):
            pipeline.commit(ORG_ID, USER_ID, validated_batch, included_row_ids=[999999])


class TestMatching:
    def test_external_id_match_updates_existing_record(self, pipeline, store, validated_batch):
        existing_id = store.create(ORG_ID, {
            "name": "Fjordkraft (gammel)", "address": "Gamle Bryggen 1", "external_id": "K-2",
            "notes": "Fra gammelt system",
        })
        result = pipeline.commit(ORG_ID, USER_ID, validated_batch)

        assert (result.created_count, result.updated_count) == (1, 1)
        assert result.updated_ids == [existing_id]
        record = store.get(ORG_ID, existing_id)
        assert record["address"] == "Bryggen 12"
        assert record["notes"] == "Fra gammelt system"
        assert store.count(ORG_ID) == 2

    def test_empty_values_do_not_overwrite(self, pipeline, store, validated_batch):
        existing_id = store.create(ORG_ID, {
            "name": "Trondheim Brann AS", "address": "Munkegata 1", "external_id": "K-3",
            "email": "post@brann.no",
        })
        pipeline.commit(ORG_ID, USER_ID, validated_batch)
        assert store.get(ORG_ID, existing_id)["email"] == "post@brann.no"

    def test_other_tenants_records_are_not_matched(self, pipeline, store, validated_batch):
        other_id = store.create(OTHER_ORG_ID, {"name": "Annen", "address": "Et sted 1", "external_id": "K-2"})
        result = pipeline.commit(ORG_ID, USER_ID, validated_batch)
        assert result.updated_count == 0
        assert store.get(OTHER_ORG_ID, other_id)["name"] == "Annen"

    def test_name_address_strategy(self, pipeline, store):
        existing_id = store.create(ORG_ID, {"name": "FJORDKRAFT SERVICE AS", "address": "bryggen 12"})
        upload = pipeline.upload(ORG_ID, USER_ID, three_row_csv(), "kunder.csv")
        mapping = {**CUSTOMER_MAPPING, "options": {"match_strategy": "name_address"}}
        pipeline.apply_mapping(ORG_ID, USER_ID, upload.batch.id, mapping=mapping)
        pipeline.validate(ORG_ID, USER_ID, upload.batch.id)

        result = pipeline.commit(ORG_ID, USER_ID, upload.batch.id)
        assert result.updated_ids == [existing_id]
        assert store.get(ORG_ID, existing_id)["name"] == "Fjordkraft Service AS"


class TestRowFailures:
    def test_failed_row_does_not_stop_the_batch(self, session_factory, audit_sink, test_settings):
        store = FailingStore(session_factory, "Fjordkraft Service AS")
        pipeline = ImportPipeline(session_factory, store, audit_sink=audit_sink, settings=test_settings)
        try:
            upload = pipeline.upload(ORG_ID, USER_ID, three_row_csv(), "kunder.csv")
            pipeline.apply_mapping(ORG_ID, USER_ID, upload.batch.id, mapping=CUSTOMER_MAPPING)
            pipeline.validate(ORG_ID, USER_ID, upload.batch.id)
            result = pipeline.commit(ORG_ID, USER_ID, upload.batch.id)

            failed = _outcome_for(result, 3)
            assert failed.action == "failed"
            assert failed.code == "write_failed"
            assert "locked" in failed.message
            assert (result.created_count, result.failed_count) == (1, 1)
            assert store.count(ORG_ID) == 1
            batch, _ = pipeline.get_batch(ORG_ID, upload.batch.id)
            assert batch.status == "committed"
        finally:
            pipeline.close()

    def test_lost_undo_entry_reverses_created_record(self, pipeline, store, validated_batch, monkeypatch):
        record_undo = ImportRepository.add_rollback_entry
        record_ids = []

        def add_rollback_entry(repo, **values):
            record_ids.append(values["record_id"])
            if len(record_ids) == 1:
                raise RuntimeError("undo log unavailable")
            return record_undo(repo, **values)

        monkeypatch.setattr(ImportRepository, "add_rollback_entry", add_rollback_entry)
        result = pipeline.commit(ORG_ID, USER_ID, validated_batch)

        failed = _outcome_for(result, 3)
        assert (failed.action, failed.code) == ("failed", "write_failed")
        assert (result.created_count, result.failed_count) == (1, 1)
        assert store.get(ORG_ID, record_ids[0]) is None
        assert store.count(ORG_ID) == 1

        monkeypatch.undo()
        rollback = pipeline.rollback(ORG_ID, USER_ID, validated_batch, "Feil fil")
        assert rollback.records_deleted == 1
        assert store.count(ORG_ID) == 0

    def test_lost_undo_entry_restores_updated_record(self, pipeline, store, validated_batch, monkeypatch):
        existing_id = store.create(ORG_ID, {
            "name": "Fjordkraft (gammel)", "address": "Gamle Bryggen 1", "external_id": "K-2",
        })

        def add_rollback_entry(repo, **values):
            raise RuntimeError("undo log unavailable")

        monkeypatch.setattr(ImportRepository, "add_rollback_entry", add_rollback_entry)
        result = pipeline.commit(ORG_ID, USER_ID, validated_batch)

        assert _outcome_for(result, 3).code == "write_failed"
        record = store.get(ORG_ID, existing_id)
        assert record["name"] == "Fjordkraft (gammel)"
        assert record["address"] == "Gamle Bryggen 1"
        assert record["phone"] is None
        assert store.count(ORG_ID) == 1


class TestConcurrentCommit:
    def test_second_pipeline_loses_and_writes_nothing(
        self, pipeline, session_factory, store, audit_sink, test_settings, validated_batch
    ):
        # Separate pipelines share no batch lock, so only the status swap keeps them apart.
        other = ImportPipeline(session_factory, store, audit_sink=audit_sink, settings=test_settings)
        at_swap = threading.Event()
        winner_done = threading.Event()
        errors = []

        def delayed_transition(repo, batch, new, **values):
            at_swap.set()
            winner_done.wait(timeout=10)
            return ImportPipeline._transition(repo, batch, new, **values)

        other._transition = delayed_transition

        def commit_other():
            try:
                other.commit(ORG_ID, USER_ID, validated_batch)
            except Exception as exc:
                errors.append(exc)

        thread = threading.Thread(target=commit_other)
        thread.start()
        try:
            assert at_swap.wait(timeout=10)
            result = pipeline.commit(ORG_ID, USER_ID, validated_batch)
        finally:
            winner_done.set()
            thread.join(timeout=10)
            other.close()

        assert result.created_count == 2
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidStateError)
        assert "concurrently" in str(errors[0])
        assert store.count(ORG_ID) == 2
        batch, _ = pipeline.get_batch(ORG_ID, validated_batch)
        assert batch.status == "committed"
