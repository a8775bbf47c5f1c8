"""
Tests for the batch state machine, tenant isolation, mapping templates,
batch locks and the worker pool deadline.
"""

import threading
import time

import pytest

from customer_import.domain.imports.errors import (
    AlreadyRolledBackError,
    DuplicateTemplateError,
    InvalidFormatError,
    InvalidStateError,
    NotFoundError,
    StageTimeoutError,
)
from customer_import.domain.imports.lifecycle import can_transition, is_terminal, require_status
from customer_import.domain.imports.pipeline import ImportPipeline
from customer_import.utils.locks import BatchLockManager
from conftest import CUSTOMER_HEADER, CUSTOMER_MAPPING, ORG_ID, OTHER_ORG_ID, USER_ID, make_csv, three_row_csv


def _upload(pipeline, content=None):
    return pipeline.upload(ORG_ID, USER_ID, content or three_row_csv(), "kunder.csv").batch.id


def _slow_double(chunk):
    time.sleep(2)
    return [item * 2 for item in chunk]


class TestStateMachine:
    def test_forward_path(self):
        for current, target in [
            ("uploaded", "mapped"), ("mapped", "validated"), ("validated", "committing"),
            ("committing", "committed"), ("committed", "rolling_back"), ("rolling_back", "rolled_back"),
        ]:
            assert can_transition(current, target)

    def test_reentry_and_shortcuts(self):
        assert can_transition("validated", "mapped")
        assert can_transition("mapped", "mapped")
        assert not can_transition("uploaded", "validated")
        assert not can_transition("validated", "committed")
        assert not can_transition("committed", "cancelled")

    def test_terminal_statuses(self):
        assert is_terminal("committed")
        assert is_terminal("rolled_back")
        assert is_terminal("cancelled")
        assert not is_terminal("validated")

    def test_require_status(self):
        require_status("validated", "commit")
        with pytest.raises(InvalidStateError):
            require_status("committing", "commit")
        with pytest.raises(AlreadyRolledBackError):
            require_status("rolled_back", "rollback")
        with pytest.raises(InvalidStateError):
            require_status("rolling_back", "rollback")


class TestCancel:
    def test_cancel_uploaded_batch(self, pipeline, audit_sink):
        batch_id = _upload(pipeline)
        summary = pipeline.cancel_batch(ORG_ID, USER_ID, batch_id)
        assert summary.status == "cancelled"
        assert summary.cancelled_at is not None
        assert audit_sink.names[-1] == "import.cancelled"

    def test_cancelled_batch_is_kept_and_frozen(self, pipeline):
        batch_id = _upload(pipeline)
        pipeline.cancel_batch(ORG_ID, USER_ID, batch_id)
        batches, total = pipeline.list_batches(ORG_ID, status="cancelled")
        assert total == 1
        with pytest.raises(InvalidStateError):
            pipeline.apply_mapping(ORG_ID, USER_ID, batch_id, mapping=CUSTOMER_MAPPING)
        with pytest.raises(InvalidStateError):
            pipeline.cancel_batch(ORG_ID, USER_ID, batch_id)

    def test_committed_batch_cannot_be_cancelled(self, pipeline, validated_batch):
        pipeline.commit(ORG_ID, USER_ID, validated_batch)
        with pytest.raises(InvalidStateError):
            pipeline.cancel_batch(ORG_ID, USER_ID, validated_batch)


class TestTenantIsolation:
    def test_other_tenant_sees_nothing(self, pipeline, validated_batch):
        with pytest.raises(NotFoundError):
            pipeline.get_batch(OTHER_ORG_ID, validated_batch)
        with pytest.raises(NotFoundError):
            pipeline.commit(OTHER_ORG_ID, USER_ID, validated_batch)
        with pytest.raises(NotFoundError):
            pipeline.build_error_report(OTHER_ORG_ID, validated_batch)
        assert pipeline.list_batches(OTHER_ORG_ID) == ([], 0)

    def test_unknown_batch(self, pipeline):
        with pytest.raises(NotFoundError):
            pipeline.get_preview(ORG_ID, "00000000-0000-0000-0000-000000000000")


class TestListingAndPaging:
    def test_status_filter(self, pipeline, validated_batch):
        _upload(pipeline)
        _, total = pipeline.list_batches(ORG_ID)
        assert total == 2
        validated, total = pipeline.list_batches(ORG_ID, status="validated")
        assert total == 1
        assert validated[0].id == validated_batch

    def test_unknown_status_filter_rejected(self, pipeline):
        with pytest.raises(InvalidFormatError):
            pipeline.list_batches(ORG_ID, status="bogus")

    def test_preview_paging_is_clamped(self, pipeline):
        rows = [CUSTOMER_HEADER] + [
            [f"Kunde {i}", f"Gate {i}", "0184", "Oslo", "91234567", "", f"K-{i}"] for i in range(30)
        ]
        batch_id = _upload(pipeline, make_csv(rows))
        page = pipeline.get_preview(ORG_ID, batch_id, limit=1000)
        assert page.limit == 25
        assert len(page.rows) == 25
        assert page.total == 30
        second = pipeline.get_preview(ORG_ID, batch_id, limit=10, offset=25)
        assert [row.row_number for row in second.rows] == [27, 28, 29, 30, 31]


class TestTemplates:
    def test_save_and_reuse_template(self, pipeline):
        batch_id = _upload(pipeline)
        mapped = pipeline.apply_mapping(
            ORG_ID, USER_ID, batch_id, mapping=CUSTOMER_MAPPING,
            save_as_template=True, template_name="Standard kundeliste",
        )
        template = pipeline.get_template(ORG_ID, mapped.template_id)
        assert template.source_columns == CUSTOMER_HEADER
        assert template.use_count == 0

        second = pipeline.upload(ORG_ID, USER_ID, three_row_csv(), "kunder.csv")
        assert second.matching_template_id == template.id

        result = pipeline.apply_mapping(ORG_ID, USER_ID, second.batch.id, template_id=template.id)
        assert result.template_id == template.id
        assert result.batch.mapping_template_id == template.id
        reused = pipeline.get_template(ORG_ID, template.id)
        assert reused.use_count == 1
        assert reused.last_used_at is not None

    def test_duplicate_name_rejected_before_mapping(self, pipeline):
        first = _upload(pipeline)
        pipeline.apply_mapping(
            ORG_ID, USER_ID, first, mapping=CUSTOMER_MAPPING,
            save_as_template=True, template_name="Standard",
        )
        second = _upload(pipeline)
        with pytest.raises(DuplicateTemplateError):
            pipeline.apply_mapping(
                ORG_ID, USER_ID, second, mapping=CUSTOMER_MAPPING,
                save_as_template=True, template_name=" standard ",
            )
        batch, _ = pipeline.get_batch(ORG_ID, second)
        assert batch.status == "uploaded"
        assert len(pipeline.list_templates(ORG_ID)) == 1

    def test_template_name_required(self, pipeline):
        batch_id = _upload(pipeline)
        with pytest.raises(InvalidFormatError):
            pipeline.apply_mapping(ORG_ID, USER_ID, batch_id, mapping=CUSTOMER_MAPPING, save_as_template=True)

    def test_templates_are_tenant_scoped(self, pipeline):
        batch_id = _upload(pipeline)
        mapped = pipeline.apply_mapping(
            ORG_ID, USER_ID, batch_id, mapping=CUSTOMER_MAPPING,
            save_as_template=True, template_name="Standard",
        )
        assert pipeline.list_templates(OTHER_ORG_ID) == []
        with pytest.raises(NotFoundError):
            pipeline.get_template(OTHER_ORG_ID, mapped.template_id)
        with pytest.raises(NotFoundError):
            pipeline.delete_template(OTHER_ORG_ID, mapped.template_id)

    def test_delete_template(self, pipeline):
        batch_id = _upload(pipeline)
        mapped = pipeline.apply_mapping(
            ORG_ID, USER_ID, batch_id, mapping=CUSTOMER_MAPPING,
            save_as_template=True, template_name="Standard",
        )
        pipeline.delete_template(ORG_ID, mapped.template_id)
        assert pipeline.list_templates(ORG_ID) == []
        with pytest.raises(NotFoundError):
            pipeline.apply_mapping(ORG_ID, USER_ID, batch_id, template_id=mapped.template_id)


class TestBatchLocks:
    def test_same_batch_is_serialized(self):
        locks = BatchLockManager()
        order = []

        def worker(name):
            with locks.acquire("batch-1"):
                order.append(f"{name}-start")
                time.sleep(0.05)
                order.append(f"{name}-end")

        threads = [threading.Thread(target=worker, args=(n,)) for n in ("a", "b")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert order in (
            ["a-start", "a-end", "b-start", "b-end"],
            ["b-start", "b-end", "a-start", "a-end"],
        )

    def test_entry_dropped_when_last_holder_leaves(self):
        locks = BatchLockManager()
        with locks.acquire("batch-1"):
            assert locks.is_tracked("batch-1")
            with locks.acquire("batch-2"):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_entry_dropped_after_error(self):
        locks = BatchLockManager()
        with pytest.raises(RuntimeError):
            with locks.acquire("batch-1"):
                raise RuntimeError("boom")
        assert not locks.is_tracked("batch-1")

    def test_waiter_keeps_entry_alive(self):
        locks = BatchLockManager()
        holder_in, waiter_started = threading.Event(), threading.Event()
        release_holder = threading.Event()
        order = []

        def holder():
            with locks.acquire("batch-1"):
                holder_in.set()
                release_holder.wait(5)
                order.append("holder")

        def waiter():
            waiter_started.set()
            with locks.acquire("batch-1"):
                order.append("waiter")

        first = threading.Thread(target=holder)
        first.start()
        holder_in.wait(5)
        second = threading.Thread(target=waiter)
        second.start()
        waiter_started.wait(5)
        time.sleep(0.05)
        release_holder.set()
        first.join()
        second.join()
        assert order == ["holder", "waiter"]
        assert len(locks) == 0

    def test_pipeline_keeps_no_locks_for_unknown_or_finished_batches(self, pipeline, validated_batch):
        for i in range(50):
            with pytest.raises(NotFoundError):
                pipeline.validate(ORG_ID, USER_ID, f"missing-{i}")
        with pytest.raises(NotFoundError):
            pipeline.commit(OTHER_ORG_ID, USER_ID, validated_batch)
        pipeline.commit(ORG_ID, USER_ID, validated_batch)
        assert len(pipeline.locks) == 0


class TestWorkerPool:
    def test_chunks_keep_input_order(self, pipeline):
        assert pipeline._run_chunks("mapping", lambda chunk: [x * 2 for x in chunk], list(range(7))) == [
            0, 2, 4, 6, 8, 10, 12,
        ]

    def test_stage_deadline(self, session_factory, store, test_settings):
        settings = test_settings.model_copy(update={"import_stage_timeout_seconds": 1})
        pipeline = ImportPipeline(session_factory, store, settings=settings)
        try:
            with pytest.raises(StageTimeoutError) as exc:
                pipeline._run_chunks("validation", _slow_double, [1, 2, 3])
            assert exc.value.code == "timeout"
        finally:
            pipeline.close()
