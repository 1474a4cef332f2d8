"""Tests for the SQLite operation store."""

import logging
import threading

import pytest

from operations.models import CANCELLED, FAILED, QUEUED, RUNNING, SUCCESS
from operations.store import STALE_RUNNING_ERROR, OperationStore


class TestCreateAndGet:
    """Tests for create() and get()."""

    def test_create_returns_queued_operation(self, store):
        """New operations start queued with no timing fields."""
        op_id = store.create('imp', 'dev', 'deploy', ref='main', vars={'a': 1},
                             callback_url='http://cb', initiated_by='cli')

        op = store.get(op_id)
        assert op.status == QUEUED
        assert op.app == 'imp'
        assert op.env == 'dev'
        assert op.type == 'deploy'
        assert op.ref == 'main'
        assert op.vars == {'a': 1}
        assert op.callback_url == 'http://cb'
        assert op.initiated_by == 'cli'
        assert op.output == ''
        assert op.created_at is not None
        assert op.started_at is None
        assert op.completed_at is None
        assert op.duration_ms is None

    def test_ids_are_unique(self, store):
        ids = {store.create('imp', 'dev', 'deploy') for _ in range(20)}
        assert len(ids) == 20

    def test_get_unknown_returns_none(self, store):
        assert store.get('nope') is None

    def test_survives_reopen(self, tmp_path):
        """Operations persist across store instances."""
        path = tmp_path / 'ops.db'
        first = OperationStore(path)
        op_id = first.create('imp', 'dev', 'provision')
        first.append_output(op_id, 'hello\n')
        first.close()

        second = OperationStore(path)
        try:
            op = second.get(op_id)
            assert op.type == 'provision'
            assert op.output == 'hello\n'
        finally:
            second.close()


class TestList:
    """Tests for list() ordering and filters."""

    def test_newest_first(self, store):
        ids = [store.create('imp', 'dev', 'deploy') for _ in range(3)]
        assert [op.id for op in store.list()] == list(reversed(ids))

    def test_filters(self, store):
        a = store.create('imp', 'dev', 'deploy')
        b = store.create('imp', 'staging', 'deploy')
        c = store.create('other', 'dev', 'deploy')
        store.mark_running(b)

        assert {op.id for op in store.list(app='imp')} == {a, b}
        assert [op.id for op in store.list(env='dev')] == [c, a]
        assert [op.id for op in store.list(status=RUNNING)] == [b]

    def test_limit_and_offset(self, store):
        ids = [store.create('imp', 'dev', 'deploy') for _ in range(5)]
        page = store.list(limit=2, offset=1)
        assert [op.id for op in page] == [ids[3], ids[2]]

    def test_unknown_status_rejected(self, store):
        with pytest.raises(ValueError, match='Unknown status'):
            store.list(status='exploded')


class TestTransitions:
    """Tests for the status lifecycle."""

    def test_mark_running_sets_started_at(self, store):
        op_id = store.create('imp', 'dev', 'deploy')
        assert store.mark_running(op_id) is True
        op = store.get(op_id)
        assert op.status == RUNNING
        assert op.started_at is not None

    def test_mark_running_only_from_queued(self, store):
        op_id = store.create('imp', 'dev', 'deploy')
        store.mark_running(op_id)
        assert store.mark_running(op_id) is False

    def test_mark_success_records_duration(self, store):
        op_id = store.create('imp', 'dev', 'deploy')
        store.mark_running(op_id)
        assert store.mark_success(op_id) is True

        op = store.get(op_id)
        assert op.status == SUCCESS
        assert op.completed_at >= op.started_at
        assert op.duration_ms >= 0
        assert op.error is None

    def test_mark_failed_records_error(self, store):
        op_id = store.create('imp', 'dev', 'deploy')
        store.mark_running(op_id)
        store.mark_failed(op_id, 'Process exited with code 2')

        op = store.get(op_id)
        assert op.status == FAILED
        assert op.error == 'Process exited with code 2'

    def test_terminal_is_final(self, store):
        """A terminal operation never transitions again."""
        op_id = store.create('imp', 'dev', 'deploy')
        store.mark_running(op_id)
        store.mark_success(op_id)

        assert store.mark_failed(op_id, 'late') is False
        assert store.mark_cancelled(op_id) is False
        assert store.get(op_id).status == SUCCESS

    def test_cancel_queued(self, store):
        """A cancelled queued operation is stamped as started and completed at once."""
        op_id = store.create('imp', 'dev', 'deploy')
        assert store.cancel(op_id) is True

        op = store.get(op_id)
        assert op.status == CANCELLED
        assert op.completed_at is not None
        assert op.started_at == op.completed_at
        assert op.duration_ms == 0

    def test_cancel_running_refused(self, store):
        """cancel() only applies to queued operations."""
        op_id = store.create('imp', 'dev', 'deploy')
        store.mark_running(op_id)
        assert store.cancel(op_id) is False
        assert store.get(op_id).status == RUNNING

    def test_mark_cancelled_running(self, store):
        op_id = store.create('imp', 'dev', 'deploy')
        store.mark_running(op_id)
        assert store.mark_cancelled(op_id) is True
        assert store.get(op_id).status == CANCELLED

    def test_cancel_unknown(self, store):
        assert store.cancel('missing') is False


class TestOutput:
    """Tests for append_output()."""

    def test_appends_in_order(self, store):
        op_id = store.create('imp', 'dev', 'deploy')
        store.append_output(op_id, 'one\n')
        store.append_output(op_id, 'two\n')
        store.append_output(op_id, '')
        assert store.get(op_id).output == 'one\ntwo\n'

    def test_concurrent_appends_do_not_interleave(self, store):
        """Chunks written from several threads stay intact."""
        op_id = store.create('imp', 'dev', 'deploy')

        def writer(ch):
            for _ in range(50):
                store.append_output(op_id, ch * 40 + '\n')

        threads = [threading.Thread(target=writer, args=(ch,)) for ch in 'abcd']
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        lines = store.get(op_id).output.splitlines()
        assert len(lines) == 200
        for line in lines:
            assert len(line) == 40
            assert len(set(line)) == 1


class TestQueue:
    """Tests for queue helpers and startup reconciliation."""

    def test_next_queued_is_fifo(self, store):
        first = store.create('imp', 'dev', 'deploy')
        second = store.create('imp', 'dev', 'provision')
        store.create('imp', 'staging', 'deploy')

        assert store.get_next_queued('imp', 'dev').id == first
        store.mark_running(first)
        assert store.get_next_queued('imp', 'dev').id == second

    def test_next_queued_skips_cancelled(self, store):
        first = store.create('imp', 'dev', 'deploy')
        second = store.create('imp', 'dev', 'deploy')
        store.cancel(first)
        assert store.get_next_queued('imp', 'dev').id == second

    def test_next_queued_empty(self, store):
        assert store.get_next_queued('imp', 'dev') is None

    def test_next_queued_without_env(self, store):
        op_id = store.create('imp', None, 'infra-plan-shared')
        assert store.get_next_queued('imp', None).id == op_id

    def test_resources_with_queued(self, store):
        store.create('imp', 'staging', 'deploy')
        store.create('imp', 'dev', 'deploy')
        store.create('imp', 'staging', 'provision')
        done = store.create('other', 'dev', 'deploy')
        store.cancel(done)

        assert store.resources_with_queued() == [('imp', 'staging'), ('imp', 'dev')]

    def test_reconcile_stale(self, store, caplog):
        """Running rows from a dead process are failed with an explanation."""
        caplog.set_level(logging.WARNING)
        stale = store.create('imp', 'dev', 'deploy')
        store.mark_running(stale)
        queued = store.create('imp', 'dev', 'deploy')

        assert store.reconcile_stale() == [stale]

        op = store.get(stale)
        assert op.status == FAILED
        assert op.error == STALE_RUNNING_ERROR
        assert STALE_RUNNING_ERROR in op.output
        assert store.get(queued).status == QUEUED
        assert 'Marked 1 stale running operation(s) as failed' in caplog.text
