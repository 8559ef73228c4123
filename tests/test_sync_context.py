"""Tests for SyncContext: recursion guard, precondition flags, origin and memo."""

from __future__ import annotations

import pytest

from src.crmsync.sync.context import (
    SyncContext,
    get_current_context,
    reset_current_context,
    set_current_context,
)
from src.crmsync.sync.schemas import Store

from tests.sync_factories import INDIVIDUAL


class TestSuppress:
    def test_suppress_scopes_to_block(self):
        ctx = SyncContext()

        with ctx.suppress(Store.A):
            assert ctx.is_suppressed(Store.A)
            assert not ctx.is_suppressed(Store.B)
        assert not ctx.is_suppressed(Store.A)

    def test_nested_suppress_is_not_reentrant(self):
        """Only the outermost holder restores the listeners."""
        ctx = SyncContext()

        with ctx.suppress(Store.B):
            with ctx.suppress(Store.B):
                pass
            assert ctx.is_suppressed(Store.B)
        assert not ctx.is_suppressed(Store.B)

    def test_suppress_restored_after_error(self):
        ctx = SyncContext()

        with pytest.raises(RuntimeError):
            with ctx.suppress(Store.A):
                raise RuntimeError("boom")
        assert not ctx.is_suppressed(Store.A)

    def test_creating_guard(self):
        ctx = SyncContext()
        key = (INDIVIDUAL.key, Store.B, "55")

        with ctx.creating(key):
            assert ctx.is_creating(key)
        assert not ctx.is_creating(key)


class TestEvaluation:
    def test_first_evaluation_sticks(self):
        ctx = SyncContext()

        ctx.evaluate(Store.A, "100", do_not_sync=True)
        later = ctx.evaluate(Store.A, "100", do_not_sync=False, mapped_type=INDIVIDUAL)

        assert later.do_not_sync is True
        assert later.mapped_type is None
        assert ctx.evaluation(Store.A, "100") == later

    def test_evaluations_are_per_store(self):
        ctx = SyncContext()
        ctx.evaluate(Store.A, "100", do_not_sync=True)

        assert ctx.evaluation(Store.B, "100") is None


class TestOrigin:
    def test_first_origin_wins(self):
        ctx = SyncContext()

        assert ctx.set_origin(Store.B, "55") is True
        assert ctx.set_origin(Store.A, "100") is False
        assert ctx.is_origin(Store.B, "55")
        assert not ctx.is_origin(Store.A, "100")
        assert not ctx.is_origin(Store.B, None)


class TestMemo:
    def test_memoize_builds_once(self):
        ctx = SyncContext()
        calls = []

        def build():
            calls.append(1)
            return "value"

        assert ctx.memoize("key", build) == "value"
        assert ctx.memoize("key", build) == "value"
        assert len(calls) == 1

    def test_fork_shares_memo_only(self):
        parent = SyncContext()
        parent.memo["key"] = "value"
        parent.set_origin(Store.A, "100")
        parent.evaluate(Store.A, "100", do_not_sync=True)

        with parent.suppress(Store.A):
            child = parent.fork()

        assert child.memo is parent.memo
        assert child.origin is None
        assert child.evaluation(Store.A, "100") is None
        assert not child.is_suppressed(Store.A)
        assert child.pass_id != parent.pass_id


class TestCurrentContext:
    def test_bind_and_reset(self):
        ctx = SyncContext()
        assert get_current_context() is None

        token = set_current_context(ctx)
        try:
            assert get_current_context() is ctx
        finally:
            reset_current_context(token)

        assert get_current_context() is None
