"""Per-pass sync context: recursion guard, do-not-sync flags and memo.

A SyncContext is created for every triggering event (or batch chunk) and
passed explicitly through the orchestrator, registry, transcoder and
identity map. It replaces global toggles with state owned by the pass:

- suppress(store): cooperative, non-reentrant guard over one store's
  listener chain. Events arriving from a suppressed store are ignored.
- creating(key): guard against creating the same counterpart twice when
  the create itself re-enters the pipeline.
- evaluate/evaluation: the first precondition check for a record is
  recorded and honored by every later hook in the same pass.
- origin: the record that started the pass (first set wins).
- memo: request-scoped memoization shared by registry and identity lookups.

The active context is also bound to a ContextVar while the orchestrator
handles an event, so events re-entering from store listeners in the same
task find the context that is already running.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Callable, Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from src.crmsync.sync.schemas import MappedType, Store


@dataclass(frozen=True)
class Evaluation:
    """Outcome of the first precondition check for a record in this pass."""

    do_not_sync: bool
    mapped_type: MappedType | None = None


@dataclass
class SyncContext:
    """Mutable state owned by one sync pass."""

    pass_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    memo: dict[Hashable, Any] = field(default_factory=dict)
    origin: tuple[Store, str] | None = None
    _suppressed: set[Store] = field(default_factory=set)
    _creating: set[Hashable] = field(default_factory=set)
    _evaluations: dict[tuple[Store, str], Evaluation] = field(default_factory=dict)

    # ── Recursion guard ────────────────────────────────────────────────────

    def is_suppressed(self, store: Store) -> bool:
        return store in self._suppressed

    @contextmanager
    def suppress(self, store: Store) -> Iterator[None]:
        """Suppress the listener chain of ``store`` for the enclosed writes.

        Non-reentrant: a nested suppress of an already suppressed store is a
        no-op, only the outermost holder restores the listeners.
        """
        if store in self._suppressed:
            yield
            return
        self._suppressed.add(store)
        try:
            yield
        finally:
            self._suppressed.discard(store)

    def is_creating(self, key: Hashable) -> bool:
        return key in self._creating

    @contextmanager
    def creating(self, key: Hashable) -> Iterator[None]:
        self._creating.add(key)
        try:
            yield
        finally:
            self._creating.discard(key)

    # ── Precondition flags ─────────────────────────────────────────────────

    def evaluation(self, store: Store, record_id: str) -> Evaluation | None:
        return self._evaluations.get((store, record_id))

    def evaluate(
        self, store: Store, record_id: str, do_not_sync: bool, mapped_type: MappedType | None = None
    ) -> Evaluation:
        """Record the precondition result for a record. The first result sticks."""
        key = (store, record_id)
        if key not in self._evaluations:
            self._evaluations[key] = Evaluation(do_not_sync=do_not_sync, mapped_type=mapped_type)
        return self._evaluations[key]

    # ── Origin ─────────────────────────────────────────────────────────────

    def set_origin(self, store: Store, record_id: str) -> bool:
        """Set the originating record. Returns False if one was already set."""
        if self.origin is not None:
            return False
        self.origin = (store, record_id)
        return True

    def is_origin(self, store: Store, record_id: str | None) -> bool:
        return record_id is not None and self.origin == (store, record_id)

    # ── Memo ───────────────────────────────────────────────────────────────

    def memoize(self, key: Hashable, factory: Callable[[], Any]) -> Any:
        if key not in self.memo:
            self.memo[key] = factory()
        return self.memo[key]

    def fork(self) -> SyncContext:
        """New context for one batch item: fresh guards and flags, shared memo."""
        return SyncContext(memo=self.memo)


# ── Active context ──────────────────────────────────────────────────────────

_sync_context: contextvars.ContextVar[SyncContext] = contextvars.ContextVar("sync_context")


def get_current_context() -> SyncContext | None:
    """Get the context of the pass running in this task, if any."""
    return _sync_context.get(None)


def set_current_context(ctx: SyncContext) -> contextvars.Token[SyncContext]:
    """Bind ``ctx`` as the running pass. Returns a token for reset."""
    return _sync_context.set(ctx)


def reset_current_context(token: contextvars.Token[SyncContext]) -> None:
    _sync_context.reset(token)
