from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from rawwire.core.auth import CapabilityCheck, require_capability
from rawwire.core.config import Settings
from rawwire.core.errors import ConflictError, NotFoundError, PublishFailed
from rawwire.core.urls import canonical_hash
from rawwire.schemas.candidates import (
    ContentRecord,
    IngestResult,
    LifecycleEvent,
    LifecycleRecord,
    LifecycleState,
    Verdict,
)
from rawwire.schemas.items import ScoreResult, WorkItem
from rawwire.services.scoring import Scorer
from rawwire.services.store import ItemStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Publisher = Callable[[ContentRecord], Any]

INGEST_CAPABILITY = "candidates:write"
SCORE_CAPABILITY = "scoring:write"
MODERATE_CAPABILITY = "moderation:write"

_ALLOWED_TRANSITIONS: dict[tuple[str, str | None], set[tuple[str, str]]] = {
    ("candidate", None): {("archived", "accepted"), ("archived", "rejected")},
    ("archived", "accepted"): {("approved", "accepted"), ("archived", "rejected")},
    ("approved", "accepted"): {("content", "accepted")},
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_transition(
    *,
    from_state: str,
    from_verdict: str | None,
    to_state: str,
    to_verdict: str | None,
) -> None:
    allowed = _ALLOWED_TRANSITIONS.get((from_state, from_verdict))
    if not allowed or (to_state, to_verdict) not in allowed:
        raise ConflictError(
            f"invalid lifecycle transition: {from_state}{{{from_verdict}}} -> {to_state}{{{to_verdict}}}"
        )


class KeyedLocks:
    """``asyncio.Lock`` per key, kept only while some task holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class LifecycleService:
    """Moves ingested items through candidate, archived, approved and content.

    Transitions on one record are serialized by a per-record lock and ingestion by
    a per-URL lock. Every transition is written to the event log.
    """

    def __init__(
        self,
        store: ItemStore,
        *,
        accept_threshold: int = 60,
        top_per_source: int = 2,
        capability_check: CapabilityCheck | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.accept_threshold = accept_threshold
        self.top_per_source = top_per_source
        self.capability_check = capability_check
        self.clock = clock
        self._record_locks = KeyedLocks()
        self._url_locks = KeyedLocks()

    @classmethod
    def from_settings(
        cls,
        store: ItemStore,
        settings: Settings,
        *,
        capability_check: CapabilityCheck | None = None,
    ) -> LifecycleService:
        return cls(
            store,
            accept_threshold=settings.accept_threshold,
            top_per_source=settings.top_per_source,
            capability_check=capability_check,
        )

    def _authorize(self, check: CapabilityCheck | None, capability: str) -> None:
        require_capability(check if check is not None else self.capability_check, capability)

    def verdict_for(self, score: int) -> Verdict:
        return "accepted" if score >= self.accept_threshold else "rejected"

    async def get(self, record_id: str) -> LifecycleRecord:
        record = await self.store.get_record(record_id)
        if record is None:
            raise NotFoundError(f"candidate not found: {record_id}")
        return record

    async def list_records(
        self,
        *,
        state: LifecycleState | None = None,
        verdict: Verdict | None = None,
        source: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LifecycleRecord]:
        return await self.store.list_records(state=state, verdict=verdict, source=source, limit=limit, offset=offset)

    async def events(self, record_id: str, *, limit: int = 100, offset: int = 0) -> list[LifecycleEvent]:
        await self.get(record_id)
        return await self.store.list_events(record_id, limit=limit, offset=offset)

    async def ingest(
        self,
        items: Sequence[WorkItem],
        *,
        actor: str,
        resubmit: bool = False,
        check: CapabilityCheck | None = None,
    ) -> IngestResult:
        self._authorize(check, INGEST_CAPABILITY)
        result = IngestResult()
        for item in items:
            async with self._url_locks.hold(item.canonical_url):
                existing = await self.store.find_records_by_url(item.canonical_url)
                reopen = bool(existing) and resubmit and all(
                    row.state == "archived" and row.verdict == "rejected" for row in existing
                )
                if existing and not reopen:
                    result.duplicates.append(item.id)
                    logger.info(
                        "duplicate candidate skipped item_id=%s canonical_url=%s existing=%s",
                        item.id,
                        item.canonical_url,
                        existing[0].id,
                    )
                    continue

                now = self.clock()
                record = LifecycleRecord(
                    item=item,
                    canonical_url=item.canonical_url,
                    source=item.source,
                    created_at=now,
                    updated_at=now,
                )
                await self.store.insert_record(record)
                await self._log_event(
                    record,
                    event_type="resubmitted" if reopen else "ingested",
                    from_state=None,
                    from_verdict=None,
                    actor=actor,
                    payload={"previous_record_ids": [row.id for row in existing]} if reopen else {},
                )
                result.accepted.append(record.id)
        return result

    async def score_candidates(
        self,
        scorer: Scorer,
        *,
        actor: str,
        limit: int = 50,
        check: CapabilityCheck | None = None,
    ) -> list[LifecycleRecord]:
        """Score pending candidates in one batch and archive each with its verdict."""
        self._authorize(check, SCORE_CAPABILITY)
        pending = await self.store.list_records(state="candidate", limit=limit)
        if not pending:
            return []

        with tracer.start_as_current_span("lifecycle.score_candidates") as span:
            span.set_attribute("lifecycle.batch_size", len(pending))
            results = await scorer.score_batch([record.item for record in pending])

        archived: list[LifecycleRecord] = []
        for record, score in zip(pending, results):
            updated = await self.archive(record.id, score, actor=actor, check=check)
            if updated is not None:
                archived.append(updated)
        return archived

    async def archive(
        self,
        record_id: str,
        score: ScoreResult,
        *,
        actor: str,
        check: CapabilityCheck | None = None,
    ) -> LifecycleRecord | None:
        self._authorize(check, SCORE_CAPABILITY)
        async with self._record_locks.hold(record_id):
            record = await self.get(record_id)
            if record.state != "candidate":
                logger.info("skipping archive for already scored record_id=%s state=%s", record_id, record.state)
                return None
            return await self._transition(
                record,
                to_state="archived",
                to_verdict=self.verdict_for(score.score),
                event_type="scored",
                actor=actor,
                payload={"score": score.score, "scorer": score.scorer, "fallback": score.fallback},
                updates={"score": score},
            )

    async def approve(
        self,
        record_id: str,
        *,
        actor: str,
        reason: str | None = None,
        check: CapabilityCheck | None = None,
    ) -> LifecycleRecord:
        self._authorize(check, MODERATE_CAPABILITY)
        async with self._record_locks.hold(record_id):
            record = await self.get(record_id)
            if record.state in {"approved", "content"}:
                return record
            return await self._transition(
                record,
                to_state="approved",
                to_verdict="accepted",
                event_type="approved",
                actor=actor,
                reason=reason,
            )

    async def reject(
        self,
        record_id: str,
        *,
        actor: str,
        reason: str | None = None,
        check: CapabilityCheck | None = None,
    ) -> LifecycleRecord:
        self._authorize(check, MODERATE_CAPABILITY)
        async with self._record_locks.hold(record_id):
            record = await self.get(record_id)
            if record.state == "archived" and record.verdict == "rejected":
                return record
            return await self._transition(
                record,
                to_state="archived",
                to_verdict="rejected",
                event_type="rejected",
                actor=actor,
                reason=reason,
            )

    async def publish(
        self,
        record_id: str,
        *,
        actor: str,
        publisher: Publisher | None = None,
        check: CapabilityCheck | None = None,
    ) -> LifecycleRecord:
        """Promote an approved record to content.

        Idempotent on ``content_id``; a publisher failure leaves the record approved.
        """
        self._authorize(check, MODERATE_CAPABILITY)
        async with self._record_locks.hold(record_id):
            record = await self.get(record_id)
            if record.state == "content":
                return record
            validate_transition(
                from_state=record.state,
                from_verdict=record.verdict,
                to_state="content",
                to_verdict="accepted",
            )

            content_id = canonical_hash(record.id)
            content = await self.store.get_content(content_id)
            if content is None:
                content = ContentRecord(
                    content_id=content_id,
                    record_id=record.id,
                    title=record.item.title,
                    body=record.item.body,
                    url=record.item.url,
                    source=record.source,
                    score=record.score.score if record.score else None,
                    published_at=self.clock(),
                )
                if publisher is not None:
                    try:
                        outcome = publisher(content)
                        if inspect.isawaitable(outcome):
                            await outcome
                    except Exception as exc:
                        logger.warning("publish failed record_id=%s error=%s", record.id, exc)
                        raise PublishFailed(f"publisher rejected record {record.id}: {exc}") from exc
                content = await self.store.insert_content(content)

            return await self._transition(
                record,
                to_state="content",
                to_verdict="accepted",
                event_type="published",
                actor=actor,
                payload={"content_id": content.content_id},
                updates={"content_id": content.content_id},
            )

    async def auto_approve_top(
        self,
        *,
        actor: str,
        per_source: int | None = None,
        check: CapabilityCheck | None = None,
    ) -> list[LifecycleRecord]:
        """Approve the highest-scored accepted archive records of every source."""
        self._authorize(check, MODERATE_CAPABILITY)
        limit = per_source or self.top_per_source
        accepted = await self._list_all(state="archived", verdict="accepted")

        by_source: dict[str, list[LifecycleRecord]] = defaultdict(list)
        for record in accepted:
            by_source[record.source].append(record)

        approved: list[LifecycleRecord] = []
        for source, rows in sorted(by_source.items()):
            rows.sort(key=lambda row: (-(row.score.score if row.score else 0), row.created_at))
            for record in rows[:limit]:
                try:
                    approved.append(
                        await self.approve(record.id, actor=actor, reason=f"auto-approved top {limit} for {source}", check=check)
                    )
                except ConflictError:
                    logger.info("auto-approve skipped record_id=%s; state changed concurrently", record.id)
        return approved

    async def record_rescore(
        self,
        item: WorkItem,
        score: ScoreResult,
        *,
        actor: str,
        check: CapabilityCheck | None = None,
    ) -> LifecycleRecord | None:
        """Attach a primary re-score to the record tracking ``item``.

        Replaces a degraded score only; repeated calls for the same item are no-ops.
        The verdict is re-evaluated while the record is archived and no reviewer has
        rejected it. A rejected record is not reopened once its URL was resubmitted.
        """
        self._authorize(check, SCORE_CAPABILITY)
        async with self._url_locks.hold(item.canonical_url):
            siblings = await self.store.find_records_by_url(item.canonical_url)
            matches = [row for row in siblings if row.item.id == item.id]
            if not matches:
                logger.info("rescore has no lifecycle record item_id=%s", item.id)
                return None

            record_id = matches[0].id
            live_siblings = [row for row in siblings if row.id != record_id and not row.is_terminal]
            async with self._record_locks.hold(record_id):
                return await self._apply_rescore(record_id, score, actor=actor, reopen=not live_siblings)

    async def _apply_rescore(
        self,
        record_id: str,
        score: ScoreResult,
        *,
        actor: str,
        reopen: bool,
    ) -> LifecycleRecord:
        record = await self.get(record_id)
        if record.score is not None and not record.score.fallback:
            return record
        if record.state == "candidate":
            return await self._transition(
                record,
                to_state="archived",
                to_verdict=self.verdict_for(score.score),
                event_type="scored",
                actor=actor,
                payload={"score": score.score, "scorer": score.scorer, "fallback": score.fallback},
                updates={"score": score},
            )

        verdict = record.verdict
        if record.state == "archived":
            history = await self.store.list_events(record.id, limit=1000)
            if not any(event.event_type == "rejected" for event in history):
                verdict = self.verdict_for(score.score)
            if verdict == "accepted" and record.verdict == "rejected" and not reopen:
                logger.info("rescore keeps rejection; url was resubmitted record_id=%s", record.id)
                verdict = record.verdict

        previous_state, previous_verdict = record.state, record.verdict
        updated = record.model_copy(update={"score": score, "verdict": verdict, "updated_at": self.clock()})
        await self.store.update_record(updated)
        await self._log_event(
            updated,
            event_type="rescored",
            from_state=previous_state,
            from_verdict=previous_verdict,
            actor=actor,
            payload={"score": score.score, "scorer": score.scorer},
        )
        return updated

    async def _transition(
        self,
        record: LifecycleRecord,
        *,
        to_state: LifecycleState,
        to_verdict: Verdict,
        event_type: str,
        actor: str,
        reason: str | None = None,
        payload: dict[str, Any] | None = None,
        updates: dict[str, Any] | None = None,
    ) -> LifecycleRecord:
        validate_transition(
            from_state=record.state,
            from_verdict=record.verdict,
            to_state=to_state,
            to_verdict=to_verdict,
        )
        changes = {"state": to_state, "verdict": to_verdict, "updated_at": self.clock(), **(updates or {})}
        updated = record.model_copy(update=changes)
        await self.store.update_record(updated)
        await self._log_event(
            updated,
            event_type=event_type,
            from_state=record.state,
            from_verdict=record.verdict,
            actor=actor,
            reason=reason,
            payload=payload or {},
        )
        logger.info(
            "lifecycle transition record_id=%s %s -> %s verdict=%s actor=%s",
            record.id,
            record.state,
            to_state,
            to_verdict,
            actor,
        )
        return updated

    async def _log_event(
        self,
        record: LifecycleRecord,
        *,
        event_type: str,
        from_state: LifecycleState | None,
        from_verdict: Verdict | None,
        actor: str,
        reason: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> LifecycleEvent:
        return await self.store.add_event(
            LifecycleEvent(
                record_id=record.id,
                event_type=event_type,
                from_state=from_state,
                to_state=record.state,
                from_verdict=from_verdict,
                to_verdict=record.verdict,
                actor=actor,
                reason=reason,
                payload=payload or {},
                created_at=self.clock(),
            )
        )

    async def _list_all(self, **filters: Any) -> list[LifecycleRecord]:
        rows: list[LifecycleRecord] = []
        offset = 0
        while True:
            page = await self.store.list_records(limit=500, offset=offset, **filters)
            rows.extend(page)
            if len(page) < 500:
                return rows
            offset += 500
