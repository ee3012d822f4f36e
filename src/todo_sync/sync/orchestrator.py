"""Offline-first synchronization of the task collection.

:class:`SyncOrchestrator` sits between the UI and the two replicas of the
collection: the local key/value mirror and the remote document. The UI
hands it every new version of the collection through :meth:`save`; the
orchestrator debounces those calls, reconciles the newest snapshot with the
remote copy, writes the merge back and reports progress through
``sync_status``. Conflicts that cannot be resolved automatically are
parked in ``conflict_info`` until the user decides.

All work happens on one asyncio event loop. Every ``await`` is a point
where the UI may have changed state, so instance state is re-read after
each one instead of being cached across it.
"""

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Set

from ..normalize import PARTICIPATING_FIELDS
from ..storage import (
    LAST_SYNC_FINGERPRINT_KEY,
    LAST_SYNCED_TODOS_KEY,
    STORAGE_MODE_KEY,
    KeyValueStore,
    load_records,
    save_records,
)
from ..todo import TaskRecord, TodoId, active_records, sort_for_display, tombstone
from ..utils.datetime import MS_PER_DAY, now_ms
from ..utils.logging import sanitize
from ..utils.validation import validate_collection
from .blob_store import RemoteBlobStore
from .conflict_detection import compare_fields
from .conflict_resolution import smart_merge
from .errors import (
    AuthenticationError,
    BlobParseError,
    InvariantViolation,
    SyncError,
    is_retryable,
    user_message,
)
from .fingerprint import collection_fingerprint
from .models import (
    ConflictDecision,
    ConflictInfo,
    DecisionKind,
    ReconcileResult,
    RecordConflict,
    RemoteSnapshot,
    SyncMode,
    SyncResult,
    SyncStatus,
)
from .queue import OfflineQueue
from .retry import RetryHandler
from .settings import SyncSettings


logger = logging.getLogger(__name__)

CommitListener = Callable[[List[TaskRecord]], None]
StatusListener = Callable[[SyncStatus, Optional[str]], None]


def collection_modified(records: Iterable[TaskRecord]) -> Optional[int]:
    """Latest modification instant across a collection."""
    instants = [r.effective_modified() for r in records]
    return max(instants) if instants else None


class SyncOrchestrator:
    """Drives load/save between the UI, the local mirror and the remote copy.

    Public methods never raise for sync failures: they return a value or
    a :class:`SyncResult` and record a short user-visible message in
    ``status_message``.
    """

    def __init__(self, remote_store: RemoteBlobStore, local_store: KeyValueStore,
                 settings: Optional[SyncSettings] = None,
                 clock: Callable[[], int] = now_ms,
                 on_commit: Optional[CommitListener] = None,
                 on_status_change: Optional[StatusListener] = None,
                 retry_handler: Optional[RetryHandler] = None):
        """Initialize the orchestrator.

        Args:
            remote_store: Remote copy of the collection
            local_store: Durable key/value store for the mirror and state
            settings: Debounce, retry and retention settings
            clock: Source of epoch-millisecond instants
            on_commit: Called with the collection whenever the UI should
                display a new committed version
            on_status_change: Called with the new status and message
            retry_handler: Override for timeout/backoff behavior
        """
        self.remote_store = remote_store
        self.local_store = local_store
        self.settings = settings or SyncSettings()
        self.clock = clock
        self.on_commit = on_commit
        self.on_status_change = on_status_change
        self.retry_handler = retry_handler or RetryHandler(
            max_attempts=self.settings.max_attempts,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            timeout=self.settings.network_timeout_seconds,
        )
        self.queue = OfflineQueue()
        self.logger = logging.getLogger(__name__)

        self.mode = self._load_mode()
        self.sync_status = SyncStatus.IDLE
        self.status_message: Optional[str] = None
        self.last_sync_time: Optional[int] = None
        self.deleted_ids: Set[TodoId] = set()
        self.conflict_info: Optional[ConflictInfo] = None
        self.is_online = True

        self._auth_suspended = False
        mirrored = sort_for_display(active_records(load_records(local_store)))
        if self.mode is SyncMode.CLOUD:
            self._committed: List[TaskRecord] = load_records(local_store, LAST_SYNCED_TODOS_KEY)
        else:
            self._committed = mirrored
        self._current: Optional[List[TaskRecord]] = mirrored
        self._last_fingerprint: Optional[str] = local_store.get(LAST_SYNC_FINGERPRINT_KEY)
        self._pending_timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._write_lock = asyncio.Lock()
        self._load_nonce = 0

    # State helpers

    def _load_mode(self) -> SyncMode:
        value = self.local_store.get(STORAGE_MODE_KEY)
        try:
            return SyncMode(value) if value else SyncMode.LOCAL_ONLY
        except ValueError:
            self.logger.warning(f"Unknown storage mode {value!r}; using local-only")
            return SyncMode.LOCAL_ONLY

    def _set_status(self, status: SyncStatus, message: Optional[str] = None) -> None:
        changed = status != self.sync_status or message != self.status_message
        self.sync_status = status
        self.status_message = message
        if not changed:
            return
        self.logger.debug(f"Sync status -> {status.value}" + (f" ({message})" if message else ""))
        if self.on_status_change is not None:
            try:
                self.on_status_change(status, message)
            except Exception:
                self.logger.exception("Status listener failed")

    def _notify_commit(self, records: List[TaskRecord]) -> None:
        if self.on_commit is None:
            return
        try:
            self.on_commit(list(records))
        except Exception:
            self.logger.exception("Commit listener failed")

    def _mirror(self, records: List[TaskRecord]) -> None:
        save_records(self.local_store, records)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _cancel_pending(self) -> None:
        if self._pending_timer is not None:
            self._pending_timer.cancel()
            self._pending_timer = None

    def current_records(self) -> List[TaskRecord]:
        """Live records of the newest local version, sorted for display."""
        records = self._current if self._current is not None else self._committed
        return sort_for_display(active_records(records))

    @property
    def has_pending_save(self) -> bool:
        return self._pending_timer is not None

    def get_status(self) -> Dict[str, object]:
        """Summary of orchestrator state for status displays."""
        return {
            "mode": self.mode.value,
            "status": self.sync_status.value,
            "message": self.status_message,
            "last_sync_time": self.last_sync_time,
            "is_online": self.is_online,
            "pending_save": self.has_pending_save,
            "queued_writes": len(self.queue),
            "deleted_ids": sorted(str(i) for i in self.deleted_ids),
            "has_conflict": self.conflict_info is not None,
            "auth_suspended": self._auth_suspended,
        }

    # Saving

    def save(self, todos: Iterable[TaskRecord], show_user_feedback: bool = False) -> bool:
        """Optimistically accept a new collection and schedule a debounced flush.

        Must be called from a running event loop. Calls within the debounce
        window collapse into one flush of the newest collection.

        Returns:
            False when the collection matches the last committed one
        """
        snapshot = [record.copy() for record in todos]
        self._current = snapshot
        self._mirror(snapshot)

        fingerprint = collection_fingerprint(snapshot)
        if fingerprint == self._last_fingerprint:
            self._cancel_pending()
            self.logger.debug("Collection unchanged since last commit; nothing to save")
            return False

        if self.mode is SyncMode.LOCAL_ONLY:
            self._commit_local(snapshot, fingerprint)
            return True

        if show_user_feedback:
            self._set_status(SyncStatus.SAVING)

        loop = asyncio.get_running_loop()
        self._cancel_pending()
        self._pending_timer = loop.call_later(self.settings.debounce_ms / 1000, self._fire_pending_flush)
        return True

    def _fire_pending_flush(self) -> None:
        self._pending_timer = None
        self._spawn(self._flush())

    async def save_immediately(self, todos: Iterable[TaskRecord]) -> SyncResult:
        """Bypass the debounce, e.g. when the application is closing."""
        self._cancel_pending()
        snapshot = [record.copy() for record in todos]
        self._current = snapshot
        self._mirror(snapshot)
        if self.mode is SyncMode.LOCAL_ONLY:
            self._commit_local(snapshot, collection_fingerprint(snapshot))
            return SyncResult(True, self.sync_status, records=self.current_records()).complete()
        return await self._flush()

    async def retry(self) -> SyncResult:
        """Manual retry after an error: replay the queue or re-flush."""
        if self.queue:
            result = await self.drain_queue()
            if result is not None:
                return result
        return await self._flush()

    async def _flush(self) -> SyncResult:
        async with self._write_lock:
            source = self._current if self._current is not None else self._committed
            return await self._sync_snapshot(list(source))

    async def _sync_snapshot(self, snapshot: List[TaskRecord], attempts: int = 0) -> SyncResult:
        """Reconcile one snapshot with the remote copy and commit it.

        Caller must hold the write lock.
        """
        if self.mode is SyncMode.LOCAL_ONLY:
            self._commit_local(snapshot, collection_fingerprint(snapshot))
            return SyncResult(True, self.sync_status, records=self.current_records()).complete()

        if not self.is_online:
            self.queue.enqueue(snapshot, queued_at=self.clock(), attempts=attempts)
            self._set_status(SyncStatus.OFFLINE, "offline")
            return SyncResult(False, SyncStatus.OFFLINE, message="offline").complete()

        if self._auth_suspended:
            self.queue.enqueue(snapshot, queued_at=self.clock(), attempts=attempts)
            message = user_message(AuthenticationError())
            self._set_status(SyncStatus.ERROR, message)
            return SyncResult(False, SyncStatus.ERROR, message=message).complete()

        deleted_snapshot = set(self.deleted_ids)
        self._set_status(SyncStatus.SAVING)
        try:
            remote = await self.retry_handler.execute_with_retry(self.remote_store.read)
            reconciled = self.reconcile(
                snapshot, remote.records,
                local_modified=collection_modified(snapshot),
                remote_modified=remote.modified,
            )
            if reconciled.has_conflicts:
                return SyncResult(
                    False, SyncStatus.CONFLICT, message=self.status_message,
                    conflicts=list(reconciled.conflict_info.conflicts),
                    summary=reconciled.summary,
                ).complete()

            merged = reconciled.records
            validate_collection(merged)
            merged_fingerprint = collection_fingerprint(merged)

            written = False
            if merged_fingerprint != collection_fingerprint(remote.records):
                await self.retry_handler.execute_with_retry(self.remote_store.write, merged)
                written = True
            else:
                self.logger.debug("Remote copy already matches merged collection; skipping write")

            self._commit(merged, merged_fingerprint, snapshot, deleted_snapshot)
            return SyncResult(
                True, SyncStatus.IDLE, written=written,
                records=self.current_records(), summary=reconciled.summary,
            ).complete()
        except Exception as e:
            return self._handle_failure(e, snapshot, attempts)

    def _handle_failure(self, error: Exception, snapshot: List[TaskRecord], attempts: int) -> SyncResult:
        """Map a failed sync to status, queue and result."""
        message = user_message(error)

        if isinstance(error, AuthenticationError):
            self._auth_suspended = True
            self.queue.enqueue(snapshot, queued_at=self.clock(), attempts=attempts + 1)
            self.logger.warning(f"Authentication failed; cloud writes suspended: {error}")
        elif isinstance(error, BlobParseError):
            self.logger.error(f"Remote copy unreadable; not overwriting it: {error}")
        elif isinstance(error, InvariantViolation):
            self.logger.exception("Invariant violation during sync; aborting this tick")
        elif isinstance(error, SyncError) and is_retryable(error):
            self.queue.enqueue(snapshot, queued_at=self.clock(), attempts=attempts + 1)
            self.logger.error(f"Sync failed after retries; keeping local changes: {error}")
        elif isinstance(error, SyncError):
            self.logger.error(f"Sync failed: {error}")
        else:
            self.logger.exception("Unexpected error during sync")

        self._set_status(SyncStatus.ERROR, message)
        return SyncResult(False, SyncStatus.ERROR, message=message).complete()

    def _set_committed(self, records: List[TaskRecord], fingerprint: str) -> None:
        self._committed = records
        self._last_fingerprint = fingerprint
        self.local_store.set(LAST_SYNC_FINGERPRINT_KEY, fingerprint)
        if self.mode is SyncMode.CLOUD:
            save_records(self.local_store, records, LAST_SYNCED_TODOS_KEY)
        self.last_sync_time = self.clock()

    def _commit_local(self, snapshot: List[TaskRecord], fingerprint: str) -> None:
        """Commit in local-only mode: the mirror is the source of truth."""
        self._set_committed(sort_for_display(active_records(snapshot)), fingerprint)

    def _superseded(self, snapshot: List[TaskRecord]) -> bool:
        """True when the UI saved a different collection after ``snapshot``."""
        current = self._current
        return current is not None and collection_fingerprint(current) != collection_fingerprint(snapshot)

    def _has_unsynced_changes(self) -> bool:
        if self.queue:
            return True
        if self._last_fingerprint is None:
            return bool(self._current)
        return self._current is not None and collection_fingerprint(self._current) != self._last_fingerprint

    def _commit(self, merged: List[TaskRecord], fingerprint: str,
                snapshot: List[TaskRecord], deleted_snapshot: Set[TodoId]) -> None:
        """Record a successful sync and hand the result to the UI."""
        active = sort_for_display(active_records(merged))
        self._set_committed(active, fingerprint)

        # The written collection no longer carries these ids as live records
        self.deleted_ids -= deleted_snapshot
        self.conflict_info = None
        # Queued snapshots predate the one just committed
        self.queue.clear()

        if self._superseded(snapshot):
            self.logger.debug("Newer local changes arrived during sync; leaving them in place")
            if self._pending_timer is None and self.mode is SyncMode.CLOUD:
                self._spawn(self._flush())
        else:
            self._current = active
            self._mirror(active)
            self._notify_commit(active)

        self._set_status(SyncStatus.IDLE)

    # Reconciliation

    def reconcile(self, local: List[TaskRecord], remote: List[TaskRecord],
                  local_modified: Optional[int] = None,
                  remote_modified: Optional[int] = None) -> ReconcileResult:
        """Merge a local snapshot with the remote collection.

        Tombstones are applied first: remote records deleted here are
        dropped and replaced by tombstones, and records deleted elsewhere
        are removed locally. Live records then go through conflict
        detection and automatic resolution. Leftover conflicts are
        promoted to ``conflict_info`` and nothing is committed.
        """
        now = self.clock()
        deleted_ids = set(self.deleted_ids)

        tombstones: Dict[TodoId, TaskRecord] = {r.id: r for r in local if r.deleted}
        tombstones.update({r.id: r for r in remote if r.deleted})

        base = {r.id: r for r in self._committed}
        local_ids = {r.id for r in local}

        live_remote = []
        for record in remote:
            if record.deleted:
                continue
            if record.id in deleted_ids:
                tombstones[record.id] = tombstone(record, now)
                continue
            ancestor = base.get(record.id)
            if ancestor is not None and record.id not in local_ids and not compare_fields(record, ancestor):
                # Synced before, removed here since, untouched remotely
                self.logger.debug(f"Record {record.id!r} was deleted locally since the last sync")
                tombstones[record.id] = tombstone(record, now)
                continue
            live_remote.append(record)

        live_local = []
        for record in local:
            if record.deleted:
                continue
            if record.id in deleted_ids:
                tombstones.setdefault(record.id, tombstone(record, now))
                continue
            if record.id in tombstones:
                self.logger.info(f"Record {record.id!r} was deleted on another device")
                continue
            live_local.append(record)

        live_local, live_remote = self._apply_base(live_local, live_remote)
        outcome = smart_merge(live_local, live_remote, self.settings.resolution_strategy)
        kept_tombstones = self._collect_tombstones(tombstones.values(), now)

        if outcome.has_conflicts:
            unresolved_ids = {c.id for c in outcome.unresolved}
            merged = [r for r in outcome.records if r.id not in unresolved_ids]
            info = ConflictInfo(
                conflicts=list(outcome.unresolved),
                local=list(local),
                remote=list(remote),
                local_modified=local_modified,
                remote_modified=remote_modified,
                timestamp=now,
                merged=merged + kept_tombstones,
            )
            self.conflict_info = info
            count = len(info.conflicts)
            self._set_status(SyncStatus.CONFLICT, f"{count} conflict{'s' if count != 1 else ''} to review")
            self.logger.info(
                "Conflicts need user input",
                extra={"context": sanitize({"ids": list(unresolved_ids), **outcome.summary})},
            )
            return ReconcileResult(conflict_info=info, summary=outcome.summary)

        return ReconcileResult(records=outcome.records + kept_tombstones, summary=outcome.summary)

    def _apply_base(self, local: List[TaskRecord], remote: List[TaskRecord]):
        """Take one-sided edits against the last synced collection.

        A record left untouched on one side since the last sync adopts the
        other side's version, so only records edited on both sides reach
        conflict detection.
        """
        base = {r.id: r for r in self._committed}
        if not base:
            return local, remote

        local_by_id = {r.id: r for r in local}
        remote_by_id = {r.id: r for r in remote}

        adopted_local = []
        for record in local:
            ancestor = base.get(record.id)
            other = remote_by_id.get(record.id)
            if (ancestor is not None and other is not None
                    and not compare_fields(record, ancestor) and compare_fields(other, ancestor)):
                record = other
            adopted_local.append(record)

        adopted_remote = []
        for record in remote:
            ancestor = base.get(record.id)
            other = local_by_id.get(record.id)
            if (ancestor is not None and other is not None
                    and not compare_fields(record, ancestor) and compare_fields(other, ancestor)):
                record = other
            adopted_remote.append(record)

        return adopted_local, adopted_remote

    def _collect_tombstones(self, tombstones: Iterable[TaskRecord], now: int) -> List[TaskRecord]:
        """Drop tombstones older than the retention period."""
        cutoff = now - self.settings.tombstone_retention_days * MS_PER_DAY
        kept = []
        for record in tombstones:
            deleted_at = record.deleted_at or record.last_modified or 0
            if deleted_at >= cutoff:
                kept.append(record)
            else:
                self.logger.debug(f"Garbage-collecting tombstone for {record.id!r}")
        return kept

    async def resolve_conflict(self, decision: ConflictDecision) -> SyncResult:
        """Apply the user's decision to the pending conflicts and commit."""
        info = self.conflict_info
        if info is None:
            return SyncResult(False, self.sync_status, message="no conflict to resolve").complete()

        now = self.clock()
        chosen = [self._apply_decision(conflict, decision, now) for conflict in info.conflicts]
        final = list(info.merged) + chosen
        self.conflict_info = None
        self.logger.info(f"Resolved {len(chosen)} conflicts with {decision.kind.value}")

        async with self._write_lock:
            return await self._write_resolved(final, list(info.local))

    def _apply_decision(self, conflict: RecordConflict, decision: ConflictDecision, now: int) -> TaskRecord:
        if decision.kind is DecisionKind.KEEP_LOCAL:
            return conflict.local.copy(last_modified=now)
        if decision.kind is DecisionKind.KEEP_REMOTE:
            return conflict.remote.copy(last_modified=now)

        changes = {}
        for field_name, side in decision.choices.get(conflict.id, {}).items():
            if field_name not in PARTICIPATING_FIELDS:
                self.logger.warning(f"Ignoring choice for unknown field {field_name!r}")
                continue
            if side == "remote":
                changes[field_name] = getattr(conflict.remote, field_name)
        return conflict.local.copy(last_modified=now, **changes)

    async def _write_resolved(self, final: List[TaskRecord], reference: List[TaskRecord]) -> SyncResult:
        """Write a user-resolved collection as-is. Caller holds the lock.

        ``reference`` is the local snapshot the conflict was detected on;
        saves made since then stay in place and are flushed afterwards.
        """
        active = [r.copy() for r in active_records(final)]
        if not self.is_online:
            if not self._superseded(reference):
                self._current = active
                self._mirror(active)
                self._notify_commit(sort_for_display(active))
            return await self._sync_snapshot(active)

        deleted_snapshot = set(self.deleted_ids)
        self._set_status(SyncStatus.SAVING)
        try:
            validate_collection(final)
            await self.retry_handler.execute_with_retry(self.remote_store.write, final)
            self._commit(final, collection_fingerprint(final), reference, deleted_snapshot)
            return SyncResult(True, SyncStatus.IDLE, written=True, records=self.current_records()).complete()
        except Exception as e:
            if not self._superseded(reference):
                self._current = active
                self._mirror(active)
            return self._handle_failure(e, active, 0)

    # Loading

    async def load(self) -> Optional[List[TaskRecord]]:
        """Fetch the collection.

        In cloud mode this reads the remote copy. A response overtaken by a
        later load is discarded and None is returned; so are failures,
        which are reported through the status instead.
        """
        if self.mode is SyncMode.LOCAL_ONLY or not self.is_online:
            if not self.is_online:
                self._set_status(SyncStatus.OFFLINE, "offline")
            return sort_for_display(active_records(load_records(self.local_store)))

        self._load_nonce += 1
        nonce = self._load_nonce
        self._set_status(SyncStatus.LOADING)

        try:
            remote = await self.retry_handler.execute_with_retry(self.remote_store.read)
        except Exception as e:
            if nonce != self._load_nonce:
                return None
            if isinstance(e, AuthenticationError):
                self._auth_suspended = True
            if isinstance(e, SyncError):
                self.logger.error(f"Load failed: {e}")
            else:
                self.logger.exception("Unexpected error during load")
            self._set_status(SyncStatus.ERROR, user_message(e))
            return None

        if nonce != self._load_nonce:
            self.logger.debug(f"Discarding superseded load response (nonce {nonce})")
            return None

        records = sort_for_display(active_records(remote.records))
        if self._pending_timer is None and self._has_unsynced_changes():
            return self._merge_loaded(remote)

        self._set_committed(records, collection_fingerprint(records))
        if self._pending_timer is None:
            self._current = records
            self._mirror(records)
        self._set_status(SyncStatus.IDLE)
        return list(records)

    def _merge_loaded(self, remote: RemoteSnapshot) -> List[TaskRecord]:
        """Fold a loaded remote copy into local changes that never reached it.

        The merge replaces any queued snapshot; it is written by the next
        retry or reconnect.
        """
        local = list(self._current if self._current is not None else self._committed)
        reconciled = self.reconcile(
            local, remote.records,
            local_modified=collection_modified(local),
            remote_modified=remote.modified,
        )
        if reconciled.has_conflicts:
            return self.current_records()

        records = sort_for_display(active_records(remote.records))
        self._set_committed(records, collection_fingerprint(records))
        merged = sort_for_display(active_records(reconciled.records))
        self._current = merged
        self._mirror(merged)
        self._notify_commit(merged)
        if self.queue:
            self.queue.enqueue(reconciled.records, queued_at=self.clock())
        self.logger.info("Kept unsynced local changes on top of the loaded collection")
        self._set_status(SyncStatus.IDLE)
        return list(merged)

    # Optimistic state and tombstones

    def rollback_optimistic_changes(self) -> List[TaskRecord]:
        """Revert to the last successfully committed collection."""
        self._cancel_pending()
        restored = [record.copy() for record in self._committed]
        self._current = restored
        self._mirror(restored)
        self._notify_commit(restored)
        if self.sync_status in (SyncStatus.SAVING, SyncStatus.ERROR):
            self._set_status(SyncStatus.IDLE)
        self.logger.info(f"Rolled back to last committed collection ({len(restored)} records)")
        return restored

    def mark_as_deleted(self, todo_id: TodoId) -> None:
        """Track a local deletion so reconciliation does not resurrect it."""
        if self.mode is not SyncMode.CLOUD:
            return
        self.deleted_ids.add(todo_id)
        self.logger.debug(f"Tracking deletion of {todo_id!r}")

    def clear_deleted_tracking(self) -> None:
        self.deleted_ids.clear()

    # Mode, connectivity, authentication

    def set_mode(self, mode: SyncMode) -> None:
        """Switch storage mode and persist the choice."""
        self.mode = mode
        self.local_store.set(STORAGE_MODE_KEY, mode.value)
        if mode is SyncMode.LOCAL_ONLY:
            self._cancel_pending()
            self.queue.clear()
            self.conflict_info = None
            self._set_status(SyncStatus.IDLE)
        self.logger.info(f"Storage mode set to {mode.value}")

    async def migrate(self, local_records: Optional[Iterable[TaskRecord]] = None) -> SyncResult:
        """Upload the local collection when cloud mode is first enabled.

        Records are merged by id with the remote copy; the remote version
        wins for ids present on both sides.
        """
        records = list(local_records) if local_records is not None else load_records(self.local_store)
        if not self.is_online:
            self._set_status(SyncStatus.OFFLINE, "offline")
            return SyncResult(False, SyncStatus.OFFLINE, message="offline").complete()

        async with self._write_lock:
            deleted_snapshot = set(self.deleted_ids)
            self._set_status(SyncStatus.SAVING)
            try:
                remote = await self.retry_handler.execute_with_retry(self.remote_store.read)
                by_id: Dict[TodoId, TaskRecord] = {r.id: r for r in active_records(records)}
                by_id.update({r.id: r for r in remote.records})
                merged = list(by_id.values())
                validate_collection(merged)
                await self.retry_handler.execute_with_retry(self.remote_store.write, merged)
            except Exception as e:
                return self._handle_failure(e, records, 0)

            self.set_mode(SyncMode.CLOUD)
            self._current = None
            self._commit(merged, collection_fingerprint(merged), merged, deleted_snapshot)
            self.logger.info(f"Migrated {len(records)} local records to cloud ({len(merged)} total)")
            return SyncResult(True, SyncStatus.IDLE, written=True, records=self.current_records()).complete()

    def set_online(self, online: bool) -> Optional[asyncio.Task]:
        """Record a connectivity change; reconnecting drains the queue.

        Returns:
            The drain task when one was started
        """
        was_online = self.is_online
        self.is_online = online
        if not online:
            self._set_status(SyncStatus.OFFLINE, "offline")
            return None

        if self.sync_status is SyncStatus.OFFLINE:
            self._set_status(SyncStatus.IDLE)
        if not was_online and self.queue:
            self.logger.info("Back online; draining queued writes")
            return self._spawn(self.drain_queue())
        return None

    async def drain_queue(self) -> Optional[SyncResult]:
        """Re-reconcile the queued snapshot against the current remote copy."""
        async with self._write_lock:
            entry = self.queue.pop()
            if entry is None:
                return None
            return await self._sync_snapshot(entry.snapshot, attempts=entry.attempts)

    def reauthenticated(self) -> Optional[asyncio.Task]:
        """Lift the write suspension after a successful sign-in."""
        self._auth_suspended = False
        if self.sync_status is SyncStatus.ERROR:
            self._set_status(SyncStatus.IDLE)
        if self.queue:
            return self._spawn(self.drain_queue())
        return None

    # Lifecycle

    async def wait_idle(self, poll_interval: float = 0.005) -> None:
        """Wait until no debounced save or background sync is outstanding."""
        while self._pending_timer is not None or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(poll_interval)

    async def close(self) -> None:
        """Cancel the pending save and any background work."""
        self._cancel_pending()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
