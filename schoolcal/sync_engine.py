from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Protocol

from schoolcal.archive_store import ArchiveKey, ArchiveStore
from schoolcal.caldav_client import CalDAVPushClient, PushResult, build_resource_url, remote_uid
from schoolcal.config_manager import ConfigManager
from schoolcal.errors import ArchiveCorruptError, ConfigurationError, SourceError
from schoolcal.exporter import export_archive, owner_key
from schoolcal.fingerprint import compute_sync_hash, effective_reminders
from schoolcal.ics_encoder import encode_record
from schoolcal.models import (
    AccountConfig,
    AppConfig,
    Archive,
    CalendarTargetConfig,
    KidConfig,
    OrganizerConfig,
    SyncCounts,
    SyncResult,
    utc_now,
)
from schoolcal.source import JsonFeedExtractor, SourceExtractor, extract_with_retry
from schoolcal.state_store import StateStore

logger = logging.getLogger(__name__)

SUMMARY_LABEL_SEPARATOR = ": "


class PushClient(Protocol):
    def push(self, resource_url: str, uid: str, payload: str, etag: str | None = None) -> PushResult:
        ...


Encoder = Callable[..., str]


@dataclass
class SyncOptions:
    owner_label: str = ""
    organizer: OrganizerConfig | None = None
    reminder_minutes: int | None = None
    calendar_name: str = ""


@dataclass
class RecordFailure:
    uid: str
    reason: str
    status_code: int | None = None
    body: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"uid": self.uid, "reason": self.reason, "status_code": self.status_code, "body": self.body}


@dataclass
class ArchiveSyncOutcome:
    archive: Archive
    counts: SyncCounts
    pushed_uids: list[str] = field(default_factory=list)
    failures: list[RecordFailure] = field(default_factory=list)


def decorate_summary(summary: str, owner_label: str) -> str:
    if not owner_label or not summary:
        return summary
    prefix = f"{owner_label}{SUMMARY_LABEL_SEPARATOR}"
    if summary.startswith(prefix):
        return summary
    return f"{prefix}{summary}"


def sync_archive(
    archive: Archive,
    target: CalendarTargetConfig,
    options: SyncOptions,
    push_client: PushClient,
    *,
    encoder: Encoder = encode_record,
    clock: Callable[[], datetime] = utc_now,
    checkpoint: Callable[[Archive], None] | None = None,
) -> ArchiveSyncOutcome:
    """Push every changed record of ``archive`` and return the updated archive.

    The input archive is not modified. Records whose fingerprint matches their stored
    ``sync_hash`` are skipped; a failed record keeps its previous bookkeeping and the
    loop moves on. ``checkpoint`` receives the archive after each successful push.
    """
    entries = list(archive.entries)
    counts = SyncCounts()
    pushed_uids: list[str] = []
    failures: list[RecordFailure] = []

    for index, record in enumerate(entries):
        if not record.uid:
            logger.warning("Skipping record without uid: %s", record.summary)
            counts.skipped += 1
            continue

        decorated = record.with_updates(summary=decorate_summary(record.summary, options.owner_label))
        reminders = effective_reminders(record, options.reminder_minutes)
        incoming_hash = compute_sync_hash(decorated, reminders)
        if record.sync_hash == incoming_hash:
            counts.skipped += 1
            continue

        now = clock()
        wire_uid = remote_uid(record.uid, target.uid_prefix)
        url = build_resource_url(target.base_url, record.uid, target.uid_prefix)
        try:
            payload = encoder(
                decorated,
                options.organizer,
                reminders,
                calendar_name=options.calendar_name,
                uid=wire_uid,
                stamp=now,
            )
            result = push_client.push(url, wire_uid, payload)
        except Exception as exc:
            logger.exception("Push of %s raised", record.uid)
            counts.failed += 1
            failures.append(RecordFailure(uid=record.uid, reason=f"{type(exc).__name__}: {exc}"))
            continue

        if not result.ok:
            logger.warning("Push of %s failed: %s %s", record.uid, result.reason, result.body)
            counts.failed += 1
            failures.append(
                RecordFailure(
                    uid=record.uid,
                    reason=result.reason,
                    status_code=result.status_code,
                    body=result.body,
                )
            )
            continue

        entries[index] = record.with_updates(last_synced_at=now, sync_hash=incoming_hash)
        counts.pushed += 1
        pushed_uids.append(record.uid)
        logger.info("Pushed %s", wire_uid)
        if checkpoint is not None:
            checkpoint(archive.with_entries(entries))

    return ArchiveSyncOutcome(
        archive=archive.with_entries(entries),
        counts=counts,
        pushed_uids=pushed_uids,
        failures=failures,
    )


ExtractorFactory = Callable[[AccountConfig, str, AppConfig], SourceExtractor]
PushClientFactory = Callable[[CalendarTargetConfig], PushClient]


def _default_extractor_factory(account: AccountConfig, kind: str, config: AppConfig) -> SourceExtractor:
    return JsonFeedExtractor(account, kind, timeout=config.calendar.timeout_seconds)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        extractor_factory: ExtractorFactory | None = None,
        push_client_factory: PushClientFactory | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.extractor_factory = extractor_factory or _default_extractor_factory
        self.push_client_factory = push_client_factory or CalDAVPushClient
        self.sleep = sleep
        self._run_lock = threading.Lock()

    def _options_for(self, config: AppConfig, kid: KidConfig) -> SyncOptions:
        return SyncOptions(
            owner_label=kid.label if config.sync.owner_label_in_summary else "",
            organizer=config.organizer if config.organizer.email else None,
            reminder_minutes=config.sync.reminder_minutes,
            calendar_name=config.calendar.calendar_name,
        )

    def _load_existing(self, store: ArchiveStore, key: ArchiveKey, run_id: int) -> Archive | None:
        try:
            return store.read(key)
        except ArchiveCorruptError as exc:
            logger.warning("Archive %s unreadable, rebuilding from source: %s", key, exc)
            self.state_store.record_audit_event(
                run_id=run_id,
                archive_key=str(key),
                uid="archive",
                action="archive_corrupt",
                details={"error": str(exc)},
            )
            return None

    def _harvest(
        self,
        *,
        config: AppConfig,
        store: ArchiveStore,
        account: AccountConfig,
        kid: KidConfig,
        kind: str,
        existing: Archive | None,
        run_id: int,
    ) -> tuple[Archive | None, str]:
        key = owner_key(kid, kind)
        extractor = self.extractor_factory(account, kind, config)
        try:
            batch = extract_with_retry(
                extractor,
                kid.id,
                attempts=config.sync.extract_retries,
                sleep=self.sleep,
            )
        except SourceError as exc:
            logger.error("Extraction failed for %s: %s", key, exc)
            self.state_store.record_audit_event(
                run_id=run_id,
                archive_key=str(key),
                uid="source",
                action="extract_failed",
                details={"error": str(exc), "error_type": type(exc).__name__},
            )
            return existing, f"extract failed: {exc}"
        outcome = export_archive(store, account, kid, batch, existing=existing, tz_name=config.sync.timezone)
        self.state_store.record_audit_event(
            run_id=run_id,
            archive_key=str(key),
            uid="archive",
            action="archive_saved",
            details={"extracted": outcome.extracted, "stored": len(outcome.archive.entries)},
        )
        return outcome.archive, ""

    def sync_stored_archive(
        self,
        *,
        config: AppConfig,
        store: ArchiveStore,
        key: ArchiveKey,
        archive: Archive,
        kid: KidConfig,
        push_client: PushClient,
        run_id: int,
    ) -> ArchiveSyncOutcome:
        outcome = sync_archive(
            archive,
            config.calendar,
            self._options_for(config, kid),
            push_client,
            checkpoint=lambda partial: store.save(key, partial),
        )
        store.save(key, outcome.archive)

        for uid in outcome.pushed_uids:
            self.state_store.record_audit_event(
                run_id=run_id, archive_key=str(key), uid=uid, action="push", details={}
            )
        for failure in outcome.failures:
            self.state_store.record_audit_event(
                run_id=run_id,
                archive_key=str(key),
                uid=failure.uid,
                action="push_failed",
                details=failure.to_dict(),
            )
        logger.info(
            "Archive %s: %d pushed, %d skipped, %d failed",
            key,
            outcome.counts.pushed,
            outcome.counts.skipped,
            outcome.counts.failed,
        )
        return outcome

    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run_once(self, trigger: str = "manual") -> SyncResult:
        with self._run_lock:
            return self._run_once(trigger)

    def _sync_one(
        self,
        *,
        config: AppConfig,
        store: ArchiveStore,
        account: AccountConfig,
        kid: KidConfig,
        kind: str,
        push_client: PushClient,
        run_id: int,
    ) -> tuple[dict[str, Any], SyncCounts, str]:
        key = owner_key(kid, kind)
        existing = self._load_existing(store, key, run_id)
        archive, harvest_error = self._harvest(
            config=config,
            store=store,
            account=account,
            kid=kid,
            kind=kind,
            existing=existing,
            run_id=run_id,
        )
        summary: dict[str, Any] = {"key": str(key), "error": harvest_error}
        if archive is None:
            summary["counts"] = SyncCounts().to_dict()
            return summary, SyncCounts(), harvest_error
        outcome = self.sync_stored_archive(
            config=config,
            store=store,
            key=key,
            archive=archive,
            kid=kid,
            push_client=push_client,
            run_id=run_id,
        )
        summary["counts"] = outcome.counts.to_dict()
        summary["failures"] = [failure.to_dict() for failure in outcome.failures]
        return summary, outcome.counts, harvest_error

    def _run_once(self, trigger: str) -> SyncResult:
        started_at = utc_now()
        totals = SyncCounts()
        run_id = self.state_store.start_sync_run(trigger=trigger)
        status = "error"
        message = "Sync run aborted"

        def _elapsed_ms() -> int:
            return int((utc_now() - started_at).total_seconds() * 1000)

        try:
            config = self.config_manager.load()
            try:
                config.validate()
                push_client = self.push_client_factory(config.calendar)
            except ConfigurationError as exc:
                message = f"Configuration error: {exc}"
                logger.error(message)
                self.state_store.record_audit_event(
                    run_id=run_id, archive_key="", uid="config", action="config_error", details={"error": str(exc)}
                )
                return SyncResult(
                    status="error", message=message, duration_ms=_elapsed_ms(), counts=totals, trigger=trigger
                )

            store = ArchiveStore(config.storage.archive_dir)
            archives: list[dict[str, Any]] = []
            problems = 0

            for account in config.accounts:
                for kid in account.kids:
                    for kind in account.sources:
                        try:
                            summary, counts, harvest_error = self._sync_one(
                                config=config,
                                store=store,
                                account=account,
                                kid=kid,
                                kind=kind,
                                push_client=push_client,
                                run_id=run_id,
                            )
                        except Exception as exc:
                            # One broken archive must not keep the others from syncing.
                            key = str(owner_key(kid, kind))
                            logger.exception("Archive %s failed", key)
                            self.state_store.record_audit_event(
                                run_id=run_id,
                                archive_key=key,
                                uid="archive",
                                action="archive_failed",
                                details={"error": str(exc), "error_type": type(exc).__name__},
                            )
                            problems += 1
                            archives.append(
                                {
                                    "key": key,
                                    "error": f"{type(exc).__name__}: {exc}",
                                    "counts": SyncCounts().to_dict(),
                                }
                            )
                            continue
                        if harvest_error:
                            problems += 1
                        totals.add(counts)
                        archives.append(summary)

            status = "success" if totals.failed == 0 and problems == 0 else "partial"
            message = (
                f"{totals.pushed} pushed, {totals.skipped} skipped, {totals.failed} failed "
                f"across {len(archives)} archives"
            )
            if problems:
                message += f"; {problems} archive problems"
            logger.info("Sync run %s (%s): %s", run_id, trigger, message)
            return SyncResult(
                status=status,
                message=message,
                duration_ms=_elapsed_ms(),
                counts=totals,
                trigger=trigger,
                archives=archives,
            )
        finally:
            self.state_store.finish_sync_run(
                run_id=run_id, status=status, message=message, duration_ms=_elapsed_ms(), counts=totals
            )
