from __future__ import annotations

import errno
import json
import logging
import os
import re
import unicodedata
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Iterable

from schoolcal.errors import ArchiveCorruptError
from schoolcal.models import Archive, ArchiveMetadata, DomainRecord

logger = logging.getLogger(__name__)

BOOKKEEPING_FIELDS = ("last_synced_at", "sync_hash")


def slugify(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", str(value or ""))
    ascii_text = normalized.encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-zA-Z0-9]+", "-", ascii_text).strip("-").lower()


def build_owner_slug(owner_id: str, first_name: str = "", last_name: str = "", class_name: str = "") -> str:
    parts = [slugify(part) for part in (class_name, first_name, last_name)]
    parts = [part for part in parts if part]
    return "_".join(parts) if parts else f"kid-{owner_id or 'unknown'}"


@dataclass(frozen=True)
class ArchiveKey:
    owner_slug: str
    source_kind: str

    def __str__(self) -> str:
        return f"{self.owner_slug}/{self.source_kind}"


def merge_records(existing: Iterable[DomainRecord], incoming: Iterable[DomainRecord]) -> list[DomainRecord]:
    """Merge an incoming batch into existing records keyed by uid.

    Incoming records replace content fields; bookkeeping survives unless the incoming
    record carries its own. Records missing from the batch are kept. The result is
    ordered by (start, uid).
    """
    by_uid: dict[str, DomainRecord] = {}
    for record in existing:
        if not record.uid:
            continue
        by_uid[record.uid] = record.clone()

    for record in incoming:
        if not record.uid:
            continue
        previous = by_uid.get(record.uid)
        merged = record.clone()
        if previous is not None:
            for name in BOOKKEEPING_FIELDS:
                if getattr(merged, name) is None:
                    setattr(merged, name, getattr(previous, name))
        by_uid[record.uid] = merged

    return sorted(by_uid.values(), key=lambda item: item.sort_key)


def merge_archive(
    existing: Archive | None,
    incoming: Iterable[DomainRecord],
    metadata: ArchiveMetadata | None = None,
) -> Archive:
    """Return a new archive holding ``existing`` merged with ``incoming``.

    ``metadata`` replaces the stored metadata when given; auxiliary maps from the
    stored archive are kept for keys the new metadata does not set.
    """
    base_entries = existing.entries if existing is not None else []
    if metadata is None:
        if existing is not None:
            merged_metadata = replace(existing.metadata, auxiliary=dict(existing.metadata.auxiliary))
        else:
            merged_metadata = ArchiveMetadata(source_kind="")
    else:
        auxiliary: dict[str, Any] = dict(existing.metadata.auxiliary) if existing is not None else {}
        auxiliary.update(metadata.auxiliary)
        merged_metadata = replace(metadata, auxiliary=auxiliary)
    return Archive(metadata=merged_metadata, entries=merge_records(base_entries, incoming))


def dump_archive(archive: Archive) -> str:
    return json.dumps(archive.to_dict(), indent=2, ensure_ascii=False) + "\n"


class ArchiveStore:
    """One JSON file per (owner, source kind) below ``root_dir``."""

    def __init__(self, root_dir: str | os.PathLike[str]) -> None:
        self.root_dir = Path(root_dir)

    def path_for(self, key: ArchiveKey) -> Path:
        return self.root_dir / key.owner_slug / f"{key.source_kind}.json"

    def read(self, key: ArchiveKey) -> Archive | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            if not isinstance(data, dict):
                raise ValueError("archive root must be an object")
            return Archive.from_dict(data)
        except (ValueError, TypeError, KeyError) as exc:
            raise ArchiveCorruptError(f"{path}: {exc}") from exc

    def load(self, key: ArchiveKey) -> Archive | None:
        try:
            return self.read(key)
        except ArchiveCorruptError as exc:
            logger.warning("Ignoring unreadable archive %s: %s", key, exc)
            return None

    def save(self, key: ArchiveKey, archive: Archive) -> Path:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        content = dump_archive(archive)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        try:
            tmp_path.replace(path)
        except OSError as exc:
            # Some bind-mounted single files in containers cannot be atomically replaced.
            if exc.errno != errno.EBUSY:
                raise
            with path.open("w", encoding="utf-8") as handle:
                handle.write(content)
            if tmp_path.exists():
                tmp_path.unlink()
        return path

    def list_keys(self) -> list[ArchiveKey]:
        if not self.root_dir.exists():
            return []
        keys: list[ArchiveKey] = []
        for owner_dir in sorted(p for p in self.root_dir.iterdir() if p.is_dir()):
            for file_path in sorted(owner_dir.glob("*.json")):
                keys.append(ArchiveKey(owner_slug=owner_dir.name, source_kind=file_path.stem))
        return keys
