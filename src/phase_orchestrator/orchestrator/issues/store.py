"""Issue records with dedup-on-write and local persistence.

Requirements:
- at most one open issue per fingerprint, whatever produced the fingerprint
- repeat reports append evidence to the existing open issue
- sequence numbers are allocated once per issue and never reused
- resolving is idempotent
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def compute_fingerprint(description: str) -> str:
    """Derive a short stable fingerprint from a free-form defect description.

    Case and whitespace are treated as cosmetic so that the same defect described
    twice by a worker maps to the same issue.
    """

    normalized = _WHITESPACE.sub(" ", description.casefold()).strip()
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    return digest[:12]


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


class IssueStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class SourceRef(BaseModel):
    """Where an issue (or one piece of its evidence) was observed."""

    run_id: str
    phase: str
    task_id: str | None = None


class IssueRecord(BaseModel):
    """Persisted representation of a discovered defect."""

    fingerprint: str
    sequence_number: int
    key: str
    status: IssueStatus = Field(default=IssueStatus.OPEN)
    created_at: str
    updated_at: str
    resolved_at: str | None = Field(default=None)

    evidence: list[dict[str, object]] = Field(default_factory=list)
    # First observation; later observations are appended to `sightings`.
    source_ref: SourceRef
    sightings: list[SourceRef] = Field(default_factory=list)


class _IssueDocument(BaseModel):
    next_sequence: int = 1
    open: list[IssueRecord] = Field(default_factory=list)
    resolved: list[IssueRecord] = Field(default_factory=list)


class IssueStore:
    """JSON-file backed issue store (in-memory when `path` is None).

    Every public operation holds one lock across its read-modify-write cycle,
    so concurrent reports of the same fingerprint cannot both create an issue.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        key_prefix: str = "ISSUE",
        number_width: int = 3,
    ) -> None:
        self._path = path
        self._key_prefix = key_prefix
        self._number_width = number_width
        self._lock = threading.Lock()
        self._memory = _IssueDocument()

    @property
    def path(self) -> Path | None:
        return self._path

    def _load_unlocked(self) -> _IssueDocument:
        if self._path is None:
            return self._memory
        if not self._path.exists():
            return _IssueDocument()

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            # Refuse to continue: silently starting over would reuse sequence numbers.
            logger.error("Issue state file is not valid JSON", extra={"path": str(self._path)})
            raise

        if raw is None:
            return _IssueDocument()
        return _IssueDocument.model_validate(raw)

    def _save_unlocked(self, doc: _IssueDocument) -> None:
        if self._path is None:
            self._memory = doc
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(
            json.dumps(doc.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
        tmp.replace(self._path)

    def _format_key(self, sequence_number: int) -> str:
        return f"{self._key_prefix}-{sequence_number:0{self._number_width}d}"

    def report(
        self,
        fingerprint: str,
        evidence: dict[str, object],
        source_ref: SourceRef,
    ) -> IssueRecord:
        """Record an observation of `fingerprint`.

        Appends to the open issue with this fingerprint if there is one, otherwise
        opens a new issue with the next sequence number.
        """

        fingerprint = fingerprint.strip()
        if not fingerprint:
            raise ValueError("fingerprint must be a non-empty string")

        with self._lock:
            doc = self._load_unlocked()
            now = _utc_iso_now()

            for idx, existing in enumerate(doc.open):
                if existing.fingerprint != fingerprint:
                    continue
                updated = existing.model_copy(
                    update={
                        "evidence": [*existing.evidence, dict(evidence)],
                        "sightings": [*existing.sightings, source_ref],
                        "updated_at": now,
                    }
                )
                doc.open[idx] = updated
                self._save_unlocked(doc)
                logger.info(
                    "Issue evidence appended",
                    extra={
                        "issue_key": updated.key,
                        "fingerprint": fingerprint,
                        "evidence_count": len(updated.evidence),
                    },
                )
                return updated

            sequence_number = doc.next_sequence
            record = IssueRecord(
                fingerprint=fingerprint,
                sequence_number=sequence_number,
                key=self._format_key(sequence_number),
                created_at=now,
                updated_at=now,
                evidence=[dict(evidence)],
                source_ref=source_ref,
                sightings=[source_ref],
            )
            doc.next_sequence = sequence_number + 1
            doc.open.append(record)
            self._save_unlocked(doc)

        logger.info(
            "Issue created",
            extra={
                "issue_key": record.key,
                "fingerprint": fingerprint,
                "run_id": source_ref.run_id,
                "phase": source_ref.phase,
            },
        )
        return record

    def resolve(self, fingerprint: str) -> bool:
        """Mark the open issue with `fingerprint` resolved.

        Returns:
            False if there was no such open issue (nothing changes).
        """

        fingerprint = fingerprint.strip()
        with self._lock:
            doc = self._load_unlocked()
            for idx, existing in enumerate(doc.open):
                if existing.fingerprint != fingerprint:
                    continue
                now = _utc_iso_now()
                resolved = existing.model_copy(
                    update={"status": IssueStatus.RESOLVED, "resolved_at": now, "updated_at": now}
                )
                del doc.open[idx]
                doc.resolved.append(resolved)
                self._save_unlocked(doc)
                break
            else:
                return False

        logger.info("Issue resolved", extra={"issue_key": resolved.key, "fingerprint": fingerprint})
        return True

    def list_open(self) -> list[IssueRecord]:
        with self._lock:
            return list(self._load_unlocked().open)

    def list_resolved(self) -> list[IssueRecord]:
        with self._lock:
            return list(self._load_unlocked().resolved)

    def find_open(self, fingerprint: str) -> IssueRecord | None:
        fingerprint = fingerprint.strip()
        for issue in self.list_open():
            if issue.fingerprint == fingerprint:
                return issue
        return None

    def find_by_key(self, key: str) -> IssueRecord | None:
        """Look up an issue (open or resolved) by its external identifier."""

        normalized = key.strip().upper()
        with self._lock:
            doc = self._load_unlocked()
            for issue in [*doc.open, *doc.resolved]:
                if issue.key.upper() == normalized:
                    return issue
        return None
