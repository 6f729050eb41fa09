# === NAVMAP v1 ===
# {
#   "module": "CertLedger.AnchorMigration.source",
#   "purpose": "Read-only cursor access to completion records in the source store",
#   "sections": [
#     {"id": "page", "name": "Page", "anchor": "class-page", "kind": "dataclass"},
#     {"id": "sourcestore", "name": "SourceStore", "anchor": "class-sourcestore", "kind": "protocol"},
#     {"id": "record-from-mapping", "name": "record_from_mapping", "anchor": "function-record-from-mapping", "kind": "function"},
#     {"id": "sqlitesourcestore", "name": "SqliteSourceStore", "anchor": "class-sqlitesourcestore", "kind": "class"},
#     {"id": "httpsourcestore", "name": "HttpSourceStore", "anchor": "class-httpsourcestore", "kind": "class"},
#     {"id": "sourcerecordreader", "name": "SourceRecordReader", "anchor": "class-sourcerecordreader", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Read-only cursor access to completion records in the source store.

Two backends implement :class:`SourceStore`:

- :class:`SqliteSourceStore` reads an exported ``certificates`` table with
  keyset pagination on ``(completed_at, id)``.
- :class:`HttpSourceStore` follows ``next_cursor`` links of a REST export
  endpoint.

:class:`SourceRecordReader` turns either into a lazy, ascending iterator of
:class:`SourceRecord`. Any failure to reach the store surfaces as
:class:`SourceUnavailable`, which is fatal for the run.
"""

from __future__ import annotations

import base64
import json
import logging
import math
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Protocol, Sequence

import httpx

from CertLedger.AnchorMigration.errors import SourceUnavailable
from CertLedger.AnchorMigration.models import ProgressStats, SourceFilter, SourceRecord
from CertLedger.AnchorMigration.retry import OperationType, create_retry_policy

LOGGER = logging.getLogger(__name__)

__all__ = [
    "Page",
    "SourceStore",
    "SqliteSourceStore",
    "HttpSourceStore",
    "SourceRecordReader",
    "record_from_mapping",
    "CERTIFICATES_SCHEMA",
]

CERTIFICATES_SCHEMA = """
CREATE TABLE IF NOT EXISTS certificates (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    user_name TEXT,
    course_id TEXT,
    course_name TEXT,
    completed_at TEXT,
    certificate_url TEXT,
    completed_modules TEXT,
    total_score REAL
)
"""


@dataclass(frozen=True)
class Page:
    """One page of records plus the cursor for the next page."""

    records: Sequence[SourceRecord]
    next_cursor: Optional[str] = None


class SourceStore(Protocol):
    """Cursor-paginated read access to the source of truth."""

    def list_records(
        self, source_filter: SourceFilter, *, cursor: Optional[str], page_size: int
    ) -> Page:
        ...


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            LOGGER.debug(f"Unparseable completion timestamp: {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


def _parse_progress(data: Mapping[str, Any], record_id: Any) -> ProgressStats:
    """Read progress fields; malformed values yield a NaN score the packager rejects."""

    progress = _pick(data, "progress", "progress_stats") or {}
    if not isinstance(progress, Mapping):
        LOGGER.warning(f"Record {record_id}: progress is not a mapping: {progress!r}")
        return ProgressStats(total_score=math.nan)
    modules = _pick(progress, "completedModules", "completed_modules")
    if modules is None:
        modules = _pick(data, "completed_modules")
    if isinstance(modules, str):
        try:
            modules = json.loads(modules)
        except json.JSONDecodeError:
            modules = [m for m in modules.split(",") if m]
    if modules is not None and not isinstance(modules, (list, tuple)):
        LOGGER.warning(f"Record {record_id}: completed modules is not a list: {modules!r}")
        return ProgressStats(total_score=math.nan)
    score = _pick(progress, "totalScore", "total_score")
    if score is None:
        score = _pick(data, "total_score")
    try:
        total_score = float(score or 0.0)
    except (TypeError, ValueError):
        LOGGER.warning(f"Record {record_id}: non-numeric total score {score!r}")
        total_score = math.nan
    return ProgressStats(
        completed_modules=tuple(str(m) for m in (modules or ())),
        total_score=total_score,
    )


def record_from_mapping(data: Mapping[str, Any]) -> SourceRecord:
    """Build a :class:`SourceRecord` from a row or JSON document.

    Accepts both the snake_case column names of the SQLite export and the
    camelCase document fields of the HTTP export. Missing or malformed values
    never raise here; they are kept empty (or a NaN score) so the packager
    reports that one record as invalid.
    """

    record_id = _pick(data, "id")
    return SourceRecord(
        id=_as_text(record_id),
        subject_id=_as_text(_pick(data, "subject_id", "userId", "user_id")),
        course_id=_as_text(_pick(data, "course_id", "courseId")),
        course_name=_as_text(_pick(data, "course_name", "courseName")),
        completion_date=_parse_timestamp(
            _pick(data, "completion_date", "completedAt", "completed_at")
        ),
        proof_url=_pick(data, "proof_url", "certificateUrl", "certificate_url"),
        progress_stats=_parse_progress(data, record_id),
        subject_name=_pick(data, "subject_name", "userName", "user_name"),
    )


def _encode_cursor(completed_at: str, record_id: str) -> str:
    raw = json.dumps([completed_at, record_id], separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _decode_cursor(cursor: str) -> tuple[str, str]:
    try:
        completed_at, record_id = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
    except (ValueError, TypeError) as exc:
        raise SourceUnavailable(f"Invalid source cursor: {cursor!r}") from exc
    return str(completed_at), str(record_id)


class SqliteSourceStore:
    """Keyset-paginated reader over an exported ``certificates`` table.

    The database is opened read-only; a missing file is reported as
    :class:`SourceUnavailable` rather than silently creating an empty store.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(f"file:{self.path}?mode=ro", uri=True)
        except sqlite3.Error as exc:
            raise SourceUnavailable(f"Cannot open source store {self.path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    def list_records(
        self, source_filter: SourceFilter, *, cursor: Optional[str], page_size: int
    ) -> Page:
        clauses = ["completed_at IS NOT NULL"]
        params: list[Any] = []
        if source_filter.from_date is not None:
            clauses.append("completed_at >= ?")
            params.append(source_filter.from_date.isoformat())
        if source_filter.course_ids:
            placeholders = ",".join("?" for _ in source_filter.course_ids)
            clauses.append(f"course_id IN ({placeholders})")
            params.extend(source_filter.course_ids)
        if cursor:
            last_completed_at, last_id = _decode_cursor(cursor)
            clauses.append("(completed_at > ? OR (completed_at = ? AND id > ?))")
            params.extend([last_completed_at, last_completed_at, last_id])

        sql = (
            "SELECT * FROM certificates WHERE "
            + " AND ".join(clauses)
            + " ORDER BY completed_at ASC, id ASC LIMIT ?"
        )
        params.append(page_size + 1)

        conn = self._connect()
        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise SourceUnavailable(f"Source query failed on {self.path}: {exc}") from exc
        finally:
            conn.close()

        has_more = len(rows) > page_size
        rows = rows[:page_size]
        records = [record_from_mapping(dict(row)) for row in rows]
        next_cursor = None
        if has_more and rows:
            last = rows[-1]
            next_cursor = _encode_cursor(last["completed_at"], last["id"])
        return Page(records=records, next_cursor=next_cursor)


class HttpSourceStore:
    """Cursor-paginated reader over the marketplace's certificate export API."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout_s: float = 30.0,
        client: Optional[httpx.Client] = None,
        max_attempts: int = 3,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout_s)
        self._client.headers.update(headers)
        self._max_attempts = max_attempts

    def close(self) -> None:
        self._client.close()

    def _get_page(self, params: Mapping[str, Any]) -> httpx.Response:
        policy = create_retry_policy(OperationType.READ, max_attempts=self._max_attempts)
        for attempt in policy:
            with attempt:
                response = self._client.get("/certificates", params=params)
                response.raise_for_status()
        return response

    def list_records(
        self, source_filter: SourceFilter, *, cursor: Optional[str], page_size: int
    ) -> Page:
        params: dict[str, Any] = {"order_by": "completedAt", "page_size": page_size}
        if cursor:
            params["cursor"] = cursor
        if source_filter.from_date is not None:
            params["from_date"] = source_filter.from_date.isoformat()
        if source_filter.course_ids:
            params["course_ids"] = ",".join(source_filter.course_ids)

        try:
            response = self._get_page(params)
            payload = response.json()
        except httpx.HTTPError as exc:
            raise SourceUnavailable(f"Source API request failed: {exc}") from exc
        except ValueError as exc:
            raise SourceUnavailable(f"Source API returned invalid JSON: {exc}") from exc

        documents = payload.get("records")
        if not isinstance(documents, list):
            raise SourceUnavailable("Source API response is missing a 'records' list")
        return Page(
            records=[record_from_mapping(doc) for doc in documents],
            next_cursor=payload.get("next_cursor") or None,
        )


class SourceRecordReader:
    """Lazy, ascending iteration over eligible source records."""

    def __init__(self, store: SourceStore, *, page_size: int = 100) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.store = store
        self.page_size = page_size

    def fetch_eligible(self, source_filter: SourceFilter) -> Iterator[SourceRecord]:
        """Yield eligible records ascending by completion date.

        Raises:
            SourceUnavailable: If the store cannot be reached or breaks ordering
        """

        cursor: Optional[str] = None
        previous: Optional[datetime] = None
        pages = 0
        while True:
            page = self.store.list_records(source_filter, cursor=cursor, page_size=self.page_size)
            pages += 1
            for record in page.records:
                current = record.completion_date
                if current is not None:
                    if previous is not None and current < previous:
                        raise SourceUnavailable(
                            f"Source returned record {record.id} out of completion-date order"
                        )
                    previous = current
                yield record
            if not page.next_cursor:
                LOGGER.debug(f"Source exhausted after {pages} page(s)")
                return
            if page.next_cursor == cursor:
                raise SourceUnavailable("Source cursor did not advance")
            cursor = page.next_cursor
