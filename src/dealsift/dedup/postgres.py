"""PostgreSQL implementations of the deduplication collaborators.

All database interaction uses raw SQL via psycopg3.  The repository expects
a connection opened with ``autocommit=True``: every write outside an
explicit ``transaction()`` block commits on its own, and merges wrap their
writes in one block.  Table layout lives in ``sql/dedup_schema.sql``.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal

import psycopg
import structlog

from dealsift.db import execute_query
from dealsift.dedup.errors import MergeConflictError
from dealsift.dedup.models import (
    CandidateStatus,
    DedupCandidate,
    FieldScores,
    Listing,
    ReviewSignal,
    RunSummary,
    allowed_predecessors,
)

logger = structlog.get_logger(__name__)

# Tables whose ``listing_id`` column follows a listing into its canonical
REFERENCE_TABLES: tuple[str, ...] = (
    "opportunities",
    "listing_documents",
    "notes",
    "listing_sources",
)

_LISTING_COLUMNS = """
    id, platform, title, address, city, state, zip_code,
    asking_price, revenue, ebitda, category,
    broker_name, broker_phone, broker_email,
    first_seen_at, last_seen_at, superseded_by
"""

_CANDIDATE_COLUMNS = """
    id, listing_a_id, listing_b_id, overall_score,
    title_score, address_score, price_score, revenue_score,
    ebitda_score, broker_score, status, created_at,
    resolved_by, resolved_at
"""


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

def _to_float(value: Decimal | float | None) -> float | None:
    return float(value) if value is not None else None


def row_to_listing(row: dict) -> Listing:
    return Listing(
        id=str(row["id"]),
        platform=row["platform"],
        title=row["title"] or "",
        first_seen=row["first_seen_at"],
        last_seen=row["last_seen_at"],
        address=row.get("address"),
        city=row.get("city"),
        state=row.get("state"),
        zip_code=row.get("zip_code"),
        asking_price=_to_float(row.get("asking_price")),
        revenue=_to_float(row.get("revenue")),
        ebitda=_to_float(row.get("ebitda")),
        category=row.get("category"),
        broker_name=row.get("broker_name"),
        broker_phone=row.get("broker_phone"),
        broker_email=row.get("broker_email"),
        superseded_by=str(row["superseded_by"]) if row.get("superseded_by") else None,
    )


def row_to_candidate(row: dict) -> DedupCandidate:
    return DedupCandidate(
        id=str(row["id"]),
        listing_a_id=str(row["listing_a_id"]),
        listing_b_id=str(row["listing_b_id"]),
        score=float(row["overall_score"]),
        breakdown=FieldScores(
            title=row.get("title_score"),
            address=row.get("address_score"),
            price=row.get("price_score"),
            revenue=row.get("revenue_score"),
            ebitda=row.get("ebitda_score"),
            broker=row.get("broker_score"),
        ),
        status=CandidateStatus(row["status"]),
        created_at=row["created_at"],
        resolved_by=row.get("resolved_by"),
        resolved_at=row.get("resolved_at"),
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class PostgresDedupRepository:
    """Listing store, candidate store, transactions and job locks on one connection."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    # -- transactions and locks ----------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self.conn.transaction():
            yield

    def try_acquire_job_lock(self, job_name: str) -> bool:
        rows = execute_query(
            self.conn,
            "SELECT pg_try_advisory_lock(hashtext(%s)) AS acquired",
            (job_name,),
        )
        return bool(rows and rows[0]["acquired"])

    def release_job_lock(self, job_name: str) -> None:
        execute_query(
            self.conn,
            "SELECT pg_advisory_unlock(hashtext(%s)) AS released",
            (job_name,),
        )

    # -- listings -------------------------------------------------------

    def list_active_since(
        self, cutoff: datetime, platform: str | None = None
    ) -> list[Listing]:
        query = f"""
            SELECT {_LISTING_COLUMNS}
            FROM listings
            WHERE last_seen_at >= %s AND superseded_by IS NULL
        """
        params: tuple = (cutoff,)
        if platform:
            query += " AND platform = %s"
            params = (cutoff, platform)
        query += " ORDER BY id"
        return [row_to_listing(r) for r in execute_query(self.conn, query, params)]

    def get_listings(self, listing_ids: Iterable[str]) -> list[Listing]:
        ids = list(listing_ids)
        if not ids:
            return []
        rows = execute_query(
            self.conn,
            f"SELECT {_LISTING_COLUMNS} FROM listings WHERE id = ANY(%s) ORDER BY id",
            (ids,),
        )
        return [row_to_listing(r) for r in rows]

    def lock_listings(self, listing_ids: Iterable[str]) -> list[Listing]:
        ids = sorted(listing_ids)
        if not ids:
            return []
        # Sorted ids give a consistent lock order across concurrent merges
        rows = execute_query(
            self.conn,
            f"""
            SELECT {_LISTING_COLUMNS}
            FROM listings
            WHERE id = ANY(%s)
            ORDER BY id
            FOR UPDATE
            """,
            (ids,),
        )
        return [row_to_listing(r) for r in rows]

    def reassign_references(self, from_listing_id: str, to_listing_id: str) -> int:
        moved = 0
        with self.conn.cursor() as cur:
            for table in REFERENCE_TABLES:
                cur.execute(
                    f"UPDATE {table} SET listing_id = %s WHERE listing_id = %s",
                    (to_listing_id, from_listing_id),
                )
                moved += max(cur.rowcount, 0)
        return moved

    def mark_superseded(self, listing_id: str, canonical_id: str) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE listings
                SET superseded_by = %s
                WHERE id = %s AND superseded_by IS NULL
                """,
                (canonical_id, listing_id),
            )
            if cur.rowcount == 0:
                msg = f"Listing {listing_id} is missing or already superseded"
                raise MergeConflictError(msg, {"canonical_id": canonical_id})

    # -- candidates -----------------------------------------------------

    def insert_if_absent(self, candidate: DedupCandidate) -> bool:
        b = candidate.breakdown
        rows = execute_query(
            self.conn,
            """
            INSERT INTO dedup_candidates (
                id, listing_a_id, listing_b_id, overall_score,
                title_score, address_score, price_score, revenue_score,
                ebitda_score, broker_score, status, created_at
            )
            SELECT %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s
            WHERE NOT EXISTS (
                SELECT 1 FROM dedup_candidates
                WHERE listing_a_id = %s AND listing_b_id = %s
                  AND status <> 'REJECTED'
            )
            ON CONFLICT DO NOTHING
            RETURNING id
            """,
            (
                candidate.id,
                candidate.listing_a_id,
                candidate.listing_b_id,
                candidate.score,
                b.title,
                b.address,
                b.price,
                b.revenue,
                b.ebitda,
                b.broker,
                candidate.status.value,
                candidate.created_at,
                candidate.listing_a_id,
                candidate.listing_b_id,
            ),
        )
        return bool(rows)

    def open_pair_keys(self, listing_ids: Iterable[str]) -> set[tuple[str, str]]:
        ids = list(listing_ids)
        if not ids:
            return set()
        rows = execute_query(
            self.conn,
            """
            SELECT listing_a_id, listing_b_id
            FROM dedup_candidates
            WHERE status <> 'REJECTED'
              AND listing_a_id = ANY(%s) AND listing_b_id = ANY(%s)
            """,
            (ids, ids),
        )
        return {(str(r["listing_a_id"]), str(r["listing_b_id"])) for r in rows}

    def list_by_status(self, statuses: Sequence[CandidateStatus]) -> list[DedupCandidate]:
        rows = execute_query(
            self.conn,
            f"""
            SELECT {_CANDIDATE_COLUMNS}
            FROM dedup_candidates
            WHERE status = ANY(%s)
            ORDER BY overall_score DESC, id
            """,
            ([s.value for s in statuses],),
        )
        return [row_to_candidate(r) for r in rows]

    def get_candidate(self, candidate_id: str) -> DedupCandidate | None:
        rows = execute_query(
            self.conn,
            f"SELECT {_CANDIDATE_COLUMNS} FROM dedup_candidates WHERE id = %s",
            (candidate_id,),
        )
        return row_to_candidate(rows[0]) if rows else None

    def update_status(
        self,
        candidate_ids: Sequence[str],
        status: CandidateStatus,
        resolved_by: str,
    ) -> int:
        if not candidate_ids:
            return 0
        predecessors = sorted(s.value for s in allowed_predecessors(status))
        rows = execute_query(
            self.conn,
            """
            UPDATE dedup_candidates
            SET status = %s, resolved_by = %s, resolved_at = now()
            WHERE id = ANY(%s) AND status = ANY(%s)
            RETURNING id
            """,
            (status.value, resolved_by, list(candidate_ids), predecessors),
        )
        return len(rows)

    def count_by_status(self, status: CandidateStatus) -> int:
        rows = execute_query(
            self.conn,
            "SELECT count(*) AS n FROM dedup_candidates WHERE status = %s",
            (status.value,),
        )
        return int(rows[0]["n"]) if rows else 0


# ---------------------------------------------------------------------------
# Notification and run-log sinks
# ---------------------------------------------------------------------------

class PostgresReviewNotifier:
    """Writes the pending-review signal into the shared notifications table."""

    def __init__(self, conn: psycopg.Connection, action_url: str = "/settings/dedup") -> None:
        self.conn = conn
        self.action_url = action_url

    def notify_pending_review(self, signal: ReviewSignal) -> None:
        execute_query(
            self.conn,
            """
            INSERT INTO notifications
                (id, type, title, message, priority, entity_type, action_url)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                str(uuid.uuid4()),
                "DEDUP_CANDIDATE",
                f"Dedup: {signal.pending_review} candidates need review",
                (
                    f"Found {signal.candidates_found} duplicate candidates, "
                    f"auto-merged {signal.auto_merged}. "
                    f"{signal.pending_review} pairs pending manual review."
                ),
                "high" if signal.high_priority else "normal",
                "listing",
                self.action_url,
            ),
        )


class PostgresRunLog:
    """Records each run in ``dedup_runs``; write-only from the engine's side."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def start_run(self, job_name: str) -> str:
        run_id = str(uuid.uuid4())
        execute_query(
            self.conn,
            """
            INSERT INTO dedup_runs (id, job_name, status, started_at)
            VALUES (%s, %s, 'running', now())
            """,
            (run_id, job_name),
        )
        return run_id

    def finish_run(self, run_id: str, summary: RunSummary) -> None:
        execute_query(
            self.conn,
            """
            UPDATE dedup_runs
            SET status = %s,
                items_processed = %s,
                items_created = %s,
                items_updated = %s,
                summary = %s,
                error_message = %s,
                completed_at = now()
            WHERE id = %s
            """,
            (
                summary.status.value,
                summary.candidates_found,
                summary.groups_created,
                summary.auto_merged,
                (
                    f"Dedup: {summary.candidates_found} candidates, "
                    f"{summary.auto_merged} auto-merged, "
                    f"{summary.groups_created} groups, "
                    f"{summary.pending_review} pending review"
                ),
                "; ".join(summary.errors) if summary.errors else None,
                run_id,
            ),
        )
