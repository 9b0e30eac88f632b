#!/usr/bin/env python3
"""CLI script to run listing deduplication (invoked by the scheduler)."""

from __future__ import annotations

import structlog
import typer

from dealsift.config import get_settings
from dealsift.db import get_connection
from dealsift.dedup.engine import DedupEngine
from dealsift.dedup.errors import DedupInfrastructureError
from dealsift.dedup.models import RunStatus
from dealsift.dedup.postgres import (
    PostgresDedupRepository,
    PostgresReviewNotifier,
    PostgresRunLog,
)

logger = structlog.get_logger(__name__)
app = typer.Typer()


@app.command()
def main(
    window_days: int | None = typer.Option(
        None, "--window-days", help="Only consider listings seen in the last N days"
    ),
    merge_only: bool = typer.Option(
        False, "--merge-only", help="Skip candidate generation; merge existing candidates"
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", help="Stop admitting new work after this many seconds"
    ),
    listing_id: str | None = typer.Option(
        None, "--listing-id", help="Only report likely duplicates of one listing"
    ),
) -> None:
    """Run a deduplication pass, a merge-only pass, or a single-listing lookup."""
    settings = get_settings()
    if timeout is not None:
        settings = settings.model_copy(update={"run_timeout_seconds": timeout})
    conn = get_connection(settings, autocommit=True)

    try:
        engine = DedupEngine(
            PostgresDedupRepository(conn),
            settings,
            notifier=PostgresReviewNotifier(conn),
            run_log=PostgresRunLog(conn),
        )

        if listing_id:
            for pair in engine.find_duplicates_for_listing(listing_id, window_days):
                other = pair.listing_b_id if pair.listing_a_id == listing_id else pair.listing_a_id
                typer.echo(f"{other}\t{pair.score:.3f}")
            return

        if merge_only:
            merged = engine.auto_merge_candidates()
            logger.info("dedup_merge_only_finished", merged=merged)
            return

        try:
            summary = engine.run_deduplication(window_days)
        except DedupInfrastructureError as exc:
            typer.echo(f"Dedup run FAILED, nothing was checked: {exc.message}", err=True)
            raise typer.Exit(code=1) from exc

        if summary.status is RunStatus.SKIPPED:
            typer.echo("Dedup run skipped: another run is in progress")
        elif summary.status is RunStatus.PARTIAL:
            typer.echo(
                f"Dedup run finished with {len(summary.errors)} error(s); "
                f"{summary.candidates_found} candidates, {summary.auto_merged} auto-merged"
            )
        else:
            typer.echo(
                f"Dedup run complete: {summary.candidates_found} candidates, "
                f"{summary.groups_created} groups, {summary.auto_merged} auto-merged, "
                f"{summary.pending_review} pending review"
            )
    finally:
        conn.close()


if __name__ == "__main__":
    app()
