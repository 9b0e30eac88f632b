#!/usr/bin/env python3
"""CLI script to measure dedup precision/recall against labelled listing pairs."""

from __future__ import annotations

from pathlib import Path

import pandas as pd
import structlog
import typer

from dealsift.config import get_settings
from dealsift.db import get_connection
from dealsift.dedup.postgres import PostgresDedupRepository
from dealsift.dedup.validation import (
    LabelledPair,
    evaluate_pairs,
    generate_validation_report,
    sweep_thresholds,
)

logger = structlog.get_logger(__name__)
app = typer.Typer()


@app.command()
def main(
    labels_csv: Path = typer.Argument(
        ..., help="CSV with listing_a_id, listing_b_id, same_business columns"
    ),
    threshold: float | None = typer.Option(
        None, "--threshold", help="Score threshold (defaults to the auto-merge threshold)"
    ),
    sweep: list[float] = typer.Option(
        [], "--sweep", help="Report each of these thresholds instead of a single one"
    ),
) -> None:
    """Score labelled pairs and print a precision/recall report."""
    settings = get_settings()
    df = pd.read_csv(labels_csv, dtype={"listing_a_id": str, "listing_b_id": str})
    df["same_business"] = df["same_business"].astype(str).str.lower().isin(["1", "true", "yes"])

    conn = get_connection(settings, autocommit=True)
    try:
        repo = PostgresDedupRepository(conn)
        ids = set(df["listing_a_id"]) | set(df["listing_b_id"])
        listings = {l.id: l for l in repo.get_listings(sorted(ids))}
    finally:
        conn.close()

    pairs: list[LabelledPair] = []
    for row in df.itertuples(index=False):
        a, b = listings.get(row.listing_a_id), listings.get(row.listing_b_id)
        if a is None or b is None:
            logger.warning("labelled_pair_missing_listing", a=row.listing_a_id, b=row.listing_b_id)
            continue
        pairs.append(LabelledPair(a, b, bool(row.same_business)))

    if sweep:
        matrices = sweep_thresholds(pairs, sweep)
    else:
        cut = threshold if threshold is not None else settings.auto_merge_threshold
        matrices = [evaluate_pairs(pairs, cut)]
    typer.echo(generate_validation_report(matrices))


if __name__ == "__main__":
    app()
