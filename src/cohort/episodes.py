"""
Episode overlap matching.

Finds, for each candidate episode (participant, start date, end date), one
record from a dated event table (e.g. diagnostic imaging) that falls inside
the episode window. Records are fetched with one batched query per chunk of
participants and joined on date range client side.
"""

import logging
from typing import Sequence

import pandas as pd

from warehouse.queries import get_template
from warehouse.sql import chunked

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000


def match_overlapping_records(
    episodes: pd.DataFrame,
    records: pd.DataFrame,
    window_days: int = 0,
    start_col: str = "episode_start",
    end_col: str = "episode_end",
    date_col: str = "record_date",
) -> pd.DataFrame:
    """
    Attach the earliest record inside each episode window.

    Args:
        episodes: One row per episode with participant_id, start and end.
        records: Rows with participant_id and a record date.
        window_days: Days added on both sides of the episode.

    Returns:
        ``episodes`` with the matched record columns added (missing where no
        record overlaps). Row count equals the number of episodes.
    """
    eps = episodes.reset_index(drop=True).copy()
    eps["participant_id"] = eps["participant_id"].astype(str)
    eps["_episode"] = range(len(eps))
    eps[start_col] = pd.to_datetime(eps[start_col])
    eps[end_col] = pd.to_datetime(eps[end_col])

    recs = records.copy()
    recs["participant_id"] = recs["participant_id"].astype(str)
    recs[date_col] = pd.to_datetime(recs[date_col])
    record_cols = [c for c in recs.columns if c != "participant_id"]

    window = pd.Timedelta(days=window_days)
    pairs = eps[["_episode", "participant_id", start_col, end_col]].merge(
        recs, on="participant_id", how="inner"
    )
    in_window = (
        (pairs[date_col] >= pairs[start_col] - window)
        & (pairs[date_col] <= pairs[end_col] + window)
    )
    best = (
        pairs[in_window]
        .sort_values(["_episode", date_col])
        .drop_duplicates("_episode")[["_episode"] + record_cols]
    )

    result = eps.merge(best, on="_episode", how="left").drop(columns="_episode")

    n_matched = len(best)
    logger.info(
        f"Episode overlap: {n_matched} of {len(eps)} episodes matched a record "
        f"(window +/- {window_days} days)"
    )
    if n_matched < len(eps):
        logger.warning(f"{len(eps) - n_matched} episodes have no overlapping record")
    return result


def fetch_overlapping_records(
    service,
    episodes: pd.DataFrame,
    table: str,
    date_column: str,
    columns: Sequence[str] = (),
    window_days: int = 0,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> pd.DataFrame:
    """
    Fetch records for every episode participant and match them to episodes.

    One query is issued per chunk of ``chunk_size`` participants instead of
    one per episode; chunks go through ``service.execute_many``.
    """
    participants = sorted(set(episodes["participant_id"].astype(str)))
    select_cols = ["participant_id", date_column] + [
        c for c in columns if c not in ("participant_id", date_column)
    ]

    template = get_template("records_for_participants")
    statements = [
        template.render(columns=select_cols, table=table, participants=chunk)
        for chunk in chunked(participants, chunk_size)
    ]
    logger.info(
        f"Fetching {table} records for {len(participants)} participants "
        f"in {len(statements)} batches"
    )

    frames = [df for df in service.execute_many(statements) if not df.empty]
    if frames:
        records = pd.concat(frames, ignore_index=True)
    else:
        records = pd.DataFrame(columns=select_cols)
    records = records.rename(columns={date_column: "record_date"})

    return match_overlapping_records(episodes, records, window_days=window_days)
