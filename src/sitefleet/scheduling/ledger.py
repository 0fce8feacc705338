"""Run ledger: single-flight guard for periodic triggers.

Manifesto:
    Two runs of the same trigger must never overlap, whether they come from
    two ticks of one scheduler or from two replicated schedulers sharing the
    database. The ledger keeps one row per trigger and flips ``running``
    with a conditional ``UPDATE``, so exactly one caller wins. A run that
    crashed without finishing is reclaimed once it is older than the
    trigger's staleness threshold.

Tags:
    scheduling, single-flight, run-ledger, compare-and-swap, sitefleet

Doc-Types:
    api-reference, architecture-diagram


    Ledger Flow::

        try_start(name, now, stale_after)
            INSERT OR IGNORE row (running=0)
            UPDATE ... SET running=1, owner=<token>
              WHERE name=? AND (running=0 OR started_at <= now - stale_after)
            rowcount == 1 → owner token     rowcount == 0 → None (skip)

        finish(name, owner, now, error)
            UPDATE ... SET running=0, finished_at, last_error
              WHERE name=? AND owner=<token>
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from datetime import datetime, timedelta

from sitefleet.db import Database
from sitefleet.logging import get_logger
from sitefleet.models import TriggerRun
from sitefleet.timestamps import from_iso8601, short_token, to_iso8601

logger = get_logger(__name__)


def _run_from_row(row: sqlite3.Row) -> TriggerRun:
    return TriggerRun(
        name=row["name"],
        running=bool(row["running"]),
        started_at=from_iso8601(row["started_at"]),
        finished_at=from_iso8601(row["finished_at"]),
        last_error=row["last_error"],
        owner=row["owner"],
        run_count=row["run_count"],
    )


class RunLedger:
    """Database-backed single-flight guard.

    Example:
        >>> ledger = RunLedger(db, instance_id="scheduler-1")
        >>> owner = ledger.try_start("check-domains", now, timedelta(minutes=15))
        >>> if owner:
        ...     try:
        ...         sweep()
        ...     finally:
        ...         ledger.finish("check-domains", owner, utc_now())
    """

    def __init__(self, db: Database, instance_id: str | None = None) -> None:
        self.db = db
        self.instance_id = instance_id or short_token()

    def get(self, name: str) -> TriggerRun | None:
        row = self.db.query_one("SELECT * FROM trigger_runs WHERE name = ?", (name,))
        return _run_from_row(row) if row else None

    def entries(self) -> list[TriggerRun]:
        return [_run_from_row(r) for r in self.db.query("SELECT * FROM trigger_runs ORDER BY name")]

    def try_start(self, name: str, now: datetime, stale_after: timedelta) -> str | None:
        """Atomically mark *name* running.

        Returns:
            The owner token of the new run, or ``None`` if another run holds
            the entry and is not stale.
        """
        self.db.execute("INSERT OR IGNORE INTO trigger_runs (name) VALUES (?)", (name,))
        previous = self.get(name)

        owner = f"{self.instance_id}:{short_token()}"
        rowcount = self.db.execute(
            """
            UPDATE trigger_runs
            SET running = 1, started_at = ?, owner = ?, run_count = run_count + 1
            WHERE name = ?
              AND (running = 0 OR started_at IS NULL OR started_at <= ?)
            """,
            (to_iso8601(now), owner, name, to_iso8601(now - stale_after)),
        )
        if rowcount != 1:
            logger.debug("trigger_run_held", trigger=name)
            return None

        if previous is not None and previous.running:
            logger.warning(
                "stale_trigger_run_reclaimed",
                trigger=name,
                previous_owner=previous.owner,
                started_at=to_iso8601(previous.started_at),
            )
        return owner

    def finish(
        self,
        name: str,
        owner: str,
        now: datetime,
        error: str | None = None,
    ) -> bool:
        """Mark the run finished.

        A run whose entry was reclaimed no longer owns it and its finish is
        ignored, so it cannot release the reclaiming run.
        """
        rowcount = self.db.execute(
            """
            UPDATE trigger_runs
            SET running = 0, finished_at = ?, last_error = ?
            WHERE name = ? AND owner = ?
            """,
            (to_iso8601(now), error, name, owner),
        )
        if rowcount != 1:
            logger.warning("trigger_finish_ignored", trigger=name, owner=owner)
            return False
        return True

    def prune(self, finished_before: datetime, keep: Iterable[str] = ()) -> int:
        """Drop idle entries of triggers that are no longer registered."""
        keep = list(keep)
        placeholders = ", ".join("?" for _ in keep) or "''"
        count = self.db.execute(
            f"""
            DELETE FROM trigger_runs
            WHERE running = 0
              AND (finished_at IS NULL OR finished_at < ?)
              AND name NOT IN ({placeholders})
            """,
            (to_iso8601(finished_before), *keep),
        )
        if count:
            logger.info("trigger_history_pruned", removed=count)
        return count
