"""Period persistence and CSV import."""

from __future__ import annotations

import json
import logging
from pathlib import Path
import re
import sqlite3
from typing import Any, Iterable

import polars as pl
import psycopg

from combo_funnel.errors import LedgerUnavailableError
from combo_funnel.storage import SqlStore, utc_now

from .contracts import Period, PeriodContractError
from .ledger import PeriodLedger


logger = logging.getLogger("combo_funnel.periods.store")
_NUMBER_SPLIT = re.compile(r"[\s,;|]+")


class PeriodStore(SqlStore):
    """Stores the period ledger; drawn periods are immutable once written."""

    def upsert_periods(self, periods: Iterable[Period]) -> int:
        written = 0
        with self._connect() as conn:
            for period in periods:
                row = conn.execute(
                    *self._sql_with_params(
                        "SELECT label, drawn_numbers, drawn_bonus FROM funnel_periods WHERE sequence_id = {p1}",
                        (int(period.sequence_id),),
                    )
                ).fetchone()
                numbers = _dump_numbers(period.drawn_numbers)
                bonus = _dump_numbers(period.drawn_bonus)
                if row is not None:
                    existing_label, existing_numbers, existing_bonus = str(row[0]), row[1], row[2]
                    if existing_label != period.label:
                        raise PeriodContractError(
                            f"sequence_id {period.sequence_id} already holds label {existing_label}, not {period.label}"
                        )
                    if existing_numbers is not None:
                        if (existing_numbers, existing_bonus) != (numbers, bonus):
                            raise PeriodContractError(f"drawn period {period.label} is immutable")
                        continue
                    if numbers is None:
                        continue
                conn.execute(
                    *self._sql_with_params(
                        """
                        INSERT INTO funnel_periods (sequence_id, label, drawn_numbers, drawn_bonus, updated_at_utc)
                        VALUES ({p1}, {p2}, {p3}, {p4}, {p5})
                        ON CONFLICT(sequence_id) DO UPDATE SET
                            drawn_numbers = excluded.drawn_numbers,
                            drawn_bonus = excluded.drawn_bonus,
                            updated_at_utc = excluded.updated_at_utc
                        """,
                        (int(period.sequence_id), period.label, numbers, bonus, utc_now()),
                    )
                )
                written += 1
        return written

    def load_ledger(self) -> PeriodLedger:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT sequence_id, label, drawn_numbers, drawn_bonus FROM funnel_periods ORDER BY sequence_id"
                ).fetchall()
        except (sqlite3.Error, psycopg.Error) as exc:
            raise LedgerUnavailableError(f"period ledger unreachable: {exc}") from exc
        return PeriodLedger(
            Period(
                sequence_id=int(row[0]),
                label=str(row[1]),
                drawn_numbers=_load_numbers(row[2]),
                drawn_bonus=_load_numbers(row[3]),
            )
            for row in rows
        )

    def import_csv(self, path: Path) -> int:
        """Load `sequence_id,label,numbers[,bonus]` rows; numbers are space/comma separated."""
        frame = pl.read_csv(path, infer_schema_length=0)
        missing = {"sequence_id", "label", "numbers"} - set(frame.columns)
        if missing:
            raise PeriodContractError(f"period CSV missing columns: {sorted(missing)}")
        has_bonus = "bonus" in frame.columns
        periods = [
            Period(
                sequence_id=int(row["sequence_id"]),
                label=row["label"],
                drawn_numbers=_parse_numbers(row.get("numbers")),
                drawn_bonus=_parse_numbers(row.get("bonus")) if has_bonus else None,
            )
            for row in frame.iter_rows(named=True)
        ]
        written = self.upsert_periods(periods)
        logger.info("Imported periods path=%s rows=%s written=%s", path, len(periods), written)
        return written

    def _ensure_schema(self) -> None:
        self._execute_ddl(
            """
            CREATE TABLE IF NOT EXISTS funnel_periods (
                sequence_id INTEGER NOT NULL PRIMARY KEY,
                label TEXT NOT NULL UNIQUE,
                drawn_numbers TEXT,
                drawn_bonus TEXT,
                updated_at_utc TEXT NOT NULL
            )
            """
        )


def _dump_numbers(numbers: tuple[int, ...] | None) -> str | None:
    if numbers is None:
        return None
    return json.dumps(list(numbers), separators=(",", ":"))


def _load_numbers(raw: Any) -> tuple[int, ...] | None:
    if raw in (None, ""):
        return None
    return tuple(int(item) for item in json.loads(str(raw)))


def _parse_numbers(raw: Any) -> tuple[int, ...] | None:
    text = str(raw or "").strip()
    if not text:
        return None
    return tuple(int(token) for token in _NUMBER_SPLIT.split(text) if token)
