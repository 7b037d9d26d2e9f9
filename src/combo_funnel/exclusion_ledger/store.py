"""Append-only exclusion ledger store."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Iterable

from combo_funnel.periods import normalize_label
from combo_funnel.storage import SqlStore, utc_now

from .contracts import ExclusionLedgerEntry


logger = logging.getLogger("combo_funnel.exclusion_ledger")

LEDGER_OBS_NEW = "NEW"
LEDGER_OBS_DUPLICATE = "DUPLICATE"
LEDGER_OBS_PAYLOAD_MISMATCH = "PAYLOAD_MISMATCH"


@dataclass(frozen=True)
class LedgerObservation:
    outcome: str
    stage_index: int
    chunk_index: int
    payload_hash: str


class ExclusionLedgerStore(SqlStore):
    """Rows are keyed by (task, period, stage, chunk_index) and never rewritten.

    Re-appending an identical row counts as a duplicate. A row whose payload
    differs from the stored one is kept out of the ledger and recorded as a
    mismatch for the caller to surface.
    """

    def append(self, entries: Iterable[ExclusionLedgerEntry]) -> list[LedgerObservation]:
        observations: list[LedgerObservation] = []
        with self._connect() as conn:
            for entry in entries:
                observations.append(self._observe(conn, entry, observed_at_utc=utc_now()))
        return observations

    def _observe(self, conn: Any, entry: ExclusionLedgerEntry, *, observed_at_utc: str) -> LedgerObservation:
        payload_hash = entry.payload_hash
        key = (entry.task_id, entry.period_label, int(entry.stage_index), int(entry.chunk_index))
        row = conn.execute(
            *self._sql_with_params(
                """
                SELECT payload_hash
                FROM funnel_exclusion_ledger
                WHERE task_id = {p1}
                  AND period_label = {p2}
                  AND stage_index = {p3}
                  AND chunk_index = {p4}
                """,
                key,
            )
        ).fetchone()
        if row is None:
            payload = entry.as_dict()
            conn.execute(
                *self._sql_with_params(
                    """
                    INSERT INTO funnel_exclusion_ledger (
                        task_id, period_label, stage_index, chunk_index, stage_name,
                        excluded_count, excluded_ids_json, sample_json, is_partial, ids_recorded,
                        total_chunks, batch_index, payload_hash, first_seen_utc, last_seen_utc,
                        seen_count, mismatch_count
                    ) VALUES (
                        {p1}, {p2}, {p3}, {p4}, {p5}, {p6}, {p7}, {p8}, {p9}, {p10},
                        {p11}, {p12}, {p13}, {p14}, {p14}, 1, 0
                    )
                    """,
                    (
                        *key,
                        entry.stage_name,
                        int(entry.excluded_count),
                        json.dumps(payload["excluded_ids"], separators=(",", ":")),
                        json.dumps(payload["sample"], sort_keys=True, separators=(",", ":")),
                        1 if entry.is_partial else 0,
                        1 if entry.ids_recorded else 0,
                        int(entry.total_chunks),
                        int(entry.batch_index),
                        payload_hash,
                        observed_at_utc,
                    ),
                )
            )
            return LedgerObservation(LEDGER_OBS_NEW, entry.stage_index, entry.chunk_index, payload_hash)
        existing_hash = str(row[0] or "")
        if existing_hash == payload_hash:
            conn.execute(
                *self._sql_with_params(
                    """
                    UPDATE funnel_exclusion_ledger
                       SET last_seen_utc = {p5},
                           seen_count = seen_count + 1
                     WHERE task_id = {p1}
                       AND period_label = {p2}
                       AND stage_index = {p3}
                       AND chunk_index = {p4}
                    """,
                    (*key, observed_at_utc),
                )
            )
            return LedgerObservation(LEDGER_OBS_DUPLICATE, entry.stage_index, entry.chunk_index, existing_hash)
        conn.execute(
            *self._sql_with_params(
                """
                INSERT INTO funnel_exclusion_ledger_mismatches (
                    task_id, period_label, stage_index, chunk_index,
                    expected_payload_hash, observed_payload_hash, observed_at_utc
                ) VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6}, {p7})
                """,
                (*key, existing_hash, payload_hash, observed_at_utc),
            )
        )
        conn.execute(
            *self._sql_with_params(
                """
                UPDATE funnel_exclusion_ledger
                   SET mismatch_count = mismatch_count + 1,
                       last_seen_utc = {p5},
                       seen_count = seen_count + 1
                 WHERE task_id = {p1}
                   AND period_label = {p2}
                   AND stage_index = {p3}
                   AND chunk_index = {p4}
                """,
                (*key, observed_at_utc),
            )
        )
        logger.warning(
            "Exclusion ledger payload mismatch task=%s period=%s stage=%s chunk=%s",
            *key,
        )
        return LedgerObservation(LEDGER_OBS_PAYLOAD_MISMATCH, entry.stage_index, entry.chunk_index, existing_hash)

    def entries_for_period(self, task_id: str, period_label: Any) -> list[ExclusionLedgerEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                *self._sql_with_params(
                    """
                    SELECT task_id, period_label, stage_index, chunk_index, stage_name,
                           excluded_count, excluded_ids_json, sample_json, is_partial, ids_recorded,
                           total_chunks, batch_index
                    FROM funnel_exclusion_ledger
                    WHERE task_id = {p1} AND period_label = {p2}
                    ORDER BY stage_index ASC, chunk_index ASC
                    """,
                    (str(task_id), normalize_label(period_label)),
                )
            ).fetchall()
        return [
            ExclusionLedgerEntry(
                task_id=str(row[0]),
                period_label=str(row[1]),
                stage_index=int(row[2]),
                chunk_index=int(row[3]),
                stage_name=str(row[4]),
                excluded_count=int(row[5]),
                excluded_ids=tuple(json.loads(str(row[6]))),
                sample=json.loads(str(row[7])),
                is_partial=bool(row[8]),
                ids_recorded=bool(row[9]),
                total_chunks=int(row[10]),
                batch_index=int(row[11]),
            )
            for row in rows
        ]

    def stage_totals(self, task_id: str) -> list[dict[str, Any]]:
        """Per-stage exclusion totals across every period of a task."""
        with self._connect() as conn:
            rows = conn.execute(
                *self._sql_with_params(
                    """
                    SELECT stage_index, stage_name, SUM(excluded_count), COUNT(*)
                    FROM funnel_exclusion_ledger
                    WHERE task_id = {p1} AND chunk_index = 0
                    GROUP BY stage_index, stage_name
                    ORDER BY stage_index ASC
                    """,
                    (str(task_id),),
                )
            ).fetchall()
        return [
            {
                "stage_index": int(row[0]),
                "stage_name": str(row[1]),
                "excluded_total": int(row[2] or 0),
                "periods": int(row[3] or 0),
            }
            for row in rows
        ]

    def mismatches(self, task_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                *self._sql_with_params(
                    """
                    SELECT period_label, stage_index, chunk_index,
                           expected_payload_hash, observed_payload_hash, observed_at_utc
                    FROM funnel_exclusion_ledger_mismatches
                    WHERE task_id = {p1}
                    ORDER BY observed_at_utc ASC
                    """,
                    (str(task_id),),
                )
            ).fetchall()
        return [
            {
                "period_label": str(row[0]),
                "stage_index": int(row[1]),
                "chunk_index": int(row[2]),
                "expected_payload_hash": str(row[3]),
                "observed_payload_hash": str(row[4]),
                "observed_at_utc": str(row[5]),
            }
            for row in rows
        ]

    def _ensure_schema(self) -> None:
        self._execute_ddl(
            """
            CREATE TABLE IF NOT EXISTS funnel_exclusion_ledger (
                task_id TEXT NOT NULL,
                period_label TEXT NOT NULL,
                stage_index INTEGER NOT NULL,
                chunk_index INTEGER NOT NULL,
                stage_name TEXT NOT NULL,
                excluded_count INTEGER NOT NULL,
                excluded_ids_json TEXT NOT NULL,
                sample_json TEXT NOT NULL,
                is_partial INTEGER NOT NULL,
                ids_recorded INTEGER NOT NULL,
                total_chunks INTEGER NOT NULL,
                batch_index INTEGER NOT NULL,
                payload_hash TEXT NOT NULL,
                first_seen_utc TEXT NOT NULL,
                last_seen_utc TEXT NOT NULL,
                seen_count INTEGER NOT NULL,
                mismatch_count INTEGER NOT NULL,
                PRIMARY KEY (task_id, period_label, stage_index, chunk_index)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS funnel_exclusion_ledger_mismatches (
                task_id TEXT NOT NULL,
                period_label TEXT NOT NULL,
                stage_index INTEGER NOT NULL,
                chunk_index INTEGER NOT NULL,
                expected_payload_hash TEXT NOT NULL,
                observed_payload_hash TEXT NOT NULL,
                observed_at_utc TEXT NOT NULL
            )
            """,
        )
