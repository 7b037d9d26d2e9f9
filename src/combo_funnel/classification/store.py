"""Classification cache persistence (one row per period pair)."""

from __future__ import annotations

import json
from typing import Iterable

from combo_funnel.storage import SqlStore, chunked, utc_now

from .contracts import ClassificationEntry, PairKey


_FETCH_CHUNK = 200


class ClassificationStore(SqlStore):
    def put(self, entry: ClassificationEntry) -> None:
        payload = json.dumps(entry.as_dict()["classes"], sort_keys=True, separators=(",", ":"))
        with self._connect() as conn:
            conn.execute(
                *self._sql_with_params(
                    """
                    INSERT INTO funnel_classification_entries (
                        base_label, target_label, arity, classes_json, combination_count, built_at_utc
                    ) VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6})
                    ON CONFLICT(base_label, target_label) DO UPDATE SET
                        arity = excluded.arity,
                        classes_json = excluded.classes_json,
                        combination_count = excluded.combination_count,
                        built_at_utc = excluded.built_at_utc
                    """,
                    (
                        entry.pair.base_label,
                        entry.pair.target_label,
                        int(entry.arity),
                        payload,
                        int(entry.combination_count),
                        utc_now(),
                    ),
                )
            )

    def exists(self, pair: PairKey) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                *self._sql_with_params(
                    """
                    SELECT 1 FROM funnel_classification_entries
                    WHERE base_label = {p1} AND target_label = {p2}
                    """,
                    (pair.base_label, pair.target_label),
                )
            ).fetchone()
        return row is not None

    def fetch_many(self, pairs: Iterable[PairKey]) -> dict[PairKey, ClassificationEntry]:
        """Fetch exactly the requested pairs; absent pairs are simply not in the result."""
        wanted = set(pairs)
        if not wanted:
            return {}
        targets = sorted({pair.target_label for pair in wanted})
        found: dict[PairKey, ClassificationEntry] = {}
        with self._connect() as conn:
            for batch in chunked(targets, _FETCH_CHUNK):
                clause, params = self._in_clause(batch, start=1)
                rows = conn.execute(
                    *self._sql_with_params(
                        f"""
                        SELECT base_label, target_label, arity, classes_json
                        FROM funnel_classification_entries
                        WHERE target_label IN {clause}
                        """,
                        params,
                    )
                ).fetchall()
                for row in rows:
                    pair = PairKey(base_label=str(row[0]), target_label=str(row[1]))
                    if pair not in wanted:
                        continue
                    found[pair] = ClassificationEntry.from_payload(
                        pair=pair,
                        arity=int(row[2]),
                        classes=json.loads(str(row[3])),
                    )
        return found

    def _ensure_schema(self) -> None:
        self._execute_ddl(
            """
            CREATE TABLE IF NOT EXISTS funnel_classification_entries (
                base_label TEXT NOT NULL,
                target_label TEXT NOT NULL,
                arity INTEGER NOT NULL,
                classes_json TEXT NOT NULL,
                combination_count INTEGER NOT NULL,
                built_at_utc TEXT NOT NULL,
                PRIMARY KEY (base_label, target_label)
            )
            """
        )
