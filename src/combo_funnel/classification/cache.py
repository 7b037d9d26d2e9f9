"""Task-scoped classification cache: key resolution, bulk preload, read-only view."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
import logging
from types import MappingProxyType

from combo_funnel.errors import ClassificationIntegrityError, ConfigurationError, NoPredecessorError
from combo_funnel.periods import Period, PeriodLedger, normalize_label
from combo_funnel.universe import CombinationUniverse

from .contracts import ClassificationEntry, PairKey, format_class_key, parse_class_key
from .store import ClassificationStore


logger = logging.getLogger("combo_funnel.classification.cache")


@dataclass(frozen=True)
class KeyResolution:
    """Base resolution for every target of a task, computed once before any chunk runs."""

    pairs: Mapping[str, PairKey]
    unresolved: Mapping[str, str] = field(default_factory=dict)

    def pair_for(self, target_label: str) -> PairKey | None:
        return self.pairs.get(normalize_label(target_label))

    def key_set(self) -> frozenset[PairKey]:
        return frozenset(self.pairs.values())


class ClassificationView(Mapping[PairKey, ClassificationEntry]):
    """Immutable view over the entries preloaded for one task."""

    def __init__(
        self,
        entries: Mapping[PairKey, ClassificationEntry],
        *,
        requested: Iterable[PairKey],
        invalid: Mapping[PairKey, str] | None = None,
    ) -> None:
        self._entries = MappingProxyType(dict(entries))
        self._requested = frozenset(requested)
        self._invalid = MappingProxyType(dict(invalid or {}))

    def __getitem__(self, key: PairKey) -> ClassificationEntry:
        return self._entries[key]

    def __iter__(self) -> Iterator[PairKey]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def requested(self) -> frozenset[PairKey]:
        return self._requested

    @property
    def missing(self) -> frozenset[PairKey]:
        return self._requested - frozenset(self._entries) - frozenset(self._invalid)

    def invalid_reason(self, key: PairKey) -> str | None:
        return self._invalid.get(key)

    def lookup(self, base: str, target: str) -> ClassificationEntry | None:
        return self._entries.get(PairKey(base_label=base, target_label=target))


class ClassificationCache:
    def __init__(self, store: ClassificationStore, universe: CombinationUniverse) -> None:
        self.store = store
        self.universe = universe

    def build_keys(
        self,
        targets: Sequence[str],
        ledger: PeriodLedger,
        *,
        predicted_label: str | None,
        latest_drawn: Period,
    ) -> KeyResolution:
        """One pair per target, resolved through the ledger's sequence ids.

        Drawn targets with no predecessor are recorded as unresolved so the
        coordinator can mark just those periods as failed.
        """
        pairs: dict[str, PairKey] = {}
        unresolved: dict[str, str] = {}
        for raw in targets:
            label = normalize_label(raw)
            try:
                base = ledger.resolve_base_period(
                    label,
                    predicted_label=predicted_label,
                    latest_drawn=latest_drawn,
                )
            except NoPredecessorError as exc:
                unresolved[label] = str(exc)
                continue
            pairs[label] = PairKey(base_label=base.label, target_label=label)
        logger.info("Classification keys resolved pairs=%s unresolved=%s", len(pairs), len(unresolved))
        return KeyResolution(pairs=MappingProxyType(pairs), unresolved=MappingProxyType(unresolved))

    def preload(self, keys: Iterable[PairKey]) -> ClassificationView:
        requested = frozenset(keys)
        fetched = self.store.fetch_many(requested)
        universe_ids = self.universe.ids()
        valid: dict[PairKey, ClassificationEntry] = {}
        invalid: dict[PairKey, str] = {}
        for pair, entry in fetched.items():
            if entry.arity != self.universe.arity:
                invalid[pair] = f"{pair}: entry arity {entry.arity} != universe arity {self.universe.arity}"
                continue
            try:
                entry.validate_partition(universe_ids)
            except ClassificationIntegrityError as exc:
                invalid[pair] = str(exc)
                continue
            valid[pair] = entry
        view = ClassificationView(valid, requested=requested, invalid=invalid)
        logger.info(
            "Classification preload requested=%s loaded=%s missing=%s invalid=%s",
            len(requested),
            len(valid),
            len(view.missing),
            len(invalid),
        )
        return view

    def lookup(self, view: ClassificationView, base: str, target: str) -> ClassificationEntry | None:
        return view.lookup(base, target)

    def classes_matching(self, entry: ClassificationEntry, selected: Iterable[str]) -> frozenset[int]:
        return classes_matching(entry, selected)


def classes_matching(entry: ClassificationEntry, selected: Iterable[str]) -> frozenset[int]:
    """Union of the selected classes; an empty selection is an error, not 'everything'."""
    keys = [format_class_key(parse_class_key(key, arity=entry.arity)) for key in selected]
    if not keys:
        raise ConfigurationError("classification selection must name at least one class")
    matched: set[int] = set()
    for key in keys:
        matched |= entry.classes.get(key, frozenset())
    return frozenset(matched)
