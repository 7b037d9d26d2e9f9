"""Combination funnel: period-pair classification cache, staged exclusion and batch coordination."""

__all__: list[str] = []
