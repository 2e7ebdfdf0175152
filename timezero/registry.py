"""Outcome registry: regression kind, polarity and scale bound per outcome."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List

import pandas as pd

LINEAR = "linear"
BINARY = "binary"
ORDINAL = "ordinal"
REGRESSION_KINDS = (LINEAR, BINARY, ORDINAL)

_TRUE_STRINGS = {"true", "t", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "f", "no", "n", "0", ""}


@dataclass(frozen=True)
class OutcomeSpec:
    """Static description of one symptom score."""

    outcome: str
    kind: str
    invert: bool
    min_value: float
    category: str
    label: str

    def __post_init__(self) -> None:
        if self.kind not in REGRESSION_KINDS:
            raise ValueError(f"{self.outcome}: unknown regression kind {self.kind!r}")


def _coerce_bool(value, *, outcome: str) -> bool:
    if isinstance(value, bool):
        return value
    if pd.isna(value):
        return False
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ValueError(f"{outcome}: cannot interpret invert flag {value!r}")


class OutcomeRegistry:
    """Immutable, ordered mapping of outcome id to :class:`OutcomeSpec`."""

    COLUMNS = ("outcome", "kind", "invert", "min_value", "category", "label")

    def __init__(self, specs: List[OutcomeSpec]):
        by_id: Dict[str, OutcomeSpec] = {}
        for spec in specs:
            if spec.outcome in by_id:
                raise ValueError(f"Duplicate outcome in registry: {spec.outcome}")
            by_id[spec.outcome] = spec
        self._specs = by_id

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "OutcomeRegistry":
        missing = [c for c in cls.COLUMNS if c not in df.columns]
        if missing:
            raise ValueError(f"Outcome registry is missing columns: {missing}")
        specs = []
        for row in df.itertuples(index=False):
            outcome = str(row.outcome).strip()
            label = row.label if not pd.isna(row.label) else outcome
            specs.append(
                OutcomeSpec(
                    outcome=outcome,
                    kind=str(row.kind).strip().lower(),
                    invert=_coerce_bool(row.invert, outcome=outcome),
                    min_value=float(row.min_value),
                    category=str(row.category).strip(),
                    label=str(label),
                )
            )
        return cls(specs)

    @classmethod
    def from_path(cls, path: str | Path, *, sep: str = "\t") -> "OutcomeRegistry":
        return cls.from_frame(pd.read_csv(path, sep=sep))

    def __getitem__(self, outcome: str) -> OutcomeSpec:
        return self._specs[outcome]

    def __contains__(self, outcome: object) -> bool:
        return outcome in self._specs

    def __iter__(self) -> Iterator[OutcomeSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    @property
    def outcomes(self) -> List[str]:
        return list(self._specs)

    def category_for(self, outcome: str) -> str:
        return self._specs[outcome].category

    def lookup_frame(self) -> pd.DataFrame:
        """Outcome-level attributes as a frame for merging onto result tables."""
        return pd.DataFrame(
            [
                {
                    "Outcome": s.outcome,
                    "Kind": s.kind,
                    "Invert": s.invert,
                    "Category": s.category,
                    "Label": s.label,
                }
                for s in self
            ],
            columns=["Outcome", "Kind", "Invert", "Category", "Label"],
        )
