"""
Canonical variable table for labour-force survey waves.

Each canonical name carries an ordered list of raw synonyms used across survey
vintages. A wave resolves each canonical name to at most one synonym; the
first declared synonym present in the wave wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Literal

import yaml

from config.settings import get_settings

logger = logging.getLogger(__name__)

VariableKind = Literal["numeric", "text", "date"]

# ILO economic activity codes (ILODEFR)
ILO_EMPLOYED = 1
ILO_UNEMPLOYED = 2
ILO_INACTIVE = 3

CANONICAL_NAMES = [
    "person_id",
    "age",
    "sex",
    "emp_status",
    "ethnicity",
    "region",
    "hi_qual",
    "ref_date",
    "weight",
]


@dataclass(frozen=True)
class CanonicalVariable:
    """One canonical variable and its raw synonyms, in priority order."""

    name: str
    synonyms: tuple[str, ...]
    kind: VariableKind = "numeric"
    per_quarter: bool = False


@dataclass
class Resolution:
    """How one canonical variable was resolved in one wave."""

    name: str
    synonym: str | None
    columns: dict[int, str] = field(default_factory=dict)  # quarter -> raw column

    @property
    def found(self) -> bool:
        return self.synonym is not None


class VariableMap:
    """Mapping from historically used raw names to canonical names."""

    def __init__(self, variables: Iterable[CanonicalVariable]):
        self.variables: dict[str, CanonicalVariable] = {}
        for var in variables:
            if var.name in self.variables:
                raise ValueError(f"Duplicate canonical variable: {var.name}")
            self.variables[var.name] = var

    def __contains__(self, name: str) -> bool:
        return name in self.variables

    def __getitem__(self, name: str) -> CanonicalVariable:
        return self.variables[name]

    def __iter__(self):
        return iter(self.variables.values())

    @property
    def names(self) -> list[str]:
        return list(self.variables)

    @property
    def per_quarter_names(self) -> list[str]:
        return [v.name for v in self if v.per_quarter]

    @classmethod
    def from_dict(cls, table: dict) -> "VariableMap":
        variables = []
        for name, entry in table.items():
            if isinstance(entry, list):
                entry = {"synonyms": entry}
            variables.append(CanonicalVariable(
                name=name,
                synonyms=tuple(str(s) for s in entry["synonyms"]),
                kind=entry.get("kind", "numeric"),
                per_quarter=bool(entry.get("per_quarter", False)),
            ))
        return cls(variables)

    @classmethod
    def from_yaml(cls, path: Path) -> "VariableMap":
        with open(path) as f:
            table = yaml.safe_load(f) or {}
        logger.debug(f"Loaded {len(table)} canonical variables from {path}")
        return cls.from_dict(table)

    @classmethod
    def default(cls) -> "VariableMap":
        """Variable map from the configured synonym table."""
        return cls.from_yaml(get_settings().variable_map_path)

    def with_weight_candidates(self, candidates: Iterable[str]) -> "VariableMap":
        """Copy of this map with the weight synonyms replaced."""
        variables = []
        for var in self:
            if var.name == "weight":
                var = CanonicalVariable(
                    name="weight",
                    synonyms=tuple(candidates),
                    kind=var.kind,
                    per_quarter=var.per_quarter,
                )
            variables.append(var)
        return VariableMap(variables)

    def resolve(self, columns: Iterable[str], n_quarters: int) -> dict[str, Resolution]:
        """
        Resolve every canonical variable against a wave's column set.

        Column matching is case-insensitive. Per-quarter variables are
        looked up as ``<SYNONYM><q>`` for q in 1..n_quarters, falling back to
        the bare synonym (a cross-sectional wave, treated as quarter 1).

        Args:
            columns: Raw column names present in the wave
            n_quarters: Quarters per wave

        Returns:
            Mapping canonical name -> Resolution
        """
        lookup = {str(c).upper(): str(c) for c in columns}
        resolved: dict[str, Resolution] = {}

        for var in self:
            resolution = Resolution(name=var.name, synonym=None)
            for synonym in var.synonyms:
                key = synonym.upper()
                if var.per_quarter:
                    quarter_cols = {
                        q: lookup[f"{key}{q}"]
                        for q in range(1, n_quarters + 1)
                        if f"{key}{q}" in lookup
                    }
                    if quarter_cols:
                        resolution = Resolution(var.name, synonym, quarter_cols)
                        break
                    if key in lookup:
                        resolution = Resolution(var.name, synonym, {1: lookup[key]})
                        break
                elif key in lookup:
                    resolution = Resolution(var.name, synonym, {0: lookup[key]})
                    break
            resolved[var.name] = resolution

        return resolved
