"""
Survey wave identifiers and loaders.

Loaders are thin: they hand the harmonizer a raw column -> values table per
wave and nothing else. Parsing of the statistical file formats is delegated
to pandas.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable
import logging
import re

import pandas as pd

from config.settings import get_settings

logger = logging.getLogger(__name__)

WAVE_FILE_PATTERN = r"(?P<year>(?:19|20)\d{2})[_-]?q(?P<quarter>[1-4])"


@dataclass(frozen=True, order=True)
class WaveId:
    """One survey release: a rotating group first interviewed in ``year`` Q``start_quarter``."""

    year: int
    start_quarter: int = 1
    n_quarters: int = 5
    label: str = ""

    def __post_init__(self):
        if not 1 <= self.start_quarter <= 4:
            raise ValueError(f"start_quarter must be 1..4, got {self.start_quarter}")
        if self.n_quarters < 1:
            raise ValueError(f"n_quarters must be positive, got {self.n_quarters}")
        if not self.label:
            object.__setattr__(self, "label", f"{self.year}Q{self.start_quarter}")

    @property
    def start_period(self) -> pd.Period:
        return pd.Period(year=self.year, quarter=self.start_quarter, freq="Q")

    def quarter_period(self, quarter: int) -> pd.Period:
        """Calendar quarter of the wave's ``quarter``-th interview (1-based)."""
        return self.start_period + (quarter - 1)


@dataclass(frozen=True)
class RawWave:
    """Raw columns of one wave, exactly as loaded."""

    wave: WaveId
    data: pd.DataFrame
    source: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def columns(self) -> list[str]:
        return [str(c) for c in self.data.columns]

    def __len__(self) -> int:
        return len(self.data)


class WaveLoader(ABC):
    """Abstract base class for wave sources."""

    @abstractmethod
    def waves(self) -> list[WaveId]:
        """Wave identifiers available from this source."""
        pass

    @abstractmethod
    def load(self, wave: WaveId) -> RawWave:
        """Load one wave."""
        pass

    def load_all(
        self,
        start_year: int | None = None,
        end_year: int | None = None,
    ) -> dict[WaveId, RawWave]:
        """Load every wave within the survey-year range; failing waves are skipped."""
        settings = get_settings()
        start_year = settings.survey_start_year if start_year is None else start_year
        end_year = settings.survey_end_year if end_year is None else end_year

        loaded: dict[WaveId, RawWave] = {}
        for wave in sorted(self.waves()):
            if not start_year <= wave.year <= end_year:
                continue
            try:
                loaded[wave] = self.load(wave)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load wave {wave.label}: {e}")
                continue
            logger.info(f"Loaded wave {wave.label}: {len(loaded[wave]):,} rows")
        return loaded


class FrameWaveLoader(WaveLoader):
    """Serves waves already held in memory as DataFrames."""

    def __init__(self, frames: dict[WaveId, pd.DataFrame]):
        self._frames = dict(frames)

    def waves(self) -> list[WaveId]:
        return list(self._frames)

    def load(self, wave: WaveId) -> RawWave:
        if wave not in self._frames:
            raise ValueError(f"Unknown wave: {wave.label}")
        return RawWave(wave=wave, data=self._frames[wave], source="memory")


class FileWaveLoader(WaveLoader):
    """
    Reads wave files from disk with pandas.

    Supported suffixes: .dta (Stata), .sav (SPSS, needs pyreadstat),
    .csv and .parquet.
    """

    READERS = {
        ".dta": lambda p: pd.read_stata(p, convert_categoricals=False),
        ".sav": lambda p: pd.read_spss(p, convert_categoricals=False),
        ".csv": pd.read_csv,
        ".parquet": pd.read_parquet,
    }

    def __init__(self, files: dict[WaveId, Path] | Iterable[tuple[WaveId, Path]]):
        self._files = dict(files)

    def waves(self) -> list[WaveId]:
        return list(self._files)

    def load(self, wave: WaveId) -> RawWave:
        path = Path(self._files[wave])
        reader = self.READERS.get(path.suffix.lower())
        if reader is None:
            raise ValueError(f"Unsupported wave file type: {path.suffix}")
        df = reader(path)
        return RawWave(wave=wave, data=df, source=str(path))

    @classmethod
    def from_directory(
        cls,
        directory: Path,
        pattern: str = WAVE_FILE_PATTERN,
        n_quarters: int | None = None,
    ) -> "FileWaveLoader":
        """
        Discover wave files named with a year and start quarter, e.g.
        ``lgwt_2016q1.dta`` or ``aps-2019-Q2.csv``.
        """
        n_quarters = n_quarters or get_settings().quarters_per_wave
        regex = re.compile(pattern, re.IGNORECASE)
        files = {}
        for path in sorted(Path(directory).iterdir()):
            if path.suffix.lower() not in cls.READERS:
                continue
            match = regex.search(path.stem)
            if not match:
                logger.debug(f"Skipping {path.name}: no wave year/quarter in name")
                continue
            wave = WaveId(int(match.group("year")), int(match.group("quarter")), n_quarters)
            files[wave] = path
        logger.info(f"Found {len(files)} wave files in {directory}")
        return cls(files)
