from __future__ import annotations

import math
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Tuple

from .errors import ConfigurationError


def bins_to(distance: float, bin_width: float) -> int:
    """Number of bins of width `bin_width` needed to cover [0, distance)."""
    return max(1, int(math.ceil(distance / bin_width - 1e-9)))


@dataclass(frozen=True)
class AlderConfig:
    """Parameter bundle for one run; constructed once and passed explicitly.

    Distances are in centiMorgans.
    """

    bin_width: float = 0.05
    max_dis: float = 30.0
    min_count: int = 4  # individuals called at both SNPs of a pair
    min_bin_pairs: int = 1  # SNP pairs for a bin to be used in fitting
    threads: int = 1
    naive: bool = False
    mindis: Optional[float] = None
    print_jackknife: bool = False
    print_jackknife_fits: bool = False
    raw_out: Optional[Path] = None

    # Fitting
    rcond: float = 1e-10
    start_offsets: Tuple[int, ...] = (-2, -1, 0, 1, 2)
    max_iter: int = 200

    # Correlated-LD detection
    extent_floor: float = 0.5
    extent_ceiling: float = 2.0
    extent_scan_max: float = 5.0
    extent_z: float = 1.96

    # Tests
    curve_alpha: float = 0.05
    decay_tolerance: float = 0.25

    @property
    def n_bins(self) -> int:
        return bins_to(self.max_dis, self.bin_width)

    @property
    def test_offset_index(self) -> int:
        """Position of offset 0 in start_offsets (the designated test fit)."""
        return self.start_offsets.index(0)

    def with_overrides(self, **kwargs) -> "AlderConfig":
        return replace(self, **kwargs)

    def validate(
        self,
        num_mixed: int,
        num_refs: int,
        external_weights: bool = False,
    ) -> None:
        """Check the bundle against the data; raise ConfigurationError if unusable."""
        if self.bin_width <= 0 or self.max_dis <= 0:
            raise ConfigurationError("bin width and max distance must be positive")
        if self.max_dis < self.bin_width:
            raise ConfigurationError("max distance must cover at least one bin")
        if self.threads < 1:
            raise ConfigurationError("thread count must be >= 1")
        if self.min_bin_pairs < 1:
            raise ConfigurationError("minimum pairs per bin must be >= 1")
        if 0 not in self.start_offsets:
            raise ConfigurationError("start offsets must include 0 (the test fit)")
        if self.mindis is not None and self.mindis < 0:
            raise ConfigurationError("mindis must be non-negative")
        if self.rcond <= 0 or self.rcond >= 1:
            raise ConfigurationError("rcond must lie in (0, 1)")
        if self.min_count < 2:
            raise ConfigurationError("mincount must be >= 2 to estimate covariance")
        if self.min_count > num_mixed:
            raise ConfigurationError(
                f"mincount ({self.min_count}) must be <= number of mixed "
                f"individuals ({num_mixed})"
            )
        if not external_weights:
            if num_refs == 0:
                raise ConfigurationError("no data from reference populations")
            if num_refs == 1 and self.min_count < 4:
                raise ConfigurationError(
                    "mincount must be >= 4 to compute single-reference LD"
                )
