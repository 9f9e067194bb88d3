from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .config import AlderConfig
from .ld import WeightedLDCurve, WeightedLDEngine

log = logging.getLogger(__name__)

DETECTED = "detected"
OVERRIDE = "override"
EXTERNAL = "external"
TOO_LONG = "too_long"
NO_DATA = "no_data"


@dataclass(frozen=True)
class CorrelationExtent:
    """Where fitting may start for one reference (or weighting scheme).

    detected: distance of the second consecutive non-significant bin (cM),
        NaN when not measured, inf when never reached.
    fit_start: distance to start fitting; inf when the reference is unusable.
    """

    label: str
    status: str
    detected: float
    fit_start: float
    curve: Optional[WeightedLDCurve] = None

    @property
    def usable(self) -> bool:
        return bool(np.isfinite(self.fit_start))

    @property
    def refused(self) -> bool:
        return self.status == TOO_LONG

    def describe(self) -> str:
        if self.status == DETECTED:
            return f"{self.label}: correlated LD extends to {self.detected:.2f} cM; fitting from {self.fit_start:.2f} cM"
        if self.status == OVERRIDE:
            return f"{self.label}: fitting from user-specified {self.fit_start:.2f} cM"
        if self.status == EXTERNAL:
            return f"{self.label}: external weights; fitting from default {self.fit_start:.2f} cM"
        if self.status == TOO_LONG:
            return f"{self.label}: correlated LD extends past {self.detected:.2f} cM (long-range LD)"
        return f"{self.label}: not enough data to measure correlated LD"


def second_failure(distances: np.ndarray, z: np.ndarray, z_thresh: float) -> float:
    """Distance of the second of two consecutive non-significant points.

    A point is significant when its z-score exceeds z_thresh; undefined
    z-scores count as non-significant. Returns inf if never reached.
    """
    failures = 0
    for d, zv in zip(distances, z):
        if np.isfinite(zv) and zv > z_thresh:
            failures = 0
            continue
        failures += 1
        if failures == 2:
            return float(d)
    return float("inf")


def classify_extent(
    label: str,
    detected: float,
    config: AlderConfig,
    curve: Optional[WeightedLDCurve] = None,
) -> CorrelationExtent:
    """Apply the floor and safety ceiling to a detected distance."""
    extent = max(config.extent_floor, detected)
    if extent > config.extent_ceiling:
        return CorrelationExtent(label, TOO_LONG, detected, float("inf"), curve)
    return CorrelationExtent(label, DETECTED, detected, extent, curve)


def detect_extent(
    engine: WeightedLDEngine,
    ref_dosage: Optional[np.ndarray],
    config: AlderConfig,
    label: str,
) -> CorrelationExtent:
    """Minimum fit-start distance beyond which background LD is undetectable.

    A user-forced `config.mindis` is returned verbatim; without reference
    genotypes (external weights) the floor distance is used. Otherwise the
    LD correlation between the admixed and reference samples is scanned
    outward bin by bin.
    """
    if config.mindis is not None:
        return CorrelationExtent(label, OVERRIDE, float("nan"), float(config.mindis))
    if ref_dosage is None:
        return CorrelationExtent(label, EXTERNAL, float("nan"), config.extent_floor)

    curve = engine.ld_correlation(
        ref_dosage,
        max_dis=config.extent_scan_max,
        label=f"LD correlation {label}",
    )
    if not curve.can_jackknife or not np.any(curve.counts > 0):
        return CorrelationExtent(label, NO_DATA, float("inf"), float("inf"), curve)

    z = curve.zscores()
    if not np.any(np.isfinite(z)):
        return CorrelationExtent(label, NO_DATA, float("inf"), float("inf"), curve)

    detected = second_failure(curve.left_edges, z, config.extent_z)
    result = classify_extent(label, detected, config, curve)
    log.info(result.describe())
    return result
