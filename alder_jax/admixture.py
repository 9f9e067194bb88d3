from __future__ import annotations

import logging
from dataclasses import dataclass, field
from math import comb
from typing import Dict, Iterator, Optional, Tuple

import numpy as np
from scipy import stats

from .config import AlderConfig
from .fit import CurveFit, FitCollection, FitDiff, fit_diff
from .ld import jackknife_se
from .popgen import F2Result

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurveSignificance:
    """Is there a decay curve at all? Based on the weaker of amp and decay."""

    label: str
    z_min: float
    p_value: float  # two-sided, uncorrected
    correction: float
    alpha: float

    @property
    def corrected_p(self) -> float:
        return min(1.0, self.p_value * self.correction)

    @property
    def significant(self) -> bool:
        return bool(np.isfinite(self.p_value)) and self.corrected_p < self.alpha


def normal_p_value(z: float) -> float:
    if not np.isfinite(z):
        return 0.0 if np.isinf(z) else float("nan")
    return float(2.0 * stats.norm.sf(abs(z)))


def curve_significance(
    fit: Optional[CurveFit],
    alpha: float = 0.05,
    correction: float = 1.0,
    label: str = "",
) -> CurveSignificance:
    if fit is None:
        return CurveSignificance(label, float("nan"), float("nan"), correction, alpha)
    z_min = min(abs(fit.zscore("amp")), abs(fit.zscore("decay")))
    return CurveSignificance(label or fit.label, z_min, normal_p_value(z_min), correction, alpha)


def mult_hyp_correction(n_eligible: int) -> float:
    """Bonferroni factor for the pairwise tests among n eligible references."""
    return float(max(1, comb(max(n_eligible, 0), 2)))


def decay_consistent(a: CurveFit, b: CurveFit, reference: CurveFit, tolerance: float) -> bool:
    return abs(a.decay - b.decay) <= tolerance * abs(reference.decay)


@dataclass
class AdmixtureTestResult:
    """Outcome of comparing a 2-ref curve with the two 1-ref curves.

    verdict is None when the test could not be run.
    """

    mixed_pop: str
    ref1: str
    ref2: str
    verdict: Optional[bool]
    reason: str
    correction: float = 1.0
    alpha: float = 0.05
    p_value: float = float("nan")
    two_ref: Optional[CurveSignificance] = None
    one_ref: Tuple[Optional[CurveSignificance], ...] = ()
    diffs: Dict[str, FitDiff] = field(default_factory=dict)
    consistent: Dict[str, bool] = field(default_factory=dict)
    fits: Tuple[Optional[CurveFit], ...] = ()
    # start offset -> comparison -> decay difference, for every offset all three curves fit
    offset_diffs: Dict[int, Dict[str, FitDiff]] = field(default_factory=dict)

    @property
    def threshold(self) -> float:
        """Per-test significance level after multiple-hypothesis correction."""
        return self.alpha / self.correction

    @property
    def tested(self) -> bool:
        return self.verdict is not None


def cannot_test(mixed_pop: str, ref1: str, ref2: str, reason: str) -> AdmixtureTestResult:
    log.warning("cannot test for admixture of %s with %s, %s: %s", mixed_pop, ref1, ref2, reason)
    return AdmixtureTestResult(mixed_pop, ref1, ref2, None, reason)


def _decay_pairs(
    two_ref: CurveFit, ref1_fit: CurveFit, ref2_fit: CurveFit, ref1: str, ref2: str
) -> Iterator[Tuple[str, CurveFit, CurveFit]]:
    yield f"1-ref {ref1} vs 2-ref", ref1_fit, two_ref
    yield f"1-ref {ref2} vs 2-ref", ref2_fit, two_ref
    yield f"1-ref {ref2} vs 1-ref {ref1}", ref2_fit, ref1_fit


def offset_decay_diffs(
    two_ref: FitCollection,
    ref1_fits: FitCollection,
    ref2_fits: FitCollection,
    ref1: str,
    ref2: str,
) -> Dict[int, Dict[str, FitDiff]]:
    """Pairwise decay differences at each start offset, to show how the
    comparison moves with the fit-start distance.

    Offsets where any of the three curves failed to fit are left out.
    """
    by_offset = [{att.offset: att.fit for att in coll} for coll in (two_ref, ref1_fits, ref2_fits)]
    out: Dict[int, Dict[str, FitDiff]] = {}
    for att in two_ref:
        fits = [fits_at.get(att.offset) for fits_at in by_offset]
        if any(f is None for f in fits):
            continue
        out[att.offset] = {
            name: fit_diff(a, b, "decay") for name, a, b in _decay_pairs(*fits, ref1, ref2)
        }
    return out


def run_admixture_test(
    two_ref: Optional[CurveFit],
    ref1_fit: Optional[CurveFit],
    ref2_fit: Optional[CurveFit],
    mixed_pop: str,
    ref1: str,
    ref2: str,
    config: AlderConfig,
    correction: float = 1.0,
) -> AdmixtureTestResult:
    """Declare admixture only if all three curves are significant and
    their decay rates agree to within config.decay_tolerance of the 2-ref decay.
    """
    alpha = config.curve_alpha
    sig2 = curve_significance(two_ref, alpha, correction, f"2-ref {ref1}-{ref2}")
    sig_a = curve_significance(ref1_fit, alpha, correction, f"1-ref {ref1}")
    sig_b = curve_significance(ref2_fit, alpha, correction, f"1-ref {ref2}")
    result = AdmixtureTestResult(
        mixed_pop=mixed_pop,
        ref1=ref1,
        ref2=ref2,
        verdict=False,
        reason="",
        correction=correction,
        alpha=alpha,
        two_ref=sig2,
        one_ref=(sig_a, sig_b),
        fits=(two_ref, ref1_fit, ref2_fit),
    )

    missing = [
        name
        for name, fit in (("2-ref", two_ref), (f"1-ref {ref1}", ref1_fit), (f"1-ref {ref2}", ref2_fit))
        if fit is None
    ]
    if missing:
        result.reason = "no curve: " + ", ".join(missing)
        return result

    for name, a, b in _decay_pairs(two_ref, ref1_fit, ref2_fit, ref1, ref2):
        result.diffs[name] = fit_diff(a, b, "decay")
        result.consistent[name] = decay_consistent(a, b, two_ref, config.decay_tolerance)

    result.p_value = max(s.corrected_p for s in (sig2, sig_a, sig_b))
    failed = [s.label for s in (sig2, sig_a, sig_b) if not s.significant]
    if failed:
        result.reason = "curve not significant: " + ", ".join(failed)
        return result

    inconsistent = [name for name, ok in result.consistent.items() if not ok]
    if inconsistent:
        result.reason = (
            f"decay rates differ by more than {100 * config.decay_tolerance:.0f}%: "
            + ", ".join(inconsistent)
        )
        return result

    result.verdict = True
    result.reason = "admixture detected"
    return result


@dataclass(frozen=True)
class MixtureBound:
    """Lower bound on the mixture fraction from a 1-ref curve (single pulse)."""

    estimate: float
    se: float
    amp: float
    f2: float


def mix_frac_from(amp: float, f2: float) -> float:
    """alpha / (1 - alpha) >= amp / (2 f2^2); returns the implied alpha bound."""
    if not np.isfinite(f2) or f2 <= 0.0:
        return float("nan")
    r = max(amp, 0.0) / (2.0 * f2 * f2)
    return r / (1.0 + r)


def mixture_fraction_bound(fit: CurveFit, f2: F2Result) -> MixtureBound:
    """Point bound from the full fit; SE from pairing fit and f2 replicates."""
    estimate = mix_frac_from(fit.amp, f2.f2)
    if not fit.has_jackknife:
        return MixtureBound(estimate, float("nan"), fit.amp, f2.f2)
    if list(fit.chroms) != list(f2.chroms):
        raise ValueError("f2 replicates must be aligned with the curve-fit chromosomes")
    reps = np.array(
        [mix_frac_from(a, f) for a, f in zip(fit.jackknife[:, 0], f2.jackknife)],
        dtype=np.float64,
    )
    se = float(jackknife_se(reps)) if np.all(np.isfinite(reps)) else float("nan")
    return MixtureBound(estimate, se, fit.amp, f2.f2)
