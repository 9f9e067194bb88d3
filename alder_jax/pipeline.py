from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, List, Optional, Tuple, Union

import numpy as np

from .admixture import (
    AdmixtureTestResult,
    CurveSignificance,
    MixtureBound,
    cannot_test,
    curve_significance,
    mixture_fraction_bound,
    mult_hyp_correction,
    offset_decay_diffs,
    run_admixture_test,
)
from .config import AlderConfig
from .errors import ConfigurationError, ExtentRefusedError, InsufficientDataError
from .extent import NO_DATA, TOO_LONG, CorrelationExtent, detect_extent
from .fit import FitCollection, fit_at_starts
from .ld import WeightedLDCurve, WeightedLDEngine
from .popgen import f2_jackknife, one_ref_weights, subtract_freqs
from .qc import QCResult

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SingleReference:
    ref: str


@dataclass(frozen=True)
class PairedReference:
    ref1: str
    ref2: str


@dataclass(frozen=True)
class ExternalWeights:
    weights: np.ndarray


@dataclass(frozen=True)
class MultiReference:
    refs: Tuple[str, ...]


RunPlan = Union[SingleReference, PairedReference, ExternalWeights, MultiReference]


def plan_run(
    qc_result: QCResult,
    config: AlderConfig,
    weights: Optional[np.ndarray] = None,
) -> RunPlan:
    """Validate the configuration and choose the protocol for this run."""
    refs = qc_result.ref_pops
    config.validate(qc_result.num_mixed, len(refs), external_weights=weights is not None)
    if weights is not None:
        weights = np.asarray(weights, dtype=np.float64)
        if weights.shape[0] != qc_result.data.n_snp:
            raise ConfigurationError("external weights must have one value per retained SNP")
        return ExternalWeights(weights)
    if len(refs) == 1:
        return SingleReference(refs[0])
    if len(refs) == 2:
        return PairedReference(refs[0], refs[1])
    return MultiReference(tuple(refs))


@dataclass
class RunResult:
    mode: str
    mixed_pop: str
    curves: Dict[str, WeightedLDCurve] = field(default_factory=dict)
    fits: Dict[str, FitCollection] = field(default_factory=dict)
    extents: Dict[str, CorrelationExtent] = field(default_factory=dict)
    fit_starts: Dict[str, float] = field(default_factory=dict)
    tests: List[AdmixtureTestResult] = field(default_factory=list)
    pretests: Dict[str, CurveSignificance] = field(default_factory=dict)
    correction: float = 1.0
    mixture_bound: Optional[MixtureBound] = None
    refusal: str = ""
    messages: List[str] = field(default_factory=list)

    @property
    def refused(self) -> bool:
        return bool(self.refusal)

    @property
    def primary_label(self) -> Optional[str]:
        """Label of the curve the run reports (1-ref, 2-ref or external)."""
        return next(iter(self.curves), None) if self.mode != "multi" else None


def two_ref_label(r1: str, r2: str) -> str:
    return f"2-ref {r1};{r2}"


def one_ref_label(r: str) -> str:
    return f"1-ref {r}"


class AlderRun:
    """One run over a QC'd dataset, dispatched once on the reference protocol."""

    def __init__(self, qc_result: QCResult, config: AlderConfig) -> None:
        self.qc = qc_result
        self.config = config
        self.engine = WeightedLDEngine(
            chrom=qc_result.data.chrom,
            cm=qc_result.data.cm,
            mixed_dosage=qc_result.mixed_dosage,
            config=config,
        )
        self._extents: Dict[str, CorrelationExtent] = {}
        self.result = RunResult(mode="", mixed_pop=qc_result.mixed_pop)

    # -- helpers ---------------------------------------------------------

    def note(self, message: str) -> None:
        log.warning(message)
        self.result.messages.append(message)

    def extent_for(self, ref: str) -> CorrelationExtent:
        if ref not in self._extents:
            ref_dosage = self.qc.ref_dosage(ref)
            self._extents[ref] = detect_extent(self.engine, ref_dosage, self.config, ref)
            self.result.extents[ref] = self._extents[ref]
        return self._extents[ref]

    def resolve_start(self, refs: Tuple[str, ...]) -> float:
        """Fit-start distance for a weighting built from `refs` (max over refs)."""
        if self.config.mindis is not None:
            return float(self.config.mindis)
        starts = []
        for ref in refs:
            ext = self.extent_for(ref)
            if ext.status == TOO_LONG:
                raise ExtentRefusedError(ref, ext.detected, self.config.extent_ceiling)
            if ext.status == NO_DATA:
                raise InsufficientDataError(ext.describe())
            starts.append(ext.fit_start)
        return max(starts)

    def weighted_fits(
        self, label: str, weights: np.ndarray, fit_start: float
    ) -> Tuple[WeightedLDCurve, FitCollection]:
        curve = self.engine.weighted_ld(weights, label=label)
        fits = fit_at_starts(curve, fit_start, self.config, label=label)
        self.result.curves[label] = curve
        self.result.fits[label] = fits
        self.result.fit_starts[label] = fit_start
        return curve, fits

    def one_ref_fits(self, ref: str, fit_start: float) -> Tuple[WeightedLDCurve, FitCollection]:
        r = self.qc.ref_index(ref)
        weights = one_ref_weights(self.qc.ref_freqs[r], self.qc.mixed_freq)
        return self.weighted_fits(one_ref_label(ref), weights, fit_start)

    def two_ref_fits(
        self, ref1: str, ref2: str, fit_start: float
    ) -> Tuple[WeightedLDCurve, FitCollection]:
        weights = subtract_freqs(
            self.qc.ref_freqs, self.qc.ref_index(ref1), self.qc.ref_index(ref2)
        )
        return self.weighted_fits(two_ref_label(ref1, ref2), weights, fit_start)

    # -- protocols -------------------------------------------------------

    def execute(self, plan: RunPlan) -> RunResult:
        if self.config.mindis is not None:
            self.note(f"using user-specified mindis = {self.config.mindis:.3f} cM for all fits")
        if self.config.print_jackknife and self.engine.n_chroms_available < 2:
            self.note("jackknife output requested, but need data from >= 2 chroms to jackknife")

        if isinstance(plan, SingleReference):
            self.result.mode = "1-ref"
            self._guard_refusal(self._single, plan)
        elif isinstance(plan, PairedReference):
            self.result.mode = "2-ref"
            self._guard_refusal(self._paired, plan)
        elif isinstance(plan, ExternalWeights):
            self.result.mode = "external"
            self._external(plan)
        elif isinstance(plan, MultiReference):
            self.result.mode = "multi"
            self._multi(plan)
        else:
            raise TypeError(f"Unknown run plan {plan!r}")
        return self.result

    def _guard_refusal(self, step, plan) -> None:
        try:
            step(plan)
        except ExtentRefusedError as exc:
            self.result.refusal = str(exc)
            self.note(str(exc))
        except InsufficientDataError as exc:
            self.note(f"cannot fit: {exc}")

    def _single(self, plan: SingleReference) -> None:
        fit_start = self.resolve_start((plan.ref,))
        curve, fits = self.one_ref_fits(plan.ref, fit_start)

        fit = fits.test_fit
        if fit is None:
            self.note(f"cannot compute mixture fraction bound: no 1-ref curve with {plan.ref}")
            return
        if not curve.can_jackknife:
            self.note("cannot compute mixture fraction bound: need >= 2 chroms to jackknife")
            return
        r = self.qc.ref_index(plan.ref)
        f2 = f2_jackknife(
            self.qc.ref_freqs[r],
            self.qc.ref_alleles[r],
            self.qc.mixed_freq,
            self.qc.mixed_alleles,
            self.qc.data.chrom,
            fit.chroms,
        )
        self.result.mixture_bound = mixture_fraction_bound(fit, f2)

    def run_pair_test(
        self,
        two_ref: FitCollection,
        ref1_fits: FitCollection,
        ref2_fits: FitCollection,
        r1: str,
        r2: str,
        correction: float,
    ) -> AdmixtureTestResult:
        test = run_admixture_test(
            two_ref.test_fit,
            ref1_fits.test_fit,
            ref2_fits.test_fit,
            self.qc.mixed_pop,
            r1,
            r2,
            self.config,
            correction=correction,
        )
        test.offset_diffs = offset_decay_diffs(two_ref, ref1_fits, ref2_fits, r1, r2)
        self.result.tests.append(test)
        return test

    def _paired(self, plan: PairedReference) -> None:
        r1, r2 = plan.ref1, plan.ref2
        fit_start = self.resolve_start((r1, r2))
        curve, fits = self.two_ref_fits(r1, r2, fit_start)

        if not curve.can_jackknife:
            self.result.tests.append(
                cannot_test(self.qc.mixed_pop, r1, r2, "need >= 2 chroms to jackknife")
            )
            return

        one_ref = {}
        for ref in (r1, r2):
            _, coll = self.one_ref_fits(ref, self.resolve_start((ref,)))
            one_ref[ref] = coll

        self.run_pair_test(fits, one_ref[r1], one_ref[r2], r1, r2, correction=1.0)

    def _external(self, plan: ExternalWeights) -> None:
        if self.config.mindis is None:
            fit_start = self.config.extent_floor
            self.note(f"external weights without mindis: fitting from default {fit_start:.2f} cM")
        else:
            fit_start = float(self.config.mindis)
        self.weighted_fits("external weights", plan.weights, fit_start)
        self.result.tests.append(
            cannot_test(self.qc.mixed_pop, "external", "external", "need reference genotypes")
        )

    def _multi(self, plan: MultiReference) -> None:
        if self.engine.n_chroms_available < 2:
            raise ConfigurationError("cannot test for admixture: need >= 2 chroms to jackknife")
        if self.config.raw_out is not None:
            self.note("raw output is not written when testing with >= 3 ref pops")

        starts: Dict[str, float] = {}
        pre_fits: Dict[str, FitCollection] = {}
        eligible: List[str] = []
        for ref in plan.refs:
            ext = self.extent_for(ref) if self.config.mindis is None else None
            if ext is not None and not ext.usable:
                self.note(f"pre-test {ref}: cannot pre-test ({ext.describe()})")
                continue
            starts[ref] = ext.fit_start if ext is not None else float(self.config.mindis)
            _, coll = self.one_ref_fits(ref, starts[ref])
            pre_fits[ref] = coll
            sig = curve_significance(
                coll.test_fit, self.config.curve_alpha, 1.0, one_ref_label(ref)
            )
            self.result.pretests[ref] = sig
            if sig.significant:
                eligible.append(ref)
            else:
                self.note(f"pre-test {ref}: no significant 1-ref curve; excluded from pairwise tests")

        self.result.correction = mult_hyp_correction(len(eligible))
        log.info(
            "%d of %d references pass the pre-test; correction factor %.0f",
            len(eligible),
            len(plan.refs),
            self.result.correction,
        )

        for r1, r2 in combinations(eligible, 2):
            fit_start = max(starts[r1], starts[r2])
            _, fits = self.two_ref_fits(r1, r2, fit_start)
            self.run_pair_test(
                fits, pre_fits[r1], pre_fits[r2], r1, r2, correction=self.result.correction
            )


def run_alder(
    qc_result: QCResult,
    config: AlderConfig,
    weights: Optional[np.ndarray] = None,
) -> RunResult:
    """Plan and execute a run; ConfigurationError propagates to the caller."""
    plan = plan_run(qc_result, config, weights)
    return AlderRun(qc_result, config).execute(plan)
