from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .config import AlderConfig
from .errors import CurveFitError
from .ld import WeightedLDCurve, jackknife_se

log = logging.getLogger(__name__)

PARAM_NAMES = ("amp", "decay", "offset")

# Initial decay-rate grid, generations (per Morgan).
DECAY_GRID = np.geomspace(0.5, 5000.0, 160)

MIN_FIT_BINS = 4


@dataclass(frozen=True)
class CurveFit:
    """f(d) = amp * exp(-decay * d) + offset, d in Morgans.

    se and jackknife are NaN / empty when fewer than 2 chromosomes are usable.
    """

    label: str
    start_bin: int
    start_dis: float  # cM
    n_bins_used: int
    params: np.ndarray  # (3,)
    se: np.ndarray  # (3,)
    jackknife: np.ndarray  # (n_rep, 3), rows aligned with `chroms`
    chroms: Tuple[object, ...] = ()

    def _idx(self, name: str) -> int:
        try:
            return PARAM_NAMES.index(name)
        except ValueError:
            raise ValueError(f"Unknown parameter '{name}' (expected one of {PARAM_NAMES})") from None

    def value(self, name: str) -> float:
        return float(self.params[self._idx(name)])

    def stderr(self, name: str) -> float:
        return float(self.se[self._idx(name)])

    def zscore(self, name: str) -> float:
        est = self.value(name)
        se = self.stderr(name)
        if not np.isfinite(se):
            return float("nan")
        if se == 0.0:
            return float("inf") if est != 0.0 else float("nan")
        return est / se

    @property
    def amp(self) -> float:
        return self.value("amp")

    @property
    def decay(self) -> float:
        return self.value("decay")

    @property
    def offset(self) -> float:
        return self.value("offset")

    @property
    def has_jackknife(self) -> bool:
        return self.jackknife.shape[0] >= 2

    def predict(self, distances_cm: np.ndarray) -> np.ndarray:
        d = np.asarray(distances_cm, dtype=np.float64) / 100.0
        return self.amp * np.exp(-self.decay * d) + self.offset


@dataclass(frozen=True)
class FitAttempt:
    offset: int
    start_bin: int
    fit: Optional[CurveFit]
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.fit is not None


@dataclass
class FitCollection:
    """Fits of one curve at several start bins, one of which is the test fit."""

    label: str
    attempts: List[FitAttempt] = field(default_factory=list)
    test_index: int = 0

    def __len__(self) -> int:
        return len(self.attempts)

    def __iter__(self) -> Iterator[FitAttempt]:
        return iter(self.attempts)

    def __getitem__(self, index: int) -> FitAttempt:
        return self.attempts[index]

    @property
    def test_attempt(self) -> FitAttempt:
        return self.attempts[self.test_index]

    @property
    def test_fit(self) -> Optional[CurveFit]:
        return self.test_attempt.fit


@dataclass(frozen=True)
class FitDiff:
    """Difference of one parameter between two fits.

    The two fits are treated as independent, so se = sqrt(se_a^2 + se_b^2)
    even when the curves share genotype data.
    """

    param: str
    label_a: str
    label_b: str
    diff: float
    se: float

    @property
    def zscore(self) -> float:
        if not np.isfinite(self.se) or self.se == 0.0:
            return float("nan")
        return self.diff / self.se


def start_bin_for(fit_start_dis: float, bin_width: float) -> int:
    return int(np.ceil(fit_start_dis / bin_width - 1e-9))


def _solve_svd(X: np.ndarray, y: np.ndarray, rcond: float) -> np.ndarray:
    """Least-squares solve via SVD; refuses rank-deficient designs."""
    if not (np.all(np.isfinite(X)) and np.all(np.isfinite(y))):
        raise CurveFitError("non-finite values in design matrix")
    U, s, Vt = np.linalg.svd(X, full_matrices=False)
    if s.size == 0 or s[0] == 0.0 or s[-1] <= rcond * s[0]:
        raise CurveFitError("rank-deficient design matrix")
    return Vt.T @ ((U.T @ y) / s)


def _linear_given_decay(
    d: np.ndarray, y: np.ndarray, sw: np.ndarray, decay: float, rcond: float
) -> Tuple[np.ndarray, float]:
    X = np.column_stack([np.exp(-decay * d), np.ones_like(d)]) * sw[:, None]
    coef = _solve_svd(X, y * sw, rcond)
    r = y * sw - X @ coef
    return np.array([coef[0], decay, coef[1]]), float(r @ r)


def _rss(theta: np.ndarray, d: np.ndarray, y: np.ndarray, sw: np.ndarray) -> float:
    r = (y - (theta[0] * np.exp(-theta[1] * d) + theta[2])) * sw
    return float(r @ r)


def _initial_guess(d: np.ndarray, y: np.ndarray, sw: np.ndarray, rcond: float) -> np.ndarray:
    best: Optional[np.ndarray] = None
    best_rss = np.inf
    for decay in DECAY_GRID:
        try:
            theta, rss = _linear_given_decay(d, y, sw, float(decay), rcond)
        except CurveFitError:
            continue
        if rss < best_rss:
            best, best_rss = theta, rss
    if best is None:
        raise CurveFitError("no decay rate gives a well-conditioned linear fit")
    return best


def _gauss_newton(
    d: np.ndarray,
    y: np.ndarray,
    sw: np.ndarray,
    theta0: np.ndarray,
    rcond: float,
    max_iter: int,
) -> np.ndarray:
    """Damped Gauss-Newton; each linearised step is solved by SVD."""
    theta = theta0.astype(np.float64).copy()
    rss = _rss(theta, d, y, sw)
    scale = np.array([max(np.abs(y).max(), 1e-300), 1e-12, max(np.abs(y).max(), 1e-300)])
    for _ in range(max_iter):
        e = np.exp(-theta[1] * d)
        r = (y - (theta[0] * e + theta[2])) * sw
        J = np.column_stack([e, -theta[0] * d * e, np.ones_like(d)]) * sw[:, None]
        step = _solve_svd(J, r, rcond)

        t = 1.0
        accepted = False
        while t >= 1e-8:
            cand = theta + t * step
            if cand[1] > 0.0:
                cand_rss = _rss(cand, d, y, sw)
                if np.isfinite(cand_rss) and cand_rss <= rss:
                    accepted = True
                    break
            t *= 0.5
        if not accepted:
            # No decrease along a descent direction: at the minimum to
            # working precision.
            return theta

        small = np.all(np.abs(t * step) <= 1e-10 * (np.abs(theta) + scale))
        theta, rss = cand, cand_rss
        if small:
            return theta
    raise CurveFitError(f"no convergence after {max_iter} iterations")


def _fit_points(
    d: np.ndarray,
    y: np.ndarray,
    sw: np.ndarray,
    rcond: float,
    max_iter: int,
    theta0: Optional[np.ndarray] = None,
) -> np.ndarray:
    if theta0 is None:
        theta0 = _initial_guess(d, y, sw, rcond)
    theta = _gauss_newton(d, y, sw, theta0, rcond, max_iter)
    if not np.all(np.isfinite(theta)):
        raise CurveFitError("non-finite parameter estimate")
    if theta[1] <= 0.0:
        raise CurveFitError("decay rate is not positive")
    return theta


def _bin_weights(se: np.ndarray) -> np.ndarray:
    """sqrt of inverse-variance weights, scaled to max 1.

    Bins without a positive finite variance get the median weight; with no
    usable variances at all every bin gets weight 1.
    """
    var = se * se
    ok = np.isfinite(var) & (var > 0)
    if not ok.any():
        return np.ones_like(se)
    w = np.empty_like(se)
    w[ok] = 1.0 / var[ok]
    w[~ok] = np.median(w[ok])
    sw = np.sqrt(w)
    return sw / sw.max()


def fit_curve(
    curve: WeightedLDCurve,
    start_bin: int,
    config: AlderConfig,
    label: Optional[str] = None,
) -> CurveFit:
    """Weighted least-squares fit of the decay model from `start_bin` onward.

    Parameter standard errors come from refitting every delete-one-chromosome
    replicate curve. Raises CurveFitError when there is no curve to report.
    """
    label = label or curve.label
    if start_bin < 0:
        raise CurveFitError(f"start bin {start_bin} is before the first bin")

    values = curve.values
    sel = np.zeros(curve.n_bins, dtype=bool)
    sel[start_bin:] = True
    sel &= curve.usable & np.isfinite(values)
    if int(sel.sum()) < MIN_FIT_BINS:
        raise CurveFitError(f"only {int(sel.sum())} usable bins from bin {start_bin}")

    d = curve.distances / 100.0
    sw_all = _bin_weights(curve.jackknife_se())

    theta = _fit_points(d[sel], values[sel], sw_all[sel], config.rcond, config.max_iter)

    chroms: Tuple[object, ...] = ()
    if curve.can_jackknife:
        reps = curve.jackknife_values()
        chroms = tuple(curve.chroms_used)
        jack = np.empty((reps.shape[0], 3), dtype=np.float64)
        for k in range(reps.shape[0]):
            rsel = sel & np.isfinite(reps[k])
            if int(rsel.sum()) < MIN_FIT_BINS:
                raise CurveFitError(f"too few bins without chromosome {chroms[k]}")
            try:
                jack[k] = _fit_points(
                    d[rsel], reps[k][rsel], sw_all[rsel], config.rcond, config.max_iter, theta0=theta
                )
            except CurveFitError as exc:
                raise CurveFitError(f"jackknife fit without chromosome {chroms[k]} failed: {exc}") from exc
        se = jackknife_se(jack)
    else:
        jack = np.empty((0, 3), dtype=np.float64)
        se = np.full(3, np.nan)

    return CurveFit(
        label=label,
        start_bin=start_bin,
        start_dis=start_bin * curve.bin_width,
        n_bins_used=int(sel.sum()),
        params=theta,
        se=se,
        jackknife=jack,
        chroms=chroms,
    )


def fit_at_starts(
    curve: WeightedLDCurve,
    fit_start_dis: float,
    config: AlderConfig,
    label: Optional[str] = None,
    offsets: Optional[Sequence[int]] = None,
    test_index: Optional[int] = None,
) -> FitCollection:
    """Fit at the nominal start bin and at each offset around it.

    Failed fits are kept as attempts with the reason, so the collection always
    has one entry per offset.
    """
    label = label or curve.label
    offsets = tuple(config.start_offsets if offsets is None else offsets)
    if test_index is None:
        test_index = offsets.index(0) if 0 in offsets else 0
    if not 0 <= test_index < len(offsets):
        raise ValueError("test_index must select one of the offsets")

    nominal = start_bin_for(fit_start_dis, curve.bin_width)
    coll = FitCollection(label=label, test_index=test_index)
    for off in offsets:
        sb = nominal + off
        try:
            fit = fit_curve(curve, sb, config, label=label)
        except CurveFitError as exc:
            log.warning("%s: no curve when fitting from bin %d: %s", label, sb, exc)
            coll.attempts.append(FitAttempt(off, sb, None, str(exc)))
            continue
        coll.attempts.append(FitAttempt(off, sb, fit))
    return coll


def fit_diff(a: CurveFit, b: CurveFit, param: str = "decay") -> FitDiff:
    """a - b for one parameter, with the independence approximation for its SE."""
    se = float(np.hypot(a.stderr(param), b.stderr(param)))
    return FitDiff(
        param=param,
        label_a=a.label,
        label_b=b.label,
        diff=a.value(param) - b.value(param),
        se=se,
    )
