from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List

import numpy as np
import pandas as pd

from .admixture import AdmixtureTestResult, CurveSignificance, MixtureBound
from .fit import PARAM_NAMES, CurveFit, FitCollection
from .ld import WeightedLDCurve


def curve_table(curve: WeightedLDCurve) -> pd.DataFrame:
    """Per-bin curve values for display: distance, value, SE, pairs, usable."""
    return pd.DataFrame(
        {
            "d_cM": curve.distances,
            "weighted_LD": curve.values,
            "jackknife_se": curve.jackknife_se(),
            "pairs": curve.counts,
            "usable": curve.usable,
        }
    )


def fit_table(coll: FitCollection) -> pd.DataFrame:
    rows: List[Dict[str, object]] = []
    for i, att in enumerate(coll):
        row: Dict[str, object] = {
            "curve": coll.label,
            "test": i == coll.test_index,
            "start_bin": att.start_bin,
            "status": "ok" if att.ok else att.reason,
        }
        fit = att.fit
        for name in PARAM_NAMES:
            row[name] = fit.value(name) if fit is not None else np.nan
            row[f"{name}_se"] = fit.stderr(name) if fit is not None else np.nan
            row[f"{name}_z"] = fit.zscore(name) if fit is not None else np.nan
        row["start_cM"] = fit.start_dis if fit is not None else np.nan
        rows.append(row)
    return pd.DataFrame(rows)


def tests_table(tests: Iterable[AdmixtureTestResult]) -> pd.DataFrame:
    rows = []
    for t in tests:
        two_ref = t.fits[0] if t.fits else None
        rows.append(
            {
                "mixed": t.mixed_pop,
                "ref1": t.ref1,
                "ref2": t.ref2,
                "result": {None: "cannot test", True: "success", False: "fail"}[t.verdict],
                "p_value": t.p_value,
                "threshold": t.threshold,
                "decay_gen": two_ref.decay if two_ref is not None else np.nan,
                "decay_se": two_ref.stderr("decay") if two_ref is not None else np.nan,
                "reason": t.reason,
            }
        )
    return pd.DataFrame(rows)


def offset_diffs_table(tests: Iterable[AdmixtureTestResult]) -> pd.DataFrame:
    """One row per (test, start offset, decay comparison)."""
    rows = []
    for t in tests:
        for offset, diffs in t.offset_diffs.items():
            for name, d in diffs.items():
                rows.append(
                    {
                        "mixed": t.mixed_pop,
                        "ref1": t.ref1,
                        "ref2": t.ref2,
                        "offset": offset,
                        "comparison": name,
                        "decay_diff": d.diff,
                        "se": d.se,
                        "z": d.zscore,
                    }
                )
    return pd.DataFrame(
        rows, columns=["mixed", "ref1", "ref2", "offset", "comparison", "decay_diff", "se", "z"]
    )


def format_fit(fit: CurveFit, print_jackknife: bool = False) -> str:
    lines = [
        f"{fit.label}: fit from {fit.start_dis:.3f} cM ({fit.n_bins_used} bins)",
        "  "
        + "  ".join(
            f"{name} = {fit.value(name):.4g} +/- {fit.stderr(name):.2g} (z = {fit.zscore(name):.2f})"
            for name in PARAM_NAMES
        ),
    ]
    if print_jackknife:
        for c, row in zip(fit.chroms, fit.jackknife):
            lines.append(f"    jackknife -chr {c}: " + "  ".join(f"{v:.4g}" for v in row))
    return "\n".join(lines)


def format_test(test: AdmixtureTestResult) -> str:
    head = f"Test for admixture of {test.mixed_pop} with {test.ref1}, {test.ref2}: "
    if test.verdict is None:
        return head + f"cannot test ({test.reason})"
    status = "SUCCESS" if test.verdict else "FAIL"
    lines = [head + f"{status} (p = {test.p_value:.2g}; {test.reason})"]
    for name, diff in test.diffs.items():
        flag = "ok" if test.consistent.get(name, False) else "inconsistent"
        lines.append(
            f"  decay {name}: {diff.diff:+.2f} +/- {diff.se:.2f} (z = {diff.zscore:.2f}, {flag})"
        )
    for offset, diffs in test.offset_diffs.items():
        lines.append(
            f"  start offset {offset:+d}: "
            + "; ".join(f"{name} {d.diff:+.2f} +/- {d.se:.2f}" for name, d in diffs.items())
        )
    return "\n".join(lines)


def format_pretests(pretests: Dict[str, CurveSignificance]) -> str:
    lines = []
    for ref, sig in pretests.items():
        lines.append(
            f"{ref:>20}: {'YES' if sig.significant else 'NO':>3} (z = {sig.z_min:.2f})"
        )
    return "\n".join(lines)


def format_bound(bound: MixtureBound) -> str:
    return (
        "Mixture fraction % lower bound (assuming admixture): "
        f"{100 * bound.estimate:.1f} +/- {100 * bound.se:.1f}"
    )


def write_raw_output(
    path: str | Path,
    curves: Iterable[WeightedLDCurve],
    include_jackknife: bool = False,
) -> None:
    """Tab-separated dump of curve values (and replicate curves if requested)."""
    frames = []
    for curve in curves:
        df = curve_table(curve)
        df.insert(0, "curve", curve.label)
        if include_jackknife and curve.n_chroms_used > 0:
            reps = curve.jackknife_values()
            for c, row in zip(curve.chroms_used, reps):
                df[f"jack_{c}"] = row
        frames.append(df)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if frames:
        pd.concat(frames, ignore_index=True).to_csv(path, sep="\t", index=False)
    else:
        path.write_text("")


def write_raw_note(path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        "raw output is not written when testing with >= 3 ref pops\n"
        "(to obtain raw data, perform individual 1-ref or 2-ref runs)\n"
    )
