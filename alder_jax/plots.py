from __future__ import annotations

from pathlib import Path
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np

from .fit import CurveFit
from .ld import WeightedLDCurve


def plot_curve(
    curve: WeightedLDCurve,
    out_png: Path,
    fit: Optional[CurveFit] = None,
    fit_start: Optional[float] = None,
) -> None:
    """Weighted LD against distance with jackknife error bars and the fitted decay."""
    d = curve.distances
    y = curve.values
    se = curve.jackknife_se()
    ok = np.isfinite(y)

    plt.figure(figsize=(7, 4.5))
    shown_se = np.where(np.isfinite(se), se, 0.0)
    plt.errorbar(
        d[ok & curve.usable],
        y[ok & curve.usable],
        yerr=shown_se[ok & curve.usable],
        fmt="o",
        ms=2,
        lw=0.5,
        alpha=0.7,
        label="weighted LD",
    )
    if np.any(ok & ~curve.usable):
        plt.scatter(d[ok & ~curve.usable], y[ok & ~curve.usable], s=4, color="0.6", label="too few pairs")

    if fit is not None:
        xs = np.linspace(fit.start_dis, curve.max_dis, 300)
        plt.plot(
            xs,
            fit.predict(xs),
            color="C3",
            label=f"fit: decay {fit.decay:.1f} +/- {fit.stderr('decay'):.1f} gen",
        )
    if fit_start is not None and np.isfinite(fit_start):
        plt.axvline(fit_start, color="0.4", ls="--", lw=0.8)

    plt.axhline(0.0, color="0.8", lw=0.8)
    plt.xlabel("d (cM)")
    plt.ylabel("weighted LD")
    plt.title(curve.label or "weighted LD")
    plt.legend(fontsize="small")
    plt.tight_layout()
    out_png.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(out_png, dpi=150)
    plt.close()
