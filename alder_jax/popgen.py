from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

import numpy as np


@dataclass
class F2Result:
    """Unbiased f2 between two populations with delete-one-chromosome replicates."""

    f2: float
    jackknife: np.ndarray  # (n_chroms,), aligned with `chroms`
    chroms: List[object]


def subtract_freqs(ref_freqs: Sequence[np.ndarray], r1: int, r2: int) -> np.ndarray:
    """2-ref weights: difference of two reference frequency vectors."""
    return np.asarray(ref_freqs[r1], dtype=np.float64) - np.asarray(ref_freqs[r2], dtype=np.float64)


def one_ref_weights(ref_freq: np.ndarray, mixed_freq: np.ndarray) -> np.ndarray:
    """1-ref weights: reference frequency minus the admixed population's own."""
    return np.asarray(ref_freq, dtype=np.float64) - np.asarray(mixed_freq, dtype=np.float64)


def f2_per_snp(
    p_a: np.ndarray,
    n_a: np.ndarray,
    p_b: np.ndarray,
    n_b: np.ndarray,
) -> np.ndarray:
    """Sample-size corrected (p_a - p_b)^2 per SNP.

    n_a / n_b are called allele counts; SNPs with fewer than 2 alleles in
    either population give NaN.
    """
    p_a = np.asarray(p_a, dtype=np.float64)
    p_b = np.asarray(p_b, dtype=np.float64)
    n_a = np.asarray(n_a, dtype=np.float64)
    n_b = np.asarray(n_b, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        h_a = p_a * (1.0 - p_a) / (n_a - 1.0)
        h_b = p_b * (1.0 - p_b) / (n_b - 1.0)
        out = (p_a - p_b) ** 2 - h_a - h_b
    out[(n_a < 2) | (n_b < 2)] = np.nan
    return out


def f2_jackknife(
    p_a: np.ndarray,
    n_a: np.ndarray,
    p_b: np.ndarray,
    n_b: np.ndarray,
    chrom: np.ndarray,
    chroms_used: Sequence[object],
) -> F2Result:
    """f2 averaged over SNPs, with one replicate per chromosome in `chroms_used`.

    Each replicate is the SNP average with that chromosome removed, so the
    replicates line up with the curve jackknife when `chroms_used` is taken
    from the weighted-LD curve.
    """
    vals = f2_per_snp(p_a, n_a, p_b, n_b)
    ok = np.isfinite(vals)
    total_sum = float(vals[ok].sum())
    total_n = int(ok.sum())
    if total_n == 0:
        raise ValueError("f2 is undefined: no SNP has called alleles in both populations")

    jacks = np.empty(len(chroms_used), dtype=np.float64)
    chrom = np.asarray(chrom)
    for i, c in enumerate(chroms_used):
        in_c = ok & (chrom == c)
        n_rest = total_n - int(in_c.sum())
        jacks[i] = (total_sum - float(vals[in_c].sum())) / n_rest if n_rest > 0 else np.nan
    return F2Result(f2=total_sum / total_n, jackknife=jacks, chroms=list(chroms_used))
