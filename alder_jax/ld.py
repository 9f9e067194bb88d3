from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np

from .config import AlderConfig, bins_to
from .io import chromosome_bounds

log = logging.getLogger(__name__)

# Block products must match the pairwise float64 sums.
jax.config.update("jax_enable_x64", True)

# Left-hand SNPs per block in the optimised accumulator.
BLOCK_SNPS = 256


def jackknife_se(replicates: np.ndarray) -> np.ndarray:
    """Delete-one-block jackknife standard error along axis 0.

    se = sqrt((n - 1) / n * sum_k (theta_k - mean(theta))^2)

    One replicate gives 0 (nothing to resample); zero replicates give NaN.
    """
    reps = np.asarray(replicates, dtype=np.float64)
    n = reps.shape[0]
    if n == 0:
        return np.full(reps.shape[1:], np.nan)
    if n == 1:
        return np.zeros(reps.shape[1:])
    dev = reps - reps.mean(axis=0)
    return np.sqrt((n - 1.0) / n * np.sum(dev * dev, axis=0))


@dataclass
class WeightedLDCurve:
    """Binned weighted LD with per-chromosome partial sums.

    chrom_sums[c, b] / chrom_counts[c, b] hold chromosome c's additive
    contribution to bin b, so a delete-one-chromosome replicate is
    (sums - chrom_sums[c]) / (counts - chrom_counts[c]).
    """

    label: str
    bin_width: float
    max_dis: float
    chroms: List[object]
    chrom_sums: np.ndarray  # (n_chrom, n_bins), float64
    chrom_counts: np.ndarray  # (n_chrom, n_bins), int64
    min_bin_pairs: int = 1
    elapsed: float = field(default=0.0, compare=False)

    @property
    def n_bins(self) -> int:
        return int(self.chrom_sums.shape[1])

    @property
    def left_edges(self) -> np.ndarray:
        return np.arange(self.n_bins) * self.bin_width

    @property
    def distances(self) -> np.ndarray:
        """Bin centres in cM."""
        return (np.arange(self.n_bins) + 0.5) * self.bin_width

    @property
    def sums(self) -> np.ndarray:
        return self.chrom_sums.sum(axis=0)

    @property
    def counts(self) -> np.ndarray:
        return self.chrom_counts.sum(axis=0)

    @property
    def values(self) -> np.ndarray:
        counts = self.counts
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(counts > 0, self.sums / counts, np.nan)

    @property
    def usable(self) -> np.ndarray:
        """Bins with enough pairs to enter a fit (others are display-only)."""
        return (self.counts >= self.min_bin_pairs) & (self.counts > 0)

    @property
    def used_mask(self) -> np.ndarray:
        return self.chrom_counts.sum(axis=1) > 0

    @property
    def chroms_used(self) -> List[object]:
        return [c for c, u in zip(self.chroms, self.used_mask) if u]

    @property
    def n_chroms_used(self) -> int:
        return int(self.used_mask.sum())

    @property
    def can_jackknife(self) -> bool:
        return self.n_chroms_used >= 2

    def jackknife_values(self) -> np.ndarray:
        """Replicate curves, one row per chromosome with data."""
        sums = self.sums
        counts = self.counts
        rep_sums = sums[None, :] - self.chrom_sums[self.used_mask]
        rep_counts = counts[None, :] - self.chrom_counts[self.used_mask]
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(rep_counts > 0, rep_sums / rep_counts, np.nan)

    def jackknife_se(self) -> np.ndarray:
        return jackknife_se(self.jackknife_values())

    def drop_chrom(self, index: int) -> "WeightedLDCurve":
        """The curve with chromosome `index` (position in `chroms`) removed."""
        keep = np.arange(len(self.chroms)) != index
        return WeightedLDCurve(
            label=self.label,
            bin_width=self.bin_width,
            max_dis=self.max_dis,
            chroms=[c for c, k in zip(self.chroms, keep) if k],
            chrom_sums=self.chrom_sums[keep],
            chrom_counts=self.chrom_counts[keep],
            min_bin_pairs=self.min_bin_pairs,
        )

    def zscores(self) -> np.ndarray:
        se = self.jackknife_se()
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(se > 0, self.values / se, np.nan)


@dataclass
class _PairSource:
    """Mean-centred dosages with missing calls set to 0, plus the call mask."""

    centred: np.ndarray  # (n_ind, n_snp), float64
    called: np.ndarray  # (n_ind, n_snp), float64 0/1

    @classmethod
    def from_dosage(cls, dosage: np.ndarray) -> "_PairSource":
        g = np.asarray(dosage, dtype=np.float64)
        called = ~np.isnan(g)
        n = called.sum(axis=0)
        with np.errstate(divide="ignore", invalid="ignore"):
            mean = np.where(n > 0, np.nansum(g, axis=0) / n, 0.0)
        centred = np.where(called, g - mean[None, :], 0.0)
        return cls(centred=centred, called=called.astype(np.float64))

    def slice(self, a: int, b: int) -> "_PairSource":
        return _PairSource(self.centred[:, a:b], self.called[:, a:b])


def _bin_index(d: np.ndarray, bin_width: float, n_bins: int) -> np.ndarray:
    return np.minimum(np.floor(d / bin_width).astype(np.int64), n_bins - 1)


def accumulate_naive(
    cm: np.ndarray,
    mixed: _PairSource,
    n_bins: int,
    bin_width: float,
    max_dis: float,
    min_count: int,
    weights: Optional[np.ndarray] = None,
    ref: Optional[_PairSource] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Direct evaluation of every SNP pair on one chromosome."""
    sums = np.zeros(n_bins, dtype=np.float64)
    counts = np.zeros(n_bins, dtype=np.int64)
    m = cm.shape[0]
    for i in range(m):
        for j in range(i + 1, m):
            d = cm[j] - cm[i]
            if d >= max_dis:
                break
            n_ij = float(mixed.called[:, i] @ mixed.called[:, j])
            if n_ij < min_count:
                continue
            cov = float(mixed.centred[:, i] @ mixed.centred[:, j]) / (n_ij - 1.0)
            if ref is None:
                pair_weight = weights[i] * weights[j]
            else:
                n_ref = float(ref.called[:, i] @ ref.called[:, j])
                if n_ref < 2:
                    continue
                pair_weight = float(ref.centred[:, i] @ ref.centred[:, j]) / (n_ref - 1.0)
            b = int(_bin_index(np.array([d]), bin_width, n_bins)[0])
            sums[b] += pair_weight * cov
            counts[b] += 1
    return sums, counts


def _block_products(left: np.ndarray, right: np.ndarray) -> np.ndarray:
    lhs = jnp.asarray(left, dtype=jnp.float64)
    rhs = jnp.asarray(right, dtype=jnp.float64)
    return np.asarray(lhs.T @ rhs, dtype=np.float64)


def accumulate_blocked(
    cm: np.ndarray,
    mixed: _PairSource,
    n_bins: int,
    bin_width: float,
    max_dis: float,
    min_count: int,
    weights: Optional[np.ndarray] = None,
    ref: Optional[_PairSource] = None,
    block: int = BLOCK_SNPS,
) -> Tuple[np.ndarray, np.ndarray]:
    """Same sums as accumulate_naive, from block matrix products.

    Each block of left SNPs is multiplied against the window of SNPs that can
    lie within max_dis of it; pair selection and binning are vectorised.
    """
    sums = np.zeros(n_bins, dtype=np.float64)
    counts = np.zeros(n_bins, dtype=np.int64)
    m = cm.shape[0]
    for s0 in range(0, m, block):
        s1 = min(m, s0 + block)
        e = min(m, int(np.searchsorted(cm, cm[s1 - 1] + max_dis, side="right")) + 1)

        ii = np.arange(s0, s1)[:, None]
        jj = np.arange(s0, e)[None, :]
        d = cm[jj] - cm[ii]
        keep = (jj > ii) & (d < max_dis)
        if not keep.any():
            continue

        n_pair = _block_products(mixed.called[:, s0:s1], mixed.called[:, s0:e])
        keep &= n_pair >= min_count
        if ref is not None:
            n_ref = _block_products(ref.called[:, s0:s1], ref.called[:, s0:e])
            keep &= n_ref >= 2
        if not keep.any():
            continue

        cross = _block_products(mixed.centred[:, s0:s1], mixed.centred[:, s0:e])
        cov = cross[keep] / (n_pair[keep] - 1.0)
        if ref is None:
            pair_weight = (weights[s0:s1, None] * weights[None, s0:e])[keep]
        else:
            ref_cross = _block_products(ref.centred[:, s0:s1], ref.centred[:, s0:e])
            pair_weight = ref_cross[keep] / (n_ref[keep] - 1.0)

        b = _bin_index(d[keep], bin_width, n_bins)
        sums += np.bincount(b, weights=pair_weight * cov, minlength=n_bins)
        counts += np.bincount(b, minlength=n_bins)
    return sums, counts


@dataclass
class WeightedLDEngine:
    """Weighted-LD accumulation for one admixed population.

    Genotypes are borrowed read-only; each call owns its own accumulators.
    Chromosomes are distributed over a fixed pool of `config.threads` workers
    and reduced in chromosome order, so results do not depend on scheduling.
    """

    chrom: np.ndarray
    cm: np.ndarray
    mixed_dosage: np.ndarray  # (n_mixed, n_snp)
    config: AlderConfig

    def __post_init__(self) -> None:
        if self.mixed_dosage.shape[1] != self.cm.shape[0]:
            raise ValueError("mixed dosage must have one column per SNP")
        self.cm = np.asarray(self.cm, dtype=np.float64)
        self._bounds = chromosome_bounds(self.chrom)
        self._mixed = _PairSource.from_dosage(self.mixed_dosage)

    @property
    def n_chroms_available(self) -> int:
        """Chromosomes holding at least one SNP pair."""
        return sum(1 for _, a, b in self._bounds if b - a >= 2)

    def weighted_ld(self, weights: np.ndarray, label: str = "") -> WeightedLDCurve:
        """Curve of sum(w_i w_j cov_ij) / pairs by genetic distance."""
        weights = np.asarray(weights, dtype=np.float64)
        if weights.shape != self.cm.shape:
            raise ValueError("weights must have one value per SNP")
        return self._run(label, self.config.max_dis, self.config.bin_width, weights=weights)

    def ld_correlation(
        self,
        ref_dosage: np.ndarray,
        max_dis: float,
        label: str = "",
    ) -> WeightedLDCurve:
        """Curve of sum(cov^mixed_ij cov^ref_ij) / pairs: LD shared with a reference."""
        ref = _PairSource.from_dosage(ref_dosage)
        return self._run(label, max_dis, self.config.bin_width, ref=ref)

    def _run(
        self,
        label: str,
        max_dis: float,
        bin_width: float,
        weights: Optional[np.ndarray] = None,
        ref: Optional[_PairSource] = None,
    ) -> WeightedLDCurve:
        t0 = time.perf_counter()
        n_bins = bins_to(max_dis, bin_width)
        accumulate = accumulate_naive if self.config.naive else accumulate_blocked

        def one_chrom(bounds: Tuple[object, int, int]) -> Tuple[np.ndarray, np.ndarray]:
            _, a, b = bounds
            return accumulate(
                self.cm[a:b],
                self._mixed.slice(a, b),
                n_bins,
                bin_width,
                max_dis,
                self.config.min_count,
                weights=None if weights is None else weights[a:b],
                ref=None if ref is None else ref.slice(a, b),
            )

        if self.config.threads > 1 and len(self._bounds) > 1:
            with ThreadPoolExecutor(max_workers=self.config.threads) as pool:
                parts = list(pool.map(one_chrom, self._bounds))
        else:
            parts = [one_chrom(bnd) for bnd in self._bounds]

        chrom_sums = np.zeros((len(parts), n_bins), dtype=np.float64)
        chrom_counts = np.zeros((len(parts), n_bins), dtype=np.int64)
        for k, (s, c) in enumerate(parts):
            chrom_sums[k] = s
            chrom_counts[k] = c

        curve = WeightedLDCurve(
            label=label,
            bin_width=bin_width,
            max_dis=max_dis,
            chroms=[c for c, _, _ in self._bounds],
            chrom_sums=chrom_sums,
            chrom_counts=chrom_counts,
            min_bin_pairs=self.config.min_bin_pairs,
            elapsed=time.perf_counter() - t0,
        )
        log.info(
            "%s: %d SNP pairs in %d bins from %d chromosomes (%.2fs, %s)",
            label or "weighted LD",
            int(curve.counts.sum()),
            n_bins,
            curve.n_chroms_used,
            curve.elapsed,
            "naive" if self.config.naive else "blocked",
        )
        return curve
