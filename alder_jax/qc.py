from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np

from .io import GenotypeData, restrict_populations, select_snps

log = logging.getLogger(__name__)


@dataclass
class QCResult:
    """Filtered genotypes and aligned per-population allele frequencies."""

    data: GenotypeData
    mixed_pop: str
    ref_pops: List[str]
    keep_snp: np.ndarray  # shape (n_snp_orig,), bool, in sorted order

    # frequencies and called-allele counts after filtering, 1D over SNPs
    mixed_freq: np.ndarray
    mixed_alleles: np.ndarray
    ref_freqs: List[np.ndarray]
    ref_alleles: List[np.ndarray]

    @property
    def mixed_dosage(self) -> np.ndarray:
        return self.data.population(self.mixed_pop)

    def ref_dosage(self, name: str) -> np.ndarray:
        return self.data.population(self.ref_pops[self.ref_index(name)])

    @property
    def num_mixed(self) -> int:
        return int(self.data.population_indices(self.mixed_pop).size)

    def ref_index(self, name: str) -> int:
        return self.ref_pops.index(name)


def calcp_dosage(dosage: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Allele frequency per SNP from hard dosage calls.

    Returns:
        p: (n_snp,) float64, NaN where no individual is called.
        n_alleles: (n_snp,) number of called alleles (2 per called individual).
    """
    mask = ~np.isnan(dosage)
    num = np.nansum(dosage, axis=0, dtype=np.float64)
    den = 2.0 * mask.sum(axis=0, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        p = num / den
    p[~np.isfinite(p)] = np.nan
    return p, den


def sort_by_map(data: GenotypeData) -> Tuple[GenotypeData, np.ndarray]:
    """Order SNPs by chromosome (first-appearance order) then genetic position."""
    chrom_order: Dict[object, int] = {}
    for c in data.chrom.tolist():
        chrom_order.setdefault(c, len(chrom_order))
    rank = np.array([chrom_order[c] for c in data.chrom.tolist()], dtype=np.int64)
    order = np.lexsort((data.cm, rank))
    if np.array_equal(order, np.arange(data.n_snp)):
        return data, order
    log.info("Sorting %d SNPs by chromosome and genetic position", data.n_snp)
    return select_snps(data, order), order


def run_qc(
    data: GenotypeData,
    mixed_pop: str,
    ref_pops: Sequence[str],
) -> QCResult:
    """Align SNPs across the admixed and reference populations.

    Drops SNPs with no called genotypes in any population used and SNPs that
    are monomorphic in the admixed population. SNP order is made non-decreasing
    in genetic position within each chromosome.
    """
    ref_pops = list(ref_pops)
    for name in [mixed_pop] + ref_pops:
        if data.population_indices(name).size == 0:
            raise ValueError(f"Population '{name}' has no samples")

    data = restrict_populations(data, [mixed_pop] + ref_pops)
    data, _ = sort_by_map(data)

    p_mix, n_mix = calcp_dosage(data.population(mixed_pop))
    ref_stats = [calcp_dosage(data.population(r)) for r in ref_pops]

    keep = np.isfinite(p_mix) & (p_mix > 0.0) & (p_mix < 1.0)
    for p_ref, _ in ref_stats:
        keep &= np.isfinite(p_ref)

    n_drop = int((~keep).sum())
    if n_drop:
        log.info("QC removed %d of %d SNPs", n_drop, keep.size)

    return QCResult(
        data=select_snps(data, keep),
        mixed_pop=mixed_pop,
        ref_pops=ref_pops,
        keep_snp=keep,
        mixed_freq=p_mix[keep],
        mixed_alleles=n_mix[keep],
        ref_freqs=[p[keep] for p, _ in ref_stats],
        ref_alleles=[n[keep] for _, n in ref_stats],
    )
