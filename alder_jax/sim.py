from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .io import GenotypeData


@dataclass
class SimulatedAdmixture:
    data: GenotypeData
    source_freqs: np.ndarray  # (2, n_snp) true ancestral frequencies
    generations: float
    alpha: float


def _balding_nichols(p: np.ndarray, fst: float, rng: np.random.Generator) -> np.ndarray:
    """Drift a frequency vector by Fst under the Balding-Nichols model."""
    if fst <= 0:
        return p.copy()
    if fst >= 1:
        raise ValueError("Fst must be in [0, 1)")
    p = np.clip(p, 1e-6, 1 - 1e-6)
    a = p * (1 - fst) / fst
    b = (1 - p) * (1 - fst) / fst
    return np.clip(rng.beta(a, b), 1e-6, 1 - 1e-6)


def _ancestry_haplotype(
    cm: np.ndarray,
    length_cm: float,
    generations: float,
    alpha: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """Source label (0 = first source) per SNP along one chromosome copy.

    Breakpoints are Poisson with rate `generations` per Morgan; each tract
    draws its source independently with P(source 0) = alpha.
    """
    n_breaks = rng.poisson(generations * length_cm / 100.0)
    breaks = np.sort(rng.uniform(0.0, length_cm, size=n_breaks))
    tract_src = (rng.uniform(size=n_breaks + 1) >= alpha).astype(np.int8)
    return tract_src[np.searchsorted(breaks, cm, side="right")]


def simulate_admixture(
    n_mixed: int = 40,
    n_ref: int = 20,
    n_chrom: int = 4,
    snps_per_chrom: int = 400,
    length_cm: float = 50.0,
    generations: float = 20.0,
    alpha: float = 0.3,
    fst: float = 0.1,
    ref_drift: Sequence[float] = (0.01, 0.01),
    outgroup_fst: Optional[float] = None,
    missing_rate: float = 0.0,
    seed: Optional[int] = None,
) -> SimulatedAdmixture:
    """Single-pulse admixture of two sources `generations` ago.

    Populations: ADMIX (mixed), REF_A and REF_B (samples from drifted copies
    of the two sources) and, if outgroup_fst is given, REF_C drawn from the
    ancestral frequencies with that drift.
    """
    rng = np.random.default_rng(seed)
    n_snp = n_chrom * snps_per_chrom

    chrom = np.repeat([str(c + 1) for c in range(n_chrom)], snps_per_chrom)
    cm = np.concatenate(
        [np.sort(rng.uniform(0.0, length_cm, size=snps_per_chrom)) for _ in range(n_chrom)]
    )

    p_anc = rng.uniform(0.05, 0.95, size=n_snp)
    sources = np.stack([_balding_nichols(p_anc, fst, rng) for _ in range(2)])

    mixed = np.zeros((n_mixed, n_snp), dtype=np.float32)
    snp_idx = np.arange(n_snp)
    for i in range(n_mixed):
        for _ in range(2):
            src = np.concatenate(
                [
                    _ancestry_haplotype(cm[chrom == c], length_cm, generations, alpha, rng)
                    for c in dict.fromkeys(chrom.tolist())
                ]
            )
            mixed[i] += rng.uniform(size=n_snp) < sources[src, snp_idx]

    blocks = [mixed]
    pops = ["ADMIX"] * n_mixed
    ref_names = ["REF_A", "REF_B"]
    for k, name in enumerate(ref_names):
        p_ref = _balding_nichols(sources[k], ref_drift[k], rng)
        blocks.append(rng.binomial(2, p_ref[None, :], size=(n_ref, n_snp)).astype(np.float32))
        pops += [name] * n_ref
    if outgroup_fst is not None:
        p_out = _balding_nichols(p_anc, outgroup_fst, rng)
        blocks.append(rng.binomial(2, p_out[None, :], size=(n_ref, n_snp)).astype(np.float32))
        pops += ["REF_C"] * n_ref

    dosage = np.concatenate(blocks, axis=0)
    if missing_rate > 0:
        dosage[rng.uniform(size=dosage.shape) < missing_rate] = np.nan

    sample_ids = [f"S{i+1}" for i in range(dosage.shape[0])]
    data = GenotypeData(
        sample_ids=sample_ids,
        populations=np.array(pops, dtype=str),
        chrom=chrom,
        cm=cm,
        dosage=dosage,
    )
    return SimulatedAdmixture(data=data, source_freqs=sources, generations=generations, alpha=alpha)
