from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import zarr


@dataclass
class GenotypeData:
    """Allele dosages for all sampled individuals, laid out for fast column access.

    - n_ind: number of individuals across all populations
    - n_snp: number of SNPs
    - dosage[i,s]: 0/1/2 copies of the counted allele, NaN if missing
    - cm[s]: genetic-map position in centiMorgans
    """

    sample_ids: List[str]
    populations: np.ndarray  # (n_ind,), str
    chrom: np.ndarray  # (n_snp,)
    cm: np.ndarray  # (n_snp,), float64
    dosage: np.ndarray  # (n_ind, n_snp), float32

    def __post_init__(self) -> None:
        if self.dosage.shape != (len(self.sample_ids), self.chrom.shape[0]):
            raise ValueError("dosage must have shape (n_ind, n_snp)")
        if self.cm.shape != self.chrom.shape:
            raise ValueError("chrom and cm must have the same length")
        if self.populations.shape[0] != len(self.sample_ids):
            raise ValueError("one population label is required per sample")

    @property
    def n_ind(self) -> int:
        return int(self.dosage.shape[0])

    @property
    def n_snp(self) -> int:
        return int(self.dosage.shape[1])

    def population_names(self) -> List[str]:
        return list(dict.fromkeys(self.populations.tolist()))

    def population_indices(self, name: str) -> np.ndarray:
        return np.flatnonzero(self.populations == name)

    def population(self, name: str) -> np.ndarray:
        """Dosage rows (n_pop, n_snp) for one population."""
        idx = self.population_indices(name)
        if idx.size == 0:
            raise ValueError(f"Population '{name}' has no samples")
        return self.dosage[idx, :]

    def chromosome_bounds(self) -> List[Tuple[object, int, int]]:
        return chromosome_bounds(self.chrom)

    def is_map_sorted(self) -> bool:
        for _, a, b in self.chromosome_bounds():
            if np.any(np.diff(self.cm[a:b]) < 0):
                return False
        return True


def _parse_dosage(values: pd.Series) -> np.ndarray:
    g = pd.to_numeric(values, errors="coerce").to_numpy(dtype=np.float32)
    g[(g == 9) | (g < 0)] = np.nan
    if np.any(g[np.isfinite(g)] > 2):
        raise ValueError(f"Dosage column {values.name} has values outside 0/1/2")
    return g


def read_genotype_table(path: str | Path, pop_file: str | Path) -> GenotypeData:
    """Read a tab-delimited dosage table plus a population assignment CSV.

    Table columns: CHROM, CM, sample1, sample2, ... with dosages 0/1/2 and
    9 or NA for missing calls. The population CSV needs sample_id and pop columns.
    """
    path = Path(path)
    df = pd.read_table(path, dtype=str)
    if df.shape[1] < 3:
        raise ValueError(f"Genotype file {path} must have at least CHROM, CM and one sample column")

    chrom = df.iloc[:, 0].to_numpy()
    cm = df.iloc[:, 1].astype("float64").to_numpy()
    sample_cols: Sequence[str] = list(df.columns[2:])

    dosage = np.empty((len(sample_cols), df.shape[0]), dtype=np.float32)
    for i, col in enumerate(sample_cols):
        dosage[i, :] = _parse_dosage(df[col])

    pops = load_populations(pop_file, sample_cols)
    return GenotypeData(
        sample_ids=list(sample_cols),
        populations=pops,
        chrom=chrom,
        cm=cm,
        dosage=dosage,
    )


def load_populations(pop_file: str | Path, sample_ids: Sequence[str]) -> np.ndarray:
    df = pd.read_csv(pop_file)
    cols = {c.lower(): c for c in df.columns}
    if "sample_id" in cols:
        sample_col = cols["sample_id"]
    elif "sample" in cols:
        sample_col = cols["sample"]
    else:
        raise ValueError("Population file must have a 'sample_id' or 'sample' column.")

    if "pop" in cols:
        pop_col = cols["pop"]
    elif "population" in cols:
        pop_col = cols["population"]
    else:
        raise ValueError("Population file must have a 'pop' or 'population' column.")

    pop_map = dict(zip(df[sample_col].astype(str), df[pop_col].astype(str)))
    missing = [sid for sid in sample_ids if sid not in pop_map]
    if missing:
        missing_str = ", ".join(missing[:5])
        raise ValueError(
            f"Population assignments missing for {len(missing)} samples, "
            f"e.g. {missing_str}."
        )
    return np.array([pop_map[sid] for sid in sample_ids], dtype=str)


def load_weights(path: str | Path, chrom: np.ndarray, cm: np.ndarray) -> np.ndarray:
    """Read an external per-SNP weight file (CHROM, CM, WEIGHT).

    Rows must follow the same SNP ordering as the genotype data.
    """
    df = pd.read_table(path, dtype=str)
    if df.shape[1] < 3:
        raise ValueError(f"Weight file {path} must have CHROM, CM and WEIGHT columns")
    if df.shape[0] != chrom.shape[0]:
        raise ValueError(
            f"Weight file {path} has {df.shape[0]} rows but genotype data has "
            f"{chrom.shape[0]} SNPs"
        )
    w_chrom = df.iloc[:, 0].astype(str).to_numpy()
    w_cm = df.iloc[:, 1].astype("float64").to_numpy()
    if not np.array_equal(w_chrom, chrom.astype(str)) or not np.allclose(w_cm, cm):
        raise ValueError(f"Weight file {path} is not aligned with the genotype SNP list")
    return df.iloc[:, 2].astype("float64").to_numpy()


def write_genotype_table(data: GenotypeData, path: str | Path, pop_file: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    cols: Dict[str, object] = {"CHROM": data.chrom, "CM": data.cm}
    for i, sid in enumerate(data.sample_ids):
        g = data.dosage[i, :]
        cols[sid] = np.where(np.isnan(g), 9, g).astype(np.int8)
    pd.DataFrame(cols).to_csv(path, sep="\t", index=False)
    pd.DataFrame({"sample_id": data.sample_ids, "pop": data.populations}).to_csv(
        pop_file, index=False
    )


def write_genotype_store(data: GenotypeData, store_path: str | Path) -> None:
    """Write GenotypeData to a Zarr store.

    Layout:
      - sample_ids, populations: (n_ind,)
      - chrom, cm:               (n_snp,)
      - dosage:                  (n_ind, n_snp), int8 with -1 for missing

    Dosages are chunked along SNPs so a chromosome is read as a few column blocks.
    """
    store_path = Path(store_path)
    store_path.parent.mkdir(parents=True, exist_ok=True)

    g = zarr.open_group(store_path.as_posix(), mode="w")

    n_ind = data.n_ind
    n_snp = data.n_snp

    g.create_dataset(
        "sample_ids",
        data=np.asarray(data.sample_ids, dtype="U"),
        overwrite=True,
    )
    g.create_dataset(
        "populations",
        data=np.asarray(data.populations, dtype="U"),
        overwrite=True,
    )
    g.create_dataset(
        "chrom",
        data=np.asarray(data.chrom, dtype="U"),
        chunks=(min(n_snp, 4096),),
        overwrite=True,
    )
    g.create_dataset(
        "cm",
        data=data.cm,
        chunks=(min(n_snp, 4096),),
        overwrite=True,
    )

    packed = np.where(np.isnan(data.dosage), -1, data.dosage).astype(np.int8)
    g.create_dataset(
        "dosage",
        data=packed,
        chunks=(n_ind, min(n_snp, 1024)),
        overwrite=True,
    )


def read_genotype_store(store_path: str | Path) -> GenotypeData:
    """Read a Zarr store written by write_genotype_store."""
    store_path = Path(store_path)
    g = zarr.open_group(store_path.as_posix(), mode="r")

    dosage = np.asarray(g["dosage"][:]).astype(np.float32)
    dosage[dosage < 0] = np.nan

    return GenotypeData(
        sample_ids=[str(s) for s in np.asarray(g["sample_ids"][:])],
        populations=np.asarray(g["populations"][:]).astype(str),
        chrom=np.asarray(g["chrom"][:]).astype(str),
        cm=np.asarray(g["cm"][:], dtype=np.float64),
        dosage=dosage,
    )


def select_samples(data: GenotypeData, sample_indices: Sequence[int]) -> GenotypeData:
    """Return GenotypeData restricted to a subset of samples."""
    idx = np.asarray(sample_indices, dtype=int)
    return GenotypeData(
        sample_ids=[data.sample_ids[i] for i in idx],
        populations=data.populations[idx],
        chrom=data.chrom,
        cm=data.cm,
        dosage=data.dosage[idx, :],
    )


def select_snps(data: GenotypeData, snp_indices: Sequence[int] | np.ndarray) -> GenotypeData:
    """Return GenotypeData restricted to a subset of SNPs (indices or boolean mask)."""
    idx = np.asarray(snp_indices)
    if idx.dtype != bool:
        idx = idx.astype(int)
    return GenotypeData(
        sample_ids=data.sample_ids,
        populations=data.populations,
        chrom=data.chrom[idx],
        cm=data.cm[idx],
        dosage=data.dosage[:, idx],
    )


def restrict_populations(data: GenotypeData, names: Optional[Sequence[str]]) -> GenotypeData:
    """Keep only samples belonging to the named populations."""
    if names is None:
        return data
    keep = np.flatnonzero(np.isin(data.populations, list(names)))
    return select_samples(data, keep)


def chromosome_bounds(chrom: np.ndarray) -> List[Tuple[object, int, int]]:
    """(chrom, start, stop) for each run of SNPs on one chromosome.

    Requires SNPs grouped by chromosome.
    """
    chrom = np.asarray(chrom)
    n_snp = chrom.shape[0]
    if n_snp == 0:
        return []
    change = np.flatnonzero(chrom[1:] != chrom[:-1]) + 1
    starts = np.concatenate([[0], change])
    stops = np.concatenate([change, [n_snp]])
    chroms = chrom[starts]
    if len(set(chroms.tolist())) != len(chroms):
        raise ValueError("SNPs must be grouped by chromosome")
    return [(c, int(a), int(b)) for c, a, b in zip(chroms.tolist(), starts, stops)]
