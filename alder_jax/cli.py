from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd

from . import io, plots, qc, report, sim
from .config import AlderConfig
from .errors import ConfigurationError
from .pipeline import run_alder

log = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="alder-jax",
        description="Weighted LD decay curves, admixture dating and admixture tests.",
    )
    p.add_argument("--verbose", action="store_true", help="Debug logging.")

    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser(
        "run",
        help="Compute weighted LD curves, fit them and test for admixture.",
    )
    src = run.add_mutually_exclusive_group(required=True)
    src.add_argument("--geno", type=Path, help="Tab-delimited dosage table (CHROM, CM, samples...)")
    src.add_argument("--store", type=Path, help="Zarr genotype store written by 'to-zarr'")
    run.add_argument(
        "--pop-file",
        type=Path,
        help="CSV with sample_id,pop columns (required with --geno).",
    )
    run.add_argument("--admixpop", required=True, help="Admixed population name.")
    run.add_argument(
        "--refpops",
        nargs="*",
        default=[],
        help="Reference population names (1 = 1-ref, 2 = 2-ref, 3+ = pairwise tests).",
    )
    run.add_argument(
        "--weights",
        type=Path,
        default=None,
        help="External per-SNP weight file (CHROM, CM, WEIGHT) aligned to the SNPs after QC.",
    )
    run.add_argument("--binsize", type=float, default=0.05, help="Bin width in cM (default: 0.05).")
    run.add_argument("--maxdis", type=float, default=30.0, help="Maximum distance in cM (default: 30).")
    run.add_argument(
        "--mincount",
        type=int,
        default=4,
        help="Minimum individuals called at both SNPs of a pair (default: 4).",
    )
    run.add_argument(
        "--min-bin-pairs",
        type=int,
        default=1,
        help="Minimum SNP pairs for a bin to enter the fit (default: 1).",
    )
    run.add_argument(
        "--mindis",
        type=float,
        default=None,
        help="Force the fit start distance in cM (skips correlated-LD detection).",
    )
    run.add_argument("--threads", type=int, default=1, help="Worker threads (default: 1).")
    run.add_argument("--naive", action="store_true", help="Use the direct pairwise algorithm.")
    run.add_argument(
        "--rcond",
        type=float,
        default=1e-10,
        help="Relative singular-value cutoff below which a fit is rank-deficient.",
    )
    run.add_argument("--jackknife", action="store_true", help="Include jackknife replicates in raw output.")
    run.add_argument("--jackknife-fits", action="store_true", help="Print jackknife parameter fits.")
    run.add_argument("--raw-out", type=Path, default=None, help="Raw curve output (tab-separated).")
    run.add_argument(
        "--out-prefix",
        type=Path,
        default=None,
        help="Write <prefix>.fits.csv, <prefix>.tests.csv and <prefix>.decay_diffs.csv.",
    )
    run.add_argument("--plot", type=Path, default=None, help="PNG plot of the reported curve.")

    simp = sub.add_parser(
        "simulate",
        help="Simulate an admixed population with two references.",
    )
    simp.add_argument("--n-mixed", type=int, default=40)
    simp.add_argument("--n-ref", type=int, default=20)
    simp.add_argument("--n-chrom", type=int, default=4)
    simp.add_argument("--snps-per-chrom", type=int, default=400)
    simp.add_argument("--length-cm", type=float, default=50.0)
    simp.add_argument("--generations", type=float, default=20.0)
    simp.add_argument("--alpha", type=float, default=0.3)
    simp.add_argument("--fst", type=float, default=0.1)
    simp.add_argument("--outgroup-fst", type=float, default=None)
    simp.add_argument("--seed", type=int, default=None)
    simp.add_argument("--out-dir", type=Path, required=True)
    simp.add_argument("--prefix", type=str, default="sim_admix")

    tz = sub.add_parser("to-zarr", help="Convert a dosage table to a Zarr store.")
    tz.add_argument("geno", type=Path)
    tz.add_argument("--pop-file", type=Path, required=True)
    tz.add_argument("--out", type=Path, required=True)

    return p


def _load(args: argparse.Namespace) -> io.GenotypeData:
    try:
        if args.store is not None:
            return io.read_genotype_store(args.store)
        if args.pop_file is None:
            raise SystemExit("--pop-file is required with --geno")
        return io.read_genotype_table(args.geno, args.pop_file)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc


def cmd_run(args: argparse.Namespace) -> None:
    t0 = time.perf_counter()
    data = _load(args)
    try:
        qc_res = qc.run_qc(data, args.admixpop, args.refpops)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc

    weights = None
    if args.weights is not None:
        try:
            weights = io.load_weights(args.weights, qc_res.data.chrom, qc_res.data.cm)
        except ValueError as exc:
            raise SystemExit(str(exc)) from exc

    config = AlderConfig(
        bin_width=args.binsize,
        max_dis=args.maxdis,
        min_count=args.mincount,
        min_bin_pairs=args.min_bin_pairs,
        threads=args.threads,
        naive=args.naive,
        mindis=args.mindis,
        print_jackknife=args.jackknife,
        print_jackknife_fits=args.jackknife_fits,
        raw_out=args.raw_out,
        rcond=args.rcond,
    )
    print(
        f"{qc_res.num_mixed} {args.admixpop} individuals, {len(args.refpops)} reference "
        f"populations, {qc_res.data.n_snp} SNPs after QC"
    )
    log.info("Time to process data: %.2fs", time.perf_counter() - t0)

    try:
        result = run_alder(qc_res, config, weights)
    except ConfigurationError as exc:
        raise SystemExit(f"fatal: {exc}") from exc

    for ext in result.extents.values():
        print(ext.describe())
    for coll in result.fits.values():
        for att in coll:
            if att.fit is not None:
                print(report.format_fit(att.fit, config.print_jackknife_fits))
            else:
                print(f"{coll.label}: no curve from bin {att.start_bin} ({att.reason})")
    if result.pretests:
        print(f"Pre-test: does {args.admixpop} have a 1-ref weighted LD curve with...")
        print(report.format_pretests(result.pretests))
    for test in result.tests:
        print(report.format_test(test))
    if result.mixture_bound is not None:
        print(report.format_bound(result.mixture_bound))
    for msg in result.messages:
        print(f"note: {msg}")

    if config.raw_out is not None:
        if result.mode == "multi":
            report.write_raw_note(config.raw_out)
        else:
            report.write_raw_output(config.raw_out, result.curves.values(), config.print_jackknife)

    if args.out_prefix is not None:
        args.out_prefix.parent.mkdir(parents=True, exist_ok=True)
        fits = [report.fit_table(c) for c in result.fits.values()]
        if fits:
            pd.concat(fits, ignore_index=True).to_csv(f"{args.out_prefix}.fits.csv", index=False)
        report.tests_table(result.tests).to_csv(f"{args.out_prefix}.tests.csv", index=False)
        report.offset_diffs_table(result.tests).to_csv(
            f"{args.out_prefix}.decay_diffs.csv", index=False
        )

    label = result.primary_label
    if args.plot is not None and label is not None:
        coll = result.fits.get(label)
        plots.plot_curve(
            result.curves[label],
            args.plot,
            fit=coll.test_fit if coll is not None else None,
            fit_start=result.fit_starts.get(label),
        )

    if result.refused:
        raise SystemExit(result.refusal)
    log.info("Total time: %.2fs", time.perf_counter() - t0)


def cmd_simulate(args: argparse.Namespace) -> None:
    res = sim.simulate_admixture(
        n_mixed=args.n_mixed,
        n_ref=args.n_ref,
        n_chrom=args.n_chrom,
        snps_per_chrom=args.snps_per_chrom,
        length_cm=args.length_cm,
        generations=args.generations,
        alpha=args.alpha,
        fst=args.fst,
        outgroup_fst=args.outgroup_fst,
        seed=args.seed,
    )
    geno_path = args.out_dir / f"{args.prefix}.geno.tab"
    pop_path = args.out_dir / f"{args.prefix}.pops.csv"
    io.write_genotype_table(res.data, geno_path, pop_path)
    print(f"Wrote genotype table: {geno_path}")
    print(f"Wrote population file: {pop_path}")


def cmd_to_zarr(args: argparse.Namespace) -> None:
    data = io.read_genotype_table(args.geno, args.pop_file)
    io.write_genotype_store(data, args.out)
    print(f"Wrote genotype store: {args.out} ({data.n_ind} samples, {data.n_snp} SNPs)")


def main(argv: Sequence[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    np.seterr(all="ignore")

    if args.command == "run":
        cmd_run(args)
    elif args.command == "simulate":
        cmd_simulate(args)
    elif args.command == "to-zarr":
        cmd_to_zarr(args)
    else:
        parser.error(f"Unknown command {args.command}")


if __name__ == "__main__":
    main()
