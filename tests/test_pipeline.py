from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path

os.environ.setdefault("JAX_PLATFORM_NAME", "cpu")
os.environ.setdefault("JAX_PLATFORMS", "cpu")

import numpy as np
import pandas as pd

from alder_jax import cli, pipeline, qc, sim
from alder_jax.config import AlderConfig
from alder_jax.errors import ConfigurationError
from alder_jax.extent import TOO_LONG, CorrelationExtent
from alder_jax.popgen import subtract_freqs
from tests.jax_preflight import assert_cpu_backend

assert_cpu_backend()


def _small_qc(refs=("REF_A", "REF_B"), **kwargs) -> qc.QCResult:
    params = dict(n_mixed=12, n_ref=8, n_chrom=3, snps_per_chrom=60, length_cm=30.0, seed=7)
    params.update(kwargs)
    res = sim.simulate_admixture(**params)
    return qc.run_qc(res.data, "ADMIX", list(refs))


def _dating_data():
    # Memoized: the default simulation is shared by the end-to-end tests.
    if not hasattr(_dating_data, "_cache"):
        _dating_data._cache = sim.simulate_admixture(generations=20.0, alpha=0.3, seed=2024).data
    return _dating_data._cache  # type: ignore[attr-defined]


class TestConfigValidation(unittest.TestCase):
    def test_defaults_are_valid(self) -> None:
        AlderConfig().validate(num_mixed=10, num_refs=2)
        self.assertEqual(AlderConfig().n_bins, 600)
        self.assertEqual(AlderConfig().test_offset_index, 2)

    def test_single_reference_needs_four_individuals(self) -> None:
        with self.assertRaises(ConfigurationError):
            AlderConfig(min_count=3).validate(num_mixed=3, num_refs=1)
        AlderConfig(min_count=3).validate(num_mixed=3, num_refs=2)

    def test_min_count_cannot_exceed_sample_size(self) -> None:
        with self.assertRaises(ConfigurationError):
            AlderConfig(min_count=5).validate(num_mixed=4, num_refs=2)

    def test_references_required_without_weights(self) -> None:
        with self.assertRaises(ConfigurationError):
            AlderConfig().validate(num_mixed=10, num_refs=0)
        AlderConfig().validate(num_mixed=10, num_refs=0, external_weights=True)

    def test_offsets_must_include_test_fit(self) -> None:
        with self.assertRaises(ConfigurationError):
            AlderConfig(start_offsets=(1, 2)).validate(num_mixed=10, num_refs=2)

    def test_bad_threads_and_bins(self) -> None:
        for cfg in (AlderConfig(threads=0), AlderConfig(bin_width=0.0), AlderConfig(max_dis=0.01)):
            with self.assertRaises(ConfigurationError):
                cfg.validate(num_mixed=10, num_refs=2)


class TestPlanRun(unittest.TestCase):
    def test_protocol_follows_reference_count(self) -> None:
        config = AlderConfig()
        self.assertIsInstance(pipeline.plan_run(_small_qc(("REF_A",)), config), pipeline.SingleReference)
        self.assertIsInstance(pipeline.plan_run(_small_qc(), config), pipeline.PairedReference)
        multi = _small_qc(("REF_A", "REF_B", "REF_C"), outgroup_fst=0.05)
        plan = pipeline.plan_run(multi, config)
        self.assertIsInstance(plan, pipeline.MultiReference)
        self.assertEqual(plan.refs, ("REF_A", "REF_B", "REF_C"))

    def test_single_reference_with_three_individuals(self) -> None:
        qc_res = _small_qc(("REF_A",), n_mixed=3)
        with self.assertRaises(ConfigurationError):
            pipeline.run_alder(qc_res, AlderConfig(min_count=3))

    def test_external_weights_must_match_snps(self) -> None:
        qc_res = _small_qc()
        with self.assertRaises(ConfigurationError):
            pipeline.plan_run(qc_res, AlderConfig(), weights=np.ones(3))


class _RefusingRun(pipeline.AlderRun):
    def extent_for(self, ref: str) -> CorrelationExtent:
        ext = CorrelationExtent(ref, TOO_LONG, 2.5, float("inf"))
        self.result.extents[ref] = ext
        return ext


class TestRunProtocols(unittest.TestCase):
    def test_long_range_ld_refuses_to_fit(self) -> None:
        qc_res = _small_qc(("REF_A",))
        result = _RefusingRun(qc_res, AlderConfig()).execute(pipeline.SingleReference("REF_A"))
        self.assertTrue(result.refused)
        self.assertEqual(result.curves, {})
        self.assertTrue(any("mindis" in m for m in result.messages))

    def test_mindis_overrides_refusal(self) -> None:
        qc_res = _small_qc(("REF_A",))
        result = _RefusingRun(qc_res, AlderConfig(mindis=1.0)).execute(pipeline.SingleReference("REF_A"))
        self.assertFalse(result.refused)
        self.assertEqual(result.fit_starts["1-ref REF_A"], 1.0)
        self.assertIn("mindis = 1.000", result.messages[0])
        self.assertEqual(result.extents, {})

    def test_identical_references_give_no_curve(self) -> None:
        qc_res = _small_qc()
        config = AlderConfig(mindis=0.5)
        run = pipeline.AlderRun(qc_res, config)
        result = run.execute(pipeline.PairedReference("REF_A", "REF_A"))
        label = pipeline.two_ref_label("REF_A", "REF_A")
        np.testing.assert_array_equal(result.curves[label].sums, 0.0)
        self.assertIsNone(result.fits[label].test_fit)
        self.assertEqual(len(result.tests), 1)
        self.assertFalse(result.tests[0].verdict)
        self.assertIn("no curve", result.tests[0].reason)

    def test_external_weights_default_start(self) -> None:
        qc_res = _small_qc()
        w = subtract_freqs(qc_res.ref_freqs, 0, 1)
        result = pipeline.run_alder(qc_res, AlderConfig(), weights=w)
        self.assertEqual(result.mode, "external")
        self.assertEqual(result.fit_starts["external weights"], 0.5)
        self.assertEqual(len(result.fits["external weights"]), 5)
        self.assertIsNone(result.tests[0].verdict)
        self.assertTrue(any("external weights" in m for m in result.messages))

    def test_multi_reference_needs_two_chromosomes(self) -> None:
        qc_res = _small_qc(("REF_A", "REF_B", "REF_C"), n_chrom=1, outgroup_fst=0.05)
        with self.assertRaises(ConfigurationError):
            pipeline.run_alder(qc_res, AlderConfig())

    def test_paired_run_without_jackknife_cannot_test(self) -> None:
        qc_res = _small_qc(n_chrom=1)
        result = pipeline.run_alder(qc_res, AlderConfig(mindis=0.5))
        self.assertEqual(result.mode, "2-ref")
        self.assertIsNone(result.tests[0].verdict)
        self.assertTrue(any("2 chroms" in m for m in result.messages) or "2 chroms" in result.tests[0].reason)


class TestSimulatedDating(unittest.TestCase):
    def test_two_reference_run_dates_admixture(self) -> None:
        qc_res = qc.run_qc(_dating_data(), "ADMIX", ["REF_A", "REF_B"])
        result = pipeline.run_alder(qc_res, AlderConfig(threads=2))
        self.assertEqual(result.mode, "2-ref")
        self.assertFalse(result.refused)
        label = pipeline.two_ref_label("REF_A", "REF_B")
        self.assertEqual(result.primary_label, label)
        self.assertIn(pipeline.one_ref_label("REF_A"), result.curves)
        self.assertIn(pipeline.one_ref_label("REF_B"), result.curves)
        self.assertEqual(len(result.fits[label]), 5)
        self.assertGreaterEqual(result.fit_starts[label], 0.5)
        fit = result.fits[label].test_fit
        self.assertIsNotNone(fit)
        self.assertGreater(fit.decay, 5.0)
        self.assertLess(fit.decay, 80.0)
        self.assertGreater(fit.amp, 0.0)
        self.assertEqual(len(result.tests), 1)

    def test_single_reference_run_reports_bound(self) -> None:
        one = qc.run_qc(_dating_data(), "ADMIX", ["REF_A"])
        result = pipeline.run_alder(one, AlderConfig(mindis=0.5))
        self.assertEqual(result.mode, "1-ref")
        fit = result.fits[pipeline.one_ref_label("REF_A")].test_fit
        self.assertIsNotNone(fit)
        self.assertIsNotNone(result.mixture_bound)
        self.assertGreater(result.mixture_bound.estimate, 0.0)
        self.assertLess(result.mixture_bound.estimate, 1.0)
        self.assertTrue(np.isfinite(result.mixture_bound.se))


class TestCommandLine(unittest.TestCase):
    def test_simulate_convert_and_run(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            tmp = Path(tmp)
            cli.main(
                [
                    "simulate",
                    "--n-mixed", "12",
                    "--n-ref", "8",
                    "--n-chrom", "3",
                    "--snps-per-chrom", "60",
                    "--length-cm", "30",
                    "--seed", "1",
                    "--out-dir", str(tmp),
                ]
            )
            geno = tmp / "sim_admix.geno.tab"
            pops = tmp / "sim_admix.pops.csv"
            self.assertTrue(geno.exists())
            store = tmp / "sim.zarr"
            cli.main(["to-zarr", str(geno), "--pop-file", str(pops), "--out", str(store)])
            cli.main(
                [
                    "run",
                    "--store", str(store),
                    "--admixpop", "ADMIX",
                    "--refpops", "REF_A", "REF_B",
                    "--mindis", "0.5",
                    "--raw-out", str(tmp / "raw.tsv"),
                    "--out-prefix", str(tmp / "out" / "res"),
                ]
            )
            raw = pd.read_csv(tmp / "raw.tsv", sep="\t")
            self.assertEqual(set(raw["curve"]), {"2-ref REF_A;REF_B", "1-ref REF_A", "1-ref REF_B"})
            self.assertTrue((tmp / "out" / "res.tests.csv").exists())
            fits = pd.read_csv(tmp / "out" / "res.fits.csv")
            self.assertEqual(len(fits), 15)
            diffs = pd.read_csv(tmp / "out" / "res.decay_diffs.csv")
            self.assertEqual(list(diffs.columns[:5]), ["mixed", "ref1", "ref2", "offset", "comparison"])

    def test_missing_population_exits(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            tmp = Path(tmp)
            cli.main(["simulate", "--n-chrom", "2", "--snps-per-chrom", "20", "--seed", "1", "--out-dir", str(tmp)])
            with self.assertRaises(SystemExit):
                cli.main(
                    [
                        "run",
                        "--geno", str(tmp / "sim_admix.geno.tab"),
                        "--pop-file", str(tmp / "sim_admix.pops.csv"),
                        "--admixpop", "NOPE",
                        "--refpops", "REF_A",
                    ]
                )


if __name__ == "__main__":
    unittest.main()
