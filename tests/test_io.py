from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

import numpy as np
import pandas as pd

from alder_jax import admixture, io, plots, popgen, qc, report
from alder_jax.admixture import AdmixtureTestResult
from alder_jax.fit import CurveFit, FitAttempt, FitCollection, FitDiff
from alder_jax.ld import WeightedLDCurve


def _toy_data() -> io.GenotypeData:
    dosage = np.array(
        [
            [0, 1, 2, 1, 0],
            [1, 1, np.nan, 2, 0],
            [2, 0, 1, 1, 1],
            [0, 2, 0, 0, 2],
            [1, 1, 1, 1, 1],
            [2, 2, 0, 0, 1],
        ],
        dtype=np.float32,
    )
    return io.GenotypeData(
        sample_ids=["a1", "a2", "a3", "r1", "r2", "r3"],
        populations=np.array(["MIX", "MIX", "MIX", "REF", "REF", "REF"]),
        chrom=np.array(["1", "1", "1", "2", "2"]),
        cm=np.array([0.5, 1.0, 2.0, 0.1, 0.3]),
        dosage=dosage,
    )


class TestGenotypeFiles(unittest.TestCase):
    def test_table_round_trip_keeps_missing(self) -> None:
        data = _toy_data()
        with tempfile.TemporaryDirectory() as tmp:
            geno = Path(tmp) / "g.tab"
            pops = Path(tmp) / "p.csv"
            io.write_genotype_table(data, geno, pops)
            back = io.read_genotype_table(geno, pops)
        self.assertEqual(back.sample_ids, data.sample_ids)
        np.testing.assert_array_equal(back.populations, data.populations)
        np.testing.assert_array_equal(back.chrom, data.chrom)
        np.testing.assert_allclose(back.cm, data.cm)
        np.testing.assert_array_equal(back.dosage, data.dosage)

    def test_store_round_trip(self) -> None:
        data = _toy_data()
        with tempfile.TemporaryDirectory() as tmp:
            store = Path(tmp) / "g.zarr"
            io.write_genotype_store(data, store)
            back = io.read_genotype_store(store)
        self.assertEqual(back.sample_ids, data.sample_ids)
        np.testing.assert_array_equal(back.chrom, data.chrom)
        np.testing.assert_array_equal(back.dosage, data.dosage)
        self.assertEqual(back.population_names(), ["MIX", "REF"])

    def test_missing_population_assignment(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            pops = Path(tmp) / "p.csv"
            pd.DataFrame({"sample_id": ["a1"], "pop": ["MIX"]}).to_csv(pops, index=False)
            with self.assertRaises(ValueError):
                io.load_populations(pops, ["a1", "a2"])

    def test_out_of_range_dosage(self) -> None:
        with self.assertRaises(ValueError):
            io._parse_dosage(pd.Series(["0", "3"], name="s1"))

    def test_weights_must_align(self) -> None:
        data = _toy_data()
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "w.tab"
            df = pd.DataFrame({"CHROM": data.chrom, "CM": data.cm, "WEIGHT": np.arange(5.0)})
            df.to_csv(path, sep="\t", index=False)
            np.testing.assert_allclose(io.load_weights(path, data.chrom, data.cm), np.arange(5.0))
            with self.assertRaises(ValueError):
                io.load_weights(path, data.chrom, data.cm + 1.0)

    def test_chromosomes_must_be_grouped(self) -> None:
        self.assertEqual(io.chromosome_bounds(np.array(["1", "1", "2"])), [("1", 0, 2), ("2", 2, 3)])
        with self.assertRaises(ValueError):
            io.chromosome_bounds(np.array(["1", "2", "1"]))

    def test_select_snps_by_mask(self) -> None:
        data = _toy_data()
        sub = io.select_snps(data, np.array([True, False, True, False, True]))
        self.assertEqual(sub.n_snp, 3)
        np.testing.assert_array_equal(sub.chrom, ["1", "1", "2"])


class TestQC(unittest.TestCase):
    def test_calcp_ignores_missing(self) -> None:
        p, n = qc.calcp_dosage(np.array([[0.0, np.nan], [2.0, np.nan], [1.0, 1.0]]))
        np.testing.assert_allclose(p, [0.5, 0.5])
        np.testing.assert_array_equal(n, [6.0, 2.0])

    def test_sorts_map_and_drops_monomorphic(self) -> None:
        data = _toy_data()
        res = qc.run_qc(data, "MIX", ["REF"])
        # chrom 2 SNPs: MIX dosages (1,2,1) and (0,0,1) are polymorphic; all chrom 1 SNPs too.
        self.assertTrue(res.data.is_map_sorted())
        self.assertEqual(res.data.n_snp, 5)
        self.assertEqual(res.num_mixed, 3)
        np.testing.assert_allclose(res.mixed_freq[0], 0.5)

        mono = io.select_samples(data, [0, 3, 4, 5])
        res = qc.run_qc(mono, "MIX", ["REF"])
        self.assertLess(res.data.n_snp, 5)
        self.assertTrue(np.all((res.mixed_freq > 0) & (res.mixed_freq < 1)))

    def test_unsorted_positions_are_reordered(self) -> None:
        data = _toy_data()
        data.cm = np.array([2.0, 1.0, 0.5, 0.3, 0.1])
        sorted_data, order = qc.sort_by_map(data)
        np.testing.assert_array_equal(order, [2, 1, 0, 4, 3])
        np.testing.assert_array_equal(sorted_data.cm, [0.5, 1.0, 2.0, 0.1, 0.3])

    def test_unused_populations_are_dropped(self) -> None:
        data = _toy_data()
        data.populations = np.array(["MIX", "MIX", "MIX", "REF", "REF", "OTHER"])
        res = qc.run_qc(data, "MIX", ["REF"])
        self.assertEqual(res.data.sample_ids, ["a1", "a2", "a3", "r1", "r2"])
        self.assertEqual(res.data.population_names(), ["MIX", "REF"])
        self.assertEqual(res.ref_dosage("REF").shape, (2, res.data.n_snp))
        with self.assertRaises(ValueError):
            res.ref_dosage("OTHER")

    def test_unknown_population(self) -> None:
        with self.assertRaises(ValueError):
            qc.run_qc(_toy_data(), "MIX", ["NOPE"])


class TestPopgen(unittest.TestCase):
    def test_f2_per_snp_correction(self) -> None:
        out = popgen.f2_per_snp(np.array([0.5]), np.array([10.0]), np.array([0.1]), np.array([10.0]))
        np.testing.assert_allclose(out, [0.16 - 0.25 / 9.0 - 0.09 / 9.0])

    def test_f2_needs_two_alleles(self) -> None:
        out = popgen.f2_per_snp(np.array([0.5]), np.array([1.0]), np.array([0.1]), np.array([10.0]))
        self.assertTrue(np.isnan(out[0]))

    def test_f2_jackknife_drops_one_chromosome(self) -> None:
        p_a = np.array([0.5, 0.5, 0.2, 0.8])
        p_b = np.array([0.1, 0.3, 0.2, 0.4])
        n = np.full(4, 1e12)
        chrom = np.array(["1", "1", "2", "3"])
        res = popgen.f2_jackknife(p_a, n, p_b, n, chrom, ["1", "3"])
        vals = (p_a - p_b) ** 2
        self.assertAlmostEqual(res.f2, vals.mean())
        np.testing.assert_allclose(res.jackknife, [vals[2:].mean(), vals[:3].mean()])
        self.assertEqual(res.chroms, ["1", "3"])

    def test_weights(self) -> None:
        freqs = [np.array([0.2, 0.9]), np.array([0.5, 0.4])]
        np.testing.assert_allclose(popgen.subtract_freqs(freqs, 0, 1), [-0.3, 0.5])
        np.testing.assert_allclose(popgen.one_ref_weights(freqs[0], np.array([0.1, 0.1])), [0.1, 0.8])


class TestReport(unittest.TestCase):
    def setUp(self) -> None:
        self.curve = WeightedLDCurve(
            label="2-ref A;B",
            bin_width=0.5,
            max_dis=1.5,
            chroms=["1", "2"],
            chrom_sums=np.array([[1.0, 2.0, 0.0], [3.0, 2.0, 0.0]]),
            chrom_counts=np.array([[1, 1, 0], [1, 1, 0]]),
        )
        self.fit = CurveFit(
            label="2-ref A;B",
            start_bin=1,
            start_dis=0.5,
            n_bins_used=4,
            params=np.array([1e-3, 20.0, 0.0]),
            se=np.array([1e-4, 2.0, 1e-6]),
            jackknife=np.zeros((2, 3)),
            chroms=("1", "2"),
        )

    def test_curve_table(self) -> None:
        df = report.curve_table(self.curve)
        self.assertEqual(list(df.columns), ["d_cM", "weighted_LD", "jackknife_se", "pairs", "usable"])
        np.testing.assert_allclose(df["weighted_LD"].to_numpy()[:2], [2.0, 2.0])
        self.assertTrue(np.isnan(df["weighted_LD"].iloc[2]))

    def test_fit_table_marks_test_fit(self) -> None:
        coll = FitCollection(
            "2-ref A;B",
            [FitAttempt(-1, 0, None, "only 3 usable bins"), FitAttempt(0, 1, self.fit)],
            test_index=1,
        )
        df = report.fit_table(coll)
        self.assertEqual(df["test"].tolist(), [False, True])
        self.assertEqual(df["status"].tolist(), ["only 3 usable bins", "ok"])
        self.assertAlmostEqual(df["decay_z"].iloc[1], 10.0)

    def test_format_fit_with_jackknife(self) -> None:
        text = report.format_fit(self.fit, print_jackknife=True)
        self.assertIn("decay = 20", text)
        self.assertIn("jackknife -chr 2", text)

    def test_offset_diffs_reported(self) -> None:
        test = AdmixtureTestResult("MIX", "A", "B", True, "admixture detected")
        test.offset_diffs = {
            -1: {"1-ref A vs 2-ref": FitDiff("decay", "1-ref A", "2-ref", 1.5, 0.5)},
            0: {"1-ref A vs 2-ref": FitDiff("decay", "1-ref A", "2-ref", -0.5, 0.5)},
        }
        df = report.offset_diffs_table([test, admixture.cannot_test("MIX", "A", "C", "no data")])
        self.assertEqual(df["offset"].tolist(), [-1, 0])
        np.testing.assert_allclose(df["z"], [3.0, -1.0])
        text = report.format_test(test)
        self.assertIn("start offset -1: 1-ref A vs 2-ref +1.50 +/- 0.50", text)
        self.assertIn("start offset +0", text)

    def test_raw_output_with_replicates(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "raw" / "curve.tsv"
            report.write_raw_output(path, [self.curve], include_jackknife=True)
            df = pd.read_csv(path, sep="\t")
        self.assertIn("jack_1", df.columns)
        self.assertIn("jack_2", df.columns)
        self.assertEqual(len(df), 3)

    def test_plot_writes_png(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            out = Path(tmp) / "plots" / "curve.png"
            plots.plot_curve(self.curve, out, fit=self.fit, fit_start=0.5)
            self.assertTrue(out.exists())
            self.assertGreater(out.stat().st_size, 0)


if __name__ == "__main__":
    unittest.main()
