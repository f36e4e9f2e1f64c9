"""End-to-end tests of the qtlmap command line."""

import json

import numpy as np
import pandas as pd
import pytest

from qtlmap.config import ConfigError
from qtlmap.kinship import Kinship
from qtlmap.qtl import QTL
from qtlmap.qtlmap import main


@pytest.fixture
def inputs(tmp_path, genoprobs, pheno):
    npz = tmp_path / "probs.npz"
    np.savez(npz, probs=np.asarray(genoprobs.probs), samples=np.array(genoprobs.samples),
             founders=np.array(genoprobs.founders), markers=np.array(genoprobs.map.markers))
    map_file = tmp_path / "map.csv"
    genoprobs.map.table.iloc[::-1].to_csv(map_file, index=False)
    phe = tmp_path / "pheno.tsv"
    pd.DataFrame({"id": genoprobs.samples, "y": pheno}).to_csv(phe, sep="\t", index=False)
    covar = tmp_path / "covar.csv"
    sex = np.where(np.arange(genoprobs.n_samples) % 2 == 0, "F", "M")
    pd.DataFrame({"id": genoprobs.samples, "sex": sex}).to_csv(covar, index=False)
    snps = tmp_path / "snps.csv"
    pd.DataFrame({
        "snp": ["r1", "r2", "r3"], "chr": ["1", "1", "2"], "pos": [15.0, 22.0, 5.0],
        "ref": ["A", "C", "G"], "alt": ["G", "T", "A"],
        "A": [1, 0, 1], "B": [0, 1, 0], "C": [0, 0, 1],
    }).to_csv(snps, index=False)
    out = tmp_path / "out"
    return {"npz": str(npz), "map": str(map_file), "phe": str(phe), "covar": str(covar),
            "snps": str(snps), "out": str(out)}


def _common(inputs):
    return ["--genoprobs", inputs["npz"], "--map", inputs["map"], "--phe", inputs["phe"],
            "--out_dir", inputs["out"]]


class TestReaders:
    def test_genoprobs_reordered_to_map(self, inputs, genoprobs):
        gp = QTL().read_genoprobs(inputs["npz"], inputs["map"])
        assert gp.map.markers == genoprobs.map.markers
        np.testing.assert_array_equal(gp.probs, genoprobs.probs)

    def test_marker_mismatch(self, inputs, tmp_path, genoprobs):
        bad_map = tmp_path / "bad_map.csv"
        table = genoprobs.map.table
        table.loc[0, "marker"] = "other"
        table.to_csv(bad_map, index=False)
        with pytest.raises(ValueError, match="Markers differ"):
            QTL().read_genoprobs(inputs["npz"], str(bad_map))


class TestCommands:
    def test_scan_linear(self, inputs):
        main(["scan"] + _common(inputs) + ["--kinship-kind", "none", "--out_name", "lin"])
        df = pd.read_csv(f"{inputs['out']}/lin.scan.csv", dtype={"chr": str})
        assert len(df) == 10
        assert df.loc[df["lod"].idxmax(), "marker"] == "m1_3"

    def test_kinship_then_scan(self, inputs):
        main(["kinship", "--genoprobs", inputs["npz"], "--map", inputs["map"], "--kind", "loco",
              "--out_dir", inputs["out"], "--out_name", "k"])
        kin = Kinship.from_npz(f"{inputs['out']}/k.kinship.npz")
        assert kin.keys == ["1", "2"]
        main(["scan"] + _common(inputs) + ["--covar", inputs["covar"], "--kinship", f"{inputs['out']}/k.kinship.npz",
                                          "--parameterization", "contrast", "--out_name", "lmm"])
        df = pd.read_csv(f"{inputs['out']}/lmm.scan.csv")
        assert "coef_sex" in df.columns
        assert (df["lod"] >= 0).all()

    def test_perm_and_peaks(self, inputs):
        main(["perm"] + _common(inputs) + ["--covar", inputs["covar"], "--kinship-kind", "none",
                                          "--n_perm", "4", "--seed", "1", "--strata", "sex", "--out_name", "p"])
        perm = pd.read_csv(f"{inputs['out']}/p.perm.csv")
        assert len(perm) == 4
        thr = pd.read_csv(f"{inputs['out']}/p.thresholds.csv")
        assert thr["alpha"].tolist() == [0.1, 0.05]
        assert (thr["seed"] == 1).all()

        main(["scan"] + _common(inputs) + ["--covar", inputs["covar"], "--kinship-kind", "none", "--out_name", "p"])
        main(["peaks", "--scan", f"{inputs['out']}/p.scan.csv", "--thresholds", f"{inputs['out']}/p.thresholds.csv",
              "--alpha", "0.05", "--out_dir", inputs["out"], "--out_name", "p"])
        peaks = pd.read_csv(f"{inputs['out']}/p.peaks.csv")
        assert {"trait", "chr", "marker", "pos", "lod", "ci_lo", "ci_hi"} <= set(peaks.columns)

    def test_peaks_fixed_threshold(self, inputs):
        main(["scan"] + _common(inputs) + ["--kinship-kind", "none", "--out_name", "f"])
        main(["peaks", "--scan", f"{inputs['out']}/f.scan.csv", "--threshold", "3", "--interval", "bayes",
              "--out_dir", inputs["out"], "--out_name", "f"])
        peaks = pd.read_csv(f"{inputs['out']}/f.peaks.csv")
        assert "m1_3" in peaks["marker"].tolist()

    def test_peaks_needs_threshold(self, inputs):
        main(["scan"] + _common(inputs) + ["--kinship-kind", "none", "--out_name", "n"])
        with pytest.raises(ConfigError):
            main(["peaks", "--scan", f"{inputs['out']}/n.scan.csv", "--out_dir", inputs["out"]])

    def test_config_file(self, inputs, tmp_path):
        cfg = tmp_path / "cfg.json"
        cfg.write_text(json.dumps({"n_perm": 0}))
        with pytest.raises(ConfigError):
            main(["perm"] + _common(inputs) + ["--config", str(cfg)])

    def test_single_alpha_in_config(self, inputs, tmp_path):
        cfg = tmp_path / "cfg.json"
        cfg.write_text(json.dumps({"n_perm": 3, "seed": 1, "alpha": 0.1}))
        main(["perm"] + _common(inputs) + ["--kinship-kind", "none", "--config", str(cfg), "--out_name", "s"])
        thr = pd.read_csv(f"{inputs['out']}/s.thresholds.csv")
        assert thr["alpha"].tolist() == [0.1]
        assert len(pd.read_csv(f"{inputs['out']}/s.perm.csv")) == 3

        main(["scan"] + _common(inputs) + ["--kinship-kind", "none", "--out_name", "s"])
        main(["peaks", "--scan", f"{inputs['out']}/s.scan.csv", "--thresholds", f"{inputs['out']}/s.thresholds.csv",
              "--config", str(cfg), "--out_dir", inputs["out"], "--out_name", "s"])
        peaks = pd.read_csv(f"{inputs['out']}/s.peaks.csv")
        assert list(peaks.columns[:5]) == ["trait", "chr", "marker", "pos", "lod"]

    def test_assoc(self, inputs):
        main(["assoc"] + _common(inputs) + ["--snps", inputs["snps"], "--chr", "1", "--start", "10",
                                           "--end", "30", "--kinship-kind", "none", "--out_name", "a"])
        snps = pd.read_csv(f"{inputs['out']}/a.snps.csv")
        assert snps["snp"].tolist() == ["r1", "r2"]
        top = pd.read_csv(f"{inputs['out']}/a.top_snps.csv")
        assert len(top) >= 1

    def test_phe_stat(self, inputs):
        main(["phe", "stat", "--input", inputs["phe"], "--out-dir", inputs["out"], "--out-name", "s"])
        stats = pd.read_csv(f"{inputs['out']}/s.stats.tsv", sep="\t")
        assert stats["trait"].tolist() == ["y"]
