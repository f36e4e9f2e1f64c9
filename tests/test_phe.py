"""Tests for phenotype utilities."""

from argparse import Namespace

import numpy as np
import pandas as pd
import pytest

from qtlmap.phe import encode_sex, phe_stat, phe_summary, phe_transform, rankz, read_covar, read_pheno, transform_series


def _write(path, text):
    path.write_text(text)
    return str(path)


class TestReadPheno:
    def test_tsv(self, tmp_path):
        path = _write(tmp_path / "phe.tsv", "id\ty1\ty2\ns1\t1.5\t2\ns2\tNA\t3\n")
        df = read_pheno(path)
        assert list(df.index) == ["s1", "s2"]
        assert list(df.columns) == ["y1", "y2"]
        assert np.isnan(df.loc["s2", "y1"])

    def test_csv_and_trait_selection(self, tmp_path):
        path = _write(tmp_path / "phe.csv", "id,y1,y2\ns1,1,2\ns2,3,4\n")
        df = read_pheno(path, traits="y2")
        assert list(df.columns) == ["y2"]

    def test_non_numeric_becomes_missing(self, tmp_path):
        path = _write(tmp_path / "phe.csv", "id,y\ns1,1\ns2,x\n")
        assert np.isnan(read_pheno(path).loc["s2", "y"])

    def test_duplicate_samples(self, tmp_path):
        path = _write(tmp_path / "phe.csv", "id,y\ns1,1\ns1,2\n")
        with pytest.raises(ValueError, match="Duplicate"):
            read_pheno(path)

    def test_unknown_trait(self, tmp_path):
        path = _write(tmp_path / "phe.csv", "id,y\ns1,1\n")
        with pytest.raises(ValueError, match="not found"):
            read_pheno(path, traits="z")

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_pheno(str(tmp_path / "nope.tsv"))


class TestReadCovar:
    def test_sex_and_categorical(self, tmp_path):
        path = _write(tmp_path / "covar.csv", "id,sex,gen,batch\ns1,F,4,a\ns2,M,5,b\ns3,male,6,a\n")
        df = read_covar(path)
        assert df["sex"].tolist() == [0.0, 1.0, 1.0]
        assert df["gen"].tolist() == [4.0, 5.0, 6.0]
        assert df["batch_b"].tolist() == [0.0, 1.0, 0.0]

    def test_encode_sex(self):
        assert encode_sex(pd.Series([1, 2, 2])).tolist() == [0, 1, 1]
        assert encode_sex(pd.Series([0, 1])).tolist() == [0, 1]
        with pytest.raises(ValueError):
            encode_sex(pd.Series(["F", "unknown"]))
        with pytest.raises(ValueError):
            encode_sex(pd.Series([0, 3]))


class TestTransforms:
    def test_rankz(self):
        s = pd.Series([3.0, 1.0, np.nan, 2.0])
        z = rankz(s)
        assert np.isnan(z.iloc[2])
        assert z.iloc[1] < z.iloc[3] < z.iloc[0]
        assert z.dropna().mean() == pytest.approx(0.0, abs=1e-12)

    def test_log(self):
        s = pd.Series([1.0, 10.0, 100.0], name="y")
        assert transform_series(s, "log10").tolist() == pytest.approx([0.0, 1.0, 2.0])
        with pytest.raises(ValueError, match="non-positive"):
            transform_series(pd.Series([0.0, 1.0], name="y"), "log")
        with pytest.raises(ValueError):
            transform_series(s, "sqrt")

    def test_phe_transform(self, tmp_path):
        path = _write(tmp_path / "phe.tsv", "id\ty\ns1\t1\ns2\t10\n")
        args = Namespace(input=path, sample_col=None, sep="auto", encoding="utf-8", columns=None,
                         method="log10", out_dir=str(tmp_path), out_name="out")
        phe_transform(args)
        out = pd.read_csv(tmp_path / "out.tsv", sep="\t")
        assert list(out.columns) == ["id", "y"]
        assert out["y"].tolist() == pytest.approx([0.0, 1.0])


class TestStat:
    def test_summary(self):
        df = pd.DataFrame({"y": [1.0, 2.0, 3.0, np.nan]})
        stats = phe_summary(df).iloc[0]
        assert stats["trait"] == "y"
        assert stats["count"] == 4
        assert stats["missing"] == 1
        assert stats["mean"] == pytest.approx(2.0)
        assert stats["median"] == pytest.approx(2.0)

    def test_phe_stat_writes_table(self, tmp_path):
        rows = "\n".join(f"s{i}\t{v}" for i, v in enumerate(np.linspace(1, 5, 20)))
        path = _write(tmp_path / "phe.tsv", "id\ty\n" + rows + "\n")
        args = Namespace(input=path, sample_col=None, sep="auto", encoding="utf-8", columns=None,
                         out_dir=str(tmp_path), out_name="stat")
        phe_stat(args)
        out = pd.read_csv(tmp_path / "stat.stats.tsv", sep="\t")
        assert out["trait"].tolist() == ["y"]
        assert out["non_missing"].iloc[0] == 20
