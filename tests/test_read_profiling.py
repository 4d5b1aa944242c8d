import pandas as pd
import pytest

import Read_profiling
from pipeline_core import (
    ExternalToolFailure,
    MissingInputError,
    RunContext,
    UsageError,
    resolve_paired_args,
    run_stage,
)


@pytest.fixture
def samples(make_reads):
    return resolve_paired_args(make_reads("A1", "B2"))


def test_full_run_outputs(fake_tools, samples, config, layout):
    report = Read_profiling.run_pipeline(samples, config, layout)

    assert report.completed
    for name in ("A1", "B2"):
        r1, r2 = layout.cleaned_reads(name)
        assert r1.exists() and r2.exists()
        assert layout.kraken_report(name).exists()
        assert layout.bracken_species(name).exists()
        for stage in ("fastp", "nonpareil", "kraken2", "bracken"):
            assert layout.stage_log(name, stage).exists()


def test_stage_major_order(fake_tools, samples, config, layout):
    Read_profiling.run_pipeline(samples, config, layout)

    assert fake_tools.keys == [
        "fastp", "fastp", "nonpareil", "nonpareil",
        "kraken2", "kraken2", "bracken", "bracken",
    ]


def test_tool_flags(fake_tools, samples, config, layout):
    Read_profiling.run_pipeline(samples[:1], config, layout)
    fastp, nonpareil, kraken2, bracken = fake_tools.calls

    assert fastp[fastp.index("-o") + 1] == str(layout.fastp / "A1_cleaned_R1.fastq")
    assert fastp[fastp.index("-w") + 1] == "2"
    assert nonpareil[1:] == ["-s", str(layout.fastp / "A1_cleaned_R1.fastq"), "-T", "kmer", "-k", "15",
                             "-f", "fastq", "-b", str(layout.nonpareil / "A1")]
    assert "--paired" in kraken2
    assert kraken2[-2:] == [str(p) for p in layout.cleaned_reads("A1")]
    assert bracken[bracken.index("-d") + 1] == config.kraken_db
    assert bracken[-4:] == ["-r", "150", "-l", "S"]


def test_fastp_summary(fake_tools, samples, config, layout):
    Read_profiling.run_pipeline(samples, config, layout)

    summary = pd.read_csv(layout.fastp_summary("A1"), sep="\t")
    assert list(summary["filtering"]) == ["before", "after"]
    assert list(summary["total_reads"]) == [200, 180]
    assert set(summary["SAMPLE"]) == {"A1"}


def test_bracken_tables_merged(fake_tools, samples, config, layout):
    Read_profiling.run_pipeline(samples, config, layout)

    table = pd.read_csv(layout.bracken_abundance, sep="\t", index_col="name")
    assert list(table.columns) == ["A1", "B2"]
    assert table.loc["Escherichia coli", "A1"] == pytest.approx(0.6)


def test_kraken_failure_stops_before_bracken(fake_tools, samples, config, layout):
    fake_tools.fail["kraken2"] = 2

    with pytest.raises(ExternalToolFailure) as excinfo:
        Read_profiling.run_pipeline(samples, config, layout)

    assert excinfo.value.exit_code == 2
    assert "bracken" not in fake_tools.keys
    assert layout.stage_log("A1", "kraken2").exists()
    assert not layout.bracken_abundance.exists()


def test_requires_kraken_db(fake_tools, samples, config, layout):
    config.kraken_db = None

    with pytest.raises(UsageError, match="Kraken2 database"):
        Read_profiling.run_pipeline(samples, config, layout)
    assert fake_tools.calls == []


def test_missing_kraken_db_dir(fake_tools, samples, config, layout, tmp_path):
    config.kraken_db = str(tmp_path / "nowhere")

    with pytest.raises(MissingInputError):
        Read_profiling.run_pipeline(samples, config, layout)


def test_main_odd_arguments(fake_tools, make_reads, tmp_path):
    r1, _ = make_reads("A1")
    out = tmp_path / "cli_out"

    with pytest.raises(SystemExit) as excinfo:
        Read_profiling.main([r1, "-o", str(out), "--kraken-db", str(tmp_path)])

    assert excinfo.value.code == 1
    assert not out.exists()
    assert fake_tools.calls == []


def test_main_end_to_end(fake_tools, make_reads, config, tmp_path):
    out = tmp_path / "cli_out"

    Read_profiling.main(make_reads("A1") + ["-o", str(out), "--kraken-db", config.kraken_db])

    assert (out / "bracken_output" / "A1_bracken_species.txt").exists()
    assert (out / "logs" / "read_profiling_stage_results.tsv").exists()


def test_main_tool_failure_exit_code(fake_tools, make_reads, config, tmp_path):
    fake_tools.fail["fastp"] = 4

    with pytest.raises(SystemExit) as excinfo:
        Read_profiling.main(make_reads("A1") + ["-o", str(tmp_path / "o"), "--kraken-db", config.kraken_db])

    assert excinfo.value.code == 4


def test_dry_run_spawns_nothing(fake_tools, make_reads, tmp_path):
    Read_profiling.main(make_reads("A1") + ["-o", str(tmp_path / "o"), "--dry-run"])

    assert fake_tools.calls == []
    assert not (tmp_path / "o").exists()


@pytest.mark.parametrize("stage_name", ["nonpareil", "kraken2"])
def test_stage_needs_cleaned_reads(fake_tools, samples, config, layout, stage_name):
    stage = next(s for s in Read_profiling.STAGES if s.name == stage_name)
    ctx = RunContext(config, layout)

    with pytest.raises(MissingInputError, match="A1_cleaned_R1.fastq"):
        run_stage(stage, samples[0], ctx)

    assert fake_tools.calls == []
    assert not layout.stage_log("A1", stage_name).exists()
