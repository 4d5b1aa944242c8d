"""Shared fixtures for the SIWA test suite.

``fake_tools`` replaces ``subprocess.run`` inside the stage runner with a
dispatcher that records every command and creates the files each external
tool would leave behind, so whole pipelines run without any bioinformatics
software installed.
"""

import json
import subprocess
from pathlib import Path

import pytest

import pipeline_core
from siwa_config import PipelineConfig
from siwa_layout import OutputLayout


BRACKEN_HEADER = "name\ttaxonomy_id\ttaxonomy_lvl\tkraken_assigned_reads\tadded_reads\tnew_est_reads\tfraction_total_reads\n"


def _opt(argv, flag):
    return argv[argv.index(flag) + 1]


def _touch(path, text=""):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


def tool_key(argv):
    name = Path(argv[0]).name
    if name == "conda":
        return tool_key(argv[argv.index("-n") + 2:])
    if name == "metawrap":
        return f"metawrap {argv[1]}"
    if name.startswith("python"):
        return Path(argv[1]).name
    return name


class FakeTools:
    def __init__(self):
        self.calls = []
        self.fail = {}
        self.empty_mags = False

    @property
    def keys(self):
        return [tool_key(argv) for argv in self.calls]

    def __call__(self, argv, stdout=None, stderr=None, env=None, **kwargs):
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        key = tool_key(argv)
        if stdout is not None and hasattr(stdout, "write"):
            stdout.write(f"fake {key}\n")
        if key in self.fail:
            return subprocess.CompletedProcess(argv, self.fail[key])
        if argv[0] == "conda":
            argv = argv[argv.index("-n") + 2:]
        self.produce(key, argv)
        return subprocess.CompletedProcess(argv, 0)

    def produce(self, key, argv):
        if key == "fastp":
            for flag in ("-o", "-O", "-h"):
                _touch(_opt(argv, flag), "@read\nACGT\n+\nIIII\n")
            summary = {"summary": {
                "before_filtering": {"total_reads": 200, "total_bases": 30000},
                "after_filtering": {"total_reads": 180, "total_bases": 27000},
            }}
            _touch(_opt(argv, "-j"), json.dumps(summary))
        elif key == "nonpareil":
            _touch(_opt(argv, "-b") + ".npo")
        elif key == "kraken2":
            _touch(_opt(argv, "--report"))
            _touch(_opt(argv, "--output"))
        elif key == "bracken":
            _touch(_opt(argv, "-o"), BRACKEN_HEADER
                   + "Escherichia coli\t562\tS\t100\t20\t120\t0.6\n"
                   + "Bacteroides fragilis\t817\tS\t70\t10\t80\t0.4\n")
        elif key == "megahit":
            _touch(Path(_opt(argv, "-o")) / "contigs.fa", ">k141_1\nACGT\n")
        elif key == "metawrap binning":
            for bins in ("metabat2_bins", "maxbin2_bins", "concoct_bins"):
                (Path(_opt(argv, "-o")) / bins).mkdir(parents=True, exist_ok=True)
        elif key == "metawrap bin_refinement":
            name = f"metawrap_{_opt(argv, '-c')}_{_opt(argv, '-x')}_bins"
            (Path(_opt(argv, "-o")) / name).mkdir(parents=True, exist_ok=True)
        elif key == "metawrap reassemble_bins":
            mags = Path(_opt(argv, "-o")) / "reassembled_bins"
            mags.mkdir(parents=True, exist_ok=True)
            if not self.empty_mags:
                _touch(mags / "bin.1.fa", ">c1\nACGT\n")
                _touch(mags / "bin.2.fa", ">c2\nACGT\n")
        elif key == "gtdbtk":
            Path(_opt(argv, "--out_dir")).mkdir(parents=True, exist_ok=True)
        elif key == "GToTree":
            Path(_opt(argv, "-o")).mkdir(parents=True, exist_ok=True)
        elif key == "antismash":
            out = Path(_opt(argv, "--output-dir"))
            _touch(out / f"{Path(argv[-1]).stem}.region001.gbk", "LOCUS\n")
        elif key in ("BiG-MAP.family.py", "BiG-MAP.map.py"):
            Path(_opt(argv, "-O")).mkdir(parents=True, exist_ok=True)
        elif key == "bigslice":
            Path(argv[-1]).mkdir(parents=True, exist_ok=True)


@pytest.fixture
def fake_tools(monkeypatch):
    fake = FakeTools()
    monkeypatch.setattr(pipeline_core.subprocess, "run", fake)
    return fake


@pytest.fixture
def layout(tmp_path):
    return OutputLayout(tmp_path / "out")


@pytest.fixture
def make_reads(tmp_path):
    """Create paired FASTQ files and return their paths as a flat list."""
    def _make(*names, directory="raw"):
        root = tmp_path / directory
        root.mkdir(parents=True, exist_ok=True)
        paths = []
        for name in names:
            for read in ("R1", "R2"):
                path = root / f"{name}_{read}.fastq"
                path.write_text("@read\nACGT\n+\nIIII\n")
                paths.append(str(path))
        return paths
    return _make


@pytest.fixture
def config(tmp_path):
    kraken_db = tmp_path / "k2_db"
    kraken_db.mkdir()
    bigmap = tmp_path / "BiG-MAP"
    (bigmap / "src").mkdir(parents=True)
    (bigmap / "src" / "BiG-MAP.family.py").write_text("")
    (bigmap / "src" / "BiG-MAP.map.py").write_text("")
    mibig = tmp_path / "mibig_input"
    mibig.mkdir()
    return PipelineConfig(
        threads=2,
        kraken_db=str(kraken_db),
        bigmap_dir=str(bigmap),
        bigscape_dir=str(tmp_path / "BiG-SCAPE"),
        bigslice_mibig_input=str(mibig),
    )
