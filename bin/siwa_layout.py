"""
Output layout shared by the three SIWA pipelines.

Every file name one pipeline writes and a later one globs for is built here,
so the naming contract between stages lives in a single place.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple


CLEANED_R1_GLOB = "*_cleaned_R1.fastq"
MAG_DIR_GLOB = "*_reassembled_bins/reassembled_bins"
CONTIGS_GLOB = "*_output/contigs.fa"
BGC_REGION_GLOB = "*.region*.gbk"


def sample_name_from(path) -> str:
    """Basename truncated at the first underscore."""
    return Path(path).name.split("_", 1)[0]


@dataclass(frozen=True)
class OutputLayout:
    root: Path = Path(".")

    # ---- top-level directories ----------------------------------------------
    @property
    def logs(self) -> Path:
        return self.root / "logs"

    @property
    def fastp(self) -> Path:
        return self.root / "fastp_output"

    @property
    def nonpareil(self) -> Path:
        return self.root / "nonpareil_output"

    @property
    def kraken2(self) -> Path:
        return self.root / "kraken2_output"

    @property
    def bracken(self) -> Path:
        return self.root / "bracken_output"

    @property
    def megahit(self) -> Path:
        return self.root / "megahit_output"

    @property
    def metawrap(self) -> Path:
        return self.root / "metawrap_output"

    @property
    def gtotree(self) -> Path:
        return self.root / "gtotree_output"

    @property
    def antismash(self) -> Path:
        return self.root / "antismash_output"

    @property
    def bgcs(self) -> Path:
        return self.root / "BGCs"

    @property
    def bigmap(self) -> Path:
        return self.root / "bigmap_output"

    @property
    def bigslice(self) -> Path:
        return self.root / "bigslice_output"

    def read_profiling_dirs(self) -> List[Path]:
        return [self.logs, self.fastp, self.nonpareil, self.kraken2, self.bracken]

    def mag_recovery_dirs(self) -> List[Path]:
        return [self.logs, self.megahit, self.metawrap, self.gtotree]

    def bgc_discovery_dirs(self) -> List[Path]:
        return [self.logs, self.antismash, self.bgcs, self.bigmap, self.bigslice]

    # ---- logs ---------------------------------------------------------------
    def log(self, name: str) -> Path:
        return self.logs / f"{name}.log"

    def stage_log(self, sample: str, stage: str) -> Path:
        return self.log(f"{sample}_{stage}")

    def stage_results(self, pipeline: str) -> Path:
        return self.logs / f"{pipeline}_stage_results.tsv"

    # ---- read profiling -----------------------------------------------------
    def cleaned_reads(self, sample: str) -> Tuple[Path, Path]:
        return (self.fastp / f"{sample}_cleaned_R1.fastq",
                self.fastp / f"{sample}_cleaned_R2.fastq")

    def fastp_html(self, sample: str) -> Path:
        return self.fastp / f"{sample}_fastp.html"

    def fastp_json(self, sample: str) -> Path:
        return self.fastp / f"{sample}_fastp.json"

    def fastp_summary(self, sample: str) -> Path:
        return self.fastp / f"{sample}_fastp_summary.tsv"

    def nonpareil_prefix(self, sample: str) -> Path:
        return self.nonpareil / sample

    def kraken_report(self, sample: str) -> Path:
        return self.kraken2 / f"{sample}_report.txt"

    def kraken_output(self, sample: str) -> Path:
        return self.kraken2 / f"{sample}_kraken.out"

    def bracken_species(self, sample: str) -> Path:
        return self.bracken / f"{sample}_bracken_species.txt"

    @property
    def bracken_abundance(self) -> Path:
        return self.bracken / "bracken_species_abundance.tsv"

    # ---- MAG recovery -------------------------------------------------------
    def megahit_dir(self, sample: str) -> Path:
        return self.megahit / f"{sample}_output"

    def contigs(self, sample: str) -> Path:
        return self.megahit_dir(sample) / "contigs.fa"

    def initial_bins(self, sample: str) -> Path:
        return self.metawrap / f"{sample}_initial_bins"

    def refined_bins(self, sample: str) -> Path:
        return self.metawrap / f"{sample}_refined_bins"

    def refined_bin_set(self, sample: str, completeness: int, contamination: int) -> Path:
        return self.refined_bins(sample) / f"metawrap_{completeness}_{contamination}_bins"

    def reassembled_bins(self, sample: str) -> Path:
        return self.metawrap / f"{sample}_reassembled_bins"

    def mag_dir(self, sample: str) -> Path:
        return self.reassembled_bins(sample) / "reassembled_bins"

    def gtdbtk_dir(self, sample: str) -> Path:
        return self.metawrap / f"{sample}_gtdbtk"

    def gtotree_dir(self, sample: str) -> Path:
        return self.gtotree / sample

    def gtotree_prefix(self, sample: str) -> Path:
        return self.gtotree_dir(sample) / f"{sample}_GTDB_tree"

    # ---- BGC discovery ------------------------------------------------------
    def antismash_dir(self, item: str) -> Path:
        return self.antismash / item

    def antismash_unbinned_dir(self, sample: str) -> Path:
        return self.antismash / f"{sample}_unbinned_contigs"

    @property
    def bigmap_family(self) -> Path:
        return self.bigmap / "BiG-MAP.family_output"

    @property
    def bigmap_map(self) -> Path:
        return self.bigmap / "BiG-MAP.map_output"

    @property
    def bigslice_db(self) -> Path:
        return self.bigslice / "mibig_gcf"

    # ---- discovery globs ----------------------------------------------------
    def find_mag_dirs(self) -> List[Path]:
        return sorted(p for p in self.metawrap.glob(MAG_DIR_GLOB) if p.is_dir())

    def find_contigs(self) -> List[Path]:
        return sorted(p for p in self.megahit.glob(CONTIGS_GLOB) if p.is_file())

    def find_bgc_regions(self) -> List[Path]:
        return sorted(self.antismash.rglob(BGC_REGION_GLOB))
