import json
import argparse
from pathlib import Path

import pandas as pd
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.rule import Rule
from rich.markdown import Markdown

from pipeline_core import (
    MissingInputError,
    PipelineDriver,
    RunContext,
    Stage,
    UsageError,
    console,
    exit_on_pipeline_error,
    finish,
    provision_directories,
    resolve_paired_args,
    step_header,
)
from siwa_config import add_common_arguments, config_from_args
from siwa_layout import OutputLayout

USAGE = "Usage: Read_profiling Sample1_R1 Sample1_R2 [Sample2_R1 Sample2_R2 ...]"


def fastp_command(sample, ctx):
    layout = ctx.layout
    cleaned_r1, cleaned_r2 = layout.cleaned_reads(sample.name)
    return [
        "fastp",
        "-i", str(sample["R1"]),
        "-I", str(sample["R2"]),
        "-o", str(cleaned_r1),
        "-O", str(cleaned_r2),
        "-h", str(layout.fastp_html(sample.name)),
        "-j", str(layout.fastp_json(sample.name)),
        "-w", str(ctx.config.threads),
    ]


def nonpareil_command(sample, ctx):
    cleaned_r1, _ = ctx.layout.cleaned_reads(sample.name)
    return [
        "nonpareil",
        "-s", str(cleaned_r1),
        "-T", "kmer",
        "-k", str(ctx.config.nonpareil_kmer),
        "-f", "fastq",
        "-b", str(ctx.layout.nonpareil_prefix(sample.name)),
    ]


def kraken2_command(sample, ctx):
    layout = ctx.layout
    cleaned_r1, cleaned_r2 = layout.cleaned_reads(sample.name)
    return [
        "kraken2",
        "--db", str(ctx.config.kraken_db),
        "--paired",
        "--threads", str(ctx.config.threads),
        "--report", str(layout.kraken_report(sample.name)),
        "--output", str(layout.kraken_output(sample.name)),
        str(cleaned_r1),
        str(cleaned_r2),
    ]


def bracken_command(sample, ctx):
    return [
        "bracken",
        "-d", str(ctx.config.bracken_database),
        "-i", str(ctx.layout.kraken_report(sample.name)),
        "-o", str(ctx.layout.bracken_species(sample.name)),
        "-r", str(ctx.config.read_len),
        "-l", ctx.config.bracken_level,
    ]


def summarize_fastp(sample, ctx):
    fastp_json = ctx.layout.fastp_json(sample.name)
    if not fastp_json.exists():
        console.print(f"[yellow]fastp JSON file not found: {fastp_json}[/yellow]")
        return None

    with open(fastp_json) as f:
        data = json.load(f)

    summary = data.get("summary", {})
    rows = []
    for key in ("before_filtering", "after_filtering"):
        if key in summary:
            rows.append({"SAMPLE": sample.name, "filtering": key.split("_")[0], **summary[key]})

    out = ctx.layout.fastp_summary(sample.name)
    pd.DataFrame(rows).to_csv(out, sep="\t", index=False)
    console.print(f"fastp summary statistics saved for sample: {sample.name}")
    return out


def merge_bracken_tables(samples, layout):
    """Species x sample table of Bracken ``fraction_total_reads``."""
    columns = []
    for sample in samples:
        path = layout.bracken_species(sample.name)
        if not path.exists():
            console.print(f"[yellow]Skip {sample.name}: Bracken output not found: {path}[/yellow]")
            continue
        df = pd.read_csv(path, sep="\t")
        missing = {"name", "fraction_total_reads"} - set(df.columns)
        if missing:
            console.print(f"[yellow]Skip {sample.name}: {path} missing columns: {sorted(missing)}[/yellow]")
            continue
        columns.append(df.set_index("name")["fraction_total_reads"].rename(sample.name))

    if not columns:
        console.print("[yellow]No Bracken tables to merge.[/yellow]")
        return None

    table = pd.concat(columns, axis=1).fillna(0.0).sort_index()
    table.index.name = "name"
    table.to_csv(layout.bracken_abundance, sep="\t")
    console.print(f"Merged species abundance saved to {layout.bracken_abundance}")
    return layout.bracken_abundance


def check_cleaned_reads(sample, ctx):
    for read in ctx.layout.cleaned_reads(sample.name):
        if not read.is_file():
            raise MissingInputError(f"cleaned reads for {sample.name} not found: {read}")


STAGES = [
    Stage(
        "fastp", "fastp", fastp_command,
        requires=("R1", "R2"),
        outputs=lambda s, ctx: ctx.layout.cleaned_reads(s.name),
        after=summarize_fastp,
    ),
    Stage(
        "nonpareil", "nonpareil", nonpareil_command,
        precondition=check_cleaned_reads,
    ),
    Stage(
        "kraken2", "kraken2", kraken2_command,
        precondition=check_cleaned_reads,
        outputs=lambda s, ctx: [ctx.layout.kraken_report(s.name)],
    ),
    Stage(
        "bracken", "bracken", bracken_command,
        outputs=lambda s, ctx: [ctx.layout.bracken_species(s.name)],
    ),
]


def check_databases(cfg):
    if not cfg.kraken_db:
        raise UsageError("Kraken2 database not set: pass --kraken-db or set kraken_db in config.yml")
    for label, db in (("Kraken2", cfg.kraken_db), ("Bracken", cfg.bracken_database)):
        if not Path(db).expanduser().is_dir():
            raise MissingInputError(f"{label} database directory not found: {db}")


def run_pipeline(samples, cfg, layout):
    check_databases(cfg)
    provision_directories(layout.read_profiling_dirs())
    ctx = RunContext(cfg, layout)

    step_header("Read profiling", "fastp → Nonpareil → Kraken2 → Bracken")
    report = PipelineDriver("read_profiling", STAGES, ctx, order="stage").run(samples)
    merge_bracken_tables(samples, layout)
    return report


def print_plan(samples, cfg, layout):
    tbl = Table(show_header=True, header_style="bold magenta")
    tbl.add_column("Sample", style="cyan", no_wrap=True)
    tbl.add_column("R1 / R2", style="white")
    tbl.add_column("Cleaned reads", style="white")
    for s in samples:
        r1, r2 = layout.cleaned_reads(s.name)
        tbl.add_row(s.name, f"{s['R1']}\n{s['R2']}", f"{r1}\n{r2}")
    console.print(tbl)
    console.print(f"threads: {cfg.threads} | Kraken2 DB: {cfg.kraken_db} | Bracken DB: {cfg.bracken_database} "
                  f"| read length: {cfg.read_len} | level: {cfg.bracken_level}")
    console.print(Rule())


def custom_help():
    console = Console()

    intro = (
        "The 'Read_profiling' script runs read-level analysis of paired-end Illumina reads: "
        "quality control and adapter trimming (fastp), sequencing depth and coverage "
        "estimation (Nonpareil), taxonomic classification (Kraken2) and species "
        "abundance re-estimation (Bracken)."
    )
    console.print(Panel(intro, border_style="cyan", title="Read_profiling", title_align="left"))
    console.print(Markdown(
        "\n**Examples:**\n"
        "```\n"
        "Read_profiling A1_R1.fastq A1_R2.fastq A2_R1.fastq A2_R2.fastq --kraken-db /db/k2_standard\n"
        "Read_profiling A1_R1.fastq A1_R2.fastq -cf config.yml -t 16\n"
        "```\n"
        "The sample name is the file name up to the first underscore (`A1_R1.fastq` → `A1`).\n"
    ))

    out_tbl = Table(show_header=True, header_style="bold magenta")
    out_tbl.add_column("Files", style="cyan", no_wrap=True)
    out_tbl.add_column("Description", style="white")
    out_tbl.add_row("fastp_output/A1_cleaned_R1.fastq & A1_cleaned_R2.fastq", "Cleaned reads, input of MAG_recovery.")
    out_tbl.add_row("fastp_output/A1_fastp.html & A1_fastp.json", "fastp reports.")
    out_tbl.add_row("fastp_output/A1_fastp_summary.tsv", "Read statistics before and after filtering.")
    out_tbl.add_row("nonpareil_output/A1.*", "Nonpareil curves (.npo, .npa, .npc, .npl).")
    out_tbl.add_row("kraken2_output/A1_report.txt & A1_kraken.out", "Kraken2 report and per-read output.")
    out_tbl.add_row("bracken_output/A1_bracken_species.txt", "Bracken species-level abundance.")
    out_tbl.add_row("bracken_output/bracken_species_abundance.tsv", "Species x sample abundance table.")
    out_tbl.add_row("logs/A1_<tool>.log", "Tool output, one file per sample and tool.")
    console.print(Panel(out_tbl, border_style="magenta", title="Outputs", title_align="left"))

    g_tbl = Table(show_header=False, box=None, pad_edge=False)
    g_tbl.add_column("Flag", style="bold cyan", no_wrap=True)
    g_tbl.add_column("Description", style="white")
    g_tbl.add_row("-cf, --config", "Path to config.yml for envs/dbs.")
    g_tbl.add_row("-o, --out_dir", "Root of the output directories (default: .).")
    g_tbl.add_row("-t, --threads", "Threads for fastp and Kraken2 (default: 4).")
    g_tbl.add_row("--kraken-db", "Kraken2 database directory.")
    g_tbl.add_row("--bracken-db", "Bracken database directory (default: Kraken2 database).")
    g_tbl.add_row("--read-len", "Average read length for Bracken (default: 150).")
    g_tbl.add_row("--env-manager", "none | conda: how tool environments are entered (default: none).")
    g_tbl.add_row("--force", "Remove stale outputs that a tool refuses to overwrite.")
    g_tbl.add_row("--dry-run", "Print the plan and exit.")
    console.print(Panel(g_tbl, border_style="cyan", title="Parameters", title_align="left"))
    console.print(Rule(style="dim"))


class CustomArgumentParser(argparse.ArgumentParser):
    def print_help(self, file=None):
        custom_help()
        self.exit()


def build_parser():
    parser = CustomArgumentParser(prog="Read_profiling", description="fastp → Nonpareil → Kraken2 → Bracken.")
    parser.add_argument("reads", nargs="*", help="Sample1_R1 Sample1_R2 [Sample2_R1 Sample2_R2 ...]")
    add_common_arguments(parser)
    parser.add_argument("--kraken-db", dest="kraken_db", type=str)
    parser.add_argument("--bracken-db", dest="bracken_db", type=str)
    parser.add_argument("--read-len", dest="read_len", type=int)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    with exit_on_pipeline_error(USAGE):
        samples = resolve_paired_args(args.reads)
        cfg = config_from_args(args)
        layout = OutputLayout(Path(args.out_dir))
        print_plan(samples, cfg, layout)
        if args.dry_run:
            return
        run_pipeline(samples, cfg, layout)
        finish("Read-level metagenomic pipeline completed successfully.")


if __name__ == "__main__":
    main()
