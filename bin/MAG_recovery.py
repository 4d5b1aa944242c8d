import argparse
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.rule import Rule
from rich.markdown import Markdown

from pipeline_core import (
    PipelineDriver,
    RunContext,
    Stage,
    console,
    exit_on_pipeline_error,
    finish,
    provision_directories,
    require_nonempty_dir,
    resolve_from_glob,
    resolve_paired_args,
    step_header,
)
from siwa_config import add_common_arguments, config_from_args
from siwa_layout import CLEANED_R1_GLOB, OutputLayout

USAGE = "Usage: MAG_recovery Sample1_R1 Sample1_R2 [Sample2_R1 Sample2_R2 ...]  |  MAG_recovery --from-qc"


def megahit_command(sample, ctx):
    return [
        "megahit",
        "-1", str(sample["R1"]),
        "-2", str(sample["R2"]),
        "-t", str(ctx.config.threads),
        "-o", str(ctx.layout.megahit_dir(sample.name)),
    ]


def binning_command(sample, ctx):
    return [
        "metawrap", "binning",
        "-o", str(ctx.layout.initial_bins(sample.name)),
        "-t", str(ctx.config.threads),
        "-a", str(ctx.layout.contigs(sample.name)),
        "--metabat2", "--maxbin2", "--concoct",
        str(sample["R1"]), str(sample["R2"]),
    ]


def bin_refinement_command(sample, ctx):
    cfg = ctx.config
    initial = ctx.layout.initial_bins(sample.name)
    return [
        "metawrap", "bin_refinement",
        "-o", str(ctx.layout.refined_bins(sample.name)),
        "-t", str(cfg.threads),
        "-A", str(initial / "metabat2_bins"),
        "-B", str(initial / "maxbin2_bins"),
        "-C", str(initial / "concoct_bins"),
        "-c", str(cfg.bin_completeness),
        "-x", str(cfg.bin_contamination),
    ]


def reassemble_command(sample, ctx):
    cfg = ctx.config
    return [
        "metawrap", "reassemble_bins",
        "-o", str(ctx.layout.reassembled_bins(sample.name)),
        "-1", str(sample["R1"]), "-2", str(sample["R2"]),
        "-t", str(cfg.threads), "-m", str(cfg.memory),
        "-c", str(cfg.bin_completeness), "-x", str(cfg.bin_contamination),
        "-b", str(_refined_bin_set(sample, ctx)),
    ]


def gtdbtk_command(sample, ctx):
    return [
        "gtdbtk", "classify_wf",
        "--genome_dir", str(ctx.layout.mag_dir(sample.name)),
        "--out_dir", str(ctx.layout.gtdbtk_dir(sample.name)),
        "--cpus", str(ctx.config.threads),
    ]


def gtotree_command(sample, ctx):
    # GToTree expects a directory of genomes using -d
    return [
        "GToTree",
        "-d", str(ctx.layout.mag_dir(sample.name)),
        "-H", ctx.config.gtotree_hmm,
        "-t", str(ctx.config.threads),
        "-o", str(ctx.layout.gtotree_prefix(sample.name)),
    ]


def _refined_bin_set(sample, ctx):
    cfg = ctx.config
    return ctx.layout.refined_bin_set(sample.name, cfg.bin_completeness, cfg.bin_contamination)


def check_mag_dir(sample, ctx):
    require_nonempty_dir(ctx.layout.mag_dir(sample.name), "MAG directory")


def discover_cleaned_reads(layout):
    """Cleaned read pairs left by Read_profiling in fastp_output/."""
    return resolve_from_glob(layout.fastp, CLEANED_R1_GLOB)


STAGES = [
    Stage(
        "megahit", "megahit", megahit_command,
        requires=("R1", "R2"),
        stale_output=lambda s, ctx: ctx.layout.megahit_dir(s.name),
        outputs=lambda s, ctx: [ctx.layout.contigs(s.name)],
    ),
    Stage(
        "initial_bins", "metawrap", binning_command,
        requires=("R1", "R2"),
        outputs=lambda s, ctx: [ctx.layout.initial_bins(s.name)],
    ),
    Stage(
        "refined_bins", "metawrap", bin_refinement_command,
        outputs=lambda s, ctx: [_refined_bin_set(s, ctx)],
    ),
    Stage(
        "reassembled_bins", "metawrap", reassemble_command,
        requires=("R1", "R2"),
        outputs=lambda s, ctx: [ctx.layout.mag_dir(s.name)],
    ),
    Stage(
        "gtdbtk", "gtdbtk", gtdbtk_command,
        precondition=check_mag_dir,
        stale_output=lambda s, ctx: ctx.layout.gtdbtk_dir(s.name),
    ),
    Stage(
        "gtotree", "gtotree", gtotree_command,
        precondition=check_mag_dir,
        directories=lambda s, ctx: [ctx.layout.gtotree_dir(s.name)],
    ),
]


def run_pipeline(samples, cfg, layout):
    provision_directories(layout.mag_recovery_dirs())
    ctx = RunContext(cfg, layout)

    step_header("MAG recovery", "MEGAHIT → MetaWRAP → GTDB-Tk → GToTree")
    return PipelineDriver("mag_recovery", STAGES, ctx, order="sample").run(samples)


def print_plan(samples, cfg, layout):
    tbl = Table(show_header=True, header_style="bold magenta")
    tbl.add_column("Sample", style="cyan", no_wrap=True)
    tbl.add_column("Cleaned reads", style="white")
    tbl.add_column("Contigs / MAGs", style="white")
    for s in samples:
        tbl.add_row(s.name, f"{s['R1']}\n{s['R2']}", f"{layout.contigs(s.name)}\n{layout.mag_dir(s.name)}")
    console.print(tbl)
    console.print(f"threads: {cfg.threads} | reassembly memory: {cfg.memory} MB | "
                  f"bins: completeness ≥ {cfg.bin_completeness}, contamination ≤ {cfg.bin_contamination}")
    console.print(Rule())


def custom_help():
    console = Console()

    intro = (
        "The 'MAG_recovery' script assembles cleaned reads (MEGAHIT), bins and refines contigs "
        "into MAGs (MetaWRAP binning, bin_refinement, reassemble_bins), assigns GTDB taxonomy "
        "(GTDB-Tk) and builds a phylogenomic tree of the MAGs (GToTree)."
    )
    console.print(Panel(intro, border_style="cyan", title="MAG_recovery", title_align="left"))
    console.print(Markdown(
        "\n**Examples:**\n"
        "```\n"
        "MAG_recovery fastp_output/A1_cleaned_R1.fastq fastp_output/A1_cleaned_R2.fastq -t 16\n"
        "MAG_recovery --from-qc -cf config.yml\n"
        "```\n"
        "`--from-qc` picks up every `fastp_output/*_cleaned_R1.fastq` pair written by Read_profiling.\n"
    ))

    out_tbl = Table(show_header=True, header_style="bold green")
    out_tbl.add_column("Files", style="cyan", no_wrap=True)
    out_tbl.add_column("Description", style="white")
    out_tbl.add_row("megahit_output/A1_output/contigs.fa", "Assembled contigs.")
    out_tbl.add_row("metawrap_output/A1_initial_bins/", "MetaBAT2, MaxBin2 and CONCOCT bins.")
    out_tbl.add_row("metawrap_output/A1_refined_bins/", "Refined bin set.")
    out_tbl.add_row("metawrap_output/A1_reassembled_bins/reassembled_bins/", "Final MAGs.")
    out_tbl.add_row("metawrap_output/A1_gtdbtk/", "GTDB-Tk classification.")
    out_tbl.add_row("gtotree_output/A1/A1_GTDB_tree", "GToTree phylogenomic tree.")
    console.print(Panel(out_tbl, border_style="green", title="Outputs", title_align="left"))

    g_tbl = Table(show_header=False, box=None, pad_edge=False)
    g_tbl.add_column("Flag", style="bold cyan", no_wrap=True)
    g_tbl.add_column("Description", style="white")
    g_tbl.add_row("-cf, --config", "Path to config.yml for envs.")
    g_tbl.add_row("-o, --out_dir", "Root of the output directories (default: .).")
    g_tbl.add_row("-t, --threads", "Threads for every tool (default: 4).")
    g_tbl.add_row("--from-qc", "Use the cleaned reads found in fastp_output/.")
    g_tbl.add_row("--memory", "Memory in MB for MetaWRAP reassembly (default: 800).")
    g_tbl.add_row("-c, --completeness", "Minimum bin completeness (default: 50).")
    g_tbl.add_row("-x, --contamination", "Maximum bin contamination (default: 10).")
    g_tbl.add_row("--force", "Remove previous MEGAHIT and GTDB-Tk outputs before re-running.")
    g_tbl.add_row("--env-manager", "none | conda: how tool environments are entered (default: none).")
    g_tbl.add_row("--dry-run", "Print the plan and exit.")
    console.print(Panel(g_tbl, border_style="cyan", title="Parameters", title_align="left"))
    console.print(Rule(style="dim"))


class CustomArgumentParser(argparse.ArgumentParser):
    def print_help(self, file=None):
        custom_help()
        self.exit()


def build_parser():
    parser = CustomArgumentParser(prog="MAG_recovery", description="MEGAHIT → MetaWRAP → GTDB-Tk → GToTree.")
    parser.add_argument("reads", nargs="*", help="Sample1_R1 Sample1_R2 [Sample2_R1 Sample2_R2 ...]")
    add_common_arguments(parser)
    parser.add_argument("--from-qc", action="store_true", help="Discover cleaned reads in fastp_output/.")
    parser.add_argument("--memory", type=int)
    parser.add_argument("-c", "--completeness", dest="bin_completeness", type=int)
    parser.add_argument("-x", "--contamination", dest="bin_contamination", type=int)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    layout = OutputLayout(Path(args.out_dir))
    with exit_on_pipeline_error(USAGE):
        if args.from_qc and not args.reads:
            samples = discover_cleaned_reads(layout)
        else:
            samples = resolve_paired_args(args.reads)
        cfg = config_from_args(args)
        print_plan(samples, cfg, layout)
        if args.dry_run:
            return
        run_pipeline(samples, cfg, layout)
        finish("Pipeline completed successfully for all samples.")


if __name__ == "__main__":
    main()
