import shutil
import argparse
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.rule import Rule
from rich.markdown import Markdown

from pipeline_core import (
    MissingInputError,
    PipelineDriver,
    PreconditionError,
    RunContext,
    Sample,
    Stage,
    check_stale_outputs,
    console,
    exit_on_pipeline_error,
    finish,
    provision_directories,
    resolve_from_glob,
    step_header,
)
from siwa_config import add_common_arguments, config_from_args
from siwa_layout import BGC_REGION_GLOB, CLEANED_R1_GLOB, OutputLayout, sample_name_from

ANTISMASH_OPTIONS = [
    "--tigrfam", "--asf", "--cc-mibig", "--cb-general",
    "--cb-subclusters", "--cb-knownclusters", "--pfam2go",
    "--rre", "--smcog-trees", "--tfbs",
    "--genefinding-tool", "prodigal-m",
]


# ------------------------------ Input discovery -------------------------------
def discover_inputs(layout):
    """MAG FASTA files, unbinned contigs and cleaned reads from earlier pipelines."""
    mag_dirs = layout.find_mag_dirs()
    contigs = layout.find_contigs()
    if not mag_dirs and not contigs:
        raise PreconditionError(
            f"No MAGs or contigs detected from MAG_recovery outputs "
            f"({layout.metawrap}, {layout.megahit})."
        )
    if not layout.fastp.is_dir() or not any(layout.fastp.glob(CLEANED_R1_GLOB)):
        raise PreconditionError(f"Cleaned reads from Read_profiling not found in {layout.fastp}")
    reads = resolve_from_glob(layout.fastp, CLEANED_R1_GLOB)

    mags = []
    for mag_dir in mag_dirs:
        sample = sample_name_from(mag_dir.parent)
        for fasta in sorted(mag_dir.glob("*.fa")):
            mags.append(Sample(f"{sample}_{fasta.stem}", (("fasta", fasta),)))

    unbinned = [Sample(sample_name_from(c.parent), (("contigs", c),)) for c in contigs]
    return mags, unbinned, reads


# --------------------------------- antiSMASH ----------------------------------
def antismash_command(fasta, out_dir):
    return ["antismash", "--output-dir", str(out_dir)] + ANTISMASH_OPTIONS + [str(fasta)]


ANTISMASH_MAGS = Stage(
    "antismash", "antismash",
    lambda s, ctx: antismash_command(s["fasta"], ctx.layout.antismash_dir(s.name)),
    requires=("fasta",),
    stale_output=lambda s, ctx: ctx.layout.antismash_dir(s.name),
    log_name=lambda s: s.name,
)

ANTISMASH_UNBINNED = Stage(
    "unbinned_antismash", "antismash",
    lambda s, ctx: antismash_command(s["contigs"], ctx.layout.antismash_unbinned_dir(s.name)),
    requires=("contigs",),
    stale_output=lambda s, ctx: ctx.layout.antismash_unbinned_dir(s.name),
)


def collect_bgc_files(layout):
    """Prefix every antiSMASH region GenBank file with its sample and move it to BGCs/."""
    layout.bgcs.mkdir(parents=True, exist_ok=True)
    moved = 0
    for gbk in layout.find_bgc_regions():
        sample = sample_name_from(gbk.parent)
        dest = layout.bgcs / f"{sample}_{gbk.name}"
        if dest.exists():
            console.print(f"[yellow]Replacing existing BGC file: {dest}[/yellow]")
        shutil.move(str(gbk), str(dest))
        moved += 1

    collected = sorted(layout.bgcs.glob(BGC_REGION_GLOB))
    if not collected:
        raise MissingInputError(f"No BGC GenBank files ({BGC_REGION_GLOB}) found in {layout.antismash} or {layout.bgcs}")
    console.print(f"Collected {moved} new BGC file(s); {len(collected)} in {layout.bgcs}")
    return collected


# ------------------------------ BiG-MAP / BiG-SLICE ---------------------------
def bigmap_script(cfg, name):
    return Path(cfg.bigmap_dir).expanduser() / "src" / name


def mibig_input(ctx):
    path = Path(ctx.config.bigslice_mibig_input).expanduser()
    return path if path.is_absolute() else ctx.layout.root / path


def check_bigmap_family(sample, ctx):
    script = bigmap_script(ctx.config, "BiG-MAP.family.py")
    if not script.is_file():
        raise MissingInputError(f"BiG-MAP script not found: {script} (set bigmap_dir)")


def check_bigmap_map(sample, ctx):
    script = bigmap_script(ctx.config, "BiG-MAP.map.py")
    if not script.is_file():
        raise MissingInputError(f"BiG-MAP script not found: {script} (set bigmap_dir)")


def check_mibig_input(sample, ctx):
    if not mibig_input(ctx).is_dir():
        raise MissingInputError(f"BiG-SLICE MIBiG input folder not found: {mibig_input(ctx)}")


def bigmap_family_command(sample, ctx):
    bigscape = str(Path(ctx.config.bigscape_dir).expanduser())
    return [
        "python3", str(bigmap_script(ctx.config, "BiG-MAP.family.py")),
        "-D", str(sample["BGCs"]),
        "-b", bigscape,
        "-pf", bigscape,
        "-O", str(ctx.layout.bigmap_family),
    ]


def bigmap_map_stage(reads):
    def command(sample, ctx):
        return (
            ["python3", str(bigmap_script(ctx.config, "BiG-MAP.map.py")), "-I1"]
            + [str(r["R1"]) for r in reads]
            + ["-I2"]
            + [str(r["R2"]) for r in reads]
            + ["-O", str(ctx.layout.bigmap_map), "-F", str(ctx.layout.bigmap_family)]
        )

    return Stage(
        "BiG-MAP.map", "BiG-MAP_process", command,
        precondition=check_bigmap_map,
        log_name=lambda s: "BiG-MAP.map",
    )


BIGMAP_FAMILY = Stage(
    "BiG-MAP.family", "BiG-MAP_process", bigmap_family_command,
    requires=("BGCs",),
    precondition=check_bigmap_family,
    outputs=lambda s, ctx: [ctx.layout.bigmap_family],
    log_name=lambda s: "BiG-MAP.family",
)

BIGSLICE_MIBIG = Stage(
    "bigslice_mibig", "bigslice",
    lambda s, ctx: ["bigslice", "-i", str(mibig_input(ctx)), str(ctx.layout.bigslice_db)],
    precondition=check_mibig_input,
    stale_output=lambda s, ctx: ctx.layout.bigslice_db,
    log_name=lambda s: "bigslice_mibig",
)

BIGSLICE_QUERY = Stage(
    "bigslice_query", "bigslice",
    lambda s, ctx: ["bigslice", "--query", str(s["BGCs"]),
                    "--n_ranks", str(ctx.config.bigslice_n_ranks), str(ctx.layout.bigslice_db)],
    requires=("BGCs",),
    log_name=lambda s: "bigslice_query",
)


def run_pipeline(cfg, layout):
    mags, unbinned, reads = discover_inputs(layout)
    provision_directories(layout.bgc_discovery_dirs())
    ctx = RunContext(cfg, layout)

    bgcs = Sample("BGCs", (("BGCs", layout.bgcs),))
    analysis = [BIGMAP_FAMILY, bigmap_map_stage(reads), BIGSLICE_MIBIG, BIGSLICE_QUERY]
    check_stale_outputs([ANTISMASH_MAGS], mags, ctx)
    check_stale_outputs([ANTISMASH_UNBINNED], unbinned, ctx)
    check_stale_outputs(analysis, [bgcs], ctx)

    step_header("Step 1: antiSMASH", f"{len(mags)} MAG(s), {len(unbinned)} unbinned contig set(s)")
    reports = [
        PipelineDriver("bgc_antismash_mags", [ANTISMASH_MAGS], ctx).run(mags),
        PipelineDriver("bgc_antismash_unbinned", [ANTISMASH_UNBINNED], ctx).run(unbinned),
    ]

    step_header("Step 2: Collect BGCs", f"{layout.antismash} → {layout.bgcs}")
    collect_bgc_files(layout)

    step_header("Step 3/4: BiG-MAP and BiG-SLICE", "family → map → MIBiG database → query")
    reports.append(PipelineDriver("bgc_analysis", analysis, ctx).run([bgcs]))
    return reports


def print_plan(cfg, layout):
    tbl = Table(show_header=True, header_style="bold magenta")
    tbl.add_column("Step", style="cyan", no_wrap=True)
    tbl.add_column("Input → Output", style="white")
    tbl.add_row("antiSMASH", f"{layout.metawrap}/*_reassembled_bins/reassembled_bins/*.fa, "
                             f"{layout.megahit}/*_output/contigs.fa\n→ {layout.antismash}")
    tbl.add_row("Collect", f"{layout.antismash}/**/{BGC_REGION_GLOB} → {layout.bgcs}")
    tbl.add_row("BiG-MAP", f"{layout.bgcs} + {layout.fastp}/{CLEANED_R1_GLOB}\n→ {layout.bigmap}\n"
                           f"BiG-MAP: {cfg.bigmap_dir} | BiG-SCAPE: {cfg.bigscape_dir}")
    tbl.add_row("BiG-SLICE", f"{cfg.bigslice_mibig_input} + {layout.bgcs} → {layout.bigslice_db}")
    console.print(tbl)
    console.print(Rule())


def custom_help():
    console = Console()

    intro = (
        "The 'BGC_discovery' script detects biosynthetic gene clusters in MAGs and unbinned "
        "contigs (antiSMASH), gathers the region GenBank files into BGCs/, estimates BGC "
        "abundance from the cleaned reads (BiG-MAP) and assesses novelty against MIBiG "
        "(BiG-SLICE). It consumes the outputs of Read_profiling and MAG_recovery found "
        "under the output root."
    )
    console.print(Panel(intro, border_style="cyan", title="BGC_discovery", title_align="left"))
    console.print(Markdown(
        "\n**Examples:**\n"
        "```\n"
        "BGC_discovery -cf config.yml\n"
        "BGC_discovery -o /results --bigmap-dir ~/BiG-MAP --bigscape-dir ~/BiG-SCAPE-1.1.9\n"
        "```\n"
    ))

    out_tbl = Table(show_header=True, header_style="bold yellow")
    out_tbl.add_column("Files", style="cyan", no_wrap=True)
    out_tbl.add_column("Description", style="white")
    out_tbl.add_row("antismash_output/A1_<bin>/ & A1_unbinned_contigs/", "antiSMASH results.")
    out_tbl.add_row("BGCs/A1_<contig>.region001.gbk", "Collected BGC GenBank files.")
    out_tbl.add_row("bigmap_output/BiG-MAP.family_output & BiG-MAP.map_output", "BiG-MAP families and abundance.")
    out_tbl.add_row("bigslice_output/mibig_gcf", "BiG-SLICE MIBiG database and query results.")
    console.print(Panel(out_tbl, border_style="yellow", title="Outputs", title_align="left"))

    g_tbl = Table(show_header=False, box=None, pad_edge=False)
    g_tbl.add_column("Flag", style="bold cyan", no_wrap=True)
    g_tbl.add_column("Description", style="white")
    g_tbl.add_row("-cf, --config", "Path to config.yml for envs/tools.")
    g_tbl.add_row("-o, --out_dir", "Root of the output directories (default: .).")
    g_tbl.add_row("--bigmap-dir", "BiG-MAP checkout (default: ~/BiG-MAP).")
    g_tbl.add_row("--bigscape-dir", "BiG-SCAPE checkout with Pfam (default: ~/BiG-SCAPE-1.1.9).")
    g_tbl.add_row("--mibig-input", "BiG-SLICE input folder with MIBiG BGCs (default: bigslice_mibig_input).")
    g_tbl.add_row("--force", "Remove previous antiSMASH and BiG-SLICE outputs before re-running.")
    g_tbl.add_row("--env-manager", "none | conda: how tool environments are entered (default: none).")
    g_tbl.add_row("--dry-run", "Print the plan and exit.")
    console.print(Panel(g_tbl, border_style="cyan", title="Parameters", title_align="left"))
    console.print(Rule(style="dim"))


class CustomArgumentParser(argparse.ArgumentParser):
    def print_help(self, file=None):
        custom_help()
        self.exit()


def build_parser():
    parser = CustomArgumentParser(prog="BGC_discovery", description="antiSMASH → BiG-MAP → BiG-SLICE.")
    add_common_arguments(parser)
    parser.add_argument("--bigmap-dir", dest="bigmap_dir", type=str)
    parser.add_argument("--bigscape-dir", dest="bigscape_dir", type=str)
    parser.add_argument("--mibig-input", dest="bigslice_mibig_input", type=str)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    layout = OutputLayout(Path(args.out_dir))
    with exit_on_pipeline_error():
        cfg = config_from_args(args)
        print_plan(cfg, layout)
        if args.dry_run:
            return
        run_pipeline(cfg, layout)
        finish("BGC discovery and analysis pipeline completed successfully.")


if __name__ == "__main__":
    main()
