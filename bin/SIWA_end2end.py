#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
from pathlib import Path

from rich.panel import Panel
from rich.table import Table
from rich.rule import Rule
from rich.markdown import Markdown

import BGC_discovery
import MAG_recovery
import Read_profiling
from pipeline_core import Sample, console, exit_on_pipeline_error, finish, resolve_paired_args
from siwa_config import add_common_arguments, config_from_args
from siwa_layout import OutputLayout

STEPS = ("read_profiling", "mag_recovery", "bgc_discovery")
USAGE = "Usage: SIWA_end2end Sample1_R1 Sample1_R2 [Sample2_R1 Sample2_R2 ...]"


def custom_help():
    console.print(Panel(
        "SIWA End-to-End\n[bold]Pipeline:[/bold] Read profiling → MAG recovery → BGC discovery\n"
        "Databases, tool checkouts and environments come from a single config.yml.",
        border_style="blue", title="SIWA End-to-End", title_align="left"
    ))

    console.print(Markdown(
        "**I/O overview**\n"
        "- [Read profiling] input: raw `R1 R2` pairs → output: `fastp_output/`, `nonpareil_output/`, "
        "`kraken2_output/`, `bracken_output/`\n"
        "- [MAG recovery]   input: `fastp_output/<s>_cleaned_R1/R2.fastq` → output: `megahit_output/`, "
        "`metawrap_output/`, `gtotree_output/`\n"
        "- [BGC discovery]  input: MAGs, contigs and cleaned reads → output: `antismash_output/`, `BGCs/`, "
        "`bigmap_output/`, `bigslice_output/`"
    ))

    console.print(Panel("Usage: SIWA_end2end [OPTIONS] R1 R2 [R1 R2 ...]",
                        border_style="cyan", title="Global parameters", title_align="left"))

    g = Table(show_header=False, box=None, pad_edge=False)
    g.add_column("Flag", style="bold cyan", no_wrap=True)
    g.add_column("Description", style="white")
    g.add_row("-cf, --config", "Path to config.yml (envs/dbs/tools).")
    g.add_row("-o, --out_dir", "Root output directory (default: .).")
    g.add_row("-t, --threads", "Threads for every tool (default: 4).")
    g.add_row("--stop-after", "read_profiling | mag_recovery | bgc_discovery (default: bgc_discovery).")
    g.add_row("--kraken-db / --bracken-db / --read-len", "Read profiling options.")
    g.add_row("--memory / -c / -x", "MetaWRAP reassembly memory and bin quality thresholds.")
    g.add_row("--bigmap-dir / --bigscape-dir / --mibig-input", "BGC discovery tool locations.")
    g.add_row("--force", "Remove stale outputs that a tool refuses to overwrite.")
    g.add_row("--env-manager", "none | conda (default: none).")
    g.add_row("--dry-run", "Print the plan and exit.")
    console.print(g)
    console.print(Rule(style="dim"))


class CustomArgumentParser(argparse.ArgumentParser):
    def print_help(self, file=None):
        custom_help()
        self.exit()


def build_parser() -> argparse.ArgumentParser:
    p = CustomArgumentParser(
        prog="SIWA_end2end",
        description="Read profiling → MAG recovery → BGC discovery (config-driven).",
    )
    p.add_argument("reads", nargs="*")
    add_common_arguments(p)
    p.add_argument("--stop-after", choices=STEPS, default="bgc_discovery")

    # Read profiling
    p.add_argument("--kraken-db", dest="kraken_db", type=str)
    p.add_argument("--bracken-db", dest="bracken_db", type=str)
    p.add_argument("--read-len", dest="read_len", type=int)

    # MAG recovery
    p.add_argument("--memory", type=int)
    p.add_argument("-c", "--completeness", dest="bin_completeness", type=int)
    p.add_argument("-x", "--contamination", dest="bin_contamination", type=int)

    # BGC discovery
    p.add_argument("--bigmap-dir", dest="bigmap_dir", type=str)
    p.add_argument("--bigscape-dir", dest="bigscape_dir", type=str)
    p.add_argument("--mibig-input", dest="bigslice_mibig_input", type=str)
    return p


def cleaned_samples(samples, layout):
    """Samples rebound to the cleaned reads Read_profiling wrote for them."""
    return [Sample(s.name, tuple(zip(("R1", "R2"), layout.cleaned_reads(s.name)))) for s in samples]


def print_plan(samples, cfg, layout, stop_after):
    tbl = Table(show_header=True, header_style="bold magenta")
    tbl.add_column("Stage", style="cyan", no_wrap=True)
    tbl.add_column("Key Options / Paths", style="white")

    tbl.add_row("Read profiling",
                f"samples: {', '.join(s.name for s in samples)}\n"
                f"Kraken2 DB: {cfg.kraken_db} | read length: {cfg.read_len}\n"
                f"→ {layout.fastp}")
    if STEPS.index(stop_after) >= 1:
        tbl.add_row("MAG recovery",
                    f"threads: {cfg.threads} | memory: {cfg.memory} MB | "
                    f"comp≥{cfg.bin_completeness}, cont≤{cfg.bin_contamination}\n"
                    f"→ {layout.metawrap}")
    if STEPS.index(stop_after) >= 2:
        tbl.add_row("BGC discovery",
                    f"BiG-MAP: {cfg.bigmap_dir} | MIBiG input: {cfg.bigslice_mibig_input}\n"
                    f"→ {layout.bgcs}")
    console.print(tbl)
    console.print(Rule())


def orchestrate(samples, cfg, layout, stop_after="bgc_discovery"):
    reports = [Read_profiling.run_pipeline(samples, cfg, layout)]
    if stop_after == "read_profiling":
        return reports

    reports.append(MAG_recovery.run_pipeline(cleaned_samples(samples, layout), cfg, layout))
    if stop_after == "mag_recovery":
        return reports

    reports.extend(BGC_discovery.run_pipeline(cfg, layout))
    return reports


def main(argv=None):
    args = build_parser().parse_args(argv)

    console.print(Panel.fit(
        Markdown("### SIWA End-to-End\n**Pipeline:** Read profiling → MAG recovery → BGC discovery"),
        border_style="blue"
    ))
    with exit_on_pipeline_error(USAGE):
        samples = resolve_paired_args(args.reads)
        cfg = config_from_args(args)
        layout = OutputLayout(Path(args.out_dir))
        print_plan(samples, cfg, layout, args.stop_after)
        if args.dry_run:
            return
        orchestrate(samples, cfg, layout, args.stop_after)
        finish(f"All done! Results under {layout.root.resolve()}")


if __name__ == "__main__":
    main()
