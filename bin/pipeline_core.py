"""
Stage orchestration shared by the SIWA pipelines.

Samples are resolved once, output directories are provisioned, and every
(sample, stage) pair is run as one external process whose combined output
goes to ``logs/<sample>_<stage>.log``. The first failing stage aborts the
whole run.
"""

import os
import shlex
import shutil
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table

from siwa_layout import OutputLayout, sample_name_from

console = Console()
err_console = Console(stderr=True)

COMMAND_NOT_FOUND = 127


# --------------------------------- Errors -------------------------------------
class PipelineError(Exception):
    exit_code = 1
    # StageResult of the attempt that raised, when a tool had already run
    result = None


class UsageError(PipelineError):
    pass


class MissingInputError(PipelineError):
    pass


class PreconditionError(PipelineError):
    pass


class ExternalToolFailure(PipelineError):
    def __init__(self, result: "StageResult"):
        self.result = result
        self.exit_code = result.exit_code or 1
        super().__init__(
            f"{result.stage} failed for {result.sample} (exit {result.exit_code}). "
            f"See log: {result.log_path}"
        )


# ------------------------------- Data model -----------------------------------
@dataclass(frozen=True)
class Sample:
    name: str
    inputs: Tuple[Tuple[str, Path], ...] = ()

    @property
    def roles(self) -> Tuple[str, ...]:
        return tuple(role for role, _ in self.inputs)

    def __getitem__(self, role: str) -> Path:
        for key, path in self.inputs:
            if key == role:
                return path
        raise KeyError(role)

    def __contains__(self, role: str) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class StageResult:
    stage: str
    sample: str
    exit_code: int
    log_path: Path
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error is None


@dataclass(frozen=True)
class RunContext:
    config: object
    layout: OutputLayout


StepFn = Callable[[Sample, RunContext], object]


@dataclass(frozen=True)
class Stage:
    """One external tool invocation step.

    ``command`` returns the argv for a sample. ``outputs`` lists the files or
    directories a successful run must leave behind, ``directories`` the ones to
    create beforehand. ``stale_output`` names a directory the tool refuses to
    write into when it already exists; it is cleared only under ``force``.
    """
    name: str
    env: str
    command: Callable[[Sample, RunContext], List[str]]
    requires: Tuple[str, ...] = ()
    outputs: Optional[Callable[[Sample, RunContext], Iterable[Path]]] = None
    directories: Optional[Callable[[Sample, RunContext], Iterable[Path]]] = None
    stale_output: Optional[Callable[[Sample, RunContext], Path]] = None
    precondition: Optional[StepFn] = None
    after: Optional[StepFn] = None
    log_name: Optional[Callable[[Sample], str]] = None

    def log_path(self, sample: Sample, layout: OutputLayout) -> Path:
        if self.log_name is not None:
            return layout.log(self.log_name(sample))
        return layout.stage_log(sample.name, self.name)


class SampleState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class PipelineReport:
    name: str
    results: List[StageResult] = field(default_factory=list)
    states: Dict[str, SampleState] = field(default_factory=dict)
    failed: Optional[StageResult] = None
    aborted: bool = False

    @property
    def completed(self) -> bool:
        return not self.aborted and all(s is SampleState.COMPLETED for s in self.states.values())

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {"stage": r.stage, "sample": r.sample, "exit_code": r.exit_code,
             "error": r.error or "", "log": str(r.log_path)}
            for r in self.results
        ]
        return pd.DataFrame(rows, columns=["stage", "sample", "exit_code", "error", "log"])


# ---------------------------- Tool environments -------------------------------
class ToolEnvironment:
    """Runtime environment for one tool invocation.

    ``prefix`` is an environment directory whose ``bin/`` goes in front of PATH;
    ``conda_env`` wraps the command in ``conda run``. With neither set the
    current environment is used as is.
    """

    def __init__(self, name: str, prefix: Optional[str] = None,
                 conda_env: Optional[str] = None, conda_exe: str = "conda"):
        self.name = name
        self.prefix = prefix
        self.conda_env = conda_env
        self.conda_exe = conda_exe
        self.variables: Optional[Dict[str, str]] = None

    @property
    def active(self) -> bool:
        return self.variables is not None

    def __enter__(self) -> "ToolEnvironment":
        variables = dict(os.environ)
        if self.prefix:
            env_bin = Path(self.prefix).expanduser() / "bin"
            if env_bin.is_dir():
                variables["PATH"] = str(env_bin) + os.pathsep + variables.get("PATH", "")
                variables["CONDA_PREFIX"] = str(env_bin.parent)
            else:
                console.print(f"[yellow]Warning: {self.name} env bin not found: {env_bin} (continuing)[/yellow]")
        self.variables = variables
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.variables = None
        return False

    def wrap(self, cmd: Sequence[str]) -> List[str]:
        if self.conda_env:
            return [self.conda_exe, "run", "--no-capture-output", "-n", self.conda_env] + list(cmd)
        return list(cmd)


# ----------------------------- Sample resolver --------------------------------
def _check_readable(path: Path) -> None:
    if not path.is_file():
        raise MissingInputError(f"Input file not found: {path}")
    if not os.access(path, os.R_OK):
        raise MissingInputError(f"Input file not readable: {path}")


def _unique(samples: List[Sample]) -> List[Sample]:
    seen = {}
    for sample in samples:
        if sample.name in seen:
            raise UsageError(
                f"duplicate sample identifier '{sample.name}' derived from "
                f"{seen[sample.name]} and {sample['R1']}"
            )
        seen[sample.name] = sample["R1"]
    return samples


def resolve_paired_args(args: Sequence[str], check_files: bool = True) -> List[Sample]:
    """Build one Sample per (R1, R2) argument pair."""
    if len(args) == 0 or len(args) % 2 != 0:
        raise UsageError(f"invalid argument count: expected R1/R2 pairs, got {len(args)} argument(s)")

    samples = []
    for r1, r2 in zip(args[0::2], args[1::2]):
        r1, r2 = Path(r1), Path(r2)
        samples.append(Sample(sample_name_from(r1), (("R1", r1), ("R2", r2))))
    _unique(samples)

    if check_files:
        for sample in samples:
            _check_readable(sample["R1"])
            _check_readable(sample["R2"])
    return samples


def resolve_from_glob(directory, r1_glob: str, r1_token: str = "_R1",
                      r2_token: str = "_R2") -> List[Sample]:
    """Discover read pairs left in a previous stage's output directory."""
    directory = Path(directory)
    if not directory.is_dir():
        raise PreconditionError(f"Required output directory from a previous pipeline is missing: {directory}")

    r1_files = sorted(p for p in directory.glob(r1_glob) if p.is_file())
    if not r1_files:
        raise MissingInputError(f"no inputs found matching {directory / r1_glob}")

    samples = []
    for r1 in r1_files:
        head, sep, tail = r1.name.rpartition(r1_token)
        r2 = r1.with_name(head + r2_token + tail)
        if not r2.is_file():
            raise MissingInputError(f"missing paired file: {r2}")
        samples.append(Sample(sample_name_from(r1), (("R1", r1), ("R2", r2))))
    return _unique(samples)


# --------------------------- Directory provisioner ----------------------------
def provision_directories(paths: Iterable[Path]) -> List[Path]:
    created = []
    for path in paths:
        path = Path(path)
        if path.exists() and not path.is_dir():
            raise PreconditionError(f"Cannot create directory, a file is in the way: {path}")
        if not path.exists():
            path.mkdir(parents=True, exist_ok=True)
            created.append(path)
    if created:
        console.print(f"[dim]Created: {', '.join(str(p) for p in created)}[/dim]")
    return created


def is_nonempty_dir(p: Path) -> bool:
    return p.exists() and p.is_dir() and any(p.iterdir())


def clear_stale_output(path: Path, force: bool, owner: str = "") -> bool:
    """Remove a previous run's output directory, only when forced."""
    path = Path(path)
    if not path.exists():
        return False
    if not force:
        raise PreconditionError(
            f"Output from a previous run already exists: {path}\n"
            f"{owner or 'This stage'} will not write into it. Remove it or re-run with --force."
        )
    console.print(f"[yellow]--force: removing previous output {path}[/yellow]")
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()
    return True


# ------------------------------- Stage runner ---------------------------------
def require_nonempty_dir(path: Path, what: str) -> None:
    if not is_nonempty_dir(Path(path)):
        raise MissingInputError(f"{what} missing or empty: {path}")


def run_stage(stage: Stage, sample: Sample, ctx: RunContext) -> StageResult:
    missing = [role for role in stage.requires if role not in sample]
    if missing:
        raise MissingInputError(f"{stage.name}: sample {sample.name} has no {', '.join(missing)} input")
    for role in stage.requires:
        if not sample[role].exists():
            raise MissingInputError(f"{stage.name}: required {role} input not found: {sample[role]}")

    if stage.precondition is not None:
        stage.precondition(sample, ctx)
    if stage.stale_output is not None:
        clear_stale_output(stage.stale_output(sample, ctx), ctx.config.force, stage.name)
    if stage.directories is not None:
        provision_directories(stage.directories(sample, ctx))

    log_path = stage.log_path(sample, ctx.layout)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    with ctx.config.environment(stage.env) as env:
        argv = env.wrap(stage.command(sample, ctx))
        console.print(f"[bold cyan]> [{sample.name}] {stage.name}[/bold cyan]")
        console.print(f"[dim]{' '.join(shlex.quote(str(a)) for a in argv)}[/dim]")
        with open(log_path, "w") as log:
            try:
                proc = subprocess.run([str(a) for a in argv], stdout=log,
                                      stderr=subprocess.STDOUT, env=env.variables)
                exit_code = proc.returncode
            except FileNotFoundError:
                log.write(f"Command not found: {argv[0]}\n")
                exit_code = COMMAND_NOT_FOUND

    result = StageResult(stage.name, sample.name, exit_code, log_path)
    if not result.ok:
        return result

    try:
        if stage.outputs is not None:
            for out in stage.outputs(sample, ctx):
                if not Path(out).exists():
                    raise MissingInputError(
                        f"{stage.name} finished for {sample.name} but did not produce {out}. See log: {log_path}"
                    )
        if stage.after is not None:
            stage.after(sample, ctx)
    except PipelineError as e:
        e.result = replace(result, error=str(e))
        raise
    return result


# ------------------------------ Pipeline driver -------------------------------
class PipelineDriver:
    """Run a fixed, linear list of stages over a list of samples.

    ``order="sample"`` takes each sample through every stage before the next
    sample; ``order="stage"`` runs one stage over all samples before the next
    stage. Either way the first non-zero exit stops everything.
    """

    def __init__(self, name: str, stages: Sequence[Stage], ctx: RunContext,
                 order: str = "sample", runner: Callable[..., StageResult] = run_stage):
        if order not in ("sample", "stage"):
            raise ValueError(f"unknown order: {order}")
        self.name = name
        self.stages = list(stages)
        self.ctx = ctx
        self.order = order
        self.runner = runner
        self.report: Optional[PipelineReport] = None

    def _pairs(self, samples: Sequence[Sample]):
        if self.order == "sample":
            for sample in samples:
                for i, stage in enumerate(self.stages):
                    yield i, stage, sample
        else:
            for i, stage in enumerate(self.stages):
                for sample in samples:
                    yield i, stage, sample

    def run(self, samples: Sequence[Sample]) -> PipelineReport:
        report = PipelineReport(self.name, states={s.name: SampleState.PENDING for s in samples})
        self.report = report
        last = len(self.stages) - 1
        try:
            check_stale_outputs(self.stages, samples, self.ctx)
            for i, stage, sample in self._pairs(samples):
                report.states[sample.name] = SampleState.RUNNING
                result = self.runner(stage, sample, self.ctx)
                report.results.append(result)
                if not result.ok:
                    report.failed = result
                    raise ExternalToolFailure(result)
                if i == last:
                    report.states[sample.name] = SampleState.COMPLETED
        except Exception as e:
            if isinstance(e, PipelineError) and e.result is not None and report.failed is None:
                report.results.append(e.result)
                report.failed = e.result
            report.aborted = True
            for name, state in report.states.items():
                if state is not SampleState.COMPLETED:
                    report.states[name] = SampleState.ABORTED
            raise
        finally:
            write_stage_results(report, self.ctx.layout)
            print_results(report)
        return report


def check_stale_outputs(stages: Sequence[Stage], samples: Sequence[Sample], ctx: RunContext) -> None:
    """Settle every stale output directory before the first tool is spawned."""
    for stage in stages:
        if stage.stale_output is None:
            continue
        for sample in samples:
            clear_stale_output(stage.stale_output(sample, ctx), ctx.config.force, stage.name)


def write_stage_results(report: PipelineReport, layout: OutputLayout) -> Path:
    out = layout.stage_results(report.name)
    out.parent.mkdir(parents=True, exist_ok=True)
    report.to_frame().to_csv(out, sep="\t", index=False)
    return out


def print_results(report: PipelineReport) -> None:
    tbl = Table(show_header=True, header_style="bold blue")
    tbl.add_column("Sample", style="cyan", no_wrap=True)
    tbl.add_column("Stage", style="white")
    tbl.add_column("Exit", style="white")
    tbl.add_column("Log", style="dim")
    for r in report.results:
        if r.ok:
            status = "[green]0[/green]"
        elif r.error:
            status = f"[red]{r.exit_code} (error)[/red]"
        else:
            status = f"[red]{r.exit_code}[/red]"
        tbl.add_row(r.sample, r.stage, status, str(r.log_path))
    border = "red" if report.aborted else "green"
    console.print(Panel(tbl, border_style=border, title=f"{report.name} stage results", title_align="left"))


# ------------------------------ CLI helpers -----------------------------------
def step_header(title: str, subtitle: str = "") -> None:
    text = f"[bold]{title}[/bold]"
    if subtitle:
        text += f"\n[dim]{subtitle}[/dim]"
    console.print(Panel.fit(text, border_style="cyan", padding=(1, 2)))


@contextmanager
def exit_on_pipeline_error(usage: str = ""):
    """Turn a PipelineError into a red message and the error's exit code."""
    try:
        yield
    except UsageError as e:
        if usage:
            err_console.print(usage, highlight=False)
        err_console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(e.exit_code)
    except PipelineError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(e.exit_code)


def finish(message: str) -> None:
    console.print(Rule())
    console.print(Panel.fit(f"[bold green]{message}[/bold green]", border_style="green"))
