import os
import sys
from pathlib import Path

import pytest

from pipeline_core import (
    COMMAND_NOT_FOUND,
    MissingInputError,
    RunContext,
    Sample,
    Stage,
    ToolEnvironment,
    run_stage,
)
from siwa_config import PipelineConfig


def python_stage(name, code, **kwargs):
    return Stage(name, name, lambda s, ctx: [sys.executable, "-c", code], **kwargs)


@pytest.fixture
def ctx(layout):
    return RunContext(PipelineConfig(), layout)


@pytest.fixture
def sample(tmp_path):
    r1 = tmp_path / "A1_R1.fastq"
    r1.write_text("@r\nA\n+\nI\n")
    return Sample("A1", (("R1", r1),))


def test_success_writes_log(ctx, sample):
    stage = python_stage("echo", "import sys; print('to stdout'); print('to stderr', file=sys.stderr)")

    result = run_stage(stage, sample, ctx)

    assert result.ok
    assert result.log_path == ctx.layout.logs / "A1_echo.log"
    text = result.log_path.read_text()
    assert "to stdout" in text
    assert "to stderr" in text


def test_failure_still_writes_log(ctx, sample):
    stage = python_stage("broken", "import sys; print('boom'); sys.exit(3)")

    result = run_stage(stage, sample, ctx)

    assert result.exit_code == 3
    assert not result.ok
    assert "boom" in result.log_path.read_text()


def test_command_not_found_writes_log(ctx, sample):
    stage = Stage("ghost", "ghost", lambda s, c: ["siwa-no-such-tool-xyz"])

    result = run_stage(stage, sample, ctx)

    assert result.exit_code == COMMAND_NOT_FOUND
    assert "Command not found" in result.log_path.read_text()


def test_missing_role_fails_before_spawn(ctx, sample):
    stage = python_stage("needs_r2", "pass", requires=("R1", "R2"))

    with pytest.raises(MissingInputError, match="R2"):
        run_stage(stage, sample, ctx)
    assert not (ctx.layout.logs / "A1_needs_r2.log").exists()


def test_missing_declared_output(ctx, sample, tmp_path):
    stage = python_stage("lazy", "pass", outputs=lambda s, c: [tmp_path / "never.txt"])

    with pytest.raises(MissingInputError, match="never.txt"):
        run_stage(stage, sample, ctx)


def test_after_hook_runs_on_success_only(ctx, sample):
    seen = []
    ok = python_stage("ok", "pass", after=lambda s, c: seen.append(("ok", s.name)))
    bad = python_stage("bad", "raise SystemExit(1)", after=lambda s, c: seen.append(("bad", s.name)))

    run_stage(ok, sample, ctx)
    run_stage(bad, sample, ctx)

    assert seen == [("ok", "A1")]


def test_directories_and_log_name_override(ctx, sample, tmp_path):
    target = tmp_path / "deep" / "dir"
    stage = python_stage("custom", "pass",
                         directories=lambda s, c: [target],
                         log_name=lambda s: "custom-name")

    result = run_stage(stage, sample, ctx)

    assert target.is_dir()
    assert result.log_path == ctx.layout.logs / "custom-name.log"


def test_prefix_environment_is_scoped(tmp_path):
    prefix = tmp_path / "envs" / "fastp"
    (prefix / "bin").mkdir(parents=True)
    env = ToolEnvironment("fastp", prefix=str(prefix))

    with env:
        assert env.active
        assert env.variables["PATH"].split(os.pathsep)[0] == str(prefix / "bin")
    assert not env.active


def test_environment_released_on_error():
    env = ToolEnvironment("fastp")
    with pytest.raises(RuntimeError):
        with env:
            raise RuntimeError("tool blew up")
    assert not env.active


def test_conda_wrap():
    env = ToolEnvironment("kraken2", conda_env="kraken2")
    assert env.wrap(["kraken2", "--db", "x"]) == [
        "conda", "run", "--no-capture-output", "-n", "kraken2", "kraken2", "--db", "x"
    ]
    assert ToolEnvironment("kraken2").wrap(["kraken2"]) == ["kraken2"]


def test_run_stage_enters_configured_prefix(layout, sample, tmp_path):
    prefix = tmp_path / "envs" / "echo"
    (prefix / "bin").mkdir(parents=True)
    ctx = RunContext(PipelineConfig(envs={"echo": str(prefix)}), layout)
    stage = python_stage("echo", "import os; print(os.environ['PATH']); print(os.environ['CONDA_PREFIX'])")

    result = run_stage(stage, sample, ctx)

    assert result.ok
    path_line, conda_prefix = result.log_path.read_text().splitlines()[:2]
    assert path_line.split(os.pathsep)[0] == str(prefix / "bin")
    assert conda_prefix == str(prefix)
    assert os.environ.get("PATH", "").split(os.pathsep)[0] != str(prefix / "bin")


def test_run_stage_wraps_in_conda_run(fake_tools, layout, sample):
    ctx = RunContext(PipelineConfig(env_manager="conda"), layout)
    stage = Stage("seqkit", "seqkit", lambda s, c: ["seqkit", "stats", str(s["R1"])])

    result = run_stage(stage, sample, ctx)

    assert result.ok
    assert fake_tools.calls == [
        ["conda", "run", "--no-capture-output", "-n", "seqkit", "seqkit", "stats", str(sample["R1"])]
    ]


def test_run_stage_uses_mapped_conda_env_name(fake_tools, layout, sample):
    ctx = RunContext(PipelineConfig(envs={"seqkit": "seqkit-2.5"}), layout)
    stage = Stage("seqkit", "seqkit", lambda s, c: ["seqkit", "version"])

    run_stage(stage, sample, ctx)

    assert fake_tools.calls[0][:6] == ["conda", "run", "--no-capture-output", "-n", "seqkit-2.5", "seqkit"]


def test_missing_output_attaches_result(ctx, sample, tmp_path):
    stage = python_stage("lazy", "print('done')", outputs=lambda s, c: [tmp_path / "never.txt"])

    with pytest.raises(MissingInputError) as excinfo:
        run_stage(stage, sample, ctx)

    result = excinfo.value.result
    assert result.exit_code == 0
    assert not result.ok
    assert "never.txt" in result.error
    assert "done" in result.log_path.read_text()
