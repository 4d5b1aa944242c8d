"""
Run configuration: config.yml defaults, CLI overrides and tool environments.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Optional

import yaml

from pipeline_core import MissingInputError, ToolEnvironment, UsageError, console

ENV_MANAGERS = ("none", "conda")


@dataclass
class PipelineConfig:
    threads: int = 4
    kraken_db: Optional[str] = None
    bracken_db: Optional[str] = None
    read_len: int = 150
    bracken_level: str = "S"
    nonpareil_kmer: int = 15
    memory: int = 800
    bin_completeness: int = 50
    bin_contamination: int = 10
    gtotree_hmm: str = "bacteria"
    bigmap_dir: str = "~/BiG-MAP"
    bigscape_dir: str = "~/BiG-SCAPE-1.1.9"
    bigslice_mibig_input: str = "bigslice_mibig_input"
    bigslice_n_ranks: int = 2
    env_manager: str = "none"
    conda_exe: str = "conda"
    envs: Dict[str, str] = field(default_factory=dict)
    force: bool = False

    @property
    def bracken_database(self) -> Optional[str]:
        return self.bracken_db or self.kraken_db

    def environment(self, name: str) -> ToolEnvironment:
        value = self.envs.get(name)
        if value:
            expanded = os.path.expanduser(value)
            if os.sep in value or value.startswith("~") or os.path.isdir(expanded):
                return ToolEnvironment(name, prefix=expanded)
            return ToolEnvironment(name, conda_env=value, conda_exe=self.conda_exe)
        if self.env_manager == "conda":
            return ToolEnvironment(name, conda_env=name, conda_exe=self.conda_exe)
        return ToolEnvironment(name)


_FIELDS = {f.name: f for f in fields(PipelineConfig)}
_INT_KEYS = {name for name, f in _FIELDS.items() if f.type is int or f.type == "int"}


def _clean(value):
    if isinstance(value, str):
        return value.strip().strip("'\"")
    return value


def _coerce(key: str, value):
    value = _clean(value)
    if key in _INT_KEYS:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise UsageError(f"config key '{key}' must be an integer, got {value!r}")
    if key == "force":
        if isinstance(value, bool):
            return value
        return str(value).lower() in ("1", "true", "yes", "on")
    if key == "envs":
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise UsageError("config key 'envs' must map environment names to prefixes or conda env names")
        return {str(k): str(_clean(v)) for k, v in value.items() if v}
    if key == "env_manager" and value not in ENV_MANAGERS:
        raise UsageError(f"env_manager must be one of {', '.join(ENV_MANAGERS)}, got {value!r}")
    return None if value is None else str(value)


def load_config(cfg_path=None) -> PipelineConfig:
    cfg = PipelineConfig()
    if not cfg_path:
        return cfg
    cfg_path = Path(cfg_path)
    if not cfg_path.is_file():
        raise MissingInputError(f"Config file not found: {cfg_path}")
    try:
        raw = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise UsageError(f"Failed to parse {cfg_path}: {e}")
    if not isinstance(raw, dict):
        raise UsageError(f"{cfg_path} must contain a mapping of key: value pairs")

    for key, value in raw.items():
        if key not in _FIELDS:
            console.print(f"[yellow]Warning: unknown config key '{key}' in {cfg_path} (ignored)[/yellow]")
            continue
        setattr(cfg, key, _coerce(key, value))
    return cfg


def apply_cli_overrides(cfg: PipelineConfig, args) -> PipelineConfig:
    """Copy every CLI value that was given onto the config."""
    for name in _FIELDS:
        value = getattr(args, name, None)
        if value is None or (name == "force" and value is False):
            continue
        setattr(cfg, name, _coerce(name, value))
    return cfg


def config_from_args(args) -> PipelineConfig:
    return apply_cli_overrides(load_config(getattr(args, "config", None)), args)


def add_common_arguments(parser) -> None:
    parser.add_argument("-cf", "--config", type=str, help="Path to config.yml for envs/dbs/tools.")
    parser.add_argument("-o", "--out_dir", type=str, default=".", help="Root of the output layout (default: .).")
    parser.add_argument("-t", "--threads", type=int, default=None, help="Threads passed to every tool (default: 4).")
    parser.add_argument("--force", action="store_true",
                        help="Remove stale output directories that a tool refuses to overwrite.")
    parser.add_argument("--env-manager", dest="env_manager", choices=ENV_MANAGERS, default=None,
                        help="How unmapped tool environments are entered (default: none).")
    parser.add_argument("--dry-run", action="store_true", help="Print the plan and exit.")
