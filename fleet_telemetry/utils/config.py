from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Union

import yaml


def load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"YAML root must be a mapping/dict: {path}")
    return data


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Recursively merges override into base (override wins).
    """
    out = dict(base)
    for k, v in override.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, Mapping):
            out[k] = _deep_merge(out[k], v)  # type: ignore[arg-type]
        else:
            out[k] = v
    return out


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Loads a YAML config file with optional inheritance via:
      extends: "base.yaml"
    or
      extends:
        - "base.yaml"
        - "winter_2024.yaml"

    Paths in 'extends' are resolved relative to the current config file.
    Later parents override earlier ones; the file itself wins over all parents.

    input.raw_dir and every output.* path are made absolute per file, against
    that file's `root:` (relative to the file, default: the file's directory),
    so a parent's paths do not move when a child in another folder extends it.
    """
    path = Path(path)
    cfg = load_yaml(path)

    extends = cfg.get("extends")
    merged: Dict[str, Any] = {}

    if extends:
        if isinstance(extends, (str, Path)):
            parents = [extends]
        elif isinstance(extends, list):
            parents = extends
        else:
            raise ValueError("Config key 'extends' must be a string or a list of strings.")

        for parent in parents:
            parent_path = Path(parent)
            if not parent_path.is_absolute():
                parent_path = (path.parent / parent_path).resolve()
            merged = _deep_merge(merged, load_config(parent_path))

    cfg_no_extends = dict(cfg)
    cfg_no_extends.pop("extends", None)
    cfg_no_extends = _resolve_paths(cfg_no_extends, (path.parent / str(cfg.get("root", "."))).resolve())
    merged = _deep_merge(merged, cfg_no_extends)

    merged.setdefault("_meta", {})
    merged["_meta"]["config_path"] = str(path.resolve())

    return merged


def _resolve_paths(cfg: Dict[str, Any], root: Path) -> Dict[str, Any]:
    def _abs(p: Any) -> Any:
        if isinstance(p, (str, Path)) and str(p).strip() and not Path(p).is_absolute():
            return str(root / Path(p))
        return p

    out = dict(cfg)
    inp = out.get("input")
    if isinstance(inp, dict) and "raw_dir" in inp:
        out["input"] = {**inp, "raw_dir": _abs(inp["raw_dir"])}
    output = out.get("output")
    if isinstance(output, dict):
        out["output"] = {k: _abs(v) for k, v in output.items()}
    return out


REQUIRED_KEYS = (("input", "raw_dir"), ("output", "states"), ("output", "meta"))


def validate_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Check the keys reconstruct_fleet needs before any file is touched."""
    for section, key in REQUIRED_KEYS:
        block = cfg.get(section)
        if not isinstance(block, dict):
            raise ValueError(f"Config section '{section}' is missing or not a mapping.")
        value = block.get(key)
        if not isinstance(value, (str, Path)) or not str(value).strip():
            raise ValueError(f"Config key '{section}.{key}' must be a non-empty path.")

    columns = cfg["input"].get("columns")
    if columns is not None and not isinstance(columns, dict):
        raise ValueError("Config key 'input.columns' must map entity/timestamp/activity to raw column names.")

    n_jobs = (cfg.get("processing") or {}).get("n_jobs", 1)
    if isinstance(n_jobs, bool) or not isinstance(n_jobs, int) or n_jobs == 0:
        raise ValueError(f"Config key 'processing.n_jobs' must be a non-zero integer, got {n_jobs!r}.")
    return cfg


def ensure_dirs(cfg: Dict[str, Any]) -> None:
    """
    Creates parent directories for the output paths. Safe to call multiple times.

      output:
        states: data/processed/fleet_states.parquet
        meta: data/processed/fleet_states_meta.json
        summary: data/processed/fleet_state_summary.csv
    """
    output = cfg.get("output", {}) or {}
    if isinstance(output, dict):
        for _, p in output.items():
            if isinstance(p, (str, Path)) and str(p).strip():
                pp = Path(p)
                # File path -> its parent; suffix-less path -> the directory itself
                parent = pp if pp.suffix == "" else pp.parent
                parent.mkdir(parents=True, exist_ok=True)
