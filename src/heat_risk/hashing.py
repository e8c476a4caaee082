"""
Provenance sidecars and hash-aware caching.

Every pipeline output gets `<stem>_metadata.json` in data/processed/metadata
recording:
- input file hashes (sha256)
- config digest (hash of the stage's config section)
- git commit / dirty flag, when run inside a repository
- library versions, timestamp and run_id
- stage-specific extras (raster grid, layer ranges, policy notes)

A stage skips work only when its output exists and both the config digest
and every input hash match the sidecar; `--force` overrides.
"""

import hashlib
import json
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence, Union

from heat_risk.io_utils import atomic_write_json, read_json
from heat_risk.logging_utils import get_versions
from heat_risk.paths import METADATA_DIR

PathLike = Union[str, Path]
# One file, or a set of files hashed together (e.g. a window of daily rasters)
InputSpec = Union[PathLike, Sequence[PathLike]]

CHUNK_SIZE = 1 << 20


# =============================================================================
# Hashing
# =============================================================================

def hash_file(path: PathLike, algorithm: str = "sha256") -> str:
    """Hex digest of a file, read in chunks."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Cannot hash non-existent file: {path}")

    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


def hash_files(paths: Iterable[PathLike], algorithm: str = "sha256") -> str:
    """
    Single digest of a file set: each file's name and content hash, in
    sorted path order. Adding, removing or editing any file changes it.
    """
    h = hashlib.new(algorithm)
    for path in sorted(Path(p) for p in paths):
        h.update(f"{path.name}:{hash_file(path, algorithm)}\n".encode("utf-8"))
    return h.hexdigest()


def hash_dict(d: Dict[str, Any], algorithm: str = "sha256") -> str:
    """Digest of a dict via key-sorted JSON."""
    h = hashlib.new(algorithm)
    h.update(json.dumps(d, sort_keys=True, default=str).encode("utf-8"))
    return h.hexdigest()


# =============================================================================
# Git
# =============================================================================

def _git(*args: str) -> Optional[str]:
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return None
    return result.stdout.strip() if result.returncode == 0 else None


def get_git_info() -> Dict[str, Any]:
    """Commit hash and dirty flag; both None outside a git checkout."""
    commit = _git("rev-parse", "HEAD")
    status = _git("status", "--porcelain")
    return {
        "commit": commit,
        "dirty": None if status is None else len(status) > 0,
    }


# =============================================================================
# Metadata sidecars
# =============================================================================

def sidecar_path_for(output_path: PathLike, metadata_dir: Optional[Path] = None) -> Path:
    return (metadata_dir or METADATA_DIR) / f"{Path(output_path).stem}_metadata.json"


def _is_file_set(spec: InputSpec) -> bool:
    return isinstance(spec, (list, tuple))


def _hash_input(spec: InputSpec) -> Dict[str, Any]:
    if _is_file_set(spec):
        paths = sorted(Path(p) for p in spec)
        missing = [str(p) for p in paths if not p.exists()]
        record = {
            "files": len(paths),
            "first": str(paths[0]) if paths else None,
            "last": str(paths[-1]) if paths else None,
            "hash": None if missing else hash_files(paths),
        }
        if missing:
            record["missing"] = missing
        return record

    path = Path(spec)
    if path.exists():
        return {"path": str(path), "hash": hash_file(path)}
    return {"path": str(path), "hash": None, "missing": True}


def _current_hash(spec: InputSpec) -> Optional[str]:
    """Hash of an input now, or None if any of its files is absent."""
    paths = [Path(p) for p in spec] if _is_file_set(spec) else [Path(spec)]
    if not all(p.exists() for p in paths):
        return None
    return hash_files(paths) if _is_file_set(spec) else hash_file(paths[0])


def _hash_inputs(inputs: Dict[str, InputSpec]) -> Dict[str, Dict[str, Any]]:
    return {name: _hash_input(spec) for name, spec in inputs.items()}


def describe_inputs(inputs: Dict[str, InputSpec]) -> Dict[str, str]:
    """Short log form of stage inputs; file sets are summarized by count and span."""
    described = {}
    for name, spec in inputs.items():
        if _is_file_set(spec):
            paths = sorted(Path(p) for p in spec)
            span = f" ({paths[0].name}..{paths[-1].name})" if paths else ""
            described[name] = f"{len(paths)} files{span}"
        else:
            described[name] = str(spec)
    return described


def build_metadata(
    output_path: PathLike,
    inputs: Dict[str, InputSpec],
    config: Dict[str, Any],
    run_id: str,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Metadata record for one output file."""
    metadata = {
        "output_file": str(output_path),
        "run_id": run_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "inputs": _hash_inputs(inputs),
        "config_digest": hash_dict(config),
        "config": config,
        "git": get_git_info(),
        "versions": get_versions(),
    }
    if extra:
        metadata["extra"] = extra
    return metadata


def write_metadata_sidecar(
    output_path: PathLike,
    inputs: Dict[str, InputSpec],
    config: Dict[str, Any],
    run_id: str,
    extra: Optional[Dict[str, Any]] = None,
    metadata_dir: Optional[Path] = None,
) -> Path:
    """Write the sidecar for `output_path` and return its path."""
    sidecar = sidecar_path_for(output_path, metadata_dir)
    atomic_write_json(build_metadata(output_path, inputs, config, run_id, extra), sidecar)
    return sidecar


def read_metadata_sidecar(
    output_path: PathLike,
    metadata_dir: Optional[Path] = None,
) -> Optional[Dict[str, Any]]:
    sidecar = sidecar_path_for(output_path, metadata_dir)
    return read_json(sidecar) if sidecar.exists() else None


# =============================================================================
# Cache validation
# =============================================================================

def get_cache_status(
    output_path: PathLike,
    inputs: Dict[str, InputSpec],
    config: Dict[str, Any],
    metadata_dir: Optional[Path] = None,
) -> Dict[str, Any]:
    """
    Why a cached output is or is not reusable.

    Returns:
        {'valid': bool, 'reason': str, ...}; reason is one of
        output_missing, metadata_missing, config_changed,
        input_not_cached:<name>, input_missing:<name>, input_changed:<name>,
        all_hashes_match
    """
    output_path = Path(output_path)
    if not output_path.exists():
        return {"valid": False, "reason": "output_missing"}

    metadata = read_metadata_sidecar(output_path, metadata_dir)
    if metadata is None:
        return {"valid": False, "reason": "metadata_missing"}

    if metadata.get("config_digest") != hash_dict(config):
        return {"valid": False, "reason": "config_changed"}

    cached_inputs = metadata.get("inputs", {})
    for name, spec in inputs.items():
        if name not in cached_inputs:
            return {"valid": False, "reason": f"input_not_cached:{name}"}
        current = _current_hash(spec)
        if current is None:
            return {"valid": False, "reason": f"input_missing:{name}"}
        if cached_inputs[name].get("hash") != current:
            return {"valid": False, "reason": f"input_changed:{name}"}

    return {"valid": True, "reason": "all_hashes_match", "run_id": metadata.get("run_id")}


def validate_cache(
    output_path: PathLike,
    inputs: Dict[str, InputSpec],
    config: Dict[str, Any],
    metadata_dir: Optional[Path] = None,
) -> bool:
    """True if the output exists and its sidecar matches config and inputs."""
    return get_cache_status(output_path, inputs, config, metadata_dir)["valid"]
