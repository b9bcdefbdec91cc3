from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

import yaml

logger = logging.getLogger(__name__)

KeyPath = Union[str, Sequence[str]]
Updates = Union[Mapping[str, Any], Iterable[Tuple[KeyPath, Any]]]


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"yaml", "yml"}:
        return "yaml"
    # Default to JSON for unknown extensions.
    return "json"


def _split_key(key: KeyPath) -> Tuple[str, ...]:
    if isinstance(key, str):
        parts = tuple(key.split("."))
    else:
        parts = tuple(str(k) for k in key)
    if not parts or any(not p for p in parts):
        raise ValueError(f"Invalid key path: {key!r}")
    return parts


def _iter_updates(updates: Updates) -> Iterable[Tuple[KeyPath, Any]]:
    if isinstance(updates, Mapping):
        return updates.items()
    return updates


def serialize_document(path: Path, doc: Mapping[str, Any]) -> str:
    """Deterministic text for doc; key order is always sorted."""

    if _detect_format(path) == "yaml":
        return yaml.safe_dump(dict(doc), sort_keys=True, default_flow_style=False)
    return json.dumps(doc, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def load_document(path: Union[str, Path]) -> Dict[str, Any]:
    """Load a structured document, treating anything unusable as empty.

    A missing file is the normal first-run case. An unparseable or
    non-mapping file is logged and replaced on the next write.
    """

    p = Path(path)
    if not p.exists():
        return {}

    try:
        text = p.read_text(encoding="utf-8")
        if _detect_format(p) == "yaml":
            data = yaml.safe_load(text)
        else:
            data = json.loads(text) if text.strip() else {}
    except (OSError, UnicodeDecodeError, ValueError, yaml.YAMLError) as e:
        logger.warning("Ignoring unreadable document %s (%s); starting from empty", p, e)
        return {}

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: expected an object, got %s", p, type(data).__name__)
        return {}
    return data


def apply_updates(doc: Mapping[str, Any], updates: Updates) -> Dict[str, Any]:
    """Return a copy of doc with each (key path, value) upserted.

    Intermediate objects are created as needed; only the named leaf is
    replaced and every sibling key is kept. doc itself is not modified.
    """

    out: Dict[str, Any] = copy.deepcopy(dict(doc))
    for key, value in _iter_updates(updates):
        parts = _split_key(key)
        node = out
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = copy.deepcopy(value)
    return out


def get_path(doc: Mapping[str, Any], key: KeyPath, default: Any = None) -> Any:
    node: Any = doc
    for part in _split_key(key):
        if not isinstance(node, Mapping) or part not in node:
            return default
        node = node[part]
    return node


def atomic_write_text(path: Union[str, Path], text: str, *, mode: Optional[int] = None) -> None:
    """Write text next to path, then rename it into place.

    Readers see either the previous file or the complete new one.
    """

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp = tempfile.mkstemp(prefix=f".{p.name}.", suffix=".tmp", dir=str(p.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp, mode)
        elif p.exists():
            os.chmod(tmp, p.stat().st_mode & 0o777)
        os.replace(tmp, p)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


def save_document(path: Union[str, Path], doc: Mapping[str, Any], *, mode: Optional[int] = None) -> None:
    p = Path(path)
    atomic_write_text(p, serialize_document(p, doc), mode=mode)


def upsert(path: Union[str, Path], updates: Updates, *, mode: Optional[int] = None) -> Dict[str, Any]:
    """Load path, upsert the given key paths and write it back atomically."""

    p = Path(path)
    doc = apply_updates(load_document(p), updates)
    save_document(p, doc, mode=mode)
    logger.info("Updated %s (%s)", p, ", ".join(".".join(_split_key(k)) for k, _ in _iter_updates(updates)))
    return doc


def upsert_env_file(path: Union[str, Path], key: str, value: str, *, mode: Optional[int] = 0o600) -> None:
    """Replace or append KEY=value in a dotenv file, keeping other lines."""

    p = Path(path)
    lines = p.read_text(encoding="utf-8").splitlines() if p.exists() else []
    lines = [ln for ln in lines if not ln.startswith(f"{key}=")]
    lines.append(f"{key}={value}")
    atomic_write_text(p, "\n".join(lines) + "\n", mode=mode)


# Installer run state (resume bookkeeping).


def load_state(path: str) -> Dict[str, Any]:
    return load_document(os.path.expanduser(path))


def save_state(path: str, state: Dict[str, Any]) -> None:
    save_document(os.path.expanduser(path), state)


def ensure_defaults(state: Dict[str, Any]) -> Dict[str, Any]:
    """Fill required keys with sane defaults (without overriding user values)."""

    state.setdefault("version", 1)
    exe = state.setdefault("execution", {})
    exe.setdefault("current_step", None)
    exe.setdefault("completed_steps", [])
    exe.setdefault("errors", [])
    return state


def mark_step_completed(state: Dict[str, Any], step_id: str) -> None:
    exe = state.setdefault("execution", {})
    completed = exe.setdefault("completed_steps", [])
    if step_id not in completed:
        completed.append(step_id)


def is_step_completed(state: Dict[str, Any], step_id: str) -> bool:
    exe = state.get("execution") or {}
    completed = exe.get("completed_steps") or []
    return step_id in completed
