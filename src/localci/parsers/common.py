# common.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import yaml

from ..errors import ParseError

STEP_NAME_LIMIT = 50
_NOISY_PREFIXES = ("echo ", "npm run ", "npm ", "yarn ", "make ")


def load_yaml(path: str | Path) -> Dict[str, Any]:
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ParseError(f"cannot read pipeline file: {e.strerror or e}", path=str(path)) from e
    except yaml.YAMLError as e:
        raise ParseError("pipeline file is not valid YAML", path=str(path), error=str(e)) from e
    if not isinstance(data, dict):
        raise ParseError("pipeline file must contain a mapping at the top level", path=str(path))
    return data


def as_list(value: Any) -> List[Any]:
    """None -> [], scalar -> [scalar], list -> list."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def flatten_commands(value: Any) -> List[str]:
    """Script entries may nest lists (YAML anchors); flatten them to strings."""
    commands: List[str] = []
    for item in as_list(value):
        if isinstance(item, (list, tuple)):
            commands.extend(flatten_commands(item))
        elif isinstance(item, bool):
            commands.append("true" if item else "false")
        elif item is not None:
            commands.append(str(item))
    return commands


def str_map(value: Any) -> Dict[str, str]:
    """Mapping with string values; booleans keep YAML's spelling (true/false)."""
    if not value:
        return {}
    if not isinstance(value, dict):
        raise ParseError(f"expected a mapping, got {type(value).__name__}")
    out: Dict[str, str] = {}
    for key, val in value.items():
        if isinstance(val, bool):
            out[str(key)] = "true" if val else "false"
        elif val is None:
            out[str(key)] = ""
        else:
            out[str(key)] = str(val)
    return out


def name_from_command(command: str) -> str:
    """
    Readable step name from a shell command: first line, common prefixes
    stripped, truncated.
    """
    lines = [line.strip() for line in command.strip().splitlines() if line.strip()]
    if not lines:
        return ""
    first = lines[0]
    for prefix in _NOISY_PREFIXES:
        if first.startswith(prefix) and len(first) > len(prefix):
            first = first[len(prefix):].strip().strip("\"'")
            break
    if len(first) > STEP_NAME_LIMIT:
        first = first[:STEP_NAME_LIMIT - 3] + "..."
    return first


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1", "on")
    return bool(value)
