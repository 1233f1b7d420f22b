from __future__ import annotations

import copy
import json
import os
import tomllib
from pathlib import Path
from typing import Any

DEFAULT_CONFIG: dict[str, Any] = {
    "global": {
        "display": "normal",
        "verbose": 2,
        "logging": 0,
        "logging_file": None,
        "logging_clear": False,
        "state_file": None,
        "audio_dir": "~/.local/share/kahvefal/audio",
        "prompts_file": None,
    },
    "completion": {
        "model": "gpt-4o-mini",
        "request_timeout_seconds": 60,
        "max_retries": 3,
    },
    "speech": {
        "model": "tts-1-hd",
        "voice": None,
        "speed": 1.0,
        "request_timeout_seconds": 60,
        "max_retries": 3,
    },
    "session": {
        "refund_on_generation_failure": True,
        "first_launch_bonus": 1,
    },
    "read": {
        "window": 8,
        "seek_seconds": 10,
        "sample_interval": 0.1,
        "backend": "auto",
    },
}


def merge_config(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = copy.deepcopy(base)
    for k, v in overlay.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k].update(v)
        else:
            out[k] = v
    return out


def config_path() -> Path:
    explicit = os.getenv("KAHVEFAL_CONFIG")
    if explicit:
        return Path(explicit).expanduser()
    return Path.home() / ".config" / "kahvefal" / "config.json"


def load_blob(path: Path) -> dict[str, Any]:
    if path.suffix.lower() == ".toml":
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    else:
        data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        return {}
    # Accept payloads wrapped under "kahvefal" or "config".
    if isinstance(data.get("kahvefal"), dict):
        return data["kahvefal"]
    if isinstance(data.get("config"), dict):
        return data["config"]
    return data


def load_config(path: Path | None = None) -> dict[str, Any]:
    p = path or config_path()
    local_cfg: dict[str, Any] = {}
    if p.exists():
        try:
            local_cfg = load_blob(p)
        except (OSError, ValueError) as e:
            raise ValueError(f"Invalid config file {p}: {e}") from e
    return merge_config(DEFAULT_CONFIG, local_cfg)


def save_config(cfg: dict[str, Any], path: Path | None = None) -> Path:
    p = path or config_path()
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(cfg, indent=2), encoding="utf-8")
    return p


def coerce_scalar(text: str) -> Any:
    t = text.strip()
    tl = t.lower()
    if tl in {"true", "false"}:
        return tl == "true"
    if tl in {"null", "none"}:
        return None
    try:
        if "." in t:
            return float(t)
        return int(t)
    except ValueError:
        pass
    # JSON for arrays/objects.
    if (t.startswith("{") and t.endswith("}")) or (t.startswith("[") and t.endswith("]")):
        try:
            return json.loads(t)
        except ValueError:
            pass
    return text


def cfg_get(cfg: dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = cfg
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


def cfg_set(cfg: dict[str, Any], path: str, value: Any) -> None:
    cur: dict[str, Any] = cfg
    parts = path.split(".")
    for p in parts[:-1]:
        nxt = cur.get(p)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[p] = nxt
        cur = nxt
    cur[parts[-1]] = value


def cfg_flatten_keys(d: dict[str, Any], prefix: str = "") -> list[str]:
    keys: list[str] = []
    for k, v in d.items():
        p = f"{prefix}.{k}" if prefix else k
        if isinstance(v, dict):
            keys.extend(cfg_flatten_keys(v, p))
        else:
            keys.append(p)
    return keys


def resolve(cli_value: Any, cfg: dict[str, Any], path: str, fallback: Any) -> Any:
    if cli_value is not None:
        return cli_value
    return cfg_get(cfg, path, fallback)
