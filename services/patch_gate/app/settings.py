from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Any

import yaml


DEFAULT_ROOTS: dict[str, str] = {
    "app": "app",
    "components": "components",
    "lib": "lib",
    "config": "config",
    "state": "state",
    "docs": "docs",
    "scripts": "scripts",
    "tests": "tests",
    "stores": "stores",
}

DEFAULT_ALLOWED_EXT: list[str] = [
    ".ts",
    ".tsx",
    ".js",
    ".jsx",
    ".json",
    ".md",
    ".txt",
    ".css",
    ".yml",
    ".yaml",
    ".toml",
    ".mjs",
    ".cjs",
    ".py",
]


@dataclass(frozen=True)
class RiskRules:
    high_churn: int = 800
    medium_churn: int = 200
    low_prefixes: list[str] = field(default_factory=lambda: ["components/"])
    medium_prefixes: list[str] = field(default_factory=lambda: ["app/"])


@dataclass(frozen=True)
class Settings:
    repo_root: str
    enabled: bool
    admin_token: str
    max_file_bytes: int
    max_patch_bytes: int
    max_list_entries: int
    debug: bool
    local_only: bool
    audit_log_path: str
    debug_log_path: str
    roots: dict[str, str]
    allowed_ext: list[str]
    risk: RiskRules


def _truthy(s: str | None) -> bool:
    return str(s or "").strip().lower() in ("1", "true", "yes", "y", "on")


def _int_or(v: Any, fallback: int) -> int:
    try:
        n = int(str(v).strip())
    except Exception:
        return fallback
    return n if n > 0 else fallback


def _load_dotenv(path: str) -> dict[str, str]:
    """
    Minimal .env reader (no external deps).
    Supports lines like:
      KEY=value
      KEY="value"
      export KEY=value
    Ignores comments and blank lines.
    """
    out: dict[str, str] = {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            for raw in f.read().splitlines():
                line = raw.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[len("export ") :].strip()
                if "=" not in line:
                    continue
                k, v = line.split("=", 1)
                key = k.strip()
                val = v.strip()
                if not key:
                    continue
                if (val.startswith('"') and val.endswith('"')) or (val.startswith("'") and val.endswith("'")):
                    val = val[1:-1]
                out[key] = val
    except Exception:
        return {}
    return out


def _parse_roots(raw: str) -> dict[str, str]:
    # "app=app,components=src/components"
    out: dict[str, str] = {}
    for part in str(raw or "").split(","):
        if "=" not in part:
            continue
        k, v = part.split("=", 1)
        key = k.strip()
        val = v.strip().replace("\\", "/")
        if key and val:
            out[key] = val
    return out


def load_yaml_config(repo_root: str) -> dict[str, Any]:
    cfg_path = os.path.join(repo_root, ".patch_gate", "config.yaml")
    if not os.path.isfile(cfg_path):
        return {}
    with open(cfg_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return raw if isinstance(raw, dict) else {}


def _risk_rules(raw: Any, env_or_dotenv) -> RiskRules:
    doc = raw if isinstance(raw, dict) else {}
    defaults = RiskRules()

    low = doc.get("low_prefixes")
    if not isinstance(low, list):
        low = list(defaults.low_prefixes)
    medium = doc.get("medium_prefixes")
    if not isinstance(medium, list):
        medium = list(defaults.medium_prefixes)

    high_churn = _int_or(env_or_dotenv("PATCH_GATE_RISK_HIGH_CHURN") or doc.get("high_churn"), defaults.high_churn)
    medium_churn = _int_or(env_or_dotenv("PATCH_GATE_RISK_MEDIUM_CHURN") or doc.get("medium_churn"), defaults.medium_churn)
    return RiskRules(
        high_churn=high_churn,
        medium_churn=medium_churn,
        low_prefixes=[str(p) for p in low],
        medium_prefixes=[str(p) for p in medium],
    )


def get_settings() -> Settings:
    repo_root = os.path.abspath(os.environ.get("PATCH_GATE_REPO_ROOT") or os.getcwd())

    # If env vars aren't exported for the process, fall back to repo .env.
    dotenv = _load_dotenv(os.path.join(repo_root, ".env"))

    def env_or_dotenv(key: str) -> str | None:
        return os.environ.get(key) or dotenv.get(key)

    yml = load_yaml_config(repo_root)

    roots = _parse_roots(env_or_dotenv("PATCH_GATE_ROOTS") or "")
    if not roots:
        yml_roots = yml.get("roots")
        if isinstance(yml_roots, dict) and yml_roots:
            roots = {str(k): str(v).replace("\\", "/") for k, v in yml_roots.items() if str(k) and str(v)}
    if not roots:
        roots = dict(DEFAULT_ROOTS)

    allowed_ext = yml.get("allowed_ext")
    if not isinstance(allowed_ext, list) or not allowed_ext:
        allowed_ext = list(DEFAULT_ALLOWED_EXT)

    state_dir = os.path.join(repo_root, "state")
    return Settings(
        repo_root=repo_root,
        enabled=_truthy(env_or_dotenv("PATCH_GATE_ENABLE")),
        admin_token=str(env_or_dotenv("PATCH_GATE_ADMIN_TOKEN") or ""),
        max_file_bytes=_int_or(env_or_dotenv("PATCH_GATE_MAX_FILE_BYTES"), 1_048_576),
        max_patch_bytes=_int_or(env_or_dotenv("PATCH_GATE_MAX_PATCH_BYTES"), 262_144),
        max_list_entries=_int_or(env_or_dotenv("PATCH_GATE_MAX_LIST_ENTRIES"), 200),
        debug=_truthy(env_or_dotenv("PATCH_GATE_DEBUG")),
        local_only=_truthy(env_or_dotenv("PATCH_GATE_LOCAL_ONLY") or "1"),
        audit_log_path=env_or_dotenv("PATCH_GATE_AUDIT_LOG_PATH") or os.path.join(state_dir, "fs_audit.jsonl"),
        debug_log_path=env_or_dotenv("PATCH_GATE_DEBUG_LOG_PATH") or os.path.join(state_dir, "debug.ndjson"),
        roots=roots,
        allowed_ext=[str(e).lower() for e in allowed_ext],
        risk=_risk_rules(yml.get("risk"), env_or_dotenv),
    )
