"""Advisory risk levels for proposed edits. Never blocks an apply."""

from __future__ import annotations

import enum
from typing import Iterable

from .settings import RiskRules


class RiskLevel(enum.IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @property
    def label(self) -> str:
        return self.name.lower()


# Dependency manifests, lockfiles and build config: matched on the file name.
HIGH_RISK_FILENAMES = {
    "package.json",
    "package-lock.json",
    "pnpm-lock.yaml",
    "yarn.lock",
    "pyproject.toml",
    "requirements.txt",
    "poetry.lock",
    "uv.lock",
    "pipfile.lock",
    "next.config.js",
    "next.config.mjs",
    "tsconfig.json",
    "vite.config.ts",
    "setup.py",
    "setup.cfg",
}
HIGH_RISK_SEGMENTS = {"api", "middleware"}


def _is_env_file(name: str) -> bool:
    return name == ".env" or name.startswith(".env.")


def _has_high_risk_path(segments: list[str]) -> bool:
    if not segments:
        return False
    name = segments[-1]
    if name in HIGH_RISK_FILENAMES or _is_env_file(name):
        return True
    # middleware.ts / middleware.py count like a middleware/ directory
    if name.split(".", 1)[0] == "middleware":
        return True
    return any(seg in HIGH_RISK_SEGMENTS for seg in segments[:-1])


def classify_risk(root: str, rel_path: str, stats: dict[str, int], rules: RiskRules | None = None) -> RiskLevel:
    rules = rules or RiskRules()
    p = f"{root}/{rel_path}".replace("\\", "/").lower()
    segments = [s for s in p.split("/") if s]

    if _has_high_risk_path(segments):
        return RiskLevel.HIGH

    churn = int(stats.get("added") or 0) + int(stats.get("removed") or 0)
    if churn >= rules.high_churn:
        return RiskLevel.HIGH
    if churn >= rules.medium_churn:
        return RiskLevel.MEDIUM

    for prefix in rules.low_prefixes:
        if p.startswith(prefix.lower()):
            return RiskLevel.LOW
    for prefix in rules.medium_prefixes:
        if p.startswith(prefix.lower()):
            return RiskLevel.MEDIUM
    return RiskLevel.MEDIUM


def max_risk(a: RiskLevel, b: RiskLevel) -> RiskLevel:
    return a if a >= b else b


def overall_risk(levels: Iterable[RiskLevel]) -> RiskLevel:
    out = RiskLevel.LOW
    for level in levels:
        out = max_risk(out, level)
    return out
