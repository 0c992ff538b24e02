"""Append-only JSONL record of run outcomes, one line per handled event."""

from __future__ import annotations

import json
from collections import Counter
from pathlib import Path
from typing import Any

from loguru import logger


class RunHistory:
    def __init__(self, repo_path: Path, state_dir: str = ".summon"):
        self.file_path = repo_path / state_dir / "logs" / "history.jsonl"

    def record(self, entry: dict[str, Any]) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def _entries(self) -> list[dict[str, Any]]:
        if not self.file_path.exists():
            return []
        entries = []
        with open(self.file_path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning(f"[HISTORY] Skipping malformed line {lineno} in {self.file_path}")
        return entries

    def get_recent(self, count: int = 10) -> list[dict[str, Any]]:
        return self._entries()[-count:] if count > 0 else []

    def get_stats(self) -> dict[str, Any]:
        entries = self._entries()
        total = len(entries)
        ran = [e for e in entries if e.get("result")]
        succeeded = sum(1 for e in ran if e["result"].get("success"))
        total_cost = sum(float((e.get("result") or {}).get("cost_used", 0)) for e in entries)
        return {
            "total_runs": total,
            "executed": len(ran),
            "success_rate": round(100 * succeeded / len(ran), 1) if ran else 0.0,
            "total_cost": total_cost,
            "avg_cost_per_run": total_cost / len(ran) if ran else 0.0,
            "statuses": dict(Counter(e.get("status", "unknown") for e in entries)),
        }
