from __future__ import annotations

"""
Metrics JSONL shared by the dispatcher (writer) and the dashboard (reader).

Row kinds (field "stage"):
  match    one per partition: pairs, derived, cache stats, tool latency
  persist  one per partition: saved
  summary  one per job: PipelineReport fields
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from common.utils import iso_now_ms, parse_iso8601


def write_metrics_row(path: Path, row: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    row = {"ts": iso_now_ms(), **row}
    with path.open("a", buffering=1) as f:
        f.write(json.dumps(row, default=str) + "\n")


def load_last_rows(path: Path, max_rows: int = 500) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    with path.open("rb") as f:
        f.seek(0, os.SEEK_END)
        size = f.tell()
        # heuristic: read last ~1 MB to avoid huge files
        read_back = min(size, 1024 * 1024)
        f.seek(size - read_back)
        chunk = f.read().decode("utf-8", errors="ignore")
    lines = [ln for ln in chunk.splitlines() if ln.strip()]
    if read_back < size and lines:
        lines = lines[1:]  # first line is probably cut
    rows: List[Dict[str, Any]] = []
    for ln in lines[-max_rows:]:
        try:
            rows.append(json.loads(ln))
        except json.JSONDecodeError:
            continue
    return rows


def summarize_rows(rows: List[Dict[str, Any]], run_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Summarize one run (latest run in `rows` unless `run_id` is given):
    job summary, per-partition saved counts, aggregate cache hit ratio, duration.
    """
    if run_id is None:
        run_ids = [r.get("run_id") for r in rows if r.get("run_id")]
        run_id = run_ids[-1] if run_ids else None
    mine = [r for r in rows if r.get("run_id") == run_id]

    summary = next((r for r in reversed(mine) if r.get("stage") == "summary"), None)
    saved = {int(r["partition"]): int(r.get("saved", 0)) for r in mine if r.get("stage") == "persist"}
    match_rows = [r for r in mine if r.get("stage") == "match"]
    hits = sum(int((r.get("cache") or {}).get("hits", 0)) for r in match_rows)
    misses = sum(int((r.get("cache") or {}).get("misses", 0)) for r in match_rows)

    duration_s = 0.0
    stamps = [r["ts"] for r in mine if r.get("ts")]
    if len(stamps) >= 2:
        duration_s = (parse_iso8601(stamps[-1]) - parse_iso8601(stamps[0])).total_seconds()

    return {
        "run_id": run_id,
        "summary": summary,
        "saved_by_partition": [saved[k] for k in sorted(saved)],
        "pairs_matched": sum(int(r.get("pairs", 0)) for r in match_rows),
        "matches_derived": sum(int(r.get("derived", 0)) for r in match_rows),
        "cache_hit_ratio": 0.0 if hits + misses == 0 else hits / (hits + misses),
        "duration_s": duration_s,
    }
