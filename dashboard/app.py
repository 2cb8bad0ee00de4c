"""
Point-Match Run Dashboard (Streamlit)

- Tails logs/metrics.jsonl written by the match pipeline dispatcher
- Shows KPIs for the latest (or selected) run: pairs, matches derived/saved,
  partitions cleaned, cache hit ratio, job state
- Plots matches saved per partition and tool latency per partition
- Table of recent per-partition rows

Run:
    streamlit run dashboard/app.py
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List

import numpy as np
import pandas as pd
import streamlit as st

# dashboard/ is not a package; make project packages importable
sys.path.append(str(Path(__file__).resolve().parent.parent))

from common.utils import iso_now_ms  # noqa: E402
from match_pipeline.metrics import load_last_rows, summarize_rows  # noqa: E402


# -------------------------
# Config
# -------------------------
LOG_PATH_DEFAULT = Path("logs/metrics.jsonl")
MAX_ROWS = 2000  # how many recent rows to load


def partition_frame(rows: List[Dict[str, Any]], run_id: str) -> pd.DataFrame:
    match_rows = [r for r in rows if r.get("run_id") == run_id and r.get("stage") == "match"]
    records = []
    for r in match_rows:
        cache = r.get("cache") or {}
        tool = r.get("tool_ms") or {}
        records.append(
            {
                "partition": r.get("partition"),
                "pairs": r.get("pairs"),
                "derived": r.get("derived"),
                "cache_hits": cache.get("hits"),
                "cache_misses": cache.get("misses"),
                "evictions": cache.get("evictions"),
                "resident_mb": (cache.get("bytes_resident") or 0) / 1e6,
                "tool_ms_mean": tool.get("mean"),
                "elapsed_ms": r.get("elapsed_ms"),
            }
        )
    df = pd.DataFrame(records)
    if not df.empty:
        df = df.sort_values("partition").set_index("partition")
    return df


# -------------------------
# UI
# -------------------------
st.set_page_config(page_title="Point-Match Dashboard", layout="wide")
st.title("Canvas Point-Match Runs")

with st.sidebar:
    st.subheader("Data Sources")
    log_path = st.text_input("Metrics JSONL", str(LOG_PATH_DEFAULT))
    refresh = st.button("Refresh now")
    st.caption("Tip: Keep this page open; click Refresh to pull the latest metrics.")

rows = load_last_rows(Path(log_path), MAX_ROWS)
if not rows:
    st.warning("No metrics found yet. Run `python -m match_pipeline.pipeline` to write them.")
    st.stop()

run_ids = list(dict.fromkeys(r["run_id"] for r in rows if r.get("run_id")))
with st.sidebar:
    run_id = st.selectbox("Run", options=list(reversed(run_ids)), index=0)

s = summarize_rows(rows, run_id=run_id)
summary = s["summary"] or {}

# KPI row
k1, k2, k3, k4, k5, k6 = st.columns(6)
k1.metric("State", summary.get("state", "RUNNING"))
k2.metric("Pairs considered", f"{summary.get('pairs_considered', s['pairs_matched'])}")
k3.metric("Matches derived", f"{summary.get('matches_derived', s['matches_derived'])}")
k4.metric("Matches saved", f"{summary.get('matches_saved', sum(s['saved_by_partition']))}")
k5.metric("Partitions cleaned", f"{summary.get('partitions_cleaned', 0)}")
k6.metric("Cache hit ratio", f"{s['cache_hit_ratio']:.2%}")

if summary.get("failed_stage"):
    st.error(f"Failed in {summary['failed_stage']} stage: {summary.get('error')}")

left, right = st.columns(2)
with left:
    st.subheader("Matches saved per partition")
    saved = np.array(s["saved_by_partition"], dtype=float)
    if saved.size:
        st.bar_chart(saved, height=240)
        st.caption(f"min {saved.min():.0f} · median {np.median(saved):.0f} · max {saved.max():.0f}")
    else:
        st.info("Persist stage has not reported yet.")

df = partition_frame(rows, run_id)
with right:
    st.subheader("Tool latency per partition (ms, mean)")
    if not df.empty:
        st.bar_chart(df["tool_ms_mean"], height=240)
    else:
        st.info("Match stage has not reported yet.")

st.subheader("Partitions")
if not df.empty:
    st.dataframe(df, use_container_width=True, height=320)
else:
    st.json(summary or rows[-1])

st.caption(
    f"Source: {log_path} · Run: {run_id} · Duration: {s['duration_s']:.1f}s · "
    f"Last refresh: {iso_now_ms()} · Rows loaded: {len(rows)}"
)
