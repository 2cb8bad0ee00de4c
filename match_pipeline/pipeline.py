from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from common.logging_setup import get_logger, setup_logging
from match_pipeline.config import load_settings
from match_pipeline.dispatcher import PipelineDispatcher, PipelineFailure


log = get_logger("match_pipeline")


def _bool_arg(v: str) -> bool:
    s = v.strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("0", "false", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"expected true/false, got {v!r}")


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Canvas point-match pipeline")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--pair-json", nargs="+", default=None, help="Pair list file(s) (.json, .gz, .zip)")
    ap.add_argument("--format", default=None, choices=["png", "jpg", "tif"], help="Format for rendered canvases")
    ap.add_argument("--render-scale", type=float, default=None, help="Render scale in (0, 1]")
    ap.add_argument("--tool-command", default=None, help="Script launching the correspondence tool")
    ap.add_argument("--tool-parameters", default=None, help="Parameter file passed to the tool")
    ap.add_argument("--log-tool-output", type=_bool_arg, default=None, help="Log tool output even on success")
    ap.add_argument("--filter-matches", type=_bool_arg, default=None, help="Use RANSAC to filter matches")
    ap.add_argument("--cache-parent-dir", default=None, help="Parent directory for cached (rendered) canvases")
    ap.add_argument("--max-cache-gb", type=float, default=None, help="Cache budget per worker (GB)")
    ap.add_argument("--partitions", type=int, default=None)
    ap.add_argument("--workers", type=int, default=None)
    ap.add_argument("--max-retries", type=int, default=None)
    ap.add_argument("--executor", default=None, choices=["process", "serial"])
    ap.add_argument("--log-level", default=None)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    overrides = {
        "pairs.sources": args.pair_json,
        "render.format": args.format,
        "render.scale": args.render_scale,
        "tool.command": args.tool_command,
        "tool.params_file": args.tool_parameters,
        "tool.log_tool_output": args.log_tool_output,
        "match.filter_matches": args.filter_matches,
        "cache.parent_dir": args.cache_parent_dir,
        "cache.max_gb": args.max_cache_gb,
        "pipeline.partitions": args.partitions,
        "pipeline.workers": args.workers,
        "pipeline.max_retries": args.max_retries,
        "pipeline.executor": args.executor,
        "logging.level": args.log_level,
    }
    try:
        settings = load_settings(args.config, overrides)
    except (OSError, ValueError) as e:
        setup_logging(args.log_level, force=True)
        log.error("invalid configuration", extra={"extra": {"config": args.config, "error": str(e)}})
        return 2

    setup_logging(settings.logging.level, force=True)
    log.info("pipeline starting", extra={"extra": {"config": args.config, "pair_sources": list(settings.pair_sources)}})

    try:
        report = PipelineDispatcher(settings).run()
    except PipelineFailure as e:
        log.error("pipeline failed", extra={"extra": e.report.to_dict()})
        return 1

    log.info(
        "pipeline finished",
        extra={
            "extra": {
                "pairs_considered": report.pairs_considered,
                "matches_saved": report.matches_saved,
                "partitions_cleaned": report.partitions_cleaned,
            }
        },
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
