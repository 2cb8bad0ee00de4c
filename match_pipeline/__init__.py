"""
Match pipeline: distributed canvas point-match job

Loads a pair list, broadcasts the run configuration, partitions the pairs, and
drives three stages over the same partitions:

  match    per-partition MatchComputer over a worker-shared canvas cache
  persist  PUT surviving CanvasMatches to the match store
  cleanup  remove each host's canvas cache storage

Entry point:
    python -m match_pipeline.pipeline --config config/params.yaml
"""
from .dispatcher import JobState, PipelineDispatcher, PipelineFailure, PipelineReport, partition_pairs

__all__ = ["JobState", "PipelineDispatcher", "PipelineFailure", "PipelineReport", "partition_pairs"]
