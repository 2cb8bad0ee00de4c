"""
Point match: per-pair correspondence derivation

This package provides:
- ExternalMatchTool: launches the external correspondence finder for a pair of
  cached canvases and parses its `px py qx qy [w]` output
- MatchFilter: RANSAC geometric-consistency filtering (affine / similarity /
  homography) in full-scale coordinates
- rescale_points / rescale_match_set: rendered pixels -> full-scale pixels
- MatchComputer: cache -> tool -> filter|rescale -> CanvasMatches or None
"""
from .computer import MatchComputer
from .filtering import FilterConfig, MatchFilter, rescale_match_set, rescale_points
from .tool import CorrespondenceTool, ExternalMatchTool, ToolConfig, parse_match_output

__all__ = [
    "CorrespondenceTool",
    "ExternalMatchTool",
    "FilterConfig",
    "MatchComputer",
    "MatchFilter",
    "ToolConfig",
    "parse_match_output",
    "rescale_match_set",
    "rescale_points",
]
