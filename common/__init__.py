"""
Shared types, errors and logging for the canvas point-match pipeline.
"""
