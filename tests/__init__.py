"""
Canvas point-match test suite

Structure:
- unit/: Unit tests for individual components
- integration/: End-to-end pipeline runs with in-process collaborators
- fakes.py: Fake renderer, correspondence tool, match store and pair source
"""
