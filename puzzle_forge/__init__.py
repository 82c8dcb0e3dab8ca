"""Puzzle forge - turns uploaded images into interlocking jigsaw puzzles."""

__version__ = "0.1.0"
