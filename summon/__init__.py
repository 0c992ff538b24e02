"""
SUMMON: comment-driven, budget-bounded code changes.

A chat mention becomes an instruction, the instruction becomes a supervised
backend run, and the run becomes one living status comment.
"""

from summon.identity import __version__

__all__ = ["__version__"]
