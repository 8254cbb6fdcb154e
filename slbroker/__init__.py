"""Freshness-aware data broker behind the Claude Code statusline.

Every statusline render is a fresh process, often several at once from
sibling sessions. State shared between them lives on disk under
config.BASE_DIR: the data cache, cooldown and refresh-intent markers, and
fetch locks.
"""

__version__ = "2.0.0"
