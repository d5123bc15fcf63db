"""
Codepath - curriculum planning, progress sync and tutoring over a codebase
Application package initialization
"""

from codepath.config import settings, get_settings, Settings

__all__ = ["settings", "get_settings", "Settings"]
