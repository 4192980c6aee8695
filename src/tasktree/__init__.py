"""Task Tree: owner-scoped lists, tasks and labels behind session authentication."""

__version__ = "1.0.0"
