"""Hook-driven task orchestration across interchangeable expert backends."""

__version__ = "0.1.0"
