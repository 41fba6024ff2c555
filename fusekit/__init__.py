"""Building blocks for user-space file systems: access checks, splice pipes,
union and archive trees, and POSIX conformance checks."""

__version__ = "0.1.0"
__all__ = ["access", "splice", "unionfs", "archive", "posix_files", "posix_dirs"]