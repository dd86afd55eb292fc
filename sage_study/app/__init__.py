"""Application bootstrap helpers for the Sage Study project."""

from .runtime import StudyRuntime, build_runtime, configure_logging
from .settings import AppSettings

__all__ = ["AppSettings", "StudyRuntime", "build_runtime", "configure_logging"]
