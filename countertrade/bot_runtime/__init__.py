from .logging import setup_logger
from .loop import bootstrap_dependencies, build_stream_filter, run_reactor
from .settings import AppSettings, load_blacklist

__all__ = [
    "AppSettings",
    "bootstrap_dependencies",
    "build_stream_filter",
    "load_blacklist",
    "run_reactor",
    "setup_logger",
]
