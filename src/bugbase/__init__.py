"""bugbase: collaborative bug tracker with permission-scoped mutations and realtime fan-out."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("bugbase")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from bugbase.core import BugbaseDB
from bugbase.models import Bug, Subject

__all__ = ["Bug", "BugbaseDB", "Subject", "__version__"]
