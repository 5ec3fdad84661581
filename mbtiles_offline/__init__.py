"""Download a slice of a raster tile service into an offline MBTiles archive."""

__version__ = "0.1.0"

from .config import ArchiveConfig  # noqa: E402
from .services.downloader import ArchiveCancelledError, RunSummary, build_archive  # noqa: E402

__all__ = ["ArchiveConfig", "ArchiveCancelledError", "RunSummary", "build_archive", "__version__"]
