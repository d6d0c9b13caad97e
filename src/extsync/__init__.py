from ._version import __version__
from .errors import DescriptorError, DownloadError, ExtsyncError, InstallError, MappingIOError, PathEscape
from .fetcher import ArchiveFetcher, HttpArchiveFetcher
from .gateway import Channel, SyncGateway
from .installer import Installer
from .mapping import MappingStore
from .models import BatchOutcome, ComponentDescriptor, ComponentResult, MappingEntry, parse_descriptor
from .paths import PathResolver
from .reconciler import Reconciler

__all__ = [
    "ArchiveFetcher",
    "BatchOutcome",
    "Channel",
    "ComponentDescriptor",
    "ComponentResult",
    "DescriptorError",
    "DownloadError",
    "ExtsyncError",
    "HttpArchiveFetcher",
    "InstallError",
    "Installer",
    "MappingEntry",
    "MappingIOError",
    "MappingStore",
    "PathEscape",
    "PathResolver",
    "Reconciler",
    "SyncGateway",
    "__version__",
    "parse_descriptor",
]
