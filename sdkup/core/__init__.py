"""Core modules for sdkup"""

from .catalog import PackageCatalog
from .config import Channel, ClientSettings, UpdaterConfig
from .reconcile import UpdateReport, reconcile
from .repository import IndexRepositoryClient, RepositoryClient
from .scheduler import JobKind, PipelineState, TaskScheduler

__all__ = [
    'Channel', 'ClientSettings', 'IndexRepositoryClient', 'JobKind',
    'PackageCatalog', 'PipelineState', 'RepositoryClient', 'TaskScheduler',
    'UpdateReport', 'UpdaterConfig', 'reconcile',
]
