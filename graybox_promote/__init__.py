# Graybox promotion pipeline
import logging

__version__ = "1.0.0"

from .config import ConfigurationError, PromoteParams, ServiceConfig, UrlInfo
from .state import (
    BatchStatus,
    NotFoundError,
    ProjectStatus,
    ProjectTracker,
    StateCorruptionError,
    StateStore,
    WorkItem,
)
from .batching import partition
from .fragments import FragmentDiscovery, FragmentRef
from .executor import PromotionExecutor
from .context import PipelineContext
from .scheduler import PromotionScheduler

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    '__version__',
    'ConfigurationError',
    'PromoteParams',
    'ServiceConfig',
    'UrlInfo',
    'BatchStatus',
    'NotFoundError',
    'ProjectStatus',
    'ProjectTracker',
    'StateCorruptionError',
    'StateStore',
    'WorkItem',
    'partition',
    'FragmentDiscovery',
    'FragmentRef',
    'PromotionExecutor',
    'PipelineContext',
    'PromotionScheduler',
]
