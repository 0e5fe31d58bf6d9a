"""Local process orchestrator package."""

from .config import Config, ResourceType, Template
from .matching import (
    BasenameMatcher,
    ExecutablePathMatcher,
    MatchingEngine,
    ProcessMatcher,
)
from .persistence import NoopPersistence, StatePersistence, YamlStatePersistence
from .process_manager import ProcessController
from .procfs import ProcessInfo, ProcfsScanner
from .resources import ResourceRegistry
from .state import Instance, Resource, State

__all__ = [
    'BasenameMatcher',
    'Config',
    'ExecutablePathMatcher',
    'Instance',
    'MatchingEngine',
    'NoopPersistence',
    'ProcessController',
    'ProcessInfo',
    'ProcessMatcher',
    'ProcfsScanner',
    'Resource',
    'ResourceRegistry',
    'ResourceType',
    'State',
    'StatePersistence',
    'Template',
    'YamlStatePersistence',
]
