"""Device-service runtime components."""

from devicecore.runtime.autoevent import AutoEventExecutor, AutoEventManager
from devicecore.runtime.discovery import DiscoveryService, match_watcher
from devicecore.runtime.dispatcher import CommandDispatcher, CommandOptions, split_query
from devicecore.runtime.failures import FailureTracker
from devicecore.runtime.publisher import EventPublisher
from devicecore.runtime.reconciler import Reconciler
from devicecore.runtime.recovery import RecoveryPoller
from devicecore.runtime.service import ServiceRuntime

__all__ = [
    "AutoEventExecutor",
    "AutoEventManager",
    "CommandDispatcher",
    "CommandOptions",
    "DiscoveryService",
    "EventPublisher",
    "FailureTracker",
    "Reconciler",
    "RecoveryPoller",
    "ServiceRuntime",
    "match_watcher",
    "split_query",
]
