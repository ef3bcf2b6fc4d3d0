"""
The manager runs the reconciles of every owner: watch feeds turn cluster
events into owner keys and the worker pool reconciles each key on its own.
"""

# Local
from .base import OwnerKey, ThreadBase
from .timer import TimerEvent, TimerThread
from .watch import WatchFeed, create_feeds, owner_keys_for
from .worker_pool import WorkerPool
