"""
Module for the ThreadBase class and the key that identifies an owner
"""

# Standard
from dataclasses import dataclass
from typing import Optional
import threading

# First Party
import alog

log = alog.use_channel("MGRTH")


@dataclass(frozen=True)
class OwnerKey:
    """The identity under which reconciles of one owner are serialized"""

    kind: str
    namespace: Optional[str]
    name: str

    def __str__(self):
        return f"{self.kind}/{self.namespace or ''}/{self.name}"


class ThreadBase(threading.Thread):
    """Base class for the long running threads of the manager. This class
    handles generic starting and stopping
    """

    def __init__(self, name: Optional[str] = None, daemon: Optional[bool] = None):
        self.shutdown = threading.Event()
        super().__init__(name=name, daemon=daemon)

    def run(self):
        """Control loop for the thread. Once this function exits the thread
        stops
        """
        raise NotImplementedError()

    def start_thread(self):
        """If the thread is not already alive start it"""
        if not self.is_alive():
            log.info("Starting %s: %s", self.__class__.__name__, self.name)
            self.start()

    def stop_thread(self):
        """Set the shutdown event"""
        log.info("Stopping %s: %s", self.__class__.__name__, self.name)
        self.shutdown.set()

    def should_stop(self) -> bool:
        return self.shutdown.is_set()

    def wait_on_shutdown(self, timeout: float) -> bool:
        """Sleep for the timeout unless shutdown is requested first

        Returns:
            keep_running:  bool
                False if the thread should stop
        """
        self.shutdown.wait(timeout)
        return not self.should_stop()
