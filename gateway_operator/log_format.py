"""
Custom logging formats that attach the identity of the reconciled owner to
every json log line
"""

# Standard
from contextlib import contextmanager
from typing import Optional
import logging
import threading

# First Party
from alog import AlogJsonFormatter

# Reconciles run on worker threads, so the owner of the reconcile in progress
# is tracked per thread
_context = threading.local()


@contextmanager
def reconcile_context(resource: dict, reconciliation_id: str):
    """Tag every log line written by this thread inside the context with the
    owner and the reconciliation id
    """
    previous = getattr(_context, "value", None)
    _context.value = (resource, reconciliation_id)
    try:
        yield
    finally:
        _context.value = previous


class ReconcileContextFilter(logging.Filter):
    """Handler filter that copies the current reconcile context onto records"""

    def filter(self, record):
        resource, reconciliation_id = getattr(_context, "value", None) or (None, None)
        if resource is not None and not hasattr(record, "resource"):
            record.resource = resource
        if reconciliation_id and not hasattr(record, "reconciliationId"):
            record.reconciliationId = reconciliation_id
        return True


class GatewayOperatorJsonFormatter(AlogJsonFormatter):
    """Log format that extends AlogJsonFormatter with the identifiers of the
    owner being reconciled, the reconciliationId and thread information
    """

    _FIELDS_TO_PRINT = AlogJsonFormatter._FIELDS_TO_PRINT + [
        "process",
        "thread",
        "threadName",
        "kind",
        "apiVersion",
        "resourceVersion",
        "resourceName",
        "resourceNamespace",
        "reconciliationId",
    ]

    def __init__(
        self,
        manifest: Optional[dict] = None,
        reconciliation_id: Optional[str] = None,
    ):
        super().__init__()
        self.manifest = manifest
        self.reconciliation_id = reconciliation_id

    def format(self, record):
        if self.reconciliation_id:
            record.reconciliationId = self.reconciliation_id

        if resource := getattr(record, "resource", self.manifest):
            record.kind = resource.get("kind")
            record.apiVersion = resource.get("apiVersion")

            metadata = resource.get("metadata", {})
            record.resourceVersion = metadata.get("resourceVersion")
            record.resourceName = metadata.get("name")
            record.resourceNamespace = metadata.get("namespace")

        return super().format(record)
