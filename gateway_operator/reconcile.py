"""
The ReconcileManager runs an individual reconcile of a controller and turns its
outcome into a requeue decision.
"""

# Standard
from dataclasses import dataclass, field
from typing import Optional
import base64
import datetime
import logging
import uuid

# First Party
import alog

# Local
from . import config
from .exceptions import (
    ConflictError,
    GatewayOperatorExpectedError,
    ValidationError,
)
from .log_format import (
    GatewayOperatorJsonFormatter,
    ReconcileContextFilter,
    reconcile_context,
)
from .managed_object import ManagedObject

log = alog.use_channel("RECON")


## Data models #################################################################


@dataclass
class RequeueParams:
    """RequeueParams holds parameters for requeue request"""

    requeue_after: datetime.timedelta = field(
        default_factory=lambda: datetime.timedelta(
            seconds=float(config.requeue_after_seconds)
        )
    )


@dataclass
class ReconciliationResult:
    """ReconciliationResult is the result of a reconciliation"""

    # Flag to control requeue of current reconcile request
    requeue: bool
    # Parameters for requeue request
    requeue_params: RequeueParams = field(default_factory=RequeueParams)
    # Flag to identify if the reconciliation raised an exception
    exception: Optional[Exception] = None
    # The requeue delay grows exponentially per owner until a pass succeeds
    backoff: bool = False


## ReconcileManager ############################################################


class ReconcileManager:
    """This class runs reconciles of a controller for single owner resources
    and classifies their errors
    """

    @alog.timed_function(log.debug, "Reconcile finished in: ")
    def reconcile(self, controller, resource: dict) -> ReconciliationResult:
        """Run the controller's reconcile for one owner. Errors are not
        handled here.

        Args:
            controller:  ControllerBase
                The controller of the owner's kind
            resource:  dict
                The owner as read from the cluster

        Returns:
            reconcile_result:  ReconciliationResult
                The result of the reconcile
        """
        owner = ManagedObject(resource)
        reconcile_id = self.generate_id()
        with reconcile_context(resource, reconcile_id):
            log.info("Reconciling %s", owner)
            requeue_params = controller.reconcile(owner)
        if requeue_params is None:
            return ReconciliationResult(requeue=False)
        log.debug("Requeueing %s in %s", owner, requeue_params.requeue_after)
        return ReconciliationResult(requeue=True, requeue_params=requeue_params)

    def safe_reconcile(self, controller, resource: dict) -> ReconciliationResult:
        """This function calls out to reconcile but catches any errors thrown.
        It guarantees a result that the worker pool can act on.

        ConflictError: requeue after the fixed conflict delay, never backed off
        ValidationError: no requeue. The next change to the owner retries.
        Other expected errors: requeue after the default delay
        Anything else: requeue with exponential backoff

        Args:
            controller:  ControllerBase
                The controller of the owner's kind
            resource:  dict
                The owner as read from the cluster

        Returns:
            reconcile_result:  ReconciliationResult
                The result of the reconcile
        """
        try:
            return self.reconcile(controller, resource)

        except ConflictError as exc:
            delay = float(config.conflict_requeue_seconds)
            log.debug("Conflict during reconcile, requeueing in %ss: %s", delay, exc)
            return ReconciliationResult(
                requeue=True,
                requeue_params=RequeueParams(
                    requeue_after=datetime.timedelta(seconds=delay)
                ),
                exception=exc,
            )

        except ValidationError as exc:
            log.warning("Not requeueing invalid resource: %s", exc)
            return ReconciliationResult(requeue=False, exception=exc)

        except GatewayOperatorExpectedError as exc:
            log.info("Requeueing after expected error: %s", exc)
            return ReconciliationResult(requeue=True, exception=exc)

        # Capture all generic exceptions
        except Exception as exc:  # pylint: disable=broad-except
            log.warning("Handling caught error in reconcile: %s", exc, exc_info=True)
            return ReconciliationResult(requeue=True, exception=exc, backoff=True)

    ## Logging #################################################################

    @classmethod
    def configure_logging(cls):
        """Configure logging from the library config. Log lines written during
        a reconcile carry the identity of the owner and the reconcile id.
        """
        alog.configure(
            default_level=config.log_level,
            filters=config.log_filters,
            formatter=(
                GatewayOperatorJsonFormatter() if config.log_json else "pretty"
            ),
            thread_id=config.log_thread_id,
        )
        for handler in logging.root.handlers:
            handler.addFilter(ReconcileContextFilter())

    @classmethod
    def generate_id(cls) -> str:
        """Generates a unique human readable id for this reconciliation

        Returns:
            id: str
                A unique base32 encoded id
        """
        uuid4 = uuid.uuid4()
        base32_str = base64.b32encode(uuid4.bytes).decode("utf-8")
        reconcile_id = base32_str[:22]
        log.debug2("Generated reconcile id: %s", reconcile_id)
        return reconcile_id
