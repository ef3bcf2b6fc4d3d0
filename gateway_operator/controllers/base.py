"""
The ControllerBase class holds the reconcile pass shared by every owner kind.
"""

# Standard
from typing import List, Optional
import abc

# First Party
import alog

# Local
from ..deploy_manager import DeployManagerBase
from ..ensure import ChildRole
from ..exceptions import ValidationError
from ..managed_object import ManagedObject
from ..reconcile import RequeueParams
from ..resources.defaults import ResourceDefaults
from ..status import (
    FALSE,
    PROVISIONED_CONDITION,
    READY_CONDITION,
    ConditionReason,
    ConditionsAggregator,
)
from ..utils import abstractclassproperty, classproperty

log = alog.use_channel("CTRLR")


class ControllerBase(abc.ABC):
    """A controller converges the children of one owner kind. A reconcile
    pass is:

    1. Skip owners that this operator does not handle
    2. Run the teardown of an owner that is being deleted
    3. Converge the children in a fixed order, stopping at the first child
        that changed
    4. Derive Ready from the sub-conditions and write the status once

    Every pass recomputes everything from the owner and the cluster, so
    stopping early is always safe. The watch event of the change that ended
    the pass starts the next one.
    """

    ## Class Properties ########################################################

    # Derived classes must have class properties for group, version, kind and
    # the managed-by value of their children

    @abstractclassproperty  # noqa: B027
    def group(cls) -> str:
        """The apiVersion group for the resource this controller manages"""

    @abstractclassproperty  # noqa: B027
    def version(cls) -> str:
        """The apiVersion version for the resource this controller manages"""

    @abstractclassproperty  # noqa: B027
    def kind(cls) -> str:
        """The kind for the resource this controller manages"""

    @abstractclassproperty  # noqa: B027
    def managed_by(cls) -> str:
        """The managed-by label value written onto the children"""

    @classproperty
    def api_version(cls) -> str:  # pylint: disable=no-self-argument
        return f"{cls.group}/{cls.version}"  # pylint: disable=no-member

    ## Construction ############################################################

    def __init__(
        self,
        deploy_manager: DeployManagerBase,
        defaults: Optional[ResourceDefaults] = None,
    ):
        """
        Args:
            deploy_manager:  DeployManagerBase
                The deploy manager used for all cluster access
            defaults:  Optional[ResourceDefaults]
                Defaults for generated children. Read from the library config
                if not given.
        """
        assert self.group, "Controller.group must be a non-empty string"
        assert self.version, "Controller.version must be a non-empty string"
        assert self.kind, "Controller.kind must be a non-empty string"
        self.deploy_manager = deploy_manager
        self.defaults = defaults or ResourceDefaults.from_config()

    @classmethod
    def __str__(cls):
        """Stringify with the GVK"""
        return f"Controller({cls.group}/{cls.version}/{cls.kind})"

    ## Abstract Interface ######################################################

    @abc.abstractmethod
    def converge(
        self,
        owner: ManagedObject,
        aggregator: ConditionsAggregator,
    ) -> Optional[RequeueParams]:
        """Converge the owner's children and record conditions and status
        fields on the aggregator

        Error Semantics: ValidationError if the owner's spec can never be
        converged. Any other GatewayOperatorError ends the pass without a
        status write.

        Args:
            owner:  ManagedObject
                The owner being reconciled
            aggregator:  ConditionsAggregator
                The status of this pass

        Returns:
            requeue_params:  Optional[RequeueParams]
                Set when the next pass must be timed rather than event driven
        """

    ## Base Class Interface ####################################################

    def should_reconcile(self, owner: ManagedObject) -> bool:
        """Owners that belong to another operator are ignored"""
        return True

    def finalize(self, owner: ManagedObject) -> Optional[RequeueParams]:
        """Run the teardown of an owner that is being deleted. The default does
        nothing since namespaced children are garbage collected.
        """
        log.debug2("Nothing to finalize for %s", owner)
        return None

    def ready_conditions(
        self,
        owner: ManagedObject,  # pylint: disable=unused-argument
    ) -> List[str]:
        """The conditions whose conjunction is Ready"""
        return [PROVISIONED_CONDITION]

    ## Public Interface ########################################################

    @alog.logged_function(log.debug)
    def reconcile(self, owner: ManagedObject) -> Optional[RequeueParams]:
        """Run one reconcile pass for the owner

        Error Semantics: ValidationError is reported as Ready False with reason
        ValidationFailed and then re-raised so that the pass is not requeued.

        Args:
            owner:  ManagedObject
                The owner as read at the start of the pass

        Returns:
            requeue_params:  Optional[RequeueParams]
                Set when the next pass must be timed rather than event driven
        """
        if not self.should_reconcile(owner):
            log.debug("Ignoring %s", owner)
            return None

        if owner.deletion_timestamp is not None:
            log.debug("%s is being deleted", owner)
            return self.finalize(owner)

        aggregator = ConditionsAggregator(self.deploy_manager, owner)
        try:
            requeue_params = self.converge(owner, aggregator)
        except ValidationError as err:
            log.warning("Invalid %s: %s", owner, err)
            aggregator.set(
                READY_CONDITION, FALSE, ConditionReason.VALIDATION_FAILED, str(err)
            )
            aggregator.apply()
            raise

        aggregator.ready(self.ready_conditions(owner))
        aggregator.apply()
        return requeue_params

    ## Implementation Details ##################################################

    @staticmethod
    def _provisioning(
        aggregator: ConditionsAggregator,
        role: ChildRole,
        message: str = "",
    ) -> None:
        """Record that the pass ended on a change to a child"""
        log.debug("Pass ended on a change to the %s", role.name)
        aggregator.set(
            PROVISIONED_CONDITION,
            FALSE,
            ConditionReason.RESOURCE_CREATED_OR_UPDATED,
            message or f"The {role.name} was created or updated",
        )
