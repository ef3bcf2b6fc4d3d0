"""
Controller for Gateways whose GatewayClass names this operator. Each Gateway
is implemented by a DataPlane, a ControlPlane that configures it and a
NetworkPolicy that shields the DataPlane's admin API.
"""

# Standard
from typing import List, Optional

# First Party
import alog

# Local
from .. import constants
from ..ensure import ensure
from ..exceptions import assert_cluster
from ..managed_object import ManagedObject
from ..reconcile import RequeueParams
from ..resources import gateway as gw_resources
from ..status import (
    CONTROLPLANE_READY_CONDITION,
    DATAPLANE_READY_CONDITION,
    FALSE,
    GATEWAY_ACCEPTED_CONDITION,
    READY_CONDITION,
    TRUE,
    ConditionReason,
    ConditionsAggregator,
    is_condition_true,
)
from .base import ControllerBase

log = alog.use_channel("GWCTL")


class GatewayController(ControllerBase):
    """Converges the DataPlane, ControlPlane and NetworkPolicy of a Gateway"""

    group = constants.GATEWAY_API_VERSION.split("/")[0]
    version = constants.GATEWAY_API_VERSION.split("/")[-1]
    kind = constants.KIND_GATEWAY
    managed_by = constants.MANAGED_BY_GATEWAY

    def should_reconcile(self, owner: ManagedObject) -> bool:
        gateway_class = self._gateway_class(owner)
        if gateway_class is None:
            log.debug("GatewayClass of %s does not exist", owner)
            return False
        controller_name = gateway_class.spec.get("controllerName")
        if controller_name != self.defaults.controller_name:
            log.debug2("%s is handled by %s", owner, controller_name)
            return False
        return True

    def ready_conditions(self, owner: ManagedObject) -> List[str]:
        return [
            GATEWAY_ACCEPTED_CONDITION,
            DATAPLANE_READY_CONDITION,
            CONTROLPLANE_READY_CONDITION,
        ]

    def converge(
        self,
        owner: ManagedObject,
        aggregator: ConditionsAggregator,
    ) -> Optional[RequeueParams]:
        gateway_class = self._gateway_class(owner)
        success, gateway_configuration = self._gateway_configuration(gateway_class)
        if not success:
            aggregator.set(
                GATEWAY_ACCEPTED_CONDITION,
                FALSE,
                ConditionReason.INVALID_PARAMETERS,
                f"GatewayConfiguration of {gateway_class.name} not found",
            )
            # The GatewayConfiguration is not a child, so nothing wakes this
            # owner
            return RequeueParams()
        aggregator.set(GATEWAY_ACCEPTED_CONDITION, TRUE, ConditionReason.ACCEPTED)

        result, dataplane = ensure(
            self.deploy_manager,
            owner,
            gw_resources.DATAPLANE_ROLE,
            gateway_configuration,
        )
        if result.changed:
            return self._not_ready(aggregator, DATAPLANE_READY_CONDITION, "DataPlane")
        self._child_ready(aggregator, DATAPLANE_READY_CONDITION, dataplane)

        result, controlplane = ensure(
            self.deploy_manager,
            owner,
            gw_resources.CONTROLPLANE_ROLE,
            gw_resources.ControlPlaneParams(
                gateway_configuration=gateway_configuration,
                dataplane_name=dataplane.name,
                gateway_class_name=gateway_class.name,
            ),
        )
        if result.changed:
            return self._not_ready(
                aggregator, CONTROLPLANE_READY_CONDITION, "ControlPlane"
            )
        self._child_ready(aggregator, CONTROLPLANE_READY_CONDITION, controlplane)

        result, _ = ensure(
            self.deploy_manager,
            owner,
            gw_resources.NETWORK_POLICY_ROLE,
            gw_resources.NetworkPolicyParams(
                gateway_configuration=gateway_configuration,
                dataplane_name=dataplane.name,
                controlplane_name=controlplane.name,
            ),
        )
        if result.changed:
            log.debug("Network policy of %s changed", owner)

        aggregator.set_field("addresses", dataplane.status.get("addresses") or [])
        return None

    ## Implementation Details ##################################################

    @staticmethod
    def _not_ready(
        aggregator: ConditionsAggregator,
        condition: str,
        child_kind: str,
    ) -> None:
        aggregator.set(
            condition,
            FALSE,
            ConditionReason.RESOURCE_CREATED_OR_UPDATED,
            f"The {child_kind} was created or updated",
        )

    @staticmethod
    def _child_ready(
        aggregator: ConditionsAggregator,
        condition: str,
        child: ManagedObject,
    ):
        """Mirror the Ready condition of a child CR"""
        if is_condition_true(READY_CONDITION, child.status.get("conditions")):
            aggregator.set(condition, TRUE, ConditionReason.READY)
        else:
            aggregator.set(
                condition,
                FALSE,
                ConditionReason.WAITING_TO_BECOME_READY,
                f"{child.kind} {child.name} is not ready yet",
            )

    def _gateway_class(self, owner: ManagedObject) -> Optional[ManagedObject]:
        class_name = owner.spec.get("gatewayClassName")
        if not class_name:
            return None
        success, content = self.deploy_manager.get_object_current_state(
            kind=constants.KIND_GATEWAY_CLASS,
            name=class_name,
            api_version=constants.GATEWAY_API_VERSION,
        )
        assert_cluster(success, f"Failed to look up GatewayClass {class_name}")
        return ManagedObject(content) if content is not None else None

    def _gateway_configuration(self, gateway_class: ManagedObject):
        """Resolve the GatewayConfiguration named by the class parametersRef

        Returns:
            found:  bool
                False if the class names a GatewayConfiguration that does not
                exist
            gateway_configuration:  Optional[GatewayConfiguration]
                The options passed to the children
        """
        ref = gateway_class.spec.get("parametersRef") or {}
        if ref.get("kind") != constants.KIND_GATEWAY_CONFIGURATION:
            return True, gw_resources.GatewayConfiguration()
        success, content = self.deploy_manager.get_object_current_state(
            kind=constants.KIND_GATEWAY_CONFIGURATION,
            name=ref.get("name"),
            namespace=ref.get("namespace"),
            api_version=constants.OPERATOR_API_VERSION,
        )
        assert_cluster(success, f"Failed to look up GatewayConfiguration {ref}")
        if content is None:
            return False, None
        return True, gw_resources.GatewayConfiguration.from_resource(content)
