"""
Controller for DataPlanes. A DataPlane runs the proxies behind an admin and
an ingress Service, optionally autoscaled and optionally rolled out blue-green.
"""

# Standard
from typing import List, Optional

# First Party
import alog

# Local
from .. import constants
from ..certificates import ensure_certificate
from ..census import census
from ..ensure import ensure
from ..managed_object import ManagedObject
from ..reconcile import RequeueParams
from ..resources import dataplane as dp_resources
from ..resources.common import deployment_available
from ..resources.defaults import validate_image
from ..rollout import (
    BlueGreenRollout,
    live_deployment_for,
    prune_preview,
)
from ..status import (
    FALSE,
    PROVISIONED_CONDITION,
    ROLLED_OUT_CONDITION,
    TRUE,
    ConditionReason,
    ConditionsAggregator,
)
from ..teardown import delete_children
from ..utils import generate_id
from .base import ControllerBase

log = alog.use_channel("DPCTL")


class DataPlaneController(ControllerBase):
    """Converges the Services, certificate, Deployments and autoscaler of a
    DataPlane and drives its blue-green rollout
    """

    group = constants.OPERATOR_GROUP
    version = constants.OPERATOR_API_VERSION.split("/")[-1]
    kind = constants.KIND_DATAPLANE
    managed_by = constants.MANAGED_BY_DATAPLANE

    def ready_conditions(self, owner: ManagedObject) -> List[str]:
        if dp_resources.blue_green_options(owner) is not None:
            return [PROVISIONED_CONDITION, ROLLED_OUT_CONDITION]
        return [PROVISIONED_CONDITION]

    def converge(  # pylint: disable=too-many-return-statements
        self,
        owner: ManagedObject,
        aggregator: ConditionsAggregator,
    ) -> Optional[RequeueParams]:
        validate_image(
            dp_resources.proxy_image(owner, self.defaults),
            self.defaults.dataplane_image_prefixes,
            self.defaults.validate_images,
            self.kind,
        )

        # The live selector is picked once and only changed by a promotion
        selector = aggregator.get_field("selector")
        if not selector:
            selector = generate_id()
            log.debug("Initializing selector of %s to %s", owner, selector)
            aggregator.set_field("selector", selector)
            return None
        service_params = dp_resources.ServiceParams(selector=selector)

        admin_role = dp_resources.admin_service_role(constants.STATE_LIVE)
        result, admin_service = ensure(
            self.deploy_manager, owner, admin_role, service_params
        )
        if result.changed:
            return self._provisioning(aggregator, admin_role)

        result, certificate = ensure_certificate(
            self.deploy_manager,
            owner,
            subject=f"*.{admin_service.name}.{owner.namespace}.svc",
            ca_secret_ref=self.defaults.cluster_ca,
            key_usages=list(self.defaults.key_usages),
            identity_labels=dp_resources.certificate_labels(),
            managed_by=self.managed_by,
        )
        if result.changed:
            aggregator.set(
                PROVISIONED_CONDITION,
                FALSE,
                ConditionReason.RESOURCE_CREATED_OR_UPDATED,
                "The admin API certificate was created or updated",
            )
            return None

        ingress_role = dp_resources.ingress_service_role(constants.STATE_LIVE)
        result, ingress_service = ensure(
            self.deploy_manager, owner, ingress_role, service_params
        )
        if result.changed:
            return self._provisioning(aggregator, ingress_role)

        blue_green = dp_resources.blue_green_options(owner) is not None
        autoscaled = dp_resources.horizontal_scaling(owner) is not None
        rollout = None
        if blue_green:
            rollout = BlueGreenRollout(
                self.deploy_manager,
                owner,
                self.defaults,
                aggregator,
                certificate_secret=certificate.name,
            )
        promoting = rollout is not None and rollout.promoting()

        # While a promotion relabels Deployments the live role is left alone
        deployment_role = dp_resources.deployment_role(
            constants.STATE_LIVE,
            autoscaled=autoscaled,
            create_only=blue_green,
        )
        if promoting:
            deployment = live_deployment_for(
                census(self.deploy_manager, owner, deployment_role), selector
            )
        else:
            result, deployment = ensure(
                self.deploy_manager,
                owner,
                deployment_role,
                dp_resources.DeploymentParams(
                    selector=selector,
                    certificate_secret=certificate.name,
                    defaults=self.defaults,
                    replicas=dp_resources.desired_replicas(owner),
                ),
            )
            if result.changed:
                return self._provisioning(aggregator, deployment_role)

            if self._converge_autoscaler(owner, deployment, autoscaled):
                return self._provisioning(aggregator, dp_resources.autoscaler_role())

        if deployment is not None and deployment_available(deployment):
            aggregator.set(PROVISIONED_CONDITION, TRUE, ConditionReason.PROVISIONED)
        else:
            aggregator.set(
                PROVISIONED_CONDITION,
                FALSE,
                ConditionReason.WAITING_TO_BECOME_READY,
                "The live deployment is not yet available",
            )

        aggregator.set_field("service", ingress_service.name)
        aggregator.set_field(
            "addresses", dp_resources.service_addresses(ingress_service)
        )
        if deployment is not None:
            aggregator.set_field(
                "readyReplicas", deployment.status.get("readyReplicas") or 0
            )
            aggregator.set_field("replicas", deployment.status.get("replicas") or 0)

        if rollout is not None:
            result = rollout.reconcile()
            log.debug("Rollout of %s is %s", owner, result.state.value)
        else:
            prune_preview(self.deploy_manager, owner)
            aggregator.remove(ROLLED_OUT_CONDITION)
            aggregator.set_field("rollout", None)
        return None

    ## Implementation Details ##################################################

    def _converge_autoscaler(
        self,
        owner: ManagedObject,
        deployment: ManagedObject,
        autoscaled: bool,
    ) -> bool:
        """Ensure the autoscaler targets the live Deployment, or delete it when
        the DataPlane is not autoscaled

        Returns:
            changed:  bool
                True if the autoscaler was changed
        """
        role = dp_resources.autoscaler_role()
        if not autoscaled:
            return delete_children(self.deploy_manager, owner, role)
        result, _ = ensure(
            self.deploy_manager,
            owner,
            role,
            dp_resources.AutoscalerParams(deployment_name=deployment.name),
        )
        return result.changed
