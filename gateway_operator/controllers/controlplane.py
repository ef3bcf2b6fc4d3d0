"""
Controller for ControlPlanes. A ControlPlane runs the ingress controller that
configures the proxies of one DataPlane through their admin API.
"""

# Standard
from datetime import timedelta
from typing import Optional

# First Party
import alog

# Local
from .. import constants
from ..certificates import CA_CERT_KEY, ensure_certificate
from ..census import census
from ..ensure import ensure
from ..exceptions import assert_cluster
from ..managed_object import ManagedObject
from ..reconcile import RequeueParams
from ..reduce import select_survivor
from ..resources import controlplane as cp_resources
from ..resources import dataplane as dp_resources
from ..resources.common import deployment_available
from ..resources.defaults import validate_image
from ..status import (
    FALSE,
    PROVISIONED_CONDITION,
    TRUE,
    ConditionReason,
    ConditionsAggregator,
)
from ..teardown import delete_children, ensure_finalizers, run_teardown
from .base import ControllerBase

log = alog.use_channel("CPCTL")


class ControlPlaneController(ControllerBase):
    """Converges the ServiceAccount, RBAC, client certificate, controller
    Deployment and admission webhook of a ControlPlane
    """

    group = constants.OPERATOR_GROUP
    version = constants.OPERATOR_API_VERSION.split("/")[-1]
    kind = constants.KIND_CONTROLPLANE
    managed_by = constants.MANAGED_BY_CONTROLPLANE

    def finalize(self, owner: ManagedObject) -> Optional[RequeueParams]:
        """The cluster scoped children are not garbage collected. They are
        removed one stage per pass before the finalizers are released.
        """
        result = run_teardown(self.deploy_manager, owner, self.managed_by)
        log.info("Teardown of %s: %s", owner, result.stage.value)
        if result.requeue_after is not None:
            return RequeueParams(requeue_after=timedelta(seconds=result.requeue_after))
        return None

    def converge(
        self,
        owner: ManagedObject,
        aggregator: ConditionsAggregator,
    ) -> Optional[RequeueParams]:
        # The finalizers must be in place before any cluster scoped child
        if ensure_finalizers(self.deploy_manager, owner):
            return None

        validate_image(
            cp_resources.controller_image(owner, self.defaults),
            self.defaults.controlplane_image_prefixes,
            self.defaults.validate_images,
            self.kind,
        )

        result, service_account = ensure(
            self.deploy_manager, owner, cp_resources.SERVICE_ACCOUNT_ROLE, None
        )
        if result.changed:
            return self._provisioning(aggregator, cp_resources.SERVICE_ACCOUNT_ROLE)

        result, cluster_role = ensure(
            self.deploy_manager, owner, cp_resources.CLUSTER_ROLE_ROLE, None
        )
        if result.changed:
            return self._provisioning(aggregator, cp_resources.CLUSTER_ROLE_ROLE)

        result, _ = ensure(
            self.deploy_manager,
            owner,
            cp_resources.CLUSTER_ROLE_BINDING_ROLE,
            cp_resources.ClusterRoleBindingParams(
                service_account=service_account.name,
                cluster_role=cluster_role.name,
            ),
        )
        if result.changed:
            return self._provisioning(
                aggregator, cp_resources.CLUSTER_ROLE_BINDING_ROLE
            )

        result, certificate = ensure_certificate(
            self.deploy_manager,
            owner,
            subject=f"{owner.name}.{owner.namespace}",
            ca_secret_ref=self.defaults.cluster_ca,
            key_usages=list(self.defaults.key_usages),
            identity_labels=cp_resources.certificate_labels(),
            managed_by=self.managed_by,
        )
        if result.changed:
            aggregator.set(
                PROVISIONED_CONDITION,
                FALSE,
                ConditionReason.RESOURCE_CREATED_OR_UPDATED,
                "The admin API client certificate was created or updated",
            )
            return None

        webhook_enabled = cp_resources.admission_webhook_enabled(owner)
        webhook_service = webhook_certificate = None
        if webhook_enabled:
            result, webhook_service = ensure(
                self.deploy_manager, owner, cp_resources.WEBHOOK_SERVICE_ROLE, None
            )
            if result.changed:
                return self._provisioning(
                    aggregator, cp_resources.WEBHOOK_SERVICE_ROLE
                )

            result, webhook_certificate = ensure_certificate(
                self.deploy_manager,
                owner,
                subject=cp_resources.webhook_certificate_subject(
                    owner, webhook_service.name
                ),
                ca_secret_ref=self.defaults.cluster_ca,
                key_usages=cp_resources.WEBHOOK_KEY_USAGES,
                identity_labels=cp_resources.webhook_certificate_labels(),
                managed_by=self.managed_by,
            )
            if result.changed:
                aggregator.set(
                    PROVISIONED_CONDITION,
                    FALSE,
                    ConditionReason.RESOURCE_CREATED_OR_UPDATED,
                    "The admission webhook certificate was created or updated",
                )
                return None
        elif delete_children(
            self.deploy_manager, owner, cp_resources.WEBHOOK_CONFIGURATION_ROLE
        ):
            # The API server stops calling the webhook before it goes away
            return self._provisioning(
                aggregator,
                cp_resources.WEBHOOK_CONFIGURATION_ROLE,
                "Deleted the disabled admission webhook configuration",
            )

        dataplane_name = owner.spec.get("dataplane")
        target = None
        if dataplane_name:
            target = self._dataplane_target(owner, dataplane_name)
            if target is None:
                aggregator.set(
                    PROVISIONED_CONDITION,
                    FALSE,
                    ConditionReason.DEPENDENCIES_NOT_READY,
                    f"DataPlane {dataplane_name} or its services do not exist yet",
                )
                # The DataPlane is not a child, so nothing wakes this owner
                return RequeueParams()

        result, deployment = ensure(
            self.deploy_manager,
            owner,
            cp_resources.DEPLOYMENT_ROLE,
            cp_resources.ControlPlaneDeploymentParams(
                service_account=service_account.name,
                certificate_secret=certificate.name,
                defaults=self.defaults,
                dataplane=target,
                webhook_certificate_secret=(
                    webhook_certificate.name if webhook_certificate else None
                ),
            ),
        )
        if result.changed:
            return self._provisioning(aggregator, cp_resources.DEPLOYMENT_ROLE)

        if webhook_enabled:
            result, _ = ensure(
                self.deploy_manager,
                owner,
                cp_resources.WEBHOOK_CONFIGURATION_ROLE,
                cp_resources.WebhookConfigurationParams(
                    service=webhook_service.name,
                    ca_bundle=(webhook_certificate.get("data") or {}).get(
                        CA_CERT_KEY, ""
                    ),
                ),
            )
            if result.changed:
                return self._provisioning(
                    aggregator, cp_resources.WEBHOOK_CONFIGURATION_ROLE
                )
        else:
            for identity in [
                cp_resources.WEBHOOK_SERVICE_ROLE,
                cp_resources.webhook_certificate_identity(),
            ]:
                if delete_children(self.deploy_manager, owner, identity):
                    aggregator.set(
                        PROVISIONED_CONDITION,
                        FALSE,
                        ConditionReason.RESOURCE_CREATED_OR_UPDATED,
                        f"Deleted the disabled admission webhook {identity.kind}",
                    )
                    return None

        if target is None:
            aggregator.set(
                PROVISIONED_CONDITION,
                FALSE,
                ConditionReason.NO_DATAPLANE,
                "No DataPlane is set, the controller is scaled to zero",
            )
        elif not deployment_available(deployment):
            aggregator.set(
                PROVISIONED_CONDITION,
                FALSE,
                ConditionReason.WAITING_TO_BECOME_READY,
                f"Deployment {deployment.name} is not yet available",
            )
        else:
            aggregator.set(PROVISIONED_CONDITION, TRUE, ConditionReason.PROVISIONED)
        return None

    ## Implementation Details ##################################################

    def _dataplane_target(
        self,
        owner: ManagedObject,
        dataplane_name: str,
    ) -> Optional[cp_resources.DataPlaneTarget]:
        """Look up the live Services of the DataPlane this ControlPlane
        configures
        """
        success, content = self.deploy_manager.get_object_current_state(
            kind=constants.KIND_DATAPLANE,
            name=dataplane_name,
            namespace=owner.namespace,
            api_version=constants.OPERATOR_API_VERSION,
        )
        assert_cluster(success, f"Failed to look up DataPlane {dataplane_name}")
        if content is None:
            log.debug("DataPlane %s of %s does not exist", dataplane_name, owner)
            return None

        dataplane = ManagedObject(content)
        services = {}
        for key, role in [
            ("admin", dp_resources.admin_service_role(constants.STATE_LIVE)),
            ("ingress", dp_resources.ingress_service_role(constants.STATE_LIVE)),
        ]:
            children = census(self.deploy_manager, dataplane, role)
            if not children:
                log.debug("%s of %s does not exist", role.name, dataplane)
                return None
            services[key] = select_survivor(children, self.deploy_manager).name

        return cp_resources.DataPlaneTarget(
            ingress_service=services["ingress"],
            admin_service=services["admin"],
        )
