"""
The blue-green rollout state machine of a DataPlane.

A DataPlane with a blue-green strategy keeps two sets of proxy resources: the
live set that the live Services route to, and a preview set that is brought
up with every new generation of the DataPlane's spec. The preview set is
promoted once it is available and the promotion strategy allows it.

The state is carried by the reason of the RolledOut condition and by two pod
selectors in the status: status.selector is the selector of the live pods and
status.rollout.deployment.selector the one of the preview pods. Every pass
recomputes the next step from these and from the children in the cluster, so
a rollout resumes correctly after a restart.

Initialized -> Progressing -> AwaitingPromotion -> PromotionInProgress
-> PromotionDone

An unknown promotion strategy or resource plan ends in PromotionFailed.
"""

# Standard
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
import copy

# First Party
import alog

# Local
from . import constants
from .census import census
from .deploy_manager import DeployManagerBase
from .ensure import ensure
from .exceptions import ValidationError, assert_cluster, assert_precondition
from .managed_object import ManagedObject
from .reduce import select_survivor
from .resources import dataplane as dp_resources
from .resources.common import deployment_available
from .resources.defaults import ResourceDefaults
from .status import FALSE, ROLLED_OUT_CONDITION, TRUE, ConditionsAggregator
from .utils import generate_id, nested_get, nested_set

log = alog.use_channel("RLOUT")


class RolloutState(Enum):
    """The reasons of the RolledOut condition"""

    INITIALIZED = "Initialized"
    PROGRESSING = "Progressing"
    AWAITING_PROMOTION = "AwaitingPromotion"
    PROMOTION_IN_PROGRESS = "PromotionInProgress"
    PROMOTION_DONE = "PromotionDone"
    FAILED = "PromotionFailed"


class PromotionStrategy:  # pylint: disable=too-few-public-methods
    BREAK_BEFORE_PROMOTION = "BreakBeforePromotion"
    AUTOMATIC_PROMOTION = "AutomaticPromotion"


class ResourcePlan:  # pylint: disable=too-few-public-methods
    SCALE_DOWN_ON_PROMOTION_SCALE_UP_ON_ROLLOUT = "ScaleDownOnPromotionScaleUpOnRollout"
    DELETE_ON_PROMOTION_RECREATE_ON_ROLLOUT = "DeleteOnPromotionRecreateOnRollout"


# Values used when the DataPlane does not set them. These match the defaults
# of the DataPlane resource schema.
DEFAULT_PROMOTION_STRATEGY = PromotionStrategy.BREAK_BEFORE_PROMOTION
DEFAULT_RESOURCE_PLAN = ResourcePlan.SCALE_DOWN_ON_PROMOTION_SCALE_UP_ON_ROLLOUT

_RESOURCE_PLANS = [
    ResourcePlan.SCALE_DOWN_ON_PROMOTION_SCALE_UP_ON_ROLLOUT,
    ResourcePlan.DELETE_ON_PROMOTION_RECREATE_ON_ROLLOUT,
]


@dataclass
class RolloutResult:
    """The state a rollout pass left the DataPlane in

    Attributes:
        state:  RolloutState
            The reason of the RolledOut condition after the pass
        done:  bool
            True once the current generation is promoted
    """

    state: RolloutState
    done: bool = False


## Strategy ####################################################################


def promotion_strategy(dataplane: ManagedObject) -> str:
    blue_green = dp_resources.blue_green_options(dataplane) or {}
    return (
        nested_get(blue_green, "promotion.strategy") or DEFAULT_PROMOTION_STRATEGY
    )


def resource_plan(dataplane: ManagedObject) -> str:
    """The resource plan for retired Deployments

    Error Semantics: ValidationError for an unknown plan
    """
    blue_green = dp_resources.blue_green_options(dataplane) or {}
    plan = nested_get(blue_green, "resources.plan.deployment") or DEFAULT_RESOURCE_PLAN
    if plan not in _RESOURCE_PLANS:
        raise ValidationError(f"Unknown rollout resource plan {plan}")
    return plan


def can_proceed_with_promotion(dataplane: ManagedObject) -> bool:
    """Decide whether the preview resources may be promoted

    Error Semantics: ValidationError for an unknown promotion strategy. An
    unknown strategy is never treated as either known one.

    Args:
        dataplane:  ManagedObject
            The DataPlane being rolled out

    Returns:
        proceed:  bool
            True if the promotion may start
    """
    strategy = promotion_strategy(dataplane)
    if strategy == PromotionStrategy.AUTOMATIC_PROMOTION:
        return True
    if strategy == PromotionStrategy.BREAK_BEFORE_PROMOTION:
        return (
            dataplane.annotations.get(constants.PROMOTE_WHEN_READY_ANNOTATION)
            == constants.PROMOTE_WHEN_READY_VALUE
        )
    raise ValidationError(f"Unknown promotion strategy {strategy}")


def rollout_state(aggregator: ConditionsAggregator) -> Optional[RolloutState]:
    """The state recorded on the RolledOut condition, if any"""
    condition = aggregator.get(ROLLED_OUT_CONDITION)
    if condition is None:
        return None
    try:
        return RolloutState(condition.get("reason"))
    except ValueError:
        return None


def deployment_selector(deployment: ManagedObject) -> Optional[str]:
    return (deployment.nested_get("spec.selector.matchLabels") or {}).get(
        constants.SELECTOR_LABEL
    )


def prune_preview(deploy_manager: DeployManagerBase, dataplane: ManagedObject) -> bool:
    """Delete every preview child of a DataPlane that no longer rolls out with
    blue-green

    Returns:
        changed:  bool
            True if anything was deleted
    """
    roles = [
        dp_resources.deployment_role(constants.STATE_PREVIEW),
        dp_resources.admin_service_role(constants.STATE_PREVIEW),
        dp_resources.ingress_service_role(constants.STATE_PREVIEW),
    ]
    changed = False
    for role in roles:
        children = census(deploy_manager, dataplane, role)
        if not children:
            continue
        log.info("Pruning %d %s children of %s", len(children), role.name, dataplane)
        success, deleted = deploy_manager.disable(
            [child.definition for child in children]
        )
        assert_cluster(success, f"Failed to prune {role.name} of {dataplane}")
        changed = changed or deleted
    return changed


## Rollout #####################################################################


class BlueGreenRollout:
    """One pass of the blue-green state machine for one DataPlane. Each pass
    performs at most one step that changes the cluster and records the state
    on the aggregator. The caller writes the status.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        deploy_manager: DeployManagerBase,
        dataplane: ManagedObject,
        defaults: ResourceDefaults,
        aggregator: ConditionsAggregator,
        certificate_secret: str,
    ):
        self.deploy_manager = deploy_manager
        self.dataplane = dataplane
        self.defaults = defaults
        self.aggregator = aggregator
        self.certificate_secret = certificate_secret

    def reconcile(self) -> RolloutResult:
        """Run the next step of the rollout

        Error Semantics: ValidationError for an unknown promotion strategy or
        resource plan, after the RolledOut condition is set to PromotionFailed

        Returns:
            result:  RolloutResult
                The state of the rollout after this pass
        """
        condition = self.aggregator.get(ROLLED_OUT_CONDITION)
        generation = self.dataplane.generation
        observed = (condition or {}).get("observedGeneration")
        if (
            observed == generation
            and condition.get("reason") == RolloutState.PROMOTION_DONE.value
        ):
            log.debug2("Rollout of %s is done", self.dataplane)
            return RolloutResult(RolloutState.PROMOTION_DONE, done=True)
        if condition is None or observed != generation:
            if rollout_state(self.aggregator) == RolloutState.PROMOTION_IN_PROGRESS:
                # The live services may already route to the promoted pods
                log.info(
                    "Finishing promotion of %s before rolling out generation %d",
                    self.dataplane,
                    generation,
                )
            else:
                log.info(
                    "Starting rollout of generation %d of %s",
                    generation,
                    self.dataplane,
                )
                self._set_state(RolloutState.INITIALIZED, "Rollout initialized")

        try:
            return self._step()
        except ValidationError as err:
            self._set_state(RolloutState.FAILED, str(err))
            raise

    def promoting(self) -> bool:
        """True while a promotion is unfinished. The live Deployment role must
        not be converged then, since more than one Deployment may carry the
        live label.
        """
        return (
            rollout_state(self.aggregator) == RolloutState.PROMOTION_IN_PROGRESS
            or self._interrupted_promotion()
        )

    ## Steps ###################################################################

    def _step(self) -> RolloutResult:
        plan = resource_plan(self.dataplane)

        # A started promotion runs to completion before anything else
        promoting_selector = self._unfinished_promotion()
        if promoting_selector is not None:
            return self._promote(promoting_selector, plan)
        preview_selector = self._preview_selector()

        # Preview services
        for role, key in [
            (dp_resources.admin_service_role(constants.STATE_PREVIEW), "admin"),
            (dp_resources.ingress_service_role(constants.STATE_PREVIEW), "ingress"),
        ]:
            result, service = ensure(
                self.deploy_manager,
                self.dataplane,
                role,
                dp_resources.ServiceParams(selector=preview_selector),
            )
            if result.changed:
                return self._current()
            self._set_rollout_field(
                f"services.{key}",
                {
                    "name": service.name,
                    "addresses": dp_resources.service_addresses(service),
                },
            )

        # Preview deployment
        result, deployment = ensure(
            self.deploy_manager,
            self.dataplane,
            dp_resources.deployment_role(constants.STATE_PREVIEW),
            dp_resources.DeploymentParams(
                selector=preview_selector,
                certificate_secret=self.certificate_secret,
                defaults=self.defaults,
                replicas=dp_resources.preview_replicas(self.dataplane),
            ),
        )
        if result.changed:
            return self._set_state(
                RolloutState.PROGRESSING, "Preview deployment created or updated"
            )
        if not deployment_available(deployment):
            log.debug("Preview deployment %s is not ready yet", deployment.name)
            return self._set_state(
                RolloutState.PROGRESSING, "Preview deployment not yet ready"
            )

        # Promotion gate
        if not can_proceed_with_promotion(self.dataplane):
            log.debug(
                "Preview of %s is waiting for %s=%s",
                self.dataplane,
                constants.PROMOTE_WHEN_READY_ANNOTATION,
                constants.PROMOTE_WHEN_READY_VALUE,
            )
            return self._set_state(RolloutState.AWAITING_PROMOTION)
        self._set_state(RolloutState.PROMOTION_IN_PROGRESS)
        return self._promote(preview_selector, plan)

    def _promote(self, preview_selector: str, plan: str) -> RolloutResult:
        # Point the live services at the preview pods
        if self.aggregator.get_field("selector") != preview_selector:
            log.info(
                "Switching live selector of %s to %s", self.dataplane, preview_selector
            )
            self.aggregator.set_field("selector", preview_selector)
            return self._current()

        if not self._live_services_switched(preview_selector):
            log.debug("Waiting for live services of %s to switch", self.dataplane)
            return self._current()

        if self._swap_deployments(preview_selector, plan):
            return self._current()

        # The trigger is consumed by the promotion it started
        if constants.PROMOTE_WHEN_READY_ANNOTATION in self.dataplane.annotations:
            log.debug("Clearing promotion annotation of %s", self.dataplane)
            success, _ = self.deploy_manager.patch_object(
                kind=self.dataplane.kind,
                name=self.dataplane.name,
                patch={
                    "metadata": {
                        "annotations": {constants.PROMOTE_WHEN_READY_ANNOTATION: None}
                    }
                },
                namespace=self.dataplane.namespace,
                api_version=self.dataplane.api_version,
                resource_version=self.dataplane.resource_version,
            )
            assert_cluster(success, f"Failed to clear annotation of {self.dataplane}")

        # The next rollout picks a new preview selector
        self._set_rollout_field("deployment.selector", None)
        condition = self.aggregator.get(ROLLED_OUT_CONDITION) or {}
        if condition.get("observedGeneration") != self.dataplane.generation:
            log.info(
                "Promotion of %s is done, rolling out generation %d",
                self.dataplane,
                self.dataplane.generation,
            )
            return self._set_state(RolloutState.INITIALIZED, "Rollout initialized")
        log.info("Promotion of %s is done", self.dataplane)
        self._set_state(RolloutState.PROMOTION_DONE, status=TRUE)
        return RolloutResult(RolloutState.PROMOTION_DONE, done=True)

    def _live_services_switched(self, selector: str) -> bool:
        expected = dp_resources.pod_selector(self.dataplane, selector)
        for role in [
            dp_resources.admin_service_role(constants.STATE_LIVE),
            dp_resources.ingress_service_role(constants.STATE_LIVE),
        ]:
            services = census(self.deploy_manager, self.dataplane, role)
            if not any(
                svc.nested_get("spec.selector") == expected for svc in services
            ):
                return False
        return True

    def _swap_deployments(self, preview_selector: str, plan: str) -> bool:
        """Label the promoted Deployment live and apply the resource plan to
        every other one. Under the scale down plan one retired Deployment is
        kept at zero replicas as the next preview and the rest are deleted.

        Returns:
            changed:  bool
                True if any Deployment was changed
        """
        deployments = census(
            self.deploy_manager, self.dataplane, dp_resources.deployment_identity()
        )
        promoted = [
            dep for dep in deployments if deployment_selector(dep) == preview_selector
        ]
        assert_precondition(
            bool(promoted), f"No deployment to promote for {self.dataplane}"
        )
        survivor = select_survivor(promoted, self.deploy_manager)
        retired = [dep for dep in deployments if dep is not survivor]

        if (
            survivor.labels.get(constants.DATAPLANE_DEPLOYMENT_STATE_LABEL)
            != constants.STATE_LIVE
        ):
            log.info("Labelling %s live", survivor)
            self._patch(
                survivor,
                {
                    "metadata": {
                        "labels": {
                            constants.DATAPLANE_DEPLOYMENT_STATE_LABEL: (
                                constants.STATE_LIVE
                            )
                        }
                    }
                },
            )
            return True

        if plan == ResourcePlan.SCALE_DOWN_ON_PROMOTION_SCALE_UP_ON_ROLLOUT:
            candidates = [
                dep for dep in retired if deployment_selector(dep) != preview_selector
            ]
            if candidates:
                kept = select_survivor(candidates, self.deploy_manager)
                retired = [dep for dep in retired if dep is not kept]
                if (
                    kept.labels.get(constants.DATAPLANE_DEPLOYMENT_STATE_LABEL)
                    != constants.STATE_PREVIEW
                    or kept.nested_get("spec.replicas") != 0
                ):
                    log.info("Scaling down retired %s", kept)
                    self._patch(
                        kept,
                        {
                            "metadata": {
                                "labels": {
                                    constants.DATAPLANE_DEPLOYMENT_STATE_LABEL: (
                                        constants.STATE_PREVIEW
                                    )
                                }
                            },
                            "spec": {"replicas": 0},
                        },
                    )
                    return True

        if retired:
            log.info("Deleting retired deployments %s", retired)
            success, _ = self.deploy_manager.disable(
                [dep.definition for dep in retired]
            )
            assert_cluster(success, f"Failed to delete retired deployments {retired}")
            return True
        return False

    ## Helpers #################################################################

    def _interrupted_promotion(self) -> bool:
        """True if the Deployments show a promotion that is not recorded as in
        progress: a preview Deployment already has the live selector, or the
        Deployment with the live selector shares the live label with another
        one. This happens when the recorded state was replaced mid promotion.
        """
        live_selector = self.aggregator.get_field("selector")
        if not live_selector:
            return False
        deployments = census(
            self.deploy_manager, self.dataplane, dp_resources.deployment_identity()
        )
        serving = [
            dep for dep in deployments if deployment_selector(dep) == live_selector
        ]
        labelled_live = [
            dep
            for dep in deployments
            if dep.labels.get(constants.DATAPLANE_DEPLOYMENT_STATE_LABEL)
            == constants.STATE_LIVE
        ]
        return bool(serving) and (
            len(labelled_live) > 1
            or any(dep not in labelled_live for dep in serving)
        )

    def _unfinished_promotion(self) -> Optional[str]:
        """The selector of a promotion that has to finish before anything
        else, or None
        """
        if rollout_state(self.aggregator) == RolloutState.PROMOTION_IN_PROGRESS:
            return self._preview_selector()
        if not self._interrupted_promotion():
            return None
        live_selector = self.aggregator.get_field("selector")
        log.info("Resuming promotion of %s to %s", self.dataplane, live_selector)
        self._set_rollout_field("deployment.selector", live_selector)
        # The generation the promoted pods were built for is unknown, so the
        # current one is rolled out again afterwards
        self._set_state(
            RolloutState.PROMOTION_IN_PROGRESS,
            "Promotion resumed",
            observed_generation=0,
        )
        return live_selector

    def _preview_selector(self) -> str:
        """The selector of the preview pods. A new one is picked when none is
        recorded or when the recorded one is already live, reusing the
        selector of a scaled down preview Deployment if there is one. While a
        promotion runs the recorded selector is kept even once it is live.
        """
        live_selector = self.aggregator.get_field("selector")
        selector = nested_get(self._rollout(), "deployment.selector")
        promoting = rollout_state(self.aggregator) == RolloutState.PROMOTION_IN_PROGRESS
        if selector and (selector != live_selector or promoting):
            return selector

        selector = None
        for deployment in census(
            self.deploy_manager,
            self.dataplane,
            dp_resources.deployment_role(constants.STATE_PREVIEW),
        ):
            candidate = deployment_selector(deployment)
            if candidate and candidate != live_selector:
                selector = candidate
                break
        selector = selector or generate_id()
        log.debug("Preview selector of %s is %s", self.dataplane, selector)
        self._set_rollout_field("deployment.selector", selector)
        return selector

    def _rollout(self) -> dict:
        return copy.deepcopy(self.aggregator.get_field("rollout") or {})

    def _set_rollout_field(self, key: str, value):
        rollout = self._rollout()
        nested_set(rollout, key, value)
        self.aggregator.set_field("rollout", rollout)

    def _set_state(
        self,
        state: RolloutState,
        message: str = "",
        status: str = FALSE,
        observed_generation: Optional[int] = None,
    ) -> RolloutResult:
        self.aggregator.set(
            ROLLED_OUT_CONDITION,
            status,
            state.value,
            message,
            observed_generation=observed_generation,
        )
        return RolloutResult(state, done=state == RolloutState.PROMOTION_DONE)

    def _current(self) -> RolloutResult:
        return RolloutResult(rollout_state(self.aggregator) or RolloutState.INITIALIZED)

    def _patch(self, deployment: ManagedObject, patch: dict):
        success, _ = self.deploy_manager.patch_object(
            kind=deployment.kind,
            name=deployment.name,
            patch=patch,
            namespace=deployment.namespace,
            api_version=deployment.api_version,
            resource_version=deployment.resource_version,
        )
        assert_cluster(success, f"Failed to patch {deployment}")


def live_deployment_for(
    deployments: List[ManagedObject],
    live_selector: Optional[str],
) -> Optional[ManagedObject]:
    """Pick the Deployment that serves the live selector among the live ones"""
    for deployment in deployments:
        if deployment_selector(deployment) == live_selector:
            return deployment
    return deployments[0] if deployments else None
