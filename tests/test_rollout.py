"""
Tests for the blue-green rollout state machine
"""

# Third Party
import pytest

# Local
from gateway_operator import constants, status
from gateway_operator.controllers import DataPlaneController
from gateway_operator.exceptions import ValidationError
from gateway_operator.managed_object import ManagedObject
from gateway_operator.rollout import (
    BlueGreenRollout,
    PromotionStrategy,
    ResourcePlan,
    RolloutState,
    can_proceed_with_promotion,
    resource_plan,
    rollout_state,
)
from gateway_operator.status import ConditionsAggregator
from gateway_operator.test_helpers.helpers import (
    TEST_NAMESPACE,
    MockDeployManager,
    make_defaults,
    make_deployments_available,
    reconcile_until_stable,
    setup_ca,
    setup_owner,
)

## Helpers #####################################################################


def blue_green_spec(strategy=None, plan=None, **deployment):
    blue_green = {}
    if strategy is not None:
        blue_green["promotion"] = {"strategy": strategy}
    if plan is not None:
        blue_green["resources"] = {"plan": {"deployment": plan}}
    return {
        "deployment": {
            "rollout": {"strategy": {"blueGreen": blue_green}},
            **deployment,
        }
    }


def make_dataplane(spec=None, annotations=None) -> ManagedObject:
    metadata = {}
    if annotations:
        metadata["annotations"] = annotations
    return ManagedObject(
        setup_owner(kind=constants.KIND_DATAPLANE, spec=spec, **metadata)
    )


def setup(spec):
    owner_manifest = setup_owner(kind=constants.KIND_DATAPLANE, spec=spec)
    dm = MockDeployManager(resources=[owner_manifest])
    defaults = make_defaults()
    setup_ca(dm, defaults)
    return dm, DataPlaneController(dm, defaults)


def converge(dm, controller):
    return reconcile_until_stable(
        controller, dm, constants.KIND_DATAPLANE, "test-owner"
    )


def promote(dm):
    dm.patch_object(
        constants.KIND_DATAPLANE,
        "test-owner",
        {
            "metadata": {
                "annotations": {
                    constants.PROMOTE_WHEN_READY_ANNOTATION: (
                        constants.PROMOTE_WHEN_READY_VALUE
                    )
                }
            }
        },
        namespace=TEST_NAMESPACE,
    )


def deployments(dm, state=None):
    return [
        ManagedObject(dep)
        for dep in dm.list_objs("Deployment", namespace=TEST_NAMESPACE)
        if state is None
        or dep["metadata"]["labels"].get(constants.DATAPLANE_DEPLOYMENT_STATE_LABEL)
        == state
    ]


def rolled_out(owner):
    return status.get_condition(
        status.ROLLED_OUT_CONDITION, owner.status.get("conditions")
    )


def get_owner(dm):
    return ManagedObject(
        dm.get_obj(constants.KIND_DATAPLANE, "test-owner", TEST_NAMESPACE)
    )


def assert_live_services_served(dm):
    """Every live Service selects the pods of a Deployment that is not scaled
    to zero
    """
    served = {
        dep.nested_get("spec.selector.matchLabels")[constants.SELECTOR_LABEL]
        for dep in deployments(dm)
        if dep.spec.get("replicas", 1) != 0
    }
    for svc in dm.list_objs("Service", namespace=TEST_NAMESPACE):
        labels = svc["metadata"]["labels"]
        if labels.get(constants.DATAPLANE_SERVICE_STATE_LABEL) == constants.STATE_LIVE:
            assert svc["spec"]["selector"][constants.SELECTOR_LABEL] in served


def step(dm, controller):
    """Run a single pass and check that live traffic is still served"""
    before = dm.cluster_version()
    controller.reconcile(get_owner(dm))
    make_deployments_available(dm)
    assert_live_services_served(dm)
    return dm.cluster_version() != before


def step_until(dm, controller, predicate, max_passes=10):
    for _ in range(max_passes):
        step(dm, controller)
        if predicate():
            return
    raise AssertionError(f"Condition not reached in {max_passes} passes")


def converge_served(dm, controller, max_passes=30):
    for _ in range(max_passes):
        if not step(dm, controller):
            return get_owner(dm)
    raise AssertionError(f"DataPlane did not settle in {max_passes} passes")



## Strategy ####################################################################


def test_automatic_promotion_always_proceeds():
    dataplane = make_dataplane(blue_green_spec(PromotionStrategy.AUTOMATIC_PROMOTION))
    assert can_proceed_with_promotion(dataplane)


def test_break_before_promotion_waits_for_annotation():
    spec = blue_green_spec(PromotionStrategy.BREAK_BEFORE_PROMOTION)
    assert not can_proceed_with_promotion(make_dataplane(spec))
    assert can_proceed_with_promotion(
        make_dataplane(
            spec,
            annotations={
                constants.PROMOTE_WHEN_READY_ANNOTATION: constants.PROMOTE_WHEN_READY_VALUE
            },
        )
    )
    assert not can_proceed_with_promotion(
        make_dataplane(
            spec, annotations={constants.PROMOTE_WHEN_READY_ANNOTATION: "false"}
        )
    )


def test_missing_strategy_breaks_before_promotion():
    assert not can_proceed_with_promotion(make_dataplane(blue_green_spec()))


def test_unknown_strategy_is_rejected():
    with pytest.raises(ValidationError):
        can_proceed_with_promotion(make_dataplane(blue_green_spec("Sometimes")))


def test_resource_plan():
    assert (
        resource_plan(make_dataplane(blue_green_spec()))
        == ResourcePlan.SCALE_DOWN_ON_PROMOTION_SCALE_UP_ON_ROLLOUT
    )
    assert (
        resource_plan(
            make_dataplane(
                blue_green_spec(
                    plan=ResourcePlan.DELETE_ON_PROMOTION_RECREATE_ON_ROLLOUT
                )
            )
        )
        == ResourcePlan.DELETE_ON_PROMOTION_RECREATE_ON_ROLLOUT
    )
    with pytest.raises(ValidationError):
        resource_plan(make_dataplane(blue_green_spec(plan="KeepEverything")))


def test_unknown_plan_fails_rollout():
    """An unknown plan marks the rollout failed before touching the cluster"""
    dataplane = make_dataplane(blue_green_spec(plan="KeepEverything"))
    dm = MockDeployManager(resources=[dataplane.definition])
    aggregator = ConditionsAggregator(dm, dataplane)
    with pytest.raises(ValidationError):
        BlueGreenRollout(
            dm, dataplane, make_defaults(), aggregator, certificate_secret="cert"
        ).reconcile()
    assert rollout_state(aggregator) == RolloutState.FAILED
    assert dm.write_count() == 0


## Rollouts ####################################################################


def test_break_before_promotion_stops_at_awaiting_promotion():
    """A new blue-green DataPlane brings up a preview next to the live
    Deployment and waits for the promotion trigger
    """
    dm, controller = setup(blue_green_spec(PromotionStrategy.BREAK_BEFORE_PROMOTION))
    owner = converge(dm, controller)

    condition = rolled_out(owner)
    assert condition["status"] == status.FALSE
    assert condition["reason"] == RolloutState.AWAITING_PROMOTION.value
    assert not status.is_condition_true(
        status.READY_CONDITION, owner.status["conditions"]
    )

    live = deployments(dm, constants.STATE_LIVE)
    preview = deployments(dm, constants.STATE_PREVIEW)
    assert len(live) == 1
    assert len(preview) == 1
    preview_selector = owner.status["rollout"]["deployment"]["selector"]
    assert preview_selector != owner.status["selector"]
    assert (
        preview[0].nested_get("spec.selector.matchLabels")[constants.SELECTOR_LABEL]
        == preview_selector
    )
    assert set(owner.status["rollout"]["services"]) == {"admin", "ingress"}


def test_promotion_with_scale_down():
    """Promoting swaps the live selector, labels the preview Deployment live
    and keeps the retired one scaled to zero
    """
    dm, controller = setup(blue_green_spec(PromotionStrategy.BREAK_BEFORE_PROMOTION))
    owner = converge(dm, controller)
    old_live = deployments(dm, constants.STATE_LIVE)[0]
    old_preview = deployments(dm, constants.STATE_PREVIEW)[0]
    preview_selector = owner.status["rollout"]["deployment"]["selector"]

    promote(dm)
    owner = converge(dm, controller)

    condition = rolled_out(owner)
    assert condition["status"] == status.TRUE
    assert condition["reason"] == RolloutState.PROMOTION_DONE.value
    assert status.is_condition_true(status.READY_CONDITION, owner.status["conditions"])
    assert constants.PROMOTE_WHEN_READY_ANNOTATION not in owner.annotations
    assert owner.status["selector"] == preview_selector

    live = deployments(dm, constants.STATE_LIVE)
    preview = deployments(dm, constants.STATE_PREVIEW)
    assert [dep.name for dep in live] == [old_preview.name]
    assert [dep.name for dep in preview] == [old_live.name]
    assert preview[0].spec["replicas"] == 0

    for svc in dm.list_objs("Service", namespace=TEST_NAMESPACE):
        labels = svc["metadata"]["labels"]
        if labels.get(constants.DATAPLANE_SERVICE_STATE_LABEL) == constants.STATE_LIVE:
            assert svc["spec"]["selector"][constants.SELECTOR_LABEL] == preview_selector


def test_next_rollout_reuses_scaled_down_deployment():
    """A spec change after a promotion scales the retired Deployment back up
    as the new preview
    """
    dm, controller = setup(blue_green_spec(PromotionStrategy.BREAK_BEFORE_PROMOTION))
    converge(dm, controller)
    promote(dm)
    converge(dm, controller)
    retired = deployments(dm, constants.STATE_PREVIEW)[0]

    dm.patch_object(
        constants.KIND_DATAPLANE,
        "test-owner",
        {"spec": {"deployment": {"replicas": 2}}},
        namespace=TEST_NAMESPACE,
    )
    owner = converge(dm, controller)

    assert rolled_out(owner)["reason"] == RolloutState.AWAITING_PROMOTION.value
    assert rolled_out(owner)["observedGeneration"] == 2
    preview = deployments(dm, constants.STATE_PREVIEW)
    assert [dep.name for dep in preview] == [retired.name]
    assert preview[0].spec["replicas"] == 2
    assert len(deployments(dm)) == 2


def test_automatic_promotion():
    dm, controller = setup(blue_green_spec(PromotionStrategy.AUTOMATIC_PROMOTION))
    owner = converge(dm, controller)
    condition = rolled_out(owner)
    assert condition["status"] == status.TRUE
    assert condition["reason"] == RolloutState.PROMOTION_DONE.value
    assert len(deployments(dm, constants.STATE_LIVE)) == 1


def test_promotion_with_delete_plan():
    """The delete plan removes the retired Deployment"""
    dm, controller = setup(
        blue_green_spec(
            PromotionStrategy.AUTOMATIC_PROMOTION,
            ResourcePlan.DELETE_ON_PROMOTION_RECREATE_ON_ROLLOUT,
        )
    )
    owner = converge(dm, controller)
    assert rolled_out(owner)["reason"] == RolloutState.PROMOTION_DONE.value
    remaining = deployments(dm)
    assert len(remaining) == 1
    assert (
        remaining[0].labels[constants.DATAPLANE_DEPLOYMENT_STATE_LABEL]
        == constants.STATE_LIVE
    )


def test_unknown_strategy_through_controller():
    """An unknown strategy is reported on both RolledOut and Ready"""
    dm, controller = setup(blue_green_spec("Sometimes"))
    with pytest.raises(ValidationError):
        converge(dm, controller)
    owner = ManagedObject(
        dm.get_obj(constants.KIND_DATAPLANE, "test-owner", TEST_NAMESPACE)
    )
    assert rolled_out(owner)["reason"] == RolloutState.FAILED.value
    ready = status.get_condition(status.READY_CONDITION, owner.status["conditions"])
    assert ready["status"] == status.FALSE
    assert ready["reason"] == status.ConditionReason.VALIDATION_FAILED


def test_turning_off_blue_green_prunes_preview():
    dm, controller = setup(blue_green_spec(PromotionStrategy.BREAK_BEFORE_PROMOTION))
    converge(dm, controller)
    assert deployments(dm, constants.STATE_PREVIEW)

    dm.patch_object(
        constants.KIND_DATAPLANE,
        "test-owner",
        {"spec": {"deployment": {"rollout": None}}},
        namespace=TEST_NAMESPACE,
    )
    owner = converge(dm, controller)

    assert not deployments(dm, constants.STATE_PREVIEW)
    assert not [
        svc
        for svc in dm.list_objs("Service", namespace=TEST_NAMESPACE)
        if svc["metadata"]["labels"].get(constants.DATAPLANE_SERVICE_STATE_LABEL)
        == constants.STATE_PREVIEW
    ]
    assert rolled_out(owner) is None
    assert status.is_condition_true(status.READY_CONDITION, owner.status["conditions"])


def test_spec_change_mid_promotion_keeps_live_traffic():
    """A spec change after the live selector switched finishes the running
    promotion before the new generation is rolled out
    """
    dm, controller = setup(blue_green_spec(PromotionStrategy.BREAK_BEFORE_PROMOTION))
    owner = converge(dm, controller)
    old_live = deployments(dm, constants.STATE_LIVE)[0]
    old_preview = deployments(dm, constants.STATE_PREVIEW)[0]
    preview_selector = owner.status["rollout"]["deployment"]["selector"]

    promote(dm)
    step_until(
        dm,
        controller,
        lambda: get_owner(dm).status.get("selector") == preview_selector,
    )
    assert (
        rolled_out(get_owner(dm))["reason"]
        == RolloutState.PROMOTION_IN_PROGRESS.value
    )

    dm.patch_object(
        constants.KIND_DATAPLANE,
        "test-owner",
        {"spec": {"deployment": {"replicas": 3}}},
        namespace=TEST_NAMESPACE,
    )
    owner = converge_served(dm, controller)

    assert owner.status["selector"] == preview_selector
    assert constants.PROMOTE_WHEN_READY_ANNOTATION not in owner.annotations
    condition = rolled_out(owner)
    assert condition["reason"] == RolloutState.AWAITING_PROMOTION.value
    assert condition["observedGeneration"] == 2

    live = deployments(dm, constants.STATE_LIVE)
    assert [dep.name for dep in live] == [old_preview.name]
    preview = deployments(dm, constants.STATE_PREVIEW)
    assert [dep.name for dep in preview] == [old_live.name]
    assert preview[0].spec["replicas"] == 3


def test_promotion_resumes_when_state_is_replaced():
    """A promotion whose recorded state was replaced after the promoted
    Deployment was labelled live still finishes without touching it
    """
    dm, controller = setup(blue_green_spec(PromotionStrategy.BREAK_BEFORE_PROMOTION))
    owner = converge(dm, controller)
    old_preview = deployments(dm, constants.STATE_PREVIEW)[0]
    preview_selector = owner.status["rollout"]["deployment"]["selector"]

    promote(dm)
    step_until(
        dm, controller, lambda: len(deployments(dm, constants.STATE_LIVE)) == 2
    )

    owner = get_owner(dm)
    conditions = [
        cond
        for cond in owner.status["conditions"]
        if cond["type"] != status.ROLLED_OUT_CONDITION
    ]
    conditions.append(
        status.make_condition(
            status.ROLLED_OUT_CONDITION,
            status.FALSE,
            RolloutState.INITIALIZED.value,
            observed_generation=owner.generation,
        )
    )
    dm.set_status(
        constants.KIND_DATAPLANE,
        "test-owner",
        TEST_NAMESPACE,
        {"conditions": conditions},
    )
    owner = converge_served(dm, controller)

    live = deployments(dm, constants.STATE_LIVE)
    assert [dep.name for dep in live] == [old_preview.name]
    assert (
        live[0].nested_get("spec.selector.matchLabels")[constants.SELECTOR_LABEL]
        == preview_selector
    )
    assert owner.status["selector"] == preview_selector
    assert rolled_out(owner)["reason"] == RolloutState.AWAITING_PROMOTION.value
