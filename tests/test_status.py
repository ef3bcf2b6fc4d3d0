"""
Tests for the status condition helpers and the aggregator
"""

# Local
from gateway_operator import status
from gateway_operator.managed_object import ManagedObject
from gateway_operator.status import ConditionReason, ConditionsAggregator
from gateway_operator.test_helpers.helpers import (
    TEST_NAMESPACE,
    MockDeployManager,
    setup_owner,
    timestamp,
)

## Helpers #####################################################################


def make_owner(conditions=None, generation=1, **status_fields):
    owner_manifest = setup_owner()
    owner_manifest["metadata"]["generation"] = generation
    if conditions is not None or status_fields:
        owner_manifest["status"] = {"conditions": conditions or [], **status_fields}
    dm = MockDeployManager(resources=[owner_manifest])
    return dm, ManagedObject(dm.get_obj(owner_manifest["kind"], "test-owner", TEST_NAMESPACE))


def old_condition(type_name, cond_status, reason="Old"):
    return {
        "type": type_name,
        "status": cond_status,
        "reason": reason,
        "message": "",
        "observedGeneration": 1,
        status.TIMESTAMP_KEY: timestamp(),
    }


## Condition helpers ###########################################################


def test_set_condition_appends_in_order():
    conditions = []
    status.set_condition(conditions, status.make_condition("A", status.TRUE, "r"))
    status.set_condition(conditions, status.make_condition("B", status.TRUE, "r"))
    status.set_condition(conditions, status.make_condition("A", status.FALSE, "r"))
    assert [cond["type"] for cond in conditions] == ["A", "B"]
    assert status.get_condition("A", conditions)["status"] == status.FALSE


def test_set_condition_keeps_transition_time():
    """The transition time only moves when the status flips"""
    conditions = [old_condition("A", status.TRUE)]
    status.set_condition(conditions, status.make_condition("A", status.TRUE, "New"))
    assert conditions[0][status.TIMESTAMP_KEY] == timestamp()
    assert conditions[0]["reason"] == "New"

    status.set_condition(conditions, status.make_condition("A", status.FALSE, "New"))
    assert conditions[0][status.TIMESTAMP_KEY] != timestamp()


def test_status_changed_ignores_timestamps():
    current = {"conditions": [old_condition("A", status.TRUE)]}
    new = {"conditions": [{**old_condition("A", status.TRUE), "lastTransitionTime": "x"}]}
    assert not status.status_changed(current, new)
    new["conditions"][0]["reason"] = "Other"
    assert status.status_changed(current, new)
    assert status.status_changed(None, new)


## Aggregator ##################################################################


def test_aggregator_uses_generation():
    _, owner = make_owner(generation=4)
    aggregator = ConditionsAggregator(None, owner)
    condition = aggregator.set("A", status.TRUE, "r")
    assert condition["observedGeneration"] == 4
    assert aggregator.is_true("A")


def test_aggregator_ready_all_true():
    _, owner = make_owner()
    aggregator = ConditionsAggregator(None, owner)
    aggregator.set("A", status.TRUE, "r")
    aggregator.set("B", status.TRUE, "r")
    assert aggregator.ready(["A", "B"])
    assert aggregator.get(status.READY_CONDITION)["reason"] == ConditionReason.READY


def test_aggregator_ready_surfaces_first_unmet():
    """Ready carries the reason and message of the first unmet condition"""
    _, owner = make_owner()
    aggregator = ConditionsAggregator(None, owner)
    aggregator.set("A", status.TRUE, "r")
    aggregator.set("B", status.FALSE, "Broken", "b is broken")
    aggregator.set("C", status.FALSE, "AlsoBroken", "c is broken")
    assert not aggregator.ready(["A", "B", "C"])
    ready = aggregator.get(status.READY_CONDITION)
    assert ready["status"] == status.FALSE
    assert ready["reason"] == "Broken"
    assert ready["message"] == "b is broken"


def test_aggregator_ready_missing_condition():
    _, owner = make_owner()
    aggregator = ConditionsAggregator(None, owner)
    assert not aggregator.ready(["A"])
    assert (
        aggregator.get(status.READY_CONDITION)["reason"]
        == ConditionReason.DEPENDENCIES_NOT_READY
    )


def test_aggregator_apply_only_on_change():
    """The status is written once and an identical pass writes nothing"""
    dm, owner = make_owner()
    aggregator = ConditionsAggregator(dm, owner)
    aggregator.set("A", status.TRUE, "r")
    aggregator.set_field("readyReplicas", 2)
    assert aggregator.apply()
    assert dm.set_status.call_count == 1
    assert not aggregator.apply()

    stored = ManagedObject(dm.get_obj(owner.kind, owner.name, owner.namespace))
    assert stored.status["readyReplicas"] == 2
    assert status.is_condition_true("A", stored.status["conditions"])

    dm.reset_write_counts()
    aggregator = ConditionsAggregator(dm, stored)
    aggregator.set("A", status.TRUE, "r")
    aggregator.set_field("readyReplicas", 2)
    assert not aggregator.apply()
    assert dm.write_count() == 0


def test_aggregator_remove():
    dm, owner = make_owner(conditions=[old_condition("A", status.TRUE)])
    aggregator = ConditionsAggregator(dm, owner)
    aggregator.remove("A")
    assert aggregator.get("A") is None
    assert aggregator.apply()


def test_aggregator_set_if_absent():
    _, owner = make_owner(conditions=[old_condition("A", status.FALSE)])
    aggregator = ConditionsAggregator(None, owner)
    aggregator.set_if_absent("A", status.TRUE, "r")
    aggregator.set_if_absent("B", status.TRUE, "r")
    assert not aggregator.is_true("A")
    assert aggregator.is_true("B")


def test_aggregator_get_field():
    """Fields set in this pass win over the stored ones"""
    _, owner = make_owner(conditions=[], addresses=["a"])
    aggregator = ConditionsAggregator(None, owner)
    assert aggregator.get_field("addresses") == ["a"]
    assert aggregator.get_field("missing", 3) == 3
    aggregator.set_field("addresses", ["b"])
    assert aggregator.get_field("addresses") == ["b"]
