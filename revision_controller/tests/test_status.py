from __future__ import annotations

from collections.abc import Callable
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from revision_controller.src.errors import StatusUpdateConflictError
from revision_controller.src.status import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    ManagementState,
    OperatorCondition,
    OperatorSpec,
    OperatorStatus,
    OperatorStatusClient,
    set_operator_condition,
    update_condition_fn,
    update_status,
)
from revision_controller.tests.fakes import FakeCustomObjectsApi


def _clock(*values: str) -> Callable[[], str]:
    remaining = list(values)
    return lambda: remaining.pop(0)


class TestManagementState:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Managed", ManagementState.MANAGED),
            ("Unmanaged", ManagementState.UNMANAGED),
            ("Removed", ManagementState.REMOVED),
            ("", ManagementState.MANAGED),
            (None, ManagementState.MANAGED),
            ("Force", ManagementState.MANAGED),
        ],
    )
    def test_parse(self, raw: str | None, expected: ManagementState) -> None:
        assert ManagementState.parse(raw) is expected

    def test_spec_without_management_state_is_managed(self) -> None:
        assert OperatorSpec.from_dict(None).management_state is ManagementState.MANAGED


class TestConditions:
    def test_new_condition_gets_transition_time(self) -> None:
        conditions: list[OperatorCondition] = []

        set_operator_condition(
            conditions,
            OperatorCondition(type="Failing", status=CONDITION_TRUE, reason="Error", message="boom"),
            now_fn=_clock("2026-01-01T00:00:00Z"),
        )

        assert conditions == [
            OperatorCondition(
                type="Failing",
                status=CONDITION_TRUE,
                reason="Error",
                message="boom",
                last_transition_time="2026-01-01T00:00:00Z",
            )
        ]

    def test_same_status_keeps_transition_time(self) -> None:
        conditions = [
            OperatorCondition("Failing", CONDITION_TRUE, "Error", "old", "2026-01-01T00:00:00Z")
        ]

        set_operator_condition(
            conditions,
            OperatorCondition("Failing", CONDITION_TRUE, "ContentCreationError", "new"),
            now_fn=_clock("2026-02-02T00:00:00Z"),
        )

        assert conditions[0].last_transition_time == "2026-01-01T00:00:00Z"
        assert conditions[0].reason == "ContentCreationError"
        assert conditions[0].message == "new"

    def test_status_change_moves_transition_time(self) -> None:
        conditions = [
            OperatorCondition("Failing", CONDITION_TRUE, "Error", "old", "2026-01-01T00:00:00Z")
        ]

        set_operator_condition(
            conditions,
            OperatorCondition("Failing", CONDITION_FALSE),
            now_fn=_clock("2026-02-02T00:00:00Z"),
        )

        assert conditions == [
            OperatorCondition("Failing", CONDITION_FALSE, "", "", "2026-02-02T00:00:00Z")
        ]

    def test_conditions_are_keyed_by_type(self) -> None:
        conditions = [OperatorCondition("Available", CONDITION_TRUE, last_transition_time="t0")]

        set_operator_condition(conditions, OperatorCondition("Failing", CONDITION_FALSE), now_fn=_clock("t1"))
        set_operator_condition(conditions, OperatorCondition("Failing", CONDITION_FALSE), now_fn=_clock("t2"))

        assert [c.type for c in conditions] == ["Available", "Failing"]
        assert conditions[1].last_transition_time == "t1"

    def test_status_round_trips_through_camel_case(self) -> None:
        raw = {
            "latestAvailableRevision": 3,
            "conditions": [
                {"type": "Failing", "status": "False", "lastTransitionTime": "t0"},
            ],
        }

        status = OperatorStatus.from_dict(raw)

        assert status.latest_available_revision == 3
        assert status.find_condition("Failing").last_transition_time == "t0"
        assert status.find_condition("Missing") is None
        assert status.to_dict() == raw


class TestUpdateStatus:
    def _client(self, api: FakeCustomObjectsApi) -> OperatorStatusClient:
        return OperatorStatusClient(api, "operator.openshift.io", "v1", "kubeapiservers", "cluster")  # type: ignore[arg-type]

    def test_writes_with_observed_resource_version(self) -> None:
        api = FakeCustomObjectsApi()
        client = self._client(api)

        def _bump(status: OperatorStatus) -> None:
            status.latest_available_revision += 1

        status, changed = update_status(client, _bump)

        assert changed is True
        assert status.latest_available_revision == 1
        assert api.status["latestAvailableRevision"] == 1
        assert api.status_writes == 1

    def test_unchanged_status_is_not_written(self) -> None:
        api = FakeCustomObjectsApi(
            status={
                "latestAvailableRevision": 2,
                "conditions": [{"type": "RevisionControllerFailing", "status": "False", "lastTransitionTime": "t0"}],
            }
        )
        client = self._client(api)

        status, changed = update_status(
            client, update_condition_fn(OperatorCondition("RevisionControllerFailing", CONDITION_FALSE))
        )

        assert changed is False
        assert status.latest_available_revision == 2
        assert api.status_writes == 0

    def test_conflict_raises_and_leaves_status_untouched(self) -> None:
        api = FakeCustomObjectsApi(status={"latestAvailableRevision": 2})
        api.fail_status_writes = [ApiException(status=409, reason="Conflict")]
        client = self._client(api)

        def _bump(status: OperatorStatus) -> None:
            status.latest_available_revision = 3

        with pytest.raises(StatusUpdateConflictError):
            update_status(client, _bump)

        assert api.status == {"latestAvailableRevision": 2}

    def test_other_api_errors_propagate(self) -> None:
        api = FakeCustomObjectsApi()
        api.fail_status_writes = [ApiException(status=500, reason="boom")]

        def _bump(status: OperatorStatus) -> None:
            status.latest_available_revision = 1

        with pytest.raises(ApiException):
            update_status(self._client(api), _bump)

    def test_preserves_status_fields_owned_by_others(self) -> None:
        api = FakeCustomObjectsApi(status={"latestAvailableRevision": 1, "nodeStatuses": [{"nodeName": "a"}]})

        def _bump(status: OperatorStatus) -> None:
            status.latest_available_revision = 2

        update_status(self._client(api), _bump)

        assert api.status["nodeStatuses"] == [{"nodeName": "a"}]

    def test_get_returns_spec_status_and_resource_version(self) -> None:
        api = FakeCustomObjectsApi(management_state="Unmanaged", status={"latestAvailableRevision": 5})

        spec, status, resource_version = self._client(api).get()

        assert spec.management_state is ManagementState.UNMANAGED
        assert status.latest_available_revision == 5
        assert resource_version == "1"

    def test_stale_expected_resource_version_is_a_conflict(self) -> None:
        api = FakeCustomObjectsApi(status={"latestAvailableRevision": 2})
        client = self._client(api)
        _, _, observed = client.get()
        api.concurrent_write()

        def _bump(status: OperatorStatus) -> None:
            status.latest_available_revision = 3

        with pytest.raises(StatusUpdateConflictError, match="changed since resourceVersion 1"):
            update_status(client, _bump, expected_resource_version=observed)

        assert api.status == {"latestAvailableRevision": 2}
        assert api.status_writes == 0

    def test_matching_expected_resource_version_writes(self) -> None:
        api = FakeCustomObjectsApi()
        client = self._client(api)
        _, _, observed = client.get()

        def _bump(status: OperatorStatus) -> None:
            status.latest_available_revision = 1

        _, changed = update_status(client, _bump, expected_resource_version=observed)

        assert changed is True
        assert api.status["latestAvailableRevision"] == 1

    def test_namespaced_resource_uses_namespaced_calls(self) -> None:
        api = MagicMock()
        api.get_namespaced_custom_object.return_value = {"metadata": {"resourceVersion": "9"}}
        client = OperatorStatusClient(api, "example.io", "v1", "widgets", "main", namespace="ops")

        _, _, resource_version = client.get()
        client.replace_status({"status": {}})

        assert resource_version == "9"
        api.get_namespaced_custom_object.assert_called_once_with(
            group="example.io", version="v1", namespace="ops", plural="widgets", name="main"
        )
        api.replace_namespaced_custom_object_status.assert_called_once()
        assert client.list_function() is api.list_namespaced_custom_object
        assert client.list_kwargs()["namespace"] == "ops"
