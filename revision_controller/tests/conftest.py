from __future__ import annotations

import pytest

from revision_controller.src.kube import ConfigStore
from revision_controller.src.status import OperatorStatusClient
from revision_controller.tests.fakes import FakeCoreApi, FakeCustomObjectsApi, RecordingEventRecorder


@pytest.fixture
def core_api() -> FakeCoreApi:
    return FakeCoreApi()


@pytest.fixture
def custom_api() -> FakeCustomObjectsApi:
    return FakeCustomObjectsApi()


@pytest.fixture
def recorder() -> RecordingEventRecorder:
    return RecordingEventRecorder()


@pytest.fixture
def config_store(core_api: FakeCoreApi) -> ConfigStore:
    return ConfigStore(core_api)  # type: ignore[arg-type]


@pytest.fixture
def status_client(custom_api: FakeCustomObjectsApi) -> OperatorStatusClient:
    return OperatorStatusClient(
        custom_api=custom_api,  # type: ignore[arg-type]
        group="operator.openshift.io",
        version="v1",
        plural="kubeapiservers",
        name="cluster",
    )
