import threading

import pytest

from pause_lock.authorization import AuthorizationGate, StoredPermissionService
from pause_lock.errors import AlreadyRequesting
from pause_lock.schema import AuthorizationStatus
from pause_lock.storage import JsonFileStore, Persistence

from conftest import FakePermissionService


@pytest.fixture
def persistence(tmp_path):
    return Persistence(JsonFileStore(tmp_path / "store.json"))


def test_approved_sets_sticky_flag(persistence):
    gate = AuthorizationGate(FakePermissionService(), persistence)

    assert gate.request_if_needed()
    assert gate.has_been_granted


def test_first_request_asks_once(persistence):
    service = FakePermissionService(status=AuthorizationStatus.UNDETERMINED)
    gate = AuthorizationGate(service, persistence)

    assert gate.request_if_needed()
    assert service.requests == 1
    assert gate.has_been_granted

    assert gate.request_if_needed()
    assert service.requests == 1


def test_undetermined_after_restart_uses_previous_grant(persistence):
    persistence.save_has_been_granted(True)
    service = FakePermissionService(
        status=AuthorizationStatus.UNDETERMINED, answer=AuthorizationStatus.UNDETERMINED
    )
    gate = AuthorizationGate(service, persistence)

    assert gate.request_if_needed()
    assert service.requests == 1
    assert gate.has_been_granted


def test_silent_denied_answer_keeps_flag(persistence):
    persistence.save_has_been_granted(True)
    service = FakePermissionService(
        status=AuthorizationStatus.UNDETERMINED, answer=AuthorizationStatus.DENIED
    )
    gate = AuthorizationGate(service, persistence)

    assert gate.request_if_needed()
    assert service.requests == 1
    assert gate.has_been_granted


def test_explicit_denial_clears_flag(persistence):
    persistence.save_has_been_granted(True)
    gate = AuthorizationGate(FakePermissionService(status=AuthorizationStatus.DENIED), persistence)

    assert not gate.request_if_needed()
    assert not gate.has_been_granted


def test_denied_first_request(persistence):
    service = FakePermissionService(
        status=AuthorizationStatus.UNDETERMINED, answer=AuthorizationStatus.DENIED
    )
    gate = AuthorizationGate(service, persistence)

    assert not gate.request_if_needed()
    assert not gate.has_been_granted


def test_concurrent_request_is_rejected(persistence):
    started = threading.Event()
    release = threading.Event()

    class SlowService(FakePermissionService):
        def request(self):
            started.set()
            release.wait(timeout=5)
            return AuthorizationStatus.APPROVED

    gate = AuthorizationGate(SlowService(status=AuthorizationStatus.UNDETERMINED), persistence)
    results = []
    worker = threading.Thread(target=lambda: results.append(gate.request_if_needed()))
    worker.start()
    assert started.wait(timeout=5)

    assert gate.is_requesting
    with pytest.raises(AlreadyRequesting):
        gate.request_if_needed()

    release.set()
    worker.join(timeout=5)
    assert results == [True]
    assert not gate.is_requesting


def test_stored_service_prompts_and_remembers(tmp_path):
    answers = []
    service = StoredPermissionService(tmp_path / "permission.json", prompt=lambda: answers.append(1) or True)

    assert service.status() is AuthorizationStatus.UNDETERMINED
    assert service.request() is AuthorizationStatus.APPROVED
    assert service.request() is AuthorizationStatus.APPROVED
    assert len(answers) == 1

    reopened = StoredPermissionService(tmp_path / "permission.json")
    assert reopened.status() is AuthorizationStatus.APPROVED


def test_stored_service_without_prompt_does_not_record_denial(tmp_path):
    service = StoredPermissionService(tmp_path / "permission.json")

    assert service.request() is AuthorizationStatus.DENIED
    assert service.status() is AuthorizationStatus.UNDETERMINED


def test_corrupt_permission_file_is_undetermined(tmp_path):
    path = tmp_path / "permission.json"
    path.write_text("{not json")

    assert StoredPermissionService(path).status() is AuthorizationStatus.UNDETERMINED
