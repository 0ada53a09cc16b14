"""Tests for the platform HTTP client and token decoding."""
import pytest

from conftest import make_token, run
from exam_practice.services.backend_client import (
    BackendClient, BackendError, VerificationRequired, decode_identity, iri, unwrap_collection,
)


def test_unwrap_collection_shapes():
    assert unwrap_collection([{"id": 1}]) == [{"id": 1}]
    assert unwrap_collection({"hydra:member": [{"id": 2}]}) == [{"id": 2}]
    assert unwrap_collection({"member": [{"id": 3}]}) == [{"id": 3}]
    assert unwrap_collection({"totalItems": 0}) == []
    assert unwrap_collection(None) == []


def test_iri():
    assert iri("practice_tests", 5) == "/api/practice_tests/5"


def test_error_message_prefers_hydra_description(backend):
    backend.fail_paths["GET /api/exams"] = 500
    with pytest.raises(BackendError) as exc:
        run(backend.client().get_json("/api/exams"))
    assert exc.value.message == "/api/exams exploded"
    assert exc.value.status_code == 500


def test_network_failure_becomes_backend_error(backend):
    backend.network_down = True
    with pytest.raises(BackendError, match="Network error"):
        run(backend.client().get_json("/api/exams"))


def test_login_decodes_identity(backend):
    backend.token = make_token(roles=["ROLE_USER", "ROLE_STAFF"])
    client = BackendClient(base_url="http://backend.test", transport=backend.transport)
    identity = run(client.login("ada@example.com", "secret"))

    assert identity.user_id == 7
    assert identity.first_name == "Ada"
    assert identity.roles == ["ROLE_USER", "ROLE_STAFF"]
    assert client.token == backend.token


def test_login_unverified(backend):
    backend.login_error = {"message": "Your email is not verified."}
    client = BackendClient(base_url="http://backend.test", transport=backend.transport)
    with pytest.raises(VerificationRequired):
        run(client.login("ada@example.com", "secret"))


def test_decode_identity_needs_user_id():
    with pytest.raises(BackendError):
        decode_identity(make_token(id=None))


def test_decode_identity_rejects_garbage():
    with pytest.raises(BackendError):
        decode_identity("not-a-token")
