# tests/unit/test_problem_mapping.py
import pytest

from wmscore.api.problem import make_problem, problem_from_error, status_for_error
from wmscore.services import errors


@pytest.mark.parametrize(
    "exc_cls, status, code",
    [
        (errors.NotFound, 404, "not_found"),
        (errors.ClaimMismatch, 403, "claim_mismatch"),
        (errors.AlreadyClaimed, 409, "already_claimed"),
        (errors.InsufficientStock, 409, "insufficient_stock"),
        (errors.ReleaseRefused, 409, "release_refused"),
        (errors.ConcurrentModification, 409, "concurrent_modification"),
        (errors.InvalidTransition, 409, "invalid_transition"),
        (errors.OrderOnHold, 409, "order_on_hold"),
        (errors.WmsError, 409, "wms_error"),
    ],
)
def test_domain_error_mapping(exc_cls, status, code):
    exc = exc_cls("boom", context={"order_id": 7})
    assert status_for_error(exc) == status

    body = problem_from_error(exc, trace_id="t_abc")
    assert body["error_code"] == code
    assert body["http_status"] == status
    assert body["context"] == {"order_id": 7}
    assert body["trace_id"] == "t_abc"


def test_subclass_inherits_parent_status():
    class GoneBin(errors.NotFound):
        code = "bin_gone"

    assert status_for_error(GoneBin("x")) == 404


def test_make_problem_drops_empty_fields():
    body = make_problem(status_code=422, error_code="invalid_query", message="bad")
    assert body == {"error_code": "invalid_query", "message": "bad", "http_status": 422}
