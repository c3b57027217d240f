from leancoffee.schemas.envelope import AppResult, PagedResults
from leancoffee.services.errors import FieldError, InvalidArgument, SessionClosed


def test_from_error_carries_code_status_and_field_errors():
    exc = InvalidArgument(
        "Validation failed",
        validation_errors=[FieldError("noteType", "Unknown note type.")],
    )

    result = AppResult.from_error(exc)
    body = result.model_dump(mode="json", by_alias=True)

    assert result.status_code == 400
    assert body["success"] is False
    assert body["errorCode"] == "VALIDATION_ERROR"
    assert body["validationErrors"] == [
        {"propertyName": "noteType", "errorMessage": "Unknown note type."}
    ]


def test_session_closed_maps_to_conflict():
    result = AppResult.from_error(SessionClosed("LCS20250101-AAAA"))

    assert result.status_code == 409
    assert result.error_code == "SESSION_CLOSED"
    assert "LCS20250101-AAAA" in result.message


def test_page_computes_total_pages():
    page = PagedResults[int].page([1, 2], total_count=5, current_page=1, page_size=2)
    body = page.model_dump(mode="json", by_alias=True)

    assert body["totalPages"] == 3
    assert body["totalCount"] == 5
    assert body["pageSize"] == 2
    assert page.status_code == 200


def test_paged_failure_keeps_status():
    failure = AppResult.failure_result("Store unavailable", "STORE_UNAVAILABLE", status_code=503)

    paged = PagedResults.from_result(failure)

    assert paged.success is False
    assert paged.status_code == 503
    assert paged.data is None
    assert paged.error_code == "STORE_UNAVAILABLE"
