from conftest import ATTENDEE_ID, FACILITATOR_ID, OTHER_ATTENDEE_ID


def _create(client, auth_headers, title="Team Lean Coffee"):
    response = client.post(
        "/api/sessions",
        json={"title": title, "description": "Monthly retro"},
        headers=auth_headers(FACILITATOR_ID, "Facilitator"),
    )
    assert response.status_code == 201
    return response.json()["data"]["sessionId"]


def test_requests_without_token_are_unauthorized(client):
    response = client.get("/api/sessions")

    assert response.status_code == 401
    assert "detail" in response.json()


def test_create_session_returns_draft(client, auth_headers):
    response = client.post(
        "/api/sessions",
        json={"title": "  Platform sync  ", "description": "   "},
        headers=auth_headers(FACILITATOR_ID),
    )

    body = response.json()
    assert response.status_code == 201
    assert body["success"] is True
    assert body["message"] == "Session created"
    assert body["data"]["title"] == "Platform sync"
    assert body["data"]["description"] is None
    assert body["data"]["status"] == "draft"
    assert body["data"]["facilitatorId"] == FACILITATOR_ID
    assert body["data"]["sessionId"].startswith("LCS")


def test_empty_title_is_a_validation_error(client, auth_headers):
    response = client.post(
        "/api/sessions", json={"title": ""}, headers=auth_headers(FACILITATOR_ID)
    )

    body = response.json()
    assert response.status_code == 400
    assert body["errorCode"] == "VALIDATION_ERROR"
    assert body["validationErrors"][0]["propertyName"] == "title"


def test_full_lifecycle_over_http(client, auth_headers):
    session_id = _create(client, auth_headers)
    attendee = auth_headers(ATTENDEE_ID, "Ada")
    facilitator = auth_headers(FACILITATOR_ID, "Facilitator")

    joined = client.post(f"/api/sessions/{session_id}/join", headers=attendee)
    assert joined.status_code == 200
    assert joined.json()["data"]["role"] == "attendee"
    assert joined.json()["data"]["isActive"] is True

    started = client.post(f"/api/sessions/{session_id}/start", headers=facilitator)
    assert started.json()["data"]["status"] == "in_progress"
    again = client.post(f"/api/sessions/{session_id}/start", headers=facilitator)
    assert again.status_code == 200
    assert again.json()["message"] == "No change"

    note = client.post(
        f"/api/sessions/{session_id}/notes",
        json={"content": "Retro actions are slipping", "noteType": "key_point"},
        headers=attendee,
    )
    assert note.status_code == 201
    assert note.json()["data"]["sequence"] == 1
    assert note.json()["data"]["noteType"] == "key_point"

    detail = client.get(f"/api/sessions/{session_id}", headers=attendee).json()["data"]
    assert detail["lastSequence"] == 1
    assert detail["activeParticipantIds"] == [ATTENDEE_ID]
    assert detail["noteCount"] == 1

    completed = client.post(f"/api/sessions/{session_id}/complete", headers=facilitator)
    assert completed.json()["data"]["status"] == "completed"
    closed = client.post(f"/api/sessions/{session_id}/close", headers=facilitator)
    assert closed.json()["data"]["status"] == "closed"

    late = client.post(
        f"/api/sessions/{session_id}/notes",
        json={"content": "Too late"},
        headers=attendee,
    )
    assert late.status_code == 409
    assert late.json()["errorCode"] == "SESSION_CLOSED"

    notes = client.get(f"/api/sessions/{session_id}/notes", headers=attendee).json()
    assert [item["content"] for item in notes["data"]] == ["Retro actions are slipping"]
    assert notes["totalCount"] == 1


def test_attendee_cannot_start_session(client, auth_headers):
    session_id = _create(client, auth_headers)
    attendee = auth_headers(ATTENDEE_ID)
    client.post(f"/api/sessions/{session_id}/join", headers=attendee)

    response = client.post(f"/api/sessions/{session_id}/start", headers=attendee)

    assert response.status_code == 403
    assert response.json()["errorCode"] == "FORBIDDEN"
    detail = client.get(f"/api/sessions/{session_id}", headers=attendee).json()
    assert detail["data"]["status"] == "draft"


def test_transition_out_of_order_is_conflict(client, auth_headers):
    session_id = _create(client, auth_headers)

    response = client.post(
        f"/api/sessions/{session_id}/complete", headers=auth_headers(FACILITATOR_ID)
    )

    assert response.status_code == 409
    assert response.json()["errorCode"] == "INVALID_TRANSITION"


def test_unknown_session_is_not_found(client, auth_headers):
    response = client.get("/api/sessions/LCS20990101-0000", headers=auth_headers(ATTENDEE_ID))

    assert response.status_code == 404
    assert response.json()["errorCode"] == "SESSION_NOT_FOUND"


def test_non_member_cannot_read_notes(client, auth_headers):
    session_id = _create(client, auth_headers)

    response = client.get(
        f"/api/sessions/{session_id}/notes", headers=auth_headers(OTHER_ATTENDEE_ID)
    )
    summary = client.get(
        f"/api/sessions/{session_id}", headers=auth_headers(OTHER_ATTENDEE_ID)
    ).json()["data"]

    assert response.status_code == 403
    assert response.json()["success"] is False
    assert summary["participants"] == []
    assert summary["lastSequence"] == 0


def test_invalid_note_reports_fields(client, auth_headers):
    session_id = _create(client, auth_headers)
    attendee = auth_headers(ATTENDEE_ID)
    client.post(f"/api/sessions/{session_id}/join", headers=attendee)

    response = client.post(
        f"/api/sessions/{session_id}/notes",
        json={"content": "  ", "noteType": "brainstorm"},
        headers=attendee,
    )

    body = response.json()
    assert response.status_code == 400
    assert [item["propertyName"] for item in body["validationErrors"]] == [
        "content",
        "noteType",
    ]


def test_list_sessions_is_paged_and_filtered(client, auth_headers):
    facilitator = auth_headers(FACILITATOR_ID)
    first = _create(client, auth_headers, "First")
    _create(client, auth_headers, "Second")
    _create(client, auth_headers, "Third")
    client.post(f"/api/sessions/{first}/start", headers=facilitator)

    page = client.get("/api/sessions?page=1&page_size=2", headers=facilitator).json()
    assert page["totalCount"] == 3
    assert page["totalPages"] == 2
    assert len(page["data"]) == 2

    running = client.get("/api/sessions?status=in_progress", headers=facilitator).json()
    assert [item["sessionId"] for item in running["data"]] == [first]

    mine = client.get("/api/sessions?mine=true", headers=auth_headers(ATTENDEE_ID)).json()
    assert mine["totalCount"] == 0


def test_participants_and_leave(client, auth_headers):
    session_id = _create(client, auth_headers)
    attendee = auth_headers(ATTENDEE_ID)
    client.post(f"/api/sessions/{session_id}/join", headers=attendee)

    roster = client.get(f"/api/sessions/{session_id}/participants", headers=attendee).json()
    assert {item["userId"] for item in roster["data"]} == {FACILITATOR_ID, ATTENDEE_ID}

    active = client.get(
        f"/api/sessions/{session_id}/participants/active", headers=attendee
    ).json()
    assert active["data"] == [ATTENDEE_ID]

    left = client.post(f"/api/sessions/{session_id}/leave", headers=attendee)
    assert left.json()["data"]["isActive"] is False
    active = client.get(
        f"/api/sessions/{session_id}/participants/active", headers=attendee
    ).json()
    assert active["data"] == []


def test_topics_over_http(client, auth_headers):
    session_id = _create(client, auth_headers)
    facilitator = auth_headers(FACILITATOR_ID)
    attendee = auth_headers(ATTENDEE_ID)
    client.post(f"/api/sessions/{session_id}/join", headers=facilitator)
    client.post(f"/api/sessions/{session_id}/join", headers=attendee)

    created = client.post(
        f"/api/sessions/{session_id}/topics",
        json={"title": "Flaky CI", "description": "Again"},
        headers=attendee,
    )
    assert created.status_code == 201
    topic_id = created.json()["data"]["topicId"]

    voted = client.post(f"/api/sessions/{session_id}/topics/{topic_id}/vote", headers=attendee)
    assert voted.json()["data"]["voteCount"] == 1
    repeat = client.post(f"/api/sessions/{session_id}/topics/{topic_id}/vote", headers=attendee)
    assert repeat.json()["message"] == "No change"

    client.post(f"/api/sessions/{session_id}/start", headers=facilitator)
    moved = client.put(
        f"/api/sessions/{session_id}/topics/{topic_id}/status",
        json={"status": "discussing"},
        headers=facilitator,
    )
    assert moved.json()["data"]["status"] == "discussing"

    detail = client.get(f"/api/sessions/{session_id}", headers=attendee).json()["data"]
    assert detail["currentTopic"]["topicId"] == topic_id

    unvoted = client.delete(
        f"/api/sessions/{session_id}/topics/{topic_id}/vote", headers=attendee
    )
    assert unvoted.json()["data"]["voteCount"] == 0

    denied = client.put(
        f"/api/sessions/{session_id}/topics/{topic_id}/status",
        json={"status": "discussed"},
        headers=attendee,
    )
    assert denied.status_code == 403

    listed = client.get(f"/api/sessions/{session_id}/topics", headers=attendee).json()
    assert [item["title"] for item in listed["data"]] == ["Flaky CI"]


def test_export_after_completion(client, auth_headers):
    session_id = _create(client, auth_headers)
    facilitator = auth_headers(FACILITATOR_ID)
    attendee = auth_headers(ATTENDEE_ID)
    client.post(f"/api/sessions/{session_id}/join", headers=attendee)
    client.post(f"/api/sessions/{session_id}/start", headers=facilitator)

    early = client.get(f"/api/sessions/{session_id}/export", headers=facilitator)
    assert early.status_code == 409

    client.post(
        f"/api/sessions/{session_id}/notes",
        json={"content": "Decided to pair on reviews", "noteType": "Decision"},
        headers=attendee,
    )
    client.post(f"/api/sessions/{session_id}/complete", headers=facilitator)

    export = client.get(f"/api/sessions/{session_id}/export", headers=facilitator).json()
    data = export["data"]
    assert data["finalStatus"] == "completed"
    assert [note["noteType"] for note in data["notes"]] == ["decision"]
    assert {item["userId"] for item in data["participants"]} == {
        FACILITATOR_ID,
        ATTENDEE_ID,
    }


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"
