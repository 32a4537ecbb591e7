HDR = {"x-api-key": "test-key"}

def _template_with_questions(client, title="Admin Test"):
    tid = client.post("/admin/templates", json={"title": title, "description": "desc"}, headers=HDR).json()["id"]
    q1 = client.post(f"/admin/templates/{tid}/questions", json={
        "type": "SINGLE_CHOICE", "text": "How is school?", "required": True, "options": ["Good", "Bad"],
    }, headers=HDR)
    assert q1.status_code == 200, q1.text
    q2 = client.post(f"/admin/templates/{tid}/questions", json={
        "type": "OPEN_ENDED", "text": "Tell us more",
    }, headers=HDR)
    return tid, q1.json()["id"], q2.json()["id"]

def test_create_template_and_questions(client):
    tid, q1, q2 = _template_with_questions(client)

    d = client.get(f"/admin/templates/{tid}", headers=HDR).json()
    assert d["title"] == "Admin Test" and d["status"] == "draft"
    assert [q["id"] for q in d["questions"]] == [q1, q2]
    assert d["questions"][0]["options"] == ["Good", "Bad"]
    assert d["questions"][1]["options"] is None

    # reorder through the template update
    r = client.patch(f"/admin/templates/{tid}", json={"question_order": [q2, q1]}, headers=HDR)
    assert r.status_code == 200
    assert [q["id"] for q in r.json()["questions"]] == [q2, q1]

    drafts = client.get("/admin/templates", params={"status": "draft"}, headers=HDR).json()
    assert tid in [t["id"] for t in drafts]

def test_empty_question_endpoint(client):
    mc = client.get("/admin/question-types/MULTIPLE_CHOICE/empty", headers=HDR).json()
    assert mc["options"] == [""] and mc["required"] is False
    scale = client.get("/admin/question-types/LIKERT/empty", headers=HDR).json()
    assert scale["options"] is None
    r = client.get("/admin/question-types/ESSAY/empty", headers=HDR)
    assert r.status_code == 400 and r.json()["error_code"] == "validation_error"

def test_active_template_locks_questions(client):
    tid, q1, q2 = _template_with_questions(client, "Locked")
    assert client.post(f"/admin/templates/{tid}/activate", headers=HDR).json()["status"] == "active"

    r = client.post(f"/admin/templates/{tid}/questions", json={"type": "OPEN_ENDED", "text": "late"}, headers=HDR)
    assert r.status_code == 409 and r.json()["error_code"] == "invalid_state"
    r = client.put(f"/admin/templates/{tid}/questions/order", json={"question_ids": [q2, q1]}, headers=HDR)
    assert r.status_code == 409
    r = client.patch(f"/admin/templates/{tid}", json={"title": "Locked (renamed)"}, headers=HDR)
    assert r.status_code == 200 and r.json()["title"] == "Locked (renamed)"

def test_generate_link_and_close(client):
    tid, _, _ = _template_with_questions(client, "Link One")
    r = client.post("/admin/distributions", json={"template_id": tid}, headers=HDR)
    assert r.status_code == 409  # draft templates cannot be distributed

    client.post(f"/admin/templates/{tid}/activate", headers=HDR)
    r = client.post("/admin/distributions", json={"template_id": tid, "target_classes": ["9/A"]}, headers=HDR)
    assert r.status_code == 200, r.text
    body = r.json()
    assert isinstance(body["token"], str) and body["url"] == f"/take/{body['token']}"
    assert body["status"] == "open"

    did = body["id"]
    assert client.post(f"/admin/distributions/{did}/close", headers=HDR).json()["status"] == "closed"
    assert client.post(f"/admin/distributions/{did}/close", headers=HDR).json()["status"] == "closed"
    detail = client.get(f"/admin/distributions/{did}", headers=HDR).json()
    assert detail["response_count"] == 0 and detail["accepting_responses"] is False

def test_delete_template_conflict_then_cascade(client):
    tid, q1, _ = _template_with_questions(client, "Delete me")
    client.post(f"/admin/templates/{tid}/activate", headers=HDR)
    did = client.post("/admin/distributions", json={"template_id": tid}, headers=HDR).json()["id"]

    r = client.delete(f"/admin/templates/{tid}", headers=HDR)
    assert r.status_code == 409 and r.json()["error_code"] == "conflict"
    assert r.json()["details"][0]["message"] == str(did)

    client.post(f"/admin/distributions/{did}/close", headers=HDR)
    assert client.delete(f"/admin/templates/{tid}", headers=HDR).status_code == 200
    assert client.get(f"/admin/templates/{tid}", headers=HDR).status_code == 404
    assert client.get(f"/admin/templates/{tid}/questions", headers=HDR).status_code == 404
    assert client.delete(f"/admin/questions/{q1}", headers=HDR).status_code == 404
    assert client.get(f"/admin/distributions/{did}", headers=HDR).status_code == 404
