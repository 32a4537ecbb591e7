import io, csv
import pandas as pd
HDR = {"x-api-key": "test-key"}

def _distribution_with_answers(client):
    tid = client.post("/admin/templates", json={"title": "Export Survey"}, headers=HDR).json()["id"]
    q1 = client.post(f"/admin/templates/{tid}/questions", json={
        "type": "MULTIPLE_CHOICE", "text": "Clubs", "options": ["Chess", "Drama", "Robotics"],
    }, headers=HDR).json()["id"]
    q2 = client.post(f"/admin/templates/{tid}/questions", json={
        "type": "OPEN_ENDED", "text": "How was this term?", "required": True,
    }, headers=HDR).json()["id"]
    client.post(f"/admin/templates/{tid}/activate", headers=HDR)
    d = client.post("/admin/distributions", json={"template_id": tid}, headers=HDR).json()
    for clubs, text in ((["Chess", "Drama"], "It was a great term"), ([], "Bad, too many exams"), (None, "ok")):
        r = client.post(f"/public/distributions/{d['token']}/responses", json={
            "answers": [{"question_id": q1, "value": clubs}, {"question_id": q2, "value": text}],
        })
        assert r.status_code == 200, r.text
    return d["id"], q1, q2

def test_export_csv_after_submit(client):
    did, q1, q2 = _distribution_with_answers(client)

    r = client.get(f"/admin/distributions/{did}/export.csv", headers=HDR)
    assert r.status_code == 200
    assert "text/csv" in r.headers.get("content-type", "")

    reader = csv.DictReader(io.StringIO(r.content.decode("utf-8")))
    rows = list(reader)
    for col in ["response_id", "student_id", "submission_type", "submitted_at", "order_index",
                "question_id", "question", "type", "value"]:
        assert col in reader.fieldnames
    assert len(rows) == 4
    assert rows[0]["question"] == "Clubs" and rows[0]["value"] == "Chess; Drama"
    assert rows[1]["value"] == "It was a great term"

def test_export_empty_distribution_has_header(client):
    tid = client.post("/admin/templates", json={"title": "Nobody answered"}, headers=HDR).json()["id"]
    client.post(f"/admin/templates/{tid}/questions", json={"type": "OPEN_ENDED", "text": "Q"}, headers=HDR)
    client.post(f"/admin/templates/{tid}/activate", headers=HDR)
    did = client.post("/admin/distributions", json={"template_id": tid}, headers=HDR).json()["id"]

    r = client.get(f"/admin/distributions/{did}/export.csv", headers=HDR)
    assert r.status_code == 200
    assert r.content.decode("utf-8").strip().split(",")[0] == "response_id"

def test_insights_use_heuristic_without_llm(client):
    did, _, q2 = _distribution_with_answers(client)
    out = client.get(f"/admin/distributions/{did}/insights", headers=HDR).json()
    assert len(out) == 1 and out[0]["question_id"] == q2
    assert out[0]["answer_count"] == 3
    analysis = out[0]["analysis"]
    assert analysis["source"] == "heuristic"
    assert (analysis["positive"], analysis["negative"], analysis["neutral"]) == (1, 1, 1)

def test_insights_can_be_mocked(client, monkeypatch):
    did, _, _ = _distribution_with_answers(client)

    def fake_analyze(question_text, answers):
        return {"positive": len(answers), "negative": 0, "neutral": 0, "overall": "positive",
                "summary": "mock summary", "source": "llm"}
    monkeypatch.setattr("main.analyze_open_answers", fake_analyze)

    out = client.get(f"/admin/distributions/{did}/insights", headers=HDR).json()
    assert out[0]["analysis"]["summary"] == "mock summary"

def _clubs_distribution(client):
    tid = client.post("/admin/templates", json={"title": "Paper forms"}, headers=HDR).json()["id"]
    q1 = client.post(f"/admin/templates/{tid}/questions", json={
        "type": "MULTIPLE_CHOICE", "text": "Clubs", "options": ["Chess", "Drama", "Robotics"],
    }, headers=HDR).json()["id"]
    q2 = client.post(f"/admin/templates/{tid}/questions", json={
        "type": "OPEN_ENDED", "text": "How was this term?", "required": True,
    }, headers=HDR).json()["id"]
    client.post(f"/admin/templates/{tid}/activate", headers=HDR)
    did = client.post("/admin/distributions", json={"template_id": tid}, headers=HDR).json()["id"]
    return did, q1, q2

def test_import_csv_reports_rejected_rows(client):
    did, q1, q2 = _clubs_distribution(client)
    sheet = "\n".join([
        "Paper forms collected in class 9/A,,",
        "Öğrenci No,1. Clubs,2. How was this term?",
        "S-1,Chess; Drama,Great term",
        "S-2,Robotics,",
        ",Chess,fine",
        "S-3,Knitting,ok",
        ",,",
    ])
    r = client.post(f"/admin/distributions/{did}/responses/import",
                    files={"file": ("paper.csv", sheet.encode("utf-8"), "text/csv")}, headers=HDR)
    assert r.status_code == 200, r.text
    body = r.json()
    assert (body["total_rows"], body["success_count"], body["error_count"]) == (4, 1, 3)
    errors = {e["row"]: e for e in body["errors"]}
    assert sorted(errors) == [4, 5, 6]
    assert errors[4]["student_id"] == "S-2" and "question 2: required" in errors[4]["error"]
    assert errors[5]["student_id"] is None
    assert "question 1" in errors[6]["error"]

    rows = client.get(f"/admin/distributions/{did}/responses", headers=HDR).json()
    assert len(rows) == 1
    assert rows[0]["student_id"] == "S-1" and rows[0]["submission_type"] == "MANUAL_ENTRY"
    assert rows[0]["answers"] == [
        {"question_id": q1, "value": ["Chess", "Drama"]},
        {"question_id": q2, "value": "Great term"},
    ]

def test_import_xlsx_matches_columns_by_question_text(client):
    did, _, _ = _clubs_distribution(client)
    frame = pd.DataFrame([
        ["Öğrenci No", "How was this term?", "clubs"],
        [1001, "Busy but fun", "Robotics"],
    ])
    buf = io.BytesIO()
    frame.to_excel(buf, header=False, index=False)

    r = client.post(f"/admin/distributions/{did}/responses/import",
                    files={"file": ("paper.xlsx", buf.getvalue(),
                                    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")},
                    headers=HDR)
    assert r.status_code == 200, r.text
    assert r.json()["success_count"] == 1 and r.json()["errors"] == []
    rows = client.get(f"/admin/distributions/{did}/responses", headers=HDR).json()
    assert rows[0]["student_id"] == "1001"

def test_import_rejects_unusable_files(client):
    did, _, _ = _clubs_distribution(client)
    no_header = "1. Clubs,2. How was this term?\nChess,fine"
    r = client.post(f"/admin/distributions/{did}/responses/import",
                    files={"file": ("paper.csv", no_header.encode("utf-8"), "text/csv")}, headers=HDR)
    assert r.status_code == 400 and r.json()["error_code"] == "validation_error"

    r = client.post(f"/admin/distributions/{did}/responses/import",
                    files={"file": ("paper.txt", b"hello", "text/plain")}, headers=HDR)
    assert r.status_code == 400

    client.post(f"/admin/distributions/{did}/close", headers=HDR)
    sheet = "Öğrenci No,1. Clubs,2. How was this term?\nS-1,Chess,fine"
    r = client.post(f"/admin/distributions/{did}/responses/import",
                    files={"file": ("paper.csv", sheet.encode("utf-8"), "text/csv")}, headers=HDR)
    assert r.status_code == 409
