import json
import sys
from pathlib import Path

import pytest
from flask import Flask, g

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import assessment  # noqa: E402
from ai_client import AIError  # noqa: E402
from assessment import AssessmentError, build_assessment, create_assessment_blueprint  # noqa: E402

MODULE = {"id": "m1", "title": "Aljabar"}


def test_build_assessment_rounds_score():
    entry = build_assessment({"score": 84.6, "recommendation": "Latihan lagi."}, MODULE, "Cukup baik")
    assert entry["score"] == 85
    assert entry["materiId"] == "m1"
    assert entry["materi"] == "Aljabar"
    assert entry["id"] == "m1"
    assert entry["recommendation"] == "Latihan lagi."
    assert entry["summary"] == ""
    assert entry["date"]


def test_build_assessment_keeps_original_date_on_overwrite():
    previous = {"id": "m1", "date": "2024-01-01T00:00:00+00:00"}
    entry = build_assessment({"score": 70, "recommendation": ""}, MODULE, "x", previous)
    assert entry["date"] == "2024-01-01T00:00:00+00:00"


@pytest.mark.parametrize("reply", [{"score": 101}, {"score": -1}, {"score": "abc"}, {}])
def test_build_assessment_rejects_bad_scores(reply):
    with pytest.raises(AssessmentError):
        build_assessment(reply, MODULE, "x")


class FakeDB:
    def __init__(self, scores=None):
        self.student = {"id": "s1", "name": "Ana", "grade": "10", "class": "A", "scores": scores or {}}
        self.executed = []

    def fetch_one(self, sql, params=()):
        if "FROM public.students" in sql:
            return self.student if params[0] == "s1" else None
        if "FROM public.modules" in sql:
            return MODULE if params[0] == "m1" else None
        return None

    def fetch_all(self, sql, params=()):
        if "FROM public.students" in sql:
            return [self.student]
        if "FROM public.modules" in sql:
            return [MODULE]
        return []

    def execute(self, sql, params=()):
        self.executed.append((sql, params))


class FakeAI:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.prompts = []

    def generate_json(self, prompt, schema=None):
        self.prompts.append((prompt, schema))
        if self.error:
            raise self.error
        return self.reply

    def generate_text(self, prompt, system=None, history=None):
        self.prompts.append((prompt, None))
        if self.error:
            raise self.error
        return "Perbanyak latihan soal cerita."


def _client(monkeypatch, db, ai, notes=None):
    app = Flask(__name__)
    app.testing = True
    app.secret_key = "test"
    monkeypatch.setattr(assessment, "render_template", lambda name, **ctx: f"rendered {name}:{len(ctx['rows'])}")

    @app.before_request
    def _set_user():
        g.user_id = "t-1"
        g.user_role = "guru"

    app.add_url_rule("/login", endpoint="auth.login", view_func=lambda: "login")
    app.register_blueprint(create_assessment_blueprint("", {
        "fetch_one": db.fetch_one,
        "fetch_all": db.fetch_all,
        "execute": db.execute,
        "notify": lambda teacher_id, message: (notes if notes is not None else []).append(message),
        "ai": ai,
    }))
    return app.test_client()


def test_save_stores_assessment_under_module_id(monkeypatch):
    db = FakeDB()
    ai = FakeAI(reply={"score": 77.4, "recommendation": "Ulangi bab 2."})
    notes = []
    client = _client(monkeypatch, db, ai, notes)

    resp = client.post("/guru/penilaian/", data={"student_id": "s1", "module_id": "m1", "analysis": "Sering keliru tanda."})
    assert resp.status_code == 302

    prompt, schema = ai.prompts[0]
    assert "Sering keliru tanda." in prompt
    assert schema["required"] == ["score", "recommendation"]

    sql, params = db.executed[0]
    assert "UPDATE public.students SET scores" in sql
    stored = json.loads(params[0])
    assert stored["m1"]["score"] == 77
    assert stored["m1"]["recommendation"] == "Ulangi bab 2."
    assert params[1:] == ("s1", "t-1")
    assert "Aljabar" in notes[0]


def test_save_rejects_out_of_range_score(monkeypatch):
    db = FakeDB()
    client = _client(monkeypatch, db, FakeAI(reply={"score": 140, "recommendation": ""}))
    client.post("/guru/penilaian/", data={"student_id": "s1", "module_id": "m1", "analysis": "x"})
    assert db.executed == []
    with client.session_transaction() as sess:
        assert "0-100" in sess["_flashes"][0][1]


def test_save_reports_ai_failure(monkeypatch):
    db = FakeDB()
    client = _client(monkeypatch, db, FakeAI(error=AIError("boom")))
    client.post("/guru/penilaian/", data={"student_id": "s1", "module_id": "m1", "analysis": "x"})
    assert db.executed == []
    with client.session_transaction() as sess:
        assert "Gagal menyimpan penilaian" in sess["_flashes"][0][1]


def test_save_requires_all_fields(monkeypatch):
    db = FakeDB()
    ai = FakeAI(reply={"score": 50, "recommendation": ""})
    client = _client(monkeypatch, db, ai)
    client.post("/guru/penilaian/", data={"student_id": "s1", "module_id": "m1", "analysis": ""})
    assert ai.prompts == []


def test_delete_removes_entry(monkeypatch):
    db = FakeDB(scores={"m1": {"materiId": "m1", "score": 80}, "m2": {"materiId": "m2", "score": 60}})
    client = _client(monkeypatch, db, FakeAI())
    client.post("/guru/penilaian/s1/m1/hapus")
    stored = json.loads(db.executed[0][1][0])
    assert list(stored) == ["m2"]
    assert client.post("/guru/penilaian/s1/m9/hapus").status_code == 404


def test_index_lists_assessments(monkeypatch):
    db = FakeDB(scores={"m1": {"materiId": "m1", "materi": "Aljabar", "score": 80}})
    resp = _client(monkeypatch, db, FakeAI()).get("/guru/penilaian/")
    assert resp.get_data(as_text=True) == "rendered guru/assessments.html:1"


def test_recommendation_endpoint(monkeypatch):
    client = _client(monkeypatch, FakeDB(), FakeAI())
    body = client.get("/guru/penilaian/s1/rekomendasi").get_json()
    assert body == {"ok": True, "recommendation": "Perbanyak latihan soal cerita."}

    failing = _client(monkeypatch, FakeDB(), FakeAI(error=AIError("down")))
    assert failing.get("/guru/penilaian/s1/rekomendasi").status_code == 502
