import json
import sys
from contextlib import contextmanager
from pathlib import Path

import pytest
from flask import Flask, g
from werkzeug.datastructures import MultiDict

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import exam  # noqa: E402
from exam import (  # noqa: E402
    ExamFormError, create_exam_admin_blueprint, create_exam_blueprint, parse_exam_form,
)
from exam_session import EVICT_GRACE_SEC, RESULT, SessionRegistry  # noqa: E402


class FakeClock:
    def __init__(self):
        self.t = 500.0

    def __call__(self):
        return self.t


class FakeDB:
    def __init__(self, questions=None, fail_questions=False, fail_question_insert=None):
        self.questions = questions if questions is not None else [
            {"id": "q1", "exam_id": "exam-1", "question_text": "1+1?", "options": ["1", "2"], "correct_answer_index": 1},
            {"id": "q2", "exam_id": "exam-1", "question_text": "2+2?", "options": ["4", "5"], "correct_answer_index": 0},
        ]
        self.fail_questions = fail_questions
        self.fail_question_insert = fail_question_insert
        self.question_inserts = 0
        self.attempts = []
        self.executed = []
        self.next_exam_id = "exam-9"

    def fetch_one(self, sql, params=()):
        if "FROM public.exam_attempts a" in sql:
            attempt_id, student_uid = params
            return next((dict(a, title="Aritmetika") for a in self.attempts
                         if a["id"] == attempt_id and a["student_uid"] == student_uid), None)
        if "FROM public.students" in sql:
            return {"id": "stu-1", "uid": params[0], "name": "Ana", "teacher_id": "t-1"}
        if "FROM public.exams" in sql:
            if params[0] == "exam-1":
                return {"id": "exam-1", "teacher_id": "t-1", "title": "Aritmetika", "duration_minutes": 1}
            return None
        return None

    def fetch_all(self, sql, params=()):
        if "FROM public.questions" in sql:
            if self.fail_questions:
                raise RuntimeError("connection reset")
            return self.questions
        if "FROM public.exam_attempts" in sql:
            return [{"id": "a1", "score": 50.0, "completed_at": "2024-01-01", "student_name": "Ana"}]
        return []

    def execute(self, sql, params=()):
        self.executed.append((sql, params))

    @contextmanager
    def transaction(self):
        pending = []

        def run(sql, params=()):
            if "INSERT INTO public.questions" in sql:
                self.question_inserts += 1
                if self.question_inserts == self.fail_question_insert:
                    raise RuntimeError("insert failed")
            pending.append((sql, params))
            if "INSERT INTO public.exams" in sql:
                return [{"id": self.next_exam_id}]
            return []

        yield run
        self.executed.extend(pending)

    def execute_returning(self, sql, params=()):
        if "INSERT INTO public.exam_attempts" in sql:
            exam_id, student_id, student_uid, score, answers, completed_at = params
            row = {"id": f"att-{len(self.attempts) + 1}", "exam_id": exam_id, "student_id": student_id,
                   "student_uid": student_uid, "score": score, "answers": json.loads(answers),
                   "completed_at": completed_at}
            self.attempts.append(row)
            return [row]
        return []


@pytest.fixture
def user():
    return {"id": "uid-1", "role": "siswa"}


def _app(monkeypatch, db, user, clock=None):
    app = Flask(__name__)
    app.testing = True
    app.secret_key = "test"

    rendered = []

    def fake_render(template_name, **context):
        rendered.append((template_name, context))
        return f"rendered {template_name}"

    monkeypatch.setattr(exam, "render_template", fake_render)

    @app.before_request
    def _set_user():
        g.user_id = user["id"]
        g.user_role = user["role"]

    app.add_url_rule("/siswa/", endpoint="siswa.dashboard", view_func=lambda: "dashboard")
    app.add_url_rule("/login", endpoint="auth.login", view_func=lambda: "login")

    registry = SessionRegistry()
    deps = {
        "fetch_one": db.fetch_one,
        "fetch_all": db.fetch_all,
        "execute": db.execute,
        "execute_returning": db.execute_returning,
        "transaction": db.transaction,
        "registry": registry,
        "notify": lambda teacher_id, message: None,
    }
    if clock:
        deps["clock"] = clock
    app.register_blueprint(create_exam_blueprint("", deps))
    app.register_blueprint(create_exam_admin_blueprint("", deps))
    app.rendered = rendered
    return app, registry


def _start(client):
    resp = client.post("/siswa/ujian/exam-1/mulai")
    assert resp.status_code == 302
    assert "/siswa/ujian/sesi/" in resp.headers["Location"]
    return resp.headers["Location"].rstrip("/").rsplit("/", 1)[-1]


def test_full_attempt_flow_persists_once(monkeypatch, user):
    db = FakeDB()
    app, registry = _app(monkeypatch, db, user)
    client = app.test_client()

    assert client.get("/siswa/ujian/exam-1").get_data(as_text=True) == "rendered exam/confirm.html"

    token = _start(client)
    assert len(registry) == 1
    assert client.get(f"/siswa/ujian/sesi/{token}").get_data(as_text=True) == "rendered exam/take.html"

    resp = client.post(f"/siswa/ujian/sesi/{token}/jawab", json={"question_id": "q1", "option": 1})
    assert resp.status_code == 200
    assert resp.get_json()["answered"] == 1

    client.post(f"/siswa/ujian/sesi/{token}/berikutnya")
    client.post(f"/siswa/ujian/sesi/{token}/jawab", data={"question_id": "q2", "option": "1"})

    done = client.post(f"/siswa/ujian/sesi/{token}/selesai")
    assert done.status_code == 302
    assert done.headers["Location"].endswith("/siswa/ujian/hasil/att-1")
    assert len(db.attempts) == 1
    assert db.attempts[0]["score"] == 50.0
    assert db.attempts[0]["answers"] == {"q1": 1, "q2": 1}
    assert db.attempts[0]["student_id"] == "stu-1"
    assert len(registry) == 0

    again = client.post(f"/siswa/ujian/sesi/{token}/selesai")
    assert again.headers["Location"].endswith("/siswa/")
    assert len(db.attempts) == 1
    assert client.get(f"/siswa/ujian/sesi/{token}/tick").status_code == 404
    late = client.post(f"/siswa/ujian/sesi/{token}/jawab", json={"question_id": "q1", "option": 0})
    assert late.status_code == 404

    page = client.get("/siswa/ujian/hasil/att-1")
    assert page.get_data(as_text=True) == "rendered exam/result.html"
    _, ctx = app.rendered[-1]
    assert ctx["score"] == 50.0
    assert ctx["exam"]["title"] == "Aritmetika"
    assert [r["chosen_index"] for r in ctx["review"]] == [1, 1]
    assert [r["is_correct"] for r in ctx["review"]] == [True, False]


def test_result_page_is_owner_only(monkeypatch, user):
    db = FakeDB()
    app, _ = _app(monkeypatch, db, user)
    client = app.test_client()
    token = _start(client)
    client.post(f"/siswa/ujian/sesi/{token}/selesai")

    user["id"] = "uid-2"
    assert client.get("/siswa/ujian/hasil/att-1").status_code == 404
    assert client.get("/siswa/ujian/hasil/missing").status_code == 404


def test_finished_sessions_leave_the_registry(monkeypatch, user):
    db = FakeDB()
    app, registry = _app(monkeypatch, db, user)
    client = app.test_client()
    for _ in range(5):
        token = _start(client)
        done = client.post(f"/siswa/ujian/sesi/{token}/selesai")
        assert client.get(done.headers["Location"]).status_code == 200
        assert len(registry) == 0
    assert len(db.attempts) == 5


def test_abandoned_session_is_evicted_on_next_start(monkeypatch, user):
    db = FakeDB()
    clock = FakeClock()
    app, registry = _app(monkeypatch, db, user, clock=clock)
    client = app.test_client()
    _start(client)
    assert len(registry) == 1

    clock.t += 60 + EVICT_GRACE_SEC + 1
    _start(client)
    assert len(registry) == 1


def test_poll_submits_when_time_runs_out(monkeypatch, user):
    db = FakeDB()
    clock = FakeClock()
    app, registry = _app(monkeypatch, db, user, clock=clock)
    client = app.test_client()
    token = _start(client)

    clock.t += 30
    body = client.get(f"/siswa/ujian/sesi/{token}/tick").get_json()
    assert body["remaining"] == 30
    assert body["clock"] == "0:30"
    assert db.attempts == []

    clock.t += 30
    body = client.get(f"/siswa/ujian/sesi/{token}/tick").get_json()
    assert body["state"] == RESULT
    assert body["remaining"] == 0
    assert body["result_url"].endswith("/siswa/ujian/hasil/att-1")
    assert len(db.attempts) == 1
    assert len(registry) == 0

    client.post(f"/siswa/ujian/sesi/{token}/selesai")
    assert len(db.attempts) == 1


def test_question_load_failure_returns_to_dashboard(monkeypatch, user):
    db = FakeDB(fail_questions=True)
    app, registry = _app(monkeypatch, db, user)
    client = app.test_client()

    resp = client.post("/siswa/ujian/exam-1/mulai")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/siswa/")
    assert len(registry) == 0


def test_sessions_are_not_shared_between_students(monkeypatch, user):
    db = FakeDB()
    app, registry = _app(monkeypatch, db, user)
    client = app.test_client()
    token = _start(client)

    user["id"] = "uid-2"
    assert client.get(f"/siswa/ujian/sesi/{token}/tick").status_code == 404
    resp = client.post(f"/siswa/ujian/sesi/{token}/selesai")
    assert resp.status_code == 302
    assert db.attempts == []


def test_unknown_exam_is_404(monkeypatch, user):
    app, _ = _app(monkeypatch, FakeDB(), user)
    assert app.test_client().post("/siswa/ujian/other/mulai").status_code == 404


def test_teacher_cannot_take_exam(monkeypatch, user):
    user["role"] = "guru"
    app, _ = _app(monkeypatch, FakeDB(), user)
    assert app.test_client().get("/siswa/ujian/exam-1").status_code == 403


def test_teacher_creates_exam_with_questions(monkeypatch, user):
    user.update({"id": "t-1", "role": "guru"})
    db = FakeDB()
    app, _ = _app(monkeypatch, db, user)
    client = app.test_client()

    resp = client.post("/guru/ujian/", data=MultiDict([
        ("title", "Pecahan"),
        ("duration_minutes", "30"),
        ("q-0-text", "1/2 + 1/2?"),
        ("q-0-option", "1"),
        ("q-0-option", "2"),
        ("q-0-correct", "0"),
    ]))
    assert resp.status_code == 302
    inserts = [p for sql, p in db.executed if "INSERT INTO public.questions" in sql]
    assert inserts == [("exam-9", "1/2 + 1/2?", json.dumps(["1", "2"]), 0)]


def test_teacher_edit_replaces_question_set(monkeypatch, user):
    user.update({"id": "t-1", "role": "guru"})
    db = FakeDB()
    app, _ = _app(monkeypatch, db, user)
    client = app.test_client()

    client.post("/guru/ujian/exam-1/edit", data=MultiDict([
        ("title", "Aritmetika"), ("duration_minutes", "15"),
        ("q-0-text", "3x3?"), ("q-0-option", "9"), ("q-0-option", "6"), ("q-0-correct", "0"),
    ]))
    sqls = [sql for sql, _ in db.executed]
    assert any("UPDATE public.exams" in s for s in sqls)
    delete_at = next(i for i, s in enumerate(sqls) if "DELETE FROM public.questions" in s)
    insert_at = next(i for i, s in enumerate(sqls) if "INSERT INTO public.questions" in s)
    assert delete_at < insert_at


def test_teacher_edit_failure_leaves_exam_untouched(monkeypatch, user):
    user.update({"id": "t-1", "role": "guru"})
    db = FakeDB(fail_question_insert=2)
    app, _ = _app(monkeypatch, db, user)
    client = app.test_client()

    resp = client.post("/guru/ujian/exam-1/edit", data=MultiDict([
        ("title", "Aritmetika"), ("duration_minutes", "15"),
        ("q-0-text", "3x3?"), ("q-0-option", "9"), ("q-0-option", "6"), ("q-0-correct", "0"),
        ("q-1-text", "4x4?"), ("q-1-option", "16"), ("q-1-option", "8"), ("q-1-correct", "0"),
    ]))
    assert resp.headers["Location"].endswith("/guru/ujian/exam-1/edit")
    assert db.executed == []
    with client.session_transaction() as sess:
        assert "Gagal menyimpan ujian" in sess["_flashes"][0][1]


def test_teacher_results_page(monkeypatch, user):
    user.update({"id": "t-1", "role": "guru"})
    app, _ = _app(monkeypatch, FakeDB(), user)
    resp = app.test_client().get("/guru/ujian/exam-1/hasil")
    assert resp.get_data(as_text=True) == "rendered exam/admin_results.html"


def test_parse_exam_form_drops_blank_options_and_remaps_correct():
    form = MultiDict([
        ("title", "T"), ("duration_minutes", "10"),
        ("q-1-text", "Q"), ("q-1-option", "a"), ("q-1-option", ""), ("q-1-option", "c"), ("q-1-correct", "2"),
    ])
    data = parse_exam_form(form)
    assert data["questions"] == [{"question_text": "Q", "options": ["a", "c"], "correct_answer_index": 1}]


def test_parse_exam_form_rejects_incomplete_input():
    with pytest.raises(ExamFormError):
        parse_exam_form(MultiDict([("title", "T"), ("duration_minutes", "10")]))
    with pytest.raises(ExamFormError):
        parse_exam_form(MultiDict([
            ("title", "T"), ("duration_minutes", "10"),
            ("q-0-text", "Q"), ("q-0-option", "a"), ("q-0-option", ""), ("q-0-correct", "1"),
        ]))


def test_exam_templates_link_within_their_own_blueprint():
    for path in (PROJECT_ROOT / "templates" / "exam").glob("*.html"):
        text = path.read_text(encoding="utf-8")
        for hard_coded in ("url_for('ujian.", 'url_for("ujian.', "url_for('ujian_guru.", 'url_for("ujian_guru.'):
            assert hard_coded not in text, path.name


def test_student_blueprint_works_under_another_name(monkeypatch, user):
    db = FakeDB()
    app = Flask(__name__)
    app.testing = True
    app.secret_key = "test"
    monkeypatch.setattr(exam, "render_template", lambda name, **ctx: f"rendered {name}")

    @app.before_request
    def _set_user():
        g.user_id = user["id"]
        g.user_role = user["role"]

    app.add_url_rule("/siswa/", endpoint="siswa.dashboard", view_func=lambda: "dashboard")
    registry = SessionRegistry()
    app.register_blueprint(create_exam_blueprint("/lms", {
        "fetch_one": db.fetch_one, "fetch_all": db.fetch_all,
        "execute_returning": db.execute_returning, "registry": registry,
    }, name="cbt"))
    client = app.test_client()

    start = client.post("/lms/siswa/ujian/exam-1/mulai")
    token = start.headers["Location"].rsplit("/", 1)[-1]
    done = client.post(f"/lms/siswa/ujian/sesi/{token}/selesai")
    assert done.headers["Location"].endswith("/lms/siswa/ujian/hasil/att-1")
