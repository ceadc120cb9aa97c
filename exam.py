# exam.py
# -----------------------------------------------------------------------------
# Computer-based multiple-choice exams ("Ujian CBT").
# - Student blueprint: confirm -> start -> take (poll /tick every second) ->
#   finish -> result. Attempts live in a per-app SessionRegistry keyed by a
#   random token until the attempt row is written; the result page is then
#   rebuilt from exam_attempts. The state machine is exam_session.ExamSession.
# - Teacher blueprint: exam CRUD (editing replaces the question set) + results.
# -----------------------------------------------------------------------------

import json
import re
import secrets
from typing import Any, Callable, Dict, List, Optional

from flask import (
    Blueprint, request, jsonify, render_template, redirect, url_for, flash, g, abort
)

from exam_session import (
    Exam, ExamSession, ExamStateError, QuestionLoadError, SubmissionError, SessionRegistry,
    RESULT, format_clock, load_questions, review_answers,
)

_Q_TEXT_RE = re.compile(r"^q-(\d+)-text$")


class ExamFormError(ValueError):
    pass


def parse_exam_form(form) -> Dict[str, Any]:
    """Title, duration and the question list from the exam editor form.

    Questions arrive as q-<n>-text, q-<n>-option (repeated) and q-<n>-correct.
    Blank options are dropped and the correct index follows its option.
    """
    title = (form.get("title") or "").strip()
    try:
        duration = int(form.get("duration_minutes") or 0)
    except ValueError:
        duration = 0
    numbers = sorted(int(m.group(1)) for m in (_Q_TEXT_RE.match(k) for k in form.keys()) if m)
    questions: List[Dict[str, Any]] = []
    for n in numbers:
        text = (form.get(f"q-{n}-text") or "").strip()
        raw_options = [(o or "").strip() for o in form.getlist(f"q-{n}-option")]
        try:
            raw_correct = int(form.get(f"q-{n}-correct") or 0)
        except ValueError:
            raw_correct = -1
        kept = [(i, o) for i, o in enumerate(raw_options) if o]
        positions = [i for i, _ in kept]
        if not text or len(kept) < 2 or raw_correct not in positions:
            raise ExamFormError(f"Soal nomor {len(questions) + 1} harus memiliki teks, minimal dua "
                                "pilihan, dan kunci jawaban yang valid.")
        questions.append({
            "question_text": text,
            "options": [o for _, o in kept],
            "correct_answer_index": positions.index(raw_correct),
        })
    if not title or duration <= 0 or not questions:
        raise ExamFormError("Judul, durasi, dan minimal satu soal harus diisi.")
    return {"title": title, "duration_minutes": duration, "questions": questions}


# -----------------------------------------------------------------------------
# Student side
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "ujian") -> Blueprint:
    """
    Mounted at <base_path>/siswa/ujian.
    Required deps: fetch_one, fetch_all, execute_returning, registry
    Optional deps: clock (monotonic seconds, for tests)
    """
    bp = Blueprint(name, __name__, url_prefix=f"{base_path}/siswa/ujian")

    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    execute_returning: Callable = deps["execute_returning"]
    registry: SessionRegistry = deps["registry"]
    clock: Optional[Callable[[], float]] = deps.get("clock")

    @bp.before_request
    def _require_student():
        if not getattr(g, "user_id", None):
            return redirect(url_for("auth.login"))
        if getattr(g, "user_role", None) != "siswa":
            abort(403)

    def _dashboard():
        return redirect(url_for("siswa.dashboard"))

    def _student() -> Optional[Dict[str, Any]]:
        return fetch_one("""
            SELECT id, uid, name, teacher_id
              FROM public.students
             WHERE uid = %s;
        """, (g.user_id,))

    def _exam_for(student: Dict[str, Any], exam_id: str) -> Optional[Dict[str, Any]]:
        return fetch_one("""
            SELECT id, teacher_id, title, duration_minutes
              FROM public.exams
             WHERE id = %s AND teacher_id = %s;
        """, (exam_id, student["teacher_id"]))

    def _create_attempt(record: Dict[str, Any]) -> Dict[str, Any]:
        rows = execute_returning("""
            INSERT INTO public.exam_attempts (exam_id, student_id, student_uid, score, answers, completed_at)
            VALUES (%s, %s, %s, %s, %s::jsonb, %s)
            RETURNING id, exam_id, student_id, student_uid, score, answers, completed_at;
        """, (record["exam_id"], record["student_id"], record["student_uid"],
              record["score"], json.dumps(record["answers"]), record["completed_at"]))
        if not rows:
            raise RuntimeError("Gagal mengirimkan jawaban.")
        return rows[0]

    def _wants_json() -> bool:
        return request.is_json or request.accept_mimetypes.best == "application/json"

    def _result_url(s: ExamSession) -> str:
        return url_for(f"{bp.name}.result", attempt_id=(s.attempt or {}).get("id"))

    def _close_finished(token: str, s: ExamSession) -> str:
        # The attempt row is written; the in-memory session is no longer needed
        url = _result_url(s)
        registry.discard(token)
        return url

    def _session_or_redirect(token: str):
        s = registry.get(token, g.user_id)
        if s is None:
            if _wants_json():
                return None, (jsonify({"ok": False, "error": "session not found"}), 404)
            flash("Sesi ujian tidak ditemukan atau sudah berakhir.", "error")
            return None, _dashboard()
        s.sync()
        if s.state == RESULT:
            return None, redirect(_close_finished(token, s))
        return s, None

    def _state_payload(s: ExamSession) -> Dict[str, Any]:
        payload = {
            "ok": True,
            "state": s.state,
            "remaining": s.remaining,
            "clock": format_clock(s.remaining),
            "answered": len(s.answers),
            "error": s.last_error,
        }
        if s.state == RESULT:
            payload["result_url"] = _result_url(s)
        return payload

    # ---- confirm / start -----------------------------------------------------
    @bp.get("/<exam_id>")
    def confirm(exam_id: str):
        student = _student()
        if not student or not student.get("teacher_id"):
            flash("Anda belum terdaftar di kelas mana pun.", "error")
            return _dashboard()
        exam = _exam_for(student, exam_id)
        if not exam:
            abort(404)
        return render_template("exam/confirm.html", exam=exam)

    @bp.post("/<exam_id>/mulai")
    def start(exam_id: str):
        student = _student()
        if not student or not student.get("teacher_id"):
            flash("Anda belum terdaftar di kelas mana pun.", "error")
            return _dashboard()
        row = _exam_for(student, exam_id)
        if not row:
            abort(404)
        try:
            questions = load_questions(fetch_all, row["id"])
        except QuestionLoadError as e:
            flash(str(e), "error")
            return _dashboard()

        kwargs = {"clock": clock} if clock else {}
        s = ExamSession(Exam.from_row(row), questions, str(student["id"]), g.user_id,
                        _create_attempt, **kwargs)
        s.start()
        token = secrets.token_urlsafe(16)
        registry.put(token, s)
        print(f"[exam] started exam={row['id']} student={g.user_id} questions={len(questions)}")
        return redirect(url_for(f"{bp.name}.take", token=token))

    # ---- taking --------------------------------------------------------------
    @bp.get("/sesi/<token>")
    def take(token: str):
        s, resp = _session_or_redirect(token)
        if s is None:
            return resp
        if s.last_error:
            flash(s.last_error, "error")
            s.last_error = None
        return render_template(
            "exam/take.html",
            token=token,
            exam_session=s,
            question=s.current_question,
            chosen=(s.answers.get(s.current_question.id) if s.current_question else None),
            clock=format_clock(s.remaining),
        )

    @bp.post("/sesi/<token>/jawab")
    def answer(token: str):
        s, resp = _session_or_redirect(token)
        if s is None:
            return resp
        data = request.get_json(silent=True) or request.form
        try:
            s.select_answer(str(data.get("question_id") or ""), int(data.get("option")))
        except (TypeError, ValueError):
            if _wants_json():
                return jsonify({"ok": False, "error": "invalid answer"}), 400
            abort(400)
        except ExamStateError as e:
            if _wants_json():
                return jsonify({"ok": False, "error": str(e)}), 409
            flash(str(e), "error")
        if _wants_json():
            return jsonify(_state_payload(s))
        return redirect(url_for(f"{bp.name}.take", token=token))

    @bp.post("/sesi/<token>/berikutnya")
    def next_question(token: str):
        s, resp = _session_or_redirect(token)
        if s is None:
            return resp
        s.next_question()
        return redirect(url_for(f"{bp.name}.take", token=token))

    @bp.post("/sesi/<token>/sebelumnya")
    def previous_question(token: str):
        s, resp = _session_or_redirect(token)
        if s is None:
            return resp
        s.previous_question()
        return redirect(url_for(f"{bp.name}.take", token=token))

    @bp.get("/sesi/<token>/tick")
    def tick(token: str):
        s = registry.get(token, g.user_id)
        if s is None:
            return jsonify({"ok": False, "error": "session not found"}), 404
        s.sync()
        payload = _state_payload(s)
        if s.state == RESULT:
            _close_finished(token, s)
        return jsonify(payload)

    @bp.post("/sesi/<token>/selesai")
    def finish(token: str):
        s, resp = _session_or_redirect(token)
        if s is None:
            return resp
        try:
            s.submit()
        except SubmissionError as e:
            flash(str(e), "error")
            return redirect(url_for(f"{bp.name}.take", token=token))
        if s.state != RESULT:
            flash("Jawaban sedang dikirim, mohon tunggu.", "info")
            return redirect(url_for(f"{bp.name}.take", token=token))
        return redirect(_close_finished(token, s))

    @bp.post("/sesi/<token>/keluar")
    def leave(token: str):
        if registry.get(token, g.user_id) is not None:
            registry.discard(token)
        return _dashboard()

    # ---- result (read back from exam_attempts) -------------------------------
    @bp.get("/hasil/<attempt_id>")
    def result(attempt_id: str):
        row = fetch_one("""
            SELECT a.id, a.exam_id, a.score, a.answers, a.completed_at, e.title
              FROM public.exam_attempts a
              JOIN public.exams e ON e.id = a.exam_id
             WHERE a.id = %s AND a.student_uid = %s;
        """, (attempt_id, g.user_id))
        if not row:
            abort(404)
        answers = row.get("answers") or {}
        if isinstance(answers, str):
            try:
                answers = json.loads(answers)
            except ValueError:
                answers = {}
        try:
            questions = load_questions(fetch_all, row["exam_id"])
        except QuestionLoadError as e:
            flash(str(e), "error")
            questions = []
        return render_template(
            "exam/result.html",
            exam={"id": row["exam_id"], "title": row.get("title") or ""},
            score=float(row.get("score") or 0),
            completed_at=row.get("completed_at"),
            review=review_answers(questions, answers),
        )

    return bp


# -----------------------------------------------------------------------------
# Teacher side
# -----------------------------------------------------------------------------
def create_exam_admin_blueprint(base_path: str, deps: Dict[str, Any], name: str = "ujian_guru") -> Blueprint:
    """
    Mounted at <base_path>/guru/ujian.
    Required deps: fetch_one, fetch_all, execute, transaction, notify
    """
    bp = Blueprint(name, __name__, url_prefix=f"{base_path}/guru/ujian")

    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    execute: Callable = deps["execute"]
    transaction: Callable = deps["transaction"]
    notify: Callable = deps["notify"]

    @bp.before_request
    def _require_teacher():
        if not getattr(g, "user_id", None):
            return redirect(url_for("auth.login"))
        if getattr(g, "user_role", None) != "guru":
            abort(403)

    def _exam_or_404(exam_id: str) -> Dict[str, Any]:
        row = fetch_one("""
            SELECT id, teacher_id, title, duration_minutes, created_at
              FROM public.exams
             WHERE id = %s AND teacher_id = %s;
        """, (exam_id, g.user_id))
        if not row:
            abort(404)
        return row

    def _questions(exam_id: str) -> List[Dict[str, Any]]:
        return fetch_all("""
            SELECT id, question_text, options, correct_answer_index
              FROM public.questions
             WHERE exam_id = %s;
        """, (exam_id,)) or []

    @bp.get("/")
    def index():
        exams = fetch_all("""
            SELECT e.id, e.title, e.duration_minutes, e.created_at,
                   (SELECT COUNT(*) FROM public.questions q WHERE q.exam_id = e.id) AS question_count,
                   (SELECT COUNT(*) FROM public.exam_attempts a WHERE a.exam_id = e.id) AS attempt_count
              FROM public.exams e
             WHERE e.teacher_id = %s
             ORDER BY e.created_at DESC;
        """, (g.user_id,)) or []
        return render_template("exam/admin_list.html", exams=exams)

    @bp.get("/baru")
    def new():
        blank = {"question_text": "", "options": ["", "", "", ""], "correct_answer_index": 0}
        return render_template("exam/admin_form.html", exam={"title": "", "duration_minutes": 60},
                               questions=[blank])

    @bp.get("/<exam_id>/edit")
    def edit(exam_id: str):
        exam = _exam_or_404(exam_id)
        return render_template("exam/admin_form.html", exam=exam, questions=_questions(exam_id))

    def _save(exam_id: Optional[str]):
        back = url_for(f"{bp.name}.edit", exam_id=exam_id) if exam_id else url_for(f"{bp.name}.new")
        if exam_id:
            _exam_or_404(exam_id)
        try:
            data = parse_exam_form(request.form)
        except ExamFormError as e:
            flash(str(e), "error")
            return redirect(back)
        try:
            # Exam row and its full question set commit together or not at all
            with transaction() as run:
                if exam_id:
                    run("UPDATE public.exams SET title = %s, duration_minutes = %s WHERE id = %s AND teacher_id = %s;",
                        (data["title"], data["duration_minutes"], exam_id, g.user_id))
                    run("DELETE FROM public.questions WHERE exam_id = %s;", (exam_id,))
                else:
                    rows = run("""
                        INSERT INTO public.exams (teacher_id, title, duration_minutes)
                        VALUES (%s, %s, %s)
                        RETURNING id;
                    """, (g.user_id, data["title"], data["duration_minutes"]))
                    if not rows:
                        raise RuntimeError("Ujian tidak dapat dibuat.")
                    exam_id = str(rows[0]["id"])
                for q in data["questions"]:
                    run("""
                        INSERT INTO public.questions (exam_id, question_text, options, correct_answer_index)
                        VALUES (%s, %s, %s::jsonb, %s);
                    """, (exam_id, q["question_text"], json.dumps(q["options"]), q["correct_answer_index"]))
        except Exception as e:
            print(f"[exam] save failed for teacher {g.user_id}: {e}")
            flash(f"Gagal menyimpan ujian: {e}", "error")
            return redirect(back)
        notify(g.user_id, f'Ujian "{data["title"]}" berhasil disimpan.')
        flash("Ujian berhasil disimpan.", "success")
        return redirect(url_for(f"{bp.name}.index"))

    @bp.post("/")
    def create():
        return _save(None)

    @bp.post("/<exam_id>/edit")
    def update(exam_id: str):
        return _save(exam_id)

    @bp.post("/<exam_id>/hapus")
    def delete(exam_id: str):
        exam = _exam_or_404(exam_id)
        try:
            execute("DELETE FROM public.exams WHERE id = %s AND teacher_id = %s;", (exam_id, g.user_id))
        except Exception as e:
            print(f"[exam] delete failed for exam {exam_id}: {e}")
            flash(f"Gagal menghapus ujian: {e}", "error")
            return redirect(url_for(f"{bp.name}.index"))
        notify(g.user_id, f'Ujian "{exam.get("title")}" telah dihapus.')
        flash("Ujian telah berhasil dihapus.", "success")
        return redirect(url_for(f"{bp.name}.index"))

    @bp.get("/<exam_id>/hasil")
    def results(exam_id: str):
        exam = _exam_or_404(exam_id)
        attempts = fetch_all("""
            SELECT a.id, a.score, a.completed_at, s.name AS student_name
              FROM public.exam_attempts a
              LEFT JOIN public.students s ON s.id = a.student_id
             WHERE a.exam_id = %s
             ORDER BY a.completed_at DESC;
        """, (exam_id,)) or []
        return render_template("exam/admin_results.html", exam=exam, attempts=attempts)

    return bp
