# student.py
# -----------------------------------------------------------------------------
# Student ("siswa") workspace: dashboard (summary, exams, assignments),
# assignment submission, AI math tutor, account settings.
# -----------------------------------------------------------------------------

import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from flask import (
    Blueprint, request, redirect, url_for, render_template, flash, g, session, abort
)

from backend import safe_filename
from classroom import class_label, scores_of

TUTOR_SYSTEM = (
    "Anda adalah tutor AI matematika yang ramah untuk siswa. Tujuan utama Anda adalah membimbing siswa "
    "untuk memahami konsep, bukan memberikan jawaban langsung. Jelaskan langkah-langkah dan konsep "
    "menggunakan teks sederhana tanpa simbol matematika kompleks. Contoh, tulis 'x kuadrat' bukan 'x^2', "
    "dan 'akar kuadrat dari 9' bukan 'akar(9)'. Selalu ajukan pertanyaan balik untuk memeriksa pemahaman siswa."
)
TUTOR_GREETING = "Halo! Saya tutor AI matematika Anda. Ada yang bisa saya bantu pelajari hari ini?"

AVATAR_TYPES = ("image/png", "image/jpeg")

NOT_SUBMITTED = "Belum Mengumpulkan"
SUBMITTED = "Terkumpul"
LATE = "Terlambat"
GRADED = "Dinilai"


def academic_summary(scores: Dict[str, Any]) -> Dict[str, str]:
    values = [float(a.get("score") or 0) for a in scores.values() if isinstance(a, dict)]
    if not values:
        return {"average": "N/A", "highest": "N/A"}
    return {"average": f"{sum(values) / len(values):.1f}", "highest": f"{max(values):g}"}


def _aware(dt: Any) -> Optional[datetime]:
    if dt is None:
        return None
    if isinstance(dt, str):
        try:
            dt = datetime.fromisoformat(dt.replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def submission_status(due_date: Any, now: Optional[datetime] = None) -> str:
    """Late only when a due date exists and has passed."""
    due = _aware(due_date)
    now = now or datetime.now(timezone.utc)
    if due is not None and now > due:
        return LATE
    return SUBMITTED


def assignment_status(submission: Optional[Dict[str, Any]]) -> str:
    if not submission:
        return NOT_SUBMITTED
    if submission.get("grade") is not None:
        return GRADED
    return submission.get("status") or SUBMITTED


def visible_assignments(assignments: List[Dict[str, Any]], student: Dict[str, Any]) -> List[Dict[str, Any]]:
    label = class_label(student)
    rows = [a for a in assignments if (a.get("assigned_to_class") or "all") in ("all", label)]
    far = datetime.max.replace(tzinfo=timezone.utc)
    return sorted(rows, key=lambda a: _aware(a.get("due_date")) or far)


def create_student_blueprint(base_path: str, deps: Dict[str, Any], name: str = "siswa") -> Blueprint:
    """
    Mounted at <base_path>/siswa.
    Required deps: fetch_one, fetch_all, execute, upload, public_url,
                   update_user_metadata, ai
    Optional deps: notify, chat_history_limit, avatar_max_mb
    """
    bp = Blueprint(name, __name__, url_prefix=f"{base_path}/siswa")

    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    execute: Callable = deps["execute"]
    upload: Callable = deps["upload"]
    public_url: Callable = deps["public_url"]
    update_user_metadata: Callable = deps["update_user_metadata"]
    ai = deps["ai"]
    notify: Optional[Callable] = deps.get("notify")
    chat_limit = int(deps.get("chat_history_limit") or 20)
    avatar_max_mb = float(deps.get("avatar_max_mb") or os.getenv("AVATAR_MAX_MB") or 5)

    @bp.before_request
    def _require_student():
        if not getattr(g, "user_id", None):
            return redirect(url_for("auth.login"))
        if getattr(g, "user_role", None) != "siswa":
            abort(403)

    def _student() -> Optional[Dict[str, Any]]:
        return fetch_one("""
            SELECT id, uid, name, grade, class, scores, teacher_id
              FROM public.students
             WHERE uid = %s;
        """, (g.user_id,))

    # ---- dashboard -----------------------------------------------------------
    @bp.get("/")
    def dashboard():
        student = _student()
        if not student or not student.get("teacher_id"):
            return render_template("siswa/dashboard.html", student=None)

        exams = fetch_all("""
            SELECT e.id, e.title, e.duration_minutes,
                   a.id AS attempt_id, a.score AS attempt_score, a.completed_at AS attempt_at
              FROM public.exams e
              LEFT JOIN LATERAL (
                    SELECT id, score, completed_at
                      FROM public.exam_attempts
                     WHERE exam_id = e.id AND student_id = %s
                     ORDER BY completed_at DESC
                     LIMIT 1
              ) a ON TRUE
             WHERE e.teacher_id = %s
             ORDER BY e.created_at DESC;
        """, (student["id"], student["teacher_id"])) or []

        assignments = fetch_all("""
            SELECT id, title, description, due_date, assigned_to_class, file_url, file_name
              FROM public.assignments
             WHERE teacher_id = %s;
        """, (student["teacher_id"],)) or []
        submissions = fetch_all("""
            SELECT id, assignment_id, status, grade, feedback, file_url, submitted_at
              FROM public.submissions
             WHERE student_id = %s;
        """, (student["id"],)) or []
        by_assignment = {str(s["assignment_id"]): s for s in submissions}
        rows = []
        for a in visible_assignments(assignments, student):
            sub = by_assignment.get(str(a["id"]))
            rows.append({"assignment": a, "submission": sub, "status": assignment_status(sub)})

        return render_template(
            "siswa/dashboard.html",
            student=student,
            summary=academic_summary(scores_of(student)),
            assessments=list(scores_of(student).values()),
            exams=exams,
            assignments=rows,
        )

    # ---- assignment submission ----------------------------------------------
    @bp.post("/tugas/<assignment_id>/kumpulkan")
    def submit_assignment(assignment_id: str):
        student = _student()
        if not student or not student.get("teacher_id"):
            abort(403)
        assignment = fetch_one("""
            SELECT id, title, due_date, assigned_to_class
              FROM public.assignments
             WHERE id = %s AND teacher_id = %s;
        """, (assignment_id, student["teacher_id"]))
        if not assignment or not visible_assignments([assignment], student):
            abort(404)
        f = request.files.get("file")
        if not f or not f.filename:
            flash("Silakan pilih file untuk dikumpulkan.", "error")
            return redirect(url_for(f"{bp.name}.dashboard"))
        try:
            path = upload(f"submissions/{g.user_id}/{assignment_id}/{safe_filename(f.filename)}",
                          f.read(), f.mimetype or "application/octet-stream")
            execute("""
                INSERT INTO public.submissions (assignment_id, student_id, file_url, status)
                VALUES (%s, %s, %s, %s);
            """, (assignment_id, student["id"], public_url(path), submission_status(assignment.get("due_date"))))
        except Exception as e:
            print(f"[siswa] submission failed for {g.user_id} / {assignment_id}: {e}")
            flash(f"Gagal mengumpulkan tugas: {e}", "error")
            return redirect(url_for(f"{bp.name}.dashboard"))
        if notify:
            notify(student["teacher_id"], f"{student.get('name')} mengumpulkan tugas '{assignment.get('title')}'.")
        flash("Tugas berhasil dikumpulkan!", "success")
        return redirect(url_for(f"{bp.name}.dashboard"))

    # ---- AI tutor ------------------------------------------------------------
    @bp.route("/tutor", methods=["GET", "POST"])
    def tutor():
        history = session.get("siswa_chat") or []
        if request.method == "POST":
            text = (request.form.get("message") or "").strip()
            if text:
                session["siswa_chat"] = ai.chat_turn(history, text, system=TUTOR_SYSTEM, limit=chat_limit)
            return redirect(url_for(f"{bp.name}.tutor"))
        return render_template("siswa/tutor.html", messages=history, greeting=TUTOR_GREETING)

    @bp.post("/tutor/reset")
    def tutor_reset():
        session.pop("siswa_chat", None)
        return redirect(url_for(f"{bp.name}.tutor"))

    # ---- settings ------------------------------------------------------------
    @bp.route("/pengaturan", methods=["GET", "POST"])
    def settings():
        user = session.get("user") or {}
        if request.method == "GET":
            return render_template("siswa/settings.html", user=user,
                                   avatar_max_mb=avatar_max_mb)

        username = (request.form.get("username") or "").strip()
        if not username:
            flash("Username tidak boleh kosong.", "error")
            return redirect(url_for(f"{bp.name}.settings"))

        avatar = request.files.get("avatar")
        avatar_url = user.get("avatar_url")
        data = b""
        if avatar and avatar.filename:
            if avatar.mimetype not in AVATAR_TYPES:
                flash("Format file tidak valid. Harap pilih file PNG atau JPEG.", "error")
                return redirect(url_for(f"{bp.name}.settings"))
            data = avatar.read()
            if len(data) > avatar_max_mb * 1024 * 1024:
                flash(f"Ukuran file terlalu besar. Maksimal {avatar_max_mb:g}MB.", "error")
                return redirect(url_for(f"{bp.name}.settings"))

        try:
            if data:
                path = upload(f"profile_pictures/{g.user_id}", data, avatar.mimetype)
                avatar_url = f"{public_url(path)}?t={int(time.time() * 1000)}"
            update_user_metadata(g.user_id, {"display_name": username, "avatar_url": avatar_url})
            execute("UPDATE public.profiles SET username = %s WHERE id = %s;", (username, g.user_id))
        except Exception as e:
            print(f"[siswa] settings update failed for {g.user_id}: {e}")
            flash(f"Gagal memperbarui profil: {e}", "error")
            return redirect(url_for(f"{bp.name}.settings"))

        user.update({"display_name": username, "avatar_url": avatar_url})
        session["user"] = user
        flash("Profil berhasil diperbarui.", "success")
        return redirect(url_for(f"{bp.name}.settings"))

    return bp
