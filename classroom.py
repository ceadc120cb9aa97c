# classroom.py
# -----------------------------------------------------------------------------
# Teacher ("guru") workspace: dashboard, notifications, students, modules,
# assignments + submissions, file manager, analytics, AI assistant.
# Everything is scoped to teacher_id = g.user_id.
# Exams live in exam.py, AI assessments in assessment.py.
# -----------------------------------------------------------------------------

import json
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from flask import (
    Blueprint, request, redirect, url_for, render_template, flash, jsonify, g, session, abort
)

from backend import safe_filename, storage_path_from_url, format_bytes

ASSISTANT_PREAMBLE = "Anda adalah asisten AI untuk guru di platform LMS Matiku. Jawab pertanyaan berikut: "


# -----------------------------------------------------------------------------
# Pure helpers
# -----------------------------------------------------------------------------
def parse_date_input(s: Optional[str]) -> Optional[datetime]:
    """HTML date / datetime-local value -> aware UTC datetime (None if blank/invalid)."""
    if not s or not s.strip():
        return None
    for fmt in ("%Y-%m-%dT%H:%M", "%Y-%m-%d"):
        try:
            dt = datetime.strptime(s.strip(), fmt)
        except ValueError:
            continue
        if fmt == "%Y-%m-%d":
            dt = dt.replace(hour=23, minute=59)
        return dt.replace(tzinfo=timezone.utc)
    return None


def class_label(student: Dict[str, Any]) -> str:
    return f"{student.get('grade') or ''} - {student.get('class') or ''}"


def scores_of(student: Dict[str, Any]) -> Dict[str, Any]:
    scores = student.get("scores") or {}
    if isinstance(scores, str):
        try:
            scores = json.loads(scores)
        except ValueError:
            scores = {}
    return scores if isinstance(scores, dict) else {}


def average_score(scores: Dict[str, Any]) -> float:
    values = [float(a.get("score") or 0) for a in scores.values() if isinstance(a, dict)]
    if not values:
        return 0.0
    return sum(values) / len(values)


def class_options(students: Iterable[Dict[str, Any]]) -> List[str]:
    return ["all"] + sorted({class_label(s) for s in students})


def analytics_for(students: List[Dict[str, Any]], selected: str = "all") -> Dict[str, Any]:
    """Per-student and per-module average assessment scores, best first."""
    if selected and selected != "all":
        students = [s for s in students if class_label(s) == selected]

    per_student = sorted(
        ({"name": s.get("name") or "", "average": average_score(scores_of(s))} for s in students),
        key=lambda r: r["average"], reverse=True,
    )

    buckets: Dict[str, List[float]] = {}
    for s in students:
        for a in scores_of(s).values():
            if isinstance(a, dict):
                buckets.setdefault(str(a.get("materi") or "-"), []).append(float(a.get("score") or 0))
    per_module = sorted(
        ({"name": k, "average": sum(v) / len(v)} for k, v in buckets.items()),
        key=lambda r: r["average"], reverse=True,
    )
    return {"students": per_student, "modules": per_module, "selected": selected or "all"}


# -----------------------------------------------------------------------------
# Blueprint
# -----------------------------------------------------------------------------
def create_classroom_blueprint(base_path: str, deps: Dict[str, Any], name: str = "guru") -> Blueprint:
    """
    Mounted at <base_path>/guru.
    Required deps: fetch_one, fetch_all, execute, execute_returning, notify,
                   upload, public_url, remove_files, list_files, ai
    """
    bp = Blueprint(name, __name__, url_prefix=f"{base_path}/guru")

    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    execute: Callable = deps["execute"]
    execute_returning: Callable = deps["execute_returning"]
    notify: Callable = deps["notify"]
    upload: Callable = deps["upload"]
    public_url: Callable = deps["public_url"]
    remove_files: Callable = deps["remove_files"]
    list_files: Callable = deps["list_files"]
    ai = deps["ai"]
    chat_limit = int(deps.get("chat_history_limit") or 20)
    bucket = deps.get("bucket") or "matiku_storage"

    @bp.before_request
    def _require_teacher():
        if not getattr(g, "user_id", None):
            return redirect(url_for("auth.login"))
        if getattr(g, "user_role", None) != "guru":
            abort(403)

    def _store_upload(file_storage, folder: str) -> Optional[Dict[str, str]]:
        if not file_storage or not file_storage.filename:
            return None
        fname = safe_filename(file_storage.filename)
        path = upload(f"{folder}/{int(time.time() * 1000)}_{fname}",
                      file_storage.read(), file_storage.mimetype or "application/octet-stream")
        return {"file_url": public_url(path), "file_name": fname}

    def _remove_stored(url: Optional[str]):
        path = storage_path_from_url(url, bucket)
        if not path:
            return
        try:
            remove_files([path])
        except Exception as e:
            print(f"[storage] remove failed for {path}: {e}")

    # ---- students (with name sync) ------------------------------------------
    def _students() -> List[Dict[str, Any]]:
        rows = fetch_all("""
            SELECT id, uid, name, grade, class, scores, teacher_id, created_at
              FROM public.students
             WHERE teacher_id = %s
             ORDER BY created_at DESC;
        """, (g.user_id,)) or []
        uids = [r["uid"] for r in rows if r.get("uid")]
        if not uids:
            return rows
        try:
            profiles = fetch_all("""
                SELECT id, username FROM public.profiles WHERE id = ANY(%s);
            """, (uids,)) or []
        except Exception as e:
            print(f"[guru] profile lookup for name sync failed: {e}")
            return rows
        names = {str(p["id"]): p.get("username") for p in profiles}
        for r in rows:
            fresh = names.get(str(r.get("uid")))
            if fresh and fresh != r.get("name"):
                r["name"] = fresh
                try:
                    execute("UPDATE public.students SET name = %s WHERE id = %s;", (fresh, r["id"]))
                except Exception as e:
                    print(f"[guru] name sync failed for student {r['id']}: {e}")
        return rows

    def _modules() -> List[Dict[str, Any]]:
        return fetch_all("""
            SELECT id, title, description, file_url, file_name, due_date, created_at
              FROM public.modules
             WHERE teacher_id = %s
             ORDER BY created_at DESC;
        """, (g.user_id,)) or []

    def _student_or_404(student_id: str) -> Dict[str, Any]:
        row = fetch_one("""
            SELECT id, uid, name, grade, class, scores
              FROM public.students
             WHERE id = %s AND teacher_id = %s;
        """, (student_id, g.user_id))
        if not row:
            abort(404)
        return row

    # ---- dashboard -----------------------------------------------------------
    @bp.get("/")
    def dashboard():
        counts = fetch_one("""
            SELECT
              (SELECT COUNT(*) FROM public.students    WHERE teacher_id = %s) AS students,
              (SELECT COUNT(*) FROM public.modules     WHERE teacher_id = %s) AS modules,
              (SELECT COUNT(*) FROM public.exams       WHERE teacher_id = %s) AS exams,
              (SELECT COUNT(*) FROM public.assignments WHERE teacher_id = %s) AS assignments;
        """, (g.user_id,) * 4) or {}
        notifications = fetch_all("""
            SELECT id, message, read, created_at
              FROM public.notifications
             WHERE teacher_id = %s
             ORDER BY created_at DESC
             LIMIT 20;
        """, (g.user_id,)) or []
        activity = fetch_all("""
            SELECT * FROM (
                SELECT s.name AS student_name, e.title AS item_title, 'ujian' AS kind,
                       a.score AS score, a.completed_at AS at
                  FROM public.exam_attempts a
                  JOIN public.exams e    ON e.id = a.exam_id
                  JOIN public.students s ON s.id = a.student_id
                 WHERE e.teacher_id = %s
                UNION ALL
                SELECT s.name, t.title, 'tugas', sub.grade, sub.submitted_at
                  FROM public.submissions sub
                  JOIN public.assignments t ON t.id = sub.assignment_id
                  JOIN public.students s    ON s.id = sub.student_id
                 WHERE t.teacher_id = %s
            ) x
             ORDER BY at DESC NULLS LAST
             LIMIT 8;
        """, (g.user_id, g.user_id)) or []
        return render_template(
            "guru/dashboard.html",
            counts=counts,
            notifications=notifications,
            unread=sum(1 for n in notifications if not n.get("read")),
            activity=activity,
        )

    @bp.post("/notifikasi/baca")
    def notifications_read():
        execute("""
            UPDATE public.notifications SET read = TRUE
             WHERE teacher_id = %s AND read = FALSE;
        """, (g.user_id,))
        return redirect(request.referrer or url_for(f"{bp.name}.dashboard"))

    # ---- students ------------------------------------------------------------
    @bp.get("/siswa")
    def students():
        return render_template("guru/students.html", students=_students())

    @bp.post("/siswa")
    def student_add():
        email = (request.form.get("email") or "").strip().lower()
        grade = (request.form.get("grade") or "").strip()
        klass = (request.form.get("class") or "").strip()
        if not grade or not klass:
            flash("Tingkat dan Kelas harus diisi.", "error")
            return redirect(url_for(f"{bp.name}.students"))
        if not email:
            flash("Email siswa harus diisi saat menambah siswa baru.", "error")
            return redirect(url_for(f"{bp.name}.students"))
        try:
            profile = fetch_one("""
                SELECT id, email, username, role, teacher_id
                  FROM public.profiles
                 WHERE lower(email) = %s;
            """, (email,))
            if not profile:
                raise ValueError(f"Siswa dengan email '{email}' tidak ditemukan. "
                                 "Pastikan siswa telah mendaftar dengan email tersebut.")
            if profile.get("role") != "siswa":
                raise ValueError(f"Akun dengan email '{email}' bukan merupakan akun siswa.")
            if profile.get("teacher_id"):
                raise ValueError(f"Siswa dengan email '{email}' sudah terdaftar di kelas lain.")
            execute("""
                INSERT INTO public.students (uid, name, grade, class, scores, teacher_id)
                VALUES (%s, %s, %s, %s, '{}'::jsonb, %s);
            """, (profile["id"], profile.get("username") or email, grade, klass, g.user_id))
            execute("UPDATE public.profiles SET teacher_id = %s WHERE id = %s;", (g.user_id, profile["id"]))
        except Exception as e:
            print(f"[guru] add student failed for {email}: {e}")
            flash(str(e) or "Gagal menyimpan data siswa.", "error")
            return redirect(url_for(f"{bp.name}.students"))
        notify(g.user_id, f"Siswa baru '{profile.get('username') or email}' telah ditambahkan.")
        flash("Siswa berhasil ditambahkan.", "success")
        return redirect(url_for(f"{bp.name}.students"))

    @bp.post("/siswa/<student_id>/edit")
    def student_edit(student_id: str):
        student = _student_or_404(student_id)
        grade = (request.form.get("grade") or "").strip()
        klass = (request.form.get("class") or "").strip()
        if not grade or not klass:
            flash("Tingkat dan Kelas harus diisi.", "error")
            return redirect(url_for(f"{bp.name}.students"))
        execute("UPDATE public.students SET grade = %s, class = %s WHERE id = %s AND teacher_id = %s;",
                (grade, klass, student_id, g.user_id))
        notify(g.user_id, f"Data siswa '{student.get('name')}' berhasil diperbarui.")
        flash("Siswa berhasil diperbarui.", "success")
        return redirect(url_for(f"{bp.name}.students"))

    @bp.post("/siswa/<student_id>/hapus")
    def student_delete(student_id: str):
        student = _student_or_404(student_id)
        try:
            execute("DELETE FROM public.students WHERE id = %s AND teacher_id = %s;", (student_id, g.user_id))
            if student.get("uid"):
                execute("UPDATE public.profiles SET teacher_id = NULL WHERE id = %s;", (student["uid"],))
        except Exception as e:
            print(f"[guru] delete student {student_id} failed: {e}")
            flash(f"Gagal menghapus siswa: {e}", "error")
            return redirect(url_for(f"{bp.name}.students"))
        notify(g.user_id, f"Siswa '{student.get('name')}' telah dihapus dari kelas Anda.")
        flash("Data siswa telah dihapus.", "success")
        return redirect(url_for(f"{bp.name}.students"))

    # ---- modules -------------------------------------------------------------
    @bp.get("/modul")
    def modules():
        return render_template("guru/modules.html", modules=_modules())

    def _save_module(module_id: Optional[str]):
        title = (request.form.get("title") or "").strip()
        description = (request.form.get("description") or "").strip()
        if not title:
            flash("Judul modul harus diisi.", "error")
            return redirect(url_for(f"{bp.name}.modules"))
        existing = None
        if module_id:
            existing = fetch_one("SELECT id, file_url FROM public.modules WHERE id = %s AND teacher_id = %s;",
                                 (module_id, g.user_id))
            if not existing:
                abort(404)
        try:
            stored = _store_upload(request.files.get("file"), f"modules/{g.user_id}")
            due = parse_date_input(request.form.get("due_date"))
            if existing:
                execute("""
                    UPDATE public.modules
                       SET title = %s, description = %s, due_date = %s,
                           file_url = COALESCE(%s, file_url), file_name = COALESCE(%s, file_name)
                     WHERE id = %s AND teacher_id = %s;
                """, (title, description, due,
                      (stored or {}).get("file_url"), (stored or {}).get("file_name"),
                      module_id, g.user_id))
                if stored:
                    _remove_stored(existing.get("file_url"))
            else:
                execute("""
                    INSERT INTO public.modules (teacher_id, title, description, due_date, file_url, file_name)
                    VALUES (%s, %s, %s, %s, %s, %s);
                """, (g.user_id, title, description, due,
                      (stored or {}).get("file_url"), (stored or {}).get("file_name")))
        except Exception as e:
            print(f"[guru] save module failed: {e}")
            flash(f"Gagal menyimpan modul: {e}", "error")
            return redirect(url_for(f"{bp.name}.modules"))
        notify(g.user_id, f"Modul '{title}' berhasil {'diperbarui' if existing else 'ditambahkan'}.")
        flash("Modul berhasil disimpan.", "success")
        return redirect(url_for(f"{bp.name}.modules"))

    @bp.post("/modul")
    def module_create():
        return _save_module(None)

    @bp.post("/modul/<module_id>/edit")
    def module_edit(module_id: str):
        return _save_module(module_id)

    @bp.post("/modul/<module_id>/hapus")
    def module_delete(module_id: str):
        row = fetch_one("SELECT id, title, file_url FROM public.modules WHERE id = %s AND teacher_id = %s;",
                        (module_id, g.user_id))
        if not row:
            abort(404)
        execute("DELETE FROM public.modules WHERE id = %s AND teacher_id = %s;", (module_id, g.user_id))
        _remove_stored(row.get("file_url"))
        notify(g.user_id, f"Modul '{row.get('title')}' telah dihapus.")
        flash("Modul telah dihapus.", "success")
        return redirect(url_for(f"{bp.name}.modules"))

    @bp.post("/modul/deskripsi")
    def module_describe():
        data = request.get_json(silent=True) or request.form
        title = (data.get("title") or "").strip()
        if not title:
            return jsonify({"ok": False, "error": "Judul modul harus diisi terlebih dahulu."}), 400
        prompt = (f'Buatkan deskripsi singkat dan menarik untuk modul ajar dengan judul "{title}". '
                  "Deskripsi harus dalam satu paragraf dan tidak lebih dari 50 kata.")
        try:
            text = ai.generate_text(prompt)
        except Exception as e:
            print(f"[ai] module description failed: {e}")
            return jsonify({"ok": False, "error": "Gagal membuat deskripsi dengan AI."}), 502
        return jsonify({"ok": True, "description": text})

    # ---- assignments ---------------------------------------------------------
    @bp.get("/tugas")
    def assignments():
        rows = fetch_all("""
            SELECT t.*, (SELECT COUNT(*) FROM public.submissions s WHERE s.assignment_id = t.id) AS submission_count
              FROM public.assignments t
             WHERE t.teacher_id = %s
             ORDER BY t.created_at DESC;
        """, (g.user_id,)) or []
        return render_template("guru/assignments.html", assignments=rows,
                               classes=class_options(_students()))

    def _save_assignment(assignment_id: Optional[str]):
        title = (request.form.get("title") or "").strip()
        if not title:
            flash("Judul tugas harus diisi.", "error")
            return redirect(url_for(f"{bp.name}.assignments"))
        description = (request.form.get("description") or "").strip()
        target = (request.form.get("assigned_to_class") or "all").strip() or "all"
        existing = None
        if assignment_id:
            existing = fetch_one("SELECT id, file_url FROM public.assignments WHERE id = %s AND teacher_id = %s;",
                                 (assignment_id, g.user_id))
            if not existing:
                abort(404)
        try:
            stored = _store_upload(request.files.get("file"), f"assignments/{g.user_id}")
            due = parse_date_input(request.form.get("due_date"))
            if existing:
                execute("""
                    UPDATE public.assignments
                       SET title = %s, description = %s, due_date = %s, assigned_to_class = %s,
                           file_url = COALESCE(%s, file_url), file_name = COALESCE(%s, file_name)
                     WHERE id = %s AND teacher_id = %s;
                """, (title, description, due, target,
                      (stored or {}).get("file_url"), (stored or {}).get("file_name"),
                      assignment_id, g.user_id))
                if stored:
                    _remove_stored(existing.get("file_url"))
            else:
                execute("""
                    INSERT INTO public.assignments
                        (teacher_id, title, description, due_date, assigned_to_class, file_url, file_name)
                    VALUES (%s, %s, %s, %s, %s, %s, %s);
                """, (g.user_id, title, description, due, target,
                      (stored or {}).get("file_url"), (stored or {}).get("file_name")))
        except Exception as e:
            print(f"[guru] save assignment failed: {e}")
            flash(f"Gagal menyimpan tugas: {e}", "error")
            return redirect(url_for(f"{bp.name}.assignments"))
        notify(g.user_id, f"Tugas '{title}' berhasil disimpan.")
        flash("Tugas berhasil disimpan.", "success")
        return redirect(url_for(f"{bp.name}.assignments"))

    @bp.post("/tugas")
    def assignment_create():
        return _save_assignment(None)

    @bp.post("/tugas/<assignment_id>/edit")
    def assignment_edit(assignment_id: str):
        return _save_assignment(assignment_id)

    @bp.post("/tugas/<assignment_id>/hapus")
    def assignment_delete(assignment_id: str):
        row = fetch_one("SELECT id, title, file_url FROM public.assignments WHERE id = %s AND teacher_id = %s;",
                        (assignment_id, g.user_id))
        if not row:
            abort(404)
        execute("DELETE FROM public.assignments WHERE id = %s AND teacher_id = %s;", (assignment_id, g.user_id))
        _remove_stored(row.get("file_url"))
        notify(g.user_id, f"Tugas '{row.get('title')}' telah dihapus.")
        flash("Tugas telah dihapus.", "success")
        return redirect(url_for(f"{bp.name}.assignments"))

    @bp.get("/tugas/<assignment_id>/pengumpulan")
    def submissions(assignment_id: str):
        assignment = fetch_one("SELECT * FROM public.assignments WHERE id = %s AND teacher_id = %s;",
                               (assignment_id, g.user_id))
        if not assignment:
            abort(404)
        rows = fetch_all("""
            SELECT sub.*, s.name AS student_name
              FROM public.submissions sub
              LEFT JOIN public.students s ON s.id = sub.student_id
             WHERE sub.assignment_id = %s
             ORDER BY sub.submitted_at DESC;
        """, (assignment_id,)) or []
        return render_template("guru/submissions.html", assignment=assignment, submissions=rows)

    @bp.post("/pengumpulan/<submission_id>/nilai")
    def submission_grade(submission_id: str):
        row = fetch_one("""
            SELECT sub.id, sub.assignment_id, s.name AS student_name
              FROM public.submissions sub
              JOIN public.assignments t ON t.id = sub.assignment_id
              LEFT JOIN public.students s ON s.id = sub.student_id
             WHERE sub.id = %s AND t.teacher_id = %s;
        """, (submission_id, g.user_id))
        if not row:
            abort(404)
        try:
            grade = int(request.form.get("grade") or "")
        except ValueError:
            grade = -1
        if not (0 <= grade <= 100):
            flash("Nilai harus berupa angka 0-100.", "error")
            return redirect(url_for(f"{bp.name}.submissions", assignment_id=row["assignment_id"]))
        feedback = (request.form.get("feedback") or "").strip()
        execute("UPDATE public.submissions SET grade = %s, feedback = %s WHERE id = %s;",
                (grade, feedback, submission_id))
        notify(g.user_id, f"Tugas {row.get('student_name') or 'siswa'} telah dinilai.")
        flash("Nilai berhasil disimpan.", "success")
        return redirect(url_for(f"{bp.name}.submissions", assignment_id=row["assignment_id"]))

    # ---- files ---------------------------------------------------------------
    def _folder() -> str:
        return f"files/{g.user_id}"

    @bp.get("/file")
    def files():
        try:
            items = list_files(_folder())
        except Exception as e:
            print(f"[storage] list failed: {e}")
            flash("Gagal memuat daftar file.", "error")
            items = []
        for it in items:
            it["url"] = public_url(f"{_folder()}/{it['name']}")
            it["size_label"] = format_bytes(it.get("size") or 0)
        return render_template("guru/files.html", files=items)

    @bp.post("/file")
    def file_upload():
        f = request.files.get("file")
        if not f or not f.filename:
            flash("Silakan pilih file untuk diunggah.", "error")
            return redirect(url_for(f"{bp.name}.files"))
        try:
            upload(f"{_folder()}/{safe_filename(f.filename)}", f.read(), f.mimetype or "application/octet-stream")
        except Exception as e:
            print(f"[storage] upload failed: {e}")
            flash(f"Gagal mengunggah file: {e}", "error")
            return redirect(url_for(f"{bp.name}.files"))
        flash("File berhasil diunggah!", "success")
        return redirect(url_for(f"{bp.name}.files"))

    @bp.post("/file/hapus")
    def file_delete():
        fname = safe_filename(request.form.get("name"))
        try:
            remove_files([f"{_folder()}/{fname}"])
        except Exception as e:
            print(f"[storage] delete failed: {e}")
            flash(f"Gagal menghapus file: {e}", "error")
            return redirect(url_for(f"{bp.name}.files"))
        flash("File telah berhasil dihapus.", "success")
        return redirect(url_for(f"{bp.name}.files"))

    # ---- analytics -----------------------------------------------------------
    @bp.get("/analitik")
    def analytics():
        students = _students()
        selected = request.args.get("kelas") or "all"
        return render_template("guru/analytics.html",
                               data=analytics_for(students, selected),
                               classes=class_options(students))

    # ---- AI assistant --------------------------------------------------------
    @bp.route("/asisten", methods=["GET", "POST"])
    def assistant():
        history = session.get("guru_chat") or []
        if request.method == "POST":
            text = (request.form.get("message") or "").strip()
            if text:
                session["guru_chat"] = ai.chat_turn(history, text, preamble=ASSISTANT_PREAMBLE,
                                                    send_history=False, limit=chat_limit)
            return redirect(url_for(f"{bp.name}.assistant"))
        return render_template("guru/assistant.html", messages=history)

    @bp.post("/asisten/reset")
    def assistant_reset():
        session.pop("guru_chat", None)
        return redirect(url_for(f"{bp.name}.assistant"))

    return bp
