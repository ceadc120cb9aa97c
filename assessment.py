# assessment.py
# -----------------------------------------------------------------------------
# AI-assisted assessments ("Penilaian").
# The teacher writes a free-text analysis for a (student, module) pair; the AI
# turns it into {score, recommendation}. The result is kept in
# students.scores[<module id>] so re-assessing a module overwrites it.
# -----------------------------------------------------------------------------

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict

from flask import Blueprint, request, redirect, url_for, render_template, flash, jsonify, g, abort

from classroom import scores_of

ASSESSMENT_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "score": {"type": "NUMBER", "description": "Skor numerik antara 0 dan 100 berdasarkan analisis."},
        "recommendation": {"type": "STRING",
                           "description": "Rekomendasi belajar dalam bentuk paragraf bersih tanpa formatting."},
    },
    "required": ["score", "recommendation"],
}


class AssessmentError(ValueError):
    pass


def assessment_prompt(analysis: str) -> str:
    return (f'Analisis kinerja siswa berikut: "{analysis}". Berdasarkan analisis tersebut, berikan skor '
            "numerik antara 0-100 dan buatkan rekomendasi belajar dalam satu paragraf naratif yang jelas "
            "dan bersih (tanpa bold, italics, atau bullet points/numbering).")


def recommendation_prompt(student_name: str) -> str:
    return (f'Sebagai seorang ahli pedagogi, berikan rekomendasi tindak lanjut untuk siswa bernama '
            f'"{student_name}". Fokus pada area yang perlu ditingkatkan dan berikan saran aktivitas '
            "atau materi tambahan yang konkret.")


def build_assessment(ai_reply: Dict[str, Any], module: Dict[str, Any], analysis: str,
                     previous: Dict[str, Any] = None) -> Dict[str, Any]:
    """Validate the AI reply and shape the stored assessment entry."""
    try:
        score = int(round(float(ai_reply["score"])))
    except (KeyError, TypeError, ValueError) as e:
        raise AssessmentError("Respons AI tidak berisi skor yang valid.") from e
    if score < 0 or score > 100:
        raise AssessmentError("AI menghasilkan skor di luar rentang 0-100.")
    module_id = str(module["id"])
    previous = previous or {}
    return {
        "id": previous.get("id") or module_id,
        "materiId": module_id,
        "materi": module.get("title") or "",
        "analysis": analysis,
        "score": score,
        "date": previous.get("date") or datetime.now(timezone.utc).isoformat(),
        "recommendation": str(ai_reply.get("recommendation") or ""),
        "summary": "",
    }


def create_assessment_blueprint(base_path: str, deps: Dict[str, Any], name: str = "penilaian") -> Blueprint:
    """
    Mounted at <base_path>/guru/penilaian.
    Required deps: fetch_one, fetch_all, execute, notify, ai
    """
    bp = Blueprint(name, __name__, url_prefix=f"{base_path}/guru/penilaian")

    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    execute: Callable = deps["execute"]
    notify: Callable = deps["notify"]
    ai = deps["ai"]

    @bp.before_request
    def _require_teacher():
        if not getattr(g, "user_id", None):
            return redirect(url_for("auth.login"))
        if getattr(g, "user_role", None) != "guru":
            abort(403)

    def _student(student_id: str) -> Dict[str, Any]:
        row = fetch_one("""
            SELECT id, name, grade, class, scores
              FROM public.students
             WHERE id = %s AND teacher_id = %s;
        """, (student_id, g.user_id))
        if not row:
            abort(404)
        return row

    def _save_scores(student_id: str, scores: Dict[str, Any]):
        execute("UPDATE public.students SET scores = %s::jsonb WHERE id = %s AND teacher_id = %s;",
                (json.dumps(scores), student_id, g.user_id))

    @bp.get("/")
    def index():
        students = fetch_all("""
            SELECT id, name, grade, class, scores
              FROM public.students
             WHERE teacher_id = %s
             ORDER BY name;
        """, (g.user_id,)) or []
        modules = fetch_all("""
            SELECT id, title FROM public.modules WHERE teacher_id = %s ORDER BY created_at DESC;
        """, (g.user_id,)) or []
        rows = []
        for s in students:
            for a in scores_of(s).values():
                if isinstance(a, dict):
                    rows.append({"student": s, "assessment": a})
        return render_template("guru/assessments.html", rows=rows, students=students, modules=modules,
                               can_assess=bool(students and modules))

    @bp.post("/")
    def save():
        student_id = (request.form.get("student_id") or "").strip()
        module_id = (request.form.get("module_id") or "").strip()
        analysis = (request.form.get("analysis") or "").strip()
        if not student_id or not module_id or not analysis:
            flash("Siswa, materi, dan analisis harus diisi.", "error")
            return redirect(url_for(f"{bp.name}.index"))

        student = _student(student_id)
        module = fetch_one("SELECT id, title FROM public.modules WHERE id = %s AND teacher_id = %s;",
                           (module_id, g.user_id))
        if not module:
            flash("Materi tidak ditemukan.", "error")
            return redirect(url_for(f"{bp.name}.index"))

        scores = scores_of(student)
        try:
            reply = ai.generate_json(assessment_prompt(analysis), ASSESSMENT_SCHEMA)
            entry = build_assessment(reply, module, analysis, scores.get(str(module["id"])))
            scores[entry["materiId"]] = entry
            _save_scores(student_id, scores)
        except Exception as e:
            print(f"[guru] assessment save failed for student {student_id}: {e}")
            msg = str(e) if isinstance(e, AssessmentError) else \
                "Gagal menyimpan penilaian. Ini mungkin karena respons AI tidak valid atau masalah jaringan."
            flash(msg, "error")
            return redirect(url_for(f"{bp.name}.index"))

        notify(g.user_id, f"Penilaian untuk {student.get('name')} pada materi '{module.get('title')}' "
                          "berhasil disimpan.")
        flash("Penilaian berhasil disimpan!", "success")
        return redirect(url_for(f"{bp.name}.index"))

    @bp.post("/<student_id>/<module_id>/hapus")
    def delete(student_id: str, module_id: str):
        student = _student(student_id)
        scores = scores_of(student)
        if scores.pop(str(module_id), None) is None:
            abort(404)
        try:
            _save_scores(student_id, scores)
        except Exception as e:
            print(f"[guru] assessment delete failed for student {student_id}: {e}")
            flash(f"Gagal menghapus penilaian: {e}", "error")
            return redirect(url_for(f"{bp.name}.index"))
        notify(g.user_id, f"Penilaian untuk {student.get('name')} telah dihapus.")
        flash("Penilaian dihapus!", "success")
        return redirect(url_for(f"{bp.name}.index"))

    @bp.get("/<student_id>/rekomendasi")
    def recommendation(student_id: str):
        student = _student(student_id)
        try:
            text = ai.generate_text(recommendation_prompt(student.get("name") or ""))
        except Exception as e:
            print(f"[ai] recommendation failed for student {student_id}: {e}")
            return jsonify({"ok": False, "error": "Gagal memuat rekomendasi. Silakan coba lagi."}), 502
        return jsonify({"ok": True, "recommendation": text})

    return bp
