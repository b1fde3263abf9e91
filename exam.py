# exam.py
# -----------------------------------------------------------------------------
# Exam definition store (read-only from the attempt engine's point of view).
# - Loads an exam with its ordered questions and normalises each question
# - Question invariants are reported, not enforced: scoring stays total
# - GET /exams/<exam_id> serves the student view (no answer key)
# -----------------------------------------------------------------------------

import json
import string
from typing import Any, Callable, Dict, List, Optional

from flask import Blueprint, jsonify, g

QUESTION_TYPES = ("MULTIPLE_CHOICE", "TRUE_FALSE", "SHORT_ANSWER", "FILL_IN_THE_BLANK")
DIFFICULTIES = ("EASY", "MEDIUM", "HARD")


# ------------------------------- normalisation --------------------------------
def _load_json(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        try:
            return json.loads(raw) if raw.strip() else None
        except ValueError:
            return None
    return raw


def normalize_options(raw: Any) -> Optional[Dict[str, str]]:
    """Options keyed A, B, C... ; a JSON list is keyed in list order."""
    data = _load_json(raw)
    if not data:
        return None
    if isinstance(data, dict):
        return {str(k): str(v) for k, v in data.items()}
    if isinstance(data, list):
        return {string.ascii_uppercase[i]: str(v) for i, v in enumerate(data[:26])}
    return None


def normalize_question(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(row.get("id")),
        "text": row.get("question_text") or "",
        "type": (row.get("question_type") or "").upper() or None,
        "options": normalize_options(row.get("options")),
        "correct_answer": row.get("correct_answer") or "",
        "explanation": row.get("explanation"),
        "points": int(row.get("points") or 0),
        "order": int(row.get("order") or 0),
    }


def validate_question(q: Dict[str, Any]) -> List[str]:
    errs: List[str] = []
    if q.get("type") not in QUESTION_TYPES:
        errs.append(f"unknown question type {q.get('type')!r}")
    if int(q.get("points") or 0) < 1:
        errs.append("points must be >= 1")
    options = q.get("options") or {}
    if q.get("type") == "MULTIPLE_CHOICE" and len(options) < 2:
        errs.append("multiple choice needs at least 2 options")
    if options and q.get("correct_answer") not in options.values():
        errs.append("correct answer is not one of the options")
    return errs


# ------------------------------- store ----------------------------------------
def load_exam_with_questions(fetch_one: Callable, fetch_all: Callable, exam_id: str) -> Optional[Dict[str, Any]]:
    exam = fetch_one("""
        SELECT id, title, subject, difficulty, user_id
          FROM public.exams
         WHERE id = %s;
    """, (exam_id,))
    if not exam:
        return None

    difficulty = (exam.get("difficulty") or "").upper() or None
    if difficulty not in DIFFICULTIES:
        print(f"[exam] exam {exam_id} has unknown difficulty {exam.get('difficulty')!r}", flush=True)

    rows = fetch_all("""
        SELECT id, question_text, question_type, options, correct_answer,
               explanation, points, "order"
          FROM public.questions
         WHERE exam_id = %s
         ORDER BY "order" ASC, id ASC;
    """, (exam_id,))

    questions: List[Dict[str, Any]] = []
    for r in rows or []:
        q = normalize_question(r)
        errs = validate_question(q)
        if errs:
            print(f"[exam] question {q['id']} of exam {exam_id} violates: {'; '.join(errs)}", flush=True)
        questions.append(q)
    questions.sort(key=lambda q: q["order"])

    return {
        "id": str(exam["id"]),
        "title": exam.get("title") or "",
        "subject": exam.get("subject") or "",
        "difficulty": difficulty,
        "user_id": exam.get("user_id"),
        "questions": questions,
    }


def student_view(exam: Dict[str, Any]) -> Dict[str, Any]:
    """Exam as shown while taking it: answer key and explanations stripped."""
    return {
        "id": exam["id"],
        "title": exam.get("title"),
        "subject": exam.get("subject"),
        "difficulty": exam.get("difficulty"),
        "userId": exam.get("user_id"),
        "questions": [
            {
                "id": q["id"],
                "questionText": q["text"],
                "questionType": q["type"],
                "options": q["options"],
                "points": q["points"],
                "order": q["order"],
            }
            for q in exam.get("questions") or []
        ],
    }


# ------------------------------- blueprint ------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Required deps: fetch_one, fetch_all
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)

    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]

    @bp.get("/exams/<exam_id>")
    def exam_for_student(exam_id: str):
        if not getattr(g, "user_id", None):
            return jsonify({"ok": False, "error": "Unauthorized"}), 401
        exam = load_exam_with_questions(fetch_one, fetch_all, exam_id)
        if not exam:
            return jsonify({"ok": False, "error": "Exam not found"}), 404
        return jsonify({"ok": True, "exam": student_view(exam)})

    return bp
