# attempt.py
# -----------------------------------------------------------------------------
# Exam attempt lifecycle: NONE -> IN_PROGRESS -> COMPLETED
# - start/resume: latest IN_PROGRESS row for (user, exam), else 404
# - save progress: raw checkpoint, upsert guarded by a partial unique index
# - submit: score -> feedback (with fallback) -> one conditional write
# Every read/write is scoped by user id; COMPLETED rows are never rewritten.
# -----------------------------------------------------------------------------

import json
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from flask import Blueprint, request, jsonify, g
from psycopg.errors import ForeignKeyViolation
from werkzeug.exceptions import HTTPException

from exam import load_exam_with_questions
from feedback import feedback_with_fallback
from scoring import score_exam

IN_PROGRESS = "IN_PROGRESS"
COMPLETED = "COMPLETED"


# ------------------------------- errors ---------------------------------------
class AttemptError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthorized(AttemptError):
    status_code = 401


class NotFound(AttemptError):
    status_code = 404


class ValidationError(AttemptError):
    status_code = 400


class ConflictError(AttemptError):
    status_code = 409


# ------------------------------- input checks ---------------------------------
def _require_user(user_id: Any):
    if not user_id:
        raise Unauthorized("Unauthorized")


def _require_exam_id(exam_id: Any) -> str:
    if exam_id is None or not str(exam_id).strip():
        raise ValidationError("Exam ID is required")
    return str(exam_id).strip()


def _as_int(value: Any, field: str) -> Optional[int]:
    if value is None:
        return None
    # bool is an int subclass; JSON true/false is not a count
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    return value


def _non_negative_int(value: Any, field: str) -> Optional[int]:
    n = _as_int(value, field)
    if n is not None and n < 0:
        raise ValidationError(f"{field} must be a non-negative integer")
    return n


def _positive_int(value: Any, field: str) -> int:
    n = _as_int(value, field)
    if n is None:
        raise ValidationError(f"{field} is required")
    if n <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return n


def _answer_map(value: Any, field: str) -> Optional[Dict[str, Optional[str]]]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValidationError(f"{field} must be an object of question id -> answer")
    out: Dict[str, Optional[str]] = {}
    for k, v in value.items():
        if v is not None and not isinstance(v, str):
            raise ValidationError(f"{field}.{k} must be a string")
        out[str(k)] = v
    return out


def _id_set(value: Any, field: str) -> Optional[List[str]]:
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(x, str) for x in value):
        raise ValidationError(f"{field} must be a list of question ids")
    # set semantics, first-seen order kept for the client
    return list(dict.fromkeys(value))


def _optional_id(value: Any, field: str) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise ValidationError(f"{field} must be a string")
    return str(value)


def _jsonb(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, ensure_ascii=False)


# ------------------------------- serialisation --------------------------------
def _json_field(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return None
    return raw


def _iso(v: Any) -> Optional[str]:
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    return v


def attempt_json(row: Dict[str, Any]) -> Dict[str, Any]:
    """Attempt row -> client field names."""
    percentage = row.get("percentage")
    if isinstance(percentage, Decimal):
        percentage = float(percentage)
    out = {
        "id": row.get("id"),
        "userId": row.get("user_id"),
        "examId": row.get("exam_id"),
        "status": row.get("status"),
        "inProgressAnswers": _json_field(row.get("in_progress_answers")),
        "currentTimeSpent": row.get("time_spent"),
        "currentQuestionIndex": row.get("current_question_index"),
        "flaggedQuestions": _json_field(row.get("flagged_questions")),
        "submittedAnswers": _json_field(row.get("submitted_answers")),
        "score": row.get("score"),
        "maxScore": row.get("max_score"),
        "percentage": percentage,
        "timeSpent": row.get("time_spent"),
        "aiFeedback": row.get("ai_feedback"),
        "completedAt": _iso(row.get("completed_at")),
        "createdAt": _iso(row.get("created_at")),
        "updatedAt": _iso(row.get("updated_at")),
    }
    if row.get("exam_title") is not None:
        out["exam"] = {"id": row.get("exam_id"), "title": row.get("exam_title")}
    return out


# ------------------------------- queries --------------------------------------
def find_in_progress(db: Dict[str, Callable], user_id: Any, exam_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    if exam_id:
        return db["fetch_one"]("""
            SELECT a.*, e.title AS exam_title
              FROM public.exam_attempts a
              JOIN public.exams e ON e.id = a.exam_id
             WHERE a.user_id = %s
               AND a.status  = 'IN_PROGRESS'
               AND a.exam_id = %s
             ORDER BY a.updated_at DESC
             LIMIT 1;
        """, (user_id, exam_id))
    return db["fetch_one"]("""
        SELECT a.*, e.title AS exam_title
          FROM public.exam_attempts a
          JOIN public.exams e ON e.id = a.exam_id
         WHERE a.user_id = %s
           AND a.status  = 'IN_PROGRESS'
         ORDER BY a.updated_at DESC
         LIMIT 1;
    """, (user_id,))


def _first(rows: Optional[List[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
    return rows[0] if rows else None


# ------------------------------- operations -----------------------------------
def start_or_resume_attempt(db: Dict[str, Callable], user_id: Any, exam_id: Optional[str] = None) -> Dict[str, Any]:
    _require_user(user_id)
    row = find_in_progress(db, user_id, str(exam_id) if exam_id else None)
    if not row:
        raise NotFound("No in-progress exam found")
    return row


def save_progress(db: Dict[str, Callable], user_id: Any, exam_id: Any,
                  attempt_id: Optional[str] = None,
                  in_progress_answers: Any = None,
                  elapsed_seconds: Any = None,
                  current_index: Any = None,
                  flagged_ids: Any = None) -> Dict[str, Any]:
    """Checkpoint in-progress state; returns the saved attempt row. Absent fields keep their value."""
    _require_user(user_id)
    exam_id = _require_exam_id(exam_id)
    attempt_id = _optional_id(attempt_id, "attemptId")
    answers = _answer_map(in_progress_answers, "inProgressAnswers")
    elapsed = _non_negative_int(elapsed_seconds, "currentTimeSpent")
    index = _non_negative_int(current_index, "currentQuestionIndex")
    flagged = _id_set(flagged_ids, "flaggedQuestions")

    if attempt_id:
        row = _first(db["execute_returning"]("""
            UPDATE public.exam_attempts
               SET in_progress_answers    = COALESCE(%s::jsonb, in_progress_answers),
                   time_spent             = COALESCE(%s, time_spent),
                   current_question_index = COALESCE(%s, current_question_index),
                   flagged_questions      = COALESCE(%s::jsonb, flagged_questions),
                   updated_at             = now()
             WHERE id      = %s
               AND user_id = %s
               AND exam_id = %s
               AND status  = 'IN_PROGRESS'
            RETURNING *;
        """, (_jsonb(answers), elapsed, index, _jsonb(flagged), attempt_id, user_id, exam_id)))
        if not row:
            raise ConflictError("Attempt is not in progress for this user and exam")
        return row

    # One IN_PROGRESS row per (user, exam): the partial unique index turns a
    # second first-save into an update of the existing row.
    try:
        row = _first(db["execute_returning"]("""
            INSERT INTO public.exam_attempts
                (id, user_id, exam_id, status, in_progress_answers, time_spent,
                 current_question_index, flagged_questions, created_at, updated_at)
            VALUES (%s, %s, %s, 'IN_PROGRESS', %s::jsonb, %s, %s, %s::jsonb, now(), now())
            ON CONFLICT (user_id, exam_id) WHERE status = 'IN_PROGRESS'
            DO UPDATE SET
                in_progress_answers    = COALESCE(EXCLUDED.in_progress_answers, exam_attempts.in_progress_answers),
                time_spent             = COALESCE(EXCLUDED.time_spent, exam_attempts.time_spent),
                current_question_index = COALESCE(EXCLUDED.current_question_index, exam_attempts.current_question_index),
                flagged_questions      = COALESCE(EXCLUDED.flagged_questions, exam_attempts.flagged_questions),
                updated_at             = now()
            RETURNING *;
        """, (uuid.uuid4().hex, user_id, exam_id, _jsonb(answers), elapsed, index, _jsonb(flagged))))
    except ForeignKeyViolation:
        raise NotFound("Exam not found")
    if not row:
        raise ConflictError("Could not save progress")
    return row


def submit(db: Dict[str, Callable], user_id: Any, exam_id: Any,
           answers: Any, time_spent: Any,
           attempt_id: Optional[str] = None,
           generate_feedback: Optional[Callable[..., str]] = None,
           on_completed: Optional[Callable[..., Any]] = None) -> Dict[str, Any]:
    """
    Score and complete an attempt. Returns the persisted row plus
    `detailedReport` and `calculatedPercentile`.

    With attempt_id the row must still be IN_PROGRESS and owned by the caller,
    otherwise ConflictError; without it a COMPLETED row is created directly.
    """
    _require_user(user_id)
    exam_id = _require_exam_id(exam_id)
    attempt_id = _optional_id(attempt_id, "attemptId")
    final_answers = {k: v for k, v in (_answer_map(answers, "answers") or {}).items() if v is not None}
    time_spent = _positive_int(time_spent, "timeSpent")

    exam = load_exam_with_questions(db["fetch_one"], db["fetch_all"], exam_id)
    if not exam:
        raise NotFound("Exam not found")

    # Reject before the feedback call;
    # the conditional UPDATE below guards the transition.
    if attempt_id:
        current = db["fetch_one"]("""
            SELECT id, status
              FROM public.exam_attempts
             WHERE id = %s AND user_id = %s AND exam_id = %s;
        """, (attempt_id, user_id, exam_id))
        if not current or current.get("status") != IN_PROGRESS:
            raise ConflictError("Attempt is not in progress for this user and exam")

    result = score_exam(exam["questions"], final_answers)
    ai_feedback = feedback_with_fallback(
        exam["title"], result["score"], result["max_score"], result["percentage"],
        time_spent, result["report"], generator=generate_feedback,
    )

    if attempt_id:
        row = _first(db["execute_returning"]("""
            UPDATE public.exam_attempts
               SET status                 = 'COMPLETED',
                   submitted_answers      = %s::jsonb,
                   score                  = %s,
                   max_score              = %s,
                   percentage             = %s,
                   time_spent             = %s,
                   ai_feedback            = %s,
                   completed_at           = now(),
                   updated_at             = now(),
                   in_progress_answers    = NULL,
                   current_question_index = NULL,
                   flagged_questions      = NULL
             WHERE id      = %s
               AND user_id = %s
               AND exam_id = %s
               AND status  = 'IN_PROGRESS'
            RETURNING *;
        """, (_jsonb(final_answers), result["score"], result["max_score"], result["percentage"],
              time_spent, ai_feedback, attempt_id, user_id, exam_id)))
        if not row:
            raise ConflictError("Attempt was already submitted")
    else:
        row = _first(db["execute_returning"]("""
            INSERT INTO public.exam_attempts
                (id, user_id, exam_id, status, submitted_answers, score, max_score,
                 percentage, time_spent, ai_feedback, completed_at, created_at, updated_at)
            VALUES (%s, %s, %s, 'COMPLETED', %s::jsonb, %s, %s, %s, %s, %s, now(), now(), now())
            RETURNING *;
        """, (uuid.uuid4().hex, user_id, exam_id, _jsonb(final_answers), result["score"],
              result["max_score"], result["percentage"], time_spent, ai_feedback)))
        if not row:
            raise ConflictError("Could not record the attempt")

    print(f"[attempt] completed {row.get('id')} user={user_id} exam={exam_id} "
          f"score={result['score']}/{result['max_score']}", flush=True)

    if on_completed:
        try:
            on_completed(user_id, exam, result["percentage"], time_spent)
        except Exception as e:
            print(f"[attempt] post-completion bookkeeping failed: {e}", flush=True)

    out = dict(row)
    out["detailedReport"] = result["report"]
    out["calculatedPercentile"] = result["percentile_bucket"]
    return out


# ------------------------------- blueprint ------------------------------------
def create_attempt_blueprint(base_path: str, deps: Dict[str, Any], name: str = "attempt") -> Blueprint:
    """
    Routes:
      GET  /exams/in-progress[?examId=]
      POST /exams/<exam_id>/save-progress
      POST /exams/<exam_id>/submit
    Required deps: fetch_one, fetch_all, execute_returning
    Optional deps: generate_feedback, record_completion, rate_limiter
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)

    db = {
        "fetch_one": deps["fetch_one"],
        "fetch_all": deps["fetch_all"],
        "execute_returning": deps["execute_returning"],
    }
    generate_feedback: Optional[Callable] = deps.get("generate_feedback")
    record_completion: Optional[Callable] = deps.get("record_completion")
    rate_limiter = deps.get("rate_limiter")

    def _attempt_reply(row: Dict[str, Any]) -> Dict[str, Any]:
        # every attempt route answers with the attempt fields at the top level
        payload = attempt_json(row)
        payload["ok"] = True
        return payload

    def _body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    @bp.before_request
    def _rate_limit():
        if rate_limiter is None:
            return None
        key = f"api:{getattr(g, 'user_id', None) or request.remote_addr}"
        allowed, _remaining, retry_after = rate_limiter.check(key)
        if allowed:
            return None
        resp = jsonify({"ok": False, "error": "Too many requests. Please try again later."})
        resp.status_code = 429
        resp.headers["Retry-After"] = str(max(1, int(retry_after)))
        return resp

    @bp.errorhandler(AttemptError)
    def _attempt_error(e: AttemptError):
        return jsonify({"ok": False, "error": e.message}), e.status_code

    @bp.errorhandler(Exception)
    def _unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return e
        print(f"[attempt] unexpected error on {request.path}: {e!r}", flush=True)
        return jsonify({"ok": False, "error": "An unexpected error occurred."}), 500

    @bp.get("/exams/in-progress")
    def attempt_in_progress():
        row = start_or_resume_attempt(db, getattr(g, "user_id", None), request.args.get("examId"))
        return jsonify(_attempt_reply(row))

    @bp.post("/exams/<exam_id>/save-progress")
    def attempt_save_progress(exam_id: str):
        _require_user(getattr(g, "user_id", None))
        data = _body()
        row = save_progress(
            db, g.user_id, exam_id,
            attempt_id=data.get("attemptId"),
            in_progress_answers=data.get("inProgressAnswers"),
            elapsed_seconds=data.get("currentTimeSpent"),
            current_index=data.get("currentQuestionIndex"),
            flagged_ids=data.get("flaggedQuestions"),
        )
        return jsonify(_attempt_reply(row))

    @bp.post("/exams/<exam_id>/submit")
    def attempt_submit(exam_id: str):
        _require_user(getattr(g, "user_id", None))
        data = _body()
        out = submit(
            db, g.user_id, exam_id,
            answers=data.get("answers"),
            time_spent=data.get("timeSpent"),
            attempt_id=data.get("attemptId"),
            generate_feedback=generate_feedback,
            on_completed=record_completion,
        )
        payload = _attempt_reply(out)
        payload["detailedReport"] = out["detailedReport"]
        payload["calculatedPercentile"] = out["calculatedPercentile"]
        return jsonify(payload)

    return bp
