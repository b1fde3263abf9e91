# feedback.py
# -----------------------------------------------------------------------------
# Prose feedback for a scored attempt.
# - One chat-completions call (OpenRouter / OpenAI-compatible), bounded timeout, no retry
# - Any failure degrades to a deterministic markdown template
# -----------------------------------------------------------------------------

import os
import json
from typing import Any, Callable, Dict, List, Optional

import requests

from scoring import performance_label

# ---- Config ------------------------------------------------------------------
OPENROUTER_API_KEY       = (os.getenv("OPENROUTER_API_KEY") or "").strip()
OPENROUTER_BASE_URL      = (os.getenv("OPENROUTER_BASE_URL") or "https://openrouter.ai/api/v1").strip().rstrip("/")
AI_MODEL_GRADING         = (os.getenv("AI_MODEL_GRADING") or "openai/gpt-4o-mini").strip()
FEEDBACK_TIMEOUT_SECONDS = float(os.getenv("FEEDBACK_TIMEOUT_SECONDS") or 20)
FEEDBACK_USE_AI          = (os.getenv("FEEDBACK_USE_AI", "1").lower() in ("1", "true", "yes"))

MIN_FEEDBACK_CHARS = 50

SYSTEM_PROMPT = (
    "You are an expert educational assessor providing personalized feedback to students. "
    "Evaluate performance objectively, be constructive and encouraging, identify strengths "
    "and areas for improvement, suggest specific study strategies, and use markdown "
    "(headings, bullet points) for structure."
)


class FeedbackError(RuntimeError):
    """The feedback service failed or returned something unusable."""


# ------------------------------- prompt ---------------------------------------
def _question_summary(report: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "question": str(row.get("text") or "")[:200],
            "type": row.get("type"),
            "userAnswer": row.get("userAnswer"),
            "correctAnswer": row.get("correctAnswer"),
            "isCorrect": bool(row.get("isCorrect")),
        }
        for row in (report or [])
    ]


def build_prompt(exam_title: str, score: int, max_score: int, percentage: float,
                 time_spent_seconds: Optional[int], report: List[Dict[str, Any]]) -> str:
    minutes, seconds = divmod(int(time_spent_seconds or 0), 60)
    return f"""
Provide personalized feedback for this exam attempt.

EXAM: {exam_title}
SCORE: {score}/{max_score} ({percentage:.1f}%)
PERFORMANCE LEVEL: {performance_label(percentage)}
TIME SPENT: {minutes}m {seconds}s

QUESTION RESULTS (JSON):
{json.dumps(_question_summary(report), ensure_ascii=False)}

REQUIREMENTS:
- Start with a 2-3 sentence performance summary.
- Highlight strengths from correct answers; identify gaps from incorrect ones.
- Give 3-5 specific study recommendations.
- End with encouragement. 200-300 words, markdown sections:
  ## Performance Summary, ## What You Did Well, ## Areas to Focus On,
  ## Study Recommendations, ## Keep Going!
"""


# ------------------------------- AI call --------------------------------------
def _chat_completion(messages: List[Dict[str, str]], model: str, temperature: float, max_tokens: int) -> str:
    if not OPENROUTER_API_KEY:
        raise FeedbackError("OPENROUTER_API_KEY is not set.")
    try:
        r = requests.post(
            f"{OPENROUTER_BASE_URL}/chat/completions",
            headers={"Authorization": f"Bearer {OPENROUTER_API_KEY}", "Content-Type": "application/json"},
            json={
                "model": model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
            timeout=FEEDBACK_TIMEOUT_SECONDS,
        )
        r.raise_for_status()
        data = r.json()
    except requests.RequestException as e:
        raise FeedbackError(f"feedback request failed: {e}") from e
    except ValueError as e:
        raise FeedbackError(f"feedback response is not JSON: {e}") from e

    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise FeedbackError(f"unexpected feedback payload: {e}") from e
    if content is None:
        return ""
    if not isinstance(content, str):
        raise FeedbackError(f"feedback content is {type(content).__name__}, expected text")
    return content.strip()


def generate_feedback(exam_title: str, score: int, max_score: int, percentage: float,
                      time_spent_seconds: Optional[int], report: List[Dict[str, Any]]) -> str:
    """Ask the model for markdown feedback. Raises FeedbackError on any failure."""
    if not FEEDBACK_USE_AI:
        raise FeedbackError("FEEDBACK_USE_AI disabled.")
    content = _chat_completion(
        [{"role": "system", "content": SYSTEM_PROMPT},
         {"role": "user", "content": build_prompt(exam_title, score, max_score, percentage,
                                                  time_spent_seconds, report)}],
        model=AI_MODEL_GRADING, temperature=0.7, max_tokens=1000,
    )
    if len(content) < MIN_FEEDBACK_CHARS:
        raise FeedbackError("Generated feedback is too short.")
    return content


# ------------------------------- fallback -------------------------------------
def fallback_feedback(exam_title: str, score: int, max_score: int, percentage: float) -> str:
    level = performance_label(percentage)
    return f"""## Performance Summary

You scored {score} out of {max_score} ({percentage:.1f}%) on "{exam_title}". Your performance was {level}.

## What You Did Well

You demonstrated understanding in several areas covered by the exam. Keep building on this foundation!

## Areas to Focus On

Based on your incorrect answers, consider reviewing the topics where you struggled. Take time to understand the concepts thoroughly.

## Study Recommendations

- Review the explanations for questions you got wrong
- Practice similar questions to reinforce understanding
- Take breaks between study sessions for better retention
- Don't hesitate to seek additional resources if needed

## Keep Going!

Every exam is a learning opportunity. Use this feedback to guide your studies and keep improving!"""


def feedback_with_fallback(exam_title: str, score: int, max_score: int, percentage: float,
                           time_spent_seconds: Optional[int], report: List[Dict[str, Any]],
                           generator: Optional[Callable[..., str]] = None) -> str:
    gen = generator or generate_feedback
    try:
        text = gen(exam_title, score, max_score, percentage, time_spent_seconds, report)
        if isinstance(text, str) and text.strip():
            return text
        print("[feedback] empty feedback; using fallback", flush=True)
    except Exception as e:
        print(f"[feedback] generation failed; using fallback: {e}", flush=True)
    return fallback_feedback(exam_title, score, max_score, percentage)
