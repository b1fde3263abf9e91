import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from scoring import (  # noqa: E402
    NO_ANSWER,
    answers_match,
    is_passing,
    percentile_bucket,
    performance_label,
    score_exam,
)


def _q(qid, correct, points=1, qtype="SHORT_ANSWER", order=0):
    return {
        "id": qid,
        "text": f"Question {qid}",
        "type": qtype,
        "options": None,
        "correct_answer": correct,
        "explanation": f"because {correct}",
        "points": points,
        "order": order,
    }


def test_end_to_end_partial_credit():
    questions = [_q("q1", "B", 2, "MULTIPLE_CHOICE", 0), _q("q2", "True", 2, "TRUE_FALSE", 1), _q("q3", "photosynthesis", 1, order=2)]

    result = score_exam(questions, {"q1": "B", "q2": "False"})

    assert result["score"] == 2
    assert result["max_score"] == 5
    assert result["percentage"] == pytest.approx(40.0)
    assert result["percentile_bucket"] == 70
    assert [row["id"] for row in result["report"]] == ["q1", "q2", "q3"]
    assert result["report"][0]["isCorrect"] is True
    assert result["report"][1]["isCorrect"] is False
    assert result["report"][2]["userAnswer"] == NO_ANSWER
    assert result["report"][2]["isCorrect"] is False
    assert result["report"][2]["correctAnswer"] == "photosynthesis"


def test_empty_exam_scores_zero_percent():
    result = score_exam([], {})
    assert result["score"] == 0
    assert result["max_score"] == 0
    assert result["percentage"] == 0
    assert result["report"] == []
    assert result["percentile_bucket"] == 70


def test_comparison_ignores_case():
    result = score_exam([_q("q1", "Paris")], {"q1": "paris"})
    assert result["score"] == 1
    assert result["report"][0]["isCorrect"] is True


def test_whitespace_is_not_trimmed():
    assert answers_match(" Paris", "Paris") is False


def test_empty_answer_never_matches():
    assert answers_match("", "") is False
    assert answers_match(None, "Paris") is False


def test_unknown_answer_keys_are_ignored():
    result = score_exam([_q("q1", "A")], {"q1": "A", "other": "A"})
    assert result["score"] == 1
    assert len(result["report"]) == 1


def test_max_score_is_sum_of_points_regardless_of_answers():
    questions = [_q("q1", "A", 3), _q("q2", "B", 4)]
    for answers in ({}, {"q1": "A"}, {"q1": "A", "q2": "B"}, {"q1": "x", "q2": "y"}):
        result = score_exam(questions, answers)
        assert result["max_score"] == 7
        assert 0 <= result["score"] <= result["max_score"]


def test_scoring_is_deterministic():
    questions = [_q("q1", "A", 2), _q("q2", "b", 1)]
    answers = {"q1": "a", "q2": "B"}
    assert score_exam(questions, answers) == score_exam(questions, answers)


@pytest.mark.parametrize(
    "percentage, bucket",
    [
        (100, 5),
        (90, 5),
        (89.9, 10),
        (80, 10),
        (79.9, 20),
        (70, 20),
        (69.9, 30),
        (60, 30),
        (59.9, 50),
        (50, 50),
        (49.9, 70),
        (0, 70),
    ],
)
def test_percentile_bucket_boundaries(percentage, bucket):
    assert percentile_bucket(percentage) == bucket


@pytest.mark.parametrize(
    "percentage, label",
    [(95, "excellent"), (90, "excellent"), (80, "good"), (75, "good"), (60, "satisfactory"), (59.9, "needs improvement")],
)
def test_performance_label_bands(percentage, label):
    assert performance_label(percentage) == label


def test_pass_threshold():
    assert is_passing(70) is True
    assert is_passing(69.99) is False
