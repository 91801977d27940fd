from typing import Any, Dict, Iterator, Mapping, Optional, Set, Tuple

from schooltest.schemas import (
    GradeResult, GradingMode, Question, QuestionResult, QuestionType,
    StudentInfo, Submission, Test, now_ms,
)

MIN_GRADE = 2
MAX_GRADE = 5


def iter_questions(test: Test) -> Iterator[Tuple[int, Question]]:
    """Every question of the test with its stage index, in document order"""
    for stage_index, stage in enumerate(test.stages or []):
        for question in stage.questions or []:
            yield stage_index, question


def question_points(test: Test, question: Question) -> float:
    mode = test.grading_mode
    if mode == GradingMode.AUTO_SIMPLE or mode == GradingMode.MANUAL:
        return 1
    if mode == GradingMode.AUTO_COMPLEX:
        return float(question.points or 0)
    return 0


def _as_index(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _chosen_indices(answer: Any, option_count: int) -> Set[int]:
    values = answer if isinstance(answer, (list, tuple, set)) else [answer]
    chosen = set()
    for value in values:
        index = _as_index(value)
        if index is not None and 0 <= index < option_count:
            chosen.add(index)
    return chosen


def _is_answered(answer: Any) -> bool:
    if answer is None:
        return False
    if isinstance(answer, str):
        return bool(answer.strip())
    if isinstance(answer, (list, tuple, set)):
        return bool(answer)
    return True


def _score_text(question: Question, answer: Any, points: float) -> QuestionResult:
    accepted = {
        value.strip().lower()
        for value in question.correct_answers or []
        if isinstance(value, str) and value.strip()
    }
    correct = _is_answered(answer) and str(answer).strip().lower() in accepted
    return QuestionResult(points=points if correct else 0, max_points=points, correct=correct)


def _score_choice(question: Question, answer: Any, points: float, mode) -> QuestionResult:
    options = question.options or []
    correct_set = {i for i, option in enumerate(options) if option.correct}
    chosen = _chosen_indices(answer, len(options)) if _is_answered(answer) else set()

    if not question.is_multi_select:
        # radio semantics: exactly one pick, and it has to be the correct option
        correct = bool(correct_set) and chosen == correct_set
        return QuestionResult(points=points if correct else 0, max_points=points, correct=correct)

    total_correct = question.correct_count
    correct_hits = len(chosen & correct_set)
    incorrect_hits = len(chosen - correct_set)
    all_right = correct_hits == total_correct and incorrect_hits == 0

    if mode == GradingMode.AUTO_COMPLEX:
        awarded = max(0.0, (correct_hits - incorrect_hits) * points / total_correct)
    else:
        awarded = points if all_right else 0
    return QuestionResult(points=awarded, max_points=points, correct=all_right)


def score_question(test: Test, question: Question, answer: Any) -> QuestionResult:
    points = question_points(test, question)
    if question.type == QuestionType.TEXT:
        return _score_text(question, answer, points)
    if question.type == QuestionType.CHOICE:
        return _score_choice(question, answer, points, test.grading_mode)
    return QuestionResult(points=0, max_points=points, correct=False)


def grade(test: Test, answers: Optional[Mapping[str, Any]]) -> GradeResult:
    """
    Score a set of answers against a test definition.

    Answers keyed by ids the test doesn't know are ignored and missing answers
    earn nothing. Manual tests are not scored: max_score is the question count
    and score stays None until a teacher assigns a grade.
    """
    answers = answers or {}
    if test.grading_mode == GradingMode.MANUAL:
        count = sum(1 for _ in iter_questions(test))
        return GradeResult(score=None, max_score=count)

    score = 0.0
    max_score = 0.0
    results: Dict[str, QuestionResult] = {}
    for _, question in iter_questions(test):
        result = score_question(test, question, answers.get(question.id))
        results[question.id] = result
        score += result.points
        max_score += result.max_points
    return GradeResult(score=score, max_score=max_score, questions=results)


def calc_grade(score: Optional[float], max_score: float) -> int:
    """Map a score to the 2–5 school scale"""
    if not max_score or max_score <= 0:
        return MIN_GRADE
    score = score or 0
    # compare scaled values instead of a float percentage so 70/100 is exactly 70%
    if score * 100 >= 90 * max_score:
        return 5
    if score * 100 >= 70 * max_score:
        return 4
    if score * 100 >= 50 * max_score:
        return 3
    return MIN_GRADE


def round_points(value: Optional[float]) -> Optional[float]:
    """Display rounding; stored scores keep full precision"""
    if value is None:
        return None
    return round(value, 2)


def unanswered_by_stage(test: Test, answers: Optional[Mapping[str, Any]]) -> Dict[int, int]:
    answers = answers or {}
    missing: Dict[int, int] = {}
    for stage_index, question in iter_questions(test):
        if not _is_answered(answers.get(question.id)):
            missing[stage_index] = missing.get(stage_index, 0) + 1
    return missing


def build_submission(test: Test, student: StudentInfo, answers: Mapping[str, Any],
                     fingerprint: str = "", now: Optional[int] = None) -> Tuple[Submission, GradeResult]:
    result = grade(test, answers)
    automatic = test.grading_mode != GradingMode.MANUAL
    submission = Submission(
        test_id=test.id,
        student_name=student.student_name,
        student_last_name=student.student_last_name,
        student_class=student.student_class,
        fingerprint=fingerprint or "",
        submitted_at=now if now is not None else now_ms(),
        answers=dict(answers),
        score=result.score if automatic else None,
        max_score=result.max_score,
        graded=automatic,
        grade=calc_grade(result.score, result.max_score) if automatic else None,
    )
    return submission, result


def apply_manual_grade(submission: Submission, grade_value: int,
                       comments: Optional[Mapping[str, str]] = None) -> Submission:
    if isinstance(grade_value, bool) or not isinstance(grade_value, int) \
            or not MIN_GRADE <= grade_value <= MAX_GRADE:
        raise ValueError(f"Grade must be an integer between {MIN_GRADE} and {MAX_GRADE}")
    update = {"grade": grade_value, "graded": True}
    if comments is not None:
        update["teacher_comments"] = dict(comments)
    return submission.model_copy(update=update)
