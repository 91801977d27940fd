"""
Test: point values, partial credit, the grade scale and submissions.
"""
import pytest

from conftest import choice_question, make_test, text_question
from schooltest import schemas
from schooltest.grading import (
    apply_manual_grade, build_submission, calc_grade, grade, round_points,
    unanswered_by_stage,
)

T, F = True, False


class TestSingleChoice:
    def test_correct_index_gets_full_points(self):
        test = make_test("auto-simple", [choice_question("q1", [F, F, T, F])])
        result = grade(test, {"q1": 2})
        assert result.score == 1
        assert result.max_score == 1
        assert result.questions["q1"].correct

    def test_wrong_index_gets_nothing(self):
        test = make_test("auto-simple", [choice_question("q1", [F, F, T, F])])
        assert grade(test, {"q1": 0}).score == 0

    def test_index_sent_as_string(self):
        test = make_test("auto-simple", [choice_question("q1", [F, T])])
        assert grade(test, {"q1": "1"}).score == 1

    def test_auto_complex_uses_question_points(self):
        test = make_test("auto-complex", [choice_question("q1", [T, F], points=3)])
        result = grade(test, {"q1": 0})
        assert (result.score, result.max_score) == (3, 3)

    def test_out_of_range_index(self):
        test = make_test("auto-simple", [choice_question("q1", [T, F])])
        assert grade(test, {"q1": 7}).score == 0

    def test_no_correct_option_never_scores(self):
        test = make_test("auto-simple", [choice_question("q1", [F, F])])
        result = grade(test, {"q1": 0})
        assert (result.score, result.max_score) == (0, 1)

    def test_list_answer_on_single_correct_question(self):
        test = make_test("auto-complex", [choice_question("q1", [T, F, F], points=2)])
        assert grade(test, {"q1": [0]}).score == 2
        assert grade(test, {"q1": [0, 1]}).score == 0


class TestMultiChoice:
    FLAGS = [T, T, T, F, F]

    def test_partial_credit_auto_complex(self):
        test = make_test("auto-complex", [choice_question("q1", self.FLAGS, points=6)])
        result = grade(test, {"q1": [0, 1, 3]})
        assert result.score == pytest.approx(2)
        assert result.max_score == 6
        assert not result.questions["q1"].correct

    def test_wrong_picks_floor_at_zero(self):
        test = make_test("auto-complex", [choice_question("q1", self.FLAGS, points=6)])
        assert grade(test, {"q1": [0, 3, 4]}).score == 0

    def test_all_correct_auto_complex(self):
        test = make_test("auto-complex", [choice_question("q1", self.FLAGS, points=6)])
        assert grade(test, {"q1": [2, 1, 0]}).score == pytest.approx(6)

    def test_fractional_points_keep_precision(self):
        test = make_test("auto-complex", [choice_question("q1", self.FLAGS, points=1)])
        score = grade(test, {"q1": [0]}).score
        assert score == pytest.approx(1 / 3)
        assert round_points(score) == 0.33

    def test_all_or_nothing_auto_simple(self):
        test = make_test("auto-simple", [choice_question("q1", self.FLAGS, points=6)])
        assert grade(test, {"q1": [0, 1, 3]}).score == 0
        assert grade(test, {"q1": [0, 1]}).score == 0
        result = grade(test, {"q1": [0, 1, 2]})
        assert (result.score, result.max_score) == (1, 1)

    def test_duplicate_indices_count_once(self):
        test = make_test("auto-complex", [choice_question("q1", self.FLAGS, points=3)])
        assert grade(test, {"q1": [0, 0, 0]}).score == pytest.approx(1)


class TestTextAnswers:
    def test_trimmed_case_insensitive(self):
        test = make_test("auto-simple", [text_question("q1", ["Paris"])])
        assert grade(test, {"q1": "  paris "}).score == 1

    def test_any_accepted_answer(self):
        test = make_test("auto-simple", [text_question("q1", ["Paris", "Париж"])])
        assert grade(test, {"q1": "ПАРИЖ"}).score == 1

    def test_wrong_text(self):
        test = make_test("auto-simple", [text_question("q1", ["Paris"])])
        assert grade(test, {"q1": "London"}).score == 0

    def test_no_accepted_answers_never_scores(self):
        test = make_test("auto-simple", [text_question("q1", [])])
        result = grade(test, {"q1": ""})
        assert (result.score, result.max_score) == (0, 1)


class TestTotals:
    def test_missing_and_unknown_answers(self):
        test = make_test("auto-simple", [choice_question("q1", [T, F]), text_question("q2", ["x"])])
        result = grade(test, {"q1": 0, "ghost": "x"})
        assert (result.score, result.max_score) == (1, 2)
        assert set(result.questions) == {"q1", "q2"}

    def test_no_answers_at_all(self):
        test = make_test("auto-simple", [choice_question("q1", [T, F])])
        assert grade(test, None).score == 0

    def test_empty_stage_contributes_nothing(self):
        test = make_test("auto-simple", [], [choice_question("q1", [T, F])])
        assert grade(test, {"q1": 0}).max_score == 1

    def test_stages_accumulate_in_order(self):
        test = make_test(
            "auto-complex",
            [choice_question("q1", [T, F], points=2)],
            [text_question("q2", ["a"], points=3)],
        )
        result = grade(test, {"q1": 0, "q2": "a"})
        assert (result.score, result.max_score) == (5, 5)
        assert list(result.questions) == ["q1", "q2"]

    def test_manual_mode_is_not_scored(self):
        test = make_test("manual", [choice_question("q1", [T, F]), text_question("q2", [])],
                         [text_question("q3", ["x"], points=10)])
        result = grade(test, {"q1": 0})
        assert result.score is None
        assert result.max_score == 3

    def test_unknown_mode_does_not_raise(self):
        test = schemas.Test.model_construct(
            id="t", grading_mode="weird",
            stages=[schemas.Stage(questions=[choice_question("q1", [T, T, F])])],
        )
        result = grade(test, {"q1": [0, 1]})
        assert (result.score, result.max_score) == (0, 0)


class TestCalcGrade:
    @pytest.mark.parametrize("score,max_score,expected", [
        (69, 100, 3),
        (70, 100, 4),
        (0, 0, 2),
        (90, 100, 5),
        (50, 100, 3),
        (49.99, 100, 2),
        (7, 10, 4),
        (None, 10, 2),
    ])
    def test_boundaries(self, score, max_score, expected):
        assert calc_grade(score, max_score) == expected


class TestSubmissions:
    STUDENT = schemas.StudentInfo(student_name=" Anna ", student_last_name="Ivanova", student_class="7B")

    def test_auto_submission_is_graded(self):
        test = make_test("auto-simple", [choice_question("q1", [T, F]), choice_question("q2", [F, T])])
        submission, result = build_submission(test, self.STUDENT, {"q1": 0, "q2": 0}, now=1000)
        assert submission.test_id == "t1"
        assert submission.student_name == "Anna"
        assert submission.submitted_at == 1000
        assert (submission.score, submission.max_score) == (1, 2)
        assert submission.graded
        assert submission.grade == 3
        assert result.questions["q2"].correct is False

    def test_manual_submission_waits_for_teacher(self):
        test = make_test("manual", [text_question("q1", [])])
        submission, _ = build_submission(test, self.STUDENT, {"q1": "essay"})
        assert submission.score is None
        assert submission.grade is None
        assert not submission.graded
        assert submission.max_score == 1

    def test_apply_manual_grade(self):
        test = make_test("manual", [text_question("q1", [])])
        submission, _ = build_submission(test, self.STUDENT, {"q1": "essay"})
        graded = apply_manual_grade(submission, 5, {"q1": "Nice"})
        assert graded.graded and graded.grade == 5
        assert graded.teacher_comments == {"q1": "Nice"}
        assert not submission.graded

    @pytest.mark.parametrize("bad", [1, 6, True, "4"])
    def test_manual_grade_range(self, bad):
        test = make_test("manual", [text_question("q1", [])])
        submission, _ = build_submission(test, self.STUDENT, {"q1": "essay"})
        with pytest.raises(ValueError):
            apply_manual_grade(submission, bad)

    def test_unanswered_by_stage(self):
        test = make_test(
            "auto-simple",
            [choice_question("q1", [T, F]), text_question("q2", ["a"])],
            [choice_question("q3", [T, F], text="multi")],
        )
        assert unanswered_by_stage(test, {"q1": 0, "q2": "  ", "q3": []}) == {0: 1, 1: 1}
        assert unanswered_by_stage(test, {"q1": 0, "q2": "a", "q3": [0]}) == {}
