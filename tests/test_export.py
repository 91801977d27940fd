"""
Test: the results table behind the Excel export.
"""
from conftest import choice_question, make_test, text_question
from schooltest import schemas
from schooltest.crud import submissions_frame
from schooltest.grading import build_submission

STUDENT = schemas.StudentInfo(student_name="Anna", student_last_name="Ivanova", student_class="7B")


class TestSubmissionsFrame:
    def test_auto_test_shows_points(self):
        test = make_test(
            "auto-complex",
            [choice_question("q1", [True, True, False], points=1)],
            [text_question("q2", ["a"], points=2)],
        )
        submission, _ = build_submission(test, STUDENT, {"q1": [0], "q2": "A"}, now=0)
        df = submissions_frame(test, [submission])

        assert list(df.columns) == ['№', 'Student', 'Class', '1', '2', 'Score', 'Max', 'Grade', 'Submitted']
        row = df.iloc[0]
        assert row['Student'] == "Anna Ivanova"
        assert row['1'] == 0.5
        assert row['2'] == 2
        assert row['Score'] == 2.5
        assert row['Max'] == 3
        assert row['Grade'] == 4

    def test_manual_test_shows_answers(self):
        test = make_test("manual", [text_question("q1", []), choice_question("q2", [True, False])])
        submission, _ = build_submission(test, STUDENT, {"q1": "my essay"}, now=0)
        df = submissions_frame(test, [submission])

        row = df.iloc[0]
        assert row['1'] == "my essay"
        assert row['2'] == ""
        assert row['Max'] == 1 + 1

    def test_rows_are_numbered(self):
        test = make_test("auto-simple", [choice_question("q1", [True, False])])
        submissions = [build_submission(test, STUDENT, {"q1": 0}, now=i)[0] for i in range(3)]
        assert list(submissions_frame(test, submissions)['№']) == [1, 2, 3]
