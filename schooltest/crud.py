import logging
from io import BytesIO
from typing import Dict, List, Mapping, Optional, Tuple

import pandas as pd
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from schooltest import models, schemas
from schooltest.anticheat import RiskBoard, UserRegistry
from schooltest.grading import grade, iter_questions, round_points
from schooltest.images import prune_images
from schooltest.schemas import GradingMode, now_ms

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

def to_test_schema(record: models.TestRecord) -> schemas.Test:
    return schemas.Test.model_validate({
        "id": record.id,
        "title": record.title,
        "description": record.description or "",
        "created_by": record.created_by or "",
        "created_at": record.created_at,
        "updated_at": record.updated_at,
        "grading_mode": record.grading_mode,
        "published": record.published,
        "time_limit": record.time_limit,
        "stages": record.stages or [],
        "images": record.images or {},
    })


def _test_columns(test: schemas.Test) -> Dict:
    return {
        "title": test.title,
        "description": test.description,
        "created_by": test.created_by,
        "grading_mode": GradingMode(test.grading_mode).value,
        "published": test.published,
        "time_limit": test.time_limit,
        "stages": [stage.model_dump(by_alias=True, mode="json") for stage in test.stages],
        "images": {key: image.model_dump(by_alias=True, mode="json") for key, image in test.images.items()},
        "created_at": test.created_at,
        "updated_at": test.updated_at,
    }


async def _get_test_record(db: AsyncSession, test_id: str) -> Optional[models.TestRecord]:
    result = await db.execute(
        select(models.TestRecord).filter(models.TestRecord.id == test_id)
    )
    return result.scalar_one_or_none()


async def get_test_by_id(db: AsyncSession, test_id: str) -> Optional[schemas.Test]:
    record = await _get_test_record(db, test_id)
    return to_test_schema(record) if record else None


async def get_all_tests(db: AsyncSession, published_only: bool = False) -> List[schemas.Test]:
    query = select(models.TestRecord).order_by(models.TestRecord.created_at)
    if published_only:
        query = query.where(models.TestRecord.published.is_(True))
    result = await db.execute(query)
    return [to_test_schema(record) for record in result.scalars().all()]


async def save_test(test: schemas.Test, db: AsyncSession) -> schemas.Test:
    test = prune_images(test)
    db.add(models.TestRecord(id=test.id, **_test_columns(test)))
    await db.commit()
    return test


async def update_test(test_id: str, update: schemas.TestUpdate, db: AsyncSession) -> Optional[schemas.Test]:
    record = await _get_test_record(db, test_id)
    if record is None:
        return None

    # Only fields that were actually sent; time_limit may be cleared with null/0
    changes = {
        key: getattr(update, key)
        for key in update.model_fields_set
        if key == "time_limit" or getattr(update, key) is not None
    }
    changes["updated_at"] = now_ms()
    test = prune_images(to_test_schema(record).model_copy(update=changes))

    for key, value in _test_columns(test).items():
        setattr(record, key, value)
    await db.commit()
    await db.refresh(record)
    return test


async def delete_test(test_id: str, db: AsyncSession) -> Optional[schemas.Test]:
    record = await _get_test_record(db, test_id)
    if record is None:
        return None
    test = to_test_schema(record)
    await db.delete(record)
    await db.commit()
    return test  # Return deleted object or None


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------

def submission_from_record(record: models.SubmissionRecord) -> schemas.Submission:
    return schemas.Submission.model_validate({
        "id": record.id,
        "test_id": record.test_id,
        "student_name": record.student_name,
        "student_last_name": record.student_last_name,
        "student_class": record.student_class,
        "fingerprint": record.fingerprint or "",
        "submitted_at": record.submitted_at,
        "answers": record.answers or {},
        "score": record.score,
        "max_score": record.max_score,
        "graded": record.graded,
        "grade": record.grade,
        "teacher_comments": record.teacher_comments or {},
    })


async def insert_submission(submission: schemas.Submission, db: AsyncSession) -> schemas.Submission:
    db.add(models.SubmissionRecord(**submission.model_dump(mode="json")))
    await db.commit()
    return submission


async def get_submissions(db: AsyncSession, test_id: str) -> List[schemas.Submission]:
    result = await db.execute(
        select(models.SubmissionRecord)
        .where(models.SubmissionRecord.test_id == test_id)
        .order_by(models.SubmissionRecord.submitted_at)
    )
    return [submission_from_record(record) for record in result.scalars().all()]


async def get_submission(db: AsyncSession, submission_id: str) -> Optional[schemas.Submission]:
    record = await db.get(models.SubmissionRecord, submission_id)
    return submission_from_record(record) if record else None


async def save_manual_grade(db: AsyncSession, submission: schemas.Submission) -> schemas.Submission:
    record = await db.get(models.SubmissionRecord, submission.id)
    if record is None:
        raise ValueError("Submission not found")
    record.grade = submission.grade
    record.graded = submission.graded
    record.teacher_comments = dict(submission.teacher_comments)
    await db.commit()
    return submission


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def submissions_frame(test: schemas.Test, submissions: List[schemas.Submission]) -> pd.DataFrame:
    """
    One row per submission: student, a column per question, totals and grade.
    Auto-graded tests show the points earned per question (re-scored from the
    stored answers); manual tests show the raw answers for the teacher.
    """
    question_ids = [question.id for _, question in iter_questions(test)]
    question_cols = [str(i + 1) for i in range(len(question_ids))]
    automatic = test.grading_mode != GradingMode.MANUAL

    data = []
    for count, submission in enumerate(submissions, start=1):
        row = {
            '№': count,
            'Student': f"{submission.student_name} {submission.student_last_name}".strip(),
            'Class': submission.student_class,
        }
        results = grade(test, submission.answers).questions if automatic else {}
        for col, question_id in zip(question_cols, question_ids):
            if automatic:
                result = results.get(question_id)
                row[col] = round_points(result.points) if result else 0
            else:
                answer = submission.answers.get(question_id)
                row[col] = "" if answer is None else str(answer)
        row['Score'] = round_points(submission.score)
        row['Max'] = round_points(submission.max_score)
        row['Grade'] = submission.grade
        row['Submitted'] = pd.to_datetime(submission.submitted_at, unit='ms')
        data.append(row)

    cols = ['№', 'Student', 'Class'] + question_cols + ['Score', 'Max', 'Grade', 'Submitted']
    return pd.DataFrame(data, columns=cols)


async def export_submissions(db: AsyncSession, test_id: str) -> Tuple[BytesIO, str]:
    """
    Export a test's submissions to an Excel file.
    Returns a tuple of (BytesIO containing the file, filename).
    """
    test = await get_test_by_id(db, test_id)
    if not test:
        raise ValueError("Test not found")

    submissions = await get_submissions(db, test_id)
    if not submissions:
        raise ValueError("No submissions for this test yet")

    df = submissions_frame(test, submissions)

    output = BytesIO()
    with pd.ExcelWriter(output, engine='xlsxwriter') as writer:
        df.to_excel(writer, index=False, sheet_name='Results')

        # Auto-adjust column widths
        worksheet = writer.sheets['Results']
        for i, col in enumerate(df.columns):
            max_len = max(df[col].astype(str).map(len).max(), len(col)) + 2
            worksheet.set_column(i, i, max_len)

    output.seek(0)
    filename = f"test_{test_id}_results.xlsx"
    logger.info(f"Exported {len(df)} submissions of test {test_id}")
    return output, filename


# ---------------------------------------------------------------------------
# Anti-cheat registries
# ---------------------------------------------------------------------------

class SqlUserRegistry(UserRegistry):
    """UserRegistry over a table with a string key column and a JSON 'users' list"""

    def __init__(self, db: AsyncSession, model, key_column: str):
        self.db = db
        self.model = model
        self.key_column = key_column

    async def users(self, key: str) -> List[str]:
        entry = await self.db.get(self.model, key)
        return list(entry.users or []) if entry else []

    async def add_user(self, key: str, user_id: str) -> List[str]:
        entry = await self.db.get(self.model, key)
        if entry is None:
            entry = self.model(**{self.key_column: key, "users": []})
            self.db.add(entry)
        users = list(entry.users or [])
        if user_id not in users:
            users.append(user_id)
        # reassign: in-place changes to a JSON column are not tracked
        entry.users = users
        if hasattr(entry, "last_seen"):
            entry.last_seen = now_ms()
        await self.db.commit()
        return users


def fingerprint_registry(db: AsyncSession) -> SqlUserRegistry:
    return SqlUserRegistry(db, models.FingerprintEntry, "fingerprint")


def device_signal_registry(db: AsyncSession) -> SqlUserRegistry:
    return SqlUserRegistry(db, models.DeviceSignalEntry, "signal_key")


class SqlRiskBoard(RiskBoard):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: str) -> Optional[schemas.RiskRecord]:
        record = await self.db.get(models.UserRiskRecord, user_id)
        return schemas.RiskRecord.model_validate(record) if record else None

    async def put(self, user_id: str, record: schemas.RiskRecord) -> None:
        entry = await self.db.get(models.UserRiskRecord, user_id)
        if entry is None:
            entry = models.UserRiskRecord(user_id=user_id)
            self.db.add(entry)
        entry.score = record.score
        entry.suspicious = record.suspicious
        entry.reasons = list(record.reasons)
        await self.db.commit()

    async def suspicious_users(self) -> Mapping[str, schemas.RiskRecord]:
        result = await self.db.execute(
            select(models.UserRiskRecord).where(models.UserRiskRecord.suspicious.is_(True))
        )
        return {
            record.user_id: schemas.RiskRecord.model_validate(record)
            for record in result.scalars().all()
        }
