"""
Shared fixtures. The API tests run against a throwaway SQLite file; the URL
has to be in the environment before anything imports schooltest.config.
"""
import asyncio
import os
import tempfile

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="schooltest-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["IP_LOOKUP_URL"] = ""

from schooltest import schemas  # noqa: E402


def choice_question(qid, correct_flags, points=1, text="Pick one"):
    return schemas.Question(
        id=qid,
        type="choice",
        text=text,
        points=points,
        options=[schemas.Option(text=f"option {i}", correct=flag) for i, flag in enumerate(correct_flags)],
    )


def text_question(qid, accepted, points=1, text="Type the answer"):
    return schemas.Question(id=qid, type="text", text=text, points=points, correct_answers=list(accepted))


def make_test(mode, *stages_questions, **fields):
    """make_test('auto-simple', [q1, q2], [q3]) -> a Test with one stage per list"""
    stages = [
        schemas.Stage(id=f"s{i}", title=f"Stage {i + 1}", questions=list(questions))
        for i, questions in enumerate(stages_questions)
    ]
    return schemas.Test(id=fields.pop("id", "t1"), title="Quiz", grading_mode=mode, stages=stages, **fields)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from schooltest.database import Base, engine
    from schooltest.main import app

    async def _drop_tables():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    asyncio.run(_drop_tables())
    # lifespan recreates the tables
    with TestClient(app) as test_client:
        yield test_client
