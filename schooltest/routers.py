# schooltest/routers.py
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from schooltest import crud, schemas
from schooltest.anticheat import check_device, clear_suspicion
from schooltest.config import settings
from schooltest.crud import logger
from schooltest.database import get_db
from schooltest.fingerprint import (
    build_fingerprint, client_ip, device_signal_key, has_device_signals, is_public_ip, lookup_ip,
)
from schooltest.grading import apply_manual_grade, build_submission, unanswered_by_stage
from schooltest.markdown import format_inline, render_markdown

router = APIRouter()


# Root endpoint
@router.get("/")
async def root():
    return {"message": "API is working", "docs": "/docs", "redoc": "/redoc"}


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

@router.get("/tests", response_model=List[schemas.Test])
async def get_all_tests(published: bool = False, db: AsyncSession = Depends(get_db)):
    return await crud.get_all_tests(db, published_only=published)


@router.get("/tests/{test_id}", response_model=schemas.Test)
async def get_test(test_id: str, db: AsyncSession = Depends(get_db)):
    test = await crud.get_test_by_id(db, test_id)
    if not test:
        raise HTTPException(status_code=404, detail="Test not found")
    return test


@router.post("/tests", response_model=schemas.Test, status_code=201)
async def insert_test(test_data: schemas.TestCreate, db: AsyncSession = Depends(get_db)):
    test = schemas.Test(**test_data.model_dump())
    return await crud.save_test(test, db)


@router.put("/tests/{test_id}", response_model=schemas.Test)
async def modify_test(test_id: str, update_data: schemas.TestUpdate, db: AsyncSession = Depends(get_db)):
    test = await crud.update_test(test_id, update_data, db)
    if not test:
        raise HTTPException(status_code=404, detail="Test not found")
    return test


@router.delete("/tests/{test_id}", response_model=schemas.Test)
async def delete_test(test_id: str, db: AsyncSession = Depends(get_db)):
    test = await crud.delete_test(test_id, db)
    if not test:
        raise HTTPException(status_code=404, detail="Test not found")
    return test


# ---------------------------------------------------------------------------
# Markdown
# ---------------------------------------------------------------------------

@router.post("/render", response_model=schemas.RenderResponse)
async def render_preview(payload: schemas.RenderRequest):
    """Editor preview of a single markdown document."""
    return schemas.RenderResponse(html=render_markdown(payload.markdown, payload.images))


@router.get("/tests/{test_id}/render", response_model=schemas.RenderedTest)
async def render_test(test_id: str, db: AsyncSession = Depends(get_db)):
    """The test with every markdown field rendered to HTML, as shown to a student."""
    test = await crud.get_test_by_id(db, test_id)
    if not test:
        raise HTTPException(status_code=404, detail="Test not found")

    images = test.images
    stages = [
        schemas.RenderedStage(
            id=stage.id,
            title=stage.title,
            content=render_markdown(stage.content, images),
            questions=[
                schemas.RenderedQuestion(
                    id=question.id,
                    text=render_markdown(question.text, images),
                    explanation=render_markdown(question.explanation, images),
                    options=[format_inline(option.text, images) for option in question.options],
                )
                for question in stage.questions
            ],
        )
        for stage in test.stages
    ]
    return schemas.RenderedTest(id=test.id, title=test.title, time_limit=test.time_limit, stages=stages)


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------

@router.post("/tests/{test_id}/submit", response_model=schemas.SubmitAnswersResponse)
async def submit_answers(test_id: str, payload: schemas.SubmitAnswersRequest, db: AsyncSession = Depends(get_db)):
    test = await crud.get_test_by_id(db, test_id)
    if not test:
        raise HTTPException(status_code=404, detail="Test not found")
    if not test.published:
        raise HTTPException(status_code=403, detail="Test is not published")

    missing = unanswered_by_stage(test, payload.answers)
    if missing:
        raise HTTPException(
            status_code=422,
            detail={
                "message": "Not all questions are answered",
                "unanswered": [{"stage": index, "count": count} for index, count in sorted(missing.items())],
            }
        )

    submission, result = build_submission(test, payload, payload.answers, fingerprint=payload.fingerprint)
    await crud.insert_submission(submission, db)
    return schemas.SubmitAnswersResponse(submission=submission, questions=result.questions)


@router.get("/tests/{test_id}/submissions", response_model=List[schemas.Submission])
async def list_submissions(test_id: str, db: AsyncSession = Depends(get_db)):
    return await crud.get_submissions(db, test_id)


@router.put("/submissions/{submission_id}/grade", response_model=schemas.Submission)
async def grade_submission(submission_id: str, payload: schemas.ManualGradeRequest,
                           db: AsyncSession = Depends(get_db)):
    submission = await crud.get_submission(db, submission_id)
    if not submission:
        raise HTTPException(status_code=404, detail="Submission not found")
    try:
        graded = apply_manual_grade(submission, payload.grade, payload.teacher_comments)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return await crud.save_manual_grade(db, graded)


@router.get("/export/{test_id}")
async def export_results_endpoint(test_id: str, db: AsyncSession = Depends(get_db)):
    """
    Export the submissions of a test as an Excel file.
    """
    try:
        excel_file, filename = await crud.export_submissions(db, test_id)
        return StreamingResponse(
            excel_file,
            media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            headers={"Content-Disposition": f"attachment; filename={filename}"}
        )
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error exporting test results: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


# ---------------------------------------------------------------------------
# Anti-cheat
# ---------------------------------------------------------------------------

async def _resolve_ip(request: Request) -> str:
    """
    Address used in the fingerprint. A private or loopback peer is swapped
    for the public address when a lookup service is configured.
    """
    ip = client_ip(request.headers, request.client.host if request.client else None)
    if not is_public_ip(ip) and settings.ip_lookup_url:
        ip = await lookup_ip(settings.ip_lookup_url, settings.ip_lookup_timeout) or ip
    return ip


@router.post("/anti-cheat/check", response_model=schemas.RiskVerdict)
async def anti_cheat_check(payload: schemas.AntiCheatRequest, request: Request,
                           db: AsyncSession = Depends(get_db)):
    signals = payload.signals
    if not payload.fingerprint and not has_device_signals(signals):
        raise HTTPException(status_code=422, detail="Either a fingerprint or device signals are required")
    if not signals.ip:
        signals = signals.model_copy(update={"ip": await _resolve_ip(request)})

    fingerprint = payload.fingerprint or build_fingerprint(signals)
    return await check_device(
        payload.user_id,
        fingerprint,
        payload.is_new_account,
        crud.fingerprint_registry(db),
        payload.local_user_ids,
        crud.device_signal_registry(db),
        payload.creation_timestamps,
        crud.SqlRiskBoard(db),
        signal_key=device_signal_key(signals),
    )


@router.get("/anti-cheat/suspicious", response_model=Dict[str, schemas.RiskRecord])
async def list_suspicious(db: AsyncSession = Depends(get_db)):
    return await crud.SqlRiskBoard(db).suspicious_users()


@router.get("/anti-cheat/{user_id}", response_model=Optional[schemas.RiskRecord])
async def get_risk(user_id: str, db: AsyncSession = Depends(get_db)):
    return await crud.SqlRiskBoard(db).get(user_id)


@router.delete("/anti-cheat/{user_id}/flag", response_model=schemas.RiskRecord)
async def clear_flag(user_id: str, db: AsyncSession = Depends(get_db)):
    return await clear_suspicion(crud.SqlRiskBoard(db), user_id)
