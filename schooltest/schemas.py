import random
import string
import time
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# Selected option index, array of indices (checkbox questions) or free text
Answer = Union[int, List[int], str]

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_id() -> str:
    """Short random id: eight random base36 chars followed by the clock in base36."""
    prefix = "".join(random.choice(_BASE36) for _ in range(8))
    return prefix + _to_base36(now_ms())


class CamelModel(BaseModel):
    """Base for wire models: snake_case attributes, camelCase JSON"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class GradingMode(str, Enum):
    AUTO_SIMPLE = "auto-simple"
    AUTO_COMPLEX = "auto-complex"
    MANUAL = "manual"


class QuestionType(str, Enum):
    CHOICE = "choice"
    TEXT = "text"


class Option(CamelModel):
    text: str = ""
    correct: bool = False


class Question(CamelModel):
    id: str = Field(default_factory=generate_id)
    type: QuestionType = QuestionType.CHOICE
    text: str = Field("", description="Question text (markdown)")
    points: float = Field(1, ge=0, description="Point value, used by auto-complex grading only")
    options: List[Option] = Field(default_factory=list)
    explanation: str = Field("", description="Shown after grading (markdown)")
    correct_answers: List[str] = Field(
        default_factory=list,
        description="Accepted answers for text questions, compared trimmed and case-insensitively"
    )

    @property
    def correct_count(self) -> int:
        return sum(1 for option in self.options if option.correct)

    @property
    def is_multi_select(self) -> bool:
        return self.type == QuestionType.CHOICE and self.correct_count > 1


class Stage(CamelModel):
    id: str = Field(default_factory=generate_id)
    title: str = ""
    content: str = Field("", description="Markdown shown before the stage questions")
    questions: List[Question] = Field(default_factory=list)


class StoredImage(CamelModel):
    name: str = ""
    data: str = Field("", description="Self-contained data URI produced at authoring time")


def _check_title(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("Test title must not be empty")
    return value


def _check_stages(stages: List[Stage]) -> List[Stage]:
    if not stages:
        raise ValueError("A test needs at least one stage")
    for stage in stages:
        for question in stage.questions:
            if not question.text.strip():
                raise ValueError(f"Question {question.id} has no text")
            if question.type == QuestionType.CHOICE and len(question.options) < 2:
                raise ValueError(f"Choice question {question.id} needs at least two options")
    return stages


def _empty_time_limit(value):
    # the editor sends 0 for "no limit"
    if value in (None, "", 0):
        return None
    return value


class Test(CamelModel):
    """A complete test definition as authored by a teacher"""
    id: str = Field(default_factory=generate_id)
    title: str = ""
    description: str = ""
    created_by: str = ""
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    grading_mode: GradingMode = GradingMode.AUTO_SIMPLE
    published: bool = False
    time_limit: Optional[int] = Field(default=None, ge=1, description="Minutes")
    stages: List[Stage] = Field(default_factory=list)
    images: Dict[str, StoredImage] = Field(default_factory=dict)

    @field_validator('time_limit', mode='before')
    def convert_time_limit(cls, value):
        return _empty_time_limit(value)


class TestCreate(CamelModel):
    """Authoring payload, validated before it reaches the store"""
    title: str = Field(..., min_length=1)
    description: str = ""
    created_by: str = ""
    grading_mode: GradingMode = GradingMode.AUTO_SIMPLE
    published: bool = False
    time_limit: Optional[int] = Field(default=None, ge=1)
    stages: List[Stage] = Field(..., min_length=1)
    images: Dict[str, StoredImage] = Field(default_factory=dict)

    @field_validator('title')
    def check_title(cls, value: str) -> str:
        return _check_title(value)

    @field_validator('time_limit', mode='before')
    def convert_time_limit(cls, value):
        return _empty_time_limit(value)

    @field_validator('stages')
    def check_stages(cls, stages: List[Stage]) -> List[Stage]:
        return _check_stages(stages)


class TestUpdate(CamelModel):
    """Partial update; only the fields that were sent are applied"""
    title: Optional[str] = None
    description: Optional[str] = None
    published: Optional[bool] = None
    time_limit: Optional[int] = Field(default=None, ge=1)
    stages: Optional[List[Stage]] = None
    images: Optional[Dict[str, StoredImage]] = None

    @field_validator('title')
    def check_title(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_title(value)

    @field_validator('time_limit', mode='before')
    def convert_time_limit(cls, value):
        return _empty_time_limit(value)

    @field_validator('stages')
    def check_stages(cls, stages: Optional[List[Stage]]) -> Optional[List[Stage]]:
        return None if stages is None else _check_stages(stages)


class StudentInfo(CamelModel):
    """Free-text identity fields typed in by the student (not verified)"""
    student_name: str = ""
    student_last_name: str = ""
    student_class: str = ""

    @field_validator('student_name', 'student_last_name', 'student_class')
    def strip_value(cls, value: str) -> str:
        return value.strip()


class Submission(StudentInfo):
    id: str = Field(default_factory=generate_id)
    test_id: str
    fingerprint: str = ""
    submitted_at: int = Field(default_factory=now_ms)
    answers: Dict[str, Answer] = Field(default_factory=dict)
    score: Optional[float] = None
    max_score: float = 0
    graded: bool = False
    grade: Optional[int] = Field(default=None, ge=2, le=5)
    teacher_comments: Dict[str, str] = Field(default_factory=dict)


class SubmitAnswersRequest(StudentInfo):
    answers: Dict[str, Answer]
    fingerprint: str = ""


class ManualGradeRequest(CamelModel):
    grade: int = Field(..., ge=2, le=5)
    teacher_comments: Dict[str, str] = Field(default_factory=dict)


class QuestionResult(CamelModel):
    points: float = 0
    max_points: float = 0
    correct: bool = False


class GradeResult(CamelModel):
    score: Optional[float] = Field(None, description="None when the test is graded manually")
    max_score: float = 0
    questions: Dict[str, QuestionResult] = Field(default_factory=dict)


class SubmitAnswersResponse(CamelModel):
    submission: Submission
    questions: Dict[str, QuestionResult]


class RenderRequest(CamelModel):
    markdown: str = ""
    images: Dict[str, StoredImage] = Field(default_factory=dict)


class RenderResponse(CamelModel):
    html: str


class RenderedQuestion(CamelModel):
    id: str
    text: str
    explanation: str
    options: List[str]


class RenderedStage(CamelModel):
    id: str
    title: str
    content: str
    questions: List[RenderedQuestion]


class RenderedTest(CamelModel):
    id: str
    title: str
    time_limit: Optional[int] = None
    stages: List[RenderedStage]


class RiskRecord(CamelModel):
    """Per-user suspicion state kept by the risk board"""
    score: int = 0
    suspicious: bool = False
    reasons: List[str] = Field(default_factory=list)


class RiskResult(CamelModel):
    score: int = 0
    reasons: List[str] = Field(default_factory=list)


class RiskVerdict(RiskResult):
    suspicious: bool = False
    fingerprint: str = ""
    escalated: List[str] = Field(default_factory=list)


def create_empty_question() -> Question:
    return Question(
        type=QuestionType.CHOICE,
        points=1,
        options=[Option(text="", correct=True), Option(text="", correct=False)],
    )


def create_empty_stage(number: int = 1) -> Stage:
    return Stage(title=f"Stage {number}", questions=[create_empty_question()])


def create_empty_test(created_by: str = "") -> Test:
    return Test(created_by=created_by, stages=[create_empty_stage()])


class DeviceSignals(CamelModel):
    """Raw browser/device values collected on the client at login or registration"""
    screen_width: int = 0
    screen_height: int = 0
    color_depth: int = 0
    avail_width: int = 0
    avail_height: int = 0
    pixel_ratio: float = 1
    timezone: str = ""
    timezone_offset: int = 0
    language: str = ""
    languages: List[str] = Field(default_factory=list)
    platform: str = ""
    user_agent: str = ""
    hardware_concurrency: int = 0
    device_memory: float = 0
    plugins: List[str] = Field(default_factory=list)
    max_touch_points: int = 0
    canvas: str = Field("", description="Canvas rendering fingerprint (data URL)")
    webgl: str = Field("", description="WebGL vendor~renderer")
    audio: str = Field("", description="Audio stack fingerprint")
    local_storage: bool = True
    session_storage: bool = True
    indexed_db: bool = True
    do_not_track: Optional[str] = None
    cookie_enabled: bool = True
    ip: str = ""


class AntiCheatRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    is_new_account: bool = False
    signals: DeviceSignals = Field(default_factory=DeviceSignals)
    fingerprint: str = Field("", description="Client-side hash; computed from signals when empty")
    local_user_ids: List[str] = Field(
        default_factory=list,
        description="User ids previously stored in this browser"
    )
    creation_timestamps: List[int] = Field(
        default_factory=list,
        description="Account creation times (epoch ms) recorded on this device"
    )
