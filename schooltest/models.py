from sqlalchemy import Column, String, Text, Boolean, Integer, BigInteger, Float, JSON

from schooltest.database import Base


class TestRecord(Base):
    __tablename__ = 'tests'

    # Public identifier generated at authoring time (schemas.generate_id)
    id = Column(String(40), primary_key=True, index=True)

    title = Column(String(255), nullable=False)
    description = Column(Text, default="", nullable=False)
    created_by = Column(String(128), default="", nullable=False)

    # 'auto-simple' | 'auto-complex' | 'manual', fixed at creation
    grading_mode = Column(String(16), default='auto-simple', nullable=False)
    published = Column(Boolean, default=False, nullable=False)

    # Minutes; NULL means unlimited
    time_limit = Column(Integer, nullable=True)

    stages = Column(
        JSON,
        nullable=False,
        comment="Ordered stages with their questions, stored as the camelCase wire JSON"
    )
    images = Column(
        JSON,
        nullable=False,
        default=dict,
        comment="{'<image id>': {'name': 'a.jpg', 'data': 'data:image/jpeg;base64,...'}}"
    )

    # Epoch milliseconds, as sent by the web client
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class SubmissionRecord(Base):
    __tablename__ = 'submissions'

    id = Column(String(40), primary_key=True, index=True)
    test_id = Column(String(40), index=True, nullable=False)

    student_name = Column(String(128), default="", nullable=False)
    student_last_name = Column(String(128), default="", nullable=False)
    student_class = Column(String(32), default="", nullable=False)
    fingerprint = Column(String(128), default="", nullable=False)

    submitted_at = Column(BigInteger, nullable=False)
    answers = Column(JSON, nullable=False, comment="{'<question id>': 2 | [0, 3] | 'free text'}")

    # Full precision; rounded only for display
    score = Column(Float, nullable=True)
    max_score = Column(Float, default=0, nullable=False)
    graded = Column(Boolean, default=False, nullable=False)
    grade = Column(Integer, nullable=True)
    teacher_comments = Column(JSON, nullable=False, default=dict)


class FingerprintEntry(Base):
    __tablename__ = 'fingerprints'

    fingerprint = Column(String(128), primary_key=True)
    users = Column(JSON, nullable=False, default=list)
    last_seen = Column(BigInteger, nullable=True)


class DeviceSignalEntry(Base):
    __tablename__ = 'device_signals'

    signal_key = Column(String(255), primary_key=True)
    users = Column(JSON, nullable=False, default=list)


class UserRiskRecord(Base):
    __tablename__ = 'user_risk'

    user_id = Column(String(128), primary_key=True)
    score = Column(Integer, default=0, nullable=False)
    suspicious = Column(Boolean, default=False, nullable=False)
    reasons = Column(JSON, nullable=False, default=list)
