import enum

from sqlalchemy import Column, String, Text, BigInteger
from oj_runner.core.config import settings
from oj_runner.db.base import Base


class SubmissionStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class Submission(Base):
    __tablename__ = settings.SUBMISSIONS_TABLE

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, index=True)
    problem_id = Column(String, index=True)
    language = Column(String)
    code = Column(Text)
    status = Column(String, default=SubmissionStatus.PENDING.value)  # pending, running, completed, error
    result = Column(Text, nullable=True)  # verdict output or error text
    created_at = Column(BigInteger, nullable=True)  # unix seconds
    updated_at = Column(BigInteger, nullable=True)
