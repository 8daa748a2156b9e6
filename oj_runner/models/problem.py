from sqlalchemy import Column, String, Text, BigInteger
from oj_runner.core.config import settings
from oj_runner.db.base import Base


class Problem(Base):
    __tablename__ = settings.PROBLEMS_TABLE

    id = Column(String, primary_key=True, index=True)
    title = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    difficulty = Column(String, nullable=True)
    # Judging reference pair; a record missing either one cannot be judged
    input = Column(Text, nullable=True)
    output = Column(Text, nullable=True)
    example_input = Column(Text, nullable=True)
    example_output = Column(Text, nullable=True)
    created_at = Column(BigInteger, nullable=True)  # unix seconds
    updated_at = Column(BigInteger, nullable=True)
