import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from oj_runner.db.session import get_db
from oj_runner.models import Submission

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/submissions/{submission_id}")
def get_submission(submission_id: str, db: Session = Depends(get_db)):
    submission = db.get(Submission, submission_id)
    if not submission:
        logger.warning(f"Submission not found: {submission_id}", extra={"submission_id": submission_id})
        raise HTTPException(404, "Submission not found")

    return {
        "id": submission.id,
        "user_id": submission.user_id,
        "problem_id": submission.problem_id,
        "language": submission.language,
        "code": submission.code,
        "status": submission.status,
        "result": submission.result,
        "created_at": submission.created_at,
        "updated_at": submission.updated_at,
    }
