from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from examprep.core.auth import TokenData, get_current_user
from examprep.core.storage import Storage, get_storage
from examprep.models.orm import SubjectPerformance
from examprep.services.performance import PerformanceAggregator
from examprep.services.question_bank import GENERAL_SUBJECT

router = APIRouter()

class PerformanceOut(BaseModel):
    subject_id: str
    subject_name: str
    total_questions: int
    correct_answers: int
    average_score: float
    strength_level: str
    last_studied: Optional[datetime] = None

class StatsOut(BaseModel):
    total_attempts: int
    completed_attempts: int
    average_score: float
    total_questions: int
    correct_answers: int
    accuracy: float

def _rows(storage: Storage, rows: List[SubjectPerformance]) -> List[PerformanceOut]:
    subjects = storage.get_subjects({r.subject_id for r in rows})
    return [
        PerformanceOut(
            subject_id=r.subject_id,
            subject_name=subjects[r.subject_id].name if r.subject_id in subjects else GENERAL_SUBJECT,
            total_questions=r.total_questions, correct_answers=r.correct_answers,
            average_score=round(r.average_score, 2), strength_level=r.strength_level,
            last_studied=r.last_studied,
        )
        for r in rows
    ]

@router.get("/performance", response_model=List[PerformanceOut])
def list_performance(user: TokenData = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return _rows(storage, PerformanceAggregator(storage).list_for_user(user.sub))

@router.post("/performance/refresh", response_model=List[PerformanceOut])
def refresh_performance(user: TokenData = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    aggregator = PerformanceAggregator(storage)
    aggregator.refresh_all(user.sub)
    return _rows(storage, aggregator.list_for_user(user.sub))

@router.get("/stats", response_model=StatsOut)
def user_stats(user: TokenData = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    s = PerformanceAggregator(storage).stats(user.sub)
    return StatsOut(total_attempts=s.total_attempts, completed_attempts=s.completed_attempts,
                    average_score=round(s.average_score, 2), total_questions=s.total_questions,
                    correct_answers=s.correct_answers, accuracy=round(s.accuracy, 2))
