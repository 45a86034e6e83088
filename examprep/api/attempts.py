from datetime import datetime
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field, field_validator

from examprep.core.auth import TokenData, get_current_user
from examprep.core.storage import Storage, get_storage
from examprep.services.attempts import AttemptService, FinalAnswer, SubmissionResult
from examprep.services.text_generation import TextGenerator, get_text_generator

router = APIRouter()

def _two_places(v: Optional[float]) -> Optional[float]:
    return round(v, 2) if v is not None else v

class AttemptCreate(BaseModel):
    exam_id: str

class AttemptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    exam_id: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    score: Optional[float] = None
    correct_count: Optional[int] = None
    incorrect_count: Optional[int] = None
    time_spent: Optional[int] = None

    @field_validator("score")
    @classmethod
    def round_score(cls, v):
        return _two_places(v)

class AnswerIn(BaseModel):
    question_id: str
    user_answer: Optional[str] = None
    time_spent: int = Field(default=0, ge=0, description="seconds spent since the last save")

class AnswerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    attempt_id: str
    question_id: str
    user_answer: Optional[str] = None
    time_spent: int
    is_correct: Optional[bool] = None

class FinalAnswerIn(BaseModel):
    question_id: str
    user_answer: Optional[str] = None
    time_spent: int = Field(default=0, ge=0)

class SubmitIn(BaseModel):
    answers: List[FinalAnswerIn] = []
    total_time_spent: Optional[int] = Field(default=None, ge=0)

class SubmitOut(BaseModel):
    attempt_id: str
    status: str
    score: float
    correct_count: int
    incorrect_count: int
    pending_count: int
    total_questions: int
    time_spent: Optional[int] = None

class QuestionResultOut(BaseModel):
    question_id: str
    order_index: int
    content: str
    type: str
    options: Optional[List[Dict[str, str]]] = None
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None
    user_answer: Optional[str] = None
    result: Literal["correct", "incorrect", "pending"]
    ai_score: Optional[float] = None
    ai_evaluation: Optional[str] = None
    time_spent: int = 0

class SubjectRollupOut(BaseModel):
    subject_id: Optional[str] = None
    subject_name: str
    correct: int
    incorrect: int
    pending: int
    accuracy: float

class ResultsOut(BaseModel):
    attempt: AttemptOut
    questions: List[QuestionResultOut]
    subjects: List[SubjectRollupOut]

def get_attempt_service(storage: Storage = Depends(get_storage),
                        generator: TextGenerator = Depends(get_text_generator)) -> AttemptService:
    return AttemptService(storage, generator)

def _submission(result: SubmissionResult) -> SubmitOut:
    s = result.summary
    return SubmitOut(attempt_id=result.attempt_id, status=result.status, score=round(s.score, 2),
                     correct_count=s.correct_count, incorrect_count=s.incorrect_count,
                     pending_count=s.pending_count, total_questions=result.total_questions,
                     time_spent=result.time_spent)

@router.post("", response_model=AttemptOut, status_code=201)
def create_attempt(payload: AttemptCreate, user: TokenData = Depends(get_current_user),
                   service: AttemptService = Depends(get_attempt_service)):
    return service.create(payload.exam_id, user.sub)

@router.get("", response_model=List[AttemptOut])
def list_attempts(status: Optional[Literal["in_progress", "completed", "abandoned"]] = None,
                  user: TokenData = Depends(get_current_user),
                  service: AttemptService = Depends(get_attempt_service)):
    return service.list(user.sub, status)

@router.get("/{attempt_id}", response_model=AttemptOut)
def get_attempt(attempt_id: str, user: TokenData = Depends(get_current_user),
                service: AttemptService = Depends(get_attempt_service)):
    return service.get(attempt_id, user.sub)

@router.get("/{attempt_id}/answers", response_model=List[AnswerOut])
def list_answers(attempt_id: str, user: TokenData = Depends(get_current_user),
                 service: AttemptService = Depends(get_attempt_service)):
    return service.answers(attempt_id, user.sub)

@router.post("/{attempt_id}/answer", response_model=AnswerOut)
def record_answer(attempt_id: str, payload: AnswerIn, user: TokenData = Depends(get_current_user),
                  service: AttemptService = Depends(get_attempt_service)):
    return service.record_answer(attempt_id, user.sub, payload.question_id, payload.user_answer, payload.time_spent)

@router.post("/{attempt_id}/submit", response_model=SubmitOut)
async def submit_attempt(attempt_id: str, payload: Optional[SubmitIn] = None,
                         user: TokenData = Depends(get_current_user),
                         service: AttemptService = Depends(get_attempt_service)):
    payload = payload or SubmitIn()
    finals = [FinalAnswer(a.question_id, a.user_answer, a.time_spent) for a in payload.answers]
    return _submission(await service.submit(attempt_id, user.sub, finals, payload.total_time_spent))

@router.post("/{attempt_id}/expire", response_model=SubmitOut)
async def expire_attempt(attempt_id: str, user: TokenData = Depends(get_current_user),
                         service: AttemptService = Depends(get_attempt_service)):
    return _submission(await service.expire(attempt_id, user.sub))

@router.post("/{attempt_id}/abandon", response_model=AttemptOut)
def abandon_attempt(attempt_id: str, user: TokenData = Depends(get_current_user),
                    service: AttemptService = Depends(get_attempt_service)):
    return service.abandon(attempt_id, user.sub)

@router.post("/{attempt_id}/regrade", response_model=SubmitOut)
async def regrade_attempt(attempt_id: str, user: TokenData = Depends(get_current_user),
                          service: AttemptService = Depends(get_attempt_service)):
    return _submission(await service.regrade(attempt_id, user.sub))

@router.get("/{attempt_id}/results", response_model=ResultsOut)
def attempt_results(attempt_id: str, user: TokenData = Depends(get_current_user),
                    service: AttemptService = Depends(get_attempt_service)):
    res = service.results(attempt_id, user.sub)
    questions = []
    for qr in res.questions:
        q, a = qr.question, qr.answer
        questions.append(QuestionResultOut(
            question_id=q.id, order_index=qr.order_index, content=q.content, type=q.type, options=q.options,
            correct_answer=q.correct_answer, explanation=q.explanation,
            user_answer=a.user_answer if a else None, result=qr.result,
            ai_score=a.ai_score if a else None, ai_evaluation=a.ai_evaluation if a else None,
            time_spent=a.time_spent if a else 0,
        ))
    subjects = [SubjectRollupOut(subject_id=r.subject_id, subject_name=r.subject_name, correct=r.correct,
                                 incorrect=r.incorrect, pending=r.pending, accuracy=round(r.accuracy, 2))
                for r in res.subjects]
    return ResultsOut(attempt=AttemptOut.model_validate(res.attempt), questions=questions, subjects=subjects)
