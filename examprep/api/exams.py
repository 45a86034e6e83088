from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, ConfigDict, Field

from examprep.api.questions import QuestionPublic
from examprep.core.auth import TokenData, get_current_user
from examprep.core.storage import Storage, get_storage
from examprep.services.exams import ExamService
from examprep.services.text_generation import TextGenerator, get_text_generator

router = APIRouter()

class ExamCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    time_limit: Optional[int] = Field(default=None, description="minutes; omit for untimed exams")
    difficulty: Optional[Literal["easy", "medium", "hard", "mixed"]] = None

class ExamOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    title: str
    description: Optional[str] = None
    time_limit: Optional[int] = None
    difficulty: Optional[str] = None
    question_count: int
    status: str
    created_at: Optional[datetime] = None

class AttachQuestions(BaseModel):
    question_ids: List[str]

class GenerateQuestions(BaseModel):
    subject_ids: List[str]
    question_count: int = Field(default=5, ge=1, le=50)
    difficulty: Literal["easy", "medium", "hard", "mixed"] = "medium"
    content_prompt: Optional[str] = None

class ExamQuestionOut(BaseModel):
    order_index: int
    question: QuestionPublic

def _items(service: ExamService, exam_id: str, user_id: str) -> List[ExamQuestionOut]:
    return [ExamQuestionOut(order_index=eq.order_index, question=QuestionPublic.model_validate(q))
            for eq, q in service.questions(exam_id, user_id)]

@router.get("", response_model=List[ExamOut])
def list_exams(user: TokenData = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return ExamService(storage).list(user.sub)

@router.post("", response_model=ExamOut, status_code=201)
def create_exam(payload: ExamCreate, user: TokenData = Depends(get_current_user),
                storage: Storage = Depends(get_storage)):
    return ExamService(storage).create(user.sub, payload.title, payload.description,
                                       payload.time_limit, payload.difficulty)

@router.get("/{exam_id}", response_model=ExamOut)
def get_exam(exam_id: str, user: TokenData = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return ExamService(storage).get(exam_id, user.sub)

@router.delete("/{exam_id}", status_code=204)
def delete_exam(exam_id: str, user: TokenData = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    ExamService(storage).delete(exam_id, user.sub)
    return Response(status_code=204)

@router.get("/{exam_id}/questions", response_model=List[ExamQuestionOut])
def list_exam_questions(exam_id: str, user: TokenData = Depends(get_current_user),
                        storage: Storage = Depends(get_storage)):
    return _items(ExamService(storage), exam_id, user.sub)

@router.post("/{exam_id}/questions", response_model=List[ExamQuestionOut], status_code=201)
def attach_questions(exam_id: str, payload: AttachQuestions, user: TokenData = Depends(get_current_user),
                     storage: Storage = Depends(get_storage)):
    service = ExamService(storage)
    service.attach_questions(exam_id, user.sub, payload.question_ids)
    return _items(service, exam_id, user.sub)

@router.post("/{exam_id}/generate-questions", response_model=List[ExamQuestionOut], status_code=201)
async def generate_questions(exam_id: str, payload: GenerateQuestions, user: TokenData = Depends(get_current_user),
                             storage: Storage = Depends(get_storage),
                             generator: TextGenerator = Depends(get_text_generator)):
    service = ExamService(storage)
    await service.generate_questions(exam_id, user.sub, payload.subject_ids, generator,
                                     question_count=payload.question_count, difficulty=payload.difficulty,
                                     content_prompt=payload.content_prompt)
    return _items(service, exam_id, user.sub)
