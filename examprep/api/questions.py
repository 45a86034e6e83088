from datetime import datetime
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, constr

from examprep.core.auth import TokenData, get_current_user, require_roles
from examprep.core.storage import Storage, get_storage
from examprep.services.question_bank import QuestionBank
from examprep.services.text_generation import TextGenerator, get_text_generator

router = APIRouter()

class OptionIn(BaseModel):
    letter: constr(min_length=1, max_length=8)
    text: str

class QuestionCreate(BaseModel):
    content: constr(min_length=1)
    type: Literal["objective", "essay"]
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    subject_id: Optional[str] = None
    options: Optional[List[OptionIn]] = None
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None
    source: Optional[str] = None

class QuestionPublic(BaseModel):
    """A question as shown while taking an exam: no answer key."""
    model_config = ConfigDict(from_attributes=True)
    id: str
    subject_id: Optional[str] = None
    content: str
    type: str
    difficulty: str
    options: Optional[List[Dict[str, str]]] = None

class QuestionOut(QuestionPublic):
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None
    source: Optional[str] = None
    created_at: Optional[datetime] = None

class Explanation(BaseModel):
    question_id: str
    explanation: str

@router.get("", response_model=List[QuestionOut])
def list_questions(subject_id: Optional[str] = None, user: TokenData = Depends(get_current_user),
                   storage: Storage = Depends(get_storage)):
    return QuestionBank(storage).list_questions(subject_id)

@router.post("", response_model=QuestionOut, status_code=201)
def create_question(payload: QuestionCreate, user: TokenData = Depends(require_roles("author", "admin")),
                    storage: Storage = Depends(get_storage)):
    return QuestionBank(storage).create_question(
        content=payload.content, qtype=payload.type, difficulty=payload.difficulty,
        subject_id=payload.subject_id, options=[o.model_dump() for o in payload.options or []],
        correct_answer=payload.correct_answer, explanation=payload.explanation,
        source=payload.source, created_by=user.sub,
    )

@router.get("/{question_id}", response_model=QuestionOut)
def get_question(question_id: str, user: TokenData = Depends(get_current_user),
                 storage: Storage = Depends(get_storage)):
    return QuestionBank(storage).get_question(question_id)

@router.post("/{question_id}/explain", response_model=Explanation)
async def explain_question(question_id: str, user: TokenData = Depends(get_current_user),
                           storage: Storage = Depends(get_storage),
                           generator: TextGenerator = Depends(get_text_generator)):
    text = await QuestionBank(storage).explain(question_id, generator)
    return Explanation(question_id=question_id, explanation=text)
