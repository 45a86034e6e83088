from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, constr

from examprep.core.auth import TokenData, get_current_user, require_roles
from examprep.core.storage import Storage, get_storage
from examprep.services.question_bank import QuestionBank

router = APIRouter()

class SubjectCreate(BaseModel):
    name: constr(min_length=1, max_length=255)
    description: Optional[str] = None

class SubjectOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None

@router.get("", response_model=List[SubjectOut])
def list_subjects(user: TokenData = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return QuestionBank(storage).list_subjects()

@router.post("", response_model=SubjectOut, status_code=201)
def create_subject(payload: SubjectCreate, user: TokenData = Depends(require_roles("author", "admin")),
                   storage: Storage = Depends(get_storage)):
    return QuestionBank(storage).create_subject(payload.name, payload.description)
