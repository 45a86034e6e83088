from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from examprep.core.auth import TokenData, get_current_user
from examprep.core.storage import Storage, get_storage
from examprep.services.recommendations import RecommendationSynthesizer

router = APIRouter()

class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    user_id: str
    target_exam: Optional[str] = None
    study_area: Optional[str] = None
    study_goal: Optional[str] = None
    updated_at: Optional[datetime] = None

class ProfileUpdate(BaseModel):
    target_exam: Optional[str] = Field(default=None, max_length=255)
    study_area: Optional[str] = Field(default=None, max_length=255)
    study_goal: Optional[str] = None

@router.get("", response_model=ProfileOut)
def get_profile(user: TokenData = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return RecommendationSynthesizer(storage).get_profile(user.sub)

@router.patch("", response_model=ProfileOut)
def update_profile(payload: ProfileUpdate, user: TokenData = Depends(get_current_user),
                   storage: Storage = Depends(get_storage)):
    return RecommendationSynthesizer(storage).update_profile(user.sub, **payload.model_dump(exclude_unset=True))
