from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from examprep.core.auth import TokenData, get_current_user
from examprep.core.storage import Storage, get_storage
from examprep.jobs.dispatch import schedule_recommendations
from examprep.models.orm import Recommendation
from examprep.services.recommendations import RecommendationSynthesizer, priority_label
from examprep.services.text_generation import TextGenerator, get_text_generator

router = APIRouter()

class RecommendationOut(BaseModel):
    id: str
    type: str
    title: str
    description: Optional[str] = None
    subject_id: Optional[str] = None
    priority: int
    priority_label: str
    is_read: bool
    created_at: Optional[datetime] = None

class GenerateIn(BaseModel):
    target_exam: Optional[str] = None
    background: bool = False

class GenerateOut(BaseModel):
    recommendations: List[RecommendationOut] = []
    job_id: Optional[str] = None

def _out(r: Recommendation) -> RecommendationOut:
    return RecommendationOut(id=r.id, type=r.type, title=r.title, description=r.description,
                             subject_id=r.subject_id, priority=r.priority, priority_label=priority_label(r.priority),
                             is_read=r.is_read, created_at=r.created_at)

@router.get("", response_model=List[RecommendationOut])
def list_recommendations(unread_only: bool = False, user: TokenData = Depends(get_current_user),
                         storage: Storage = Depends(get_storage)):
    return [_out(r) for r in RecommendationSynthesizer(storage).list(user.sub, unread_only)]

@router.post("/generate", response_model=GenerateOut)
async def generate_recommendations(payload: Optional[GenerateIn] = None, user: TokenData = Depends(get_current_user),
                                   storage: Storage = Depends(get_storage),
                                   generator: TextGenerator = Depends(get_text_generator)):
    payload = payload or GenerateIn()
    if payload.background:
        job_id = schedule_recommendations(user.sub, payload.target_exam)
        if job_id:
            return GenerateOut(job_id=job_id)
    recs = await RecommendationSynthesizer(storage).generate(user.sub, generator, payload.target_exam)
    return GenerateOut(recommendations=[_out(r) for r in recs])

@router.patch("/{recommendation_id}/read", response_model=RecommendationOut)
def mark_read(recommendation_id: str, user: TokenData = Depends(get_current_user),
              storage: Storage = Depends(get_storage)):
    return _out(RecommendationSynthesizer(storage).mark_read(recommendation_id, user.sub))
