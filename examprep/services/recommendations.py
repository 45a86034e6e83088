"""
Study recommendations from per-subject performance.

Generation is best-effort: upstream failures produce an empty list, never an
error, and users with no performance data get a fixed starter set.
"""
import logging
from typing import List, Optional

from examprep.core.config import settings
from examprep.core.errors import UpstreamUnavailable, ValidationFailed, ensure_owner
from examprep.core.storage import Storage
from examprep.models.orm import Recommendation, RecommendationType, UserProfile, utcnow
from examprep.services.question_bank import GENERAL_SUBJECT
from examprep.services.text_generation import TextGenerator

logger = logging.getLogger(__name__)

MOST_URGENT = 1
LEAST_URGENT = 5

STARTER_RECOMMENDATIONS = [
    {
        "type": RecommendationType.EXAM.value,
        "title": "Take your first practice exam",
        "description": "Complete a practice exam so your strengths and weaknesses per subject can be measured.",
        "priority": 1,
    },
    {
        "type": RecommendationType.MATERIAL.value,
        "title": "Add study material",
        "description": "Pick the subjects of your target exam and start building a question bank for them.",
        "priority": 2,
    },
]


def clamp_priority(value) -> int:
    try:
        priority = int(value)
    except (TypeError, ValueError):
        return 3
    return max(MOST_URGENT, min(LEAST_URGENT, priority))


def priority_label(priority: int) -> str:
    if priority <= 2:
        return "high"
    if priority <= 4:
        return "medium"
    return "low"


class RecommendationSynthesizer:
    def __init__(self, storage: Storage):
        self.storage = storage

    def target_exam_for(self, user_id: str, requested: Optional[str] = None) -> str:
        if requested and requested.strip():
            return requested.strip()
        profile = self.storage.get_profile(user_id)
        if profile and profile.target_exam:
            return profile.target_exam
        return settings.DEFAULT_TARGET_EXAM

    async def generate(self, user_id: str, generator: TextGenerator,
                       target_exam: Optional[str] = None) -> List[Recommendation]:
        rows = self.storage.list_performance(user_id)
        if not rows:
            recs = [Recommendation(user_id=user_id, **item) for item in STARTER_RECOMMENDATIONS]
        else:
            exam_label = self.target_exam_for(user_id, target_exam)
            subjects = self.storage.get_subjects({r.subject_id for r in rows})
            summary = [
                {
                    "subject_id": r.subject_id,
                    "subject_name": subjects[r.subject_id].name if r.subject_id in subjects else GENERAL_SUBJECT,
                    "average_score": r.average_score,
                    "strength_level": r.strength_level,
                }
                for r in sorted(rows, key=lambda r: r.average_score)
            ]
            try:
                suggested = await generator.synthesize_recommendations(
                    summary, exam_label, settings.RECOMMENDATION_COUNT)
            except UpstreamUnavailable as e:
                logger.warning("Recommendation generation failed for %s: %s", user_id, e.message)
                return []
            by_name = {s["subject_name"].lower(): s["subject_id"] for s in summary}
            recs = [
                Recommendation(
                    user_id=user_id, type=s.type, title=s.title.strip(), description=s.description,
                    priority=clamp_priority(s.priority), subject_id=self._mentioned_subject(s.title, by_name),
                )
                for s in suggested
            ]
        if not recs:
            return []
        created = self.storage.add_recommendations(recs)
        self.storage.commit()
        logger.info("Created %d recommendations for %s", len(created), user_id)
        return created

    @staticmethod
    def _mentioned_subject(title: str, by_name) -> Optional[str]:
        lowered = title.lower()
        for name, subject_id in by_name.items():
            if name and name in lowered:
                return subject_id
        return None

    def list(self, user_id: str, unread_only: bool = False) -> List[Recommendation]:
        return self.storage.list_recommendations(user_id, unread_only)

    def mark_read(self, recommendation_id: str, user_id: str) -> Recommendation:
        rec = ensure_owner(self.storage.get_recommendation(recommendation_id), user_id, "Recommendation")
        rec.is_read = True
        self.storage.commit()
        return rec

    # ---------- profile ----------

    def get_profile(self, user_id: str) -> UserProfile:
        return self.storage.get_profile(user_id) or UserProfile(user_id=user_id)

    def update_profile(self, user_id: str, **fields) -> UserProfile:
        unknown = set(fields) - {"target_exam", "study_area", "study_goal"}
        if unknown:
            raise ValidationFailed(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        profile = self.storage.get_profile(user_id) or UserProfile(user_id=user_id)
        for key, value in fields.items():
            setattr(profile, key, value)
        profile.updated_at = utcnow()
        self.storage.save_profile(profile)
        self.storage.commit()
        return profile
