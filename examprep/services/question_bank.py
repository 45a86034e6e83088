import logging
from typing import Dict, List, Optional, Sequence

from examprep.core.errors import NotFound, ValidationFailed, UpstreamUnavailable
from examprep.core.storage import Storage
from examprep.models.orm import Subject, Question, QuestionType, Difficulty
from examprep.services.text_generation import TextGenerator

logger = logging.getLogger(__name__)

GENERAL_SUBJECT = "General"


def check_question_shape(qtype: str, options: Optional[Sequence[Dict]], correct_answer: Optional[str]):
    """Return normalized (options, correct_answer) or raise ValidationFailed."""
    if qtype not in (QuestionType.OBJECTIVE.value, QuestionType.ESSAY.value):
        raise ValidationFailed(f"Unknown question type '{qtype}'")
    if qtype == QuestionType.ESSAY.value:
        return None, None
    opts = []
    for o in options or []:
        letter = (o.get("letter") or "").strip().upper()
        if not letter:
            raise ValidationFailed("Option letters must not be empty")
        opts.append({"letter": letter, "text": o.get("text") or ""})
    if len(opts) < 2:
        raise ValidationFailed("Objective questions need at least two options")
    letters = [o["letter"] for o in opts]
    if len(set(letters)) != len(letters):
        raise ValidationFailed("Option letters must be unique")
    answer = (correct_answer or "").strip().upper()
    if answer not in letters:
        raise ValidationFailed("Correct answer must be one of the option letters")
    return opts, answer


class QuestionBank:
    """Read access to subjects and questions, plus authoring."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def list_subjects(self) -> List[Subject]:
        return self.storage.list_subjects()

    def create_subject(self, name: str, description: Optional[str] = None) -> Subject:
        if not name.strip():
            raise ValidationFailed("Subject name is required")
        subject = self.storage.add_subject(Subject(name=name.strip(), description=description))
        self.storage.commit()
        return subject

    def subject_name(self, subject_id: Optional[str]) -> str:
        subject = self.storage.get_subject(subject_id) if subject_id else None
        return subject.name if subject else GENERAL_SUBJECT

    def get_question(self, question_id: str) -> Question:
        q = self.storage.get_question(question_id)
        if not q:
            raise NotFound("Question not found")
        return q

    def list_questions(self, subject_id: Optional[str] = None) -> List[Question]:
        return self.storage.list_questions(subject_id)

    def build_question(self, *, content: str, qtype: str, difficulty: str = Difficulty.MEDIUM.value,
                       subject_id: Optional[str] = None, options: Optional[Sequence[Dict]] = None,
                       correct_answer: Optional[str] = None, explanation: Optional[str] = None,
                       source: Optional[str] = None, created_by: Optional[str] = None) -> Question:
        if not content.strip():
            raise ValidationFailed("Question content is required")
        if difficulty not in {d.value for d in Difficulty}:
            raise ValidationFailed(f"Unknown difficulty '{difficulty}'")
        if subject_id and not self.storage.get_subject(subject_id):
            raise NotFound("Subject not found")
        opts, answer = check_question_shape(qtype, options, correct_answer)
        return Question(subject_id=subject_id, content=content.strip(), type=qtype, difficulty=difficulty,
                        options=opts, correct_answer=answer, explanation=explanation,
                        source=source, created_by=created_by)

    def create_question(self, **fields) -> Question:
        q = self.build_question(**fields)
        self.storage.add_questions([q])
        self.storage.commit()
        return q

    async def explain(self, question_id: str, generator: TextGenerator) -> str:
        q = self.get_question(question_id)
        try:
            return await generator.explain_question(q.content, q.options, q.correct_answer)
        except UpstreamUnavailable:
            logger.warning("Explanation unavailable for question %s", question_id)
            raise
