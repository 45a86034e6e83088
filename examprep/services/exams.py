import logging
import random
from typing import List, Optional, Sequence, Tuple

from examprep.core.errors import Conflict, NotFound, ValidationFailed, UpstreamUnavailable, ensure_owner
from examprep.core.storage import Storage
from examprep.models.orm import Exam, ExamQuestion, ExamStatus, Question
from examprep.services.question_bank import QuestionBank
from examprep.services.text_generation import TextGenerator

logger = logging.getLogger(__name__)

DIFFICULTY_CHOICES = ("easy", "medium", "hard")


class ExamService:
    def __init__(self, storage: Storage):
        self.storage = storage

    def list(self, user_id: str) -> List[Exam]:
        return self.storage.list_exams(user_id)

    def get(self, exam_id: str, user_id: str) -> Exam:
        return ensure_owner(self.storage.get_exam(exam_id), user_id, "Exam")

    def create(self, user_id: str, title: str, description: Optional[str] = None,
               time_limit: Optional[int] = None, difficulty: Optional[str] = None) -> Exam:
        if not title.strip():
            raise ValidationFailed("Exam title is required")
        if time_limit is not None and time_limit <= 0:
            raise ValidationFailed("time_limit must be a positive number of minutes")
        exam = self.storage.add_exam(Exam(user_id=user_id, title=title.strip(), description=description,
                                          time_limit=time_limit, difficulty=difficulty,
                                          question_count=0, status=ExamStatus.DRAFT.value))
        self.storage.commit()
        logger.info("Exam %s created by %s", exam.id, user_id)
        return exam

    def questions(self, exam_id: str, user_id: str) -> List[Tuple[ExamQuestion, Question]]:
        self.get(exam_id, user_id)
        return self.storage.list_exam_questions(exam_id)

    def attach_questions(self, exam_id: str, user_id: str, question_ids: Sequence[str]) -> List[ExamQuestion]:
        """Append questions after the existing ones with contiguous order indexes from 0."""
        exam = self.get(exam_id, user_id)
        if not question_ids:
            raise ValidationFailed("question_ids must not be empty")
        if exam.status == ExamStatus.COMPLETED.value:
            raise Conflict("Questions cannot be added to a completed exam")
        existing = self.storage.list_exam_questions(exam_id)
        already = {eq.question_id for eq, _ in existing}
        if len(set(question_ids)) != len(question_ids) or already.intersection(question_ids):
            raise ValidationFailed("A question can only appear once per exam")
        found = self.storage.get_questions(question_ids)
        missing = [qid for qid in question_ids if qid not in found]
        if missing:
            raise NotFound(f"Question not found: {', '.join(missing)}")
        start = len(existing)
        items = [ExamQuestion(exam_id=exam_id, question_id=qid, order_index=start + i)
                 for i, qid in enumerate(question_ids)]
        self.storage.add_exam_questions(items)
        exam.question_count = start + len(items)
        exam.status = ExamStatus.READY.value
        self.storage.commit()
        return items

    def delete(self, exam_id: str, user_id: str) -> None:
        exam = self.get(exam_id, user_id)
        if self.storage.count_attempts_for_exam(exam_id):
            raise Conflict("Exams with attempts cannot be deleted")
        self.storage.delete_exam(exam)
        self.storage.commit()

    async def generate_questions(self, exam_id: str, user_id: str, subject_ids: Sequence[str],
                                 generator: TextGenerator, question_count: int = 5,
                                 difficulty: str = "medium", content_prompt: Optional[str] = None
                                 ) -> List[ExamQuestion]:
        """Generate questions per subject with the LLM and attach them to the exam.

        Subjects whose generation fails are skipped; if nothing usable comes
        back the whole request fails with UpstreamUnavailable.
        """
        exam = self.get(exam_id, user_id)
        if not subject_ids:
            raise ValidationFailed("subject_ids must not be empty")
        if question_count < 1:
            raise ValidationFailed("question_count must be at least 1")
        if difficulty not in DIFFICULTY_CHOICES + ("mixed",):
            raise ValidationFailed(f"Unknown difficulty '{difficulty}'")
        if exam.status == ExamStatus.COMPLETED.value:
            raise Conflict("Questions cannot be added to a completed exam")
        subjects = self.storage.get_subjects(subject_ids)
        missing = [sid for sid in subject_ids if sid not in subjects]
        if missing:
            raise NotFound(f"Subject not found: {', '.join(missing)}")

        bank = QuestionBank(self.storage)
        per_subject = -(-question_count // len(subject_ids))
        built: List[Question] = []
        for sid in subject_ids:
            name = subjects[sid].name
            level = random.choice(DIFFICULTY_CHOICES) if difficulty == "mixed" else difficulty
            content = content_prompt or f"Exam questions about {name}"
            try:
                generated = await generator.generate_questions(content, name, per_subject, level)
            except UpstreamUnavailable as e:
                logger.warning("Question generation failed for subject %s: %s", sid, e.message)
                continue
            for g in generated:
                try:
                    built.append(bank.build_question(
                        content=g.content, qtype=g.type, difficulty=g.difficulty, subject_id=sid,
                        options=[o.model_dump() for o in g.options or []], correct_answer=g.correct_answer,
                        explanation=g.explanation, source=f"Generated for exam: {exam.title}",
                        created_by=user_id))
                except ValidationFailed as e:
                    logger.info("Discarding generated question: %s", e.message)
        built = built[:question_count]
        if not built:
            raise UpstreamUnavailable("No questions could be generated, try again later")
        self.storage.add_questions(built)
        return self.attach_questions(exam_id, user_id, [q.id for q in built])
