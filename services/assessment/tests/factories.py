"""Question builders shared by the tests."""

from datetime import datetime, timezone
from typing import Tuple

from packages.schemas.assessment import Question

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def mc_question(qid: str = "q1", points: int = 100, correct: Tuple[str, ...] = ("B",)) -> Question:
    return Question(
        id=qid,
        type="multiple_choice",
        text="Which option is right?",
        points=points,
        content={
            "options": [{"id": "A", "text": "first"}, {"id": "B", "text": "second"}, {"id": "C", "text": "third"}],
            "correct_answers": list(correct),
            "multiple_correct": len(correct) > 1,
        },
    )


def essay_question(qid: str = "essay", points: int = 20) -> Question:
    return Question(id=qid, type="essay", text="Discuss.", points=points, content={"min_words": 3})


def tf_question(qid: str = "tf", points: int = 10, correct: bool = True) -> Question:
    return Question(id=qid, type="true_false", text="True?", points=points, content={"correct_answer": correct})
