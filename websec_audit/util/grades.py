"""Letter grades for 0-100 scores."""

from typing import List, Tuple

# (minimum score, grade), highest first
GRADE_THRESHOLDS: List[Tuple[int, str]] = [
    (90, 'A+'),
    (80, 'A'),
    (70, 'B'),
    (60, 'C'),
    (50, 'D'),
]
FAILING_GRADE = 'F'


def score_to_grade(score: float) -> str:
    """Letter grade for a 0-100 score. Monotonic: a higher score never gets a worse grade."""
    for minimum, grade in GRADE_THRESHOLDS:
        if score >= minimum:
            return grade
    return FAILING_GRADE
