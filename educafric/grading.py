"""
Cameroonian grading rules: continuous assessment (CC) plus composition (EXAM),
coefficient-weighted term averages and weighted annual averages, all on a /20 scale.
"""
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .errors import ValidationError


@dataclass
class GradingConfig:
    scale: float = 20
    terms: List[str] = field(default_factory=lambda: ['T1', 'T2', 'T3'])
    term_weights: Dict[str, float] = field(default_factory=lambda: {'T1': 1, 'T2': 1, 'T3': 1})
    cc_weight: float = 0.3
    exam_weight: float = 0.7


DEFAULT_CONFIG = GradingConfig()

APPRECIATION_LABELS = {
    'fr': {
        'excellent': 'Excellent',
        'tres_bien': 'Très bien',
        'bien': 'Bien',
        'assez_bien': 'Assez bien',
        'passable': 'Passable',
        'mediocre': 'Médiocre',
        'faible': 'Faible',
        'none': 'Non évalué',
    },
    'en': {
        'excellent': 'Excellent',
        'tres_bien': 'Very good',
        'bien': 'Good',
        'assez_bien': 'Fairly good',
        'passable': 'Average',
        'mediocre': 'Mediocre',
        'faible': 'Poor',
        'none': 'Not evaluated',
    },
}

# Lower bound of each appreciation band, highest first
APPRECIATION_BANDS = (
    (18, 'excellent'),
    (16, 'tres_bien'),
    (14, 'bien'),
    (12, 'assez_bien'),
    (10, 'passable'),
    (8, 'mediocre'),
)


def round2(x: float) -> float:
    """Two decimals, halves rounded up"""
    return math.floor(x * 100 + 0.5) / 100


def assert_in_range_or_null(n: Optional[float], scale: float = DEFAULT_CONFIG.scale) -> None:
    if n is None:
        return
    if not isinstance(n, (int, float)) or isinstance(n, bool) or n < 0 or n > scale:
        raise ValidationError(f'Note invalide: {n} (attendu 0..{scale} ou null)', code='INVALID_GRADE')


def subject_average(cc: Optional[float], exam: Optional[float],
                    config: GradingConfig = DEFAULT_CONFIG) -> Optional[float]:
    """Average of one subject for one term.

    With both marks the weighted sum is used. A single available mark counts
    for 100%. Without any mark the subject is not evaluated.
    """
    assert_in_range_or_null(cc, config.scale)
    assert_in_range_or_null(exam, config.scale)

    if cc is None and exam is None:
        return None
    if cc is not None and exam is not None:
        return round2(cc * config.cc_weight + exam * config.exam_weight)
    return round2(cc if cc is not None else exam)


def term_average(term_grades: Dict[str, dict], coefficients: Dict[str, float],
                 config: GradingConfig = DEFAULT_CONFIG) -> Optional[float]:
    """Coefficient-weighted term average over the subjects listed in coefficients"""
    if not term_grades:
        return None

    total = 0.0
    total_coeff = 0.0
    for subject, coeff in coefficients.items():
        coeff = 1 if coeff is None else coeff
        grades = term_grades.get(subject)
        if not grades:
            continue
        avg = subject_average(grades.get('CC'), grades.get('EXAM'), config)
        if avg is not None:
            total += avg * coeff
            total_coeff += coeff

    return round2(total / total_coeff) if total_coeff > 0 else None


def annual_average(term_averages: Dict[str, Optional[float]],
                   term_weights: Optional[Dict[str, float]] = None) -> Optional[float]:
    term_weights = term_weights or DEFAULT_CONFIG.term_weights
    total = 0.0
    total_weight = 0.0
    for term, weight in term_weights.items():
        avg = term_averages.get(term)
        weight = 1 if weight is None else weight
        if avg is not None:
            total += avg * weight
            total_weight += weight
    return round2(total / total_weight) if total_weight > 0 else None


def appreciation(average: Optional[float], language: str = 'fr') -> str:
    labels = APPRECIATION_LABELS.get(language, APPRECIATION_LABELS['fr'])
    if average is None:
        return labels['none']
    for threshold, key in APPRECIATION_BANDS:
        if average >= threshold:
            return labels[key]
    return labels['faible']


def class_stats(averages: Iterable[Optional[float]]) -> dict:
    valid = [avg for avg in averages if avg is not None]
    if not valid:
        return {'min': None, 'max': None, 'mean': None, 'size': 0}
    return {
        'min': min(valid),
        'max': max(valid),
        'mean': round2(sum(valid) / len(valid)),
        'size': len(valid),
    }


def rank(averages: Dict[int, Optional[float]]) -> Dict[int, Optional[int]]:
    """Competition ranking: equal averages share a rank and the next rank is skipped"""
    ranked = sorted(((avg, key) for key, avg in averages.items() if avg is not None), key=lambda item: -item[0])
    ranks = {key: None for key in averages}
    previous = None
    current_rank = 0
    for position, (avg, key) in enumerate(ranked, start=1):
        if avg != previous:
            current_rank = position
            previous = avg
        ranks[key] = current_rank
    return ranks


def complete_bulletin(student: dict, config: GradingConfig = DEFAULT_CONFIG) -> dict:
    """Term, subject and annual averages for one student.

    student carries id, name, coefficients {subject: coeff} and
    grades {term: {subject: {'CC': x, 'EXAM': y}}}.
    """
    coefficients = student.get('coefficients', {})
    grades = student.get('grades', {})
    term_averages = {}
    subject_details = {}

    for term in config.terms:
        term_grades = grades.get(term) or {}
        term_averages[term] = term_average(term_grades, coefficients, config)
        subject_details[term] = {}
        for subject in coefficients:
            marks = term_grades.get(subject) or {}
            subject_details[term][subject] = subject_average(marks.get('CC'), marks.get('EXAM'), config)

    return {
        'studentId': student.get('id'),
        'name': student.get('name'),
        'termAverages': term_averages,
        'annualAverage': annual_average(term_averages, config.term_weights),
        'subjectDetails': subject_details,
    }
