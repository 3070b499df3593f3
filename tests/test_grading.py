import pytest

from educafric import grading
from educafric.errors import ValidationError


def test_subject_average_weights_cc_and_exam():
    assert grading.subject_average(12, 15) == 14.1
    assert grading.subject_average(None, 13.5) == 13.5
    assert grading.subject_average(9, None) == 9
    assert grading.subject_average(None, None) is None


@pytest.mark.parametrize('mark', [-1, 20.5, True, '12'])
def test_subject_average_rejects_out_of_range_marks(mark):
    with pytest.raises(ValidationError):
        grading.subject_average(mark, 10)


def test_term_average_uses_coefficients_and_skips_missing_subjects():
    term_grades = {
        'MATH': {'CC': 10, 'EXAM': 10},
        'FR': {'CC': None, 'EXAM': 16},
        'HG': {'CC': None, 'EXAM': None},
    }
    coefficients = {'MATH': 4, 'FR': 2, 'HG': 2, 'ANG': 1}
    # (10*4 + 16*2) / 6
    assert grading.term_average(term_grades, coefficients) == 12


def test_term_average_missing_coefficient_counts_as_one():
    assert grading.term_average({'MATH': {'CC': 10, 'EXAM': 10}, 'FR': {'EXAM': 16}},
                                {'MATH': None, 'FR': 1}) == 13


def test_term_average_without_grades_is_none():
    assert grading.term_average({}, {'MATH': 4}) is None
    assert grading.term_average({'MATH': {'CC': None, 'EXAM': None}}, {'MATH': 4}) is None


def test_halves_round_up():
    assert grading.round2(0.125) == 0.13
    assert grading.round2(14.1) == 14.1
    # (12.25 + 12) / 2 = 12.125
    assert grading.term_average({'MATH': {'EXAM': 12.25}, 'FR': {'EXAM': 12}}, {'MATH': 1, 'FR': 1}) == 12.13


def test_annual_average_ignores_missing_terms():
    assert grading.annual_average({'T1': 12, 'T2': None, 'T3': 15}) == 13.5
    assert grading.annual_average({'T1': 10, 'T2': 16}, {'T1': 1, 'T2': 2}) == 14
    assert grading.annual_average({}) is None


@pytest.mark.parametrize('average, fr, en', [
    (18, 'Excellent', 'Excellent'),
    (16.5, 'Très bien', 'Very good'),
    (14, 'Bien', 'Good'),
    (12.99, 'Assez bien', 'Fairly good'),
    (10, 'Passable', 'Average'),
    (8, 'Médiocre', 'Mediocre'),
    (7.99, 'Faible', 'Poor'),
    (None, 'Non évalué', 'Not evaluated'),
])
def test_appreciation_bands(average, fr, en):
    assert grading.appreciation(average, 'fr') == fr
    assert grading.appreciation(average, 'en') == en


def test_rank_is_competition_ranking():
    ranks = grading.rank({1: 15.5, 2: 12, 3: 15.5, 4: None, 5: 11})
    assert ranks == {1: 1, 3: 1, 2: 3, 5: 4, 4: None}


def test_class_stats():
    assert grading.class_stats([10, None, 14, 12.5]) == {'min': 10, 'max': 14, 'mean': 12.17, 'size': 3}
    assert grading.class_stats([None]) == {'min': None, 'max': None, 'mean': None, 'size': 0}


def test_complete_bulletin():
    result = grading.complete_bulletin({
        'id': 7,
        'name': 'Emma Talla',
        'coefficients': {'MATH': 4, 'FR': 2},
        'grades': {
            'T1': {'MATH': {'CC': 10, 'EXAM': 10}, 'FR': {'CC': 16, 'EXAM': 16}},
            'T2': {'MATH': {'CC': None, 'EXAM': 14}},
        },
    })
    assert result['termAverages'] == {'T1': 12, 'T2': 14, 'T3': None}
    assert result['annualAverage'] == 13
    assert result['subjectDetails']['T2'] == {'MATH': 14, 'FR': None}
