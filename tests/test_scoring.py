from decimal import Decimal
from types import SimpleNamespace

import pytest

from qadesk.errors import ValidationError
from qadesk.services.scoring import Rating, normalize_ratings, parameter_score, score_evaluation


def param(pid, rating_type="yes_no_na", weightage=100, **kw):
    defaults = dict(name=f"p{pid}", weightage_enabled=True, is_fatal=False, requires_comment=False,
                    no_reasons=[], custom_scale=None)
    defaults.update(kw)
    return SimpleNamespace(id=pid, rating_type=rating_type, weightage=weightage, **defaults)


def pillar(pid, weightage, *parameters):
    return SimpleNamespace(id=pid, name=f"pillar{pid}", weightage=weightage, parameters=list(parameters))


def test_weighted_example_scores_eighty():
    pillars = [pillar(1, 60, param(1)), pillar(2, 40, param(2, "numeric"))]
    result = score_evaluation(pillars, {1: "yes", 2: "3"})
    assert result.final_score == Decimal("80.00")
    assert result.pillar_scores == {1: Decimal("100.00"), 2: Decimal("50.00")}
    assert not result.has_fatal_error


def test_na_pillar_scores_like_a_removed_pillar():
    a = pillar(1, 50, param(1), param(2, weightage=50))
    b = pillar(2, 30, param(3, "numeric"))
    na = pillar(3, 20, param(4), param(5))
    with_na = score_evaluation([a, b, na], {1: "yes", 2: "no", 3: "4", 4: "na", 5: "N/A"})
    without = score_evaluation([a, b], {1: "yes", 2: "no", 3: "4"})
    assert with_na.final_score == without.final_score
    assert with_na.pillar_scores[3] is None


def test_na_parameter_drops_out_of_pillar_average():
    p = pillar(1, 100, param(1, weightage=70), param(2, weightage=30))
    assert score_evaluation([p], {1: "na", 2: "yes"}).final_score == Decimal("100.00")


def test_fatal_no_forces_zero_and_flags():
    pillars = [pillar(1, 60, param(1, is_fatal=True)), pillar(2, 40, param(2, "numeric"))]
    result = score_evaluation(pillars, {1: "no", 2: "5"})
    assert result.final_score == Decimal("0.00")
    assert result.weighted_score == Decimal("40.00")
    assert result.has_fatal_error
    assert result.fatal_parameters == [1]


def test_fatal_parameter_rated_yes_or_na_is_harmless():
    pillars = [pillar(1, 100, param(1, is_fatal=True), param(2))]
    assert score_evaluation(pillars, {1: "yes", 2: "no"}).final_score == Decimal("50.00")
    result = score_evaluation(pillars, {1: "na", 2: "yes"})
    assert result.final_score == Decimal("100.00")
    assert not result.has_fatal_error


def test_fatal_applies_even_without_weightage():
    pillars = [pillar(1, 100, param(1, is_fatal=True, weightage_enabled=False), param(2))]
    result = score_evaluation(pillars, {1: "no", 2: "yes"})
    assert result.has_fatal_error
    assert result.final_score == Decimal("0.00")


def test_weightage_disabled_parameter_does_not_count():
    pillars = [pillar(1, 100, param(1), param(2, weightage_enabled=False))]
    assert score_evaluation(pillars, {1: "yes", 2: "no"}).final_score == Decimal("100.00")


def test_rounds_half_up_to_two_places():
    pillars = [pillar(1, 2, param(1)), pillar(2, 1, param(2))]
    assert score_evaluation(pillars, {1: "yes", 2: "no"}).final_score == Decimal("66.67")
    pillars = [pillar(1, 1, param(1)), pillar(2, 2, param(2))]
    assert score_evaluation(pillars, {1: "yes", 2: "no"}).final_score == Decimal("33.33")


def test_everything_na_scores_zero():
    result = score_evaluation([pillar(1, 100, param(1))], {1: "na"})
    assert result.final_score == Decimal("0.00")
    assert result.pillar_scores == {1: None}


@pytest.mark.parametrize("rating,expected", [("1", 0), ("2", 25), ("3", 50), ("4.5", 87.5), ("5", 100)])
def test_numeric_scale(rating, expected):
    assert parameter_score(param(1, "numeric"), rating) == Decimal(str(expected))


@pytest.mark.parametrize("rating", ["0", "6", "abc", "nan"])
def test_numeric_out_of_range(rating):
    with pytest.raises(ValidationError):
        parameter_score(param(1, "numeric"), rating)


def test_custom_scale_lookup():
    p = param(1, "custom", custom_scale={"Excellent": 100, "Good": 75, "Poor": 0})
    assert parameter_score(p, "good") == Decimal("75")
    with pytest.raises(ValidationError):
        parameter_score(p, "Average")


def test_malformed_stored_scale_is_a_validation_error():
    p = param(1, "custom", custom_scale=["good", "bad"])
    with pytest.raises(ValidationError):
        parameter_score(p, "good")


def test_unknown_yes_no_value_rejected():
    with pytest.raises(ValidationError):
        parameter_score(param(1), "maybe")


def test_every_parameter_must_be_scored():
    pillars = [pillar(1, 100, param(1), param(2))]
    with pytest.raises(ValidationError) as exc:
        score_evaluation(pillars, {1: "yes"})
    assert exc.value.context["missingParameters"] == [{"id": 2, "name": "p2"}]


def test_scores_outside_template_rejected():
    with pytest.raises(ValidationError):
        score_evaluation([pillar(1, 100, param(1))], {1: "yes", 99: "no"})


def test_required_comment_enforced():
    pillars = [pillar(1, 100, param(1, requires_comment=True))]
    with pytest.raises(ValidationError):
        score_evaluation(pillars, [{"parameterId": 1, "score": "yes"}])
    result = score_evaluation(pillars, [{"parameterId": 1, "score": "yes", "comment": "Clear opening"}])
    assert result.final_score == Decimal("100.00")


def test_no_reason_must_come_from_the_list():
    pillars = [pillar(1, 100, param(1, no_reasons=["Skipped greeting", "Wrong name"]))]
    with pytest.raises(ValidationError):
        score_evaluation(pillars, [{"parameterId": 1, "score": "no", "noReason": "Other"}])
    ok = score_evaluation(pillars, [{"parameterId": 1, "score": "no", "noReason": "Wrong name"}])
    assert ok.final_score == Decimal("0.00")


def test_normalize_ratings_from_api_payload():
    ratings = normalize_ratings([
        {"parameterId": "3", "score": "yes", "comment": "ok"},
        {"parameterId": 4, "score": 2, "noReason": None},
    ])
    assert ratings == {3: Rating("yes", "ok", None), 4: Rating("2", None, None)}
    with pytest.raises(ValidationError):
        normalize_ratings([{"parameterId": 5, "score": ""}])
