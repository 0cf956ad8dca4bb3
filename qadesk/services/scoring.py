"""Turn per-parameter ratings into one evaluation score.

Pillars and parameters are read by attribute, so both ORM rows and simple
stand-ins work. All arithmetic is done in ``Decimal`` and the final score is
rounded half-up to two places.
"""
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Iterable, List, Mapping, Optional, Union

from ..errors import ValidationError

HUNDRED = Decimal(100)
ZERO = Decimal(0)
TWO_PLACES = Decimal("0.01")

YES_VALUES = ("yes", "y")
NO_VALUES = ("no", "n")
NA_VALUES = ("na", "n/a", "not applicable")
NUMERIC_MIN, NUMERIC_MAX = 1, 5


@dataclass
class Rating:
    score: str
    comment: Optional[str] = None
    no_reason: Optional[str] = None


@dataclass
class ScoreResult:
    final_score: Decimal
    weighted_score: Decimal
    has_fatal_error: bool = False
    fatal_parameters: List[int] = field(default_factory=list)
    # pillar id -> pillar score, None when every parameter was excluded
    pillar_scores: Dict[int, Optional[Decimal]] = field(default_factory=dict)


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def normalize_ratings(raw: Union[Mapping, Iterable]) -> Dict[int, Rating]:
    """Accept ``{parameter_id: rating}`` or a list of score dicts from the API."""
    out: Dict[int, Rating] = {}
    if isinstance(raw, Mapping):
        items = [{"parameterId": k, "score": v} for k, v in raw.items()]
    else:
        items = list(raw or [])
    for item in items:
        if not isinstance(item, Mapping):
            raise ValidationError(f"Invalid score entry: {item!r}")
        pid = item.get("parameterId", item.get("parameter_id"))
        try:
            pid = int(pid)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid parameter id: {pid!r}")
        value = item.get("score")
        if isinstance(value, Rating):
            out[pid] = value
            continue
        if value is None or str(value).strip() == "":
            raise ValidationError("Score is required", {"parameterId": pid})
        out[pid] = Rating(
            score=str(value).strip(),
            comment=item.get("comment"),
            no_reason=item.get("noReason", item.get("no_reason")),
        )
    return out


def parameter_score(parameter, rating: Union[Rating, str, int, float]) -> Optional[Decimal]:
    """Score a single rating on the 0-100 scale; ``None`` means not applicable."""
    raw = rating.score if isinstance(rating, Rating) else rating
    text = str(raw).strip().lower()
    kind = getattr(parameter, "rating_type", None) or "yes_no_na"

    if kind == "yes_no_na":
        if text in YES_VALUES:
            return HUNDRED
        if text in NO_VALUES:
            return ZERO
        if text in NA_VALUES:
            return None
        raise ValidationError(f"Rating must be yes, no or na for {parameter.name}", {"parameterId": parameter.id})

    if kind == "numeric":
        try:
            value = Decimal(text)
        except InvalidOperation:
            raise ValidationError(f"Numeric rating expected for {parameter.name}", {"parameterId": parameter.id})
        if not value.is_finite() or value < NUMERIC_MIN or value > NUMERIC_MAX:
            raise ValidationError(
                f"Rating for {parameter.name} must be between {NUMERIC_MIN} and {NUMERIC_MAX}",
                {"parameterId": parameter.id},
            )
        return (value - NUMERIC_MIN) / (NUMERIC_MAX - NUMERIC_MIN) * HUNDRED

    if kind == "custom":
        scale = getattr(parameter, "custom_scale", None) or {}
        if not isinstance(scale, dict):
            raise ValidationError(f"Scale for {parameter.name} is not a label to score mapping",
                                  {"parameterId": parameter.id})
        lookup = {str(k).strip().lower(): v for k, v in scale.items()}
        if text not in lookup:
            raise ValidationError(
                f"Rating {raw!r} is not on the scale for {parameter.name}",
                {"parameterId": parameter.id, "allowed": list(scale)},
            )
        try:
            value = Decimal(str(lookup[text]))
        except InvalidOperation:
            raise ValidationError(f"Scale for {parameter.name} is not numeric", {"parameterId": parameter.id})
        if value < ZERO or value > HUNDRED:
            raise ValidationError(f"Scale for {parameter.name} must map into 0-100", {"parameterId": parameter.id})
        return value

    raise ValidationError(f"Unknown rating type {kind!r}", {"parameterId": parameter.id})


def _check_annotations(parameter, rating: Rating, score: Optional[Decimal]):
    if getattr(parameter, "requires_comment", False) and not (rating.comment or "").strip():
        raise ValidationError(f"A comment is required for {parameter.name}", {"parameterId": parameter.id})
    reasons = getattr(parameter, "no_reasons", None) or []
    if score == ZERO and rating.no_reason and reasons and rating.no_reason not in reasons:
        raise ValidationError(
            f"Unknown reason {rating.no_reason!r} for {parameter.name}",
            {"parameterId": parameter.id, "allowed": reasons},
        )


def _weighted_average(pairs) -> Optional[Decimal]:
    total_weight = sum((Decimal(w) for _, w in pairs), ZERO)
    if total_weight <= 0:
        return None
    return sum((s * Decimal(w) for s, w in pairs), ZERO) / total_weight


def score_evaluation(pillars: Iterable, ratings) -> ScoreResult:
    """Score a full template.

    Every parameter of every pillar must be rated. N/A ratings and parameters
    with weightage turned off do not count; a pillar left with nothing to
    count drops out of the final average. A failing rating on a fatal
    parameter forces the final score to zero.
    """
    pillars = list(pillars)
    ratings = ratings if _is_normalized(ratings) else normalize_ratings(ratings)

    known = {p.id: p for pillar in pillars for p in pillar.parameters}
    missing = [p for pid, p in known.items() if pid not in ratings]
    if missing:
        raise ValidationError(
            "All parameters must be scored",
            {"missingParameters": [{"id": p.id, "name": p.name} for p in missing]},
        )
    unknown = sorted(pid for pid in ratings if pid not in known)
    if unknown:
        raise ValidationError("Scores given for parameters outside the template", {"unknownParameters": unknown})

    result = ScoreResult(final_score=ZERO, weighted_score=ZERO)
    pillar_pairs = []
    for pillar in pillars:
        pairs = []
        for parameter in pillar.parameters:
            rating = ratings[parameter.id]
            score = parameter_score(parameter, rating)
            _check_annotations(parameter, rating, score)
            if score is None:
                continue
            if getattr(parameter, "is_fatal", False) and score == ZERO:
                result.fatal_parameters.append(parameter.id)
            if getattr(parameter, "weightage_enabled", True):
                pairs.append((score, parameter.weightage or 0))
        pillar_score = _weighted_average(pairs)
        result.pillar_scores[pillar.id] = _quantize(pillar_score) if pillar_score is not None else None
        if pillar_score is not None:
            pillar_pairs.append((pillar_score, pillar.weightage or 0))

    overall = _weighted_average(pillar_pairs)
    result.weighted_score = _quantize(overall) if overall is not None else _quantize(ZERO)
    result.has_fatal_error = bool(result.fatal_parameters)
    result.final_score = _quantize(ZERO) if result.has_fatal_error else result.weighted_score
    return result


def _is_normalized(ratings) -> bool:
    return isinstance(ratings, Mapping) and all(isinstance(v, Rating) for v in ratings.values())
