"""Persist allocation plans as AudioFileAllocation rows.

Callers own the transaction: nothing here commits. Each analyst's share is
written inside its own savepoint so one failing share does not undo the
others.
"""
from typing import Iterable, List, Optional, Sequence

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import AppError, Conflict, ValidationError
from ..extensions import db
from ..models.audio_file import AudioFile, AudioFileAllocation, AudioFileBatchAllocation
from ..models.user import User
from .allocation import AllocationPlan, normalize_targets, plan_allocation

# a file in one of these states may be (re)assigned directly
REASSIGNABLE = ("pending", "allocated")


def validate_analysts(org_id: int, analyst_ids: Sequence[int]):
    ids = set(analyst_ids)
    found = {u.id for u in User.query.filter(User.org_id == org_id, User.id.in_(ids), User.active.is_(True))}
    unknown = sorted(ids - found)
    if unknown:
        raise ValidationError("Unknown quality analysts", {"qualityAnalystIds": unknown})


def _filter_values(filters: dict, key: str, cast):
    """A filter may be one value or a list of them; empty means no filter."""
    raw = filters.get(key)
    if raw is None or raw == "" or raw == []:
        return None
    values = raw if isinstance(raw, (list, tuple)) else [raw]
    try:
        return [cast(v) for v in values if v is not None and v != ""]
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {key} filter", {key: raw})


def _filter_number(duration: dict, key: str):
    raw = duration.get(key)
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise ValidationError(f"Invalid duration.{key} filter", {key: raw})
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid duration.{key} filter", {key: raw})


def select_pending_files(org_id: int, file_ids: Optional[Iterable[int]] = None, filters: Optional[dict] = None):
    """Pending files for an org, row-locked until the surrounding transaction ends."""
    q = AudioFile.query.filter(AudioFile.org_id == org_id, AudioFile.status == "pending")
    if file_ids is not None:
        q = q.filter(AudioFile.id.in_(list(file_ids)))
    filters = filters or {}
    if not isinstance(filters, dict):
        raise ValidationError("filters must be an object")
    languages = _filter_values(filters, "language", lambda v: str(v).strip().lower())
    if languages:
        q = q.filter(AudioFile.language.in_(languages))
    versions = _filter_values(filters, "version", lambda v: str(v).strip())
    if versions:
        q = q.filter(AudioFile.version.in_(versions))
    process_ids = _filter_values(filters, "processId", int)
    if process_ids:
        q = q.filter(AudioFile.process_id.in_(process_ids))
    duration = filters.get("duration") or {}
    if not isinstance(duration, dict):
        raise ValidationError("duration filter must be an object with min and max")
    low, high = _filter_number(duration, "min"), _filter_number(duration, "max")
    if low is not None:
        q = q.filter(AudioFile.duration >= low)
    if high is not None:
        q = q.filter(AudioFile.duration <= high)
    return q.order_by(AudioFile.id).with_for_update().all()


def _assign(audio_file: AudioFile, qa_id: int, org_id: int, allocated_by: int, due_date=None,
            template_id=None, batch_id=None, allowed=REASSIGNABLE) -> AudioFileAllocation:
    if audio_file.status not in allowed:
        raise Conflict(f"File {audio_file.filename} is {audio_file.status} and cannot be allocated",
                       {"audioFileId": audio_file.id})
    alloc = audio_file.allocation
    if alloc is None:
        alloc = AudioFileAllocation(org_id=org_id, audio_file_id=audio_file.id)
        db.session.add(alloc)
    alloc.quality_analyst_id = qa_id
    alloc.allocated_by = allocated_by
    alloc.due_date = due_date
    alloc.status = "allocated"
    alloc.batch_allocation_id = batch_id
    if template_id is not None:
        alloc.evaluation_template_id = template_id
    audio_file.status = "allocated"
    audio_file.allocation = alloc
    return alloc


def persist_plan(plan: AllocationPlan, org_id: int, allocated_by: int, due_date=None, template_id=None,
                 batch_id=None, allowed=REASSIGNABLE):
    """Write a plan; returns (allocations, errors) with one error entry per failed share."""
    allocations: List[AudioFileAllocation] = []
    errors: List[dict] = []
    for qa_id, files in plan.by_analyst().items():
        try:
            with db.session.begin_nested():
                rows = [_assign(f, qa_id, org_id, allocated_by, due_date, template_id, batch_id, allowed)
                        for f in files]
            allocations.extend(rows)
            current_app.logger.info("allocated %d files to quality analyst %s", len(rows), qa_id)
        except (AppError, SQLAlchemyError) as e:
            current_app.logger.warning("allocation to quality analyst %s failed: %s", qa_id, e)
            errors.append({
                "qualityAnalystId": qa_id,
                "fileCount": len(files),
                "error": getattr(e, "message", None) or str(e),
            })
    return allocations, errors


def allocate_to_analyst(files: Sequence[AudioFile], qa_id: int, org_id: int, allocated_by: int,
                        due_date=None, template_id=None):
    validate_analysts(org_id, [qa_id])
    plan = plan_allocation(files, [{"id": qa_id, "count": len(files)}])
    return persist_plan(plan, org_id, allocated_by, due_date=due_date, template_id=template_id)


def create_batch_allocation(org_id: int, allocated_by: int, name: str, files: Sequence[AudioFile], targets,
                            strategy: str = "random", description: Optional[str] = None, due_date=None,
                            template_id=None, shuffle: bool = False, seed=None):
    """Record a batch, plan it over ``files`` and persist it; the caller commits."""
    if not name or not str(name).strip():
        raise ValidationError("Batch name is required")
    targets = normalize_targets(targets)
    validate_analysts(org_id, [t.analyst_id for t in targets])
    plan = plan_allocation(files, targets, strategy=strategy, shuffle=shuffle, seed=seed)

    batch = AudioFileBatchAllocation(
        org_id=org_id,
        name=str(name).strip(),
        description=description,
        distribution_method=plan.strategy,
        allocated_by=allocated_by,
        due_date=due_date,
        status="allocated",
    )
    db.session.add(batch)
    db.session.flush()

    allocations, errors = persist_plan(plan, org_id, allocated_by, due_date=due_date, template_id=template_id,
                                       batch_id=batch.id, allowed=("pending",))
    if errors and not allocations:
        batch.status = "failed"
    elif errors or plan.unassigned:
        batch.status = "partial"
    return batch, plan, allocations, errors
