from io import BytesIO
from flask import current_app, jsonify, request, send_file
from flask_login import login_required, current_user
from . import bp
from .forms import AudioImportForm, MetadataUploadForm
from ...errors import Forbidden, NotFound, ValidationError
from ...extensions import db
from ...models.audio_file import AudioFile, AudioFileAllocation, AudioFileBatchAllocation, AUDIO_FILE_STATUSES
from ...services.allocation import normalize_targets, plan_allocation
from ...services.assignments import (
    REASSIGNABLE, allocate_to_analyst, create_batch_allocation, persist_plan, select_pending_files,
    validate_analysts,
)
from ...services.audio_filters import AudioFilters, available_languages, filter_audio_metadata
from ...services.evaluations import get_template
from ...services.metadata import build_template_workbook, match_with_storage, parse_metadata_workbook
from ...services.storage import content_type_for, get_blob_client, validate_container_name
from ...utils.decorators import allocator_required
from ...utils.parsing import coerce_bool, coerce_int, parse_datetime

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _form_or_400(form):
    if not form.validate_on_submit():
        raise ValidationError("No metadata file uploaded", {"errors": form.errors})


def _audio_file_from_metadata(item, container, client, form):
    return AudioFile(
        org_id=current_user.org_id,
        filename=item.filename,
        original_filename=item.filename,
        file_url=item.file_url or client.blob_url(container, item.blob_name or item.filename),
        file_size=item.file_size,
        duration=item.duration,
        language=item.language,
        version=item.version,
        call_date=item.call_date,
        call_metrics=item.metadata.to_json(),
        extra_metadata=dict(item.metadata.extras),
        status="pending",
        uploaded_by=current_user.id,
        process_id=form.process_id.data if form is not None else None,
        batch_id=form.batch_id.data if form is not None else None,
    )


@bp.post("/azure-audio-filter-preview/<container>")
@allocator_required
def filter_preview(container):
    client = get_blob_client()
    validate_container_name(container)
    form = MetadataUploadForm()
    _form_or_400(form)
    client.require_container(container)

    parsed = parse_metadata_workbook(form.metadata_file.data.read())
    filters = AudioFilters.from_mapping(request.form)
    filtered = filter_audio_metadata(parsed.items, filters)
    matched, _ = match_with_storage(filtered, client.list_blobs(container))
    return jsonify({
        "total": len(parsed.items),
        "filtered": len(filtered),
        "inStorage": len(matched),
        "filterApplied": filters.is_active,
        "availableLanguages": available_languages(parsed.items),
        "parseErrors": parsed.errors,
        "sample": [i.to_dict() for i in filtered[:20]],
    })


@bp.post("/azure-audio-import/<container>")
@allocator_required
def import_audio(container):
    client = get_blob_client()
    validate_container_name(container)
    form = AudioImportForm()
    _form_or_400(form)
    client.require_container(container)

    parsed = parse_metadata_workbook(form.metadata_file.data.read())
    filters = AudioFilters.from_mapping(request.form)
    targets = normalize_targets(form.assignment_targets())
    strategy = form.distribution_method.data or "random"
    due_date = parse_datetime(form.due_date.data, "dueDate")
    template_id = form.evaluation_template_id.data
    if template_id is not None:
        get_template(current_user.org_id, template_id)
    if targets:
        validate_analysts(current_user.org_id, [t.analyst_id for t in targets])

    matched, missing = match_with_storage(parsed.items, client.list_blobs(container))
    filtered = filter_audio_metadata(matched, filters)
    current_app.logger.info("import into %s: %d rows, %d in storage, %d after filtering",
                            container, len(parsed.items), len(matched), len(filtered))

    names = [i.filename for i in filtered]
    existing = set()
    if names:
        existing = {
            f for (f,) in db.session.query(AudioFile.filename)
            .filter(AudioFile.org_id == current_user.org_id, AudioFile.filename.in_(names))
        }

    results, new_files = [], []
    for item in filtered:
        if item.filename in existing:
            results.append({"filename": item.filename, "status": "skipped", "message": "Already imported"})
            continue
        af = _audio_file_from_metadata(item, container, client, form)
        db.session.add(af)
        new_files.append((item, af))
    db.session.flush()

    expiry = current_app.config["IMPORT_SAS_EXPIRY_MINUTES"]
    for item, af in new_files:
        results.append({
            "filename": af.filename,
            "status": "success",
            "audioFileId": af.id,
            "sasUrl": client.generate_sas_url(container, item.blob_name or item.filename, expiry,
                                              content_type_for(af.filename)),
        })

    assignment_results, allocation_errors, assigned = [], [], 0
    if targets and new_files:
        plan = plan_allocation(
            [af for _, af in new_files], targets, strategy=strategy,
            shuffle=coerce_bool(request.form.get("shuffle"), current_app.config.get("ALLOCATION_SHUFFLE")),
            seed=current_app.config.get("ALLOCATION_SEED"),
        )
        allocations, allocation_errors = persist_plan(
            plan, current_user.org_id, current_user.id, due_date=due_date, template_id=template_id,
            allowed=("pending",),
        )
        assigned = len(allocations)
        for qa_id, files in plan.by_analyst().items():
            if any(e["qualityAnalystId"] == qa_id for e in allocation_errors):
                continue
            assignment_results.append({
                "qualityAnalystId": qa_id,
                "count": len(files),
                "audioFileIds": [f.id for f in files],
            })
    db.session.commit()

    import_errors = [{"filename": i.filename, "error": "File not found in storage"} for i in missing]
    return jsonify({
        "totalBefore": len(parsed.items),
        "totalAfterFiltering": len(filtered),
        "successCount": len(new_files),
        "skippedCount": len(filtered) - len(new_files),
        "errorCount": len(import_errors) + len(parsed.errors),
        "filtered": len(parsed.items) - len(filtered) - len(missing),
        "filterApplied": filters.is_active,
        "results": results,
        "importErrors": import_errors,
        "parseErrors": parsed.errors,
        "assignmentCount": assigned,
        "assignmentResults": assignment_results,
        "allocationErrors": allocation_errors,
    })


@bp.get("/azure-audio-sas/<file_id>")
@login_required
def audio_sas(file_id):
    client = get_blob_client()
    audio_id = coerce_int(file_id)
    if audio_id is None:
        raise ValidationError("Invalid audio file ID")
    af = db.session.get(AudioFile, audio_id)
    if af is None:
        raise NotFound("Audio file not found")
    if af.org_id != current_user.org_id:
        raise Forbidden("Access denied")

    container, blob_name = client.parse_blob_url(af.file_url)
    content_type = content_type_for(af.filename)
    expiry = current_app.config["SAS_EXPIRY_MINUTES"]
    sas_url = client.generate_sas_url(container, blob_name, expiry, content_type)
    return jsonify({
        "sasUrl": sas_url,
        "expiresInMinutes": expiry,
        "fileInfo": {
            "name": af.original_filename,
            "type": content_type,
            "size": af.file_size,
            "duration": float(af.duration) if af.duration is not None else None,
            "language": af.language,
        },
    })


def _resolve_files(raw_ids, container):
    """Map numeric ids or filenames onto AudioFile rows, importing unknown blobs."""
    files, errors = [], []
    blobs = None
    for raw in raw_ids:
        audio_id = coerce_int(raw)
        if audio_id is not None:
            af = AudioFile.query.filter_by(id=audio_id, org_id=current_user.org_id).first()
        else:
            af = AudioFile.query.filter_by(filename=str(raw), org_id=current_user.org_id).first()
            if af is None and container:
                if blobs is None:
                    blobs = {b.name: b for b in get_blob_client().list_blobs(container)}
                blob = blobs.get(str(raw))
                if blob is not None:
                    af = AudioFile(
                        org_id=current_user.org_id, filename=blob.name, original_filename=blob.name,
                        file_url=blob.url, file_size=blob.size, status="pending", uploaded_by=current_user.id,
                    )
                    db.session.add(af)
        if af is None:
            errors.append({"audioFileId": raw, "error": "Audio file not found"})
        elif af.status not in REASSIGNABLE:
            errors.append({"audioFileId": raw, "error": f"Audio file is {af.status}"})
        else:
            files.append(af)
    db.session.flush()
    return files, errors


@bp.post("/azure-audio-allocate")
@allocator_required
def allocate_audio():
    data = request.get_json(silent=True) or {}
    raw_ids = data.get("audioFileIds")
    if not isinstance(raw_ids, list) or not raw_ids:
        raise ValidationError("audioFileIds must be a non-empty list")
    qa_id = coerce_int(data.get("qualityAnalystId"))
    if qa_id is None:
        raise ValidationError("qualityAnalystId is required")
    template_id = coerce_int(data.get("evaluationTemplateId"))
    if template_id is not None:
        get_template(current_user.org_id, template_id)
    container = data.get("containerName")
    if container:
        validate_container_name(container)
    due_date = parse_datetime(data.get("dueDate"), "dueDate")

    files, errors = _resolve_files(raw_ids, container)
    if not files:
        db.session.rollback()
        raise ValidationError("No audio files could be allocated", {"errors": errors})
    allocations, failed = allocate_to_analyst(files, qa_id, current_user.org_id, current_user.id,
                                              due_date=due_date, template_id=template_id)
    db.session.commit()
    return jsonify({
        "allocated": len(allocations),
        "allocations": [a.to_dict() for a in allocations],
        "errors": errors + failed,
    })


@bp.get("/download-audio-template")
@login_required
def download_template():
    data = build_template_workbook()
    return send_file(BytesIO(data), mimetype=XLSX_MIMETYPE, as_attachment=True,
                     download_name="audio-metadata-template.xlsx")


@bp.post("/audio-file-batch-allocations")
@allocator_required
def create_batch():
    data = request.get_json(silent=True) or {}
    file_ids = data.get("audioFileIds")
    if file_ids is not None and not isinstance(file_ids, list):
        raise ValidationError("audioFileIds must be a list")
    template_id = coerce_int(data.get("evaluationTemplateId"))
    if template_id is not None:
        get_template(current_user.org_id, template_id)

    files = select_pending_files(current_user.org_id, file_ids=file_ids, filters=data.get("filters"))
    if not files:
        raise ValidationError("No pending audio files match the selection")

    batch, plan, allocations, errors = create_batch_allocation(
        current_user.org_id, current_user.id, data.get("name"), files, data.get("qualityAnalysts") or [],
        strategy=data.get("distributionMethod") or "random",
        description=data.get("description"),
        due_date=parse_datetime(data.get("dueDate"), "dueDate"),
        template_id=template_id,
        shuffle=coerce_bool(data.get("shuffle"), current_app.config.get("ALLOCATION_SHUFFLE")),
        seed=current_app.config.get("ALLOCATION_SEED"),
    )
    db.session.commit()
    current_app.logger.info("batch allocation %s: %d allocated, %d unassigned, %d failed shares",
                            batch.id, len(allocations), len(plan.unassigned), len(errors))
    return jsonify({
        "batch": batch.to_dict(),
        "allocations": [a.to_dict() for a in allocations],
        "assignedCount": len(allocations),
        "unassignedCount": len(plan.unassigned),
        "unassignedFileIds": [f.id for f in plan.unassigned],
        "errors": errors,
    }), 201


@bp.get("/audio-file-batch-allocations")
@allocator_required
def list_batches():
    batches = (AudioFileBatchAllocation.query.filter_by(org_id=current_user.org_id)
               .order_by(AudioFileBatchAllocation.id.desc()).all())
    out = []
    for b in batches:
        d = b.to_dict()
        d["allocationCount"] = b.allocations.count()
        out.append(d)
    return jsonify(out)


@bp.get("/audio-file-allocations")
@login_required
def list_allocations():
    q = AudioFileAllocation.query.filter_by(org_id=current_user.org_id)
    analyst_id = coerce_int(request.args.get("analystId"))
    if current_user.role == "quality_analyst" or (analyst_id is None and not current_user.is_supervisor):
        q = q.filter_by(quality_analyst_id=current_user.id)
    elif analyst_id is not None:
        q = q.filter_by(quality_analyst_id=analyst_id)
    status = request.args.get("status")
    if status:
        q = q.filter_by(status=status)
    return jsonify([a.to_dict(include_file=True) for a in q.order_by(AudioFileAllocation.id).all()])


@bp.get("/audio-files")
@allocator_required
def list_audio_files():
    q = AudioFile.query.filter_by(org_id=current_user.org_id)
    status = request.args.get("status")
    if status:
        if status not in AUDIO_FILE_STATUSES:
            raise ValidationError(f"Unknown status {status!r}")
        q = q.filter_by(status=status)
    limit = min(coerce_int(request.args.get("limit"), 200), 1000)
    return jsonify([f.to_dict() for f in q.order_by(AudioFile.id.desc()).limit(limit).all()])
