from flask import current_app, jsonify, request, send_file
from flask_login import login_required
from werkzeug.utils import secure_filename
from . import bp
from .forms import BlobUploadForm
from ...errors import NotFound, ValidationError
from ...services.storage import LocalBlobClient, content_type_for, get_blob_client, validate_container_name
from ...utils.decorators import allocator_required
from ...utils.parsing import coerce_bool

# form fields copied onto the blob as metadata
METADATA_PREFIX = "metadata-"


@bp.get("/azure-containers")
@login_required
def list_containers():
    client = get_blob_client()
    return jsonify(client.list_containers())


@bp.post("/azure-containers")
@allocator_required
def create_container():
    client = get_blob_client()
    data = request.get_json(silent=True) or {}
    name = validate_container_name((data.get("containerName") or "").strip())
    created = client.create_container(name, public=coerce_bool(data.get("isPublic")))
    if not created:
        return jsonify({"message": f"Container '{name}' already exists", "containerName": name}), 200
    current_app.logger.info("container %s created", name)
    return jsonify({"message": f"Container '{name}' created", "containerName": name}), 201


@bp.get("/azure-folders/<container>")
@login_required
def list_folders(container):
    client = get_blob_client()
    validate_container_name(container)
    client.require_container(container)
    return jsonify(client.list_folders(container))


@bp.get("/azure-blobs/<container>")
@login_required
def list_blobs(container):
    client = get_blob_client()
    validate_container_name(container)
    client.require_container(container)
    prefix = request.args.get("folderPath") or request.args.get("prefix")
    if prefix and not prefix.endswith("/"):
        prefix += "/"
    return jsonify([b.to_dict() for b in client.list_blobs(container, prefix)])


@bp.delete("/azure-blobs/<container>")
@allocator_required
def delete_blobs(container):
    client = get_blob_client()
    validate_container_name(container)
    names = (request.get_json(silent=True) or {}).get("blobNames")
    if not isinstance(names, list) or not names:
        raise ValidationError("blobNames must be a non-empty list")
    client.require_container(container)
    deleted, failed = client.delete_blobs(container, [str(n) for n in names])
    current_app.logger.info("deleted %d blobs from %s, %d failed", deleted, container, len(failed))
    body = {"successCount": deleted, "failedBlobs": failed}
    if failed:
        body["message"] = f"Deleted {deleted} of {len(names)} blobs"
        return jsonify(body), 207
    body["message"] = f"Deleted {deleted} blobs"
    return jsonify(body)


@bp.post("/azure-upload/<container>")
@allocator_required
def upload_blob(container):
    client = get_blob_client()
    validate_container_name(container)
    form = BlobUploadForm()
    if not form.validate_on_submit():
        raise ValidationError("No file uploaded", {"errors": form.errors})
    client.require_container(container)

    upload = form.file.data
    filename = secure_filename(upload.filename or "")
    if not filename:
        raise ValidationError("Invalid file name")
    folder = (form.folder_path.data or "").strip("/")
    name = f"{folder}/{filename}" if folder else filename
    metadata = {
        k[len(METADATA_PREFIX):]: v for k, v in request.form.items()
        if k.startswith(METADATA_PREFIX) and v
    }
    info = client.upload(container, name, upload.read(),
                         content_type=upload.mimetype or content_type_for(filename), metadata=metadata)
    current_app.logger.info("uploaded %s to %s (%s bytes)", name, container, info.size)
    return jsonify({"message": "File uploaded", "blob": info.to_dict()}), 201


@bp.get("/local-blobs/<container>/<path:name>")
def serve_local_blob(container, name):
    """Playback for signed links issued by the local storage backend."""
    client = get_blob_client()
    if not isinstance(client, LocalBlobClient):
        raise NotFound("Not found")
    content_type = client.verify_token(container, name, request.args.get("token"))
    path = client.blob_path(container, name)
    try:
        return send_file(path, mimetype=content_type, conditional=True)
    except FileNotFoundError:
        raise NotFound(f"Blob '{name}' not found")
