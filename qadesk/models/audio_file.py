from ..extensions import db
from .base import OrgScopedMixin, TimestampMixin, _iso, _num

AUDIO_FILE_STATUSES = ("pending", "allocated", "evaluated", "archived")
LANGUAGES = (
    "english", "spanish", "french", "german", "portuguese", "hindi", "mandarin",
    "japanese", "korean", "arabic", "russian", "tamil", "bengali", "telugu", "other",
)


class AudioFile(db.Model, OrgScopedMixin, TimestampMixin):
    __tablename__ = "audio_files"
    id = db.Column(db.Integer, primary_key=True)
    filename = db.Column(db.String(512), nullable=False)
    original_filename = db.Column(db.String(512), nullable=False)
    file_url = db.Column(db.Text, nullable=False)  # plain blob url, signed on demand
    file_size = db.Column(db.BigInteger)
    duration = db.Column(db.Numeric(10, 2))  # seconds
    language = db.Column(db.String(32))
    version = db.Column(db.String(64))
    call_date = db.Column(db.Date)
    call_metrics = db.Column(db.JSON)
    extra_metadata = db.Column(db.JSON)
    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    uploaded_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    process_id = db.Column(db.Integer)
    batch_id = db.Column(db.Integer)
    evaluation_id = db.Column(db.Integer, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "filename": self.filename,
            "originalFilename": self.original_filename,
            "fileUrl": self.file_url,
            "fileSize": self.file_size,
            "duration": _num(self.duration),
            "language": self.language,
            "version": self.version,
            "callDate": _iso(self.call_date),
            "callMetrics": self.call_metrics or {},
            "extraMetadata": self.extra_metadata or {},
            "status": self.status,
            "processId": self.process_id,
            "batchId": self.batch_id,
            "evaluationId": self.evaluation_id,
        }


class AudioFileBatchAllocation(db.Model, OrgScopedMixin, TimestampMixin):
    __tablename__ = "audio_file_batch_allocations"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    distribution_method = db.Column(db.String(30), nullable=False, default="random")
    status = db.Column(db.String(20), nullable=False, default="allocated")
    allocated_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    due_date = db.Column(db.DateTime)

    allocations = db.relationship("AudioFileAllocation", backref="batch_allocation", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "distributionMethod": self.distribution_method,
            "status": self.status,
            "allocatedBy": self.allocated_by,
            "dueDate": _iso(self.due_date),
            "createdAt": _iso(self.created_at),
        }


class AudioFileAllocation(db.Model, OrgScopedMixin, TimestampMixin):
    __tablename__ = "audio_file_allocations"
    id = db.Column(db.Integer, primary_key=True)
    # one allocation per file; re-allocation moves this row
    audio_file_id = db.Column(db.Integer, db.ForeignKey("audio_files.id"), nullable=False, unique=True)
    quality_analyst_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    allocated_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    batch_allocation_id = db.Column(db.Integer, db.ForeignKey("audio_file_batch_allocations.id"), nullable=True)
    due_date = db.Column(db.DateTime)
    status = db.Column(db.String(20), nullable=False, default="allocated")
    evaluation_template_id = db.Column(db.Integer, db.ForeignKey("evaluation_templates.id"), nullable=True)
    evaluation_id = db.Column(db.Integer, nullable=True)

    audio_file = db.relationship("AudioFile", backref=db.backref("allocation", uselist=False))

    def to_dict(self, include_file=False):
        out = {
            "id": self.id,
            "audioFileId": self.audio_file_id,
            "qualityAnalystId": self.quality_analyst_id,
            "allocatedBy": self.allocated_by,
            "batchAllocationId": self.batch_allocation_id,
            "dueDate": _iso(self.due_date),
            "status": self.status,
            "evaluationTemplateId": self.evaluation_template_id,
            "evaluationId": self.evaluation_id,
        }
        if include_file and self.audio_file is not None:
            out["audioFile"] = self.audio_file.to_dict()
        return out
