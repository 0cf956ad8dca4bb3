from flask_wtf import FlaskForm
from flask_wtf.file import FileAllowed, FileField, FileRequired
from wtforms import IntegerField, StringField
from wtforms.validators import Optional

from ...errors import ValidationError
from ...utils.parsing import json_field


class MetadataUploadForm(FlaskForm):
    """Excel metadata upload; filter fields are read straight from the request."""
    metadata_file = FileField(
        "Metadata", name="metadataFile",
        validators=[FileRequired(), FileAllowed(["xlsx", "xlsm"], "Excel workbook (.xlsx) expected")],
    )


class AudioImportForm(MetadataUploadForm):
    process_id = IntegerField("Process", name="processId", validators=[Optional()])
    batch_id = IntegerField("Batch", name="batchId", validators=[Optional()])
    evaluation_template_id = IntegerField("Template", name="evaluationTemplateId", validators=[Optional()])
    distribution_method = StringField("Distribution", name="distributionMethod", default="random")
    due_date = StringField("Due date", name="dueDate")
    qa_assignments = StringField("Assignments", name="qaAssignments")
    selected_quality_analysts = StringField("Analysts", name="selectedQualityAnalysts")
    qa_assignment_counts = StringField("Counts", name="qaAssignmentCounts")

    def assignment_targets(self):
        """[{"id", "count"}] from qaAssignments, or from the older analysts + counts pair."""
        targets = json_field(self.qa_assignments.data, None, "qaAssignments")
        if targets is not None:
            if not isinstance(targets, list):
                raise ValidationError("qaAssignments must be a list")
            return targets
        analysts = json_field(self.selected_quality_analysts.data, [], "selectedQualityAnalysts")
        if not analysts:
            return []
        counts = json_field(self.qa_assignment_counts.data, {}, "qaAssignmentCounts")
        if not isinstance(analysts, list) or not isinstance(counts, dict):
            raise ValidationError("selectedQualityAnalysts must be a list and qaAssignmentCounts an object")
        return [{"id": qa, "count": counts.get(str(qa), counts.get(qa, 0))} for qa in analysts]
