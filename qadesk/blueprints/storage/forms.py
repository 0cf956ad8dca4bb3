from flask_wtf import FlaskForm
from flask_wtf.file import FileField, FileRequired
from wtforms import StringField


class BlobUploadForm(FlaskForm):
    file = FileField("File", validators=[FileRequired()])
    folder_path = StringField("Folder", name="folderPath")
