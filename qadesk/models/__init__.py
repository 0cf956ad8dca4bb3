from .user import User
from .organization import Organization
from .audio_file import AudioFile, AudioFileAllocation, AudioFileBatchAllocation
from .evaluation_template import EvaluationTemplate, EvaluationPillar, EvaluationParameter
from .evaluation import Evaluation, EvaluationScore, EvaluationFeedback
from .notification import Notification
# base and mixins are imported by the above as needed
