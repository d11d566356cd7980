"""
Pydantic models for arena session documents and AI judge results.

Documents are stored with the camelCase field names clients already use
(hostId, taskDescription, startTime, isBot); Python code uses snake_case.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SessionStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    FINISHED = "finished"


class ParticipantStatus(str, Enum):
    CODING = "coding"
    VALIDATING = "validating"
    FINISHED = "finished"


class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class UserIdentity(_Document):
    """Opaque current-user triple handed over by the identity provider"""
    id: str
    name: str = ""
    avatar: str = ""


class Checkpoint(_Document):
    id: int
    title: str
    description: str = ""
    completed: bool = False


class Participant(_Document):
    id: str
    name: str = ""
    avatar: str = ""
    progress: int = 0
    score: int = 0
    status: ParticipantStatus = ParticipantStatus.CODING
    is_bot: bool = Field(False, alias="isBot")

    @field_validator("progress")
    @classmethod
    def _clamp_progress(cls, value: int) -> int:
        return max(0, min(100, int(value)))

    @classmethod
    def from_identity(cls, user: UserIdentity, default_avatar: str) -> "Participant":
        return cls(id=user.id, name=user.name, avatar=user.avatar or default_avatar)


class ChallengeSession(_Document):
    code: str
    host_id: str = Field(alias="hostId")
    domain: str
    status: SessionStatus = SessionStatus.WAITING
    participants: List[Participant] = Field(default_factory=list)
    task_description: str = Field("", alias="taskDescription")
    checkpoints: List[Checkpoint] = Field(default_factory=list)
    start_time: Optional[int] = Field(None, alias="startTime")

    @property
    def has_scenario(self) -> bool:
        return bool(self.task_description.strip()) and len(self.checkpoints) > 0

    def participant(self, user_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.id == user_id:
                return p
        return None


class Scenario(_Document):
    task_description: str = Field(alias="taskDescription")
    checkpoints: List[Checkpoint]


class JoinResult(BaseModel):
    success: bool
    reason: Optional[str] = None


# ----------------------------------------------------------------------------
# AI judge results
# ----------------------------------------------------------------------------

class EnvironmentCheck(_Document):
    lighting: bool = False
    single_person: bool = Field(False, alias="singlePerson")
    no_devices: bool = Field(False, alias="noDevices")
    feedback: str = ""

    @property
    def passed(self) -> bool:
        return self.lighting and self.single_person and self.no_devices


class StepValidation(_Document):
    success: bool = False
    score: int = 0
    feedback: str = ""


class SkillDNAScore(_Document):
    problem_solving: float = Field(0, alias="problemSolving")
    execution_speed: float = Field(0, alias="executionSpeed")
    conceptual_depth: float = Field(0, alias="conceptualDepth")
    ai_leverage: float = Field(0, alias="aiLeverage")
    risk_awareness: float = Field(0, alias="riskAwareness")
    average: float = 0


class PerformanceEvaluation(_Document):
    score: SkillDNAScore = Field(default_factory=SkillDNAScore)
    feedback: str = ""


class TrialQuestion(_Document):
    id: int
    text: str
    category: str = "Concept"


class TrialContent(_Document):
    questions: List[TrialQuestion] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)


class InterviewQuestion(_Document):
    text: str
    time_limit: int = Field(120, alias="timeLimit")


class InterviewEvaluation(_Document):
    score: int = 0
    feedback: str = ""
    spoken_feedback: str = Field("", alias="spokenFeedback")


class ExamMCQ(_Document):
    id: int
    question: str
    options: List[str] = Field(default_factory=list)
    correct_index: int = Field(-1, alias="correctIndex")
    user_answer: Optional[int] = Field(None, alias="userAnswer")


class ExamTheory(_Document):
    id: int
    question: str
    user_answer: Optional[str] = Field(None, alias="userAnswer")


class ExamPractical(_Document):
    id: int
    task: str
    constraints: List[str] = Field(default_factory=list)
    user_answer: Optional[str] = Field(None, alias="userAnswer")


class ExamGrade(_Document):
    theory_score: int = Field(0, alias="theoryScore")
    practical_score: int = Field(0, alias="practicalScore")
    feedback: str = ""


class InterviewRound(_Document):
    round: int
    question: str
    answer: str
    score: int = 0
    feedback: str = ""


class ExamScore(_Document):
    mcq: int = 0
    theory: int = 0
    practical: int = 0
    total: int = 0
    feedback: str = ""
    certified: bool = False
