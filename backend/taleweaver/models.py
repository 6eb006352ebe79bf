from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ControllerState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    ADVANCING = "advancing"


class StoryNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    parent_id: str | None = None
    story_segment: str
    choice_text: str  # the premise, for the root
    children: list[str] = []


class StoryTree(BaseModel):
    model_config = ConfigDict(frozen=True)

    nodes: dict[str, StoryNode]
    choices: dict[str, list[str]]  # pending choices, frontier nodes only
    next_seq: int = 1


class StorySegment(BaseModel):
    """One generated step of the story, as the model must return it."""

    model_config = ConfigDict(extra="forbid")

    story_segment: str = Field(alias="storySegment", min_length=1)
    choices: list[str] = Field(max_length=3)

    @field_validator("story_segment")
    @classmethod
    def _segment_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("storySegment is blank")
        return v.strip()

    @field_validator("choices")
    @classmethod
    def _choices_not_blank(cls, v: list[str]) -> list[str]:
        cleaned = [c.strip() for c in v]
        if any(not c for c in cleaned):
            raise ValueError("choices must be non-empty strings")
        return cleaned


class ImagePart(BaseModel):
    mime_type: str
    data: str  # base64 payload, no data-URL prefix


class HistoryEntry(BaseModel):
    choice: str
    segment: str


class StoryView(BaseModel):
    state: ControllerState
    current_node: StoryNode | None = None
    choices: list[str] = []
    is_ending: bool = False
    error: str | None = None


class ArcNode(BaseModel):
    id: str
    parent_id: str | None
    label: str
    depth: int
    is_current: bool = False
    is_leaf: bool = True


class ArcEdge(BaseModel):
    source: str
    target: str


class StoryArc(BaseModel):
    current_id: str
    nodes: list[ArcNode]
    edges: list[ArcEdge]


class StartRequest(BaseModel):
    premise: str = Field(min_length=1)
    genre: str = "Fantasy"
    tone: str = "Adventurous"
    image_data_url: str | None = None

    @field_validator("premise")
    @classmethod
    def _premise_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("premise is blank")
        return v


class AdvanceRequest(BaseModel):
    choice: str
