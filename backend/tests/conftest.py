import os

# Set dummy API key before any app module imports so the Gemini client can be built
os.environ.setdefault("GEMINI_API_KEY", "test-dummy-key-for-unit-tests")

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from taleweaver import story_tree
from taleweaver.errors import GenerationFailure
from taleweaver.models import StorySegment


@pytest.fixture
def opening_json():
    return {
        "storySegment": "The robot awoke...",
        "choices": ["Explore the library", "Power down"],
    }


@pytest.fixture
def library_json():
    return {
        "storySegment": "Dust motes floated...",
        "choices": ["Open a book", "Call out"],
    }


@pytest.fixture
def ending_json():
    return {"storySegment": "The lights went out for good.", "choices": []}


@pytest.fixture
def mock_gemini_response(opening_json):
    mock_resp = MagicMock()
    mock_resp.text = json.dumps(opening_json)
    return mock_resp


@pytest.fixture
def root_tree():
    return story_tree.create_root(
        "A robot on Mars",
        "The robot awoke...",
        ["Explore the library", "Power down"],
    )


def make_segment(data: dict) -> StorySegment:
    return StorySegment.model_validate(data)


@pytest.fixture
def fake_agent(opening_json, library_json):
    """A narrative collaborator double: opening on start, library scene on every advance."""
    agent = MagicMock()
    agent.generate_initial_story = AsyncMock(return_value=make_segment(opening_json))
    agent.generate_story_segment = AsyncMock(return_value=make_segment(library_json))
    return agent


@pytest.fixture
def failing_agent():
    agent = MagicMock()
    agent.generate_initial_story = AsyncMock(side_effect=GenerationFailure("API key not valid"))
    agent.generate_story_segment = AsyncMock(side_effect=GenerationFailure("quota exceeded"))
    return agent


@pytest.fixture
def png_bytes():
    # 1x1 transparent PNG
    return bytes.fromhex(
        "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
        "1f15c4890000000d49444154789c6300010000050001"
        "0d0a2db40000000049454e44ae426082"
    )
