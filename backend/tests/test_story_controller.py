import asyncio
from unittest.mock import AsyncMock

import pytest

from taleweaver.errors import ImageEncodingFailure, InvalidChoice, InvalidTransition, MalformedResponse
from taleweaver.models import ControllerState, ImagePart, StorySegment
from taleweaver.story_controller import (
    ADVANCE_FAILED_MESSAGE,
    START_FAILED_MESSAGE,
    StoryController,
    build_history,
)
from taleweaver.story_tree import ROOT_ID, path_to_root


async def started(agent) -> StoryController:
    controller = StoryController(agent=agent)
    await controller.start("A robot on Mars", "Sci-Fi", "Suspenseful")
    return controller


async def test_start_creates_root(fake_agent):
    controller = StoryController(agent=fake_agent)
    assert controller.state is ControllerState.IDLE

    node = await controller.start("A robot on Mars", "Sci-Fi", "Suspenseful")

    fake_agent.generate_initial_story.assert_awaited_once_with(
        "A robot on Mars", "Sci-Fi", "Suspenseful", None
    )
    assert node.id == ROOT_ID
    assert node.choice_text == "A robot on Mars"
    assert controller.state is ControllerState.ACTIVE
    assert controller.current_id == ROOT_ID
    assert controller.current_choices() == ["Explore the library", "Power down"]
    assert controller.error is None


async def test_start_failure_returns_to_idle(failing_agent):
    controller = StoryController(agent=failing_agent)
    result = await controller.start("A robot on Mars", "Sci-Fi", "Suspenseful")
    assert result is None
    assert controller.state is ControllerState.IDLE
    assert controller.tree is None
    assert controller.error == START_FAILED_MESSAGE


async def test_start_twice_is_invalid(fake_agent):
    controller = await started(fake_agent)
    with pytest.raises(InvalidTransition):
        await controller.start("again", "Fantasy", "Whimsical")


async def test_advance_before_start_is_invalid(fake_agent):
    controller = StoryController(agent=fake_agent)
    with pytest.raises(InvalidTransition):
        await controller.advance("Explore the library")


async def test_advance_grows_tree(fake_agent):
    controller = await started(fake_agent)
    node = await controller.advance("Explore the library")

    assert node.parent_id == ROOT_ID
    assert controller.current_id == node.id
    assert controller.tree.nodes[ROOT_ID].children == [node.id]
    assert ROOT_ID not in controller.tree.choices
    assert controller.current_choices() == ["Open a book", "Call out"]

    history, choice = fake_agent.generate_story_segment.await_args.args
    assert choice == "Explore the library"
    assert [(h.choice, h.segment) for h in history] == [("A robot on Mars", "The robot awoke...")]


async def test_two_advances_make_a_chain(fake_agent):
    controller = await started(fake_agent)
    a = await controller.advance("Explore the library")
    b = await controller.advance("Open a book")
    assert [n.id for n in path_to_root(controller.tree, b.id)] == [ROOT_ID, a.id, b.id]
    assert len(controller.history()) == 3


async def test_advance_with_unknown_choice(fake_agent):
    controller = await started(fake_agent)
    with pytest.raises(InvalidChoice):
        await controller.advance("Fly to Jupiter")
    fake_agent.generate_story_segment.assert_not_awaited()
    assert controller.state is ControllerState.ACTIVE


async def test_advance_failure_keeps_position(fake_agent):
    controller = await started(fake_agent)
    tree_before = controller.tree
    fake_agent.generate_story_segment.side_effect = MalformedResponse("bad json")

    result = await controller.advance("Power down")

    assert result is None
    assert controller.state is ControllerState.ACTIVE
    assert controller.current_id == ROOT_ID
    assert controller.tree is tree_before
    assert controller.current_choices() == ["Explore the library", "Power down"]
    assert controller.error == ADVANCE_FAILED_MESSAGE

    # retry succeeds and clears the error
    fake_agent.generate_story_segment.side_effect = None
    node = await controller.advance("Power down")
    assert node is not None
    assert controller.error is None


async def test_ending_cannot_be_advanced(fake_agent, ending_json):
    controller = await started(fake_agent)
    fake_agent.generate_story_segment.return_value = StorySegment.model_validate(ending_json)
    await controller.advance("Power down")

    view = controller.view()
    assert view.is_ending
    assert view.choices == []
    with pytest.raises(InvalidChoice):
        await controller.advance("Power down")


async def test_restart_discards_story(fake_agent):
    controller = await started(fake_agent)
    controller.restart()
    assert controller.state is ControllerState.IDLE
    assert controller.tree is None
    assert controller.current_id is None
    await controller.start("A new premise", "Mystery", "Dramatic")
    assert controller.state is ControllerState.ACTIVE


async def test_advance_rejected_while_request_in_flight(fake_agent, library_json):
    controller = await started(fake_agent)
    release = asyncio.Event()

    async def slow_segment(history, choice):
        await release.wait()
        return StorySegment.model_validate(library_json)

    fake_agent.generate_story_segment = AsyncMock(side_effect=slow_segment)
    pending = asyncio.create_task(controller.advance("Explore the library"))
    await asyncio.sleep(0)
    assert controller.state is ControllerState.ADVANCING

    with pytest.raises(InvalidTransition):
        await controller.advance("Power down")

    release.set()
    node = await pending
    assert node is not None
    assert len(controller.tree.nodes) == 2


async def test_stale_response_after_restart_is_discarded(fake_agent, library_json):
    controller = await started(fake_agent)
    release = asyncio.Event()

    async def slow_segment(history, choice):
        await release.wait()
        return StorySegment.model_validate(library_json)

    fake_agent.generate_story_segment = AsyncMock(side_effect=slow_segment)
    pending = asyncio.create_task(controller.advance("Explore the library"))
    await asyncio.sleep(0)

    controller.restart()
    await controller.start("Another premise", "Horror", "Suspenseful")
    fresh_tree = controller.tree

    release.set()
    assert await pending is None
    assert controller.tree is fresh_tree
    assert controller.current_id == ROOT_ID
    assert controller.state is ControllerState.ACTIVE


async def test_stale_start_after_restart_is_discarded(fake_agent, opening_json):
    controller = StoryController(agent=fake_agent)
    release = asyncio.Event()

    async def slow_opening(premise, genre, tone, image):
        await release.wait()
        return StorySegment.model_validate(opening_json)

    fake_agent.generate_initial_story = AsyncMock(side_effect=slow_opening)
    pending = asyncio.create_task(controller.start("A robot on Mars", "Sci-Fi", "Suspenseful"))
    await asyncio.sleep(0)
    assert controller.state is ControllerState.STARTING

    controller.restart()
    release.set()

    assert await pending is None
    assert controller.state is ControllerState.IDLE
    assert controller.tree is None
    assert controller.current_id is None
    assert controller.error is None


async def test_rejected_image_leaves_controller_idle(fake_agent):
    fake_agent.generate_initial_story.side_effect = ImageEncodingFailure("Could not process the image file.")
    controller = StoryController(agent=fake_agent)
    with pytest.raises(ImageEncodingFailure):
        await controller.start("p", "Fantasy", "Whimsical", ImagePart(mime_type="image/png", data="abc"))
    assert controller.state is ControllerState.IDLE
    assert controller.tree is None

    fake_agent.generate_initial_story.side_effect = None
    assert await controller.start("p", "Fantasy", "Whimsical") is not None


async def test_controllers_do_not_share_state(fake_agent):
    first = await started(fake_agent)
    second = StoryController(agent=fake_agent)
    await first.advance("Power down")
    assert second.tree is None
    assert second.state is ControllerState.IDLE
    assert len(first.tree.nodes) == 2


async def test_build_history_includes_root_premise(fake_agent):
    controller = await started(fake_agent)
    node = await controller.advance("Explore the library")
    history = build_history(controller.tree, node.id)
    assert [h.choice for h in history] == ["A robot on Mars", "Explore the library"]
    assert [h.segment for h in history] == ["The robot awoke...", "Dust motes floated..."]
