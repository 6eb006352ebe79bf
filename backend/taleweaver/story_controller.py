import logging

from taleweaver import narrative_agent, story_tree
from taleweaver.errors import GenerationFailure, InvalidChoice, InvalidTransition
from taleweaver.models import (
    ControllerState,
    HistoryEntry,
    ImagePart,
    StoryNode,
    StoryTree,
    StoryView,
)

logger = logging.getLogger(__name__)

START_FAILED_MESSAGE = "Failed to start the story. Please check your API key and try again."
ADVANCE_FAILED_MESSAGE = "Failed to continue the story. Please try another path or restart."


def build_history(tree: StoryTree, node_id: str) -> list[HistoryEntry]:
    """(choice, segment) pairs from the root down to ``node_id``; the root's choice is the premise."""
    return [
        HistoryEntry(choice=node.choice_text, segment=node.story_segment)
        for node in story_tree.path_to_root(tree, node_id)
    ]


class StoryController:
    """Owns one story: the tree, the current position, and the request state machine.

    ``agent`` is the narrative collaborator; anything with async
    ``generate_initial_story`` and ``generate_story_segment`` works.
    """

    def __init__(self, agent=narrative_agent) -> None:
        self._agent = agent
        self._tree: StoryTree | None = None
        self._current_id: str | None = None
        self._state = ControllerState.IDLE
        self._error: str | None = None
        # Bumped on restart so responses for a discarded story are never applied.
        self._generation = 0

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def tree(self) -> StoryTree | None:
        return self._tree

    @property
    def current_id(self) -> str | None:
        return self._current_id

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def current_node(self) -> StoryNode | None:
        if self._tree is None or self._current_id is None:
            return None
        return story_tree.get_node(self._tree, self._current_id)

    def current_choices(self) -> list[str]:
        if self._tree is None or self._current_id is None:
            return []
        return story_tree.pending_choices(self._tree, self._current_id)

    def history(self) -> list[HistoryEntry]:
        if self._tree is None or self._current_id is None:
            return []
        return build_history(self._tree, self._current_id)

    def view(self) -> StoryView:
        node = self.current_node
        choices = self.current_choices()
        return StoryView(
            state=self._state,
            current_node=node,
            choices=choices,
            is_ending=node is not None and not choices,
            error=self._error,
        )

    def _is_stale(self, generation: int, action: str) -> bool:
        if generation != self._generation:
            logger.warning(f"Discarding {action} response for superseded story (generation {generation})")
            return True
        return False

    async def start(
        self,
        premise: str,
        genre: str,
        tone: str,
        image: ImagePart | None = None,
    ) -> StoryNode | None:
        """Generate the opening and plant the root. Returns None if generation failed."""
        if self._state is not ControllerState.IDLE:
            raise InvalidTransition(f"Cannot start a story while {self._state.value}")

        generation = self._generation
        self._state = ControllerState.STARTING
        self._error = None
        try:
            result = await self._agent.generate_initial_story(premise, genre, tone, image)
        except GenerationFailure as e:
            if self._is_stale(generation, "start"):
                return None
            logger.error(f"Story start failed: {e}")
            self._state = ControllerState.IDLE
            self._error = START_FAILED_MESSAGE
            return None
        except BaseException:
            if generation == self._generation:
                self._state = ControllerState.IDLE
            raise

        if self._is_stale(generation, "start"):
            return None

        self._tree = story_tree.create_root(premise, result.story_segment, result.choices)
        self._current_id = story_tree.ROOT_ID
        self._state = ControllerState.ACTIVE
        logger.info(f"Story started ({genre}/{tone}) with {len(result.choices)} choices")
        return self.current_node

    async def advance(self, choice: str) -> StoryNode | None:
        """Continue from the current position with one of its pending choices.

        On a generation failure the tree and position are untouched and None is
        returned; ``error`` holds a message for the user.
        """
        if self._state is not ControllerState.ACTIVE:
            raise InvalidTransition(f"Cannot advance while {self._state.value}")

        tree, parent_id = self._tree, self._current_id
        pending = story_tree.pending_choices(tree, parent_id)
        if choice not in pending:
            if not pending:
                raise InvalidChoice(f"Node '{parent_id}' is an ending; there is nothing to choose")
            raise InvalidChoice(f"'{choice}' is not one of the choices at node '{parent_id}'")

        history = build_history(tree, parent_id)
        generation = self._generation
        self._state = ControllerState.ADVANCING
        self._error = None
        try:
            result = await self._agent.generate_story_segment(history, choice)
        except GenerationFailure as e:
            if self._is_stale(generation, "advance"):
                return None
            logger.error(f"Story advance from '{parent_id}' failed: {e}")
            self._state = ControllerState.ACTIVE
            self._error = ADVANCE_FAILED_MESSAGE
            return None
        except BaseException:
            if generation == self._generation:
                self._state = ControllerState.ACTIVE
            raise

        if self._is_stale(generation, "advance"):
            return None

        self._tree, new_id = story_tree.append_child(
            tree, parent_id, choice, result.story_segment, result.choices
        )
        self._current_id = new_id
        self._state = ControllerState.ACTIVE
        if not result.choices:
            logger.info(f"Story reached an ending at '{new_id}'")
        return self.current_node

    def restart(self) -> None:
        self._generation += 1
        self._tree = None
        self._current_id = None
        self._error = None
        self._state = ControllerState.IDLE
