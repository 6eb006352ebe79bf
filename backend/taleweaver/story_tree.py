from taleweaver.errors import NotFound
from taleweaver.models import StoryNode, StoryTree

ROOT_ID = "root"


def create_root(premise: str, initial_segment: str, initial_choices: list[str]) -> StoryTree:
    # An empty choice list is allowed: the story ended on its first segment.
    root = StoryNode(
        id=ROOT_ID,
        parent_id=None,
        story_segment=initial_segment,
        choice_text=premise,
        children=[],
    )
    return StoryTree(nodes={ROOT_ID: root}, choices={ROOT_ID: list(initial_choices)})


def get_node(tree: StoryTree, node_id: str) -> StoryNode:
    if node_id not in tree.nodes:
        raise NotFound(f"Node '{node_id}' not found in story tree")
    return tree.nodes[node_id]


def append_child(
    tree: StoryTree,
    parent_id: str,
    choice_text: str,
    new_segment: str,
    new_choices: list[str],
) -> tuple[StoryTree, str]:
    """Grow the tree by one node under ``parent_id``.

    The input tree is left untouched; the caller gets back a new tree in which
    the child exists, the parent lists it, the parent's pending choices are gone
    and the child holds ``new_choices``. Nothing is built until the parent has
    been found, so a failure leaves no trace.
    """
    parent = get_node(tree, parent_id)

    new_id = f"node-{tree.next_seq}"
    child = StoryNode(
        id=new_id,
        parent_id=parent_id,
        story_segment=new_segment,
        choice_text=choice_text,
        children=[],
    )
    linked_parent = parent.model_copy(update={"children": parent.children + [new_id]})

    nodes = {**tree.nodes, parent_id: linked_parent, new_id: child}
    choices = {k: v for k, v in tree.choices.items() if k != parent_id}
    choices[new_id] = list(new_choices)

    return StoryTree(nodes=nodes, choices=choices, next_seq=tree.next_seq + 1), new_id


def path_to_root(tree: StoryTree, node_id: str) -> list[StoryNode]:
    """Root-first list of the nodes leading to ``node_id`` (inclusive)."""
    path: list[StoryNode] = []
    current: str | None = node_id
    while current is not None:
        node = get_node(tree, current)
        path.append(node)
        current = node.parent_id
    path.reverse()
    return path


def pending_choices(tree: StoryTree, node_id: str) -> list[str]:
    return list(tree.choices.get(node_id, []))


def frontier_ids(tree: StoryTree) -> list[str]:
    return [node_id for node_id in tree.nodes if node_id in tree.choices]


def depth(tree: StoryTree, node_id: str) -> int:
    return len(path_to_root(tree, node_id)) - 1
