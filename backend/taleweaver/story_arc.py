from collections import deque

from taleweaver import story_tree
from taleweaver.models import ArcEdge, ArcNode, StoryArc, StoryTree

_LABEL_LIMIT = 15
_LABEL_KEEP = 12


def _label(text: str) -> str:
    if len(text) > _LABEL_LIMIT:
        return text[:_LABEL_KEEP] + "..."
    return text


def build_arc(tree: StoryTree, current_id: str) -> StoryArc:
    """Flatten the tree into nodes and edges for drawing; breadth-first from the root."""
    story_tree.get_node(tree, current_id)

    nodes: list[ArcNode] = []
    edges: list[ArcEdge] = []
    queue = deque([(story_tree.ROOT_ID, 0)])
    while queue:
        node_id, depth = queue.popleft()
        node = tree.nodes[node_id]
        nodes.append(
            ArcNode(
                id=node.id,
                parent_id=node.parent_id,
                label=_label(node.choice_text),
                depth=depth,
                is_current=node.id == current_id,
                is_leaf=not node.children,
            )
        )
        for child_id in node.children:
            edges.append(ArcEdge(source=node.id, target=child_id))
            queue.append((child_id, depth + 1))

    return StoryArc(current_id=current_id, nodes=nodes, edges=edges)
