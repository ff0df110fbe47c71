# ABOUTME: Targeted image-tag rewriting for YAML manifests
# ABOUTME: Locates image scalars with PyYAML node marks and edits only their source span

"""
Manifest patching.

The manifest repository is owned by humans: it has comments, key ordering,
anchors and quoting that a load/dump round trip would destroy. So the
document is never re-rendered. Instead:

1. PyYAML composes the document into a node graph. Every scalar node knows
   where it starts and ends in the source text (start_mark / end_mark).
2. Every `image:` scalar whose repository matches image_name is collected.
3. Only the characters inside those spans are rewritten, last span first so
   earlier offsets stay valid.

Everything outside the rewritten spans is preserved character for character.
"""

from __future__ import annotations

import yaml
from yaml.nodes import MappingNode, Node, ScalarNode, SequenceNode

from gitops_operator.errors import ImageNotFound, ManifestError
from gitops_operator.models import ImageReference


def parse_image(ref: str) -> ImageReference:
    """Split "host:port/repo:tag@digest" into an ImageReference."""
    return ImageReference.parse(ref)


def _image_nodes(node: Node, seen: set[int]) -> list[ScalarNode]:
    # Aliases resolve to the same node object; visit each once.
    if id(node) in seen:
        return []
    seen.add(id(node))

    found: list[ScalarNode] = []
    if isinstance(node, MappingNode):
        for key, value in node.value:
            is_image_key = isinstance(key, ScalarNode) and key.value == "image"
            if is_image_key and isinstance(value, ScalarNode):
                found.append(value)
            else:
                found.extend(_image_nodes(value, seen))
    elif isinstance(node, SequenceNode):
        for item in node.value:
            found.extend(_image_nodes(item, seen))
    return found


def find_image_nodes(document: str, image_name: str) -> list[ScalarNode]:
    """Return the image scalars in every YAML document that reference image_name."""
    try:
        roots = [root for root in yaml.compose_all(document) if root is not None]
    except yaml.YAMLError as e:
        raise ManifestError("Failed to parse manifest YAML", str(e)) from e

    seen: set[int] = set()
    nodes: list[ScalarNode] = []
    for root in roots:
        nodes.extend(_image_nodes(root, seen))
    # An aliased image scalar is one node reached through several keys.
    unique = {id(n): n for n in nodes}.values()
    return [n for n in unique if parse_image(n.value).matches(image_name)]


def patch_image_tag(document: str, image_name: str, revision: str) -> tuple[str, int]:
    """
    Point every image reference for image_name at revision.

    Args:
        document: Manifest text (one or more YAML documents).
        image_name: Image repository from the annotations.
        revision: New tag.

    Returns:
        (patched text, number of references that changed). Zero changes
        means the manifest already pins revision everywhere.

    Raises:
        ImageNotFound: No image reference matches image_name.
        ManifestError: The text is not valid YAML.
    """
    nodes = find_image_nodes(document, image_name)
    if not nodes:
        raise ImageNotFound(f"No image reference for {image_name!r} in manifest")

    changed = 0
    patched = document
    for node in sorted(nodes, key=lambda n: n.start_mark.index, reverse=True):
        old = node.value
        new = str(parse_image(old).with_tag(revision))
        if new == old:
            continue

        start, end = node.start_mark.index, node.end_mark.index
        raw = patched[start:end]
        if old not in raw:
            # Escaped or folded scalar; an image ref never needs either.
            raise ManifestError(f"Cannot rewrite image scalar at line {node.start_mark.line + 1}")
        patched = patched[:start] + raw.replace(old, new, 1) + patched[end:]
        changed += 1

    return patched, changed
