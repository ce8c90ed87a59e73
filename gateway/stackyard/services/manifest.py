"""YAML loading and dumping for compose manifests.

Compose adds the ``!reset`` and ``!override`` merge tags to YAML. A plain
safe loader rejects them, so they are read into tagged containers that
behave like the underlying value and are written back with their tag.
"""

from dataclasses import dataclass
from typing import IO, Any, Union

import yaml

MERGE_TAGS = ("!reset", "!override")


class TaggedMapping(dict):
    tag = ""


class TaggedSequence(list):
    tag = ""


class TaggedString(str):
    tag = ""


@dataclass
class TaggedScalar:
    """A tagged value with no container to carry the tag, e.g. ``!reset null``."""

    tag: str
    value: Any

    def __bool__(self) -> bool:
        return bool(self.value)


TAGGED_TYPES = (TaggedMapping, TaggedSequence, TaggedString, TaggedScalar)


def tagged(value: Any, tag: str) -> Any:
    """Wrap a plain value so it is dumped with ``tag``."""
    if isinstance(value, dict):
        result = TaggedMapping(value)
    elif isinstance(value, list):
        result = TaggedSequence(value)
    elif isinstance(value, str):
        result = TaggedString(value)
    else:
        return TaggedScalar(tag, value)
    result.tag = tag
    return result


def retag(original: Any, value: Any) -> Any:
    """Carry the merge tag of ``original`` over to its rewritten ``value``."""
    if not isinstance(original, TAGGED_TYPES) or isinstance(value, TAGGED_TYPES):
        return value
    return tagged(value, original.tag)


class ComposeLoader(yaml.SafeLoader):
    pass


def _construct_tagged(loader: ComposeLoader, node: yaml.Node) -> Any:
    if isinstance(node, yaml.MappingNode):
        return tagged(loader.construct_mapping(node, deep=True), node.tag)
    if isinstance(node, yaml.SequenceNode):
        return tagged(loader.construct_sequence(node, deep=True), node.tag)
    # Resolve the scalar as if it were untagged
    implicit = (node.style is None, node.style is not None)
    resolved = loader.resolve(yaml.ScalarNode, node.value, implicit)
    plain = yaml.ScalarNode(resolved, node.value, node.start_mark, node.end_mark, node.style)
    return tagged(loader.construct_object(plain, deep=True), node.tag)


for _tag in MERGE_TAGS:
    ComposeLoader.add_constructor(_tag, _construct_tagged)


# Style marker for tagged scalars whose plain form reads back as the same type
PLAIN = ""


class ComposeDumper(yaml.SafeDumper):
    def choose_scalar_style(self):
        if self.event.style == PLAIN and self.event.tag in MERGE_TAGS:
            if self.analysis is None:
                self.analysis = self.analyze_scalar(self.event.value)
            allowed = self.analysis.allow_flow_plain if self.flow_level else self.analysis.allow_block_plain
            if allowed and not self.analysis.empty and not self.analysis.multiline:
                return PLAIN
        return super().choose_scalar_style()


def _represent_tagged(dumper: ComposeDumper, data: Any) -> yaml.Node:
    if isinstance(data, TaggedScalar):
        plain = data.value
    elif isinstance(data, dict):
        plain = dict(data)
    elif isinstance(data, list):
        plain = list(data)
    else:
        plain = str(data)
    node = dumper.represent_data(plain)
    if isinstance(node, yaml.ScalarNode) and node.style is None:
        if dumper.resolve(yaml.ScalarNode, node.value, (True, False)) == node.tag:
            node.style = PLAIN
    node.tag = data.tag
    return node


for _type in TAGGED_TYPES:
    ComposeDumper.add_representer(_type, _represent_tagged)


def load_yaml(stream: Union[str, IO[str]]) -> Any:
    return yaml.load(stream, Loader=ComposeLoader)


def dump_yaml(data: Any) -> str:
    return yaml.dump(
        data,
        Dumper=ComposeDumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=float("inf"),
    )
