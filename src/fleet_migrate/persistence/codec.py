"""
fleet-migrate — YAML codec for migration definitions and status documents.

File: src/fleet_migrate/persistence/codec.py
Last updated: 2026-10-19

Purpose
- Decode YAML text into plain mappings with a strict safe loader.
- Encode plain mappings back into stable, human-editable YAML.

Functional requirements
- Duplicate mapping keys are an error, never a silent last-wins overwrite.
- Key order of the payload is preserved on output.
- Multi-line strings are emitted as literal blocks so descriptions stay readable.
"""

from __future__ import annotations

from collections.abc import Hashable, Mapping
from typing import Any, cast

import yaml
from yaml.constructor import ConstructorError
from yaml.nodes import MappingNode, ScalarNode


class CodecError(ValueError):
    """Raised when a document cannot be decoded."""


class DuplicateKeyError(ConstructorError):
    """Raised by the strict loader when a mapping repeats a key."""

    def __init__(self, key: object, node: MappingNode, key_node: yaml.Node) -> None:
        self.key = key
        self.line = key_node.start_mark.line + 1
        super().__init__(
            "while constructing a mapping",
            node.start_mark,
            f"found duplicate key {key!r}",
            key_node.start_mark,
        )


class _StrictLoader(yaml.SafeLoader):
    def construct_mapping(self, node: MappingNode, deep: bool = False) -> dict[Any, Any]:
        if isinstance(node, MappingNode):
            self.flatten_mapping(node)
            seen: set[Hashable] = set()
            for key_node, _value_node in node.value:
                key = self.construct_object(key_node, deep=deep)
                if not isinstance(key, Hashable):
                    continue
                if key in seen:
                    raise DuplicateKeyError(key, node, key_node)
                seen.add(key)
        return cast("dict[Any, Any]", super().construct_mapping(node, deep=deep))


class _DocumentDumper(yaml.SafeDumper):
    pass


def _represent_str(dumper: yaml.SafeDumper, value: str) -> ScalarNode:
    if "\n" in value:
        return dumper.represent_scalar("tag:yaml.org,2002:str", value, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", value)


_DocumentDumper.add_representer(str, _represent_str)


def decode_document(text: str, *, source: str = "<document>") -> dict[str, Any]:
    """Parse one YAML document whose root must be a mapping."""

    try:
        # _StrictLoader derives from SafeLoader.
        loaded = cast("object", yaml.load(text, Loader=_StrictLoader))  # noqa: S506
    except DuplicateKeyError as exc:
        raise CodecError(f"{source}: line {exc.line}: duplicate key {exc.key!r}") from exc
    except yaml.YAMLError as exc:
        raise CodecError(f"{source}: invalid YAML ({exc})") from exc

    if loaded is None:
        raise CodecError(f"{source}: document is empty")
    if not isinstance(loaded, Mapping):
        raise CodecError(f"{source}: expected top-level mapping, got {type(loaded).__name__}")
    return dict(loaded)


def encode_document(payload: Mapping[str, Any]) -> str:
    rendered = yaml.dump(
        dict(payload),
        Dumper=_DocumentDumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=100,
    )
    if not rendered.endswith("\n"):
        rendered += "\n"
    return rendered


__all__ = ["CodecError", "DuplicateKeyError", "decode_document", "encode_document"]
