"""
Ordered YAML document that can rewrite one top-level section without touching the others.

Top-level sections are kept as the exact source text they were parsed from, so anything
we don't own (comments, quoting, anchors, key order) survives a rewrite byte for byte.
Only sections written through upsert_section are re-serialized.
"""

from dataclasses import dataclass
import re
from typing import Any

import yaml
from yaml.constructor import SafeConstructor

from provisioner.common.errors import InvalidExternalConfig

@dataclass
class Section:
    key: str
    value: Any
    # source text, from the key up to the next top-level key
    text: str

class _BlockDumper(yaml.SafeDumper):
    pass

def _represent_str(dumper: yaml.SafeDumper, data: str):
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)

_BlockDumper.add_representer(str, _represent_str)

# "..." at the start of a line closes the document
_END_MARKER = re.compile(r"^\.\.\.(?=[ \t]|\r?\n|$)", re.MULTILINE)

class ConfigDocument:

    def __init__(
        self,
        preamble: str = "",
        sections: list[Section] | None = None,
        postamble: str = "",
        empty_root: str = ""
    ):
        # comments / directives before the first key
        self.preamble = preamble
        self.sections: list[Section] = sections or []
        # document end marker and anything after it
        self.postamble = postamble
        # source of an empty flow mapping ("{}"), written back only while no section exists
        self.empty_root = empty_root

    @staticmethod
    def parse(text: str) -> 'ConfigDocument':
        """
        Raises:
            yaml.YAMLError: text is not valid yaml
            InvalidExternalConfig: the document root is not a block mapping, or is a non-empty
                flow mapping whose entries can't be rewritten one at a time
        """
        root = yaml.compose(text, Loader=yaml.SafeLoader)
        if root is None:
            end = _document_end(text, 0)
            return ConfigDocument(preamble=text[:end], postamble=text[end:])
        if not isinstance(root, yaml.MappingNode):
            raise InvalidExternalConfig("Document root is not a mapping", node=root.tag)

        if root.flow_style:
            if root.value:
                raise InvalidExternalConfig("Document root is a flow mapping", line=root.start_mark.line + 1)
            start = root.start_mark.index
            end = root.end_mark.index
            if text.startswith("\n", end):
                end += 1
            return ConfigDocument(preamble=text[:start], empty_root=text[start:end], postamble=text[end:])

        constructor = SafeConstructor()
        values = [(_key_text(k), constructor.construct_document(v)) for k, v in root.value]

        starts = [k.start_mark.index for k, _ in root.value]
        stop = _document_end(text, starts[-1])
        ends = starts[1:] + [stop]
        sections = [
            Section(key=key, value=value, text=text[start:end])
            for (key, value), start, end in zip(values, starts, ends)
        ]
        return ConfigDocument(preamble=text[:starts[0]], sections=sections, postamble=text[stop:])

    def get(self, key: str) -> Section | None:
        for section in self.sections:
            if section.key == key:
                return section
        return None

    def keys(self) -> list[str]:
        return [s.key for s in self.sections]

    def upsert_section(self, key: str, value: dict) -> None:
        """Replaces (or adds) a section. Written sections always go last."""
        self.remove_section(key)
        self.sections.append(Section(key=key, value=value, text=render_section(key, value)))

    def remove_section(self, key: str) -> bool:
        before = len(self.sections)
        self.sections = [s for s in self.sections if s.key != key]
        return len(self.sections) != before

    def render(self) -> str:
        out = self.preamble
        if not self.sections:
            return out + self.empty_root + self.postamble
        for section in self.sections:
            if out and not out.endswith("\n"):
                out += "\n"
            out += section.text
        if self.postamble and not out.endswith("\n"):
            out += "\n"
        return out + self.postamble

def render_section(key: str, value: Any) -> str:
    return yaml.dump(
        {key: value},
        Dumper=_BlockDumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True
    )

def _document_end(text: str, pos: int) -> int:
    """Index of an explicit "..." end marker at or after pos, else the end of text."""
    m = _END_MARKER.search(text, pos)
    return m.start() if m else len(text)

def _key_text(node: yaml.Node) -> str:
    if isinstance(node, yaml.ScalarNode):
        return node.value
    return str(SafeConstructor().construct_document(node))
