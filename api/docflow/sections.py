"""
Section model for document bodies.

A body is an ordered list of typed blocks. Each block type carries its own
content shape and knows how to list and rewrite the text it contains, which
is what merge-field extraction and rendering walk over.

Edits go through ``SectionEditor``. Every edit is recorded as a reversible
command in a bounded history so the builder can undo/redo without
snapshotting the whole list.
"""

import uuid
from collections import deque
from enum import Enum
from typing import Annotated, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .config import EDIT_HISTORY_LIMIT
from .errors import InvalidArgument, NotFound, ValidationError


class SectionType(str, Enum):
    heading = "heading"
    paragraph = "paragraph"
    table = "table"
    signature = "signature"


class _Content(BaseModel):
    model_config = ConfigDict(extra="forbid")


class HeadingContent(_Content):
    text: str = ""
    level: int = Field(default=2, ge=1, le=4)


class ParagraphContent(_Content):
    html: str = ""


class TableContent(_Content):
    rows: int = Field(default=2, ge=1, le=50)
    cols: int = Field(default=2, ge=1, le=12)
    cells: List[List[str]] = Field(default_factory=list)
    has_header: bool = False

    def normalized(self) -> "TableContent":
        # pad or truncate the matrix to rows x cols
        cells = []
        for r in range(self.rows):
            row = self.cells[r] if r < len(self.cells) else []
            cells.append([row[c] if c < len(row) else "" for c in range(self.cols)])
        return self.model_copy(update={"cells": cells})


class SignatureContent(_Content):
    label: str = ""
    name_field: str = ""


class _SectionBase(BaseModel):
    id: str
    order: int = 0

    def text_fragments(self) -> List[str]:
        raise NotImplementedError

    def map_text(self, fn: Callable[[str, bool], str]):
        """Return a copy with every text fragment passed through ``fn(text, is_markup)``."""
        raise NotImplementedError


class HeadingSection(_SectionBase):
    type: Literal["heading"] = "heading"
    content: HeadingContent = Field(default_factory=HeadingContent)

    def text_fragments(self):
        return [self.content.text]

    def map_text(self, fn):
        return self.model_copy(update={"content": self.content.model_copy(update={"text": fn(self.content.text, False)})})


class ParagraphSection(_SectionBase):
    type: Literal["paragraph"] = "paragraph"
    content: ParagraphContent = Field(default_factory=ParagraphContent)

    def text_fragments(self):
        return [self.content.html]

    def map_text(self, fn):
        return self.model_copy(update={"content": self.content.model_copy(update={"html": fn(self.content.html, True)})})


class TableSection(_SectionBase):
    type: Literal["table"] = "table"
    content: TableContent = Field(default_factory=lambda: TableContent().normalized())

    def text_fragments(self):
        return [cell for row in self.content.cells for cell in row]

    def map_text(self, fn):
        cells = [[fn(cell, False) for cell in row] for row in self.content.cells]
        return self.model_copy(update={"content": self.content.model_copy(update={"cells": cells})})


class SignatureSection(_SectionBase):
    type: Literal["signature"] = "signature"
    content: SignatureContent = Field(default_factory=SignatureContent)

    def text_fragments(self):
        return [self.content.label, self.content.name_field]

    def map_text(self, fn):
        content = self.content.model_copy(update={
            "label": fn(self.content.label, False),
            "name_field": fn(self.content.name_field, False),
        })
        return self.model_copy(update={"content": content})


Section = Annotated[
    Union[HeadingSection, ParagraphSection, TableSection, SignatureSection],
    Field(discriminator="type"),
]

SECTION_CLASSES = {
    SectionType.heading: HeadingSection,
    SectionType.paragraph: ParagraphSection,
    SectionType.table: TableSection,
    SectionType.signature: SignatureSection,
}

_section_list = TypeAdapter(List[Section])
_section_one = TypeAdapter(Section)


def new_section_id() -> str:
    return uuid.uuid4().hex


def parse_section_type(value) -> SectionType:
    try:
        return SectionType(value)
    except ValueError:
        raise InvalidArgument(f"unknown section type: {value!r}")


def empty_section(section_type, section_id: Optional[str] = None, order: int = 0):
    cls = SECTION_CLASSES[parse_section_type(section_type)]
    return cls(id=section_id or new_section_id(), order=order)


def load_sections(data) -> list:
    """Parse stored/posted section dicts, normalizing table shapes and order."""
    try:
        sections = _section_list.validate_python(data or [])
    except PydanticValidationError as exc:
        raise InvalidArgument("invalid sections", {"errors": exc.errors(include_url=False, include_context=False, include_input=False)})
    ids = [s.id for s in sections]
    if len(ids) != len(set(ids)):
        raise InvalidArgument("duplicate section ids")
    sections = sorted(sections, key=lambda s: s.order)
    sections = [
        s.model_copy(update={"content": s.content.normalized()}) if isinstance(s, TableSection) else s
        for s in sections
    ]
    return renumber(sections)


def dump_sections(sections) -> list:
    return [s.model_dump(mode="json") for s in sections]


def renumber(sections) -> list:
    return [s if s.order == i else s.model_copy(update={"order": i}) for i, s in enumerate(sections)]


def clone_sections(sections) -> list:
    """
    Copy a template body for a new document.

    Every section gets a fresh id; content is deep-copied and order is kept.
    The input list is not touched.
    """
    return [
        s.model_copy(update={"id": new_section_id(), "content": s.content.model_copy(deep=True)}, deep=True)
        for s in sections
    ]


# ---------- commands ----------

class Command:
    """A reversible edit. ``apply``/``revert`` mutate the list in place."""

    name = ""

    def apply(self, sections: list) -> None:
        raise NotImplementedError

    def revert(self, sections: list) -> None:
        raise NotImplementedError

    def to_dict(self) -> dict:
        raise NotImplementedError


def _index_of(sections, section_id) -> int:
    for i, s in enumerate(sections):
        if s.id == section_id:
            return i
    raise NotFound(f"section {section_id} not found")


def _section_dict(section) -> dict:
    return section.model_dump(mode="json")


def _section_from_dict(data):
    return _section_one.validate_python(data)


class InsertCommand(Command):
    name = "insert"

    def __init__(self, index: int, section):
        self.index = index
        self.section = section

    def apply(self, sections):
        sections.insert(self.index, self.section)

    def revert(self, sections):
        del sections[_index_of(sections, self.section.id)]

    def to_dict(self):
        return {"op": self.name, "index": self.index, "section": _section_dict(self.section)}


class DeleteCommand(Command):
    name = "delete"

    def __init__(self, index: int, section):
        self.index = index
        self.section = section

    def apply(self, sections):
        del sections[_index_of(sections, self.section.id)]

    def revert(self, sections):
        sections.insert(self.index, self.section)

    def to_dict(self):
        return {"op": self.name, "index": self.index, "section": _section_dict(self.section)}


class MoveCommand(Command):
    name = "move"

    def __init__(self, section_id: str, from_index: int, to_index: int):
        self.section_id = section_id
        self.from_index = from_index
        self.to_index = to_index

    def apply(self, sections):
        sections.insert(self.to_index, sections.pop(self.from_index))

    def revert(self, sections):
        sections.insert(self.from_index, sections.pop(self.to_index))

    def to_dict(self):
        return {"op": self.name, "section_id": self.section_id, "from": self.from_index, "to": self.to_index}


class ReplaceCommand(Command):
    """Swap one section for another in place (type change, content update)."""

    name = "replace"

    def __init__(self, before, after):
        self.before = before
        self.after = after

    def apply(self, sections):
        sections[_index_of(sections, self.before.id)] = self.after

    def revert(self, sections):
        sections[_index_of(sections, self.after.id)] = self.before

    def to_dict(self):
        return {"op": self.name, "before": _section_dict(self.before), "after": _section_dict(self.after)}


def command_from_dict(data: dict) -> Command:
    op = data.get("op")
    if op == InsertCommand.name:
        return InsertCommand(data["index"], _section_from_dict(data["section"]))
    if op == DeleteCommand.name:
        return DeleteCommand(data["index"], _section_from_dict(data["section"]))
    if op == MoveCommand.name:
        return MoveCommand(data["section_id"], data["from"], data["to"])
    if op == ReplaceCommand.name:
        return ReplaceCommand(_section_from_dict(data["before"]), _section_from_dict(data["after"]))
    raise InvalidArgument(f"unknown history operation: {op!r}")


class EditHistory:
    """Bounded undo stack; the redo stack is cleared by every new edit."""

    def __init__(self, limit: int = EDIT_HISTORY_LIMIT, undo=None, redo=None):
        self.limit = limit
        self.undo_stack = deque(undo or [], maxlen=limit)
        self.redo_stack = deque(redo or [], maxlen=limit)

    def record(self, command: Command):
        self.undo_stack.append(command)
        self.redo_stack.clear()

    @property
    def can_undo(self) -> bool:
        return bool(self.undo_stack)

    @property
    def can_redo(self) -> bool:
        return bool(self.redo_stack)

    def to_dict(self) -> dict:
        return {
            "undo": [c.to_dict() for c in self.undo_stack],
            "redo": [c.to_dict() for c in self.redo_stack],
        }

    @classmethod
    def from_dict(cls, data: Optional[dict], limit: int = EDIT_HISTORY_LIMIT) -> "EditHistory":
        data = data or {}
        return cls(
            limit=limit,
            undo=[command_from_dict(c) for c in data.get("undo", [])],
            redo=[command_from_dict(c) for c in data.get("redo", [])],
        )


class SectionEditor:
    """
    Applies section edits and keeps ``order`` dense (0..n-1) after each one.

    ``min_sections`` guards the last section of a document that must render.
    """

    def __init__(self, sections, history: Optional[EditHistory] = None, min_sections: int = 0):
        self.sections = renumber(list(sections))
        self.history = history or EditHistory()
        self.min_sections = min_sections

    def _run(self, command: Command):
        command.apply(self.sections)
        self.sections = renumber(self.sections)
        self.history.record(command)

    def get(self, section_id: str):
        return self.sections[_index_of(self.sections, section_id)]

    def insert_after(self, section_id: Optional[str], section_type) -> "_SectionBase":
        """Insert an empty block after ``section_id``; ``None`` appends at the end."""
        index = len(self.sections) if section_id is None else _index_of(self.sections, section_id) + 1
        section = empty_section(section_type)
        self._run(InsertCommand(index, section))
        return self.get(section.id)

    def delete(self, section_id: str):
        index = _index_of(self.sections, section_id)
        if len(self.sections) <= self.min_sections:
            raise ValidationError("a document needs at least one section")
        self._run(DeleteCommand(index, self.sections[index]))

    def move(self, section_id: str, new_index: int):
        from_index = _index_of(self.sections, section_id)
        if not 0 <= new_index < len(self.sections):
            raise InvalidArgument(f"index {new_index} out of range")
        if new_index == from_index:
            return self.get(section_id)
        self._run(MoveCommand(section_id, from_index, new_index))
        return self.get(section_id)

    def change_type(self, section_id: str, new_type):
        """Switch a block to another type. Content is reset to the new type's empty shape."""
        target = parse_section_type(new_type)
        before = self.get(section_id)
        if before.type == target.value:
            raise InvalidArgument(f"section is already a {target.value}")
        after = empty_section(target, section_id=before.id, order=before.order)
        self._run(ReplaceCommand(before, after))
        return self.get(section_id)

    def update_content(self, section_id: str, patch: Dict):
        before = self.get(section_id)
        merged = {**before.content.model_dump(), **(patch or {})}
        try:
            content = type(before.content).model_validate(merged)
        except PydanticValidationError as exc:
            raise InvalidArgument("invalid section content", {"errors": exc.errors(include_url=False, include_context=False, include_input=False)})
        if isinstance(content, TableContent):
            content = content.normalized()
        after = before.model_copy(update={"content": content})
        self._run(ReplaceCommand(before, after))
        return self.get(section_id)

    def undo(self) -> bool:
        if not self.history.can_undo:
            return False
        command = self.history.undo_stack.pop()
        command.revert(self.sections)
        self.sections = renumber(self.sections)
        self.history.redo_stack.append(command)
        return True

    def redo(self) -> bool:
        if not self.history.can_redo:
            return False
        command = self.history.redo_stack.pop()
        command.apply(self.sections)
        self.sections = renumber(self.sections)
        self.history.undo_stack.append(command)
        return True
