"""
Incremental syntax tracking on top of tree-sitter.

A SyntaxTracker keeps one parse tree aligned with a Rope. Each edit is
described to tree-sitter by its byte offsets and (row, byte column) points;
the tree is then re-parsed with the previous tree as a hint so only the
edited region is rebuilt. The parser reads source text straight out of the
rope's chunks.
"""

from __future__ import annotations

import importlib
import logging
import os
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Optional

from tree_sitter import Language, Node, Parser, Tree

from hopedit.rope import Rope

logger = logging.getLogger(__name__)

# File extension -> language name
LANGUAGES = {
    ".py": "python",
    ".pyi": "python",
    ".rs": "rust",
    ".json": "json",
    ".sh": "bash",
    ".bash": "bash",
}

# Language name -> grammar package
_GRAMMARS = {
    "python": "tree_sitter_python",
    "rust": "tree_sitter_rust",
    "json": "tree_sitter_json",
    "bash": "tree_sitter_bash",
}


def language_for_path(path: str) -> Optional[str]:
    return LANGUAGES.get(os.path.splitext(path)[1].lower())


@lru_cache(maxsize=None)
def load_language(name: str) -> Language:
    """Load the tree-sitter grammar for ``name``.

    Raises:
        KeyError: If no grammar is registered for the language
        ImportError: If the grammar package is not installed
    """
    module = importlib.import_module(_GRAMMARS[name])
    return Language(module.language())


Point = tuple[int, int]


@dataclass(frozen=True)
class TextEdit:
    """One edit in the byte/point form tree-sitter consumes.

    Build it in two steps around the rope mutation:
    ``capture()`` before (start and old end), ``finish()`` after (new end).
    """

    start_byte: int
    old_end_byte: int
    new_end_byte: int
    start_point: Point
    old_end_point: Point
    new_end_point: Point

    @classmethod
    def capture(cls, rope: Rope, start: int, old_end: int) -> TextEdit:
        start_byte = rope.char_to_byte(start)
        old_end_byte = rope.char_to_byte(old_end)
        start_point = rope.char_to_point(start)
        old_end_point = rope.char_to_point(old_end)
        return cls(start_byte, old_end_byte, old_end_byte, start_point, old_end_point, old_end_point)

    def finish(self, rope: Rope, new_end: int) -> TextEdit:
        return replace(self, new_end_byte=rope.char_to_byte(new_end), new_end_point=rope.char_to_point(new_end))


class SyntaxTracker:
    """Parse tree for one document, updated incrementally on every edit.

    Args:
        language: Language name (a value of LANGUAGES)
        rope: Current document text

    Raises:
        KeyError / ImportError: See load_language()
    """

    def __init__(self, language: str, rope: Rope):
        self._language = language
        self._parser = Parser(load_language(language))
        self._tree = self._parse(rope, None)

    @classmethod
    def for_path(cls, path: str, rope: Rope) -> Optional[SyntaxTracker]:
        """Tracker for the language of ``path``, or None for unknown extensions."""
        language = language_for_path(path)
        if language is None:
            return None
        try:
            return cls(language, rope)
        except ImportError as e:
            logger.debug("No %s grammar available: %s", language, e)
            return None

    def _parse(self, rope: Rope, old_tree: Optional[Tree]) -> Tree:
        def read(byte_offset: int, point) -> bytes:
            chunk, chunk_start = rope.chunk_at_byte(byte_offset)
            return chunk[byte_offset - chunk_start :]

        if old_tree is None:
            return self._parser.parse(read)
        return self._parser.parse(read, old_tree)

    def apply(self, edit: TextEdit, rope: Rope) -> None:
        """Describe ``edit`` to the tree and re-parse the edited region.

        ``rope`` must already contain the edit.
        """
        self._tree.edit(
            start_byte=edit.start_byte,
            old_end_byte=edit.old_end_byte,
            new_end_byte=edit.new_end_byte,
            start_point=edit.start_point,
            old_end_point=edit.old_end_point,
            new_end_point=edit.new_end_point,
        )
        self._tree = self._parse(rope, self._tree)

    @property
    def language(self) -> str:
        return self._language

    @property
    def tree(self) -> Tree:
        return self._tree

    @property
    def root(self) -> Node:
        return self._tree.root_node

    @property
    def has_error(self) -> bool:
        return self._tree.root_node.has_error

    def node_at(self, start_byte: int, end_byte: int) -> Optional[Node]:
        """Smallest node spanning ``[start_byte, end_byte]``."""
        return self._tree.root_node.descendant_for_byte_range(start_byte, end_byte)

    def sexp(self) -> str:
        return str(self._tree.root_node)

    def __repr__(self) -> str:
        return f"SyntaxTracker({self._language}, {self._tree.root_node.type})"
