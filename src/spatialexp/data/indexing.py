"""
indexing.py - Resolve (sample_id, image_id) selectors against an ImageTable

Each identifier argument accepts three kinds of value:

- a string: only entries carrying exactly that identifier
- ``ALL`` (or ``True``): every identifier present
- ``UNSPECIFIED`` (or ``None``): the first identifier found, in table order

The sample selector is applied first; the image selector is then applied
to the entries that remain, so an unspecified image means "the first image
of the selected sample(s)".
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from .config import InvalidArgumentError, NotFoundError

if TYPE_CHECKING:
    from .images import ImageTable


class _Sentinel:
    def __init__(self, name: str):
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __reduce__(self):
        return self._name


ALL = _Sentinel("ALL")
UNSPECIFIED = _Sentinel("UNSPECIFIED")


@dataclass(frozen=True)
class Selector:
    """Explicit form of an identifier argument."""

    kind: str  # 'concrete', 'all' or 'unspecified'
    value: Optional[str] = None

    @classmethod
    def coerce(cls, value, name: str = "identifier") -> "Selector":
        """
        Convert a user-facing argument into a Selector.

        Parameters
        ----------
        value : str, True, None, ALL, UNSPECIFIED or Selector
            Identifier argument
        name : str
            Argument name used in error messages

        Returns
        -------
        Selector
        """
        if isinstance(value, Selector):
            return value
        if value is ALL or value is True:
            return cls("all")
        if value is UNSPECIFIED or value is None:
            return cls("unspecified")
        if isinstance(value, str):
            return cls("concrete", value)
        raise InvalidArgumentError(
            f"'{name}' should be a character string, True or None, got {value!r}"
        )

    def pick(self, values: List[str], candidates: List[int]) -> List[int]:
        """Restrict ``candidates`` (positions into ``values``) by this selector."""
        if self.kind == "all":
            return list(candidates)
        if self.kind == "unspecified":
            if not candidates:
                return []
            first = values[candidates[0]]
            return [i for i in candidates if values[i] == first]
        return [i for i in candidates if values[i] == self.value]

    def __str__(self) -> str:
        if self.kind == "concrete":
            return repr(self.value)
        return self.kind.upper()


def resolve_image_index(table: "ImageTable", sample_id=None, image_id=None) -> List[int]:
    """
    Find the positions of the table entries matching a selector pair.

    Parameters
    ----------
    table : ImageTable
        Table to search
    sample_id : str, True/ALL or None/UNSPECIFIED
        Sample selector
    image_id : str, True/ALL or None/UNSPECIFIED
        Image selector

    Returns
    -------
    list of int
        Matching positions, in table order, each at most once

    Raises
    ------
    NotFoundError
        If no entry matches
    InvalidArgumentError
        If a selector has an unsupported type
    """
    sample_sel = Selector.coerce(sample_id, "sample_id")
    image_sel = Selector.coerce(image_id, "image_id")

    positions = list(range(len(table)))
    positions = sample_sel.pick(table.sample_ids, positions)
    positions = image_sel.pick(table.image_ids, positions)

    if not positions:
        raise NotFoundError(
            sample_sel.value if sample_sel.kind == "concrete" else str(sample_sel),
            image_sel.value if image_sel.kind == "concrete" else str(image_sel),
        )
    return positions
