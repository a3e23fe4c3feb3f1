"""Hierarchical display numbers for conversation nodes.

Main thread:   0, 1, 2, ...
Branch:        <ancestorChain>.<branchIndex>.<position>, e.g. 3.1.0, 3.1.1
Nested branch: 3.1.0.2.0 (branch 2 hanging off node 3.1.0)

Every nesting level consumes exactly two segments (branchIndex.position), so
a well-formed number always has an odd segment count.  The branch prefix is
the first two segments ("3.1."), shared by a branch and every branch nested
under it; two-segment numbers ("3.1") appear only in legacy data.

Numbers are held as DisplayNumber (a tuple of ints); strings exist only at the
boundary (persisted state, HTTP payloads, caller references).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Tuple


@dataclass(frozen=True, order=True)
class DisplayNumber:
    """Structured display number: an ordered tuple of non-negative integers.

    Ordering compares segment by segment numerically; a missing trailing
    segment sorts as 0 and ties go to the shorter number, so
    "2" < "2.1.0" < "2.1.1" < "3".  That is exactly tuple ordering.
    """

    segments: Tuple[int, ...]

    @classmethod
    def parse(cls, value: Any) -> "DisplayNumber":
        """Parse "3.1.0", 3, or an existing DisplayNumber.  Raises ValueError."""
        if isinstance(value, DisplayNumber):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Not a display number: {value!r}")
        if isinstance(value, int):
            if value < 0:
                raise ValueError(f"Display numbers are non-negative: {value}")
            return cls((value,))
        if not isinstance(value, str):
            raise ValueError(f"Not a display number: {value!r}")
        text = value.strip().rstrip(".")
        parts = text.split(".") if text else []
        if not parts or not all(p.isdigit() for p in parts):
            raise ValueError(f"Not a display number: {value!r}")
        return cls(tuple(int(p) for p in parts))

    def __str__(self) -> str:
        return ".".join(str(s) for s in self.segments)

    def __len__(self) -> int:
        return len(self.segments)

    # -- classification ------------------------------------------------------
    @property
    def is_branch(self) -> bool:
        return len(self.segments) > 1

    @property
    def hierarchy_level(self) -> int:
        return (len(self.segments) - 1) // 2

    @property
    def position(self) -> int:
        return self.segments[-1]

    # -- thread structure ----------------------------------------------------
    def branch_prefix(self) -> "DisplayNumber":
        """First two segments: the branch group this number belongs to.

        "0.1.1" -> "0.1", "0.1.0.2.3" -> "0.1", legacy "3.1" -> "3.1".
        A main-thread number is its own prefix.
        """
        if not self.is_branch:
            return self
        return DisplayNumber(self.segments[:2])

    def prefix_string(self) -> str:
        """Boundary form of branch_prefix(): "3.1." for branches, "3" for main."""
        if not self.is_branch:
            return str(self)
        return str(self.branch_prefix()) + "."

    def in_branch(self, prefix: "DisplayNumber") -> bool:
        """True if this branch number starts with the two-segment `prefix`."""
        return self.is_branch and self.segments[:2] == prefix.segments

    def thread_prefix(self) -> "DisplayNumber":
        """Segments shared by the positions of this node's own nesting level.

        "0.1.1" -> "0.1", "0.1.0.2.3" -> "0.1.0.2", legacy "3.1" -> "3.1".
        Continuations are numbered within this level.
        """
        if not self.is_branch or len(self.segments) % 2 == 0:
            return self
        return DisplayNumber(self.segments[:-1])

    def in_thread(self, prefix: "DisplayNumber") -> bool:
        """True if this number is a position directly inside the level `prefix`."""
        n = len(prefix.segments)
        return len(self.segments) == n + 1 and self.segments[:n] == prefix.segments

    def next_in_thread(self) -> "DisplayNumber":
        return DisplayNumber(self.segments[:-1] + (self.segments[-1] + 1,))

    def child_branch(self, branch_index: int) -> "DisplayNumber":
        """Root of branch `branch_index` hanging off this node: <self>.<index>.0"""
        return DisplayNumber(self.segments + (branch_index, 0))


# ---------------------------------------------------------------------------
# String-boundary helpers
# ---------------------------------------------------------------------------
def is_branch_id(display_number: Any) -> bool:
    """True iff the display number contains a dot."""
    return "." in str(display_number)


def get_hierarchy_level(display_number: Any) -> int:
    return DisplayNumber.parse(display_number).hierarchy_level


def get_branch_prefix(display_number: Any) -> str:
    return DisplayNumber.parse(display_number).prefix_string()


def generate_next_in_branch(display_number: Any) -> str:
    """Increment the final dot-segment: "0.1.1" -> "0.1.2"."""
    return str(DisplayNumber.parse(display_number).next_in_thread())
