"""Three-way text merge.

Both sides are diffed against the common baseline with
``difflib.SequenceMatcher``; each side becomes a list of hunks over baseline
line ranges. Hunks from the two sides that touch the same baseline range are
grouped into a region. A region changed on one side only takes that side,
a region both sides changed identically takes the shared result, and
anything else is a conflict.
"""

from __future__ import annotations

import difflib
import logging
from pathlib import Path
from typing import NamedTuple

from stencil.config.models import MergeStrategyName
from stencil.merge.models import MergeConflict, MergeOutcome
from stencil.tracking.fingerprint import fingerprint

logger = logging.getLogger(__name__)

OURS_MARKER = "<<<<<<< ours"
SEPARATOR_MARKER = "======="
THEIRS_MARKER = ">>>>>>> theirs"
CONFLICT_MARKERS = (OURS_MARKER, SEPARATOR_MARKER, THEIRS_MARKER)

TEXT_SAMPLE_SIZE = 1000
TEXT_THRESHOLD = 0.8

OURS, THEIRS = 0, 1


class Hunk(NamedTuple):
    start: int
    end: int
    lines: list[str]
    side: int


class _Region:
    __slots__ = ("start", "end", "hunks")

    def __init__(self, hunk: Hunk) -> None:
        self.start = hunk.start
        self.end = hunk.end
        self.hunks = [hunk]

    def overlaps(self, hunk: Hunk) -> bool:
        return hunk.start < self.end or hunk.start == self.start

    def add(self, hunk: Hunk) -> None:
        self.hunks.append(hunk)
        self.end = max(self.end, hunk.end)

    def sides(self) -> set[int]:
        return {h.side for h in self.hunks}

    def text_for(self, base: list[str], side: int) -> list[str]:
        """The region as *side* sees it: its hunks applied to the baseline slice."""
        out: list[str] = []
        pos = self.start
        for h in self.hunks:
            if h.side != side:
                continue
            out.extend(base[pos:h.start])
            out.extend(h.lines)
            pos = h.end
        out.extend(base[pos:self.end])
        return out


def is_text(content: str | bytes) -> bool:
    """Printable-ratio heuristic over the first 1000 characters.

    A NUL byte, or bytes that are not UTF-8, mean binary.
    """
    if isinstance(content, bytes):
        if b"\x00" in content[:TEXT_SAMPLE_SIZE]:
            return False
        try:
            content = content.decode("utf-8")
        except UnicodeDecodeError:
            return False
    sample = content[:TEXT_SAMPLE_SIZE]
    if not sample:
        return True
    if "\x00" in sample:
        return False
    printable = sum(1 for c in sample if c in "\t\n\r" or c.isprintable())
    return printable / len(sample) >= TEXT_THRESHOLD


def has_conflict_markers(text: str) -> bool:
    """True if *text* holds a complete ours / separator / theirs block, in order."""
    expected = iter(CONFLICT_MARKERS)
    want = next(expected)
    for line in text.split("\n"):
        if line.rstrip("\r") == want:
            want = next(expected, None)
            if want is None:
                return True
        elif line.rstrip("\r") == OURS_MARKER:
            expected = iter(CONFLICT_MARKERS[1:])
            want = next(expected)
    return False


def _as_text(content: str | bytes) -> str:
    if isinstance(content, bytes):
        return content.decode("utf-8")
    return content


def _decoded(content: str | bytes) -> str | None:
    """*content* as text, or None for bytes that hold a NUL or are not UTF-8."""
    if isinstance(content, str):
        return content
    if b"\x00" in content:
        return None
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError:
        return None


def _hunks(base: list[str], other: list[str], side: int) -> list[Hunk]:
    matcher = difflib.SequenceMatcher(None, base, other, autojunk=False)
    return [
        Hunk(i1, i2, other[j1:j2], side)
        for tag, i1, i2, j1, j2 in matcher.get_opcodes()
        if tag != "equal"
    ]


def _regions(hunks: list[Hunk]) -> list[_Region]:
    regions: list[_Region] = []
    for hunk in sorted(hunks, key=lambda h: (h.start, h.end, h.side)):
        if regions and regions[-1].overlaps(hunk):
            regions[-1].add(hunk)
        else:
            regions.append(_Region(hunk))
    return regions


class MergeEngine:
    """Stateless three-way merger configured with a resolution strategy.

    Strategies: ``merge``/``auto`` write conflict markers, ``manual`` returns
    the conflict list without merged text, ``ours``/``theirs`` settle every
    conflicting hunk in favour of that side.
    """

    def __init__(self, strategy: MergeStrategyName = "merge") -> None:
        self.strategy = strategy

    def merge(
        self,
        base: str | bytes,
        ours: str | bytes,
        theirs: str | bytes,
    ) -> MergeOutcome:
        fp_base, fp_ours, fp_theirs = fingerprint(base), fingerprint(ours), fingerprint(theirs)

        if fp_base == fp_ours == fp_theirs:
            return self._outcome("no_change", ours, "no changes")
        if fp_base == fp_ours:
            return self._outcome("fast_forward", theirs, "took upstream version")
        if fp_base == fp_theirs:
            return self._outcome("keep_ours", ours, "no upstream changes")
        if fp_ours == fp_theirs:
            return self._outcome("clean", ours, "both sides made the same change")

        if not (is_text(ours) and is_text(theirs)) or not is_text(base):
            logger.debug("binary content; not attempting merge")
            return MergeOutcome(
                kind="conflicted",
                strategy=self.strategy,
                conflicts=[MergeConflict(line=0, ours_text="", theirs_text="", type="binary")],
                message="binary file changed on both sides",
            )

        return self._merge_text(_as_text(base), _as_text(ours), _as_text(theirs))

    def merge_files(
        self,
        base_path: str | Path | None,
        ours_path: str | Path,
        theirs_path: str | Path,
    ) -> MergeOutcome:
        """Merge three files; a missing file counts as empty."""

        def read(path: str | Path | None) -> bytes:
            if path is None or not Path(path).is_file():
                return b""
            return Path(path).read_bytes()

        return self.merge(read(base_path), read(ours_path), read(theirs_path))

    def _outcome(self, kind: str, content: str | bytes, message: str) -> MergeOutcome:
        return MergeOutcome(
            kind=kind, merged=_decoded(content), strategy=self.strategy, message=message
        )

    def _merge_text(self, base_text: str, ours_text: str, theirs_text: str) -> MergeOutcome:
        newline = "\r\n" if "\r\n" in ours_text else "\n"
        base = base_text.replace("\r\n", "\n").split("\n")
        ours = ours_text.replace("\r\n", "\n").split("\n")
        theirs = theirs_text.replace("\r\n", "\n").split("\n")

        regions = _regions(_hunks(base, ours, OURS) + _hunks(base, theirs, THEIRS))

        merged: list[str] = []
        conflicts: list[MergeConflict] = []
        pos = 0
        for region in regions:
            merged.extend(base[pos:region.start])
            pos = region.end
            sides = region.sides()
            if sides == {OURS}:
                merged.extend(region.text_for(base, OURS))
                continue
            if sides == {THEIRS}:
                merged.extend(region.text_for(base, THEIRS))
                continue

            ours_lines = region.text_for(base, OURS)
            theirs_lines = region.text_for(base, THEIRS)
            if ours_lines == theirs_lines:
                merged.extend(ours_lines)
                continue

            conflicts.append(MergeConflict(
                line=region.start,
                ours_text="\n".join(ours_lines),
                theirs_text="\n".join(theirs_lines),
                base_text="\n".join(base[region.start:region.end]),
            ))
            if self.strategy == "ours":
                merged.extend(ours_lines)
            elif self.strategy == "theirs":
                merged.extend(theirs_lines)
            else:
                merged.append(OURS_MARKER)
                merged.extend(ours_lines)
                merged.append(SEPARATOR_MARKER)
                merged.extend(theirs_lines)
                merged.append(THEIRS_MARKER)
        merged.extend(base[pos:])
        result = newline.join(merged)

        if not conflicts:
            return MergeOutcome(
                kind="clean",
                merged=result,
                strategy=self.strategy,
                message=f"merged {len(regions)} change region(s)",
            )
        if self.strategy in ("ours", "theirs"):
            logger.debug("resolved %d conflict(s) toward %s", len(conflicts), self.strategy)
            return MergeOutcome(
                kind="clean",
                merged=result,
                strategy=self.strategy,
                resolved=len(conflicts),
                message=f"resolved {len(conflicts)} conflict(s) using {self.strategy}",
            )
        return MergeOutcome(
            kind="conflicted",
            merged=None if self.strategy == "manual" else result,
            conflicts=conflicts,
            strategy=self.strategy,
            message=f"{len(conflicts)} conflict(s)",
        )
